"""
Campaign Workflow Service Factory

Factory for creating campaign workflow components with proper dependency injection.
"""

import logging
from typing import List, Optional

from core.config import AppConfig, get_settings
from core.nats_client import NATSEventBus

from .audience_matcher import AudienceMatcher
from .campaign_admin import CampaignAdmin
from .clients.messaging_hub_client import MessagingHubClient
from .clients.recipient_directory_client import RecipientDirectoryClient
from .consent_guard import ConsentGuard
from .dispatch_gateway import DispatchGateway
from .events.handlers import WorkflowEventHandler
from .events.models import DELIVERY_SUBJECT, DOMAIN_SUBJECTS
from .events.publishers import WorkflowEventPublisher
from .memory_repository import InMemoryWorkflowRepository
from .protocols import WorkflowRepositoryProtocol
from .scheduler import SchedulerLoop
from .step_executor import StepExecutor
from .trigger_listener import TriggerListener
from .workflow_repository import WorkflowRepository

logger = logging.getLogger(__name__)

SERVICE_NAME = "campaign_workflow_service"


class CampaignWorkflowServiceFactory:
    """Factory for creating campaign workflow components"""

    def __init__(self, config: Optional[AppConfig] = None):
        self.config = config or get_settings()
        self._repository: Optional[WorkflowRepositoryProtocol] = None
        self._nats_client: Optional[NATSEventBus] = None
        self._event_publisher: Optional[WorkflowEventPublisher] = None
        self._event_handler: Optional[WorkflowEventHandler] = None
        self._directory_client: Optional[RecipientDirectoryClient] = None
        self._hub_client: Optional[MessagingHubClient] = None
        self._audience: Optional[AudienceMatcher] = None
        self._guard: Optional[ConsentGuard] = None
        self._gateway: Optional[DispatchGateway] = None
        self._executor: Optional[StepExecutor] = None
        self._trigger_listener: Optional[TriggerListener] = None
        self._admin: Optional[CampaignAdmin] = None
        self._schedulers: List[SchedulerLoop] = []

    async def initialize(self) -> None:
        """Initialize all components"""
        logger.info("Initializing Campaign Workflow Service components...")
        engine = self.config.engine

        # Initialize repository
        if engine.use_memory_store:
            logger.warning("Using in-memory workflow store; state is lost on restart")
            self._repository = InMemoryWorkflowRepository()
        else:
            self._repository = WorkflowRepository(
                config=self.config.infrastructure, apply_schema=True
            )
        await self._repository.initialize()

        # Initialize NATS client
        if self.config.infrastructure.nats_enabled:
            try:
                self._nats_client = NATSEventBus(
                    service_name=SERVICE_NAME,
                    config=self.config.infrastructure,
                )
                await self._nats_client.connect()
                logger.info("NATS client connected")
            except Exception as e:
                logger.warning(f"NATS client initialization failed: {e}")
                self._nats_client = None
        self._event_publisher = WorkflowEventPublisher(self._nats_client)

        # Initialize service clients
        self._directory_client = RecipientDirectoryClient(self.config.services)
        self._hub_client = MessagingHubClient(self.config.services)

        # Initialize engine components
        self._audience = AudienceMatcher(
            self._directory_client,
            page_size=engine.trigger.audience_page_size,
            retry_attempts=engine.trigger.directory_retry_attempts,
        )
        self._guard = ConsentGuard(self._repository, engine.consent)
        self._gateway = DispatchGateway(self._hub_client, self._repository)
        self._executor = StepExecutor(
            repository=self._repository,
            guard=self._guard,
            gateway=self._gateway,
            audience=self._audience,
            retry_config=engine.retry,
            wait_grace_minutes=engine.trigger.wait_grace_minutes,
            event_publisher=self._event_publisher,
        )
        self._trigger_listener = TriggerListener(
            repository=self._repository,
            audience=self._audience,
            config=engine.trigger,
            consent_config=engine.consent,
            event_publisher=self._event_publisher,
        )
        self._admin = CampaignAdmin(
            repository=self._repository,
            trigger_listener=self._trigger_listener,
            event_publisher=self._event_publisher,
        )
        self._schedulers = [
            SchedulerLoop(self._repository, self._executor, engine.scheduler)
            for _ in range(max(engine.scheduler.worker_count, 0))
        ]

        # Initialize event handler
        self._event_handler = WorkflowEventHandler(
            trigger_listener=self._trigger_listener,
            dispatch_gateway=self._gateway,
        )

        logger.info("Campaign Workflow Service components initialized")

    async def subscribe(self) -> None:
        """Subscribe to business events and delivery callbacks"""
        if not self._nats_client:
            logger.info("NATS not available, event subscriptions skipped")
            return

        for subject in DOMAIN_SUBJECTS:
            await self._nats_client.subscribe_to_events(subject.value, self.event_handler.on_bus_event)
        await self._nats_client.subscribe_to_events(DELIVERY_SUBJECT, self.event_handler.on_bus_event)

    def start_workers(self) -> None:
        """Start background scheduler loops"""
        for scheduler in self._schedulers:
            scheduler.start()
        logger.info(f"Started {len(self._schedulers)} scheduler workers")

    async def close(self) -> None:
        """Close all components"""
        logger.info("Closing Campaign Workflow Service components...")

        for scheduler in self._schedulers:
            await scheduler.stop()

        if self._nats_client:
            await self._nats_client.close()

        if self._repository:
            await self._repository.close()

        logger.info("Campaign Workflow Service components closed")

    @property
    def repository(self) -> WorkflowRepositoryProtocol:
        """Get workflow repository"""
        if not self._repository:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._repository

    @property
    def admin(self) -> CampaignAdmin:
        """Get campaign admin service"""
        if not self._admin:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._admin

    @property
    def trigger_listener(self) -> TriggerListener:
        """Get trigger listener"""
        if not self._trigger_listener:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._trigger_listener

    @property
    def gateway(self) -> DispatchGateway:
        """Get dispatch gateway"""
        if not self._gateway:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._gateway

    @property
    def scheduler(self) -> SchedulerLoop:
        """Scheduler used for on-demand passes"""
        if not self._executor:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        if not self._schedulers:
            self._schedulers.append(
                SchedulerLoop(self._repository, self._executor, self.config.engine.scheduler)
            )
        return self._schedulers[0]

    @property
    def nats_client(self) -> Optional[NATSEventBus]:
        """Get NATS client"""
        return self._nats_client

    @property
    def event_handler(self) -> WorkflowEventHandler:
        """Get event handler"""
        if not self._event_handler:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return self._event_handler

    @property
    def event_publisher(self) -> Optional[WorkflowEventPublisher]:
        """Get event publisher"""
        return self._event_publisher


# Global factory instance
_factory: Optional[CampaignWorkflowServiceFactory] = None


async def get_factory() -> CampaignWorkflowServiceFactory:
    """Get or create factory instance"""
    global _factory
    if _factory is None:
        _factory = CampaignWorkflowServiceFactory()
        await _factory.initialize()
    return _factory


async def close_factory() -> None:
    """Close factory instance"""
    global _factory
    if _factory:
        await _factory.close()
        _factory = None


__all__ = [
    "CampaignWorkflowServiceFactory",
    "get_factory",
    "close_factory",
]
