"""
Component Test Fixtures for Campaign Workflow Service

Wires the real engine components (guard, gateway, executor, scheduler,
trigger listener, admin) over the in-memory repository, with the recipient
directory, messaging hub and event bus replaced by in-process fakes.
"""

import pytest
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from core.config import ConsentConfig, RetryConfig, SchedulerConfig, TriggerConfig
from microservices.campaign_workflow_service.audience_matcher import AudienceMatcher
from microservices.campaign_workflow_service.campaign_admin import CampaignAdmin
from microservices.campaign_workflow_service.consent_guard import ConsentGuard
from microservices.campaign_workflow_service.dispatch_gateway import DispatchGateway
from microservices.campaign_workflow_service.events.handlers import WorkflowEventHandler
from microservices.campaign_workflow_service.events.publishers import WorkflowEventPublisher
from microservices.campaign_workflow_service.memory_repository import InMemoryWorkflowRepository
from microservices.campaign_workflow_service.protocols import (
    AudienceQueryError,
    ChannelDeliveryError,
)
from microservices.campaign_workflow_service.scheduler import SchedulerLoop
from microservices.campaign_workflow_service.step_executor import StepExecutor
from microservices.campaign_workflow_service.trigger_listener import TriggerListener
from tests.contracts.campaign_workflow.data_contract import (
    AudienceCriteria,
    CampaignDefinition,
    CampaignWorkflowTestDataFactory,
    Enrollment,
    Recipient,
)


# ====================
# Fake Recipient Directory
# ====================


class FakeDirectory:
    """Recipient directory backed by a dict"""

    def __init__(self, page_size: int = 2):
        self.recipients: Dict[str, Recipient] = {}
        self.page_size = page_size
        self.fail = False
        self.get_calls: List[str] = []
        self.search_calls = 0

    def add(self, recipient: Recipient) -> Recipient:
        self.recipients[recipient.recipient_id] = recipient
        return recipient

    async def get_recipient(self, recipient_id: str) -> Optional[Recipient]:
        self.get_calls.append(recipient_id)
        if self.fail:
            raise AudienceQueryError("directory unavailable")
        recipient = self.recipients.get(recipient_id)
        return recipient.model_copy(deep=True) if recipient else None

    async def search_recipients(
        self,
        criteria: AudienceCriteria,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> Tuple[List[Recipient], Optional[str]]:
        self.search_calls += 1
        if self.fail:
            raise AudienceQueryError("directory unavailable")
        ordered = sorted(self.recipients.values(), key=lambda r: r.recipient_id)
        start = int(cursor or 0)
        size = min(limit, self.page_size)
        page = ordered[start:start + size]
        next_cursor = str(start + size) if start + size < len(ordered) else None
        return [r.model_copy(deep=True) for r in page], next_cursor


# ====================
# Fake Messaging Hub
# ====================


class FakeHub:
    """
    Messaging hub that records submissions.

    mode: accepted | rejected | transient | permanent
    crash_for: recipient ids whose sends raise an unexpected error
    """

    def __init__(self):
        self.mode = "accepted"
        self.crash_for = set()
        self.sent: List[Dict[str, Any]] = []
        self.attempts = 0

    async def send_message(
        self,
        recipient: Recipient,
        channel: str,
        template_ref: str,
        variables: Dict[str, Any],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        self.attempts += 1
        if recipient.recipient_id in self.crash_for:
            raise RuntimeError("hub client bug")
        if self.mode == "transient":
            raise ChannelDeliveryError("hub timeout", transient=True)
        if self.mode == "permanent":
            raise ChannelDeliveryError("invalid template", transient=False)
        if self.mode == "rejected":
            return {"status": "rejected", "reason": "number blocked", "message_id": f"msg_{self.attempts}"}

        self.sent.append({
            "recipient_id": recipient.recipient_id,
            "channel": channel,
            "template_ref": template_ref,
            "variables": variables,
            "idempotency_key": idempotency_key,
        })
        return {"status": "queued", "message_id": f"msg_{len(self.sent)}"}

    def templates(self) -> List[str]:
        return [m["template_ref"] for m in self.sent]


# ====================
# Mock Event Bus
# ====================


class MockEventBus:
    """Records everything published through the workflow publisher"""

    def __init__(self):
        self.published_events: List[Dict[str, Any]] = []
        self.fail = False

    async def publish(self, subject: str, payload: Dict[str, Any]) -> bool:
        if self.fail:
            raise ConnectionError("nats down")
        self.published_events.append({"subject": subject, "data": payload})
        return True

    def subjects(self) -> List[str]:
        return [e["subject"] for e in self.published_events]

    def get_events_by_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [e["data"] for e in self.published_events if e["subject"] == event_type]


# ====================
# Engine
# ====================


class Engine:
    """All components wired together, plus test helpers"""

    def __init__(self):
        self.repository = InMemoryWorkflowRepository()
        self.directory = FakeDirectory()
        self.hub = FakeHub()
        self.bus = MockEventBus()
        self.publisher = WorkflowEventPublisher(self.bus)

        self.audience = AudienceMatcher(self.directory, page_size=2, retry_attempts=2, retry_wait_multiplier=0)
        self.guard = ConsentGuard(self.repository, ConsentConfig())
        self.gateway = DispatchGateway(self.hub, self.repository)
        self.executor = StepExecutor(
            repository=self.repository,
            guard=self.guard,
            gateway=self.gateway,
            audience=self.audience,
            retry_config=RetryConfig(),
            event_publisher=self.publisher,
        )
        self.scheduler = SchedulerLoop(self.repository, self.executor, SchedulerConfig(), owner="scheduler-a")
        self.listener = TriggerListener(
            repository=self.repository,
            audience=self.audience,
            config=TriggerConfig(),
            consent_config=ConsentConfig(),
            event_publisher=self.publisher,
        )
        self.admin = CampaignAdmin(self.repository, self.listener, self.publisher)
        self.handler = WorkflowEventHandler(trigger_listener=self.listener, dispatch_gateway=self.gateway)

    async def add_campaign(self, campaign: CampaignDefinition) -> CampaignDefinition:
        return await self.repository.save_campaign(campaign)

    async def enrollment_for(self, campaign_id: str, recipient_id: str) -> Optional[Enrollment]:
        for enrollment in self.repository.enrollments.values():
            if enrollment.campaign_id == campaign_id and enrollment.recipient_id == recipient_id:
                return enrollment.model_copy(deep=True)
        return None

    async def reload(self, enrollment_id: str) -> Enrollment:
        return await self.repository.get_enrollment(enrollment_id)

    async def run(self, now: datetime) -> int:
        return await self.scheduler.run_once(now)


# ====================
# Fixtures
# ====================


@pytest.fixture
def factory():
    """Test data factory"""
    return CampaignWorkflowTestDataFactory()


@pytest.fixture
def engine():
    """Fresh engine over an empty in-memory store"""
    return Engine()


@pytest.fixture
def now(factory):
    """2026-03-02 12:00 UTC"""
    return factory.make_time()
