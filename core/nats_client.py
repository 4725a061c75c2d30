"""
NATS Client for Python Microservices
Provides event-driven communication between services

This module wraps nats-py with JSON encoding, subject-pattern subscriptions
and an Event envelope shared by publishers and handlers.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

import nats
from nats.aio.client import Client as NATS
from nats.aio.msg import Msg

from core.config import InfraConfig


class DecimalEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


logger = logging.getLogger(__name__)


class Event:
    """Event envelope"""

    def __init__(
        self,
        event_type: str,
        source: str,
        data: Dict[str, Any],
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.type = event_type
        self.source = source
        self.data = data
        self.subject = subject
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.metadata = metadata or {}
        self.version = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "subject": self.subject,
            "timestamp": self.timestamp,
            "data": self.data,
            "metadata": self.metadata,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        event = cls.__new__(cls)
        event.id = data.get("id")
        event.type = data.get("type") or data.get("event_type")
        event.source = data.get("source")
        event.subject = data.get("subject")
        event.timestamp = data.get("timestamp")
        event.data = data.get("data", {})
        event.metadata = data.get("metadata", {})
        event.version = data.get("version", "1.0.0")
        return event


EventHandler = Callable[[Event], Awaitable[None]]


class NATSEventBus:
    """
    NATS event bus using nats-py.

    Subjects are event types (e.g. "appointment.booked"); subscriptions
    accept NATS wildcards ("appointment.>").
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[InfraConfig] = None,
    ):
        """
        Initialize NATS Event Bus.

        Args:
            service_name: Name of the service (used as queue group)
            config: Optional infrastructure config
        """
        self.service_name = service_name
        self.config = config or InfraConfig.from_env()
        self.servers = self.config.nats_servers

        self._client: Optional[NATS] = None
        self._subscriptions: List[Any] = []

        logger.info(f"NATS EventBus initialized: {self.servers}")

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def connect(self):
        """Connect to NATS"""
        try:
            self._client = await nats.connect(
                servers=[self.servers],
                name=self.service_name,
            )
            logger.info(f"Connected to NATS as {self.service_name}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    async def publish(self, subject: str, payload: Dict[str, Any]) -> bool:
        """Publish a JSON payload on a subject"""
        if not self.is_connected:
            logger.error("Not connected to NATS")
            return False

        try:
            data = json.dumps(payload, cls=DecimalEncoder).encode()
            await self._client.publish(subject, data)
            logger.debug(f"Published to {subject}")
            return True
        except Exception as e:
            logger.error(f"Error publishing to {subject}: {e}")
            return False

    async def publish_event(self, event: Event) -> bool:
        """Publish an Event envelope using its type as subject"""
        return await self.publish(event.type, event.to_dict())

    async def subscribe_to_events(self, pattern: str, handler: EventHandler) -> Optional[str]:
        """
        Subscribe to events with a subject pattern.

        Messages are decoded into Event envelopes; handler errors are logged
        and do not stop the subscription.

        Args:
            pattern: Subject pattern to subscribe to (e.g., "appointment.>")
            handler: Async callback receiving the decoded Event
        """
        if not self.is_connected:
            logger.error("Not connected to NATS")
            return None

        async def _on_message(msg: Msg):
            try:
                payload = json.loads(msg.data.decode())
                event = Event.from_dict(payload)
                if not event.type:
                    event.type = msg.subject
                await handler(event)
            except Exception as e:
                logger.error(f"Error handling message on {msg.subject}: {e}", exc_info=True)

        subscription = await self._client.subscribe(
            pattern, queue=self.service_name, cb=_on_message
        )
        self._subscriptions.append(subscription)
        logger.info(f"Subscribed to {pattern}")
        return pattern

    async def close(self):
        """Drain subscriptions and close the connection"""
        for subscription in self._subscriptions:
            try:
                await subscription.unsubscribe()
            except Exception as e:
                logger.debug(f"Unsubscribe note: {e}")
        self._subscriptions.clear()

        if self._client is not None:
            await self._client.drain()
            self._client = None
            logger.info("NATS connection closed")


async def get_event_bus(service_name: str, config: Optional[InfraConfig] = None) -> NATSEventBus:
    """Create and connect an event bus for a service"""
    bus = NATSEventBus(service_name=service_name, config=config)
    await bus.connect()
    return bus
