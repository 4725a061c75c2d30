"""
Campaign Workflow Event Handlers

Handles incoming business events and messaging hub delivery callbacks.
"""

import logging
from typing import Any, Dict

from core.nats_client import Event
from .models import (
    WorkflowSubscribedEventType,
    BusinessEventData,
    DeliveryCallbackEventData,
)
from ..models import DeliveryStatus, DomainEvent, utcnow

logger = logging.getLogger(__name__)

DELIVERY_PREFIX = "messaging.delivery."

_ENVELOPE_KEYS = {"recipient_id", "patient_id", "clinic_id", "occurred_at", "payload"}


class WorkflowEventHandler:
    """Handler for campaign workflow subscribed events"""

    def __init__(
        self,
        trigger_listener=None,
        dispatch_gateway=None,
    ):
        self.trigger_listener = trigger_listener
        self.dispatch_gateway = dispatch_gateway

    async def on_bus_event(self, event: Event) -> None:
        """Adapter for NATSEventBus subscriptions"""
        await self.handle_event(event.type, event.data or {})

    async def handle_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """Route event to appropriate handler"""
        handlers = {
            WorkflowSubscribedEventType.DELIVERY_QUEUED.value: self.handle_delivery_status,
            WorkflowSubscribedEventType.DELIVERY_DELIVERED.value: self.handle_delivery_status,
            WorkflowSubscribedEventType.DELIVERY_FAILED.value: self.handle_delivery_status,
            WorkflowSubscribedEventType.DELIVERY_BOUNCED.value: self.handle_delivery_status,
            WorkflowSubscribedEventType.DELIVERY_OPENED.value: self.handle_delivery_status,
            WorkflowSubscribedEventType.DELIVERY_CLICKED.value: self.handle_delivery_status,
        }

        # Business events are open-ended; anything not a delivery callback
        # is offered to the trigger listener
        handler = handlers.get(event_type, self.handle_business_event)
        try:
            await handler(event_type, data)
        except Exception as e:
            logger.error(f"Error handling event {event_type}: {e}", exc_info=True)

    async def handle_business_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """
        Handle appointment.* / treatment.* / patient.* / payment.* events.

        Enrolls into matching EVENT campaigns and refreshes open enrollments.
        """
        if not self.trigger_listener:
            return

        if event_type.startswith(DELIVERY_PREFIX):
            logger.debug(f"No handler for event type: {event_type}")
            return

        event_data = BusinessEventData(**data)
        payload = event_data.payload or {
            key: value for key, value in data.items() if key not in _ENVELOPE_KEYS
        }

        event = DomainEvent(
            event_type=event_type,
            recipient_id=event_data.recipient_id,
            clinic_id=event_data.clinic_id,
            occurred_at=event_data.occurred_at or utcnow(),
            payload=payload,
        )
        result = await self.trigger_listener.on_event(event)
        logger.info(
            f"{event_type} for {event.recipient_id}: {len(result.enrolled)} enrolled, "
            f"{len(result.refreshed)} refreshed, {len(result.deferred)} deferred"
        )

    async def handle_delivery_status(self, event_type: str, data: Dict[str, Any]) -> None:
        """Handle messaging.delivery.* callbacks"""
        if not self.dispatch_gateway:
            return

        event_data = DeliveryCallbackEventData(**data)
        status = event_data.status or event_type[len(DELIVERY_PREFIX):]
        await self.dispatch_gateway.record_delivery_status(
            dispatch_id=event_data.dispatch_id,
            status=DeliveryStatus(status),
            detail=event_data.detail,
            occurred_at=event_data.occurred_at,
        )


__all__ = ["WorkflowEventHandler"]
