"""
Campaign Workflow Event Publishers

Publishes workflow events to NATS.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..protocols import EventBusProtocol
from .models import (
    WorkflowEventType,
    CampaignStatusEventData,
    TriggerFiredEventData,
    EnrollmentEventData,
    MessageSentEventData,
)
from ..models import CampaignDefinition, ChannelType, Enrollment, EnrollmentStatus

logger = logging.getLogger(__name__)

ENROLLMENT_FINISHED_EVENTS = {
    EnrollmentStatus.COMPLETED: WorkflowEventType.ENROLLMENT_COMPLETED,
    EnrollmentStatus.FAILED: WorkflowEventType.ENROLLMENT_FAILED,
    EnrollmentStatus.UNSUBSCRIBED: WorkflowEventType.ENROLLMENT_UNSUBSCRIBED,
}


class WorkflowEventPublisher:
    """Publisher for campaign workflow events"""

    def __init__(self, nats_client: Optional[EventBusProtocol] = None):
        self.nats_client = nats_client
        self.source = "campaign_workflow_service"

    async def publish(
        self,
        event_type: WorkflowEventType,
        data: Dict[str, Any],
    ) -> bool:
        """
        Publish an event to NATS.

        Args:
            event_type: The event type enum
            data: Event data payload

        Returns:
            True if published successfully, False otherwise
        """
        if not self.nats_client:
            logger.debug(f"NATS client not configured, skipping publish: {event_type.value}")
            return False

        try:
            event = {
                "event_type": event_type.value,
                "source": self.source,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "data": data,
            }

            published = await self.nats_client.publish(event_type.value, event)
            if published:
                logger.debug(f"Published event: {event_type.value}")
            return bool(published)

        except Exception as e:
            logger.error(f"Failed to publish event {event_type.value}: {e}")
            return False

    # ====================
    # Campaign Lifecycle Events
    # ====================

    async def publish_campaign_status(
        self,
        campaign: CampaignDefinition,
        event_type: WorkflowEventType,
    ) -> bool:
        data = CampaignStatusEventData(
            campaign_id=campaign.campaign_id,
            clinic_id=campaign.clinic_id,
            status=campaign.status.value,
            version=campaign.version,
            timestamp=datetime.now(timezone.utc),
        )
        return await self.publish(event_type, data.model_dump(mode="json"))

    async def publish_trigger_fired(
        self,
        campaign: CampaignDefinition,
        occurrence_at: datetime,
        enrolled_count: int,
    ) -> bool:
        data = TriggerFiredEventData(
            campaign_id=campaign.campaign_id,
            occurrence_at=occurrence_at,
            enrolled_count=enrolled_count,
        )
        return await self.publish(WorkflowEventType.TRIGGER_FIRED, data.model_dump(mode="json"))

    # ====================
    # Enrollment Events
    # ====================

    def _enrollment_data(self, enrollment: Enrollment) -> Dict[str, Any]:
        data = EnrollmentEventData(
            enrollment_id=enrollment.enrollment_id,
            campaign_id=enrollment.campaign_id,
            campaign_version=enrollment.campaign_version,
            recipient_id=enrollment.recipient_id,
            status=enrollment.status.value,
            triggered_by=enrollment.triggered_by.value,
            last_error=enrollment.last_error,
            timestamp=datetime.now(timezone.utc),
        )
        return data.model_dump(mode="json")

    async def publish_enrollment_created(self, enrollment: Enrollment) -> bool:
        return await self.publish(
            WorkflowEventType.ENROLLMENT_CREATED, self._enrollment_data(enrollment)
        )

    async def publish_enrollment_finished(self, enrollment: Enrollment) -> bool:
        """Publish completed / failed / unsubscribed for a terminal enrollment"""
        event_type = ENROLLMENT_FINISHED_EVENTS.get(enrollment.status)
        if event_type is None:
            return False
        return await self.publish(event_type, self._enrollment_data(enrollment))

    # ====================
    # Message Events
    # ====================

    async def publish_message_sent(
        self,
        enrollment: Enrollment,
        step_id: str,
        channel: ChannelType,
        dispatch_id: Optional[str],
    ) -> bool:
        data = MessageSentEventData(
            enrollment_id=enrollment.enrollment_id,
            campaign_id=enrollment.campaign_id,
            recipient_id=enrollment.recipient_id,
            step_id=step_id,
            channel=channel.value,
            dispatch_id=dispatch_id,
            timestamp=datetime.now(timezone.utc),
        )
        return await self.publish(WorkflowEventType.MESSAGE_SENT, data.model_dump(mode="json"))


__all__ = ["WorkflowEventPublisher"]
