"""
Campaign Workflow Event Data Models

Event type definitions and data structures for campaign workflow events.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Event Type Definitions
# =============================================================================


class WorkflowEventType(str, Enum):
    """
    Events published by campaign_workflow_service.

    Other services should reference these when subscribing.
    """
    # Campaign lifecycle events
    CAMPAIGN_ACTIVATED = "workflow.campaign.activated"
    CAMPAIGN_PAUSED = "workflow.campaign.paused"
    CAMPAIGN_RESUMED = "workflow.campaign.resumed"
    CAMPAIGN_REVISED = "workflow.campaign.revised"
    CAMPAIGN_ARCHIVED = "workflow.campaign.archived"

    # Trigger events
    TRIGGER_FIRED = "workflow.trigger.fired"

    # Enrollment events
    ENROLLMENT_CREATED = "workflow.enrollment.created"
    ENROLLMENT_COMPLETED = "workflow.enrollment.completed"
    ENROLLMENT_FAILED = "workflow.enrollment.failed"
    ENROLLMENT_UNSUBSCRIBED = "workflow.enrollment.unsubscribed"

    # Message events
    MESSAGE_SENT = "workflow.message.sent"


class WorkflowSubscribedEventType(str, Enum):
    """
    Event subjects campaign_workflow_service subscribes to.

    Business events are matched against campaign triggers by name, so
    whole domains are subscribed with wildcards.
    """
    APPOINTMENT = "appointment.>"
    TREATMENT = "treatment.>"
    PATIENT = "patient.>"
    PAYMENT = "payment.>"

    # Delivery callbacks (from messaging hub)
    DELIVERY_QUEUED = "messaging.delivery.queued"
    DELIVERY_DELIVERED = "messaging.delivery.delivered"
    DELIVERY_FAILED = "messaging.delivery.failed"
    DELIVERY_BOUNCED = "messaging.delivery.bounced"
    DELIVERY_OPENED = "messaging.delivery.opened"
    DELIVERY_CLICKED = "messaging.delivery.clicked"


DOMAIN_SUBJECTS = [
    WorkflowSubscribedEventType.APPOINTMENT,
    WorkflowSubscribedEventType.TREATMENT,
    WorkflowSubscribedEventType.PATIENT,
    WorkflowSubscribedEventType.PAYMENT,
]

DELIVERY_SUBJECT = "messaging.delivery.*"


# =============================================================================
# Published Event Data Models
# =============================================================================


class CampaignStatusEventData(BaseModel):
    """Data for workflow.campaign.* events"""
    campaign_id: str
    clinic_id: str
    status: str
    version: int
    timestamp: datetime


class TriggerFiredEventData(BaseModel):
    """Data for workflow.trigger.fired event"""
    campaign_id: str
    occurrence_at: datetime
    enrolled_count: int = 0


class EnrollmentEventData(BaseModel):
    """Data for workflow.enrollment.* events"""
    enrollment_id: str
    campaign_id: str
    campaign_version: int
    recipient_id: str
    status: str
    triggered_by: Optional[str] = None
    last_error: Optional[str] = None
    timestamp: datetime


class MessageSentEventData(BaseModel):
    """Data for workflow.message.sent event"""
    enrollment_id: str
    campaign_id: str
    recipient_id: str
    step_id: str
    channel: str
    dispatch_id: Optional[str] = None
    timestamp: datetime


# =============================================================================
# Subscribed Event Data Models
# =============================================================================


class DeliveryCallbackEventData(BaseModel):
    """Data from messaging.delivery.* events"""
    dispatch_id: str = Field(..., alias="message_id")
    status: Optional[str] = None
    detail: Optional[str] = None
    occurred_at: Optional[datetime] = None

    model_config = {"populate_by_name": True}


class BusinessEventData(BaseModel):
    """Data from appointment.* / treatment.* / patient.* / payment.* events"""
    recipient_id: str = Field(..., alias="patient_id")
    clinic_id: Optional[str] = None
    occurred_at: Optional[datetime] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}
