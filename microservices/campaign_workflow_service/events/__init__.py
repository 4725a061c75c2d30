"""
Campaign Workflow Service Events

Event handlers and publishers for campaign workflow service.
"""

from .models import (
    WorkflowEventType,
    WorkflowSubscribedEventType,
    DOMAIN_SUBJECTS,
    DELIVERY_SUBJECT,
    CampaignStatusEventData,
    TriggerFiredEventData,
    EnrollmentEventData,
    MessageSentEventData,
    DeliveryCallbackEventData,
    BusinessEventData,
)
from .handlers import WorkflowEventHandler
from .publishers import WorkflowEventPublisher

__all__ = [
    # Event Types
    "WorkflowEventType",
    "WorkflowSubscribedEventType",
    "DOMAIN_SUBJECTS",
    "DELIVERY_SUBJECT",
    # Event Data Models
    "CampaignStatusEventData",
    "TriggerFiredEventData",
    "EnrollmentEventData",
    "MessageSentEventData",
    "DeliveryCallbackEventData",
    "BusinessEventData",
    # Handler and Publisher
    "WorkflowEventHandler",
    "WorkflowEventPublisher",
]
