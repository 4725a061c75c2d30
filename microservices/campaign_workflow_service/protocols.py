"""
Campaign Workflow Service Protocols

Defines interfaces for dependency injection and testing.
Following the protocol-based architecture pattern.
"""

from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple

from .models import (
    AudienceCriteria,
    CampaignDefinition,
    CampaignStatus,
    CampaignType,
    DeliveryStatusRecord,
    Enrollment,
    EnrollmentStatus,
    PendingEventTrigger,
    Recipient,
    SendLogEntry,
    StepExecutionRecord,
    SuppressionEntry,
    TriggerRun,
    TriggerRunStatus,
    TriggerType,
)


# ====================
# Repository Protocol
# ====================


class WorkflowRepositoryProtocol(Protocol):
    """Protocol for campaign definitions, enrollments and execution history"""

    async def initialize(self) -> None:
        """Initialize repository connection"""
        ...

    async def close(self) -> None:
        """Close repository connection"""
        ...

    async def health_check(self) -> bool:
        """Check repository health"""
        ...

    # Campaign definitions
    async def save_campaign(self, campaign: CampaignDefinition) -> CampaignDefinition:
        """Upsert the current definition and keep a snapshot of its version"""
        ...

    async def get_campaign(self, campaign_id: str) -> Optional[CampaignDefinition]:
        """Get the current definition of a campaign"""
        ...

    async def get_campaign_version(
        self, campaign_id: str, version: int
    ) -> Optional[CampaignDefinition]:
        """Get the definition an enrollment was created against"""
        ...

    async def list_campaigns(
        self,
        status: Optional[List[CampaignStatus]] = None,
        trigger_type: Optional[TriggerType] = None,
        clinic_id: Optional[str] = None,
    ) -> List[CampaignDefinition]:
        """List campaigns with filters"""
        ...

    async def delete_campaign(self, campaign_id: str) -> bool:
        """Delete a campaign and its versions"""
        ...

    # Enrollments
    async def create_enrollment(self, enrollment: Enrollment) -> Enrollment:
        """Insert an enrollment; raises EnrollmentConflict if one is open"""
        ...

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        """Get enrollment by ID"""
        ...

    async def find_open_enrollment(
        self, campaign_id: str, recipient_id: str
    ) -> Optional[Enrollment]:
        """Get the non-terminal enrollment for (campaign, recipient)"""
        ...

    async def last_enrolled_at(
        self, campaign_id: str, recipient_id: str
    ) -> Optional[datetime]:
        """Most recent enrollment time for (campaign, recipient)"""
        ...

    async def list_enrollments(
        self,
        campaign_id: str,
        status: Optional[List[EnrollmentStatus]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Enrollment]:
        """List enrollments of a campaign"""
        ...

    async def lease_due(
        self, now: datetime, limit: int, owner: str, lease_seconds: int
    ) -> List[Enrollment]:
        """Atomically lease due enrollments of ACTIVE campaigns"""
        ...

    async def save_enrollment(
        self, enrollment: Enrollment, expected_version: int
    ) -> Enrollment:
        """Version-checked write; raises SchedulerLeaseConflict on mismatch"""
        ...

    async def release_lease(self, enrollment_id: str, owner: str) -> None:
        """Drop a lease held by owner"""
        ...

    async def cancel_open_enrollments(self, campaign_id: str, now: datetime) -> int:
        """Cancel every non-terminal enrollment of a campaign"""
        ...

    async def refresh_context(
        self, enrollment_id: str, patch: Dict[str, Any], now: datetime
    ) -> Optional[Enrollment]:
        """Merge patch into the context and wake a parked WAIT"""
        ...

    # Step history
    async def append_record(self, record: StepExecutionRecord) -> StepExecutionRecord:
        """Append a step execution record"""
        ...

    async def list_records(self, enrollment_id: str) -> List[StepExecutionRecord]:
        """All records of an enrollment in insertion order"""
        ...

    async def find_sent_record(
        self, enrollment_id: str, step_id: str
    ) -> Optional[StepExecutionRecord]:
        """SENT record for a step, if any"""
        ...

    async def find_record_by_dispatch(
        self, dispatch_id: str
    ) -> Optional[StepExecutionRecord]:
        """Record holding a messaging hub dispatch id"""
        ...

    async def append_delivery_status(
        self, status: DeliveryStatusRecord
    ) -> DeliveryStatusRecord:
        """Store a delivery callback"""
        ...

    async def list_delivery_statuses(self, dispatch_id: str) -> List[DeliveryStatusRecord]:
        """Delivery callbacks for a dispatch"""
        ...

    # Send log
    async def claim_send_slot(
        self,
        entry: SendLogEntry,
        cap_count: Optional[int] = None,
        window_start: Optional[datetime] = None,
    ) -> bool:
        """Append entry unless the cap for its campaign type is already reached"""
        ...

    async def release_send_slot(self, enrollment_id: str, step_id: str) -> None:
        """Remove the send log entry of a failed dispatch"""
        ...

    async def list_sends(
        self, recipient_id: str, campaign_type: CampaignType, since: datetime
    ) -> List[SendLogEntry]:
        """Sends of a campaign type to a recipient since a time"""
        ...

    # Suppressions
    async def get_suppressions(self, recipient_id: str) -> List[SuppressionEntry]:
        """Suppression entries of a recipient"""
        ...

    async def add_suppression(self, entry: SuppressionEntry) -> SuppressionEntry:
        """Record a suppression"""
        ...

    # Trigger runs
    async def claim_trigger_run(
        self, campaign_id: str, occurrence_at: datetime, now: datetime, stale_after: timedelta
    ) -> Optional[TriggerRun]:
        """Claim an occurrence; None when completed or running elsewhere"""
        ...

    async def finish_trigger_run(
        self,
        campaign_id: str,
        occurrence_at: datetime,
        status: TriggerRunStatus,
        enrolled_count: int = 0,
        error_detail: Optional[str] = None,
    ) -> None:
        """Mark an occurrence completed or retryable"""
        ...

    # Pending event triggers
    async def save_pending_trigger(self, pending: PendingEventTrigger) -> PendingEventTrigger:
        """
        Record a failed event enrollment attempt.

        Keyed by campaign, recipient, event type and occurrence time; a
        repeat failure bumps attempts on the existing entry.
        """
        ...

    async def list_pending_triggers(self, limit: int = 100) -> List[PendingEventTrigger]:
        """Oldest pending event triggers first"""
        ...

    async def delete_pending_trigger(self, pending_id: str) -> bool:
        """Drop a resolved pending event trigger"""
        ...


# ====================
# External Service Protocols
# ====================


class RecipientDirectoryProtocol(Protocol):
    """Protocol for the recipient directory"""

    async def get_recipient(self, recipient_id: str) -> Optional[Recipient]:
        """Get a recipient with live attributes"""
        ...

    async def search_recipients(
        self,
        criteria: AudienceCriteria,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> Tuple[List[Recipient], Optional[str]]:
        """One page of recipients matching criteria, plus the next cursor"""
        ...


class MessagingHubProtocol(Protocol):
    """Protocol for the messaging hub"""

    async def send_message(
        self,
        recipient: Recipient,
        channel: str,
        template_ref: str,
        variables: Dict[str, Any],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        """Submit a message; returns the hub response"""
        ...


class EventBusProtocol(Protocol):
    """Protocol for event publishing"""

    async def publish(self, subject: str, payload: Dict[str, Any]) -> bool:
        """Publish a payload on a subject"""
        ...


class AudienceSource(Protocol):
    """What the trigger listener needs from the audience matcher"""

    async def fetch_recipient(self, recipient_id: str) -> Optional[Recipient]:
        ...

    async def matches(
        self, recipient_id: str, criteria: AudienceCriteria, exclusion: AudienceCriteria
    ) -> Optional[Recipient]:
        ...

    def enumerate(
        self, criteria: AudienceCriteria, exclusion: AudienceCriteria
    ) -> AsyncIterator[Recipient]:
        ...


# ====================
# Custom Exceptions
# ====================


class CampaignWorkflowError(Exception):
    """Base exception for campaign workflow errors"""
    pass


class ValidationError(CampaignWorkflowError):
    """Invalid campaign definition, expression or request"""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class CampaignNotFoundError(CampaignWorkflowError):
    """Campaign not found"""

    def __init__(self, campaign_id: str):
        self.campaign_id = campaign_id
        super().__init__(f"Campaign not found: {campaign_id}")


class EnrollmentNotFoundError(CampaignWorkflowError):
    """Enrollment not found"""

    def __init__(self, enrollment_id: str):
        self.enrollment_id = enrollment_id
        super().__init__(f"Enrollment not found: {enrollment_id}")


class InvalidCampaignStateError(CampaignWorkflowError):
    """Operation not allowed in the campaign's current status"""

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message)


class EnrollmentConflict(CampaignWorkflowError):
    """An open enrollment already exists for (campaign, recipient)"""

    def __init__(self, campaign_id: str, recipient_id: str):
        self.campaign_id = campaign_id
        self.recipient_id = recipient_id
        super().__init__(
            f"Recipient {recipient_id} already has an open enrollment in campaign {campaign_id}"
        )


class SchedulerLeaseConflict(CampaignWorkflowError):
    """Enrollment changed since it was read"""

    def __init__(self, enrollment_id: str, expected_version: int):
        self.enrollment_id = enrollment_id
        self.expected_version = expected_version
        super().__init__(
            f"Enrollment {enrollment_id} is no longer at version {expected_version}"
        )


class AudienceQueryError(CampaignWorkflowError):
    """Recipient directory unavailable"""
    pass


class ChannelDeliveryError(CampaignWorkflowError):
    """Messaging hub failure; transient errors are retried with backoff"""

    def __init__(self, message: str, transient: bool = True):
        self.transient = transient
        super().__init__(message)
