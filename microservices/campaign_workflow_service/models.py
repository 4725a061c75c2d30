"""
Campaign Workflow Service Data Models

Canonical data structures for campaign definitions, enrollments and the
append-only execution history.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


END_STEP = "end"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_id(prefix: str) -> str:
    """Generate a unique ID with prefix"""
    return f"{prefix}_{uuid4().hex[:16]}"


# =============================================================================
# ENUMS
# =============================================================================

class CampaignType(str, Enum):
    """Campaign purpose; drives consent rules"""
    MARKETING = "marketing"
    REMINDER = "reminder"
    FOLLOW_UP = "follow_up"
    SURVEY = "survey"
    WAITLIST = "waitlist"


class TriggerType(str, Enum):
    """How recipients enter a campaign"""
    EVENT = "event"
    SCHEDULED = "scheduled"
    RECURRING = "recurring"


class CampaignStatus(str, Enum):
    """Campaign lifecycle status"""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class ChannelType(str, Enum):
    """Delivery channel type"""
    SMS = "sms"
    EMAIL = "email"
    PUSH = "push"
    IN_APP = "in_app"


class StepType(str, Enum):
    SEND = "send"
    WAIT = "wait"
    CONDITION = "condition"
    BRANCH = "branch"


class EnrollmentStatus(str, Enum):
    """Enrollment lifecycle status"""
    PENDING = "pending"
    ACTIVE = "active"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNSUBSCRIBED = "unsubscribed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ENROLLMENT_STATUSES


TERMINAL_ENROLLMENT_STATUSES = frozenset({
    EnrollmentStatus.COMPLETED,
    EnrollmentStatus.FAILED,
    EnrollmentStatus.SKIPPED,
    EnrollmentStatus.UNSUBSCRIBED,
    EnrollmentStatus.CANCELLED,
})


class EnrollmentSource(str, Enum):
    """What created an enrollment"""
    EVENT = "event"
    SCHEDULED = "scheduled"
    RECURRING = "recurring"
    MANUAL = "manual"


class StepResult(str, Enum):
    """Outcome of one step attempt"""
    SENT = "sent"
    SKIPPED = "skipped"
    CONDITION_TRUE = "condition_true"
    CONDITION_FALSE = "condition_false"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_PERMANENT = "failed_permanent"


class DeliveryStatus(str, Enum):
    """Asynchronous disposition reported by the messaging hub"""
    QUEUED = "queued"
    DELIVERED = "delivered"
    FAILED = "failed"
    BOUNCED = "bounced"
    OPENED = "opened"
    CLICKED = "clicked"


class SuppressionScope(str, Enum):
    MARKETING = "marketing"
    ALL = "all"


class TriggerRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED_RETRYABLE = "failed_retryable"


class RecurrenceFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class RecipientStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ComparisonOperator(str, Enum):
    """Field comparison operators"""
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    IN = "in"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class TimeOperator(str, Enum):
    BEFORE = "before"
    AFTER = "after"


# =============================================================================
# PREDICATES
# =============================================================================

class FieldComparison(BaseModel):
    """Compare a dotted context field against a literal"""
    kind: Literal["field"] = "field"
    field: str = Field(..., min_length=1, description="Dotted path, e.g. appointment.type")
    op: ComparisonOperator = ComparisonOperator.EQ
    value: Any = None


class TimeComparison(BaseModel):
    """Compare a timestamp field against now shifted by an offset"""
    kind: Literal["time"] = "time"
    field: str = Field(..., min_length=1)
    op: TimeOperator = TimeOperator.BEFORE
    offset_minutes: int = 0


class HasOpenBalance(BaseModel):
    """True when the recipient's live open balance exceeds min_amount"""
    kind: Literal["has_open_balance"] = "has_open_balance"
    min_amount: float = Field(0.0, ge=0)


Predicate = Annotated[
    Union[FieldComparison, TimeComparison, HasOpenBalance],
    Field(discriminator="kind"),
]


# =============================================================================
# STEPS
# =============================================================================

class SendStep(BaseModel):
    type: Literal["send"] = "send"
    step_id: str = Field(..., min_length=1)
    channel: ChannelType
    template_ref: str = Field(..., min_length=1)
    next_step_id: Optional[str] = None


class WaitStep(BaseModel):
    """Wait a fixed duration or until an anchor expression resolves"""
    type: Literal["wait"] = "wait"
    step_id: str = Field(..., min_length=1)
    duration_minutes: Optional[int] = Field(None, ge=0)
    anchor: Optional[str] = Field(None, description="e.g. '48h before appointment.start'")
    next_step_id: Optional[str] = None

    @model_validator(mode="after")
    def _one_target(self):
        if (self.duration_minutes is None) == (self.anchor is None):
            raise ValueError("wait step needs exactly one of duration_minutes or anchor")
        return self


class ConditionStep(BaseModel):
    type: Literal["condition"] = "condition"
    step_id: str = Field(..., min_length=1)
    predicate: Predicate
    true_step_id: str
    false_step_id: str


class BranchArm(BaseModel):
    predicate: Predicate
    next_step_id: str


class BranchStep(BaseModel):
    """First matching arm wins; default_step_id is required at activation"""
    type: Literal["branch"] = "branch"
    step_id: str = Field(..., min_length=1)
    branches: List[BranchArm] = Field(default_factory=list)
    default_step_id: Optional[str] = None


StepDefinition = Annotated[
    Union[SendStep, WaitStep, ConditionStep, BranchStep],
    Field(discriminator="type"),
]


# =============================================================================
# CAMPAIGN DEFINITION
# =============================================================================

class AudienceCriteria(BaseModel):
    """Recipient filter; unset fields do not constrain"""
    recipient_status: Optional[RecipientStatus] = None
    has_email: Optional[bool] = None
    has_phone: Optional[bool] = None
    communication_opt_in: Optional[bool] = None
    tags: List[str] = Field(default_factory=list)
    attributes: List[FieldComparison] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return (
            self.recipient_status is None
            and self.has_email is None
            and self.has_phone is None
            and self.communication_opt_in is None
            and not self.tags
            and not self.attributes
        )


class RecurrenceRule(BaseModel):
    """Recurring trigger rule, evaluated in the campaign timezone"""
    frequency: RecurrenceFrequency
    time_of_day: str = Field("09:00", description="HH:MM")
    days_of_week: List[int] = Field(default_factory=list, description="0=Monday .. 6=Sunday")
    days_of_month: List[int] = Field(default_factory=list)


class FrequencyCap(BaseModel):
    count: int = Field(1, ge=1)
    window_days: int = Field(7, ge=1)


class SendWindow(BaseModel):
    """Allowed local send hours; start > end wraps past midnight"""
    start: str = Field(..., description="HH:MM")
    end: str = Field(..., description="HH:MM")


class CampaignDefinition(BaseModel):
    """Versioned campaign workflow definition"""
    campaign_id: str = Field(default_factory=lambda: make_id("cmp"))
    clinic_id: str
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    campaign_type: CampaignType
    status: CampaignStatus = CampaignStatus.DRAFT
    version: int = Field(1, ge=1)

    trigger_type: TriggerType
    trigger_event: Optional[str] = None
    trigger_schedule: Optional[datetime] = None
    recurrence: Optional[RecurrenceRule] = None
    refresh_events: List[str] = Field(default_factory=list)

    audience: AudienceCriteria = Field(default_factory=AudienceCriteria)
    exclusion: AudienceCriteria = Field(default_factory=AudienceCriteria)
    steps: List[StepDefinition] = Field(default_factory=list)

    frequency_cap: Optional[FrequencyCap] = None
    recontact_interval_days: Optional[int] = Field(None, ge=0)
    send_window: Optional[SendWindow] = None
    timezone: str = "UTC"

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    activated_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    def get_step(self, step_id: str):
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def first_step_id(self) -> str:
        return self.steps[0].step_id if self.steps else END_STEP

    def implicit_next(self, step_id: str) -> str:
        """Step declared after step_id, or the terminus"""
        ids = [s.step_id for s in self.steps]
        index = ids.index(step_id)
        return ids[index + 1] if index + 1 < len(ids) else END_STEP

    def next_of(self, step) -> str:
        """Successor of a SEND or WAIT step"""
        return step.next_step_id or self.implicit_next(step.step_id)


# =============================================================================
# RECIPIENTS AND EVENTS
# =============================================================================

class Recipient(BaseModel):
    """Recipient record as returned by the directory"""
    recipient_id: str
    clinic_id: Optional[str] = None
    status: RecipientStatus = RecipientStatus.ACTIVE
    email: Optional[str] = None
    phone: Optional[str] = None
    push_token: Optional[str] = None
    communication_opt_in: bool = True
    timezone: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    open_balance: float = 0.0

    def to_context(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "status": self.status.value,
            "timezone": self.timezone,
            "has_email": bool(self.email),
            "has_phone": bool(self.phone),
            "communication_opt_in": self.communication_opt_in,
            "tags": list(self.tags),
            "open_balance": self.open_balance,
            **self.attributes,
        }


class DomainEvent(BaseModel):
    """Inbound business event (appointment.booked, payment.due, ...)"""
    event_type: str = Field(..., min_length=1)
    recipient_id: str = Field(..., min_length=1)
    clinic_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# ENROLLMENT AND HISTORY
# =============================================================================

class Enrollment(BaseModel):
    """One recipient's progress through one campaign version"""
    enrollment_id: str = Field(default_factory=lambda: make_id("enr"))
    campaign_id: str
    campaign_version: int
    clinic_id: Optional[str] = None
    recipient_id: str
    current_step_id: str
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    next_wake_at: Optional[datetime] = None
    step_entered_at: datetime = Field(default_factory=utcnow)
    context: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: EnrollmentSource = EnrollmentSource.EVENT
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    version: int = 1
    last_error: Optional[str] = None
    enrolled_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = {"from_attributes": True}

    @property
    def is_open(self) -> bool:
        return not self.status.is_terminal


class StepExecutionRecord(BaseModel):
    """Append-only record of one step attempt"""
    record_id: str = Field(default_factory=lambda: make_id("rec"))
    enrollment_id: str
    step_id: str
    attempt_number: int = 1
    started_at: datetime = Field(default_factory=utcnow)
    result: StepResult
    error_detail: Optional[str] = None
    dispatch_id: Optional[str] = None
    next_step_id: Optional[str] = None


class DeliveryStatusRecord(BaseModel):
    """Delivery callback stored for audit"""
    dispatch_id: str
    status: DeliveryStatus
    detail: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)
    enrollment_id: Optional[str] = None
    step_id: Optional[str] = None


class SuppressionEntry(BaseModel):
    recipient_id: str
    scope: SuppressionScope = SuppressionScope.MARKETING
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class SendLogEntry(BaseModel):
    """Per-recipient send, counted by the frequency cap"""
    recipient_id: str
    campaign_type: CampaignType
    campaign_id: str
    enrollment_id: str
    step_id: str
    sent_at: datetime = Field(default_factory=utcnow)


class TriggerRun(BaseModel):
    """Firing bookkeeping for one occurrence of a scheduled/recurring campaign"""
    campaign_id: str
    occurrence_at: datetime
    status: TriggerRunStatus = TriggerRunStatus.RUNNING
    claimed_at: datetime = Field(default_factory=utcnow)
    enrolled_count: int = 0
    error_detail: Optional[str] = None


class PendingEventTrigger(BaseModel):
    """
    Event enrollment that could not be evaluated because the recipient
    directory was unavailable. Replayed on every tick until it resolves.
    """
    pending_id: str = Field(default_factory=lambda: make_id("pet"))
    campaign_id: str
    event: DomainEvent
    status: TriggerRunStatus = TriggerRunStatus.FAILED_RETRYABLE
    attempts: int = 1
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# GUARD AND DISPATCH OUTCOMES
# =============================================================================

class GuardOutcome(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    DEFER = "defer"


class GuardDecision(BaseModel):
    outcome: GuardOutcome
    reason: Optional[str] = None
    until: Optional[datetime] = None

    @classmethod
    def allow(cls) -> "GuardDecision":
        return cls(outcome=GuardOutcome.ALLOW)

    @classmethod
    def deny(cls, reason: str) -> "GuardDecision":
        return cls(outcome=GuardOutcome.DENY, reason=reason)

    @classmethod
    def defer(cls, until: datetime, reason: str) -> "GuardDecision":
        return cls(outcome=GuardOutcome.DEFER, until=until, reason=reason)


class DispatchOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class DispatchResult(BaseModel):
    outcome: DispatchOutcome
    dispatch_id: Optional[str] = None
    reason: Optional[str] = None


# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================

class CampaignCreateRequest(BaseModel):
    clinic_id: str
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    campaign_type: CampaignType
    trigger_type: TriggerType
    trigger_event: Optional[str] = None
    trigger_schedule: Optional[datetime] = None
    recurrence: Optional[RecurrenceRule] = None
    refresh_events: List[str] = Field(default_factory=list)
    audience: AudienceCriteria = Field(default_factory=AudienceCriteria)
    exclusion: AudienceCriteria = Field(default_factory=AudienceCriteria)
    steps: List[StepDefinition] = Field(default_factory=list)
    frequency_cap: Optional[FrequencyCap] = None
    recontact_interval_days: Optional[int] = Field(None, ge=0)
    send_window: Optional[SendWindow] = None
    timezone: str = "UTC"


class CampaignUpdateRequest(BaseModel):
    """Partial update; only set fields are applied"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    trigger_event: Optional[str] = None
    trigger_schedule: Optional[datetime] = None
    recurrence: Optional[RecurrenceRule] = None
    refresh_events: Optional[List[str]] = None
    audience: Optional[AudienceCriteria] = None
    exclusion: Optional[AudienceCriteria] = None
    steps: Optional[List[StepDefinition]] = None
    frequency_cap: Optional[FrequencyCap] = None
    recontact_interval_days: Optional[int] = Field(None, ge=0)
    send_window: Optional[SendWindow] = None
    timezone: Optional[str] = None


class CampaignResponse(BaseModel):
    campaign: CampaignDefinition
    message: Optional[str] = None


class CampaignListResponse(BaseModel):
    campaigns: List[CampaignDefinition] = Field(default_factory=list)
    total: int = 0


class ManualTriggerRequest(BaseModel):
    recipient_id: str = Field(..., min_length=1)
    context: Dict[str, Any] = Field(default_factory=dict)


class EnrollmentResponse(BaseModel):
    enrollment: Enrollment
    records: List[StepExecutionRecord] = Field(default_factory=list)


class EventIngestResponse(BaseModel):
    event_type: str
    enrolled: List[str] = Field(default_factory=list)
    refreshed: List[str] = Field(default_factory=list)
    deferred: List[str] = Field(default_factory=list, description="Campaigns whose audience check is retried on the next tick")


class TickRequest(BaseModel):
    now: Optional[datetime] = None


class TickResponse(BaseModel):
    fired: Dict[str, int] = Field(default_factory=dict)
    processed: int = 0


class DeliveryStatusRequest(BaseModel):
    dispatch_id: str = Field(..., min_length=1)
    status: DeliveryStatus
    detail: Optional[str] = None
    occurred_at: Optional[datetime] = None


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    service: str
    port: int
    version: str
    dependencies: Dict[str, str] = Field(default_factory=dict)
