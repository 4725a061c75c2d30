"""
Campaign Workflow In-Memory Repository

Single-process implementation of WorkflowRepositoryProtocol. Every mutation
runs under one asyncio.Lock so the uniqueness, leasing and version rules
hold across concurrent scheduler tasks in the same event loop. Models are
copied on the way in and out; callers never share state with the store.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from .models import (
    CampaignDefinition,
    CampaignStatus,
    CampaignType,
    DeliveryStatusRecord,
    Enrollment,
    EnrollmentStatus,
    PendingEventTrigger,
    SendLogEntry,
    StepExecutionRecord,
    StepResult,
    SuppressionEntry,
    TriggerRun,
    TriggerRunStatus,
    TriggerType,
    WaitStep,
)
from .predicates import deep_merge
from .protocols import EnrollmentConflict, SchedulerLeaseConflict

logger = logging.getLogger(__name__)


class InMemoryWorkflowRepository:
    """Workflow repository kept in process memory"""

    def __init__(self):
        self._lock = asyncio.Lock()
        self.campaigns: Dict[str, CampaignDefinition] = {}
        self.campaign_versions: Dict[Tuple[str, int], CampaignDefinition] = {}
        self.enrollments: Dict[str, Enrollment] = {}
        self.records: List[StepExecutionRecord] = []
        self.delivery_statuses: List[DeliveryStatusRecord] = []
        self.send_log: List[SendLogEntry] = []
        self.suppressions: List[SuppressionEntry] = []
        self.trigger_runs: Dict[Tuple[str, datetime], TriggerRun] = {}
        self.pending_triggers: Dict[str, PendingEventTrigger] = {}

    async def initialize(self) -> None:
        logger.info("Campaign workflow repository initialized in memory")

    async def close(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True

    # ====================
    # Campaign Definitions
    # ====================

    async def save_campaign(self, campaign: CampaignDefinition) -> CampaignDefinition:
        async with self._lock:
            stored = campaign.model_copy(deep=True)
            self.campaigns[campaign.campaign_id] = stored
            self.campaign_versions[(campaign.campaign_id, campaign.version)] = stored
            return stored.model_copy(deep=True)

    async def get_campaign(self, campaign_id: str) -> Optional[CampaignDefinition]:
        campaign = self.campaigns.get(campaign_id)
        return campaign.model_copy(deep=True) if campaign else None

    async def get_campaign_version(
        self, campaign_id: str, version: int
    ) -> Optional[CampaignDefinition]:
        campaign = self.campaign_versions.get((campaign_id, version))
        return campaign.model_copy(deep=True) if campaign else None

    async def list_campaigns(
        self,
        status: Optional[List[CampaignStatus]] = None,
        trigger_type: Optional[TriggerType] = None,
        clinic_id: Optional[str] = None,
    ) -> List[CampaignDefinition]:
        results = list(self.campaigns.values())
        if status:
            results = [c for c in results if c.status in status]
        if trigger_type:
            results = [c for c in results if c.trigger_type == trigger_type]
        if clinic_id:
            results = [c for c in results if c.clinic_id == clinic_id]
        return [c.model_copy(deep=True) for c in results]

    async def delete_campaign(self, campaign_id: str) -> bool:
        async with self._lock:
            if campaign_id not in self.campaigns:
                return False
            del self.campaigns[campaign_id]
            for key in [k for k in self.campaign_versions if k[0] == campaign_id]:
                del self.campaign_versions[key]
            return True

    # ====================
    # Enrollments
    # ====================

    def _open_for(self, campaign_id: str, recipient_id: str) -> Optional[Enrollment]:
        for enrollment in self.enrollments.values():
            if (
                enrollment.campaign_id == campaign_id
                and enrollment.recipient_id == recipient_id
                and enrollment.is_open
            ):
                return enrollment
        return None

    async def create_enrollment(self, enrollment: Enrollment) -> Enrollment:
        async with self._lock:
            if self._open_for(enrollment.campaign_id, enrollment.recipient_id):
                raise EnrollmentConflict(enrollment.campaign_id, enrollment.recipient_id)
            stored = enrollment.model_copy(deep=True)
            self.enrollments[stored.enrollment_id] = stored
            return stored.model_copy(deep=True)

    async def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        enrollment = self.enrollments.get(enrollment_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    async def find_open_enrollment(
        self, campaign_id: str, recipient_id: str
    ) -> Optional[Enrollment]:
        enrollment = self._open_for(campaign_id, recipient_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    async def last_enrolled_at(
        self, campaign_id: str, recipient_id: str
    ) -> Optional[datetime]:
        times = [
            e.enrolled_at
            for e in self.enrollments.values()
            if e.campaign_id == campaign_id and e.recipient_id == recipient_id
        ]
        return max(times) if times else None

    async def list_enrollments(
        self,
        campaign_id: str,
        status: Optional[List[EnrollmentStatus]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Enrollment]:
        results = [e for e in self.enrollments.values() if e.campaign_id == campaign_id]
        if status:
            results = [e for e in results if e.status in status]
        results.sort(key=lambda e: e.enrolled_at)
        return [e.model_copy(deep=True) for e in results[offset:offset + limit]]

    def _is_due(self, enrollment: Enrollment, now: datetime) -> bool:
        if enrollment.status == EnrollmentStatus.ACTIVE:
            return True
        return (
            enrollment.status == EnrollmentStatus.WAITING
            and enrollment.next_wake_at is not None
            and enrollment.next_wake_at <= now
        )

    async def lease_due(
        self, now: datetime, limit: int, owner: str, lease_seconds: int
    ) -> List[Enrollment]:
        async with self._lock:
            active_campaigns = {
                c.campaign_id for c in self.campaigns.values()
                if c.status == CampaignStatus.ACTIVE
            }
            candidates = [
                e for e in self.enrollments.values()
                if e.campaign_id in active_campaigns
                and self._is_due(e, now)
                and (e.lease_expires_at is None or e.lease_expires_at <= now)
            ]
            candidates.sort(key=lambda e: e.next_wake_at or e.enrolled_at)

            leased = []
            for enrollment in candidates[:limit]:
                enrollment.lease_owner = owner
                enrollment.lease_expires_at = now + timedelta(seconds=lease_seconds)
                enrollment.version += 1
                leased.append(enrollment.model_copy(deep=True))
            return leased

    async def save_enrollment(
        self, enrollment: Enrollment, expected_version: int
    ) -> Enrollment:
        async with self._lock:
            current = self.enrollments.get(enrollment.enrollment_id)
            if current is None or current.version != expected_version:
                raise SchedulerLeaseConflict(enrollment.enrollment_id, expected_version)
            stored = enrollment.model_copy(deep=True)
            stored.version = expected_version + 1
            self.enrollments[stored.enrollment_id] = stored
            return stored.model_copy(deep=True)

    async def release_lease(self, enrollment_id: str, owner: str) -> None:
        async with self._lock:
            enrollment = self.enrollments.get(enrollment_id)
            if enrollment and enrollment.lease_owner == owner:
                enrollment.lease_owner = None
                enrollment.lease_expires_at = None

    async def cancel_open_enrollments(self, campaign_id: str, now: datetime) -> int:
        async with self._lock:
            cancelled = 0
            for enrollment in self.enrollments.values():
                if enrollment.campaign_id == campaign_id and enrollment.is_open:
                    enrollment.status = EnrollmentStatus.CANCELLED
                    enrollment.next_wake_at = None
                    enrollment.completed_at = now
                    enrollment.updated_at = now
                    enrollment.version += 1
                    cancelled += 1
            return cancelled

    async def refresh_context(
        self, enrollment_id: str, patch: Dict[str, Any], now: datetime
    ) -> Optional[Enrollment]:
        async with self._lock:
            enrollment = self.enrollments.get(enrollment_id)
            if enrollment is None or not enrollment.is_open:
                return None
            enrollment.context = deep_merge(enrollment.context, patch)
            if enrollment.status == EnrollmentStatus.WAITING:
                campaign = self.campaign_versions.get(
                    (enrollment.campaign_id, enrollment.campaign_version)
                )
                step = campaign.get_step(enrollment.current_step_id) if campaign else None
                if isinstance(step, WaitStep):
                    enrollment.next_wake_at = now
            enrollment.updated_at = now
            enrollment.version += 1
            return enrollment.model_copy(deep=True)

    # ====================
    # Step History
    # ====================

    async def append_record(self, record: StepExecutionRecord) -> StepExecutionRecord:
        async with self._lock:
            self.records.append(record.model_copy(deep=True))
            return record

    async def list_records(self, enrollment_id: str) -> List[StepExecutionRecord]:
        return [r.model_copy() for r in self.records if r.enrollment_id == enrollment_id]

    async def find_sent_record(
        self, enrollment_id: str, step_id: str
    ) -> Optional[StepExecutionRecord]:
        for record in self.records:
            if (
                record.enrollment_id == enrollment_id
                and record.step_id == step_id
                and record.result == StepResult.SENT
            ):
                return record.model_copy()
        return None

    async def find_record_by_dispatch(
        self, dispatch_id: str
    ) -> Optional[StepExecutionRecord]:
        for record in self.records:
            if record.dispatch_id == dispatch_id:
                return record.model_copy()
        return None

    async def append_delivery_status(
        self, status: DeliveryStatusRecord
    ) -> DeliveryStatusRecord:
        async with self._lock:
            self.delivery_statuses.append(status.model_copy())
            return status

    async def list_delivery_statuses(self, dispatch_id: str) -> List[DeliveryStatusRecord]:
        return [s.model_copy() for s in self.delivery_statuses if s.dispatch_id == dispatch_id]

    # ====================
    # Send Log
    # ====================

    async def claim_send_slot(
        self,
        entry: SendLogEntry,
        cap_count: Optional[int] = None,
        window_start: Optional[datetime] = None,
    ) -> bool:
        async with self._lock:
            for existing in self.send_log:
                if existing.enrollment_id == entry.enrollment_id and existing.step_id == entry.step_id:
                    return True
            if cap_count is not None and window_start is not None:
                used = sum(
                    1 for existing in self.send_log
                    if existing.recipient_id == entry.recipient_id
                    and existing.campaign_type == entry.campaign_type
                    and existing.sent_at > window_start
                )
                if used >= cap_count:
                    return False
            self.send_log.append(entry.model_copy())
            return True

    async def release_send_slot(self, enrollment_id: str, step_id: str) -> None:
        async with self._lock:
            self.send_log = [
                e for e in self.send_log
                if not (e.enrollment_id == enrollment_id and e.step_id == step_id)
            ]

    async def list_sends(
        self, recipient_id: str, campaign_type: CampaignType, since: datetime
    ) -> List[SendLogEntry]:
        sends = [
            e.model_copy() for e in self.send_log
            if e.recipient_id == recipient_id
            and e.campaign_type == campaign_type
            and e.sent_at > since
        ]
        sends.sort(key=lambda e: e.sent_at)
        return sends

    # ====================
    # Suppressions
    # ====================

    async def get_suppressions(self, recipient_id: str) -> List[SuppressionEntry]:
        return [s.model_copy() for s in self.suppressions if s.recipient_id == recipient_id]

    async def add_suppression(self, entry: SuppressionEntry) -> SuppressionEntry:
        async with self._lock:
            self.suppressions.append(entry.model_copy())
            return entry

    # ====================
    # Trigger Runs
    # ====================

    async def claim_trigger_run(
        self, campaign_id: str, occurrence_at: datetime, now: datetime, stale_after: timedelta
    ) -> Optional[TriggerRun]:
        async with self._lock:
            key = (campaign_id, occurrence_at)
            run = self.trigger_runs.get(key)
            if run is not None:
                if run.status == TriggerRunStatus.COMPLETED:
                    return None
                if run.status == TriggerRunStatus.RUNNING and run.claimed_at + stale_after > now:
                    return None
            claimed = TriggerRun(
                campaign_id=campaign_id,
                occurrence_at=occurrence_at,
                status=TriggerRunStatus.RUNNING,
                claimed_at=now,
            )
            self.trigger_runs[key] = claimed
            return claimed.model_copy()

    async def finish_trigger_run(
        self,
        campaign_id: str,
        occurrence_at: datetime,
        status: TriggerRunStatus,
        enrolled_count: int = 0,
        error_detail: Optional[str] = None,
    ) -> None:
        async with self._lock:
            run = self.trigger_runs.get((campaign_id, occurrence_at))
            if run is None:
                return
            run.status = status
            run.enrolled_count = enrolled_count
            run.error_detail = error_detail

    # ====================
    # Pending Event Triggers
    # ====================

    @staticmethod
    def _pending_key(pending: PendingEventTrigger) -> Tuple[str, str, str, datetime]:
        event = pending.event
        return (pending.campaign_id, event.recipient_id, event.event_type, event.occurred_at)

    async def save_pending_trigger(self, pending: PendingEventTrigger) -> PendingEventTrigger:
        async with self._lock:
            key = self._pending_key(pending)
            for existing in self.pending_triggers.values():
                if self._pending_key(existing) == key:
                    existing.attempts += 1
                    existing.last_error = pending.last_error
                    existing.updated_at = pending.updated_at
                    return existing.model_copy(deep=True)
            self.pending_triggers[pending.pending_id] = pending.model_copy(deep=True)
            return pending

    async def list_pending_triggers(self, limit: int = 100) -> List[PendingEventTrigger]:
        pending = sorted(self.pending_triggers.values(), key=lambda p: p.created_at)
        return [p.model_copy(deep=True) for p in pending[:limit]]

    async def delete_pending_trigger(self, pending_id: str) -> bool:
        async with self._lock:
            return self.pending_triggers.pop(pending_id, None) is not None
