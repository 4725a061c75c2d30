"""
Step Executor

Advances one leased enrollment as far as it can go in a single pass:
through CONDITION / BRANCH steps, SENDs that are allowed now, and WAITs
already due, stopping when the enrollment parks or finishes. Every
transition is a version-checked save, so a concurrent archive or a lost
lease surfaces as SchedulerLeaseConflict instead of a lost update.

Sends are at-most-once per (enrollment, step): a SENT record makes the
step a no-op on replay, and the hub receives a stable idempotency key
for the window between dispatch and record.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo

from core.config import RetryConfig
from .audience_matcher import AudienceMatcher
from .consent_guard import ConsentGuard
from .dispatch_gateway import DispatchGateway
from .models import (
    END_STEP,
    BranchStep,
    CampaignDefinition,
    ConditionStep,
    DispatchOutcome,
    Enrollment,
    EnrollmentStatus,
    GuardOutcome,
    SendLogEntry,
    SendStep,
    StepExecutionRecord,
    StepResult,
    WaitStep,
)
from .predicates import evaluate, lookup_path, needs_live_recipient
from .protocols import (
    AudienceQueryError,
    ChannelDeliveryError,
    WorkflowRepositoryProtocol,
)
from .wait_schedule import resolve_zone, wait_target

logger = logging.getLogger(__name__)


def retry_backoff(attempt: int, config: RetryConfig) -> timedelta:
    """Delay before retry number attempt+1: base * 2^(attempt-1), capped"""
    seconds = config.base_seconds * (2 ** max(attempt - 1, 0))
    return timedelta(seconds=min(seconds, config.max_seconds))


class StepExecutor:
    """Runs campaign steps for leased enrollments"""

    def __init__(
        self,
        repository: WorkflowRepositoryProtocol,
        guard: ConsentGuard,
        gateway: DispatchGateway,
        audience: AudienceMatcher,
        retry_config: Optional[RetryConfig] = None,
        wait_grace_minutes: int = 5,
        event_publisher=None,
    ):
        self.repository = repository
        self.guard = guard
        self.gateway = gateway
        self.audience = audience
        self.retry_config = retry_config or RetryConfig()
        self.wait_grace = timedelta(minutes=wait_grace_minutes)
        self.event_publisher = event_publisher

    # ====================
    # Entry point
    # ====================

    async def execute(self, enrollment: Enrollment, now: datetime) -> Enrollment:
        """
        Run steps until the enrollment parks or reaches a terminal status.

        Raises:
            SchedulerLeaseConflict: the enrollment changed underneath us
        """
        if not enrollment.is_open:
            return enrollment

        campaign = await self.repository.get_campaign_version(
            enrollment.campaign_id, enrollment.campaign_version
        )
        if campaign is None:
            logger.error(
                f"Definition {enrollment.campaign_id} v{enrollment.campaign_version} missing for {enrollment.enrollment_id}"
            )
            return await self._finish(
                enrollment, EnrollmentStatus.FAILED, now, error="campaign definition missing"
            )

        # The graph is acyclic, so one pass visits each step at most once
        for _ in range(len(campaign.steps) + 1):
            if enrollment.current_step_id == END_STEP:
                return await self._finish(enrollment, EnrollmentStatus.COMPLETED, now)

            step = campaign.get_step(enrollment.current_step_id)
            if step is None:
                return await self._finish(
                    enrollment,
                    EnrollmentStatus.FAILED,
                    now,
                    error=f"unknown step {enrollment.current_step_id}",
                )

            if isinstance(step, SendStep):
                enrollment, keep_going = await self._run_send(campaign, enrollment, step, now)
            elif isinstance(step, WaitStep):
                enrollment, keep_going = await self._run_wait(campaign, enrollment, step, now)
            elif isinstance(step, ConditionStep):
                enrollment, keep_going = await self._run_condition(enrollment, step, now)
            elif isinstance(step, BranchStep):
                enrollment, keep_going = await self._run_branch(enrollment, step, now)
            else:
                raise TypeError(f"Unknown step type: {type(step).__name__}")

            if not keep_going:
                return enrollment

        return enrollment

    # ====================
    # Transitions
    # ====================

    async def _save(self, enrollment: Enrollment, now: datetime) -> Enrollment:
        enrollment.updated_at = now
        return await self.repository.save_enrollment(enrollment, expected_version=enrollment.version)

    async def _advance(self, enrollment: Enrollment, next_step_id: str, now: datetime) -> Enrollment:
        enrollment.current_step_id = next_step_id
        enrollment.step_entered_at = now
        enrollment.status = EnrollmentStatus.ACTIVE
        enrollment.next_wake_at = None
        enrollment.last_error = None
        return await self._save(enrollment, now)

    async def _park(
        self, enrollment: Enrollment, until: datetime, now: datetime, error: Optional[str] = None
    ) -> Enrollment:
        enrollment.status = EnrollmentStatus.WAITING
        enrollment.next_wake_at = until
        if error is not None:
            enrollment.last_error = error
        return await self._save(enrollment, now)

    async def _finish(
        self,
        enrollment: Enrollment,
        status: EnrollmentStatus,
        now: datetime,
        error: Optional[str] = None,
    ) -> Enrollment:
        enrollment.status = status
        enrollment.next_wake_at = None
        enrollment.completed_at = now
        if status == EnrollmentStatus.COMPLETED:
            enrollment.current_step_id = END_STEP
        if error is not None:
            enrollment.last_error = error
        saved = await self._save(enrollment, now)
        logger.info(f"Enrollment {saved.enrollment_id} finished: {status.value}")
        if self.event_publisher:
            await self.event_publisher.publish_enrollment_finished(saved)
        return saved

    def _zone(self, campaign: CampaignDefinition, enrollment: Enrollment) -> ZoneInfo:
        return resolve_zone(
            lookup_path(enrollment.context, "recipient.timezone"),
            fallback=campaign.timezone,
        )

    # ====================
    # SEND
    # ====================

    async def _failed_attempts(self, enrollment_id: str, step_id: str) -> int:
        records = await self.repository.list_records(enrollment_id)
        return sum(
            1 for r in records
            if r.step_id == step_id and r.result == StepResult.FAILED_RETRYABLE
        )

    async def _run_send(
        self,
        campaign: CampaignDefinition,
        enrollment: Enrollment,
        step: SendStep,
        now: datetime,
    ) -> Tuple[Enrollment, bool]:
        next_step_id = campaign.next_of(step)

        sent = await self.repository.find_sent_record(enrollment.enrollment_id, step.step_id)
        if sent is not None:
            logger.info(f"Step {step.step_id} of {enrollment.enrollment_id} already sent, advancing")
            return await self._advance(enrollment, next_step_id, now), True

        tz = self._zone(campaign, enrollment)
        decision = await self.guard.check_campaign_send(
            campaign,
            enrollment.recipient_id,
            step.channel,
            now,
            tz=tz,
            enrollment_id=enrollment.enrollment_id,
            step_id=step.step_id,
        )
        if decision.outcome == GuardOutcome.DENY:
            return await self._finish(
                enrollment, EnrollmentStatus.UNSUBSCRIBED, now, error=decision.reason
            ), False
        if decision.outcome == GuardOutcome.DEFER:
            return await self._park(enrollment, decision.until, now), False

        # Atomic cap enforcement across campaigns
        cap = self.guard.cap_for(campaign.campaign_type, campaign.frequency_cap)
        claimed = await self.repository.claim_send_slot(
            SendLogEntry(
                recipient_id=enrollment.recipient_id,
                campaign_type=campaign.campaign_type,
                campaign_id=campaign.campaign_id,
                enrollment_id=enrollment.enrollment_id,
                step_id=step.step_id,
                sent_at=now,
            ),
            cap_count=cap.count if cap else None,
            window_start=self.guard.cap_window_start(cap, now) if cap else None,
        )
        if not claimed:
            until = await self.guard.frequency_defer_until(
                enrollment.recipient_id, cap, now, enrollment.enrollment_id, step.step_id
            )
            logger.info(f"Lost send slot race for {enrollment.recipient_id}, deferring")
            return await self._park(enrollment, until or now, now), False

        attempt = await self._failed_attempts(enrollment.enrollment_id, step.step_id) + 1
        idempotency_key = f"{enrollment.enrollment_id}:{step.step_id}"

        try:
            recipient = await self.audience.fetch_recipient(enrollment.recipient_id)
            result = await self.gateway.send(
                recipient, step.channel, step.template_ref, enrollment.context, idempotency_key
            )
        except (ChannelDeliveryError, AudienceQueryError) as e:
            await self.repository.release_send_slot(enrollment.enrollment_id, step.step_id)
            return await self._transient_failure(enrollment, step, attempt, str(e), now), False
        except Exception as e:
            logger.error(
                f"Unexpected error sending {step.step_id} of {enrollment.enrollment_id}: {e}", exc_info=True
            )
            await self.repository.release_send_slot(enrollment.enrollment_id, step.step_id)
            return await self._transient_failure(enrollment, step, attempt, f"unexpected error: {e}", now), False

        if result.outcome == DispatchOutcome.ACCEPTED:
            await self.repository.append_record(StepExecutionRecord(
                enrollment_id=enrollment.enrollment_id,
                step_id=step.step_id,
                attempt_number=attempt,
                started_at=now,
                result=StepResult.SENT,
                dispatch_id=result.dispatch_id,
                next_step_id=next_step_id,
            ))
            if self.event_publisher:
                await self.event_publisher.publish_message_sent(
                    enrollment, step.step_id, step.channel, result.dispatch_id
                )
            return await self._advance(enrollment, next_step_id, now), True

        await self.repository.release_send_slot(enrollment.enrollment_id, step.step_id)

        if result.outcome == DispatchOutcome.SKIPPED:
            await self.repository.append_record(StepExecutionRecord(
                enrollment_id=enrollment.enrollment_id,
                step_id=step.step_id,
                attempt_number=attempt,
                started_at=now,
                result=StepResult.SKIPPED,
                error_detail=result.reason,
                next_step_id=next_step_id,
            ))
            return await self._advance(enrollment, next_step_id, now), True

        await self.repository.append_record(StepExecutionRecord(
            enrollment_id=enrollment.enrollment_id,
            step_id=step.step_id,
            attempt_number=attempt,
            started_at=now,
            result=StepResult.FAILED_PERMANENT,
            error_detail=result.reason,
            dispatch_id=result.dispatch_id,
        ))
        return await self._finish(enrollment, EnrollmentStatus.FAILED, now, error=result.reason), False

    async def _transient_failure(
        self,
        enrollment: Enrollment,
        step: SendStep,
        attempt: int,
        detail: str,
        now: datetime,
    ) -> Enrollment:
        exhausted = attempt >= self.retry_config.max_attempts
        await self.repository.append_record(StepExecutionRecord(
            enrollment_id=enrollment.enrollment_id,
            step_id=step.step_id,
            attempt_number=attempt,
            started_at=now,
            result=StepResult.FAILED_PERMANENT if exhausted else StepResult.FAILED_RETRYABLE,
            error_detail=detail,
        ))

        if exhausted:
            logger.error(
                f"Send {step.step_id} of {enrollment.enrollment_id} failed after {attempt} attempts: {detail}"
            )
            return await self._finish(enrollment, EnrollmentStatus.FAILED, now, error=detail)

        delay = retry_backoff(attempt, self.retry_config)
        logger.warning(
            f"Send {step.step_id} of {enrollment.enrollment_id} attempt {attempt} failed, retrying in {delay}: {detail}"
        )
        return await self._park(enrollment, now + delay, now, error=detail)

    # ====================
    # WAIT
    # ====================

    async def _run_wait(
        self,
        campaign: CampaignDefinition,
        enrollment: Enrollment,
        step: WaitStep,
        now: datetime,
    ) -> Tuple[Enrollment, bool]:
        next_step_id = campaign.next_of(step)
        target = wait_target(
            step, enrollment.step_entered_at, enrollment.context, self._zone(campaign, enrollment)
        )

        if target is None:
            logger.info(
                f"Anchor {step.anchor!r} absent for {enrollment.enrollment_id}, continuing"
            )
            return await self._advance(enrollment, next_step_id, now), True

        if target > now:
            if enrollment.status == EnrollmentStatus.WAITING and enrollment.next_wake_at == target:
                return enrollment, False
            return await self._park(enrollment, target, now), False

        if now - target > self.wait_grace:
            logger.info(
                f"Wait {step.step_id} of {enrollment.enrollment_id} was due {target.isoformat()}, continuing late"
            )
        return await self._advance(enrollment, next_step_id, now), True

    # ====================
    # CONDITION / BRANCH
    # ====================

    async def _evaluation_data(self, enrollment: Enrollment, predicates) -> Dict[str, Any]:
        data = dict(enrollment.context)
        if any(needs_live_recipient(p) for p in predicates):
            recipient = await self.audience.fetch_recipient(enrollment.recipient_id)
            if recipient is not None:
                data["recipient"] = recipient.to_context()
        return data

    async def _record_decision(
        self, enrollment: Enrollment, step_id: str, matched: bool, next_step_id: str, now: datetime
    ) -> None:
        await self.repository.append_record(StepExecutionRecord(
            enrollment_id=enrollment.enrollment_id,
            step_id=step_id,
            started_at=now,
            result=StepResult.CONDITION_TRUE if matched else StepResult.CONDITION_FALSE,
            next_step_id=next_step_id,
        ))

    async def _run_condition(
        self, enrollment: Enrollment, step: ConditionStep, now: datetime
    ) -> Tuple[Enrollment, bool]:
        data = await self._evaluation_data(enrollment, [step.predicate])
        matched = evaluate(step.predicate, data, now)
        next_step_id = step.true_step_id if matched else step.false_step_id
        await self._record_decision(enrollment, step.step_id, matched, next_step_id, now)
        return await self._advance(enrollment, next_step_id, now), True

    async def _run_branch(
        self, enrollment: Enrollment, step: BranchStep, now: datetime
    ) -> Tuple[Enrollment, bool]:
        data = await self._evaluation_data(enrollment, [arm.predicate for arm in step.branches])
        next_step_id = step.default_step_id or END_STEP
        matched = False
        for arm in step.branches:
            if evaluate(arm.predicate, data, now):
                next_step_id = arm.next_step_id
                matched = True
                break
        await self._record_decision(enrollment, step.step_id, matched, next_step_id, now)
        return await self._advance(enrollment, next_step_id, now), True
