"""
Trigger Listener

Turns business events and clock ticks into enrollments.

- EVENT campaigns enroll the event's recipient when it matches the audience
- Events named in a campaign's refresh_events patch the context of the
  recipient's open enrollment, re-anchoring a parked WAIT
- SCHEDULED and RECURRING campaigns fire once per occurrence; the
  occurrence is claimed in the store so concurrent ticks cannot both fire
- Event enrollments that hit a directory outage are stored as pending
  triggers and replayed on each tick
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from core.config import ConsentConfig, TriggerConfig
from .models import (
    CampaignDefinition,
    CampaignStatus,
    DomainEvent,
    Enrollment,
    EnrollmentSource,
    EnrollmentStatus,
    EventIngestResponse,
    PendingEventTrigger,
    Recipient,
    TriggerRunStatus,
    TriggerType,
    utcnow,
)
from .predicates import parse_timestamp
from .protocols import (
    AudienceQueryError,
    AudienceSource,
    EnrollmentConflict,
    InvalidCampaignStateError,
    WorkflowRepositoryProtocol,
)
from .recurrence import latest_occurrence
from .wait_schedule import resolve_zone

logger = logging.getLogger(__name__)


def event_context(event: DomainEvent, recipient: Optional[Recipient]) -> Dict[str, Any]:
    """Initial enrollment context for an event-triggered enrollment"""
    context = dict(event.payload)
    context["trigger"] = {
        "type": EnrollmentSource.EVENT.value,
        "event_type": event.event_type,
        "occurred_at": event.occurred_at.isoformat(),
    }
    if recipient is not None:
        context["recipient"] = recipient.to_context()
    return context


def occurrence_context(
    source: EnrollmentSource, occurrence_at: datetime, recipient: Recipient
) -> Dict[str, Any]:
    return {
        "trigger": {"type": source.value, "occurrence_at": occurrence_at.isoformat()},
        "recipient": recipient.to_context(),
    }


class TriggerListener:
    """Event and schedule driven enrollment"""

    def __init__(
        self,
        repository: WorkflowRepositoryProtocol,
        audience: AudienceSource,
        config: Optional[TriggerConfig] = None,
        consent_config: Optional[ConsentConfig] = None,
        event_publisher=None,
    ):
        self.repository = repository
        self.audience = audience
        self.config = config or TriggerConfig()
        self.consent_config = consent_config or ConsentConfig()
        self.event_publisher = event_publisher

    # ====================
    # Enrollment creation
    # ====================

    async def _enroll(
        self,
        campaign: CampaignDefinition,
        recipient_id: str,
        context: Dict[str, Any],
        source: EnrollmentSource,
        now: datetime,
    ) -> Enrollment:
        """Create an enrollment; raises EnrollmentConflict when one is open"""
        enrollment = Enrollment(
            campaign_id=campaign.campaign_id,
            campaign_version=campaign.version,
            clinic_id=campaign.clinic_id,
            recipient_id=recipient_id,
            current_step_id=campaign.first_step_id(),
            status=EnrollmentStatus.ACTIVE,
            step_entered_at=now,
            context=context,
            triggered_by=source,
            enrolled_at=now,
            updated_at=now,
        )
        created = await self.repository.create_enrollment(enrollment)
        logger.info(
            f"Enrolled {recipient_id} in {campaign.campaign_id} v{campaign.version} ({source.value})"
        )
        if self.event_publisher:
            await self.event_publisher.publish_enrollment_created(created)
        return created

    def _same_clinic(self, campaign: CampaignDefinition, clinic_id: Optional[str]) -> bool:
        return not clinic_id or not campaign.clinic_id or campaign.clinic_id == clinic_id

    # ====================
    # Events
    # ====================

    async def on_event(self, event: DomainEvent, now: Optional[datetime] = None) -> EventIngestResponse:
        """
        Handle one business event.

        When the directory is unavailable the enrollment attempt is stored
        as a pending trigger and replayed by on_tick; the campaign is
        reported in the response's deferred list.
        """
        now = now or utcnow()
        response = EventIngestResponse(event_type=event.event_type)

        campaigns = await self.repository.list_campaigns(
            status=[CampaignStatus.ACTIVE, CampaignStatus.PAUSED]
        )
        for campaign in campaigns:
            if not self._same_clinic(campaign, event.clinic_id):
                continue

            if event.event_type in campaign.refresh_events:
                refreshed = await self._refresh(campaign, event, now)
                if refreshed:
                    response.refreshed.append(refreshed)

            if (
                campaign.status == CampaignStatus.ACTIVE
                and campaign.trigger_type == TriggerType.EVENT
                and campaign.trigger_event == event.event_type
            ):
                try:
                    enrollment_id = await self._enroll_from_event(campaign, event, now)
                except AudienceQueryError as e:
                    logger.error(
                        f"Audience check failed for {campaign.campaign_id}, retrying on next tick: {e}"
                    )
                    await self.repository.save_pending_trigger(PendingEventTrigger(
                        campaign_id=campaign.campaign_id,
                        event=event,
                        last_error=str(e),
                        created_at=now,
                        updated_at=now,
                    ))
                    response.deferred.append(campaign.campaign_id)
                    continue
                if enrollment_id:
                    response.enrolled.append(enrollment_id)

        return response

    async def _enroll_from_event(
        self, campaign: CampaignDefinition, event: DomainEvent, now: datetime
    ) -> Optional[str]:
        existing = await self.repository.find_open_enrollment(campaign.campaign_id, event.recipient_id)
        if existing is not None:
            logger.info(
                f"Dropped {event.event_type} for {event.recipient_id}: already enrolled in {campaign.campaign_id}"
            )
            return None

        recipient = await self.audience.matches(event.recipient_id, campaign.audience, campaign.exclusion)
        if recipient is None:
            return None

        try:
            enrollment = await self._enroll(
                campaign, event.recipient_id, event_context(event, recipient), EnrollmentSource.EVENT, now
            )
        except EnrollmentConflict:
            logger.info(
                f"Dropped {event.event_type} for {event.recipient_id}: already enrolled in {campaign.campaign_id}"
            )
            return None
        return enrollment.enrollment_id

    async def _refresh(
        self, campaign: CampaignDefinition, event: DomainEvent, now: datetime
    ) -> Optional[str]:
        open_enrollment = await self.repository.find_open_enrollment(
            campaign.campaign_id, event.recipient_id
        )
        if open_enrollment is None:
            return None

        patch = dict(event.payload)
        patch["last_event"] = {
            "event_type": event.event_type,
            "occurred_at": event.occurred_at.isoformat(),
        }
        updated = await self.repository.refresh_context(open_enrollment.enrollment_id, patch, now)
        if updated is None:
            return None
        logger.info(f"Refreshed context of {updated.enrollment_id} from {event.event_type}")
        return updated.enrollment_id

    # ====================
    # Schedules
    # ====================

    def _occurrence(self, campaign: CampaignDefinition, now: datetime) -> Optional[datetime]:
        """Occurrence due at now, or None"""
        if campaign.trigger_type == TriggerType.SCHEDULED:
            scheduled = parse_timestamp(campaign.trigger_schedule)
            if scheduled is None or scheduled > now:
                return None
            return scheduled

        if campaign.trigger_type == TriggerType.RECURRING and campaign.recurrence:
            tz = resolve_zone(campaign.timezone)
            occurrence = latest_occurrence(campaign.recurrence, tz, now)
            if occurrence is None:
                return None
            activated = parse_timestamp(campaign.activated_at)
            if activated is not None and occurrence < activated:
                return None
            return occurrence

        return None

    async def on_tick(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Fire every SCHEDULED / RECURRING campaign whose occurrence is due.

        Returns:
            campaign_id -> recipients enrolled, for occurrences fired by this tick
        """
        now = now or utcnow()
        fired: Dict[str, int] = {}
        await self.retry_pending_events(now)

        campaigns = await self.repository.list_campaigns(status=[CampaignStatus.ACTIVE])
        for campaign in campaigns:
            occurrence = self._occurrence(campaign, now)
            if occurrence is None:
                continue
            count = await self._fire(campaign, occurrence, now)
            if count is not None:
                fired[campaign.campaign_id] = count
        return fired

    async def retry_pending_events(self, now: Optional[datetime] = None) -> int:
        """
        Replay event enrollments deferred by a directory outage.

        Resolved entries are dropped; entries that fail again stay pending
        with attempts bumped. Entries for paused campaigns wait for resume,
        entries for archived or deleted campaigns and entries older than
        pending_event_max_age_hours are discarded.

        Returns:
            Number of enrollments created
        """
        now = now or utcnow()
        enrolled = 0
        max_age = timedelta(hours=self.config.pending_event_max_age_hours)

        pending_triggers = await self.repository.list_pending_triggers(
            limit=self.config.pending_event_batch_size
        )
        for pending in pending_triggers:
            campaign = await self.repository.get_campaign(pending.campaign_id)
            if campaign is None or campaign.status not in (CampaignStatus.ACTIVE, CampaignStatus.PAUSED):
                await self.repository.delete_pending_trigger(pending.pending_id)
                continue
            if now - pending.created_at > max_age:
                logger.error(
                    f"Giving up on {pending.event.event_type} for {pending.event.recipient_id} in "
                    f"{pending.campaign_id} after {pending.attempts} attempts: {pending.last_error}"
                )
                await self.repository.delete_pending_trigger(pending.pending_id)
                continue
            if campaign.status == CampaignStatus.PAUSED:
                continue

            try:
                enrollment_id = await self._enroll_from_event(campaign, pending.event, now)
            except AudienceQueryError as e:
                logger.warning(
                    f"Pending {pending.event.event_type} for {pending.event.recipient_id} still failing: {e}"
                )
                pending.last_error = str(e)
                pending.updated_at = now
                await self.repository.save_pending_trigger(pending)
                continue

            await self.repository.delete_pending_trigger(pending.pending_id)
            if enrollment_id:
                enrolled += 1
                logger.info(
                    f"Replayed {pending.event.event_type} for {pending.event.recipient_id} into {pending.campaign_id}"
                )
        return enrolled

    async def _eligible(
        self, campaign: CampaignDefinition, recipient_id: str, occurrence_at: datetime, now: datetime
    ) -> bool:
        last = await self.repository.last_enrolled_at(campaign.campaign_id, recipient_id)
        if last is None:
            return True
        # Already enrolled for this occurrence by an earlier attempt
        if last >= occurrence_at:
            return False
        if campaign.trigger_type == TriggerType.RECURRING:
            interval = campaign.recontact_interval_days
            if interval is None:
                interval = self.consent_config.recontact_interval_days
            if now - last < timedelta(days=interval):
                return False
        return True

    async def _fire(
        self, campaign: CampaignDefinition, occurrence_at: datetime, now: datetime
    ) -> Optional[int]:
        run = await self.repository.claim_trigger_run(
            campaign.campaign_id,
            occurrence_at,
            now,
            timedelta(minutes=self.config.stale_run_minutes),
        )
        if run is None:
            return None

        source = (
            EnrollmentSource.RECURRING
            if campaign.trigger_type == TriggerType.RECURRING
            else EnrollmentSource.SCHEDULED
        )
        enrolled = 0
        try:
            async for recipient in self.audience.enumerate(campaign.audience, campaign.exclusion):
                if not await self._eligible(campaign, recipient.recipient_id, occurrence_at, now):
                    continue
                try:
                    await self._enroll(
                        campaign,
                        recipient.recipient_id,
                        occurrence_context(source, occurrence_at, recipient),
                        source,
                        now,
                    )
                    enrolled += 1
                except EnrollmentConflict:
                    logger.debug(f"{recipient.recipient_id} already enrolled in {campaign.campaign_id}")
        except AudienceQueryError as e:
            logger.error(
                f"Audience query failed for {campaign.campaign_id} at {occurrence_at.isoformat()}: {e}"
            )
            await self.repository.finish_trigger_run(
                campaign.campaign_id, occurrence_at, TriggerRunStatus.FAILED_RETRYABLE, enrolled, str(e)
            )
            return enrolled

        await self.repository.finish_trigger_run(
            campaign.campaign_id, occurrence_at, TriggerRunStatus.COMPLETED, enrolled
        )
        logger.info(
            f"Fired {campaign.campaign_id} occurrence {occurrence_at.isoformat()}: {enrolled} enrolled"
        )
        if self.event_publisher:
            await self.event_publisher.publish_trigger_fired(campaign, occurrence_at, enrolled)
        return enrolled

    # ====================
    # Manual
    # ====================

    async def trigger_manual(
        self,
        campaign: CampaignDefinition,
        recipient_id: str,
        context: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Enrollment:
        """
        Enroll one recipient directly, bypassing audience criteria.

        Raises:
            InvalidCampaignStateError: campaign is not active
            EnrollmentConflict: recipient already has an open enrollment
        """
        now = now or utcnow()
        if campaign.status != CampaignStatus.ACTIVE:
            raise InvalidCampaignStateError(
                f"Campaign {campaign.campaign_id} is not active", current_status=campaign.status.value
            )

        recipient = await self.audience.fetch_recipient(recipient_id)
        manual_context = dict(context or {})
        manual_context["trigger"] = {"type": EnrollmentSource.MANUAL.value, "occurred_at": now.isoformat()}
        if recipient is not None:
            manual_context["recipient"] = recipient.to_context()

        return await self._enroll(campaign, recipient_id, manual_context, EnrollmentSource.MANUAL, now)
