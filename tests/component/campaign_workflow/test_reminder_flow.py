"""
Component Tests for Event-Triggered Campaigns

Appointment reminder end to end: enrollment from appointment.booked,
anchored waits, context refresh on reschedule / confirmation, and
duplicate-trigger suppression.
"""

import pytest
from datetime import datetime, timedelta, timezone

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.campaign_workflow_service.protocols import InvalidCampaignStateError
from tests.contracts.campaign_workflow.data_contract import (
    END_STEP,
    AudienceCriteria,
    CampaignStatus,
    ChannelType,
    EnrollmentSource,
    EnrollmentStatus,
    SendStep,
    StepResult,
    WaitStep,
)


class TestEventEnrollment:
    """Enrollment from business events"""

    @pytest.mark.asyncio
    async def test_booked_event_enrolls_recipient(self, engine, factory, now):
        """appointment.booked creates one ACTIVE enrollment at the first step"""
        # Given: an active reminder campaign and a known recipient
        campaign = await engine.add_campaign(factory.make_appointment_reminder())
        recipient = engine.directory.add(factory.make_recipient())

        # When
        event = factory.make_event(
            recipient.recipient_id,
            payload=factory.make_appointment_payload(now + timedelta(days=5)),
        )
        result = await engine.listener.on_event(event, now)

        # Then
        assert len(result.enrolled) == 1
        enrollment = await engine.reload(result.enrolled[0])
        assert enrollment.status == EnrollmentStatus.ACTIVE
        assert enrollment.current_step_id == "wait_48h"
        assert enrollment.campaign_version == campaign.version
        assert enrollment.triggered_by == EnrollmentSource.EVENT
        assert enrollment.context["appointment"]["status"] == "booked"
        assert enrollment.context["recipient"]["recipient_id"] == recipient.recipient_id
        assert "workflow.enrollment.created" in engine.bus.subjects()

    @pytest.mark.asyncio
    async def test_duplicate_trigger_dropped_while_open(self, engine, factory, now):
        """A second trigger for an open enrollment is dropped"""
        campaign = await engine.add_campaign(factory.make_appointment_reminder())
        recipient = engine.directory.add(factory.make_recipient())
        payload = factory.make_appointment_payload(now + timedelta(days=5))

        first = await engine.listener.on_event(factory.make_event(recipient.recipient_id, payload=payload), now)
        second = await engine.listener.on_event(factory.make_event(recipient.recipient_id, payload=payload), now)

        assert len(first.enrolled) == 1
        assert second.enrolled == []
        enrollments = await engine.repository.list_enrollments(campaign.campaign_id)
        assert len(enrollments) == 1

    @pytest.mark.asyncio
    async def test_event_ignored_by_paused_campaign(self, engine, factory, now):
        await engine.add_campaign(factory.make_appointment_reminder(status=CampaignStatus.PAUSED))
        recipient = engine.directory.add(factory.make_recipient())

        result = await engine.listener.on_event(factory.make_event(recipient.recipient_id), now)

        assert result.enrolled == []

    @pytest.mark.asyncio
    async def test_event_from_other_clinic_ignored(self, engine, factory, now):
        await engine.add_campaign(factory.make_appointment_reminder())
        recipient = engine.directory.add(factory.make_recipient())
        event = factory.make_event(recipient.recipient_id)
        event.clinic_id = "cln_other"

        result = await engine.listener.on_event(event, now)

        assert result.enrolled == []

    @pytest.mark.asyncio
    async def test_recipient_outside_audience_not_enrolled(self, engine, factory, now):
        await engine.add_campaign(factory.make_appointment_reminder(
            audience=AudienceCriteria(has_phone=True),
        ))
        recipient = engine.directory.add(factory.make_recipient(phone=None))

        result = await engine.listener.on_event(factory.make_event(recipient.recipient_id), now)

        assert result.enrolled == []

    @pytest.mark.asyncio
    async def test_excluded_recipient_not_enrolled(self, engine, factory, now):
        await engine.add_campaign(factory.make_appointment_reminder(
            exclusion=AudienceCriteria(tags=["do_not_contact"]),
        ))
        recipient = engine.directory.add(factory.make_recipient(tags=["do_not_contact"]))

        result = await engine.listener.on_event(factory.make_event(recipient.recipient_id), now)

        assert result.enrolled == []

    @pytest.mark.asyncio
    async def test_unknown_recipient_not_enrolled(self, engine, factory, now):
        await engine.add_campaign(factory.make_appointment_reminder())

        result = await engine.listener.on_event(factory.make_event("pat_unknown"), now)

        assert result.enrolled == []


class TestAppointmentReminderFlow:
    """48h / 2h reminder with confirmation check"""

    async def _enroll(self, engine, factory, now, start):
        await engine.add_campaign(factory.make_appointment_reminder())
        recipient = engine.directory.add(factory.make_recipient())
        event = factory.make_event(recipient.recipient_id, payload=factory.make_appointment_payload(start))
        result = await engine.listener.on_event(event, now)
        return recipient, result.enrolled[0]

    @pytest.mark.asyncio
    async def test_unconfirmed_appointment_gets_both_reminders(self, engine, factory, now):
        start = now + timedelta(days=5)
        recipient, enrollment_id = await self._enroll(engine, factory, now, start)

        # Parks until 48h before the appointment
        await engine.run(now)
        enrollment = await engine.reload(enrollment_id)
        assert enrollment.status == EnrollmentStatus.WAITING
        assert enrollment.next_wake_at == start - timedelta(hours=48)

        # Nothing is due in between
        assert await engine.run(now + timedelta(days=1)) == 0

        # First reminder, still unconfirmed, parks until 2h before
        await engine.run(start - timedelta(hours=48))
        enrollment = await engine.reload(enrollment_id)
        assert engine.hub.templates() == ["appt_reminder_48h"]
        assert enrollment.current_step_id == "wait_2h"
        assert enrollment.next_wake_at == start - timedelta(hours=2)

        # Second reminder completes the flow
        await engine.run(start - timedelta(hours=2))
        enrollment = await engine.reload(enrollment_id)
        assert engine.hub.templates() == ["appt_reminder_48h", "appt_reminder_2h"]
        assert enrollment.status == EnrollmentStatus.COMPLETED
        assert enrollment.current_step_id == END_STEP
        assert enrollment.completed_at == start - timedelta(hours=2)

        results = [r.result for r in await engine.repository.list_records(enrollment_id)]
        assert results == [StepResult.SENT, StepResult.CONDITION_FALSE, StepResult.SENT]
        assert "workflow.enrollment.completed" in engine.bus.subjects()

    @pytest.mark.asyncio
    async def test_confirmed_appointment_skips_second_reminder(self, engine, factory, now):
        start = now + timedelta(days=5)
        recipient, enrollment_id = await self._enroll(engine, factory, now, start)
        await engine.run(now)

        # When: the appointment is confirmed while waiting
        confirmed = factory.make_event(
            recipient.recipient_id,
            event_type="appointment.confirmed",
            payload={"appointment": {"status": "confirmed"}},
        )
        result = await engine.listener.on_event(confirmed, now + timedelta(hours=1))
        assert result.refreshed == [enrollment_id]

        # Then: the merged context keeps the start time and ends after one send
        await engine.run(start - timedelta(hours=48))
        enrollment = await engine.reload(enrollment_id)
        assert enrollment.context["appointment"]["start"] == start.isoformat()
        assert engine.hub.templates() == ["appt_reminder_48h"]
        assert enrollment.status == EnrollmentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_reschedule_reanchors_waiting_step(self, engine, factory, now):
        start = now + timedelta(days=5)
        recipient, enrollment_id = await self._enroll(engine, factory, now, start)
        await engine.run(now)

        # When: the appointment moves five days later
        new_start = start + timedelta(days=5)
        moved = factory.make_event(
            recipient.recipient_id,
            event_type="appointment.rescheduled",
            payload=factory.make_appointment_payload(new_start),
        )
        refresh_time = now + timedelta(hours=2)
        await engine.listener.on_event(moved, refresh_time)

        # Then: the wait is woken and re-parked on the new anchor
        enrollment = await engine.reload(enrollment_id)
        assert enrollment.next_wake_at == refresh_time
        await engine.run(refresh_time)
        enrollment = await engine.reload(enrollment_id)
        assert enrollment.status == EnrollmentStatus.WAITING
        assert enrollment.next_wake_at == new_start - timedelta(hours=48)

        # The old instant passes without a send
        assert await engine.run(start - timedelta(hours=48)) == 0
        assert engine.hub.sent == []

        await engine.run(new_start - timedelta(hours=48))
        assert engine.hub.templates() == ["appt_reminder_48h"]

    @pytest.mark.asyncio
    async def test_missing_anchor_field_continues(self, engine, factory, now):
        """A wait whose anchor is absent from the context does not block"""
        await engine.add_campaign(factory.make_appointment_reminder())
        recipient = engine.directory.add(factory.make_recipient())
        result = await engine.listener.on_event(factory.make_event(recipient.recipient_id), now)

        await engine.run(now)

        assert engine.hub.templates()[0] == "appt_reminder_48h"
        enrollment = await engine.reload(result.enrolled[0])
        # appointment.status is also absent so the flow reaches the 2h send
        assert enrollment.status == EnrollmentStatus.COMPLETED


class TestBookingConfirmationScenario:
    """Confirm at booking, reminder two days ahead, day-of at 08:00"""

    def _campaign(self, factory):
        return factory.make_active_campaign(
            trigger_event="appointment.booked",
            steps=[
                SendStep(step_id="confirm", channel=ChannelType.SMS, template_ref="appt_confirm"),
                WaitStep(step_id="wait_reminder", anchor="48h before appointment.start"),
                SendStep(step_id="reminder", channel=ChannelType.SMS, template_ref="appt_reminder"),
                WaitStep(step_id="wait_day_of", anchor="day of appointment.start at 08:00"),
                SendStep(step_id="day_of", channel=ChannelType.SMS, template_ref="appt_day_of"),
            ],
        )

    @pytest.mark.asyncio
    async def test_three_messages_at_expected_times(self, engine, factory):
        # Given: booked on day 1 for day 10 at 14:00
        booked_at = datetime(2026, 3, 1, 10, 30, tzinfo=timezone.utc)
        start = datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc)
        reminder_at = datetime(2026, 3, 8, 14, 0, tzinfo=timezone.utc)
        day_of_at = datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc)

        campaign = await engine.add_campaign(self._campaign(factory))
        recipient = engine.directory.add(factory.make_recipient())
        event = factory.make_event(
            recipient.recipient_id,
            payload=factory.make_appointment_payload(start),
            occurred_at=booked_at,
        )
        enrollment_id = (await engine.listener.on_event(event, booked_at)).enrolled[0]

        # When: the booking pass runs
        await engine.run(booked_at)

        # Then: confirmation goes out and the enrollment parks until day 8 14:00
        enrollment = await engine.reload(enrollment_id)
        assert engine.hub.templates() == ["appt_confirm"]
        assert enrollment.status == EnrollmentStatus.WAITING
        assert enrollment.current_step_id == "wait_reminder"
        assert enrollment.next_wake_at == reminder_at

        # Not leased a minute early
        assert await engine.run(reminder_at - timedelta(minutes=1)) == 0

        # Reminder at day 8 14:00, then parked until day 10 08:00
        assert await engine.run(reminder_at) == 1
        enrollment = await engine.reload(enrollment_id)
        assert engine.hub.templates() == ["appt_confirm", "appt_reminder"]
        assert enrollment.current_step_id == "wait_day_of"
        assert enrollment.next_wake_at == day_of_at

        assert await engine.run(day_of_at - timedelta(minutes=1)) == 0

        # Day-of message at 08:00 completes the campaign
        assert await engine.run(day_of_at) == 1
        enrollment = await engine.reload(enrollment_id)
        assert engine.hub.templates() == ["appt_confirm", "appt_reminder", "appt_day_of"]
        assert enrollment.status == EnrollmentStatus.COMPLETED
        assert enrollment.completed_at == day_of_at

        sent = [
            r for r in await engine.repository.list_records(enrollment_id)
            if r.result == StepResult.SENT
        ]
        assert [(r.step_id, r.started_at) for r in sent] == [
            ("confirm", booked_at),
            ("reminder", reminder_at),
            ("day_of", day_of_at),
        ]
        assert all(r.dispatch_id for r in sent)
        assert campaign.campaign_id == enrollment.campaign_id


class TestManualTrigger:
    """Manual enrollment"""

    @pytest.mark.asyncio
    async def test_manual_trigger_bypasses_audience(self, engine, factory, now):
        campaign = await engine.add_campaign(factory.make_active_campaign(
            audience=AudienceCriteria(tags=["vip"]),
        ))
        recipient = engine.directory.add(factory.make_recipient())

        enrollment = await engine.admin.trigger_manual(
            campaign.campaign_id, recipient.recipient_id, {"note": "front desk"}, now
        )

        assert enrollment.triggered_by == EnrollmentSource.MANUAL
        assert enrollment.context["note"] == "front desk"
        assert enrollment.context["trigger"]["type"] == "manual"

    @pytest.mark.asyncio
    async def test_manual_trigger_requires_active_campaign(self, engine, factory, now):
        campaign = await engine.add_campaign(factory.make_campaign())

        with pytest.raises(InvalidCampaignStateError):
            await engine.admin.trigger_manual(campaign.campaign_id, "pat_1", None, now)
