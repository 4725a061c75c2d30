"""
Component Tests for SEND Step Execution

Consent and rate checks, retry backoff on transient hub failures,
permanent failures, missing addresses and at-most-once sends.
"""

import pytest
from datetime import datetime, timedelta, timezone

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from tests.contracts.campaign_workflow.data_contract import (
    CampaignType,
    ChannelType,
    DeliveryStatus,
    EnrollmentStatus,
    FrequencyCap,
    SendWindow,
    StepExecutionRecord,
    StepResult,
    SuppressionEntry,
    SuppressionScope,
)


async def _enroll(engine, factory, now, recipient=None, **campaign_kwargs):
    campaign = await engine.add_campaign(factory.make_active_campaign(**campaign_kwargs))
    recipient = recipient or engine.directory.add(factory.make_recipient())
    enrollment = await engine.admin.trigger_manual(campaign.campaign_id, recipient.recipient_id, None, now)
    return campaign, recipient, enrollment


class TestSuppression:
    """Unsubscribed recipients"""

    @pytest.mark.asyncio
    async def test_suppressed_recipient_unsubscribes_enrollment(self, engine, factory, now):
        # Given: recipient opted out of everything
        recipient = engine.directory.add(factory.make_recipient())
        await engine.repository.add_suppression(
            SuppressionEntry(recipient_id=recipient.recipient_id, scope=SuppressionScope.ALL)
        )
        _, _, enrollment = await _enroll(engine, factory, now, recipient=recipient)

        # When
        await engine.run(now)

        # Then: no message, terminal UNSUBSCRIBED
        enrollment = await engine.reload(enrollment.enrollment_id)
        assert enrollment.status == EnrollmentStatus.UNSUBSCRIBED
        assert engine.hub.sent == []
        assert "workflow.enrollment.unsubscribed" in engine.bus.subjects()

    @pytest.mark.asyncio
    async def test_marketing_suppression_does_not_block_reminders(self, engine, factory, now):
        recipient = engine.directory.add(factory.make_recipient())
        await engine.repository.add_suppression(
            SuppressionEntry(recipient_id=recipient.recipient_id, scope=SuppressionScope.MARKETING)
        )
        _, _, enrollment = await _enroll(engine, factory, now, recipient=recipient)

        await engine.run(now)

        enrollment = await engine.reload(enrollment.enrollment_id)
        assert enrollment.status == EnrollmentStatus.COMPLETED
        assert len(engine.hub.sent) == 1

    @pytest.mark.asyncio
    async def test_marketing_suppression_blocks_marketing(self, engine, factory, now):
        recipient = engine.directory.add(factory.make_recipient())
        await engine.repository.add_suppression(
            SuppressionEntry(recipient_id=recipient.recipient_id, scope=SuppressionScope.MARKETING)
        )
        _, _, enrollment = await _enroll(
            engine, factory, now, recipient=recipient, campaign_type=CampaignType.MARKETING
        )

        await engine.run(now)

        enrollment = await engine.reload(enrollment.enrollment_id)
        assert enrollment.status == EnrollmentStatus.UNSUBSCRIBED

    @pytest.mark.asyncio
    async def test_opt_out_stops_every_open_marketing_enrollment(self, engine, factory, now):
        """An opt-out recorded mid-wait wins over all pending marketing sends"""
        # Given: one recipient waiting in three marketing campaigns and a reminder
        recipient = engine.directory.add(factory.make_recipient())
        steps = [
            factory.make_wait_step(duration_minutes=60),
            factory.make_send_step(template_ref="promo"),
        ]
        marketing = []
        for _ in range(3):
            _, _, enrollment = await _enroll(
                engine, factory, now, recipient=recipient,
                campaign_type=CampaignType.MARKETING, steps=steps,
            )
            marketing.append(enrollment.enrollment_id)
        _, _, reminder = await _enroll(
            engine, factory, now, recipient=recipient,
            steps=[factory.make_wait_step(duration_minutes=60), factory.make_send_step(template_ref="reminder")],
        )
        await engine.run(now)
        for enrollment_id in marketing:
            assert (await engine.reload(enrollment_id)).status == EnrollmentStatus.WAITING

        # When: the recipient opts out of marketing before the waits elapse
        await engine.repository.add_suppression(
            SuppressionEntry(recipient_id=recipient.recipient_id, scope=SuppressionScope.MARKETING)
        )
        await engine.run(now + timedelta(minutes=61))

        # Then: no promo goes out, the reminder still does
        for enrollment_id in marketing:
            assert (await engine.reload(enrollment_id)).status == EnrollmentStatus.UNSUBSCRIBED
        assert engine.hub.templates() == ["reminder"]
        assert (await engine.reload(reminder.enrollment_id)).status == EnrollmentStatus.COMPLETED


class TestFrequencyCap:
    """Marketing frequency cap across campaigns"""

    @pytest.mark.asyncio
    async def test_second_marketing_campaign_deferred(self, engine, factory, now):
        # Given: the same recipient in two marketing campaigns
        recipient = engine.directory.add(factory.make_recipient())
        _, _, first = await _enroll(
            engine, factory, now, recipient=recipient, campaign_type=CampaignType.MARKETING
        )
        _, _, second = await _enroll(
            engine, factory, now, recipient=recipient, campaign_type=CampaignType.MARKETING
        )

        # When: both become due in the same pass
        await engine.run(now)

        # Then: one send, the other parked until the week is up
        assert len(engine.hub.sent) == 1
        statuses = {
            first.enrollment_id: (await engine.reload(first.enrollment_id)),
            second.enrollment_id: (await engine.reload(second.enrollment_id)),
        }
        completed = [e for e in statuses.values() if e.status == EnrollmentStatus.COMPLETED]
        waiting = [e for e in statuses.values() if e.status == EnrollmentStatus.WAITING]
        assert len(completed) == 1
        assert len(waiting) == 1
        assert waiting[0].next_wake_at == now + timedelta(days=7)

        # And: it goes out once the first send ages out of the window
        await engine.run(now + timedelta(days=7, minutes=1))
        assert len(engine.hub.sent) == 2
        assert (await engine.reload(waiting[0].enrollment_id)).status == EnrollmentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cap_counts_earlier_sends(self, engine, factory, now):
        recipient = engine.directory.add(factory.make_recipient())
        await engine.repository.claim_send_slot(
            factory.make_send_log_entry(recipient.recipient_id, now - timedelta(days=2))
        )
        _, _, enrollment = await _enroll(
            engine, factory, now, recipient=recipient, campaign_type=CampaignType.MARKETING
        )

        await engine.run(now)

        enrollment = await engine.reload(enrollment.enrollment_id)
        assert enrollment.status == EnrollmentStatus.WAITING
        assert enrollment.next_wake_at == now + timedelta(days=5)

    @pytest.mark.asyncio
    async def test_campaign_cap_override(self, engine, factory, now):
        recipient = engine.directory.add(factory.make_recipient())
        await engine.repository.claim_send_slot(
            factory.make_send_log_entry(recipient.recipient_id, now - timedelta(days=2))
        )
        _, _, enrollment = await _enroll(
            engine, factory, now, recipient=recipient,
            campaign_type=CampaignType.MARKETING,
            frequency_cap=FrequencyCap(count=2, window_days=7),
        )

        await engine.run(now)

        assert (await engine.reload(enrollment.enrollment_id)).status == EnrollmentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_reminders_are_not_capped(self, engine, factory, now):
        recipient = engine.directory.add(factory.make_recipient())
        await engine.repository.claim_send_slot(
            factory.make_send_log_entry(recipient.recipient_id, now - timedelta(hours=1), CampaignType.REMINDER)
        )
        _, _, enrollment = await _enroll(engine, factory, now, recipient=recipient)

        await engine.run(now)

        assert (await engine.reload(enrollment.enrollment_id)).status == EnrollmentStatus.COMPLETED


class TestSendWindow:
    """Recipient-local send windows"""

    @pytest.mark.asyncio
    async def test_marketing_deferred_outside_window(self, engine, factory):
        late = datetime(2026, 3, 2, 22, 0, tzinfo=timezone.utc)
        _, _, enrollment = await _enroll(engine, factory, late, campaign_type=CampaignType.MARKETING)

        await engine.run(late)

        enrollment = await engine.reload(enrollment.enrollment_id)
        assert enrollment.status == EnrollmentStatus.WAITING
        assert enrollment.next_wake_at == datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc)
        assert engine.hub.sent == []

    @pytest.mark.asyncio
    async def test_window_uses_recipient_timezone(self, engine, factory, now):
        """12:00Z is 07:00 in New York, before the 09:00 opening"""
        recipient = engine.directory.add(factory.make_recipient(timezone_name="America/New_York"))
        _, _, enrollment = await _enroll(
            engine, factory, now, recipient=recipient, campaign_type=CampaignType.MARKETING
        )

        await engine.run(now)

        enrollment = await engine.reload(enrollment.enrollment_id)
        assert enrollment.next_wake_at == datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_campaign_window_applies_to_reminders(self, engine, factory, now):
        _, _, enrollment = await _enroll(
            engine, factory, now, send_window=SendWindow(start="13:00", end="17:00")
        )

        await engine.run(now)

        enrollment = await engine.reload(enrollment.enrollment_id)
        assert enrollment.next_wake_at == datetime(2026, 3, 2, 13, 0, tzinfo=timezone.utc)

        await engine.run(enrollment.next_wake_at)
        assert (await engine.reload(enrollment.enrollment_id)).status == EnrollmentStatus.COMPLETED


class TestDeliveryFailures:
    """Messaging hub failures"""

    @pytest.mark.asyncio
    async def test_transient_failures_back_off_then_fail(self, engine, factory, now):
        engine.hub.mode = "transient"
        _, _, enrollment = await _enroll(engine, factory, now)

        # Attempt 1 and the four retries, each at its backoff
        t = now
        await engine.run(t)
        for delay in (60, 120, 240, 480):
            enrollment = await engine.reload(enrollment.enrollment_id)
            assert enrollment.status == EnrollmentStatus.WAITING
            assert enrollment.next_wake_at == t + timedelta(seconds=delay)
            t = enrollment.next_wake_at
            await engine.run(t)

        enrollment = await engine.reload(enrollment.enrollment_id)
        assert enrollment.status == EnrollmentStatus.FAILED
        assert engine.hub.attempts == 5

        records = await engine.repository.list_records(enrollment.enrollment_id)
        assert [r.result for r in records] == [StepResult.FAILED_RETRYABLE] * 4 + [StepResult.FAILED_PERMANENT]
        assert [r.attempt_number for r in records] == [1, 2, 3, 4, 5]
        assert engine.repository.send_log == []
        assert "workflow.enrollment.failed" in engine.bus.subjects()

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self, engine, factory, now):
        engine.hub.mode = "transient"
        _, _, enrollment = await _enroll(engine, factory, now)
        await engine.run(now)

        engine.hub.mode = "accepted"
        await engine.run(now + timedelta(seconds=60))

        enrollment = await engine.reload(enrollment.enrollment_id)
        assert enrollment.status == EnrollmentStatus.COMPLETED
        records = await engine.repository.list_records(enrollment.enrollment_id)
        assert records[-1].result == StepResult.SENT
        assert records[-1].attempt_number == 2
        assert engine.hub.sent[0]["idempotency_key"] == f"{enrollment.enrollment_id}:send"

    @pytest.mark.asyncio
    async def test_directory_outage_is_retried(self, engine, factory, now):
        _, _, enrollment = await _enroll(engine, factory, now)
        engine.directory.fail = True

        await engine.run(now)

        enrollment = await engine.reload(enrollment.enrollment_id)
        assert enrollment.status == EnrollmentStatus.WAITING
        assert enrollment.next_wake_at == now + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_hub_rejection_fails_enrollment(self, engine, factory, now):
        engine.hub.mode = "rejected"
        _, _, enrollment = await _enroll(engine, factory, now)

        await engine.run(now)

        enrollment = await engine.reload(enrollment.enrollment_id)
        assert enrollment.status == EnrollmentStatus.FAILED
        assert enrollment.last_error == "number blocked"
        records = await engine.repository.list_records(enrollment.enrollment_id)
        assert [r.result for r in records] == [StepResult.FAILED_PERMANENT]

    @pytest.mark.asyncio
    async def test_permanent_hub_error_fails_without_retry(self, engine, factory, now):
        engine.hub.mode = "permanent"
        _, _, enrollment = await _enroll(engine, factory, now)

        await engine.run(now)

        enrollment = await engine.reload(enrollment.enrollment_id)
        assert enrollment.status == EnrollmentStatus.FAILED
        assert engine.hub.attempts == 1

    @pytest.mark.asyncio
    async def test_unexpected_hub_error_backs_off_then_fails(self, engine, factory, now):
        # Given: the hub client raises something other than a delivery error
        recipient = engine.directory.add(factory.make_recipient())
        engine.hub.crash_for.add(recipient.recipient_id)
        _, _, enrollment = await _enroll(
            engine, factory, now, recipient=recipient, campaign_type=CampaignType.MARKETING
        )

        # Each attempt frees its send slot and follows the backoff
        t = now
        await engine.run(t)
        for delay in (60, 120, 240, 480):
            enrollment = await engine.reload(enrollment.enrollment_id)
            assert enrollment.status == EnrollmentStatus.WAITING
            assert enrollment.next_wake_at == t + timedelta(seconds=delay)
            assert enrollment.last_error.startswith("unexpected error")
            assert engine.repository.send_log == []
            t = enrollment.next_wake_at
            await engine.run(t)

        enrollment = await engine.reload(enrollment.enrollment_id)
        assert enrollment.status == EnrollmentStatus.FAILED
        assert engine.hub.attempts == 5
        assert engine.repository.send_log == []

    @pytest.mark.asyncio
    async def test_crashed_send_does_not_count_against_cap(self, engine, factory, now):
        # Given: a marketing send that crashed, then its campaign was archived
        recipient = engine.directory.add(factory.make_recipient())
        engine.hub.crash_for.add(recipient.recipient_id)
        crashed_campaign, _, _ = await _enroll(
            engine, factory, now, recipient=recipient, campaign_type=CampaignType.MARKETING
        )
        await engine.run(now)
        await engine.admin.archive_campaign(crashed_campaign.campaign_id, now)
        engine.hub.crash_for.clear()

        # When: another marketing campaign reaches the same recipient
        _, _, enrollment = await _enroll(
            engine, factory, now, recipient=recipient, campaign_type=CampaignType.MARKETING
        )
        await engine.run(now + timedelta(minutes=1))

        # Then: it goes out right away
        enrollment = await engine.reload(enrollment.enrollment_id)
        assert enrollment.status == EnrollmentStatus.COMPLETED
        assert len(engine.hub.sent) == 1
        assert [e.enrollment_id for e in engine.repository.send_log] == [enrollment.enrollment_id]


class TestSkippedSends:
    """Recipients unreachable on a channel"""

    @pytest.mark.asyncio
    async def test_missing_phone_skips_to_next_step(self, engine, factory, now):
        recipient = engine.directory.add(factory.make_recipient(phone=None))
        _, _, enrollment = await _enroll(
            engine, factory, now, recipient=recipient,
            steps=[
                factory.make_send_step("sms", ChannelType.SMS, "tpl_sms"),
                factory.make_send_step("email", ChannelType.EMAIL, "tpl_email"),
            ],
        )

        await engine.run(now)

        enrollment = await engine.reload(enrollment.enrollment_id)
        assert enrollment.status == EnrollmentStatus.COMPLETED
        assert engine.hub.templates() == ["tpl_email"]
        records = await engine.repository.list_records(enrollment.enrollment_id)
        assert [r.result for r in records] == [StepResult.SKIPPED, StepResult.SENT]
        assert records[0].error_detail == "no phone number on file"


class TestAtMostOnce:
    """Replays never send twice"""

    @pytest.mark.asyncio
    async def test_existing_sent_record_is_not_resent(self, engine, factory, now):
        # Given: a crash after the send was recorded but before the enrollment moved on
        campaign = await engine.add_campaign(factory.make_active_campaign())
        recipient = engine.directory.add(factory.make_recipient())
        enrollment = await engine.repository.create_enrollment(
            factory.make_enrollment(campaign, recipient.recipient_id)
        )
        await engine.repository.append_record(StepExecutionRecord(
            enrollment_id=enrollment.enrollment_id,
            step_id="send",
            result=StepResult.SENT,
            dispatch_id="msg_earlier",
        ))

        # When
        await engine.run(now)

        # Then
        assert engine.hub.sent == []
        assert (await engine.reload(enrollment.enrollment_id)).status == EnrollmentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_template_variables_carry_context(self, engine, factory, now):
        campaign = await engine.add_campaign(factory.make_active_campaign())
        recipient = engine.directory.add(factory.make_recipient())
        await engine.admin.trigger_manual(campaign.campaign_id, recipient.recipient_id, {"clinic_name": "Smile"}, now)

        await engine.run(now)

        variables = engine.hub.sent[0]["variables"]
        assert variables["clinic_name"] == "Smile"
        assert variables["recipient"]["phone"] == recipient.phone


class TestDeliveryStatus:
    """Delivery callbacks"""

    @pytest.mark.asyncio
    async def test_callback_linked_to_step(self, engine, factory, now):
        _, _, enrollment = await _enroll(engine, factory, now)
        await engine.run(now)

        stored = await engine.gateway.record_delivery_status("msg_1", DeliveryStatus.DELIVERED, occurred_at=now)

        assert stored.enrollment_id == enrollment.enrollment_id
        assert stored.step_id == "send"
        assert len(await engine.repository.list_delivery_statuses("msg_1")) == 1

    @pytest.mark.asyncio
    async def test_callback_for_unknown_dispatch_kept(self, engine):
        stored = await engine.gateway.record_delivery_status("msg_missing", DeliveryStatus.BOUNCED)

        assert stored.enrollment_id is None
        assert len(await engine.repository.list_delivery_statuses("msg_missing")) == 1
