"""
Unit Tests for Recurring Trigger Rules

Rule validation and latest-occurrence computation.
"""

import pytest
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.campaign_workflow_service.protocols import ValidationError
from microservices.campaign_workflow_service.recurrence import latest_occurrence, validate_recurrence
from tests.contracts.campaign_workflow.data_contract import RecurrenceFrequency, RecurrenceRule


UTC = ZoneInfo("UTC")


class TestValidateRecurrence:
    """Rule validation"""

    def test_weekly_needs_days(self):
        with pytest.raises(ValidationError):
            validate_recurrence(RecurrenceRule(frequency=RecurrenceFrequency.WEEKLY))

    def test_weekly_day_range(self):
        with pytest.raises(ValidationError):
            validate_recurrence(RecurrenceRule(frequency=RecurrenceFrequency.WEEKLY, days_of_week=[7]))

    def test_monthly_day_range(self):
        with pytest.raises(ValidationError):
            validate_recurrence(RecurrenceRule(frequency=RecurrenceFrequency.MONTHLY, days_of_month=[0]))

    def test_bad_time_of_day(self):
        with pytest.raises(ValidationError):
            validate_recurrence(RecurrenceRule(frequency=RecurrenceFrequency.DAILY, time_of_day="9am"))

    def test_valid_rule(self):
        validate_recurrence(RecurrenceRule(
            frequency=RecurrenceFrequency.WEEKLY, time_of_day="10:00", days_of_week=[0, 3]
        ))


class TestLatestOccurrence:
    """Most recent occurrence at or before now"""

    def test_daily_before_time_uses_yesterday(self):
        """Before today's time the latest occurrence is yesterday's"""
        rule = RecurrenceRule(frequency=RecurrenceFrequency.DAILY, time_of_day="14:00")
        now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
        assert latest_occurrence(rule, UTC, now) == datetime(2026, 3, 1, 14, 0, tzinfo=timezone.utc)

    def test_daily_exact_time_is_included(self):
        """An occurrence exactly at now is due"""
        rule = RecurrenceRule(frequency=RecurrenceFrequency.DAILY, time_of_day="12:00")
        now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
        assert latest_occurrence(rule, UTC, now) == now

    def test_weekly(self):
        """Weekly rule picks the last matching weekday"""
        # 2026-03-02 is a Monday; last Thursday is 2026-02-26
        rule = RecurrenceRule(
            frequency=RecurrenceFrequency.WEEKLY, time_of_day="09:00", days_of_week=[3]
        )
        now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
        assert latest_occurrence(rule, UTC, now) == datetime(2026, 2, 26, 9, 0, tzinfo=timezone.utc)

    def test_monthly_31st_skips_short_months(self):
        """A 31st-only rule reaches back past February"""
        rule = RecurrenceRule(
            frequency=RecurrenceFrequency.MONTHLY, time_of_day="09:00", days_of_month=[31]
        )
        now = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
        assert latest_occurrence(rule, UTC, now) == datetime(2026, 1, 31, 9, 0, tzinfo=timezone.utc)

    def test_local_time_in_zone(self):
        """time_of_day is wall-clock in the campaign zone"""
        rule = RecurrenceRule(frequency=RecurrenceFrequency.DAILY, time_of_day="09:00")
        now = datetime(2026, 3, 2, 20, 0, tzinfo=timezone.utc)
        occurrence = latest_occurrence(rule, ZoneInfo("America/New_York"), now)
        # 09:00 EST is 14:00 UTC
        assert occurrence == datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)
