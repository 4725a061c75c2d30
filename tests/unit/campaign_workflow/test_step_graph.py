"""
Unit Tests for Step Graph Validation

Activation-time checks on campaign definitions.
"""

import pytest

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from microservices.campaign_workflow_service.protocols import ValidationError
from microservices.campaign_workflow_service.step_graph import validate_definition
from tests.contracts.campaign_workflow.data_contract import (
    END_STEP,
    BranchArm,
    BranchStep,
    ComparisonOperator,
    FieldComparison,
    RecurrenceFrequency,
    RecurrenceRule,
    SendWindow,
    TriggerType,
    WaitStep,
)


CONFIRMED = FieldComparison(field="appointment.status", op=ComparisonOperator.EQ, value="confirmed")


class TestValidateDefinition:
    """validate_definition"""

    def test_appointment_reminder_is_valid(self, factory):
        """The reference reminder campaign passes"""
        validate_definition(factory.make_appointment_reminder())

    def test_no_steps(self, factory):
        with pytest.raises(ValidationError):
            validate_definition(factory.make_campaign(steps=[]))

    def test_duplicate_step_ids(self, factory):
        campaign = factory.make_campaign(steps=[
            factory.make_send_step("a"),
            factory.make_send_step("a"),
        ])
        with pytest.raises(ValidationError, match="Duplicate"):
            validate_definition(campaign)

    def test_reserved_end_id(self, factory):
        campaign = factory.make_campaign(steps=[factory.make_send_step(END_STEP)])
        with pytest.raises(ValidationError):
            validate_definition(campaign)

    def test_unknown_reference(self, factory):
        campaign = factory.make_campaign(steps=[
            factory.make_send_step("a", next_step_id="missing"),
        ])
        with pytest.raises(ValidationError, match="unknown step"):
            validate_definition(campaign)

    def test_cycle_rejected(self, factory):
        """A condition looping back to an earlier step is a cycle"""
        campaign = factory.make_campaign(steps=[
            factory.make_send_step("a"),
            factory.make_condition_step("c", CONFIRMED, true_step_id=END_STEP, false_step_id="a"),
        ])
        with pytest.raises(ValidationError, match="cycle"):
            validate_definition(campaign)

    def test_branch_needs_default(self, factory):
        campaign = factory.make_campaign(steps=[
            BranchStep(step_id="b", branches=[BranchArm(predicate=CONFIRMED, next_step_id=END_STEP)]),
        ])
        with pytest.raises(ValidationError, match="default"):
            validate_definition(campaign)

    def test_malformed_anchor(self, factory):
        campaign = factory.make_campaign(steps=[
            WaitStep(step_id="w", anchor="whenever appointment.start"),
            factory.make_send_step("s"),
        ])
        with pytest.raises(ValidationError):
            validate_definition(campaign)

    def test_unknown_timezone(self, factory):
        with pytest.raises(ValidationError, match="timezone"):
            validate_definition(factory.make_campaign(timezone="Nowhere/City"))

    def test_bad_send_window(self, factory):
        campaign = factory.make_campaign(send_window=SendWindow(start="9", end="17:00"))
        with pytest.raises(ValidationError):
            validate_definition(campaign)

    def test_event_trigger_needs_event(self, factory):
        with pytest.raises(ValidationError):
            validate_definition(factory.make_campaign(trigger_event=None))

    def test_scheduled_trigger_needs_time(self, factory):
        with pytest.raises(ValidationError):
            validate_definition(factory.make_campaign(trigger_type=TriggerType.SCHEDULED))

    def test_recurring_rule_validated(self, factory):
        campaign = factory.make_campaign(
            trigger_type=TriggerType.RECURRING,
            recurrence=RecurrenceRule(frequency=RecurrenceFrequency.WEEKLY),
        )
        with pytest.raises(ValidationError):
            validate_definition(campaign)


class TestWaitStepModel:
    """WaitStep requires exactly one target"""

    def test_both_targets_rejected(self):
        with pytest.raises(ValueError):
            WaitStep(step_id="w", duration_minutes=10, anchor="1h before appointment.start")

    def test_no_target_rejected(self):
        with pytest.raises(ValueError):
            WaitStep(step_id="w")

    def test_implicit_next_follows_declaration_order(self, factory):
        """SEND / WAIT without next_step_id fall through to the next declared step"""
        campaign = factory.make_campaign(steps=[
            factory.make_wait_step("w"),
            factory.make_send_step("s"),
        ])
        assert campaign.next_of(campaign.get_step("w")) == "s"
        assert campaign.next_of(campaign.get_step("s")) == END_STEP
