"""
Step Graph Validation

Activation-time checks for a campaign definition. The executor assumes a
definition that passed these checks: every reference resolves, the graph is
acyclic, BRANCH steps have a default and every expression parses.
"""

import logging
from typing import Dict, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import (
    END_STEP,
    BranchStep,
    CampaignDefinition,
    ConditionStep,
    SendStep,
    TriggerType,
    WaitStep,
)
from .protocols import ValidationError
from .recurrence import validate_recurrence
from .wait_schedule import parse_anchor, parse_hhmm

logger = logging.getLogger(__name__)


def successors(campaign: CampaignDefinition, step) -> List[str]:
    """Every step id a step can move to"""
    if isinstance(step, (SendStep, WaitStep)):
        return [campaign.next_of(step)]
    if isinstance(step, ConditionStep):
        return [step.true_step_id, step.false_step_id]
    if isinstance(step, BranchStep):
        targets = [arm.next_step_id for arm in step.branches]
        if step.default_step_id:
            targets.append(step.default_step_id)
        return targets
    return []


def _check_references(campaign: CampaignDefinition) -> Dict[str, List[str]]:
    ids = set()
    for step in campaign.steps:
        if step.step_id == END_STEP:
            raise ValidationError(f"'{END_STEP}' is reserved for the terminus", field="steps")
        if step.step_id in ids:
            raise ValidationError(f"Duplicate step id: {step.step_id}", field="steps")
        ids.add(step.step_id)

    graph: Dict[str, List[str]] = {}
    for step in campaign.steps:
        if isinstance(step, BranchStep) and not step.default_step_id:
            raise ValidationError(
                f"Branch step {step.step_id} has no default", field=f"steps.{step.step_id}"
            )
        targets = successors(campaign, step)
        for target in targets:
            if target != END_STEP and target not in ids:
                raise ValidationError(
                    f"Step {step.step_id} references unknown step {target}",
                    field=f"steps.{step.step_id}",
                )
        graph[step.step_id] = [t for t in targets if t != END_STEP]
    return graph


def _check_acyclic(graph: Dict[str, List[str]]) -> None:
    visiting, done = set(), set()

    def visit(node: str, path: List[str]) -> None:
        if node in done:
            return
        if node in visiting:
            cycle = " -> ".join(path[path.index(node):] + [node])
            raise ValidationError(f"Step graph has a cycle: {cycle}", field="steps")
        visiting.add(node)
        for target in graph.get(node, []):
            visit(target, path + [node])
        visiting.discard(node)
        done.add(node)

    for node in graph:
        visit(node, [])


def _check_expressions(campaign: CampaignDefinition) -> None:
    for step in campaign.steps:
        if isinstance(step, WaitStep) and step.anchor is not None:
            parse_anchor(step.anchor)

    try:
        ZoneInfo(campaign.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {campaign.timezone}", field="timezone")

    if campaign.send_window:
        parse_hhmm(campaign.send_window.start, field="send_window.start")
        parse_hhmm(campaign.send_window.end, field="send_window.end")


def _check_trigger(campaign: CampaignDefinition) -> None:
    if campaign.trigger_type == TriggerType.EVENT and not campaign.trigger_event:
        raise ValidationError("Event campaigns need trigger_event", field="trigger_event")
    if campaign.trigger_type == TriggerType.SCHEDULED and campaign.trigger_schedule is None:
        raise ValidationError("Scheduled campaigns need trigger_schedule", field="trigger_schedule")
    if campaign.trigger_type == TriggerType.RECURRING:
        if campaign.recurrence is None:
            raise ValidationError("Recurring campaigns need a recurrence rule", field="recurrence")
        validate_recurrence(campaign.recurrence)


def validate_definition(campaign: CampaignDefinition) -> None:
    """Raise ValidationError if the definition cannot be activated"""
    if not campaign.steps:
        raise ValidationError("Campaign has no steps", field="steps")

    graph = _check_references(campaign)
    _check_acyclic(graph)
    _check_expressions(campaign)
    _check_trigger(campaign)
    logger.debug(f"Campaign {campaign.campaign_id} v{campaign.version} passed validation")
