"""Overlay an evolution plan onto an already evolved agent."""

from __future__ import annotations

import copy
import math
import re
from typing import assert_never

import structlog

from training_camp.agents.definition import AgentDefinition
from training_camp.evolution.models import ChangeType, EvolutionChange, EvolutionComponent, EvolutionPlan

logger = structlog.get_logger(__name__)

_EXCESS_NEWLINES_RE = re.compile(r"\n{3,}")

TEMPERATURE_TARGETS = frozenset({"temperature"})
MAX_TOKENS_TARGETS = frozenset({"maxTokens", "max_tokens"})


def normalize_prompt(prompt: str) -> str:
    return _EXCESS_NEWLINES_RE.sub("\n\n", prompt).strip()


def _apply_prompt_change(prompt: str, change: EvolutionChange) -> str:
    match change.change_type:
        case ChangeType.ADD:
            if change.after and change.after not in prompt:
                return f"{prompt}\n\n{change.after}"
        case ChangeType.REMOVE:
            if change.before:
                return prompt.replace(change.before, "", 1)
        case ChangeType.MODIFY:
            if change.before and change.after:
                return prompt.replace(change.before, change.after, 1)
        case _:
            assert_never(change.change_type)
    return prompt


def _parse_number(raw: str) -> float:
    value = float(raw)
    if not math.isfinite(value):
        raise ValueError(f"not a finite number: {raw!r}")
    return value


def _apply_parameter_change(agent: AgentDefinition, change: EvolutionChange) -> None:
    if not change.after:
        return
    try:
        if change.target in TEMPERATURE_TARGETS:
            agent.parameters.temperature = max(0.0, min(2.0, _parse_number(change.after)))
        elif change.target in MAX_TOKENS_TARGETS:
            agent.parameters.max_tokens = max(1, int(_parse_number(change.after)))
        else:
            logger.debug("parameter_change_ignored", target=change.target)
    except (ValueError, OverflowError):
        logger.warning("parameter_change_unparseable", target=change.target, value=change.after)


def apply_plan_changes(agent: AgentDefinition, plan: EvolutionPlan) -> AgentDefinition:
    """Return a copy of *agent* with the plan's prompt and parameter edits applied.

    Tool and flow changes are recorded in the plan but not applied here.
    """
    modified = copy.deepcopy(agent)

    for change in plan.changes:
        match change.component:
            case EvolutionComponent.SYSTEM_PROMPT:
                modified.system_prompt = _apply_prompt_change(modified.system_prompt, change)
            case EvolutionComponent.PARAMETERS:
                _apply_parameter_change(modified, change)
            case EvolutionComponent.TOOLS | EvolutionComponent.FLOW:
                logger.info(
                    "plan_change_not_applied",
                    component=change.component.value,
                    target=change.target,
                    reason=change.reason,
                )
            case _:
                assert_never(change.component)

    modified.system_prompt = normalize_prompt(modified.system_prompt)
    return modified
