"""Tests for overlaying plans onto agents."""

import pytest

from _helpers import make_agent, make_change

from training_camp.evolution.applier import apply_plan_changes, normalize_prompt
from training_camp.evolution.models import ChangeType, EvolutionComponent, EvolutionPlan


def _plan(*changes):
    return EvolutionPlan(hypothesis="test", changes=list(changes))


def test_normalize_prompt():
    assert normalize_prompt("\n  A\n\n\n\nB\n\n\nC  \n") == "A\n\nB\n\nC"


class TestPromptChanges:
    def test_add_appends_once(self):
        agent = make_agent(prompt="You help.")
        once = apply_plan_changes(agent, _plan(make_change(after="Be concise.")))
        twice = apply_plan_changes(once, _plan(make_change(after="Be concise.")))

        assert once.system_prompt == "You help.\n\nBe concise."
        assert twice.system_prompt == once.system_prompt

    def test_modify_replaces_first_occurrence(self):
        agent = make_agent(prompt="Be detailed here. Be detailed there.")
        change = make_change(change_type=ChangeType.MODIFY, after="Be concise")
        change.before = "Be detailed"

        modified = apply_plan_changes(agent, _plan(change))
        assert modified.system_prompt == "Be concise here. Be detailed there."

    def test_remove_collapses_blank_lines(self):
        agent = make_agent(prompt="Intro.\n\nDrop this line.\n\nOutro.")
        change = make_change(change_type=ChangeType.REMOVE, after=None)
        change.before = "Drop this line."

        modified = apply_plan_changes(agent, _plan(change))
        assert modified.system_prompt == "Intro.\n\nOutro."

    def test_missing_text_is_a_no_op(self):
        agent = make_agent(prompt="You help.")
        change = make_change(change_type=ChangeType.MODIFY, after="x")
        change.before = "not in the prompt"
        assert apply_plan_changes(agent, _plan(change)).system_prompt == "You help."

    def test_changes_apply_in_order(self):
        agent = make_agent(prompt="Be detailed and thorough.")
        modify = make_change(change_type=ChangeType.MODIFY, after="Be concise")
        modify.before = "Be detailed"
        remove = make_change(change_type=ChangeType.REMOVE, after=None)
        remove.before = "Be detailed and thorough."

        modified = apply_plan_changes(agent, _plan(modify, remove))
        assert modified.system_prompt == "Be concise and thorough."


class TestParameterChanges:
    def test_temperature(self):
        change = make_change(EvolutionComponent.PARAMETERS, "temperature", ChangeType.MODIFY, "0.5")
        assert apply_plan_changes(make_agent(), _plan(change)).parameters.temperature == 0.5

    def test_temperature_is_clamped(self):
        change = make_change(EvolutionComponent.PARAMETERS, "temperature", ChangeType.MODIFY, "3.5")
        assert apply_plan_changes(make_agent(), _plan(change)).parameters.temperature == 2.0

    @pytest.mark.parametrize("target", ["maxTokens", "max_tokens"])
    def test_max_tokens(self, target):
        change = make_change(EvolutionComponent.PARAMETERS, target, ChangeType.MODIFY, "1024")
        assert apply_plan_changes(make_agent(), _plan(change)).parameters.max_tokens == 1024

    def test_unparseable_value_is_ignored(self):
        change = make_change(EvolutionComponent.PARAMETERS, "temperature", ChangeType.MODIFY, "warmer")
        assert apply_plan_changes(make_agent(), _plan(change)).parameters.temperature == 0.7

    @pytest.mark.parametrize("target", ["temperature", "maxTokens"])
    @pytest.mark.parametrize("value", ["inf", "-inf", "nan", "1e999"])
    def test_non_finite_value_is_ignored(self, target, value):
        change = make_change(EvolutionComponent.PARAMETERS, target, ChangeType.MODIFY, value)
        agent = make_agent()
        assert apply_plan_changes(agent, _plan(change)).parameters == agent.parameters

    def test_max_tokens_floor(self):
        change = make_change(EvolutionComponent.PARAMETERS, "maxTokens", ChangeType.MODIFY, "-20")
        assert apply_plan_changes(make_agent(), _plan(change)).parameters.max_tokens == 1

    def test_unknown_parameter_is_ignored(self):
        change = make_change(EvolutionComponent.PARAMETERS, "seed", ChangeType.MODIFY, "42")
        agent = make_agent()
        assert apply_plan_changes(agent, _plan(change)).parameters == agent.parameters


def test_tool_and_flow_changes_are_recorded_only():
    agent = make_agent()
    plan = _plan(
        make_change(EvolutionComponent.TOOLS, "tool_error_handling", ChangeType.MODIFY, "handle errors"),
        make_change(EvolutionComponent.FLOW, "output_validation", ChangeType.ADD, "validate"),
    )
    modified = apply_plan_changes(agent, plan)

    assert modified.tools == agent.tools
    assert modified.flow == agent.flow
    assert modified.system_prompt == agent.system_prompt


def test_input_agent_is_untouched():
    agent = make_agent(prompt="You help.")
    change = make_change(EvolutionComponent.PARAMETERS, "temperature", ChangeType.MODIFY, "0.2")
    apply_plan_changes(agent, _plan(make_change(), change))

    assert agent.system_prompt == "You help."
    assert agent.parameters.temperature == 0.7
