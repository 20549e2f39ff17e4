"""Tests for the agent evolver."""

import copy

import pytest

from _helpers import FakeLLM, make_agent

from training_camp.agents.definition import AgentParameters, StepType
from training_camp.config import LLMRole
from training_camp.errors import ScoreValidationError
from training_camp.evolution.evolver import (
    CLARITY_REMINDER,
    GUIDELINES_BLOCK,
    AgentEvolver,
    EvolutionIntensity,
    combine_directives,
    evolution_intensity,
    evolve_flow,
    evolve_parameters,
    evolve_prompt,
    evolve_tools,
)


@pytest.mark.parametrize(
    ("score", "intensity"),
    [
        (10, EvolutionIntensity.MINOR),
        (8, EvolutionIntensity.MINOR),
        (7, EvolutionIntensity.MODERATE),
        (5, EvolutionIntensity.MODERATE),
        (4, EvolutionIntensity.MAJOR),
        (1, EvolutionIntensity.MAJOR),
    ],
)
def test_intensity_thresholds(score, intensity):
    assert evolution_intensity(score) is intensity


def test_combine_directives():
    assert combine_directives() is None
    assert combine_directives(["Cite sources"], ["  "], "too long") == "Cite sources\ntoo long"


class TestPromptEvolution:
    def test_minor_adds_clarity_reminder_once(self):
        evolved = evolve_prompt("You help.", EvolutionIntensity.MINOR, None)
        assert evolved == f"You help.\n\n{CLARITY_REMINDER}"
        assert evolve_prompt(evolved, EvolutionIntensity.MINOR, None) == evolved

    def test_moderate_appends_directives_and_guidelines(self):
        evolved = evolve_prompt("You help.", EvolutionIntensity.MODERATE, "Be brief")
        assert evolved == f"You help.\n\nAdditional guidance: Be brief\n\n{GUIDELINES_BLOCK}"

    def test_moderate_keeps_existing_guidelines(self):
        prompt = f"You help.\n\n{GUIDELINES_BLOCK}"
        assert evolve_prompt(prompt, EvolutionIntensity.MODERATE, None) == prompt

    def test_major_restructures(self):
        evolved = evolve_prompt("You help.", EvolutionIntensity.MAJOR, "Cite sources")
        assert evolved.startswith("CORE OBJECTIVE:\nYou help.")
        assert "KEY BEHAVIORS:" in evolved
        assert "QUALITY STANDARDS:" in evolved
        assert evolved.endswith("SPECIFIC GUIDANCE:\nCite sources")

    def test_major_without_directives_has_no_guidance_section(self):
        assert "SPECIFIC GUIDANCE" not in evolve_prompt("You help.", EvolutionIntensity.MAJOR, None)


class TestToolEvolution:
    def test_minor_punctuates_descriptions(self):
        tool = evolve_tools(make_agent().tools, EvolutionIntensity.MINOR)[0]
        assert tool.description == "Search the web."

    def test_moderate_marks_required_parameters(self):
        tool = evolve_tools(make_agent().tools, EvolutionIntensity.MODERATE)[0]
        assert [p.description for p in tool.parameters] == ["(Required) Search terms", "Max results"]

    def test_major_rebuilds_tools(self):
        original = make_agent().tools
        tool = evolve_tools(original, EvolutionIntensity.MAJOR)[0]

        assert tool.id != original[0].id
        assert tool.description == "Search the web Handle errors gracefully."
        assert [p.description for p in tool.parameters] == [
            "Search terms (Required - must be provided)",
            "Max results (Optional)",
        ]
        assert original[0].description == "Search the web"


class TestParameterEvolution:
    @pytest.mark.parametrize(("score", "temperature"), [(10, 0.65), (9, 0.65), (8, 0.75)])
    def test_minor_nudges_temperature(self, score, temperature):
        assert evolve_parameters(AgentParameters(temperature=0.7), score).temperature == temperature

    def test_minor_respects_bounds(self):
        assert evolve_parameters(AgentParameters(temperature=0.1), 10).temperature == 0.1
        assert evolve_parameters(AgentParameters(temperature=1.0), 8).temperature == 1.0

    @pytest.mark.parametrize(("score", "temperature"), [(7, 0.6), (6, 0.6), (5, 0.8)])
    def test_moderate(self, score, temperature):
        evolved = evolve_parameters(AgentParameters(frequency_penalty=0.2), score)
        assert evolved.temperature == temperature
        assert evolved.frequency_penalty == 0.3
        assert evolved.presence_penalty == 0.1

    def test_major_resets(self):
        evolved = evolve_parameters(AgentParameters(temperature=1.5, max_tokens=2048), 2)
        assert (evolved.temperature, evolved.max_tokens, evolved.top_p) == (0.7, 2560, 0.9)
        assert (evolved.frequency_penalty, evolved.presence_penalty) == (0.3, 0.3)

    def test_major_caps_max_tokens(self):
        assert evolve_parameters(AgentParameters(max_tokens=3800), 3).max_tokens == 4096

    def test_input_untouched(self):
        params = AgentParameters()
        evolve_parameters(params, 2)
        assert params == AgentParameters()


class TestFlowEvolution:
    def test_below_major_copies_flow(self):
        flow = make_agent().flow
        evolved = evolve_flow(flow, EvolutionIntensity.MODERATE)
        assert evolved == flow
        assert evolved[0] is not flow[0]

    def test_major_inserts_validation_before_output(self):
        flow = make_agent().flow
        evolved = evolve_flow(flow, EvolutionIntensity.MAJOR)

        assert [s.name for s in evolved] == ["Start", "Draft answer", "Validate Output", "Respond"]
        start, draft, validation, output = evolved
        assert not {s.id for s in evolved} & {s.id for s in flow}
        assert start.connections.next == draft.id
        assert draft.connections.next == validation.id
        assert validation.type is StepType.CONDITION
        assert validation.config["condition"] == "output.isValid"
        assert validation.connections.on_true == output.id
        assert validation.connections.on_false == start.id
        assert validation.position.y == output.position.y - 100

    def test_existing_validation_is_kept(self):
        evolved = evolve_flow(make_agent().flow, EvolutionIntensity.MAJOR)
        again = evolve_flow(evolved, EvolutionIntensity.MAJOR)
        assert [s.name for s in again] == [s.name for s in evolved]

    def test_flow_without_terminal_output_is_only_renumbered(self):
        flow = make_agent().flow[:2]
        evolved = evolve_flow(flow, EvolutionIntensity.MAJOR)
        assert [s.name for s in evolved] == ["Start", "Draft answer"]
        assert evolved[0].connections.next == evolved[1].id

    def test_empty_flow(self):
        assert evolve_flow([], EvolutionIntensity.MAJOR) == []


class TestAgentEvolver:
    @pytest.mark.asyncio
    async def test_positive_score_is_a_minor_polish(self):
        agent = make_agent()
        evolved = await AgentEvolver().evolve(agent, "write answers", 8)

        assert evolved.id != agent.id
        assert evolved.version == 2
        assert evolved.lineage_id == agent.lineage_id
        assert evolved.updated_at > agent.updated_at
        assert evolved.system_prompt.endswith(CLARITY_REMINDER)
        assert evolved.parameters.temperature == 0.75
        assert len(evolved.flow) == 3

    @pytest.mark.asyncio
    async def test_input_is_never_mutated(self):
        agent = make_agent()
        snapshot = copy.deepcopy(agent)
        await AgentEvolver().evolve(agent, "write answers", 2, "too long", ["Cite sources"])
        assert agent == snapshot

    @pytest.mark.asyncio
    async def test_directives_reach_the_prompt(self):
        evolved = await AgentEvolver().evolve(
            make_agent(), "write answers", 3, "too long", sticky=["Cite sources"], oneshot=["Use bullets"]
        )
        assert "SPECIFIC GUIDANCE:\nCite sources\nUse bullets\ntoo long" in evolved.system_prompt

    @pytest.mark.asyncio
    async def test_rejects_invalid_scores(self):
        with pytest.raises(ScoreValidationError):
            await AgentEvolver().evolve(make_agent(), "write answers", 0)

    @pytest.mark.asyncio
    async def test_llm_rewrites_prompt_and_description_on_major(self):
        llm = FakeLLM("  You are a concise writer.  ", "Writes short, sourced answers.")
        evolved = await AgentEvolver(llm).evolve(make_agent(), "write answers", 2, "too long")

        assert evolved.system_prompt == "You are a concise writer."
        assert evolved.description == "Writes short, sourced answers."
        assert [c["role"] for c in llm.calls] == [LLMRole.EVOLVING, LLMRole.EVOLVING]
        assert "too long" in llm.calls[1]["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_description_untouched_below_major(self):
        llm = FakeLLM("You are a writer.")
        evolved = await AgentEvolver(llm).evolve(make_agent(), "write answers", 6)
        assert evolved.description == "Writes answers"
        assert len(llm.calls) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply", ["   ", RuntimeError("rate limited")])
    async def test_llm_failure_uses_deterministic_rewrite(self, reply):
        evolved = await AgentEvolver(FakeLLM(reply, RuntimeError("down"))).evolve(make_agent(), "write answers", 2)
        assert evolved.system_prompt.startswith("CORE OBJECTIVE:")
        assert evolved.description == "Writes answers"
