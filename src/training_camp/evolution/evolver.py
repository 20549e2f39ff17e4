"""Agent evolver - produces the next version of an agent from a score.

How hard the agent is reworked depends only on the score (its *intensity*).
Each facet of the definition (prompt, tools, parameters, flow) evolves on its
own under that intensity. The input definition is never mutated.
"""

from __future__ import annotations

import copy
from collections.abc import Sequence
from dataclasses import replace
from enum import Enum

import structlog

from training_camp.agents.definition import (
    AgentDefinition,
    AgentParameters,
    AgentTool,
    FlowConnections,
    FlowStep,
    Position,
    StepType,
    new_id,
    now_ms,
)
from training_camp.config import LLMRole
from training_camp.errors import validate_score
from training_camp.llm.router import GenerativeService, llm_available

logger = structlog.get_logger(__name__)


class EvolutionIntensity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"


CLARITY_REMINDER = "Be clear and precise in your responses."
GUIDELINES_MARKER = "Follow these guidelines"
GUIDELINES_BLOCK = (
    "Follow these guidelines:\n"
    "1. Focus on accuracy\n"
    "2. Provide relevant details\n"
    "3. Be concise but thorough"
)

MAX_TOKENS_CAP = 4096

_INTENSITY_GUIDANCE = {
    EvolutionIntensity.MINOR: (
        "- Make subtle refinements to clarity and precision\n"
        "- Polish wording without changing core behavior\n"
        "- Ensure consistency in tone"
    ),
    EvolutionIntensity.MODERATE: (
        "- Adjust emphasis on key behaviors\n"
        "- Add or refine specific instructions\n"
        "- Improve structure and organization"
    ),
    EvolutionIntensity.MAJOR: (
        "- Significantly rewrite for better clarity\n"
        "- Restructure the prompt organization\n"
        "- Add new behavioral guidelines\n"
        "- Remove ineffective instructions"
    ),
}


def evolution_intensity(score: int) -> EvolutionIntensity:
    if score >= 8:
        return EvolutionIntensity.MINOR
    if score >= 5:
        return EvolutionIntensity.MODERATE
    return EvolutionIntensity.MAJOR


def combine_directives(
    sticky: Sequence[str] = (),
    oneshot: Sequence[str] = (),
    feedback: str | None = None,
) -> str | None:
    """Join every non-blank directive and the feedback, one per line."""
    parts = [d.strip() for d in (*sticky, *oneshot, feedback or "") if d and d.strip()]
    return "\n".join(parts) or None


def restructure_prompt(prompt: str, directives: str | None) -> str:
    sections = [
        f"CORE OBJECTIVE:\n{prompt}",
        "KEY BEHAVIORS:\n"
        "- Prioritize accuracy over speed\n"
        "- Validate assumptions before acting\n"
        "- Provide clear explanations for decisions\n"
        "- Ask for clarification when needed",
        "QUALITY STANDARDS:\n"
        "- Ensure completeness of responses\n"
        "- Maintain consistency in approach\n"
        "- Focus on user satisfaction",
    ]
    if directives:
        sections.append(f"SPECIFIC GUIDANCE:\n{directives}")
    return "\n\n".join(sections)


def evolve_prompt(prompt: str, intensity: EvolutionIntensity, directives: str | None) -> str:
    """Deterministic prompt evolution."""
    if intensity is EvolutionIntensity.MAJOR:
        return restructure_prompt(prompt, directives)

    evolved = prompt
    if directives:
        evolved = f"{evolved}\n\nAdditional guidance: {directives}"

    if intensity is EvolutionIntensity.MINOR:
        if "Be clear and precise" not in evolved:
            evolved = f"{evolved}\n\n{CLARITY_REMINDER}"
    elif GUIDELINES_MARKER not in evolved:
        evolved = f"{evolved}\n\n{GUIDELINES_BLOCK}"
    return evolved


def evolve_tools(tools: Sequence[AgentTool], intensity: EvolutionIntensity) -> list[AgentTool]:
    evolved: list[AgentTool] = []
    for tool in tools:
        tool = copy.deepcopy(tool)
        if intensity is EvolutionIntensity.MINOR:
            if not tool.description.endswith("."):
                tool.description = f"{tool.description}."
        elif intensity is EvolutionIntensity.MODERATE:
            for param in tool.parameters:
                if param.required:
                    param.description = f"(Required) {param.description}"
        else:
            tool.id = new_id()
            tool.description = f"{tool.description} Handle errors gracefully.".lstrip()
            for param in tool.parameters:
                note = " (Required - must be provided)" if param.required else " (Optional)"
                param.description = f"{param.description}{note}"
        evolved.append(tool)
    return evolved


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def evolve_parameters(params: AgentParameters, score: int) -> AgentParameters:
    intensity = evolution_intensity(score)
    evolved = replace(params)

    if intensity is EvolutionIntensity.MINOR:
        if score >= 9:
            evolved.temperature = max(0.1, params.temperature - 0.05)
        else:
            evolved.temperature = min(1.0, params.temperature + 0.05)
    elif intensity is EvolutionIntensity.MODERATE:
        evolved.temperature = 0.6 if score >= 6 else 0.8
        evolved.frequency_penalty = (params.frequency_penalty or 0.0) + 0.1
        evolved.presence_penalty = (params.presence_penalty or 0.0) + 0.1
    else:
        evolved.temperature = 0.7
        evolved.max_tokens = min(MAX_TOKENS_CAP, params.max_tokens + 512)
        evolved.top_p = 0.9
        evolved.frequency_penalty = 0.3
        evolved.presence_penalty = 0.3

    evolved.temperature = round(_clamp(evolved.temperature, 0.0, 2.0), 4)
    if evolved.frequency_penalty is not None:
        evolved.frequency_penalty = round(_clamp(evolved.frequency_penalty, -2.0, 2.0), 4)
    if evolved.presence_penalty is not None:
        evolved.presence_penalty = round(_clamp(evolved.presence_penalty, -2.0, 2.0), 4)
    return evolved


def _remap(connections: FlowConnections, id_map: dict[str, str]) -> FlowConnections:
    def lookup(step_id: str | None) -> str | None:
        return id_map.get(step_id, step_id) if step_id else step_id

    return FlowConnections(
        next=lookup(connections.next),
        on_true=lookup(connections.on_true),
        on_false=lookup(connections.on_false),
        on_error=lookup(connections.on_error),
    )


def evolve_flow(flow: Sequence[FlowStep], intensity: EvolutionIntensity) -> list[FlowStep]:
    """Only a major overhaul touches the flow.

    Step ids are regenerated with every connection remapped, and a validation
    condition is inserted in front of the terminal output step unless the
    flow already validates.
    """
    if intensity is not EvolutionIntensity.MAJOR:
        return copy.deepcopy(list(flow))

    id_map = {step.id: new_id() for step in flow}
    evolved = [
        replace(
            copy.deepcopy(step),
            id=id_map[step.id],
            connections=_remap(step.connections, id_map),
        )
        for step in flow
    ]

    has_validation = any(
        step.type is StepType.CONDITION and "valid" in step.name.lower() for step in evolved
    )
    if has_validation or not evolved or evolved[-1].type is not StepType.OUTPUT:
        return evolved

    output = evolved[-1]
    validation = FlowStep(
        type=StepType.CONDITION,
        name="Validate Output",
        config={
            "condition": "output.isValid",
            "description": "Validate output before returning",
        },
        position=Position(x=output.position.x, y=output.position.y - 100),
        connections=FlowConnections(on_true=output.id, on_false=evolved[0].id),
    )
    for step in evolved:
        if step.connections.next == output.id:
            step.connections.next = validation.id

    evolved.insert(len(evolved) - 1, validation)
    return evolved


class AgentEvolver:
    """Builds the next version of an agent definition."""

    def __init__(self, llm: GenerativeService | None = None) -> None:
        self._llm = llm

    async def evolve(
        self,
        agent: AgentDefinition,
        need: str,
        score: int,
        feedback: str | None = None,
        sticky: Sequence[str] = (),
        oneshot: Sequence[str] = (),
    ) -> AgentDefinition:
        validate_score(score)
        intensity = evolution_intensity(score)
        directives = combine_directives(sticky, oneshot, feedback)

        system_prompt: str | None = None
        if llm_available(self._llm):
            system_prompt = await self._rewrite_prompt(agent.system_prompt, score, intensity, directives)
        if not system_prompt:
            system_prompt = evolve_prompt(agent.system_prompt, intensity, directives)

        description = agent.description
        if intensity is EvolutionIntensity.MAJOR and llm_available(self._llm):
            description = await self._rewrite_description(agent, need, score, feedback) or description

        evolved = replace(
            copy.deepcopy(agent),
            id=new_id(),
            version=agent.version + 1,
            description=description,
            system_prompt=system_prompt,
            tools=evolve_tools(agent.tools, intensity),
            flow=evolve_flow(agent.flow, intensity),
            parameters=evolve_parameters(agent.parameters, score),
            updated_at=max(now_ms(), agent.updated_at + 1),
        )

        logger.info(
            "agent_evolved",
            agent_id=agent.id,
            evolved_id=evolved.id,
            version=evolved.version,
            intensity=intensity.value,
        )
        return evolved

    async def _rewrite_prompt(
        self,
        prompt: str,
        score: int,
        intensity: EvolutionIntensity,
        directives: str | None,
    ) -> str | None:
        system = (
            "You are an AI agent prompt engineer. Your task is to improve system prompts "
            "based on performance feedback.\n"
            f"Evolution intensity: {intensity.value}\n"
        )
        if directives:
            system += f"User directives to incorporate: {directives}\n"
        system += (
            f"\nFor {intensity.value} changes:\n{_INTENSITY_GUIDANCE[intensity]}\n\n"
            "Return ONLY the improved system prompt, no explanations."
        )
        user = (
            f"Current system prompt (score: {score}/10):\n---\n{prompt}\n---\n\n"
            "Improve this prompt according to the evolution intensity level."
        )
        try:
            response = await self._llm.chat(  # type: ignore[union-attr]
                [{"role": "system", "content": system}, {"role": "user", "content": user}],
                role=LLMRole.EVOLVING,
                max_tokens=2048,
                temperature=0.8 if intensity is EvolutionIntensity.MAJOR else 0.5,
            )
        except Exception as exc:
            logger.warning("llm_prompt_rewrite_failed", error=str(exc))
            return None
        return response.strip() or None

    async def _rewrite_description(
        self,
        agent: AgentDefinition,
        need: str,
        score: int,
        feedback: str | None,
    ) -> str | None:
        prompt = (
            f'Given an AI agent that was performing poorly (score: {score}/10) for the need: "{need}"\n'
            f"Current name: {agent.name}\n"
            f"Current description: {agent.description}\n"
        )
        if feedback:
            prompt += f"Feedback received: {feedback}\n"
        prompt += (
            "\nSuggest a brief, improved description (1-2 sentences) that reflects the "
            "evolved agent's improved capabilities.\nReturn ONLY the description, no explanations."
        )
        try:
            response = await self._llm.chat(  # type: ignore[union-attr]
                [{"role": "user", "content": prompt}],
                role=LLMRole.EVOLVING,
                max_tokens=256,
                temperature=0.6,
            )
        except Exception as exc:
            logger.warning("llm_description_rewrite_failed", error=str(exc))
            return None
        return response.strip() or None
