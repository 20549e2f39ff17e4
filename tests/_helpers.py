"""Shared test helpers - importable from test modules."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any

from training_camp.agents.definition import (
    AgentDefinition,
    AgentParameters,
    AgentTool,
    FlowConnections,
    FlowStep,
    StepType,
    ToolParameter,
)
from training_camp.config import LLMRole
from training_camp.evolution.models import (
    ChangeType,
    CreditAssignment,
    CreditMode,
    Directives,
    EvolutionChange,
    EvolutionComponent,
    EvolutionOutcome,
    EvolutionPlan,
    EvolutionRecord,
    EvolutionTrigger,
    ExecutionSpan,
    ScoreAnalysis,
    Sentiment,
    SpanType,
)

DEFAULT_PROMPT = (
    "You are a helpful writing assistant.\n\n"
    "Be detailed, thorough and comprehensive. Elaborate and expand on every point without any word limit.\n\n"
    "- Use a friendly and casual tone with the user\n"
    "- Always verify facts and check sources before answering"
)


class FakeLLM:
    """GenerativeService double with scripted replies.

    ``replies`` are strings (returned in order) or exceptions (raised).
    A ``handler`` answers every call instead when given.
    """

    def __init__(
        self,
        *replies: str | Exception,
        configured: bool = True,
        handler: Callable[[list[dict[str, str]]], str] | None = None,
    ) -> None:
        self._replies = list(replies)
        self._configured = configured
        self._handler = handler
        self.calls: list[dict[str, Any]] = []

    def is_configured(self) -> bool:
        return self._configured

    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        role: LLMRole = LLMRole.ANALYZING,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        self.calls.append({"messages": messages, "role": role, "max_tokens": max_tokens})
        if self._handler is not None:
            return self._handler(messages)
        if not self._replies:
            raise RuntimeError("FakeLLM has no scripted reply left")
        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def make_agent(
    prompt: str = DEFAULT_PROMPT,
    version: int = 1,
    lineage_id: str | None = "lineage-a",
    temperature: float = 0.7,
    with_tools: bool = True,
    with_flow: bool = True,
) -> AgentDefinition:
    tools = []
    if with_tools:
        tools.append(
            AgentTool(
                name="web_search",
                description="Search the web",
                parameters=[
                    ToolParameter(name="query", description="Search terms", required=True),
                    ToolParameter(name="limit", type="number", description="Max results"),
                ],
            )
        )

    flow = []
    if with_flow:
        start = FlowStep(type=StepType.START, name="Start")
        draft = FlowStep(type=StepType.PROMPT, name="Draft answer")
        output = FlowStep(type=StepType.OUTPUT, name="Respond")
        start.connections = FlowConnections(next=draft.id)
        draft.connections = FlowConnections(next=output.id)
        flow = [start, draft, output]

    return AgentDefinition(
        name="Writer",
        description="Writes answers",
        system_prompt=prompt,
        lineage_id=lineage_id,
        version=version,
        tools=tools,
        flow=flow,
        parameters=AgentParameters(temperature=temperature),
    )


def make_span(
    sequence: int,
    span_type: SpanType,
    *,
    input: str = "",
    output: str = "ok",
    tool_name: str | None = None,
    tool_error: str | None = None,
) -> ExecutionSpan:
    return ExecutionSpan(
        id=f"span-{sequence}",
        attempt_id="attempt-1",
        sequence=sequence,
        type=span_type,
        input=input,
        output=output,
        tool_name=tool_name,
        tool_error=tool_error,
    )


def make_change(
    component: EvolutionComponent = EvolutionComponent.SYSTEM_PROMPT,
    target: str = "length_instructions",
    change_type: ChangeType = ChangeType.ADD,
    after: str | None = "Be concise.",
) -> EvolutionChange:
    return EvolutionChange(
        component=component,
        change_type=change_type,
        target=target,
        reason="test change",
        after=after,
    )


def make_record(
    changes: list[EvolutionChange],
    *,
    score: int = 5,
    score_delta: int | None = None,
    lineage_id: str = "lineage-a",
    created_at: int | None = None,
) -> EvolutionRecord:
    outcome = None
    if score_delta is not None:
        outcome = EvolutionOutcome(
            next_score=score + score_delta,
            score_delta=score_delta,
            hypothesis_validated=score_delta > 0,
        )
    record = EvolutionRecord(
        lineage_id=lineage_id,
        from_version=1,
        to_version=2,
        trigger=EvolutionTrigger(
            rollout_id=str(uuid.uuid4()),
            attempt_id=str(uuid.uuid4()),
            score=score,
            comment="too long",
            directives=Directives(),
        ),
        score_analysis=ScoreAnalysis(score=score, sentiment=Sentiment.NEUTRAL),
        credit_assignment=CreditAssignment(mode=CreditMode.PROMPT),
        plan=EvolutionPlan(hypothesis="test", changes=list(changes)),
        changes=list(changes),
        outcome=outcome,
    )
    if created_at is not None:
        record.created_at = created_at
    return record
