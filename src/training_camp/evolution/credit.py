"""Credit assignment - decides which parts of an agent earned the feedback.

Two modes:

- prompt: for effectively single-shot agents, blame is spread over segments
  of the system prompt.
- trajectory: for multi-step agents, each execution span gets a signed
  contribution in [-1, 1].
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Sequence
from typing import assert_never

import structlog

from training_camp.agents.definition import AgentDefinition
from training_camp.config import LLMRole
from training_camp.errors import GenerativeOutputError
from training_camp.evolution.models import (
    BlameLevel,
    CreditAssignment,
    CreditMode,
    ExecutionSpan,
    FeedbackAspect,
    PromptCredit,
    ScoreAnalysis,
    Sentiment,
    SpanType,
    TrajectoryCredit,
)
from training_camp.llm.parsing import extract_json_array
from training_camp.llm.router import GenerativeService, llm_available

logger = structlog.get_logger(__name__)

# Prompt vocabulary that tends to drive each feedback aspect
ASPECT_SEGMENT_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    "length": [
        re.compile(r"\b(comprehensive|detailed|thorough|extensive|brief|concise|short)\b", re.IGNORECASE),
        re.compile(r"\b(max|limit|length|word|character|token)\b", re.IGNORECASE),
        re.compile(r"\b(expand|elaborate|summarize|shorten)\b", re.IGNORECASE),
    ],
    "tone": [
        re.compile(r"\b(formal|informal|professional|casual|friendly|polite)\b", re.IGNORECASE),
        re.compile(r"\b(tone|voice|style|manner|approach)\b", re.IGNORECASE),
    ],
    "format": [
        re.compile(r"\b(bullet|list|paragraph|structure|organize|format)\b", re.IGNORECASE),
        re.compile(r"\b(markdown|heading|section|numbered)\b", re.IGNORECASE),
    ],
    "accuracy": [
        re.compile(r"\b(accurate|precise|correct|verify|validate|check)\b", re.IGNORECASE),
        re.compile(r"\b(fact|source|reference|citation)\b", re.IGNORECASE),
    ],
    "completeness": [
        re.compile(r"\b(complete|comprehensive|cover|include|address|missing)\b", re.IGNORECASE),
        re.compile(r"\b(all|every|each|full)\b", re.IGNORECASE),
    ],
    "relevance": [
        re.compile(r"\b(relevant|focus|specific|targeted|related)\b", re.IGNORECASE),
        re.compile(r"\b(scope|context|topic)\b", re.IGNORECASE),
    ],
    "creativity": [
        re.compile(r"\b(creative|original|unique|innovative|novel)\b", re.IGNORECASE),
        re.compile(r"\b(idea|approach|solution|perspective)\b", re.IGNORECASE),
    ],
}

_SEGMENT_SPLIT_RE = re.compile(r"\n\s*\n+|\n(?=\s*(?:[-*•]|\d+\.))")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_MIN_SEGMENT_CHARS = 10
_LLM_SEGMENT_PREVIEW = 200

# Trajectory mode needs more than one LLM call and at least this many spans
_TRAJECTORY_MIN_SPANS = 3

_CREDIT_SYSTEM_PROMPT = """You are an AI prompt analyzer. Your task is to identify which parts of a system prompt are responsible for specific feedback.

Given:
- A segmented system prompt
- User feedback with score {score}/10
- Extracted feedback aspects

Analyze which segments relate to the feedback and assign blame levels:
- "high": Segment directly causes the issue
- "medium": Segment contributes to the issue
- "low": Segment weakly relates
- "none": Segment is unrelated

Only use these aspect names: {vocabulary}.

Return JSON array of assignments:
[{{"segmentIndex": 0, "blame": "high", "relatedAspect": "length", "reason": "Instructs verbose output"}}]"""

_CREDIT_USER_PROMPT = """System Prompt Segments:
{segments}

User Feedback:
Score: {score}/10
Comment: {comment}
Aspects:
{aspects}

Which segments relate to the feedback? Return ONLY the JSON array."""


def segment_prompt(prompt: str) -> list[str]:
    """Split a system prompt into paragraphs/list items, or sentences as a fallback."""
    segments = [s.strip() for s in _SEGMENT_SPLIT_RE.split(prompt)]
    segments = [s for s in segments if len(s) > _MIN_SEGMENT_CHARS]

    if len(segments) < 2:
        sentences = [s.strip() for s in _SENTENCE_SPLIT_RE.split(prompt)]
        return [s for s in sentences if len(s) > _MIN_SEGMENT_CHARS]

    return segments


def blame_level_from_relevance(relevance: float) -> BlameLevel:
    if relevance >= 0.7:
        return BlameLevel.HIGH
    if relevance >= 0.4:
        return BlameLevel.MEDIUM
    if relevance >= 0.1:
        return BlameLevel.LOW
    return BlameLevel.NONE


def segment_relevance(segment: str, aspect: str) -> float:
    """Pattern hits for *aspect* in *segment*, normalised to [0, 1]."""
    patterns = ASPECT_SEGMENT_PATTERNS.get(aspect, [])
    if not patterns:
        return 0.0
    matches = sum(len(p.findall(segment)) for p in patterns)
    return min(1.0, matches / (len(patterns) * 2))


def should_use_trajectory_credit(spans: Sequence[ExecutionSpan]) -> bool:
    if len(spans) < _TRAJECTORY_MIN_SPANS:
        return False
    llm_calls = sum(1 for s in spans if s.type is SpanType.LLM_CALL)
    return llm_calls > 1


def assign_prompt_credit_heuristic(prompt: str, aspects: list[FeedbackAspect]) -> list[PromptCredit]:
    credits: list[PromptCredit] = []

    for index, segment in enumerate(segment_prompt(prompt)):
        highest = 0.0
        related: str | None = None
        reason = "No direct relation to feedback aspects"

        for aspect in aspects:
            relevance = segment_relevance(segment, aspect.aspect)
            if relevance <= highest:
                continue
            highest = relevance
            related = aspect.aspect
            if aspect.sentiment is Sentiment.NEGATIVE:
                quote = f': "{aspect.quote}"' if aspect.quote else ""
                reason = f"Segment may contribute to {aspect.aspect} issues{quote}"
            elif aspect.sentiment is Sentiment.POSITIVE:
                reason = f"Segment contributes positively to {aspect.aspect}"
            else:
                reason = f"Segment relates to {aspect.aspect} feedback"

        credits.append(
            PromptCredit(
                segment=segment,
                segment_index=index,
                blame=blame_level_from_relevance(highest),
                related_aspect=related,
                reason=reason,
            )
        )

    return credits


def _span_base_credit(span: ExecutionSpan, score: int) -> tuple[float, str]:
    acceptable = score >= 5
    span_type = span.type

    if span_type is SpanType.LLM_CALL:
        if acceptable:
            return 0.3, "LLM call contributed to acceptable output"
        return -0.3, "LLM call may have produced suboptimal content"
    if span_type is SpanType.TOOL_CALL:
        if span.tool_error:
            return -0.5, f"Tool call failed: {span.tool_error}"
        return 0.2, f"Tool {span.tool_name or 'call'} executed successfully"
    if span_type is SpanType.TOOL_RESULT:
        if span.output:
            return 0.1, "Tool provided useful results"
        return 0.0, "Tool returned no output"
    if span_type is SpanType.REASONING:
        if acceptable:
            return 0.2, "Reasoning step contributed to output"
        return -0.1, "Reasoning may have led to suboptimal decisions"
    if span_type is SpanType.OUTPUT:
        if acceptable:
            return 0.5, "Final output was acceptable"
        return -0.5, "Final output needs improvement"
    assert_never(span_type)


def assign_trajectory_credit_heuristic(
    spans: Sequence[ExecutionSpan],
    analysis: ScoreAnalysis,
) -> list[TrajectoryCredit]:
    credits: list[TrajectoryCredit] = []

    for span in sorted(spans, key=lambda s: s.sequence):
        contribution, reason = _span_base_credit(span, analysis.score)

        text = f"{span.input} {span.output}".lower()
        for aspect in analysis.aspects:
            if aspect.aspect not in text:
                continue
            if aspect.sentiment is Sentiment.NEGATIVE:
                contribution -= 0.2
                reason = f"Related to {aspect.aspect} issue: {aspect.quote or 'negative feedback'}"
            elif aspect.sentiment is Sentiment.POSITIVE:
                contribution += 0.2
                reason = f"Related to {aspect.aspect}: positive feedback"
            break

        credits.append(
            TrajectoryCredit(
                span_id=span.id,
                contribution=max(-1.0, min(1.0, contribution)),
                reason=reason,
                span_type=span.type,
                tool_name=span.tool_name,
            )
        )

    return credits


class CreditAssigner:
    """Attributes feedback to prompt segments or execution spans."""

    def __init__(self, llm: GenerativeService | None = None) -> None:
        self._llm = llm

    async def assign(
        self,
        agent: AgentDefinition,
        analysis: ScoreAnalysis,
        spans: Sequence[ExecutionSpan] = (),
    ) -> CreditAssignment:
        if should_use_trajectory_credit(spans):
            credits = assign_trajectory_credit_heuristic(spans, analysis)
            assignment = CreditAssignment(mode=CreditMode.TRAJECTORY, credits=credits)
        else:
            prompt_credits: list[PromptCredit] = []
            if llm_available(self._llm) and analysis.aspects:
                prompt_credits = await self._assign_with_llm(agent.system_prompt, analysis)
            if not prompt_credits:
                prompt_credits = assign_prompt_credit_heuristic(agent.system_prompt, analysis.aspects)
            assignment = CreditAssignment(mode=CreditMode.PROMPT, credits=prompt_credits)

        logger.debug(
            "credit_assigned",
            agent_id=agent.id,
            mode=assignment.mode.value,
            summary=summarize_credit_assignment(assignment),
        )
        return assignment

    async def _assign_with_llm(self, prompt: str, analysis: ScoreAnalysis) -> list[PromptCredit]:
        segments = segment_prompt(prompt)
        if not segments:
            return []

        segment_list = "\n\n".join(
            f"[{i}] {s[:_LLM_SEGMENT_PREVIEW]}{'...' if len(s) > _LLM_SEGMENT_PREVIEW else ''}"
            for i, s in enumerate(segments)
        )
        aspect_list = "\n".join(
            f"- {a.aspect} ({a.sentiment.value}): {a.quote or 'no quote'}" for a in analysis.aspects
        )
        messages = [
            {
                "role": "system",
                "content": _CREDIT_SYSTEM_PROMPT.format(
                    score=analysis.score,
                    vocabulary=", ".join(ASPECT_SEGMENT_PATTERNS),
                ),
            },
            {
                "role": "user",
                "content": _CREDIT_USER_PROMPT.format(
                    segments=segment_list,
                    score=analysis.score,
                    comment=analysis.comment or "(no comment)",
                    aspects=aspect_list or "(no specific aspects)",
                ),
            },
        ]

        try:
            response = await self._llm.chat(  # type: ignore[union-attr]
                messages, role=LLMRole.ANALYZING, max_tokens=1024, temperature=0.3
            )
            items = extract_json_array(response)
        except GenerativeOutputError as exc:
            logger.warning("llm_credit_output_unusable", error=str(exc))
            return []
        except Exception as exc:
            logger.warning("llm_credit_assignment_failed", error=str(exc))
            return []

        credits: list[PromptCredit] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            index = item.get("segmentIndex")
            if not isinstance(index, int) or not 0 <= index < len(segments):
                continue
            try:
                blame = BlameLevel(str(item.get("blame", "")).lower())
            except ValueError:
                continue
            related = item.get("relatedAspect")
            credits.append(
                PromptCredit(
                    segment=segments[index],
                    segment_index=index,
                    blame=blame,
                    related_aspect=str(related).lower() if related else None,
                    reason=str(item.get("reason") or "Identified by prompt analysis"),
                )
            )
        return credits


# ---------------------------------------------------------------------------
# Read-only projections
# ---------------------------------------------------------------------------


def get_high_blame_segments(credits: Sequence[PromptCredit]) -> list[PromptCredit]:
    return [c for c in credits if c.blame in (BlameLevel.HIGH, BlameLevel.MEDIUM)]


def get_problematic_spans(credits: Sequence[TrajectoryCredit]) -> list[TrajectoryCredit]:
    return [c for c in credits if c.contribution < 0]


def summarize_spans(spans: Sequence[ExecutionSpan]) -> str:
    if not spans:
        return "No execution spans"
    counts = Counter(s.type.value for s in spans)
    parts = [f"{len(spans)} total spans"]
    parts.extend(f"{count} {span_type}" for span_type, count in counts.items())
    return ", ".join(parts)


def summarize_credit_assignment(assignment: CreditAssignment) -> str:
    if not assignment.credits:
        return "No credit assigned"

    if assignment.mode is CreditMode.PROMPT:
        credits = assignment.prompt_credits
        high = [c.related_aspect or "unspecified" for c in credits if c.blame is BlameLevel.HIGH]
        medium = [c.related_aspect or "unspecified" for c in credits if c.blame is BlameLevel.MEDIUM]
        parts = [f"Analyzed {len(credits)} prompt segments"]
        if high:
            parts.append(f"High blame: {', '.join(high)}")
        if medium:
            parts.append(f"Medium blame: {', '.join(medium)}")
        return ". ".join(parts)

    trajectory = assignment.trajectory_credits
    problematic = sum(1 for c in trajectory if c.contribution < 0)
    helpful = sum(1 for c in trajectory if c.contribution > 0.3)
    parts = [f"Analyzed {len(trajectory)} execution spans"]
    if problematic:
        parts.append(f"{problematic} problematic spans")
    if helpful:
        parts.append(f"{helpful} helpful spans")
    return ". ".join(parts)
