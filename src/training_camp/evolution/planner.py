"""Evolution planner - turns credit assignment into a concrete plan of edits.

Heuristic rules always produce a plan; a generative plan may replace it when
an LLM is configured. Every proposed change is then checked against the
lineage's past records and the session's learning insights, and changes that
history says will hurt are dropped.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import replace

import structlog

from training_camp.agents.definition import AgentDefinition
from training_camp.config import LLMRole
from training_camp.errors import GenerativeOutputError
from training_camp.evolution.credit import get_high_blame_segments
from training_camp.evolution.models import (
    BlameLevel,
    ChangeOutcome,
    ChangeType,
    CreditAssignment,
    CreditMode,
    EvolutionChange,
    EvolutionComponent,
    EvolutionPlan,
    EvolutionRecord,
    ExpectedImpact,
    FeedbackAspect,
    HistoryCheck,
    ImpactDirection,
    LearningInsight,
    PromptCredit,
    Recommendation,
    ScoreAnalysis,
    Sentiment,
    SimilarPastChange,
    SpanType,
    TrajectoryCredit,
)
from training_camp.evolution.learning import pattern_type_for
from training_camp.llm.parsing import clamp, extract_json_object
from training_camp.llm.router import GenerativeService, llm_available

logger = structlog.get_logger(__name__)

MAINTAIN_HYPOTHESIS = "No significant changes needed - maintain current approach"

# Corrective instruction appended or swapped in for each negative aspect
CORRECTIVE_INSTRUCTIONS: dict[str, str] = {
    "length": "Be concise and focused. Avoid unnecessary details or verbosity.",
    "tone": "Use a professional yet approachable tone. Be helpful and clear.",
    "format": (
        "Structure your response clearly. Use bullet points or numbered lists "
        "when presenting multiple items."
    ),
    "accuracy": "Double-check all facts and claims. If uncertain, acknowledge limitations.",
    "completeness": (
        "Ensure you address all aspects of the request. Check for missing "
        "information before responding."
    ),
    "relevance": "Stay focused on the specific request. Avoid tangential information.",
    "creativity": "Explore creative approaches and unique perspectives when appropriate.",
}

CHANGE_REASONS: dict[str, str] = {
    "length": "Adjust output length based on length feedback",
    "tone": "Adjust communication tone based on tone feedback",
    "format": "Add explicit formatting instructions based on format feedback",
    "accuracy": "Emphasize accuracy and verification based on accuracy feedback",
    "completeness": "Add completeness checklist based on completeness feedback",
    "relevance": "Tighten focus based on relevance feedback",
    "creativity": "Encourage original approaches based on creativity feedback",
}

# Existing prompt wording that a corrective instruction should replace
EXISTING_INSTRUCTION_PATTERNS: dict[str, re.Pattern[str]] = {
    "length": re.compile(
        r"be (?:concise|brief|detailed|thorough)|word (?:limit|count)|(?:max|min)imum length",
        re.IGNORECASE,
    ),
    "tone": re.compile(r"tone|voice|style|manner|professional|casual|friendly", re.IGNORECASE),
    "format": re.compile(r"format|structure|bullet|list|paragraph|organize", re.IGNORECASE),
    "accuracy": re.compile(r"accurate|precise|verify|check|fact", re.IGNORECASE),
    "completeness": re.compile(r"complete|comprehensive|thorough|cover|include", re.IGNORECASE),
    "relevance": re.compile(r"relevant|focus|specific|scope", re.IGNORECASE),
    "creativity": re.compile(r"creative|original|innovative|unique", re.IGNORECASE),
}

REASONING_GUIDANCE = "Think step by step. Validate your reasoning before providing the final answer."

_STRONGLY_NEGATIVE_CONFIDENCE = 0.6
_MAX_REMOVABLE_SEGMENT = 200
_TEMPERATURE_FLOOR_SCORE = 2
_MIN_TEMPERATURE = 0.3
_MODIFY_CONFIDENCE_FACTOR = 0.7
_INSIGHT_APPLY_CONFIDENCE = 0.5
_INSIGHT_SKIP_AVG_IMPACT = -2.0

_PLAN_SYSTEM_PROMPT = """You are an AI agent evolution planner. Based on user feedback and credit assignment analysis, create a targeted evolution plan.

Guidelines:
1. Focus on the highest-impact changes
2. Avoid over-engineering - make minimal necessary changes
3. Each change should address a specific issue
4. Provide a testable hypothesis

Return a JSON object:
{
  "changes": [
    {
      "component": "systemPrompt|tools|flow|parameters",
      "changeType": "add|remove|modify",
      "target": "what_to_change",
      "before": "current value or null",
      "after": "new value or null",
      "reason": "why this change",
      "confidence": 0.0-1.0
    }
  ],
  "hypothesis": "After these changes, we expect...",
  "expectedImpact": [
    {"aspect": "aspect_name", "direction": "improve|maintain"}
  ]
}"""

_PLAN_USER_PROMPT = """Agent: {name}
Current System Prompt (first 500 chars):
{prompt}

Score: {score}/10
Comment: {comment}
Aspects: {aspects}
Trend: {trend} (delta: {delta})

Credit Assignment:
{credits}

Already Proposed Changes:
{existing}

Create an evolution plan. Return ONLY the JSON object."""


def _format_number(value: float) -> str:
    return f"{round(value, 4):g}"


def find_existing_instruction(aspect: str, prompt: str) -> str | None:
    pattern = EXISTING_INSTRUCTION_PATTERNS.get(aspect)
    if pattern is None:
        return None
    match = pattern.search(prompt)
    return match.group(0) if match else None


def _is_strongly_negative(aspect: FeedbackAspect) -> bool:
    return aspect.sentiment is Sentiment.NEGATIVE and aspect.confidence >= _STRONGLY_NEGATIVE_CONFIDENCE


def plan_from_prompt_credit(
    agent: AgentDefinition,
    credits: Sequence[PromptCredit],
    analysis: ScoreAnalysis,
) -> list[EvolutionChange]:
    changes: list[EvolutionChange] = []

    by_aspect: dict[str, list[PromptCredit]] = {}
    for credit in get_high_blame_segments(credits):
        if credit.related_aspect:
            by_aspect.setdefault(credit.related_aspect, []).append(credit)

    for aspect_name, aspect_credits in by_aspect.items():
        feedback = analysis.find_aspect(aspect_name)
        instruction = CORRECTIVE_INSTRUCTIONS.get(aspect_name)
        if feedback is None or feedback.sentiment is not Sentiment.NEGATIVE or instruction is None:
            continue

        target = f"{aspect_name}_instructions"
        has_high = any(c.blame is BlameLevel.HIGH for c in aspect_credits)
        before = find_existing_instruction(aspect_name, agent.system_prompt)

        changes.append(
            EvolutionChange(
                component=EvolutionComponent.SYSTEM_PROMPT,
                change_type=ChangeType.MODIFY if before else ChangeType.ADD,
                target=target,
                before=before,
                after=instruction,
                reason=CHANGE_REASONS[aspect_name],
                confidence=0.8 if has_high else 0.6,
            )
        )

        if has_high and _is_strongly_negative(feedback):
            culprit = next(c for c in aspect_credits if c.blame is BlameLevel.HIGH)
            if len(culprit.segment) < _MAX_REMOVABLE_SEGMENT:
                changes.append(
                    EvolutionChange(
                        component=EvolutionComponent.SYSTEM_PROMPT,
                        change_type=ChangeType.REMOVE,
                        target=target,
                        before=culprit.segment,
                        after=None,
                        reason=f"Remove or rephrase: {culprit.reason}",
                        confidence=0.5,
                    )
                )

    return changes


def _credit_span_type(credit: TrajectoryCredit) -> SpanType | None:
    """Span type of a credit, inferred from its reason for legacy records."""
    if credit.span_type is not None:
        return credit.span_type
    reason = credit.reason.lower()
    if "tool" in reason:
        return SpanType.TOOL_CALL
    if "llm" in reason or "reasoning" in reason:
        return SpanType.LLM_CALL
    if "output" in reason:
        return SpanType.OUTPUT
    return None


def plan_from_trajectory_credit(credits: Sequence[TrajectoryCredit]) -> list[EvolutionChange]:
    changes: list[EvolutionChange] = []

    tool_failures: list[TrajectoryCredit] = []
    reasoning_issues: list[TrajectoryCredit] = []
    output_credits: list[TrajectoryCredit] = []

    for credit in credits:
        span_type = _credit_span_type(credit)
        if span_type is None or span_type is SpanType.TOOL_RESULT:
            continue
        if span_type is SpanType.OUTPUT:
            output_credits.append(credit)
        elif credit.contribution >= 0:
            continue
        elif span_type is SpanType.TOOL_CALL:
            tool_failures.append(credit)
        elif span_type in (SpanType.LLM_CALL, SpanType.REASONING):
            reasoning_issues.append(credit)

    if tool_failures:
        tool_names = sorted({c.tool_name for c in tool_failures if c.tool_name})
        context = f" ({', '.join(tool_names)})" if tool_names else ""
        changes.append(
            EvolutionChange(
                component=EvolutionComponent.TOOLS,
                change_type=ChangeType.MODIFY,
                target="tool_error_handling",
                before=None,
                after=f"Add graceful error handling to tools{context}",
                reason=f"{len(tool_failures)} tool call(s) had errors{context}",
                confidence=0.7,
            )
        )

    if reasoning_issues:
        changes.append(
            EvolutionChange(
                component=EvolutionComponent.SYSTEM_PROMPT,
                change_type=ChangeType.ADD,
                target="reasoning_guidance",
                before=None,
                after=REASONING_GUIDANCE,
                reason=f"{len(reasoning_issues)} LLM call or reasoning step(s) produced suboptimal results",
                confidence=0.6,
            )
        )

    if output_credits and output_credits[-1].contribution < 0:
        changes.append(
            EvolutionChange(
                component=EvolutionComponent.FLOW,
                change_type=ChangeType.ADD,
                target="output_validation",
                before=None,
                after="Add output validation step before final response",
                reason="Final output span received negative credit",
                confidence=0.5,
            )
        )

    return changes


def temperature_safety_change(agent: AgentDefinition) -> EvolutionChange:
    current = agent.parameters.temperature
    return EvolutionChange(
        component=EvolutionComponent.PARAMETERS,
        change_type=ChangeType.MODIFY,
        target="temperature",
        before=_format_number(current),
        after=_format_number(max(_MIN_TEMPERATURE, current - 0.2)),
        reason="Reduce temperature for more consistent output",
        confidence=0.7,
    )


def _ensure_temperature_safety(
    changes: list[EvolutionChange], agent: AgentDefinition, analysis: ScoreAnalysis
) -> None:
    if analysis.score > _TEMPERATURE_FLOOR_SCORE:
        return
    if any(c.component is EvolutionComponent.PARAMETERS and c.target == "temperature" for c in changes):
        return
    changes.append(temperature_safety_change(agent))


def generate_hypothesis(changes: Sequence[EvolutionChange], analysis: ScoreAnalysis) -> str:
    if not changes:
        return MAINTAIN_HYPOTHESIS

    components = list(dict.fromkeys(c.component.value for c in changes))
    improvements = [a.aspect for a in analysis.negative_aspects()]
    if improvements:
        return (
            f"After modifying {' and '.join(components)}, {' and '.join(improvements)} "
            "should improve, leading to a higher score"
        )
    return f"After modifying {' and '.join(components)}, overall performance should improve"


def generate_expected_impact(aspects: Sequence[FeedbackAspect]) -> list[ExpectedImpact]:
    return [
        ExpectedImpact(
            aspect=a.aspect,
            direction=ImpactDirection.IMPROVE if a.sentiment is Sentiment.NEGATIVE else ImpactDirection.MAINTAIN,
        )
        for a in aspects
    ]


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


def _insight_matches(insight: LearningInsight, change: EvolutionChange) -> bool:
    if insight.pattern == change.pattern:
        return True
    return (
        insight.pattern_type == pattern_type_for(change.component)
        and change.target.lower() in insight.pattern.lower()
    )


def check_against_history(
    change: EvolutionChange,
    past_records: Sequence[EvolutionRecord],
    insights: Sequence[LearningInsight] = (),
) -> HistoryCheck:
    """Recommend whether *change* should be applied given what happened before."""
    similar: list[SimilarPastChange] = []
    all_negative = True

    for record in past_records:
        for past in record.changes:
            if past.component is not change.component or past.target != change.target:
                continue
            delta = record.outcome.score_delta if record.outcome else 0
            if record.outcome is None or delta >= 0:
                all_negative = False
            if delta > 0:
                outcome = ChangeOutcome.IMPROVED
            elif delta < 0:
                outcome = ChangeOutcome.WORSENED
            else:
                outcome = ChangeOutcome.NEUTRAL
            similar.append(SimilarPastChange(change=past, outcome=outcome, score_delta=delta))

    improved = sum(1 for s in similar if s.outcome is ChangeOutcome.IMPROVED)
    worsened = sum(1 for s in similar if s.outcome is ChangeOutcome.WORSENED)

    recommendation = Recommendation.APPLY
    reason = "No conflicting history found"
    if improved:
        reason = f"Similar changes improved scores {improved} times"
    elif len(similar) >= 2 and all_negative:
        recommendation = Recommendation.SKIP
        reason = f"Similar changes worsened scores {worsened} times in the past"
    elif worsened:
        recommendation = Recommendation.MODIFY
        reason = "Similar change previously worsened score - consider alternative approach"

    for insight in insights:
        if not _insight_matches(insight, change) or insight.observations == 0:
            continue
        if (
            insight.failure_count > insight.success_count * 2
            or insight.avg_score_impact <= _INSIGHT_SKIP_AVG_IMPACT
        ):
            recommendation = Recommendation.SKIP
            reason = f'Learning insight suggests this pattern often fails: "{insight.pattern}"'
        elif (
            insight.confidence >= _INSIGHT_APPLY_CONFIDENCE
            and insight.success_count > insight.failure_count
            and insight.avg_score_impact > 0
        ):
            recommendation = Recommendation.APPLY
            reason = f'Learning insight supports this pattern: "{insight.pattern}"'

    return HistoryCheck(
        proposed_change=change,
        recommendation=recommendation,
        reason=reason,
        similar_past_changes=similar,
    )


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


class EvolutionPlanner:
    """Creates targeted, history-aware evolution plans."""

    def __init__(self, llm: GenerativeService | None = None) -> None:
        self._llm = llm

    async def plan(
        self,
        agent: AgentDefinition,
        analysis: ScoreAnalysis,
        assignment: CreditAssignment,
        past_records: Sequence[EvolutionRecord] = (),
        insights: Sequence[LearningInsight] = (),
    ) -> EvolutionPlan:
        if assignment.mode is CreditMode.PROMPT:
            base_changes = plan_from_prompt_credit(agent, assignment.prompt_credits, analysis)
        else:
            base_changes = plan_from_trajectory_credit(assignment.trajectory_credits)

        _ensure_temperature_safety(base_changes, agent, analysis)

        plan: EvolutionPlan | None = None
        if llm_available(self._llm):
            plan = await self._plan_with_llm(agent, analysis, assignment, base_changes)
        if plan is not None:
            # A generated plan still gets the very-low-score safety net
            _ensure_temperature_safety(plan.changes, agent, analysis)
        else:
            plan = EvolutionPlan(
                changes=base_changes,
                hypothesis=generate_hypothesis(base_changes, analysis),
                expected_impact=generate_expected_impact(analysis.aspects),
            )

        checked: list[EvolutionChange] = []
        for change in plan.changes:
            check = check_against_history(change, past_records, insights)
            if check.recommendation is Recommendation.APPLY:
                checked.append(change)
            elif check.recommendation is Recommendation.MODIFY:
                checked.append(
                    replace(
                        change,
                        confidence=change.confidence * _MODIFY_CONFIDENCE_FACTOR,
                        reason=f"{change.reason} (Note: {check.reason})",
                    )
                )
            else:
                logger.info("change_skipped_by_history", pattern=change.pattern, reason=check.reason)

        plan.changes = checked
        if not checked:
            plan.hypothesis = MAINTAIN_HYPOTHESIS

        logger.debug("plan_created", agent_id=agent.id, summary=summarize_plan(plan))
        return plan

    async def _plan_with_llm(
        self,
        agent: AgentDefinition,
        analysis: ScoreAnalysis,
        assignment: CreditAssignment,
        existing: Sequence[EvolutionChange],
    ) -> EvolutionPlan | None:
        if assignment.mode is CreditMode.PROMPT:
            credit_summary = "\n".join(
                f"- [{c.blame.value}] Segment {c.segment_index}: {c.related_aspect or 'general'} - {c.reason}"
                for c in get_high_blame_segments(assignment.prompt_credits)
            )
        else:
            credit_summary = "\n".join(
                f"- [{c.contribution:.2f}] {c.reason}"
                for c in assignment.trajectory_credits
                if c.contribution < 0
            )
        existing_summary = "\n".join(
            f"- {c.change_type.value} {c.component.value}/{c.target}: {c.reason}" for c in existing
        )
        prompt = agent.system_prompt
        messages = [
            {"role": "system", "content": _PLAN_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": _PLAN_USER_PROMPT.format(
                    name=agent.name,
                    prompt=prompt[:500] + ("..." if len(prompt) > 500 else ""),
                    score=analysis.score,
                    comment=analysis.comment or "(none)",
                    aspects=", ".join(f"{a.aspect}({a.sentiment.value})" for a in analysis.aspects) or "none",
                    trend=analysis.trend.value,
                    delta=analysis.delta_from_previous,
                    credits=credit_summary or "No high-blame segments identified",
                    existing=existing_summary or "None proposed yet",
                ),
            },
        ]

        try:
            response = await self._llm.chat(  # type: ignore[union-attr]
                messages, role=LLMRole.PLANNING, max_tokens=1024, temperature=0.5
            )
            data = extract_json_object(response)
        except GenerativeOutputError as exc:
            logger.warning("llm_plan_output_unusable", error=str(exc))
            return None
        except Exception as exc:
            logger.warning("llm_planning_failed", error=str(exc))
            return None

        changes: list[EvolutionChange] = []
        for item in data.get("changes") or []:
            if not isinstance(item, dict):
                continue
            try:
                component = EvolutionComponent(item.get("component"))
                change_type = ChangeType(item.get("changeType"))
            except ValueError:
                continue
            before = item.get("before")
            after = item.get("after")
            changes.append(
                EvolutionChange(
                    component=component,
                    change_type=change_type,
                    target=str(item.get("target") or component.value),
                    before=str(before) if before is not None else None,
                    after=str(after) if after is not None else None,
                    reason=str(item.get("reason") or "Proposed by evolution planner"),
                    confidence=clamp(item.get("confidence"), 0.0, 1.0, 0.5),
                )
            )

        impacts: list[ExpectedImpact] = []
        for item in data.get("expectedImpact") or []:
            if not isinstance(item, dict) or not item.get("aspect"):
                continue
            try:
                direction = ImpactDirection(item.get("direction"))
            except ValueError:
                continue
            impacts.append(ExpectedImpact(aspect=str(item["aspect"]), direction=direction))

        return EvolutionPlan(
            changes=changes,
            hypothesis=str(data.get("hypothesis") or "Changes should improve agent performance"),
            expected_impact=impacts,
        )


def summarize_plan(plan: EvolutionPlan) -> str:
    if not plan.changes:
        return "No changes planned"
    summary = ", ".join(f"{c.change_type.value} {c.component.value}/{c.target}" for c in plan.changes)
    return f"Plan: {summary}. Hypothesis: {plan.hypothesis}"
