"""Learning-insight arithmetic.

An insight tracks how one kind of edit (its *pattern*) has fared across a
session. Counts only ever grow; the average impact is a running mean over all
observations.
"""

from __future__ import annotations

from training_camp.evolution.models import (
    CreateLearningInsightInput,
    EvolutionChange,
    EvolutionComponent,
    LearningInsight,
    LearningInsightUpdate,
)

MAX_CONTEXTS = 10
FIRST_OBSERVATION_CONFIDENCE = 0.1
NO_COMMENT_CONTEXT = "no comment"


def pattern_type_for(component: EvolutionComponent) -> str:
    return f"{component.value}_change"


def new_insight_input(
    session_id: str,
    change: EvolutionChange,
    comment: str | None,
) -> CreateLearningInsightInput:
    return CreateLearningInsightInput(
        session_id=session_id,
        pattern=change.pattern,
        pattern_type=pattern_type_for(change.component),
        contexts=[comment] if comment else [],
    )


def first_observation(score_delta: int) -> LearningInsightUpdate:
    """Update applied to a freshly created insight."""
    succeeded = score_delta > 0
    return LearningInsightUpdate(
        success_count=1 if succeeded else 0,
        failure_count=0 if succeeded else 1,
        avg_score_impact=float(score_delta),
        confidence=FIRST_OBSERVATION_CONFIDENCE,
    )


def observe(insight: LearningInsight, score_delta: int, comment: str | None) -> LearningInsightUpdate:
    """Fold one more observation into an existing insight.

    A positive ``score_delta`` is a success; zero or negative is a failure.
    """
    succeeded = score_delta > 0
    success_count = insight.success_count + (1 if succeeded else 0)
    failure_count = insight.failure_count + (0 if succeeded else 1)
    total = success_count + failure_count

    return LearningInsightUpdate(
        success_count=success_count,
        failure_count=failure_count,
        avg_score_impact=(insight.avg_score_impact * (total - 1) + score_delta) / total,
        confidence=min(1.0, (total / 10) * (success_count / total)),
        contexts=[*insight.contexts, comment or NO_COMMENT_CONTEXT][-MAX_CONTEXTS:],
    )


def next_observation(insight: LearningInsight, score_delta: int, comment: str | None) -> LearningInsightUpdate:
    if insight.observations == 0:
        return first_observation(score_delta)
    return observe(insight, score_delta, comment)


def apply_update(insight: LearningInsight, update: LearningInsightUpdate, updated_at: int) -> None:
    """Write the non-None fields of *update* onto *insight* in place."""
    if update.success_count is not None:
        insight.success_count = update.success_count
    if update.failure_count is not None:
        insight.failure_count = update.failure_count
    if update.avg_score_impact is not None:
        insight.avg_score_impact = update.avg_score_impact
    if update.confidence is not None:
        insight.confidence = update.confidence
    if update.contexts is not None:
        insight.contexts = list(update.contexts[-MAX_CONTEXTS:])
    insight.updated_at = updated_at
