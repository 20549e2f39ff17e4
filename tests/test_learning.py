"""Tests for learning-insight arithmetic."""

import pytest

from _helpers import make_change

from training_camp.evolution.learning import (
    FIRST_OBSERVATION_CONFIDENCE,
    MAX_CONTEXTS,
    NO_COMMENT_CONTEXT,
    apply_update,
    first_observation,
    new_insight_input,
    observe,
    pattern_type_for,
)
from training_camp.evolution.models import EvolutionComponent, LearningInsight


def _insight(success=0, failure=0, avg=0.0, contexts=None) -> LearningInsight:
    return LearningInsight(
        session_id="s1",
        pattern="add systemPrompt: length_instructions",
        pattern_type="systemPrompt_change",
        success_count=success,
        failure_count=failure,
        avg_score_impact=avg,
        contexts=contexts or [],
    )


def test_pattern_type():
    assert pattern_type_for(EvolutionComponent.PARAMETERS) == "parameters_change"


def test_new_insight_input():
    data = new_insight_input("s1", make_change(), "too long")
    assert data.pattern == "add systemPrompt: length_instructions"
    assert data.pattern_type == "systemPrompt_change"
    assert data.contexts == ["too long"]
    assert new_insight_input("s1", make_change(), None).contexts == []


@pytest.mark.parametrize(("delta", "success", "failure"), [(3, 1, 0), (0, 0, 1), (-2, 0, 1)])
def test_first_observation(delta, success, failure):
    update = first_observation(delta)
    assert (update.success_count, update.failure_count) == (success, failure)
    assert update.avg_score_impact == delta
    assert update.confidence == FIRST_OBSERVATION_CONFIDENCE
    assert update.contexts is None


class TestObserve:
    def test_success_updates_running_mean(self):
        insight = _insight(success=1, failure=1, avg=-0.5)
        update = observe(insight, 3, "much better")

        assert (update.success_count, update.failure_count) == (2, 1)
        assert update.avg_score_impact == pytest.approx((2 * -0.5 + 3) / 3)
        assert update.confidence == pytest.approx(0.2)
        assert update.contexts == ["much better"]

    def test_zero_delta_counts_as_failure(self):
        update = observe(_insight(success=1), 0, None)
        assert (update.success_count, update.failure_count) == (1, 1)
        assert update.contexts == [NO_COMMENT_CONTEXT]

    def test_counts_never_decrease(self):
        insight = _insight(success=4, failure=2, avg=1.0)
        for delta in (5, -5, 0, 1, -1):
            update = observe(insight, delta, None)
            assert update.success_count >= insight.success_count
            assert update.failure_count >= insight.failure_count
            assert update.success_count + update.failure_count == insight.observations + 1
            apply_update(insight, update, updated_at=1)

    def test_confidence_is_capped(self):
        update = observe(_insight(success=20), 2, None)
        assert update.confidence == 1.0

    def test_contexts_are_capped(self):
        insight = _insight(contexts=[f"c{i}" for i in range(MAX_CONTEXTS)])
        update = observe(insight, 1, "newest")
        assert len(update.contexts) == MAX_CONTEXTS
        assert update.contexts[0] == "c1"
        assert update.contexts[-1] == "newest"


def test_apply_update_skips_unset_fields():
    insight = _insight(success=2, failure=1, avg=1.5, contexts=["a"])
    apply_update(insight, first_observation(-1), updated_at=42)

    assert (insight.success_count, insight.failure_count) == (0, 1)
    assert insight.avg_score_impact == -1.0
    assert insight.contexts == ["a"]
    assert insight.updated_at == 42
