"""In-memory evolution store for testing."""

from __future__ import annotations

import copy

from training_camp.agents.definition import now_ms
from training_camp.evolution.learning import apply_update, next_observation
from training_camp.evolution.models import (
    CreateEvolutionRecordInput,
    CreateLearningInsightInput,
    EvolutionOutcome,
    EvolutionRecord,
    EvolutionTrigger,
    LearningInsight,
    LearningInsightUpdate,
)


def record_from_input(data: CreateEvolutionRecordInput) -> EvolutionRecord:
    return EvolutionRecord(
        lineage_id=data.lineage_id,
        from_version=data.from_version,
        to_version=data.to_version,
        trigger=EvolutionTrigger(
            rollout_id=data.rollout_id,
            attempt_id=data.attempt_id,
            score=data.trigger_score,
            comment=data.trigger_comment,
            directives=copy.deepcopy(data.trigger_directives),
        ),
        score_analysis=copy.deepcopy(data.score_analysis),
        credit_assignment=copy.deepcopy(data.credit_assignment),
        plan=copy.deepcopy(data.plan),
        changes=copy.deepcopy(data.changes),
    )


class InMemoryStore:
    """Simple in-memory evolution store for testing and development.

    Returns copies, so callers never hold a reference into the store.
    """

    def __init__(self) -> None:
        self._records: list[EvolutionRecord] = []
        self._insights: list[LearningInsight] = []

    async def get_evolution_records_by_lineage(self, lineage_id: str) -> list[EvolutionRecord]:
        records = [r for r in reversed(self._records) if r.lineage_id == lineage_id]
        return copy.deepcopy(sorted(records, key=lambda r: r.created_at, reverse=True))

    async def get_evolution_record(self, record_id: str) -> EvolutionRecord | None:
        record = self._find_record(record_id)
        return copy.deepcopy(record) if record else None

    async def create_evolution_record(self, data: CreateEvolutionRecordInput) -> EvolutionRecord:
        record = record_from_input(data)
        self._records.append(record)
        return copy.deepcopy(record)

    async def update_evolution_outcome(self, record_id: str, outcome: EvolutionOutcome) -> bool:
        record = self._find_record(record_id)
        if record is None or record.outcome is not None:
            return False
        record.outcome = copy.deepcopy(outcome)
        return True

    async def get_learning_insights_by_session(self, session_id: str) -> list[LearningInsight]:
        insights = [i for i in self._insights if i.session_id == session_id]
        return copy.deepcopy(sorted(insights, key=lambda i: i.confidence, reverse=True))

    async def find_insight_by_pattern(self, session_id: str, pattern: str) -> LearningInsight | None:
        insight = self._find_insight(session_id, pattern)
        return copy.deepcopy(insight) if insight else None

    async def create_learning_insight(self, data: CreateLearningInsightInput) -> LearningInsight:
        existing = self._find_insight(data.session_id, data.pattern)
        if existing is not None:
            return copy.deepcopy(existing)
        insight = LearningInsight(
            session_id=data.session_id,
            pattern=data.pattern,
            pattern_type=data.pattern_type,
            contexts=list(data.contexts),
        )
        self._insights.append(insight)
        return copy.deepcopy(insight)

    async def update_learning_insight(
        self, insight_id: str, update: LearningInsightUpdate
    ) -> LearningInsight | None:
        insight = next((i for i in self._insights if i.id == insight_id), None)
        if insight is None:
            return None
        apply_update(insight, update, now_ms())
        return copy.deepcopy(insight)

    async def record_insight_observation(
        self, data: CreateLearningInsightInput, score_delta: int, comment: str | None
    ) -> LearningInsight:
        # No await between read and write, so concurrent runs cannot interleave here
        insight = self._find_insight(data.session_id, data.pattern)
        if insight is None:
            insight = LearningInsight(
                session_id=data.session_id,
                pattern=data.pattern,
                pattern_type=data.pattern_type,
                contexts=list(data.contexts),
            )
            self._insights.append(insight)
        apply_update(insight, next_observation(insight, score_delta, comment), now_ms())
        return copy.deepcopy(insight)

    def _find_record(self, record_id: str) -> EvolutionRecord | None:
        return next((r for r in self._records if r.id == record_id), None)

    def _find_insight(self, session_id: str, pattern: str) -> LearningInsight | None:
        return next(
            (i for i in self._insights if i.session_id == session_id and i.pattern == pattern),
            None,
        )
