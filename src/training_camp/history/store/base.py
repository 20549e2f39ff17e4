"""Protocol for pluggable evolution-history storage backends."""

from __future__ import annotations

from typing import Protocol

from training_camp.evolution.models import (
    CreateEvolutionRecordInput,
    CreateLearningInsightInput,
    EvolutionOutcome,
    EvolutionRecord,
    LearningInsight,
    LearningInsightUpdate,
)


class EvolutionStore(Protocol):
    """Backend interface for evolution records and learning insights.

    Records are keyed by lineage and insights by session, so distinct
    lineages can be evolved concurrently against one store.
    """

    async def get_evolution_records_by_lineage(self, lineage_id: str) -> list[EvolutionRecord]:
        """Most recent first."""
        ...

    async def get_evolution_record(self, record_id: str) -> EvolutionRecord | None: ...
    async def create_evolution_record(self, data: CreateEvolutionRecordInput) -> EvolutionRecord: ...

    async def update_evolution_outcome(self, record_id: str, outcome: EvolutionOutcome) -> bool:
        """Set the outcome once. Returns False if the record is unknown or already has one."""
        ...

    async def get_learning_insights_by_session(self, session_id: str) -> list[LearningInsight]:
        """Highest confidence first."""
        ...

    async def find_insight_by_pattern(self, session_id: str, pattern: str) -> LearningInsight | None: ...

    async def create_learning_insight(self, data: CreateLearningInsightInput) -> LearningInsight:
        """Create the insight, or return the existing one for the same (session, pattern)."""
        ...

    async def update_learning_insight(
        self, insight_id: str, update: LearningInsightUpdate
    ) -> LearningInsight | None: ...

    async def record_insight_observation(
        self, data: CreateLearningInsightInput, score_delta: int, comment: str | None
    ) -> LearningInsight:
        """Find or create the insight and fold one outcome into it atomically.

        Concurrent observations of the same (session, pattern) must all be
        counted.
        """
        ...
