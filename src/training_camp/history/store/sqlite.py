"""SQLite-backed evolution store for durable per-repo persistence."""

from __future__ import annotations

import json
from typing import Any

import structlog
from pydantic import TypeAdapter

from training_camp.agents.definition import now_ms
from training_camp.evolution.learning import FIRST_OBSERVATION_CONFIDENCE, MAX_CONTEXTS, NO_COMMENT_CONTEXT
from training_camp.evolution.models import (
    CreateEvolutionRecordInput,
    CreateLearningInsightInput,
    CreditAssignment,
    CreditMode,
    Directives,
    EvolutionChange,
    EvolutionOutcome,
    EvolutionPlan,
    EvolutionRecord,
    EvolutionTrigger,
    LearningInsight,
    LearningInsightUpdate,
    PromptCredit,
    ScoreAnalysis,
    TrajectoryCredit,
)
from training_camp.history.store.memory import record_from_input
from training_camp.persistence.db import DatabaseManager

log = structlog.get_logger(__name__)

_ANALYSIS = TypeAdapter(ScoreAnalysis)
_PLAN = TypeAdapter(EvolutionPlan)
_CHANGES = TypeAdapter(list[EvolutionChange])
_DIRECTIVES = TypeAdapter(Directives)
_PROMPT_CREDITS = TypeAdapter(list[PromptCredit])
_TRAJECTORY_CREDITS = TypeAdapter(list[TrajectoryCredit])

_INSERT_RECORD = """
    INSERT INTO evolution_records (
        id, lineage_id, from_version, to_version, rollout_id, attempt_id,
        trigger_score, trigger_comment, trigger_directives,
        score_analysis, credit_mode, credit_assignment, plan, changes,
        created_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_SELECT_RECORD = "SELECT * FROM evolution_records WHERE id = ?"

_SELECT_RECORDS_BY_LINEAGE = """
    SELECT * FROM evolution_records WHERE lineage_id = ? ORDER BY created_at DESC, rowid DESC
"""

_UPDATE_OUTCOME = """
    UPDATE evolution_records
    SET next_score = ?, score_delta = ?, hypothesis_validated = ?
    WHERE id = ? AND next_score IS NULL
"""

_INSERT_INSIGHT = """
    INSERT INTO learning_insights (
        id, session_id, pattern, pattern_type, contexts,
        success_count, failure_count, avg_score_impact, confidence,
        created_at, updated_at
    ) VALUES (?, ?, ?, ?, ?, 0, 0, 0.0, 0.0, ?, ?)
    ON CONFLICT(session_id, pattern) DO NOTHING
"""

_SELECT_INSIGHT = "SELECT * FROM learning_insights WHERE id = ?"

_SELECT_INSIGHT_BY_PATTERN = """
    SELECT * FROM learning_insights WHERE session_id = ? AND pattern = ?
"""

_SELECT_INSIGHTS_BY_SESSION = """
    SELECT * FROM learning_insights WHERE session_id = ? ORDER BY confidence DESC
"""

# One observation folded in with a single statement. SET expressions read the
# pre-update row, and a row with no observations yet takes the first-observation
# values.
_OBSERVE_INSIGHT = """
    UPDATE learning_insights SET
        success_count = success_count + ?1,
        failure_count = failure_count + ?2,
        avg_score_impact = (avg_score_impact * (success_count + failure_count) + ?3)
                           / (success_count + failure_count + 1),
        confidence = CASE
            WHEN success_count + failure_count = 0 THEN ?4
            ELSE MIN(1.0, ((success_count + failure_count + 1) / 10.0)
                          * ((success_count + ?1) * 1.0 / (success_count + failure_count + 1)))
        END,
        contexts = CASE
            WHEN success_count + failure_count = 0 THEN contexts
            WHEN json_array_length(contexts) >= ?5 THEN json_insert(json_remove(contexts, '$[0]'), '$[#]', ?6)
            ELSE json_insert(contexts, '$[#]', ?6)
        END,
        updated_at = ?7
    WHERE session_id = ?8 AND pattern = ?9
"""

# LearningInsightUpdate fields, named as their columns
_INSIGHT_UPDATE_FIELDS = ("success_count", "failure_count", "avg_score_impact", "confidence", "contexts")


def _dump_credits(assignment: CreditAssignment) -> str:
    if assignment.mode is CreditMode.PROMPT:
        return _PROMPT_CREDITS.dump_json(assignment.prompt_credits).decode()
    return _TRAJECTORY_CREDITS.dump_json(assignment.trajectory_credits).decode()


def _load_credits(mode: str, raw: str) -> CreditAssignment:
    credit_mode = CreditMode(mode)
    if credit_mode is CreditMode.PROMPT:
        return CreditAssignment(mode=credit_mode, credits=_PROMPT_CREDITS.validate_json(raw))
    return CreditAssignment(mode=credit_mode, credits=_TRAJECTORY_CREDITS.validate_json(raw))


def _row_to_record(row: dict[str, Any]) -> EvolutionRecord:
    outcome = None
    if row["next_score"] is not None:
        outcome = EvolutionOutcome(
            next_score=row["next_score"],
            score_delta=row["score_delta"],
            hypothesis_validated=bool(row["hypothesis_validated"]),
        )
    return EvolutionRecord(
        id=row["id"],
        lineage_id=row["lineage_id"],
        from_version=row["from_version"],
        to_version=row["to_version"],
        trigger=EvolutionTrigger(
            rollout_id=row["rollout_id"],
            attempt_id=row["attempt_id"],
            score=row["trigger_score"],
            comment=row["trigger_comment"],
            directives=_DIRECTIVES.validate_json(row["trigger_directives"]),
        ),
        score_analysis=_ANALYSIS.validate_json(row["score_analysis"]),
        credit_assignment=_load_credits(row["credit_mode"], row["credit_assignment"]),
        plan=_PLAN.validate_json(row["plan"]),
        changes=_CHANGES.validate_json(row["changes"]),
        outcome=outcome,
        created_at=row["created_at"],
    )


def _row_to_insight(row: dict[str, Any]) -> LearningInsight:
    return LearningInsight(
        id=row["id"],
        session_id=row["session_id"],
        pattern=row["pattern"],
        pattern_type=row["pattern_type"],
        contexts=json.loads(row["contexts"]),
        success_count=row["success_count"],
        failure_count=row["failure_count"],
        avg_score_impact=row["avg_score_impact"],
        confidence=row["confidence"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SQLiteStore:
    """Durable SQLite-backed evolution store for per-repo persistence."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get_evolution_records_by_lineage(self, lineage_id: str) -> list[EvolutionRecord]:
        """Return all records for a lineage, newest first."""
        rows = await self._db.execute(_SELECT_RECORDS_BY_LINEAGE, (lineage_id,))
        return [_row_to_record(r) for r in rows]

    async def get_evolution_record(self, record_id: str) -> EvolutionRecord | None:
        row = await self._db.execute_one(_SELECT_RECORD, (record_id,))
        return _row_to_record(row) if row else None

    async def create_evolution_record(self, data: CreateEvolutionRecordInput) -> EvolutionRecord:
        record = record_from_input(data)
        params = (
            record.id,
            record.lineage_id,
            record.from_version,
            record.to_version,
            record.trigger.rollout_id,
            record.trigger.attempt_id,
            record.trigger.score,
            record.trigger.comment,
            _DIRECTIVES.dump_json(record.trigger.directives).decode(),
            _ANALYSIS.dump_json(record.score_analysis).decode(),
            record.credit_assignment.mode.value,
            _dump_credits(record.credit_assignment),
            _PLAN.dump_json(record.plan).decode(),
            _CHANGES.dump_json(record.changes).decode(),
            record.created_at,
        )
        await self._db.execute_write(_INSERT_RECORD, params)
        log.info("evolution_record_saved", record_id=record.id, lineage_id=record.lineage_id)
        return record

    async def update_evolution_outcome(self, record_id: str, outcome: EvolutionOutcome) -> bool:
        """Write the outcome unless one is already present."""
        count = await self._db.execute_write(
            _UPDATE_OUTCOME,
            (outcome.next_score, outcome.score_delta, int(outcome.hypothesis_validated), record_id),
        )
        log.debug("evolution_outcome_updated", record_id=record_id, updated=bool(count))
        return count > 0

    async def get_learning_insights_by_session(self, session_id: str) -> list[LearningInsight]:
        rows = await self._db.execute(_SELECT_INSIGHTS_BY_SESSION, (session_id,))
        return [_row_to_insight(r) for r in rows]

    async def find_insight_by_pattern(self, session_id: str, pattern: str) -> LearningInsight | None:
        row = await self._db.execute_one(_SELECT_INSIGHT_BY_PATTERN, (session_id, pattern))
        return _row_to_insight(row) if row else None

    async def _insert_insight(self, data: CreateLearningInsightInput) -> None:
        insight = LearningInsight(
            session_id=data.session_id,
            pattern=data.pattern,
            pattern_type=data.pattern_type,
            contexts=list(data.contexts[-MAX_CONTEXTS:]),
        )
        await self._db.execute_write(
            _INSERT_INSIGHT,
            (
                insight.id,
                insight.session_id,
                insight.pattern,
                insight.pattern_type,
                json.dumps(insight.contexts, ensure_ascii=False),
                insight.created_at,
                insight.updated_at,
            ),
        )

    async def create_learning_insight(self, data: CreateLearningInsightInput) -> LearningInsight:
        await self._insert_insight(data)
        stored = await self.find_insight_by_pattern(data.session_id, data.pattern)
        if stored is None:
            raise RuntimeError(f"Learning insight {data.pattern!r} vanished after insert")
        log.info("learning_insight_saved", insight_id=stored.id, pattern=stored.pattern)
        return stored

    async def update_learning_insight(
        self, insight_id: str, update: LearningInsightUpdate
    ) -> LearningInsight | None:
        assignments: list[str] = []
        params: list[Any] = []
        for column in _INSIGHT_UPDATE_FIELDS:
            value = getattr(update, column)
            if value is None:
                continue
            if column == "contexts":
                value = json.dumps(list(value[-MAX_CONTEXTS:]), ensure_ascii=False)
            assignments.append(f"{column} = ?")
            params.append(value)

        assignments.append("updated_at = ?")
        params.extend([now_ms(), insight_id])
        await self._db.execute_write(
            f"UPDATE learning_insights SET {', '.join(assignments)} WHERE id = ?",
            tuple(params),
        )

        row = await self._db.execute_one(_SELECT_INSIGHT, (insight_id,))
        return _row_to_insight(row) if row else None

    async def record_insight_observation(
        self, data: CreateLearningInsightInput, score_delta: int, comment: str | None
    ) -> LearningInsight:
        """Create the insight if needed, then count one outcome with an atomic UPDATE."""
        await self._insert_insight(data)
        succeeded = score_delta > 0
        await self._db.execute_write(
            _OBSERVE_INSIGHT,
            (
                1 if succeeded else 0,
                0 if succeeded else 1,
                score_delta,
                FIRST_OBSERVATION_CONFIDENCE,
                MAX_CONTEXTS,
                comment or NO_COMMENT_CONTEXT,
                now_ms(),
                data.session_id,
                data.pattern,
            ),
        )
        stored = await self.find_insight_by_pattern(data.session_id, data.pattern)
        if stored is None:
            raise RuntimeError(f"Learning insight {data.pattern!r} vanished after update")
        log.debug("learning_insight_observed", insight_id=stored.id, observations=stored.observations)
        return stored
