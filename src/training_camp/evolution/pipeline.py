"""Evolution pipeline - orchestrates one full feedback-driven evolution step.

    analyze -> assign_credit -> fetch_history -> plan -> evolve -> apply_plan
    -> record -> backfill_previous_outcome -> extract_learning -> done

Stages run strictly in order within one ``run``. Score validation errors and
store failures propagate (the latter wrapped in ``PipelineStageError``);
generative and telemetry failures are handled inside the stages.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from enum import Enum

import structlog

from training_camp.agents.definition import AgentDefinition, new_id
from training_camp.config import TrainingCampConfig
from training_camp.errors import PipelineStageError, TrainingCampError, validate_score
from training_camp.evolution.applier import apply_plan_changes
from training_camp.evolution.credit import CreditAssigner, summarize_credit_assignment
from training_camp.evolution.evolver import AgentEvolver
from training_camp.evolution.learning import new_insight_input
from training_camp.evolution.models import (
    CreateEvolutionRecordInput,
    Directives,
    EvolutionOutcome,
    EvolutionPlan,
    EvolutionRecord,
    ExecutionSpan,
    ScoreAnalysis,
)
from training_camp.evolution.planner import EvolutionPlanner, summarize_plan
from training_camp.evolution.reward import RewardAnalyzer, summarize_analysis
from training_camp.history.store.base import EvolutionStore
from training_camp.history.store.memory import InMemoryStore
from training_camp.history.store.sqlite import SQLiteStore
from training_camp.llm.router import LLMRouter
from training_camp.persistence.db import DatabaseManager
from training_camp.telemetry.recorder import NullRecorder, SQLiteRecorder, TrainingSignalRecorder

logger = structlog.get_logger(__name__)

_SUMMARY_CHANGE_LIMIT = 3
_COMMON_CHANGE_LIMIT = 5


class PipelineStage(str, Enum):
    ANALYZE = "analyze"
    ASSIGN_CREDIT = "assign_credit"
    FETCH_HISTORY = "fetch_history"
    PLAN = "plan"
    EVOLVE = "evolve"
    APPLY_PLAN = "apply_plan"
    RECORD = "record"
    BACKFILL_PREVIOUS_OUTCOME = "backfill_previous_outcome"
    EXTRACT_LEARNING = "extract_learning"
    DONE = "done"


@dataclass
class EvolutionPipelineInput:
    agent: AgentDefinition
    need: str
    score: int
    session_id: str
    comment: str | None = None
    sticky_directives: list[str] = field(default_factory=list)
    oneshot_directives: list[str] = field(default_factory=list)
    previous_score: int | None = None
    rollout_id: str | None = None
    attempt_id: str | None = None
    spans: list[ExecutionSpan] = field(default_factory=list)


@dataclass
class EvolutionPipelineResult:
    evolved_agent: AgentDefinition
    evolution_record: EvolutionRecord
    analysis: ScoreAnalysis
    plan: EvolutionPlan
    summary: str


@dataclass
class EvolutionStats:
    total_evolutions: int = 0
    avg_score_improvement: float = 0.0
    success_rate: float = 0.0
    common_changes: list[str] = field(default_factory=list)


@contextmanager
def _store_stage(stage: PipelineStage, lineage_id: str) -> Iterator[None]:
    """Wrap store failures with the stage and lineage they happened in."""
    try:
        yield
    except TrainingCampError:
        raise
    except Exception as exc:
        raise PipelineStageError(stage.value, lineage_id, exc) from exc


def generate_pipeline_summary(
    analysis: ScoreAnalysis,
    plan: EvolutionPlan,
    old_agent: AgentDefinition,
    new_agent: AgentDefinition,
) -> str:
    parts = [f"Score: {analysis.score}/10"]
    if analysis.delta_from_previous != 0:
        direction = "up" if analysis.delta_from_previous > 0 else "down"
        parts.append(f"({direction} {abs(analysis.delta_from_previous)} from previous)")

    issues = [a.aspect for a in analysis.negative_aspects()]
    if issues:
        parts.append(f"Issues: {', '.join(issues)}")

    if plan.changes:
        parts.append(f"Changes: {len(plan.changes)}")
        for change in plan.changes[:_SUMMARY_CHANGE_LIMIT]:
            parts.append(f"- {change.change_type.value} {change.component.value}/{change.target}")
        if len(plan.changes) > _SUMMARY_CHANGE_LIMIT:
            parts.append(f"  ...and {len(plan.changes) - _SUMMARY_CHANGE_LIMIT} more")
    else:
        parts.append("No significant changes needed")

    parts.append(f"Version: {old_agent.version} -> {new_agent.version}")
    if plan.hypothesis:
        parts.append(f"Hypothesis: {plan.hypothesis}")
    return "\n".join(parts)


class EvolutionPipeline:
    """Runs analyze -> credit -> plan -> evolve -> record for one agent.

    Holds only its collaborators, so one instance can serve concurrent runs
    for different lineages.
    """

    def __init__(
        self,
        store: EvolutionStore,
        analyzer: RewardAnalyzer | None = None,
        assigner: CreditAssigner | None = None,
        planner: EvolutionPlanner | None = None,
        evolver: AgentEvolver | None = None,
        recorder: TrainingSignalRecorder | None = None,
    ) -> None:
        self._store = store
        self._analyzer = analyzer or RewardAnalyzer()
        self._assigner = assigner or CreditAssigner()
        self._planner = planner or EvolutionPlanner()
        self._evolver = evolver or AgentEvolver()
        self._recorder: TrainingSignalRecorder = recorder or NullRecorder()

    async def run(self, data: EvolutionPipelineInput) -> EvolutionPipelineResult:
        agent = data.agent
        lineage_id = agent.effective_lineage_id
        log = logger.bind(lineage_id=lineage_id, agent_id=agent.id, version=agent.version)
        log.info("pipeline_start", score=data.score, previous_score=data.previous_score)

        log.info("pipeline_stage", stage=PipelineStage.ANALYZE.value)
        analysis = await self._analyzer.analyze(data.score, data.comment, data.previous_score)
        log.debug("analysis_summary", summary=summarize_analysis(analysis))

        log.info("pipeline_stage", stage=PipelineStage.ASSIGN_CREDIT.value)
        assignment = await self._assigner.assign(agent, analysis, data.spans)
        log.debug("credit_summary", mode=assignment.mode.value, summary=summarize_credit_assignment(assignment))

        log.info("pipeline_stage", stage=PipelineStage.FETCH_HISTORY.value)
        with _store_stage(PipelineStage.FETCH_HISTORY, lineage_id):
            past_records = await self._store.get_evolution_records_by_lineage(lineage_id)
            insights = await self._store.get_learning_insights_by_session(data.session_id)
        log.debug("history_loaded", past_records=len(past_records), insights=len(insights))

        log.info("pipeline_stage", stage=PipelineStage.PLAN.value)
        plan = await self._planner.plan(agent, analysis, assignment, past_records, insights)
        log.debug("plan_summary", summary=summarize_plan(plan))

        log.info("pipeline_stage", stage=PipelineStage.EVOLVE.value)
        evolved = await self._evolver.evolve(
            agent,
            data.need,
            data.score,
            data.comment,
            data.sticky_directives,
            data.oneshot_directives,
        )

        log.info("pipeline_stage", stage=PipelineStage.APPLY_PLAN.value)
        final_agent = apply_plan_changes(evolved, plan)

        log.info("pipeline_stage", stage=PipelineStage.RECORD.value)
        record_input = CreateEvolutionRecordInput(
            lineage_id=lineage_id,
            from_version=agent.version,
            to_version=final_agent.version,
            rollout_id=data.rollout_id or new_id(),
            attempt_id=data.attempt_id or new_id(),
            trigger_score=data.score,
            trigger_comment=data.comment,
            trigger_directives=Directives(
                sticky=list(data.sticky_directives),
                oneshot=list(data.oneshot_directives),
            ),
            score_analysis=analysis,
            credit_assignment=assignment,
            plan=plan,
            changes=list(plan.changes),
        )
        with _store_stage(PipelineStage.RECORD, lineage_id):
            record = await self._store.create_evolution_record(record_input)
        log.info("evolution_recorded", record_id=record.id, to_version=final_agent.version)

        await self._emit_agent_evolved(agent, final_agent, plan, data.session_id, lineage_id)

        if past_records:
            await self._backfill_previous(past_records[0], data, lineage_id)

        log.info("pipeline_stage", stage=PipelineStage.DONE.value)
        return EvolutionPipelineResult(
            evolved_agent=final_agent,
            evolution_record=record,
            analysis=analysis,
            plan=plan,
            summary=generate_pipeline_summary(analysis, plan, agent, final_agent),
        )

    async def _backfill_previous(
        self,
        previous: EvolutionRecord,
        data: EvolutionPipelineInput,
        lineage_id: str,
    ) -> None:
        log = logger.bind(lineage_id=lineage_id, record_id=previous.id)
        if previous.outcome is not None:
            log.debug("previous_outcome_already_set")
            return

        log.info("pipeline_stage", stage=PipelineStage.BACKFILL_PREVIOUS_OUTCOME.value)
        score_delta = data.score - previous.trigger.score
        outcome = EvolutionOutcome(
            next_score=data.score,
            score_delta=score_delta,
            hypothesis_validated=data.score > previous.trigger.score,
        )
        with _store_stage(PipelineStage.BACKFILL_PREVIOUS_OUTCOME, lineage_id):
            updated = await self._store.update_evolution_outcome(previous.id, outcome)
        if not updated:
            log.info("previous_outcome_set_concurrently")
            return
        log.info("previous_outcome_updated", score_delta=score_delta)

        try:
            await self._recorder.record_evolution_outcome(
                previous.id,
                score_delta,
                outcome.hypothesis_validated,
                session_id=data.session_id,
                lineage_id=lineage_id,
            )
        except Exception as exc:
            log.warning("record_evolution_outcome_failed", error=str(exc))

        log.info("pipeline_stage", stage=PipelineStage.EXTRACT_LEARNING.value)
        with _store_stage(PipelineStage.EXTRACT_LEARNING, lineage_id):
            await self._extract_learning(previous, score_delta, data.session_id)

    async def _extract_learning(self, record: EvolutionRecord, score_delta: int, session_id: str) -> None:
        comment = record.trigger.comment
        for change in record.changes:
            insight = await self._store.record_insight_observation(
                new_insight_input(session_id, change, comment), score_delta, comment
            )
            logger.debug(
                "insight_updated",
                pattern=change.pattern,
                score_delta=score_delta,
                observations=insight.observations,
            )

    async def _emit_agent_evolved(
        self,
        agent: AgentDefinition,
        evolved: AgentDefinition,
        plan: EvolutionPlan,
        session_id: str,
        lineage_id: str,
    ) -> None:
        try:
            await self._recorder.record_agent_evolved(
                agent,
                evolved,
                plan.changes,
                plan.hypothesis,
                session_id=session_id,
                lineage_id=lineage_id,
            )
        except Exception as exc:
            logger.warning("record_agent_evolved_failed", lineage_id=lineage_id, error=str(exc))

    async def quick_evolve(
        self,
        agent: AgentDefinition,
        need: str,
        score: int,
        feedback: str | None = None,
    ) -> AgentDefinition:
        """Evolve without credit assignment, planning or recording."""
        validate_score(score)
        return await self._evolver.evolve(agent, need, score, feedback)

    async def get_evolution_stats(self, lineage_id: str) -> EvolutionStats:
        records = await self._store.get_evolution_records_by_lineage(lineage_id)
        if not records:
            return EvolutionStats()

        outcomes = [r.outcome for r in records if r.outcome is not None]
        improvements = sum(1 for o in outcomes if o.score_delta > 0)
        change_counts = Counter(
            f"{change.component.value}/{change.target}"
            for record in records
            for change in record.changes
        )

        return EvolutionStats(
            total_evolutions=len(records),
            avg_score_improvement=sum(o.score_delta for o in outcomes) / len(outcomes) if outcomes else 0.0,
            success_rate=improvements / len(outcomes) if outcomes else 0.0,
            common_changes=[key for key, _ in change_counts.most_common(_COMMON_CHANGE_LIMIT)],
        )


async def evolve_lineages(
    pipeline: EvolutionPipeline,
    inputs: Sequence[EvolutionPipelineInput],
) -> list[EvolutionPipelineResult | BaseException]:
    """Run several lineages concurrently; one failure never aborts the others.

    Results are returned in input order, with the exception in place of the
    result for any lineage that failed.
    """
    results = await asyncio.gather(*(pipeline.run(i) for i in inputs), return_exceptions=True)
    for data, result in zip(inputs, results):
        if isinstance(result, BaseException):
            logger.warning(
                "lineage_evolution_failed",
                lineage_id=data.agent.effective_lineage_id,
                error=str(result),
            )
    return list(results)


def build_pipeline(config: TrainingCampConfig, db: DatabaseManager | None = None) -> EvolutionPipeline:
    """Wire a pipeline from configuration.

    With an initialized ``db`` history and training events are persisted to
    SQLite; without one history lives in memory and events are dropped.
    """
    llm = LLMRouter(config)
    if db is not None:
        store: EvolutionStore = SQLiteStore(db)
        recorder: TrainingSignalRecorder = SQLiteRecorder(db)
    else:
        store = InMemoryStore()
        recorder = NullRecorder()

    return EvolutionPipeline(
        store=store,
        analyzer=RewardAnalyzer(llm),
        assigner=CreditAssigner(llm),
        planner=EvolutionPlanner(llm),
        evolver=AgentEvolver(llm),
        recorder=recorder,
    )


@asynccontextmanager
async def open_pipeline(config: TrainingCampConfig) -> AsyncIterator[EvolutionPipeline]:
    """Open the SQLite database at ``config.db_path`` and yield a pipeline over it.

    The database is closed when the block exits.
    """
    async with DatabaseManager(config.db_path) as db:
        logger.info("pipeline_opened", db_path=str(db.path))
        yield build_pipeline(config, db)
