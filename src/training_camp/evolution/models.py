"""Records produced and consumed by the evolution pipeline.

Everything here is a plain dataclass. String-valued enums keep the wire
format stable (``EvolutionComponent.SYSTEM_PROMPT`` serializes as
``"systemPrompt"``) so records written by older versions still load.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from training_camp.agents.definition import new_id, now_ms


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class Trend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class BlameLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CreditMode(str, Enum):
    PROMPT = "prompt"
    TRAJECTORY = "trajectory"


class SpanType(str, Enum):
    LLM_CALL = "llm_call"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    REASONING = "reasoning"
    OUTPUT = "output"


class EvolutionComponent(str, Enum):
    SYSTEM_PROMPT = "systemPrompt"
    PARAMETERS = "parameters"
    TOOLS = "tools"
    FLOW = "flow"


class ChangeType(str, Enum):
    ADD = "add"
    MODIFY = "modify"
    REMOVE = "remove"


class ImpactDirection(str, Enum):
    IMPROVE = "improve"
    MAINTAIN = "maintain"
    DEGRADE = "degrade"


class Recommendation(str, Enum):
    APPLY = "apply"
    SKIP = "skip"
    MODIFY = "modify"


class ChangeOutcome(str, Enum):
    IMPROVED = "improved"
    WORSENED = "worsened"
    NEUTRAL = "neutral"


# ---------------------------------------------------------------------------
# Feedback analysis
# ---------------------------------------------------------------------------


@dataclass
class FeedbackAspect:
    aspect: str
    sentiment: Sentiment
    confidence: float = 0.5
    quote: str | None = None


@dataclass
class ScoreAnalysis:
    score: int
    sentiment: Sentiment
    trend: Trend = Trend.STABLE
    delta_from_previous: int = 0
    aspects: list[FeedbackAspect] = field(default_factory=list)
    comment: str | None = None

    def negative_aspects(self) -> list[FeedbackAspect]:
        return [a for a in self.aspects if a.sentiment is Sentiment.NEGATIVE]

    def find_aspect(self, name: str) -> FeedbackAspect | None:
        return next((a for a in self.aspects if a.aspect == name), None)


# ---------------------------------------------------------------------------
# Execution traces and credit
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExecutionSpan:
    """One step of an agent execution, as reported by the executor."""

    id: str
    attempt_id: str
    sequence: int
    type: SpanType
    input: str = ""
    output: str = ""
    duration_ms: int = 0
    tool_name: str | None = None
    tool_error: str | None = None
    parent_span_id: str | None = None
    model_id: str | None = None


@dataclass
class PromptCredit:
    segment: str
    segment_index: int
    blame: BlameLevel
    reason: str
    related_aspect: str | None = None


@dataclass
class TrajectoryCredit:
    span_id: str
    contribution: float
    reason: str
    span_type: SpanType | None = None
    tool_name: str | None = None


@dataclass
class CreditAssignment:
    mode: CreditMode
    credits: list[PromptCredit] | list[TrajectoryCredit] = field(default_factory=list)

    @property
    def prompt_credits(self) -> list[PromptCredit]:
        return list(self.credits) if self.mode is CreditMode.PROMPT else []  # type: ignore[arg-type]

    @property
    def trajectory_credits(self) -> list[TrajectoryCredit]:
        return list(self.credits) if self.mode is CreditMode.TRAJECTORY else []  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


@dataclass
class EvolutionChange:
    component: EvolutionComponent
    change_type: ChangeType
    target: str
    reason: str
    before: str | None = None
    after: str | None = None
    confidence: float = 0.5

    @property
    def pattern(self) -> str:
        """Learning-insight key for this kind of edit."""
        return f"{self.change_type.value} {self.component.value}: {self.target}"


@dataclass
class ExpectedImpact:
    aspect: str
    direction: ImpactDirection


@dataclass
class EvolutionPlan:
    hypothesis: str
    changes: list[EvolutionChange] = field(default_factory=list)
    expected_impact: list[ExpectedImpact] = field(default_factory=list)


@dataclass
class SimilarPastChange:
    change: EvolutionChange
    outcome: ChangeOutcome
    score_delta: int


@dataclass
class HistoryCheck:
    proposed_change: EvolutionChange
    recommendation: Recommendation
    reason: str
    similar_past_changes: list[SimilarPastChange] = field(default_factory=list)


# ---------------------------------------------------------------------------
# History and learning
# ---------------------------------------------------------------------------


@dataclass
class Directives:
    sticky: list[str] = field(default_factory=list)
    oneshot: list[str] = field(default_factory=list)


@dataclass
class EvolutionTrigger:
    rollout_id: str
    attempt_id: str
    score: int
    comment: str | None = None
    directives: Directives = field(default_factory=Directives)


@dataclass
class EvolutionOutcome:
    next_score: int
    score_delta: int
    hypothesis_validated: bool


@dataclass
class EvolutionRecord:
    """Durable record of one evolution step.

    ``outcome`` is filled in once, by the next pipeline run for the same
    lineage.
    """

    lineage_id: str
    from_version: int
    to_version: int
    trigger: EvolutionTrigger
    score_analysis: ScoreAnalysis
    credit_assignment: CreditAssignment
    plan: EvolutionPlan
    changes: list[EvolutionChange] = field(default_factory=list)
    outcome: EvolutionOutcome | None = None
    id: str = field(default_factory=new_id)
    created_at: int = field(default_factory=now_ms)


@dataclass
class CreateEvolutionRecordInput:
    lineage_id: str
    from_version: int
    to_version: int
    rollout_id: str
    attempt_id: str
    trigger_score: int
    score_analysis: ScoreAnalysis
    credit_assignment: CreditAssignment
    plan: EvolutionPlan
    changes: list[EvolutionChange] = field(default_factory=list)
    trigger_comment: str | None = None
    trigger_directives: Directives = field(default_factory=Directives)


@dataclass
class LearningInsight:
    """How one kind of edit has performed within a session."""

    session_id: str
    pattern: str
    pattern_type: str
    contexts: list[str] = field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    avg_score_impact: float = 0.0
    confidence: float = 0.0
    id: str = field(default_factory=new_id)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    @property
    def observations(self) -> int:
        return self.success_count + self.failure_count


@dataclass
class CreateLearningInsightInput:
    session_id: str
    pattern: str
    pattern_type: str
    contexts: list[str] = field(default_factory=list)


@dataclass
class LearningInsightUpdate:
    """Partial update; ``None`` fields are left unchanged."""

    success_count: int | None = None
    failure_count: int | None = None
    avg_score_impact: float | None = None
    confidence: float | None = None
    contexts: list[str] | None = None
