"""Exception hierarchy for training-camp.

    TrainingCampError (base)
    ├── ScoreValidationError - score outside [1, 10]; never recovered from
    ├── GenerativeOutputError - unusable LLM output; always handled by a fallback
    └── PipelineStageError - a store failure, tagged with stage and lineage
"""

from __future__ import annotations


class TrainingCampError(Exception):
    """Base exception for all training-camp errors."""


class ScoreValidationError(TrainingCampError, ValueError):
    """A feedback score was not an integer in [1, 10]."""

    def __init__(self, score: object) -> None:
        super().__init__(f"Score must be an integer between 1 and 10, got {score!r}")
        self.score = score


class GenerativeOutputError(TrainingCampError):
    """The generative service returned text that could not be used."""


class PipelineStageError(TrainingCampError):
    """A pipeline stage failed in a way that cannot be recovered locally."""

    def __init__(self, stage: str, lineage_id: str, cause: Exception) -> None:
        super().__init__(f"Evolution pipeline failed at stage '{stage}' for lineage {lineage_id}: {cause}")
        self.stage = stage
        self.lineage_id = lineage_id
        self.cause = cause


def validate_score(score: object) -> int:
    """Return *score* unchanged if it is an int in [1, 10], else raise."""
    if isinstance(score, bool) or not isinstance(score, int) or not 1 <= score <= 10:
        raise ScoreValidationError(score)
    return score
