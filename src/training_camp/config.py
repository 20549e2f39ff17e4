"""Configuration for the Training Camp evolution pipeline."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class LLMRole(str, Enum):
    """Roles for LLM model routing."""
    ANALYZING = "analyzing"  # Reading feedback and assigning credit
    PLANNING = "planning"    # Proposing evolution plans
    EVOLVING = "evolving"    # Rewriting prompts and descriptions


class RoleModelConfig(BaseModel):
    """Configuration for a single LLM role."""
    model: str = "anthropic/claude-sonnet-4-20250514"
    api_key: str | None = None
    api_base: str | None = None
    temperature: float = Field(default=0.5, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, gt=0)


class TrainingCampConfig(BaseModel):
    """Top-level configuration, threaded explicitly into the pipeline.

    ``llm_enabled`` is the single switch for every generative path. When it is
    off (the default) each stage runs its deterministic heuristic.
    """
    llm_enabled: bool = False
    min_request_interval_s: float = Field(default=0.0, ge=0.0)
    db_path: str | None = Field(default=None, description="SQLite path; None uses .training-camp/training.db at the repo root")
    role_models: dict[LLMRole, RoleModelConfig] = Field(default_factory=lambda: {
        LLMRole.ANALYZING: RoleModelConfig(temperature=0.3, max_tokens=1024),
        LLMRole.PLANNING: RoleModelConfig(temperature=0.5, max_tokens=1024),
        LLMRole.EVOLVING: RoleModelConfig(temperature=0.5, max_tokens=2048),
    })

    model_config = {"populate_by_name": True}
