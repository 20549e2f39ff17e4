"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Make _helpers importable from test files
sys.path.insert(0, str(Path(__file__).parent))

from _helpers import FakeLLM, make_agent, make_span  # noqa: E402

from training_camp.config import TrainingCampConfig  # noqa: E402
from training_camp.evolution.pipeline import EvolutionPipeline  # noqa: E402
from training_camp.history.store.memory import InMemoryStore  # noqa: E402
from training_camp.persistence.db import DatabaseManager  # noqa: E402
from training_camp.telemetry.recorder import InMemoryRecorder  # noqa: E402

__all__ = ["FakeLLM", "make_agent", "make_span"]


@pytest.fixture
def config() -> TrainingCampConfig:
    return TrainingCampConfig()


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def recorder() -> InMemoryRecorder:
    return InMemoryRecorder()


@pytest.fixture
def pipeline(memory_store: InMemoryStore, recorder: InMemoryRecorder) -> EvolutionPipeline:
    return EvolutionPipeline(store=memory_store, recorder=recorder)


@pytest_asyncio.fixture
async def db(tmp_path: Path):
    manager = DatabaseManager(tmp_path / ".training-camp" / "training.db")
    await manager.initialize()
    yield manager
    await manager.close()
