"""Persistence layer for training-camp: SQLite-backed durable storage."""

from __future__ import annotations

from training_camp.persistence.db import DatabaseManager
from training_camp.persistence.migrations import run_migrations
from training_camp.persistence.repo import get_db_path

__all__ = [
    "DatabaseManager",
    "get_db_path",
    "run_migrations",
]
