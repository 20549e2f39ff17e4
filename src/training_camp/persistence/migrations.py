"""Schema migrations for the training-camp SQLite database."""

from __future__ import annotations

import structlog

log = structlog.get_logger(__name__)

SCHEMA_VERSION = 1

_DDL_STATEMENTS = [
    # Schema version tracking
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        version     INTEGER PRIMARY KEY,
        applied_at  TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    # One row per evolution step; outcome columns are filled by the next run
    """
    CREATE TABLE IF NOT EXISTS evolution_records (
        id                   TEXT PRIMARY KEY,
        lineage_id           TEXT NOT NULL,
        from_version         INTEGER NOT NULL,
        to_version           INTEGER NOT NULL,
        rollout_id           TEXT NOT NULL,
        attempt_id           TEXT NOT NULL,
        trigger_score        INTEGER NOT NULL CHECK (trigger_score >= 1 AND trigger_score <= 10),
        trigger_comment      TEXT,
        trigger_directives   TEXT NOT NULL DEFAULT '{}',
        score_analysis       TEXT NOT NULL,
        credit_mode          TEXT NOT NULL DEFAULT 'prompt',
        credit_assignment    TEXT NOT NULL DEFAULT '[]',
        plan                 TEXT NOT NULL,
        changes              TEXT NOT NULL DEFAULT '[]',
        next_score           INTEGER,
        score_delta          INTEGER,
        hypothesis_validated INTEGER,
        created_at           INTEGER NOT NULL
    )
    """,
    # Session-scoped statistics per change pattern
    """
    CREATE TABLE IF NOT EXISTS learning_insights (
        id                TEXT PRIMARY KEY,
        session_id        TEXT NOT NULL,
        pattern           TEXT NOT NULL,
        pattern_type      TEXT NOT NULL,
        contexts          TEXT NOT NULL DEFAULT '[]',
        success_count     INTEGER NOT NULL DEFAULT 0,
        failure_count     INTEGER NOT NULL DEFAULT 0,
        avg_score_impact  REAL NOT NULL DEFAULT 0.0,
        confidence        REAL NOT NULL DEFAULT 0.0,
        created_at        INTEGER NOT NULL,
        updated_at        INTEGER NOT NULL,
        UNIQUE(session_id, pattern)
    )
    """,
    # Content-addressed payloads shared by training events
    """
    CREATE TABLE IF NOT EXISTS payload_blobs (
        hash        TEXT PRIMARY KEY,
        content     TEXT NOT NULL,
        created_at  INTEGER NOT NULL
    )
    """,
    # Training-signal events
    """
    CREATE TABLE IF NOT EXISTS training_events (
        id              TEXT PRIMARY KEY,
        timestamp       INTEGER NOT NULL,
        event_type      TEXT NOT NULL,
        schema_version  INTEGER NOT NULL,
        session_id      TEXT,
        lineage_id      TEXT,
        agent_id        TEXT,
        attempt_id      TEXT,
        payload_hash    TEXT NOT NULL REFERENCES payload_blobs(hash),
        tags            TEXT,
        created_at      INTEGER NOT NULL
    )
    """,
    # Indexes
    "CREATE INDEX IF NOT EXISTS idx_records_lineage  ON evolution_records(lineage_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_insights_session ON learning_insights(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_type      ON training_events(event_type)",
    "CREATE INDEX IF NOT EXISTS idx_events_session   ON training_events(session_id)",
]


async def run_migrations(db: object) -> None:  # db: DatabaseManager (avoid circular import)
    """Create tables and indexes, then record the schema version."""
    from training_camp.persistence.db import DatabaseManager

    assert isinstance(db, DatabaseManager)

    for statement in _DDL_STATEMENTS:
        await db.execute_write(statement.strip())

    row = await db.execute_one("SELECT MAX(version) AS v FROM schema_version")
    current_version = row["v"] if row and row["v"] is not None else 0

    if current_version < SCHEMA_VERSION:
        await db.execute_write(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        log.info("migration_applied", version=SCHEMA_VERSION)
    else:
        log.debug("schema_already_current", version=SCHEMA_VERSION)
