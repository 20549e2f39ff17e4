"""Async SQLite connection manager for training-camp persistence."""

from __future__ import annotations

import structlog
from pathlib import Path
from typing import Any

import aiosqlite

log = structlog.get_logger(__name__)

_PRAGMA_WAL = "PRAGMA journal_mode = WAL"
_PRAGMA_FK = "PRAGMA foreign_keys = ON"


class DatabaseManager:
    """Manages an aiosqlite connection with WAL mode and foreign keys enabled.

    Shared by the evolution store and the training-signal recorder.

    Usage::

        async with DatabaseManager() as db:      # auto-detects repo root
            rows = await db.execute("SELECT * FROM evolution_records")
    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        if db_path is None:
            from training_camp.persistence.repo import get_db_path
            db_path = get_db_path()

        self._db_path = Path(db_path)
        self._conn: aiosqlite.Connection | None = None
        log.debug("db_manager_created", path=str(self._db_path))

    @property
    def path(self) -> Path:
        return self._db_path

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the connection, enable pragmas, and run migrations."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        from training_camp.persistence.repo import ensure_gitignore
        ensure_gitignore(self._db_path.parent)

        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute(_PRAGMA_WAL)
        await self._conn.execute(_PRAGMA_FK)
        await self._conn.commit()

        from training_camp.persistence.migrations import run_migrations
        await run_migrations(self)

        log.info("db_initialized", path=str(self._db_path))

    async def close(self) -> None:
        """Close the underlying connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            log.debug("db_closed", path=str(self._db_path))

    async def __aenter__(self) -> DatabaseManager:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    async def execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        """Execute a SELECT statement and return rows as plain dicts."""
        conn = self._require_connection()
        async with conn.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def execute_one(self, sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        """Execute a SELECT statement and return its first row, if any."""
        rows = await self.execute(sql, params)
        return rows[0] if rows else None

    async def execute_write(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        """Execute an INSERT / UPDATE / DELETE / DDL statement.

        Returns the number of rows affected (0 for DDL).
        """
        conn = self._require_connection()
        async with conn.execute(sql, params) as cursor:
            await conn.commit()
            return cursor.rowcount if cursor.rowcount >= 0 else 0

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError(
                "DatabaseManager is not initialized. Call await db.initialize() first."
            )
        return self._conn
