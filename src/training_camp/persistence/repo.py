"""Default database location: ``.training-camp/training.db`` at the git root."""

from __future__ import annotations

from pathlib import Path

import structlog

log = structlog.get_logger(__name__)

_CAMP_DIR_NAME = ".training-camp"
_DB_FILE_NAME = "training.db"
# SQLite writes the -wal/-shm companions next to the database in WAL mode
_GITIGNORE_ENTRIES = ("*.db", "*.db-wal", "*.db-shm")


def _find_repo_root(start: Path) -> Path:
    for candidate in (start, *start.parents):
        if (candidate / ".git").exists():
            return candidate
    return start


def get_db_path(repo_root: Path | None = None) -> Path:
    """Resolve the database file, creating its directory.

    Without *repo_root* the nearest enclosing git checkout of the working
    directory is used, or the working directory itself outside of git.
    """
    root = repo_root if repo_root is not None else _find_repo_root(Path.cwd().resolve())
    camp_dir = root / _CAMP_DIR_NAME
    camp_dir.mkdir(parents=True, exist_ok=True)
    log.debug("db_path_resolved", path=str(camp_dir / _DB_FILE_NAME))
    return camp_dir / _DB_FILE_NAME


def ensure_gitignore(db_dir: Path) -> None:
    """Keep database files in *db_dir* out of version control, preserving other entries."""
    gitignore = db_dir / ".gitignore"
    lines = gitignore.read_text(encoding="utf-8").splitlines() if gitignore.exists() else []

    missing = [entry for entry in _GITIGNORE_ENTRIES if entry not in lines]
    if missing:
        gitignore.write_text("\n".join([*lines, *missing]) + "\n", encoding="utf-8")
        log.info("gitignore_updated", path=str(gitignore), added=missing)
