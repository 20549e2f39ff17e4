"""Training-signal recorder.

Records training-relevant events (an agent evolved, an evolution's outcome
became known) for later export. Payloads are stored content-addressed, so
identical payloads share one blob.

Recording is best effort: a failing recorder logs a warning and the caller
carries on.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import structlog
from pydantic import TypeAdapter

from training_camp.agents.definition import AgentDefinition, new_id, now_ms
from training_camp.evolution.models import EvolutionChange
from training_camp.persistence.db import DatabaseManager

log = structlog.get_logger(__name__)

TRAINING_SIGNAL_SCHEMA_VERSION = 1

_CHANGES = TypeAdapter(list[EvolutionChange])


class TrainingEventType(str, Enum):
    AGENT_EVOLVED = "agent.evolved"
    EVOLUTION_OUTCOME = "evolution.outcome"


@dataclass
class TrainingEvent:
    event_type: TrainingEventType
    payload: dict[str, Any]
    id: str = field(default_factory=new_id)
    timestamp: int = field(default_factory=now_ms)
    schema_version: int = TRAINING_SIGNAL_SCHEMA_VERSION
    session_id: str | None = None
    lineage_id: str | None = None
    agent_id: str | None = None
    attempt_id: str | None = None
    tags: list[str] = field(default_factory=list)


class TrainingSignalRecorder(Protocol):
    async def record_agent_evolved(
        self,
        from_agent: AgentDefinition,
        to_agent: AgentDefinition,
        changes: Sequence[EvolutionChange],
        hypothesis: str,
        *,
        session_id: str | None = None,
        lineage_id: str | None = None,
    ) -> str | None: ...

    async def record_evolution_outcome(
        self,
        record_id: str,
        score_delta: int,
        validated: bool,
        *,
        session_id: str | None = None,
        lineage_id: str | None = None,
    ) -> str | None: ...


def content_hash(content: str) -> str:
    return f"sha256-{hashlib.sha256(content.encode('utf-8')).hexdigest()}"


def infer_tags(event_type: TrainingEventType, payload: dict[str, Any]) -> list[str]:
    """Derive filter tags from the event type and payload content."""
    tags: list[str] = []

    if event_type.value.startswith("agent."):
        tags.append("category:agent")
    elif event_type.value.startswith(("evolution.", "insight.")):
        tags.append("category:learning")

    score = payload.get("score")
    if isinstance(score, (int, float)) and not isinstance(score, bool):
        if score >= 8:
            tags.append("score:high")
        elif score >= 5:
            tags.append("score:medium")
        else:
            tags.append("score:low")

    delta = payload.get("score_delta")
    if isinstance(delta, (int, float)) and not isinstance(delta, bool):
        if delta > 0:
            tags.append("outcome:improved")
        elif delta < 0:
            tags.append("outcome:regressed")
        else:
            tags.append("outcome:stable")

    if "validated" in payload:
        tags.append("hypothesis:validated" if payload["validated"] else "hypothesis:rejected")

    if payload.get("error"):
        tags.append("has:error")

    changes = payload.get("changes")
    if isinstance(changes, list):
        components = dict.fromkeys(c.get("component") for c in changes if isinstance(c, dict))
        tags.extend(f"changed:{c}" for c in components if c)

    return tags


def agent_evolved_event(
    from_agent: AgentDefinition,
    to_agent: AgentDefinition,
    changes: Sequence[EvolutionChange],
    hypothesis: str,
    session_id: str | None,
    lineage_id: str | None,
) -> TrainingEvent:
    payload = {
        "from_agent_id": from_agent.id,
        "from_version": from_agent.version,
        "to_agent_id": to_agent.id,
        "to_version": to_agent.version,
        "changes": _CHANGES.dump_python(list(changes), mode="json"),
        "hypothesis": hypothesis,
        "changed_components": list(dict.fromkeys(c.component.value for c in changes)),
        "change_count": len(changes),
    }
    event_type = TrainingEventType.AGENT_EVOLVED
    return TrainingEvent(
        event_type=event_type,
        payload=payload,
        session_id=session_id,
        lineage_id=lineage_id or to_agent.lineage_id,
        agent_id=to_agent.id,
        tags=["lifecycle:evolved", *infer_tags(event_type, payload)],
    )


def evolution_outcome_event(
    record_id: str,
    score_delta: int,
    validated: bool,
    session_id: str | None,
    lineage_id: str | None,
) -> TrainingEvent:
    if score_delta > 0:
        outcome_type = "improvement"
    elif score_delta < 0:
        outcome_type = "regression"
    else:
        outcome_type = "neutral"
    payload = {
        "evolution_record_id": record_id,
        "score_delta": score_delta,
        "validated": validated,
        "outcome_type": outcome_type,
    }
    event_type = TrainingEventType.EVOLUTION_OUTCOME
    return TrainingEvent(
        event_type=event_type,
        payload=payload,
        session_id=session_id,
        lineage_id=lineage_id,
        tags=["learning:outcome", *infer_tags(event_type, payload)],
    )


class BaseRecorder:
    """Builds events and hands them to ``record``; any failure is logged and dropped."""

    async def record(self, event: TrainingEvent) -> None:
        raise NotImplementedError

    async def record_agent_evolved(
        self,
        from_agent: AgentDefinition,
        to_agent: AgentDefinition,
        changes: Sequence[EvolutionChange],
        hypothesis: str,
        *,
        session_id: str | None = None,
        lineage_id: str | None = None,
    ) -> str | None:
        event = agent_evolved_event(from_agent, to_agent, changes, hypothesis, session_id, lineage_id)
        return await self._safe_record(event)

    async def record_evolution_outcome(
        self,
        record_id: str,
        score_delta: int,
        validated: bool,
        *,
        session_id: str | None = None,
        lineage_id: str | None = None,
    ) -> str | None:
        event = evolution_outcome_event(record_id, score_delta, validated, session_id, lineage_id)
        return await self._safe_record(event)

    async def _safe_record(self, event: TrainingEvent) -> str | None:
        try:
            await self.record(event)
        except Exception as exc:
            log.warning("training_event_record_failed", event_type=event.event_type.value, error=str(exc))
            return None
        return event.id


class NullRecorder(BaseRecorder):
    """Discards every event."""

    async def record(self, event: TrainingEvent) -> None:
        return None


class InMemoryRecorder(BaseRecorder):
    """Keeps events in a list, for tests and short-lived sessions."""

    def __init__(self) -> None:
        self.events: list[TrainingEvent] = []
        self.blobs: dict[str, str] = {}

    async def record(self, event: TrainingEvent) -> None:
        content = json.dumps(event.payload, sort_keys=True, ensure_ascii=False)
        self.blobs.setdefault(content_hash(content), content)
        self.events.append(event)

    def by_type(self, event_type: TrainingEventType) -> list[TrainingEvent]:
        return [e for e in self.events if e.event_type is event_type]


class SQLiteRecorder(BaseRecorder):
    """Writes events to the ``training_events`` table with payloads in ``payload_blobs``."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def record(self, event: TrainingEvent) -> None:
        content = json.dumps(event.payload, sort_keys=True, ensure_ascii=False)
        payload_hash = content_hash(content)

        await self._db.execute_write(
            "INSERT OR IGNORE INTO payload_blobs (hash, content, created_at) VALUES (?, ?, ?)",
            (payload_hash, content, event.timestamp),
        )
        await self._db.execute_write(
            """
            INSERT INTO training_events (
                id, timestamp, event_type, schema_version,
                session_id, lineage_id, agent_id, attempt_id,
                payload_hash, tags, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.timestamp,
                event.event_type.value,
                event.schema_version,
                event.session_id,
                event.lineage_id,
                event.agent_id,
                event.attempt_id,
                payload_hash,
                json.dumps(event.tags) if event.tags else None,
                now_ms(),
            ),
        )
        log.debug("training_event_recorded", event_id=event.id, event_type=event.event_type.value)

    async def get_events(self, event_type: TrainingEventType | None = None) -> list[TrainingEvent]:
        """Load stored events with their payloads, oldest first."""
        sql = """
            SELECT e.*, b.content FROM training_events e
            JOIN payload_blobs b ON b.hash = e.payload_hash
        """
        params: tuple[Any, ...] = ()
        if event_type is not None:
            sql += " WHERE e.event_type = ?"
            params = (event_type.value,)
        sql += " ORDER BY e.timestamp, e.rowid"

        rows = await self._db.execute(sql, params)
        return [
            TrainingEvent(
                id=row["id"],
                event_type=TrainingEventType(row["event_type"]),
                payload=json.loads(row["content"]),
                timestamp=row["timestamp"],
                schema_version=row["schema_version"],
                session_id=row["session_id"],
                lineage_id=row["lineage_id"],
                agent_id=row["agent_id"],
                attempt_id=row["attempt_id"],
                tags=json.loads(row["tags"]) if row["tags"] else [],
            )
            for row in rows
        ]
