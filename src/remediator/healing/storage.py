"""Durable storage for the pattern library and the healing audit trail.

Two backends:

- ``JsonPatternStore``: a record-list JSON file, for single-node deployments
- ``HealingStorage``: PostgreSQL via asyncpg; initialise with a pool, then
  use the async methods for reads/writes

Only the pattern library must survive restarts. Events are mirrored to
PostgreSQL when it is configured so the audit trail outlives the in-memory
ring buffer.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from remediator.healing.detector import AnomalyPattern
from remediator.healing.events import HealingEvent, HealingEventType
from remediator.logging import get_logger

if TYPE_CHECKING:
    import asyncpg  # type: ignore[import-not-found,import-untyped]

log = get_logger("remediator.healing.storage")


@runtime_checkable
class PatternStore(Protocol):
    async def load_patterns(self) -> list[AnomalyPattern]: ...

    async def save_patterns(self, patterns: Sequence[AnomalyPattern]) -> None: ...


# ------------------------------------------------------------------
# JSON file store
# ------------------------------------------------------------------


class JsonPatternStore:
    """Pattern library persisted as a JSON list of records.

    Writes go to a temporary sibling and are moved into place, so a crash
    mid-write leaves the previous library intact.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def load_patterns(self) -> list[AnomalyPattern]:
        async with self._lock:
            return await asyncio.to_thread(self._read)

    async def save_patterns(self, patterns: Sequence[AnomalyPattern]) -> None:
        records = [p.to_dict() for p in patterns]
        async with self._lock:
            await asyncio.to_thread(self._write, records)
        log.debug("patterns_saved", path=str(self._path), count=len(records))

    def _read(self) -> list[AnomalyPattern]:
        if not self._path.exists():
            return []
        try:
            records = json.loads(self._path.read_text())
            return [AnomalyPattern.from_dict(record) for record in records]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log.warning("pattern_store_unreadable", path=str(self._path), error=str(exc))
            return []

    def _write(self, records: list[dict]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(records, indent=2))
        os.replace(tmp, self._path)


# ------------------------------------------------------------------
# PostgreSQL store
# ------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS healing_patterns (
    id TEXT PRIMARY KEY,
    feature_vector JSONB NOT NULL,
    severity TEXT NOT NULL DEFAULT 'medium',
    frequency INTEGER NOT NULL DEFAULT 1,
    last_seen TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    bug_occurred BOOLEAN NOT NULL,
    label TEXT
);

CREATE TABLE IF NOT EXISTS healing_events (
    id TEXT PRIMARY KEY,
    timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    event_type TEXT NOT NULL,
    details JSONB NOT NULL DEFAULT '{}'::jsonb
);

CREATE INDEX IF NOT EXISTS idx_healing_events_ts
    ON healing_events (timestamp);
CREATE INDEX IF NOT EXISTS idx_healing_events_type
    ON healing_events (event_type);
"""


class HealingStorage:
    """PostgreSQL storage for patterns and healing events.

    Lifecycle::

        storage = HealingStorage()
        await storage.initialize(pool)
        await storage.save_patterns(detector.patterns)
    """

    def __init__(self) -> None:
        self._pool: asyncpg.Pool | None = None

    async def initialize(self, pool: asyncpg.Pool) -> None:
        """Create tables and store the connection pool reference."""
        self._pool = pool
        async with pool.acquire() as conn:
            await conn.execute(_SCHEMA)
        log.info("healing_storage.initialized")

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    async def load_patterns(self) -> list[AnomalyPattern]:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                """
                SELECT id, feature_vector, severity, frequency, last_seen, bug_occurred, label
                FROM healing_patterns
                ORDER BY id
                """
            )
        return [
            AnomalyPattern(
                id=row["id"],
                feature_vector=[float(v) for v in json.loads(row["feature_vector"])],
                severity=row["severity"],
                frequency=row["frequency"],
                last_seen=row["last_seen"],
                bug_occurred=row["bug_occurred"],
                label=row["label"],
            )
            for row in rows
        ]

    async def save_patterns(self, patterns: Sequence[AnomalyPattern]) -> None:
        """Upsert the whole library in one transaction."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO healing_patterns
                        (id, feature_vector, severity, frequency, last_seen, bug_occurred, label)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    ON CONFLICT (id) DO UPDATE SET
                        feature_vector = EXCLUDED.feature_vector,
                        severity = EXCLUDED.severity,
                        frequency = EXCLUDED.frequency,
                        last_seen = EXCLUDED.last_seen,
                        bug_occurred = EXCLUDED.bug_occurred,
                        label = EXCLUDED.label
                    """,
                    [
                        (
                            p.id,
                            json.dumps(p.feature_vector),
                            p.severity,
                            p.frequency,
                            p.last_seen,
                            p.bug_occurred,
                            p.label,
                        )
                        for p in patterns
                    ],
                )
        log.debug("healing_storage.patterns_saved", count=len(patterns))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def save_event(self, event: HealingEvent) -> None:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                """
                INSERT INTO healing_events (id, timestamp, event_type, details)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (id) DO NOTHING
                """,
                event.id,
                event.timestamp,
                event.type.value,
                json.dumps(event.details, default=str),
            )

    async def get_recent_events(
        self,
        limit: int = 100,
        event_type: HealingEventType | None = None,
    ) -> list[HealingEvent]:
        """Newest events first, optionally of a single type."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            if event_type is None:
                rows = await conn.fetch(
                    """
                    SELECT id, timestamp, event_type, details
                    FROM healing_events
                    ORDER BY timestamp DESC
                    LIMIT $1
                    """,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT id, timestamp, event_type, details
                    FROM healing_events
                    WHERE event_type = $1
                    ORDER BY timestamp DESC
                    LIMIT $2
                    """,
                    event_type.value,
                    limit,
                )
        return [
            HealingEvent(
                id=row["id"],
                timestamp=row["timestamp"],
                type=HealingEventType(row["event_type"]),
                details=json.loads(row["details"]),
            )
            for row in rows
        ]

    async def count_events_by_type(self) -> dict[str, int]:
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                """
                SELECT event_type, COUNT(*) AS count
                FROM healing_events
                GROUP BY event_type
                """
            )
        return {row["event_type"]: row["count"] for row in rows}
