"""SQLite-backed checkpoint store for running sessions."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import aiosqlite

from .phases import SessionPhase

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600


@dataclass
class SessionRecord:
    """Checkpoint of one session, enough to inspect or resume it."""

    session_id: str
    current_phase: SessionPhase = SessionPhase.INTRODUCTION
    phase_started_at: Optional[float] = None
    sentences_in_phase: int = 0
    total_sentences: int = 0
    continuation_token: Optional[str] = None
    phase_budgets: dict[str, int] = field(default_factory=dict)
    session_length_minutes: int = 15
    mood: str = "neutral"
    voice_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["current_phase"] = self.current_phase.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SessionRecord":
        data = dict(payload)
        data["current_phase"] = SessionPhase(
            data.get("current_phase", SessionPhase.INTRODUCTION.value)
        )
        known = set(cls.__dataclass_fields__)
        return cls(**{key: value for key, value in data.items() if key in known})


class SessionStateStore:
    """Persist session checkpoints with a time-to-live.

    Records are keyed by session id and written with an upsert, so repeating
    a write is harmless. Expired rows read as missing and are removed by
    :meth:`purge_expired`.
    """

    def __init__(
        self,
        database_path: Path,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._path = database_path
        self._ttl = ttl_seconds
        self._clock = clock
        self._connection: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the SQLite connection and ensure tables exist."""
        if self._connection is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._create_schema()

    async def _create_schema(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS session_state (
                session_id TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                updated_at REAL NOT NULL,
                expires_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_session_state_expires
                ON session_state(expires_at);
            """
        )
        await self._connection.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    async def get(self, session_id: str) -> SessionRecord | None:
        """Return the live record for ``session_id`` or ``None``."""
        assert self._connection is not None

        cursor = await self._connection.execute(
            "SELECT payload FROM session_state WHERE session_id = ? AND expires_at > ?",
            (session_id, self._clock()),
        )
        row = await cursor.fetchone()
        await cursor.close()

        if row is None:
            return None
        return SessionRecord.from_dict(json.loads(row["payload"]))

    async def upsert(self, record: SessionRecord) -> None:
        """Write ``record`` and refresh its expiry."""
        assert self._connection is not None

        now = self._clock()
        await self._connection.execute(
            """
            INSERT INTO session_state (session_id, payload, updated_at, expires_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                payload = excluded.payload,
                updated_at = excluded.updated_at,
                expires_at = excluded.expires_at
            """,
            (
                record.session_id,
                json.dumps(record.to_dict()),
                now,
                now + self._ttl,
            ),
        )
        await self._connection.commit()

    async def delete(self, session_id: str) -> bool:
        assert self._connection is not None

        cursor = await self._connection.execute(
            "DELETE FROM session_state WHERE session_id = ?",
            (session_id,),
        )
        await self._connection.commit()
        deleted = cursor.rowcount > 0
        await cursor.close()
        return deleted

    async def purge_expired(self) -> int:
        """Delete expired rows and return how many were removed."""
        assert self._connection is not None

        cursor = await self._connection.execute(
            "DELETE FROM session_state WHERE expires_at <= ?",
            (self._clock(),),
        )
        await self._connection.commit()
        removed = cursor.rowcount
        await cursor.close()
        if removed:
            logger.info("Purged %d expired session checkpoints", removed)
        return removed


__all__ = ["DEFAULT_TTL_SECONDS", "SessionRecord", "SessionStateStore"]
