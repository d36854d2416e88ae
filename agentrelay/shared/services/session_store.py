"""Channel → agent session id persistence backed by sqlite."""
from __future__ import annotations

import logging
import sqlite3
import time
from pathlib import Path

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 24 * 60 * 60


class SessionStore:
    """Last-write-wins map of channel id to resumable session id."""

    def __init__(self, db_path: str | Path):
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = self._connect()
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @property
    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("SessionStore is closed")
        return self._conn

    def _ensure_schema(self) -> None:
        with self._db as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS channel_sessions (
                    channel_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    channel_name TEXT NOT NULL,
                    last_used INTEGER NOT NULL
                )
                """
            )

    def get_session(self, channel_id: str) -> str | None:
        row = self._db.execute(
            "SELECT session_id FROM channel_sessions WHERE channel_id = ?",
            (channel_id,),
        ).fetchone()
        return row["session_id"] if row else None

    def set_session(
        self, channel_id: str, session_id: str, channel_name: str,
    ) -> None:
        with self._db as conn:
            conn.execute(
                """
                INSERT INTO channel_sessions
                    (channel_id, session_id, channel_name, last_used)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(channel_id) DO UPDATE SET
                    session_id = excluded.session_id,
                    channel_name = excluded.channel_name,
                    last_used = excluded.last_used
                """,
                (channel_id, session_id, channel_name, int(time.time() * 1000)),
            )
        logger.debug("Stored session %s for channel %s", session_id, channel_id)

    def clear_session(self, channel_id: str) -> None:
        with self._db as conn:
            conn.execute(
                "DELETE FROM channel_sessions WHERE channel_id = ?",
                (channel_id,),
            )
        logger.info("Cleared session for channel %s", channel_id)

    def all_sessions(self) -> list[dict[str, object]]:
        rows = self._db.execute(
            "SELECT channel_id, session_id, channel_name, last_used "
            "FROM channel_sessions ORDER BY last_used DESC"
        ).fetchall()
        return [dict(row) for row in rows]

    def cleanup_old_sessions(self, max_age_days: int = 30) -> int:
        """Forget sessions unused for *max_age_days*; returns the count."""
        cutoff = int((time.time() - max_age_days * _SECONDS_PER_DAY) * 1000)
        with self._db as conn:
            cursor = conn.execute(
                "DELETE FROM channel_sessions WHERE last_used < ?", (cutoff,),
            )
        removed = cursor.rowcount
        if removed:
            logger.info(
                "Removed %d session(s) unused for %d days", removed, max_age_days,
            )
        return removed

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
