from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import aiosqlite

from .base import BaseService


@dataclass(frozen=True)
class ContextMessage:
    message_id: int
    channel_id: int
    user_id: int
    content: str
    created_at_iso: str


class MessageContextStore(BaseService[ContextMessage]):
    """Recent channel messages fed to context-augmented analysis."""

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS message_context (
              message_id INTEGER PRIMARY KEY,
              channel_id INTEGER NOT NULL,
              user_id INTEGER NOT NULL,
              content TEXT NOT NULL,
              created_at_iso TEXT NOT NULL
            )
            """
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_context_channel ON message_context(channel_id, created_at_iso)"
        )

    def _from_row(self, row: aiosqlite.Row) -> ContextMessage:
        return ContextMessage(
            message_id=int(row["message_id"]),
            channel_id=int(row["channel_id"]),
            user_id=int(row["user_id"]),
            content=str(row["content"]),
            created_at_iso=str(row["created_at_iso"]),
        )

    async def add_message(
        self, channel_id: int, message_id: int, user_id: int, content: str, created_at_iso: str
    ) -> None:
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO message_context (message_id, channel_id, user_id, content, created_at_iso)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(message_id) DO UPDATE SET content = excluded.content
                """,
                (message_id, channel_id, user_id, content, created_at_iso),
            )
            await db.commit()

    async def get_recent_messages(self, channel_id: int, limit: int = 10) -> list[ContextMessage]:
        """Newest first."""
        limit = max(1, min(100, int(limit)))
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT message_id, channel_id, user_id, content, created_at_iso
                FROM message_context
                WHERE channel_id = ?
                ORDER BY created_at_iso DESC, message_id DESC
                LIMIT ?
                """,
                (channel_id, limit),
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def prune_older_than(self, seconds: float) -> int:
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=seconds)).isoformat(timespec="seconds")
        async with self._connect() as db:
            cur = await db.execute("DELETE FROM message_context WHERE created_at_iso < ?", (cutoff,))
            await db.commit()
            removed = cur.rowcount or 0
        if removed:
            self._logger.debug("Pruned %d context messages", removed)
        return removed
