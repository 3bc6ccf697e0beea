from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from ..moderation.models import ChatMessage, ModerationDecision
from .base import BaseService


@dataclass(frozen=True)
class ModerationLogRecord:
    id: int
    message_id: int
    channel_id: int
    guild_id: int
    user_id: int
    username: str
    content: str
    detection_type: str
    rule_triggered: Optional[str]
    confidence_scores: dict[str, float]
    action: str
    reasoning: Optional[str]
    success: bool
    error: Optional[str]
    processed_at_iso: str


class ModerationLogStore(BaseService[ModerationLogRecord]):
    """Persisted moderation decisions."""

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS moderation_logs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              message_id INTEGER NOT NULL,
              channel_id INTEGER NOT NULL,
              guild_id INTEGER NOT NULL,
              user_id INTEGER NOT NULL,
              username TEXT NOT NULL DEFAULT '',
              content TEXT NOT NULL DEFAULT '',
              detection_type TEXT NOT NULL,
              rule_triggered TEXT,
              confidence_json TEXT NOT NULL,
              action TEXT NOT NULL,
              reasoning TEXT,
              success INTEGER NOT NULL,
              error TEXT,
              processed_at_iso TEXT NOT NULL
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_modlogs_user ON moderation_logs(guild_id, user_id, id)")

    def _from_row(self, row: aiosqlite.Row) -> ModerationLogRecord:
        try:
            scores = json.loads(row["confidence_json"] or "{}")
        except json.JSONDecodeError:
            scores = {}
        return ModerationLogRecord(
            id=int(row["id"]),
            message_id=int(row["message_id"]),
            channel_id=int(row["channel_id"]),
            guild_id=int(row["guild_id"]),
            user_id=int(row["user_id"]),
            username=str(row["username"]),
            content=str(row["content"]),
            detection_type=str(row["detection_type"]),
            rule_triggered=row["rule_triggered"],
            confidence_scores={str(k): float(v) for k, v in scores.items()},
            action=str(row["action"]),
            reasoning=row["reasoning"],
            success=bool(row["success"]),
            error=row["error"],
            processed_at_iso=str(row["processed_at_iso"]),
        )

    async def record(self, message: ChatMessage, decision: ModerationDecision) -> int:
        async with self._connect() as db:
            cur = await db.execute(
                """
                INSERT INTO moderation_logs (
                  message_id, channel_id, guild_id, user_id, username, content, detection_type,
                  rule_triggered, confidence_json, action, reasoning, success, error, processed_at_iso
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.channel_id,
                    message.guild_id,
                    message.author.id,
                    message.author.username,
                    message.text,
                    decision.detection_type,
                    decision.rule_triggered,
                    json.dumps(decision.confidence_scores, separators=(",", ":")),
                    decision.action,
                    decision.reasoning,
                    int(decision.success),
                    decision.error,
                    datetime.now(timezone.utc).isoformat(timespec="seconds"),
                ),
            )
            await db.commit()
            return int(cur.lastrowid)

    async def recent(self, limit: int = 20, *, guild_id: Optional[int] = None) -> list[ModerationLogRecord]:
        limit = max(1, min(100, int(limit)))
        query = "SELECT * FROM moderation_logs"
        params: tuple = ()
        if guild_id is not None:
            query += " WHERE guild_id = ?"
            params = (guild_id,)
        query += " ORDER BY id DESC LIMIT ?"
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params + (limit,)) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]
