from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import aiosqlite

from .base import BaseService


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass(frozen=True)
class ViolationRecord:
    id: int
    user_id: int
    channel_id: int
    violation_type: str
    violation_count: int
    created_at_iso: str


class ViolationStore(BaseService[ViolationRecord]):
    """Rate-limit violation log."""

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS rate_limit_violations (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id INTEGER NOT NULL,
              channel_id INTEGER NOT NULL,
              violation_type TEXT NOT NULL,
              violation_count INTEGER NOT NULL,
              created_at_iso TEXT NOT NULL
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_violations_user ON rate_limit_violations(user_id, id)")

    def _from_row(self, row: aiosqlite.Row) -> ViolationRecord:
        return ViolationRecord(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            channel_id=int(row["channel_id"]),
            violation_type=str(row["violation_type"]),
            violation_count=int(row["violation_count"]),
            created_at_iso=str(row["created_at_iso"]),
        )

    async def record(self, identity: int, channel: int, violation_type: str, count: int) -> None:
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO rate_limit_violations (user_id, channel_id, violation_type, violation_count, created_at_iso)
                VALUES (?, ?, ?, ?, ?)
                """,
                (identity, channel, violation_type, count, _now_iso()),
            )
            await db.commit()

    async def recent_for_user(self, user_id: int, limit: int = 20) -> list[ViolationRecord]:
        limit = max(1, min(100, int(limit)))
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT id, user_id, channel_id, violation_type, violation_count, created_at_iso
                FROM rate_limit_violations
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (user_id, limit),
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]
