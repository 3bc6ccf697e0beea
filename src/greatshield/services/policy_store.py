from __future__ import annotations

from typing import Any, Optional

import aiosqlite

from ..errors import PolicyValidationError
from ..moderation.models import BannedWord, BlockedUrl, ModerationRule, PolicyPack
from ..moderation.policy_schema import build_policy_pack, default_policy_documents, pack_to_document
from .base import BaseService


class PolicyStore(BaseService[PolicyPack]):
    """Policy packs with their rules, banned words and blocked URLs.

    Packs are written as whole documents and revalidated on every load, so a
    caller always sees a complete pack or an error. Exactly one pack is active.
    """

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS policy_packs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL UNIQUE,
              description TEXT NOT NULL DEFAULT '',
              is_active INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS moderation_rules (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              policy_pack_id INTEGER NOT NULL REFERENCES policy_packs(id) ON DELETE CASCADE,
              rule_type TEXT NOT NULL,
              threshold REAL NOT NULL,
              action TEXT NOT NULL,
              enabled INTEGER NOT NULL DEFAULT 1
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS banned_words (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              policy_pack_id INTEGER NOT NULL REFERENCES policy_packs(id) ON DELETE CASCADE,
              pattern TEXT NOT NULL,
              is_regex INTEGER NOT NULL DEFAULT 0,
              severity TEXT NOT NULL DEFAULT 'medium',
              action TEXT NOT NULL DEFAULT 'mask',
              enabled INTEGER NOT NULL DEFAULT 1
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS blocked_urls (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              policy_pack_id INTEGER NOT NULL REFERENCES policy_packs(id) ON DELETE CASCADE,
              pattern TEXT NOT NULL,
              is_regex INTEGER NOT NULL DEFAULT 0,
              reason TEXT NOT NULL DEFAULT '',
              action TEXT NOT NULL DEFAULT 'delete_warn',
              enabled INTEGER NOT NULL DEFAULT 1
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_rules_pack ON moderation_rules(policy_pack_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_words_pack ON banned_words(policy_pack_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_urls_pack ON blocked_urls(policy_pack_id)")

    def _from_row(self, row: aiosqlite.Row) -> PolicyPack:
        # Header only; children are attached by _load_pack.
        return PolicyPack(
            id=int(row["id"]),
            name=str(row["name"]),
            active=bool(row["is_active"]),
            description=str(row["description"] or ""),
        )

    async def _load_pack(self, db: aiosqlite.Connection, header: PolicyPack) -> PolicyPack:
        doc: dict[str, Any] = pack_to_document(header)
        async with db.execute(
            "SELECT rule_type, threshold, action, enabled FROM moderation_rules WHERE policy_pack_id = ? ORDER BY id",
            (header.id,),
        ) as cur:
            doc["rules"] = [
                {"rule_type": r["rule_type"], "threshold": float(r["threshold"]), "action": r["action"], "enabled": bool(r["enabled"])}
                for r in await cur.fetchall()
            ]
        async with db.execute(
            "SELECT pattern, is_regex, severity, action FROM banned_words WHERE policy_pack_id = ? AND enabled = 1 ORDER BY id",
            (header.id,),
        ) as cur:
            doc["banned_words"] = [
                {"pattern": r["pattern"], "is_regex": bool(r["is_regex"]), "severity": r["severity"], "action": r["action"]}
                for r in await cur.fetchall()
            ]
        async with db.execute(
            "SELECT pattern, is_regex, reason, action FROM blocked_urls WHERE policy_pack_id = ? AND enabled = 1 ORDER BY id",
            (header.id,),
        ) as cur:
            doc["blocked_urls"] = [
                {"pattern": r["pattern"], "is_regex": bool(r["is_regex"]), "reason": r["reason"] or "", "action": r["action"]}
                for r in await cur.fetchall()
            ]
        return build_policy_pack(doc)

    async def get_policy_pack(self, pack_id: int) -> Optional[PolicyPack]:
        cached = self._cache.get(("pack", pack_id))
        if cached is not None:
            return cached

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT id, name, description, is_active FROM policy_packs WHERE id = ?", (pack_id,)
            ) as cur:
                row = await cur.fetchone()
            if row is None:
                return None
            try:
                pack = await self._load_pack(db, self._from_row(row))
            except PolicyValidationError:
                self._logger.error("Stored policy pack %s failed validation", pack_id)
                raise

        self._cache.set(("pack", pack_id), pack)
        return pack

    async def get_active_policy_pack(self) -> Optional[PolicyPack]:
        async with self._connect() as db:
            async with db.execute("SELECT id FROM policy_packs WHERE is_active = 1 ORDER BY id LIMIT 1") as cur:
                row = await cur.fetchone()
        if row is None:
            return None
        return await self.get_policy_pack(int(row[0]))

    async def list_policy_packs(self) -> list[PolicyPack]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT id, name, description, is_active FROM policy_packs ORDER BY id") as cur:
                rows = await cur.fetchall()
        return [self._from_row(r) for r in rows]

    async def set_active_policy_pack(self, pack_id: int) -> None:
        async with self._connect() as db:
            async with db.execute("SELECT 1 FROM policy_packs WHERE id = ?", (pack_id,)) as cur:
                if await cur.fetchone() is None:
                    raise KeyError(f"Unknown policy pack {pack_id}")
            await db.execute("UPDATE policy_packs SET is_active = CASE WHEN id = ? THEN 1 ELSE 0 END", (pack_id,))
            await db.commit()
        self._cache.invalidate_where(lambda k: k[0] == "pack")
        self._logger.info("Active policy pack set to %s", pack_id)

    async def get_moderation_rules(self, pack_id: int) -> list[ModerationRule]:
        pack = await self.get_policy_pack(pack_id)
        return list(pack.rules) if pack else []

    async def get_banned_words(self, pack_id: int) -> list[BannedWord]:
        pack = await self.get_policy_pack(pack_id)
        return list(pack.banned_words) if pack else []

    async def get_blocked_urls(self, pack_id: int) -> list[BlockedUrl]:
        pack = await self.get_policy_pack(pack_id)
        return list(pack.blocked_urls) if pack else []

    async def save_policy_document(self, doc: dict[str, Any]) -> int:
        """Insert or replace a whole pack. Returns its id."""
        pack = build_policy_pack(doc)

        async with self._connect() as db:
            await db.execute("PRAGMA foreign_keys=ON")
            if pack.id:
                await db.execute(
                    "UPDATE policy_packs SET name = ?, description = ? WHERE id = ?",
                    (pack.name, pack.description, pack.id),
                )
                pack_id = pack.id
            else:
                cur = await db.execute(
                    "INSERT INTO policy_packs (name, description, is_active) VALUES (?, ?, 0)",
                    (pack.name, pack.description),
                )
                pack_id = int(cur.lastrowid)

            # Children are replaced wholesale in the same transaction.
            await db.execute("DELETE FROM moderation_rules WHERE policy_pack_id = ?", (pack_id,))
            await db.execute("DELETE FROM banned_words WHERE policy_pack_id = ?", (pack_id,))
            await db.execute("DELETE FROM blocked_urls WHERE policy_pack_id = ?", (pack_id,))
            await db.executemany(
                "INSERT INTO moderation_rules (policy_pack_id, rule_type, threshold, action, enabled) VALUES (?, ?, ?, ?, ?)",
                [(pack_id, r.rule_type, r.threshold, r.action, int(r.enabled)) for r in pack.rules],
            )
            await db.executemany(
                "INSERT INTO banned_words (policy_pack_id, pattern, is_regex, severity, action) VALUES (?, ?, ?, ?, ?)",
                [(pack_id, w.pattern, int(w.is_regex), w.severity, w.action) for w in pack.banned_words],
            )
            await db.executemany(
                "INSERT INTO blocked_urls (policy_pack_id, pattern, is_regex, reason, action) VALUES (?, ?, ?, ?, ?)",
                [(pack_id, u.pattern, int(u.is_regex), u.reason, u.action) for u in pack.blocked_urls],
            )
            if pack.active:
                await db.execute("UPDATE policy_packs SET is_active = CASE WHEN id = ? THEN 1 ELSE 0 END", (pack_id,))
            await db.commit()

        self._cache.invalidate_where(lambda k: k[0] == "pack")
        return pack_id

    async def seed_defaults(self) -> bool:
        """Insert the seed packs when the store is empty. Returns True if it seeded."""
        async with self._connect() as db:
            async with db.execute("SELECT COUNT(*) FROM policy_packs") as cur:
                row = await cur.fetchone()
        if row and int(row[0]) > 0:
            return False
        for doc in default_policy_documents():
            await self.save_policy_document(doc)
        self._logger.info("Seeded default policy packs")
        return True
