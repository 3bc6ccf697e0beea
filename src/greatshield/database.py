from __future__ import annotations

import logging
from typing import Sequence

import aiosqlite

from .services.base import BaseService

log = logging.getLogger("greatshield.database")


async def initialize_database(sqlite_path: str, stores: Sequence[BaseService]) -> None:
    """Apply connection pragmas and create every store's tables."""
    try:
        async with aiosqlite.connect(sqlite_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")
            await db.execute("PRAGMA foreign_keys=ON")
            await db.commit()

        for store in stores:
            await store.init()
            log.info("Initialized %s", store.__class__.__name__)

        log.info("Database initialization completed (%s)", sqlite_path)
    except Exception:
        log.exception("Failed to initialize database at %s", sqlite_path)
        raise
