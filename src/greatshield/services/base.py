from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Generic, Hashable, TypeVar

import aiosqlite

from .cache import TTLCache

T = TypeVar("T")
log = logging.getLogger("greatshield.base_service")


class BaseService(ABC, Generic[T]):
    """Base class for SQLite-backed stores with a read cache."""

    def __init__(self, sqlite_path: str, cache_ttl_seconds: int = 120) -> None:
        self._path = sqlite_path
        self._cache: TTLCache[Hashable, Any] = TTLCache(default_ttl_seconds=cache_ttl_seconds)
        self._logger = logging.getLogger(f"greatshield.{self.__class__.__name__.lower()}")

    async def init(self) -> None:
        """Create the store's tables."""
        async with aiosqlite.connect(self._path) as db:
            await db.execute("PRAGMA foreign_keys=ON")
            await self._create_tables(db)
            await db.commit()

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self._path)

    @abstractmethod
    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        """Create the necessary database tables."""

    @abstractmethod
    def _from_row(self, row: aiosqlite.Row) -> T:
        """Convert a database row to the store's record type."""
