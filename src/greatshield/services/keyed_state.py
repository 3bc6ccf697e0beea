from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Generic, Hashable, Iterator, Optional, Protocol, TypeVar

K = TypeVar("K", bound=Hashable)
S = TypeVar("S")

log = logging.getLogger("greatshield.keyed_state")


class StateBacking(Protocol[K, S]):
    """Where per-key state lives. In-process for one instance; swap for a shared store."""

    def load(self, key: K) -> Optional[S]:
        ...

    def save(self, key: K, state: S) -> None:
        ...

    def remove(self, key: K) -> None:
        ...

    def items(self) -> Iterator[tuple[K, S]]:
        ...

    def __len__(self) -> int:
        ...


class InMemoryBacking(Generic[K, S]):
    def __init__(self) -> None:
        self._data: dict[K, S] = {}

    def load(self, key: K) -> Optional[S]:
        return self._data.get(key)

    def save(self, key: K, state: S) -> None:
        self._data[key] = state

    def remove(self, key: K) -> None:
        self._data.pop(key, None)

    def items(self) -> Iterator[tuple[K, S]]:
        # Snapshot so callers may remove while iterating.
        return iter(list(self._data.items()))

    def __len__(self) -> int:
        return len(self._data)


class KeyedStateStore(Generic[K, S]):
    """Per-key mutable state with a per-key lock.

    State is created by ``factory`` on first touch inside ``locked`` and is
    evicted by ``sweep`` once ``is_idle`` says so. Keys currently held by a
    caller are never evicted.
    """

    def __init__(
        self,
        name: str,
        factory: Callable[[], S],
        *,
        backing: Optional[StateBacking[K, S]] = None,
    ) -> None:
        self.name = name
        self._factory = factory
        self._backing: StateBacking[K, S] = backing if backing is not None else InMemoryBacking()
        self._locks: dict[K, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._backing)

    def _lock_for(self, key: K) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def locked(self, key: K) -> AsyncIterator[S]:
        lock = self._lock_for(key)
        async with lock:
            state = self._backing.load(key)
            if state is None:
                state = self._factory()
            try:
                yield state
            finally:
                self._backing.save(key, state)

    def peek(self, key: K) -> Optional[S]:
        """Read without locking or creating. For stats and admin paths only."""
        return self._backing.load(key)

    def values(self) -> list[S]:
        return [state for _, state in self._backing.items()]

    def discard(self, key: K) -> None:
        self._backing.remove(key)
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            self._locks.pop(key, None)

    def clear(self) -> None:
        for key, _ in self._backing.items():
            self._backing.remove(key)
        self._locks = {k: v for k, v in self._locks.items() if v.locked()}

    def sweep(self, is_idle: Callable[[S], bool]) -> int:
        """Evict idle entries. Synchronous, so it never interleaves with a held key."""
        evicted = 0
        for key, state in self._backing.items():
            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                continue
            if is_idle(state):
                self._backing.remove(key)
                self._locks.pop(key, None)
                evicted += 1
        if evicted:
            log.debug("Swept %d idle %s entries (%d remain)", evicted, self.name, len(self._backing))
        return evicted
