from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

log = logging.getLogger("greatshield.periodic")


class PeriodicTask:
    """Runs a synchronous callback on a fixed interval until stopped."""

    def __init__(self, name: str, interval_seconds: float, fn: Callable[[], object]) -> None:
        self.name = name
        self._interval = max(0.01, float(interval_seconds))
        self._fn = fn
        self._stop: Optional[asyncio.Event] = None
        self._runner: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._runner = asyncio.create_task(self._run(), name=f"greatshield-{self.name}")
        log.info("%s started (every %.0fs)", self.name, self._interval)

    async def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()
        if self._runner is not None:
            await self._runner
            self._runner = None
        log.info("%s stopped", self.name)

    async def _run(self) -> None:
        assert self._stop is not None
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                break
            try:
                self._fn()
            except Exception:
                log.exception("%s run failed", self.name)
