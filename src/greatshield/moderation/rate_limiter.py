from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from ..interfaces import ViolationSink
from ..services.keyed_state import KeyedStateStore, StateBacking
from ..services.periodic import PeriodicTask
from .models import ActionResult, PenaltyLevel, RateLimitResult

log = logging.getLogger("greatshield.rate_limiter")

MINUTE = 60.0
HOUR = 60 * MINUTE
DAY = 24 * HOUR

USER_IDLE_SECONDS = DAY
CHANNEL_IDLE_SECONDS = HOUR

PenaltyHandler = Callable[[PenaltyLevel, str, str], Awaitable[ActionResult]]


@dataclass(frozen=True)
class RateLimitConfig:
    messages_per_minute: int = 20
    messages_per_hour: int = 300
    messages_per_day: int = 2000
    channel_messages_per_minute: int = 50
    burst_window_seconds: float = 10.0
    burst_limit: int = 5
    cleanup_interval_seconds: float = 300.0


@dataclass
class Window:
    length: float
    count: int = 0
    started_at: float = 0.0

    def roll(self, now: float) -> None:
        if now - self.started_at > self.length:
            self.count = 0
            self.started_at = now

    @property
    def resets_at(self) -> float:
        return self.started_at + self.length


@dataclass
class UserRateState:
    burst: Window
    minute: Window
    hour: Window
    day: Window
    violations: int = 0

    def last_activity(self) -> float:
        return max(self.burst.started_at, self.minute.started_at, self.hour.started_at, self.day.started_at)


@dataclass
class ChannelRateState:
    minute: Window = field(default_factory=lambda: Window(MINUTE))


def penalty_for(violations: int) -> PenaltyLevel:
    if violations <= 0:
        return "none"
    if violations <= 2:
        return "warning"
    if violations <= 5:
        return "temp_mute"
    return "temp_ban"


class RateLimiter:
    """Per-user and per-channel message rate limiting with escalating penalties.

    Check-then-increment runs under the user's lock then the channel's lock
    (always in that order), so concurrent messages for the same key never
    lose or double count updates.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        *,
        violation_sink: Optional[ViolationSink] = None,
        clock: Callable[[], float] = time.time,
        user_backing: Optional[StateBacking] = None,
        channel_backing: Optional[StateBacking] = None,
    ) -> None:
        self.config = config or RateLimitConfig()
        self._sink = violation_sink
        self._clock = clock
        self._users: KeyedStateStore[int, UserRateState] = KeyedStateStore(
            "rate_limit_users", self._new_user_state, backing=user_backing
        )
        self._channels: KeyedStateStore[int, ChannelRateState] = KeyedStateStore(
            "rate_limit_channels", self._new_channel_state, backing=channel_backing
        )
        self._pending: set[asyncio.Task[None]] = set()
        self._sweeper = PeriodicTask("rate-limit-sweep", self.config.cleanup_interval_seconds, self.sweep)

    def _new_user_state(self) -> UserRateState:
        now = self._clock()
        return UserRateState(
            burst=Window(self.config.burst_window_seconds, started_at=now),
            minute=Window(MINUTE, started_at=now),
            hour=Window(HOUR, started_at=now),
            day=Window(DAY, started_at=now),
        )

    def _new_channel_state(self) -> ChannelRateState:
        return ChannelRateState(minute=Window(MINUTE, started_at=self._clock()))

    async def check(
        self,
        identity: int,
        channel: int,
        *,
        on_penalty: Optional[PenaltyHandler] = None,
    ) -> RateLimitResult:
        """Check one message. Fails open on internal errors."""
        try:
            async with self._users.locked(identity) as user, self._channels.locked(channel) as chan:
                now = self._clock()
                rejected = self._first_rejection(user, chan, now)
                if rejected is None:
                    user.burst.count += 1
                    user.minute.count += 1
                    user.hour.count += 1
                    user.day.count += 1
                    chan.minute.count += 1
                    return RateLimitResult(
                        allowed=True,
                        penalty_level="none",
                        remaining_requests=self._remaining(user),
                    )

                reason, reset_time, violation_type = rejected
                user.violations += 1
                violations = user.violations
        except Exception:
            log.exception("Rate limit check failed for user=%s channel=%s", identity, channel)
            return RateLimitResult(allowed=True, penalty_level="none", reason="Rate limit check failed")

        penalty = penalty_for(violations)
        log.warning(
            "Rate limit violation user=%s channel=%s type=%s violations=%d penalty=%s",
            identity,
            channel,
            violation_type,
            violations,
            penalty,
        )
        self._record_violation(identity, channel, violation_type, violations)

        penalty_result: Optional[ActionResult] = None
        if on_penalty is not None:
            try:
                penalty_result = await on_penalty(penalty, reason, violation_type)
            except Exception as e:
                log.exception("Failed to apply rate limit penalty %s to user=%s", penalty, identity)
                penalty_result = ActionResult(success=False, action=penalty, error=str(e))

        return RateLimitResult(
            allowed=False,
            penalty_level=penalty,
            reason=reason,
            reset_time=reset_time,
            violation_type=violation_type,
            penalty_result=penalty_result,
        )

    def _first_rejection(
        self, user: UserRateState, chan: ChannelRateState, now: float
    ) -> Optional[tuple[str, float, str]]:
        cfg = self.config
        checks = (
            (user.burst, cfg.burst_limit, "Burst limit exceeded", "burst"),
            (user.minute, cfg.messages_per_minute, "Per-minute message limit exceeded", "user_limit"),
            (user.hour, cfg.messages_per_hour, "Per-hour message limit exceeded", "user_limit"),
            (user.day, cfg.messages_per_day, "Daily message limit exceeded", "user_limit"),
            (chan.minute, cfg.channel_messages_per_minute, "Channel message limit exceeded", "channel_limit"),
        )
        for window, limit, reason, violation_type in checks:
            window.roll(now)
            if window.count >= limit:
                return reason, window.resets_at, violation_type
        return None

    def _remaining(self, user: UserRateState) -> int:
        cfg = self.config
        return min(
            max(0, cfg.messages_per_minute - user.minute.count),
            max(0, cfg.messages_per_hour - user.hour.count),
            max(0, cfg.messages_per_day - user.day.count),
        )

    def _record_violation(self, identity: int, channel: int, violation_type: str, count: int) -> None:
        if self._sink is None:
            return
        task = asyncio.create_task(self._sink.record(identity, channel, violation_type, count))
        self._pending.add(task)
        task.add_done_callback(self._on_recorded)

    def _on_recorded(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Failed to persist rate limit violation: %r", exc)

    async def wait_pending(self) -> None:
        """Wait for in-flight violation writes. Used at shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def reset_user(self, identity: int) -> None:
        self._users.discard(identity)
        log.info("Rate limits reset for user %s", identity)

    def sweep(self) -> int:
        now = self._clock()
        evicted = self._users.sweep(lambda s: now - s.last_activity() > USER_IDLE_SECONDS)
        evicted += self._channels.sweep(lambda s: now - s.minute.started_at > CHANNEL_IDLE_SECONDS)
        log.debug("Rate limiter sweep users=%d channels=%d", len(self._users), len(self._channels))
        return evicted

    def statistics(self) -> dict[str, int]:
        return {
            "user_entries": len(self._users),
            "channel_entries": len(self._channels),
            "total_violations": sum(u.violations for u in self._users.values()),
        }

    def start(self) -> None:
        self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()
        await self.wait_pending()
