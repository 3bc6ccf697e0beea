from __future__ import annotations

import asyncio

from greatshield.moderation.models import ActionResult
from greatshield.moderation.rate_limiter import DAY, HOUR, RateLimitConfig, RateLimiter, penalty_for
from greatshield.testing.fakes import FakeClock, FakeViolationSink


class BrokenBacking:
    def load(self, key):
        raise RuntimeError("backing store down")

    def save(self, key, state):
        raise RuntimeError("backing store down")

    def remove(self, key):
        pass

    def items(self):
        return iter([])

    def __len__(self):
        return 0


def test_penalty_escalates_with_violation_count():
    assert penalty_for(0) == "none"
    assert [penalty_for(n) for n in (1, 2)] == ["warning", "warning"]
    assert [penalty_for(n) for n in (3, 4, 5)] == ["temp_mute"] * 3
    assert penalty_for(6) == "temp_ban"
    assert penalty_for(40) == "temp_ban"


def test_twenty_first_message_in_a_minute_is_rejected():
    clock = FakeClock()
    sink = FakeViolationSink()
    limiter = RateLimiter(RateLimitConfig(burst_limit=100), violation_sink=sink, clock=clock)

    async def run():
        results = [await limiter.check(1, 2) for _ in range(21)]
        await limiter.wait_pending()
        return results

    results = asyncio.run(run())

    assert all(r.allowed for r in results[:20])
    assert results[19].remaining_requests == 0
    rejected = results[20]
    assert not rejected.allowed
    assert rejected.penalty_level == "warning"
    assert rejected.violation_type == "user_limit"
    assert rejected.reason == "Per-minute message limit exceeded"
    assert rejected.reset_time == clock.now + 60
    assert sink.records == [(1, 2, "user_limit", 1)]


def test_rejected_messages_are_not_counted():
    clock = FakeClock()
    limiter = RateLimiter(RateLimitConfig(burst_limit=100), clock=clock)

    async def run():
        for _ in range(20):
            await limiter.check(1, 2)
        for _ in range(3):
            assert not (await limiter.check(1, 2)).allowed
        clock.advance(61)
        return await limiter.check(1, 2)

    after_window = asyncio.run(run())

    assert after_window.allowed
    # 20 accepted messages before plus this one; rejected ones never counted.
    assert after_window.remaining_requests == 19


def test_burst_limit_is_checked_first():
    clock = FakeClock()
    limiter = RateLimiter(RateLimitConfig(burst_limit=3), clock=clock)

    async def run():
        return [await limiter.check(1, 2) for _ in range(4)]

    results = asyncio.run(run())

    assert [r.allowed for r in results] == [True, True, True, False]
    assert results[3].violation_type == "burst"
    assert results[3].reason == "Burst limit exceeded"


def test_channel_limit_applies_across_users():
    clock = FakeClock()
    limiter = RateLimiter(RateLimitConfig(burst_limit=100, channel_messages_per_minute=3), clock=clock)

    async def run():
        return [await limiter.check(user, 2) for user in (1, 2, 3, 4)]

    results = asyncio.run(run())

    assert [r.allowed for r in results] == [True, True, True, False]
    assert results[3].violation_type == "channel_limit"


def test_repeated_violations_escalate_the_penalty():
    clock = FakeClock()
    limiter = RateLimiter(RateLimitConfig(burst_limit=1), clock=clock)

    async def run():
        await limiter.check(1, 2)
        return [(await limiter.check(1, 2)).penalty_level for _ in range(6)]

    levels = asyncio.run(run())

    assert levels == ["warning", "warning", "temp_mute", "temp_mute", "temp_mute", "temp_ban"]


def test_penalty_handler_receives_level_and_reason():
    clock = FakeClock()
    limiter = RateLimiter(RateLimitConfig(burst_limit=1), clock=clock)
    calls = []

    async def on_penalty(level, reason, violation_type):
        calls.append((level, reason, violation_type))
        return ActionResult(success=True, action="warn")

    async def run():
        await limiter.check(1, 2, on_penalty=on_penalty)
        return await limiter.check(1, 2, on_penalty=on_penalty)

    result = asyncio.run(run())

    assert calls == [("warning", "Burst limit exceeded", "burst")]
    assert result.penalty_result == ActionResult(success=True, action="warn")


def test_failing_penalty_handler_is_reported_not_raised():
    limiter = RateLimiter(RateLimitConfig(burst_limit=1), clock=FakeClock())

    async def on_penalty(level, reason, violation_type):
        raise RuntimeError("no permission")

    async def run():
        await limiter.check(1, 2, on_penalty=on_penalty)
        return await limiter.check(1, 2, on_penalty=on_penalty)

    result = asyncio.run(run())

    assert not result.allowed
    assert result.penalty_result.success is False
    assert result.penalty_result.error == "no permission"


def test_concurrent_checks_for_one_user_never_lose_updates():
    limiter = RateLimiter(RateLimitConfig(burst_limit=100), clock=FakeClock())

    async def run():
        return await asyncio.gather(*(limiter.check(1, 2) for _ in range(25)))

    results = asyncio.run(run())

    assert sum(1 for r in results if r.allowed) == 20
    assert limiter.statistics()["total_violations"] == 5


def test_internal_error_fails_open():
    limiter = RateLimiter(clock=FakeClock(), user_backing=BrokenBacking())

    result = asyncio.run(limiter.check(1, 2))

    assert result.allowed
    assert result.penalty_level == "none"
    assert result.reason == "Rate limit check failed"


def test_violation_sink_failure_does_not_affect_result():
    sink = FakeViolationSink(fail=True)
    limiter = RateLimiter(RateLimitConfig(burst_limit=1), violation_sink=sink, clock=FakeClock())

    async def run():
        await limiter.check(1, 2)
        result = await limiter.check(1, 2)
        await limiter.wait_pending()
        return result

    result = asyncio.run(run())

    assert not result.allowed
    assert sink.records == []


def test_sweep_evicts_idle_users_and_channels():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)

    async def run():
        await limiter.check(1, 2)
        await limiter.check(3, 4)

    asyncio.run(run())
    assert limiter.statistics()["user_entries"] == 2

    clock.advance(HOUR + 1)
    # Channels idle for an hour go first; users are kept for a day.
    assert limiter.sweep() == 2
    assert limiter.statistics() == {"user_entries": 2, "channel_entries": 0, "total_violations": 0}

    clock.advance(DAY)
    assert limiter.sweep() == 2
    assert limiter.statistics()["user_entries"] == 0


def test_reset_user_clears_violations():
    limiter = RateLimiter(RateLimitConfig(burst_limit=1), clock=FakeClock())

    async def run():
        await limiter.check(1, 2)
        await limiter.check(1, 2)
        limiter.reset_user(1)
        return await limiter.check(1, 2)

    assert asyncio.run(run()).allowed
    assert limiter.statistics()["total_violations"] == 0
