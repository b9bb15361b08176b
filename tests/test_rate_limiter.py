import asyncio

import pytest

from greenagent.config import ActionClass, Settings
from greenagent.service.rate_limit import (
    DEFAULT_LIMITS,
    RateLimitConfig,
    SlidingWindowRateLimiter,
    build_limits,
    format_wait_time,
    limiter_key,
    rate_limited_text,
)
from greenagent.storage.models import Platform


class FakeClock:
    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def test_allows_up_to_max_then_denies_with_reset_time():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock=clock)

    results = []
    for _ in range(5):
        results.append(limiter.check("telegram:1", ActionClass.SUBMISSION))
        clock.advance(1_000)

    assert all(r.allowed for r in results)
    assert [r.remaining for r in results] == [4, 3, 2, 1, 0]

    denied = limiter.check("telegram:1", ActionClass.SUBMISSION)
    assert denied.allowed is False
    assert denied.remaining == 0
    # oldest at t0, window 300s, now t0 + 5s
    assert denied.reset_in_ms == 300_000 - 5_000


def test_denied_check_does_not_consume_a_slot():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter({ActionClass.VOICE: RateLimitConfig(1, 10_000, "slow")}, clock=clock)

    assert limiter.check("u", ActionClass.VOICE).allowed
    for _ in range(3):
        assert not limiter.check("u", ActionClass.VOICE).allowed

    clock.advance(10_000)
    assert limiter.check("u", ActionClass.VOICE).allowed


def test_window_slides_one_entry_at_a_time():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter({ActionClass.MESSAGE: RateLimitConfig(2, 1_000, "m")}, clock=clock)

    assert limiter.check("u", ActionClass.MESSAGE).allowed
    clock.advance(500)
    assert limiter.check("u", ActionClass.MESSAGE).allowed
    clock.advance(499)
    assert not limiter.check("u", ActionClass.MESSAGE).allowed
    # first entry now exactly one window old and falls out
    clock.advance(1)
    assert limiter.check("u", ActionClass.MESSAGE).allowed
    assert not limiter.check("u", ActionClass.MESSAGE).allowed


def test_classes_and_users_are_independent():
    limiter = SlidingWindowRateLimiter(clock=FakeClock())
    for _ in range(3):
        limiter.check("a", ActionClass.VOICE)

    assert not limiter.check("a", ActionClass.VOICE).allowed
    assert limiter.check("a", ActionClass.MESSAGE).allowed
    assert limiter.check("b", ActionClass.VOICE).allowed


def test_peek_does_not_consume():
    limiter = SlidingWindowRateLimiter(clock=FakeClock())
    limiter.check("u", ActionClass.SUBMISSION)

    status = limiter.peek("u", ActionClass.SUBMISSION)
    again = limiter.peek("u", ActionClass.SUBMISSION)

    assert status.remaining == again.remaining == 4
    assert status.limit == 5
    assert limiter.peek("nobody", ActionClass.SUBMISSION).remaining == 5


def test_override_config_applies_to_single_check():
    limiter = SlidingWindowRateLimiter(clock=FakeClock())
    tight = RateLimitConfig(1, 60_000, "tight")

    assert limiter.check("u", ActionClass.COMMAND, tight).allowed
    assert not limiter.check("u", ActionClass.COMMAND, tight).allowed


def test_reset_and_reset_all():
    limiter = SlidingWindowRateLimiter(clock=FakeClock())
    for _ in range(3):
        limiter.check("u", ActionClass.VOICE)
    limiter.check("u", ActionClass.MESSAGE)

    limiter.reset("u", ActionClass.VOICE)
    assert limiter.check("u", ActionClass.VOICE).allowed
    assert limiter.peek("u", ActionClass.MESSAGE).remaining == 9

    limiter.reset_all("u")
    assert limiter.stats()["buckets"] == 0


def test_sweep_evicts_expired_and_idle_buckets():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock=clock)
    limiter.check("old", ActionClass.MESSAGE)
    clock.advance(61_000)
    limiter.check("fresh", ActionClass.MESSAGE)

    evicted = limiter.sweep()

    assert evicted == 1
    assert limiter.stats() == {"buckets": 1, "users": 1, "timestamps": 1}


def test_build_limits_keeps_messages_and_applies_overrides():
    settings = Settings(rate_limit_voice_max=7, rate_limit_voice_window_seconds=30)
    limits = build_limits(settings.rate_limit_overrides())

    assert limits[ActionClass.VOICE] == RateLimitConfig(7, 30_000, DEFAULT_LIMITS[ActionClass.VOICE].message)
    assert limits[ActionClass.MESSAGE].max_requests == 10
    assert limits[ActionClass.WALLET].window_ms == 300_000


def test_settings_reject_non_positive_limits():
    with pytest.raises(ValueError):
        Settings(rate_limit_message_max=0)


@pytest.mark.parametrize(
    "ms, expected",
    [
        (0, "0 seconds"),
        (1, "1 second"),
        (1_000, "1 second"),
        (1_001, "2 seconds"),
        (59_000, "59 seconds"),
        (60_000, "1 minute"),
        (61_000, "2 minutes"),
        (300_000, "5 minutes"),
    ],
)
def test_format_wait_time(ms, expected):
    assert format_wait_time(ms) == expected


def test_rate_limited_text_and_key():
    assert rate_limited_text("Slow down.", 30_000) == (
        "⏳ Slow down.\n\nPlease wait 30 seconds before trying again."
    )
    assert limiter_key(Platform.DISCORD, "42") == "discord:42"
    assert limiter_key(Platform.DISCORD, "42") != limiter_key(Platform.TELEGRAM, "42")


async def test_start_and_stop_sweeper():
    limiter = SlidingWindowRateLimiter(clock=FakeClock(), sweep_interval_seconds=0.01)
    limiter.check("u", ActionClass.MESSAGE)

    await limiter.start()
    await asyncio.sleep(0.03)
    await limiter.stop()

    assert limiter._task is None
    assert limiter.stats()["buckets"] == 0
