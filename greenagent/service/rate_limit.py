from __future__ import annotations

import asyncio
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Mapping, Optional, Tuple

from greenagent.config import ActionClass
from greenagent.logging import get_logger
from greenagent.storage.models import Platform
from greenagent.storage.redis_cache import RedisCache

logger = get_logger(__name__)

Clock = Callable[[], int]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_ms: int
    message: str


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in_ms: int
    limit: int


@dataclass(frozen=True)
class RateLimitStatus:
    remaining: int
    limit: int


DEFAULT_LIMITS: Dict[ActionClass, RateLimitConfig] = {
    ActionClass.MESSAGE: RateLimitConfig(
        10, 60_000, "You're sending messages too quickly. Please wait a moment."
    ),
    ActionClass.COMMAND: RateLimitConfig(20, 60_000, "Too many commands. Please slow down."),
    ActionClass.SUBMISSION: RateLimitConfig(
        5,
        5 * 60_000,
        "You've submitted too many works recently. Please wait before submitting again.",
    ),
    ActionClass.VOICE: RateLimitConfig(
        3,
        60_000,
        "Voice processing is limited. Please wait before sending another voice message.",
    ),
    # Operators review many submissions; keep this well above the submission limit
    ActionClass.APPROVAL: RateLimitConfig(30, 60_000, "Too many approval actions. Please wait."),
    ActionClass.WALLET: RateLimitConfig(5, 5 * 60_000, "Too many wallet operations. Please wait."),
}


def build_limits(
    overrides: Optional[Mapping[ActionClass, Tuple[int, int]]] = None,
) -> Dict[ActionClass, RateLimitConfig]:
    """Merge ``{action: (max_requests, window_ms)}`` overrides onto the defaults."""
    limits = dict(DEFAULT_LIMITS)
    for action, (max_requests, window_ms) in (overrides or {}).items():
        base = limits[ActionClass(action)]
        limits[ActionClass(action)] = RateLimitConfig(max_requests, window_ms, base.message)
    return limits


def limiter_key(platform: Platform, platform_id: str) -> str:
    """Bucket owner id; scoped by platform so ids from different networks never collide."""
    return f"{Platform(platform).value}:{platform_id}"


def format_wait_time(ms: int) -> str:
    seconds = math.ceil(max(0, ms) / 1000)
    if seconds < 60:
        return f"{seconds} second{'' if seconds == 1 else 's'}"
    minutes = math.ceil(seconds / 60)
    return f"{minutes} minute{'' if minutes == 1 else 's'}"


def rate_limited_text(message: str, reset_in_ms: int) -> str:
    return f"⏳ {message}\n\nPlease wait {format_wait_time(reset_in_ms)} before trying again."


@dataclass
class _Bucket:
    timestamps: Deque[int] = field(default_factory=deque)
    last_access: int = 0


class SlidingWindowRateLimiter:
    """Per-(user, action class) sliding window limiter kept in process memory.

    ``check`` consumes a slot when allowed; ``peek`` only reads. A background
    sweeper started with :meth:`start` drops buckets that have gone idle.
    """

    def __init__(
        self,
        limits: Optional[Mapping[ActionClass, RateLimitConfig]] = None,
        *,
        clock: Optional[Clock] = None,
        sweep_interval_seconds: float = 60.0,
    ) -> None:
        self.limits: Dict[ActionClass, RateLimitConfig] = dict(limits or DEFAULT_LIMITS)
        self._clock = clock or _now_ms
        self._buckets: Dict[Tuple[str, ActionClass], _Bucket] = {}
        self._lock = threading.Lock()
        self.sweep_interval_seconds = sweep_interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def config_for(self, action: ActionClass) -> RateLimitConfig:
        return self.limits[ActionClass(action)]

    def check(
        self,
        user_id: str,
        action: ActionClass,
        override: Optional[RateLimitConfig] = None,
    ) -> RateLimitResult:
        config = override or self.config_for(action)
        now = self._clock()
        cutoff = now - config.window_ms
        key = (user_id, ActionClass(action))
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = _Bucket()
            bucket.last_access = now
            while bucket.timestamps and bucket.timestamps[0] <= cutoff:
                bucket.timestamps.popleft()
            if len(bucket.timestamps) >= config.max_requests:
                oldest = bucket.timestamps[0] if bucket.timestamps else now
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_in_ms=max(0, oldest + config.window_ms - now),
                    limit=config.max_requests,
                )
            bucket.timestamps.append(now)
            oldest = bucket.timestamps[0]
            return RateLimitResult(
                allowed=True,
                remaining=config.max_requests - len(bucket.timestamps),
                reset_in_ms=max(0, oldest + config.window_ms - now),
                limit=config.max_requests,
            )

    def peek(self, user_id: str, action: ActionClass) -> RateLimitStatus:
        config = self.config_for(action)
        cutoff = self._clock() - config.window_ms
        with self._lock:
            bucket = self._buckets.get((user_id, ActionClass(action)))
            count = sum(1 for ts in bucket.timestamps if ts > cutoff) if bucket else 0
        return RateLimitStatus(
            remaining=max(0, config.max_requests - count), limit=config.max_requests
        )

    def reset(self, user_id: str, action: ActionClass) -> None:
        with self._lock:
            self._buckets.pop((user_id, ActionClass(action)), None)

    def reset_all(self, user_id: str) -> None:
        with self._lock:
            for key in [k for k in self._buckets if k[0] == user_id]:
                del self._buckets[key]

    def sweep(self) -> int:
        """Drop expired timestamps and empty or abandoned buckets; return evicted count."""
        now = self._clock()
        longest_window = max((c.window_ms for c in self.limits.values()), default=0)
        idle_cutoff = now - 2 * longest_window
        evicted = 0
        with self._lock:
            for key in list(self._buckets):
                bucket = self._buckets[key]
                cutoff = now - self.config_for(key[1]).window_ms
                while bucket.timestamps and bucket.timestamps[0] <= cutoff:
                    bucket.timestamps.popleft()
                if not bucket.timestamps or bucket.last_access <= idle_cutoff:
                    del self._buckets[key]
                    evicted += 1
        if evicted:
            logger.debug("rate_limit_sweep", evicted=evicted)
        return evicted

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "buckets": len(self._buckets),
                "users": len({k[0] for k in self._buckets}),
                "timestamps": sum(len(b.timestamps) for b in self._buckets.values()),
            }

    async def start(self) -> None:
        """Start the periodic sweeper."""
        if self._running:
            logger.warning("rate_limit_sweeper_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("rate_limit_sweeper_started", interval=self.sweep_interval_seconds)

    async def stop(self) -> None:
        """Stop the sweeper and release all buckets."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        with self._lock:
            self._buckets.clear()
        logger.info("rate_limit_sweeper_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as exc:
                logger.error("rate_limit_sweep_failed", error=str(exc))


class RedisRateLimiter:
    """Same contract as :class:`SlidingWindowRateLimiter`, shared through Redis."""

    def __init__(
        self,
        cache: RedisCache,
        limits: Optional[Mapping[ActionClass, RateLimitConfig]] = None,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.cache = cache
        self.limits: Dict[ActionClass, RateLimitConfig] = dict(limits or DEFAULT_LIMITS)
        self._clock = clock or _now_ms

    def config_for(self, action: ActionClass) -> RateLimitConfig:
        return self.limits[ActionClass(action)]

    @staticmethod
    def _key(user_id: str, action: ActionClass) -> str:
        return f"{user_id}:{ActionClass(action).value}"

    async def check(
        self,
        user_id: str,
        action: ActionClass,
        override: Optional[RateLimitConfig] = None,
    ) -> RateLimitResult:
        config = override or self.config_for(action)
        now = self._clock()
        allowed, count, oldest = await self.cache.sliding_window_check(
            self._key(user_id, action), config.max_requests, config.window_ms, now
        )
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, config.max_requests - count) if allowed else 0,
            reset_in_ms=max(0, oldest + config.window_ms - now),
            limit=config.max_requests,
        )

    async def peek(self, user_id: str, action: ActionClass) -> RateLimitStatus:
        config = self.config_for(action)
        count = await self.cache.sliding_window_count(
            self._key(user_id, action), config.window_ms, self._clock()
        )
        return RateLimitStatus(
            remaining=max(0, config.max_requests - count), limit=config.max_requests
        )

    async def reset(self, user_id: str, action: ActionClass) -> None:
        await self.cache.sliding_window_reset(self._key(user_id, action))

    async def reset_all(self, user_id: str) -> None:
        await self.cache.sliding_window_reset(
            *(self._key(user_id, action) for action in ActionClass)
        )

    async def start(self) -> None:
        # Redis expires keys itself
        return None

    async def stop(self) -> None:
        await self.cache.close()
