"""
Reservoir rate limiting for email delivery.

Each provider gets its own reservoir: ``capacity`` slots, topped up by
``refill_amount`` every ``refill_interval`` seconds on a fixed schedule
anchored at creation. The schedule does not depend on when sends arrive,
so a full interval's worth of sends is never released in one clump at a
boundary the way a sliding window does.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

from docflow.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_PROVIDER = "smtp"


class ReservoirLimiter:
    """Token reservoir with a fixed refill schedule."""

    def __init__(
        self,
        capacity: int,
        refill_interval: float,
        refill_amount: Optional[int] = None,
        name: str = "reservoir",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if refill_interval <= 0:
            raise ValueError("refill_interval must be positive")
        self.name = name
        self.capacity = capacity
        self.refill_amount = refill_amount if refill_amount is not None else capacity
        self.refill_interval = refill_interval
        self.clock = clock
        self._sleep = sleep
        self._tokens = capacity
        self._anchor = clock()
        self._lock = asyncio.Lock()
        self.stats = {"acquired": 0, "waited": 0}

    def _refill(self, now: float) -> None:
        periods = int((now - self._anchor) // self.refill_interval)
        if periods > 0:
            self._tokens = min(self.capacity, self._tokens + periods * self.refill_amount)
            self._anchor += periods * self.refill_interval

    @property
    def available(self) -> int:
        self._refill(self.clock())
        return self._tokens

    def try_acquire(self) -> bool:
        """Take a slot if one is free right now."""
        self._refill(self.clock())
        if self._tokens > 0:
            self._tokens -= 1
            self.stats["acquired"] += 1
            return True
        return False

    async def acquire(self) -> None:
        """Wait until a slot is free and take it."""
        waited = False
        while True:
            async with self._lock:
                now = self.clock()
                self._refill(now)
                if self._tokens > 0:
                    self._tokens -= 1
                    self.stats["acquired"] += 1
                    if waited:
                        self.stats["waited"] += 1
                    return
                wait = max(self._anchor + self.refill_interval - now, 0.0)
            if not waited:
                logger.debug("rate_limit_wait", limiter=self.name, wait_seconds=round(wait, 3))
            waited = True
            await self._sleep(wait)

    async def schedule(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` once a slot is available."""
        await self.acquire()
        return await fn()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "capacity": self.capacity,
            "refill_amount": self.refill_amount,
            "refill_interval": self.refill_interval,
            "available": self.available,
            **self.stats,
        }


class ProviderRateLimiters:
    """
    One reservoir per delivery provider plus a process-wide reservoir.

    Unknown providers share the ``smtp`` reservoir.
    """

    def __init__(
        self,
        limits: Mapping[str, Mapping[str, int]],
        global_capacity: Optional[int] = None,
        global_interval_ms: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._limiters: Dict[str, ReservoirLimiter] = {
            name: ReservoirLimiter(
                capacity=limit["capacity"],
                refill_interval=limit["interval_ms"] / 1000,
                name=name,
                clock=clock,
                sleep=sleep,
            )
            for name, limit in limits.items()
        }
        if DEFAULT_PROVIDER not in self._limiters:
            raise ValueError("an smtp rate limit is required")
        self.global_limiter: Optional[ReservoirLimiter] = None
        if global_capacity and global_interval_ms:
            self.global_limiter = ReservoirLimiter(
                capacity=global_capacity,
                refill_interval=global_interval_ms / 1000,
                name="global",
                clock=clock,
                sleep=sleep,
            )

    @classmethod
    def from_settings(cls, settings) -> "ProviderRateLimiters":
        return cls(
            settings.provider_rate_limits,
            global_capacity=settings.email_global_rate_max,
            global_interval_ms=settings.email_global_rate_duration_ms,
        )

    def for_provider(self, provider: Optional[str]) -> ReservoirLimiter:
        key = (provider or DEFAULT_PROVIDER).lower()
        return self._limiters.get(key, self._limiters[DEFAULT_PROVIDER])

    async def schedule(self, provider: Optional[str], fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn`` once both the provider's and the global reservoir allow it.

        The provider slot is taken first, so a send held back by its own
        provider never sits on a global slot another provider could use.
        """
        await self.for_provider(provider).acquire()
        if self.global_limiter is not None:
            await self.global_limiter.acquire()
        return await fn()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "providers": {name: limiter.to_dict() for name, limiter in self._limiters.items()},
            "global": self.global_limiter.to_dict() if self.global_limiter else None,
        }
