from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from codex_keeper.config.models import RateLimitSettings

logger = logging.getLogger(__name__)

# Smallest retry_after ever reported, guards against float rounding to zero.
_MIN_RETRY_AFTER = 1e-3


@dataclass(slots=True)
class TokenBucket:
    tokens: float
    last_refill: float


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: Optional[float] = None


class RateLimiter:
    """Per-client token buckets that refill ``tokens_per_interval`` tokens every ``interval_seconds``."""

    def __init__(
        self,
        *,
        max_tokens: int = 60,
        tokens_per_interval: int = 10,
        interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_tokens < 1 or tokens_per_interval < 1 or interval_seconds <= 0:
            raise ValueError("Rate limiter bounds must be positive")
        self._max_tokens = max_tokens
        self._tokens_per_interval = tokens_per_interval
        self._interval = interval_seconds
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}

        self._gc_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @classmethod
    def from_settings(cls, settings: RateLimitSettings, *, clock: Callable[[], float] = time.monotonic) -> RateLimiter:
        return cls(
            max_tokens=settings.max_tokens,
            tokens_per_interval=settings.tokens_per_interval,
            interval_seconds=settings.interval_seconds,
            clock=clock,
        )

    @property
    def seconds_per_token(self) -> float:
        return self._interval / self._tokens_per_interval

    def check_limit(self, client_id: str) -> RateLimitResult:
        now = self._clock()
        bucket = self._buckets.get(client_id)
        if bucket is None:
            bucket = TokenBucket(tokens=float(self._max_tokens), last_refill=now)
            self._buckets[client_id] = bucket
        else:
            self._refill(bucket, now)

        if bucket.tokens >= 1:
            bucket.tokens -= 1
            return RateLimitResult(allowed=True, remaining=int(bucket.tokens))

        retry_after = self.seconds_per_token - (now - bucket.last_refill)
        return RateLimitResult(allowed=False, remaining=0, retry_after=max(retry_after, _MIN_RETRY_AFTER))

    def get_status(self, client_id: str) -> RateLimitResult:
        bucket = self._buckets.get(client_id)
        if bucket is None:
            return RateLimitResult(allowed=True, remaining=self._max_tokens)
        self._refill(bucket, self._clock())
        return RateLimitResult(allowed=bucket.tokens >= 1, remaining=int(bucket.tokens))

    def reset(self, client_id: str) -> None:
        self._buckets.pop(client_id, None)

    def cleanup(self, max_age_seconds: float) -> int:
        now = self._clock()
        idle = [cid for cid, bucket in self._buckets.items() if now - bucket.last_refill > max_age_seconds]
        for client_id in idle:
            del self._buckets[client_id]
        if idle:
            logger.debug("Idle rate limit buckets removed. count=%s", len(idle))
        return len(idle)

    def start(self, *, interval_seconds: float, max_age_seconds: float) -> None:
        if self._gc_task and not self._gc_task.done():
            return
        self._stop_event.clear()
        self._gc_task = asyncio.create_task(self._gc_loop(interval_seconds, max_age_seconds))

    async def stop(self) -> None:
        if not self._gc_task:
            return
        self._stop_event.set()
        await self._gc_task
        self._gc_task = None

    async def _gc_loop(self, interval_seconds: float, max_age_seconds: float) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
            else:
                break
            try:
                self.cleanup(max_age_seconds)
            except Exception:
                logger.exception("Rate limit bucket cleanup tick failed.")

    def _refill(self, bucket: TokenBucket, now: float) -> None:
        elapsed = now - bucket.last_refill
        tokens_to_add = math.floor(elapsed * self._tokens_per_interval / self._interval)
        if tokens_to_add <= 0:
            return
        bucket.tokens = min(float(self._max_tokens), bucket.tokens + tokens_to_add)
        if bucket.tokens >= self._max_tokens:
            bucket.last_refill = now
        else:
            # Keep the fractional progress toward the next token.
            bucket.last_refill += tokens_to_add * self.seconds_per_token
