"""Adaptive token bucket rate limiter for GroupMe API usage.

This module provides a `RateLimiter` shared by the page fetcher and the
attachment download workers of one run. It implements:

- Token bucket pacing
- Small per-call jitter to avoid thundering herd
- Penalties on HTTP 429 honoring Retry-After
- Gradual recovery when operating healthily

Intended usage:
    limiter = RateLimiter(rpm=60, cap=120, burst=10)
    limiter.acquire()
    # perform API call
    ...
    # on 429:
    limiter.penalize(retry_after_seconds)

Algorithm overview:
    - Token bucket:
        The bucket has capacity = `burst` and a refill rate
        r = target_rpm / 60 tokens per second. To perform a call, we must
        acquire 1 token; if no token is available, we sleep until one is.
        Every sleep gets a small random jitter J ~ U(0.05, 0.15) seconds.
    - Penalty on 429:
        `penalize(duration)` immediately:
            1) sets `next_allowed_after = now + duration`,
            2) drains the bucket and collapses burst to 1,
            3) halves target_rpm, but not below `min_rpm`.
    - Recovery:
        After `recovery_interval` seconds without a penalty, target_rpm grows
        by 10% up to `cap`, and burst widens by 1 up to the configured burst.

Concurrency:
    All bucket state is guarded by one lock. The lock is only held while
    computing how long to wait; callers sleep outside of it.
"""

import logging
import random
import threading
import time
from typing import Callable, Optional, Tuple

from groupme_download.metrics.metrics import RATE_LIMIT_PENALTIES

logger = logging.getLogger(__name__)


class _Bucket:
    """Internal token bucket with adaptive backoff/recovery.

    Args:
        rpm: Initial target requests per minute.
        cap: Maximum requests per minute the limiter may reach via recovery.
        burst: Maximum burst size (token bucket capacity).
        min_rpm: Lower bound of target RPM after penalties.
        now: Current clock reading.

    Attributes:
        target_rpm: Current target RPM (adapts on penalty/recovery).
        cap_rpm: Upper bound for target RPM.
        burst_capacity: Token bucket capacity (burst size).
        recovery_max_burst: Upper bound for burst capacity during recovery.
        tokens: Current available tokens.
        last_refill_ts: Last time tokens were refilled.
        next_allowed_after: Clock reading before which no calls are allowed.
        healthy_since_ts: Timestamp from which we count healthy operation.
    """

    def __init__(self, rpm: float, cap: float, burst: int, min_rpm: float, now: float):
        self.target_rpm = max(1.0, float(rpm))
        self.cap_rpm = max(self.target_rpm, float(cap))
        self.burst_capacity = max(1, int(burst))
        self.recovery_max_burst = self.burst_capacity
        self.min_rpm = min(float(min_rpm), self.target_rpm)
        self.tokens = float(self.burst_capacity)
        self.last_refill_ts = now
        self.next_allowed_after: float = 0.0
        self.healthy_since_ts: float = now

    def refill(self, now: float) -> None:
        """Accumulate tokens at (target_rpm / 60) per second up to the burst capacity."""
        per_sec = self.target_rpm / 60.0
        elapsed = max(0.0, now - self.last_refill_ts)
        added = elapsed * per_sec
        if added > 0:
            self.tokens = min(self.burst_capacity, self.tokens + added)
            self.last_refill_ts = now

    def acquire_one(self, now: float) -> float:
        """Try to acquire a single token.

        Returns:
            Seconds to sleep before a token is available (0.0 if one was consumed).
        """
        self.refill(now)
        if now < self.next_allowed_after:
            return self.next_allowed_after - now
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return 0.0
        per_sec = self.target_rpm / 60.0
        deficit = 1.0 - self.tokens
        return deficit / per_sec

    def penalize(self, duration: float, now: float) -> None:
        """Drain the bucket and pause until `now + duration`, slowing down afterwards."""
        self.healthy_since_ts = now
        new_rpm = max(self.min_rpm, self.target_rpm * 0.5)
        if new_rpm < self.target_rpm:
            logger.info(f"Limiter backoff: rpm {self.target_rpm:.2f} -> {new_rpm:.2f}")
        self.target_rpm = new_rpm
        if self.burst_capacity > 1:
            logger.info(f"Limiter backoff: burst {self.burst_capacity} -> 1")
        self.burst_capacity = 1
        self.tokens = 0.0
        self.last_refill_ts = max(self.last_refill_ts, now + duration)
        self.next_allowed_after = max(self.next_allowed_after, now + duration)

    def maybe_recover(self, now: float, interval: float) -> None:
        """Increase throughput after `interval` seconds without penalties."""
        if now - self.healthy_since_ts < interval:
            return
        increased = min(self.cap_rpm, self.target_rpm * 1.10)
        if increased > self.target_rpm:
            logger.debug(f"Limiter recovery: rpm {self.target_rpm:.2f} -> {increased:.2f}")
            self.target_rpm = increased
        if self.burst_capacity < self.recovery_max_burst:
            new_burst = min(self.recovery_max_burst, self.burst_capacity + 1)
            logger.debug(f"Limiter recovery: burst {self.burst_capacity} -> {new_burst}")
            self.burst_capacity = new_burst
        self.healthy_since_ts = now


class RateLimiter:
    """Thread-safe adaptive token bucket.

    Args:
        rpm: Initial target requests per minute.
        cap: Maximum requests per minute during recovery.
        burst: Token bucket capacity (burst size).
        min_rpm: Floor for the target rpm after penalties.
        recovery_interval: Healthy seconds required before each recovery step.
        clock: Monotonic clock, injectable for tests.
        sleep: Sleep function, injectable for tests and cancellation.
        jitter: Range of random seconds added to every sleep.
    """

    def __init__(
        self,
        rpm: float = 60.0,
        cap: float = 120.0,
        burst: int = 10,
        min_rpm: float = 6.0,
        recovery_interval: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], object] = time.sleep,
        jitter: Tuple[float, float] = (0.05, 0.15),
    ):
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter
        self._recovery_interval = recovery_interval
        self._lock = threading.Lock()
        self._bucket = _Bucket(rpm=rpm, cap=cap, burst=burst, min_rpm=min_rpm, now=clock())

    @property
    def target_rpm(self) -> float:
        with self._lock:
            return self._bucket.target_rpm

    @property
    def tokens(self) -> float:
        with self._lock:
            self._bucket.refill(self._clock())
            return self._bucket.tokens

    def acquire(self) -> None:
        """Block until a request is allowed to proceed."""
        while True:
            with self._lock:
                now = self._clock()
                self._bucket.maybe_recover(now, self._recovery_interval)
                sleep_needed = self._bucket.acquire_one(now)
                cooldown = max(0.0, self._bucket.next_allowed_after - now)
                rpm = self._bucket.target_rpm
            if sleep_needed <= 0:
                return
            jitter = random.uniform(*self._jitter) if self._jitter[1] > 0 else 0.0
            total_sleep = sleep_needed + jitter
            if cooldown > 0:
                logger.debug(f"cooldown: sleeping {total_sleep:.3f}s (cooldown {cooldown:.3f}s, rpm {rpm:.2f})")
            else:
                logger.debug(f"pacing: sleeping {total_sleep:.3f}s (jitter {jitter:.3f}s, rpm {rpm:.2f})")
            self._sleep(total_sleep)

    def penalize(self, duration: Optional[float]) -> None:
        """Apply backpressure after a rate-limit response.

        Passing None or non-positive values defaults to a 1-second penalty.

        Args:
            duration: Seconds during which no token is granted (usually Retry-After).
        """
        if duration is None or duration <= 0:
            duration = 1.0
        RATE_LIMIT_PENALTIES.inc()
        with self._lock:
            self._bucket.penalize(float(duration), self._clock())
        logger.info(f"Rate limited, pausing requests for {duration:.1f}s")
