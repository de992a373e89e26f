"""
harvester.runtime.resilience

Shared resilience utilities: one retry-with-backoff helper used identically by
the fetchers and the enrichment clients, and a process-local rate limiter.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from harvester.errors import is_retryable as default_is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_mode: str = "exp"  # exp | fixed | none
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    jitter: float = 0.25

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def compute_backoff_s(self, attempt: int) -> float:
        """
        attempt: 1..N
        """
        if self.backoff_mode == "none":
            return 0.0
        if self.backoff_mode == "fixed":
            delay = self.base_delay_s
        else:
            delay = self.base_delay_s * (2 ** max(0, attempt - 1))

        delay = min(delay, self.max_delay_s)
        if self.jitter > 0:
            delay = delay * (1.0 + (random.random() * 2 - 1) * self.jitter)  # +- jitter
        return max(0.0, delay)


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool] = default_is_retryable,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "call",
) -> T:
    """
    Run ``fn`` until it returns, raises a non-retryable error, or the policy
    runs out of attempts. The last exception is re-raised unchanged.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as e:
            if attempt >= policy.max_attempts or not is_retryable(e):
                raise
            delay = policy.compute_backoff_s(attempt)
            logger.debug(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                label,
                attempt,
                policy.max_attempts,
                e,
                delay,
            )
            if delay > 0:
                sleep(delay)


class RateLimiter:
    """
    Process-local limiter: minimum spacing between calls plus a one-token
    bucket refilled at ``rps``. Safe to share between worker threads.
    """

    def __init__(self, *, rps: float | None = None, min_delay_s: float | None = None) -> None:
        self.rps = rps
        self.min_delay_s = min_delay_s or 0.0

        self._lock = threading.Lock()
        self._last_call_s: float = 0.0
        self._tokens: float = 1.0
        self._last_refill_s: float = time.monotonic()

    def _refill(self) -> None:
        now = time.monotonic()
        if self.rps and self.rps > 0:
            dt = now - self._last_refill_s
            self._tokens = min(1.0, self._tokens + dt * float(self.rps))
        self._last_refill_s = now

    def wait(self) -> None:
        with self._lock:
            since_last = time.monotonic() - self._last_call_s
            if self.min_delay_s > since_last:
                time.sleep(self.min_delay_s - since_last)

            if self.rps and self.rps > 0:
                while True:
                    self._refill()
                    if self._tokens >= 1.0:
                        self._tokens -= 1.0
                        break
                    time.sleep(0.05)

            self._last_call_s = time.monotonic()
