"""
harvester.sources.health

Circuit breaker + backoff scheduler for sources, as pure transitions.

``apply_outcome(state, outcome, now, policy)`` takes the prior counters and
the result of one scrape attempt and returns the next state. Nothing here
touches the store; the caller persists the new state with a conditional
update so concurrent runs cannot lose increments.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


class Outcome(str, Enum):
    SUCCESS = "success"  # fetched, >= 1 candidate staged
    ZERO_YIELD = "zero_yield"  # fetched, nothing usable
    HTTP_ERROR = "http_error"  # server answered non-2xx
    TRANSPORT_ERROR = "transport_error"  # DNS / timeout / reset

    @property
    def is_failure(self) -> bool:
        return self in (Outcome.HTTP_ERROR, Outcome.TRANSPORT_ERROR)


@dataclass(frozen=True)
class HealthPolicy:
    failure_threshold: int = 3
    base_interval_s: float = 6 * 3600.0
    failure_backoff_s: float = 3600.0
    max_backoff_s: float = 7 * 24 * 3600.0

    @classmethod
    def from_settings(cls, settings) -> HealthPolicy:
        return cls(
            failure_threshold=settings.FAILURE_THRESHOLD,
            base_interval_s=settings.BASE_INTERVAL_S,
            failure_backoff_s=settings.FAILURE_BACKOFF_S,
            max_backoff_s=settings.MAX_BACKOFF_S,
        )

    def zero_yield_delay_s(self, consecutive_zero_yield: int) -> float:
        # cap the exponent so huge counters cannot overflow
        return min(self.base_interval_s * 2 ** min(consecutive_zero_yield, 32), self.max_backoff_s)

    def failure_delay_s(self, consecutive_failures: int) -> float:
        exp = max(0, min(consecutive_failures - 1, 32))
        return min(self.failure_backoff_s * 2**exp, self.max_backoff_s)


@dataclass(frozen=True)
class HealthState:
    enabled: bool = True
    auto_disabled: bool = False
    consecutive_failures: int = 0
    consecutive_zero_yield: int = 0
    last_success_at: Optional[datetime] = None
    next_eligible_at: Optional[datetime] = None


def apply_outcome(
    state: HealthState,
    outcome: Outcome,
    now: datetime,
    policy: HealthPolicy = HealthPolicy(),
) -> HealthState:
    outcome = Outcome(outcome)

    if outcome == Outcome.SUCCESS:
        return replace(
            state,
            consecutive_failures=0,
            consecutive_zero_yield=0,
            last_success_at=now,
            next_eligible_at=now + timedelta(seconds=policy.base_interval_s),
        )

    if outcome == Outcome.ZERO_YIELD:
        zero_yield = state.consecutive_zero_yield + 1
        return replace(
            state,
            consecutive_zero_yield=zero_yield,
            next_eligible_at=now + timedelta(seconds=policy.zero_yield_delay_s(zero_yield)),
        )

    failures = state.consecutive_failures + 1
    return replace(
        state,
        consecutive_failures=failures,
        auto_disabled=state.auto_disabled or failures >= policy.failure_threshold,
        next_eligible_at=now + timedelta(seconds=policy.failure_delay_s(failures)),
    )


def is_eligible(state: HealthState, now: datetime) -> bool:
    """The only admission gate in front of a scrape."""
    if not state.enabled or state.auto_disabled:
        return False
    return state.next_eligible_at is None or now >= state.next_eligible_at


def manual_reset(state: HealthState) -> HealthState:
    """Operator reset: close the breaker and make the source due immediately."""
    return replace(
        state,
        enabled=True,
        auto_disabled=False,
        consecutive_failures=0,
        consecutive_zero_yield=0,
        next_eligible_at=None,
    )
