"""
harvester.pipeline.status

Staging record status as a closed enum with an explicit transition table.
Every status write in the store goes through ``check_transition``.
"""

from __future__ import annotations

from enum import Enum

from harvester.errors import InvalidTransitionError


class PipelineStatus(str, Enum):
    DISCOVERED = "discovered"
    AWAITING_FETCH = "awaiting_fetch"
    AWAITING_ENRICHMENT = "awaiting_enrichment"
    ENRICHING = "enriching"
    READY_TO_INDEX = "ready_to_index"
    INDEXED = "indexed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL


TERMINAL = frozenset({PipelineStatus.INDEXED, PipelineStatus.FAILED})

# Self-edges are retries below the ceiling: the record goes back to its input state.
ALLOWED_TRANSITIONS: dict[PipelineStatus, frozenset[PipelineStatus]] = {
    PipelineStatus.DISCOVERED: frozenset(
        {PipelineStatus.DISCOVERED, PipelineStatus.AWAITING_FETCH, PipelineStatus.FAILED}
    ),
    PipelineStatus.AWAITING_FETCH: frozenset(
        {
            PipelineStatus.AWAITING_FETCH,
            PipelineStatus.AWAITING_ENRICHMENT,
            PipelineStatus.FAILED,
        }
    ),
    PipelineStatus.AWAITING_ENRICHMENT: frozenset({PipelineStatus.ENRICHING, PipelineStatus.FAILED}),
    PipelineStatus.ENRICHING: frozenset(
        {
            PipelineStatus.READY_TO_INDEX,
            PipelineStatus.AWAITING_ENRICHMENT,
            PipelineStatus.FAILED,
        }
    ),
    PipelineStatus.READY_TO_INDEX: frozenset(
        {PipelineStatus.READY_TO_INDEX, PipelineStatus.INDEXED, PipelineStatus.FAILED}
    ),
    PipelineStatus.INDEXED: frozenset(),
    PipelineStatus.FAILED: frozenset(),
}

# In-progress status -> the input status a stalled or retried record returns to.
RETRY_INPUT: dict[PipelineStatus, PipelineStatus] = {
    PipelineStatus.ENRICHING: PipelineStatus.AWAITING_ENRICHMENT,
}

IN_PROGRESS = frozenset(RETRY_INPUT)

# Queues the orchestrator drains, in stage order.
QUEUE_STATUSES = (
    PipelineStatus.DISCOVERED,
    PipelineStatus.AWAITING_FETCH,
    PipelineStatus.AWAITING_ENRICHMENT,
    PipelineStatus.ENRICHING,
    PipelineStatus.READY_TO_INDEX,
)


def can_transition(current: PipelineStatus | str, target: PipelineStatus | str) -> bool:
    return PipelineStatus(target) in ALLOWED_TRANSITIONS[PipelineStatus(current)]


def check_transition(current: PipelineStatus | str, target: PipelineStatus | str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(PipelineStatus(current).value, PipelineStatus(target).value)
