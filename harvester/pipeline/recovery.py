"""
harvester.pipeline.recovery

Maintenance operations: staleness recovery and cleanup.

A worker that dies between claiming a record and finishing it leaves the
record in an in-progress status that no stage reads. ``recover_stale`` puts
such records back into their input status once ``processing_started_at`` is
older than the stall threshold. It is idempotent: with nothing stale it does
nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from harvester.monitoring.events import RECORDS_RECOVERED, emit_event

from .status import RETRY_INPUT
from .store import Store

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    reset: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.reset.values())

    def to_dict(self) -> dict:
        return {"reset": dict(self.reset), "total": self.total}


def recover_stale(store: Store, now: datetime, *, stall_threshold_s: float) -> RecoveryReport:
    """
    Reset records whose claim is strictly older than ``stall_threshold_s``.
    A record claimed exactly at the threshold is left alone.
    """
    cutoff = now - timedelta(seconds=stall_threshold_s)
    report = RecoveryReport()

    for in_progress, input_status in RETRY_INPUT.items():
        n = 0
        for record in store.stale_records(in_progress, cutoff):
            if store.reset_stale(record.id, in_progress, input_status, cutoff, now):
                n += 1
                logger.warning(
                    "Record %s stuck in %s since %s; reset to %s",
                    record.id,
                    in_progress.value,
                    record.processing_started_at,
                    input_status.value,
                )
        report.reset[in_progress.value] = n

    if report.total:
        emit_event(logger, RECORDS_RECOVERED, report.to_dict(), level="warning")
    return report


def cleanup(store: Store, now: datetime, *, older_than_days: int) -> int:
    """Hard-delete finished (indexed / failed) staging rows older than the cutoff."""
    if older_than_days < 0:
        raise ValueError("older_than_days must be >= 0")
    deleted = store.delete_finished_before(now - timedelta(days=older_than_days))
    logger.info(
        "Deleted %d finished staging record(s) older than %d day(s)", deleted, older_than_days
    )
    return deleted


def reset_source(store: Store, source_id: int, now: datetime) -> bool:
    """Operator action: close a source's circuit breaker and make it due now."""
    ok = store.reset_source(source_id, now)
    if ok:
        logger.info("Source %s reset", source_id)
    else:
        logger.warning("Source %s not found", source_id)
    return ok


__all__ = ["RecoveryReport", "cleanup", "recover_stale", "reset_source"]
