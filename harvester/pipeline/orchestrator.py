"""
harvester.pipeline.orchestrator

Drives records through the stages in bounded cycles.

Each cycle: discovery (first cycle, or when the discovered backlog is low),
promotion, one fetch batch, one enrich batch followed by the inter-batch
delay that keeps the geocoder under its rate limit, one index batch. The run
stops when every queue is empty or after ``max_cycles``. A running cycle
always finishes its batches before the stop condition is checked.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from harvester.config.settings import Settings
from harvester.enrichment.embeddings import build_embedder
from harvester.enrichment.geocoding import build_geocoder
from harvester.fetching.factory import FetcherPool
from harvester.monitoring.events import CYCLE_STARTED, RUN_FINISHED, emit_event
from harvester.monitoring.logging import with_context
from harvester.monitoring.metrics import MetricsRegistry

from .recovery import recover_stale
from .status import PipelineStatus
from .store import Store
from .workers import DiscoveryWorker, EnrichWorker, FetchWorker, IndexWorker, WorkerContext

logger = logging.getLogger(__name__)

# Statuses that must be empty for a run to count as drained. ENRICHING is
# left out: only staleness recovery moves a record that is stuck there.
DRAIN_STATUSES = (
    PipelineStatus.DISCOVERED,
    PipelineStatus.AWAITING_FETCH,
    PipelineStatus.AWAITING_ENRICHMENT,
    PipelineStatus.READY_TO_INDEX,
)


def make_run_id() -> str:
    # readable + unique: 20260131_235959_ab12cd
    ts = time.strftime("%Y%m%d_%H%M%S", time.gmtime())
    return f"{ts}_{uuid.uuid4().hex[:6]}"


def build_context(
    settings: Settings,
    *,
    store: Optional[Store] = None,
    run_id: Optional[str] = None,
) -> WorkerContext:
    """Wire the real collaborators from settings."""
    return WorkerContext(
        store=store or Store.from_url(settings.DATABASE_URL),
        settings=settings,
        fetchers=FetcherPool(settings),
        geocoder=build_geocoder(settings),
        embedder=build_embedder(settings),
        metrics=MetricsRegistry(),
        run_id=run_id or make_run_id(),
    )


@dataclass
class CycleReport:
    cycle: int
    discovery: Optional[dict[str, Any]] = None
    batches: list[dict[str, Any]] = field(default_factory=list)
    queue_depths: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle": self.cycle,
            "discovery": self.discovery,
            "batches": list(self.batches),
            "queue_depths": dict(self.queue_depths),
        }


@dataclass
class RunReport:
    run_id: Optional[str]
    started_at: datetime
    finished_at: Optional[datetime] = None
    cycles: list[CycleReport] = field(default_factory=list)
    stop_reason: Optional[str] = None
    recovered: int = 0
    metrics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "cycles": [c.to_dict() for c in self.cycles],
            "stop_reason": self.stop_reason,
            "recovered": self.recovered,
            "metrics": self.metrics,
        }


class Orchestrator:
    def __init__(self, ctx: WorkerContext, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self.ctx = ctx
        self.sleep = sleep
        self.log = with_context(logger, run_id=ctx.run_id, stage="orchestrator")
        self.discovery = DiscoveryWorker(ctx)
        self.fetch = FetchWorker(ctx)
        self.enrich = EnrichWorker(ctx)
        self.index = IndexWorker(ctx)

    def queue_depths(self) -> dict[PipelineStatus, int]:
        depths = self.ctx.store.count_by_status()
        for status, n in depths.items():
            self.ctx.metrics.set_gauge("queue.depth", n, labels={"status": status.value})
        return depths

    def _should_discover(self, cycle: int, depths: dict[PipelineStatus, int]) -> bool:
        if cycle == 1:
            return True
        return depths.get(PipelineStatus.DISCOVERED, 0) < self.ctx.settings.DISCOVERY_BACKLOG_THRESHOLD

    def run_cycle(self, cycle: int, *, discovery: bool = True) -> CycleReport:
        settings = self.ctx.settings
        report = CycleReport(cycle=cycle)
        depths = self.queue_depths()
        emit_event(self.log, CYCLE_STARTED, {"cycle": cycle, "depths": {s.value: n for s, n in depths.items()}})

        if discovery and self._should_discover(cycle, depths):
            report.discovery = self.discovery.scrape().to_dict()

        report.batches.append(self.discovery.run_batch().to_dict())
        report.batches.append(self.fetch.run_batch().to_dict())

        enrich = self.enrich.run_batch()
        report.batches.append(enrich.to_dict())
        if enrich.claimed and settings.ENRICH_DELAY_S > 0:
            self.sleep(settings.ENRICH_DELAY_S)

        report.batches.append(self.index.run_batch().to_dict())

        report.queue_depths = {s.value: n for s, n in self.queue_depths().items()}
        return report

    def run(
        self,
        *,
        max_cycles: Optional[int] = None,
        discovery: bool = True,
        recover_first: bool = True,
    ) -> RunReport:
        settings = self.ctx.settings
        max_cycles = max_cycles or settings.MAX_CYCLES
        report = RunReport(run_id=self.ctx.run_id, started_at=self.ctx.clock())

        if recover_first:
            report.recovered = recover_stale(
                self.ctx.store, self.ctx.clock(), stall_threshold_s=settings.STALL_THRESHOLD_S
            ).total

        for cycle in range(1, max_cycles + 1):
            with self.ctx.metrics.time("cycle_s"):
                cycle_report = self.run_cycle(cycle, discovery=discovery)
            report.cycles.append(cycle_report)

            if all(cycle_report.queue_depths.get(s.value, 0) == 0 for s in DRAIN_STATUSES):
                report.stop_reason = "drained"
                break
        else:
            report.stop_reason = "max_cycles"

        report.finished_at = self.ctx.clock()
        report.metrics = self.ctx.metrics.as_dict()
        emit_event(
            self.log,
            RUN_FINISHED,
            {"cycles": len(report.cycles), "stop_reason": report.stop_reason, "recovered": report.recovered},
        )
        return report
