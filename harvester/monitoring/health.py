"""
harvester.monitoring.health

Operator-facing snapshot of the pipeline: how many records sit in each
status, how long the oldest has been there, why things failed, and how many
sources the circuit breaker is holding back.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from harvester.pipeline.status import PipelineStatus, QUEUE_STATUSES
from harvester.pipeline.store import Store
from harvester.sources.health import is_eligible


@dataclass
class StatusStats:
    count: int = 0
    oldest_age_s: Optional[float] = None
    avg_dwell_s: Optional[float] = None


@dataclass
class HealthSummary:
    generated_at: datetime
    statuses: dict[str, StatusStats] = field(default_factory=dict)
    failed_by_category: dict[str, int] = field(default_factory=dict)
    sources: dict[str, int] = field(default_factory=dict)
    total_events: int = 0

    @property
    def backlog(self) -> int:
        return sum(self.statuses[s.value].count for s in QUEUE_STATUSES if s.value in self.statuses)

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "statuses": {k: asdict(v) for k, v in self.statuses.items()},
            "failed_by_category": dict(self.failed_by_category),
            "sources": dict(self.sources),
            "total_events": self.total_events,
            "backlog": self.backlog,
        }


def health_summary(store: Store, now: datetime) -> HealthSummary:
    counts = store.count_by_status()
    stamps = store.status_timestamps(QUEUE_STATUSES)

    statuses: dict[str, StatusStats] = {}
    for status in PipelineStatus:
        stats = StatusStats(count=counts.get(status, 0))
        ages = [(now - t).total_seconds() for t in stamps.get(status, []) if t is not None]
        if ages:
            stats.oldest_age_s = round(max(ages), 1)
            stats.avg_dwell_s = round(sum(ages) / len(ages), 1)
        statuses[status.value] = stats

    all_sources = store.list_sources()
    source_counts = {
        "total": len(all_sources),
        "enabled": sum(1 for s in all_sources if s.health.enabled),
        "auto_disabled": sum(1 for s in all_sources if s.health.auto_disabled),
        "eligible": sum(1 for s in all_sources if is_eligible(s.health, now)),
    }

    return HealthSummary(
        generated_at=now,
        statuses=statuses,
        failed_by_category=store.failed_by_category(),
        sources=source_counts,
        total_events=store.count_events(),
    )


def format_summary(summary: HealthSummary) -> str:
    lines = [f"Pipeline health at {summary.generated_at.isoformat(timespec='seconds')}"]
    for name, st in summary.statuses.items():
        age = f"oldest {st.oldest_age_s:.0f}s, avg dwell {st.avg_dwell_s:.0f}s" if st.oldest_age_s is not None else ""
        lines.append(f"  {name:<20} {st.count:>6}  {age}".rstrip())
    if summary.failed_by_category:
        lines.append("Failed by category:")
        for cat, n in sorted(summary.failed_by_category.items()):
            lines.append(f"  {cat:<20} {n:>6}")
    src = summary.sources
    lines.append(
        f"Sources: {src.get('total', 0)} total, {src.get('enabled', 0)} enabled, "
        f"{src.get('auto_disabled', 0)} auto-disabled, {src.get('eligible', 0)} eligible"
    )
    lines.append(f"Events: {summary.total_events}")
    return "\n".join(lines)
