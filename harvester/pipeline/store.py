"""
harvester.pipeline.store

Relational store: sources, staging records, canonical events, insights.

The store is the single synchronisation point of the pipeline. Every status
change is a conditional UPDATE (``WHERE id = :id AND status = :expected``) and
only counts when it touched a row, so two overlapping runs can never both
advance the same record. Events are written with an upsert keyed on the
content fingerprint.

SQLAlchemy Core keeps one code path for SQLite (local runs, tests) and
PostgreSQL (psycopg2).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    TypeDecorator,
    create_engine,
    func,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine

from harvester.config.schema import FetchStrategy, SourceConfig, SourceHints
from harvester.errors import ErrorCategory
from harvester.extraction.transforms import canonicalize_url
from harvester.extraction.types import EventCandidate
from harvester.sources.health import HealthPolicy, HealthState, Outcome, apply_outcome, is_eligible

from .status import RETRY_INPUT, TERMINAL, PipelineStatus, check_transition

logger = logging.getLogger(__name__)

# Optimistic health writes retry this many times before giving up.
HEALTH_WRITE_ATTEMPTS = 5
MAX_TITLE_CHARS = 1024


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


metadata = MetaData()

sources = Table(
    "sources",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("url", String(2048), nullable=False, unique=True),
    Column("fetch_strategy", String(16), nullable=False, default=FetchStrategy.direct.value),
    Column("hints", JSON, nullable=False, default=dict),
    Column("enabled", Boolean, nullable=False, default=True),
    Column("auto_disabled", Boolean, nullable=False, default=False),
    Column("consecutive_failures", Integer, nullable=False, default=0),
    Column("consecutive_zero_yield", Integer, nullable=False, default=0),
    Column("last_success_at", UTCDateTime),
    Column("next_eligible_at", UTCDateTime),
    Column("last_error", Text),
    Column("total_events_scraped", Integer, nullable=False, default=0),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
)

staging = Table(
    "staging_records",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("source_id", Integer, ForeignKey("sources.id"), nullable=False),
    Column("source_url", String(2048), nullable=False),
    Column("detail_url", String(2048)),
    Column("title", String(MAX_TITLE_CHARS), nullable=False),
    Column("payload", JSON, nullable=False, default=dict),
    Column("raw_html", Text),
    Column("enriched", JSON),
    Column("status", String(32), nullable=False),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("last_error", Text),
    Column("error_category", String(32)),
    Column("processing_started_at", UTCDateTime),
    Column("status_changed_at", UTCDateTime, nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    Index("ix_staging_status_created", "status", "created_at"),
    Index("ix_staging_source_detail", "source_id", "detail_url"),
)

events = Table(
    "events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("fingerprint", String(64), nullable=False, unique=True),
    Column("title", String(1024), nullable=False),
    Column("starts_at", UTCDateTime),
    Column("date_text", String(255)),
    Column("venue", String(1024)),
    Column("latitude", Float),
    Column("longitude", Float),
    Column("category", String(64)),
    Column("image_url", String(2048)),
    Column("description", Text),
    Column("source_id", Integer, ForeignKey("sources.id"), nullable=False),
    Column("source_url", String(2048), nullable=False),
    Column("detail_url", String(2048)),
    Column("embedding", JSON(none_as_null=True)),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
)

insights = Table(
    "scrape_insights",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("source_id", Integer, ForeignKey("sources.id"), nullable=False),
    Column("run_id", String(64)),
    Column("strategy", String(32)),
    Column("candidate_count", Integer, nullable=False, default=0),
    Column("staged_count", Integer, nullable=False, default=0),
    Column("elapsed_ms", Float, nullable=False, default=0.0),
    Column("technology", String(32)),
    Column("http_status", Integer),
    Column("outcome", String(32), nullable=False),
    Column("trace", JSON),
    Column("feed_urls", JSON),
    Column("block_signals", JSON),
    Column("created_at", UTCDateTime, nullable=False),
)


# ---------------------------------------------------------------------
# row types
# ---------------------------------------------------------------------


@dataclass
class SourceRecord:
    id: int
    name: str
    url: str
    fetch_strategy: FetchStrategy
    hints: SourceHints
    health: HealthState
    last_error: Optional[str] = None
    total_events_scraped: int = 0

    @classmethod
    def from_row(cls, row) -> SourceRecord:
        m = row._mapping
        return cls(
            id=m["id"],
            name=m["name"],
            url=m["url"],
            fetch_strategy=FetchStrategy(m["fetch_strategy"]),
            hints=SourceHints.model_validate(m["hints"] or {}),
            health=HealthState(
                enabled=bool(m["enabled"]),
                auto_disabled=bool(m["auto_disabled"]),
                consecutive_failures=m["consecutive_failures"],
                consecutive_zero_yield=m["consecutive_zero_yield"],
                last_success_at=m["last_success_at"],
                next_eligible_at=m["next_eligible_at"],
            ),
            last_error=m["last_error"],
            total_events_scraped=m["total_events_scraped"],
        )


@dataclass
class StagingRecord:
    id: int
    source_id: int
    source_url: str
    detail_url: Optional[str]
    title: str
    status: PipelineStatus
    payload: dict[str, Any] = field(default_factory=dict)
    raw_html: Optional[str] = None
    enriched: Optional[dict[str, Any]] = None
    retry_count: int = 0
    last_error: Optional[str] = None
    error_category: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    status_changed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def candidate(self) -> EventCandidate:
        return EventCandidate.from_dict(self.payload or {"title": self.title})

    @classmethod
    def from_row(cls, row) -> StagingRecord:
        m = row._mapping
        return cls(
            id=m["id"],
            source_id=m["source_id"],
            source_url=m["source_url"],
            detail_url=m["detail_url"],
            title=m["title"],
            status=PipelineStatus(m["status"]),
            payload=m["payload"] or {},
            raw_html=m["raw_html"],
            enriched=m["enriched"],
            retry_count=m["retry_count"],
            last_error=m["last_error"],
            error_category=m["error_category"],
            processing_started_at=m["processing_started_at"],
            status_changed_at=m["status_changed_at"],
            created_at=m["created_at"],
        )


def _health_values(state: HealthState) -> dict[str, Any]:
    return {
        "enabled": state.enabled,
        "auto_disabled": state.auto_disabled,
        "consecutive_failures": state.consecutive_failures,
        "consecutive_zero_yield": state.consecutive_zero_yield,
        "last_success_at": state.last_success_at,
        "next_eligible_at": state.next_eligible_at,
    }


class Store:
    """Repository over the four tables. Thread-safe: one short transaction per call."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, url: str, *, echo: bool = False) -> Store:
        return cls(create_engine(url, echo=echo, pool_pre_ping=True))

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def create_all(self) -> None:
        metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    # -----------------------------------------------------------------
    # sources
    # -----------------------------------------------------------------

    def upsert_source(self, cfg: SourceConfig, now: datetime) -> tuple[int, bool]:
        """Create or update a source keyed on URL. Health counters are never touched."""
        with self.engine.begin() as conn:
            existing = conn.execute(select(sources.c.id).where(sources.c.url == cfg.url)).first()
            if existing is None:
                res = conn.execute(
                    sources.insert().values(
                        name=cfg.name,
                        url=cfg.url,
                        fetch_strategy=cfg.fetch_strategy.value,
                        hints=cfg.hints_dict(),
                        enabled=cfg.enabled,
                        auto_disabled=False,
                        consecutive_failures=0,
                        consecutive_zero_yield=0,
                        total_events_scraped=0,
                        created_at=now,
                        updated_at=now,
                    )
                )
                return int(res.inserted_primary_key[0]), True

            conn.execute(
                sources.update()
                .where(sources.c.id == existing.id)
                .values(
                    name=cfg.name,
                    fetch_strategy=cfg.fetch_strategy.value,
                    hints=cfg.hints_dict(),
                    enabled=cfg.enabled,
                    updated_at=now,
                )
            )
            return int(existing.id), False

    def get_source(self, source_id: int) -> Optional[SourceRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(select(sources).where(sources.c.id == source_id)).first()
        return SourceRecord.from_row(row) if row else None

    def list_sources(self) -> list[SourceRecord]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(sources).order_by(sources.c.id)).all()
        return [SourceRecord.from_row(r) for r in rows]

    def eligible_sources(self, now: datetime, *, limit: int) -> list[SourceRecord]:
        """Sources passing the admission gate, least recently due first."""
        stmt = (
            select(sources)
            .where(sources.c.enabled.is_(True), sources.c.auto_disabled.is_(False))
            .where((sources.c.next_eligible_at.is_(None)) | (sources.c.next_eligible_at <= now))
            .order_by(sources.c.next_eligible_at.is_not(None), sources.c.next_eligible_at, sources.c.id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).all()
        out = [SourceRecord.from_row(r) for r in rows]
        return [s for s in out if is_eligible(s.health, now)][:limit]

    def record_source_outcome(
        self,
        source_id: int,
        outcome: Outcome,
        now: datetime,
        policy: HealthPolicy,
        *,
        error: Optional[str] = None,
    ) -> tuple[HealthState, HealthState]:
        """
        Apply one scrape outcome to a source's breaker state.

        Read, compute, then write conditionally on the counters read; if a
        concurrent run got there first, re-read and recompute.
        Returns (before, after).
        """
        for _ in range(HEALTH_WRITE_ATTEMPTS):
            current = self.get_source(source_id)
            if current is None:
                raise KeyError(f"unknown source {source_id}")
            before = current.health
            after = apply_outcome(before, outcome, now, policy)
            values = _health_values(after)
            values["updated_at"] = now
            if outcome.is_failure:
                values["last_error"] = error
            elif outcome == Outcome.SUCCESS:
                values["last_error"] = None

            stmt = (
                sources.update()
                .where(
                    sources.c.id == source_id,
                    sources.c.consecutive_failures == before.consecutive_failures,
                    sources.c.consecutive_zero_yield == before.consecutive_zero_yield,
                    sources.c.auto_disabled == before.auto_disabled,
                )
                .values(**values)
            )
            with self.engine.begin() as conn:
                if conn.execute(stmt).rowcount == 1:
                    return before, after
            logger.debug("Concurrent health update on source %s; retrying", source_id)
        raise RuntimeError(f"could not update health of source {source_id}: too much contention")

    def reset_source(self, source_id: int, now: datetime) -> bool:
        with self.engine.begin() as conn:
            res = conn.execute(
                sources.update()
                .where(sources.c.id == source_id)
                .values(
                    enabled=True,
                    auto_disabled=False,
                    consecutive_failures=0,
                    consecutive_zero_yield=0,
                    next_eligible_at=None,
                    last_error=None,
                    updated_at=now,
                )
            )
        return res.rowcount == 1

    def merge_source_hints(self, source_id: int, updates: dict[str, Any], now: datetime) -> None:
        with self.engine.begin() as conn:
            row = conn.execute(select(sources.c.hints).where(sources.c.id == source_id)).first()
            if row is None:
                return
            hints = dict(row.hints or {})
            hints.update(updates)
            conn.execute(
                sources.update().where(sources.c.id == source_id).values(hints=hints, updated_at=now)
            )

    def increment_events_scraped(self, source_id: int, n: int = 1) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                sources.update()
                .where(sources.c.id == source_id)
                .values(total_events_scraped=sources.c.total_events_scraped + n)
            )

    # -----------------------------------------------------------------
    # staging records
    # -----------------------------------------------------------------

    def stage_candidate(
        self, source_id: int, source_url: str, candidate: EventCandidate, now: datetime
    ) -> Optional[int]:
        """
        Insert a candidate as ``discovered``. Returns None when the same
        (source, detail URL, title) is already moving through the pipeline.
        The detail URL is compared in canonical form, so tracking-parameter
        variants of one page stage once.
        """
        detail = canonicalize_url(candidate.detail_url) if candidate.detail_url else None
        title = candidate.title[:MAX_TITLE_CHARS]
        candidate = replace(candidate, title=title, detail_url=detail)
        detail_clause = staging.c.detail_url.is_(None) if detail is None else staging.c.detail_url == detail
        with self.engine.begin() as conn:
            dup = conn.execute(
                select(staging.c.id)
                .where(
                    staging.c.source_id == source_id,
                    detail_clause,
                    staging.c.title == title,
                    staging.c.status.not_in([s.value for s in TERMINAL]),
                )
                .limit(1)
            ).first()
            if dup is not None:
                return None
            res = conn.execute(
                staging.insert().values(
                    source_id=source_id,
                    source_url=source_url,
                    detail_url=detail,
                    title=title,
                    payload=candidate.to_dict(),
                    status=PipelineStatus.DISCOVERED.value,
                    retry_count=0,
                    status_changed_at=now,
                    created_at=now,
                    updated_at=now,
                )
            )
            return int(res.inserted_primary_key[0])

    def get_record(self, record_id: int) -> Optional[StagingRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(select(staging).where(staging.c.id == record_id)).first()
        return StagingRecord.from_row(row) if row else None

    def fetch_batch(self, status: PipelineStatus, limit: int) -> list[StagingRecord]:
        """Oldest-first batch of records in ``status``."""
        stmt = (
            select(staging)
            .where(staging.c.status == PipelineStatus(status).value)
            .order_by(staging.c.created_at, staging.c.id)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            return [StagingRecord.from_row(r) for r in conn.execute(stmt).all()]

    def transition(
        self,
        record_id: int,
        expected: PipelineStatus,
        target: PipelineStatus,
        now: datetime,
        **values: Any,
    ) -> bool:
        """
        Move a record from ``expected`` to ``target`` iff it is still in
        ``expected``. False means another worker owns it now.
        """
        check_transition(expected, target)
        values.setdefault("updated_at", now)
        if target != expected:
            values.setdefault("status_changed_at", now)
        if target == PipelineStatus.ENRICHING:
            values.setdefault("processing_started_at", now)
        elif PipelineStatus(expected) == PipelineStatus.ENRICHING:
            values.setdefault("processing_started_at", None)

        stmt = (
            staging.update()
            .where(staging.c.id == record_id, staging.c.status == PipelineStatus(expected).value)
            .values(status=PipelineStatus(target).value, **values)
        )
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def claim(self, record_id: int, expected: PipelineStatus, target: PipelineStatus, now: datetime) -> bool:
        return self.transition(record_id, expected, target, now)

    def record_failure(
        self,
        record: StagingRecord,
        expected: PipelineStatus,
        error: str,
        category: ErrorCategory,
        now: datetime,
        *,
        max_retries: int,
        retryable: bool = True,
    ) -> Optional[PipelineStatus]:
        """
        Count one failed attempt. Below the ceiling the record returns to its
        input state; at the ceiling (or for non-retryable errors) it fails.
        Returns the status written, or None if the record moved underneath us.
        """
        retry_count = record.retry_count + 1
        if retryable and retry_count < max_retries:
            target = RETRY_INPUT.get(PipelineStatus(expected), PipelineStatus(expected))
        else:
            target = PipelineStatus.FAILED
        ok = self.transition(
            record.id,
            expected,
            target,
            now,
            retry_count=retry_count,
            last_error=(error or "")[:4000],
            error_category=ErrorCategory(category).value,
        )
        return target if ok else None

    def stale_records(self, status: PipelineStatus, cutoff: datetime) -> list[StagingRecord]:
        stmt = (
            select(staging)
            .where(
                staging.c.status == PipelineStatus(status).value,
                staging.c.processing_started_at.is_not(None),
                staging.c.processing_started_at < cutoff,
            )
            .order_by(staging.c.processing_started_at)
        )
        with self.engine.connect() as conn:
            return [StagingRecord.from_row(r) for r in conn.execute(stmt).all()]

    def reset_stale(
        self, record_id: int, status: PipelineStatus, target: PipelineStatus, cutoff: datetime, now: datetime
    ) -> bool:
        """Conditional on the record still being stale, so a late finisher wins."""
        check_transition(status, target)
        stmt = (
            staging.update()
            .where(
                staging.c.id == record_id,
                staging.c.status == PipelineStatus(status).value,
                staging.c.processing_started_at < cutoff,
            )
            .values(
                status=PipelineStatus(target).value,
                processing_started_at=None,
                status_changed_at=now,
                updated_at=now,
                last_error="reset by staleness recovery",
            )
        )
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def count_by_status(self) -> dict[PipelineStatus, int]:
        stmt = select(staging.c.status, func.count()).group_by(staging.c.status)
        counts = {s: 0 for s in PipelineStatus}
        with self.engine.connect() as conn:
            for status, n in conn.execute(stmt).all():
                counts[PipelineStatus(status)] = int(n)
        return counts

    def status_timestamps(self, statuses: Iterable[PipelineStatus]) -> dict[PipelineStatus, list[datetime]]:
        wanted = [PipelineStatus(s).value for s in statuses]
        stmt = select(staging.c.status, staging.c.status_changed_at).where(staging.c.status.in_(wanted))
        out: dict[PipelineStatus, list[datetime]] = {PipelineStatus(s): [] for s in wanted}
        with self.engine.connect() as conn:
            for status, changed in conn.execute(stmt).all():
                out[PipelineStatus(status)].append(changed)
        return out

    def failed_by_category(self) -> dict[str, int]:
        stmt = (
            select(staging.c.error_category, func.count())
            .where(staging.c.status == PipelineStatus.FAILED.value)
            .group_by(staging.c.error_category)
        )
        with self.engine.connect() as conn:
            return {(cat or "unknown"): int(n) for cat, n in conn.execute(stmt).all()}

    def delete_finished_before(self, cutoff: datetime) -> int:
        stmt = staging.delete().where(
            staging.c.status.in_([s.value for s in TERMINAL]),
            staging.c.updated_at < cutoff,
        )
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount

    # -----------------------------------------------------------------
    # events
    # -----------------------------------------------------------------

    def _insert(self, table: Table):
        if self.dialect == "postgresql":
            return postgresql.insert(table)
        if self.dialect == "sqlite":
            return sqlite.insert(table)
        raise NotImplementedError(f"upsert not supported on {self.dialect}")

    def upsert_event(self, values: dict[str, Any], now: datetime) -> bool:
        """
        Insert or refresh the event with ``values["fingerprint"]``.
        Returns True when a new row was created.
        """
        fingerprint = values["fingerprint"]
        row = {**values, "created_at": now, "updated_at": now}
        stmt = self._insert(events).values(**row)
        refreshed = {
            # Keep what we had when the new scrape is missing a field.
            c: func.coalesce(stmt.excluded[c], events.c[c])
            for c in (
                "image_url",
                "description",
                "latitude",
                "longitude",
                "category",
                "detail_url",
                "embedding",
                "starts_at",
            )
        }
        refreshed["updated_at"] = stmt.excluded.updated_at
        stmt = stmt.on_conflict_do_update(index_elements=[events.c.fingerprint], set_=refreshed)

        with self.engine.begin() as conn:
            existed = (
                conn.execute(select(events.c.id).where(events.c.fingerprint == fingerprint)).first()
                is not None
            )
            conn.execute(stmt)
        return not existed

    def count_events(self) -> int:
        with self.engine.connect() as conn:
            return int(conn.execute(select(func.count()).select_from(events)).scalar_one())

    def get_event(self, fingerprint: str) -> Optional[dict[str, Any]]:
        with self.engine.connect() as conn:
            row = conn.execute(select(events).where(events.c.fingerprint == fingerprint)).first()
        return dict(row._mapping) if row else None

    # -----------------------------------------------------------------
    # insights (append-only)
    # -----------------------------------------------------------------

    def add_insight(self, now: datetime, **values: Any) -> int:
        with self.engine.begin() as conn:
            res = conn.execute(insights.insert().values(created_at=now, **values))
        return int(res.inserted_primary_key[0])

    def list_insights(self, source_id: Optional[int] = None) -> list[dict[str, Any]]:
        stmt = select(insights).order_by(insights.c.id)
        if source_id is not None:
            stmt = stmt.where(insights.c.source_id == source_id)
        with self.engine.connect() as conn:
            return [dict(r._mapping) for r in conn.execute(stmt).all()]
