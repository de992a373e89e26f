"""
harvester.pipeline.workers

Stage workers. Each one owns the arrows out of its input status and nothing
else:

    DiscoveryWorker  sources -> discovered, discovered -> awaiting_fetch
    FetchWorker      awaiting_fetch -> awaiting_enrichment
    EnrichWorker     awaiting_enrichment -> enriching -> ready_to_index
    IndexWorker      ready_to_index -> indexed

A worker reads a bounded batch, processes records on a small thread pool and
writes every result as a conditional transition. A record that raises is
isolated: the error is counted against the record's own retry budget and the
rest of the batch carries on.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, TypeVar

from harvester.config.settings import Settings
from harvester.enrichment.embeddings import Embedder, NullEmbedder, embedding_text
from harvester.enrichment.geocoding import Geocoder, NullGeocoder
from harvester.errors import (
    ErrorCategory,
    HarvestError,
    HttpStatusError,
    RecordValidationError,
    TransportError,
    categorize,
)
from harvester.extraction import EventCandidate, extract, read_feed
from harvester.extraction.feeds import MAX_FEEDS_PER_PAGE
from harvester.fetching.factory import FetcherPool, fetcher_for_source
from harvester.monitoring.events import SOURCE_AUTO_DISABLED, SOURCE_SCRAPED, STAGE_BATCH_DONE, emit_event
from harvester.monitoring.logging import with_context
from harvester.monitoring.metrics import MetricsRegistry
from harvester.sources.health import HealthPolicy, Outcome, is_eligible

from .dedupe import event_fingerprint
from .normalize import infer_category, normalize_title, normalize_venue, parse_event_datetime
from .status import PipelineStatus
from .store import SourceRecord, StagingRecord, Store

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

Clock = Callable[[], datetime]

MAX_RAW_HTML_CHARS = 2_000_000
MIN_TITLE_LEN = 3

# Link texts that DOM heuristics sometimes mistake for titles.
JUNK_TITLES = frozenset(
    {
        "read more",
        "more info",
        "meer info",
        "lees meer",
        "mehr erfahren",
        "weiterlesen",
        "tickets",
        "agenda",
        "details",
        "bekijk",
        "view all",
    }
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WorkerContext:
    """Everything a worker needs; built once per run."""

    store: Store
    settings: Settings
    fetchers: FetcherPool
    geocoder: Geocoder = field(default_factory=NullGeocoder)
    embedder: Embedder = field(default_factory=NullEmbedder)
    metrics: MetricsRegistry = field(default_factory=MetricsRegistry)
    clock: Clock = utcnow
    run_id: Optional[str] = None

    @property
    def health_policy(self) -> HealthPolicy:
        return HealthPolicy.from_settings(self.settings)


@dataclass
class BatchResult:
    stage: str
    claimed: int = 0
    advanced: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0

    def record(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "claimed": self.claimed,
            "advanced": self.advanced,
            "retried": self.retried,
            "failed": self.failed,
            "skipped": self.skipped,
        }


def _fan_out(fn: Callable[[T], R], items: Sequence[T], parallelism: int) -> list[R]:
    if parallelism <= 1 or len(items) <= 1:
        return [fn(x) for x in items]
    with ThreadPoolExecutor(max_workers=min(parallelism, len(items))) as ex:
        return list(ex.map(fn, items))


class StageWorker:
    """
    Base class: claim a batch in ``input_status`` and process each record.

    ``held_status`` is where a record sits while being processed (the input
    status, unless the worker claims into an in-progress status first); a
    failure is written from there.
    """

    stage: str = "stage"
    input_status: PipelineStatus
    held_status: Optional[PipelineStatus] = None

    def __init__(self, ctx: WorkerContext) -> None:
        self.ctx = ctx
        self.log = with_context(logger, run_id=ctx.run_id, stage=self.stage)

    @property
    def batch_size(self) -> int:
        raise NotImplementedError

    def process(self, record: StagingRecord) -> str:
        """Do the unit of work. Returns "advanced" or "skipped"; raises on failure."""
        raise NotImplementedError

    def run_batch(self, limit: Optional[int] = None) -> BatchResult:
        result = BatchResult(stage=self.stage)
        records = self.ctx.store.fetch_batch(self.input_status, limit or self.batch_size)
        if not records:
            return result
        result.claimed = len(records)

        with self.ctx.metrics.time("stage.batch_s", labels={"stage": self.stage}):
            outcomes = _fan_out(self._process_isolated, records, self.ctx.settings.WORKER_PARALLELISM)
        for o in outcomes:
            result.record(o)
            self.ctx.metrics.inc(f"records.{o}", labels={"stage": self.stage})

        emit_event(self.log, STAGE_BATCH_DONE, result.to_dict(), stage=self.stage)
        return result

    def _process_isolated(self, record: StagingRecord) -> str:
        try:
            return self.process(record)
        except Exception as e:
            return self._fail(record, e)

    def _fail(self, record: StagingRecord, exc: Exception) -> str:
        category = categorize(exc)
        retryable = exc.retryable if isinstance(exc, HarvestError) else True
        if category == ErrorCategory.INTERNAL:
            self.log.exception("Record %s: unexpected error", record.id)
        else:
            self.log.warning("Record %s: %s", record.id, exc)

        written = self.ctx.store.record_failure(
            record,
            self.held_status or self.input_status,
            f"{type(exc).__name__}: {exc}",
            category,
            self.ctx.clock(),
            max_retries=self.ctx.settings.MAX_RECORD_RETRIES,
            retryable=retryable,
        )
        if written is None:
            return "skipped"
        return "failed" if written == PipelineStatus.FAILED else "retried"


# ---------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------


@dataclass
class ScrapeOutcome:
    source_id: int
    outcome: Optional[Outcome] = None
    http_status: Optional[int] = None
    strategy: Optional[str] = None
    candidates: int = 0
    staged: int = 0
    auto_disabled: bool = False
    error: Optional[str] = None


@dataclass
class DiscoveryReport:
    attempted: int = 0
    skipped_ineligible: int = 0
    candidates: int = 0
    staged: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)
    auto_disabled: list[int] = field(default_factory=list)

    def add(self, o: ScrapeOutcome) -> None:
        self.attempted += 1
        self.candidates += o.candidates
        self.staged += o.staged
        key = o.outcome.value if o.outcome else "error"
        self.outcomes[key] = self.outcomes.get(key, 0) + 1
        if o.auto_disabled:
            self.auto_disabled.append(o.source_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "skipped_ineligible": self.skipped_ineligible,
            "candidates": self.candidates,
            "staged": self.staged,
            "outcomes": dict(self.outcomes),
            "auto_disabled": list(self.auto_disabled),
        }


def is_valid_title(title: str) -> bool:
    t = normalize_title(title)
    if len(t) < MIN_TITLE_LEN or not re.search(r"[^\W\d_]", t):
        return False
    return t.casefold() not in JUNK_TITLES


def matches_patterns(url: Optional[str], patterns: Iterable[str]) -> bool:
    patterns = list(patterns)
    if not patterns:
        return True
    if not url:
        return False
    return any(re.search(p, url) for p in patterns)


class DiscoveryWorker(StageWorker):
    """
    Scrapes eligible sources into ``discovered`` records, then promotes
    records with a usable title to ``awaiting_fetch``.
    """

    stage = "discovery"
    input_status = PipelineStatus.DISCOVERED

    @property
    def batch_size(self) -> int:
        return self.ctx.settings.FETCH_BATCH_SIZE

    # -- listing scrape ------------------------------------------------

    def scrape(self, *, source_ids: Optional[Sequence[int]] = None, force: bool = False) -> DiscoveryReport:
        now = self.ctx.clock()
        report = DiscoveryReport()

        if source_ids:
            selected: list[SourceRecord] = []
            for sid in source_ids:
                src = self.ctx.store.get_source(sid)
                if src is None:
                    self.log.warning("Unknown source id %s", sid)
                elif force or is_eligible(src.health, now):
                    selected.append(src)
                else:
                    report.skipped_ineligible += 1
        else:
            selected = self.ctx.store.eligible_sources(now, limit=self.ctx.settings.DISCOVERY_BATCH_SIZE)

        for outcome in _fan_out(self._scrape_isolated, selected, self.ctx.settings.WORKER_PARALLELISM):
            report.add(outcome)
        return report

    def _scrape_isolated(self, source: SourceRecord) -> ScrapeOutcome:
        try:
            return self.scrape_source(source)
        except Exception as e:
            # Crashes are not source failures: no health write.
            with_context(self.log, source_id=source.id).exception("Scrape crashed")
            self.ctx.metrics.inc("sources.crashed")
            return ScrapeOutcome(source_id=source.id, error=f"{type(e).__name__}: {e}")

    def scrape_source(self, source: SourceRecord) -> ScrapeOutcome:
        slog = with_context(self.log, source_id=source.id)
        settings = self.ctx.settings
        out = ScrapeOutcome(source_id=source.id)
        t0 = time.perf_counter()

        fetcher = fetcher_for_source(self.ctx.fetchers, source.fetch_strategy)
        res = fetcher.fetch(source.url)
        out.http_status = res.status_code
        extraction = None

        if res.transport_failed:
            out.outcome = Outcome.TRANSPORT_ERROR
            out.error = res.short_error()
        elif not res.ok:
            out.outcome = Outcome.HTTP_ERROR
            out.error = res.short_error()
        else:
            base_url = res.final_url or source.url
            extraction = extract(
                res.text,
                base_url,
                selectors=source.hints.selectors,
                preferred=source.hints.preferred_strategy,
                max_depth=settings.HYDRATION_MAX_DEPTH,
            )
            hint_updates: dict[str, Any] = {}

            candidates = list(extraction.candidates)
            if extraction.feed_urls:
                hint_updates["feed_urls"] = extraction.feed_urls
                candidates.extend(self._read_feeds(extraction.feed_urls, slog))
                if not candidates:
                    # Dead or non-event feeds: resume below the feed strategy.
                    ran = [s for s, st in extraction.trace.items() if st.attempted]
                    extraction.fall_through(
                        extract(
                            res.text,
                            base_url,
                            selectors=source.hints.selectors,
                            preferred=source.hints.preferred_strategy,
                            max_depth=settings.HYDRATION_MAX_DEPTH,
                            skip=ran,
                        )
                    )
                    candidates = list(extraction.candidates)
            out.strategy = extraction.strategy.value if extraction.strategy else None

            usable = [
                c
                for c in candidates
                if is_valid_title(c.title) and matches_patterns(c.detail_url, source.hints.url_patterns)
            ]
            out.candidates = len(usable)
            now = self.ctx.clock()
            for c in usable:
                if self.ctx.store.stage_candidate(source.id, source.url, c, now) is not None:
                    out.staged += 1
            out.outcome = Outcome.SUCCESS if usable else Outcome.ZERO_YIELD

            # The winner goes first next time (adaptive ordering).
            preferred = source.hints.preferred_strategy
            if out.outcome == Outcome.SUCCESS and out.strategy != (preferred.value if preferred else None):
                hint_updates["preferred_strategy"] = out.strategy
            if hint_updates:
                self.ctx.store.merge_source_hints(source.id, hint_updates, self.ctx.clock())

        if res.block_signals:
            slog.warning("Block signals on %s: %s", source.url, ", ".join(s.value for s in res.block_signals))

        elapsed_ms = (time.perf_counter() - t0) * 1000
        before, after = self.ctx.store.record_source_outcome(
            source.id, out.outcome, self.ctx.clock(), self.ctx.health_policy, error=out.error
        )
        if after.auto_disabled and not before.auto_disabled:
            out.auto_disabled = True
            emit_event(
                slog,
                SOURCE_AUTO_DISABLED,
                {"consecutive_failures": after.consecutive_failures, "last_error": out.error},
                level="warning",
            )

        self.ctx.store.add_insight(
            self.ctx.clock(),
            source_id=source.id,
            run_id=self.ctx.run_id,
            strategy=out.strategy,
            candidate_count=out.candidates,
            staged_count=out.staged,
            elapsed_ms=round(elapsed_ms, 2),
            technology=extraction.technology if extraction else None,
            http_status=out.http_status,
            outcome=out.outcome.value,
            trace=extraction.trace_dict() if extraction else None,
            feed_urls=extraction.feed_urls if extraction else None,
            block_signals=[s.value for s in res.block_signals] or None,
        )

        self.ctx.metrics.inc("sources.scraped", labels={"outcome": out.outcome.value})
        self.ctx.metrics.inc("candidates.staged", out.staged)
        self.ctx.metrics.observe("source.scrape_ms", elapsed_ms)
        emit_event(
            slog,
            SOURCE_SCRAPED,
            {
                "outcome": out.outcome.value,
                "strategy": out.strategy,
                "candidates": out.candidates,
                "staged": out.staged,
                "http_status": out.http_status,
            },
        )
        return out

    def _read_feeds(self, feed_urls: Sequence[str], slog) -> list[EventCandidate]:
        fetcher = self.ctx.fetchers.direct
        for url in feed_urls[:MAX_FEEDS_PER_PAGE]:
            res = fetcher.fetch(url)
            if not res.ok or not res.text:
                slog.debug("Feed %s unavailable: %s", url, res.short_error())
                continue
            found = read_feed(res.text, res.final_url or url)
            if found:
                slog.info("Feed %s yielded %d candidate(s)", url, len(found))
                return found
        return []

    # -- promotion -----------------------------------------------------

    def process(self, record: StagingRecord) -> str:
        if not is_valid_title(record.title):
            raise RecordValidationError(f"unusable title {record.title!r}")
        ok = self.ctx.store.transition(
            record.id, PipelineStatus.DISCOVERED, PipelineStatus.AWAITING_FETCH, self.ctx.clock()
        )
        return "advanced" if ok else "skipped"


# ---------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------


class FetchWorker(StageWorker):
    stage = "fetch"
    input_status = PipelineStatus.AWAITING_FETCH

    @property
    def batch_size(self) -> int:
        return self.ctx.settings.FETCH_BATCH_SIZE

    def process(self, record: StagingRecord) -> str:
        url = record.detail_url
        raw_html: Optional[str] = None

        if url and url != record.source_url:
            source = self.ctx.store.get_source(record.source_id)
            if source is None:
                raise RecordValidationError(f"source {record.source_id} no longer exists")
            res = fetcher_for_source(self.ctx.fetchers, source.fetch_strategy).fetch(url)
            if res.transport_failed:
                raise TransportError(res.short_error())
            if not res.ok:
                err = HttpStatusError(res.status_code, url)
                if err.retryable:
                    raise err
                # Dead detail page: the listing snippet is all we will get.
                self.log.info("Record %s: %s; continuing with listing data", record.id, err)
                self.ctx.metrics.inc("detail.unavailable")
            else:
                raw_html = res.text[:MAX_RAW_HTML_CHARS]

        ok = self.ctx.store.transition(
            record.id,
            PipelineStatus.AWAITING_FETCH,
            PipelineStatus.AWAITING_ENRICHMENT,
            self.ctx.clock(),
            raw_html=raw_html,
        )
        return "advanced" if ok else "skipped"


# ---------------------------------------------------------------------
# Enrich
# ---------------------------------------------------------------------


def refine_candidate(candidate: EventCandidate, raw_html: Optional[str], url: str, *, max_depth: int) -> EventCandidate:
    """Fill gaps in the listing candidate from the detail page, when it has one."""
    if not raw_html:
        return candidate
    detail = extract(raw_html, url, max_depth=max_depth)
    if not detail.candidates:
        return candidate

    want = normalize_title(candidate.title).casefold()
    match = next((c for c in detail.candidates if normalize_title(c.title).casefold() == want), None)
    if match is None and len(detail.candidates) == 1:
        match = detail.candidates[0]
    if match is None:
        return candidate

    return EventCandidate(
        title=candidate.title,
        date_text=candidate.date_text or match.date_text,
        venue=candidate.venue or match.venue,
        detail_url=candidate.detail_url or match.detail_url,
        image_url=candidate.image_url or match.image_url,
        description=candidate.description or match.description,
        category_hint=candidate.category_hint or match.category_hint,
        strategy=candidate.strategy,
    )


class EnrichWorker(StageWorker):
    stage = "enrich"
    input_status = PipelineStatus.AWAITING_ENRICHMENT
    held_status = PipelineStatus.ENRICHING

    @property
    def batch_size(self) -> int:
        return self.ctx.settings.ENRICH_BATCH_SIZE

    def _geocode_query(self, venue: str, city: Optional[str]) -> str:
        if city and city.casefold() not in venue.casefold():
            return f"{venue}, {city}"
        return venue

    def process(self, record: StagingRecord) -> str:
        store, settings = self.ctx.store, self.ctx.settings
        if not store.claim(record.id, PipelineStatus.AWAITING_ENRICHMENT, PipelineStatus.ENRICHING, self.ctx.clock()):
            return "skipped"

        cand = refine_candidate(
            record.candidate,
            record.raw_html,
            record.detail_url or record.source_url,
            max_depth=settings.HYDRATION_MAX_DEPTH,
        )
        title = normalize_title(cand.title)
        if not is_valid_title(title):
            raise RecordValidationError(f"unusable title {cand.title!r}")

        starts_at = parse_event_datetime(
            cand.date_text, default_tz=settings.DEFAULT_TIMEZONE, now=self.ctx.clock()
        )
        if starts_at is None:
            raise RecordValidationError(f"no parseable start date in {cand.date_text!r}")

        venue = normalize_venue(cand.venue)
        latitude = longitude = None
        if venue:
            source = store.get_source(record.source_id)
            city = source.hints.city if source else None
            point = self.ctx.geocoder.geocode(self._geocode_query(venue, city))
            if point is not None:
                latitude, longitude = point.latitude, point.longitude
            self.ctx.metrics.inc("geocode.hit" if point else "geocode.miss")

        enriched = {
            "title": title,
            "starts_at": starts_at.isoformat(),
            "date_text": cand.date_text,
            "venue": venue,
            "latitude": latitude,
            "longitude": longitude,
            "category": infer_category(title, cand.description, cand.category_hint),
            "image_url": cand.image_url,
            "description": cand.description,
            "detail_url": cand.detail_url or record.detail_url,
        }
        ok = store.transition(
            record.id,
            PipelineStatus.ENRICHING,
            PipelineStatus.READY_TO_INDEX,
            self.ctx.clock(),
            enriched=enriched,
        )
        return "advanced" if ok else "skipped"


# ---------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------


class IndexWorker(StageWorker):
    stage = "index"
    input_status = PipelineStatus.READY_TO_INDEX

    @property
    def batch_size(self) -> int:
        return self.ctx.settings.INDEX_BATCH_SIZE

    def process(self, record: StagingRecord) -> str:
        e = record.enriched
        if not e or not e.get("title"):
            raise RecordValidationError("record reached indexing without enrichment")

        starts_at = datetime.fromisoformat(e["starts_at"]) if e.get("starts_at") else None
        fingerprint = event_fingerprint(e["title"], starts_at, e.get("venue"), date_text=e.get("date_text"))
        embedding = self.ctx.embedder.embed(
            embedding_text(e["title"], e.get("description") or "", e.get("venue") or "", e.get("category") or "")
        )

        now = self.ctx.clock()
        inserted = self.ctx.store.upsert_event(
            {
                "fingerprint": fingerprint,
                "title": e["title"],
                "starts_at": starts_at,
                "date_text": e.get("date_text"),
                "venue": e.get("venue"),
                "latitude": e.get("latitude"),
                "longitude": e.get("longitude"),
                "category": e.get("category"),
                "image_url": e.get("image_url"),
                "description": e.get("description"),
                "source_id": record.source_id,
                "source_url": record.source_url,
                "detail_url": e.get("detail_url"),
                "embedding": embedding,
            },
            now,
        )
        self.ctx.metrics.inc("events.inserted" if inserted else "events.updated")

        ok = self.ctx.store.transition(
            record.id,
            PipelineStatus.READY_TO_INDEX,
            PipelineStatus.INDEXED,
            now,
            enriched={**e, "fingerprint": fingerprint},
        )
        if ok and inserted:
            self.ctx.store.increment_events_scraped(record.source_id)
        return "advanced" if ok else "skipped"
