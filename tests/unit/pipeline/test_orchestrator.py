"""
Unit tests for the orchestrator cycle loop.
"""

import re

from harvester.enrichment.embeddings import NullEmbedder
from harvester.enrichment.geocoding import NullGeocoder
from harvester.extraction.types import EventCandidate
from harvester.fetching.factory import FetcherPool
from harvester.pipeline.orchestrator import Orchestrator, build_context, make_run_id
from harvester.pipeline.status import PipelineStatus
from tests.helpers import JSON_LD_HTML

SOURCE_URL = "https://venue.example/agenda"


class Sleeps:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def _orchestrator(ctx, **overrides):
    if overrides:
        ctx.settings = ctx.settings.model_copy(update=overrides)
    sleep = Sleeps()
    return Orchestrator(ctx, sleep=sleep), sleep


class TestRun:
    def test_drains_a_source_in_one_cycle(self, ctx, store, fetcher, make_source):
        make_source(url=SOURCE_URL)
        fetcher.pages[SOURCE_URL] = JSON_LD_HTML
        orch, _ = _orchestrator(ctx)

        report = orch.run(max_cycles=5)

        assert report.stop_reason == "drained"
        assert len(report.cycles) == 1
        assert report.cycles[0].discovery["staged"] == 2
        assert store.count_events() == 2
        assert store.count_by_status()[PipelineStatus.INDEXED] == 2

    def test_stops_at_max_cycles(self, ctx, store, fetcher, make_source):
        make_source(url=SOURCE_URL)
        fetcher.pages[SOURCE_URL] = JSON_LD_HTML
        orch, _ = _orchestrator(ctx, ENRICH_BATCH_SIZE=1)

        report = orch.run(max_cycles=1)

        assert report.stop_reason == "max_cycles"
        assert len(report.cycles) == 1
        assert report.cycles[0].queue_depths["awaiting_enrichment"] == 1
        assert store.count_events() == 1

    def test_later_cycles_finish_the_backlog(self, ctx, store, fetcher, make_source):
        make_source(url=SOURCE_URL)
        fetcher.pages[SOURCE_URL] = JSON_LD_HTML
        orch, _ = _orchestrator(ctx, ENRICH_BATCH_SIZE=1)

        report = orch.run(max_cycles=5)

        assert report.stop_reason == "drained"
        assert len(report.cycles) == 2
        assert store.count_events() == 2

    def test_delay_follows_an_enrich_batch(self, ctx, fetcher, make_source):
        make_source(url=SOURCE_URL)
        fetcher.pages[SOURCE_URL] = JSON_LD_HTML
        orch, sleep = _orchestrator(ctx, ENRICH_DELAY_S=2.5)

        orch.run(max_cycles=3)

        assert sleep.calls == [2.5]

    def test_no_delay_when_nothing_was_enriched(self, ctx):
        orch, sleep = _orchestrator(ctx, ENRICH_DELAY_S=2.5)

        report = orch.run(max_cycles=3)

        assert report.stop_reason == "drained"
        assert sleep.calls == []

    def test_recovers_stale_records_first(self, ctx, store, make_source, clock):
        sid = make_source(url=SOURCE_URL)
        rid = store.stage_candidate(
            sid, SOURCE_URL, EventCandidate(title="Jazz Night", date_text="2024-10-12 20:00"), clock()
        )
        for current, target in [
            (PipelineStatus.DISCOVERED, PipelineStatus.AWAITING_FETCH),
            (PipelineStatus.AWAITING_FETCH, PipelineStatus.AWAITING_ENRICHMENT),
            (PipelineStatus.AWAITING_ENRICHMENT, PipelineStatus.ENRICHING),
        ]:
            store.transition(rid, current, target, clock())
        clock.advance(ctx.settings.STALL_THRESHOLD_S + 1)
        orch, _ = _orchestrator(ctx)

        report = orch.run(max_cycles=3, discovery=False)

        assert report.recovered == 1
        assert store.get_record(rid).status == PipelineStatus.INDEXED

    def test_stuck_record_does_not_block_the_drain(self, ctx, store, make_source, clock):
        sid = make_source(url=SOURCE_URL)
        rid = store.stage_candidate(sid, SOURCE_URL, EventCandidate(title="Jazz Night"), clock())
        for current, target in [
            (PipelineStatus.DISCOVERED, PipelineStatus.AWAITING_FETCH),
            (PipelineStatus.AWAITING_FETCH, PipelineStatus.AWAITING_ENRICHMENT),
            (PipelineStatus.AWAITING_ENRICHMENT, PipelineStatus.ENRICHING),
        ]:
            store.transition(rid, current, target, clock())
        orch, _ = _orchestrator(ctx)

        report = orch.run(max_cycles=3, discovery=False, recover_first=False)

        assert report.recovered == 0
        assert report.stop_reason == "drained"
        assert store.get_record(rid).status == PipelineStatus.ENRICHING

    def test_report_shape(self, ctx):
        orch, _ = _orchestrator(ctx)

        d = orch.run(max_cycles=1).to_dict()

        assert d["run_id"] == "test-run"
        assert d["stop_reason"] == "drained"
        assert [b["stage"] for b in d["cycles"][0]["batches"]] == ["discovery", "fetch", "enrich", "index"]
        assert "counters" in d["metrics"]
        assert d["finished_at"] is not None


class TestDiscoveryGate:
    def test_first_cycle_always_discovers(self, ctx):
        orch, _ = _orchestrator(ctx)
        assert orch._should_discover(1, {PipelineStatus.DISCOVERED: 10_000}) is True

    def test_large_backlog_skips_discovery(self, ctx):
        orch, _ = _orchestrator(ctx, DISCOVERY_BACKLOG_THRESHOLD=50)
        assert orch._should_discover(2, {PipelineStatus.DISCOVERED: 50}) is False
        assert orch._should_discover(2, {PipelineStatus.DISCOVERED: 49}) is True

    def test_discovery_can_be_turned_off(self, ctx, fetcher, make_source):
        make_source(url=SOURCE_URL)
        fetcher.pages[SOURCE_URL] = JSON_LD_HTML
        orch, _ = _orchestrator(ctx)

        report = orch.run(max_cycles=1, discovery=False)

        assert report.cycles[0].discovery is None
        assert fetcher.calls == []


def test_build_context_without_services(settings, store):
    ctx = build_context(settings, store=store, run_id="abc")

    assert ctx.store is store
    assert ctx.run_id == "abc"
    assert isinstance(ctx.fetchers, FetcherPool)
    assert isinstance(ctx.geocoder, NullGeocoder)
    assert isinstance(ctx.embedder, NullEmbedder)


def test_make_run_id():
    assert re.fullmatch(r"\d{8}_\d{6}_[0-9a-f]{6}", make_run_id())
    assert make_run_id() != make_run_id()
