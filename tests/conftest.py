"""
Shared pytest fixtures for the event harvester test suite.

Provides a throwaway SQLite store, a fixed clock, a fake fetcher pool and a
factory for sources. Nothing here touches the network.
"""

import logging
from typing import Optional

import pytest

from harvester.config.schema import SourceConfig
from harvester.config.settings import Settings
from harvester.enrichment.embeddings import NullEmbedder
from harvester.enrichment.geocoding import NullGeocoder
from harvester.monitoring.metrics import MetricsRegistry
from harvester.pipeline.store import Store
from harvester.pipeline.workers import WorkerContext
from tests.helpers import FakeFetcher, FakePool, FixedClock


@pytest.fixture(autouse=True)
def _restore_package_logger():
    """cli.main configures the package logger; give caplog its records back afterwards."""
    yield
    logger = logging.getLogger("harvester")
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite:///{tmp_path / 'harvest.db'}",
        WORKER_PARALLELISM=1,
        ENRICH_DELAY_S=0,
        GEOCODER_URL=None,
        OPENAI_API_KEY=None,
        RENDER_ENDPOINT=None,
        DEFAULT_TIMEZONE="Europe/Amsterdam",
    )


@pytest.fixture
def store(settings):
    s = Store.from_url(settings.DATABASE_URL)
    s.create_all()
    yield s
    s.dispose()


@pytest.fixture
def ctx(store, settings, fetcher, clock):
    """WorkerContext wired to the SQLite store, the fake fetcher and the fixed clock."""
    return WorkerContext(
        store=store,
        settings=settings,
        fetchers=FakePool(fetcher),
        geocoder=NullGeocoder(),
        embedder=NullEmbedder(),
        metrics=MetricsRegistry(),
        clock=clock,
        run_id="test-run",
    )


@pytest.fixture
def make_source(store, clock):
    """
    Return a function that registers a source and returns its id.

    Example:
        sid = make_source(url="https://venue.example/agenda", city="Utrecht")
    """

    def _make_source(
        url: str = "https://venue.example/agenda",
        name: Optional[str] = None,
        fetch_strategy: str = "direct",
        **hints,
    ) -> int:
        cfg = SourceConfig(name=name or url, url=url, fetch_strategy=fetch_strategy, hints=hints)
        source_id, _ = store.upsert_source(cfg, clock())
        return source_id

    return _make_source
