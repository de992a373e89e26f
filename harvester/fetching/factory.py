"""Pick the fetcher a source asks for."""

from __future__ import annotations

import threading

from harvester.config.schema import FetchStrategy
from harvester.config.settings import Settings

from .base import BaseFetcher
from .direct import DirectFetcher, DirectFetcherOptions
from .rendered import RenderedFetcher, RenderedFetcherOptions


class FetcherPool:
    """
    Lazily builds one fetcher per strategy and shares it between sources, so
    connection pools are reused across a whole run. Discovery reads it from
    several threads at once; construction happens under a lock.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._lock = threading.RLock()
        self._direct: DirectFetcher | None = None
        self._rendered: RenderedFetcher | None = None

    @property
    def direct(self) -> DirectFetcher:
        with self._lock:
            if self._direct is None:
                self._direct = DirectFetcher(options=DirectFetcherOptions.from_settings(self.settings))
            return self._direct

    @property
    def rendered(self) -> RenderedFetcher:
        with self._lock:
            if self._rendered is None:
                self._rendered = RenderedFetcher(
                    fallback=self.direct,
                    options=RenderedFetcherOptions.from_settings(self.settings),
                )
            return self._rendered

    def for_strategy(self, strategy: FetchStrategy | str) -> BaseFetcher:
        return self.rendered if FetchStrategy(strategy) == FetchStrategy.rendered else self.direct

    def close(self) -> None:
        with self._lock:
            if self._rendered is not None:
                self._rendered.close()
            elif self._direct is not None:
                self._direct.close()


def fetcher_for_source(pool: FetcherPool, fetch_strategy: FetchStrategy | str) -> BaseFetcher:
    return pool.for_strategy(fetch_strategy)
