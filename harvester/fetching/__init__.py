"""Page fetchers: direct HTTP and remote-rendered, behind one contract."""

from .base import BaseFetcher, FetchContext
from .direct import DirectFetcher
from .factory import FetcherPool, fetcher_for_source
from .rendered import RenderedFetcher

__all__ = ["BaseFetcher", "DirectFetcher", "FetchContext", "FetcherPool", "RenderedFetcher", "fetcher_for_source"]
