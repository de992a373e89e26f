"""
harvester.fetching.base

Fetcher interface + the small context every fetch carries.

Contract: ``fetch(url) -> FetchResult``. Non-2xx responses come back as
results with a status code; only transport failures set ``result.error``.
Fetchers never raise for network problems.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from harvester.runtime.results import FetchResult

Headers = dict[str, str]


@dataclass
class FetchContext:
    """Per-call overrides. Keep it small."""

    timeout_s: float | None = None
    headers: Headers | None = None


class BaseFetcher(ABC):
    def __init__(self, *, name: str = "base") -> None:
        self.name = name

    @abstractmethod
    def fetch(self, url: str, *, ctx: FetchContext | None = None) -> FetchResult:
        raise NotImplementedError

    def close(self) -> None:
        """Release sessions or other pooled resources."""
        return

    def __enter__(self) -> BaseFetcher:
        return self

    def __exit__(self, *exc) -> None:
        self.close()
