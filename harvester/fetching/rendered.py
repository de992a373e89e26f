"""
harvester.fetching.rendered

Rendered fetch through a remote headless-rendering service (browserless-style
``POST {endpoint}/content?token=...``). The browser itself is an external
capability; this module only speaks HTTP to it.

When the service is not configured, or a render call fails for any reason,
the fetch degrades to the direct fetcher so the pipeline keeps moving.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import requests

from harvester.runtime.blocks import classify_blocks
from harvester.runtime.results import FetchResult

from .base import BaseFetcher, FetchContext
from .direct import DirectFetcher

logger = logging.getLogger(__name__)


@dataclass
class RenderedFetcherOptions:
    endpoint: str | None = None
    token: str | None = None
    timeout_s: float = 45.0
    wait_until: str = "networkidle2"

    @property
    def configured(self) -> bool:
        return bool(self.endpoint and self.token)

    @classmethod
    def from_settings(cls, settings) -> RenderedFetcherOptions:
        return cls(
            endpoint=settings.RENDER_ENDPOINT,
            token=settings.render_token,
            timeout_s=settings.RENDER_TIMEOUT_S,
        )


class RenderedFetcher(BaseFetcher):
    def __init__(
        self,
        *,
        fallback: DirectFetcher,
        options: RenderedFetcherOptions | None = None,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(name="rendered")
        self.options = options or RenderedFetcherOptions()
        self.fallback = fallback
        self._session = session or requests.Session()

    def close(self) -> None:
        self._session.close()
        self.fallback.close()

    def fetch(self, url: str, *, ctx: FetchContext | None = None) -> FetchResult:
        if not self.options.configured:
            logger.debug("Rendering service not configured; direct fetch for %s", url)
            return self._degrade(url, ctx, reason="unconfigured")

        t0 = time.time()
        try:
            resp = self._session.post(
                f"{self.options.endpoint.rstrip('/')}/content",
                params={"token": self.options.token},
                json={"url": url, "gotoOptions": {"waitUntil": self.options.wait_until}},
                timeout=self.options.timeout_s,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Render failed for %s (%s); falling back to direct fetch", url, e)
            return self._degrade(url, ctx, reason=type(e).__name__)

        # The service answers 200 itself; the target's status travels in a header.
        target_status = resp.headers.get("X-Response-Code")
        result = FetchResult(
            url=url,
            final_url=resp.headers.get("X-Response-URL") or url,
            status_code=int(target_status) if target_status and target_status.isdigit() else 200,
            content_type=resp.headers.get("Content-Type"),
            text=resp.text or "",
            elapsed_ms=(time.time() - t0) * 1000,
            fetcher=self.name,
        )
        result.block_signals = classify_blocks(result.text)
        return result

    def _degrade(self, url: str, ctx: FetchContext | None, *, reason: str) -> FetchResult:
        result = self.fallback.fetch(url, ctx=ctx)
        result.trace.append({"render": "skipped", "reason": reason})
        return result
