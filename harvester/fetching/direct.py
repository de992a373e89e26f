"""Requests-based direct fetcher.

Features:
- session reuse + connection pooling
- browser-like User-Agent, redirects followed
- retries through the shared call_with_retry helper
- optional rate limiting
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import requests

from harvester.errors import HttpStatusError, TransportError
from harvester.runtime.blocks import classify_blocks
from harvester.runtime.resilience import RateLimiter, RetryPolicy, call_with_retry
from harvester.runtime.results import EngineError, FetchResult

from .base import BaseFetcher, FetchContext, Headers

logger = logging.getLogger(__name__)


@dataclass
class DirectFetcherOptions:
    timeout_s: float = 15.0
    user_agent: str | None = None
    accept_language: str = "en-US,en;q=0.9,nl;q=0.8,de;q=0.7"

    # retry
    max_retries: int = 3
    backoff_mode: str = "exp"
    base_delay_s: float = 1.0

    # rate limit
    rps: float | None = None
    min_delay_s: float | None = None

    # pool
    pool_connections: int = 10
    pool_maxsize: int = 20

    @classmethod
    def from_settings(cls, settings) -> DirectFetcherOptions:
        return cls(
            timeout_s=settings.FETCH_TIMEOUT_S,
            user_agent=settings.USER_AGENT,
            max_retries=settings.FETCH_MAX_RETRIES,
            base_delay_s=settings.FETCH_BASE_DELAY_S,
        )


class DirectFetcher(BaseFetcher):
    def __init__(
        self,
        *,
        options: DirectFetcherOptions | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(name="direct")
        self.options = options or DirectFetcherOptions()
        self._sleep = sleep
        self._session = session or self._build_session()
        self._limiter = RateLimiter(rps=self.options.rps, min_delay_s=self.options.min_delay_s)
        self._retry_policy = RetryPolicy(
            max_retries=self.options.max_retries,
            backoff_mode=self.options.backoff_mode,
            base_delay_s=self.options.base_delay_s,
        )

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        adapter = requests.adapters.HTTPAdapter(
            pool_connections=self.options.pool_connections,
            pool_maxsize=self.options.pool_maxsize,
        )
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def close(self) -> None:
        self._session.close()

    def _headers(self, ctx: FetchContext) -> Headers:
        headers: Headers = {
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": self.options.accept_language,
        }
        if self.options.user_agent:
            headers["User-Agent"] = self.options.user_agent
        if ctx.headers:
            headers.update({str(k): str(v) for k, v in ctx.headers.items()})
        return headers

    def fetch(self, url: str, *, ctx: FetchContext | None = None) -> FetchResult:
        ctx = ctx or FetchContext()
        timeout_s = float(ctx.timeout_s or self.options.timeout_s)
        headers = self._headers(ctx)
        trace: list[dict] = []
        last: list[FetchResult] = []

        def attempt() -> FetchResult:
            self._limiter.wait()
            t0 = time.time()
            try:
                resp = self._session.get(url, timeout=timeout_s, headers=headers, allow_redirects=True)
            except requests.RequestException as e:
                trace.append({"attempt": len(trace) + 1, "error": type(e).__name__, "ok": False})
                raise TransportError(f"{type(e).__name__}: {e}") from e

            elapsed_ms = (time.time() - t0) * 1000
            resp.encoding = resp.encoding or "utf-8"
            result = FetchResult(
                url=url,
                final_url=str(resp.url),
                status_code=int(resp.status_code),
                content_type=resp.headers.get("Content-Type"),
                text=resp.text or "",
                elapsed_ms=elapsed_ms,
                fetcher=self.name,
                redirects=[str(r.url) for r in resp.history],
                trace=trace,
            )
            result.block_signals = classify_blocks(result.text)
            trace.append({"attempt": len(trace) + 1, "status": result.status_code, "ok": result.ok})
            last[:] = [result]
            if not result.ok and result.is_retryable:
                raise HttpStatusError(result.status_code, url)
            return result

        try:
            return call_with_retry(
                attempt, policy=self._retry_policy, sleep=self._sleep, label=f"GET {url}"
            )
        except HttpStatusError:
            # Retries exhausted on a retryable status: hand back the last response.
            return last[0]
        except TransportError as e:
            logger.warning("Transport failure fetching %s: %s", url, e)
            return FetchResult(
                url=url,
                final_url=url,
                fetcher=self.name,
                error=EngineError(type="transport", message=str(e), is_retryable=True),
                trace=trace,
            )
