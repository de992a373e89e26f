"""
harvester.enrichment.geocoding

Venue text -> coordinates. The public Nominatim service allows about one
request per second, so every lookup goes through a shared RateLimiter and
results are cached for the lifetime of the process.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional, Protocol

import requests

from harvester.errors import RETRYABLE_STATUS, EnrichmentError
from harvester.runtime.resilience import RateLimiter, RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float
    display_name: str = ""


class Geocoder(Protocol):
    def geocode(self, query: str) -> Optional[GeoPoint]: ...


class NullGeocoder:
    """Used when no geocoding service is configured."""

    def geocode(self, query: str) -> Optional[GeoPoint]:
        return None


class NominatimGeocoder:
    def __init__(
        self,
        url: str,
        *,
        user_agent: str,
        rps: float = 1.0,
        timeout_s: float = 10.0,
        retry_policy: RetryPolicy | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.url = url
        self.timeout_s = timeout_s
        self.retry_policy = retry_policy or RetryPolicy(max_retries=2, base_delay_s=2.0)
        self._session = session or requests.Session()
        self._session.headers["User-Agent"] = user_agent
        self._limiter = RateLimiter(rps=rps)
        self._sleep = sleep
        self._cache: dict[str, Optional[GeoPoint]] = {}
        self._cache_lock = threading.Lock()

    def _lookup(self, query: str) -> Optional[GeoPoint]:
        self._limiter.wait()
        try:
            resp = self._session.get(
                self.url,
                params={"q": query, "format": "json", "limit": 1},
                timeout=self.timeout_s,
            )
        except requests.RequestException as e:
            raise EnrichmentError(f"geocoder unreachable: {e}", retryable=True) from e

        if resp.status_code != 200:
            raise EnrichmentError(
                f"geocoder returned HTTP {resp.status_code}",
                retryable=resp.status_code in RETRYABLE_STATUS,
            )
        try:
            results = resp.json()
        except ValueError as e:
            raise EnrichmentError(f"geocoder returned invalid JSON: {e}", retryable=True) from e
        if not results:
            return None

        top = results[0]
        return GeoPoint(
            latitude=float(top["lat"]),
            longitude=float(top["lon"]),
            display_name=str(top.get("display_name") or ""),
        )

    def geocode(self, query: str) -> Optional[GeoPoint]:
        key = " ".join(query.split()).casefold()
        if not key:
            return None
        with self._cache_lock:
            if key in self._cache:
                return self._cache[key]

        point = call_with_retry(
            lambda: self._lookup(query),
            policy=self.retry_policy,
            sleep=self._sleep,
            label=f"geocode {query!r}",
        )
        with self._cache_lock:
            self._cache[key] = point
        return point


def build_geocoder(settings) -> Geocoder:
    if not settings.GEOCODER_URL:
        return NullGeocoder()
    return NominatimGeocoder(
        settings.GEOCODER_URL,
        user_agent=settings.GEOCODER_USER_AGENT,
        rps=settings.GEOCODER_RPS,
    )
