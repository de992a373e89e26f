"""
Test doubles and HTML fixtures shared by the unit tests.

Imported by conftest.py and directly by test modules that need the raw
strings or the fake classes.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from harvester.enrichment.geocoding import GeoPoint
from harvester.fetching.base import BaseFetcher, FetchContext
from harvester.runtime.results import EngineError, FetchResult

# =============================================================================
# HTML FIXTURES
# =============================================================================


NEXT_DATA_HTML = """
<html><head><title>Agenda</title></head>
<body>
<div id="__next"></div>
<script id="__NEXT_DATA__" type="application/json">
{"props": {"pageProps": {"user": {"username": "x", "name": "Someone", "date": "2024-01-01"},
  "events": [
    {"title": "Jazz Night", "startDate": "2024-10-12T20:00:00+02:00",
     "venue": {"name": "Paradiso"}, "url": "/events/jazz-night",
     "performers": [{"name": "Trio", "date": "2024-10-12"}]},
    {"title": "Silent Disco", "startDate": "2024-10-13T21:00:00+02:00",
     "venue": {"name": "Melkweg"}, "url": "/events/silent-disco"}
  ]}}}
</script>
<script type="application/ld+json">
{"@type": "MusicEvent", "name": "Should Not Win", "startDate": "2024-10-20"}
</script>
</body></html>
"""

JSON_LD_HTML = """
<html><head>
<script type="application/ld+json">
{"@context": "https://schema.org", "@graph": [
  {"@type": "WebSite", "name": "Venue site"},
  {"@type": "MusicEvent", "name": "Indie Showcase", "startDate": "2024-11-02T19:30:00+01:00",
   "location": {"@type": "Place", "name": "Tivoli", "address": {"addressLocality": "Utrecht"}},
   "url": "https://venue.example/e/indie", "image": {"@type": "ImageObject", "url": "/img/indie.jpg"}},
  {"@type": "TheaterEvent", "name": "Hamlet", "startDate": "2024-11-03T20:00:00+01:00",
   "location": "Stadsschouwburg", "url": "/e/hamlet"}
]}
</script>
</head>
<body>
<article class="event"><h2>DOM Only Event</h2><time datetime="2024-11-05">5 nov</time></article>
</body></html>
"""

FEED_LINK_HTML = """
<html><head>
<link rel="alternate" type="application/rss+xml" href="/agenda/feed.xml">
</head>
<body>
<p>No event markup here.</p>
<a href="webcal://calendar.example/agenda.ics">Add to calendar</a>
</body></html>
"""

DOM_HTML = """
<html><body>
<ul>
  <li class="event">
    <a href="/agenda/open-air-cinema"><h3>Open Air Cinema</h3></a>
    <span class="date">za 12 okt 2024 20:00</span>
    <span class="location">Westerpark</span>
    <img src="/img/cinema.jpg">
  </li>
  <li class="event">
    <a href="/agenda/kids-workshop"><h3>Kids Workshop</h3></a>
    <span class="date">13-10-2024</span>
  </li>
  <li class="event"><h3>Hi</h3></li>
</ul>
</body></html>
"""

EMPTY_HTML = "<html><body><p>Nothing to see.</p></body></html>"

RSS_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>Agenda</title>
<item><title>Poetry Slam</title><link>https://site.example/poetry-slam</link>
<pubDate>Fri, 08 Nov 2024 20:00:00 +0100</pubDate><description>Open mic.</description></item>
<item><title>Board Games Evening</title><link>/board-games</link>
<pubDate>Sat, 09 Nov 2024 19:00:00 +0100</pubDate></item>
</channel></rss>
"""


# =============================================================================
# CLOCK
# =============================================================================


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: Optional[datetime] = None) -> None:
        self.now = now or datetime(2024, 10, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


# =============================================================================
# FETCHERS
# =============================================================================


def page_result(url: str, text: str = "", status: int = 200) -> FetchResult:
    return FetchResult(url=url, final_url=url, status_code=status, text=text)


def transport_failure(url: str, message: str = "ConnectTimeout: timed out") -> FetchResult:
    return FetchResult(
        url=url,
        final_url=url,
        error=EngineError(type="transport", message=message, is_retryable=True),
    )


class FakeFetcher(BaseFetcher):
    """
    Serves canned responses keyed by URL. A value may be HTML text, an int
    status code, a FetchResult, or a list of those served in order.
    Unknown URLs answer 404.
    """

    def __init__(self, pages: Optional[dict] = None) -> None:
        super().__init__(name="fake")
        self.pages: dict = dict(pages or {})
        self.calls: list[str] = []

    def fetch(self, url: str, *, ctx: Optional[FetchContext] = None) -> FetchResult:
        self.calls.append(url)
        value = self.pages.get(url, 404)
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, FetchResult):
            return value
        if isinstance(value, int):
            return page_result(url, "", status=value)
        return page_result(url, value)


class FakePool:
    """Stands in for FetcherPool: one fake fetcher for every strategy."""

    def __init__(self, fetcher: FakeFetcher) -> None:
        self.fetcher = fetcher
        self.closed = False

    @property
    def direct(self) -> FakeFetcher:
        return self.fetcher

    @property
    def rendered(self) -> FakeFetcher:
        return self.fetcher

    def for_strategy(self, strategy) -> FakeFetcher:
        return self.fetcher

    def close(self) -> None:
        self.closed = True


class FakeGeocoder:
    def __init__(self, points: Optional[dict] = None, error: Optional[Exception] = None) -> None:
        self.points = points or {}
        self.error = error
        self.queries: list[str] = []

    def geocode(self, query: str) -> Optional[GeoPoint]:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.points.get(query)


