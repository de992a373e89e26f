"""
harvester.extraction.waterfall

``extract(html, base_url)`` runs the strategies in priority order and stops
at the first one that finds anything. It never raises: a strategy that blows
up on malformed input counts as zero candidates and its error lands in the
trace. Strategies skipped because an earlier one won stay in the trace with
``attempted=False``. ``skip`` lets a caller resume the waterfall below a
strategy whose result turned out to be empty, e.g. feeds that yield nothing.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Collection, Sequence

from .dom import extract_dom
from .feeds import discover_feeds
from .hydration import DEFAULT_MAX_DEPTH, extract_hydration
from .page import Page
from .structured import extract_structured
from .technology import detect_technology
from .types import DEFAULT_ORDER, EventCandidate, ExtractionResult, Strategy, StrategyTrace

logger = logging.getLogger(__name__)


def strategy_order(preferred: Strategy | str | None = None) -> list[Strategy]:
    """Default order, with ``preferred`` (if any) moved to the front."""
    if not preferred or preferred == "auto":
        return list(DEFAULT_ORDER)
    first = Strategy(preferred)
    return [first, *(s for s in DEFAULT_ORDER if s != first)]


def extract(
    html: str | bytes | None,
    base_url: str,
    *,
    selectors: Sequence[str] | None = None,
    preferred: Strategy | str | None = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
    skip: Collection[Strategy] = (),
) -> ExtractionResult:
    t0 = time.perf_counter()
    trace = {s: StrategyTrace(strategy=s) for s in DEFAULT_ORDER}
    result = ExtractionResult(strategy=None, trace=trace)

    try:
        order = strategy_order(preferred)
    except ValueError:
        logger.warning("Unknown preferred strategy %r; using default order", preferred)
        order = list(DEFAULT_ORDER)

    page = Page(html, base_url)
    for strategy in order:
        if strategy in skip:
            continue
        st = trace[strategy]
        st.attempted = True
        s0 = time.perf_counter()
        candidates: list[EventCandidate] = []
        feed_urls: list[str] = []
        try:
            if strategy == Strategy.HYDRATION:
                candidates = extract_hydration(page, max_depth=max_depth)
            elif strategy == Strategy.STRUCTURED:
                candidates = extract_structured(page)
            elif strategy == Strategy.FEED:
                feed_urls = discover_feeds(page)
            else:
                candidates = extract_dom(page, selectors=selectors)
        except Exception as e:  # any strategy failure degrades to zero candidates
            st.error = f"{type(e).__name__}: {e}"
            logger.debug("Strategy %s failed on %s: %s", strategy.value, base_url, st.error)
            candidates, feed_urls = [], []
        st.elapsed_ms = (time.perf_counter() - s0) * 1000
        st.found = len(feed_urls) if strategy == Strategy.FEED else len(candidates)

        if st.found > 0:
            result.strategy = strategy
            result.candidates = candidates
            result.feed_urls = feed_urls
            break

    result.technology = detect_technology(page.html)
    result.elapsed_ms = (time.perf_counter() - t0) * 1000
    return result
