"""
harvester.extraction.dom

Priority 4: generic markup heuristics. Lowest fidelity, last resort.

Per-source selectors run first, then the generic list; the first selector
that yields any candidate wins.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

import soupsieve
from bs4 import Tag

from .page import Page
from .transforms import normalize_ws, resolve_url
from .types import EventCandidate, Strategy

logger = logging.getLogger(__name__)

DEFAULT_SELECTORS: tuple[str, ...] = (
    "article.event",
    ".event-item",
    ".event-card",
    "[itemtype*='Event']",
    ".agenda-item",
    ".calendar-event",
    "li.event",
    ".post-item",
    ".activity-card",
    ".card--event",
    ".event-list-item",
    "[class*='event']",
    "[class*='agenda']",
)

TITLE_SELECTOR = "h1, h2, h3, h4, .title, [class*='title']"
DATE_SELECTOR = "time, .date, [class*='date'], [class*='datum'], [datetime]"
VENUE_SELECTOR = ".location, .venue, [class*='location'], [class*='venue']"
DESCRIPTION_SELECTOR = "p, .description, .excerpt, [class*='description']"

MIN_TITLE_LEN = 3

# EN / NL / DE month abbreviations, or numeric day-month-year.
DATE_PATTERN = re.compile(
    r"(?:\d{1,2}\s+(?:jan|feb|mar|mrt|apr|may|mei|mai|mär|jun|jul|aug|sep|oct|okt|nov|dec|dez)[a-zä]*"
    r"|\d{1,2}[-/.]\d{1,2}[-/.]\d{2,4})",
    re.IGNORECASE,
)
_BG_URL = re.compile(r"url\(['\"]?([^'\")]+)['\"]?\)")


def _date_text(el: Tag) -> str:
    node = el.select_one(DATE_SELECTOR)
    if node is not None:
        attr = node.get("datetime") or node.get("content")
        if attr:
            return normalize_ws(attr)
        text = normalize_ws(node.get_text(" "))
        if text:
            return text
    for attr in ("datetime", "data-date", "data-start"):
        if el.get(attr):
            return normalize_ws(el[attr])
    m = DATE_PATTERN.search(el.get_text(" "))
    return m.group(0) if m else ""


def _image(el: Tag, base_url: str) -> str | None:
    img = el.find("img")
    if img is not None:
        src = img.get("src") or img.get("data-src")
        if src:
            return resolve_url(src, base_url)
    styled = el.select_one("[style*='background']")
    if styled is not None:
        m = _BG_URL.search(styled.get("style", ""))
        if m:
            return resolve_url(m.group(1), base_url)
    return None


def candidate_from(el: Tag, base_url: str) -> EventCandidate | None:
    title_node = el.select_one(TITLE_SELECTOR)
    title = normalize_ws(title_node.get_text(" ")) if title_node is not None else ""
    anchor = el if el.name == "a" else el.find("a", href=True)
    if not title and anchor is not None:
        title = normalize_ws(anchor.get_text(" "))
    if len(title) < MIN_TITLE_LEN:
        return None

    venue_node = el.select_one(VENUE_SELECTOR)
    desc_node = el.select_one(DESCRIPTION_SELECTOR)
    return EventCandidate(
        title=title,
        date_text=_date_text(el),
        venue=normalize_ws(venue_node.get_text(" ")) if venue_node is not None else "",
        detail_url=resolve_url(anchor.get("href"), base_url) if anchor is not None else None,
        image_url=_image(el, base_url),
        description=normalize_ws(desc_node.get_text(" "))[:2000] if desc_node is not None else "",
        strategy=Strategy.DOM,
    )


def _outermost(elements: list[Tag]) -> list[Tag]:
    """Drop matches nested inside another match of the same selector."""
    ids = {id(e) for e in elements}
    return [e for e in elements if not any(id(p) in ids for p in e.parents)]


def extract_dom(page: Page, *, selectors: Sequence[str] | None = None) -> list[EventCandidate]:
    ordered = [*(selectors or ()), *DEFAULT_SELECTORS]
    for selector in dict.fromkeys(ordered):
        try:
            elements = page.soup.select(selector)
        except soupsieve.SelectorSyntaxError as e:
            logger.warning("Ignoring invalid selector %r: %s", selector, e)
            continue
        if not elements:
            continue

        candidates: list[EventCandidate] = []
        seen: set[tuple[str, str, str]] = set()
        for el in _outermost(elements):
            cand = candidate_from(el, page.base_url)
            if cand and cand.key() not in seen:
                seen.add(cand.key())
                candidates.append(cand)
        if candidates:
            logger.debug("DOM selector %r matched %d candidate(s)", selector, len(candidates))
            return candidates
    return []
