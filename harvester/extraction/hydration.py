"""
harvester.extraction.hydration

Priority 1: client-side hydration state (Next.js, Nuxt, Redux-style stores).

The payloads have no fixed schema, so the walk is duck-typed: any object with
a title-like key and a date-like key is an event. Recursion is capped at
``max_depth`` levels to bound the cost on deeply nested stores.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from harvester.errors import ExtractionError

from .jsonutil import decode_prefix, loads_lenient
from .page import Page
from .transforms import first_str, resolve_url
from .types import EventCandidate, Strategy

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 8

SCRIPT_ID_MARKERS = ("__NEXT_DATA__", "__NUXT_DATA__")
WINDOW_MARKERS = (
    "__NUXT__",
    "__INITIAL_STATE__",
    "__PRELOADED_STATE__",
    "__APP_DATA__",
    "__APOLLO_STATE__",
)
_WINDOW_ASSIGN = re.compile(r"window\.(%s)\s*=\s*" % "|".join(WINDOW_MARKERS))

TITLE_KEYS = ("title", "name", "eventName", "headline")
DATE_KEYS = ("date", "startDate", "start_date", "eventDate", "datetime", "start", "startTime", "begin")
VENUE_KEYS = ("venue", "location", "place", "address")
URL_KEYS = ("url", "link", "href", "detailUrl", "eventUrl", "permalink")
IMAGE_KEYS = ("image", "imageUrl", "thumbnail", "picture", "photo")
DESCRIPTION_KEYS = ("description", "excerpt", "summary", "content")

# Objects carrying these keys are accounts or navigation, not events.
EXCLUDE_KEYS = frozenset({"username", "email", "menuItem", "navigation"})


def find_payloads(page: Page) -> list[tuple[str, Any]]:
    """Every decodable hydration blob in the page, tagged with its marker."""
    payloads: list[tuple[str, Any]] = []

    for marker in SCRIPT_ID_MARKERS:
        node = page.soup.find("script", id=marker)
        if node is None:
            continue
        try:
            payloads.append((marker, loads_lenient(node.string or node.get_text())))
        except ExtractionError as e:
            logger.debug("Skipping %s blob: %s", marker, e)

    for m in _WINDOW_ASSIGN.finditer(page.html):
        try:
            payloads.append((m.group(1), decode_prefix(page.html, m.end())))
        except ExtractionError as e:
            logger.debug("Skipping window.%s blob: %s", m.group(1), e)

    return payloads


def is_event_like(obj: dict[str, Any]) -> bool:
    if EXCLUDE_KEYS.intersection(obj):
        return False
    has_title = any(isinstance(obj.get(k), str) and obj[k].strip() for k in TITLE_KEYS)
    has_date = any(obj.get(k) not in (None, "", [], {}) for k in DATE_KEYS)
    return has_title and has_date


def _pick(obj: dict[str, Any], keys: tuple[str, ...]) -> str:
    for k in keys:
        s = first_str(obj.get(k))
        if s:
            return s
    return ""


def _venue(obj: dict[str, Any]) -> str:
    for k in VENUE_KEYS:
        v = obj.get(k)
        if isinstance(v, dict):
            name = first_str(v.get("name"))
            if name:
                return name
            addr = v.get("address")
            if isinstance(addr, dict):
                parts = [first_str(addr.get(p)) for p in ("streetAddress", "addressLocality")]
                return ", ".join(p for p in parts if p)
            if addr:
                return first_str(addr)
        elif v:
            return first_str(v)
    return ""


def to_candidate(obj: dict[str, Any], base_url: str) -> EventCandidate | None:
    title = _pick(obj, TITLE_KEYS)
    if not title:
        return None
    return EventCandidate(
        title=title,
        date_text=_pick(obj, DATE_KEYS),
        venue=_venue(obj),
        detail_url=resolve_url(_pick(obj, URL_KEYS), base_url),
        image_url=resolve_url(_pick(obj, IMAGE_KEYS), base_url),
        description=_pick(obj, DESCRIPTION_KEYS)[:2000],
        strategy=Strategy.HYDRATION,
    )


def walk(node: Any, base_url: str, *, max_depth: int, depth: int = 0) -> list[EventCandidate]:
    if depth > max_depth:
        return []
    out: list[EventCandidate] = []
    if isinstance(node, dict):
        if is_event_like(node):
            cand = to_candidate(node, base_url)
            if cand:
                # An event's own children (performers, offers) are not events.
                return [cand]
        for value in node.values():
            out.extend(walk(value, base_url, max_depth=max_depth, depth=depth + 1))
    elif isinstance(node, list):
        for item in node:
            out.extend(walk(item, base_url, max_depth=max_depth, depth=depth + 1))
    return out


def extract_hydration(page: Page, *, max_depth: int = DEFAULT_MAX_DEPTH) -> list[EventCandidate]:
    seen: set[tuple[str, str, str]] = set()
    candidates: list[EventCandidate] = []
    for marker, payload in find_payloads(page):
        found = walk(payload, page.base_url, max_depth=max_depth)
        for c in found:
            if c.key() not in seen:
                seen.add(c.key())
                candidates.append(c)
        if candidates:
            logger.debug("Hydration marker %s yielded %d candidate(s)", marker, len(candidates))
            break
    return candidates
