"""
harvester.extraction.structured

Priority 2: schema.org JSON-LD blocks.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any

from harvester.errors import ExtractionError

from .jsonutil import loads_lenient
from .page import Page
from .transforms import first_str, resolve_url
from .types import EventCandidate, Strategy

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset(
    {
        "Event",
        "SportsEvent",
        "MusicEvent",
        "Festival",
        "TheaterEvent",
        "DanceEvent",
        "ComedyEvent",
        "ExhibitionEvent",
        "SocialEvent",
        "BusinessEvent",
        "EducationEvent",
        "FoodEvent",
        "ScreeningEvent",
        "ChildrensEvent",
        "LiteraryEvent",
    }
)

CATEGORY_BY_TYPE = {
    "MusicEvent": "music",
    "SportsEvent": "active",
    "TheaterEvent": "entertainment",
    "DanceEvent": "entertainment",
    "ComedyEvent": "entertainment",
    "ExhibitionEvent": "entertainment",
    "ScreeningEvent": "entertainment",
    "FoodEvent": "foodie",
    "Festival": "community",
    "SocialEvent": "social",
    "EducationEvent": "workshops",
}


def _types(item: dict[str, Any]) -> list[str]:
    t = item.get("@type")
    types = t if isinstance(t, list) else [t]
    # "http://schema.org/MusicEvent" -> "MusicEvent"
    return [str(x).rstrip("/").rsplit("/", 1)[-1] for x in types if x]


def is_event(item: Any) -> bool:
    return isinstance(item, dict) and any(t in EVENT_TYPES for t in _types(item))


def category_for(item: dict[str, Any]) -> str | None:
    for t in _types(item):
        if t in CATEGORY_BY_TYPE:
            return CATEGORY_BY_TYPE[t]
    return None


def _location(loc: Any) -> str:
    if isinstance(loc, list):
        loc = loc[0] if loc else None
    if isinstance(loc, str):
        return loc.strip()
    if not isinstance(loc, dict):
        return ""

    name = first_str(loc.get("name"))
    addr = loc.get("address")
    if isinstance(addr, dict):
        parts = [
            first_str(addr.get(k)) for k in ("streetAddress", "addressLocality", "addressRegion")
        ]
        joined = ", ".join(p for p in parts if p)
        return name or joined
    return name or first_str(addr)


def _start_date(item: dict[str, Any]) -> str:
    start = first_str(item.get("startDate"))
    if start:
        return start
    schedule = item.get("eventSchedule")
    if isinstance(schedule, list):
        schedule = schedule[0] if schedule else None
    if isinstance(schedule, dict):
        return first_str(schedule.get("startDate"))
    return ""


def to_candidate(item: dict[str, Any], base_url: str) -> EventCandidate | None:
    title = first_str(item.get("name")) or first_str(item.get("headline"))
    if not title:
        return None
    return EventCandidate(
        title=title,
        date_text=_start_date(item),
        venue=_location(item.get("location")),
        detail_url=resolve_url(first_str(item.get("url")), base_url),
        image_url=resolve_url(first_str(item.get("image")), base_url),
        description=first_str(item.get("description"))[:2000],
        category_hint=category_for(item),
        strategy=Strategy.STRUCTURED,
    )


def iter_blocks(page: Page) -> tuple[list[Any], int]:
    """Decoded JSON-LD blocks plus the number of blocks that could not be decoded."""
    decoded: list[Any] = []
    bad = 0
    for script in page.soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            decoded.append(loads_lenient(raw))
        except ExtractionError as e:
            bad += 1
            logger.debug("Skipping malformed JSON-LD block: %s", e)
    return decoded, bad


def extract_structured(page: Page) -> list[EventCandidate]:
    blocks, bad = iter_blocks(page)
    if bad and not blocks:
        raise ExtractionError(f"{bad} malformed JSON-LD block(s)")

    queue: deque[Any] = deque(blocks)
    candidates: list[EventCandidate] = []
    seen: set[tuple[str, str, str]] = set()
    while queue:
        item = queue.popleft()
        if isinstance(item, list):
            queue.extend(item)
            continue
        if not isinstance(item, dict):
            continue
        if isinstance(item.get("@graph"), list):
            queue.extend(item["@graph"])
            continue
        if not is_event(item):
            continue
        cand = to_candidate(item, page.base_url)
        if cand and cand.key() not in seen:
            seen.add(cand.key())
            candidates.append(cand)
    return candidates
