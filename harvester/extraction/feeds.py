"""
harvester.extraction.feeds

Priority 3: syndication and calendar feeds.

Discovery only looks at the page (``discover_feeds``); reading a feed is a
separate step (``read_feed``) the Discovery stage runs on fetched feed bodies.
"""

from __future__ import annotations

import logging
import re

from bs4 import BeautifulSoup

from .page import Page
from .transforms import normalize_ws, resolve_url
from .types import EventCandidate, Strategy

logger = logging.getLogger(__name__)

FEED_LINK_TYPES = ("application/rss+xml", "application/atom+xml")
MAX_FEEDS_PER_PAGE = 3

_CALENDAR_HREF = re.compile(r"(\.ics|\.ical)(\?|#|$)|^webcal://", re.IGNORECASE)
_VEVENT = re.compile(r"BEGIN:VEVENT(.*?)END:VEVENT", re.IGNORECASE | re.DOTALL)


def discover_feeds(page: Page) -> list[str]:
    """Resolved, de-duplicated feed URLs linked from the page, in page order."""
    urls: list[str] = []

    for link in page.soup.find_all("link", href=True):
        if (link.get("type") or "").lower().strip() in FEED_LINK_TYPES:
            urls.append(link["href"])

    for a in page.soup.find_all("a", href=True):
        if _CALENDAR_HREF.search(a["href"].strip()):
            urls.append(a["href"])

    out: list[str] = []
    for u in urls:
        resolved = resolve_url(u, page.base_url)
        if resolved and resolved not in out:
            out.append(resolved)
    return out


# ---------------------------------------------------------------------
# feed reader
# ---------------------------------------------------------------------


def read_feed(content: str, url: str) -> list[EventCandidate]:
    """Parse an RSS, Atom or iCalendar body into candidates. Unknown formats yield []."""
    content = content or ""
    head = content[:2000].lower()
    if "begin:vcalendar" in head or "begin:vevent" in content[:20000].lower():
        return parse_ics(content, url)
    if "<rss" in head or "<feed" in head or "<rdf" in head:
        return parse_xml_feed(content, url)
    logger.debug("Unrecognised feed format at %s", url)
    return []


def _text(node) -> str:
    return normalize_ws(node.get_text(" ")) if node is not None else ""


def parse_xml_feed(content: str, url: str) -> list[EventCandidate]:
    soup = BeautifulSoup(content, "xml")
    out: list[EventCandidate] = []

    for item in soup.find_all("item"):
        title = _text(item.find("title"))
        if not title:
            continue
        link = _text(item.find("link")) or _text(item.find("guid"))
        enclosure = item.find("enclosure", attrs={"type": re.compile(r"^image")})
        out.append(
            EventCandidate(
                title=title,
                date_text=_text(item.find("pubDate")) or _text(item.find("date")),
                detail_url=resolve_url(link, url),
                image_url=resolve_url(enclosure.get("url"), url) if enclosure else None,
                description=_text(item.find("description"))[:2000],
                strategy=Strategy.FEED,
            )
        )
    if out:
        return out

    for entry in soup.find_all("entry"):
        title = _text(entry.find("title"))
        if not title:
            continue
        link = entry.find("link", attrs={"rel": "alternate"}) or entry.find("link")
        out.append(
            EventCandidate(
                title=title,
                date_text=_text(entry.find("published")) or _text(entry.find("updated")),
                detail_url=resolve_url(link.get("href") if link else None, url),
                description=(_text(entry.find("summary")) or _text(entry.find("content")))[:2000],
                strategy=Strategy.FEED,
            )
        )
    return out


def _unfold(block: str) -> list[str]:
    lines: list[str] = []
    for raw in block.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        if raw[:1] in (" ", "\t") and lines:
            lines[-1] += raw[1:]
        elif raw.strip():
            lines.append(raw)
    return lines


def _unescape(value: str) -> str:
    return (
        value.replace("\\n", "\n")
        .replace("\\N", "\n")
        .replace("\\,", ",")
        .replace("\\;", ";")
        .replace("\\\\", "\\")
        .strip()
    )


def _properties(block: str) -> dict[str, str]:
    props: dict[str, str] = {}
    for line in _unfold(block):
        name, sep, value = line.partition(":")
        if not sep:
            continue
        # DTSTART;TZID=Europe/Amsterdam -> DTSTART
        key = name.split(";", 1)[0].strip().upper()
        props.setdefault(key, _unescape(value))
    return props


def parse_ics(content: str, url: str) -> list[EventCandidate]:
    out: list[EventCandidate] = []
    for m in _VEVENT.finditer(content):
        props = _properties(m.group(1))
        title = normalize_ws(props.get("SUMMARY"))
        if not title:
            continue
        out.append(
            EventCandidate(
                title=title,
                date_text=props.get("DTSTART", ""),
                venue=normalize_ws(props.get("LOCATION")),
                detail_url=resolve_url(props.get("URL"), url),
                description=props.get("DESCRIPTION", "")[:2000],
                strategy=Strategy.FEED,
            )
        )
    return out
