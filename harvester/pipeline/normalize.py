"""
harvester.pipeline.normalize

Turn the loose strings extraction produces into canonical event fields.

Dates arrive as ISO timestamps, epoch numbers, iCalendar stamps, or free text
in English, Dutch or German ("za 12 okt 2024 20:00 uur"); python-dateutil
does the heavy lifting with a parserinfo that knows the extra month and
weekday names.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

from dateutil import parser as date_parser
from dateutil import tz

from harvester.extraction.transforms import normalize_ws


class MultiLocaleParserInfo(date_parser.parserinfo):
    JUMP = date_parser.parserinfo.JUMP + ["om", "uur", "um", "uhr", "van", "vanaf", "ab"]
    MONTHS = [
        ("Jan", "January", "januari", "Januar", "Jän"),
        ("Feb", "February", "februari", "Februar"),
        ("Mar", "March", "maart", "mrt", "März", "Mär", "Maerz"),
        ("Apr", "April"),
        ("May", "mei", "Mai"),
        ("Jun", "June", "juni"),
        ("Jul", "July", "juli"),
        ("Aug", "August", "augustus"),
        ("Sep", "Sept", "September"),
        ("Oct", "October", "oktober", "okt"),
        ("Nov", "November"),
        ("Dec", "December", "dez", "Dezember"),
    ]
    WEEKDAYS = [
        ("Mon", "Monday", "ma", "maandag", "Mo", "Montag"),
        ("Tue", "Tuesday", "di", "dinsdag", "Dienstag"),
        ("Wed", "Wednesday", "wo", "woensdag", "Mi", "Mittwoch"),
        ("Thu", "Thursday", "do", "donderdag", "Donnerstag"),
        ("Fri", "Friday", "vr", "vrijdag", "Fr", "Freitag"),
        ("Sat", "Saturday", "za", "zaterdag", "Sa", "Samstag"),
        ("Sun", "Sunday", "zo", "zondag", "So", "Sonntag"),
    ]


_PARSER_INFO = MultiLocaleParserInfo(dayfirst=True)
_EPOCH = re.compile(r"^\d{10}(\d{3})?$")
# "12 mei - 14 mei", "12.05. t/m 14.05.", "Fri 3 May – Sun 5 May"
_RANGE_SPLIT = re.compile(r"\s+(?:-|–|—|t/m|tot|bis|to|until)\s+", re.IGNORECASE)


def parse_event_datetime(
    text: Optional[str],
    *,
    default_tz: str = "UTC",
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    Best-effort start datetime in UTC, or None when nothing date-like is found.

    Naive results are interpreted in ``default_tz``. Missing components are
    filled from ``now`` (midnight), which is how year-less listings get a year.
    """
    s = normalize_ws(text)
    if not s:
        return None

    zone = tz.gettz(default_tz) or timezone.utc
    if _EPOCH.match(s):
        seconds = int(s) / (1000 if len(s) == 13 else 1)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    start = _RANGE_SPLIT.split(s, maxsplit=1)[0]
    try:
        # ISO first: with dayfirst on, the general parser reads 2024-10-12 as 10 December.
        dt = date_parser.isoparse(start)
    except (ValueError, OverflowError):
        base = (now or datetime.now(timezone.utc)).astimezone(zone)
        default = base.replace(hour=0, minute=0, second=0, microsecond=0, tzinfo=None)
        try:
            dt = date_parser.parse(start, parserinfo=_PARSER_INFO, default=default, fuzzy=True)
        except (ValueError, OverflowError):
            return None
        if dt == default and not re.search(r"\d", start):
            # fuzzy parsing found nothing date-like at all
            return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=zone)
    return dt.astimezone(timezone.utc)


def normalize_title(text: Optional[str]) -> str:
    return normalize_ws(text).strip(" -|·•")


def normalize_venue(text: Optional[str]) -> str:
    return normalize_ws(text).strip(" ,-|")


CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "music": ("concert", "live music", "dj", "festival", "optreden", "konzert", "band", "jazz"),
    "active": ("run", "yoga", "sport", "hardloop", "fiets", "wandel", "match", "workout"),
    "entertainment": ("theater", "theatre", "comedy", "film", "cinema", "voorstelling", "show"),
    "foodie": ("food", "dinner", "tasting", "proeverij", "markt", "market", "brunch", "wine"),
    "workshops": ("workshop", "cursus", "class", "lecture", "lezing", "masterclass", "kurs"),
    "social": ("meetup", "borrel", "party", "feest", "social", "networking"),
    "community": ("community", "buurt", "open dag", "fair", "kermis"),
}


def infer_category(title: str, description: str = "", hint: Optional[str] = None) -> str:
    if hint:
        return hint
    haystack = f" {title} {description} ".casefold()
    for category, words in CATEGORY_KEYWORDS.items():
        if any(re.search(rf"\b{re.escape(w)}\b", haystack) for w in words):
            return category
    return "other"
