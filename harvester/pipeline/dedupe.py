"""Content fingerprints for canonical events.

Two candidates describe the same event when their normalized title, start
date and venue agree. Normalization is deliberately lossy: case, whitespace
and punctuation do not make a new event.
"""

from __future__ import annotations

import hashlib
import re
import unicodedata
from datetime import datetime, timezone
from typing import Optional

from harvester.extraction.transforms import normalize_ws

_PUNCT = re.compile(r"[^\w\s]", re.UNICODE)


def normalize_key_part(text: Optional[str]) -> str:
    t = unicodedata.normalize("NFKC", text or "")
    t = _PUNCT.sub(" ", t.casefold())
    return normalize_ws(t)


def date_key(starts_at: Optional[datetime], date_text: Optional[str] = None) -> str:
    if starts_at is not None:
        return starts_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M")
    return normalize_key_part(date_text)


def fingerprint_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8", errors="ignore")).hexdigest()


def event_fingerprint(
    title: str,
    starts_at: Optional[datetime],
    venue: Optional[str],
    *,
    date_text: Optional[str] = None,
) -> str:
    parts = (normalize_key_part(title), date_key(starts_at, date_text), normalize_key_part(venue))
    return fingerprint_text(" | ".join(parts))
