"""
harvester.extraction.transforms

Small pure helpers shared by the strategies and the normaliser.
"""

from __future__ import annotations

import re
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

_WS = re.compile(r"\s+")

TRACKING_PARAMS = (
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "gclid",
    "fbclid",
    "mc_cid",
    "mc_eid",
)


def normalize_ws(text: Optional[str]) -> str:
    return _WS.sub(" ", (text or "").strip())


def strip_or_none(x: Any) -> Optional[str]:
    if x is None:
        return None
    s = normalize_ws(str(x))
    return s if s else None


def resolve_url(url: Optional[str], base_url: str) -> Optional[str]:
    """Absolute http(s) URL for ``url`` relative to ``base_url``, or None."""
    url = (url or "").strip()
    if not url or url.startswith(("javascript:", "mailto:", "tel:", "#")):
        return None
    if url.startswith("webcal://"):
        url = "https://" + url[len("webcal://"):]
    try:
        resolved = urljoin(base_url, url)
    except ValueError:
        return None
    if urlparse(resolved).scheme not in ("http", "https"):
        return None
    return resolved


def canonicalize_url(url: str) -> str:
    """
    Stable form of a detail URL: lower-case host, no default port, no
    tracking parameters or fragment, sorted query.
    """
    url = (url or "").strip()
    if not url:
        return url

    try:
        parts = urlparse(url)
    except ValueError:
        return url

    scheme = (parts.scheme or "http").lower()
    netloc = parts.netloc.lower()
    if netloc.endswith(":80") and scheme == "http":
        netloc = netloc[:-3]
    if netloc.endswith(":443") and scheme == "https":
        netloc = netloc[:-4]

    drop = set(TRACKING_PARAMS)
    query_pairs = [
        (k, v) for (k, v) in parse_qsl(parts.query, keep_blank_values=True) if k.lower() not in drop
    ]
    query_pairs.sort(key=lambda kv: (kv[0], kv[1]))

    return urlunparse((scheme, netloc, parts.path or "/", parts.params, urlencode(query_pairs), ""))


def first_str(value: Any) -> str:
    """
    Flatten the usual "string or object or list" shapes found in embedded
    JSON down to one string.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return normalize_ws(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, list):
        for v in value:
            s = first_str(v)
            if s:
                return s
        return ""
    if isinstance(value, dict):
        for k in ("@value", "name", "text", "title", "url", "src"):
            if k in value:
                s = first_str(value[k])
                if s:
                    return s
    return ""
