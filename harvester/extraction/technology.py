"""Best-effort site technology fingerprint, recorded on insight rows."""

from __future__ import annotations

# First match wins; frameworks before the CMSs that may host them.
_SIGNATURES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("next.js", ("__NEXT_DATA__", "/_next/static/")),
    ("nuxt", ("__NUXT__", "__NUXT_DATA__", "/_nuxt/")),
    ("wordpress", ("/wp-content/", "/wp-json/", "wp-includes")),
    ("wix", ("static.wixstatic.com", "wix.com", "X-Wix-")),
    ("squarespace", ("squarespace.com", "static1.squarespace", "Static.SQUARESPACE_CONTEXT")),
    ("drupal", ("drupal-settings-json", "Drupal.settings", "/sites/default/files/")),
    ("react", ("data-reactroot", "__REACT_DEVTOOLS", "react-dom")),
)


def detect_technology(html: str) -> str:
    head = (html or "")[:200_000]
    for name, markers in _SIGNATURES:
        if any(m in head for m in markers):
            return name
    return "unknown"
