"""
harvester.extraction.jsonutil

Lenient JSON decoding for payloads embedded in HTML.

Embedded JSON is often followed by more script (``window.X = {...};foo()``)
or hand-written with trailing commas and single quotes. ``decode_prefix``
reads one value starting at an offset; ``loads_lenient`` tries a single soft
repair pass before giving up with ExtractionError.
"""

from __future__ import annotations

import json
import re
from typing import Any

from harvester.errors import ExtractionError

_decoder = json.JSONDecoder()

_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_SINGLE_QUOTED = re.compile(r"'((?:[^'\\]|\\.)*)'")
_UNQUOTED_KEY = re.compile(r"([{,]\s*)([A-Za-z_$][A-Za-z0-9_$]*)\s*:")
_CONTROL = re.compile(r"[\x00-\x1f\x7f]")


def soft_repair(text: str) -> str:
    repaired = _CONTROL.sub(" ", text)
    repaired = _TRAILING_COMMA.sub(r"\1", repaired)
    repaired = _SINGLE_QUOTED.sub(lambda m: json.dumps(m.group(1).replace("\\'", "'")), repaired)
    repaired = _UNQUOTED_KEY.sub(r'\1"\2":', repaired)
    return repaired


def loads_lenient(text: str) -> Any:
    text = (text or "").strip()
    if not text:
        raise ExtractionError("empty JSON payload")
    try:
        return json.loads(text)
    except ValueError:
        pass
    try:
        return json.loads(soft_repair(text))
    except ValueError as e:
        raise ExtractionError(f"malformed JSON after repair: {e}") from e


def balanced_fragment(text: str, start: int) -> str:
    """Slice from ``start`` (an opening bracket) to its matching close."""
    opener = text[start] if start < len(text) else ""
    if opener not in "{[":
        raise ExtractionError(f"expected '{{' or '[' at offset {start}")

    depth = 0
    quote = ""
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = ""
            continue
        if ch in "\"'":
            quote = ch
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    raise ExtractionError("unbalanced JSON payload")


def decode_prefix(text: str, start: int = 0) -> Any:
    """Decode the JSON value that begins at ``start``, ignoring what follows."""
    while start < len(text) and text[start].isspace():
        start += 1
    try:
        value, _ = _decoder.raw_decode(text, start)
        return value
    except ValueError:
        return loads_lenient(balanced_fragment(text, start))
