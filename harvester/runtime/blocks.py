"""
harvester.runtime.blocks

Minimal block-page classifier. The signals end up on FetchResult and in the
insight row, so a source that starts serving captchas is visible before the
circuit breaker trips.
"""

from __future__ import annotations

import re

from .results import BlockSignal

_PATTERNS = {
    BlockSignal.CAPTCHA_PRESENT: [
        r"\bcaptcha\b",
        r"\bverify you are human\b",
        r"\bcf-challenge\b",
    ],
    BlockSignal.LIKELY_BLOCKED: [
        r"\baccess denied\b",
        r"\bunusual traffic\b",
        r"\brequest blocked\b",
    ],
    BlockSignal.LOGIN_REQUIRED: [
        r"\blogin required\b",
        r"\bplease log ?in\b",
        r"\benable javascript\b",
    ],
}

# Only look at the head of large documents; block pages are small.
_SCAN_LIMIT = 20_000


def classify_blocks(text: str | None) -> list[BlockSignal]:
    if not text:
        return []

    text_lower = text[:_SCAN_LIMIT].lower()
    signals = []
    for signal, patterns in _PATTERNS.items():
        for p in patterns:
            if re.search(p, text_lower):
                signals.append(signal)
                break
    return signals
