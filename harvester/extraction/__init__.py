"""Waterfall extraction of event candidates from arbitrary HTML."""

from .feeds import discover_feeds, read_feed
from .types import DEFAULT_ORDER, EventCandidate, ExtractionResult, Strategy, StrategyTrace
from .waterfall import extract, strategy_order

__all__ = [
    "DEFAULT_ORDER",
    "EventCandidate",
    "ExtractionResult",
    "Strategy",
    "StrategyTrace",
    "discover_feeds",
    "extract",
    "read_feed",
    "strategy_order",
]
