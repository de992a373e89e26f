"""
harvester.extraction.types

In-memory shapes produced by the extraction waterfall. Nothing here is
persisted as-is: the pipeline stores winning candidates on staging rows and
the trace summary on insight rows.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class Strategy(str, Enum):
    HYDRATION = "hydration"
    STRUCTURED = "structured"
    FEED = "feed"
    DOM = "dom"


# Highest fidelity first.
DEFAULT_ORDER: tuple[Strategy, ...] = (
    Strategy.HYDRATION,
    Strategy.STRUCTURED,
    Strategy.FEED,
    Strategy.DOM,
)


@dataclass
class EventCandidate:
    title: str
    date_text: str = ""
    venue: str = ""
    detail_url: Optional[str] = None
    image_url: Optional[str] = None
    description: str = ""
    category_hint: Optional[str] = None
    strategy: Optional[Strategy] = None

    def key(self) -> tuple[str, str, str]:
        return (self.title.casefold(), self.date_text, self.detail_url or "")

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["strategy"] = self.strategy.value if self.strategy else None
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> EventCandidate:
        strategy = d.get("strategy")
        return cls(
            title=str(d.get("title") or ""),
            date_text=str(d.get("date_text") or ""),
            venue=str(d.get("venue") or ""),
            detail_url=d.get("detail_url") or None,
            image_url=d.get("image_url") or None,
            description=str(d.get("description") or ""),
            category_hint=d.get("category_hint") or None,
            strategy=Strategy(strategy) if strategy else None,
        )


@dataclass
class StrategyTrace:
    strategy: Strategy
    attempted: bool = False
    found: int = 0
    error: Optional[str] = None
    elapsed_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "found": self.found,
            "error": self.error,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }


@dataclass
class ExtractionResult:
    strategy: Optional[Strategy]
    candidates: list[EventCandidate] = field(default_factory=list)
    trace: dict[Strategy, StrategyTrace] = field(default_factory=dict)
    feed_urls: list[str] = field(default_factory=list)
    technology: str = "unknown"
    elapsed_ms: float = 0.0

    @property
    def found(self) -> int:
        """Candidate count, or the number of feeds when the feed strategy won."""
        if self.strategy == Strategy.FEED:
            return len(self.feed_urls)
        return len(self.candidates)

    def fall_through(self, resumed: ExtractionResult) -> None:
        """
        Adopt the outcome of a resumed waterfall pass. The trace of every
        strategy the resumed pass ran replaces ours; feed URLs and entries
        it skipped are kept.
        """
        for strategy, st in resumed.trace.items():
            if st.attempted:
                self.trace[strategy] = st
        self.strategy = resumed.strategy
        self.candidates = list(resumed.candidates)
        self.elapsed_ms += resumed.elapsed_ms

    def trace_dict(self) -> dict[str, dict[str, Any]]:
        return {s.value: self.trace[s].to_dict() for s in DEFAULT_ORDER if s in self.trace}

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value if self.strategy else None,
            "candidates": [c.to_dict() for c in self.candidates],
            "trace": self.trace_dict(),
            "feed_urls": list(self.feed_urls),
            "technology": self.technology,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }
