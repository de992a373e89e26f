"""
harvester.config.schema

Pydantic models defining the source seed-file contract.

A seed file holds either a single source object or a list of them (optionally
under a top-level ``sources`` key). Sources are never deleted by loading, so
the schema only has to describe what can be created or updated.
"""

from __future__ import annotations

from enum import Enum
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from harvester.extraction.types import Strategy


class FetchStrategy(str, Enum):
    direct = "direct"
    rendered = "rendered"


class SourceHints(BaseModel):
    """Free-form extraction hints. Unknown keys are preserved."""

    model_config = ConfigDict(extra="allow")

    selectors: list[str] = Field(
        default_factory=list,
        description="Custom CSS selectors tried before the generic DOM selectors.",
    )
    url_patterns: list[str] = Field(
        default_factory=list,
        description="Regex patterns a candidate detail URL must match to be staged.",
    )
    city: str | None = Field(default=None, description="Appended to venue text when geocoding.")
    preferred_strategy: Strategy | None = None
    feed_urls: list[str] = Field(default_factory=list)


class SourceConfig(BaseModel):
    name: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    fetch_strategy: FetchStrategy = Field(default=FetchStrategy.direct)
    enabled: bool = True
    hints: SourceHints = Field(default_factory=SourceHints)

    @field_validator("url")
    @classmethod
    def _absolute_http_url(cls, v: str) -> str:
        v = v.strip()
        p = urlparse(v)
        if p.scheme not in ("http", "https") or not p.netloc:
            raise ValueError(f"url must be an absolute http(s) URL, got {v!r}")
        return v

    def hints_dict(self) -> dict[str, Any]:
        """Hints as a JSON-ready dict, without empty defaults."""
        return self.hints.model_dump(mode="json", exclude_defaults=True)
