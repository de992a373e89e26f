"""
harvester.runtime.results

Unified fetch result shared by the direct and rendered fetchers.

A non-2xx response is still a *successful fetch*: it carries bytes and a
status code. Only transport failures populate ``error``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from harvester.errors import RETRYABLE_STATUS


class BlockSignal(str, Enum):
    LIKELY_BLOCKED = "likely_blocked"
    LOGIN_REQUIRED = "login_required"
    CAPTCHA_PRESENT = "captcha_present"


@dataclass(frozen=True)
class EngineError:
    type: str
    message: str
    is_retryable: bool = False


@dataclass
class FetchResult:
    url: str
    final_url: str
    status_code: Optional[int] = None
    content_type: Optional[str] = None
    text: str = ""
    elapsed_ms: float = 0.0
    fetcher: str = "direct"

    redirects: list[str] = field(default_factory=list)
    error: Optional[EngineError] = None
    block_signals: list[BlockSignal] = field(default_factory=list)
    trace: list[dict[str, Any]] = field(default_factory=list)

    @property
    def transport_failed(self) -> bool:
        return self.error is not None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code is not None and 200 <= self.status_code < 300

    @property
    def is_retryable(self) -> bool:
        if self.error:
            return self.error.is_retryable
        return self.status_code in RETRYABLE_STATUS

    def short_error(self) -> str:
        if self.ok:
            return ""
        if self.error:
            return f"{self.error.type}: {self.error.message}"
        if self.status_code:
            return f"HTTP {self.status_code}"
        return "Unknown Error"
