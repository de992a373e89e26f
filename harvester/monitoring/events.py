"""Standardized lifecycle events for traceability."""

from __future__ import annotations

import logging
from typing import Any

CYCLE_STARTED = "cycle_started"
SOURCE_SCRAPED = "source_scraped"
SOURCE_AUTO_DISABLED = "source_auto_disabled"
STAGE_BATCH_DONE = "stage_batch_done"
RECORDS_RECOVERED = "records_recovered"
RUN_FINISHED = "run_finished"


def emit_event(
    logger: logging.Logger | logging.LoggerAdapter,
    event: str,
    payload: dict[str, Any] | None = None,
    *,
    level: str = "info",
    stage: str | None = None,
) -> None:
    """Emit a structured event; JsonFormatter picks up ``event`` and ``payload``."""
    lvl = getattr(logging, level.upper(), logging.INFO)
    extra: dict[str, Any] = {"event": event, "payload": payload or {}}
    if stage:
        extra["stage"] = stage
    logger.log(lvl, "Event: %s %s", event, payload or {}, extra=extra)
