"""
Tests for structured logging, lifecycle events and the metrics registry.
"""

import json
import logging
import sys
import threading

from harvester.monitoring.events import SOURCE_SCRAPED, emit_event
from harvester.monitoring.logging import (
    ROOT_LOGGER,
    JsonFormatter,
    TextFormatter,
    setup_logging,
    with_context,
)
from harvester.monitoring.metrics import MetricsRegistry


def _record(msg="hello", **extra):
    record = logging.LogRecord("harvester.test", logging.INFO, __file__, 1, msg, None, None)
    for k, v in extra.items():
        setattr(record, k, v)
    return record


class TestFormatters:
    def test_json_formatter(self):
        line = JsonFormatter().format(
            _record(run_id="r1", source_id=7, stage="discovery", event="source_scraped", payload={"staged": 2})
        )
        data = json.loads(line)

        assert data["level"] == "INFO"
        assert data["logger"] == "harvester.test"
        assert data["msg"] == "hello"
        assert data["run_id"] == "r1"
        assert data["source_id"] == 7
        assert data["event"] == "source_scraped"
        assert data["payload"] == {"staged": 2}

    def test_json_formatter_without_context(self):
        data = json.loads(JsonFormatter().format(_record()))
        assert "run_id" not in data
        assert "payload" not in data

    def test_text_formatter(self):
        line = TextFormatter().format(_record(run_id="r1", source_id=7))
        assert "INFO harvester.test [run=r1 source=7] hello" in line

    def test_text_formatter_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("harvester.test", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())
        assert "RuntimeError: boom" in TextFormatter().format(record)


class TestSetupLogging:
    def test_idempotent(self, tmp_path):
        log_file = tmp_path / "logs" / "harvest.log"

        setup_logging("DEBUG", log_file=log_file)
        logger = setup_logging("DEBUG", json_logs=True, log_file=log_file)

        assert logger.name == ROOT_LOGGER
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 2
        assert all(isinstance(h.formatter, JsonFormatter) for h in logger.handlers)

        logging.getLogger("harvester.pipeline").info("written")
        for h in logger.handlers:
            h.flush()
        assert json.loads(log_file.read_text(encoding="utf-8").strip().splitlines()[-1])["msg"] == "written"

    def test_unknown_level_falls_back_to_info(self):
        assert setup_logging("chatty").level == logging.INFO


class TestContext:
    def test_with_context_merges(self, caplog):
        base = with_context(logging.getLogger("harvester.test"), run_id="r1", stage="fetch")
        log = with_context(base, source_id=3)

        with caplog.at_level(logging.INFO, logger="harvester"):
            log.info("fetched")

        record = caplog.records[-1]
        assert (record.run_id, record.stage, record.source_id) == ("r1", "fetch", 3)

    def test_emit_event(self, caplog):
        log = with_context(logging.getLogger("harvester.test"), run_id="r1")

        with caplog.at_level(logging.INFO, logger="harvester"):
            emit_event(log, SOURCE_SCRAPED, {"staged": 2}, stage="discovery")
            emit_event(log, "something_odd", level="warning")

        first, second = caplog.records[-2:]
        assert first.event == SOURCE_SCRAPED
        assert first.payload == {"staged": 2}
        assert first.stage == "discovery"
        assert first.run_id == "r1"
        assert second.levelno == logging.WARNING
        assert second.payload == {}


class TestMetricsRegistry:
    def test_counters_with_labels(self):
        m = MetricsRegistry()
        m.inc("records.advanced", labels={"stage": "fetch"})
        m.inc("records.advanced", 2, labels={"stage": "fetch"})
        m.inc("records.advanced", labels={"stage": "index"})

        assert m.get("records.advanced", labels={"stage": "fetch"}) == 3
        assert m.get("records.advanced", labels={"stage": "index"}) == 1
        assert m.get("records.advanced") == 0
        assert "records.advanced|stage=fetch" in m.as_dict()["counters"]

    def test_gauges_and_timers(self):
        m = MetricsRegistry()
        m.set_gauge("queue.depth", 5, labels={"status": "discovered"})
        m.set_gauge("queue.depth", 2, labels={"status": "discovered"})
        m.observe("scrape_ms", 10)
        m.observe("scrape_ms", 30)
        with m.time("cycle_s"):
            pass

        d = m.as_dict()
        assert d["gauges"]["queue.depth|status=discovered"] == 2
        assert d["timers"]["scrape_ms"] == {"sum": 40, "count": 2, "max": 30, "min": 10}
        assert d["timers"]["cycle_s"]["count"] == 1

    def test_thread_safe_increments(self):
        m = MetricsRegistry()

        def work():
            for _ in range(1000):
                m.inc("hits")

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert m.get("hits") == 8000
