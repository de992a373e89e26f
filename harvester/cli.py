#!/usr/bin/env python3
"""Command-line interface for the event harvester.

Commands:
  - harvest init-db        : Create tables (idempotent)
  - harvest load-sources   : Upsert sources from a YAML/JSON seed file
  - harvest discover       : One discovery pass over eligible sources
  - harvest run            : N pipeline cycles
  - harvest recover        : Reset records stalled mid-enrichment
  - harvest health         : Counts per status, ages, failures, breaker state
  - harvest reset-source   : Close a source's circuit breaker
  - harvest cleanup        : Delete finished staging rows older than N days
  - harvest extract        : Run the extraction waterfall on a file or URL

Every command is safe to run repeatedly.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from harvester.config.settings import Settings, get_settings
from harvester.errors import HarvestError


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="harvest", description="Event harvester CLI")
    p.add_argument("--version", action="store_true", help="Print version and exit")
    p.add_argument("--database-url", default=None, help="Override HARVEST_DATABASE_URL")
    p.add_argument("--log-level", default=None, help="Override HARVEST_LOG_LEVEL")
    p.add_argument("--json-logs", action="store_true", help="Emit JSON logs")
    sub = p.add_subparsers(dest="cmd")

    sub.add_parser("init-db", help="Create database tables")

    pl = sub.add_parser("load-sources", help="Upsert sources from a seed file")
    pl.add_argument("path", help="YAML/JSON file or glob")

    pd = sub.add_parser("discover", help="Run one discovery pass")
    pd.add_argument("--source", type=int, action="append", default=None, help="Only this source id (repeatable)")
    pd.add_argument("--force", action="store_true", help="Ignore the schedule for --source ids")

    pr = sub.add_parser("run", help="Run pipeline cycles")
    pr.add_argument("--cycles", "-n", type=int, default=None, help="Maximum cycles (default: HARVEST_MAX_CYCLES)")
    pr.add_argument("--no-discovery", action="store_true", help="Only drain existing queues")
    pr.add_argument("--no-recover", action="store_true", help="Skip staleness recovery at start")
    pr.add_argument("--run-id", default=None, help="Override run_id")

    sub.add_parser("recover", help="Reset stalled records")

    ph = sub.add_parser("health", help="Print the pipeline health summary")
    ph.add_argument("--json", action="store_true", help="Print JSON")

    prs = sub.add_parser("reset-source", help="Re-enable an auto-disabled source")
    prs.add_argument("source_id", type=int)

    pc = sub.add_parser("cleanup", help="Delete finished staging records")
    pc.add_argument("--older-than-days", type=int, default=30)

    pe = sub.add_parser("extract", help="Run the extraction waterfall on a file or URL")
    pe.add_argument("target", help="Path to an HTML file, or an http(s) URL")
    pe.add_argument("--base-url", default=None, help="Base URL for resolving links (files)")
    pe.add_argument("--selector", action="append", default=None, help="Extra DOM selector (repeatable)")
    pe.add_argument("--prefer", default=None, choices=["hydration", "structured", "feed", "dom"])

    return p.parse_args(argv)


def _settings(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    updates: dict[str, Any] = {}
    if args.database_url:
        updates["DATABASE_URL"] = args.database_url
    if args.log_level:
        updates["LOG_LEVEL"] = args.log_level
    if args.json_logs:
        updates["JSON_LOGS"] = True
    return settings.model_copy(update=updates) if updates else settings


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def main(argv: list[str] | None = None) -> int:
    """Run the CLI with the given arguments."""
    try:
        return _main_impl(argv)
    except HarvestError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130


def _main_impl(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    if args.version:
        from harvester import __version__

        print(f"harvester version {__version__}")
        return 0

    if not args.cmd:
        print("Error: Command required. Use --help for usage info.", file=sys.stderr)
        return 1

    settings = _settings(args)

    from harvester.monitoring.logging import setup_logging

    setup_logging(settings.LOG_LEVEL, json_logs=settings.JSON_LOGS)

    if args.cmd == "extract":
        return _cmd_extract(args, settings)

    from harvester.pipeline.store import Store
    from harvester.pipeline.workers import utcnow

    store = Store.from_url(settings.DATABASE_URL)
    try:
        if args.cmd == "init-db":
            store.create_all()
            print(f"Tables ready on {settings.database_backend}")
            return 0

        # Every other command expects the schema; creating it is idempotent.
        store.create_all()

        if args.cmd == "load-sources":
            from harvester.config.loader import load_sources

            res = load_sources(args.path)
            for w in res.warnings:
                print(f"warning: {w}", file=sys.stderr)
            for e in res.errors:
                print(f"error: {e}", file=sys.stderr)
            created = updated = 0
            now = utcnow()
            for cfg in res.sources:
                _, was_created = store.upsert_source(cfg, now)
                created += int(was_created)
                updated += int(not was_created)
            print(f"Sources: {created} created, {updated} updated, {len(res.errors)} rejected")
            return 0 if res.ok else 2

        if args.cmd == "recover":
            from harvester.pipeline.recovery import recover_stale

            report = recover_stale(store, utcnow(), stall_threshold_s=settings.STALL_THRESHOLD_S)
            _print_json(report.to_dict())
            return 0

        if args.cmd == "health":
            from harvester.monitoring.health import format_summary, health_summary

            summary = health_summary(store, utcnow())
            if args.json:
                _print_json(summary.to_dict())
            else:
                print(format_summary(summary))
            return 0

        if args.cmd == "reset-source":
            from harvester.pipeline.recovery import reset_source

            if not reset_source(store, args.source_id, utcnow()):
                print(f"Error: source {args.source_id} not found", file=sys.stderr)
                return 1
            print(f"Source {args.source_id} reset")
            return 0

        if args.cmd == "cleanup":
            from harvester.pipeline.recovery import cleanup

            n = cleanup(store, utcnow(), older_than_days=args.older_than_days)
            print(f"Deleted {n} staging record(s)")
            return 0

        from harvester.pipeline.orchestrator import Orchestrator, build_context

        ctx = build_context(settings, store=store, run_id=getattr(args, "run_id", None))
        try:
            if args.cmd == "discover":
                from harvester.pipeline.workers import DiscoveryWorker

                report = DiscoveryWorker(ctx).scrape(source_ids=args.source, force=args.force)
                _print_json(report.to_dict())
                return 0

            if args.cmd == "run":
                run = Orchestrator(ctx).run(
                    max_cycles=args.cycles,
                    discovery=not args.no_discovery,
                    recover_first=not args.no_recover,
                )
                _print_json(run.to_dict())
                return 0
        finally:
            ctx.fetchers.close()
    finally:
        store.dispose()

    print(f"Error: unknown command {args.cmd}", file=sys.stderr)
    return 1


def _cmd_extract(args: argparse.Namespace, settings: Settings) -> int:
    from harvester.extraction import extract

    target: str = args.target
    if target.startswith(("http://", "https://")):
        from harvester.fetching.direct import DirectFetcher, DirectFetcherOptions

        with DirectFetcher(options=DirectFetcherOptions.from_settings(settings)) as fetcher:
            res = fetcher.fetch(target)
        if not res.ok:
            print(f"Error: fetch failed: {res.short_error()}", file=sys.stderr)
            return 1
        html, base_url = res.text, args.base_url or res.final_url
    else:
        p = Path(target)
        if not p.is_file():
            raise FileNotFoundError(f"HTML file not found: {p}")
        html = p.read_text(encoding="utf-8", errors="replace")
        base_url = args.base_url or p.resolve().as_uri()

    result = extract(
        html,
        base_url,
        selectors=args.selector,
        preferred=args.prefer,
        max_depth=settings.HYDRATION_MAX_DEPTH,
    )
    _print_json(result.to_dict())
    return 0


if __name__ == "__main__":
    sys.exit(main())
