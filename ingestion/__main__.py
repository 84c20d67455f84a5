"""CLI entry point for running ingestion cycles.

Usage:
    python -m ingestion run ./ingest.yaml
    python -m ingestion run ./ingest.yaml --tables ./tables.yaml --concurrency 8
    python -m ingestion validate ./tables.yaml
    python -m ingestion watermarks ./ingest.yaml
    python -m ingestion watermarks ./ingest.yaml --delete sales.orders

Exit codes:
    0  every table succeeded or had nothing to do
    1  at least one table failed, or the configuration is invalid
    130  interrupted
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from ingestion.lib.config_loader import load_settings
from ingestion.lib.dispatch import Orchestrator
from ingestion.lib.errors import IngestionError
from ingestion.lib.models import BatchReport
from ingestion.lib.observability import setup_logging
from ingestion.lib.registry import TableRegistry
from ingestion.lib.state import build_watermark_store

logger = logging.getLogger(__name__)


def print_report(report: BatchReport) -> None:
    """Print a per-table summary of a cycle."""
    print()
    print(f"Cycle {report.cycle_id}: {report!r}")
    if not report.outcomes:
        print("  (no tables)")
        return

    width = max(10, max(len(o.table_id) for o in report.outcomes))
    print(f"  {'Table':<{width}}  {'Status':<18}  {'Rows':>8}  Detail")
    print(f"  {'-' * width}  {'-' * 18}  {'-' * 8}  {'-' * 30}")
    for outcome in report.outcomes:
        if outcome.failed:
            first_line = outcome.error.splitlines()[0] if outcome.error else ""
            detail = f"{outcome.reason.value}: {first_line}"
        else:
            detail = f"{outcome.previous_marker} -> {outcome.new_marker}"
        print(
            f"  {outcome.table_id:<{width}}  {outcome.status.value:<18}  "
            f"{outcome.rows_processed:>8}  {detail}"
        )


def cmd_run(args: argparse.Namespace) -> int:
    settings = load_settings(args.config, env_file=args.env_file)
    if args.concurrency is not None:
        settings.concurrency_limit = args.concurrency
    if args.tables:
        settings.registry_path = args.tables
    settings.validate()

    orchestrator = Orchestrator.from_settings(settings)
    report = orchestrator.run_cycle()

    print_report(report)
    if args.report_file:
        Path(args.report_file).parent.mkdir(parents=True, exist_ok=True)
        Path(args.report_file).write_text(report.to_json(), encoding="utf-8")
        logger.info("Wrote report to %s", args.report_file)
    return 0 if report.succeeded else 1


def cmd_validate(args: argparse.Namespace) -> int:
    registry = TableRegistry.from_file(args.tables)
    print(f"Tables in {args.tables}:")
    for descriptor in registry.list_tables():
        print(
            f"  OK        {descriptor.table_id} "
            f"(column={descriptor.change_column}, marker={descriptor.marker_type.value}, "
            f"batch_size={descriptor.batch_size})"
        )
    for rejected in registry.rejected():
        print(f"  REJECTED  {rejected.entry_key}: {rejected.error.message}")
    print()
    print(f"{len(registry)} valid, {len(registry.rejected())} rejected")
    return 1 if registry.rejected() else 0


def cmd_watermarks(args: argparse.Namespace) -> int:
    settings = load_settings(args.config, env_file=args.env_file)
    state = settings.state
    store = build_watermark_store(
        state.backend,
        path=state.path,
        bucket=state.bucket,
        prefix=state.prefix,
        **state.client_options,
    )

    if args.delete:
        if store.delete(args.delete):
            print(f"Deleted watermark for {args.delete}")
            return 0
        print(f"No watermark stored for {args.delete}")
        return 1

    watermarks = store.list_watermarks()
    if not watermarks:
        print("No watermarks stored.")
        return 0
    width = max(10, max(len(w.table_id) for w in watermarks))
    print(f"  {'Table':<{width}}  {'Version':>7}  {'Updated':<32}  Marker")
    for wm in watermarks:
        updated = wm.updated_at.isoformat() if wm.updated_at else "-"
        print(f"  {wm.table_id:<{width}}  {wm.version:>7}  {updated:<32}  {wm.marker}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ingest-cycle",
        description="Run metadata-driven incremental ingestion cycles",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run one cycle over every table in the registry
    ingest-cycle run ./ingest.yaml

    # Check a registry file without running anything
    ingest-cycle validate ./tables.yaml

    # Force a table to reload from its initial marker
    ingest-cycle watermarks ./ingest.yaml --delete sales.orders
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--json-log",
        action="store_true",
        help="Output logs in JSON format (for log aggregation systems)",
    )
    parser.add_argument("--log-file", help="Write logs to a file in addition to console")
    parser.add_argument("--env-file", help="Load environment variables from this .env file")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run one ingestion cycle")
    run.add_argument("config", help="Orchestrator settings YAML")
    run.add_argument("--tables", help="Table registry file (overrides settings)")
    run.add_argument("--concurrency", type=int, help="Maximum concurrent tables")
    run.add_argument("--report-file", help="Write the batch report as JSON to this path")
    run.set_defaults(handler=cmd_run)

    validate = subparsers.add_parser("validate", help="Validate a table registry file")
    validate.add_argument("tables", help="Table registry file (YAML or JSON)")
    validate.set_defaults(handler=cmd_validate)

    watermarks = subparsers.add_parser("watermarks", help="List or delete stored watermarks")
    watermarks.add_argument("config", help="Orchestrator settings YAML")
    watermarks.add_argument("--delete", metavar="TABLE_ID", help="Delete one table's watermark")
    watermarks.set_defaults(handler=cmd_watermarks)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(verbose=args.verbose, json_format=args.json_log, log_file=args.log_file)

    try:
        sys.exit(args.handler(args))
    except IngestionError as e:
        logger.error("%s", e)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()
