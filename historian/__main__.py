"""CLI entry point for running and inspecting merge pipelines.

Usage:
    python -m historian run ./warehouse.yaml
    python -m historian run ./warehouse.yaml --max-workers 8 --batch-size 5000
    python -m historian watermarks --config ./warehouse.yaml
    python -m historian history ./warehouse/dim_product.parquet P1
    python -m historian as-of ./warehouse/dim_product.parquet P1 2025-01-15T00:00:00Z
    python -m historian validate ./warehouse/dim_product.parquet
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from historian.lib.config import load_config
from historian.lib.dimension import DimensionTable
from historian.lib.errors import PipelineError
from historian.lib.models import DimensionVersionRow, format_timestamp, to_timestamp
from historian.lib.observability import setup_logging
from historian.lib.pipeline import BatchResult, CancellationToken
from historian.lib.runner import RunSummary, run_pipelines
from historian.lib.watermark import WatermarkStore, get_state_dir

logger = logging.getLogger(__name__)


def _open_dimension(path: str) -> DimensionTable:
    table_path = Path(path)
    if not table_path.exists():
        print(f"Error: Dimension file not found: {table_path}")
        sys.exit(1)
    return DimensionTable(table_path.stem, table_path)


def _print_rows(rows: List[DimensionVersionRow]) -> None:
    print(f"  {'SK':>6}  {'Valid From':<22}  {'Valid To':<22}  {'Active':<6}  Attributes")
    print(f"  {'-' * 6}  {'-' * 22}  {'-' * 22}  {'-' * 6}  {'-' * 30}")
    for row in rows:
        valid_to = "open" if row.is_open else format_timestamp(row.valid_to)
        attrs = json.dumps(dict(row.attributes), sort_keys=True, default=str)
        print(
            f"  {row.surrogate_key:>6}  {format_timestamp(row.valid_from):<22}  "
            f"{valid_to:<22}  {'yes' if row.is_active else 'no':<6}  {attrs}"
        )


def print_summary(summary: RunSummary) -> None:
    """Print run results in a human-readable format."""
    print()
    print("=" * 60)
    print("RUN COMPLETE" if summary.ok else "RUN FINISHED WITH FAILURES")
    print("=" * 60)

    for result in summary.results:
        _print_result(result)

    print()
    print(f"Elapsed: {summary.elapsed_seconds:.2f}s")
    print("=" * 60)


def _print_result(result: BatchResult) -> None:
    label = f"{result.source_system}.{result.entity}"
    print(f"\n{label}  [{result.status.value}]")
    print("-" * 40)
    if result.batch_id:
        print(f"  Batch:       {result.batch_id}")
    data = result.to_dict()
    if data["position"] is not None:
        print(f"  Position:    {data['since']} -> {data['position']}")
    print(f"  Records:     {result.records}")
    if result.inserted or result.expired or result.unchanged:
        print(f"  Inserted:    {result.inserted}")
        print(f"  Expired:     {result.expired}")
        print(f"  Unchanged:   {result.unchanged}")
    if result.superseded:
        print(f"  Superseded:  {result.superseded}")
    if result.appended or result.duplicates:
        print(f"  Appended:    {result.appended}")
        print(f"  Duplicates:  {result.duplicates}")
    if result.quarantined:
        reasons = ", ".join(f"{k}={v}" for k, v in data["quarantine_reasons"].items())
        print(f"  Quarantined: {result.quarantined} ({reasons})")
    if result.error:
        print(f"  Error:       {result.error.get('error_type')}: {result.error.get('message')}")


def run_command(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    cancel = CancellationToken()
    summary = run_pipelines(
        config,
        max_workers=args.max_workers,
        batch_size=args.batch_size,
        cancel=cancel,
    )
    if args.json:
        print(json.dumps(summary.to_dict(), indent=2, default=str))
    else:
        print_summary(summary)
    return 0 if summary.ok else 1


def watermarks_command(args: argparse.Namespace) -> int:
    if args.config:
        state_dir: Any = load_config(args.config).state_dir
    else:
        state_dir = args.state_dir or get_state_dir()

    store = WatermarkStore(state_dir)
    watermarks = store.list_watermarks()

    if args.json:
        print(json.dumps({k: v.to_dict() for k, v in watermarks.items()}, indent=2))
        return 0

    if not watermarks:
        print(f"No watermarks in {store.state_dir}")
        return 0

    width = max(10, max(len(k) for k in watermarks))
    print(f"  {'Entity':<{width}}  {'Position':<26}  {'Age (h)':>8}  Last Batch")
    print(f"  {'-' * width}  {'-' * 26}  {'-' * 8}  {'-' * 32}")
    for key, record in watermarks.items():
        position = record.to_dict()["position"]
        age = store.get_watermark_age(record.source_system, record.entity) or 0.0
        print(f"  {key:<{width}}  {str(position):<26}  {age:>8.1f}  {record.last_batch_id or ''}")
    return 0


def history_command(args: argparse.Namespace) -> int:
    table = _open_dimension(args.table)
    rows = table.history(args.key)
    if not rows:
        print(f"No history for key '{args.key}' in {table.name}")
        return 1

    print(f"\nHistory of {args.key} in {table.name}:")
    _print_rows(rows)
    return 0


def as_of_command(args: argparse.Namespace) -> int:
    table = _open_dimension(args.table)
    try:
        at = to_timestamp(args.timestamp)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    row = table.as_of(args.key, at)
    if row is None:
        print(
            f"No version of '{args.key}' valid at {format_timestamp(at)}; "
            f"facts resolve to the unknown member ({table.unknown_surrogate_key})"
        )
        return 0

    _print_rows([row])
    return 0


def validate_command(args: argparse.Namespace) -> int:
    table = _open_dimension(args.table)
    issues = table.validate()

    print()
    print("=" * 60)
    print(f"HISTORY AUDIT: {table.name}")
    print("=" * 60)
    print(f"Keys:    {len(table.natural_keys())}")
    print(f"Rows:    {len(table)}")
    print(f"Batches: {len(table.applied_batches)}")

    if not issues:
        print()
        print("RESULT: PASSED - every key has a contiguous history")
        return 0

    print()
    for key, problems in issues.items():
        print(f"  {key}:")
        for problem in problems:
            print(f"    - {problem}")
    print()
    print(f"RESULT: FAILED - {len(issues)} key(s) with broken history")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="historian",
        description="Watermark-tracked incremental loads into SCD2 dimensions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run every dimension and fact pipeline in a config
    python -m historian run ./warehouse.yaml

    # Show committed watermarks and their age
    python -m historian watermarks --config ./warehouse.yaml

    # Which version of P1 was valid on Jan 15?
    python -m historian as-of ./warehouse/dim_product.parquet P1 2025-01-15
""",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--json-log",
        action="store_true",
        help="Output logs in JSON format (for log aggregation)",
    )
    parser.add_argument("--log-file", help="Write logs to this file as well")

    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Run pipelines from a YAML config")
    run.add_argument("config", help="Path to the run config (YAML)")
    run.add_argument("--max-workers", type=int, help="Entities processed in parallel")
    run.add_argument("--batch-size", type=int, help="Records per batch")
    run.add_argument("--json", action="store_true", help="Print results as JSON")
    run.set_defaults(func=run_command)

    marks = subparsers.add_parser("watermarks", help="List committed watermarks")
    marks.add_argument("--state-dir", help="State directory (default: HISTORIAN_STATE_DIR or .state)")
    marks.add_argument("--config", help="Take the state directory from a run config")
    marks.add_argument("--json", action="store_true", help="Print watermarks as JSON")
    marks.set_defaults(func=watermarks_command)

    history = subparsers.add_parser("history", help="Show every version of a natural key")
    history.add_argument("table", help="Dimension Parquet file")
    history.add_argument("key", help="Natural key")
    history.set_defaults(func=history_command)

    as_of = subparsers.add_parser("as-of", help="Show the version valid at a timestamp")
    as_of.add_argument("table", help="Dimension Parquet file")
    as_of.add_argument("key", help="Natural key")
    as_of.add_argument("timestamp", help="ISO-8601 timestamp (UTC if no offset)")
    as_of.set_defaults(func=as_of_command)

    validate = subparsers.add_parser("validate", help="Audit dimension history contiguity")
    validate.add_argument("table", help="Dimension Parquet file")
    validate.set_defaults(func=validate_command)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    setup_logging(
        verbose=args.verbose,
        json_format=args.json_log,
        log_file=args.log_file,
    )

    try:
        exit_code = args.func(args)

    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(130)

    except (PipelineError, FileNotFoundError) as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"\nError: {e}")
        sys.exit(1)

    except Exception as e:
        logger.exception("%s failed: %s", args.command, e)
        print(f"\nError: {e}")
        sys.exit(1)

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
