"""Command-line interface for the migration pipeline."""

import argparse
import json
import logging
import signal
import sys
import threading
from typing import List, Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError, MigrationError
from .extractors.source_client import SourceClient
from .models.migration import MigrationConfig
from .models.report import MigrationReport
from .orchestrator import MigrationOrchestrator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_TOO_MANY_FAILURES = 1
EXIT_CONFIGURATION = 2


def load_config(args) -> MigrationConfig:
    """Build the config from the JSON file, the environment and command-line flags."""
    load_dotenv()

    config_data = {}
    if getattr(args, "config", None):
        with open(args.config) as f:
            config_data = json.load(f)

    config = MigrationConfig.from_dict(config_data).apply_env()

    if getattr(args, "dry_run", False):
        config.dry_run = True
    if getattr(args, "skip_attachments", False):
        config.skip_attachments = True
    if getattr(args, "max_failures", None) is not None:
        config.max_failures = args.max_failures
    if getattr(args, "output_dir", None):
        config.output_dir = args.output_dir

    return config


def print_report(report: MigrationReport) -> None:
    """Render a migration report."""
    print("\n" + "=" * 60)
    print(f"MIGRATION {report.status.value.upper()}" + (" (DRY RUN)" if report.dry_run else ""))
    print("=" * 60)

    for stage in report.stages:
        line = (
            f"{stage.entity_type:<20} created={stage.created} "
            f"existing={stage.skipped_existing} unmatched={stage.skipped_no_match} "
            f"failed={len(stage.failed)}"
        )
        if stage.linked:
            line += f" linked={stage.linked}"
        if stage.attachment_failures:
            line += f" attachment_failures={len(stage.attachment_failures)}"
        if stage.shortfall:
            line += f" shortfall={stage.shortfall}"
        print(line)

        for failure in stage.failed:
            print(f"    ! {failure['externalId']}: {failure['reason']}")
        for failure in stage.attachment_failures:
            print(f"    ~ {failure['externalId']}: {failure['reason']}")

    for error in report.errors:
        print(f"Error: {error}")

    print("-" * 60)
    print(f"Created: {report.total_created}")
    print(f"Failed: {report.total_failed}")
    if report.duration_seconds:
        print(f"Duration: {report.duration_seconds:.2f} seconds")


def run_migration(args) -> int:
    """Run a migration; exit code reflects the failure threshold."""
    try:
        config = load_config(args)
        config.validate()

        cancel_event = threading.Event()

        def _handle_interrupt(signum, frame):
            logger.warning("Interrupt received; stopping after the current record")
            cancel_event.set()

        signal.signal(signal.SIGINT, _handle_interrupt)

        orchestrator = MigrationOrchestrator(config, cancel_event=cancel_event)
        report = orchestrator.run_migration()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIGURATION

    print_report(report)
    if orchestrator.report_path:
        print(f"Report: {orchestrator.report_path}")

    if report.exceeds_failure_threshold(config.max_failures):
        print(
            f"\n{report.total_failed} failed records exceed the threshold of {config.max_failures}",
            file=sys.stderr,
        )
        return EXIT_TOO_MANY_FAILURES

    if report.total_failed:
        print(f"\nWarning: {report.total_failed} records failed; see the report for reasons")
    return EXIT_OK


def _source_client(args) -> SourceClient:
    config = load_config(args)
    missing = [m for m in config.missing_settings() if m.startswith("source")]
    if missing:
        raise ConfigurationError("Missing configuration: " + ", ".join(missing))
    return SourceClient(config.source)


def run_views(args) -> int:
    """List the views of a source table."""
    try:
        client = _source_client(args)
        views = client.list_views(args.table)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIGURATION
    except MigrationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_TOO_MANY_FAILURES

    print(f"\n=== Views of {args.table} ===")
    for view in views:
        print(f"  {view.name} ({view.id}){' - ' + view.type if view.type else ''}")
    return EXIT_OK


def run_record(args) -> int:
    """Print a single source record."""
    try:
        client = _source_client(args)
        record = client.get_record(args.table, args.id)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIGURATION
    except MigrationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_TOO_MANY_FAILURES

    print(json.dumps(record.to_dict(), indent=2, default=str))
    return EXIT_OK


def run_report(args) -> int:
    """Render a saved report."""
    with open(args.path) as f:
        report = MigrationReport.from_dict(json.load(f))
    print_report(report)
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Ledger Migration - Migrate storytelling records from Airtable to Supabase"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Run migration
    run_parser = subparsers.add_parser("run", help="Run the migration")
    run_parser.add_argument("--config", help="Path to migration config file")
    run_parser.add_argument("--dry-run", action="store_true", help="Simulate without writing")
    run_parser.add_argument("--skip-attachments", action="store_true", help="Do not transfer attachments")
    run_parser.add_argument("--max-failures", type=int, help="Failed records tolerated before a non-zero exit")
    run_parser.add_argument("--output-dir", help="Directory for reports and extracted data")
    run_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # List views
    views_parser = subparsers.add_parser("views", help="List the views of a source table")
    views_parser.add_argument("--config", help="Path to migration config file")
    views_parser.add_argument("--table", required=True, help="Source table name")
    views_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # Read one record
    record_parser = subparsers.add_parser("record", help="Print a single source record")
    record_parser.add_argument("--config", help="Path to migration config file")
    record_parser.add_argument("--table", required=True, help="Source table name")
    record_parser.add_argument("--id", required=True, help="Source record id")
    record_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    # Render report
    report_parser = subparsers.add_parser("report", help="Render a saved migration report")
    report_parser.add_argument("path", help="Path to a migration_report_*.json file")

    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if args.command == "run":
        return run_migration(args)
    elif args.command == "views":
        return run_views(args)
    elif args.command == "record":
        return run_record(args)
    elif args.command == "report":
        return run_report(args)

    parser.print_help()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
