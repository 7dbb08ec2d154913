#!/usr/bin/env python3
"""
Linnworks Order Sync CLI

Usage:
    lw-sync setup            # Interactive setup wizard
    lw-sync test             # Verify credentials (session exchange)
    lw-sync sync             # Run one sync now
    lw-sync retry-failed     # Retry captured failures that are due
    lw-sync check-processed  # Mark locally-open orders the vendor has processed
    lw-sync status           # Show last run and failure counts
    lw-sync schedule         # Sync every N minutes until interrupted
"""

import argparse
import getpass
import logging
import sys
import threading
from datetime import datetime, timezone

import structlog
from colorama import Fore, Style, init
from pydantic import ValidationError

from linnworks_sync.config import SyncSettings, get_config_path, load_config, save_config
from linnworks_sync.models import DateRange
from linnworks_sync.state import StateManager

init()
GREEN = Fore.GREEN
RED = Fore.RED
YELLOW = Fore.YELLOW
BLUE = Fore.CYAN
RESET = Style.RESET_ALL
BOLD = Style.BRIGHT


def configure_logging(verbose: bool = False) -> None:
    """Console logging for CLI runs. Library modules never call this."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if verbose else logging.INFO),
        cache_logger_on_first_use=True,
    )


def print_banner():
    print(f"""
{BLUE}╔══════════════════════════════════════════════════════════════╗
║     {BOLD}Linnworks Order Sync{RESET}{BLUE}                                      ║
║     Resilient order import for your sales dashboard          ║
╚══════════════════════════════════════════════════════════════╝{RESET}
""")


def print_success(msg: str):
    print(f"{GREEN}✓ {msg}{RESET}")


def print_error(msg: str):
    print(f"{RED}✗ {msg}{RESET}")


def print_warning(msg: str):
    print(f"{YELLOW}⚠ {msg}{RESET}")


def print_info(msg: str):
    print(f"{BLUE}ℹ {msg}{RESET}")


def _load_settings(args) -> SyncSettings | None:
    try:
        return load_config(getattr(args, "config", None))
    except ValidationError as e:
        print_error(f"Invalid configuration: {e}")
        return None


def _require_credentials(settings: SyncSettings) -> bool:
    if settings.has_credentials:
        return True
    print_error("Not configured.")
    print_info("Option 1: Run 'lw-sync setup' for interactive setup")
    print_info("Option 2: Set environment variables:")
    print("    export LINNWORKS_APPLICATION_ID=your-app-id")
    print("    export LINNWORKS_APPLICATION_SECRET=your-app-secret")
    print("    export LINNWORKS_INSTALLATION_TOKEN=your-installation-token")
    return False


def _build_runner(settings: SyncSettings):
    from linnworks_sync.sync import OrderSyncRunner

    return OrderSyncRunner.from_settings(settings)


def _parse_range(args, settings: SyncSettings) -> DateRange:
    now = datetime.now(timezone.utc)
    if getattr(args, "since", None):
        start = datetime.fromisoformat(args.since)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        return DateRange(start=start, end=now)
    days = getattr(args, "days", None) or settings.default_lookback_days
    return DateRange.last_days(days, now=now)


def cmd_setup(args):
    """Interactive setup wizard."""
    print_banner()
    print(f"{BOLD}Setup Wizard{RESET}")
    print("Let's configure your Linnworks application credentials.\n")

    settings = _load_settings(args) or SyncSettings()

    application_id = input(f"Application ID [{settings.application_id or ''}]: ").strip()
    secret = getpass.getpass("Application secret (hidden, blank to keep): ").strip()
    token = getpass.getpass("Installation token (hidden, blank to keep): ").strip()

    update = {}
    if application_id:
        update["application_id"] = application_id
    if secret:
        update["application_secret"] = secret
    if token:
        update["installation_token"] = token

    settings = SyncSettings.model_validate({**settings.to_file_dict(), **update})
    path = save_config(settings, getattr(args, "config", None))
    print_success(f"Configuration saved to {path}")

    if settings.has_credentials:
        print()
        return cmd_test(args, settings)
    return 0


def cmd_test(args, settings: SyncSettings | None = None):
    """Exchange credentials for a session token."""
    settings = settings or _load_settings(args)
    if settings is None or not _require_credentials(settings):
        return 1

    print_info(f"Authorizing against {settings.base_url}...")

    runner = _build_runner(settings)
    try:
        result = runner.client.health_check(settings.account_id)
    finally:
        runner.close()

    if result["status"] == "healthy":
        print_success("Connected successfully!")
        print_success(f"Server: {result['server']}")
        print_info(f"Session valid until {result['expires_at']}")
        return 0

    print_error(f"Connection failed: {result.get('message', 'Unknown error')}")
    return 1


def _print_sync_result(result) -> None:
    counts = result.summary.counts()
    colour = GREEN if result.success else YELLOW
    print(f"\n{colour}{BOLD}Sync {'complete' if result.success else 'finished with problems'}{RESET}")
    print(f"  Range:     {result.date_range.start:%Y-%m-%d %H:%M} → {result.date_range.end:%Y-%m-%d %H:%M} UTC")
    print(f"  Processed: {counts['processed']}")
    print(f"  Created:   {counts['created']}")
    print(f"  Updated:   {counts['updated']}")
    print(f"  Skipped:   {counts['skipped']}")
    if counts["failed"]:
        print_warning(f"  Failed:    {counts['failed']} (captured for retry)")
    if result.failed_pages:
        print_warning(f"  Pages dropped after retries: {result.failed_pages}")
    if result.skipped_exhausted:
        print_warning(f"  Skipped exhausted orders: {result.skipped_exhausted}")
    if result.cancelled:
        print_warning("  Run was cancelled")
    if result.error:
        print_error(f"  {result.error}")
    for err in result.errors[:5]:
        print(f"    - {err}")


def cmd_sync(args):
    """Manual trigger: one sync run."""
    settings = _load_settings(args)
    if settings is None or not _require_credentials(settings):
        return 1

    print_banner()
    date_range = _parse_range(args, settings)

    from linnworks_sync.events import BatchProcessed

    runner = _build_runner(settings)
    runner.bus.subscribe(
        BatchProcessed,
        lambda e: print(
            f"\r{BLUE}Batch {e.batch_index}/{e.total_batches} | processed {e.processed} "
            f"| {e.throughput_per_second:.1f}/s{RESET}",
            end="",
        ),
    )

    try:
        result = runner.run_sync(date_range, force_update=args.force)
        if runner.warmer is not None:
            runner.warmer.wait(timeout=60)
    except KeyboardInterrupt:
        print_warning("\nInterrupted")
        return 130
    finally:
        runner.close()

    _print_sync_result(result)
    return 0 if result.success else 1


def cmd_retry_failed(args):
    settings = _load_settings(args)
    if settings is None:
        return 1

    runner = _build_runner(settings)
    try:
        sweep = runner.retry_failed(limit=args.limit)
        exhausted = runner.recovery.list_exhausted()
    finally:
        runner.close()

    print(f"{BOLD}Recovery sweep{RESET}")
    print(f"  Attempted:   {sweep.attempted}")
    print_success(f"  Resolved:    {sweep.resolved}")
    print(f"  Rescheduled: {sweep.rescheduled}")
    if sweep.exhausted:
        print_error(f"  Exhausted:   {sweep.exhausted}")

    if exhausted:
        print_warning(f"\n{len(exhausted)} order(s) need operator attention:")
        for row in exhausted[:20]:
            print(f"    - {row['identifier']}: {row['last_failure_reason']}")
    return 0


def cmd_check_processed(args):
    settings = _load_settings(args)
    if settings is None or not _require_credentials(settings):
        return 1

    runner = _build_runner(settings)
    try:
        summary = runner.check_processed_orders(limit=args.limit)
    finally:
        runner.close()

    print(f"{BOLD}Processed status check{RESET}")
    print(f"  Checked:   {summary.checked}")
    print_success(f"  Marked:    {summary.marked}")
    print(f"  Unchanged: {summary.unchanged}")
    if summary.missing:
        print_warning(f"  Not found locally: {summary.missing}")
    return 0


def cmd_status(args):
    """Show sync status."""
    print_banner()

    settings = _load_settings(args)
    if settings is None:
        return 1

    checkpoint = StateManager(settings.state_file).load()
    print(f"{BOLD}Sync Status{RESET}\n")

    if checkpoint.last_successful_sync:
        print(f"  Last successful sync: {checkpoint.last_successful_sync:%Y-%m-%d %H:%M:%S} UTC")
    else:
        print_warning("  No successful sync yet")

    if checkpoint.run_started_at:
        print(f"\n{BOLD}Last Run:{RESET}")
        print(f"  Run id:  {checkpoint.last_run_id}")
        print(f"  Started: {checkpoint.run_started_at:%Y-%m-%d %H:%M:%S} UTC")
        if checkpoint.interrupted:
            print_warning("  Run did not finish")
        else:
            state = f"{GREEN}success{RESET}" if checkpoint.last_success else f"{RED}failed{RESET}"
            print(f"  Result:  {state}")
        for key, value in checkpoint.last_summary.items():
            print(f"  {key.capitalize():<9} {value}")
        if checkpoint.errors:
            print_warning(f"  Errors: {len(checkpoint.errors)}")

    from linnworks_sync.db import create_store
    from linnworks_sync.importer import OrderImportEngine
    from linnworks_sync.recovery import FailedSyncRecovery

    session_factory = create_store(settings.database_url)
    recovery = FailedSyncRecovery(session_factory, OrderImportEngine(session_factory))
    stats = recovery.get_stats()
    print(f"\n{BOLD}Failed Syncs:{RESET}")
    print(f"  Pending:   {stats['pending']}")
    print(f"  Resolved:  {stats['resolved']}")
    if stats["exhausted"]:
        print_error(f"  Exhausted: {stats['exhausted']}")
    else:
        print("  Exhausted: 0")
    return 0


def cmd_schedule(args):
    """Scheduled trigger: same run_sync as the manual command, on a timer."""
    settings = _load_settings(args)
    if settings is None or not _require_credentials(settings):
        return 1

    interval = args.interval or settings.schedule_interval_minutes
    print_banner()
    print_info(f"Syncing every {interval} minute(s). Ctrl+C to stop.")

    stop = threading.Event()
    runner = _build_runner(settings)
    try:
        runs = runner.run_scheduled(interval, cancel_event=stop, max_runs=args.max_runs)
    except KeyboardInterrupt:
        stop.set()
        print_warning("\nStopping scheduler")
        return 0
    finally:
        runner.close()

    print_success(f"Scheduler finished after {runs} run(s)")
    return 0


def main(argv: list[str] | None = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Linnworks Order Sync CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  lw-sync setup                 Interactive setup wizard
  lw-sync test                  Verify credentials
  lw-sync sync --days 7         Sync the last week
  lw-sync retry-failed          Retry captured failures
  lw-sync schedule --interval 15
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--config", help=f"Config file (default: {get_config_path()})")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("setup", help="Interactive setup wizard")
    subparsers.add_parser("test", help="Test your credentials")

    sync_parser = subparsers.add_parser("sync", help="Run one sync now")
    sync_parser.add_argument("--days", type=int, help="Lookback window in days")
    sync_parser.add_argument("--since", help="ISO start date (overrides --days)")
    sync_parser.add_argument("--force", action="store_true", help="Rewrite orders even if unchanged")

    retry_parser = subparsers.add_parser("retry-failed", help="Retry failed order imports that are due")
    retry_parser.add_argument("--limit", type=int, default=50)

    check_parser = subparsers.add_parser("check-processed", help="Update processed status of open orders")
    check_parser.add_argument("--limit", type=int, default=None)

    subparsers.add_parser("status", help="Show sync status")

    schedule_parser = subparsers.add_parser("schedule", help="Sync on an interval")
    schedule_parser.add_argument("--interval", type=float, help="Minutes between runs")
    schedule_parser.add_argument("--max-runs", type=int, default=None)

    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "setup": cmd_setup,
        "test": cmd_test,
        "sync": cmd_sync,
        "retry-failed": cmd_retry_failed,
        "check-processed": cmd_check_processed,
        "status": cmd_status,
        "schedule": cmd_schedule,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
