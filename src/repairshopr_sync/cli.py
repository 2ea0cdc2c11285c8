#!/usr/bin/env python3
"""
RepairShopr Sync CLI

Operator tool for the ticket sync and business-hours analytics engine.

Usage:
    rs-sync test                  # Check every source's API credentials
    rs-sync sync [--full]         # Run one sync pass
    rs-sync status                # Recent passes and due tickets
    rs-sync report [--days 30]    # Technician / device analytics
    rs-sync check-config          # Validate configuration
"""

import argparse
import logging
import sys
from datetime import datetime, timedelta, timezone

import structlog
from colorama import Fore, Style, init

from repairshopr_sync.analytics import AnalyticsService
from repairshopr_sync.business_hours import CalendarConfigError, format_business_minutes
from repairshopr_sync.client import RepairShoprClient
from repairshopr_sync.config import ConfigError, SyncSettings, get_config_path, load_settings
from repairshopr_sync.connector import ConnectorMissingCredentialError
from repairshopr_sync.devices import DeviceCategorizer
from repairshopr_sync.orchestrator import SyncOrchestrator, SyncRequest
from repairshopr_sync.records import SyncKind, SyncStatus, utcnow
from repairshopr_sync.status import StatusNormalizer
from repairshopr_sync.store import JsonFileStore, StoreError

init()
GREEN = Fore.GREEN
RED = Fore.RED
YELLOW = Fore.YELLOW
BLUE = Fore.CYAN
RESET = Style.RESET_ALL
BOLD = Style.BRIGHT


def print_banner():
    """Print the banner."""
    print(f"""
{BLUE}╔══════════════════════════════════════════════════════════════╗
║     {BOLD}RepairShopr Sync{RESET}{BLUE}                                         ║
║     Ticket sync & business-hours analytics                   ║
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


def configure_logging(verbose: bool = False) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if verbose else logging.WARNING
        ),
    )


def parse_when(value: str) -> datetime:
    """argparse type: ISO date or datetime; naive values are UTC."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not an ISO date/datetime: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _load(args) -> SyncSettings | None:
    try:
        return load_settings(args.config)
    except ConfigError as e:
        print_error(str(e))
        return None


def _open_store(settings: SyncSettings) -> JsonFileStore:
    return JsonFileStore(settings.store_path)


def _not_configured() -> int:
    print_error("No sources configured.")
    print_info(f"Create {get_config_path()} (see config.example.json), then set keys:")
    print("    export RS_API_KEY_PLATINUM=your-api-key")
    return 1


def cmd_test(args):
    """Test every configured source connection."""
    settings = _load(args)
    if settings is None:
        return 1
    if not settings.sources:
        return _not_configured()

    failures = 0
    for source in settings.sources:
        if not source.enabled:
            print_info(f"{source.name}: disabled, skipped")
            continue
        if not source.api_key:
            print_error(f"{source.name}: no API key (RS_API_KEY_{source.name.upper()})")
            failures += 1
            continue

        print_info(f"Connecting to {source.base_url}...")
        try:
            with RepairShoprClient(source.base_url, source.api_key) as client:
                result = client.health_check()
        except ValueError as e:
            print_error(f"{source.name}: {e}")
            failures += 1
            continue

        if result["status"] == "healthy":
            print_success(f"{source.name}: authenticated as {result.get('user', 'unknown')}")
        else:
            print_error(f"{source.name}: {result.get('message', 'Unknown error')}")
            failures += 1

    return 1 if failures else 0


def cmd_sync(args):
    """Run one sync pass."""
    settings = _load(args)
    if settings is None:
        return 1
    if not settings.sources:
        return _not_configured()

    request = SyncRequest(
        kind=SyncKind.FULL if args.full else SyncKind.INCREMENTAL,
        date_from=args.date_from,
        date_to=args.date_to,
        priorities=args.priority,
    )

    print_banner()
    print(f"{BOLD}Starting {request.kind.value} sync{RESET}\n")

    try:
        orchestrator = SyncOrchestrator.from_settings(settings, _open_store(settings))
        result = orchestrator.trigger(request)
    except (ConnectorMissingCredentialError, CalendarConfigError, StoreError, ValueError) as e:
        print_error(f"Sync could not start: {e}")
        return 1

    if not result.accepted:
        print_warning(result.reason or "Sync rejected")
        return 1

    op = result.operation
    counters = op.counters()
    print(f"  Operation: {op.id}")
    for name, value in counters.items():
        print(f"  {name.capitalize():<10} {value}")

    if op.unmapped_statuses:
        print_warning("Unmapped statuses (passed through unchanged):")
        for status, count in sorted(op.unmapped_statuses.items()):
            print(f"    - {status!r}: {count}")

    if op.error_log:
        print_warning(f"Errors: {len(op.error_log)}")
        for err in op.error_log[:10]:
            print(f"    - {err}")

    if op.status == SyncStatus.COMPLETED:
        print(f"\n{GREEN}Sync complete!{RESET}")
        return 0
    print_error("Sync failed (successfully reconciled tickets were kept)")
    return 1


def cmd_status(args):
    """Show recent sync passes and due tickets."""
    settings = _load(args)
    if settings is None:
        return 1

    print_banner()
    try:
        orchestrator = SyncOrchestrator.from_settings(
            settings, _open_store(settings), connect=False
        )
        report = orchestrator.status_report()
    except (CalendarConfigError, StoreError) as e:
        print_error(f"Failed to get status: {e}")
        return 1

    print(f"{BOLD}Sync Status{RESET}\n")
    if report["running"]:
        print_info(f"Running: {report['running']}")

    if not report["recent_operations"]:
        print_warning("  No sync has run yet")
    for op in report["recent_operations"]:
        color = GREEN if op["status"] == "completed" else (RED if op["status"] == "failed" else BLUE)
        print(
            f"  {op['started_at'][:19]}  {op['kind']:<12} {color}{op['status']:<9}{RESET} "
            f"processed={op['processed']} inserted={op['inserted']} "
            f"updated={op['updated']} errors={op['errors']}"
        )

    print(f"\n{BOLD}Last 30 days:{RESET}")
    for kind, stats in report["stats_30d"].items():
        rate = f"{stats['success_rate']:.0%}" if stats["success_rate"] is not None else "n/a"
        print(f"  {kind:<12} runs={stats['total']} success={rate}")

    due = report["due_tickets"]
    print(f"\n{BOLD}Due tickets:{RESET} {due['total']}")
    for priority, count in due["by_priority"].items():
        print(f"  priority {priority}: {count}")
    return 0


def cmd_report(args):
    """Technician / device analytics for the last N days."""
    settings = _load(args)
    if settings is None:
        return 1

    end = utcnow()
    start = end - timedelta(days=args.days)
    try:
        calendar = settings.calendar.build()
        service = AnalyticsService(
            _open_store(settings),
            calendar,
            DeviceCategorizer(settings.heuristics.device_categories),
        )
        report = service.build_report(start, end, args.technician, args.device)
    except (CalendarConfigError, StoreError) as e:
        print_error(f"Failed to build report: {e}")
        return 1

    if args.json:
        print(report.model_dump_json(indent=2))
        return 0

    hours_per_day = max(1, calendar.minutes_per_day // 60)

    def fmt(minutes):
        return "n/a" if minutes is None else format_business_minutes(int(minutes), hours_per_day)

    print_banner()
    dept = report.department
    print(f"{BOLD}Department ({args.days} days){RESET}")
    print(f"  Tickets: {dept.total_tickets}   Rework rate: {dept.rework_rate:.1%}")
    print(f"  Wait avg {fmt(dept.wait.avg_minutes)} | median {fmt(dept.wait.median_minutes)} "
          f"| max {fmt(dept.wait.max_minutes)}   Grade: {dept.grade or 'n/a'}")
    for status, count in dept.counts_by_status.items():
        print(f"    {status:<28} {count}")

    print(f"\n{BOLD}Technicians{RESET}")
    for tech in report.technicians:
        print(f"  {tech.technician:<24} tickets={tech.ticket_count:<4} "
              f"avg wait={fmt(tech.avg_wait_minutes):<8} "
              f"score={tech.efficiency_score if tech.efficiency_score is not None else '-':<4} "
              f"rework={tech.rework_rate:.0%}")

    print(f"\n{BOLD}Devices{RESET}")
    for device in report.devices:
        print(f"  {device.category:<12} tickets={device.ticket_count:<4} "
              f"avg completion={fmt(device.avg_completion_minutes):<8} "
              f"top={', '.join(device.top_technicians) or '-'}")

    if report.time.peak_hours:
        print(f"\n{BOLD}Peak hours:{RESET} " + ", ".join(f"{h:02d}:00" for h in report.time.peak_hours))
    if report.rework.rework_tickets:
        print(f"\n{BOLD}Rework:{RESET} {report.rework.rework_tickets} tickets, "
              f"avg {fmt(report.rework.avg_rework_minutes)} open")
    return 0


def cmd_check_config(args):
    """Validate configuration without calling any API."""
    print_info(f"Config: {args.config or get_config_path()}")
    settings = _load(args)
    if settings is None:
        return 1

    problems = 0
    try:
        calendar = settings.calendar.build()
        print_success(
            f"Calendar: days={sorted(calendar.work_days)} "
            f"{calendar.day_start:%H:%M}-{calendar.day_end:%H:%M} {calendar.timezone_name}"
        )
    except CalendarConfigError as e:
        print_error(f"Calendar: {e}")
        problems += 1

    mapping_file = settings.heuristics.status_mapping_file
    if mapping_file:
        try:
            normalizer = StatusNormalizer.from_file(mapping_file)
            print_success(f"Status mapping v{normalizer.version}: {len(normalizer.mapping())} entries")
        except (OSError, ValueError) as e:
            print_error(f"Status mapping {mapping_file}: {e}")
            problems += 1

    if not settings.sources:
        print_warning("No sources configured")
        problems += 1
    for source in settings.sources:
        state = "enabled" if source.enabled else "disabled"
        if source.api_key:
            print_success(f"Source {source.name} ({state}): {source.base_url}")
        else:
            print_error(f"Source {source.name} ({state}): missing API key")
            problems += 1
        if source.name not in settings.policies:
            print_info(f"  no technician policy for {source.name}: all tickets in scope")

    print(f"\n{BOLD}Store:{RESET} {settings.store_path}")
    return 1 if problems else 0


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="rs-sync",
        description="RepairShopr ticket sync & business-hours analytics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  rs-sync check-config          Validate configuration
  rs-sync test                  Test every source connection
  rs-sync sync                  Incremental sync of due tickets
  rs-sync sync --full           Re-sync every status of every source
  rs-sync report --days 7       Last week's analytics
        """,
    )
    parser.add_argument("--config", help="Config file (default: $RS_SYNC_CONFIG or ~/.repairshopr-sync/config.json)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("test", help="Test source connections")

    sync_parser = subparsers.add_parser("sync", help="Run one sync pass")
    sync_parser.add_argument("--full", action="store_true", help="Fetch every status and force overwrite")
    sync_parser.add_argument("--from", dest="date_from", type=parse_when, help="Only tickets updated on/after")
    sync_parser.add_argument("--to", dest="date_to", type=parse_when, help="Only tickets updated on/before")
    sync_parser.add_argument(
        "--priority", type=int, action="append", choices=[1, 2, 3, 4],
        help="Only due tickets of this priority (repeatable)",
    )

    subparsers.add_parser("status", help="Show sync status")

    report_parser = subparsers.add_parser("report", help="Show analytics")
    report_parser.add_argument("--days", type=int, default=30, help="Window size in days")
    report_parser.add_argument("--technician", help="Only this technician")
    report_parser.add_argument("--device", help="Only this device category")
    report_parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    subparsers.add_parser("check-config", help="Validate configuration")

    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if args.command is None:
        print_banner()
        parser.print_help()
        return 0

    commands = {
        "test": cmd_test,
        "sync": cmd_sync,
        "status": cmd_status,
        "report": cmd_report,
        "check-config": cmd_check_config,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
