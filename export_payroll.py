"""
Export time-tracking data to payroll systems.

Usage:
    # List installed formats and connectors
    python export_payroll.py formats

    # Check credentials and connectivity of an API connector
    python export_payroll.py test-connection personio

    # Dry-run (default) - shows what would be exported
    python export_payroll.py export datev_lohn --from 2026-01-01 --to 2026-01-31

    # Execute - writes the file / pushes the records
    python export_payroll.py export datev_lohn --from 2026-01-01 --to 2026-01-31 --execute
"""

import argparse
import os
import sys

from connectors import Connector
from errors import PayrollExportError
from formatters import Formatter
from mapping import EmployeeResolver, WageTypeResolver
from models import DateRange, ExportFilters, JobStatus, ProviderKind
from orchestrator import ExportOrchestrator
from patterns import Patterns
from registry import ExportRegistry, build_default_registry
from stores import InMemoryJobStore, LocalObjectStore, StaticDataSource, StaticSecretStore
from transformers import prepare_requests
from utils import configure_logging, load_config_safe, parse_date

DEFAULT_OUT_DIR = "exports"
PREVIEW_LINES = 10


# ============================================================================
# Setup
# ============================================================================


def build_orchestrator(config: dict) -> tuple[ExportOrchestrator, StaticDataSource, ExportRegistry]:
    org = config["organization_id"]
    secrets = StaticSecretStore({org: config.get("secrets", {})})
    registry = build_default_registry(secrets)
    data = StaticDataSource.from_json(config["data_file"], org)
    storage_root = config.get("storage", {}).get("root", DEFAULT_OUT_DIR)
    orchestrator = ExportOrchestrator(registry, data, InMemoryJobStore(), LocalObjectStore(storage_root))
    return orchestrator, data, registry


# ============================================================================
# Commands
# ============================================================================


def cmd_formats(registry: ExportRegistry) -> int:
    print()
    print("[*] Installed formats:")
    for info in registry.available_formats():
        print(f"    {info.format_id:<20} {info.family:<10} {info.name} ({info.version})")
    return 0


def cmd_test_connection(orchestrator: ExportOrchestrator, org: str, format_id: str) -> int:
    print(f"[*] Testing connection for {format_id}...", end=" ", flush=True)
    result = orchestrator.test_connection(org, format_id)
    if result.success:
        print("OK")
        return 0
    print("FAILED")
    print(f"    [!] {result.error}")
    return 1


def cmd_time_off_types(registry: ExportRegistry, data: StaticDataSource, org: str) -> int:
    connector = registry.get_connector(ProviderKind.PERSONIO)
    config = data.get_export_config(org, ProviderKind.PERSONIO)
    types = connector.get_time_off_types(org, config.config if config else {})
    print()
    print(f"[*] Personio time-off types ({len(types)}):")
    for item in types:
        print(f"    {item.get('id')!s:<10} {item.get('name', '')}")
    return 0


def preview(
    impl: Formatter | Connector,
    data: StaticDataSource,
    org: str,
    filters: ExportFilters,
) -> None:
    """Show what an export would do without writing or pushing anything."""
    config = data.get_export_config(org, impl.id)
    settings = config.config if config else {}
    mappings = data.get_wage_type_mappings(config.id) if config else []
    work_periods = data.fetch_work_periods(org, filters)
    absences = data.fetch_absences(org, filters)

    print(f"    Work periods: {len(work_periods)}, Absences: {len(absences)}")

    if isinstance(impl, Formatter):
        text = impl.render(work_periods, absences, mappings, settings)
        lines = text.split("\r\n")
        print(f"    CSV lines: {len(lines)} (showing up to {PREVIEW_LINES})")
        for line in lines[:PREVIEW_LINES]:
            print(f"      {line}")
        return

    merged = impl.merged_config(settings)
    prepared = prepare_requests(
        work_periods,
        absences,
        WageTypeResolver(mappings, impl.kind),
        EmployeeResolver(merged["employeeMatchStrategy"], numeric_ids=impl.rules.numeric_ids),
        include_zero_hours=merged["includeZeroHours"],
        check_absence_code=impl.rules.check_absence_code,
    )
    print(f"    Attendances to push: {len(prepared.attendances)}")
    print(f"    Absences to push:    {len(prepared.absences)}")
    print(f"    Skipped:             {len(prepared.skipped)}")
    for skipped in prepared.skipped:
        print(f"      - {skipped.record_type} {skipped.record_id}: {skipped.reason}")
    for error in prepared.unresolved:
        print(f"      [!] {error.record_type} {error.record_id}: {error.error_message}")


def cmd_export(
    orchestrator: ExportOrchestrator,
    data: StaticDataSource,
    config: dict,
    args: argparse.Namespace,
) -> int:
    org = config["organization_id"]
    mode = "EXECUTE" if args.execute else "DRY-RUN"

    print()
    print("=" * 70)
    print(f"PAYROLL EXPORT | {args.format} | {args.date_from} to {args.date_to} | Mode: {mode}")
    print("=" * 70)
    print()

    impl = orchestrator.registry.get(args.format)
    if impl is None:
        print(f"[!] Unknown format '{args.format}'. Run 'formats' to list them.")
        return 1

    filters = ExportFilters(
        date_range=DateRange(parse_date(args.date_from), parse_date(args.date_to)),
        employee_ids=args.employee or None,
        team_ids=args.team or None,
        project_ids=args.project or None,
    )

    if not args.execute:
        print("[1] Preview:")
        preview(impl, data, org, filters)
        print()
        print("[*] Dry-run only. Use --execute to export.")
        return 0

    print("[1] Creating export job...")
    created = orchestrator.create_export_job(org, args.format, config.get("requested_by", "cli"), filters)
    print(f"    Job {created.job_id} ({'async' if created.is_async else 'sync'})")

    print()
    print("[2] Processing...")
    result = orchestrator.process_export_job(created.job_id)
    job = orchestrator.jobs.get_job(created.job_id)

    if result.file_result:
        os.makedirs(args.out, exist_ok=True)
        path = os.path.join(args.out, result.file_result.file_name)
        with open(path, "wb") as f:
            f.write(result.file_result.content)
        print(f"    [+] Wrote {path} ({len(result.file_result.content)} bytes)")
        if result.download_url:
            print(f"    [+] Download: {result.download_url}")

    if result.api_result:
        api = result.api_result
        print(f"    Synced: {api.synced_records}, Failed: {api.failed_records}, Skipped: {api.skipped_records}")
        print(f"    API calls: {api.api_call_count}, Duration: {api.duration_ms} ms")
        for error in api.errors:
            print(f"    [!] {error.record_type} {error.record_id}: {error.error_message}")

    print()
    if job.status == JobStatus.COMPLETED:
        print("[+] Export completed.")
        return 0
    print(f"[!] Export {job.status}: {job.error_message}")
    return 1


# ============================================================================
# CLI
# ============================================================================


def valid_date(value: str) -> str:
    if not Patterns.DATE_FORMAT.match(value):
        raise argparse.ArgumentTypeError(f"Invalid date '{value}'. Expected YYYY-MM-DD")
    return value


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Export time-tracking data to payroll systems",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python export_payroll.py formats
    python export_payroll.py test-connection successfactors_api
    python export_payroll.py time-off-types
    python export_payroll.py export lexware_lohn --from 2026-01-01 --to 2026-01-31 --execute
        """,
    )
    parser.add_argument("--config", default="config.json", help="Path to config.json")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("formats", help="List installed formats and connectors")

    test = sub.add_parser("test-connection", help="Test an API connector")
    test.add_argument("format", help="Format id, e.g. personio")

    sub.add_parser("time-off-types", help="List Personio time-off types for absence mappings")

    export = sub.add_parser("export", help="Export a date range")
    export.add_argument("format", help="Format id, e.g. datev_lohn")
    export.add_argument("--from", dest="date_from", required=True, type=valid_date, help="First day (YYYY-MM-DD)")
    export.add_argument("--to", dest="date_to", required=True, type=valid_date, help="Last day (YYYY-MM-DD)")
    export.add_argument("--employee", action="append", default=[], help="Only this employee id (repeatable)")
    export.add_argument("--team", action="append", default=[], help="Only this team id (repeatable)")
    export.add_argument("--project", action="append", default=[], help="Only this project id (repeatable)")
    export.add_argument("--out", default=DEFAULT_OUT_DIR, help="Directory for generated files")
    export.add_argument("--execute", action="store_true", help="Actually export (default: dry-run)")

    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    config = load_config_safe(args.config)
    if config is None:
        return 1

    try:
        orchestrator, data, registry = build_orchestrator(config)
        if args.command == "formats":
            return cmd_formats(registry)
        if args.command == "test-connection":
            return cmd_test_connection(orchestrator, config["organization_id"], args.format)
        if args.command == "time-off-types":
            return cmd_time_off_types(registry, data, config["organization_id"])
        return cmd_export(orchestrator, data, config, args)
    except PayrollExportError as e:
        print(f"[!] Error: {e}")
        for detail in getattr(e, "errors", []):
            print(f"    - {detail}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
