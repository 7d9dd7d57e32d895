import asyncio
import json
import sys
from datetime import datetime, timezone

import structlog

from hourmeter.cli import CliArgs, parse_args
from hourmeter.clock import format_hour_start_iso
from hourmeter.errors import ConfigError, HourmeterError
from hourmeter.exporter import ExportOptions, ExportRun, HourlyUsageExporter
from hourmeter.logging import setup_logging
from hourmeter.metrics import ExportMetrics
from hourmeter.models import HourBounds
from hourmeter.selection import enforce_max_hours_per_run, resolve_hour_selection
from hourmeter.sources import SessionsDirectorySource
from hourmeter.uploader import resolve_ingest_url

logger = structlog.get_logger()


def build_report(
    args: "CliArgs",
    run: "ExportRun",
    discovered: "HourBounds | None",
) -> "dict[str, object]":
    """
    builds the --json run summary, including per-hour upload outcomes.
    """
    selection = run.selection
    diagnostics = run.diagnostics
    return {
        "ok": not run.failed_hours,
        "mode": selection.mode,
        "fromHourIso": format_hour_start_iso(selection.from_hour),
        "toHourIso": format_hour_start_iso(selection.to_hour),
        "hours": len(selection.hours),
        "maxHours": args.max_hours,
        "forced": args.force,
        "dryRun": args.dry_run,
        "chunkByHour": args.chunk_by_hour,
        "outputPath": run.output_path,
        "discoveredBounds": (
            {
                "earliestHourIso": format_hour_start_iso(discovered.earliest_hour),
                "latestHourIso": format_hour_start_iso(discovered.latest_hour),
            }
            if discovered is not None
            else None
        ),
        "summary": {
            "totalRows": run.total_rows,
            "uploadedHours": run.uploaded_hours,
            "failedUploads": len(run.failed_hours),
            "importedRows": run.imported_rows,
            **diagnostics.as_dict(),
            "missingUsageFallbackEnabled": True,
        },
        "hoursDetail": [hour.as_dict() for hour in run.hours],
    }


async def _run(args: "CliArgs") -> "int":
    config = args.config
    source = SessionsDirectorySource(config.state_path)
    now = datetime.now(timezone.utc)

    discovered: "HourBounds | None" = None
    if args.all_hours:
        discovered = await asyncio.to_thread(source.discover_hour_bounds)

    selection = resolve_hour_selection(
        hour_iso=args.hour,
        from_iso=args.from_hour,
        to_iso=args.to_hour,
        all_hours=args.all_hours,
        discovered_from_hour=discovered.earliest_hour if discovered else None,
        now=now,
    )
    enforce_max_hours_per_run(len(selection.hours), args.max_hours, args.force)

    multi_hour = len(selection.hours) > 1
    if args.chunk_by_hour and multi_hour and args.output:
        raise ConfigError(
            "--chunk-by-hour with a range requires --output-dir (not --output)."
        )
    if args.chunk_by_hour and multi_hour and args.print_csv:
        raise ConfigError(
            "--print-csv is not supported with --chunk-by-hour across multiple hours."
        )

    ingest_url = ""
    if args.upload and not args.dry_run:
        ingest_url = resolve_ingest_url(config)
        if not config.ingest_token:
            raise ConfigError("Missing HOURMETER_INGEST_TOKEN.")

    logger.info(
        "export_run_start",
        mode=selection.mode,
        from_hour=format_hour_start_iso(selection.from_hour),
        to_hour=format_hour_start_iso(selection.to_hour),
        hours=len(selection.hours),
        upload=args.upload,
        dry_run=args.dry_run,
    )

    metrics = ExportMetrics()
    exporter = HourlyUsageExporter(
        source,
        metrics=metrics,
        concurrency=args.concurrency,
        ingest_url=ingest_url,
        ingest_token=config.ingest_token,
        upload_timeout=config.upload_timeout,
    )
    run = await exporter.run(
        selection,
        ExportOptions(
            output=args.output,
            output_dir=args.output_dir,
            chunk_by_hour=args.chunk_by_hour,
            upload=args.upload,
            dry_run=args.dry_run,
            file_prefix=config.ingest_product,
        ),
    )

    if args.metrics_textfile:
        metrics.write_textfile(args.metrics_textfile)

    if args.print_csv and run.csv is not None:
        sys.stdout.write(run.csv)

    has_output_path = bool(run.output_path) or any(
        hour.output_path for hour in run.hours
    )
    if args.json or (not args.print_csv and not has_output_path):
        report = build_report(args, run, discovered)
        sys.stdout.write(json.dumps(report, indent=2) + "\n")

    logger.info(
        "export_run_done",
        total_rows=run.total_rows,
        uploaded_hours=run.uploaded_hours,
        failed_uploads=len(run.failed_hours),
    )

    # JSON mode reports failed hours in the summary instead of the exit code
    if run.failed_hours and not args.json:
        return 1
    return 0


def main(argv: "list[str] | None" = None) -> "int":
    try:
        args = parse_args(argv)
    except ConfigError as exc:
        sys.stderr.write(f"hourmeter failed: {exc}\n")
        return 1

    setup_logging(args.config.log_level, args.log_format)

    try:
        return asyncio.run(_run(args))
    except HourmeterError as exc:
        logger.error("export_run_failed", error=str(exc))
        sys.stderr.write(f"hourmeter failed: {exc}\n")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
