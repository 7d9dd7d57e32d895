import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import httpx
import structlog

from hourmeter.aggregate import aggregate_usage_records, summarize_usage_diagnostics
from hourmeter.clock import HOUR_MS, format_hour_start_iso, to_epoch_ms
from hourmeter.csv_export import build_hourly_usage_csv
from hourmeter.errors import TranscriptReadError, UploadFailedError
from hourmeter.metrics import ExportMetrics
from hourmeter.models import (
    HourExport,
    HourlyUsageRow,
    HourRunSummary,
    HourSelection,
    TranscriptRef,
    UsageDiagnostics,
    UsageRecord,
)
from hourmeter.sources import TranscriptSource
from hourmeter.transcript import collect_usage_records_from_transcript
from hourmeter.uploader import upload_hourly_usage_csv

logger = structlog.get_logger()

DEFAULT_CONCURRENCY = 8


@dataclass
class ExportOptions:
    output: "str | None" = None
    output_dir: "str | None" = None
    chunk_by_hour: "bool" = False
    upload: "bool" = False
    dry_run: "bool" = False
    # prefix of generated file names, usually the ingest product
    file_prefix: "str" = "usage"


@dataclass
class ExportRun:
    """
    ExportRun is the outcome of HourlyUsageExporter.run. csv holds the
    artifact covering the whole run and is None when a multi-hour run
    was chunked into per-hour files.
    """

    selection: "HourSelection"
    hours: "list[HourRunSummary]"
    csv: "str | None" = None
    output_path: "str | None" = None

    @property
    def diagnostics(self) -> "UsageDiagnostics":
        total = UsageDiagnostics()
        for hour in self.hours:
            total = total + hour.diagnostics
        return total

    @property
    def total_rows(self) -> "int":
        return sum(hour.rows for hour in self.hours)

    @property
    def uploaded_hours(self) -> "int":
        return sum(1 for hour in self.hours if hour.uploaded)

    @property
    def imported_rows(self) -> "int":
        return sum(
            hour.upload_result.imported_rows
            for hour in self.hours
            if hour.upload_result is not None
        )

    @property
    def failed_hours(self) -> "list[HourRunSummary]":
        return [hour for hour in self.hours if hour.upload_error is not None]


def _sanitize_file_hour(hour_start_iso: "str") -> "str":
    return hour_start_iso.replace(":", "-")


def single_hour_filename(prefix: "str", hour_start_iso: "str") -> "str":
    return f"{prefix}-usage-{_sanitize_file_hour(hour_start_iso)}.csv"


def range_filename(prefix: "str", from_hour_iso: "str", to_hour_iso: "str") -> "str":
    return (
        f"{prefix}-usage-{_sanitize_file_hour(from_hour_iso)}"
        f"-to-{_sanitize_file_hour(to_hour_iso)}.csv"
    )


def write_csv(path: "Path", csv: "str") -> "str":
    """
    writes the CSV, creating parent directories, and returns the
    resolved path.
    """
    resolved = path.expanduser().resolve()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    # newline="" keeps the LF terminators as encoded
    with resolved.open("w", encoding="utf-8", newline="") as handle:
        handle.write(csv)
    return str(resolved)


class HourlyUsageExporter:
    """
    HourlyUsageExporter runs the hourly pipeline: for every selected
    hour it collects usage from all transcripts, aggregates and
    encodes it as CSV, optionally writes the file and uploads it.

    Hours are processed in ascending order. A failed upload is
    recorded on that hour and the remaining hours still run.
    """

    def __init__(
        self,
        source: "TranscriptSource",
        metrics: "ExportMetrics | None" = None,
        concurrency: "int" = DEFAULT_CONCURRENCY,
        ingest_url: "str" = "",
        ingest_token: "str" = "",
        upload_timeout: "float" = 30.0,
    ) -> "None":
        if concurrency <= 0:
            raise ValueError(f"Invalid concurrency value: {concurrency}")
        self._source = source
        self._metrics = metrics or ExportMetrics()
        self._concurrency = concurrency
        self._ingest_url = ingest_url
        self._ingest_token = ingest_token
        self._upload_timeout = upload_timeout

    async def collect_hour(self, hour_start: "datetime") -> "list[UsageRecord]":
        """
        collects records for one hour from every transcript. Reads run
        in worker threads, at most `concurrency` at a time, and the
        result keeps the source's transcript order.
        """
        hour_start_ms = to_epoch_ms(hour_start)
        hour_end_ms = hour_start_ms + HOUR_MS
        refs = await asyncio.to_thread(self._source.list_transcripts, hour_start_ms)
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _collect(ref: "TranscriptRef") -> "list[UsageRecord]":
            async with semaphore:
                try:
                    return await asyncio.to_thread(
                        collect_usage_records_from_transcript,
                        ref.path,
                        ref.session_key,
                        hour_start_ms,
                        hour_end_ms,
                        ref.default_provider,
                        ref.default_model,
                    )
                except TranscriptReadError as exc:
                    # other sessions must still be reported for this hour
                    logger.warning(
                        "transcript_read_failed",
                        path=str(ref.path),
                        session_key=ref.session_key,
                        error=str(exc.cause),
                    )
                    self._metrics.inc_transcript_error()
                    return []

        results = await asyncio.gather(*(_collect(ref) for ref in refs))

        records: "list[UsageRecord]" = []
        for result in results:
            records.extend(result)

        logger.debug(
            "hour_collected",
            hour=format_hour_start_iso(hour_start),
            transcripts=len(refs),
            record_count=len(records),
        )
        return records

    async def export_hour(self, hour_start: "datetime") -> "HourExport":
        started = time.monotonic()
        records = await self.collect_hour(hour_start)
        rows = aggregate_usage_records(records)
        diagnostics = summarize_usage_diagnostics(records)
        csv = build_hourly_usage_csv(rows)

        self._metrics.observe_hour(diagnostics, len(rows), time.monotonic() - started)
        return HourExport(
            hour_start=hour_start,
            hour_start_iso=format_hour_start_iso(hour_start),
            rows=tuple(rows),
            csv=csv,
            diagnostics=diagnostics,
        )

    async def _upload(
        self,
        client: "httpx.AsyncClient",
        export: "HourExport",
        summary: "HourRunSummary",
    ) -> "None":
        try:
            result = await upload_hourly_usage_csv(
                hour_start_iso=export.hour_start_iso,
                csv=export.csv,
                ingest_url=self._ingest_url,
                token=self._ingest_token,
                timeout=self._upload_timeout,
                client=client,
            )
        except UploadFailedError as exc:
            logger.error(
                "hour_upload_failed",
                hour=export.hour_start_iso,
                status=exc.status,
                error=str(exc),
            )
            self._metrics.record_upload(None)
            summary.upload_error = str(exc)
            return

        self._metrics.record_upload(result.imported_rows)
        summary.uploaded = True
        summary.upload_result = result
        logger.info(
            "hour_uploaded",
            hour=export.hour_start_iso,
            imported_rows=result.imported_rows,
        )

    async def run(
        self,
        selection: "HourSelection",
        options: "ExportOptions",
    ) -> "ExportRun":
        multi_hour = len(selection.hours) > 1
        per_hour_files = not multi_hour or options.chunk_by_hour
        should_upload = options.upload and not options.dry_run

        summaries: "list[HourRunSummary]" = []
        combined_rows: "list[HourlyUsageRow]" = []
        last_csv = ""

        async with httpx.AsyncClient(timeout=self._upload_timeout) as client:
            for hour_start in selection.hours:
                logger.info("hour_export_start", hour=format_hour_start_iso(hour_start))
                export = await self.export_hour(hour_start)
                combined_rows.extend(export.rows)
                last_csv = export.csv

                summary = HourRunSummary(
                    hour_start_iso=export.hour_start_iso,
                    rows=len(export.rows),
                    diagnostics=export.diagnostics,
                    dry_run_upload=options.upload and options.dry_run,
                )

                if per_hour_files and options.output_dir:
                    filename = single_hour_filename(
                        options.file_prefix, export.hour_start_iso
                    )
                    summary.output_path = write_csv(
                        Path(options.output_dir) / filename, export.csv
                    )
                elif not multi_hour and options.output:
                    summary.output_path = write_csv(Path(options.output), export.csv)

                # the upload only starts once the hour's CSV is complete
                if should_upload:
                    await self._upload(client, export, summary)

                logger.info(
                    "hour_export_done",
                    hour=export.hour_start_iso,
                    rows=summary.rows,
                    output_path=summary.output_path,
                    **export.diagnostics.as_dict(),
                )
                summaries.append(summary)

        run = ExportRun(selection=selection, hours=summaries)
        if not multi_hour:
            run.csv = last_csv
        elif not options.chunk_by_hour:
            run.csv = build_hourly_usage_csv(combined_rows)
            if options.output:
                run.output_path = write_csv(Path(options.output), run.csv)
            elif options.output_dir:
                run.output_path = write_csv(
                    Path(options.output_dir)
                    / range_filename(
                        options.file_prefix,
                        format_hour_start_iso(selection.from_hour),
                        format_hour_start_iso(selection.to_hour),
                    ),
                    run.csv,
                )

        if not run.failed_hours:
            self._metrics.set_last_success(time.time())
        return run
