from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client import write_to_textfile

from hourmeter.models import UsageDiagnostics


class ExportMetrics:
    """
    records what a run exported and uploaded. A cron job has no
    scrape endpoint, so the registry is written out for the
    node-exporter textfile collector at the end of the run.
    """

    def __init__(self, registry: "CollectorRegistry | None" = None) -> "None":
        # each run gets its own registry unless a caller shares one
        self._registry: "CollectorRegistry" = registry or CollectorRegistry()
        self._records: "Counter" = Counter(
            "hourmeter_usage_records_total",
            "Usage records read from transcripts by provenance",
            ["provenance"],
            registry=self._registry,
        )
        self._rows: "Counter" = Counter(
            "hourmeter_csv_rows_total",
            "Aggregated CSV rows exported",
            registry=self._registry,
        )
        self._uploads: "Counter" = Counter(
            "hourmeter_uploads_total",
            "Hourly CSV uploads by outcome",
            ["outcome"],
            registry=self._registry,
        )
        self._imported_rows: "Counter" = Counter(
            "hourmeter_imported_rows_total",
            "Rows acknowledged by the ingest endpoint",
            registry=self._registry,
        )
        self._transcript_errors: "Counter" = Counter(
            "hourmeter_transcript_read_errors_total",
            "Transcripts that could not be read",
            registry=self._registry,
        )
        self._hour_duration: "Histogram" = Histogram(
            "hourmeter_hour_export_duration_seconds",
            "Duration of collecting, aggregating and encoding one hour",
            registry=self._registry,
        )
        self._last_success: "Gauge" = Gauge(
            "hourmeter_last_success_timestamp_seconds",
            "Unix timestamp of the last run that finished without upload errors",
            registry=self._registry,
        )

    @property
    def registry(self) -> "CollectorRegistry":
        return self._registry

    def observe_hour(
        self,
        diagnostics: "UsageDiagnostics",
        rows: "int",
        duration_seconds: "float",
    ) -> "None":
        self._records.labels(provenance="reported").inc(diagnostics.reported_records)
        self._records.labels(provenance="reported_zero").inc(
            diagnostics.reported_zero_records
        )
        self._records.labels(provenance="missing_usage").inc(
            diagnostics.missing_usage_records
        )
        self._rows.inc(rows)
        self._hour_duration.observe(duration_seconds)

    def inc_transcript_error(self) -> "None":
        self._transcript_errors.inc()

    def record_upload(self, imported_rows: "int | None") -> "None":
        """
        counts an upload attempt. None marks a failed upload.
        """
        if imported_rows is None:
            self._uploads.labels(outcome="failure").inc()
            return
        self._uploads.labels(outcome="success").inc()
        self._imported_rows.inc(imported_rows)

    def set_last_success(self, timestamp: "float") -> "None":
        self._last_success.set(timestamp)

    def write_textfile(self, path: "str") -> "None":
        write_to_textfile(path, self._registry)
