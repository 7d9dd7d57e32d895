from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path


class Provenance(str, Enum):
    """
    Provenance tells how the token counts of a UsageRecord
    were derived from the transcript line.
    """

    REPORTED = "reported"
    REPORTED_ZERO = "reported_zero"
    MISSING_USAGE = "missing_usage"


@dataclass(frozen=True, slots=True)
class UsageRecord:
    """
    UsageRecord represents the usage of a single assistant
    turn read from a session transcript.
    """

    # unix timestamp in milliseconds of the assistant turn
    timestamp_ms: "int"
    session_key: "str"
    model_provider: "str"
    model: "str"
    input_tokens: "int"
    output_tokens: "int"
    total_tokens: "int"
    provenance: "Provenance"
    # note - None means the provider reported no cost, not a cost of zero
    cost_usd: "float | None" = None


@dataclass(frozen=True, slots=True)
class HourlyUsageRow:
    """
    HourlyUsageRow is one line of the hourly CSV artifact, the sum
    of all records sharing an hour, session, provider and model.
    """

    timestamp_hour: "str"
    session_key: "str"
    model_provider: "str"
    model: "str"
    input_tokens: "int"
    output_tokens: "int"
    total_tokens: "int"
    cost_usd: "float | None" = None


@dataclass(frozen=True, slots=True)
class UsageDiagnostics:
    reported_records: "int" = 0
    reported_zero_records: "int" = 0
    missing_usage_records: "int" = 0

    def __add__(self, other: "UsageDiagnostics") -> "UsageDiagnostics":
        return UsageDiagnostics(
            reported_records=self.reported_records + other.reported_records,
            reported_zero_records=self.reported_zero_records
            + other.reported_zero_records,
            missing_usage_records=self.missing_usage_records
            + other.missing_usage_records,
        )

    def as_dict(self) -> "dict[str, int]":
        return {
            "reportedRecords": self.reported_records,
            "reportedZeroRecords": self.reported_zero_records,
            "missingUsageRecords": self.missing_usage_records,
        }


@dataclass(frozen=True, slots=True)
class HourSelection:
    """
    HourSelection is the resolved, ascending and inclusive list
    of UTC hour starts a run will process.
    """

    # one of "single", "range" or "all-hours"
    mode: "str"
    from_hour: "datetime"
    to_hour: "datetime"
    hours: "tuple[datetime, ...]"


@dataclass(frozen=True, slots=True)
class HourBounds:
    earliest_hour: "datetime"
    latest_hour: "datetime"


@dataclass(frozen=True, slots=True)
class TranscriptRef:
    """
    TranscriptRef points at a transcript file and the session
    it belongs to. Defaults are used for turns that carry no
    provider or model of their own.
    """

    path: "Path"
    session_key: "str"
    default_provider: "str | None" = None
    default_model: "str | None" = None


@dataclass(frozen=True, slots=True)
class UploadResult:
    imported_rows: "int"
    status: "int"


@dataclass(frozen=True, slots=True)
class HourExport:
    hour_start: "datetime"
    hour_start_iso: "str"
    rows: "tuple[HourlyUsageRow, ...]"
    csv: "str"
    diagnostics: "UsageDiagnostics"


@dataclass
class HourRunSummary:
    hour_start_iso: "str"
    rows: "int"
    diagnostics: "UsageDiagnostics"
    output_path: "str | None" = None
    uploaded: "bool" = False
    dry_run_upload: "bool" = False
    upload_result: "UploadResult | None" = None
    upload_error: "str | None" = None

    def as_dict(self) -> "dict[str, object]":
        data: "dict[str, object]" = {
            "hourStartIso": self.hour_start_iso,
            "ok": self.upload_error is None,
            "rows": self.rows,
            "outputPath": self.output_path,
            "uploaded": self.uploaded,
            "dryRunUpload": self.dry_run_upload,
            "diagnostics": self.diagnostics.as_dict(),
        }
        if self.upload_result is not None:
            data["uploadResult"] = {
                "importedRows": self.upload_result.imported_rows,
                "status": self.upload_result.status,
            }
        if self.upload_error is not None:
            data["uploadError"] = self.upload_error
        return data
