from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest
import respx
from prometheus_client import CollectorRegistry

from hourmeter.csv_export import CSV_HEADER
from hourmeter.exporter import ExportOptions, HourlyUsageExporter
from hourmeter.metrics import ExportMetrics
from hourmeter.models import HourBounds, TranscriptRef, UsageDiagnostics
from hourmeter.selection import resolve_hour_selection
from hourmeter.sources import SessionsDirectorySource

UTC = timezone.utc
HOUR_5 = datetime(2026, 2, 20, 5, tzinfo=UTC)
INGEST_URL = "https://helix.example.test/api/usage/zulipclaw/hourly"


class StaticSource:
    """
    A source that returns a fixed list of transcripts.
    """

    def __init__(self, refs: "list[TranscriptRef]") -> "None":
        self._refs = refs

    def list_transcripts(
        self,
        modified_since_ms: "int | None" = None,
    ) -> "list[TranscriptRef]":
        return list(self._refs)

    def discover_hour_bounds(self) -> "HourBounds | None":
        return None


@pytest.fixture()
def state_dir(
    tmp_path: "Path",
    write_transcript: "object",
    assistant_turn: "object",
) -> "Path":
    state = tmp_path / "state"
    sessions = state / "agents" / "main" / "sessions"
    write_transcript(
        sessions / "s1.jsonl",
        [
            {"timestamp": "2026-02-20T05:00:00Z", "message": {"role": "user"}},
            assistant_turn(
                "2026-02-20T05:05:00Z",
                usage={"input": 100, "output": 50, "cost": {"total": 0.1}},
            ),
            assistant_turn("2026-02-20T05:20:00Z", usage={"input": 20, "output": 5}),
            assistant_turn(
                "2026-02-20T06:15:00Z",
                usage={"input": 7, "output": 3, "cost": {"total": 0.01}},
            ),
        ],
    )
    write_transcript(
        sessions / "s2.jsonl",
        [
            assistant_turn(
                "2026-02-20T05:25:00Z",
                usage={"input": 10, "output": 5, "cost": {"total": 0.02}},
                provider="anthropic",
                model="claude-sonnet-4",
            ),
            assistant_turn("2026-02-20T05:30:00Z", provider="anthropic", model="x,y"),
            "{truncated",
        ],
    )
    return state


def _exporter(
    state_dir: "Path",
    registry: "CollectorRegistry",
    **kwargs: "object",
) -> "HourlyUsageExporter":
    return HourlyUsageExporter(
        SessionsDirectorySource(state_dir),
        metrics=ExportMetrics(registry=registry),
        **kwargs,
    )


class TestCollectHour:
    @pytest.mark.asyncio
    async def test_keeps_source_order_and_session_defaults(
        self,
        tmp_path: "Path",
        registry: "CollectorRegistry",
        write_transcript: "object",
    ) -> "None":
        refs = []
        for name in ("c", "a", "b"):
            path = write_transcript(
                tmp_path / f"{name}.jsonl",
                [
                    {
                        "timestamp": "2026-02-20T05:10:00Z",
                        "message": {"role": "assistant", "usage": {"input": 1}},
                    }
                ],
            )
            refs.append(
                TranscriptRef(
                    path=path,
                    session_key=name,
                    default_provider="anthropic",
                    default_model="claude-opus-4",
                )
            )
        exporter = HourlyUsageExporter(
            StaticSource(refs),
            metrics=ExportMetrics(registry=registry),
            concurrency=2,
        )

        records = await exporter.collect_hour(HOUR_5)

        assert [record.session_key for record in records] == ["c", "a", "b"]
        assert {record.model_provider for record in records} == {"anthropic"}
        assert {record.model for record in records} == {"claude-opus-4"}


class TestExportHour:
    @pytest.mark.asyncio
    async def test_exports_one_hour(
        self,
        state_dir: "Path",
        registry: "CollectorRegistry",
    ) -> "None":
        export = await _exporter(state_dir, registry).export_hour(HOUR_5)

        assert export.hour_start_iso == "2026-02-20T05:00:00Z"
        assert export.diagnostics == UsageDiagnostics(
            reported_records=3,
            reported_zero_records=0,
            missing_usage_records=1,
        )
        assert export.csv.splitlines() == [
            ",".join(CSV_HEADER),
            "2026-02-20T05:00:00Z,agent:main:s1,openai,gpt-5,120,55,175,",
            "2026-02-20T05:00:00Z,agent:main:s2,anthropic,claude-sonnet-4,10,5,15,0.02",
            '2026-02-20T05:00:00Z,agent:main:s2,anthropic,"x,y",0,0,0,',
        ]

    @pytest.mark.asyncio
    async def test_is_idempotent(
        self,
        state_dir: "Path",
        registry: "CollectorRegistry",
    ) -> "None":
        first = await _exporter(state_dir, registry, concurrency=1).export_hour(HOUR_5)
        second = await _exporter(state_dir, CollectorRegistry()).export_hour(HOUR_5)

        assert first.csv.encode("utf-8") == second.csv.encode("utf-8")

    @pytest.mark.asyncio
    async def test_unreadable_transcript_contributes_nothing(
        self,
        tmp_path: "Path",
        registry: "CollectorRegistry",
        write_transcript: "object",
        assistant_turn: "object",
    ) -> "None":
        good = write_transcript(
            tmp_path / "good.jsonl",
            [assistant_turn("2026-02-20T05:10:00Z", usage={"input": 1, "output": 1})],
        )
        source = StaticSource(
            [
                TranscriptRef(path=tmp_path / "missing.jsonl", session_key="gone"),
                TranscriptRef(path=good, session_key="kept"),
            ]
        )
        exporter = HourlyUsageExporter(source, metrics=ExportMetrics(registry=registry))

        export = await exporter.export_hour(HOUR_5)

        assert [row.session_key for row in export.rows] == ["kept"]
        errors = registry.get_sample_value("hourmeter_transcript_read_errors_total")
        assert errors == 1.0

    @pytest.mark.asyncio
    async def test_empty_hour_is_header_only(
        self,
        state_dir: "Path",
        registry: "CollectorRegistry",
    ) -> "None":
        export = await _exporter(state_dir, registry).export_hour(
            datetime(2026, 2, 20, 9, tzinfo=UTC)
        )
        assert export.rows == ()
        assert export.csv == ",".join(CSV_HEADER) + "\n"

    def test_rejects_non_positive_concurrency(self) -> "None":
        with pytest.raises(ValueError):
            HourlyUsageExporter(StaticSource([]), concurrency=0)


class TestRun:
    @pytest.mark.asyncio
    async def test_chunked_range_writes_one_file_per_hour(
        self,
        state_dir: "Path",
        registry: "CollectorRegistry",
        tmp_path: "Path",
    ) -> "None":
        selection = resolve_hour_selection(
            from_iso="2026-02-20T05:00:00Z", to_iso="2026-02-20T06:00:00Z"
        )
        out_dir = tmp_path / "out"

        run = await _exporter(state_dir, registry).run(
            selection,
            ExportOptions(
                output_dir=str(out_dir), chunk_by_hour=True, file_prefix="acme"
            ),
        )

        assert sorted(p.name for p in out_dir.iterdir()) == [
            "acme-usage-2026-02-20T05-00-00Z.csv",
            "acme-usage-2026-02-20T06-00-00Z.csv",
        ]
        assert run.csv is None
        assert run.total_rows == 4
        assert run.diagnostics.reported_records == 4
        assert all(hour.output_path for hour in run.hours)

    @pytest.mark.asyncio
    async def test_unchunked_range_writes_combined_file(
        self,
        state_dir: "Path",
        registry: "CollectorRegistry",
        tmp_path: "Path",
    ) -> "None":
        selection = resolve_hour_selection(
            from_iso="2026-02-20T05:00:00Z", to_iso="2026-02-20T06:00:00Z"
        )
        out_dir = tmp_path / "out"

        run = await _exporter(state_dir, registry).run(
            selection, ExportOptions(output_dir=str(out_dir), file_prefix="acme")
        )

        combined = (
            out_dir / "acme-usage-2026-02-20T05-00-00Z-to-2026-02-20T06-00-00Z.csv"
        )
        assert run.output_path == str(combined.resolve())
        assert combined.read_text(encoding="utf-8") == run.csv
        assert len(run.csv.splitlines()) == 5
        assert all(hour.output_path is None for hour in run.hours)

    @pytest.mark.asyncio
    async def test_single_hour_writes_output_file(
        self,
        state_dir: "Path",
        registry: "CollectorRegistry",
        tmp_path: "Path",
    ) -> "None":
        selection = resolve_hour_selection(hour_iso="2026-02-20T05:00:00Z")
        target = tmp_path / "nested" / "hour.csv"

        run = await _exporter(state_dir, registry).run(
            selection, ExportOptions(output=str(target))
        )

        assert run.hours[0].output_path == str(target.resolve())
        assert target.read_bytes() == run.csv.encode("utf-8")

    @pytest.mark.asyncio
    @respx.mock(assert_all_called=False)
    async def test_dry_run_skips_upload(
        self,
        state_dir: "Path",
        registry: "CollectorRegistry",
    ) -> "None":
        route = respx.post(INGEST_URL).mock(
            return_value=httpx.Response(200, json={"ok": True, "importedRows": 1})
        )
        selection = resolve_hour_selection(hour_iso="2026-02-20T05:00:00Z")

        run = await _exporter(
            state_dir, registry, ingest_url=INGEST_URL, ingest_token="t"
        ).run(selection, ExportOptions(upload=True, dry_run=True))

        assert route.call_count == 0
        assert run.hours[0].dry_run_upload is True
        assert run.hours[0].uploaded is False
        assert run.csv is not None

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_hour_does_not_stop_later_hours(
        self,
        state_dir: "Path",
        registry: "CollectorRegistry",
    ) -> "None":
        route = respx.post(INGEST_URL).mock(
            side_effect=[
                httpx.Response(500, text="boom"),
                httpx.Response(200, json={"ok": True, "importedRows": 1}),
            ]
        )
        selection = resolve_hour_selection(
            from_iso="2026-02-20T05:00:00Z", to_iso="2026-02-20T06:00:00Z"
        )

        run = await _exporter(
            state_dir, registry, ingest_url=INGEST_URL, ingest_token="t"
        ).run(selection, ExportOptions(upload=True, chunk_by_hour=True))

        assert route.call_count == 2
        hour_headers = [call.request.headers["X-Usage-Hour"] for call in route.calls]
        assert hour_headers == ["2026-02-20T05:00:00Z", "2026-02-20T06:00:00Z"]

        failed, succeeded = run.hours
        assert failed.uploaded is False
        assert "500" in failed.upload_error
        assert succeeded.uploaded is True
        assert succeeded.upload_result.imported_rows == 1
        assert run.failed_hours == [failed]
        assert run.imported_rows == 1
        assert run.uploaded_hours == 1
        assert (
            registry.get_sample_value("hourmeter_uploads_total", {"outcome": "failure"})
            == 1.0
        )
        # last success only moves when every hour uploaded
        assert (
            registry.get_sample_value("hourmeter_last_success_timestamp_seconds") == 0.0
        )
