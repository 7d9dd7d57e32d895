import json
import math
from collections.abc import Iterator, Mapping
from pathlib import Path

import structlog

from hourmeter.clock import MAX_EPOCH_MS, MIN_EPOCH_MS, parse_iso_instant, to_epoch_ms
from hourmeter.errors import TranscriptReadError
from hourmeter.models import Provenance, UsageRecord

logger = structlog.get_logger()

UNKNOWN = "unknown"

# providers report token counts under several spellings
_INPUT_KEYS = ("input", "inputTokens", "input_tokens", "prompt_tokens")
_OUTPUT_KEYS = ("output", "outputTokens", "output_tokens", "completion_tokens")
_TOTAL_KEYS = ("total", "totalTokens", "total_tokens")
_DIRECT_COST_KEYS = ("costUsd", "cost_usd")


def _number(value: "object") -> "float | None":
    """
    returns value when it is a finite, non-negative number.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        # JSON integers are unbounded, floats are not
        finite = math.isfinite(value)
    except OverflowError:
        return None
    if not finite or value < 0:
        return None
    return value


def _first_count(
    usage: "Mapping[str, object]",
    keys: "tuple[str, ...]",
) -> "int | None":
    for key in keys:
        value = _number(usage.get(key))
        if value is not None:
            return int(value)
    return None


def _text(value: "object") -> "str | None":
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_timestamp_ms(entry: "Mapping[str, object]") -> "int | None":
    """
    reads the turn time from the entry's ISO timestamp, falling back
    to the message's epoch-millisecond timestamp.
    """
    entry_ts = entry.get("timestamp")
    if isinstance(entry_ts, str):
        parsed = parse_iso_instant(entry_ts)
        if parsed is not None:
            return to_epoch_ms(parsed)

    message = entry.get("message")
    if isinstance(message, Mapping):
        message_ts = _number(message.get("timestamp"))
        if message_ts is not None and MIN_EPOCH_MS <= message_ts <= MAX_EPOCH_MS:
            return int(message_ts)
    return None


def parse_cost_total(usage: "Mapping[str, object]") -> "float | None":
    for key in _DIRECT_COST_KEYS:
        direct = _number(usage.get(key))
        if direct is not None:
            return float(direct)

    cost = usage.get("cost")
    if not isinstance(cost, Mapping):
        return None
    total = _number(cost.get("total"))
    return None if total is None else float(total)


def _has_token_fields(usage: "Mapping[str, object]") -> "bool":
    return any(
        _number(usage.get(key)) is not None
        for key in _INPUT_KEYS + _OUTPUT_KEYS + _TOTAL_KEYS
    )


def _iter_entries(path: "Path") -> "Iterator[Mapping[str, object]]":
    try:
        handle = path.open(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise TranscriptReadError(str(path), exc) from exc

    with handle:
        try:
            for line in handle:
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    entry = json.loads(stripped)
                except json.JSONDecodeError:
                    # partial trailing writes are expected in append-only logs
                    continue
                if isinstance(entry, dict):
                    yield entry
        except OSError as exc:
            raise TranscriptReadError(str(path), exc) from exc


def build_usage_record(
    timestamp_ms: "int",
    session_key: "str",
    model_provider: "str",
    model: "str",
    usage: "Mapping[str, object] | None",
) -> "UsageRecord":
    """
    classifies one assistant turn. Every turn produces exactly one
    record: turns without a usage payload become zero-token
    missing_usage records so the session still shows up in the hour.
    """
    if usage is None or not _has_token_fields(usage):
        return UsageRecord(
            timestamp_ms=timestamp_ms,
            session_key=session_key,
            model_provider=model_provider,
            model=model,
            input_tokens=0,
            output_tokens=0,
            total_tokens=0,
            provenance=Provenance.MISSING_USAGE,
        )

    input_tokens = _first_count(usage, _INPUT_KEYS) or 0
    output_tokens = _first_count(usage, _OUTPUT_KEYS) or 0
    explicit_total = _first_count(usage, _TOTAL_KEYS)
    total_tokens = (
        explicit_total if explicit_total is not None else input_tokens + output_tokens
    )

    if input_tokens == 0 and output_tokens == 0 and total_tokens == 0:
        # mirrored deliveries and errored calls explicitly report zero
        return UsageRecord(
            timestamp_ms=timestamp_ms,
            session_key=session_key,
            model_provider=model_provider,
            model=model,
            input_tokens=0,
            output_tokens=0,
            total_tokens=0,
            provenance=Provenance.REPORTED_ZERO,
        )

    return UsageRecord(
        timestamp_ms=timestamp_ms,
        session_key=session_key,
        model_provider=model_provider,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
        provenance=Provenance.REPORTED,
        cost_usd=parse_cost_total(usage),
    )


def collect_usage_records_from_transcript(
    path: "Path",
    session_key: "str",
    hour_start_ms: "int",
    hour_end_ms_exclusive: "int",
    default_provider: "str | None" = None,
    default_model: "str | None" = None,
) -> "list[UsageRecord]":
    """
    reads one transcript and returns a record for every assistant turn
    with a timestamp inside [hour_start_ms, hour_end_ms_exclusive).

    Malformed lines are skipped. Only failing to open or read the file
    raises, as TranscriptReadError.
    """
    records: "list[UsageRecord]" = []

    for entry in _iter_entries(path):
        message = entry.get("message")
        if not isinstance(message, Mapping):
            continue

        timestamp_ms = parse_timestamp_ms(entry)
        if timestamp_ms is None:
            continue
        if timestamp_ms < hour_start_ms or timestamp_ms >= hour_end_ms_exclusive:
            continue

        if message.get("role") != "assistant":
            continue

        usage = message.get("usage")
        if not isinstance(usage, Mapping):
            usage = entry.get("usage")
        if not isinstance(usage, Mapping):
            usage = None

        # provider and model are kept as recorded, including legacy
        # "provider/model" strings
        provider = (
            _text(message.get("provider"))
            or _text(entry.get("provider"))
            or _text(default_provider)
            or UNKNOWN
        )
        model = (
            _text(message.get("model"))
            or _text(entry.get("model"))
            or _text(default_model)
            or UNKNOWN
        )

        records.append(
            build_usage_record(timestamp_ms, session_key, provider, model, usage)
        )

    logger.debug(
        "transcript_collected",
        path=str(path),
        session_key=session_key,
        record_count=len(records),
    )
    return records


def discover_transcript_timestamp_bounds(path: "Path") -> "tuple[int, int] | None":
    """
    returns the earliest and latest line timestamps of a transcript,
    or None if no line carries one.
    """
    earliest: "int | None" = None
    latest: "int | None" = None

    for entry in _iter_entries(path):
        timestamp_ms = parse_timestamp_ms(entry)
        if timestamp_ms is None:
            continue
        earliest = timestamp_ms if earliest is None else min(earliest, timestamp_ms)
        latest = timestamp_ms if latest is None else max(latest, timestamp_ms)

    if earliest is None or latest is None:
        return None
    return (earliest, latest)
