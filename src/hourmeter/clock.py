from datetime import datetime, timedelta, timezone

from hourmeter.errors import InvalidHourError, InvalidRangeError

HOUR = timedelta(hours=1)
HOUR_MS = 60 * 60 * 1000

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _as_utc(instant: "datetime") -> "datetime":
    # naive datetimes are taken to already be in UTC
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def to_epoch_ms(instant: "datetime") -> "int":
    return (_as_utc(instant) - _EPOCH) // timedelta(milliseconds=1)


# instants datetime can represent, in epoch milliseconds
MIN_EPOCH_MS = to_epoch_ms(datetime.min.replace(tzinfo=timezone.utc))
MAX_EPOCH_MS = to_epoch_ms(datetime.max.replace(tzinfo=timezone.utc))


def from_epoch_ms(timestamp_ms: "int") -> "datetime":
    if not MIN_EPOCH_MS <= timestamp_ms <= MAX_EPOCH_MS:
        raise ValueError(f"Timestamp out of range: {timestamp_ms}")
    return _EPOCH + timedelta(milliseconds=timestamp_ms)


def floor_to_utc_hour(instant: "datetime") -> "datetime":
    """
    truncates the instant to the start of its UTC hour.
    """
    return _as_utc(instant).replace(minute=0, second=0, microsecond=0)


def floor_ms_to_hour(timestamp_ms: "int") -> "int":
    return timestamp_ms // HOUR_MS * HOUR_MS


def format_hour_start_iso(hour_start: "datetime") -> "str":
    """
    formats an hour start as YYYY-MM-DDTHH:00:00Z.
    """
    return floor_to_utc_hour(hour_start).strftime("%Y-%m-%dT%H:00:00Z")


def derive_previous_hour_start(now: "datetime | None" = None) -> "datetime":
    """
    returns the start of the last fully completed UTC hour.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    return floor_to_utc_hour(now) - HOUR


def parse_iso_instant(value: "str") -> "datetime | None":
    try:
        return _as_utc(datetime.fromisoformat(value.strip()))
    except (ValueError, OverflowError):
        # an offset can push an otherwise valid instant outside datetime's range
        return None


def parse_hour_start(
    value: "str | None",
    now: "datetime | None" = None,
) -> "datetime":
    """
    parses an ISO-8601 instant and floors it to its UTC hour. An
    empty value selects the previous completed hour, which is what
    cron runs use.
    """
    if value is None or not value.strip():
        return derive_previous_hour_start(now)

    parsed = parse_iso_instant(value)
    if parsed is None:
        raise InvalidHourError(f"Invalid hour value: {value}")
    return floor_to_utc_hour(parsed)


def iterate_hour_starts_inclusive(
    from_hour: "datetime",
    to_hour: "datetime",
) -> "list[datetime]":
    """
    lists every hour start from from_hour to to_hour, both included.
    """
    start = floor_to_utc_hour(from_hour)
    end = floor_to_utc_hour(to_hour)
    if end < start:
        raise InvalidRangeError(
            "Invalid hour range: --to must be the same as or after --from."
        )

    hours: "list[datetime]" = []
    current = start
    while True:
        hours.append(current)
        if current >= end:
            break
        current += HOUR
    return hours
