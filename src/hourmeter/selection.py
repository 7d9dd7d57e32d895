from datetime import datetime

from hourmeter.clock import (
    derive_previous_hour_start,
    floor_to_utc_hour,
    iterate_hour_starts_inclusive,
    parse_hour_start,
)
from hourmeter.errors import (
    EmptyHistoryError,
    IncompleteRangeError,
    RangeTooLargeError,
)
from hourmeter.models import HourSelection

DEFAULT_MAX_HOURS_PER_RUN = 48


def _clean(value: "str | None") -> "str | None":
    if value is None:
        return None
    return value.strip() or None


def resolve_hour_selection(
    hour_iso: "str | None" = None,
    from_iso: "str | None" = None,
    to_iso: "str | None" = None,
    all_hours: "bool" = False,
    discovered_from_hour: "datetime | None" = None,
    now: "datetime | None" = None,
) -> "HourSelection":
    """
    turns the hour flags of a run into the concrete hours to process.

    An explicit --from/--to range wins, then --all-hours, which replays
    from the earliest discovered transcript hour through the previous
    completed hour. Without either a single hour is selected: --hour
    when given, the previous completed hour otherwise.
    """
    from_iso = _clean(from_iso)
    to_iso = _clean(to_iso)

    if (from_iso is None) != (to_iso is None):
        raise IncompleteRangeError("--from and --to must be provided together.")

    if from_iso is not None and to_iso is not None:
        from_hour = parse_hour_start(from_iso, now)
        to_hour = parse_hour_start(to_iso, now)
        return HourSelection(
            mode="range",
            from_hour=from_hour,
            to_hour=to_hour,
            hours=tuple(iterate_hour_starts_inclusive(from_hour, to_hour)),
        )

    if all_hours:
        if discovered_from_hour is None:
            raise EmptyHistoryError(
                "--all-hours could not discover transcript history to backfill."
            )
        from_hour = floor_to_utc_hour(discovered_from_hour)
        to_hour = derive_previous_hour_start(now)
        return HourSelection(
            mode="all-hours",
            from_hour=from_hour,
            to_hour=to_hour,
            hours=tuple(iterate_hour_starts_inclusive(from_hour, to_hour)),
        )

    hour = parse_hour_start(_clean(hour_iso), now)
    return HourSelection(mode="single", from_hour=hour, to_hour=hour, hours=(hour,))


def enforce_max_hours_per_run(
    hours: "int",
    max_hours: "int" = DEFAULT_MAX_HOURS_PER_RUN,
    force: "bool" = False,
) -> "None":
    """
    refuses runs spanning more than max_hours unless forced, so an
    accidental backfill cannot flood the ingest endpoint.
    """
    if max_hours <= 0:
        raise ValueError(f"Invalid max-hours value: {max_hours}")

    hours = max(0, hours)
    if hours > max_hours and not force:
        raise RangeTooLargeError(
            f"Refusing to process {hours} hours (max {max_hours}). "
            "Use --force or lower the range."
        )
