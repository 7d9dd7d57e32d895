import csv
import io
from collections.abc import Iterable

from hourmeter.models import HourlyUsageRow

# the ingest endpoint matches this header exactly
CSV_HEADER: "tuple[str, ...]" = (
    "timestamp_hour",
    "session_key",
    "model_provider",
    "model",
    "input_tokens",
    "output_tokens",
    "total_tokens",
    "cost_usd",
)

_COST_DECIMALS = 8


def format_cost(cost: "float | None") -> "str":
    """
    renders a cost as plain decimal text rounded to 8 places,
    without exponent or trailing zeros. None renders empty.
    """
    if cost is None:
        return ""
    text = f"{cost:.{_COST_DECIMALS}f}".rstrip("0").rstrip(".")
    if text in ("", "-0"):
        return "0"
    return text


def build_hourly_usage_csv(rows: "Iterable[HourlyUsageRow]") -> "str":
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(CSV_HEADER)

    for row in rows:
        writer.writerow(
            (
                row.timestamp_hour,
                row.session_key,
                row.model_provider,
                row.model,
                str(row.input_tokens),
                str(row.output_tokens),
                str(row.total_tokens),
                format_cost(row.cost_usd),
            )
        )

    return buffer.getvalue()
