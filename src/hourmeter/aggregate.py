from collections.abc import Iterable
from dataclasses import dataclass

from hourmeter.clock import floor_ms_to_hour, format_hour_start_iso, from_epoch_ms
from hourmeter.models import HourlyUsageRow, Provenance, UsageDiagnostics, UsageRecord


@dataclass
class _Group:
    timestamp_hour: "str"
    session_key: "str"
    model_provider: "str"
    model: "str"
    input_tokens: "int" = 0
    output_tokens: "int" = 0
    total_tokens: "int" = 0
    cost_total: "float" = 0.0
    # flips to False once any member lacks a cost
    all_have_cost: "bool" = True

    def add(self, record: "UsageRecord") -> "None":
        self.input_tokens += record.input_tokens
        self.output_tokens += record.output_tokens
        self.total_tokens += record.total_tokens
        if record.cost_usd is None:
            self.all_have_cost = False
        else:
            self.cost_total += record.cost_usd

    def to_row(self) -> "HourlyUsageRow":
        return HourlyUsageRow(
            timestamp_hour=self.timestamp_hour,
            session_key=self.session_key,
            model_provider=self.model_provider,
            model=self.model,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            total_tokens=self.total_tokens,
            cost_usd=self.cost_total if self.all_have_cost else None,
        )


def aggregate_usage_records(records: "Iterable[UsageRecord]") -> "list[HourlyUsageRow]":
    """
    groups records by hour, session, provider and model and sums their
    tokens. A group only gets a cost when every member reported one,
    partial sums are blanked instead of understating the cost.

    Rows come out in the order their group was first seen.
    """
    groups: "dict[tuple[str, str, str, str], _Group]" = {}

    for record in records:
        timestamp_hour = format_hour_start_iso(
            from_epoch_ms(floor_ms_to_hour(record.timestamp_ms))
        )
        key = (timestamp_hour, record.session_key, record.model_provider, record.model)
        group = groups.get(key)
        if group is None:
            group = _Group(*key)
            groups[key] = group
        group.add(record)

    return [group.to_row() for group in groups.values()]


def summarize_usage_diagnostics(records: "Iterable[UsageRecord]") -> "UsageDiagnostics":
    counts = {provenance: 0 for provenance in Provenance}
    for record in records:
        counts[record.provenance] += 1

    return UsageDiagnostics(
        reported_records=counts[Provenance.REPORTED],
        reported_zero_records=counts[Provenance.REPORTED_ZERO],
        missing_usage_records=counts[Provenance.MISSING_USAGE],
    )
