from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Dict, Iterable, Optional, Tuple

from src.models.metrics import MergePolicy, MetricsDailyRecord

# Counters that several writer classes can report for the same day.
MONOTONIC_COUNTERS: Tuple[str, ...] = (
    "quoted_count",
    "sold_items",
    "sold_policies",
    "sold_premium_cents",
)
# Counters only the structured daily submission produces.
SINGLE_WRITER_COUNTERS: Tuple[str, ...] = (
    "outbound_calls",
    "talk_minutes",
    "cross_sells_uncovered",
    "mini_reviews",
)
WELL_KNOWN_COUNTERS: Tuple[str, ...] = MONOTONIC_COUNTERS + SINGLE_WRITER_COUNTERS

COUNTER_FAMILIES: Dict[str, str] = {
    "quoted_count": "quoted",
    "sold_items": "sold",
    "sold_policies": "sold",
    "sold_premium_cents": "sold",
    "outbound_calls": "activity",
    "talk_minutes": "activity",
    "cross_sells_uncovered": "service",
    "mini_reviews": "service",
}

METRIC_ALIASES: Dict[str, str] = {
    "quoted_households": "quoted_count",
    "items_sold": "sold_items",
    "policies_sold": "sold_policies",
}
PREMIUM_DOLLAR_KEYS = frozenset({"sold_premium"})


@dataclass(frozen=True)
class Measurement:
    metric_key: str
    value: Decimal
    version_id: str
    label: str
    merge_policy: MergePolicy = "monotonic"
    is_increment: bool = False


def canonical_metric_key(key: str) -> str:
    normalized = key.strip().lower()
    if normalized in PREMIUM_DOLLAR_KEYS:
        return "sold_premium_cents"
    return METRIC_ALIASES.get(normalized, normalized)


def to_decimal(value: object) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float, str)):
        try:
            parsed = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return None
        return parsed if parsed.is_finite() else None
    return None


def dollars_to_cents(value: object) -> Optional[int]:
    parsed = to_decimal(value)
    if parsed is None:
        return None
    return int((parsed * 100).to_integral_value(rounding=ROUND_FLOOR))


def normalize_reported_value(key: str, value: object) -> Optional[Tuple[str, Decimal]]:
    """Map a submitted payload entry to its stored counter key and unit."""
    parsed = to_decimal(value)
    if parsed is None:
        return None
    canonical = canonical_metric_key(key)
    if key.strip().lower() in PREMIUM_DOLLAR_KEYS:
        parsed = Decimal(dollars_to_cents(parsed))
    return canonical, parsed


def effective_policy(metric_key: str, configured: MergePolicy) -> MergePolicy:
    if metric_key in MONOTONIC_COUNTERS:
        return "monotonic"
    if metric_key in SINGLE_WRITER_COUNTERS:
        return "single_writer"
    return configured


def merge_value(existing: Decimal, incoming: Decimal, policy: MergePolicy) -> Decimal:
    if policy == "monotonic":
        return max(existing, incoming)
    return incoming


def read_counter(row: MetricsDailyRecord, metric_key: str) -> Decimal:
    if metric_key in WELL_KNOWN_COUNTERS:
        return Decimal(getattr(row, metric_key) or 0)
    return Decimal(row.custom_kpis.get(metric_key, 0))


def _write_counter(row: MetricsDailyRecord, metric_key: str, value: Decimal) -> None:
    if metric_key in WELL_KNOWN_COUNTERS:
        setattr(row, metric_key, int(value))
    else:
        row.custom_kpis[metric_key] = value


def apply_measurements(
    row: MetricsDailyRecord, measurements: Iterable[Measurement]
) -> MetricsDailyRecord:
    """Return a copy of ``row`` with every measurement merged in.

    Increments are resolved against the stored value first, so they pass
    through the same high-water-mark rule as absolute reports.
    """
    merged = row.model_copy(deep=True)
    for measurement in measurements:
        key = measurement.metric_key
        existing = read_counter(merged, key)
        incoming = existing + measurement.value if measurement.is_increment else measurement.value
        policy = effective_policy(key, measurement.merge_policy)
        _write_counter(merged, key, merge_value(existing, incoming, policy))
        merged.metric_versions[key] = measurement.version_id
        merged.metric_labels[key] = measurement.label
        merged.kpi_version_id = measurement.version_id
        merged.label_at_submit = measurement.label
    return merged


def counters_snapshot(row: MetricsDailyRecord) -> Dict[str, Decimal]:
    snapshot = {key: read_counter(row, key) for key in WELL_KNOWN_COUNTERS}
    snapshot.update({key: Decimal(value) for key, value in row.custom_kpis.items()})
    return snapshot
