from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Mapping

from src.analytics.metric_merge import canonical_metric_key, read_counter
from src.models.metrics import MetricsDailyRecord, ScorecardRulesRecord, TargetRecord

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


@dataclass(frozen=True)
class DerivedFields:
    hits: int
    daily_score: int
    passed: bool
    is_counted_day: bool


def resolve_targets(targets: Iterable[TargetRecord], team_member_id: str) -> Dict[str, Decimal]:
    """Agency defaults overlaid by the member's own overrides."""
    defaults: Dict[str, Decimal] = {}
    overrides: Dict[str, Decimal] = {}
    for target in targets:
        key = canonical_metric_key(target.metric_key)
        if target.team_member_id is None:
            defaults[key] = Decimal(target.value_number)
        elif target.team_member_id == team_member_id:
            overrides[key] = Decimal(target.value_number)
    return {**defaults, **overrides}


def target_met(metric_key: str, value: Decimal, target: Decimal) -> bool:
    # Premium targets are configured in dollars, the counter is stored in cents.
    if metric_key == "sold_premium_cents":
        return value >= target * 100
    return value >= target


def compute_derived_fields(
    row: MetricsDailyRecord,
    rules: ScorecardRulesRecord,
    targets: Mapping[str, Decimal],
) -> DerivedFields:
    """Score one stored aggregate row. Reads nothing but ``row`` and config."""
    hits = 0
    score = 0
    seen: set[str] = set()
    for selected in rules.selected_metrics:
        key = canonical_metric_key(selected)
        if key in seen:
            continue
        seen.add(key)
        target = targets.get(key, Decimal(0))
        if target_met(key, read_counter(row, key), target):
            hits += 1
            score += int(rules.weights.get(selected, rules.weights.get(key, 0)) or 0)

    if seen:
        required = min(rules.n_required, len(seen))
        passed = hits >= required
    else:
        passed = True
    if row.is_late and not rules.late_counts_for_pass:
        passed = False

    weekday = WEEKDAY_NAMES[row.date.weekday()]
    counted = bool(rules.counted_days.get(weekday, False))
    if not counted and rules.count_weekend_if_submitted and row.final_submission_id:
        counted = True

    return DerivedFields(hits=hits, daily_score=score, passed=passed, is_counted_day=counted)


def apply_derived_fields(
    row: MetricsDailyRecord,
    rules: ScorecardRulesRecord,
    targets: Mapping[str, Decimal],
) -> MetricsDailyRecord:
    derived = compute_derived_fields(row, rules, targets)
    return row.model_copy(
        update={
            "hits": derived.hits,
            "daily_score": derived.daily_score,
            "pass_": derived.passed,
            "is_counted_day": derived.is_counted_day,
        }
    )
