from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

MergePolicy = Literal["monotonic", "single_writer"]

DEFAULT_SELECTED_METRICS = ["outbound_calls", "talk_minutes", "quoted_count", "sold_items"]
DEFAULT_WEIGHTS = {"outbound_calls": 10, "talk_minutes": 20, "quoted_count": 30, "sold_items": 40}
DEFAULT_COUNTED_DAYS = {
    "monday": True,
    "tuesday": True,
    "wednesday": True,
    "thursday": True,
    "friday": True,
    "saturday": False,
    "sunday": False,
}


class KpiRecord(BaseModel):
    id: str
    agency_id: str
    key: str
    merge_policy: MergePolicy = "monotonic"
    is_active: bool = True
    created_at: Optional[datetime] = None


class KpiVersionRecord(BaseModel):
    id: str
    kpi_id: str
    label: str
    valid_from: datetime
    valid_to: Optional[datetime] = None

    @property
    def is_current(self) -> bool:
        return self.valid_to is None


class FormKpiBindingRecord(BaseModel):
    id: str
    form_template_id: str
    kpi_version_id: str
    created_at: datetime


class ScorecardRulesRecord(BaseModel):
    agency_id: str
    role: str = "Sales"
    selected_metrics: List[str] = Field(default_factory=lambda: list(DEFAULT_SELECTED_METRICS))
    n_required: int = 2
    weights: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    counted_days: Dict[str, bool] = Field(default_factory=lambda: dict(DEFAULT_COUNTED_DAYS))
    count_weekend_if_submitted: bool = True
    late_counts_for_pass: bool = False


class TargetRecord(BaseModel):
    agency_id: str
    team_member_id: Optional[str] = None
    metric_key: str
    value_number: Decimal


class MetricsDailyRecord(BaseModel):
    id: Optional[str] = None
    agency_id: str
    team_member_id: str
    date: date
    role: str = "Sales"

    outbound_calls: int = 0
    talk_minutes: int = 0
    quoted_count: int = 0
    sold_items: int = 0
    sold_policies: int = 0
    sold_premium_cents: int = 0
    cross_sells_uncovered: int = 0
    mini_reviews: int = 0
    custom_kpis: Dict[str, Decimal] = Field(default_factory=dict)
    skip_merge: Dict[str, bool] = Field(default_factory=dict)

    kpi_version_id: Optional[str] = None
    label_at_submit: Optional[str] = None
    metric_versions: Dict[str, str] = Field(default_factory=dict)
    metric_labels: Dict[str, str] = Field(default_factory=dict)

    hits: int = 0
    daily_score: int = 0
    pass_: bool = Field(default=False, alias="pass")
    is_counted_day: bool = True
    is_late: bool = False
    final_submission_id: Optional[str] = None
    row_version: int = 0
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True)
