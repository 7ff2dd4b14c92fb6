from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Dict, Optional

from pydantic import Field

from src.shared.base import BaseSchema


class DailyAggregate(BaseSchema):
    agency_id: str
    person_id: str
    date: date
    raw_counters: Dict[str, int] = Field(default_factory=dict)
    custom_counters: Dict[str, Decimal] = Field(default_factory=dict)
    hits: int = 0
    passed: bool = Field(default=False, serialization_alias="pass")
    score: int = 0
    is_counted_day: bool = True
    is_late: bool = False
    label_per_metric: Dict[str, str] = Field(default_factory=dict)
    kpi_version_id: Optional[str] = None
    label_at_submit: Optional[str] = None
    reported_by_submission: Dict[str, bool] = Field(default_factory=dict)


class RecomputeDayRequest(BaseSchema):
    agency_id: str
    person_id: str
    date: date
