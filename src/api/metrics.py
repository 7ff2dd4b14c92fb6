from __future__ import annotations

from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, Query

from src.api.dependencies import get_reconciliation_service
from src.schemas.metrics import DailyAggregate, RecomputeDayRequest
from src.services.reconciliation_service import ReconciliationService
from src.shared.response import Meta, ResponseEnvelope


router = APIRouter(prefix="/metrics", tags=["metrics"])


def _build_meta(source: str, day: date) -> Meta:
    return Meta(
        as_of_date=day.isoformat(),
        source=source,
        time_window="day",
        calculation_version="v1",
        data_status="live",
        generated_at=datetime.now(timezone.utc).isoformat(),
    )


@router.get("/daily")
def daily_aggregate(
    agency_id: str = Query(..., min_length=1),
    person_id: str = Query(..., min_length=1),
    day: date = Query(..., alias="date"),
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> ResponseEnvelope[DailyAggregate]:
    data = service.get_daily_aggregate(agency_id, person_id, day)
    return ResponseEnvelope(data=data, pagination=None, meta=_build_meta("metrics_daily", day))


@router.post("/daily/recompute")
def recompute_daily_aggregate(
    request: RecomputeDayRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> ResponseEnvelope[DailyAggregate]:
    data = service.recompute_day(request.agency_id, request.person_id, request.date)
    return ResponseEnvelope(data=data, pagination=None, meta=_build_meta("metrics_daily_recompute", request.date))
