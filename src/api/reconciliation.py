from __future__ import annotations

from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends

from src.api.dependencies import get_reconciliation_service
from src.schemas.reconciliation import (
    BulkSyncResult,
    ManualHouseholdEvent,
    ReconciliationResult,
    ScorecardSubmissionEvent,
    SubmissionResult,
    TransactionSyncBatch,
    TransactionSyncEvent,
)
from src.services.reconciliation_service import ReconciliationService
from src.shared.response import Meta, ResponseEnvelope


router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])

RECONCILIATION_CALCULATION_VERSION = "v1"


def _build_meta(*, source: str, data_status: str = "live", warning_count: int = 0) -> Meta:
    return Meta(
        as_of_date=date.today().isoformat(),
        source=source,
        time_window="",
        calculation_version=RECONCILIATION_CALCULATION_VERSION,
        data_status=data_status,
        degraded=data_status in {"degraded", "partial"},
        generated_at=datetime.now(timezone.utc).isoformat(),
        warning_count=warning_count,
    )


@router.post("/manual-events")
def record_manual_event(
    event: ManualHouseholdEvent,
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> ResponseEnvelope[ReconciliationResult]:
    result = service.record_manual_event(event)
    return ResponseEnvelope(
        data=result,
        pagination=None,
        meta=_build_meta(
            source="manual_event",
            data_status="partial" if result.warnings else "live",
            warning_count=len(result.warnings),
        ),
    )


@router.post("/submissions")
def record_submission(
    event: ScorecardSubmissionEvent,
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> ResponseEnvelope[SubmissionResult]:
    result = service.record_submission(event)
    return ResponseEnvelope(
        data=result,
        pagination=None,
        meta=_build_meta(
            source="scorecard_submission",
            data_status="partial" if result.dropped_metrics else "live",
            warning_count=len(result.warnings),
        ),
    )


@router.post("/transactions")
def sync_transaction(
    event: TransactionSyncEvent,
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> ResponseEnvelope[ReconciliationResult]:
    result = service.sync_transaction(event)
    return ResponseEnvelope(
        data=result,
        pagination=None,
        meta=_build_meta(source="external_sync", warning_count=len(result.warnings)),
    )


@router.post("/transactions/bulk")
def sync_transactions(
    batch: TransactionSyncBatch,
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> ResponseEnvelope[BulkSyncResult]:
    result = service.sync_transactions(batch)
    return ResponseEnvelope(
        data=result,
        pagination=None,
        meta=_build_meta(source="external_sync", data_status="partial" if result.records_failed else "live"),
    )
