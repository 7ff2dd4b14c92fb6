from __future__ import annotations

from datetime import date
from typing import List

from fastapi import APIRouter, Depends, Query

from src.api.dependencies import get_entity_resolver_service
from src.models.households import ReviewItemRecord
from src.schemas.households import (
    EntityTimeline,
    PurgeHouseholdsRequest,
    PurgeHouseholdsResult,
    ResolveReviewRequest,
    ReviewQueueItem,
    StatusCorrectionRequest,
)
from src.services.entity_resolver_service import EntityResolverService
from src.shared.response import Meta, ResponseEnvelope, paginate_list


router = APIRouter(prefix="/households", tags=["households"])


def _build_meta(source: str, data_status: str = "live") -> Meta:
    return Meta(
        as_of_date=date.today().isoformat(),
        source=source,
        time_window="",
        calculation_version="v1",
        data_status=data_status,
    )


@router.get("/timeline")
def household_timeline(
    agency_id: str = Query(..., min_length=1),
    household_key: str = Query(..., min_length=1),
    service: EntityResolverService = Depends(get_entity_resolver_service),
) -> ResponseEnvelope[EntityTimeline]:
    data = service.get_timeline(agency_id, household_key)
    return ResponseEnvelope(data=data, pagination=None, meta=_build_meta("lqs_transactions"))


@router.get("/reviews")
def review_queue(
    agency_id: str = Query(..., min_length=1),
    status: str = Query(default="open", pattern="^(open|resolved|dismissed)$"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    service: EntityResolverService = Depends(get_entity_resolver_service),
) -> ResponseEnvelope[List[ReviewQueueItem]]:
    items, pagination = paginate_list(service.list_reviews(agency_id, status), page, page_size)
    return ResponseEnvelope(data=items, pagination=pagination, meta=_build_meta("reconciliation_reviews"))


@router.post("/reviews/{review_id}/resolve")
def resolve_review(
    review_id: str,
    request: ResolveReviewRequest,
    service: EntityResolverService = Depends(get_entity_resolver_service),
) -> ResponseEnvelope[ReviewItemRecord]:
    review = service.resolve_review(review_id, request.household_id, dismiss=request.dismiss)
    return ResponseEnvelope(data=review, pagination=None, meta=_build_meta("reconciliation_reviews"))


@router.patch("/{household_id}/status")
def correct_household_status(
    household_id: str,
    request: StatusCorrectionRequest,
    service: EntityResolverService = Depends(get_entity_resolver_service),
) -> ResponseEnvelope[EntityTimeline]:
    household = service.correct_status(household_id, request.status)
    data = service.get_timeline(household.agency_id, household.household_key)
    return ResponseEnvelope(data=data, pagination=None, meta=_build_meta("lqs_households"))


@router.post("/purge")
def purge_households(
    request: PurgeHouseholdsRequest,
    service: EntityResolverService = Depends(get_entity_resolver_service),
) -> ResponseEnvelope[PurgeHouseholdsResult]:
    result = service.purge_households(request.agency_id, request.household_ids, apply=request.apply)
    return ResponseEnvelope(
        data=result,
        pagination=None,
        meta=_build_meta("lqs_households", data_status="live" if result.applied else "dry_run"),
    )
