from __future__ import annotations

from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import Field

from src.shared.base import BaseSchema

HouseholdStatusValue = Literal["lead", "quoted", "sold"]


class TimelineTransaction(BaseSchema):
    id: str
    transaction_type: str
    transaction_date: date
    source: str
    product_type: Optional[str] = None
    producer_code: Optional[str] = None
    premium_cents: Optional[int] = None
    policy_number: Optional[str] = None
    linked_quote_id: Optional[str] = None
    match_tier: Optional[str] = None
    match_confidence: Optional[int] = None


class EntityTimeline(BaseSchema):
    household_id: str
    household_key: str
    status: HouseholdStatusValue
    needs_review: bool = False
    lead_date: Optional[date] = None
    first_quote_date: Optional[date] = None
    sold_date: Optional[date] = None
    transactions: List[TimelineTransaction] = Field(default_factory=list)


class ReviewCandidateItem(BaseSchema):
    household_id: str
    household_key: str
    score: int


class ReviewQueueItem(BaseSchema):
    id: str
    reason: str
    status: str
    household_id: Optional[str] = None
    transaction_id: Optional[str] = None
    candidates: List[ReviewCandidateItem] = Field(default_factory=list)
    created_at: Optional[datetime] = None


class ResolveReviewRequest(BaseSchema):
    household_id: Optional[str] = None
    dismiss: bool = False


class StatusCorrectionRequest(BaseSchema):
    status: HouseholdStatusValue
    reason: Optional[str] = None


class PurgeHouseholdsRequest(BaseSchema):
    agency_id: str
    household_ids: List[str] = Field(default_factory=list)
    apply: bool = False


class PurgeHouseholdsResult(BaseSchema):
    applied: bool
    deletable: List[str] = Field(default_factory=list)
    blocked: List[str] = Field(default_factory=list)
    deleted: int = 0
