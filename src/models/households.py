from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

HouseholdStatus = Literal["lead", "quoted", "sold"]
TransactionType = Literal["lead", "quote", "sale"]
TransactionSource = Literal["manual", "scorecard", "external_sync"]
ReviewReason = Literal["ambiguous_match", "malformed_key"]
ReviewStatus = Literal["open", "resolved", "dismissed"]

STATUS_RANK: Dict[str, int] = {"lead": 0, "quoted": 1, "sold": 2}
STATUS_FOR_TRANSACTION: Dict[str, str] = {"lead": "lead", "quote": "quoted", "sale": "sold"}


class HouseholdRecord(BaseModel):
    id: str
    agency_id: str
    household_key: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    zip_code: Optional[str] = None
    status: HouseholdStatus = "lead"
    team_member_id: Optional[str] = None
    lead_date: Optional[date] = None
    first_quote_date: Optional[date] = None
    sold_date: Optional[date] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    needs_review: bool = False
    review_reason: Optional[str] = None
    notes: Optional[str] = None
    row_version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class HouseholdTransactionRecord(BaseModel):
    id: str
    agency_id: str
    household_id: str
    transaction_type: TransactionType
    transaction_date: date
    team_member_id: Optional[str] = None
    product_type: Optional[str] = None
    producer_code: Optional[str] = None
    premium_cents: Optional[int] = None
    items_count: int = 1
    policy_number: Optional[str] = None
    linked_quote_id: Optional[str] = None
    source: TransactionSource
    source_reference_id: Optional[str] = None
    dedupe_key: str
    match_tier: Optional[str] = None
    match_confidence: Optional[int] = None
    skip_metrics_increment: bool = False
    created_at: Optional[datetime] = None


class ReviewCandidate(BaseModel):
    household_id: str
    household_key: str
    score: int


class ReviewItemRecord(BaseModel):
    id: str
    agency_id: str
    reason: ReviewReason
    household_id: Optional[str] = None
    transaction_id: Optional[str] = None
    candidates: List[ReviewCandidate] = Field(default_factory=list)
    status: ReviewStatus = "open"
    resolved_household_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class TeamMemberRecord(BaseModel):
    id: str
    agency_id: str
    name: Optional[str] = None
    role: str = "Sales"
    sub_producer_code: Optional[str] = None
