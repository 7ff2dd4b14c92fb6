from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from src.shared.base import BaseSchema

SyncTransactionType = Literal["quote", "sale"]
MatchTier = Literal["authoritative_reference", "exact_key", "scored", "created", "manual_review"]
EventOutcome = Literal["applied", "duplicate", "pending_review", "failed"]


class ManualHouseholdEvent(BaseSchema):
    agency_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    zip: Optional[str] = None
    producer_id: Optional[str] = None
    metric_deltas: Dict[str, Any] = Field(default_factory=dict)
    event_date: Optional[date] = None
    event_id: Optional[str] = None
    product_type: Optional[str] = None
    premium: Optional[Decimal] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class QuotedHouseholdDetail(BaseSchema):
    household_name: str
    zip: Optional[str] = None
    product_type: Optional[str] = None
    premium: Optional[Decimal] = None
    items_quoted: int = 1


class ScorecardSubmissionEvent(BaseSchema):
    agency_id: str
    person_id: str
    date: date
    form_version_binding_id: Optional[str] = None
    reported_values: Dict[str, Any] = Field(default_factory=dict)
    submission_id: Optional[str] = None
    is_late: bool = False
    quoted_details: List[QuotedHouseholdDetail] = Field(default_factory=list)


class TransactionSyncEvent(BaseSchema):
    agency_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    zip: Optional[str] = None
    authoritative_reference: Optional[str] = None
    product_type: Optional[str] = None
    producer_code: Optional[str] = None
    amount: Optional[Decimal] = None
    items: int = 1
    transaction_date: date
    transaction_type: SyncTransactionType
    source_reference_id: Optional[str] = None


class TransactionSyncBatch(BaseSchema):
    events: List[TransactionSyncEvent] = Field(default_factory=list)


class ReconciliationWarning(BaseSchema):
    code: str
    message: str
    metric_key: Optional[str] = None


class ReconciliationResult(BaseSchema):
    outcome: EventOutcome
    household_id: Optional[str] = None
    household_key: Optional[str] = None
    transaction_id: Optional[str] = None
    match_tier: Optional[MatchTier] = None
    match_confidence: Optional[int] = None
    counted: bool = False
    review_id: Optional[str] = None
    warnings: List[ReconciliationWarning] = Field(default_factory=list)


class SubmissionResult(BaseSchema):
    agency_id: str
    person_id: str
    date: date
    applied_metrics: List[str] = Field(default_factory=list)
    dropped_metrics: List[str] = Field(default_factory=list)
    households: List[ReconciliationResult] = Field(default_factory=list)
    warnings: List[ReconciliationWarning] = Field(default_factory=list)


class BulkSyncItemResult(BaseSchema):
    index: int
    result: Optional[ReconciliationResult] = None
    error: Optional[str] = None


class BulkSyncResult(BaseSchema):
    records_processed: int
    records_applied: int
    records_duplicate: int
    records_pending_review: int
    records_failed: int
    items: List[BulkSyncItemResult] = Field(default_factory=list)
