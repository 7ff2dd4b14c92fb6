from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from src.analytics.household_key import UNKNOWN_NAME, HouseholdKey, build_household_key
from src.analytics.match_scoring import (
    CandidateQuote,
    IncomingTransaction,
    MatchCandidate,
    MatchPolicy,
    ScoredCandidate,
    pick_scored_match,
)
from src.core.config import get_purge_dependent_tables, get_settings
from src.core.errors import (
    AmbiguousMatch,
    BadRequestError,
    ConcurrentWriteConflict,
    DependentRecordsExist,
    MalformedKey,
    NotFoundError,
)
from src.models.households import (
    STATUS_FOR_TRANSACTION,
    STATUS_RANK,
    HouseholdRecord,
    HouseholdTransactionRecord,
    ReviewItemRecord,
)
from src.repositories.households_repository import HouseholdsRepository
from src.schemas.households import (
    EntityTimeline,
    PurgeHouseholdsResult,
    ReviewCandidateItem,
    ReviewQueueItem,
    TimelineTransaction,
)

logger = logging.getLogger(__name__)

AUTHORITATIVE_CONFIDENCE = 100
EXACT_KEY_CONFIDENCE = 90
MAX_HOUSEHOLD_UPDATE_ATTEMPTS = 3


@dataclass
class IngestRequest:
    agency_id: str
    key: HouseholdKey
    transaction_type: str
    transaction_date: date
    source: str
    team_member_id: Optional[str] = None
    product_type: Optional[str] = None
    producer_code: Optional[str] = None
    premium_cents: Optional[int] = None
    items_count: int = 1
    policy_number: Optional[str] = None
    source_reference_id: Optional[str] = None
    skip_metrics_increment: bool = False
    phone: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class IngestOutcome:
    household: HouseholdRecord
    transaction: HouseholdTransactionRecord
    match_tier: str
    match_confidence: Optional[int]
    household_created: bool
    status_before: Optional[str]
    transaction_created: bool
    review: Optional[ReviewItemRecord] = None
    candidates: List[ScoredCandidate] = field(default_factory=list)

    @property
    def is_duplicate(self) -> bool:
        return not self.transaction_created

    @property
    def reached_quoted(self) -> bool:
        """True when this event moved the household into ``quoted`` for the first time."""
        return (
            self.transaction_created
            and self.transaction.transaction_type == "quote"
            and (self.status_before is None or self.status_before == "lead")
        )


@dataclass
class _Match:
    household: Optional[HouseholdRecord]
    tier: str
    confidence: Optional[int]
    reference: Optional[HouseholdTransactionRecord] = None
    ambiguous: bool = False
    candidates: List[ScoredCandidate] = field(default_factory=list)


def advance_status(current: Optional[str], incoming: str) -> str:
    if current is None:
        return incoming
    return incoming if STATUS_RANK[incoming] > STATUS_RANK[current] else current


class EntityResolverService:
    """Single writer for households, their transactions and the review queue."""

    def __init__(self, repository: HouseholdsRepository) -> None:
        self.repository = repository
        self.settings = get_settings()
        self.policy = MatchPolicy.from_settings(self.settings)

    @staticmethod
    def _now_utc() -> datetime:
        return datetime.now(timezone.utc)

    def build_key(
        self,
        first_name: Optional[str],
        last_name: Optional[str],
        zip_code: Optional[str],
        full_name: Optional[str] = None,
    ) -> HouseholdKey:
        return build_household_key(
            first_name,
            last_name,
            zip_code,
            full_name=full_name,
            zip_sentinel=self.settings.household_zip_sentinel,
        )

    # ingestion

    def ingest(self, request: IngestRequest) -> IngestOutcome:
        if request.transaction_type not in STATUS_FOR_TRANSACTION:
            raise BadRequestError(f"Unsupported transaction type '{request.transaction_type}'")

        duplicate = self._find_duplicate(request)
        if duplicate is not None:
            return duplicate

        match = self._match(request)
        household_created = False
        status_before: Optional[str] = None
        if match.household is None:
            household, household_created = self._create_household(request)
            if not household_created:
                status_before = household.status
                household = self._advance_household(household, request, needs_review=False)
            match = _Match(
                household=household,
                tier="created" if household_created else "exact_key",
                confidence=None if household_created else EXACT_KEY_CONFIDENCE,
            )
        else:
            status_before = match.household.status
            household = self._advance_household(
                match.household,
                request,
                needs_review=match.ambiguous or request.key.is_malformed,
                review_reason=AmbiguousMatch.code if match.ambiguous else None,
            )
            match.household = household

        transaction, created = self._record_transaction(request, household, match)
        review = None
        if created and (match.ambiguous or request.key.is_malformed):
            review = self._open_review(request, household, transaction, match)

        return IngestOutcome(
            household=household,
            transaction=transaction,
            match_tier=match.tier,
            match_confidence=match.confidence,
            household_created=household_created,
            status_before=status_before,
            transaction_created=created,
            review=review,
            candidates=match.candidates,
        )

    def _find_duplicate(self, request: IngestRequest) -> Optional[IngestOutcome]:
        existing: Optional[HouseholdTransactionRecord] = None
        if request.policy_number:
            for transaction in self.repository.find_transactions_by_policy(
                request.agency_id, request.policy_number
            ):
                if transaction.transaction_type == request.transaction_type:
                    existing = transaction
                    break
        if existing is None and request.source_reference_id:
            existing = self.repository.find_transaction_by_dedupe_key(
                request.agency_id, self._reference_dedupe_key(request)
            )
        if existing is None:
            return None
        return self._duplicate_outcome(request, existing)

    def _duplicate_outcome(
        self, request: IngestRequest, existing: HouseholdTransactionRecord
    ) -> IngestOutcome:
        existing = self._attach_reference(existing, request)
        household = self.repository.get_household(existing.household_id)
        if household is None:
            raise NotFoundError(f"Household {existing.household_id} missing for transaction {existing.id}")
        return IngestOutcome(
            household=household,
            transaction=existing,
            match_tier=existing.match_tier or "exact_key",
            match_confidence=existing.match_confidence,
            household_created=False,
            status_before=household.status,
            transaction_created=False,
        )

    def _match(self, request: IngestRequest) -> _Match:
        if request.policy_number:
            for transaction in self.repository.find_transactions_by_policy(
                request.agency_id, request.policy_number
            ):
                household = self.repository.get_household(transaction.household_id)
                if household is not None:
                    return _Match(
                        household=household,
                        tier="authoritative_reference",
                        confidence=AUTHORITATIVE_CONFIDENCE,
                        reference=transaction,
                    )

        if request.key.has_zip:
            household = self.repository.find_by_key(request.agency_id, request.key.key)
            if household is not None:
                return _Match(household=household, tier="exact_key", confidence=EXACT_KEY_CONFIDENCE)

        return self._scored_match(request)

    def _scored_match(self, request: IngestRequest) -> _Match:
        if request.key.name_malformed:
            return _Match(household=None, tier="created", confidence=None)
        households = [
            household
            for household in self.repository.list_by_last_name(request.agency_id, request.key.last_name)
            if self._is_scoring_candidate(request.key, household)
        ]
        if not households:
            return _Match(household=None, tier="created", confidence=None)

        by_id = {household.id: household for household in households}
        transactions = self.repository.list_transactions(list(by_id))
        candidates = [
            MatchCandidate(
                household_id=household.id,
                household_key=household.household_key,
                quotes=self._candidate_quotes(household, transactions),
            )
            for household in households
        ]
        incoming = IncomingTransaction(
            product_type=request.product_type,
            producer_code=request.producer_code,
            premium_cents=request.premium_cents,
            transaction_date=request.transaction_date,
        )
        result = pick_scored_match(incoming, candidates, self.policy)
        if result.winner is None:
            return _Match(household=None, tier="created", confidence=None)
        winner = by_id[result.winner.household_id]
        if result.decision == "ambiguous":
            logger.warning(
                "ambiguous household match agency=%s key=%s candidates=%s",
                request.agency_id,
                request.key.key,
                [(item.household_key, item.score) for item in result.ranked],
            )
        return _Match(
            household=winner,
            tier="scored",
            confidence=min(result.winner.score, 100),
            ambiguous=result.decision == "ambiguous",
            candidates=result.ranked,
        )

    @staticmethod
    def _is_scoring_candidate(key: HouseholdKey, household: HouseholdRecord) -> bool:
        # Zip must be missing on at least one side.
        if key.has_zip and household.zip_code:
            return False
        first = key.first_name
        other = (household.first_name or "").upper()
        if first != UNKNOWN_NAME and other and other != UNKNOWN_NAME and other != first:
            return False
        return True

    @staticmethod
    def _candidate_quotes(
        household: HouseholdRecord, transactions: List[HouseholdTransactionRecord]
    ) -> tuple[CandidateQuote, ...]:
        own = [item for item in transactions if item.household_id == household.id]
        quotes = [item for item in own if item.transaction_type == "quote"] or own
        return tuple(
            CandidateQuote(
                product_type=item.product_type,
                producer_code=item.producer_code,
                premium_cents=item.premium_cents,
                quote_date=item.transaction_date,
            )
            for item in quotes
        )

    def _create_household(self, request: IngestRequest) -> tuple[HouseholdRecord, bool]:
        status = STATUS_FOR_TRANSACTION[request.transaction_type]
        event_day = request.transaction_date.isoformat()
        payload: Dict[str, Any] = {
            "agency_id": request.agency_id,
            "household_key": request.key.key,
            "first_name": request.key.first_name,
            "last_name": request.key.last_name,
            "zip_code": request.key.zip_code,
            "status": status,
            "team_member_id": request.team_member_id,
            "lead_date": event_day,
            "first_quote_date": event_day if status in ("quoted", "sold") else None,
            "sold_date": event_day if status == "sold" else None,
            "phone": request.phone,
            "email": request.email,
            "needs_review": request.key.is_malformed,
            "review_reason": MalformedKey.code if request.key.is_malformed else None,
            "notes": request.notes,
        }
        try:
            household = self.repository.create_household(payload)
        except ConcurrentWriteConflict:
            existing = self.repository.find_by_key(request.agency_id, request.key.key)
            if existing is None:
                raise
            return existing, False
        logger.info(
            "created household agency=%s key=%s status=%s source=%s",
            request.agency_id,
            household.household_key,
            household.status,
            request.source,
        )
        return household, True

    def _advance_household(
        self,
        household: HouseholdRecord,
        request: IngestRequest,
        needs_review: bool,
        review_reason: Optional[str] = None,
    ) -> HouseholdRecord:
        current = household
        for _ in range(MAX_HOUSEHOLD_UPDATE_ATTEMPTS):
            changes = self._household_changes(current, request, needs_review, review_reason)
            if not changes:
                return current
            updated = self.repository.update_household(current.id, changes, current.row_version)
            if updated is not None:
                return updated
            refreshed = self.repository.get_household(current.id)
            if refreshed is None:
                raise NotFoundError(f"Household {current.id} disappeared during update")
            current = refreshed
        raise ConcurrentWriteConflict(f"Could not update household {household.id}")

    @staticmethod
    def _household_changes(
        household: HouseholdRecord,
        request: IngestRequest,
        needs_review: bool,
        review_reason: Optional[str],
    ) -> Dict[str, Any]:
        day = request.transaction_date
        target = advance_status(household.status, STATUS_FOR_TRANSACTION[request.transaction_type])
        changes: Dict[str, Any] = {}
        if target != household.status:
            changes["status"] = target
        if household.lead_date is None:
            changes["lead_date"] = day.isoformat()
        if target in ("quoted", "sold") and household.first_quote_date is None:
            changes["first_quote_date"] = day.isoformat()
        if target == "sold" and household.sold_date is None:
            changes["sold_date"] = day.isoformat()
        if household.team_member_id is None and request.team_member_id:
            changes["team_member_id"] = request.team_member_id
        if household.phone is None and request.phone:
            changes["phone"] = request.phone
        if household.email is None and request.email:
            changes["email"] = request.email
        if needs_review and not household.needs_review:
            changes["needs_review"] = True
            changes["review_reason"] = review_reason or MalformedKey.code
        return changes

    # transactions

    @staticmethod
    def _reference_dedupe_key(request: IngestRequest) -> str:
        return f"{request.source}:{request.source_reference_id}:{request.transaction_type}"

    def _dedupe_key(self, request: IngestRequest, household: HouseholdRecord) -> str:
        if request.source_reference_id:
            return self._reference_dedupe_key(request)
        product = (request.product_type or "").strip().lower()
        premium = "" if request.premium_cents is None else str(request.premium_cents)
        return (
            f"{request.transaction_type}:{household.id}:{request.transaction_date.isoformat()}"
            f":{product}:{premium}"
        )

    def _linked_quote_id(
        self, request: IngestRequest, household: HouseholdRecord, match: _Match
    ) -> Optional[str]:
        if request.transaction_type != "sale":
            return None
        if match.reference is not None and match.reference.transaction_type == "quote":
            return match.reference.id
        quotes = [
            item
            for item in self.repository.list_transactions([household.id])
            if item.transaction_type == "quote"
        ]
        product = (request.product_type or "").strip().lower()
        same_product = [item for item in quotes if (item.product_type or "").strip().lower() == product]
        pool = same_product if product else []
        if not pool:
            return None
        return max(pool, key=lambda item: item.transaction_date).id

    def _attach_reference(
        self, transaction: HouseholdTransactionRecord, request: IngestRequest
    ) -> HouseholdTransactionRecord:
        if transaction.policy_number or not request.policy_number:
            return transaction
        logger.info("attaching late policy number to transaction=%s", transaction.id)
        return self.repository.update_transaction(
            transaction.id, {"policy_number": request.policy_number}
        )

    def _record_transaction(
        self, request: IngestRequest, household: HouseholdRecord, match: _Match
    ) -> tuple[HouseholdTransactionRecord, bool]:
        dedupe_key = self._dedupe_key(request, household)
        existing = self.repository.find_transaction_by_dedupe_key(request.agency_id, dedupe_key)
        if existing is not None:
            return self._attach_reference(existing, request), False

        payload = {
            "agency_id": request.agency_id,
            "household_id": household.id,
            "transaction_type": request.transaction_type,
            "transaction_date": request.transaction_date.isoformat(),
            "team_member_id": request.team_member_id,
            "product_type": request.product_type,
            "producer_code": request.producer_code,
            "premium_cents": request.premium_cents,
            "items_count": request.items_count,
            "policy_number": request.policy_number,
            "linked_quote_id": self._linked_quote_id(request, household, match),
            "source": request.source,
            "source_reference_id": request.source_reference_id,
            "dedupe_key": dedupe_key,
            "match_tier": match.tier,
            "match_confidence": match.confidence,
            "skip_metrics_increment": request.skip_metrics_increment,
        }
        try:
            return self.repository.create_transaction(payload), True
        except ConcurrentWriteConflict:
            existing = self.repository.find_transaction_by_dedupe_key(request.agency_id, dedupe_key)
            if existing is None:
                raise
            return existing, False

    def consume_skip_flag(self, transaction: HouseholdTransactionRecord) -> bool:
        """Reset the one-shot skip flag. Returns whether the flag was set."""
        if not transaction.skip_metrics_increment:
            return False
        self.repository.update_transaction(transaction.id, {"skip_metrics_increment": False})
        return True

    # review queue

    def _open_review(
        self,
        request: IngestRequest,
        household: HouseholdRecord,
        transaction: HouseholdTransactionRecord,
        match: _Match,
    ) -> ReviewItemRecord:
        reason = AmbiguousMatch.code if match.ambiguous else MalformedKey.code
        return self.repository.create_review(
            {
                "agency_id": request.agency_id,
                "reason": reason,
                "household_id": household.id,
                "transaction_id": transaction.id,
                "candidates": [
                    {
                        "household_id": item.household_id,
                        "household_key": item.household_key,
                        "score": item.score,
                    }
                    for item in match.candidates
                ],
                "details": {
                    "household_key": request.key.key,
                    "zip_malformed": request.key.zip_malformed,
                    "name_malformed": request.key.name_malformed,
                },
            }
        )

    def list_reviews(self, agency_id: str, status: Optional[str] = "open") -> List[ReviewQueueItem]:
        return [
            ReviewQueueItem(
                id=review.id,
                reason=review.reason,
                status=review.status,
                household_id=review.household_id,
                transaction_id=review.transaction_id,
                candidates=[
                    ReviewCandidateItem(
                        household_id=candidate.household_id,
                        household_key=candidate.household_key,
                        score=candidate.score,
                    )
                    for candidate in review.candidates
                ],
                created_at=review.created_at,
            )
            for review in self.repository.list_reviews(agency_id, status)
        ]

    def resolve_review(
        self, review_id: str, household_id: Optional[str], dismiss: bool = False
    ) -> ReviewItemRecord:
        review = self.repository.get_review(review_id)
        if review is None:
            raise NotFoundError("Review item not found")
        if review.status != "open":
            raise BadRequestError("Review item is already closed")

        if dismiss:
            if review.household_id:
                self._set_review_flag(review.household_id, False)
            return self.repository.update_review(
                review_id, {"status": "dismissed", "resolved_at": self._now_utc().isoformat()}
            )

        if not household_id:
            raise BadRequestError("household_id is required to resolve a review")
        chosen = self.repository.get_household(household_id)
        if chosen is None or chosen.agency_id != review.agency_id:
            raise NotFoundError("Household not found")

        if review.transaction_id:
            transactions = [
                item
                for item in self.repository.list_transactions(
                    [review.household_id] if review.household_id else []
                )
                if item.id == review.transaction_id
            ]
            if transactions and transactions[0].household_id != chosen.id:
                moved = self.repository.update_transaction(
                    transactions[0].id,
                    {
                        "household_id": chosen.id,
                        "match_tier": "manual_review",
                        "match_confidence": AUTHORITATIVE_CONFIDENCE,
                    },
                )
                self._apply_status(chosen, advance_status(chosen.status, STATUS_FOR_TRANSACTION[moved.transaction_type]))
                chosen = self.repository.get_household(chosen.id) or chosen

        if review.household_id and review.household_id != chosen.id:
            self._set_review_flag(review.household_id, False)
        self._set_review_flag(chosen.id, False)
        return self.repository.update_review(
            review_id,
            {
                "status": "resolved",
                "resolved_household_id": chosen.id,
                "resolved_at": self._now_utc().isoformat(),
            },
        )

    def _set_review_flag(self, household_id: str, value: bool) -> None:
        household = self.repository.get_household(household_id)
        if household is None or household.needs_review == value:
            return
        for _ in range(MAX_HOUSEHOLD_UPDATE_ATTEMPTS):
            payload = {"needs_review": value, "review_reason": household.review_reason if value else None}
            if self.repository.update_household(household.id, payload, household.row_version):
                return
            household = self.repository.get_household(household_id)
            if household is None:
                return
        raise ConcurrentWriteConflict(f"Could not update household {household_id}")

    # corrections, reads and maintenance

    def correct_status(self, household_id: str, status: str) -> HouseholdRecord:
        """Explicit correction; the only path allowed to move status backwards."""
        if status not in STATUS_RANK:
            raise BadRequestError(f"Unsupported status '{status}'")
        household = self.repository.get_household(household_id)
        if household is None:
            raise NotFoundError("Household not found")
        logger.info("status correction household=%s %s -> %s", household.id, household.status, status)
        return self._apply_status(household, status)

    def _apply_status(self, household: HouseholdRecord, status: str) -> HouseholdRecord:
        current = household
        for _ in range(MAX_HOUSEHOLD_UPDATE_ATTEMPTS):
            if current.status == status:
                return current
            updated = self.repository.update_household(current.id, {"status": status}, current.row_version)
            if updated is not None:
                return updated
            refreshed = self.repository.get_household(current.id)
            if refreshed is None:
                raise NotFoundError("Household not found")
            current = refreshed
        raise ConcurrentWriteConflict(f"Could not update household {household.id}")

    def get_timeline(self, agency_id: str, household_key: str) -> EntityTimeline:
        household = self.repository.find_by_key(agency_id, household_key.strip().upper())
        if household is None:
            raise NotFoundError("Household not found")
        transactions = sorted(
            self.repository.list_transactions([household.id]),
            key=lambda item: (item.transaction_date, item.created_at or datetime.min.replace(tzinfo=timezone.utc)),
        )
        return EntityTimeline(
            household_id=household.id,
            household_key=household.household_key,
            status=household.status,
            needs_review=household.needs_review,
            lead_date=household.lead_date,
            first_quote_date=household.first_quote_date,
            sold_date=household.sold_date,
            transactions=[
                TimelineTransaction(
                    id=item.id,
                    transaction_type=item.transaction_type,
                    transaction_date=item.transaction_date,
                    source=item.source,
                    product_type=item.product_type,
                    producer_code=item.producer_code,
                    premium_cents=item.premium_cents,
                    policy_number=item.policy_number,
                    linked_quote_id=item.linked_quote_id,
                    match_tier=item.match_tier,
                    match_confidence=item.match_confidence,
                )
                for item in transactions
            ],
        )

    def find_dependents(self, household_id: str) -> Dict[str, int]:
        dependents: Dict[str, int] = {}
        transactions = self.repository.list_transactions([household_id])
        if transactions:
            dependents["lqs_transactions"] = len(transactions)
        open_reviews = self.repository.count_open_reviews(household_id)
        if open_reviews:
            dependents["reconciliation_reviews"] = open_reviews
        for table, column in get_purge_dependent_tables():
            count = self.repository.count_references(table, column, household_id)
            if count:
                dependents[table] = count
        return dependents

    def purge_households(
        self, agency_id: str, household_ids: List[str], apply: bool = False
    ) -> PurgeHouseholdsResult:
        """Delete households only after proving nothing references them.

        With ``apply`` any blocked household aborts the whole purge before a
        single row is deleted.
        """
        deletable: List[str] = []
        blocked: Dict[str, List[str]] = {}
        for household_id in household_ids:
            household = self.repository.get_household(household_id)
            if household is None or household.agency_id != agency_id:
                raise NotFoundError(f"Household {household_id} not found")
            dependents = self.find_dependents(household_id)
            if dependents:
                blocked[household_id] = sorted(dependents)
            else:
                deletable.append(household_id)

        if not apply:
            return PurgeHouseholdsResult(applied=False, deletable=deletable, blocked=sorted(blocked))
        if blocked:
            raise DependentRecordsExist(
                f"{len(blocked)} household(s) still have dependent records", blocked
            )
        for household_id in deletable:
            # Re-check right before deleting; a writer may have attached something meanwhile.
            dependents = self.find_dependents(household_id)
            if dependents:
                raise DependentRecordsExist(
                    f"Household {household_id} gained dependent records",
                    {household_id: sorted(dependents)},
                )
            self.repository.delete_household(household_id)
            logger.info("purged household=%s agency=%s", household_id, agency_id)
        return PurgeHouseholdsResult(applied=True, deletable=deletable, blocked=[], deleted=len(deletable))
