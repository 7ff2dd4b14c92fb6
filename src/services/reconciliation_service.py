from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from src.analytics.metric_merge import (
    COUNTER_FAMILIES,
    WELL_KNOWN_COUNTERS,
    Measurement,
    dollars_to_cents,
    normalize_reported_value,
)
from src.core.errors import MissingVersionBinding, NotFoundError
from src.models.metrics import MetricsDailyRecord
from src.schemas.metrics import DailyAggregate
from src.schemas.reconciliation import (
    BulkSyncItemResult,
    BulkSyncResult,
    ManualHouseholdEvent,
    ReconciliationResult,
    ReconciliationWarning,
    ScorecardSubmissionEvent,
    SubmissionResult,
    TransactionSyncBatch,
    TransactionSyncEvent,
)
from src.services.aggregate_merge_service import AggregateMergeService
from src.services.entity_resolver_service import (
    EntityResolverService,
    IngestOutcome,
    IngestRequest,
)
from src.services.kpi_registry_service import KpiRegistryService

logger = logging.getLogger(__name__)

SOLD_COUNTERS = ("sold_items", "sold_policies", "sold_premium_cents")


def implied_transaction_type(deltas: Dict[str, Decimal]) -> str:
    if any(deltas.get(key, 0) > 0 for key in SOLD_COUNTERS):
        return "sale"
    if deltas.get("quoted_count", 0) > 0:
        return "quote"
    return "lead"


def to_daily_aggregate(row: MetricsDailyRecord) -> DailyAggregate:
    return DailyAggregate(
        agency_id=row.agency_id,
        person_id=row.team_member_id,
        date=row.date,
        raw_counters={key: int(getattr(row, key) or 0) for key in WELL_KNOWN_COUNTERS},
        custom_counters=dict(row.custom_kpis),
        hits=row.hits,
        passed=row.pass_,
        score=row.daily_score,
        is_counted_day=row.is_counted_day,
        is_late=row.is_late,
        label_per_metric=dict(row.metric_labels),
        kpi_version_id=row.kpi_version_id,
        label_at_submit=row.label_at_submit,
        reported_by_submission=dict(row.skip_merge),
    )


class ReconciliationService:
    """Sequences resolver, registry and merge engine for each writer class.

    This is the only place that decides whether an event counts toward the
    daily aggregate.
    """

    def __init__(
        self,
        resolver: EntityResolverService,
        registry: KpiRegistryService,
        merge: AggregateMergeService,
    ) -> None:
        self.resolver = resolver
        self.registry = registry
        self.merge = merge

    # writers

    def record_manual_event(self, event: ManualHouseholdEvent) -> ReconciliationResult:
        warnings: List[ReconciliationWarning] = []
        deltas: Dict[str, Decimal] = {}
        for raw_key, raw_value in event.metric_deltas.items():
            normalized = normalize_reported_value(raw_key, raw_value)
            if normalized is None:
                warnings.append(self._invalid_value_warning(raw_key))
                continue
            key, value = normalized
            deltas[key] = deltas.get(key, Decimal(0)) + value

        premium_cents = dollars_to_cents(event.premium)
        if premium_cents is None and "sold_premium_cents" in deltas:
            premium_cents = int(deltas["sold_premium_cents"])
        items = int(deltas["sold_items"]) if deltas.get("sold_items", 0) > 0 else 1

        request = IngestRequest(
            agency_id=event.agency_id,
            key=self.resolver.build_key(
                event.first_name, event.last_name, event.zip, full_name=event.full_name
            ),
            transaction_type=implied_transaction_type(deltas),
            transaction_date=event.event_date or date.today(),
            source="manual",
            team_member_id=event.producer_id,
            product_type=event.product_type,
            premium_cents=premium_cents,
            items_count=items,
            source_reference_id=event.event_id,
            phone=event.phone,
            email=event.email,
        )
        outcome = self.resolver.ingest(request)
        # A household is quoted once, however many quotes the manual form logs.
        increments = {
            key: value for key, value in deltas.items() if value and key != "quoted_count"
        }
        if outcome.reached_quoted and deltas.get("quoted_count", 0) > 0:
            increments["quoted_count"] = Decimal(1)
        return self._finish(outcome, request, increments, warnings)

    def sync_transaction(self, event: TransactionSyncEvent) -> ReconciliationResult:
        warnings: List[ReconciliationWarning] = []
        team_member_id: Optional[str] = None
        if event.producer_code:
            member = self.resolver.repository.find_team_member_by_code(
                event.agency_id, event.producer_code
            )
            if member is not None:
                team_member_id = member.id

        request = IngestRequest(
            agency_id=event.agency_id,
            key=self.resolver.build_key(
                event.first_name, event.last_name, event.zip, full_name=event.full_name
            ),
            transaction_type=event.transaction_type,
            transaction_date=event.transaction_date,
            source="external_sync",
            team_member_id=team_member_id,
            product_type=event.product_type,
            producer_code=event.producer_code,
            premium_cents=dollars_to_cents(event.amount),
            items_count=max(event.items, 1),
            policy_number=(event.authoritative_reference or "").strip() or None,
            source_reference_id=event.source_reference_id,
        )
        outcome = self.resolver.ingest(request)

        increments: Dict[str, Decimal] = {}
        if outcome.reached_quoted:
            increments["quoted_count"] = Decimal(1)
        if outcome.transaction.transaction_type == "sale":
            increments["sold_policies"] = Decimal(1)
            increments["sold_items"] = Decimal(request.items_count)
            if request.premium_cents:
                increments["sold_premium_cents"] = Decimal(request.premium_cents)
        return self._finish(outcome, request, increments, warnings)

    def sync_transactions(self, batch: TransactionSyncBatch) -> BulkSyncResult:
        """Each event reconciles on its own; a failure never undoes earlier events."""
        items: List[BulkSyncItemResult] = []
        for index, event in enumerate(batch.events):
            try:
                result = self.sync_transaction(event)
            except Exception as exc:
                logger.exception("transaction sync failed index=%s agency=%s", index, event.agency_id)
                items.append(
                    BulkSyncItemResult(
                        index=index,
                        result=ReconciliationResult(outcome="failed"),
                        error=str(exc) or exc.__class__.__name__,
                    )
                )
                continue
            items.append(BulkSyncItemResult(index=index, result=result))

        def count(outcome: str) -> int:
            return sum(1 for item in items if item.result is not None and item.result.outcome == outcome)

        return BulkSyncResult(
            records_processed=len(items),
            records_applied=count("applied"),
            records_duplicate=count("duplicate"),
            records_pending_review=count("pending_review"),
            records_failed=count("failed"),
            items=items,
        )

    def record_submission(self, event: ScorecardSubmissionEvent) -> SubmissionResult:
        warnings: List[ReconciliationWarning] = []
        dropped: List[str] = []
        values: Dict[str, Decimal] = {}
        for raw_key, raw_value in event.reported_values.items():
            normalized = normalize_reported_value(raw_key, raw_value)
            if normalized is None:
                warnings.append(self._invalid_value_warning(raw_key))
                dropped.append(raw_key)
                continue
            key, value = normalized
            values[key] = value

        resolved = self.registry.resolve_many(
            event.agency_id, values.keys(), event.form_version_binding_id
        )
        measurements: Dict[str, Measurement] = {}
        for key, value in values.items():
            version = resolved.get(key)
            if version is None or isinstance(version, MissingVersionBinding):
                warnings.append(self._missing_binding_warning(event.agency_id, key))
                dropped.append(key)
                continue
            measurements[key] = Measurement(
                metric_key=key,
                value=value,
                version_id=version.version_id,
                label=version.label,
                merge_policy=version.merge_policy,
            )

        families = sorted({COUNTER_FAMILIES[key] for key in measurements if key in COUNTER_FAMILIES})
        self.merge.apply(
            event.agency_id,
            event.person_id,
            event.date,
            list(measurements.values()),
            submission_id=event.submission_id,
            is_late=event.is_late,
            reported_families=families,
        )

        households: List[ReconciliationResult] = []
        for detail in event.quoted_details:
            request = IngestRequest(
                agency_id=event.agency_id,
                key=self.resolver.build_key(None, None, detail.zip, full_name=detail.household_name),
                transaction_type="quote",
                transaction_date=event.date,
                source="scorecard",
                team_member_id=event.person_id,
                product_type=detail.product_type,
                premium_cents=dollars_to_cents(detail.premium),
                items_count=max(detail.items_quoted, 1),
                skip_metrics_increment=True,
            )
            outcome = self.resolver.ingest(request)
            households.append(self._finish(outcome, request, {"quoted_count": Decimal(1)}, []))

        return SubmissionResult(
            agency_id=event.agency_id,
            person_id=event.person_id,
            date=event.date,
            applied_metrics=sorted(measurements),
            dropped_metrics=dropped,
            households=households,
            warnings=warnings,
        )

    # reads

    def get_daily_aggregate(self, agency_id: str, person_id: str, day: date) -> DailyAggregate:
        row = self.merge.get_daily(agency_id, person_id, day)
        if row is None:
            raise NotFoundError("No daily metrics for that person and date")
        return to_daily_aggregate(row)

    def recompute_day(self, agency_id: str, person_id: str, day: date) -> DailyAggregate:
        return to_daily_aggregate(self.merge.recompute_day(agency_id, person_id, day))

    # helpers

    def _finish(
        self,
        outcome: IngestOutcome,
        request: IngestRequest,
        increments: Dict[str, Decimal],
        warnings: List[ReconciliationWarning],
    ) -> ReconciliationResult:
        counted = False
        if outcome.transaction_created:
            if self.resolver.consume_skip_flag(outcome.transaction):
                logger.info(
                    "transaction=%s already reflected in a submission, not counted",
                    outcome.transaction.id,
                )
            elif increments:
                counted = self._count(outcome, request, increments, warnings)

        if outcome.review is not None:
            warnings.append(
                ReconciliationWarning(
                    code=outcome.review.reason,
                    message=f"Household {outcome.household.household_key} queued for review",
                )
            )

        if not outcome.transaction_created:
            result_outcome = "duplicate"
        elif outcome.review is not None:
            result_outcome = "pending_review"
        else:
            result_outcome = "applied"
        return ReconciliationResult(
            outcome=result_outcome,
            household_id=outcome.household.id,
            household_key=outcome.household.household_key,
            transaction_id=outcome.transaction.id,
            match_tier=outcome.match_tier,
            match_confidence=outcome.match_confidence,
            counted=counted,
            review_id=outcome.review.id if outcome.review else None,
            warnings=warnings,
        )

    def _count(
        self,
        outcome: IngestOutcome,
        request: IngestRequest,
        increments: Dict[str, Decimal],
        warnings: List[ReconciliationWarning],
    ) -> bool:
        team_member_id = request.team_member_id or outcome.household.team_member_id
        if not team_member_id:
            logger.warning(
                "no team member for transaction=%s agency=%s, aggregate not updated",
                outcome.transaction.id,
                request.agency_id,
            )
            warnings.append(
                ReconciliationWarning(
                    code="unassigned_producer",
                    message="Transaction recorded without a team member; daily metrics not updated",
                )
            )
            return False

        measurements, missing = self._increment_measurements(request.agency_id, increments)
        for key in missing:
            warnings.append(self._missing_binding_warning(request.agency_id, key))
        if not measurements:
            return False
        self.merge.apply(request.agency_id, team_member_id, request.transaction_date, measurements)
        return True

    def _increment_measurements(
        self, agency_id: str, increments: Dict[str, Decimal]
    ) -> Tuple[List[Measurement], List[str]]:
        resolved = self.registry.resolve_many(agency_id, increments.keys())
        measurements: List[Measurement] = []
        missing: List[str] = []
        for key, delta in increments.items():
            version = resolved.get(key)
            if version is None or isinstance(version, MissingVersionBinding):
                missing.append(key)
                continue
            measurements.append(
                Measurement(
                    metric_key=key,
                    value=delta,
                    version_id=version.version_id,
                    label=version.label,
                    merge_policy=version.merge_policy,
                    is_increment=True,
                )
            )
        return measurements, missing

    @staticmethod
    def _invalid_value_warning(metric_key: str) -> ReconciliationWarning:
        return ReconciliationWarning(
            code="invalid_value",
            message=f"Value for '{metric_key}' is not a number",
            metric_key=metric_key,
        )

    @staticmethod
    def _missing_binding_warning(agency_id: str, metric_key: str) -> ReconciliationWarning:
        logger.warning("dropping metric=%s agency=%s: no KPI version", metric_key, agency_id)
        return ReconciliationWarning(
            code=MissingVersionBinding.code,
            message=f"No current KPI version for '{metric_key}'; value dropped",
            metric_key=metric_key,
        )
