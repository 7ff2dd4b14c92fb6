from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from conftest import AGENCY_ID
from src.core.errors import NotFoundError
from src.schemas.kpis import FormBindingRequest, KpiCreateRequest
from src.schemas.reconciliation import (
    ManualHouseholdEvent,
    QuotedHouseholdDetail,
    ScorecardSubmissionEvent,
    TransactionSyncBatch,
    TransactionSyncEvent,
)

DAY = date(2026, 3, 2)


def _manual(**overrides):
    values = {
        "agency_id": AGENCY_ID,
        "first_name": "John",
        "last_name": "Smith",
        "zip": "90210",
        "producer_id": "tm-1",
        "metric_deltas": {"quoted_count": Decimal(1)},
        "event_date": DAY,
    }
    values.update(overrides)
    return ManualHouseholdEvent(**values)


def _submission(reported, **overrides):
    values = {
        "agency_id": AGENCY_ID,
        "person_id": "tm-1",
        "date": DAY,
        "reported_values": reported,
        "submission_id": "sub-1",
    }
    values.update(overrides)
    return ScorecardSubmissionEvent(**values)


def _sync(**overrides):
    values = {
        "agency_id": AGENCY_ID,
        "first_name": "John",
        "last_name": "Smith",
        "zip": "90210",
        "product_type": "Auto",
        "producer_code": "42",
        "amount": Decimal("1200.00"),
        "transaction_date": DAY,
        "transaction_type": "sale",
    }
    values.update(overrides)
    return TransactionSyncEvent(**values)


def test_manual_add_then_submission_keeps_the_larger_total(reconciliation):
    manual = reconciliation.record_manual_event(_manual())
    assert manual.outcome == "applied"
    assert manual.household_key == "SMITH_JOHN_90210"
    assert manual.counted is True
    assert reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY).raw_counters["quoted_count"] == 1

    reconciliation.record_submission(_submission({"quoted_count": Decimal(4)}))
    aggregate = reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY)
    assert aggregate.raw_counters["quoted_count"] == 4
    assert aggregate.reported_by_submission == {"quoted": True}


def test_repeated_manual_event_is_not_counted_twice(reconciliation):
    reconciliation.record_manual_event(_manual(event_id="evt-1"))
    again = reconciliation.record_manual_event(_manual(event_id="evt-1"))
    assert again.outcome == "duplicate"
    assert again.counted is False
    assert reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY).raw_counters["quoted_count"] == 1


def test_manual_sold_deltas_imply_a_sale(reconciliation, households_repository):
    result = reconciliation.record_manual_event(
        _manual(metric_deltas={"items_sold": Decimal(2), "sold_policies": Decimal(1)}, premium=Decimal("850.50"))
    )
    household = households_repository.households[result.household_id]
    transaction = households_repository.transactions[result.transaction_id]
    assert household.status == "sold"
    assert transaction.transaction_type == "sale"
    assert transaction.premium_cents == 85050
    assert transaction.items_count == 2
    counters = reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY).raw_counters
    assert counters["sold_items"] == 2
    assert counters["sold_policies"] == 1


def test_submission_retry_leaves_aggregate_unchanged(reconciliation):
    event = _submission(
        {"quoted_households": Decimal(3), "outbound_calls": Decimal(55), "sold_premium": Decimal("1500.25")},
        quoted_details=[QuotedHouseholdDetail(household_name="Maria Lopez", zip="30301", product_type="Home")],
    )
    first = reconciliation.record_submission(event)
    before = reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY)

    second = reconciliation.record_submission(event)
    after = reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY)

    assert first.applied_metrics == ["outbound_calls", "quoted_count", "sold_premium_cents"]
    assert before.raw_counters["sold_premium_cents"] == 150025
    assert after.model_dump() == before.model_dump()
    assert first.households[0].outcome == "applied"
    assert second.households[0].outcome == "duplicate"


def test_quoted_details_from_submission_are_not_counted_again(reconciliation, households_repository):
    result = reconciliation.record_submission(
        _submission(
            {"quoted_count": Decimal(2)},
            quoted_details=[
                QuotedHouseholdDetail(household_name="Maria Lopez", zip="30301", product_type="Home"),
                QuotedHouseholdDetail(household_name="Kim Lee", zip="10001", product_type="Auto"),
            ],
        )
    )
    assert [item.counted for item in result.households] == [False, False]
    assert all(not item.skip_metrics_increment for item in households_repository.transactions.values())
    assert {item.source for item in households_repository.transactions.values()} == {"scorecard"}
    assert reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY).raw_counters["quoted_count"] == 2


def test_unresolvable_metric_is_dropped_and_others_apply(reconciliation):
    result = reconciliation.record_submission(
        _submission({"quoted_count": Decimal(2), "life_apps": Decimal(1), "outbound_calls": "n/a"})
    )
    assert result.applied_metrics == ["quoted_count"]
    assert sorted(result.dropped_metrics) == ["life_apps", "outbound_calls"]
    assert {warning.code for warning in result.warnings} == {"missing_version_binding", "invalid_value"}
    aggregate = reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY)
    assert aggregate.custom_counters == {}


def test_submission_with_nothing_resolvable_creates_no_row(reconciliation):
    reconciliation.record_submission(_submission({"life_apps": Decimal(1)}))
    with pytest.raises(NotFoundError):
        reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY)


def test_custom_kpi_is_stored_under_stable_key(reconciliation, registry):
    registry.create_kpi(KpiCreateRequest(agency_id=AGENCY_ID, key="life_apps", label="Life Applications"))
    reconciliation.record_submission(_submission({"life_apps": Decimal(2)}))
    aggregate = reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY)
    assert aggregate.custom_counters == {"life_apps": Decimal(2)}
    assert aggregate.label_per_metric["life_apps"] == "Life Applications"


def test_label_in_effect_at_write_time_is_kept(reconciliation, registry):
    later = date(2026, 3, 7)
    reconciliation.record_submission(_submission({"quoted_count": Decimal(2)}))
    registry.relabel(AGENCY_ID, "quoted_count", "Households Quoted")
    reconciliation.record_submission(_submission({"quoted_count": Decimal(1)}, date=later, submission_id="sub-2"))

    original_day = reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY)
    later_day = reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", later)
    assert original_day.label_per_metric["quoted_count"] == "Quoted Households"
    assert original_day.label_at_submit == "Quoted Households"
    assert later_day.label_per_metric["quoted_count"] == "Households Quoted"
    assert later_day.kpi_version_id != original_day.kpi_version_id


def test_submission_uses_form_binding(reconciliation, registry):
    current = registry.resolve(AGENCY_ID, "quoted_count")
    registry.bind_form(FormBindingRequest(form_template_id="form-9", kpi_version_id=current.version_id))
    reconciliation.record_submission(
        _submission({"quoted_count": Decimal(2)}, form_version_binding_id="form-9")
    )
    aggregate = reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY)
    assert aggregate.kpi_version_id == current.version_id


def test_synced_sale_counts_once_for_mapped_producer(reconciliation):
    first = reconciliation.sync_transaction(_sync(items=2, source_reference_id="row-1"))
    second = reconciliation.sync_transaction(_sync(items=2, source_reference_id="row-1"))

    assert first.outcome == "applied"
    assert first.counted is True
    assert second.outcome == "duplicate"
    counters = reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY).raw_counters
    assert counters["sold_policies"] == 1
    assert counters["sold_items"] == 2
    assert counters["sold_premium_cents"] == 120000
    # Orphan sale: never quoted through any writer.
    assert counters["quoted_count"] == 0


def test_synced_quote_counts_when_household_first_reaches_quoted(reconciliation):
    reconciliation.sync_transaction(_sync(transaction_type="quote"))
    reconciliation.sync_transaction(_sync(transaction_type="quote", product_type="Home"))
    assert reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY).raw_counters["quoted_count"] == 1


def test_sync_without_known_producer_records_transaction_only(reconciliation, households_repository):
    result = reconciliation.sync_transaction(_sync(producer_code="999"))
    assert result.outcome == "applied"
    assert result.counted is False
    assert [warning.code for warning in result.warnings] == ["unassigned_producer"]
    assert len(households_repository.transactions) == 1


def test_policy_reference_links_sale_to_quote(reconciliation):
    quote = reconciliation.sync_transaction(
        _sync(first_name="Jon", last_name="Smyth", transaction_type="quote", authoritative_reference="P-1001")
    )
    sale = reconciliation.sync_transaction(
        _sync(first_name="Jonathan", last_name="Smith", zip=None, authoritative_reference=" P-1001 ")
    )
    assert sale.household_id == quote.household_id
    assert sale.match_tier == "authoritative_reference"
    assert sale.match_confidence == 100


def test_bulk_sync_isolates_failures(reconciliation, resolver, monkeypatch):
    original_ingest = resolver.ingest

    def flaky_ingest(request):
        if request.source_reference_id == "bad":
            raise RuntimeError("store unavailable")
        return original_ingest(request)

    monkeypatch.setattr(resolver, "ingest", flaky_ingest)
    result = reconciliation.sync_transactions(
        TransactionSyncBatch(
            events=[
                _sync(source_reference_id="good-1"),
                _sync(source_reference_id="bad", first_name="Ana"),
                _sync(source_reference_id="good-1"),
                _sync(source_reference_id="good-2", first_name="Kim", zip="9021"),
            ]
        )
    )
    assert result.records_processed == 4
    assert result.records_applied == 1
    assert result.records_failed == 1
    assert result.records_duplicate == 1
    assert result.records_pending_review == 1
    assert result.items[1].error == "store unavailable"
    assert reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY).raw_counters["sold_policies"] == 2


def test_manual_quotes_count_a_household_once(reconciliation):
    first = reconciliation.record_manual_event(_manual(product_type="Auto"))
    second = reconciliation.record_manual_event(_manual(product_type="Home"))

    assert first.counted is True
    assert second.outcome == "applied"
    assert second.counted is False
    assert reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY).raw_counters["quoted_count"] == 1


def test_manual_and_synced_quotes_count_the_same(reconciliation):
    reconciliation.record_manual_event(_manual(product_type="Auto"))
    reconciliation.record_manual_event(_manual(product_type="Home"))
    manual_total = reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY).raw_counters["quoted_count"]

    other_day = date(2026, 3, 3)
    reconciliation.sync_transaction(
        _sync(first_name="Kim", transaction_type="quote", product_type="Auto", transaction_date=other_day)
    )
    reconciliation.sync_transaction(
        _sync(first_name="Kim", transaction_type="quote", product_type="Home", transaction_date=other_day)
    )
    synced_total = reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", other_day).raw_counters["quoted_count"]

    assert manual_total == synced_total == 1


def test_manual_sales_still_count_each_new_transaction(reconciliation):
    reconciliation.record_manual_event(
        _manual(product_type="Auto", metric_deltas={"sold_policies": Decimal(1)})
    )
    reconciliation.record_manual_event(
        _manual(product_type="Home", metric_deltas={"sold_policies": Decimal(1)})
    )
    assert reconciliation.get_daily_aggregate(AGENCY_ID, "tm-1", DAY).raw_counters["sold_policies"] == 2
