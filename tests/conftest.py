from __future__ import annotations

import os
from datetime import datetime, timezone
from itertools import count
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")

import pytest
from fastapi.testclient import TestClient

from src.api.dependencies import (
    get_entity_resolver_service,
    get_kpi_registry_service,
    get_reconciliation_service,
)
from src.core.errors import ConcurrentWriteConflict
from src.core.locks import RowLockRegistry
from src.main import create_app
from src.models.households import (
    HouseholdRecord,
    HouseholdTransactionRecord,
    ReviewItemRecord,
    TeamMemberRecord,
)
from src.models.metrics import (
    FormKpiBindingRecord,
    KpiRecord,
    KpiVersionRecord,
    MetricsDailyRecord,
    ScorecardRulesRecord,
    TargetRecord,
)
from src.schemas.kpis import KpiCreateRequest
from src.services.aggregate_merge_service import AggregateMergeService
from src.services.entity_resolver_service import EntityResolverService
from src.services.kpi_registry_service import KpiRegistryService
from src.services.reconciliation_service import ReconciliationService

AGENCY_ID = "agency-1"

WELL_KNOWN_LABELS = {
    "outbound_calls": "Outbound Calls",
    "talk_minutes": "Talk Minutes",
    "quoted_count": "Quoted Households",
    "sold_items": "Items Sold",
    "sold_policies": "Policies Sold",
    "sold_premium_cents": "Premium Sold",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StubHouseholdsRepository:
    def __init__(self) -> None:
        self._ids = count(1)
        self.households: Dict[str, HouseholdRecord] = {}
        self.transactions: Dict[str, HouseholdTransactionRecord] = {}
        self.reviews: Dict[str, ReviewItemRecord] = {}
        self.team_members: List[TeamMemberRecord] = []
        self.references: Dict[Tuple[str, str], Dict[str, int]] = {}

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    # households

    def get_household(self, household_id: str) -> Optional[HouseholdRecord]:
        return self.households.get(household_id)

    def find_by_key(self, agency_id: str, household_key: str) -> Optional[HouseholdRecord]:
        for household in self.households.values():
            if household.agency_id == agency_id and household.household_key == household_key:
                return household
        return None

    def list_by_last_name(self, agency_id: str, last_name: str) -> List[HouseholdRecord]:
        return [
            household
            for household in self.households.values()
            if household.agency_id == agency_id and household.last_name == last_name
        ]

    def create_household(self, payload: Dict[str, Any]) -> HouseholdRecord:
        if self.find_by_key(payload["agency_id"], payload["household_key"]) is not None:
            raise ConcurrentWriteConflict("duplicate household_key")
        record = HouseholdRecord.model_validate(
            {**payload, "id": self._next_id("hh"), "row_version": 0, "created_at": _now()}
        )
        self.households[record.id] = record
        return record

    def update_household(
        self, household_id: str, payload: Dict[str, Any], expected_version: int
    ) -> Optional[HouseholdRecord]:
        current = self.households.get(household_id)
        if current is None or current.row_version != expected_version:
            return None
        record = HouseholdRecord.model_validate(
            {**current.model_dump(), **payload, "row_version": expected_version + 1}
        )
        self.households[household_id] = record
        return record

    def delete_household(self, household_id: str) -> None:
        self.households.pop(household_id, None)

    def list_households(self, agency_id: str) -> List[HouseholdRecord]:
        return sorted(
            (item for item in self.households.values() if item.agency_id == agency_id),
            key=lambda item: item.household_key,
        )

    # transactions

    def find_transactions_by_policy(
        self, agency_id: str, policy_number: str
    ) -> List[HouseholdTransactionRecord]:
        return [
            item
            for item in self.transactions.values()
            if item.agency_id == agency_id and item.policy_number == policy_number
        ]

    def find_transaction_by_dedupe_key(
        self, agency_id: str, dedupe_key: str
    ) -> Optional[HouseholdTransactionRecord]:
        for item in self.transactions.values():
            if item.agency_id == agency_id and item.dedupe_key == dedupe_key:
                return item
        return None

    def list_transactions(self, household_ids: List[str]) -> List[HouseholdTransactionRecord]:
        wanted = set(household_ids)
        return sorted(
            (item for item in self.transactions.values() if item.household_id in wanted),
            key=lambda item: item.transaction_date,
        )

    def create_transaction(self, payload: Dict[str, Any]) -> HouseholdTransactionRecord:
        if self.find_transaction_by_dedupe_key(payload["agency_id"], payload["dedupe_key"]):
            raise ConcurrentWriteConflict("duplicate dedupe_key")
        record = HouseholdTransactionRecord.model_validate(
            {**payload, "id": self._next_id("tx"), "created_at": _now()}
        )
        self.transactions[record.id] = record
        return record

    def update_transaction(
        self, transaction_id: str, payload: Dict[str, Any]
    ) -> HouseholdTransactionRecord:
        record = HouseholdTransactionRecord.model_validate(
            {**self.transactions[transaction_id].model_dump(), **payload}
        )
        self.transactions[transaction_id] = record
        return record

    # review queue

    def create_review(self, payload: Dict[str, Any]) -> ReviewItemRecord:
        record = ReviewItemRecord.model_validate(
            {**payload, "id": self._next_id("rv"), "status": "open", "created_at": _now()}
        )
        self.reviews[record.id] = record
        return record

    def get_review(self, review_id: str) -> Optional[ReviewItemRecord]:
        return self.reviews.get(review_id)

    def list_reviews(self, agency_id: str, status: Optional[str] = "open") -> List[ReviewItemRecord]:
        return [
            item
            for item in self.reviews.values()
            if item.agency_id == agency_id and (not status or item.status == status)
        ]

    def update_review(self, review_id: str, payload: Dict[str, Any]) -> ReviewItemRecord:
        record = ReviewItemRecord.model_validate({**self.reviews[review_id].model_dump(), **payload})
        self.reviews[review_id] = record
        return record

    # team members and downstream references

    def find_team_member_by_code(
        self, agency_id: str, producer_code: str
    ) -> Optional[TeamMemberRecord]:
        for member in self.team_members:
            if (
                member.agency_id == agency_id
                and member.sub_producer_code
                and member.sub_producer_code.lower() == producer_code.strip().lower()
            ):
                return member
        return None

    def count_references(self, table: str, column: str, household_id: str) -> int:
        return self.references.get((table, column), {}).get(household_id, 0)

    def count_open_reviews(self, household_id: str) -> int:
        return sum(
            1
            for item in self.reviews.values()
            if item.household_id == household_id and item.status == "open"
        )


class StubMetricsRepository:
    def __init__(self) -> None:
        self.rows: Dict[Tuple[str, str, Any], MetricsDailyRecord] = {}
        self.rules: Dict[Tuple[str, str], ScorecardRulesRecord] = {}
        self.targets: List[TargetRecord] = []
        self.roles: Dict[str, str] = {}
        # Runs before an update lands; lets a test play a competing writer.
        self.before_update: Optional[Callable[["StubMetricsRepository"], None]] = None
        self.update_calls = 0

    @staticmethod
    def _key(record: MetricsDailyRecord) -> Tuple[str, str, Any]:
        return record.agency_id, record.team_member_id, record.date

    def get_daily(self, agency_id: str, team_member_id: str, day: Any) -> Optional[MetricsDailyRecord]:
        row = self.rows.get((agency_id, team_member_id, day))
        return row.model_copy(deep=True) if row else None

    def insert_daily(self, record: MetricsDailyRecord) -> MetricsDailyRecord:
        key = self._key(record)
        if key in self.rows:
            raise ConcurrentWriteConflict("duplicate metrics_daily row")
        stored = record.model_copy(deep=True, update={"id": f"md-{len(self.rows) + 1}", "row_version": 0})
        self.rows[key] = stored
        return stored.model_copy(deep=True)

    def update_daily(
        self, record: MetricsDailyRecord, expected_version: int
    ) -> Optional[MetricsDailyRecord]:
        self.update_calls += 1
        if self.before_update is not None:
            self.before_update(self)
        key = self._key(record)
        current = self.rows.get(key)
        if current is None or current.row_version != expected_version:
            return None
        stored = record.model_copy(deep=True, update={"row_version": expected_version + 1})
        self.rows[key] = stored
        return stored.model_copy(deep=True)

    def get_rules(self, agency_id: str, role: str) -> Optional[ScorecardRulesRecord]:
        return self.rules.get((agency_id, role))

    def list_targets(self, agency_id: str) -> List[TargetRecord]:
        return [item for item in self.targets if item.agency_id == agency_id]

    def get_member_role(self, team_member_id: str) -> Optional[str]:
        return self.roles.get(team_member_id)


class StubKpiRepository:
    def __init__(self) -> None:
        self._ids = count(1)
        self.kpis: Dict[str, KpiRecord] = {}
        self.versions: Dict[str, KpiVersionRecord] = {}
        self.bindings: List[FormKpiBindingRecord] = []

    def get_kpi(self, agency_id: str, key: str) -> Optional[KpiRecord]:
        for kpi in self.kpis.values():
            if kpi.agency_id == agency_id and kpi.key == key:
                return kpi
        return None

    def create_kpi(self, payload: Dict[str, Any]) -> KpiRecord:
        if self.get_kpi(payload["agency_id"], payload["key"]) is not None:
            raise ConcurrentWriteConflict("duplicate kpi key")
        record = KpiRecord.model_validate({**payload, "id": f"kpi-{next(self._ids)}", "created_at": _now()})
        self.kpis[record.id] = record
        return record

    def get_version(self, version_id: str) -> Optional[KpiVersionRecord]:
        return self.versions.get(version_id)

    def get_current_version(self, kpi_id: str) -> Optional[KpiVersionRecord]:
        for version in self.versions.values():
            if version.kpi_id == kpi_id and version.valid_to is None:
                return version
        return None

    def list_versions(self, kpi_id: str) -> List[KpiVersionRecord]:
        return sorted(
            (item for item in self.versions.values() if item.kpi_id == kpi_id),
            key=lambda item: item.valid_from,
        )

    def close_version(self, version_id: str, valid_to: datetime) -> bool:
        version = self.versions.get(version_id)
        if version is None or version.valid_to is not None:
            return False
        self.versions[version_id] = version.model_copy(update={"valid_to": valid_to})
        return True

    def create_version(self, payload: Dict[str, Any]) -> KpiVersionRecord:
        if payload.get("valid_to") is None and self.get_current_version(payload["kpi_id"]):
            raise ConcurrentWriteConflict("kpi already has an open version")
        record = KpiVersionRecord.model_validate({**payload, "id": f"ver-{next(self._ids)}"})
        self.versions[record.id] = record
        return record

    def list_bindings(self, form_template_id: str) -> List[FormKpiBindingRecord]:
        return [item for item in reversed(self.bindings) if item.form_template_id == form_template_id]

    def create_binding(self, payload: Dict[str, Any]) -> FormKpiBindingRecord:
        record = FormKpiBindingRecord.model_validate(
            {**payload, "id": f"bind-{next(self._ids)}", "created_at": _now()}
        )
        self.bindings.append(record)
        return record


def seed_kpis(
    registry: KpiRegistryService,
    agency_id: str = AGENCY_ID,
    keys: Optional[Iterable[str]] = None,
) -> None:
    for key in keys if keys is not None else WELL_KNOWN_LABELS:
        registry.create_kpi(
            KpiCreateRequest(agency_id=agency_id, key=key, label=WELL_KNOWN_LABELS.get(key, key))
        )


@pytest.fixture()
def households_repository() -> StubHouseholdsRepository:
    repository = StubHouseholdsRepository()
    repository.team_members.append(
        TeamMemberRecord(id="tm-1", agency_id=AGENCY_ID, name="Pat Producer", sub_producer_code="42")
    )
    repository.team_members.append(
        TeamMemberRecord(id="tm-7", agency_id=AGENCY_ID, name="Sam Service", role="Hybrid", sub_producer_code="7")
    )
    return repository


@pytest.fixture()
def metrics_repository() -> StubMetricsRepository:
    repository = StubMetricsRepository()
    repository.roles.update({"tm-1": "Sales", "tm-7": "Hybrid"})
    return repository


@pytest.fixture()
def kpi_repository() -> StubKpiRepository:
    return StubKpiRepository()


@pytest.fixture()
def resolver(households_repository: StubHouseholdsRepository) -> EntityResolverService:
    return EntityResolverService(repository=households_repository)


@pytest.fixture()
def registry(kpi_repository: StubKpiRepository) -> KpiRegistryService:
    return KpiRegistryService(repository=kpi_repository)


@pytest.fixture()
def merge_service(metrics_repository: StubMetricsRepository) -> AggregateMergeService:
    return AggregateMergeService(repository=metrics_repository, locks=RowLockRegistry())


@pytest.fixture()
def reconciliation(
    resolver: EntityResolverService,
    registry: KpiRegistryService,
    merge_service: AggregateMergeService,
) -> ReconciliationService:
    seed_kpis(registry)
    return ReconciliationService(resolver=resolver, registry=registry, merge=merge_service)


@pytest.fixture()
def client(
    resolver: EntityResolverService,
    registry: KpiRegistryService,
    reconciliation: ReconciliationService,
) -> TestClient:
    app = create_app()
    app.dependency_overrides[get_entity_resolver_service] = lambda: resolver
    app.dependency_overrides[get_kpi_registry_service] = lambda: registry
    app.dependency_overrides[get_reconciliation_service] = lambda: reconciliation
    return TestClient(app)
