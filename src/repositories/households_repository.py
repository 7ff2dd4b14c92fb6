from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.core.supabase import SupabaseClient
from src.models.households import (
    HouseholdRecord,
    HouseholdTransactionRecord,
    ReviewItemRecord,
    TeamMemberRecord,
)

MAX_QUERY_ROWS = 5000

HOUSEHOLD_COLUMNS = (
    "id,agency_id,household_key,first_name,last_name,zip_code,status,team_member_id,"
    "lead_date,first_quote_date,sold_date,phone,email,needs_review,review_reason,notes,"
    "row_version,created_at,updated_at"
)
TRANSACTION_COLUMNS = (
    "id,agency_id,household_id,transaction_type,transaction_date,team_member_id,product_type,"
    "producer_code,premium_cents,items_count,policy_number,linked_quote_id,source,"
    "source_reference_id,dedupe_key,match_tier,match_confidence,skip_metrics_increment,created_at"
)
REVIEW_COLUMNS = (
    "id,agency_id,reason,household_id,transaction_id,candidates,status,resolved_household_id,"
    "details,created_at,resolved_at"
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class HouseholdsRepository:
    def __init__(self) -> None:
        self.client = SupabaseClient()

    # households

    def get_household(self, household_id: str) -> Optional[HouseholdRecord]:
        rows, _ = self.client.select(
            table="lqs_households",
            select=HOUSEHOLD_COLUMNS,
            filters=[("id", f"eq.{household_id}")],
            limit=1,
        )
        return HouseholdRecord.model_validate(rows[0]) if rows else None

    def find_by_key(self, agency_id: str, household_key: str) -> Optional[HouseholdRecord]:
        rows, _ = self.client.select(
            table="lqs_households",
            select=HOUSEHOLD_COLUMNS,
            filters=[("agency_id", f"eq.{agency_id}"), ("household_key", f"eq.{household_key}")],
            limit=1,
        )
        return HouseholdRecord.model_validate(rows[0]) if rows else None

    def list_by_last_name(self, agency_id: str, last_name: str) -> List[HouseholdRecord]:
        rows, _ = self.client.select(
            table="lqs_households",
            select=HOUSEHOLD_COLUMNS,
            filters=[("agency_id", f"eq.{agency_id}"), ("last_name", f"eq.{last_name}")],
            limit=MAX_QUERY_ROWS,
            order="created_at.asc",
        )
        return [HouseholdRecord.model_validate(row) for row in rows]

    def create_household(self, payload: Dict[str, Any]) -> HouseholdRecord:
        inserted = self.client.insert(
            table="lqs_households",
            payload={**payload, "row_version": 0, "created_at": _now_iso(), "updated_at": _now_iso()},
        )
        return HouseholdRecord.model_validate(inserted[0])

    def update_household(
        self, household_id: str, payload: Dict[str, Any], expected_version: int
    ) -> Optional[HouseholdRecord]:
        """Compare-and-swap on ``row_version``; ``None`` when another writer won."""
        updated = self.client.update(
            table="lqs_households",
            payload={**payload, "row_version": expected_version + 1, "updated_at": _now_iso()},
            filters=[("id", f"eq.{household_id}"), ("row_version", f"eq.{expected_version}")],
        )
        return HouseholdRecord.model_validate(updated[0]) if updated else None

    def delete_household(self, household_id: str) -> None:
        self.client.delete(table="lqs_households", filters=[("id", f"eq.{household_id}")])

    def list_households(self, agency_id: str) -> List[HouseholdRecord]:
        rows, _ = self.client.select(
            table="lqs_households",
            select=HOUSEHOLD_COLUMNS,
            filters=[("agency_id", f"eq.{agency_id}")],
            limit=MAX_QUERY_ROWS,
            order="household_key.asc",
        )
        return [HouseholdRecord.model_validate(row) for row in rows]

    # transactions

    def find_transactions_by_policy(
        self, agency_id: str, policy_number: str
    ) -> List[HouseholdTransactionRecord]:
        rows, _ = self.client.select(
            table="lqs_transactions",
            select=TRANSACTION_COLUMNS,
            filters=[("agency_id", f"eq.{agency_id}"), ("policy_number", f"eq.{policy_number}")],
            limit=MAX_QUERY_ROWS,
            order="created_at.asc",
        )
        return [HouseholdTransactionRecord.model_validate(row) for row in rows]

    def find_transaction_by_dedupe_key(
        self, agency_id: str, dedupe_key: str
    ) -> Optional[HouseholdTransactionRecord]:
        rows, _ = self.client.select(
            table="lqs_transactions",
            select=TRANSACTION_COLUMNS,
            filters=[("agency_id", f"eq.{agency_id}"), ("dedupe_key", f"eq.{dedupe_key}")],
            limit=1,
        )
        return HouseholdTransactionRecord.model_validate(rows[0]) if rows else None

    def list_transactions(self, household_ids: List[str]) -> List[HouseholdTransactionRecord]:
        if not household_ids:
            return []
        rows, _ = self.client.select(
            table="lqs_transactions",
            select=TRANSACTION_COLUMNS,
            filters=[("household_id", f"in.({','.join(household_ids)})")],
            limit=MAX_QUERY_ROWS,
            order="transaction_date.asc,created_at.asc",
        )
        return [HouseholdTransactionRecord.model_validate(row) for row in rows]

    def create_transaction(self, payload: Dict[str, Any]) -> HouseholdTransactionRecord:
        inserted = self.client.insert(
            table="lqs_transactions",
            payload={**payload, "created_at": _now_iso()},
        )
        return HouseholdTransactionRecord.model_validate(inserted[0])

    def update_transaction(
        self, transaction_id: str, payload: Dict[str, Any]
    ) -> HouseholdTransactionRecord:
        updated = self.client.update(
            table="lqs_transactions",
            payload=payload,
            filters=[("id", f"eq.{transaction_id}")],
        )
        return HouseholdTransactionRecord.model_validate(updated[0])

    # review queue

    def create_review(self, payload: Dict[str, Any]) -> ReviewItemRecord:
        inserted = self.client.insert(
            table="reconciliation_reviews",
            payload={**payload, "status": "open", "created_at": _now_iso()},
        )
        return ReviewItemRecord.model_validate(inserted[0])

    def get_review(self, review_id: str) -> Optional[ReviewItemRecord]:
        rows, _ = self.client.select(
            table="reconciliation_reviews",
            select=REVIEW_COLUMNS,
            filters=[("id", f"eq.{review_id}")],
            limit=1,
        )
        return ReviewItemRecord.model_validate(rows[0]) if rows else None

    def list_reviews(
        self, agency_id: str, status: Optional[str] = "open"
    ) -> List[ReviewItemRecord]:
        filters = [("agency_id", f"eq.{agency_id}")]
        if status:
            filters.append(("status", f"eq.{status}"))
        rows, _ = self.client.select(
            table="reconciliation_reviews",
            select=REVIEW_COLUMNS,
            filters=filters,
            limit=MAX_QUERY_ROWS,
            order="created_at.asc",
        )
        return [ReviewItemRecord.model_validate(row) for row in rows]

    def update_review(self, review_id: str, payload: Dict[str, Any]) -> ReviewItemRecord:
        updated = self.client.update(
            table="reconciliation_reviews",
            payload=payload,
            filters=[("id", f"eq.{review_id}")],
        )
        return ReviewItemRecord.model_validate(updated[0])

    # team members and downstream references

    def find_team_member_by_code(
        self, agency_id: str, producer_code: str
    ) -> Optional[TeamMemberRecord]:
        rows, _ = self.client.select(
            table="team_members",
            select="id,agency_id,name,role,sub_producer_code",
            filters=[
                ("agency_id", f"eq.{agency_id}"),
                ("sub_producer_code", f"ilike.{producer_code.strip()}"),
            ],
            limit=1,
        )
        return TeamMemberRecord.model_validate(rows[0]) if rows else None

    def count_references(self, table: str, column: str, household_id: str) -> int:
        _, total = self.client.select(
            table=table,
            select="id",
            filters=[(column, f"eq.{household_id}")],
            limit=1,
            count=True,
        )
        return total or 0

    def count_open_reviews(self, household_id: str) -> int:
        _, total = self.client.select(
            table="reconciliation_reviews",
            select="id",
            filters=[("household_id", f"eq.{household_id}"), ("status", "eq.open")],
            limit=1,
            count=True,
        )
        return total or 0
