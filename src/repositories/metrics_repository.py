from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from src.core.supabase import SupabaseClient
from src.models.metrics import MetricsDailyRecord, ScorecardRulesRecord, TargetRecord

METRICS_DAILY_COLUMNS = (
    "id,agency_id,team_member_id,date,role,outbound_calls,talk_minutes,quoted_count,"
    "sold_items,sold_policies,sold_premium_cents,cross_sells_uncovered,mini_reviews,"
    "custom_kpis,skip_merge,kpi_version_id,label_at_submit,metric_versions,metric_labels,"
    "hits,daily_score,pass,is_counted_day,is_late,final_submission_id,row_version,updated_at"
)
RULES_COLUMNS = (
    "agency_id,role,selected_metrics,n_required,weights,counted_days,"
    "count_weekend_if_submitted,late_counts_for_pass"
)


def _row_payload(record: MetricsDailyRecord) -> Dict[str, Any]:
    payload = record.model_dump(mode="json", by_alias=True, exclude={"id", "updated_at"})
    payload["updated_at"] = datetime.now(timezone.utc).isoformat()
    return payload


class MetricsRepository:
    def __init__(self) -> None:
        self.client = SupabaseClient()

    def get_daily(
        self, agency_id: str, team_member_id: str, day: date
    ) -> Optional[MetricsDailyRecord]:
        rows, _ = self.client.select(
            table="metrics_daily",
            select=METRICS_DAILY_COLUMNS,
            filters=[
                ("agency_id", f"eq.{agency_id}"),
                ("team_member_id", f"eq.{team_member_id}"),
                ("date", f"eq.{day.isoformat()}"),
            ],
            limit=1,
        )
        return MetricsDailyRecord.model_validate(rows[0]) if rows else None

    def insert_daily(self, record: MetricsDailyRecord) -> MetricsDailyRecord:
        """Create the row; a concurrent creator surfaces as ``ConcurrentWriteConflict``."""
        payload = _row_payload(record)
        payload["row_version"] = 0
        inserted = self.client.insert(table="metrics_daily", payload=payload)
        return MetricsDailyRecord.model_validate(inserted[0])

    def update_daily(
        self, record: MetricsDailyRecord, expected_version: int
    ) -> Optional[MetricsDailyRecord]:
        payload = _row_payload(record)
        payload["row_version"] = expected_version + 1
        updated = self.client.update(
            table="metrics_daily",
            payload=payload,
            filters=[
                ("agency_id", f"eq.{record.agency_id}"),
                ("team_member_id", f"eq.{record.team_member_id}"),
                ("date", f"eq.{record.date.isoformat()}"),
                ("row_version", f"eq.{expected_version}"),
            ],
        )
        return MetricsDailyRecord.model_validate(updated[0]) if updated else None

    def get_rules(self, agency_id: str, role: str) -> Optional[ScorecardRulesRecord]:
        rows, _ = self.client.select(
            table="scorecard_rules",
            select=RULES_COLUMNS,
            filters=[("agency_id", f"eq.{agency_id}"), ("role", f"eq.{role}")],
            limit=1,
        )
        if not rows:
            return None
        return ScorecardRulesRecord.model_validate(rows[0])

    def list_targets(self, agency_id: str) -> List[TargetRecord]:
        rows, _ = self.client.select(
            table="targets",
            select="agency_id,team_member_id,metric_key,value_number",
            filters=[("agency_id", f"eq.{agency_id}")],
        )
        return [TargetRecord.model_validate(row) for row in rows]

    def get_member_role(self, team_member_id: str) -> Optional[str]:
        rows, _ = self.client.select(
            table="team_members",
            select="role",
            filters=[("id", f"eq.{team_member_id}")],
            limit=1,
        )
        return str(rows[0]["role"]) if rows and rows[0].get("role") else None
