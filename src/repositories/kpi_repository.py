from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.core.supabase import SupabaseClient
from src.models.metrics import FormKpiBindingRecord, KpiRecord, KpiVersionRecord

KPI_COLUMNS = "id,agency_id,key,merge_policy,is_active,created_at"
VERSION_COLUMNS = "id,kpi_id,label,valid_from,valid_to"


class KpiRepository:
    def __init__(self) -> None:
        self.client = SupabaseClient()

    def get_kpi(self, agency_id: str, key: str) -> Optional[KpiRecord]:
        rows, _ = self.client.select(
            table="kpis",
            select=KPI_COLUMNS,
            filters=[("agency_id", f"eq.{agency_id}"), ("key", f"eq.{key}")],
            limit=1,
        )
        return KpiRecord.model_validate(rows[0]) if rows else None

    def create_kpi(self, payload: Dict[str, Any]) -> KpiRecord:
        inserted = self.client.insert(
            table="kpis",
            payload={**payload, "created_at": datetime.now(timezone.utc).isoformat()},
        )
        return KpiRecord.model_validate(inserted[0])

    def get_version(self, version_id: str) -> Optional[KpiVersionRecord]:
        rows, _ = self.client.select(
            table="kpi_versions",
            select=VERSION_COLUMNS,
            filters=[("id", f"eq.{version_id}")],
            limit=1,
        )
        return KpiVersionRecord.model_validate(rows[0]) if rows else None

    def get_current_version(self, kpi_id: str) -> Optional[KpiVersionRecord]:
        rows, _ = self.client.select(
            table="kpi_versions",
            select=VERSION_COLUMNS,
            filters=[("kpi_id", f"eq.{kpi_id}"), ("valid_to", "is.null")],
            limit=1,
            order="valid_from.desc",
        )
        return KpiVersionRecord.model_validate(rows[0]) if rows else None

    def list_versions(self, kpi_id: str) -> List[KpiVersionRecord]:
        rows, _ = self.client.select(
            table="kpi_versions",
            select=VERSION_COLUMNS,
            filters=[("kpi_id", f"eq.{kpi_id}")],
            order="valid_from.asc",
        )
        return [KpiVersionRecord.model_validate(row) for row in rows]

    def close_version(self, version_id: str, valid_to: datetime) -> bool:
        """Close an open version; ``False`` if it was already closed by someone else."""
        updated = self.client.update(
            table="kpi_versions",
            payload={"valid_to": valid_to.astimezone(timezone.utc).isoformat()},
            filters=[("id", f"eq.{version_id}"), ("valid_to", "is.null")],
        )
        return bool(updated)

    def create_version(self, payload: Dict[str, Any]) -> KpiVersionRecord:
        inserted = self.client.insert(table="kpi_versions", payload=payload)
        return KpiVersionRecord.model_validate(inserted[0])

    def list_bindings(self, form_template_id: str) -> List[FormKpiBindingRecord]:
        rows, _ = self.client.select(
            table="forms_kpi_bindings",
            select="id,form_template_id,kpi_version_id,created_at",
            filters=[("form_template_id", f"eq.{form_template_id}")],
            order="created_at.desc",
        )
        return [FormKpiBindingRecord.model_validate(row) for row in rows]

    def create_binding(self, payload: Dict[str, Any]) -> FormKpiBindingRecord:
        inserted = self.client.insert(
            table="forms_kpi_bindings",
            payload={**payload, "created_at": datetime.now(timezone.utc).isoformat()},
        )
        return FormKpiBindingRecord.model_validate(inserted[0])
