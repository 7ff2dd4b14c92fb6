from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from src.analytics.metric_merge import canonical_metric_key
from src.core.errors import (
    BadRequestError,
    ConcurrentWriteConflict,
    MissingVersionBinding,
    NotFoundError,
)
from src.models.metrics import FormKpiBindingRecord, KpiRecord, KpiVersionRecord
from src.repositories.kpi_repository import KpiRepository
from src.schemas.kpis import (
    FormBinding,
    FormBindingRequest,
    KpiCreateRequest,
    KpiVersion,
    ResolvedKpiVersion,
)

logger = logging.getLogger(__name__)

MAX_RELABEL_ATTEMPTS = 3


class KpiRegistryService:
    def __init__(self, repository: KpiRepository) -> None:
        self.repository = repository

    @staticmethod
    def _now_utc() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _to_version(kpi: KpiRecord, version: KpiVersionRecord) -> KpiVersion:
        return KpiVersion(
            id=version.id,
            kpi_id=kpi.id,
            key=kpi.key,
            label=version.label,
            valid_from=version.valid_from,
            valid_to=version.valid_to,
        )

    def _require_kpi(self, agency_id: str, key: str) -> KpiRecord:
        kpi = self.repository.get_kpi(agency_id, canonical_metric_key(key))
        if kpi is None:
            raise NotFoundError(f"KPI '{key}' not found")
        return kpi

    def create_kpi(self, request: KpiCreateRequest) -> KpiVersion:
        key = canonical_metric_key(request.key)
        if not key:
            raise BadRequestError("KPI key is required")
        if not request.label.strip():
            raise BadRequestError("KPI label is required")
        if self.repository.get_kpi(request.agency_id, key) is not None:
            raise BadRequestError(f"KPI '{key}' already exists")
        kpi = self.repository.create_kpi(
            {
                "agency_id": request.agency_id,
                "key": key,
                "merge_policy": request.merge_policy,
                "is_active": True,
            }
        )
        version = self.repository.create_version(
            {
                "kpi_id": kpi.id,
                "label": request.label.strip(),
                "valid_from": self._now_utc().isoformat(),
                "valid_to": None,
            }
        )
        return self._to_version(kpi, version)

    def relabel(
        self, agency_id: str, key: str, label: str, at: Optional[datetime] = None
    ) -> KpiVersion:
        """Open a new version under ``label``; aggregates already written keep theirs."""
        new_label = label.strip()
        if not new_label:
            raise BadRequestError("KPI label is required")
        kpi = self._require_kpi(agency_id, key)
        effective_at = at or self._now_utc()

        for _ in range(MAX_RELABEL_ATTEMPTS):
            current = self.repository.get_current_version(kpi.id)
            if current is not None:
                if current.label == new_label:
                    return self._to_version(kpi, current)
                if not self.repository.close_version(current.id, effective_at):
                    logger.warning("kpi relabel raced on kpi=%s, retrying", kpi.id)
                    continue
            version = self.repository.create_version(
                {
                    "kpi_id": kpi.id,
                    "label": new_label,
                    "valid_from": effective_at.isoformat(),
                    "valid_to": None,
                }
            )
            logger.info("kpi=%s relabeled to %r (version=%s)", kpi.key, new_label, version.id)
            return self._to_version(kpi, version)
        raise ConcurrentWriteConflict(f"Could not relabel KPI '{kpi.key}'")

    def list_versions(self, agency_id: str, key: str) -> List[KpiVersion]:
        kpi = self._require_kpi(agency_id, key)
        return [self._to_version(kpi, version) for version in self.repository.list_versions(kpi.id)]

    def version_at(self, agency_id: str, key: str, when: datetime) -> Optional[KpiVersion]:
        kpi = self._require_kpi(agency_id, key)
        for version in self.repository.list_versions(kpi.id):
            if version.valid_from <= when and (version.valid_to is None or when < version.valid_to):
                return self._to_version(kpi, version)
        return None

    def bind_form(self, request: FormBindingRequest) -> FormBinding:
        version = self.repository.get_version(request.kpi_version_id)
        if version is None:
            raise NotFoundError("KPI version not found")
        if not version.is_current:
            raise BadRequestError("Forms can only be bound to the current KPI version")
        binding = self.repository.create_binding(
            {
                "form_template_id": request.form_template_id,
                "kpi_version_id": request.kpi_version_id,
            }
        )
        return FormBinding(
            id=binding.id,
            form_template_id=binding.form_template_id,
            kpi_version_id=binding.kpi_version_id,
            created_at=binding.created_at,
        )

    def resolve(
        self,
        agency_id: str,
        metric_key: str,
        form_template_id: Optional[str] = None,
        bindings: Optional[List[FormKpiBindingRecord]] = None,
    ) -> ResolvedKpiVersion:
        """Form binding while still current, else the KPI's current version."""
        key = canonical_metric_key(metric_key)
        kpi = self.repository.get_kpi(agency_id, key)
        if kpi is None or not kpi.is_active:
            raise MissingVersionBinding(agency_id, key)

        if form_template_id:
            if bindings is None:
                bindings = self.repository.list_bindings(form_template_id)
            for binding in bindings:
                version = self.repository.get_version(binding.kpi_version_id)
                if version is None or version.kpi_id != kpi.id:
                    continue
                if version.is_current:
                    return ResolvedKpiVersion(
                        kpi_id=kpi.id,
                        key=kpi.key,
                        version_id=version.id,
                        label=version.label,
                        merge_policy=kpi.merge_policy,
                        source="form_binding",
                    )
                break

        current = self.repository.get_current_version(kpi.id)
        if current is None:
            raise MissingVersionBinding(agency_id, key)
        return ResolvedKpiVersion(
            kpi_id=kpi.id,
            key=kpi.key,
            version_id=current.id,
            label=current.label,
            merge_policy=kpi.merge_policy,
            source="current_version",
        )

    def resolve_many(
        self,
        agency_id: str,
        metric_keys: Iterable[str],
        form_template_id: Optional[str] = None,
    ) -> Dict[str, ResolvedKpiVersion | MissingVersionBinding]:
        bindings = self.repository.list_bindings(form_template_id) if form_template_id else None
        resolved: Dict[str, ResolvedKpiVersion | MissingVersionBinding] = {}
        for metric_key in metric_keys:
            key = canonical_metric_key(metric_key)
            if key in resolved:
                continue
            try:
                resolved[key] = self.resolve(agency_id, key, form_template_id, bindings=bindings)
            except MissingVersionBinding as exc:
                resolved[key] = exc
        return resolved
