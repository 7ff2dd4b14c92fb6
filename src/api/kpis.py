from __future__ import annotations

from datetime import date
from typing import List

from fastapi import APIRouter, Depends, Query

from src.api.dependencies import get_kpi_registry_service
from src.schemas.kpis import (
    FormBinding,
    FormBindingRequest,
    KpiCreateRequest,
    KpiRelabelRequest,
    KpiVersion,
)
from src.services.kpi_registry_service import KpiRegistryService
from src.shared.response import Meta, ResponseEnvelope


router = APIRouter(prefix="/kpis", tags=["kpis"])


def _build_meta(source: str) -> Meta:
    return Meta(
        as_of_date=date.today().isoformat(),
        source=source,
        time_window="",
        calculation_version="v1",
        data_status="live",
    )


@router.post("")
def create_kpi(
    request: KpiCreateRequest,
    service: KpiRegistryService = Depends(get_kpi_registry_service),
) -> ResponseEnvelope[KpiVersion]:
    return ResponseEnvelope(data=service.create_kpi(request), pagination=None, meta=_build_meta("kpi_versions"))


@router.post("/bindings")
def bind_form(
    request: FormBindingRequest,
    service: KpiRegistryService = Depends(get_kpi_registry_service),
) -> ResponseEnvelope[FormBinding]:
    return ResponseEnvelope(data=service.bind_form(request), pagination=None, meta=_build_meta("forms_kpi_bindings"))


@router.get("/{key}/versions")
def kpi_versions(
    key: str,
    agency_id: str = Query(..., min_length=1),
    service: KpiRegistryService = Depends(get_kpi_registry_service),
) -> ResponseEnvelope[List[KpiVersion]]:
    return ResponseEnvelope(data=service.list_versions(agency_id, key), pagination=None, meta=_build_meta("kpi_versions"))


@router.post("/{key}/relabel")
def relabel_kpi(
    key: str,
    request: KpiRelabelRequest,
    service: KpiRegistryService = Depends(get_kpi_registry_service),
) -> ResponseEnvelope[KpiVersion]:
    version = service.relabel(request.agency_id, key, request.label)
    return ResponseEnvelope(data=version, pagination=None, meta=_build_meta("kpi_versions"))
