from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from src.shared.base import BaseSchema

MergePolicyValue = Literal["monotonic", "single_writer"]


class KpiCreateRequest(BaseSchema):
    agency_id: str
    key: str
    label: str
    merge_policy: MergePolicyValue = "monotonic"


class KpiRelabelRequest(BaseSchema):
    agency_id: str
    label: str


class FormBindingRequest(BaseSchema):
    form_template_id: str
    kpi_version_id: str


class KpiVersion(BaseSchema):
    id: str
    kpi_id: str
    key: str
    label: str
    valid_from: datetime
    valid_to: Optional[datetime] = None


class ResolvedKpiVersion(BaseSchema):
    kpi_id: str
    key: str
    version_id: str
    label: str
    merge_policy: MergePolicyValue
    source: Literal["form_binding", "current_version"]


class FormBinding(BaseSchema):
    id: str
    form_template_id: str
    kpi_version_id: str
    created_at: datetime
