from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None


class AppError(Exception):
    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details


class NotFoundError(AppError):
    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(code="not_found", message=message, status_code=404)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request") -> None:
        super().__init__(code="bad_request", message=message, status_code=400)


class DependentRecordsExist(AppError):
    """A destructive operation found rows that still reference its target."""

    def __init__(self, message: str, dependents: Dict[str, List[str]]) -> None:
        super().__init__(
            code="dependent_records_exist",
            message=message,
            status_code=409,
            details={"dependents": dependents},
        )
        self.dependents = dependents


class ReconciliationIssue(Exception):
    """Base for conditions the engine recovers from locally."""

    code = "reconciliation_issue"


class AmbiguousMatch(ReconciliationIssue):
    code = "ambiguous_match"


class MissingVersionBinding(ReconciliationIssue):
    code = "missing_version_binding"

    def __init__(self, agency_id: str, metric_key: str) -> None:
        super().__init__(f"No current KPI version for metric '{metric_key}' in agency {agency_id}")
        self.agency_id = agency_id
        self.metric_key = metric_key


class MalformedKey(ReconciliationIssue):
    code = "malformed_key"


class ConcurrentWriteConflict(ReconciliationIssue):
    code = "concurrent_write_conflict"


class ErrorEnvelope(BaseModel):
    error: ErrorDetail


def app_error_handler(_: Request, exc: AppError) -> JSONResponse:
    envelope = ErrorEnvelope(
        error=ErrorDetail(code=exc.code, message=exc.message, details=exc.details)
    )
    return JSONResponse(status_code=exc.status_code, content=envelope.model_dump())


def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    envelope = ErrorEnvelope(
        error=ErrorDetail(
            code="validation_error",
            message="Validation error",
            details={"errors": exc.errors()},
        )
    )
    return JSONResponse(status_code=422, content=envelope.model_dump())


def conflict_error_handler(_: Request, exc: ConcurrentWriteConflict) -> JSONResponse:
    envelope = ErrorEnvelope(error=ErrorDetail(code=exc.code, message=str(exc)))
    return JSONResponse(status_code=409, content=envelope.model_dump())
