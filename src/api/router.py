from __future__ import annotations

from fastapi import APIRouter

from src.api.health import router as health_router
from src.api.households import router as households_router
from src.api.kpis import router as kpis_router
from src.api.metrics import router as metrics_router
from src.api.reconciliation import router as reconciliation_router


api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(reconciliation_router)
api_router.include_router(metrics_router)
api_router.include_router(households_router)
api_router.include_router(kpis_router)
