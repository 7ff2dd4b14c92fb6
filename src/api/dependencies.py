from __future__ import annotations

from functools import lru_cache

from src.repositories.households_repository import HouseholdsRepository
from src.repositories.kpi_repository import KpiRepository
from src.repositories.metrics_repository import MetricsRepository
from src.services.aggregate_merge_service import AggregateMergeService
from src.services.entity_resolver_service import EntityResolverService
from src.services.kpi_registry_service import KpiRegistryService
from src.services.reconciliation_service import ReconciliationService


@lru_cache
def get_households_repository() -> HouseholdsRepository:
    return HouseholdsRepository()


@lru_cache
def get_metrics_repository() -> MetricsRepository:
    return MetricsRepository()


@lru_cache
def get_kpi_repository() -> KpiRepository:
    return KpiRepository()


def get_entity_resolver_service() -> EntityResolverService:
    return EntityResolverService(repository=get_households_repository())


def get_kpi_registry_service() -> KpiRegistryService:
    return KpiRegistryService(repository=get_kpi_repository())


def get_aggregate_merge_service() -> AggregateMergeService:
    return AggregateMergeService(repository=get_metrics_repository())


def get_reconciliation_service() -> ReconciliationService:
    return ReconciliationService(
        resolver=get_entity_resolver_service(),
        registry=get_kpi_registry_service(),
        merge=get_aggregate_merge_service(),
    )
