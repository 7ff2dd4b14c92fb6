from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Ignore unrelated env keys so local/dev .env can include optional integrations.
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Agency Metrics Reconciliation"
    environment: str = "development"
    api_prefix: str = "/api/v1"
    cors_allow_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    supabase_url: str = Field(..., alias="SUPABASE_URL")
    supabase_service_role_key: Optional[str] = Field(
        default=None, alias="SUPABASE_SERVICE_ROLE_KEY"
    )
    supabase_anon_key: Optional[str] = Field(default=None, alias="SUPABASE_ANON_KEY")

    # Scored fallback matching policy. Weights and cutoffs are business policy, keep them tunable.
    match_weight_product: int = Field(default=40, alias="MATCH_WEIGHT_PRODUCT")
    match_weight_producer: int = Field(default=35, alias="MATCH_WEIGHT_PRODUCER")
    match_weight_premium: int = Field(default=25, alias="MATCH_WEIGHT_PREMIUM")
    match_weight_date: int = Field(default=10, alias="MATCH_WEIGHT_DATE")
    match_premium_tolerance: float = Field(default=0.15, alias="MATCH_PREMIUM_TOLERANCE")
    match_auto_min_score: int = Field(default=75, alias="MATCH_AUTO_MIN_SCORE")
    match_auto_min_lead: int = Field(default=20, alias="MATCH_AUTO_MIN_LEAD")

    household_zip_sentinel: str = Field(default="NOZIP", alias="HOUSEHOLD_ZIP_SENTINEL")
    merge_max_retries: int = Field(default=5, alias="MERGE_MAX_RETRIES")
    default_required_hits: int = Field(default=2, alias="DEFAULT_REQUIRED_HITS")
    purge_dependent_tables: str = Field(
        default="contacts:lqs_household_id,renewal_records:household_id",
        alias="PURGE_DEPENDENT_TABLES",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def get_cors_origins() -> list[str]:
    settings = get_settings()
    return [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]


def get_purge_dependent_tables() -> list[tuple[str, str]]:
    """Parse ``table:column`` pairs of read models that reference households."""
    settings = get_settings()
    pairs: list[tuple[str, str]] = []
    for item in settings.purge_dependent_tables.split(","):
        item = item.strip()
        if not item or ":" not in item:
            continue
        table, column = item.split(":", 1)
        if table.strip() and column.strip():
            pairs.append((table.strip(), column.strip()))
    return pairs
