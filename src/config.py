"""Runtime configuration read from the environment."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ANALYSIS_", extra="ignore")

    # Warehouse
    db_path: str = "data/analytics.duckdb"
    dialect: str = "duckdb"
    query_timeout_seconds: float | None = None

    # BigQuery table qualification
    bigquery_project: str | None = None
    bigquery_dataset: str | None = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"


def get_settings() -> Settings:
    return Settings()
