from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Core API Settings
    api_host: str = Field("0.0.0.0", alias="API_HOST")
    api_port: int = Field(8000, alias="API_PORT")
    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    admin_api_key: str | None = Field(None, alias="ADMIN_API_KEY")

    # Database: explicit DSN wins, otherwise Supabase credentials
    database_url: str | None = Field(None, alias="DATABASE_URL")
    supabase_project_ref: str | None = Field(None, alias="SUPABASE_PROJECT_REF")
    supabase_db_password: str | None = Field(None, alias="SUPABASE_DB_PASSWORD")
    supabase_db_user: str = Field("postgres", alias="SUPABASE_DB_USER")
    supabase_db_name: str = Field("postgres", alias="SUPABASE_DB_NAME")
    redis_url: str = Field("redis://localhost:6379/0", alias="REDIS_URL")

    # Identity resolution
    session_secret: str | None = Field(None, alias="SESSION_SECRET")
    session_cookie: str = Field("session", alias="SESSION_COOKIE")
    anonymous_id_header: str = Field("X-Anonymous-Id", alias="ANONYMOUS_ID_HEADER")
    anonymous_id_cookie: str = Field("anon_id", alias="ANONYMOUS_ID_COOKIE")

    # Canonicalization limits
    metadata_max_bytes: int = Field(2048, alias="METADATA_MAX_BYTES")
    metadata_max_keys: int = Field(50, alias="METADATA_MAX_KEYS")
    event_batch_max: int = Field(100, alias="EVENT_BATCH_MAX")
    daily_dedup_kinds: str = Field(
        "app_opened,product_opened,daily_dashboard_viewed,grimoire_viewed",
        alias="DAILY_DEDUP_KINDS",
    )  # comma list

    # Identity stitching background work
    stitch_max_retries: int = Field(5, alias="STITCH_MAX_RETRIES")
    stitch_failure_alert_threshold: int = Field(10, alias="STITCH_FAILURE_ALERT_THRESHOLD")

    # Backfill / repair jobs
    backfill_lookback_days: int = Field(7, alias="BACKFILL_LOOKBACK_DAYS")
    job_max_duration_seconds: int = Field(600, alias="JOB_MAX_DURATION_SECONDS")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"  # Allow extra environment variables


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings():
    """Clear cached settings (useful in tests when env vars change)."""
    get_settings.cache_clear()


def parse_csv_set(raw: str | None) -> set[str]:
    return {e.strip() for e in raw.split(",") if e.strip()} if raw else set()


def parse_dedup_kinds(raw: str | None) -> frozenset[str]:
    return frozenset(parse_csv_set(raw))
