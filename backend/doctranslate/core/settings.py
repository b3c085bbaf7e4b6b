from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "doc-figure-translate"
    api_prefix: str = "/v1"
    redis_url: str = "redis://redis:6379/0"
    storage_root: Path = Field(default=Path("/tmp/doctranslate/jobs"))
    public_asset_base_url: str | None = None
    job_ttl_minutes: int = 240
    max_upload_mb: int = 40
    allowed_extensions: tuple[str, ...] = (".pdf", ".docx")
    translation_queue: str = "translate_job"

    # overlap resolution
    min_overlap_fraction: float = Field(default=0.0, ge=0.0, le=1.0)
    adjacency_tolerance: int = Field(default=2, ge=0)

    # chunk planning / orchestration
    chunk_token_budget: int = Field(default=2000, ge=16)
    max_concurrency: int = Field(default=4, ge=1)
    max_attempts: int = Field(default=4, ge=1)
    backoff_base_sec: float = 1.0
    backoff_max_sec: float = 30.0
    chunk_timeout_sec: float = 90.0
    translation_temperature: float = 0.2

    figure_reference_template: str = "![Figure {figure_id}]({asset_ref})"

    task_soft_time_limit_sec: int = 900
    task_time_limit_sec: int = 960


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.backoff_max_sec = max(settings.backoff_base_sec, settings.backoff_max_sec)
    settings.storage_root.mkdir(parents=True, exist_ok=True)
    return settings
