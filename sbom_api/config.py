from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SBOM_", env_file=".env", extra="ignore")

    github_api_url: str = "https://api.github.com"
    osv_api_url: str = "https://api.osv.dev"
    http_timeout: float = 10.0
    user_agent: str = "sbom-report-api/1.0"

    fetch_concurrency: int = 8
    max_manifest_bytes: int = 2 << 20  # 2MB
    max_manifest_files: int = 200

    feed_concurrency: int = 8
    feed_failure_threshold: float = 0.5
    osv_cache_ttl: int = 3600  # 1 hour

    assess_repos: bool = True
    assess_concurrency: int = 4

    run_timeout_seconds: float = 300.0

    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
