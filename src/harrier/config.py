from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Harrier"
    app_env: str = "development"
    app_host: str = "127.0.0.1"
    app_port: int = 8788
    log_level: str = "INFO"
    cors_origins: str = "http://127.0.0.1:8788"

    database_url: str = "sqlite:///./data/harrier.db"
    data_dir: Path = Path("./data")

    apify_api_token: str = ""
    apify_base_url: str = "https://api.apify.com/v2"
    apify_search_actor: str = "harvestapi~linkedin-profile-search"
    apify_scrape_actor: str = "dev_fusion~linkedin-profile-scraper"
    apify_timeout_sec: int = 300
    apify_results_per_page: int = 25

    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model_formatter: str = "gpt-4o"
    openai_model_scorer: str = "gpt-4o-mini"
    openai_timeout_sec: int = 60

    local_llm_enabled: bool = False
    local_llm_base_url: str = "http://localhost:11434/v1"
    local_llm_api_key: str = "local"
    local_llm_model: str = "qwen2.5:14b-instruct"
    local_llm_timeout_sec: int = 90

    llm_router_default: str = "openai"
    llm_router_format_provider: str = "openai"
    llm_router_score_provider: str = "openai"

    sourcing_batch_size: int = 10
    enrich_parallelism: int = 3
    default_max_retries: int = 3
    retry_base_delay_sec: int = 30
    retry_max_delay_sec: int = 900
    rate_limit_default_reset_sec: int = 60
    stuck_job_after_sec: int = 300
    heartbeat_interval_sec: float = 30.0
    max_concurrent_jobs: int = 4
    resume_on_startup: bool = True
    recovery_interval_sec: float = 60.0

    stream_poll_interval_sec: float = 2.0
    stream_candidate_limit: int = 10

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, value: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if value not in allowed:
            raise ValueError(f"app_env must be one of {sorted(allowed)}")
        return value

    @field_validator("sourcing_batch_size", "enrich_parallelism", "max_concurrent_jobs")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @model_validator(mode="after")
    def validate_heartbeat(self) -> Settings:
        if not 0 < self.heartbeat_interval_sec < self.stuck_job_after_sec:
            raise ValueError("heartbeat_interval_sec must be positive and below stuck_job_after_sec")
        return self

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
