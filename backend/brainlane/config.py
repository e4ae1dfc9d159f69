"""
Configuration management for Brain Lane.
All settings loaded from environment variables / .env file.
"""

from __future__ import annotations

from typing import Any
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings - loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = "Brain Lane"
    environment: str = Field(default="development")
    debug: bool = Field(default=False)

    # API server
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    # project store and job queue live in process memory
    api_workers: int = Field(default=1)
    api_reload: bool = Field(default=True)

    # CORS - stored as comma-separated string in env; parsed to list
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            return [o.strip() for o in v.split(",") if o.strip()]
        return []

    # Frontend
    frontend_url: str = Field(default="http://localhost:5173")

    # LLM
    llm_provider: str = Field(default="openai", pattern=r"^(openai|anthropic)$")
    openai_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("openai_api_key", "vite_openai_api_key"),
    )
    openai_base_url: str = Field(default="https://api.openai.com/v1")
    openai_model: str = Field(default="gpt-4o")
    anthropic_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("anthropic_api_key", "vite_anthropic_api_key"),
    )
    anthropic_model: str = Field(default="claude-sonnet-4-20250514")
    llm_max_tokens: int = Field(default=4096)
    llm_temperature: float = Field(default=0.3)
    llm_timeout: float = Field(default=120.0)
    llm_max_retries: int = Field(default=3)
    llm_rate_limit_requests: int = Field(default=100)
    llm_rate_limit_period: int = Field(default=60)

    # Streaming proxy
    proxy_default_model: str = Field(default="gpt-4o")
    proxy_default_max_tokens: int = Field(default=4000)
    proxy_default_temperature: float = Field(default=0.3)
    proxy_heartbeat_interval: float = Field(default=2.5)
    proxy_deadline: float = Field(default=300.0)
    proxy_connect_timeout: float = Field(default=30.0)
    proxy_include_usage: bool = Field(default=True)

    # Analysis prompt budgets
    analysis_max_listed_files: int = Field(default=400)
    analysis_important_file_chars: int = Field(default=3000)
    analysis_sample_files: int = Field(default=5)
    analysis_sample_file_chars: int = Field(default=2000)
    analysis_fallback_listed_files: int = Field(default=80)
    analysis_fallback_excerpt_chars: int = Field(default=1200)
    analysis_fallback_sample_files: int = Field(default=2)
    analysis_fallback_sample_chars: int = Field(default=600)

    # Completion pipeline
    pipeline_source_files: int = Field(default=10)
    pipeline_max_features: int = Field(default=5)
    pipeline_detection_max_tokens: int = Field(default=8000)
    pipeline_feature_max_tokens: int = Field(default=4000)

    # Job queue
    job_queue_concurrency: int = Field(default=2)
    job_max_retries: int = Field(default=3)
    job_timeout: float = Field(default=600.0)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: str | None = Field(default=None)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def effective_cors_origins(self) -> list[str]:
        origins = list(self.cors_origins)
        if self.is_production and self.frontend_url not in origins:
            origins.append(self.frontend_url)
        return origins


settings = Settings()


def get_settings() -> Settings:
    return settings
