"""
Configuration management for Clinic-Insights.

This module provides centralized configuration using Pydantic Settings
for environment-based configuration management.
"""

from typing import Optional

import os
from pathlib import Path

from pydantic import Field, field_validator, validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """MongoDB settings for the audit store and patient records."""

    model_config = SettingsConfigDict(env_prefix="MONGO_")

    uri: str = Field(default="", description="MongoDB connection URI")
    db_name: str = Field(default="clinicinsights", description="MongoDB database name")
    audit_collection: str = Field(
        default="ai_execution_audit", description="Collection holding AI execution audit entries"
    )
    patients_collection: str = Field(default="patients", description="Collection of patient chart documents")
    sessions_collection: str = Field(default="sessions", description="Collection of therapy session documents")
    assessments_collection: str = Field(default="assessments", description="Collection of clinical assessments")
    alerts_collection: str = Field(default="alerts", description="Collection of open clinical alerts")
    tls: bool = Field(default=False, description="Use TLS for the MongoDB connection")

    @validator("uri")
    def validate_mongo_uri(cls, v: str) -> str:
        """Validate MongoDB URI format (empty is allowed when the memory audit backend is used)."""
        if v and not v.startswith(("mongodb://", "mongodb+srv://")):
            raise ValueError(
                "MongoDB URI must start with 'mongodb://' or 'mongodb+srv://'"
            )
        return v


class AzureOpenAISettings(BaseSettings):
    """Azure OpenAI configuration settings."""

    model_config = SettingsConfigDict(env_prefix="AZURE_OPENAI_")

    endpoint: str = Field(default="", description="Azure OpenAI endpoint URL")
    api_key: str = Field(default="", description="Azure OpenAI API key")
    api_version: str = Field(default="2024-12-01-preview", description="Azure OpenAI API version")
    deployment_name: str = Field(default="gpt-4o-mini", description="Chat deployment used by most pipelines")
    reasoning_deployment_name: str = Field(
        default="gpt-4o", description="Deployment used by safety and treatment-progress pipelines"
    )
    request_timeout_seconds: float = Field(default=60.0, description="Per-request timeout in seconds")

    @validator("endpoint")
    def validate_endpoint(cls, v: str) -> str:
        """Validate Azure OpenAI endpoint format."""
        if v and not (v.startswith("https://") and ".openai.azure.com" in v):
            raise ValueError("Invalid Azure OpenAI endpoint format. Must be: https://xxx.openai.azure.com/")
        return v


class RedisSettings(BaseSettings):
    """Redis (L2 cache) configuration settings."""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    key_prefix: str = Field(default="ai", description="Prefix for every cache key stored in Redis")
    socket_timeout: float = Field(default=2.0, description="Socket timeout in seconds")

    @validator("url")
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL scheme."""
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("Redis URL must start with 'redis://', 'rediss://' or 'unix://'")
        return v


class CacheSettings(BaseSettings):
    """Pipeline result cache configuration settings."""

    model_config = SettingsConfigDict(env_prefix="CACHE_")

    backend: str = Field(default="memory", description="Cache backend (memory or redis)")
    max_size: int = Field(default=1000, description="Maximum number of cached items")
    max_memory_mb: float = Field(default=100.0, description="Memory budget for cached values in MB")
    default_ttl: int = Field(default=600, description="TTL in seconds for pipelines without an explicit TTL")
    cleanup_interval_seconds: int = Field(default=60, description="Interval between expired-entry sweeps")
    l1_max_size: int = Field(default=100, description="Capacity of the local L1 cache in two-tier mode")
    l1_ttl: int = Field(default=60, description="TTL in seconds of L1 entries in two-tier mode")
    ttl_safety_check: int = Field(default=300, description="TTL for safety_check results")
    ttl_billing: int = Field(default=3600, description="TTL for billing_cpt and billing_icd10 results")
    ttl_treatment_progress: int = Field(default=1800, description="TTL for treatment_progress results")
    ttl_chat_with_chart: int = Field(default=300, description="TTL for chat_with_chart results")

    @validator("backend")
    def validate_backend(cls, v: str) -> str:
        """Validate cache backend."""
        valid_backends = ["memory", "redis"]
        if v.lower() not in valid_backends:
            raise ValueError(f"Cache backend must be one of: {valid_backends}")
        return v.lower()

    @validator("max_size", "l1_max_size")
    def validate_sizes(cls, v: int) -> int:
        """Validate cache capacities."""
        if v < 1:
            raise ValueError("Cache sizes must be at least 1")
        return v

    def ttl_table(self) -> dict:
        """Per-pipeline TTL table in seconds."""
        return {
            "safety_check": self.ttl_safety_check,
            "billing_cpt": self.ttl_billing,
            "billing_icd10": self.ttl_billing,
            "treatment_progress": self.ttl_treatment_progress,
            "chat_with_chart": self.ttl_chat_with_chart,
        }


class AuditSettings(BaseSettings):
    """AI execution audit configuration settings."""

    model_config = SettingsConfigDict(env_prefix="AUDIT_")

    enabled: bool = Field(default=True, description="Enable execution audit logging")
    backend: str = Field(default="memory", description="Audit store backend (memory or mongo)")
    retention_days: int = Field(default=90, description="Days to keep audit entries")
    include_request_data: bool = Field(default=True, description="Persist request variables")
    include_response_data: bool = Field(default=True, description="Persist full response bodies")
    max_data_size_bytes: int = Field(default=100 * 1024, description="Cap for stored request/response payloads")
    calculate_costs: bool = Field(default=True, description="Compute estimated cost from token usage")
    cost_per_1k_prompt_tokens: float = Field(default=0.01, description="USD per 1K prompt tokens")
    cost_per_1k_completion_tokens: float = Field(default=0.03, description="USD per 1K completion tokens")
    high_latency_threshold_ms: float = Field(default=5000.0, description="Duration above which high_latency fires")
    high_token_threshold: int = Field(default=10000, description="Token count above which high_token_usage fires")

    @validator("backend")
    def validate_backend(cls, v: str) -> str:
        """Validate audit backend."""
        valid_backends = ["memory", "mongo"]
        if v.lower() not in valid_backends:
            raise ValueError(f"Audit backend must be one of: {valid_backends}")
        return v.lower()

    @validator("retention_days")
    def validate_retention(cls, v: int) -> int:
        """Validate retention days."""
        if v < 1:
            raise ValueError("Retention days must be at least 1")
        return v


class PromptSettings(BaseSettings):
    """Prompt registry configuration settings."""

    model_config = SettingsConfigDict(env_prefix="PROMPT_")

    resolution_cache_size: int = Field(default=50, description="Max resolved templates kept in the registry LRU")
    register_defaults: bool = Field(default=True, description="Register built-in pipeline prompts on startup")
    max_prompt_tokens: int = Field(default=100000, description="Estimated token limit for a compiled prompt")


class InsightsSettings(BaseSettings):
    """Multi-pipeline orchestration settings."""

    model_config = SettingsConfigDict(env_prefix="INSIGHTS_")

    global_timeout_ms: int = Field(default=45000, description="Upper bound for a whole coordination run")
    history_size: int = Field(default=100, description="Executions kept for rolling health statistics")
    max_queue_delay_ms: int = Field(default=60000, description="Longest wait honored for rate-limit retries")


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO", description="Logging level")
    format: str = Field(default="json", description="Log format (json or text)")

    @validator("level")
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("format", mode="before")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        if v.lower() not in ("json", "text"):
            raise ValueError("Log format must be 'json' or 'text'")
        return v.lower()


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    app_name: str = Field(default="Clinic-Insights", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    app_env: str = Field(default="development", description="Application environment")

    # Sub-settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    azure_openai: AzureOpenAISettings = Field(default_factory=AzureOpenAISettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    prompts: PromptSettings = Field(default_factory=PromptSettings)
    insights: InsightsSettings = Field(default_factory=InsightsSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @validator("app_env")
    def validate_app_env(cls, v: str) -> str:
        """Validate application environment."""
        valid_envs = ["development", "staging", "production", "testing"]
        if v.lower() not in valid_envs:
            raise ValueError(f"App environment must be one of: {valid_envs}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"

    @property
    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.app_env == "testing"


# Global settings instance (loaded after attempting to read .env)
_settings: Optional[Settings] = None


def _load_env_file_if_available() -> None:
    """Best-effort load of .env by searching current and parent directories.

    Already-set environment variables always win over file values.
    """
    from dotenv import load_dotenv

    cwd = Path(os.getcwd()).resolve()
    for parent in [cwd, *cwd.parents]:
        candidate = parent / ".env"
        if candidate.exists():
            load_dotenv(dotenv_path=str(candidate), override=False)
            break


def get_settings() -> Settings:
    """Get application settings instance (lazy-init with .env discovery)."""
    global _settings
    if _settings is None:
        _load_env_file_if_available()
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
