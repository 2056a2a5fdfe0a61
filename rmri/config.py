"""
Configuration for the RMRI pipeline.

Values are read from environment variables prefixed with ``RMRI_`` (nested
sections use ``__``, e.g. ``RMRI_ORCHESTRATION__MAX_ITERATIONS=3``) and from
a local ``.env`` file.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_DEFAULT_ANTHROPIC_MODEL = "claude-3-5-sonnet-20241022"
_DEFAULT_OPENAI_MODEL = "gpt-4o-mini"


class OrchestrationConfig(BaseModel):
    """Iteration loop settings."""

    max_iterations: int = Field(default=4, ge=1)
    convergence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    micro_concurrency: int = Field(default=10, ge=1)
    job_timeout_seconds: float = Field(default=300.0, gt=0)
    iteration_delay_seconds: float = Field(default=5.0, ge=0)
    failed_jobs_degraded_threshold: int = 50
    top_gaps_kept: int = 20
    convergence_top_k: int = 10


class QueueRetryConfig(BaseModel):
    """Retry policy for one job class. ``attempts`` counts total tries."""

    attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=2.0, ge=0)


class QueuesConfig(BaseModel):
    """Per-tier retry policies."""

    micro: QueueRetryConfig = Field(default_factory=lambda: QueueRetryConfig(attempts=3, backoff_seconds=2.0))
    meso: QueueRetryConfig = Field(default_factory=lambda: QueueRetryConfig(attempts=3, backoff_seconds=2.0))
    meta: QueueRetryConfig = Field(default_factory=lambda: QueueRetryConfig(attempts=2, backoff_seconds=3.0))


class DatabaseConfig(BaseModel):
    """Relational store settings."""

    url: str = "sqlite:///rmri.db"
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10


class ContextStoreConfig(BaseModel):
    """Context store settings."""

    storage_dir: str = "artifacts/contexts"
    max_context_bytes: int = 10 * 1024 * 1024


class ProviderConfig(BaseModel):
    """Connection settings for a single LLM provider."""

    model: str
    api_key: Optional[str] = None
    api_base: Optional[str] = None
    timeout: int = 120


class LLMConfig(BaseModel):
    """LLM client settings."""

    preferred_order: List[str] = Field(default_factory=lambda: ["anthropic", "openai"])
    providers: Dict[str, ProviderConfig] = Field(
        default_factory=lambda: {
            "anthropic": ProviderConfig(model=_DEFAULT_ANTHROPIC_MODEL),
            "openai": ProviderConfig(model=_DEFAULT_OPENAI_MODEL),
        }
    )
    max_tokens: int = 2048
    temperature: float = 0.3


class LoggingConfig(BaseModel):
    """Logging settings."""

    level: str = "INFO"
    file: Optional[str] = None


class RMRIConfig(BaseSettings):
    """Top-level configuration."""

    model_config = SettingsConfigDict(
        env_prefix="RMRI_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    orchestration: OrchestrationConfig = Field(default_factory=OrchestrationConfig)
    queues: QueuesConfig = Field(default_factory=QueuesConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    context_store: ContextStoreConfig = Field(default_factory=ContextStoreConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


_config: Optional[RMRIConfig] = None


def get_config() -> RMRIConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = RMRIConfig()
    return _config


def reset_config():
    """Drop the cached configuration so the next call reloads it."""
    global _config
    _config = None
