"""YAML config loader + Pydantic models."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

_DEFAULT_CONFIG = Path(__file__).parent / "config.default.yaml"


class SourceConfig(BaseModel):
    base_url: str = ""
    page_size: int = 10
    max_pages: Optional[int] = None
    timeout: int = 30
    request_delay: float = 2.0
    source_portal: str = "academic_jobs"


class LLMConfig(BaseModel):
    provider: str = "openai"
    url: str = "https://api.openai.com/v1/chat/completions"
    models_url: Optional[str] = None
    model: str = "gpt-4o-mini"
    # Environment variable holding the API key; None for local servers.
    api_key_env: Optional[str] = "OPENAI_API_KEY"
    timeout: int = 120
    max_tokens: int = 2000
    temperature: float = 0.1
    jd_max_chars: int = 12000
    lock_path: str = "~/.local/share/job_sync/llm.lock"
    lock_timeout: int = 300
    trace_dir: Optional[str] = None

    def resolved_models_url(self) -> str:
        return self.models_url or self.url.replace("/chat/completions", "/models")


class QueueConfig(BaseModel):
    quick_retry_limit: int = 3
    retry_cooldown_hours: float = 24.0
    # Failed jobs at or past this many attempts are never selected again.
    max_attempts: Optional[int] = None


class EnrichmentConfig(BaseModel):
    attributes_threshold: float = 0.5
    optional_threshold: float = 0.3


class RunnerConfig(BaseModel):
    delay_between_jobs: float = 1.0
    max_jobs_per_run: int = 50
    continue_on_error: bool = True
    job_timeout_seconds: Optional[float] = 300.0
    stale_after_minutes: Optional[float] = None
    check_health: bool = True


class SyncConfig(BaseModel):
    continue_on_error: bool = True
    dry_run: bool = False
    llm_attributes: bool = False
    removal_grace_hours: float = 24.0
    archive_after_days: int = 180


class AppConfig(BaseModel):
    source: SourceConfig = Field(default_factory=SourceConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load config from YAML, falling back to defaults."""
    with open(_DEFAULT_CONFIG) as f:
        data = yaml.safe_load(f) or {}

    if config_path and config_path.exists():
        with open(config_path) as f:
            overrides = yaml.safe_load(f) or {}
        _deep_merge(data, overrides)

    return AppConfig.model_validate(data)


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base dict."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base
