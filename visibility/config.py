from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # LLM provider
    llm_provider: str = "openrouter"  # openrouter | openai | perplexity
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    perplexity_api_key: str = ""
    perplexity_base_url: str = "https://api.perplexity.ai"
    answer_model: str = "openai/gpt-5-nano"
    validation_model: str = "openai/gpt-5-nano"
    topic_model: str = "openai/gpt-5-nano"
    web_search_suffix: str = ":online"  # appended to OpenRouter model ids for web-grounded calls
    app_url: str = "http://localhost:3000"
    app_title: str = "AI Visibility Tracker"

    # Outbound HTTP
    request_timeout_seconds: float = 300.0
    http_max_retries: int = 3
    retry_base_delay: float = 2.0
    rate_limit_base_delay: float = 5.0

    # Batching
    batch_size: int = 5
    concurrent_batches: int = 10
    max_batch_retries: int = 3
    batch_retry_base_delay: float = 2.0

    # Ranking
    visibility_policy: str = "banded"  # flat | banded
    rank_validation_mode: str = "llm"  # llm | local
    forced_mention_rate: float = 0.35

    # Store
    store_backend: str = "supabase"  # supabase | memory
    supabase_url: str = ""
    supabase_service_key: str = ""

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Batching, retry and ranking knobs for a single analysis run."""

    batch_size: int = 5
    concurrent_batches: int = 10
    max_batch_retries: int = 3
    batch_retry_base_delay: float = 2.0
    visibility_policy: str = "banded"
    rank_validation_mode: str = "llm"
    forced_mention_rate: float = 0.35

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.concurrent_batches < 1:
            raise ValueError("concurrent_batches must be at least 1")
        if self.max_batch_retries < 1:
            raise ValueError("max_batch_retries must be at least 1")
        if not 0.0 <= self.forced_mention_rate <= 1.0:
            raise ValueError("forced_mention_rate must be within [0, 1]")

    @classmethod
    def from_settings(cls, source: Settings | None = None, **overrides: Any) -> "PipelineConfig":
        source = source or settings
        config = cls(
            batch_size=source.batch_size,
            concurrent_batches=source.concurrent_batches,
            max_batch_retries=source.max_batch_retries,
            batch_retry_base_delay=source.batch_retry_base_delay,
            visibility_policy=source.visibility_policy,
            rank_validation_mode=source.rank_validation_mode,
            forced_mention_rate=source.forced_mention_rate,
        )
        return replace(config, **overrides) if overrides else config
