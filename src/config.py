from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings validated via Pydantic.

    Values are loaded from environment variables and/or a .env file.
    """

    # API Keys
    anthropic_api_key: str = ""
    openai_api_key: str = ""

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""

    # Models
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    llm_model: str = "claude-sonnet-4-20250514"
    llm_timeout_seconds: float = 55.0

    # Chunking
    chunk_size: int = 2000
    chunk_overlap: int = 200
    speaker_labels: list[str] = ["REP", "PROSPECT"]

    # Tier selection
    direct_max: int = 20
    sampling_max: int = 100
    sample_seed: int = 42

    # Hierarchical analysis
    hierarchical_min_batch: int = 5
    hierarchical_max_batch: int = 25
    map_concurrency: int = 4
    batch_timeout_seconds: float = 90.0

    # Backfill
    embedding_batch_size: int = 10
    entity_batch_size: int = 15
    entity_chunks_per_call: int = 5
    stall_timeout_seconds: float = 120.0
    backfill_concurrency: int = 4
    backfill_timeout_seconds: float = 60.0

    # Retries for transient service errors
    retry_attempts: int = 3
    retry_min_wait_seconds: float = 0.2
    retry_max_wait_seconds: float = 5.0

    # Retrieval
    min_embedding_coverage: float = 0.5
    per_transcript_share: float = 0.5

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance.

    Gracefully handles missing .env files (e.g. in CI/testing) by falling
    back to environment variables and defaults.
    """
    try:
        return Settings()
    except Exception:
        # If .env is missing or unreadable, build settings from env vars only.
        return Settings(_env_file=None)  # type: ignore[call-arg]


settings = get_settings()
