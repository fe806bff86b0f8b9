# observer/config.py
from functools import lru_cache
from typing import Literal

from pydantic import (
    Field,
    field_validator,  # v2 validator
)
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the feed reader (Pydantic v2).
    Loads from environment variables and a .env file (if present).
    """

    # --- Runtime / env ---
    env: Literal["dev", "prod", "test"] = "dev"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_file: str | None = Field("observer.log", alias="OBSERVER_LOG_FILE")
    trace_enabled: bool = Field(False, alias="OBSERVER_TRACE")
    metrics_port: int | None = Field(default=None, alias="OBSERVER_METRICS_PORT")

    # --- Storage ---
    db_path: str = Field("observer.db", alias="OBSERVER_DB")
    history_retention: int = Field(200, ge=1)
    history_snapshot_size: int = Field(50, ge=1, le=500)
    corpus_limit: int = Field(5000, ge=1)

    # --- Backends ---
    embed_backend: Literal["local", "jina", "ollama", "none"] = Field(
        "local", alias="EMBED_BACKEND"
    )
    embed_model: str = Field("BAAI/bge-small-en-v1.5", alias="EMBED_MODEL")
    rerank_backend: Literal["cross-encoder", "jina", "ollama", "none"] = Field(
        "cross-encoder", alias="RERANK_BACKEND"
    )
    reranker_model: str | None = Field(default=None, alias="RERANKER_MODEL")
    jina_api_key: str | None = Field(default=None, alias="JINA_API_KEY")
    ollama_host: str = Field("http://localhost:11434", alias="OLLAMA_HOST")

    # --- Pipeline ---
    lexical_limit: int = Field(50, ge=1, le=500)
    rerank_top_n: int = Field(30, ge=1, le=200)
    cache_hit_threshold: float = Field(0.95, ge=0.0, le=1.0)
    cache_suggest_threshold: float = Field(0.80, ge=0.0, le=1.0)
    cache_window: int = Field(100, ge=1)
    cache_suggest_limit: int = Field(3, ge=0, le=20)

    # per-stage timeouts, seconds
    embed_timeout_s: float = Field(30.0, gt=0)
    corpus_timeout_s: float = Field(10.0, gt=0)
    rerank_timeout_s: float = Field(60.0, gt=0)
    rerank_entry_timeout_s: float = Field(120.0, gt=0)

    view_refresh_concurrency: int = Field(2, ge=1, le=3)

    # Pydantic v2 config
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # env var names are case-insensitive
        extra="ignore",  # ignore extra envs silently
        populate_by_name=True,  # allow using field names as env keys too
    )

    @field_validator("jina_api_key")
    @classmethod
    def _warn_if_missing_jina(cls, v, info):
        # Warn (don't crash) if JINA_API_KEY is missing while a Jina backend is selected
        data = info.data if hasattr(info, "data") else {}
        wants_jina = "jina" in (data.get("embed_backend"), data.get("rerank_backend"))
        if wants_jina and not v:
            import logging

            logging.getLogger(__name__).warning(
                "JINA_API_KEY missing; Jina calls will fail until it's set."
            )
        return v

    @field_validator("cache_suggest_threshold")
    @classmethod
    def _suggest_below_hit(cls, v, info):
        hit = (info.data or {}).get("cache_hit_threshold")
        if hit is not None and v > hit:
            raise ValueError("cache_suggest_threshold must not exceed cache_hit_threshold")
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings instance so every import doesn't re-parse the env."""
    return Settings()
