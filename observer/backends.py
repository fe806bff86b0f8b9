# observer/backends.py
from __future__ import annotations

import logging

from observer.config import Settings, get_settings
from observer.embed.model import Embedder
from observer.embed.remote import JinaEmbedder, OllamaEmbedder
from observer.errors import ConfigurationError
from observer.rerank import CrossEncoderReranker, JinaReranker, OllamaReranker

log = logging.getLogger(__name__)


def build_embedder(settings: Settings | None = None):
    """Embedding adapter for the configured backend, or None when disabled."""
    s = settings or get_settings()
    backend = s.embed_backend
    if backend == "none":
        log.info("Embedding disabled; searches stay lexical")
        return None
    if backend == "local":
        return Embedder(model_name=s.embed_model)
    if backend == "jina":
        if not s.jina_api_key:
            raise ConfigurationError("EMBED_BACKEND=jina requires JINA_API_KEY")
        return JinaEmbedder(s.jina_api_key, timeout=s.embed_timeout_s)
    if backend == "ollama":
        return OllamaEmbedder(s.ollama_host, s.embed_model, timeout=s.embed_timeout_s)
    raise ConfigurationError(f"unknown embed backend {backend!r}")


def build_reranker(settings: Settings | None = None):
    """Reranking adapter for the configured backend, or None when disabled."""
    s = settings or get_settings()
    backend = s.rerank_backend
    if backend == "none":
        return None
    if backend == "cross-encoder":
        return CrossEncoderReranker(s.reranker_model)
    if backend == "jina":
        if not s.jina_api_key:
            raise ConfigurationError("RERANK_BACKEND=jina requires JINA_API_KEY")
        return JinaReranker(s.jina_api_key, s.reranker_model or "jina-reranker-v3", timeout=s.rerank_timeout_s)
    if backend == "ollama":
        return OllamaReranker(s.ollama_host, s.reranker_model, timeout=s.rerank_entry_timeout_s)
    raise ConfigurationError(f"unknown rerank backend {backend!r}")
