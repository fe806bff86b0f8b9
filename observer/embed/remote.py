"""
HTTP embedding backends.

Both speak JSON over a shared ``httpx.AsyncClient`` and go through
:func:`observer.http_retry.post_json_with_retry`, so transient failures are
retried and everything else surfaces as a stage error.
"""

from __future__ import annotations

import logging

import httpx
import numpy as np

from observer.errors import BackendUnavailable
from observer.http_retry import post_json_with_retry

log = logging.getLogger(__name__)

JINA_EMBED_URL = "https://api.jina.ai/v1/embeddings"
JINA_BATCH = 25  # smaller chunks give more reliable JSON responses


class JinaEmbedder:
    """Jina embeddings API with task-specific query/passage vectors."""

    name = "jina"

    def __init__(
        self,
        api_key: str,
        model: str = "jina-embeddings-v3",
        *,
        endpoint: str = JINA_EMBED_URL,
        dimensions: int = 1024,
        client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
        backoffs: tuple[float, ...] | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.endpoint = endpoint
        self.dimensions = dimensions
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._backoffs = backoffs

    async def _embed(self, texts: list[str], task: str) -> list[list[float]]:
        payload = {
            "model": self.model,
            "input": texts,
            "task": task,
            "dimensions": self.dimensions,
            "truncate": True,
        }
        kwargs = {"backoffs": self._backoffs} if self._backoffs is not None else {}
        body = await post_json_with_retry(
            self._client,
            self.endpoint,
            payload,
            stage="embed",
            headers={"Authorization": f"Bearer {self.api_key}"},
            **kwargs,
        )
        data = body.get("data") or []
        out: list[list[float] | None] = [None] * len(texts)
        for d in data:
            idx = int(d.get("index", -1))
            if not 0 <= idx < len(texts):
                raise BackendUnavailable(f"jina returned out-of-range index {idx}", stage="embed")
            out[idx] = d["embedding"]
        missing = [i for i, v in enumerate(out) if v is None]
        if missing:
            raise BackendUnavailable(f"jina returned no embedding for index {missing[0]}", stage="embed")
        return out

    async def embed_query(self, text: str) -> np.ndarray:
        vecs = await self._embed([text], "retrieval.query")
        return np.asarray(vecs[0], dtype=np.float32)

    async def embed_batch(self, texts: list[str]) -> np.ndarray:
        rows: list[list[float]] = []
        for start in range(0, len(texts), JINA_BATCH):
            rows.extend(await self._embed(list(texts[start : start + JINA_BATCH]), "retrieval.passage"))
        return np.asarray(rows, dtype=np.float32)

    async def aclose(self) -> None:
        await self._client.aclose()


class OllamaEmbedder:
    """Local Ollama server, one text per request."""

    name = "ollama"

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        backoffs: tuple[float, ...] | None = None,
    ):
        self.host = host.rstrip("/")
        self.model = model
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._backoffs = backoffs

    async def _embed_one(self, text: str) -> np.ndarray:
        kwargs = {"backoffs": self._backoffs} if self._backoffs is not None else {}
        body = await post_json_with_retry(
            self._client,
            f"{self.host}/api/embed",
            {"model": self.model, "input": text},
            stage="embed",
            **kwargs,
        )
        embeddings = body.get("embeddings") or []
        if not embeddings:
            raise BackendUnavailable("ollama returned no embeddings", stage="embed")
        return np.asarray(embeddings[0], dtype=np.float32)

    async def embed_query(self, text: str) -> np.ndarray:
        return await self._embed_one(text)

    async def embed_batch(self, texts: list[str]) -> np.ndarray:
        vecs = [await self._embed_one(t) for t in texts]
        if not vecs:
            return np.zeros((0, 0), dtype=np.float32)
        return np.vstack(vecs)

    async def aclose(self) -> None:
        await self._client.aclose()
