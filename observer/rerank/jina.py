# observer/rerank/jina.py
from __future__ import annotations

import logging

import httpx

from observer.http_retry import post_json_with_retry

log = logging.getLogger(__name__)

JINA_RERANK_URL = "https://api.jina.ai/v1/rerank"


class JinaReranker:
    """Jina rerank API: every candidate scored in one call."""

    auto_apply = True

    def __init__(
        self,
        api_key: str,
        model: str = "jina-reranker-v3",
        *,
        endpoint: str = JINA_RERANK_URL,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        backoffs: tuple[float, ...] | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.endpoint = endpoint
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._backoffs = backoffs

    @property
    def name(self) -> str:
        return f"jina/{self.model}"

    async def rerank(self, query: str, texts: list[str]) -> list[float]:
        if not texts:
            return []
        kwargs = {"backoffs": self._backoffs} if self._backoffs is not None else {}
        body = await post_json_with_retry(
            self._client,
            self.endpoint,
            {"model": self.model, "query": query, "documents": list(texts), "top_n": len(texts)},
            stage="rerank",
            headers={"Authorization": f"Bearer {self.api_key}"},
            **kwargs,
        )
        # documents the service leaves out score zero
        scores = [0.0] * len(texts)
        for r in body.get("results") or []:
            idx = int(r.get("index", -1))
            if 0 <= idx < len(texts):
                scores[idx] = float(r.get("relevance_score", 0.0))
        return scores

    async def aclose(self) -> None:
        await self._client.aclose()
