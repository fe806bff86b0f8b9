# observer/rerank/cross_encoder.py
from __future__ import annotations

import asyncio
import logging

import numpy as np

log = logging.getLogger(__name__)

DEFAULT_MODEL = "BAAI/bge-reranker-base"


class CrossEncoderReranker:
    """
    Local cross-encoder reranker using sentence-transformers (e.g., BAAI/bge-reranker-base).
    Scores (query, text) pairs in one batch; fast enough to apply automatically.
    """

    auto_apply = True

    def __init__(self, model_name: str | None = None, batch_size: int = 16, max_chars: int = 1200):
        self.model_name = model_name or DEFAULT_MODEL
        self.batch_size = batch_size
        self.max_chars = max_chars
        self._model = None

    @property
    def name(self) -> str:
        return f"cross-encoder/{self.model_name}"

    def _ensure_loaded(self):
        if self._model is not None:
            return
        from sentence_transformers import CrossEncoder  # heavy import

        self._model = CrossEncoder(self.model_name, trust_remote_code=True)
        log.info("Reranker loaded (%s)", self.model_name)

    def predict(self, query: str, texts: list[str]) -> list[float]:
        if not texts:
            return []
        self._ensure_loaded()
        pairs = [(query, t[: self.max_chars]) for t in texts]
        # single-label cross-encoders apply a sigmoid, so scores are already in [0, 1]
        scores = np.asarray(self._model.predict(pairs, batch_size=self.batch_size), dtype=np.float64)
        return [float(s) for s in np.clip(scores, 0.0, 1.0)]

    async def rerank(self, query: str, texts: list[str]) -> list[float]:
        return await asyncio.to_thread(self.predict, query, list(texts))

    async def aclose(self) -> None:
        return None
