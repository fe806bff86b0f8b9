from __future__ import annotations

import asyncio
import logging

import numpy as np

log = logging.getLogger(__name__)


class Embedder:
    """
    Local sentence-transformers embedder. The model loads on first use so
    constructing one (e.g. at startup) stays cheap.
    """

    name = "local"

    def __init__(self, model_name: str = "BAAI/bge-small-en-v1.5", device: str | None = None, normalize: bool = True):
        self.model_name = model_name
        self.device = device
        self.normalize = normalize
        self._model = None
        self.dim: int | None = None

    def _ensure_loaded(self):
        if self._model is not None:
            return
        from sentence_transformers import SentenceTransformer  # heavy import

        self._model = SentenceTransformer(self.model_name, device=self.device or ("cuda" if _has_cuda() else "cpu"))
        self.dim = self._model.get_sentence_embedding_dimension()
        log.info("Embedder loaded (%s, dim=%s)", self.model_name, self.dim)

    def encode(self, texts: list[str], batch_size: int = 64) -> np.ndarray:
        self._ensure_loaded()
        vecs = self._model.encode(
            texts,
            batch_size=batch_size,
            show_progress_bar=False,
            normalize_embeddings=self.normalize,
        )
        # contiguous float32 for storage
        return np.asarray(vecs, dtype=np.float32)

    async def embed_query(self, text: str) -> np.ndarray:
        vecs = await asyncio.to_thread(self.encode, [text], 1)
        return vecs[0]

    async def embed_batch(self, texts: list[str]) -> np.ndarray:
        return await asyncio.to_thread(self.encode, list(texts))

    async def aclose(self) -> None:
        return None


def _has_cuda() -> bool:
    try:
        import torch
    except ImportError:
        return False
    return bool(torch.cuda.is_available())
