# observer/retrieval/interfaces.py
"""
Contracts between the pipeline and its backend adapters.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable

import numpy as np


class QueryEmbedder(Protocol):
    """Embedding service."""

    name: str

    async def embed_query(self, text: str) -> np.ndarray:
        """
        Embed a search query.

        Raises:
            StageError: The backend failed or timed out.
        """
        ...

    async def embed_batch(self, texts: list[str]) -> np.ndarray:
        """Embed item texts, one row per input, in input order."""
        ...

    async def aclose(self) -> None: ...


@runtime_checkable
class BatchReranker(Protocol):
    """
    Fast reranker: one call scores every candidate. Results apply to the
    visible list automatically.
    """

    name: str
    auto_apply: bool

    async def rerank(self, query: str, texts: list[str]) -> list[float]:
        """
        Score each text against the query.

        Returns:
            One score in [0, 1] per text, in input order.
        """
        ...

    async def aclose(self) -> None: ...


@runtime_checkable
class SequentialReranker(Protocol):
    """
    Slow reranker: candidates are scored one at a time, so progress can be
    reported. Results wait for the user to apply them.
    """

    name: str
    auto_apply: bool

    async def score_one(self, query: str, text: str) -> float: ...

    async def aclose(self) -> None: ...


Reranker = BatchReranker | SequentialReranker
