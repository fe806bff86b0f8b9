"""
Type definitions shared by the store, the pipeline and the UI.

This module provides:
- Item records as persisted by the store
- Per-item score records with a provenance bitmask
- Search history entries and their ranked result snapshots
- The UI mode enum
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntFlag
from typing import Any

import numpy as np

_WS = re.compile(r"\s+")


def normalize_query(text: str) -> str:
    """Canonical form used to deduplicate history: case-folded, single-spaced."""
    return _WS.sub(" ", (text or "").strip()).casefold()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Mode(str, Enum):
    """What the user is looking at."""

    BROWSING = "browsing"
    COMPOSING = "composing"
    RESULTS = "results"
    HISTORY = "history"
    ARTICLE = "article"


class Provenance(IntFlag):
    """Which ranking stages contributed a score."""

    NONE = 0
    LEXICAL = 1
    COSINE = 2
    RERANKED = 4


@dataclass
class Item:
    """Ingested feed entry."""

    id: str
    source_type: str
    source_name: str
    title: str
    summary: str = ""
    url: str | None = None
    author: str = ""
    published: datetime = field(default_factory=utcnow)
    fetched: datetime = field(default_factory=utcnow)
    read: bool = False
    saved: bool = False
    embedding: np.ndarray | None = field(default=None, repr=False, compare=False)

    def text(self) -> str:
        """Title and summary, as sent to rerankers and embedders."""
        if self.summary:
            return f"{self.title} - {self.summary}"
        return self.title

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_type": self.source_type,
            "source_name": self.source_name,
            "title": self.title,
            "summary": self.summary,
            "url": self.url,
            "author": self.author,
            "published": self.published.isoformat(),
            "read": self.read,
            "saved": self.saved,
            "has_embedding": self.embedding is not None,
        }


@dataclass
class ScoreRecord:
    """
    Scores one item has collected within one search session.

    Provenance bits only accumulate. The displayed score is the
    highest-fidelity score present: reranked, then cosine, then lexical.
    """

    lexical: float | None = None
    cosine: float | None = None
    rerank: float | None = None
    provenance: Provenance = Provenance.NONE

    def add_lexical(self, score: float) -> None:
        self.lexical = float(score)
        self.provenance |= Provenance.LEXICAL

    def add_cosine(self, score: float) -> None:
        self.cosine = float(score)
        self.provenance |= Provenance.COSINE

    def add_rerank(self, score: float) -> None:
        self.rerank = float(score)
        self.provenance |= Provenance.RERANKED

    @property
    def tier(self) -> Provenance:
        if self.provenance & Provenance.RERANKED:
            return Provenance.RERANKED
        if self.provenance & Provenance.COSINE:
            return Provenance.COSINE
        if self.provenance & Provenance.LEXICAL:
            return Provenance.LEXICAL
        return Provenance.NONE

    @property
    def display_score(self) -> float | None:
        tier = self.tier
        if tier is Provenance.RERANKED:
            return self.rerank
        if tier is Provenance.COSINE:
            return self.cosine
        if tier is Provenance.LEXICAL:
            return self.lexical
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "lexical": self.lexical,
            "cosine": self.cosine,
            "rerank": self.rerank,
            "provenance": [p.name.lower() for p in Provenance if p and p in self.provenance],
            "score": self.display_score,
        }


@dataclass
class HistoryResult:
    """One ranked row of a history entry's result snapshot."""

    rank: int
    item_id: str
    session_id: str = ""
    lexical: float | None = None
    cosine: float | None = None
    rerank: float | None = None
    provenance: Provenance = Provenance.NONE


@dataclass
class HistoryEntry:
    """Persisted past search."""

    id: int
    normalized_query: str
    raw_query: str
    backend: str = ""
    duration_ms: int = 0
    result_count: int = 0
    pinned: bool = False
    use_count: int = 1
    last_used: float = 0.0
    created: float = 0.0
    query_embedding: np.ndarray | None = field(default=None, repr=False, compare=False)
    results: list[HistoryResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "query": self.raw_query,
            "backend": self.backend,
            "duration_ms": self.duration_ms,
            "result_count": self.result_count,
            "pinned": self.pinned,
            "use_count": self.use_count,
            "last_used": self.last_used,
        }
