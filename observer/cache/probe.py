# observer/cache/probe.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from observer.embed.codec import cosine_similarity
from observer.models import HistoryEntry
from observer.store.history import SearchHistory

log = logging.getLogger(__name__)


@dataclass
class SimilarMatch:
    entry: HistoryEntry
    similarity: float


@dataclass
class ProbeResult:
    """Outcome of a similarity probe: at most one hit plus lower-band suggestions."""

    hit: SimilarMatch | None = None
    suggestions: list[SimilarMatch] = field(default_factory=list)

    @property
    def outcome(self) -> str:
        if self.hit is not None:
            return "similar"
        if self.suggestions:
            return "suggestion"
        return "miss"


class SearchCache:
    """
    Lookup of prior searches, by normalized text or by query-embedding
    similarity against a bounded window of recent history.

    A linear cosine scan is enough at this scale (a few hundred stored
    queries), so no vector index is kept.
    """

    def __init__(
        self,
        history: SearchHistory,
        *,
        hit_threshold: float = 0.95,
        suggest_threshold: float = 0.80,
        window: int = 100,
        suggest_limit: int = 3,
    ):
        self.history = history
        self.hit_threshold = hit_threshold
        self.suggest_threshold = suggest_threshold
        self.window = window
        self.suggest_limit = suggest_limit

    def probe_exact(self, normalized: str) -> HistoryEntry | None:
        if not normalized:
            return None
        return self.history.get(normalized)

    def probe_similar(
        self,
        embedding: np.ndarray,
        threshold: float,
        limit: int,
        exclude: str | None = None,
    ) -> list[SimilarMatch]:
        """Recent entries at or above `threshold`, most similar first."""
        if embedding is None or limit <= 0:
            return []
        matches = []
        for entry in self.history.recent_embeddings(self.window):
            if entry.normalized_query == exclude:
                continue
            sim = cosine_similarity(embedding, entry.query_embedding)
            if sim >= threshold:
                matches.append(SimilarMatch(entry, sim))
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:limit]

    def classify(self, embedding: np.ndarray, exclude: str | None = None) -> ProbeResult:
        """
        Split similar prior searches into a hit (treated like an exact match
        for placeholder purposes) and suggestions that are only surfaced.
        """
        matches = self.probe_similar(
            embedding, self.suggest_threshold, self.suggest_limit + 1, exclude=exclude
        )
        result = ProbeResult()
        for m in matches:
            if result.hit is None and m.similarity >= self.hit_threshold:
                # window rows carry no snapshot; the hit needs one to stand in for results
                m.entry.results = self.history.results(m.entry.id)
                result.hit = m
            elif len(result.suggestions) < self.suggest_limit:
                result.suggestions.append(m)
        return result
