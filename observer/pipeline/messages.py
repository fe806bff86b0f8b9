# observer/pipeline/messages.py
"""
Messages fed into the single-threaded core.

Stage results carry the session token of the request that produced them;
the core compares it against the live token before applying anything.
Results are keyed by item id, never by list position.
"""
from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from observer.errors import ObserverError
from observer.models import HistoryEntry, HistoryResult, Item


@dataclass(frozen=True)
class KeyPressed:
    key: str


@dataclass(frozen=True)
class ItemsLoaded:
    items: list[Item] = field(default_factory=list)
    err: ObserverError | None = None


@dataclass(frozen=True)
class ItemsChanged:
    """Ingestion stored new items."""


@dataclass(frozen=True)
class ItemMarked:
    item_id: str
    read: bool = True
    err: ObserverError | None = None


@dataclass(frozen=True)
class QueryEmbedded:
    token: int
    vector: np.ndarray | None = None
    err: ObserverError | None = None
    duration_s: float = 0.0


@dataclass(frozen=True)
class CorpusLoaded:
    token: int
    items: list[Item] = field(default_factory=list)
    err: ObserverError | None = None
    duration_s: float = 0.0


@dataclass(frozen=True)
class EntryReranked:
    token: int
    item_id: str
    score: float = 0.0
    err: ObserverError | None = None


@dataclass(frozen=True)
class RerankComplete:
    token: int
    scores: dict[str, float] = field(default_factory=dict)
    err: ObserverError | None = None
    duration_s: float = 0.0


@dataclass(frozen=True)
class HistorySaved:
    token: int
    entry_id: int | None = None
    err: ObserverError | None = None


@dataclass(frozen=True)
class HistoryLoaded:
    entries: list[HistoryEntry] = field(default_factory=list)
    err: ObserverError | None = None


@dataclass(frozen=True)
class HistoryChanged:
    """A pin, unpin or delete landed."""

    entry_id: int
    action: str
    err: ObserverError | None = None


@dataclass(frozen=True)
class ViewRefreshed:
    view_id: int
    token: int
    results: list[HistoryResult] = field(default_factory=list)
    err: ObserverError | None = None
