# observer/pipeline/session.py
from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field

import numpy as np

from observer.cache.probe import SimilarMatch
from observer.models import Item, ScoreRecord

STAGES = ("lexical", "embed", "corpus", "rerank")


class TokenIssuer:
    """Monotonically increasing session tokens, never reused within a process."""

    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)
        self.last = start - 1

    def next(self) -> int:
        self.last = next(self._counter)
        return self.last


class CancelScope:
    """
    Cancellation handle for the tasks a session started.

    Cancelling is cooperative: tasks are asked to stop, and one that cannot
    stop promptly finishes in the background while its result is discarded
    by the token check.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()
        self.cancelled = False

    def attach(self, task: asyncio.Task) -> None:
        if self.cancelled:
            task.cancel()
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def cancel(self) -> int:
        self.cancelled = True
        tasks = list(self._tasks)
        self._tasks.clear()
        for t in tasks:
            t.cancel()
        return len(tasks)

    @property
    def active(self) -> int:
        return len(self._tasks)


@dataclass
class RerankState:
    candidates: list[str] = field(default_factory=list)
    buffer: dict[str, float] = field(default_factory=dict)
    failed: set[str] = field(default_factory=set)
    started: float = 0.0

    @property
    def total(self) -> int:
        return len(self.candidates)

    @property
    def done(self) -> int:
        return len(self.buffer) + len(self.failed)

    def reset(self) -> None:
        self.candidates = []
        self.buffer = {}
        self.failed = set()


@dataclass
class SearchSession:
    """
    One committed query (or pivot) and everything its stages produced.

    `order` is the visible list. While it is empty, `placeholder` holds item
    ids borrowed from a cached prior search; those carry no ScoreRecord.
    """

    token: int
    query: str
    normalized: str
    seed_id: str | None = None
    rerank_text: str = ""
    scope: CancelScope = field(default_factory=CancelScope)
    started: float = field(default_factory=time.perf_counter)

    records: dict[str, ScoreRecord] = field(default_factory=dict)
    items: dict[str, Item] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)
    placeholder: list[str] = field(default_factory=list)
    placeholder_source: str | None = None

    pending: set[str] = field(default_factory=set)
    ready: set[str] = field(default_factory=set)
    failed: dict[str, str] = field(default_factory=dict)

    query_vec: np.ndarray | None = field(default=None, repr=False)
    corpus: list[Item] | None = field(default=None, repr=False)

    rerank: RerankState = field(default_factory=RerankState)
    rerank_triggered: bool = False
    rerank_available: bool = False

    suggestions: list[SimilarMatch] = field(default_factory=list)
    cache_outcome: str | None = None
    persisted: bool = False
    persist_token: int | None = None
    snapshot_stale: bool = False
    history_id: int | None = None

    @property
    def is_pivot(self) -> bool:
        return self.seed_id is not None

    @property
    def in_flight(self) -> bool:
        return bool(self.pending)

    def record(self, item_id: str) -> ScoreRecord:
        rec = self.records.get(item_id)
        if rec is None:
            rec = self.records[item_id] = ScoreRecord()
        return rec

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)
