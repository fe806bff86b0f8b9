# observer/pipeline/views.py
"""
Persisted views: pinned history entries kept fresh in the background.

Each refresh re-ranks one view (lexical plus cosine, never a rerank) against
a corpus snapshot shared by all views, then replaces the entry's stored
snapshot. Refreshes are background commands, so the runtime's background
semaphore bounds how many run at once.
"""
from __future__ import annotations

import asyncio
import logging
import time

import numpy as np

from observer.config import Settings, get_settings
from observer.errors import LexicalQueryError, ObserverError, StorageError
from observer.models import HistoryEntry, HistoryResult, Item, ScoreRecord
from observer.obs import events
from observer.obs.metrics import STALE_DISCARDED, VIEW_REFRESHES
from observer.retrieval.fusion import cosine_matches, order_ids, snapshot_rows
from observer.store import SearchHistory, Store

from .commands import Command, Emit, call_stage
from .messages import HistoryChanged, ViewRefreshed
from .session import TokenIssuer

log = logging.getLogger(__name__)


class PersistedViews:
    def __init__(
        self,
        store: Store,
        history: SearchHistory,
        embedder=None,
        settings: Settings | None = None,
        tokens: TokenIssuer | None = None,
    ):
        self.store = store
        self.history = history
        self.embedder = embedder
        self.settings = settings or get_settings()
        self._tokens = tokens or TokenIssuer()
        self._live: dict[int, int] = {}
        self._corpus: list[Item] | None = None
        self._generation = 0
        self._corpus_lock = asyncio.Lock()
        self.corpus_loads = 0

    def invalidate(self) -> None:
        """Items changed: the next refresh reloads the shared corpus."""
        self._generation += 1
        self._corpus = None

    async def corpus(self) -> list[Item]:
        async with self._corpus_lock:
            if self._corpus is not None:
                return self._corpus
            generation = self._generation
            corpus = await asyncio.to_thread(self.store.load_corpus, self.settings.corpus_limit)
            self.corpus_loads += 1
            # a load that an invalidate overtook serves this caller only
            if generation == self._generation:
                self._corpus = corpus
            return corpus

    def refresh_commands(self) -> list[Command]:
        """One background command per pinned entry, each under a fresh token."""
        try:
            entries = self.history.pinned()
        except StorageError as e:
            log.error("Cannot list persisted views: %s", e)
            return []
        cmds = []
        for entry in entries:
            token = self._tokens.next()
            self._live[entry.id] = token
            cmds.append(self._refresh(entry, token))
        return cmds

    def _refresh(self, entry: HistoryEntry, token: int) -> Command:
        async def run(emit: Emit) -> None:
            try:
                results = await self.rank(entry, str(token))
            except ObserverError as e:
                emit(ViewRefreshed(entry.id, token, err=e))
                return
            emit(ViewRefreshed(entry.id, token, results=results))

        return Command(f"view_refresh_{entry.id}", run, background=True)

    async def rank(self, entry: HistoryEntry, session_id: str) -> list[HistoryResult]:
        s = self.settings
        records: dict[str, ScoreRecord] = {}
        try:
            hits = await asyncio.to_thread(self.store.search_lexical, entry.raw_query, s.lexical_limit)
        except LexicalQueryError as e:
            log.warning("View %s: lexical stage skipped: %s", entry.id, e)
            hits = []
        for item, score in hits:
            records.setdefault(item.id, ScoreRecord()).add_lexical(score)

        vec = entry.query_embedding
        if vec is None and self.embedder is not None:
            vec = await call_stage("embed", self.embedder.embed_query(entry.raw_query), s.embed_timeout_s)
        if vec is not None:
            corpus = await self.corpus()
            for item_id, sim in cosine_matches(
                np.asarray(vec, dtype=np.float32), corpus, limit=s.lexical_limit, include=set(records)
            ):
                records.setdefault(item_id, ScoreRecord()).add_cosine(sim)

        order = order_ids(list(records), records)
        return snapshot_rows(order, records, session_id, s.history_snapshot_size)

    def handle(self, msg: ViewRefreshed) -> list[Command]:
        if self._live.get(msg.view_id) != msg.token:
            STALE_DISCARDED.labels(kind="view_refreshed").inc()
            events.emit(events.SEARCH_STALE, level="debug", token=msg.token, view=msg.view_id)
            return []
        del self._live[msg.view_id]
        if msg.err is not None:
            VIEW_REFRESHES.labels(status="failed").inc()
            events.emit(events.VIEW_REFRESH, level="warn", token=msg.token, err=msg.err, view=msg.view_id)
            return []
        VIEW_REFRESHES.labels(status="ok").inc()
        events.emit(events.VIEW_REFRESH, token=msg.token, count=len(msg.results), view=msg.view_id)
        return [self._store_results(msg)]

    def _store_results(self, msg: ViewRefreshed) -> Command:
        async def run(emit: Emit) -> None:
            started = time.perf_counter()
            try:
                await asyncio.to_thread(self.history.replace_results, msg.view_id, msg.results)
            except StorageError as e:
                emit(HistoryChanged(msg.view_id, "refresh", err=e))
                return
            log.debug("View %s stored in %.3fs", msg.view_id, time.perf_counter() - started)
            emit(HistoryChanged(msg.view_id, "refresh"))

        return Command(f"view_store_{msg.view_id}", run, background=True)

    @property
    def in_flight(self) -> int:
        return len(self._live)
