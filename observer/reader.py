# observer/reader.py
"""
Component wiring.

`Reader` builds the store, history, cache, backends, orchestrator and
persisted views from settings and owns their lifetime. The interactive
front end drives `Reader.app`; the headless CLI feeds messages straight to
`Reader.handle`.
"""
from __future__ import annotations

import logging

from observer.backends import build_embedder, build_reranker
from observer.cache import SearchCache
from observer.config import Settings, get_settings
from observer.obs.events import RingBufferHandler
from observer.pipeline import Orchestrator, PersistedViews, Runtime, TokenIssuer
from observer.pipeline.commands import Command
from observer.pipeline.messages import HistoryChanged, ItemsChanged, ViewRefreshed
from observer.store import SearchHistory, Store
from observer.ui import App

log = logging.getLogger(__name__)


class Reader:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: Store | None = None,
        embedder=None,
        reranker=None,
        build_backends: bool = True,
        interactive: bool = False,
        ring: RingBufferHandler | None = None,
    ):
        s = self.settings = settings or get_settings()
        self.store = store or Store(s.db_path)
        self.history = SearchHistory(
            self.store, retention=s.history_retention, snapshot_size=s.history_snapshot_size
        )
        self.cache = SearchCache(
            self.history,
            hit_threshold=s.cache_hit_threshold,
            suggest_threshold=s.cache_suggest_threshold,
            window=s.cache_window,
            suggest_limit=s.cache_suggest_limit,
        )
        if build_backends:
            embedder = embedder if embedder is not None else build_embedder(s)
            reranker = reranker if reranker is not None else build_reranker(s)
        self.embedder = embedder
        self.reranker = reranker

        # one issuer so session and view tokens never collide
        tokens = TokenIssuer()
        self.orchestrator = Orchestrator(
            self.store,
            self.history,
            self.cache,
            embedder=embedder,
            reranker=reranker,
            settings=s,
            tokens=tokens,
        )
        self.views = PersistedViews(self.store, self.history, embedder, settings=s, tokens=tokens)
        self.app = App(self.store, self.history, self.orchestrator, self.views, settings=s, ring=ring)
        handler = self.app.update if interactive else self.handle
        self.runtime = Runtime(handler, background_limit=s.view_refresh_concurrency)
        self.store.add_listener(lambda: self.runtime.post_threadsafe(ItemsChanged()))

    def handle(self, msg) -> list[Command]:
        if isinstance(msg, ViewRefreshed):
            return self.views.handle(msg)
        if isinstance(msg, ItemsChanged):
            self.views.invalidate()
            return []
        if isinstance(msg, HistoryChanged):
            if msg.err is not None:
                log.error("History %s of %s failed: %s", msg.action, msg.entry_id, msg.err)
            return []
        return self.orchestrator.handle(msg)

    async def run(self, cmds: list[Command]) -> None:
        """Dispatch `cmds` and process messages until the pipeline settles."""
        self.runtime.dispatch(cmds)
        await self.runtime.run_until_idle()

    async def aclose(self) -> None:
        await self.runtime.shutdown()
        for backend in (self.embedder, self.reranker):
            if backend is not None:
                await backend.aclose()
        self.store.close()
