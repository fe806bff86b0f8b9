# observer/pipeline/orchestrator.py
"""
Search pipeline orchestration.

The orchestrator owns the current :class:`SearchSession` and is only ever
touched from the message loop: `submit`, `pivot`, `cancel` and
`apply_rerank` are called by the UI; `handle` receives stage results. None of
them await. Work that would block is returned as commands for the runtime.

Stage order for a committed query:

1. cache probe by normalized text (synchronous; a hit shows a placeholder)
2. lexical search (synchronous; shown immediately)
3. query embedding and corpus load (concurrent commands)
4. cosine ranking once both have arrived, plus a similarity cache probe
5. reranking, once per session: automatic for fast batch backends,
   user-applied for slow sequential ones
6. history upsert with the ranked snapshot

A result whose token is not the live token is dropped without touching the
session.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Iterable

import numpy as np

from observer.cache.probe import SearchCache
from observer.config import Settings, get_settings
from observer.errors import FatalSessionError, LexicalQueryError, StorageError
from observer.models import HistoryEntry, Item, ScoreRecord, normalize_query
from observer.obs import events
from observer.obs.metrics import (
    CACHE_OUTCOMES,
    RERANK_CANDIDATES,
    STAGE_FAILURES,
    STAGE_LATENCY,
    STALE_DISCARDED,
)
from observer.obs.tracing import tracer
from observer.retrieval.fusion import cosine_matches, order_ids, snapshot_rows
from observer.retrieval.interfaces import BatchReranker
from observer.store import SearchHistory, Store

from . import commands
from .commands import Command
from .messages import CorpusLoaded, EntryReranked, HistorySaved, QueryEmbedded, RerankComplete
from .session import STAGES, CancelScope, SearchSession, TokenIssuer

log = logging.getLogger(__name__)

CANCELLED_STATUS = "cancelled; press esc again to exit"


class Orchestrator:
    def __init__(
        self,
        store: Store,
        history: SearchHistory,
        cache: SearchCache,
        *,
        embedder=None,
        reranker=None,
        settings: Settings | None = None,
        tokens: TokenIssuer | None = None,
    ):
        self.store = store
        self.history = history
        self.cache = cache
        self.embedder = embedder
        self.reranker = reranker
        self.settings = settings or get_settings()
        self._tokens = tokens or TokenIssuer()

        self.session: SearchSession | None = None
        self._live_token: int | None = None
        self._snapshot: list[Item] | None = None
        self.snapshots_taken = 0
        self.status = ""

    # ------------------------------------------------------------------
    # pre-search snapshot
    # ------------------------------------------------------------------
    @property
    def has_snapshot(self) -> bool:
        return self._snapshot is not None

    def ensure_snapshot(self, browse_items: Iterable[Item]) -> bool:
        """
        Save the pre-search list once. A snapshot left by an earlier search or
        pivot is kept, so leaving results always restores the original view.
        """
        if self._snapshot is not None:
            return False
        self._snapshot = list(browse_items)
        self.snapshots_taken += 1
        return True

    def replace_snapshot(self, items: Iterable[Item]) -> None:
        """Items reloaded while results are showing land in the saved list."""
        if self._snapshot is not None:
            self._snapshot = list(items)

    # ------------------------------------------------------------------
    # session lifecycle
    # ------------------------------------------------------------------
    @property
    def live_token(self) -> int | None:
        return self._live_token

    def submit(self, text: str, browse_items: Iterable[Item] = ()) -> list[Command]:
        """
        Start a search for `text`, superseding any current session.

        Raises:
            FatalSessionError: The store could not run the synchronous stages.
        """
        normalized = normalize_query(text)
        if not normalized:
            return []
        self.ensure_snapshot(browse_items)
        self._supersede()

        query = " ".join(text.split())
        sess = self._open(SearchSession(token=self._tokens.next(), query=query, normalized=normalized, rerank_text=query))
        events.emit(events.SEARCH_START, token=sess.token, query=query)
        self.status = f"searching for '{query}'"

        with tracer.start_as_current_span("search.sync") as span:
            span.set_attribute("search.token", sess.token)
            self._probe_exact(sess)
            self._run_lexical(sess)

        return self._dispatch_semantic(sess) + self._advance(sess)

    def embedding_for(self, item: Item) -> np.ndarray | None:
        if item.embedding is not None:
            return item.embedding
        return self.store.get_embeddings([item.id]).get(item.id)

    def pivot(self, seed: Item, browse_items: Iterable[Item] = ()) -> list[Command]:
        """
        Search for items like `seed` using its stored embedding. The seed's
        text drives reranking and the seed never appears in its own results.

        Raises:
            ValueError: The seed has no stored embedding.
            FatalSessionError: The store could not be read.
        """
        try:
            vec = self.embedding_for(seed)
        except StorageError as e:
            raise FatalSessionError("cannot read the item's embedding", cause=e) from e
        if vec is None:
            raise ValueError(f"item {seed.id} has no embedding yet")

        self.ensure_snapshot(browse_items)
        self._supersede()

        sess = self._open(
            SearchSession(
                token=self._tokens.next(),
                query="",
                normalized="",
                seed_id=seed.id,
                rerank_text=seed.text(),
            )
        )
        sess.query_vec = np.asarray(vec, dtype=np.float32)
        sess.ready.add("embed")
        events.emit(events.SEARCH_START, token=sess.token, seed=seed.id)
        self.status = f"finding items like '{seed.title}'"
        return self._dispatch_semantic(sess) + self._advance(sess)

    def cancel(self) -> bool:
        """
        Stop in-flight stages. The visible results stay; any later result for
        this session is discarded. Returns whether anything was in flight.
        """
        sess = self.session
        if sess is None or self._live_token is None:
            return False
        had_work = sess.in_flight
        if "rerank" in sess.pending:
            # the scores gathered so far are dropped; the rerank can be applied again
            sess.rerank_available = True
        sess.scope.cancel()
        sess.pending.clear()
        sess.rerank.reset()
        self._live_token = None
        if had_work:
            events.emit(events.SEARCH_CANCEL, token=sess.token, query=sess.query)
            self.status = CANCELLED_STATUS
        return had_work

    def close_session(self) -> list[Item]:
        """Leave results: drop the session and hand back the saved pre-search list."""
        self._supersede()
        self.session = None
        saved = self._snapshot or []
        self._snapshot = None
        self.status = ""
        return saved

    def apply_rerank(self) -> list[Command]:
        """
        Run the rerank the user asked for. After a cancel the session is
        re-armed with a fresh token, so re-applying starts from the intact
        similarity order.
        """
        sess = self.session
        if sess is None or self.reranker is None or not sess.order:
            return []
        if "rerank" in sess.pending or not sess.rerank_available:
            return []
        if self._live_token is None:
            sess.token = self._tokens.next()
            sess.scope = CancelScope()
            self._live_token = sess.token
        sess.rerank_triggered = True
        return self._start_rerank(sess)

    def _open(self, sess: SearchSession) -> SearchSession:
        self.session = sess
        self._live_token = sess.token
        return sess

    def _supersede(self) -> None:
        sess = self.session
        if sess is not None:
            if self._live_token is not None and sess.in_flight:
                events.emit(events.SEARCH_CANCEL, token=sess.token, query=sess.query, reason="superseded")
            sess.scope.cancel()
            sess.pending.clear()
        self._live_token = None

    def _teardown(self) -> None:
        self._supersede()
        self.session = None

    # ------------------------------------------------------------------
    # synchronous stages
    # ------------------------------------------------------------------
    def _probe_exact(self, sess: SearchSession) -> None:
        started = time.perf_counter()
        try:
            entry = self.cache.probe_exact(sess.normalized)
        except StorageError as e:
            log.warning("Cache lookup failed for %r: %s", sess.normalized, e)
            events.emit(events.STORE_ERROR, level="warn", token=sess.token, err=e, op="cache")
            return
        finally:
            STAGE_LATENCY.labels(stage="cache").observe(time.perf_counter() - started)
        if entry is None:
            return
        CACHE_OUTCOMES.labels(outcome="exact").inc()
        sess.cache_outcome = "exact"
        self._set_placeholder(sess, entry, "exact")

    def _set_placeholder(self, sess: SearchSession, entry: HistoryEntry, source: str) -> None:
        if sess.order or sess.placeholder:
            return
        ids = [r.item_id for r in entry.results if r.item_id != sess.seed_id]
        if not ids:
            return
        try:
            items = self.store.get_items_by_ids(ids)
        except StorageError as e:
            log.warning("Placeholder load failed: %s", e)
            return
        for it in items:
            sess.items.setdefault(it.id, it)
        sess.placeholder = [it.id for it in items]
        sess.placeholder_source = source
        events.emit(
            events.SEARCH_CACHE,
            token=sess.token,
            query=sess.query,
            count=len(sess.placeholder),
            source=source,
            entry=entry.raw_query,
        )

    def _run_lexical(self, sess: SearchSession) -> None:
        started = time.perf_counter()
        try:
            hits = self.store.search_lexical(sess.query, self.settings.lexical_limit)
        except LexicalQueryError as e:
            sess.failed["lexical"] = e.message
            STAGE_FAILURES.labels(stage="lexical").inc()
            events.emit(events.SEARCH_LEXICAL, level="warn", token=sess.token, query=sess.query, err=e)
            return
        except StorageError as e:
            events.emit(events.STORE_ERROR, level="error", token=sess.token, query=sess.query, err=e)
            self._teardown()
            raise FatalSessionError("search could not start", cause=e) from e
        finally:
            STAGE_LATENCY.labels(stage="lexical").observe(time.perf_counter() - started)

        for item, score in hits:
            sess.items[item.id] = item
            sess.record(item.id).add_lexical(score)
        sess.ready.add("lexical")
        self._publish(sess)
        events.emit(
            events.SEARCH_LEXICAL,
            token=sess.token,
            query=sess.query,
            count=len(hits),
            duration_s=time.perf_counter() - started,
        )

    def _dispatch_semantic(self, sess: SearchSession) -> list[Command]:
        if self.embedder is None and sess.query_vec is None:
            return []
        s = self.settings
        cmds: list[Command] = []
        if sess.query_vec is None:
            sess.pending.add("embed")
            cmds.append(commands.embed_query(sess.token, self.embedder, sess.query, s.embed_timeout_s, sess.scope))
        sess.pending.add("corpus")
        cmds.append(commands.load_corpus(sess.token, self.store, s.corpus_limit, s.corpus_timeout_s, sess.scope))
        return cmds

    # ------------------------------------------------------------------
    # stage results
    # ------------------------------------------------------------------
    def handle(self, msg) -> list[Command]:
        if isinstance(msg, QueryEmbedded):
            return self._on_query_embedded(msg)
        if isinstance(msg, CorpusLoaded):
            return self._on_corpus_loaded(msg)
        if isinstance(msg, EntryReranked):
            return self._on_entry_reranked(msg)
        if isinstance(msg, RerankComplete):
            return self._on_rerank_complete(msg)
        if isinstance(msg, HistorySaved):
            return self._on_history_saved(msg)
        return []

    def _current(self, token: int, kind: str) -> SearchSession | None:
        sess = self.session
        if sess is None or self._live_token is None or token != self._live_token:
            STALE_DISCARDED.labels(kind=kind).inc()
            events.emit(events.SEARCH_STALE, level="debug", token=token, live=self._live_token, msg=kind)
            return None
        return sess

    def _on_query_embedded(self, msg: QueryEmbedded) -> list[Command]:
        sess = self._current(msg.token, "query_embedded")
        if sess is None:
            return []
        sess.pending.discard("embed")
        if msg.err is not None or msg.vector is None:
            self._stage_failed(sess, "embed", events.SEARCH_QUERY_EMBED, msg.err)
            self.status = "semantic search unavailable; showing keyword matches"
        else:
            sess.query_vec = np.asarray(msg.vector, dtype=np.float32)
            sess.ready.add("embed")
            events.emit(
                events.SEARCH_QUERY_EMBED,
                token=sess.token,
                query=sess.query,
                duration_s=msg.duration_s,
                dims=int(sess.query_vec.shape[0]),
            )
            self._probe_similar(sess)
            self._apply_cosine(sess)
        return self._advance(sess)

    def _on_corpus_loaded(self, msg: CorpusLoaded) -> list[Command]:
        sess = self._current(msg.token, "corpus_loaded")
        if sess is None:
            return []
        sess.pending.discard("corpus")
        if msg.err is not None:
            self._stage_failed(sess, "corpus", events.SEARCH_POOL, msg.err)
            self.status = "could not load items for ranking; showing keyword matches"
        else:
            sess.corpus = list(msg.items)
            sess.ready.add("corpus")
            events.emit(
                events.SEARCH_POOL, token=sess.token, count=len(sess.corpus), duration_s=msg.duration_s
            )
            self._apply_cosine(sess)
        return self._advance(sess)

    def _on_entry_reranked(self, msg: EntryReranked) -> list[Command]:
        sess = self._current(msg.token, "entry_reranked")
        if sess is None or "rerank" not in sess.pending:
            return []
        rr = sess.rerank
        if msg.item_id not in rr.candidates or msg.item_id in rr.buffer or msg.item_id in rr.failed:
            return []
        if msg.err is not None:
            rr.failed.add(msg.item_id)
            log.warning("Rerank of %s failed: %s", msg.item_id, msg.err)
        else:
            rr.buffer[msg.item_id] = msg.score
        self.status = f"reranking {rr.done}/{rr.total}"
        if rr.done < rr.total:
            return []
        return self._complete_rerank(sess, dict(rr.buffer))

    def _on_rerank_complete(self, msg: RerankComplete) -> list[Command]:
        sess = self._current(msg.token, "rerank_complete")
        if sess is None or "rerank" not in sess.pending:
            return []
        if msg.err is not None:
            sess.pending.discard("rerank")
            sess.rerank.reset()
            self._stage_failed(sess, "rerank", events.SEARCH_RERANK, msg.err)
            self.status = "rerank failed; similarity order stands"
            return self._advance(sess)
        return self._complete_rerank(sess, msg.scores)

    def _on_history_saved(self, msg: HistorySaved) -> list[Command]:
        # history writes are not cancelled, so match the session rather than the live token
        if msg.err is not None:
            log.error("History write failed: %s", msg.err)
            events.emit(events.STORE_ERROR, level="error", token=msg.token, err=msg.err, op="history")
            return []
        sess = self.session
        if sess is None or msg.entry_id is None or msg.token not in (sess.token, sess.persist_token):
            return []
        sess.history_id = msg.entry_id
        if sess.snapshot_stale:
            sess.snapshot_stale = False
            return self._persist(sess)
        return []

    def _stage_failed(self, sess: SearchSession, stage: str, kind: str, err) -> None:
        sess.failed[stage] = str(err) if err is not None else "no result"
        STAGE_FAILURES.labels(stage=stage).inc()
        events.emit(kind, level="warn", token=sess.token, query=sess.query, err=err or "no result")

    # ------------------------------------------------------------------
    # merging
    # ------------------------------------------------------------------
    def _probe_similar(self, sess: SearchSession) -> None:
        if sess.is_pivot:
            return
        started = time.perf_counter()
        try:
            probe = self.cache.classify(sess.query_vec, exclude=sess.normalized)
        except StorageError as e:
            log.warning("Similarity cache probe failed: %s", e)
            events.emit(events.STORE_ERROR, level="warn", token=sess.token, err=e, op="cache")
            return
        finally:
            STAGE_LATENCY.labels(stage="cache").observe(time.perf_counter() - started)
        if sess.cache_outcome is None:
            sess.cache_outcome = probe.outcome
            CACHE_OUTCOMES.labels(outcome=probe.outcome).inc()
        sess.suggestions = probe.suggestions
        if probe.hit is not None:
            self._set_placeholder(sess, probe.hit.entry, "similar")

    def _apply_cosine(self, sess: SearchSession) -> None:
        if sess.query_vec is None or sess.corpus is None:
            return
        started = time.perf_counter()
        exclude = {sess.seed_id} if sess.seed_id else set()
        matches = cosine_matches(
            sess.query_vec,
            sess.corpus,
            limit=self.settings.lexical_limit,
            include=set(sess.order),
            exclude=exclude,
        )
        by_id = {it.id: it for it in sess.corpus}
        for item_id, sim in matches:
            sess.items[item_id] = by_id[item_id]
            sess.record(item_id).add_cosine(sim)
        self._publish(sess)
        STAGE_LATENCY.labels(stage="cosine").observe(time.perf_counter() - started)
        events.emit(
            events.SEARCH_COSINE,
            token=sess.token,
            query=sess.query,
            count=len(matches),
            duration_s=time.perf_counter() - started,
        )

    def _publish(self, sess: SearchSession) -> None:
        """Re-sort the visible list by best-available score; scored results replace any placeholder."""
        seen = set(sess.order)
        ids = list(sess.order) + [i for i in sess.records if i not in seen]
        sess.order = order_ids(ids, sess.records)
        if sess.order and sess.placeholder:
            sess.placeholder = []
            sess.placeholder_source = None

    # ------------------------------------------------------------------
    # reranking and completion
    # ------------------------------------------------------------------
    def _advance(self, sess: SearchSession) -> list[Command]:
        cmds = self._maybe_rerank(sess)
        if not sess.pending:
            cmds += self._finish(sess)
        return cmds

    def _maybe_rerank(self, sess: SearchSession) -> list[Command]:
        if sess.rerank_triggered or not {"embed", "corpus"} <= sess.ready:
            return []
        sess.rerank_triggered = True
        if self.reranker is None or not sess.order:
            return []
        if self.reranker.auto_apply:
            return self._start_rerank(sess)
        # slow backends wait for the user so the list never reorders mid-read
        sess.rerank_available = True
        return []

    def _start_rerank(self, sess: SearchSession) -> list[Command]:
        s = self.settings
        n = min(s.rerank_top_n, len(sess.order))
        candidates = [sess.items[i] for i in sess.order[:n]]
        rr = sess.rerank
        rr.reset()
        rr.candidates = [it.id for it in candidates]
        rr.started = time.perf_counter()
        sess.pending.add("rerank")
        sess.rerank_available = False
        sess.failed.pop("rerank", None)

        RERANK_CANDIDATES.observe(n)
        batch = isinstance(self.reranker, BatchReranker)
        events.emit(
            events.SEARCH_RERANK,
            token=sess.token,
            query=sess.rerank_text if not sess.is_pivot else None,
            count=n,
            backend=self.reranker.name,
            batch=batch,
        )
        self.status = f"reranking 0/{n}"
        if batch:
            return [
                commands.batch_rerank(
                    sess.token, self.reranker, sess.rerank_text, candidates, s.rerank_timeout_s, sess.scope
                )
            ]
        return [
            commands.sequential_rerank(
                sess.token, self.reranker, sess.rerank_text, candidates, s.rerank_entry_timeout_s, sess.scope
            )
        ]

    def _complete_rerank(self, sess: SearchSession, scores: dict[str, float]) -> list[Command]:
        """Shared by both rerank policies: commit scores, re-sort, then finish the session."""
        sess.pending.discard("rerank")
        duration = time.perf_counter() - sess.rerank.started
        STAGE_LATENCY.labels(stage="rerank").observe(duration)
        if not scores:
            self._stage_failed(sess, "rerank", events.SEARCH_RERANK, "no candidate could be scored")
            self.status = "rerank failed; similarity order stands"
        else:
            for item_id, score in scores.items():
                if item_id in sess.records:
                    sess.record(item_id).add_rerank(score)
            sess.ready.add("rerank")
            self._publish(sess)
        sess.rerank.reset()
        return self._advance(sess)

    def _finish(self, sess: SearchSession) -> list[Command]:
        shown = len(sess.order)
        if not sess.persisted:
            events.emit(
                events.SEARCH_COMPLETE,
                token=sess.token,
                query=sess.query,
                count=shown,
                duration_s=sess.elapsed_ms() / 1000.0,
            )
        if sess.rerank_available and "rerank" not in sess.ready:
            self.status = f"{shown} results; rerank available (R)"
        elif not sess.failed:
            self.status = f"{shown} results"
        if sess.suggestions:
            self.status += f"; similar earlier search: '{sess.suggestions[0].entry.raw_query}'"
        return self._persist(sess)

    def _backend_label(self, sess: SearchSession) -> str:
        parts = []
        if "embed" in sess.ready and self.embedder is not None:
            parts.append(self.embedder.name)
        else:
            parts.append("lexical")
        if "rerank" in sess.ready and self.reranker is not None:
            parts.append(self.reranker.name)
        return "+".join(parts)

    def _persist(self, sess: SearchSession) -> list[Command]:
        if sess.is_pivot:
            return []
        rows = snapshot_rows(sess.order, sess.records, str(sess.token), self.settings.history_snapshot_size)
        if not sess.persisted:
            sess.persisted = True
            sess.persist_token = sess.token
            return [
                commands.persist_history(
                    sess.token,
                    self.history,
                    normalized=sess.normalized,
                    raw=sess.query,
                    backend=self._backend_label(sess),
                    duration_ms=sess.elapsed_ms(),
                    results=rows,
                    query_embedding=sess.query_vec,
                )
            ]
        if sess.history_id is None:
            # the first write has not landed; refresh once it links the session
            sess.snapshot_stale = True
            return []
        return [commands.update_snapshot(sess.token, self.history, sess.history_id, rows)]

    # ------------------------------------------------------------------
    # presentation
    # ------------------------------------------------------------------
    def results(self) -> list[Item]:
        sess = self.session
        if sess is None:
            return []
        ids = sess.order or sess.placeholder
        return [sess.items[i] for i in ids if i in sess.items]

    def score(self, item_id: str) -> ScoreRecord | None:
        if self.session is None:
            return None
        return self.session.records.get(item_id)

    @property
    def in_flight(self) -> bool:
        return self.session is not None and self._live_token is not None and self.session.in_flight

    @property
    def progress(self) -> dict:
        sess = self.session
        if sess is None:
            return {}
        stages = {}
        for stage in STAGES:
            if stage in sess.pending:
                stages[stage] = "pending"
            elif stage in sess.failed:
                stages[stage] = "failed"
            elif stage in sess.ready:
                stages[stage] = "ready"
            else:
                stages[stage] = "idle"
        return {
            "stages": stages,
            "rerank_done": sess.rerank.done,
            "rerank_total": sess.rerank.total,
            "rerank_available": sess.rerank_available,
            "placeholder": sess.placeholder_source,
        }
