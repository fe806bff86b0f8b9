# observer/pipeline/commands.py
"""
Side-effecting work requested by the core.

Handlers never await. They return :class:`Command` objects; the runtime runs
each one as a task and feeds whatever it emits back in as messages. Every
backend failure is converted into a stage error carried on the message, so
nothing raised here reaches the message loop.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from opentelemetry.trace import Status, StatusCode

from observer.errors import (
    BackendTimeout,
    BackendUnavailable,
    ObserverError,
    StageError,
    StorageError,
)
from observer.models import HistoryResult, Item
from observer.obs.metrics import STAGE_LATENCY
from observer.obs.tracing import tracer
from observer.store import SearchHistory, Store

from .messages import (
    CorpusLoaded,
    EntryReranked,
    HistoryChanged,
    HistoryLoaded,
    HistorySaved,
    ItemMarked,
    ItemsLoaded,
    QueryEmbedded,
    RerankComplete,
)
from .session import CancelScope

log = logging.getLogger(__name__)

Emit = Callable[[object], None]


@dataclass
class Command:
    name: str
    run: Callable[[Emit], Awaitable[None]]
    scope: CancelScope | None = None
    # background work shares a small concurrency budget
    background: bool = False


async def call_stage(stage: str, awaitable: Awaitable, timeout: float):
    """Await a backend call under `timeout`, mapping any failure onto the stage taxonomy."""
    with tracer.start_as_current_span(f"stage.{stage}") as span:
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as e:
            span.set_status(Status(StatusCode.ERROR, "timeout"))
            raise BackendTimeout(f"{stage} exceeded {timeout:.0f}s", stage=stage, cause=e) from e
        except StageError as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
        except StorageError as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise StageError(f"{stage} storage failure", stage=stage, cause=e) from e
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise BackendUnavailable(f"{stage} failed", stage=stage, cause=e) from e
        finally:
            STAGE_LATENCY.labels(stage=stage).observe(time.perf_counter() - started)


def embed_query(token: int, embedder, text: str, timeout: float, scope: CancelScope) -> Command:
    async def run(emit: Emit) -> None:
        started = time.perf_counter()
        try:
            vec = await call_stage("embed", embedder.embed_query(text), timeout)
        except ObserverError as e:
            emit(QueryEmbedded(token, err=e, duration_s=time.perf_counter() - started))
            return
        emit(QueryEmbedded(token, vector=vec, duration_s=time.perf_counter() - started))

    return Command("embed_query", run, scope)


def load_corpus(token: int, store: Store, limit: int, timeout: float, scope: CancelScope) -> Command:
    async def run(emit: Emit) -> None:
        started = time.perf_counter()
        try:
            items = await call_stage("corpus", asyncio.to_thread(store.load_corpus, limit), timeout)
        except ObserverError as e:
            emit(CorpusLoaded(token, err=e, duration_s=time.perf_counter() - started))
            return
        emit(CorpusLoaded(token, items=items, duration_s=time.perf_counter() - started))

    return Command("load_corpus", run, scope)


def batch_rerank(
    token: int, reranker, query: str, candidates: list[Item], timeout: float, scope: CancelScope
) -> Command:
    async def run(emit: Emit) -> None:
        started = time.perf_counter()
        texts = [it.text() for it in candidates]
        try:
            scores = await call_stage("rerank", reranker.rerank(query, texts), timeout)
        except ObserverError as e:
            emit(RerankComplete(token, err=e, duration_s=time.perf_counter() - started))
            return
        if len(scores) != len(candidates):
            err = BackendUnavailable(
                f"reranker returned {len(scores)} scores for {len(candidates)} candidates",
                stage="rerank",
            )
            emit(RerankComplete(token, err=err, duration_s=time.perf_counter() - started))
            return
        emit(
            RerankComplete(
                token,
                scores={it.id: float(s) for it, s in zip(candidates, scores, strict=True)},
                duration_s=time.perf_counter() - started,
            )
        )

    return Command("batch_rerank", run, scope)


def sequential_rerank(
    token: int, reranker, query: str, candidates: list[Item], entry_timeout: float, scope: CancelScope
) -> Command:
    """One request per candidate, each reported as it lands so progress is visible."""

    async def run(emit: Emit) -> None:
        for it in candidates:
            try:
                score = await call_stage("rerank", reranker.score_one(query, it.text()), entry_timeout)
            except ObserverError as e:
                emit(EntryReranked(token, it.id, err=e))
                continue
            emit(EntryReranked(token, it.id, score=float(score)))

    return Command("sequential_rerank", run, scope)


def persist_history(
    token: int,
    history: SearchHistory,
    *,
    normalized: str,
    raw: str,
    backend: str,
    duration_ms: int,
    results: list[HistoryResult],
    query_embedding,
) -> Command:
    async def run(emit: Emit) -> None:
        started = time.perf_counter()
        try:
            entry_id = await asyncio.to_thread(
                history.record,
                normalized,
                raw,
                backend=backend,
                duration_ms=duration_ms,
                results=results,
                query_embedding=query_embedding,
            )
        except StorageError as e:
            emit(HistorySaved(token, err=e))
            return
        finally:
            STAGE_LATENCY.labels(stage="persist").observe(time.perf_counter() - started)
        emit(HistorySaved(token, entry_id=entry_id))

    return Command("persist_history", run, background=True)


def update_snapshot(token: int, history: SearchHistory, entry_id: int, results: list[HistoryResult]) -> Command:
    """Refresh the stored snapshot of an already-recorded search; counters stay put."""

    async def run(emit: Emit) -> None:
        try:
            await asyncio.to_thread(history.replace_results, entry_id, results)
        except StorageError as e:
            emit(HistorySaved(token, err=e))
            return
        emit(HistorySaved(token, entry_id=entry_id))

    return Command("update_snapshot", run, background=True)


def load_items(store: Store, limit: int, include_read: bool = True) -> Command:
    async def run(emit: Emit) -> None:
        try:
            items = await asyncio.to_thread(store.get_items, limit, include_read)
        except StorageError as e:
            emit(ItemsLoaded(err=e))
            return
        emit(ItemsLoaded(items=items))

    return Command("load_items", run)


def mark_read(store: Store, item_id: str) -> Command:
    async def run(emit: Emit) -> None:
        try:
            await asyncio.to_thread(store.mark_read, item_id, True)
        except StorageError as e:
            emit(ItemMarked(item_id, err=e))
            return
        emit(ItemMarked(item_id))

    return Command("mark_read", run, background=True)


def load_history(history: SearchHistory, limit: int) -> Command:
    async def run(emit: Emit) -> None:
        try:
            entries = await asyncio.to_thread(history.recent, limit)
        except StorageError as e:
            emit(HistoryLoaded(err=e))
            return
        emit(HistoryLoaded(entries=entries))

    return Command("load_history", run)


def change_history(history: SearchHistory, entry_id: int, action: str) -> Command:
    """action: pin | unpin | delete"""

    def apply() -> bool:
        if action == "delete":
            return history.delete(entry_id)
        return history.pin(entry_id, action == "pin")

    async def run(emit: Emit) -> None:
        try:
            await asyncio.to_thread(apply)
        except StorageError as e:
            emit(HistoryChanged(entry_id, action, err=e))
            return
        emit(HistoryChanged(entry_id, action))

    return Command(f"history_{action}", run, background=True)
