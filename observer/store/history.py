# observer/store/history.py
from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable

import numpy as np

from observer.embed.codec import from_blob, to_blob
from observer.errors import StorageError
from observer.models import HistoryEntry, HistoryResult, Provenance

from .items import Store

log = logging.getLogger(__name__)

_ENTRY_COLUMNS = (
    "id, normalized_query, raw_query, backend, duration_ms, result_count, pinned, "
    "use_count, last_used_at, created_at, query_embedding"
)

# Unique-constraint upsert: two identical submissions can never produce two rows.
_UPSERT_SQL = """
INSERT INTO search_history(normalized_query, raw_query, backend, duration_ms, result_count,
                           pinned, use_count, last_used_at, created_at, query_embedding)
VALUES(?,?,?,?,?,0,1,?,?,?)
ON CONFLICT(normalized_query) DO UPDATE SET
    raw_query = excluded.raw_query,
    backend = excluded.backend,
    duration_ms = excluded.duration_ms,
    result_count = excluded.result_count,
    use_count = search_history.use_count + 1,
    last_used_at = excluded.last_used_at,
    query_embedding = COALESCE(excluded.query_embedding, search_history.query_embedding)
"""

_EVICT_SQL = """
DELETE FROM search_history
WHERE pinned = 0 AND id NOT IN (
    SELECT id FROM search_history WHERE pinned = 0
    ORDER BY last_used_at DESC, id DESC LIMIT ?
)
"""


def _row_to_entry(r: sqlite3.Row) -> HistoryEntry:
    return HistoryEntry(
        id=int(r["id"]),
        normalized_query=r["normalized_query"],
        raw_query=r["raw_query"],
        backend=r["backend"] or "",
        duration_ms=int(r["duration_ms"] or 0),
        result_count=int(r["result_count"] or 0),
        pinned=bool(r["pinned"]),
        use_count=int(r["use_count"] or 0),
        last_used=float(r["last_used_at"]),
        created=float(r["created_at"]),
        query_embedding=from_blob(r["query_embedding"]),
    )


def _row_to_result(r: sqlite3.Row) -> HistoryResult:
    return HistoryResult(
        rank=int(r["rank"]),
        item_id=r["item_id"],
        session_id=r["session_id"] or "",
        lexical=r["lexical_score"],
        cosine=r["cosine_score"],
        rerank=r["rerank_score"],
        provenance=Provenance(int(r["provenance"] or 0)),
    )


class SearchHistory:
    """
    Past searches keyed by normalized query text, each with a ranked snapshot
    of its results. Unpinned entries beyond `retention` are evicted least
    recently used first; pinned entries are never evicted.
    """

    def __init__(
        self,
        store: Store,
        retention: int = 200,
        snapshot_size: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.retention = int(retention)
        self.snapshot_size = int(snapshot_size)
        self._clock = clock

    # ----- writes -----
    def record(
        self,
        normalized: str,
        raw: str,
        *,
        backend: str = "",
        duration_ms: int = 0,
        results: list[HistoryResult] | None = None,
        query_embedding: np.ndarray | None = None,
    ) -> int:
        """
        Upsert the entry for `normalized` and replace its snapshot, evicting
        over-retention entries, all in one transaction. Returns the entry id.
        """
        results = list(results or [])[: self.snapshot_size]
        now = self._clock()
        blob = to_blob(query_embedding) if query_embedding is not None else None
        try:
            with self.store.writing() as conn:
                conn.execute(
                    _UPSERT_SQL,
                    (normalized, raw, backend, int(duration_ms), len(results), now, now, blob),
                )
                entry_id = int(
                    conn.execute(
                        "SELECT id FROM search_history WHERE normalized_query = ?", (normalized,)
                    ).fetchone()[0]
                )
                self._write_snapshot(conn, entry_id, results)
                evicted = conn.execute(_EVICT_SQL, (self.retention,)).rowcount
        except sqlite3.Error as e:
            raise StorageError(f"record history for {normalized!r}", cause=e) from e
        if evicted:
            log.info("History evicted %s unpinned entries (retention=%s)", evicted, self.retention)
        return entry_id

    def replace_results(self, entry_id: int, results: list[HistoryResult]) -> None:
        """Swap an entry's snapshot without touching its use counters."""
        results = list(results)[: self.snapshot_size]
        try:
            with self.store.writing() as conn:
                conn.execute(
                    "UPDATE search_history SET result_count = ? WHERE id = ?",
                    (len(results), entry_id),
                )
                self._write_snapshot(conn, entry_id, results)
        except sqlite3.Error as e:
            raise StorageError(f"replace results of history entry {entry_id}", cause=e) from e

    @staticmethod
    def _write_snapshot(conn: sqlite3.Connection, entry_id: int, results: list[HistoryResult]):
        conn.execute("DELETE FROM search_results WHERE history_id = ?", (entry_id,))
        conn.executemany(
            """INSERT INTO search_results(history_id, session_id, rank, item_id,
                   lexical_score, cosine_score, rerank_score, provenance)
               VALUES(?,?,?,?,?,?,?,?)""",
            [
                (
                    entry_id,
                    r.session_id,
                    rank,
                    r.item_id,
                    r.lexical,
                    r.cosine,
                    r.rerank,
                    int(r.provenance),
                )
                for rank, r in enumerate(results, start=1)
            ],
        )

    def pin(self, entry_id: int, pinned: bool = True) -> bool:
        try:
            with self.store.writing() as conn:
                n = conn.execute(
                    "UPDATE search_history SET pinned = ? WHERE id = ?", (int(pinned), entry_id)
                ).rowcount
        except sqlite3.Error as e:
            raise StorageError(f"pin history entry {entry_id}", cause=e) from e
        return n > 0

    def delete(self, entry_id: int) -> bool:
        try:
            with self.store.writing() as conn:
                n = conn.execute("DELETE FROM search_history WHERE id = ?", (entry_id,)).rowcount
        except sqlite3.Error as e:
            raise StorageError(f"delete history entry {entry_id}", cause=e) from e
        return n > 0

    # ----- reads -----
    def get(self, normalized: str) -> HistoryEntry | None:
        return self._one("normalized_query = ?", normalized)

    def get_by_id(self, entry_id: int) -> HistoryEntry | None:
        return self._one("id = ?", entry_id)

    def _one(self, where: str, arg) -> HistoryEntry | None:
        try:
            with self.store.reading() as conn:
                row = conn.execute(
                    f"SELECT {_ENTRY_COLUMNS} FROM search_history WHERE {where}", (arg,)
                ).fetchone()
                if row is None:
                    return None
                entry = _row_to_entry(row)
                entry.results = [
                    _row_to_result(r)
                    for r in conn.execute(
                        "SELECT * FROM search_results WHERE history_id = ? ORDER BY rank",
                        (entry.id,),
                    ).fetchall()
                ]
        except sqlite3.Error as e:
            raise StorageError("read history entry", cause=e) from e
        return entry

    def recent(self, limit: int = 50) -> list[HistoryEntry]:
        """Pinned entries first, then most recently used."""
        return self._many(
            f"SELECT {_ENTRY_COLUMNS} FROM search_history "
            "ORDER BY pinned DESC, last_used_at DESC, id DESC LIMIT ?",
            (int(limit),),
        )

    def pinned(self) -> list[HistoryEntry]:
        return self._many(
            f"SELECT {_ENTRY_COLUMNS} FROM search_history WHERE pinned = 1 "
            "ORDER BY last_used_at DESC, id DESC",
            (),
        )

    def recent_embeddings(self, window: int = 100) -> list[HistoryEntry]:
        """The `window` most recently used entries that stored a query embedding."""
        return self._many(
            f"SELECT {_ENTRY_COLUMNS} FROM search_history WHERE query_embedding IS NOT NULL "
            "ORDER BY last_used_at DESC, id DESC LIMIT ?",
            (int(window),),
        )

    def _many(self, sql: str, params: tuple) -> list[HistoryEntry]:
        try:
            with self.store.reading() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError("list history", cause=e) from e
        return [_row_to_entry(r) for r in rows]

    def results(self, entry_id: int) -> list[HistoryResult]:
        try:
            with self.store.reading() as conn:
                rows = conn.execute(
                    "SELECT * FROM search_results WHERE history_id = ? ORDER BY rank", (entry_id,)
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"read results of history entry {entry_id}", cause=e) from e
        return [_row_to_result(r) for r in rows]
