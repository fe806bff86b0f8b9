# observer/store/items.py
from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

import numpy as np

from observer.embed.codec import from_blob, to_blob
from observer.errors import LexicalQueryError, StorageError
from observer.models import Item

from .locks import RWLock
from .schema import connect, migrate, rebuild_lexical_index

log = logging.getLogger(__name__)

_ITEM_COLUMNS = (
    "i.id, i.source_type, i.source_name, i.title, i.summary, i.url, i.author, "
    "i.published_at, i.fetched_at, i.read, i.saved"
)

# bm25() is lower-is-better; weights are title, summary, source_name, author
_LEXICAL_SQL = f"""
SELECT {_ITEM_COLUMNS}, -bm25(items_fts, 10.0, 5.0, 1.0, 3.0) AS score
FROM items_fts
JOIN items i ON i.rowid = items_fts.rowid
WHERE items_fts MATCH ?
ORDER BY bm25(items_fts, 10.0, 5.0, 1.0, 3.0)
LIMIT ?
"""


def _ts(dt: datetime) -> float:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _dt(ts: float | None) -> datetime:
    return datetime.fromtimestamp(float(ts or 0.0), tz=timezone.utc)


def _row_to_item(r: sqlite3.Row, with_embedding: bool = False) -> Item:
    item = Item(
        id=r["id"],
        source_type=r["source_type"],
        source_name=r["source_name"],
        title=r["title"],
        summary=r["summary"] or "",
        url=r["url"],
        author=r["author"] or "",
        published=_dt(r["published_at"]),
        fetched=_dt(r["fetched_at"]),
        read=bool(r["read"]),
        saved=bool(r["saved"]),
    )
    if with_embedding:
        item.embedding = from_blob(r["embedding"])
    return item


def quote_literal(query: str) -> str:
    """Wrap a query as a single FTS5 phrase so operators and punctuation match literally."""
    return '"' + query.replace('"', '""') + '"'


class Store:
    """
    SQLite-backed item store: items, embeddings, lexical index and (through
    SearchHistory) past searches.

    One connection is shared by every caller. Reads run concurrently; a write
    excludes all other access. Nothing here awaits, so no lock is ever held
    across a network call.
    """

    def __init__(self, db_path: str = "observer.db"):
        self.db_path = db_path
        self._lock = RWLock()
        self._listeners: list[Callable[[], None]] = []
        self._conn: sqlite3.Connection | None = connect(db_path)
        migrate(self._conn)
        try:
            rebuild_lexical_index(self._conn)
        except sqlite3.Error as e:
            raise StorageError("rebuild lexical index", cause=e) from e
        log.info("Store ready (db=%s)", db_path)

    # ----- access -----
    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock.read():
            yield self._require_conn()

    @contextmanager
    def writing(self) -> Iterator[sqlite3.Connection]:
        """Exclusive access inside one transaction; rolled back if the block raises."""
        with self._lock.write():
            conn = self._require_conn()
            with conn:
                yield conn

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("store is closed")
        return self._conn

    # ----- items changed notification -----
    def add_listener(self, fn: Callable[[], None]) -> None:
        self._listeners.append(fn)

    def notify_items_changed(self) -> None:
        for fn in list(self._listeners):
            fn()

    # ----- items -----
    def save_items(self, items: Iterable[Item]) -> int:
        """Insert new items, ignoring ones whose id or URL is already stored. Returns the new count."""
        rows = [
            (
                it.id,
                it.source_type,
                it.source_name,
                it.title,
                it.summary,
                it.url,
                it.author,
                _ts(it.published),
                _ts(it.fetched),
                int(it.read),
                int(it.saved),
                to_blob(it.embedding) if it.embedding is not None else None,
            )
            for it in items
        ]
        if not rows:
            return 0
        try:
            with self.writing() as conn:
                # rowcount sums direct inserts only; trigger writes are not counted
                added = conn.executemany(
                    """INSERT OR IGNORE INTO items(id, source_type, source_name, title, summary,
                           url, author, published_at, fetched_at, read, saved, embedding)
                       VALUES(?,?,?,?,?,?,?,?,?,?,?,?)""",
                    rows,
                ).rowcount
        except sqlite3.Error as e:
            raise StorageError("save items", cause=e) from e
        log.info("Saved %s new items (%s offered)", added, len(rows))
        if added:
            self.notify_items_changed()
        return added

    def get_items(self, limit: int = 500, include_read: bool = True) -> list[Item]:
        where = "" if include_read else "WHERE i.read = 0"
        sql = f"SELECT {_ITEM_COLUMNS} FROM items i {where} ORDER BY i.published_at DESC LIMIT ?"
        try:
            with self.reading() as conn:
                rows = conn.execute(sql, (int(limit),)).fetchall()
        except sqlite3.Error as e:
            raise StorageError("get items", cause=e) from e
        return [_row_to_item(r) for r in rows]

    def get_item(self, item_id: str) -> Item | None:
        items = self.get_items_by_ids([item_id])
        return items[0] if items else None

    def get_items_by_ids(self, ids: list[str], with_embedding: bool = True) -> list[Item]:
        """Items for `ids`, in the order given; unknown ids are skipped."""
        if not ids:
            return []
        cols = _ITEM_COLUMNS + (", i.embedding" if with_embedding else "")
        marks = ",".join("?" * len(ids))
        try:
            with self.reading() as conn:
                rows = conn.execute(
                    f"SELECT {cols} FROM items i WHERE i.id IN ({marks})", list(ids)
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError("get items by id", cause=e) from e
        by_id = {r["id"]: _row_to_item(r, with_embedding) for r in rows}
        return [by_id[i] for i in ids if i in by_id]

    def mark_read(self, item_id: str, read: bool = True) -> None:
        self._set_flag("read", item_id, read)

    def mark_saved(self, item_id: str, saved: bool = True) -> None:
        self._set_flag("saved", item_id, saved)

    def _set_flag(self, column: str, item_id: str, value: bool) -> None:
        try:
            with self.writing() as conn:
                conn.execute(f"UPDATE items SET {column} = ? WHERE id = ?", (int(value), item_id))
        except sqlite3.Error as e:
            raise StorageError(f"mark {column}", cause=e) from e

    # ----- embeddings -----
    def save_embedding(self, item_id: str, vec: np.ndarray) -> None:
        self.save_embeddings([(item_id, vec)])

    def save_embeddings(self, batch: list[tuple[str, np.ndarray]]) -> None:
        """Attach embeddings in one transaction. Embeddings are never cleared."""
        rows = []
        for item_id, vec in batch:
            if vec is None:
                raise ValueError(f"refusing to clear embedding of {item_id}")
            rows.append((to_blob(vec), item_id))
        if not rows:
            return
        try:
            with self.writing() as conn:
                conn.executemany("UPDATE items SET embedding = ? WHERE id = ?", rows)
        except sqlite3.Error as e:
            raise StorageError("save embeddings", cause=e) from e

    def get_embeddings(self, ids: list[str]) -> dict[str, np.ndarray]:
        if not ids:
            return {}
        marks = ",".join("?" * len(ids))
        try:
            with self.reading() as conn:
                rows = conn.execute(
                    f"SELECT id, embedding FROM items WHERE embedding IS NOT NULL AND id IN ({marks})",
                    list(ids),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError("get embeddings", cause=e) from e
        return {r["id"]: from_blob(r["embedding"]) for r in rows}

    def items_needing_embedding(self, limit: int = 100) -> list[Item]:
        """Items without an embedding, oldest fetched first."""
        try:
            with self.reading() as conn:
                rows = conn.execute(
                    f"SELECT {_ITEM_COLUMNS} FROM items i WHERE i.embedding IS NULL "
                    "ORDER BY i.fetched_at ASC LIMIT ?",
                    (int(limit),),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError("items needing embedding", cause=e) from e
        return [_row_to_item(r) for r in rows]

    def count_items_needing_embedding(self) -> int:
        try:
            with self.reading() as conn:
                return int(
                    conn.execute("SELECT count(*) FROM items WHERE embedding IS NULL").fetchone()[0]
                )
        except sqlite3.Error as e:
            raise StorageError("count items needing embedding", cause=e) from e

    def load_corpus(self, limit: int = 5000) -> list[Item]:
        """Most recent items that carry an embedding, embedding attached."""
        try:
            with self.reading() as conn:
                rows = conn.execute(
                    f"SELECT {_ITEM_COLUMNS}, i.embedding FROM items i "
                    "WHERE i.embedding IS NOT NULL ORDER BY i.published_at DESC LIMIT ?",
                    (int(limit),),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError("load corpus", cause=e) from e
        return [_row_to_item(r, with_embedding=True) for r in rows]

    # ----- lexical -----
    def search_lexical(self, query: str, limit: int = 50) -> list[tuple[Item, float]]:
        """
        Full-text search ranked by weighted BM25, higher score first.

        Invalid FTS5 syntax ("C++", an unclosed quote, a bare operator) is
        retried once as a quoted literal phrase.

        Raises:
            LexicalQueryError: The index rejected the query even as a literal.
            StorageError: The database itself failed.
        """
        if not query or not query.strip():
            return []
        limit = int(limit) if limit and limit > 0 else 50
        with self._lock.read():
            conn = self._require_conn()
            try:
                rows = conn.execute(_LEXICAL_SQL, (query, limit)).fetchall()
            except sqlite3.OperationalError as first:
                log.debug("FTS query %r rejected (%s); retrying as literal", query, first)
                try:
                    rows = conn.execute(_LEXICAL_SQL, (quote_literal(query), limit)).fetchall()
                except sqlite3.OperationalError as e:
                    raise LexicalQueryError(
                        f"lexical query {query!r}", stage="lexical", cause=e
                    ) from e
                except sqlite3.Error as e:
                    raise StorageError("lexical search", cause=e) from e
            except sqlite3.Error as e:
                raise StorageError("lexical search", cause=e) from e
        return [(_row_to_item(r), float(r["score"])) for r in rows]

    def close(self) -> None:
        with self._lock.write():
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                log.info("Store closed (db=%s)", self.db_path)
