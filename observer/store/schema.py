"""
Database schema and migrations for the feed store.

This module provides functions for:
- Database connection management
- Versioned schema migrations tracked in PRAGMA user_version
- Lexical index (FTS5) bootstrap

"CREATE ... IF NOT EXISTS" cannot alter an existing structure, so every change
to the schema is a numbered step applied exactly once, in order.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from observer.errors import ErrorCode, StorageError

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "observer.db"

_ITEMS = """
CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY,
    source_type TEXT NOT NULL,
    source_name TEXT NOT NULL,
    title TEXT NOT NULL,
    summary TEXT,
    url TEXT UNIQUE,
    author TEXT,
    published_at REAL NOT NULL,
    fetched_at REAL NOT NULL,
    read INTEGER DEFAULT 0,
    saved INTEGER DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_items_published ON items(published_at DESC);
CREATE INDEX IF NOT EXISTS idx_items_source ON items(source_name);
CREATE INDEX IF NOT EXISTS idx_items_read ON items(read);
"""

# The update trigger only fires for the indexed columns: flipping read/saved
# or attaching an embedding never touches the index.
_LEXICAL_INDEX = """
CREATE VIRTUAL TABLE IF NOT EXISTS items_fts USING fts5(
    title,
    summary,
    source_name,
    author,
    content='items',
    content_rowid='rowid',
    tokenize='unicode61 remove_diacritics 2'
);

CREATE TRIGGER IF NOT EXISTS items_ai AFTER INSERT ON items BEGIN
    INSERT INTO items_fts(rowid, title, summary, source_name, author)
    VALUES (new.rowid, new.title, new.summary, new.source_name, new.author);
END;

CREATE TRIGGER IF NOT EXISTS items_au AFTER UPDATE OF title, summary, source_name, author ON items BEGIN
    INSERT INTO items_fts(items_fts, rowid, title, summary, source_name, author)
    VALUES ('delete', old.rowid, old.title, old.summary, old.source_name, old.author);
    INSERT INTO items_fts(rowid, title, summary, source_name, author)
    VALUES (new.rowid, new.title, new.summary, new.source_name, new.author);
END;

CREATE TRIGGER IF NOT EXISTS items_ad AFTER DELETE ON items BEGIN
    INSERT INTO items_fts(items_fts, rowid, title, summary, source_name, author)
    VALUES ('delete', old.rowid, old.title, old.summary, old.source_name, old.author);
END;
"""

_EMBEDDINGS = """
CREATE INDEX IF NOT EXISTS idx_items_no_embedding ON items(id) WHERE embedding IS NULL;
"""

_HISTORY = """
CREATE TABLE IF NOT EXISTS search_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    normalized_query TEXT NOT NULL UNIQUE,
    raw_query TEXT NOT NULL,
    backend TEXT,
    duration_ms INTEGER DEFAULT 0,
    result_count INTEGER DEFAULT 0,
    pinned INTEGER DEFAULT 0,
    use_count INTEGER DEFAULT 1,
    last_used_at REAL NOT NULL,
    created_at REAL NOT NULL,
    query_embedding BLOB
);
CREATE INDEX IF NOT EXISTS idx_history_last_used ON search_history(last_used_at DESC);

CREATE TABLE IF NOT EXISTS search_results (
    history_id INTEGER NOT NULL REFERENCES search_history(id) ON DELETE CASCADE,
    session_id TEXT,
    rank INTEGER NOT NULL,
    item_id TEXT NOT NULL,
    lexical_score REAL,
    cosine_score REAL,
    rerank_score REAL,
    provenance INTEGER DEFAULT 0,
    PRIMARY KEY (history_id, rank)
);
"""

SCHEMA_VERSION = 4


def connect(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """
    Open a connection with foreign keys on and, for file databases, WAL mode.

    The connection may be used from worker threads; callers serialize access
    through the store's read/write lock.
    """
    try:
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")

        if db_path != ":memory:":
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA busy_timeout = 5000")

        logger.info("Connected to database: %s", db_path)
        return conn

    except sqlite3.Error as e:
        logger.error("Database connection failed for %s: %s", db_path, e)
        raise StorageError(f"open database {db_path}", cause=e) from e
    except OSError as e:
        logger.error("Failed to create database directory for %s: %s", db_path, e)
        raise StorageError(f"create directory for {db_path}", cause=e) from e


def _has_column(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(r["name"] == column for r in rows)


def _step_items(conn: sqlite3.Connection) -> str:
    return _ITEMS


def _step_lexical_index(conn: sqlite3.Connection) -> str:
    return _LEXICAL_INDEX


def _step_embeddings(conn: sqlite3.Connection) -> str:
    script = _EMBEDDINGS
    if not _has_column(conn, "items", "embedding"):
        script = "ALTER TABLE items ADD COLUMN embedding BLOB DEFAULT NULL;\n" + script
    return script


def _step_history(conn: sqlite3.Connection) -> str:
    return _HISTORY


# version -> step producing the script that upgrades (version - 1) to version
_MIGRATIONS = {
    1: _step_items,
    2: _step_lexical_index,
    3: _step_embeddings,
    4: _step_history,
}


def schema_version(conn: sqlite3.Connection) -> int:
    return int(conn.execute("PRAGMA user_version").fetchone()[0])


def migrate(conn: sqlite3.Connection, target: int = SCHEMA_VERSION) -> int:
    """
    Bring the schema up to `target`, one transaction per step.

    Returns:
        The schema version after migrating.

    Raises:
        StorageError: If a step fails; that step is rolled back.
    """
    current = schema_version(conn)
    if current > target:
        raise StorageError(
            f"database schema v{current} is newer than this build (v{target})",
            code=ErrorCode.STORE_MIGRATION_FAILED,
        )

    for version in range(current + 1, target + 1):
        script = _MIGRATIONS[version](conn)
        try:
            conn.executescript(f"BEGIN;\n{script}\nPRAGMA user_version = {version};\nCOMMIT;")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.rollback()
            logger.error("Schema migration to v%s failed: %s", version, e)
            raise StorageError(
                f"migrate schema to v{version}",
                code=ErrorCode.STORE_MIGRATION_FAILED,
                cause=e,
            ) from e
        logger.info("Schema migrated to v%s", version)

    return schema_version(conn)


def rebuild_lexical_index(conn: sqlite3.Connection) -> bool:
    """
    Populate the lexical index from existing items, only when it is empty
    while items exist. Triggers keep it in sync afterwards.
    """
    indexed = conn.execute("SELECT count(*) FROM items_fts_docsize").fetchone()[0]
    if indexed > 0:
        return False
    total = conn.execute("SELECT count(*) FROM items").fetchone()[0]
    if total == 0:
        return False
    with conn:
        conn.execute("INSERT INTO items_fts(items_fts) VALUES('rebuild')")
    logger.info("Lexical index rebuilt over %s items", total)
    return True
