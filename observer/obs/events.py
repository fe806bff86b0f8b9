# observer/obs/events.py
"""
Search lifecycle events.

Events are ordinary log records on the ``observer.events`` logger carrying an
``event`` attribute (a flat dict), so they land in the log file with the rest
of the application logs and can also be captured in memory by
:class:`RingBufferHandler` for the diagnostics overlay.

Kinds are dot-delimited ``<subsystem>.<action>``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any

SEARCH_START = "search.start"
SEARCH_CACHE = "search.cache"
SEARCH_LEXICAL = "search.lexical"
SEARCH_QUERY_EMBED = "search.query_embed"
SEARCH_POOL = "search.pool"
SEARCH_COSINE = "search.cosine_rerank"
SEARCH_RERANK = "search.cross_encoder"
SEARCH_COMPLETE = "search.complete"
SEARCH_CANCEL = "search.cancel"
SEARCH_STALE = "search.stale"
STORE_ERROR = "store.error"
VIEW_REFRESH = "view.refresh"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

events_log = logging.getLogger("observer.events")


def emit(
    kind: str,
    *,
    level: str = "info",
    component: str = "pipeline",
    token: int | None = None,
    query: str | None = None,
    duration_s: float | None = None,
    count: int | None = None,
    err: BaseException | str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    ev: dict[str, Any] = {"t": time.time(), "kind": kind, "level": level, "comp": component}
    if token is not None:
        ev["token"] = token
    if query:
        ev["query"] = query
    if duration_s is not None:
        ev["dur_ms"] = round(duration_s * 1000.0, 3)
    if count is not None:
        ev["count"] = count
    if err is not None:
        ev["err"] = str(err)
    if extra:
        ev["extra"] = extra

    fields = " ".join(f"{k}={v}" for k, v in ev.items() if k not in ("t", "kind", "level", "extra"))
    events_log.log(_LEVELS.get(level, logging.INFO), "%s %s", kind, fields, extra={"event": ev})
    return ev


class RingBufferHandler(logging.Handler):
    """Keeps the last `capacity` events in memory, oldest dropped first."""

    def __init__(self, capacity: int = 500):
        super().__init__(level=logging.DEBUG)
        self._buf: deque[dict[str, Any]] = deque(maxlen=capacity)
        self._mu = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        ev = getattr(record, "event", None)
        if ev is None:
            return
        with self._mu:
            self._buf.append(ev)

    def snapshot(self) -> list[dict[str, Any]]:
        with self._mu:
            return list(self._buf)

    def last(self, n: int) -> list[dict[str, Any]]:
        with self._mu:
            return list(self._buf)[-n:] if n > 0 else []

    def kinds(self) -> list[str]:
        return [ev["kind"] for ev in self.snapshot()]


def install_ring_buffer(capacity: int = 500) -> RingBufferHandler:
    handler = RingBufferHandler(capacity)
    events_log.addHandler(handler)
    # the handler decides what to keep; the logger must not drop debug events first
    if events_log.level == logging.NOTSET or events_log.level > logging.DEBUG:
        events_log.setLevel(logging.DEBUG)
    return handler
