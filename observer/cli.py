# observer/cli.py
"""
Headless command-line interface.

Drives the same orchestrator the interactive reader uses, waits for the
pipeline to settle and prints JSON.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from observer.config import get_settings
from observer.errors import ObserverError
from observer.obs.events import install_ring_buffer
from observer.obs.metrics import serve_metrics
from observer.obs.tracing import setup_logging, setup_tracing
from observer.reader import Reader
from observer.ui.console import run_interactive

log = logging.getLogger(__name__)


def _results(reader: Reader) -> dict[str, Any]:
    orch = reader.orchestrator
    sess = orch.session
    out: dict[str, Any] = {"status": orch.status, "results": []}
    if sess is None:
        return out
    out["token"] = sess.token
    out["query"] = sess.query or None
    out["seed"] = sess.seed_id
    out["failed"] = dict(sess.failed)
    out["cache"] = sess.cache_outcome
    out["suggestions"] = [
        {"query": m.entry.raw_query, "similarity": round(m.similarity, 4)} for m in sess.suggestions
    ]
    for rank, item in enumerate(orch.results(), start=1):
        row = {"rank": rank, "id": item.id, "title": item.title, "source": item.source_name, "url": item.url}
        rec = orch.score(item.id)
        if rec is not None:
            row.update(rec.to_dict())
        out["results"].append(row)
    return out


async def _search(reader: Reader, args) -> dict[str, Any]:
    await reader.run(reader.orchestrator.submit(args.query))
    if args.rerank:
        await reader.run(reader.orchestrator.apply_rerank())
    return _results(reader)


async def _similar(reader: Reader, args) -> dict[str, Any]:
    seed = reader.store.get_item(args.item_id)
    if seed is None:
        raise SystemExit(f"no item {args.item_id!r}")
    await reader.run(reader.orchestrator.pivot(seed))
    if args.rerank:
        await reader.run(reader.orchestrator.apply_rerank())
    return _results(reader)


async def _history(reader: Reader, args) -> dict[str, Any]:
    entries = reader.history.recent(args.limit)
    return {"entries": [e.to_dict() for e in entries]}


async def _pin(reader: Reader, args) -> dict[str, Any]:
    pinned = args.command == "pin"
    ok = reader.history.pin(args.entry_id, pinned)
    return {"id": args.entry_id, "pinned": pinned, "updated": ok}


async def _refresh_views(reader: Reader, args) -> dict[str, Any]:
    cmds = reader.views.refresh_commands()
    await reader.run(cmds)
    return {"views": [e.to_dict() for e in reader.history.pinned()]}


_COMMANDS = {
    "search": _search,
    "similar": _similar,
    "history": _history,
    "pin": _pin,
    "unpin": _pin,
    "refresh-views": _refresh_views,
}


async def _tui(s) -> None:
    reader = Reader(s, interactive=True, ring=install_ring_buffer())

    async def read_line() -> str:
        return await asyncio.to_thread(sys.stdin.readline)

    def write(frame: str) -> None:
        print("\n" + frame, flush=True)

    try:
        await run_interactive(reader, read_line, write)
    finally:
        await reader.aclose()


async def _run(args) -> dict[str, Any] | None:
    s = get_settings()
    if args.db:
        s = s.model_copy(update={"db_path": args.db})
    if args.command == "tui":
        await _tui(s)
        return None
    needs_backends = args.command in ("search", "similar", "refresh-views")
    reader = Reader(s, build_backends=needs_backends)
    try:
        return await _COMMANDS[args.command](reader, args)
    finally:
        await reader.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="observer",
        description="Search the feed reader's item store from the command line",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m observer search "climate risk"
  python -m observer search "climate risk" --rerank
  python -m observer similar 3f2a9c
  python -m observer history --limit 20
  python -m observer pin 12
  python -m observer tui
        """,
    )
    parser.add_argument("--db", help="SQLite file (default: OBSERVER_DB or observer.db)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("search", help="Run a query through the full pipeline")
    p.add_argument("query")
    p.add_argument("--rerank", action="store_true", help="Apply a user-gated rerank once the pipeline settles")

    p = sub.add_parser("similar", help="Find items like an existing item")
    p.add_argument("item_id")
    p.add_argument("--rerank", action="store_true")

    p = sub.add_parser("history", help="List past searches, pinned first")
    p.add_argument("--limit", type=int, default=50)

    for name in ("pin", "unpin"):
        p = sub.add_parser(name, help=f"{name.capitalize()} a history entry")
        p.add_argument("entry_id", type=int)

    sub.add_parser("refresh-views", help="Re-rank every pinned search")
    sub.add_parser("tui", help="Browse and search interactively, one key or line of text per input line")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    s = get_settings()
    setup_logging(s)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    setup_tracing(s)
    serve_metrics(s.metrics_port)

    try:
        out = asyncio.run(_run(args))
    except ObserverError as e:
        log.error("%s failed: %s", args.command, e)
        print(json.dumps({"error": e.to_dict()}, indent=2), file=sys.stderr)
        return 1
    if out is not None:
        print(json.dumps(out, indent=2, ensure_ascii=False, default=str))
    return 0
