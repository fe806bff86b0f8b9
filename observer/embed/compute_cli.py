# observer/embed/compute_cli.py
import argparse
import asyncio

from observer.backends import build_embedder
from observer.config import get_settings
from observer.obs.tracing import setup_logging
from observer.store import Store

from .compute import compute_embeddings


async def _run(args) -> dict:
    s = get_settings()
    embedder = build_embedder(s)
    if embedder is None:
        raise SystemExit("EMBED_BACKEND=none; nothing to compute")
    store = Store(args.db or s.db_path)
    try:
        return await compute_embeddings(store, embedder, batch_size=args.batch_size, limit=args.limit)
    finally:
        await embedder.aclose()
        store.close()


def main():
    p = argparse.ArgumentParser(description="Compute embeddings for items that have none and store them in SQLite.")
    p.add_argument("--db", default=None, help="SQLite file (default: OBSERVER_DB or observer.db)")
    p.add_argument("--batch-size", type=int, default=64)
    p.add_argument("--limit", type=int, default=None, help="Stop after this many items")
    args = p.parse_args()

    setup_logging()
    stats = asyncio.run(_run(args))
    print(f"Embedded {stats['embedded']} items with {stats['backend']} -> {stats['db']}")


if __name__ == "__main__":
    main()
