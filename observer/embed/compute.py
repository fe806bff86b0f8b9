# observer/embed/compute.py
from __future__ import annotations

import logging

import numpy as np

from observer.store import Store

log = logging.getLogger(__name__)


async def compute_embeddings(store: Store, embedder, batch_size: int = 64, limit: int | None = None) -> dict:
    """
    Embed items that have no embedding yet, oldest fetched first.

    Each batch is written in one transaction. A batch the backend fails on
    stops the pass; everything written before it stays.
    """
    total_done = 0
    pending = store.count_items_needing_embedding()
    log.info("Embedding backfill: %s items pending (backend=%s)", pending, embedder.name)

    while limit is None or total_done < limit:
        take = batch_size if limit is None else min(batch_size, limit - total_done)
        todo = store.items_needing_embedding(limit=take)
        if not todo:
            break

        vecs: np.ndarray = await embedder.embed_batch([it.text() for it in todo])
        if len(vecs) != len(todo):
            raise ValueError(f"embedder returned {len(vecs)} vectors for {len(todo)} texts")
        store.save_embeddings([(it.id, vec) for it, vec in zip(todo, vecs, strict=True)])
        total_done += len(todo)
        log.info("Embedded %s/%s items", total_done, pending)

    return {"embedded": total_done, "backend": embedder.name, "db": store.db_path}
