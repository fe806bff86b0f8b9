# observer/retrieval/fusion.py
from __future__ import annotations

import logging
from collections.abc import Iterable

import numpy as np

from observer.embed.codec import cosine_scores
from observer.models import HistoryResult, Item, Provenance, ScoreRecord

log = logging.getLogger(__name__)

_TIER_RANK = {
    Provenance.RERANKED: 3,
    Provenance.COSINE: 2,
    Provenance.LEXICAL: 1,
    Provenance.NONE: 0,
}


def sort_key(rec: ScoreRecord) -> tuple[int, float]:
    """Highest-fidelity tier first, then that tier's score, descending."""
    score = rec.display_score
    return (-_TIER_RANK[rec.tier], -(score if score is not None else float("-inf")))


def order_ids(ids: Iterable[str], records: dict[str, ScoreRecord]) -> list[str]:
    """
    Stable sort of `ids` by best-available score. Ties keep their incoming
    order, so republishing an unchanged session never shuffles the list.
    """
    return sorted(ids, key=lambda i: sort_key(records[i]))


def cosine_matches(
    query_vec: np.ndarray,
    corpus: list[Item],
    *,
    limit: int,
    include: set[str] | None = None,
    exclude: set[str] | None = None,
) -> list[tuple[str, float]]:
    """
    Cosine similarity of the query against every corpus item.

    Returns the `limit` best matches plus any item in `include` (items already
    on screen keep their place and gain a cosine score), best first. Items in
    `exclude` never appear. Items whose vector dimension differs from the
    query are skipped.
    """
    exclude = exclude or set()
    include = include or set()
    q = np.asarray(query_vec, dtype=np.float32)
    pool = [
        it
        for it in corpus
        if it.embedding is not None and it.id not in exclude and it.embedding.shape == q.shape
    ]
    if not pool:
        return []
    mat = np.vstack([it.embedding for it in pool])
    sims = cosine_scores(q, mat)
    ranked = sorted(range(len(pool)), key=lambda i: float(sims[i]), reverse=True)

    out: list[tuple[str, float]] = []
    for rank, i in enumerate(ranked):
        item_id = pool[i].id
        if rank < limit or item_id in include:
            out.append((item_id, float(sims[i])))
    return out


def snapshot_rows(
    order: list[str], records: dict[str, ScoreRecord], session_id: str, limit: int
) -> list[HistoryResult]:
    rows: list[HistoryResult] = []
    for rank, item_id in enumerate(order[:limit], start=1):
        rec = records.get(item_id) or ScoreRecord()
        rows.append(
            HistoryResult(
                rank=rank,
                item_id=item_id,
                session_id=session_id,
                lexical=rec.lexical,
                cosine=rec.cosine,
                rerank=rec.rerank,
                provenance=rec.provenance,
            )
        )
    return rows
