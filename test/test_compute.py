import asyncio

import pytest

from observer.embed.compute import compute_embeddings


def test_backfill_embeds_only_missing_items(store, stubs):
    store.save_items(
        [
            stubs.item("e1", "Flood warning", embed=False, age_h=3),
            stubs.item("e2", "Carbon prices", embed=False, age_h=2),
            stubs.item("e3", "Election day", embed=True, age_h=1),
        ]
    )
    assert store.count_items_needing_embedding() == 2

    out = asyncio.run(compute_embeddings(store, stubs.Embedder(), batch_size=1))
    assert out["embedded"] == 2
    assert out["backend"] == "stub-embed"
    assert store.count_items_needing_embedding() == 0
    assert set(store.get_embeddings(["e1", "e2", "e3"])) == {"e1", "e2", "e3"}


def test_backfill_respects_limit(store, stubs):
    store.save_items([stubs.item(f"e{n}", f"Item {n}", embed=False, age_h=n) for n in range(5)])
    out = asyncio.run(compute_embeddings(store, stubs.Embedder(), batch_size=2, limit=3))
    assert out["embedded"] == 3
    assert store.count_items_needing_embedding() == 2


def test_short_batch_from_backend_is_rejected(store, stubs):
    class Short(stubs.Embedder):
        async def embed_batch(self, texts):
            return (await super().embed_batch(texts))[:-1]

    store.save_items([stubs.item("e1", "Flood", embed=False), stubs.item("e2", "Rain", embed=False, age_h=1)])
    with pytest.raises(ValueError):
        asyncio.run(compute_embeddings(store, Short(), batch_size=2))
    assert store.count_items_needing_embedding() == 2
