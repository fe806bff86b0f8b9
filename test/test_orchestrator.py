import asyncio

import pytest

from observer.cache import SearchCache
from observer.errors import BackendTimeout, BackendUnavailable, FatalSessionError, LexicalQueryError, StorageError
from observer.models import HistoryResult, Provenance
from observer.pipeline import Orchestrator
from observer.pipeline.messages import CorpusLoaded, EntryReranked, HistorySaved, QueryEmbedded, RerankComplete
from observer.pipeline.session import CancelScope

COSINE_ORDER = ["a2", "a1", "a3", "a6", "a4", "a5"]
RERANKED_ORDER = ["a1", "a2", "a3", "a6", "a5", "a4"]


@pytest.fixture
def make_orch(seeded_store, history, settings):
    def build(embedder=None, reranker=None):
        return Orchestrator(
            seeded_store, history, SearchCache(history), embedder=embedder, reranker=reranker, settings=settings
        )

    return build


def _names(cmds):
    return [c.name for c in cmds]


def _ids(orch):
    return [it.id for it in orch.results()]


def _run(cmd):
    """Run one command to completion and return what it emitted."""
    out = []

    async def go():
        await cmd.run(out.append)

    asyncio.run(go())
    return out


def _embed(orch, stubs, text="climate risk", token=None):
    return orch.handle(QueryEmbedded(token or orch.session.token, vector=stubs.embed(text)))


def _corpus(orch, store, token=None):
    return orch.handle(CorpusLoaded(token or orch.session.token, items=store.load_corpus()))


def test_empty_query_is_ignored(make_orch):
    orch = make_orch()
    assert orch.submit("   ") == []
    assert orch.session is None


def test_lexical_results_show_immediately(make_orch):
    orch = make_orch()
    cmds = orch.submit("climate risk", [])
    assert _ids(orch) == ["a1", "a2"]
    assert orch.score("a1").provenance == Provenance.LEXICAL
    # no embedder: the session completes right away and is persisted
    assert _names(cmds) == ["persist_history"]


def test_semantic_stages_are_dispatched_together(make_orch, stubs):
    orch = make_orch(embedder=stubs.Embedder())
    cmds = orch.submit("climate risk", [])
    assert _names(cmds) == ["embed_query", "load_corpus"]
    assert orch.session.pending == {"embed", "corpus"}
    assert orch.in_flight


def test_cosine_applies_once_both_inputs_arrive(make_orch, seeded_store, stubs):
    orch = make_orch(embedder=stubs.Embedder())
    orch.submit("climate risk", [])

    assert _embed(orch, stubs) == []
    assert _ids(orch) == ["a1", "a2"]

    cmds = _corpus(orch, seeded_store)
    assert _ids(orch) == COSINE_ORDER
    assert orch.score("a1").provenance == Provenance.LEXICAL | Provenance.COSINE
    assert orch.score("a3").provenance == Provenance.COSINE
    assert _names(cmds) == ["persist_history"]
    assert not orch.in_flight


def test_results_for_a_superseded_query_are_dropped(make_orch, seeded_store, stubs):
    orch = make_orch(embedder=stubs.Embedder())
    orch.submit("climate risk", [])
    old = orch.session.token
    orch.submit("football", [])

    assert _embed(orch, stubs, token=old) == []
    assert _corpus(orch, seeded_store, token=old) == []
    sess = orch.session
    assert sess.query_vec is None
    assert sess.pending == {"embed", "corpus"}
    assert _ids(orch) == ["a4"]


def test_tokens_increase_across_sessions(make_orch):
    orch = make_orch()
    orch.submit("climate", [])
    first = orch.session.token
    orch.submit("risk", [])
    assert orch.session.token > first


def test_cancel_keeps_results_and_drops_late_work(make_orch, seeded_store, stubs):
    orch = make_orch(embedder=stubs.Embedder())
    orch.submit("climate risk", [])
    token = orch.session.token

    assert orch.cancel() is True
    assert orch.session.scope.cancelled
    assert not orch.in_flight
    assert orch.status.startswith("cancelled")

    assert _embed(orch, stubs, token=token) == []
    assert _corpus(orch, seeded_store, token=token) == []
    assert _ids(orch) == ["a1", "a2"]
    # nothing left to stop
    assert orch.cancel() is False


def test_snapshot_is_taken_once_across_chained_searches(make_orch, seeded_store, stubs):
    orch = make_orch(embedder=stubs.Embedder())
    browse = seeded_store.get_items()
    orch.submit("climate risk", browse)
    _embed(orch, stubs)
    _corpus(orch, seeded_store)

    seed = orch.results()[0]
    orch.pivot(seed, orch.results())
    orch.submit("election", [])
    assert orch.snapshots_taken == 1

    restored = orch.close_session()
    assert [it.id for it in restored] == [it.id for it in browse]
    assert orch.session is None
    assert not orch.has_snapshot


def test_exact_cache_hit_shows_placeholder_until_scores_arrive(make_orch, seeded_store, history, stubs):
    history.record("warming", "warming", results=[HistoryResult(1, "a3"), HistoryResult(2, "a2")])
    orch = make_orch(embedder=stubs.Embedder())
    orch.submit("Warming", [])

    # no item contains "warming", so only the placeholder is visible
    assert orch.session.order == []
    assert _ids(orch) == ["a3", "a2"]
    assert orch.progress["placeholder"] == "exact"
    assert orch.session.cache_outcome == "exact"

    _embed(orch, stubs, text="warming")
    _corpus(orch, seeded_store)
    assert orch.session.placeholder == []
    assert len(orch.session.order) == 6


def test_similar_cache_hit_fills_an_empty_view(make_orch, history, stubs):
    history.record(
        "global warming",
        "global warming",
        results=[HistoryResult(1, "a5")],
        query_embedding=stubs.embed("warming"),
    )
    orch = make_orch(embedder=stubs.Embedder())
    orch.submit("warming", [])
    _embed(orch, stubs, text="warming")
    assert _ids(orch) == ["a5"]
    assert orch.progress["placeholder"] == "similar"


def test_similar_hit_never_replaces_visible_results(make_orch, history, stubs):
    history.record(
        "risk of climate",
        "risk of climate",
        results=[HistoryResult(1, "a5")],
        query_embedding=stubs.embed("climate risk"),
    )
    orch = make_orch(embedder=stubs.Embedder())
    orch.submit("climate risk", [])
    _embed(orch, stubs)
    assert _ids(orch) == ["a1", "a2"]
    assert orch.session.placeholder == []


def test_lower_band_match_is_only_suggested(make_orch, seeded_store, history, stubs):
    history.record("climate risk flood", "climate risk flood", query_embedding=stubs.embed("climate risk flood"))
    orch = make_orch(embedder=stubs.Embedder())
    orch.submit("climate risk", [])
    _embed(orch, stubs)
    _corpus(orch, seeded_store)

    assert [m.entry.raw_query for m in orch.session.suggestions] == ["climate risk flood"]
    assert orch.session.cache_outcome == "suggestion"
    assert "climate risk flood" in orch.status
    assert _ids(orch) == COSINE_ORDER


def test_embedding_failure_leaves_lexical_results(make_orch, seeded_store, stubs):
    orch = make_orch(embedder=stubs.Embedder(), reranker=stubs.BatchReranker())
    orch.submit("climate risk", [])
    token = orch.session.token

    orch.handle(QueryEmbedded(token, err=BackendTimeout("embed exceeded 5s", stage="embed")))
    cmds = _corpus(orch, seeded_store)

    assert _ids(orch) == ["a1", "a2"]
    assert "embed" in orch.session.failed
    assert "keyword" in orch.status
    # no semantic stage, so no rerank either
    assert _names(cmds) == ["persist_history"]


def test_lexical_syntax_failure_is_not_fatal(make_orch, seeded_store, stubs, monkeypatch):
    def reject(query, limit):
        raise LexicalQueryError("bad query", stage="lexical")

    monkeypatch.setattr(seeded_store, "search_lexical", reject)
    orch = make_orch(embedder=stubs.Embedder())
    cmds = orch.submit("climate risk", [])

    assert _names(cmds) == ["embed_query", "load_corpus"]
    assert "lexical" in orch.session.failed
    _embed(orch, stubs)
    _corpus(orch, seeded_store)
    assert _ids(orch) == COSINE_ORDER


def test_store_failure_is_fatal(make_orch, seeded_store, monkeypatch):
    def broken(query, limit):
        raise StorageError("disk gone")

    monkeypatch.setattr(seeded_store, "search_lexical", broken)
    orch = make_orch()
    with pytest.raises(FatalSessionError):
        orch.submit("climate risk", [])
    assert orch.session is None
    assert orch.live_token is None


def test_fast_reranker_applies_automatically(make_orch, seeded_store, stubs):
    reranker = stubs.BatchReranker()
    orch = make_orch(embedder=stubs.Embedder(), reranker=reranker)
    orch.submit("climate risk", [])
    _embed(orch, stubs)
    cmds = _corpus(orch, seeded_store)

    assert _names(cmds) == ["batch_rerank"]
    assert orch.progress["stages"]["rerank"] == "pending"
    # nothing persisted until the rerank lands
    (msg,) = _run(cmds[0])
    assert isinstance(msg, RerankComplete)
    assert reranker.calls == [("climate risk", 6)]

    cmds = orch.handle(msg)
    assert _ids(orch) == RERANKED_ORDER
    assert orch.score("a1").provenance == Provenance.LEXICAL | Provenance.COSINE | Provenance.RERANKED
    assert _names(cmds) == ["persist_history"]


def test_rerank_triggers_once_per_session(make_orch, seeded_store, stubs):
    orch = make_orch(embedder=stubs.Embedder(), reranker=stubs.BatchReranker())
    orch.submit("climate risk", [])
    _embed(orch, stubs)
    (rerank,) = _corpus(orch, seeded_store)
    orch.handle(_run(rerank)[0])

    # a repeated corpus delivery re-sorts but never reranks again
    assert "batch_rerank" not in _names(_corpus(orch, seeded_store))


def test_rerank_failure_keeps_similarity_order(make_orch, seeded_store, stubs):
    orch = make_orch(embedder=stubs.Embedder(), reranker=stubs.BatchReranker(fail=True))
    orch.submit("climate risk", [])
    _embed(orch, stubs)
    (rerank,) = _corpus(orch, seeded_store)

    (msg,) = _run(rerank)
    assert isinstance(msg.err, BackendUnavailable)
    cmds = orch.handle(msg)
    assert _ids(orch) == COSINE_ORDER
    assert "rerank" in orch.session.failed
    assert "similarity order stands" in orch.status
    assert _names(cmds) == ["persist_history"]


def test_slow_reranker_waits_for_the_user(make_orch, seeded_store, stubs):
    orch = make_orch(embedder=stubs.Embedder(), reranker=stubs.SequentialReranker())
    orch.submit("climate risk", [])
    _embed(orch, stubs)
    cmds = _corpus(orch, seeded_store)

    assert _names(cmds) == ["persist_history"]
    assert orch.session.rerank_available
    assert "rerank available" in orch.status

    orch.handle(HistorySaved(orch.session.token, entry_id=1))
    cmds = orch.apply_rerank()
    assert _names(cmds) == ["sequential_rerank"]
    token = orch.session.token
    msgs = _run(cmds[0])
    assert [m.item_id for m in msgs] == COSINE_ORDER

    # partial progress is reported but the list does not move
    orch.handle(msgs[0])
    assert orch.progress["rerank_done"] == 1
    assert orch.progress["rerank_total"] == 6
    assert orch.status == "reranking 1/6"
    assert _ids(orch) == COSINE_ORDER
    assert orch.score("a2").rerank is None

    for m in msgs[1:-1]:
        assert orch.handle(m) == []
    cmds = orch.handle(msgs[-1])
    assert msgs[-1].token == token
    assert _ids(orch) == RERANKED_ORDER
    # already persisted once; the completed rerank refreshes the snapshot
    assert _names(cmds) == ["update_snapshot"]


def test_failed_entries_still_complete_a_slow_rerank(make_orch, seeded_store, stubs):
    orch = make_orch(embedder=stubs.Embedder(), reranker=stubs.SequentialReranker())
    orch.submit("climate risk", [])
    _embed(orch, stubs)
    _corpus(orch, seeded_store)
    orch.apply_rerank()
    token = orch.session.token

    for item_id in COSINE_ORDER[:-1]:
        orch.handle(EntryReranked(token, item_id, score=0.9 if item_id == "a1" else 0.3))
    orch.handle(EntryReranked(token, COSINE_ORDER[-1], err=BackendTimeout("slow", stage="rerank")))

    assert "rerank" not in orch.session.pending
    assert orch.score("a5").rerank is None
    assert _ids(orch)[0] == "a1"


def test_cancel_mid_rerank_then_apply_again(make_orch, seeded_store, stubs):
    orch = make_orch(embedder=stubs.Embedder(), reranker=stubs.SequentialReranker())
    orch.submit("climate risk", [])
    _embed(orch, stubs)
    _corpus(orch, seeded_store)

    orch.apply_rerank()
    old = orch.session.token
    orch.handle(EntryReranked(old, "a1", score=0.9))

    assert orch.cancel() is True
    assert orch.session.rerank.buffer == {}
    assert orch.session.rerank_available
    assert _ids(orch) == COSINE_ORDER

    # a late score for the cancelled attempt is ignored
    assert orch.handle(EntryReranked(old, "a2", score=0.1)) == []
    assert orch.progress["rerank_done"] == 0

    cmds = orch.apply_rerank()
    assert _names(cmds) == ["sequential_rerank"]
    assert orch.session.token > old
    # the retry runs under a fresh, uncancelled scope
    assert type(orch.session.scope) is CancelScope
    assert not orch.session.scope.cancelled
    assert cmds[0].scope is orch.session.scope
    for m in _run(cmds[0]):
        orch.handle(m)
    assert _ids(orch) == RERANKED_ORDER


def test_apply_rerank_without_reranker_is_a_no_op(make_orch, seeded_store, stubs):
    orch = make_orch(embedder=stubs.Embedder())
    orch.submit("climate risk", [])
    assert orch.apply_rerank() == []


def test_pivot_reuses_seed_embedding_and_excludes_seed(make_orch, seeded_store, stubs):
    embedder = stubs.Embedder()
    orch = make_orch(embedder=embedder, reranker=stubs.BatchReranker())
    seed = seeded_store.get_item("a1")

    cmds = orch.pivot(seed, [])
    assert _names(cmds) == ["load_corpus"]
    assert embedder.calls == []
    assert orch.session.rerank_text == seed.text()

    cmds = _corpus(orch, seeded_store)
    assert "a1" not in _ids(orch)
    assert _ids(orch)[0] == "a2"
    assert _names(cmds) == ["batch_rerank"]
    assert cmds[0].scope is orch.session.scope

    cmds = orch.handle(_run(cmds[0])[0])
    assert "a1" not in _ids(orch)
    # pivots have no query text and are not written to history
    assert cmds == []


def test_pivot_needs_an_embedding(make_orch, seeded_store, stubs):
    seeded_store.save_items([stubs.item("bare", "No vector", embed=False)])
    orch = make_orch(embedder=stubs.Embedder())
    with pytest.raises(ValueError):
        orch.pivot(seeded_store.get_item("bare"), [])
    assert orch.session is None


def test_history_saved_links_the_session(make_orch):
    orch = make_orch()
    orch.submit("climate risk", [])
    orch.handle(HistorySaved(orch.session.token, entry_id=42))
    assert orch.session.history_id == 42
    orch.handle(HistorySaved(orch.session.token + 100, entry_id=7))
    assert orch.session.history_id == 42


def test_rerank_finishing_before_the_first_write_updates_it_afterwards(make_orch, seeded_store, history, stubs):
    orch = make_orch(embedder=stubs.Embedder(), reranker=stubs.SequentialReranker())
    orch.submit("climate risk", [])
    _embed(orch, stubs)
    (persist,) = _corpus(orch, seeded_store)

    # cancel and re-apply so the rerank runs under a newer token than the write
    orch.apply_rerank()
    orch.cancel()
    (rerank,) = orch.apply_rerank()
    cmds = []
    for m in _run(rerank):
        cmds = orch.handle(m)
    assert _ids(orch) == RERANKED_ORDER
    assert cmds == []

    (saved,) = _run(persist)
    (update,) = orch.handle(saved)
    assert update.name == "update_snapshot"
    assert orch.session.history_id == saved.entry_id

    orch.handle(_run(update)[0])
    entry = history.get("climate risk")
    assert [r.item_id for r in entry.results] == RERANKED_ORDER
    assert entry.use_count == 1
