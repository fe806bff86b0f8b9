"""End-to-end runs of the pipeline through the asyncio runtime."""
import asyncio
import logging

from observer.models import Provenance
from observer.obs import events
from observer.obs.events import install_ring_buffer
from observer.pipeline import CancelScope, Runtime
from observer.pipeline.commands import Command
from observer.reader import Reader


def _reader(settings, store, embedder=None, reranker=None):
    return Reader(settings, store=store, embedder=embedder, reranker=reranker, build_backends=False)


def test_climate_risk_scenario(settings, seeded_store, stubs):
    reader = _reader(settings, seeded_store, stubs.Embedder(), stubs.BatchReranker())
    orch = reader.orchestrator

    async def go():
        await reader.run(orch.submit("Climate  Risk", seeded_store.get_items()))

    asyncio.run(go())

    ids = [it.id for it in orch.results()]
    assert ids == ["a1", "a2", "a3", "a6", "a5", "a4"]
    assert orch.score("a1").provenance == Provenance.LEXICAL | Provenance.COSINE | Provenance.RERANKED
    assert not orch.in_flight

    entry = reader.history.get("climate risk")
    assert entry is not None
    assert entry.raw_query == "Climate Risk"
    assert entry.backend == "stub-embed+stub-batch"
    assert [r.item_id for r in entry.results] == ids
    assert entry.results[0].provenance & Provenance.RERANKED
    assert entry.query_embedding is not None
    assert orch.session.history_id == entry.id


def test_repeating_a_query_upserts_history(settings, seeded_store, stubs):
    reader = _reader(settings, seeded_store, stubs.Embedder())
    orch = reader.orchestrator

    async def go():
        await reader.run(orch.submit("flood", []))
        await reader.run(orch.submit("FLOOD", []))

    asyncio.run(go())
    entries = reader.history.recent()
    assert len(entries) == 1
    assert entries[0].use_count == 2


def test_cancel_stops_a_blocked_stage(settings, seeded_store, stubs):
    gate = asyncio.Event()
    embedder = stubs.Embedder(gate=gate)
    reader = _reader(settings, seeded_store, embedder)
    orch = reader.orchestrator

    async def go():
        reader.runtime.dispatch(orch.submit("climate risk", []))
        # let the embed task start and block
        await asyncio.sleep(0.05)
        assert orch.cancel() is True
        await reader.runtime.run_until_idle()

    asyncio.run(go())
    assert embedder.calls == ["climate risk"]
    assert [it.id for it in orch.results()] == ["a1", "a2"]
    assert orch.session.query_vec is None
    # cancelled before completion: nothing persisted
    assert reader.history.recent() == []


def test_superseded_session_never_shows_stale_results(settings, seeded_store, stubs):
    ring = install_ring_buffer(100)
    try:
        reader = _reader(settings, seeded_store, stubs.Embedder())
        orch = reader.orchestrator

        async def go():
            reader.runtime.dispatch(orch.submit("climate risk", []))
            reader.runtime.dispatch(orch.submit("football", []))
            await reader.runtime.run_until_idle()

        asyncio.run(go())
        assert orch.session.query == "football"
        assert orch.results()[0].id == "a4"
        assert [e.normalized_query for e in reader.history.recent()] == ["football"]
        assert events.SEARCH_CANCEL in ring.kinds()
    finally:
        logging.getLogger("observer.events").removeHandler(ring)


def test_runtime_survives_a_crashing_command(caplog):
    seen = []

    async def crash(emit):
        raise RuntimeError("boom")

    async def ok(emit):
        emit("done")

    def handler(msg):
        seen.append(msg)
        return []

    runtime = Runtime(handler)

    async def go():
        runtime.dispatch([Command("crash", crash), Command("ok", ok)])
        await runtime.run_until_idle()

    with caplog.at_level(logging.ERROR):
        asyncio.run(go())
    assert seen == ["done"]
    assert "crash" in caplog.text


def test_runtime_feeds_follow_up_commands():
    order = []

    async def first(emit):
        emit("first")

    async def second(emit):
        emit("second")

    def handler(msg):
        order.append(msg)
        return [Command("second", second)] if msg == "first" else []

    runtime = Runtime(handler)

    async def go():
        runtime.dispatch([Command("first", first)])
        await runtime.run_until_idle()

    asyncio.run(go())
    assert order == ["first", "second"]
    assert runtime.handled == 2


def test_cancel_scope_cancels_attached_tasks():
    async def go():
        scope = CancelScope()
        task = asyncio.create_task(asyncio.sleep(10))
        scope.attach(task)
        assert scope.active == 1
        assert scope.cancel() == 1
        await asyncio.gather(task, return_exceptions=True)
        assert task.cancelled()

        # tasks attached after cancel are cancelled straight away
        late = asyncio.create_task(asyncio.sleep(10))
        scope.attach(late)
        await asyncio.gather(late, return_exceptions=True)
        assert late.cancelled()

    asyncio.run(go())


def test_background_commands_share_a_bounded_budget():
    running = {"now": 0, "peak": 0}

    async def work(emit):
        running["now"] += 1
        running["peak"] = max(running["peak"], running["now"])
        await asyncio.sleep(0.01)
        running["now"] -= 1

    runtime = Runtime(lambda msg: [], background_limit=2)

    async def go():
        runtime.dispatch([Command(f"bg{i}", work, background=True) for i in range(6)])
        await runtime.run_until_idle()

    asyncio.run(go())
    assert running["peak"] == 2


def test_items_changed_invalidates_view_corpus(settings, seeded_store, stubs):
    reader = _reader(settings, seeded_store, stubs.Embedder())

    async def go():
        await reader.views.corpus()
        await asyncio.to_thread(seeded_store.save_items, [stubs.item("n1", "Climate news", age_h=-1)])
        await reader.runtime.run_until_idle()
        corpus = await reader.views.corpus()
        return [it.id for it in corpus]

    ids = asyncio.run(go())
    assert "n1" in ids
    assert reader.views.corpus_loads == 2
