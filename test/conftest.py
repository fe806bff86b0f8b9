# test/conftest.py
import asyncio
import re
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from observer.config import Settings
from observer.models import Item
from observer.store import SearchHistory, Store

VOCAB = ["climate", "risk", "flood", "insurance", "carbon", "football", "election", "chip", "warming"]
_WORD = re.compile(r"[a-z]+")
BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def embed_text(text: str) -> np.ndarray:
    """Bag-of-words over a tiny vocabulary, plus a bias term so no vector is zero."""
    words = _WORD.findall(text.lower())
    vec = np.array([words.count(w) for w in VOCAB] + [0.1], dtype=np.float32)
    return vec / np.linalg.norm(vec)


class StubEmbedder:
    """Deterministic stand-in for the embedding service; never touches a model or the network."""

    name = "stub-embed"

    def __init__(self, fail: bool = False, gate: asyncio.Event | None = None):
        self.fail = fail
        self.gate = gate
        self.calls: list[str] = []

    async def embed_query(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("embedding service down")
        return embed_text(text)

    async def embed_batch(self, texts: list[str]) -> np.ndarray:
        return np.vstack([embed_text(t) for t in texts])

    async def aclose(self) -> None:
        pass


def _keyword_score(query: str, text: str) -> float:
    # "insurance" is the reranker's idea of relevance, so reranking visibly reorders
    score = 0.9 if "insurance" in text.lower() else 0.3
    if "football" in text.lower():
        score = 0.05
    return score


class StubBatchReranker:
    name = "stub-batch"
    auto_apply = True

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[tuple[str, int]] = []

    async def rerank(self, query: str, texts: list[str]) -> list[float]:
        self.calls.append((query, len(texts)))
        if self.fail:
            raise RuntimeError("rerank service down")
        return [_keyword_score(query, t) for t in texts]

    async def aclose(self) -> None:
        pass


class StubSequentialReranker:
    name = "stub-slow"
    auto_apply = False

    def __init__(self):
        self.calls: list[str] = []

    async def score_one(self, query: str, text: str) -> float:
        self.calls.append(text)
        return _keyword_score(query, text)

    async def aclose(self) -> None:
        pass


def make_item(item_id: str, title: str, summary: str = "", *, age_h: int = 0, embed: bool = True) -> Item:
    it = Item(
        id=item_id,
        source_type="rss",
        source_name="Wire",
        title=title,
        summary=summary,
        url=f"https://example.com/{item_id}",
        published=BASE_TIME - timedelta(hours=age_h),
        fetched=BASE_TIME - timedelta(hours=age_h),
    )
    if embed:
        it.embedding = embed_text(it.text())
    return it


SAMPLE = [
    ("a1", "Climate risk reshapes insurance markets", "Insurers price flood exposure"),
    ("a2", "Flood defences fail as climate warms", "Coastal towns face rising risk"),
    ("a3", "Carbon markets rally", "Climate policy lifts prices"),
    ("a4", "Football final ends in a draw", "Fans celebrate in the rain"),
    ("a5", "Election results due tonight", "Polls close at ten"),
    ("a6", "Chip makers expand fabs", "Supply risk eases"),
]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        env="test",
        db_path=str(tmp_path / "observer.db"),
        log_file=None,
        embed_backend="none",
        rerank_backend="none",
        history_retention=50,
        embed_timeout_s=5,
        corpus_timeout_s=5,
        rerank_timeout_s=5,
        rerank_entry_timeout_s=5,
    )


@pytest.fixture
def store(settings):
    s = Store(settings.db_path)
    yield s
    s.close()


@pytest.fixture
def sample_items():
    return [make_item(i, t, s, age_h=n) for n, (i, t, s) in enumerate(SAMPLE)]


@pytest.fixture
def seeded_store(store, sample_items):
    store.save_items(sample_items)
    return store


@pytest.fixture
def clock():
    """Strictly increasing fake wall clock."""
    t = {"now": 1_700_000_000.0}

    def tick() -> float:
        t["now"] += 1.0
        return t["now"]

    return tick


@pytest.fixture
def history(store, clock):
    return SearchHistory(store, retention=50, snapshot_size=50, clock=clock)


@pytest.fixture
def stubs():
    """Stub classes and helpers, handed to tests without importing conftest."""

    class _Stubs:
        Embedder = StubEmbedder
        BatchReranker = StubBatchReranker
        SequentialReranker = StubSequentialReranker
        embed = staticmethod(embed_text)
        item = staticmethod(make_item)

    return _Stubs
