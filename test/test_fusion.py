import numpy as np

from observer.models import Provenance, ScoreRecord
from observer.retrieval import cosine_matches, order_ids, snapshot_rows


def _rec(lexical=None, cosine=None, rerank=None):
    r = ScoreRecord()
    if lexical is not None:
        r.add_lexical(lexical)
    if cosine is not None:
        r.add_cosine(cosine)
    if rerank is not None:
        r.add_rerank(rerank)
    return r


def test_provenance_bits_accumulate():
    r = _rec(lexical=3.0)
    r.add_cosine(0.4)
    assert r.provenance == Provenance.LEXICAL | Provenance.COSINE
    assert r.tier is Provenance.COSINE
    assert r.display_score == 0.4
    r.add_rerank(0.9)
    assert r.provenance & Provenance.LEXICAL
    assert r.display_score == 0.9


def test_higher_tier_outranks_higher_score():
    records = {
        "lex": _rec(lexical=25.0),
        "cos": _rec(cosine=0.2),
        "rr": _rec(cosine=0.1, rerank=0.01),
    }
    assert order_ids(["lex", "cos", "rr"], records) == ["rr", "cos", "lex"]


def test_ties_keep_incoming_order():
    records = {i: _rec(cosine=0.5) for i in "abcd"}
    assert order_ids(["c", "a", "d", "b"], records) == ["c", "a", "d", "b"]


def test_cosine_matches_include_exclude_and_dimension_skip(stubs):
    items = [
        stubs.item("x1", "climate risk"),
        stubs.item("x2", "climate"),
        stubs.item("x3", "football"),
        stubs.item("seed", "climate risk flood"),
        stubs.item("odd", "climate", embed=False),
    ]
    items[-1].embedding = np.ones(3, dtype=np.float32)
    q = stubs.embed("climate risk")

    got = cosine_matches(q, items, limit=1, include={"x3"}, exclude={"seed"})
    ids = [i for i, _ in got]
    assert ids == ["x1", "x3"]
    assert got[0][1] > got[1][1]


def test_snapshot_rows_carry_scores_and_rank():
    records = {"a": _rec(lexical=2.0, cosine=0.7), "b": _rec(lexical=1.0)}
    rows = snapshot_rows(["a", "b"], records, "7", limit=1)
    assert len(rows) == 1
    assert rows[0].rank == 1
    assert rows[0].session_id == "7"
    assert rows[0].lexical == 2.0 and rows[0].cosine == 0.7
    assert rows[0].provenance == Provenance.LEXICAL | Provenance.COSINE
