import io
import json
import logging
from contextlib import contextmanager

import pytest

from observer.cli import main
from observer.config import get_settings
from observer.store import SearchHistory, Store


@contextmanager
def restored_logging():
    """main() reconfigures logging; put it back on exit."""
    saved = [(lg, lg.handlers[:], lg.level) for lg in (logging.getLogger(), logging.getLogger("observer.events"))]
    yield
    for lg, handlers, level in saved:
        for h in lg.handlers[:]:
            if h not in handlers:
                lg.removeHandler(h)
                h.close()
        for h in handlers:
            if h not in lg.handlers:
                lg.addHandler(h)
        lg.setLevel(level)


@pytest.fixture(autouse=True)
def restore_logging():
    with restored_logging():
        yield


@pytest.fixture
def db(tmp_path, monkeypatch, sample_items):
    path = str(tmp_path / "cli.db")
    store = Store(path)
    store.save_items(sample_items)
    store.close()
    monkeypatch.setenv("OBSERVER_DB", path)
    monkeypatch.setenv("OBSERVER_LOG_FILE", "")
    monkeypatch.setenv("EMBED_BACKEND", "none")
    monkeypatch.setenv("RERANK_BACKEND", "none")
    get_settings.cache_clear()
    yield path
    get_settings.cache_clear()


def _run(capsys, *argv):
    code = main(list(argv))
    captured = capsys.readouterr()
    return code, (json.loads(captured.out) if captured.out else None)


def test_search_prints_ranked_results(db, capsys):
    code, out = _run(capsys, "search", "Climate Risk")
    assert code == 0
    assert out["query"] == "Climate Risk"
    assert [r["id"] for r in out["results"]] == ["a1", "a2"]
    assert out["results"][0]["rank"] == 1
    assert out["cache"] is None


def test_history_lists_saved_searches(db, capsys):
    _run(capsys, "search", "flood")
    code, out = _run(capsys, "history")
    assert code == 0
    assert [e["query"] for e in out["entries"]] == ["flood"]


def test_pin_and_unpin(db, capsys):
    _run(capsys, "search", "flood")
    store = Store(db)
    entry_id = SearchHistory(store).get("flood").id
    store.close()

    code, out = _run(capsys, "pin", str(entry_id))
    assert out == {"id": entry_id, "pinned": True, "updated": True}
    code, out = _run(capsys, "unpin", "999")
    assert out["updated"] is False


def test_db_flag_overrides_environment(db, tmp_path, capsys):
    code, out = _run(capsys, "--db", str(tmp_path / "other.db"), "search", "flood")
    assert code == 0
    assert out["results"] == []


def test_tui_reads_keys_from_stdin(db, capsys, monkeypatch):
    monkeypatch.setattr("sys.stdin", io.StringIO("/\nflood\n\n"))
    assert main(["tui"]) == 0
    frames = capsys.readouterr().out
    assert "[composing]" in frames
    assert "Flood defences fail as climate warms" in frames


def test_logging_is_restored_after_main(db, capsys):
    root = logging.getLogger()
    before = root.handlers[:], root.level
    with restored_logging():
        _run(capsys, "--verbose", "history")
        assert root.level == logging.DEBUG
    assert (root.handlers, root.level) == before
