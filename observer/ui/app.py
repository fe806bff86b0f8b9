# observer/ui/app.py
"""
Interactive state machine.

`App.update` takes one message (a key press or a command result) and returns
the commands to run next; `App.view` returns everything a renderer needs.
Rendering itself lives elsewhere; this module never touches the terminal.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from observer.config import Settings, get_settings
from observer.errors import FatalSessionError
from observer.models import HistoryEntry, Item, Mode, ScoreRecord
from observer.obs.events import RingBufferHandler
from observer.pipeline import commands
from observer.pipeline.commands import Command
from observer.pipeline.messages import (
    CorpusLoaded,
    EntryReranked,
    HistoryChanged,
    HistoryLoaded,
    HistorySaved,
    ItemMarked,
    ItemsChanged,
    ItemsLoaded,
    KeyPressed,
    QueryEmbedded,
    RerankComplete,
    ViewRefreshed,
)
from observer.pipeline.orchestrator import Orchestrator
from observer.pipeline.views import PersistedViews
from observer.store import SearchHistory, Store

from .navigation import Navigator

log = logging.getLogger(__name__)

_PIPELINE_MESSAGES = (QueryEmbedded, CorpusLoaded, EntryReranked, RerankComplete, HistorySaved)

QUIT = "ctrl+c"
CANCEL = "ctrl+g"
DIAGNOSTICS = "ctrl+t"


@dataclass
class ViewState:
    mode: Mode
    items: list[Item] = field(default_factory=list)
    scores: dict[str, ScoreRecord] = field(default_factory=dict)
    history: list[HistoryEntry] = field(default_factory=list)
    article: Item | None = None
    cursor: int = 0
    query: str = ""
    status: str = ""
    progress: dict = field(default_factory=dict)
    diagnostics: list[dict] = field(default_factory=list)


class App:
    def __init__(
        self,
        store: Store,
        history: SearchHistory,
        orchestrator: Orchestrator,
        views: PersistedViews | None = None,
        settings: Settings | None = None,
        ring: RingBufferHandler | None = None,
    ):
        self.store = store
        self.history = history
        self.orch = orchestrator
        self.views = views
        self.settings = settings or get_settings()
        self.ring = ring
        self.nav = Navigator(on_cancel=self.orch.cancel)

        self.items: list[Item] = []
        self.entries: list[HistoryEntry] = []
        self.article: Item | None = None
        self.buffer = ""
        self.cursors = {mode: 0 for mode in Mode}
        self.status = ""
        self.show_diagnostics = False
        self.quit = False
        self.browse_limit = 500

    @property
    def mode(self) -> Mode:
        return self.nav.mode

    def start(self) -> list[Command]:
        cmds = [commands.load_items(self.store, self.browse_limit)]
        if self.views is not None:
            cmds += self.views.refresh_commands()
        return cmds

    # ------------------------------------------------------------------
    # dispatch
    # ------------------------------------------------------------------
    def update(self, msg) -> list[Command]:
        try:
            return self._update(msg)
        except FatalSessionError as e:
            log.error("Search session aborted: %s", e)
            self.items = self.orch.close_session() or self.items
            self.nav.reset(Mode.BROWSING)
            self.status = f"search failed: {e.message}"
            return []

    def _update(self, msg) -> list[Command]:
        if isinstance(msg, KeyPressed):
            return self._on_key(msg.key)
        if isinstance(msg, _PIPELINE_MESSAGES):
            before = self.orch.status
            cmds = self.orch.handle(msg)
            # app notices stand until the pipeline has something new to say
            if self.orch.status != before:
                self.status = ""
            self._clamp(Mode.RESULTS, len(self.orch.results()))
            return cmds
        if isinstance(msg, ItemsLoaded):
            return self._on_items_loaded(msg)
        if isinstance(msg, ItemsChanged):
            if self.views is not None:
                self.views.invalidate()
            return [commands.load_items(self.store, self.browse_limit)]
        if isinstance(msg, ItemMarked):
            if msg.err is not None:
                self.status = f"could not mark item: {msg.err}"
            return []
        if isinstance(msg, HistoryLoaded):
            if msg.err is not None:
                self.status = f"could not load history: {msg.err}"
            else:
                self.entries = list(msg.entries)
                self._clamp(Mode.HISTORY, len(self.entries))
            return []
        if isinstance(msg, HistoryChanged):
            return self._on_history_changed(msg)
        if isinstance(msg, ViewRefreshed):
            return self.views.handle(msg) if self.views is not None else []
        log.debug("Unhandled message %s", type(msg).__name__)
        return []

    def _on_items_loaded(self, msg: ItemsLoaded) -> list[Command]:
        if msg.err is not None:
            self.status = f"could not load items: {msg.err}"
            return []
        if self.orch.has_snapshot:
            # results are on screen; refresh the list they return to
            self.orch.replace_snapshot(msg.items)
        self.items = list(msg.items)
        self._clamp(Mode.BROWSING, len(self.items))
        return []

    def _on_history_changed(self, msg: HistoryChanged) -> list[Command]:
        if msg.err is not None:
            self.status = f"history {msg.action} failed: {msg.err}"
            return []
        cmds: list[Command] = []
        if msg.action == "pin" and self.views is not None:
            self.status = "search pinned"
            cmds += self.views.refresh_commands()
        if self.mode == Mode.HISTORY:
            cmds.append(commands.load_history(self.history, self.settings.history_retention))
        return cmds

    def _on_key(self, key: str) -> list[Command]:
        # globals first so no mode can swallow them
        if key == QUIT:
            self.quit = True
            return []
        if key == CANCEL:
            if self.orch.cancel():
                self.status = ""
            return []
        if key == DIAGNOSTICS:
            self.show_diagnostics = not self.show_diagnostics
            return []

        handler = {
            Mode.BROWSING: self._key_browsing,
            Mode.COMPOSING: self._key_composing,
            Mode.RESULTS: self._key_results,
            Mode.HISTORY: self._key_history,
            Mode.ARTICLE: self._key_article,
        }[self.mode]
        return handler(key)

    # ------------------------------------------------------------------
    # per-mode bindings
    # ------------------------------------------------------------------
    def _key_browsing(self, key: str) -> list[Command]:
        if self._move(key, len(self.items)):
            return []
        if key == "enter":
            return self._open_article(self._selected(self.items))
        if key == "/":
            return self._compose()
        if key == "m":
            return self._pivot(self._selected(self.items))
        if key == "ctrl+r":
            return self._open_history()
        if key == "q":
            self.quit = True
        return []

    def _key_composing(self, key: str) -> list[Command]:
        if key == "esc":
            self.nav.leave()
            return []
        if key == "backspace":
            self.buffer = self.buffer[:-1]
            return []
        if key == "enter":
            return self._commit(self.buffer)
        if len(key) == 1:
            self.buffer += key
        elif key == "space":
            self.buffer += " "
        return []

    def _key_results(self, key: str) -> list[Command]:
        results = self.orch.results()
        if self._move(key, len(results)):
            return []
        if key == "esc":
            return self._back_from_results()
        if key == "enter":
            return self._open_article(self._selected(results))
        if key == "/":
            return self._compose()
        if key == "m":
            return self._pivot(self._selected(results))
        if key == "R":
            cmds = self.orch.apply_rerank()
            self.status = "" if cmds else "nothing to rerank"
            return cmds
        if key == "p":
            return self._pin_current()
        if key == "ctrl+r":
            return self._open_history()
        return []

    def _key_history(self, key: str) -> list[Command]:
        if self._move(key, len(self.entries)):
            return []
        entry = self._selected(self.entries)
        if key in ("esc", "q"):
            self.nav.leave()
            return []
        if entry is None:
            return []
        if key == "enter":
            self.nav.replace(Mode.RESULTS)
            self.cursors[Mode.RESULTS] = 0
            return self.orch.submit(entry.raw_query, self.items)
        if key == "p":
            action = "unpin" if entry.pinned else "pin"
            return [commands.change_history(self.history, entry.id, action)]
        if key == "d":
            return [commands.change_history(self.history, entry.id, "delete")]
        return []

    def _key_article(self, key: str) -> list[Command]:
        if key in ("esc", "q"):
            self.nav.leave()
            self.article = None
            return []
        if key == "m" and self.article is not None:
            return self._pivot(self.article, lateral=True)
        return []

    # ------------------------------------------------------------------
    # actions
    # ------------------------------------------------------------------
    def _compose(self) -> list[Command]:
        self.buffer = ""
        self.nav.enter(Mode.COMPOSING)
        return []

    def _commit(self, text: str) -> list[Command]:
        self.nav.leave()
        if not text.strip():
            return []
        if self.mode != Mode.RESULTS:
            self.nav.enter(Mode.RESULTS)
        self.cursors[Mode.RESULTS] = 0
        self.status = ""
        return self.orch.submit(text, self.items)

    def _pivot(self, seed: Item | None, lateral: bool = False) -> list[Command]:
        if seed is None:
            return []
        try:
            cmds = self.orch.pivot(seed, self.items)
        except ValueError:
            self.status = "this item has no embedding yet"
            return []
        if lateral:
            self.nav.replace(Mode.RESULTS)
            self.article = None
        elif self.mode != Mode.RESULTS:
            self.nav.enter(Mode.RESULTS)
        self.cursors[Mode.RESULTS] = 0
        self.status = ""
        return cmds

    def _back_from_results(self) -> list[Command]:
        # first esc stops work, the next one leaves
        if self.orch.in_flight:
            self.orch.cancel()
            self.status = ""
            return []
        self.nav.leave()
        self.items = self.orch.close_session() or self.items
        self._clamp(Mode.BROWSING, len(self.items))
        self.status = ""
        return []

    def _open_article(self, item: Item | None) -> list[Command]:
        if item is None:
            return []
        self.article = item
        self.nav.enter(Mode.ARTICLE)
        if item.read:
            return []
        item.read = True
        return [commands.mark_read(self.store, item.id)]

    def _open_history(self) -> list[Command]:
        self.nav.enter(Mode.HISTORY)
        self.cursors[Mode.HISTORY] = 0
        return [commands.load_history(self.history, self.settings.history_retention)]

    def _pin_current(self) -> list[Command]:
        sess = self.orch.session
        if sess is None or sess.is_pivot:
            self.status = "only searches can be pinned"
            return []
        if sess.history_id is None:
            self.status = "search not saved yet"
            return []
        return [commands.change_history(self.history, sess.history_id, "pin")]

    # ------------------------------------------------------------------
    # cursor helpers
    # ------------------------------------------------------------------
    def _move(self, key: str, size: int) -> bool:
        cur = self.cursors[self.mode]
        if key in ("j", "down"):
            self.cursors[self.mode] = min(cur + 1, max(size - 1, 0))
            return True
        if key in ("k", "up"):
            self.cursors[self.mode] = max(cur - 1, 0)
            return True
        return False

    def _selected(self, seq):
        i = self.cursors[self.mode]
        return seq[i] if 0 <= i < len(seq) else None

    def _clamp(self, mode: Mode, size: int) -> None:
        self.cursors[mode] = min(self.cursors[mode], max(size - 1, 0))

    # ------------------------------------------------------------------
    # presentation
    # ------------------------------------------------------------------
    def view(self) -> ViewState:
        mode = self.mode
        status = self.status or (self.orch.status if mode == Mode.RESULTS else "")
        state = ViewState(mode=mode, cursor=self.cursors[mode], status=status)
        if mode == Mode.BROWSING:
            state.items = list(self.items)
        elif mode == Mode.RESULTS:
            state.items = self.orch.results()
            sess = self.orch.session
            if sess is not None:
                state.scores = {i: sess.records[i] for i in sess.order}
            state.progress = self.orch.progress
        elif mode == Mode.HISTORY:
            state.history = list(self.entries)
        elif mode == Mode.ARTICLE:
            state.article = self.article
        elif mode == Mode.COMPOSING:
            state.query = self.buffer
        if self.show_diagnostics and self.ring is not None:
            state.diagnostics = self.ring.last(20)
        return state
