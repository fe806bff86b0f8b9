# observer/ui/navigation.py
from __future__ import annotations

import logging
from collections.abc import Callable

from observer.models import Mode

log = logging.getLogger(__name__)

# leaving one of these cancels whatever the search session has in flight
_CANCELS_ON_LEAVE = {Mode.RESULTS, Mode.COMPOSING}


class Navigator:
    """
    Current mode plus a bounded stack of return targets.

    `enter` pushes, `leave` pops, `replace` swaps the current mode in place.
    Lateral moves (history -> results, article -> results) use `replace`, so
    cycling between modes never grows the stack. If the stack is full the
    oldest frame is dropped.
    """

    def __init__(self, on_cancel: Callable[[], object] | None = None, max_depth: int = 8):
        self.mode = Mode.BROWSING
        self.stack: list[Mode] = []
        self.max_depth = max_depth
        self._on_cancel = on_cancel

    def enter(self, mode: Mode) -> None:
        if mode == self.mode:
            return
        self.stack.append(self.mode)
        if len(self.stack) > self.max_depth:
            log.warning("Mode stack over %d frames; dropping %s", self.max_depth, self.stack[0].value)
            del self.stack[0]
        self.mode = mode

    def leave(self, default: Mode = Mode.BROWSING) -> Mode:
        if self.mode in _CANCELS_ON_LEAVE and self._on_cancel is not None:
            self._on_cancel()
        self.mode = self.stack.pop() if self.stack else default
        return self.mode

    def replace(self, mode: Mode) -> None:
        # a frame equal to the new mode would make "back" a no-op
        while self.stack and self.stack[-1] == mode:
            self.stack.pop()
        self.mode = mode

    def reset(self, mode: Mode = Mode.BROWSING) -> None:
        self.stack.clear()
        self.mode = mode

    @property
    def depth(self) -> int:
        return len(self.stack)
