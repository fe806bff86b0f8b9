# observer/ui/console.py
"""
Line-mode terminal driver.

Each input line is one key name ("esc", "enter", "ctrl+g", ...) or text that
is typed character by character; an empty line is "enter" and end of input
quits. A plain-text frame is written whenever the view changes.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from observer.models import Mode
from observer.pipeline.messages import KeyPressed

from .app import QUIT, App, ViewState

log = logging.getLogger(__name__)

KEY_NAMES = {"esc", "enter", "backspace", "space", "up", "down", "ctrl+c", "ctrl+g", "ctrl+r", "ctrl+t"}
MAX_ROWS = 15


def parse_keys(line: str) -> list[str]:
    """Keys for one input line; `line` still carries its newline, "" means end of input."""
    if line == "":
        return [QUIT]
    text = line.rstrip("\r\n")
    if not text:
        return ["enter"]
    if text.strip().lower() in KEY_NAMES:
        return [text.strip().lower()]
    return ["space" if ch == " " else ch for ch in text]


def render(state: ViewState) -> str:
    lines = [f"[{state.mode.value}] {state.status}".rstrip()]
    if state.mode == Mode.COMPOSING:
        lines.append(f"/{state.query}_")
    elif state.mode == Mode.ARTICLE and state.article is not None:
        art = state.article
        lines.append(art.title)
        lines.append(f"{art.source_name}  {art.url}")
        if art.summary:
            lines.append("")
            lines.append(art.summary)
    elif state.mode == Mode.HISTORY:
        for i, entry in enumerate(state.history[:MAX_ROWS]):
            mark = ">" if i == state.cursor else " "
            pin = "*" if entry.pinned else " "
            lines.append(f"{mark}{pin} {entry.raw_query}  ({entry.result_count} results, used {entry.use_count}x)")
    else:
        for i, item in enumerate(state.items[:MAX_ROWS]):
            mark = ">" if i == state.cursor else " "
            row = f"{mark} {i + 1:2d}. {item.title} ({item.source_name})"
            rec = state.scores.get(item.id)
            if rec is not None and rec.display_score is not None:
                row += f"  {rec.tier.name.lower()} {rec.display_score:.3f}"
            lines.append(row)
    if state.progress.get("rerank_total"):
        lines.append(f"rerank {state.progress['rerank_done']}/{state.progress['rerank_total']}")
    if state.diagnostics:
        lines.append("-- events --")
        for ev in state.diagnostics:
            lines.append(f"{ev['kind']} {ev.get('token', '')} {ev.get('err', '')}".rstrip())
    return "\n".join(lines)


async def run_interactive(
    reader,
    read_line: Callable[[], Awaitable[str]],
    write: Callable[[str], None],
) -> None:
    """
    Drive `reader` (built with ``interactive=True``) until the user quits.

    Input is read by a separate task and posted into the runtime, so the
    message loop keeps running while a line is awaited.
    """
    app: App = reader.app
    runtime = reader.runtime
    last = {"frame": None}

    def redraw() -> None:
        frame = render(app.view())
        if frame != last["frame"]:
            last["frame"] = frame
            write(frame)

    async def feed() -> None:
        while not app.quit:
            line = await read_line()
            for key in parse_keys(line):
                runtime.post(KeyPressed(key))
            if line == "":
                return

    runtime.dispatch(app.start())
    redraw()
    feeder = asyncio.create_task(feed())
    try:
        await runtime.run_forever(lambda: app.quit, after_step=redraw)
    finally:
        feeder.cancel()
        await asyncio.gather(feeder, return_exceptions=True)
        await runtime.shutdown()
    log.info("Interactive session ended after %s messages", runtime.handled)
