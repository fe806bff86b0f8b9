# observer/pipeline/runtime.py
"""
Asyncio runtime for the message loop.

A single coroutine drains the inbox and hands each message to the handler,
which returns commands. Commands run as tasks attached to their session's
cancel scope; whatever they emit is queued back into the inbox. Nothing but
the loop itself calls the handler, so core state is never shared between
tasks.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable

from .commands import Command

log = logging.getLogger(__name__)

Handler = Callable[[object], Iterable[Command]]


class Runtime:
    def __init__(self, handler: Handler, background_limit: int = 2):
        self.handler = handler
        self.inbox: asyncio.Queue = asyncio.Queue()
        self._background = asyncio.Semaphore(background_limit)
        self._tasks: set[asyncio.Task] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self.handled = 0

    def post(self, msg) -> None:
        self.inbox.put_nowait(msg)

    def post_threadsafe(self, msg) -> None:
        """For producers outside the loop, e.g. store change listeners on a worker thread."""
        if self._loop is None or not self._loop.is_running():
            self.post(msg)
            return
        self._loop.call_soon_threadsafe(self.inbox.put_nowait, msg)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def dispatch(self, commands: Iterable[Command]) -> None:
        self._loop = asyncio.get_running_loop()
        for cmd in commands or ():
            task = asyncio.create_task(self._run(cmd), name=cmd.name)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            if cmd.scope is not None:
                cmd.scope.attach(task)

    async def _run(self, cmd: Command) -> None:
        try:
            if cmd.background:
                async with self._background:
                    await cmd.run(self.post)
            else:
                await cmd.run(self.post)
        except asyncio.CancelledError:
            log.debug("Command %s cancelled", cmd.name)
            raise
        except Exception:
            # commands report failures as messages; anything else is a bug
            log.exception("Command %s crashed", cmd.name)

    def step(self, msg) -> None:
        self.handled += 1
        self.dispatch(self.handler(msg))

    async def run_until_idle(self, poll: float = 0.05) -> None:
        """Process messages until the inbox is empty and no command is running."""
        self._loop = asyncio.get_running_loop()
        while self._tasks or not self.inbox.empty():
            try:
                msg = await asyncio.wait_for(self.inbox.get(), poll)
            except asyncio.TimeoutError:
                continue
            self.step(msg)

    async def run_forever(
        self, should_stop: Callable[[], bool], after_step: Callable[[], None] | None = None
    ) -> None:
        """Process messages until `should_stop` holds, calling `after_step` after each one."""
        self._loop = asyncio.get_running_loop()
        while not should_stop():
            msg = await self.inbox.get()
            self.step(msg)
            if after_step is not None:
                after_step()

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
