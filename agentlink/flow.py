"""Flow-control and future helpers shared by the connection and streams."""

from __future__ import annotations

import asyncio
from typing import Any


class FlowControl:
    """
    Counted pause gate for a producer.

    The gate reopens only once every pause has been matched by a resume.
    ``drain()`` blocks while the gate is paused, mirroring
    ``StreamWriter.drain()``.
    """

    def __init__(self) -> None:
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._pauses = 0

    @property
    def paused(self) -> bool:
        return self._pauses > 0

    async def drain(self) -> None:
        """Block until the gate is open again."""
        await self._resumed.wait()

    def pause(self) -> None:
        self._pauses += 1
        self._resumed.clear()

    def resume(self) -> None:
        if self._pauses == 0:
            return
        self._pauses -= 1
        if self._pauses == 0:
            self._resumed.set()


def _retrieve_exception(future: asyncio.Future[Any]) -> None:
    if not future.cancelled():
        future.exception()


def create_quiet_future(loop: asyncio.AbstractEventLoop | None = None) -> asyncio.Future[Any]:
    """Create a future whose exception is marked retrieved once set.

    Request results and readiness gates may fail without anyone awaiting
    them; this keeps asyncio from logging "exception was never retrieved".
    """
    future = (loop or asyncio.get_running_loop()).create_future()
    future.add_done_callback(_retrieve_exception)
    return future
