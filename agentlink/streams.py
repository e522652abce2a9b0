"""Streaming adapters for file transfer over binary frames.

UploadChannel pushes chunks for a request id and terminates the data channel
with an empty frame. DownloadStream is a watermarked producer/consumer queue fed
by the streaming handler of a download request and drained by ``pull()``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from typing import TYPE_CHECKING, Any

from .errors import AgentClientError, AgentResponseError
from .flow import FlowControl
from .multiplexer import CONTINUE, Done, Failed, HandlerResult
from .protocol import encode_binary

if TYPE_CHECKING:
    from .connection import ConnectionManager

_LOGGER = logging.getLogger(__name__)


class UploadChannel:
    """Push-based chunk sink tied to one request id.

    The channel only ends the data stream; the request itself completes when
    its structured handler sees the agent's final reply.
    """

    def __init__(self, connection: ConnectionManager, request_id: int) -> None:
        self.request_id = request_id
        self._connection = connection
        self._closed = False
        self.bytes_sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, chunk: bytes) -> None:
        """Send one chunk. Empty chunks are skipped."""
        if self._closed:
            raise AgentClientError(f"Upload channel {self.request_id} is closed")
        if not chunk:
            return
        await self._connection.send(encode_binary(self.request_id, chunk))
        self.bytes_sent += len(chunk)

    async def close(self) -> None:
        """Send the end-of-stream marker once."""
        if self._closed:
            return
        self._closed = True
        await self._connection.send(encode_binary(self.request_id))
        _LOGGER.debug(
            "Upload %d finished (%d bytes)", self.request_id, self.bytes_sent
        )

    async def send_all(self, source: Iterable[bytes] | AsyncIterable[bytes]) -> int:
        """Pump every chunk of ``source`` then close. Returns bytes sent."""
        if isinstance(source, AsyncIterable):
            async for chunk in source:
                await self.write(chunk)
        else:
            for chunk in source:
                await self.write(chunk)
        await self.close()
        return self.bytes_sent

    async def __aenter__(self) -> UploadChannel:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            await self.close()


class DownloadStream:
    """Bounded chunk queue with a producer and a pull-based consumer.

    Producer side: ``push()``, ``end()``, ``fail()`` or ``handle_response()``
    registered as the request's streaming handler. ``push()`` returns False
    once ``high_water`` chunks are buffered; ``on_pause`` fires at that point
    and ``on_resume`` once the consumer drains down to ``low_water``. A
    saturated stream still accepts chunks, so the shared socket keeps being
    read; producers that can wait use ``drain()``.

    Consumer side: ``pull()`` returns the next chunk, or None after the end
    marker once the queue is empty. Also an async iterator.
    """

    def __init__(
        self,
        request_id: int | None = None,
        *,
        high_water: int = 16,
        low_water: int = 4,
        on_pause: Callable[[], None] | None = None,
        on_resume: Callable[[], None] | None = None,
    ) -> None:
        if high_water < 1 or not 0 <= low_water < high_water:
            raise ValueError("Need 0 <= low_water < high_water and high_water >= 1")

        self.request_id = request_id
        self._high_water = high_water
        self._low_water = low_water
        self._on_pause = on_pause
        self._on_resume = on_resume

        self._chunks: deque[bytes] = deque()
        self._readable = asyncio.Event()
        self._ended = False
        self._error: BaseException | None = None
        self._flow = FlowControl()
        self.bytes_received = 0

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    @property
    def ended(self) -> bool:
        """True once no further chunks will be accepted."""
        return self._ended

    @property
    def paused(self) -> bool:
        return self._flow.paused

    @property
    def buffered(self) -> int:
        return len(self._chunks)

    def push(self, chunk: bytes) -> bool:
        """Queue a chunk. Returns False when the producer should pause."""
        if self._ended:
            _LOGGER.debug("Dropping chunk for finished download %s", self.request_id)
            return False

        self._chunks.append(bytes(chunk))
        self.bytes_received += len(chunk)
        self._readable.set()

        if not self.paused and len(self._chunks) >= self._high_water:
            self._flow.pause()
            if self._on_pause:
                self._on_pause()
        return not self.paused

    async def drain(self) -> None:
        """Wait until the consumer has caught up with the producer."""
        await self._flow.drain()

    def end(self) -> None:
        """Mark end-of-stream; buffered chunks remain readable."""
        if self._ended:
            return
        self._ended = True
        self._readable.set()
        self._release()

    def fail(self, error: BaseException) -> None:
        """End the stream with an error raised after buffered chunks."""
        if self._ended:
            return
        self._error = error
        self.end()

    def handle_response(self, error: BaseException | None, message: Any) -> HandlerResult:
        """Streaming handler feeding this stream from a download request."""
        if error is not None:
            self.fail(error)
            return Failed(error)

        if isinstance(message, dict):
            if "success" in message and not message["success"]:
                failure = AgentResponseError(str(message.get("error")), message)
                self.fail(failure)
                return Failed(failure)
            return CONTINUE

        if not message:
            self.end()
            return Done(self.bytes_received)

        self.push(message)
        return CONTINUE

    def _release(self) -> None:
        if self.paused:
            self._flow.resume()
            if self._on_resume:
                self._on_resume()

    # -------------------------------------------------------------------------
    # Consumer side
    # -------------------------------------------------------------------------

    async def pull(self) -> bytes | None:
        """Next chunk, or None once the stream has ended and drained."""
        while not self._chunks:
            if self._ended:
                if self._error is not None:
                    raise self._error
                return None
            self._readable.clear()
            await self._readable.wait()

        chunk = self._chunks.popleft()
        if self.paused and len(self._chunks) <= self._low_water:
            self._release()
        return chunk

    async def read_all(self) -> bytes:
        """Drain the stream into a single bytes object."""
        return b"".join([chunk async for chunk in self])

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.pull()
        if chunk is None:
            raise StopAsyncIteration
        return chunk
