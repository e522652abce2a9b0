"""Pytest configuration and fixtures for agentlink tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from agentlink.config import AgentConfig
from agentlink.protocol import encode_binary
from agentlink.ws_client import AgentWsMessage, AgentWsMessageType


class FakeWsClient:
    """In-memory stand-in for AgentWsClient.

    Inbound traffic is fed with feed_* helpers; outbound frames are recorded
    in ``sent``.
    """

    def __init__(self, *, connect_error: Exception | None = None) -> None:
        self.connect_error = connect_error
        self.endpoint: str | None = None
        self.connect_kwargs: dict[str, Any] = {}
        self.sent: list[str | bytes] = []
        self.closed = False
        self._incoming: asyncio.Queue[AgentWsMessage] = asyncio.Queue()

    async def connect(self, endpoint: str, **kwargs: Any) -> None:
        self.endpoint = endpoint
        self.connect_kwargs = kwargs
        await asyncio.sleep(0)
        if self.connect_error is not None:
            raise self.connect_error

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(AgentWsMessage(AgentWsMessageType.CLOSED))

    async def send_text(self, text: str) -> None:
        self.sent.append(text)

    async def send_bytes(self, data: bytes) -> None:
        self.sent.append(data)

    def feed_json(self, payload: dict[str, Any]) -> None:
        self._incoming.put_nowait(
            AgentWsMessage(AgentWsMessageType.TEXT, json.dumps(payload))
        )

    def feed_text(self, text: str) -> None:
        self._incoming.put_nowait(AgentWsMessage(AgentWsMessageType.TEXT, text))

    def feed_bytes(self, data: bytes) -> None:
        self._incoming.put_nowait(AgentWsMessage(AgentWsMessageType.BINARY, data))

    def feed_binary(self, request_id: int, payload: bytes | None = None) -> None:
        self.feed_bytes(encode_binary(request_id, payload))

    def feed_closed(self) -> None:
        self._incoming.put_nowait(AgentWsMessage(AgentWsMessageType.CLOSED))

    def feed_error(self, reason: str = "boom") -> None:
        self._incoming.put_nowait(AgentWsMessage(AgentWsMessageType.ERROR, reason))

    def sent_json(self) -> list[dict[str, Any]]:
        return [json.loads(frame) for frame in self.sent if isinstance(frame, str)]

    def sent_binary(self) -> list[bytes]:
        return [frame for frame in self.sent if isinstance(frame, bytes)]

    def __aiter__(self) -> Any:
        return self._iter()

    async def _iter(self) -> Any:
        while True:
            msg = await self._incoming.get()
            yield msg
            if msg.type in (AgentWsMessageType.CLOSED, AgentWsMessageType.ERROR):
                return


async def settle(turns: int = 20) -> None:
    """Let background tasks run for a few loop iterations."""
    for _ in range(turns):
        await asyncio.sleep(0)


@pytest.fixture
def fast_config() -> AgentConfig:
    """Config with a near-zero reconnect delay."""
    return AgentConfig(reconnect_delay=0.01, connect_timeout=1.0)


@pytest.fixture
def fake_ws() -> FakeWsClient:
    """A fake websocket that connects successfully."""
    return FakeWsClient()


@pytest.fixture
def patched_ws(fake_ws: FakeWsClient) -> Iterator[MagicMock]:
    """Make the connection layer open fake_ws instead of a real socket."""
    with patch("agentlink.connection.AgentWsClient", return_value=fake_ws) as ws_cls:
        yield ws_cls


class StubConnection:
    """Minimal ConnectionManager stand-in for multiplexer and stream tests."""

    def __init__(self) -> None:
        self.sent: list[str | bytes] = []
        self.ready = asyncio.Event()
        self.ready.set()
        self.send_error: Exception | None = None
        self.message_callback: Any = None
        self.disconnect_callback: Any = None

    def on_message(self, callback: Any) -> None:
        self.message_callback = callback

    def on_disconnect(self, callback: Any) -> None:
        self.disconnect_callback = callback

    async def wait_ready(self) -> None:
        await self.ready.wait()

    async def send(self, data: str | bytes) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(data)

    def sent_json(self) -> list[dict[str, Any]]:
        return [json.loads(frame) for frame in self.sent if isinstance(frame, str)]

    def sent_binary(self) -> list[bytes]:
        return [frame for frame in self.sent if isinstance(frame, bytes)]


@pytest.fixture
def stub_connection() -> StubConnection:
    """A connection that is ready and records sent frames."""
    return StubConnection()
