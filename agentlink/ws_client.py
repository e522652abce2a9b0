"""WebSocket client wrapper for the device agent."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import aiohttp
from aiohttp import WSMsgType
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from .errors import AgentConnectionError
from .ws import connect_aiohttp_websocket, connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class AgentWsMessageType(Enum):
    """Normalized WebSocket message types."""

    TEXT = "text"
    BINARY = "binary"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class AgentWsMessage:
    """Normalized WebSocket message payload."""

    type: AgentWsMessageType
    data: str | bytes | None = None


class AgentWsClient:
    """Wrapper around a websockets or aiohttp connection to the agent."""

    def __init__(self) -> None:
        self._ws: ClientConnection | aiohttp.ClientWebSocketResponse | None = None

    @property
    def is_connected(self) -> bool:
        """True once connect() has succeeded."""
        return self._ws is not None

    async def connect(
        self,
        endpoint: str,
        *,
        session: aiohttp.ClientSession | None = None,
        ping_interval: int | None = 20,
        close_timeout: float = 5.0,
        timeout: float = 15.0,
    ) -> None:
        """Connect to the agent websocket.

        When an aiohttp session is supplied the socket is opened through it,
        otherwise the websockets library is used.
        """
        if session is not None:
            self._ws = await connect_aiohttp_websocket(
                session,
                endpoint,
                heartbeat=ping_interval,
                timeout=timeout,
            )
            return

        self._ws = await connect_websocket(
            endpoint,
            ping_interval=ping_interval,
            close_timeout=close_timeout,
            timeout=timeout,
        )

    async def close(self) -> None:
        """Close the websocket connection."""
        if self._ws is not None:
            await self._ws.close()

    async def send_text(self, text: str) -> None:
        """Send a TEXT frame."""
        ws = self._require_ws()
        try:
            if isinstance(ws, aiohttp.ClientWebSocketResponse):
                await ws.send_str(text)
            else:
                await ws.send(text)
        except (ConnectionClosed, ConnectionError) as err:
            raise AgentConnectionError("WebSocket send failed") from err

    async def send_bytes(self, data: bytes) -> None:
        """Send a BINARY frame.

        Args:
            data: Binary data to send

        Raises:
            AgentConnectionError: If not connected or the socket is closed
        """
        ws = self._require_ws()
        try:
            if isinstance(ws, aiohttp.ClientWebSocketResponse):
                await ws.send_bytes(data)
            else:
                await ws.send(data)
        except (ConnectionClosed, ConnectionError) as err:
            raise AgentConnectionError("WebSocket send failed") from err

    def _require_ws(self) -> ClientConnection | aiohttp.ClientWebSocketResponse:
        if self._ws is None:
            raise AgentConnectionError("WebSocket is not connected")
        return self._ws

    def __aiter__(self) -> AsyncIterator[AgentWsMessage]:
        if self._ws is None:
            raise AgentConnectionError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[AgentWsMessage]:
        if self._ws is None:
            raise AgentConnectionError("WebSocket is not connected")

        try:
            async for msg in self._ws:
                normalized = self._normalize_message(msg)
                if normalized is None:
                    continue
                yield normalized
                if normalized.type in (
                    AgentWsMessageType.CLOSED,
                    AgentWsMessageType.ERROR,
                ):
                    return
        except ConnectionClosedOK:
            yield AgentWsMessage(type=AgentWsMessageType.CLOSED)
        except ConnectionClosed as err:
            yield AgentWsMessage(type=AgentWsMessageType.ERROR, data=str(err))
        except Exception as err:
            yield AgentWsMessage(type=AgentWsMessageType.ERROR, data=str(err))
        else:
            # Normal iteration completion means the peer closed gracefully.
            yield AgentWsMessage(type=AgentWsMessageType.CLOSED)

    @staticmethod
    def _normalize_message(msg: Any) -> AgentWsMessage | None:
        """Normalize backend-specific frames into AgentWsMessage."""
        if isinstance(msg, str):
            return AgentWsMessage(AgentWsMessageType.TEXT, msg)
        if isinstance(msg, (bytes, bytearray, memoryview)):
            return AgentWsMessage(AgentWsMessageType.BINARY, bytes(msg))

        msg_type = getattr(msg, "type", None)
        if msg_type is None:
            return None

        normalized_type = AgentWsClient._map_aiohttp_type(msg_type)
        if normalized_type is None:
            return None

        data = getattr(msg, "data", None)
        if normalized_type is AgentWsMessageType.ERROR:
            return AgentWsMessage(normalized_type, str(data) if data else None)
        if normalized_type is AgentWsMessageType.CLOSED:
            return AgentWsMessage(normalized_type)
        return AgentWsMessage(normalized_type, data)

    @staticmethod
    def _map_aiohttp_type(msg_type: Any) -> AgentWsMessageType | None:
        """Map aiohttp WSMsgType enums to internal message types."""
        if msg_type is WSMsgType.TEXT:
            return AgentWsMessageType.TEXT

        if msg_type is WSMsgType.BINARY:
            return AgentWsMessageType.BINARY

        if msg_type in {WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED}:
            return AgentWsMessageType.CLOSED

        if msg_type is WSMsgType.ERROR:
            return AgentWsMessageType.ERROR

        return None
