"""WebSocket helpers for the device agent transport."""

from __future__ import annotations

import asyncio

import aiohttp
import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)

from .errors import (
    AgentConnectionError,
    AgentHandshakeError,
    AgentTimeout,
)


async def connect_websocket(
    endpoint: str,
    *,
    ping_interval: int | None = 20,
    close_timeout: float = 5.0,
    timeout: float = 15.0,
) -> ClientConnection:
    """Connect to the agent WebSocket endpoint.

    Uses the websockets library which properly implements RFC 6455 frame masking.
    All client-to-server frames are automatically masked per the standard.

    Args:
        endpoint: ws:// or wss:// URL of the agent
        ping_interval: Interval for ping frames
        close_timeout: Timeout for the closing handshake
        timeout: Connection timeout
    """
    try:
        return await asyncio.wait_for(
            websockets.connect(
                endpoint,
                ping_interval=ping_interval,
                close_timeout=close_timeout,
                max_size=None,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise AgentTimeout("WebSocket connection timed out") from err
    except (InvalidHandshake, InvalidURI) as err:
        raise AgentHandshakeError("WebSocket handshake failed") from err
    except (OSError, WebSocketException) as err:
        raise AgentConnectionError("WebSocket connection failed") from err


async def connect_aiohttp_websocket(
    session: aiohttp.ClientSession,
    endpoint: str,
    *,
    heartbeat: float | None = 20,
    timeout: float = 15.0,
) -> aiohttp.ClientWebSocketResponse:
    """Connect to the agent WebSocket endpoint over an existing aiohttp session.

    Args:
        session: Caller-owned client session
        endpoint: ws:// or wss:// URL of the agent
        heartbeat: Interval for ping frames
        timeout: Connection timeout
    """
    try:
        return await asyncio.wait_for(
            session.ws_connect(endpoint, heartbeat=heartbeat, max_msg_size=0),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise AgentTimeout("WebSocket connection timed out") from err
    except aiohttp.WSServerHandshakeError as err:
        raise AgentHandshakeError("WebSocket handshake failed") from err
    except (OSError, aiohttp.ClientError) as err:
        raise AgentConnectionError("WebSocket connection failed") from err
