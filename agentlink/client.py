"""High-level client for a device agent.

This module provides the API callers use to talk to the agent. It wires a
ConnectionManager to a RequestMultiplexer and exposes:
- one-shot requests (one response)
- streaming requests (zero or more responses before completion)
- upload and download channels over binary frames
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, Iterable, Mapping
from typing import TYPE_CHECKING, Any

from .config import AgentConfig
from .connection import ConnectionManager, ConnectionState
from .errors import AgentConnectionError, AgentResponseError
from .multiplexer import (
    CONTINUE,
    Done,
    Failed,
    HandlerResult,
    PendingRequest,
    RequestMultiplexer,
    ResponseHandler,
)
from .streams import DownloadStream, UploadChannel

if TYPE_CHECKING:
    import aiohttp

_LOGGER = logging.getLogger(__name__)


def _upload_reply(error: BaseException | None, message: Any) -> HandlerResult:
    if error is not None:
        return Failed(error)
    if not isinstance(message, dict):
        return CONTINUE
    if "success" in message:
        if message["success"]:
            return Done(message)
        return Failed(AgentResponseError(str(message.get("error")), message))
    if "error" in message:
        return Failed(AgentResponseError(str(message["error"]), message))
    return CONTINUE


class AgentClient:
    """Persistent connection to a device agent.

    Usage:
        client = AgentClient()
        await client.connect("ws://10.0.0.2:8080/agent")
        apps = await client.send_request({"type": "app", "op": "list"})
        stream = await client.download({"type": "file", "op": "download", "path": p})
        data = await stream.read_all()
        await client.disconnect()

    Requests issued before the socket opens are held until it does.
    """

    def __init__(self, config: AgentConfig | None = None) -> None:
        self._config = config or AgentConfig()
        self._connection: ConnectionManager | None = None
        self._multiplexer: RequestMultiplexer | None = None

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    @property
    def endpoint(self) -> str | None:
        return self._connection.endpoint if self._connection else None

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and self._connection.is_open

    @property
    def connection_state(self) -> ConnectionState:
        if self._connection is None:
            return ConnectionState.CLOSED
        return self._connection.state

    @property
    def connection(self) -> ConnectionManager:
        if self._connection is None:
            raise AgentConnectionError("Client is not connected")
        return self._connection

    async def connect(
        self,
        endpoint: str,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Start connecting to ``endpoint``.

        Returns without waiting for the socket; use wait_ready() to block.
        A previous connection, if any, is shut down first.
        """
        if self._connection is not None:
            await self.disconnect()

        _LOGGER.info("Connecting agent client to %s", endpoint)
        self._connection = ConnectionManager(endpoint, self._config, session=session)
        self._multiplexer = RequestMultiplexer(self._connection)
        self._connection.start()

    async def wait_ready(self) -> None:
        """Block until the connection is open."""
        await self.connection.wait_ready()

    async def reconnect(self) -> None:
        """Start a fresh connection after the previous one dropped."""
        self.connection.start()

    async def disconnect(self) -> None:
        """Close the connection and fail every outstanding request."""
        if self._connection is None:
            return
        await self._connection.shutdown()
        self._connection = None
        self._multiplexer = None

    async def __aenter__(self) -> AgentClient:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.disconnect()

    # -------------------------------------------------------------------------
    # Public API: Requests
    # -------------------------------------------------------------------------

    def _require_multiplexer(self) -> RequestMultiplexer:
        if self._multiplexer is None:
            raise AgentConnectionError("Client is not connected")
        return self._multiplexer

    async def send_request(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Send a one-shot request and return its response.

        Raises:
            AgentResponseError: If the agent replies with ``success: false``
            AgentDisconnectedError: If the connection drops first
        """
        return await self._require_multiplexer().send_once(payload)

    async def send_streaming_request(
        self, payload: Mapping[str, Any], on_response: ResponseHandler
    ) -> int:
        """Send a request whose every response is passed to ``on_response``.

        Returns the request id, usable with open_upload_channel() and
        open_download_channel().
        """
        return await self._require_multiplexer().send(payload, on_response)

    async def submit(
        self, payload: Mapping[str, Any], handler: ResponseHandler
    ) -> PendingRequest:
        """Like send_streaming_request() but returns the awaitable PendingRequest."""
        return await self._require_multiplexer().submit(payload, handler)

    # -------------------------------------------------------------------------
    # Public API: Transfers
    # -------------------------------------------------------------------------

    def open_upload_channel(self, request_id: int) -> UploadChannel:
        """Chunk sink for a request that expects uploaded data."""
        return UploadChannel(self.connection, request_id)

    def open_download_channel(self, request_id: int) -> DownloadStream:
        """Attach a pull-based stream to ``request_id``.

        Replaces the request's current handler; binary frames for the id are
        buffered in the returned stream until its end marker.
        """
        multiplexer = self._require_multiplexer()
        stream = self._new_download_stream(request_id)
        multiplexer.register(request_id, stream.handle_response)
        return stream

    async def download(self, payload: Mapping[str, Any]) -> DownloadStream:
        """Send a download request and return the stream receiving its data."""
        multiplexer = self._require_multiplexer()
        stream = self._new_download_stream()
        pending = await multiplexer.submit(payload, stream.handle_response)
        stream.request_id = pending.request_id
        return stream

    async def upload(
        self,
        payload: Mapping[str, Any],
        source: Iterable[bytes] | AsyncIterable[bytes],
    ) -> dict[str, Any]:
        """Send an upload request, stream ``source`` and wait for the final reply."""
        pending = await self.submit(payload, _upload_reply)
        channel = self.open_upload_channel(pending.request_id)
        sent = await channel.send_all(source)
        _LOGGER.debug("Upload %d sent %d bytes", pending.request_id, sent)
        reply: dict[str, Any] = await pending.result
        return reply

    def _new_download_stream(self, request_id: int | None = None) -> DownloadStream:
        return DownloadStream(
            request_id,
            high_water=self._config.download_high_water,
            low_water=self._config.download_low_water,
        )
