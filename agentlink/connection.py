"""Connection manager for the agent WebSocket.

Owns one transport handle per connection generation and the reconnect policy:

- a handshake that fails before the socket opens is retried after a fixed
  delay; callers already waiting for readiness are released by whichever
  later generation opens
- a socket that drops after opening is not reconnected; every pending
  request is failed and the caller decides whether to start again

Inbound messages are handed, in transport order, to the registered message
callback from a single listener task per generation.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .config import AgentConfig
from .errors import (
    AgentClientError,
    AgentConnectionError,
    AgentDisconnectedError,
)
from .flow import create_quiet_future
from .ws_client import AgentWsClient, AgentWsMessageType

if TYPE_CHECKING:
    import aiohttp

_LOGGER = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Lifecycle state of a connection generation."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(slots=True)
class ConnectionGeneration:
    """One connection attempt and the transport it produced."""

    number: int
    ready: asyncio.Future[None]
    state: ConnectionState = ConnectionState.CONNECTING
    ws: AgentWsClient | None = None
    task: asyncio.Task[None] | None = None


def _chain_ready(source: asyncio.Future[None], target: asyncio.Future[None]) -> None:
    """Settle ``target`` with the outcome of ``source``."""

    def _propagate(future: asyncio.Future[None]) -> None:
        if target.done():
            return
        if future.cancelled():
            target.cancel()
        elif future.exception() is not None:
            target.set_exception(future.exception())  # type: ignore[arg-type]
        else:
            target.set_result(None)

    source.add_done_callback(_propagate)


class ConnectionManager:
    """Single owned connection to an agent endpoint.

    Usage:
        manager = ConnectionManager("ws://10.0.0.2:8080/agent")
        manager.on_message(multiplexer.dispatch)
        manager.on_disconnect(multiplexer.fail_all)
        manager.start()
        await manager.wait_ready()
        await manager.send('{"id": 1, "type": "app", "op": "list"}')
        await manager.shutdown()
    """

    def __init__(
        self,
        endpoint: str,
        config: AgentConfig | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.endpoint = endpoint
        self._config = config or AgentConfig()
        self._session = session

        self._active = False
        self._generation: ConnectionGeneration | None = None
        self._generation_count = 0
        self._handshake_failures = 0
        self._handshake_error: AgentClientError | None = None

        # Callbacks
        self._message_callback: Callable[[str | bytes], None] | None = None
        self._disconnect_callback: Callable[[BaseException], None] | None = None
        self._state_callback: Callable[[ConnectionState], None] | None = None

    # -------------------------------------------------------------------------
    # Public API: State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        """State of the current generation."""
        if self._generation is None:
            return ConnectionState.CLOSED
        return self._generation.state

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    @property
    def is_active(self) -> bool:
        """False once the connection dropped, gave up, or was shut down."""
        return self._active

    @property
    def generation(self) -> int:
        """Number of the current generation (0 before start)."""
        return self._generation.number if self._generation else 0

    # -------------------------------------------------------------------------
    # Public API: Callbacks
    # -------------------------------------------------------------------------

    def on_message(self, callback: Callable[[str | bytes], None]) -> None:
        """Register callback receiving every TEXT/BINARY payload in order."""
        self._message_callback = callback

    def on_disconnect(self, callback: Callable[[BaseException], None]) -> None:
        """Register callback invoked when outstanding requests must be failed."""
        self._disconnect_callback = callback

    def on_state_changed(self, callback: Callable[[ConnectionState], None]) -> None:
        """Register callback for generation state changes."""
        self._state_callback = callback

    # -------------------------------------------------------------------------
    # Public API: Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Begin connecting in the background.

        No-op while a generation is connecting or open. After a dropped
        connection this starts a fresh one.
        """
        current = self._generation
        if self._active and current is not None and current.state in (
            ConnectionState.CONNECTING,
            ConnectionState.OPEN,
        ):
            return

        self._active = True
        self._handshake_failures = 0
        self._handshake_error = None
        self._spawn_generation(delay=0.0)

    async def wait_ready(self) -> None:
        """Wait until the current generation is open.

        Raises:
            AgentDisconnectedError: If the connection is not active
            AgentClientError: The last handshake error once retries are exhausted
        """
        generation = self._generation
        if self._handshake_error is not None:
            raise self._handshake_error
        if not self._active or generation is None:
            raise AgentDisconnectedError("Connection is not active")

        if generation.state is ConnectionState.OPEN:
            return
        if generation.state is not ConnectionState.CONNECTING:
            raise AgentDisconnectedError("Connection is closing")

        await asyncio.shield(generation.ready)

    async def send(self, data: str | bytes) -> None:
        """Send a frame verbatim on the open generation."""
        generation = self._generation
        if (
            generation is None
            or generation.state is not ConnectionState.OPEN
            or generation.ws is None
        ):
            raise AgentConnectionError("Connection is not open")

        if isinstance(data, str):
            await generation.ws.send_text(data)
        else:
            await generation.ws.send_bytes(data)

    async def shutdown(self) -> None:
        """Permanently close the connection and fail everything outstanding."""
        generation = self._generation
        was_active = self._active
        self._active = False
        self._handshake_error = None

        if generation is None or (
            generation.state is ConnectionState.CLOSED and not was_active
        ):
            return

        _LOGGER.info("[%s] Shutting down connection", self.endpoint)
        error = AgentDisconnectedError("Connection shut down")

        if not generation.ready.done():
            generation.ready.set_exception(error)

        task = generation.task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if generation.state is not ConnectionState.CLOSED:
            self._set_state(generation, ConnectionState.CLOSING)
            await self._close_transport(generation)
            self._set_state(generation, ConnectionState.CLOSED)

        self._notify_disconnect(error)

    # -------------------------------------------------------------------------
    # Internal: Generations
    # -------------------------------------------------------------------------

    def _spawn_generation(
        self, delay: float, previous: ConnectionGeneration | None = None
    ) -> ConnectionGeneration:
        self._generation_count += 1
        generation = ConnectionGeneration(
            number=self._generation_count,
            ready=create_quiet_future(),
        )
        if previous is not None:
            _chain_ready(generation.ready, previous.ready)

        self._generation = generation
        if self._state_callback:
            self._state_callback(generation.state)
        generation.task = asyncio.create_task(
            self._run_generation(generation, delay),
            name=f"agentlink-connection-{generation.number}",
        )
        return generation

    def _is_current(self, generation: ConnectionGeneration) -> bool:
        return self._active and generation is self._generation

    async def _run_generation(self, generation: ConnectionGeneration, delay: float) -> None:
        if delay > 0:
            _LOGGER.info(
                "[%s] Reconnecting in %.1fs (generation %d)",
                self.endpoint,
                delay,
                generation.number,
            )
            await asyncio.sleep(delay)

        if not self._is_current(generation):
            return

        _LOGGER.info(
            "[%s] Connecting (generation %d, attempt #%d)",
            self.endpoint,
            generation.number,
            self._handshake_failures + 1,
        )

        ws_client = AgentWsClient()
        try:
            await ws_client.connect(
                self.endpoint,
                session=self._session,
                ping_interval=self._config.ping_interval,
                close_timeout=self._config.close_timeout,
                timeout=self._config.connect_timeout,
            )
        except AgentClientError as err:
            self._handle_handshake_failure(generation, err)
            return

        if not self._is_current(generation):
            await ws_client.close()
            return

        generation.ws = ws_client
        self._handshake_failures = 0
        self._set_state(generation, ConnectionState.OPEN)
        if not generation.ready.done():
            generation.ready.set_result(None)
        _LOGGER.info("[%s] WebSocket connected, starting listener", self.endpoint)

        await self._listen(generation)

    def _handle_handshake_failure(
        self, generation: ConnectionGeneration, err: AgentClientError
    ) -> None:
        self._set_state(generation, ConnectionState.CLOSED)
        if not self._is_current(generation):
            return

        self._notify_disconnect(AgentDisconnectedError("Handshake failed"))
        self._handshake_failures += 1

        limit = self._config.max_handshake_retries
        if limit is not None and self._handshake_failures > limit:
            _LOGGER.error(
                "[%s] Giving up after %d failed handshakes: %s",
                self.endpoint,
                self._handshake_failures,
                err,
            )
            self._active = False
            self._handshake_error = err
            if not generation.ready.done():
                generation.ready.set_exception(err)
            return

        _LOGGER.warning("[%s] Handshake failed: %s", self.endpoint, err)
        self._spawn_generation(self._config.reconnect_delay, previous=generation)

    # -------------------------------------------------------------------------
    # Internal: Listener
    # -------------------------------------------------------------------------

    async def _listen(self, generation: ConnectionGeneration) -> None:
        """Deliver inbound messages until the socket closes or errors."""
        ws = generation.ws
        if ws is None:
            return

        message_count = 0
        error: str | None = None
        try:
            async for msg in ws:
                if msg.type in (AgentWsMessageType.TEXT, AgentWsMessageType.BINARY):
                    message_count += 1
                    self._deliver(msg.data)
                elif msg.type == AgentWsMessageType.CLOSED:
                    _LOGGER.info("[%s] WebSocket closed by agent", self.endpoint)
                    break
                elif msg.type == AgentWsMessageType.ERROR:
                    error = msg.data if isinstance(msg.data, str) else "WebSocket error"
                    break
        except asyncio.CancelledError:
            _LOGGER.debug(
                "[%s] Listener cancelled (%d messages)", self.endpoint, message_count
            )
            raise
        except AgentClientError as err:
            error = str(err)

        await self._handle_drop(generation, error)

    def _deliver(self, data: Any) -> None:
        if self._message_callback is None:
            return
        try:
            self._message_callback(data)
        except Exception as err:
            _LOGGER.exception("[%s] Message callback error: %s", self.endpoint, err)

    async def _handle_drop(self, generation: ConnectionGeneration, error: str | None) -> None:
        if not self._is_current(generation):
            return

        if error is not None:
            _LOGGER.error("[%s] WebSocket error: %s", self.endpoint, error)
        self._active = False
        self._set_state(generation, ConnectionState.CLOSING)

        disconnect = AgentDisconnectedError("disconnected")
        if error is not None:
            disconnect.__cause__ = AgentConnectionError(error)
        self._notify_disconnect(disconnect)

        await self._close_transport(generation)
        self._set_state(generation, ConnectionState.CLOSED)

    async def _close_transport(self, generation: ConnectionGeneration) -> None:
        if generation.ws is None:
            return
        try:
            await asyncio.wait_for(
                generation.ws.close(), timeout=self._config.close_timeout
            )
        except TimeoutError:
            _LOGGER.warning("[%s] WebSocket close timed out", self.endpoint)
        except AgentClientError as err:
            _LOGGER.debug("[%s] WebSocket close failed: %s", self.endpoint, err)
        generation.ws = None

    # -------------------------------------------------------------------------
    # Internal: Notifications
    # -------------------------------------------------------------------------

    def _set_state(self, generation: ConnectionGeneration, state: ConnectionState) -> None:
        """Update generation state and notify callback for the current one."""
        if generation.state is state:
            return
        _LOGGER.debug(
            "[%s] Generation %d: %s → %s",
            self.endpoint,
            generation.number,
            generation.state.value,
            state.value,
        )
        generation.state = state
        if generation is self._generation and self._state_callback:
            self._state_callback(state)

    def _notify_disconnect(self, error: BaseException) -> None:
        if self._disconnect_callback is None:
            return
        try:
            self._disconnect_callback(error)
        except Exception as err:
            _LOGGER.exception("[%s] Disconnect callback error: %s", self.endpoint, err)
