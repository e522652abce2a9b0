"""Request multiplexer: identity allocation and inbound routing.

Every outbound request gets a fresh request id and a handler registered
under it. Inbound frames, structured or binary, are routed to the handler
registered for their id. A handler answers each delivery with a
HandlerResult: ``CONTINUE`` keeps it registered for further frames,
``Done``/``Failed`` remove it and settle the request's result future.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import AgentClientError, AgentResponseError, MalformedFrameError
from .flow import create_quiet_future
from .protocol import MAX_REQUEST_ID, decode_inbound, encode_structured

if TYPE_CHECKING:
    from .connection import ConnectionManager

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Continue:
    """More frames are expected for this request."""


@dataclass(frozen=True, slots=True)
class Done:
    """The request completed with ``value``."""

    value: Any = None


@dataclass(frozen=True, slots=True)
class Failed:
    """The request failed with ``error``."""

    error: BaseException


CONTINUE = Continue()

HandlerResult = Continue | Done | Failed
ResponseHandler = Callable[[BaseException | None, Any], HandlerResult]


@dataclass(slots=True)
class PendingRequest:
    """A registered request awaiting its responses."""

    request_id: int
    handler: ResponseHandler
    result: asyncio.Future[Any] = field(default_factory=create_quiet_future)


def single_response(error: BaseException | None, message: Any) -> HandlerResult:
    """Handler for one-shot requests: the first frame completes the request."""
    if error is not None:
        return Failed(error)
    if not isinstance(message, dict):
        return Failed(AgentClientError("Unexpected binary response to a request"))
    if "success" in message and not message["success"]:
        return Failed(AgentResponseError(str(message.get("error")), message))
    return Done(message)


class RequestMultiplexer:
    """Routing table from request id to handler for one connection."""

    def __init__(self, connection: ConnectionManager) -> None:
        self._connection = connection
        self._pending: dict[int, PendingRequest] = {}
        self._last_request_id = 0

        connection.on_message(self.dispatch)
        connection.on_disconnect(self.fail_all)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, request_id: int) -> bool:
        return request_id in self._pending

    # -------------------------------------------------------------------------
    # Public API: Sending
    # -------------------------------------------------------------------------

    async def submit(
        self, payload: Mapping[str, Any], handler: ResponseHandler
    ) -> PendingRequest:
        """Send a request and register its handler.

        Waits for the connection to be ready first. The request id is
        allocated and the handler registered in the same loop turn, so
        concurrent submits can never share an id.

        Raises:
            AgentConnectionError: If the connection is down or the send fails
        """
        await self._connection.wait_ready()

        request_id = self._allocate_request_id()
        pending = self.register(request_id, handler)
        frame = encode_structured(payload, request_id)

        try:
            await self._connection.send(frame)
        except AgentClientError:
            if self._pending.get(request_id) is pending:
                del self._pending[request_id]
            pending.result.cancel()
            raise

        _LOGGER.debug("Sent request %d", request_id)
        return pending

    async def send(self, payload: Mapping[str, Any], handler: ResponseHandler) -> int:
        """Send a request whose responses go to ``handler``; returns its id."""
        pending = await self.submit(payload, handler)
        return pending.request_id

    async def send_once(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Send a request and wait for its single response.

        Raises:
            AgentResponseError: If the response reports ``success: false``
            AgentDisconnectedError: If the connection drops first
        """
        pending = await self.submit(payload, single_response)
        result: dict[str, Any] = await pending.result
        return result

    def register(self, request_id: int, handler: ResponseHandler) -> PendingRequest:
        """Install ``handler`` for ``request_id``, replacing any existing one."""
        previous = self._pending.get(request_id)
        if previous is not None:
            _LOGGER.debug("Replacing handler for request %d", request_id)
            previous.result.cancel()

        pending = PendingRequest(request_id=request_id, handler=handler)
        self._pending[request_id] = pending
        return pending

    def _allocate_request_id(self) -> int:
        # Wraps at the 32-bit limit, skipping ids still in flight.
        for _ in range(len(self._pending) + 1):
            if self._last_request_id >= MAX_REQUEST_ID:
                self._last_request_id = 0
            self._last_request_id += 1
            if self._last_request_id not in self._pending:
                return self._last_request_id
        raise AgentClientError("No free request id")

    # -------------------------------------------------------------------------
    # Public API: Inbound
    # -------------------------------------------------------------------------

    def dispatch(self, data: str | bytes) -> None:
        """Route one inbound message to its handler."""
        try:
            frame = decode_inbound(data)
        except MalformedFrameError as err:
            _LOGGER.warning("Dropping malformed frame: %s", err)
            return

        pending = self._pending.get(frame.request_id)
        if pending is None:
            _LOGGER.debug("Discarding frame for unknown request %d", frame.request_id)
            return

        try:
            result = pending.handler(None, frame.payload)
        except Exception as err:
            _LOGGER.exception("Handler for request %d failed: %s", frame.request_id, err)
            result = Failed(err)

        self._settle(pending, result)

    def fail_all(self, error: BaseException) -> None:
        """Fail every pending request with ``error`` and clear the table."""
        pending, self._pending = self._pending, {}
        if pending:
            _LOGGER.info("Failing %d pending requests: %s", len(pending), error)

        for entry in pending.values():
            try:
                entry.handler(error, None)
            except Exception as err:
                _LOGGER.exception(
                    "Handler for request %d failed during sweep: %s",
                    entry.request_id,
                    err,
                )
            if not entry.result.done():
                entry.result.set_exception(error)

    def _settle(self, pending: PendingRequest, result: Any) -> None:
        if isinstance(result, Continue):
            return

        if not isinstance(result, (Done, Failed)):
            result = Failed(
                TypeError(f"Handler returned {type(result).__name__}, not a HandlerResult")
            )

        if self._pending.get(pending.request_id) is pending:
            del self._pending[pending.request_id]

        if pending.result.done():
            return
        if isinstance(result, Failed):
            pending.result.set_exception(result.error)
        else:
            pending.result.set_result(result.value)
