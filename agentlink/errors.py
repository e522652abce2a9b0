"""Client error types for device agent interactions."""

from __future__ import annotations

from typing import Any


class AgentClientError(Exception):
    """Base error for agent client failures."""


class AgentTimeout(AgentClientError):
    """Timeout while communicating with the agent."""


class AgentConnectionError(AgentClientError):
    """Network connection to the agent failed."""


class AgentDisconnectedError(AgentConnectionError):
    """The connection was lost or shut down while a request was outstanding."""


class AgentHandshakeError(AgentClientError):
    """WebSocket handshake failed."""


class MalformedFrameError(AgentClientError):
    """Inbound frame could not be decoded."""


class AgentResponseError(AgentClientError):
    """The agent reported a failure for a request."""

    def __init__(self, message: str, response: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.response = response or {}
