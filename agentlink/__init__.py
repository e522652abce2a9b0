"""Persistent multiplexed WebSocket client for device agents."""

__version__ = "0.1.0"

from .client import AgentClient
from .config import AgentConfig
from .connection import ConnectionGeneration, ConnectionManager, ConnectionState
from .errors import (
    AgentClientError,
    AgentConnectionError,
    AgentDisconnectedError,
    AgentHandshakeError,
    AgentResponseError,
    AgentTimeout,
    MalformedFrameError,
)
from .multiplexer import (
    CONTINUE,
    Continue,
    Done,
    Failed,
    HandlerResult,
    PendingRequest,
    RequestMultiplexer,
    ResponseHandler,
)
from .operations import AgentOperations
from .protocol import InboundFrame, decode_inbound, encode_binary, encode_structured
from .streams import DownloadStream, UploadChannel
from .ws import connect_aiohttp_websocket, connect_websocket
from .ws_client import AgentWsClient, AgentWsMessage, AgentWsMessageType

__all__ = [
    "CONTINUE",
    "AgentClient",
    "AgentClientError",
    "AgentConfig",
    "AgentConnectionError",
    "AgentDisconnectedError",
    "AgentHandshakeError",
    "AgentOperations",
    "AgentResponseError",
    "AgentTimeout",
    "AgentWsClient",
    "AgentWsMessage",
    "AgentWsMessageType",
    "ConnectionGeneration",
    "ConnectionManager",
    "ConnectionState",
    "Continue",
    "Done",
    "DownloadStream",
    "Failed",
    "HandlerResult",
    "InboundFrame",
    "MalformedFrameError",
    "PendingRequest",
    "RequestMultiplexer",
    "ResponseHandler",
    "UploadChannel",
    "__version__",
    "connect_aiohttp_websocket",
    "connect_websocket",
    "decode_inbound",
    "encode_binary",
    "encode_structured",
]
