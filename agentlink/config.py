"""Configuration for the agent connection."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class AgentConfig:
    """Tunables for the connection, reconnect policy and downloads.

    Attributes:
        reconnect_delay: Seconds to wait before retrying a failed handshake
        max_handshake_retries: Retry budget for failed handshakes (None: unbounded)
        connect_timeout: Seconds allowed for a single handshake
        ping_interval: Keepalive ping interval in seconds (None disables pings)
        close_timeout: Seconds allowed for the closing handshake
        download_high_water: Buffered chunks at which a download signals its producer to pause
        download_low_water: Buffered chunks at which a paused download resumes
    """

    reconnect_delay: float = 1.0
    max_handshake_retries: int | None = None
    connect_timeout: float = 15.0
    ping_interval: int | None = 20
    close_timeout: float = 5.0
    download_high_water: int = 16
    download_low_water: int = 4

    def __post_init__(self) -> None:
        if self.reconnect_delay < 0:
            raise ValueError("reconnect_delay must not be negative")
        if self.max_handshake_retries is not None and self.max_handshake_retries < 0:
            raise ValueError("max_handshake_retries must not be negative")
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        if self.download_high_water < 1:
            raise ValueError("download_high_water must be at least 1")
        if not 0 <= self.download_low_water < self.download_high_water:
            raise ValueError(
                "download_low_water must be between 0 and download_high_water"
            )
