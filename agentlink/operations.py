"""Agent operations built on AgentClient.

Thin call-sites for the agent's app, file and crash commands. Every command
reply must carry a truthy ``success``; otherwise AgentResponseError is raised
with the reply's ``error`` text.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterable, Awaitable, Callable, Iterable
from typing import Any

from .client import AgentClient
from .errors import AgentClientError, AgentResponseError
from .multiplexer import CONTINUE, Done, Failed, HandlerResult
from .streams import DownloadStream

_LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[Any, Any], None]
CrashCallback = Callable[[str], Awaitable[None] | None]


def _check(results: dict[str, Any]) -> dict[str, Any]:
    if not results.get("success"):
        raise AgentResponseError(str(results.get("error")), results)
    return results


class AgentOperations:
    """App, file and crash-report commands for one agent."""

    def __init__(self, client: AgentClient) -> None:
        self._client = client
        self._crash_tasks: set[asyncio.Task[None]] = set()

    async def _command(self, msg_type: str, op: str, **fields: Any) -> dict[str, Any]:
        results = await self._client.send_request({"type": msg_type, "op": op, **fields})
        return _check(results)

    # -------------------------------------------------------------------------
    # Apps
    # -------------------------------------------------------------------------

    async def ready(self) -> None:
        """Wait until the agent reports it is ready for app commands."""
        await self._command("app", "ready")

    async def list_apps(self) -> list[Any]:
        results = await self._command("app", "list")
        return list(results.get("apps", []))

    async def uninstall(self, bundle_id: str) -> None:
        await self._command("app", "uninstall", bundleID=bundle_id)

    async def kill(self, bundle_id: str) -> None:
        await self._command("app", "kill", bundleID=bundle_id)

    async def install(self, path: str, progress: ProgressCallback | None = None) -> None:
        """Install the package at ``path`` on the device.

        Progress replies are forwarded to ``progress(progress, status)`` until
        the agent reports success.
        """

        def on_reply(error: BaseException | None, message: Any) -> HandlerResult:
            if error is not None:
                return Failed(error)
            if not isinstance(message, dict):
                return CONTINUE
            if "success" in message:
                if message["success"]:
                    return Done(message)
                return Failed(AgentResponseError(str(message.get("error")), message))
            if message.get("error"):
                return Failed(AgentResponseError(str(message["error"]), message))
            if progress:
                progress(message.get("progress"), message.get("status"))
            return CONTINUE

        pending = await self._client.submit(
            {"type": "app", "op": "install", "path": path}, on_reply
        )
        await pending.result

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    async def temp_file(self) -> str:
        """Ask the agent for a fresh temporary file path."""
        results = await self._command("file", "temp")
        return str(results["path"])

    async def upload(
        self, path: str, source: Iterable[bytes] | AsyncIterable[bytes]
    ) -> None:
        await self._client.upload({"type": "file", "op": "upload", "path": path}, source)

    async def download(self, path: str) -> DownloadStream:
        return await self._client.download({"type": "file", "op": "download", "path": path})

    async def install_file(
        self,
        source: Iterable[bytes] | AsyncIterable[bytes],
        progress: ProgressCallback | None = None,
    ) -> None:
        """Upload a package to a temporary path and install it."""
        path = await self.temp_file()
        await self.upload(path, source)
        await self.install(path, progress)

    async def delete_file(self, path: str) -> str:
        results = await self._command("file", "delete", path=path)
        return str(results.get("path", path))

    # -------------------------------------------------------------------------
    # Crash reports
    # -------------------------------------------------------------------------

    async def subscribe_crashes(self, bundle_id: str, callback: CrashCallback) -> int:
        """Deliver each crash report for ``bundle_id`` to ``callback`` as text.

        Each notification names a file on the device, which is downloaded
        before the callback runs. Returns the subscription's request id.
        """

        def on_notification(error: BaseException | None, message: Any) -> HandlerResult:
            if error is not None:
                _LOGGER.warning("Crash subscription for %s ended: %s", bundle_id, error)
                return Failed(error)
            if isinstance(message, dict) and message.get("file"):
                task = asyncio.create_task(self._deliver_crash(message["file"], callback))
                self._crash_tasks.add(task)
                task.add_done_callback(self._crash_tasks.discard)
            return CONTINUE

        return await self._client.send_streaming_request(
            {"type": "crash", "op": "subscribe", "bundleID": bundle_id},
            on_notification,
        )

    async def _deliver_crash(self, path: str, callback: CrashCallback) -> None:
        try:
            stream = await self.download(path)
            report = (await stream.read_all()).decode("utf-8", errors="replace")
        except AgentClientError as err:
            _LOGGER.error("Failed to fetch crash report %s: %s", path, err)
            return

        try:
            result = callback(report)
            if inspect.iscoroutine(result):
                await result
        except Exception as err:
            _LOGGER.exception("Crash callback error: %s", err)

    async def close(self) -> None:
        """Cancel crash report deliveries still in progress."""
        tasks = list(self._crash_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._crash_tasks.clear()
