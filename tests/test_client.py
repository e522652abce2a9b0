"""Tests for AgentClient against a fake agent socket."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from agentlink import AgentClient, AgentConfig, ConnectionState
from agentlink.errors import (
    AgentConnectionError,
    AgentDisconnectedError,
    AgentResponseError,
)
from agentlink.multiplexer import CONTINUE, Done
from agentlink.protocol import decode_inbound, encode_binary

from .conftest import FakeWsClient, settle

ENDPOINT = "ws://10.0.0.2:8080/agent"


class TestAgentClientConnection:
    """Tests for connect() / disconnect()."""

    @pytest.mark.asyncio
    async def test_not_connected(self):
        """Test requests fail before connect()."""
        client = AgentClient()
        assert client.connection_state is ConnectionState.CLOSED
        assert client.endpoint is None
        with pytest.raises(AgentConnectionError, match="not connected"):
            await client.send_request({"op": "list"})
        with pytest.raises(AgentConnectionError, match="not connected"):
            client.open_upload_channel(1)

    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self, fake_ws, patched_ws):
        """Test the client opens and closes the socket."""
        client = AgentClient()
        await client.connect(ENDPOINT)
        await client.wait_ready()

        assert client.is_connected
        assert client.endpoint == ENDPOINT

        await client.disconnect()
        assert fake_ws.closed
        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_connect_with_session(self, fake_ws, patched_ws):
        """Test an aiohttp session is handed to the socket layer."""
        session = MagicMock()
        async with AgentClient() as client:
            await client.connect(ENDPOINT, session=session)
            await client.wait_ready()
            assert fake_ws.connect_kwargs["session"] is session
        assert fake_ws.closed

    @pytest.mark.asyncio
    async def test_requests_before_open_are_deferred(self, fake_ws):
        """Test requests sent while connecting go out once the socket opens."""
        gate = asyncio.Event()
        original_connect = fake_ws.connect

        async def gated_connect(endpoint, **kwargs):
            await gate.wait()
            await original_connect(endpoint, **kwargs)

        fake_ws.connect = gated_connect  # type: ignore[method-assign]

        with patch("agentlink.connection.AgentWsClient", return_value=fake_ws):
            client = AgentClient()
            await client.connect(ENDPOINT)
            first = asyncio.create_task(client.send_request({"op": "a"}))
            second = asyncio.create_task(client.send_request({"op": "b"}))
            await settle()
            assert fake_ws.sent == []

            gate.set()
            await settle()
            assert [(m["op"], m["id"]) for m in fake_ws.sent_json()] == [("a", 1), ("b", 2)]

            fake_ws.feed_json({"id": 2, "success": True})
            fake_ws.feed_json({"id": 1, "success": True})
            results = await asyncio.gather(first, second)
            assert [r["id"] for r in results] == [1, 2]
            await client.disconnect()


class TestAgentClientRequests:
    """Tests for one-shot and streaming requests."""

    @pytest.mark.asyncio
    async def test_send_request(self, fake_ws, patched_ws):
        """Test a one-shot request resolves with its reply."""
        client = AgentClient()
        await client.connect(ENDPOINT)
        task = asyncio.create_task(client.send_request({"type": "app", "op": "list"}))
        await settle()

        fake_ws.feed_json({"id": 1, "success": True, "apps": ["a", "b"]})

        assert (await task)["apps"] == ["a", "b"]
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_send_request_failure(self, fake_ws, patched_ws):
        """Test success false rejects only that request."""
        client = AgentClient()
        await client.connect(ENDPOINT)
        failing = asyncio.create_task(client.send_request({"op": "list"}))
        other = asyncio.create_task(client.send_request({"op": "list"}))
        await settle()

        fake_ws.feed_json({"id": 1, "success": False, "error": "busy"})
        fake_ws.feed_json({"id": 2, "success": True})

        with pytest.raises(AgentResponseError, match="busy"):
            await failing
        assert (await other)["success"] is True
        assert client.is_connected
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_streaming_request(self, fake_ws, patched_ws):
        """Test every response reaches the streaming handler."""
        client = AgentClient()
        await client.connect(ENDPOINT)
        seen = []

        def on_response(error, message):
            seen.append(message)
            return Done() if message.get("success") else CONTINUE

        request_id = await client.send_streaming_request({"op": "install"}, on_response)
        fake_ws.feed_json({"id": request_id, "progress": 10})
        fake_ws.feed_json({"id": request_id, "progress": 90})
        fake_ws.feed_json({"id": request_id, "success": True})
        fake_ws.feed_json({"id": request_id, "progress": 100})
        await settle()

        assert [m.get("progress") for m in seen] == [10, 90, None]
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_drop_fails_all_pending(self, fake_ws, patched_ws):
        """Test a mid-session error rejects every outstanding request."""
        client = AgentClient()
        await client.connect(ENDPOINT)
        streaming = MagicMock(return_value=CONTINUE)
        await client.send_streaming_request({"op": "subscribe"}, streaming)
        one_shot = asyncio.create_task(client.send_request({"op": "list"}))
        await settle()

        fake_ws.feed_error("connection reset")
        await settle()

        with pytest.raises(AgentDisconnectedError):
            await one_shot
        streaming.assert_called_once()
        assert isinstance(streaming.call_args.args[0], AgentDisconnectedError)
        assert patched_ws.call_count == 1
        with pytest.raises(AgentDisconnectedError):
            await client.send_request({"op": "list"})

    @pytest.mark.asyncio
    async def test_reconnect_after_drop(self):
        """Test the caller can reconnect after a drop."""
        first, second = FakeWsClient(), FakeWsClient()
        with patch("agentlink.connection.AgentWsClient", side_effect=[first, second]):
            client = AgentClient()
            await client.connect(ENDPOINT)
            await client.wait_ready()
            first.feed_closed()
            await settle()

            await client.reconnect()
            task = asyncio.create_task(client.send_request({"op": "list"}))
            await settle()
            second.feed_json({"id": 1, "success": True})

            assert (await task)["id"] == 1
            await client.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_fails_pending(self, fake_ws, patched_ws):
        """Test disconnect() rejects outstanding requests."""
        client = AgentClient()
        await client.connect(ENDPOINT)
        task = asyncio.create_task(client.send_request({"op": "list"}))
        await settle()

        await client.disconnect()

        with pytest.raises(AgentDisconnectedError):
            await task


class TestAgentClientTransfers:
    """Tests for uploads and downloads."""

    @pytest.mark.asyncio
    async def test_upload(self, fake_ws, patched_ws):
        """Test an upload streams chunks and waits for the final reply."""
        client = AgentClient()
        await client.connect(ENDPOINT)
        task = asyncio.create_task(
            client.upload({"type": "file", "op": "upload", "path": "/tmp/x"}, [b"ab", b"cd"])
        )
        await settle()

        assert fake_ws.sent_json() == [
            {"type": "file", "op": "upload", "path": "/tmp/x", "id": 1}
        ]
        assert fake_ws.sent_binary() == [
            encode_binary(1, b"ab"),
            encode_binary(1, b"cd"),
            encode_binary(1),
        ]
        assert not task.done()

        fake_ws.feed_json({"id": 1, "success": True})
        assert (await task)["success"] is True
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_upload_rejected(self, fake_ws, patched_ws):
        """Test an upload error reply is raised."""
        client = AgentClient()
        await client.connect(ENDPOINT)
        task = asyncio.create_task(client.upload({"op": "upload"}, [b"x"]))
        await settle()

        fake_ws.feed_json({"id": 1, "success": False, "error": "disk full"})

        with pytest.raises(AgentResponseError, match="disk full"):
            await task
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_upload_rejected_without_error_text(self, fake_ws, patched_ws):
        """Test a bare success false ends the upload."""
        client = AgentClient()
        await client.connect(ENDPOINT)
        task = asyncio.create_task(client.upload({"op": "upload"}, [b"x"]))
        await settle()

        fake_ws.feed_json({"id": 1, "success": False})

        with pytest.raises(AgentResponseError):
            await asyncio.wait_for(task, timeout=1.0)
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_upload_progress_ignored(self, fake_ws, patched_ws):
        """Test replies without a success field keep the upload open."""
        client = AgentClient()
        await client.connect(ENDPOINT)
        task = asyncio.create_task(client.upload({"op": "upload"}, [b"x"]))
        await settle()

        fake_ws.feed_json({"id": 1, "received": 1})
        await settle()
        assert not task.done()

        fake_ws.feed_json({"id": 1, "success": True})
        assert (await task)["success"] is True
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_upload_channel_for_streaming_request(self, fake_ws, patched_ws):
        """Test open_upload_channel() frames chunks with the request id."""
        client = AgentClient()
        await client.connect(ENDPOINT)
        request_id = await client.send_streaming_request(
            {"op": "upload"}, lambda e, m: CONTINUE
        )

        channel = client.open_upload_channel(request_id)
        await channel.send_all([b"payload"])

        frames = [decode_inbound(f) for f in fake_ws.sent_binary()]
        assert [(f.request_id, f.payload) for f in frames] == [
            (request_id, b"payload"),
            (request_id, b""),
        ]
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_download(self, fake_ws, patched_ws):
        """Test a download yields the chunks then ends."""
        client = AgentClient()
        await client.connect(ENDPOINT)
        stream = await client.download({"type": "file", "op": "download", "path": "/x"})
        assert stream.request_id == 1

        fake_ws.feed_json({"id": 1, "success": True})
        fake_ws.feed_binary(1, b"C1")
        fake_ws.feed_binary(1, b"C2")
        fake_ws.feed_binary(1)
        fake_ws.feed_binary(1, b"straggler")

        assert await asyncio.wait_for(stream.read_all(), timeout=1.0) == b"C1C2"
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_saturated_download_keeps_socket_reading(self, fake_ws, patched_ws):
        """Test a saturated download buffers on without blocking the socket."""
        client = AgentClient(AgentConfig(download_high_water=2, download_low_water=0))
        await client.connect(ENDPOINT)
        stream = await client.download({"op": "download"})

        for chunk in (b"a", b"b", b"c"):
            fake_ws.feed_binary(1, chunk)
        fake_ws.feed_binary(1)
        await settle()

        assert stream.buffered == 3
        assert stream.paused
        assert stream.ended

        assert await asyncio.wait_for(stream.read_all(), timeout=1.0) == b"abc"
        assert not stream.paused
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_reply_behind_saturated_download(self, fake_ws, patched_ws):
        """Test other requests complete while a download sits unread."""
        client = AgentClient(AgentConfig(download_high_water=2, download_low_water=0))
        await client.connect(ENDPOINT)
        stream = await client.download({"op": "download"})
        for chunk in (b"a", b"b", b"c"):
            fake_ws.feed_binary(1, chunk)

        task = asyncio.create_task(client.send_request({"op": "list"}))
        await settle()
        fake_ws.feed_json({"id": 2, "success": True})

        assert (await asyncio.wait_for(task, timeout=1.0))["id"] == 2
        assert stream.paused
        await client.disconnect()

    @pytest.mark.asyncio
    async def test_peer_error_while_download_saturated(self, fake_ws, patched_ws):
        """Test a transport error is seen while a download sits unread."""
        client = AgentClient(AgentConfig(download_high_water=2, download_low_water=0))
        await client.connect(ENDPOINT)
        stream = await client.download({"op": "download"})
        one_shot = asyncio.create_task(client.send_request({"op": "list"}))
        await settle()
        for chunk in (b"a", b"b", b"c"):
            fake_ws.feed_binary(1, chunk)

        fake_ws.feed_error("peer reset")
        await settle()

        assert client.connection_state is ConnectionState.CLOSED
        with pytest.raises(AgentDisconnectedError):
            await one_shot
        assert await stream.pull() == b"a"
        assert await stream.pull() == b"b"
        assert await stream.pull() == b"c"
        with pytest.raises(AgentDisconnectedError):
            await stream.pull()

    @pytest.mark.asyncio
    async def test_open_download_channel(self, fake_ws, patched_ws):
        """Test attaching a download stream to an existing request."""
        client = AgentClient()
        await client.connect(ENDPOINT)
        request_id = await client.send_streaming_request(
            {"op": "download"}, lambda e, m: CONTINUE
        )

        stream = client.open_download_channel(request_id)
        fake_ws.feed_binary(request_id, b"data")
        fake_ws.feed_binary(request_id)

        assert await asyncio.wait_for(stream.read_all(), timeout=1.0) == b"data"
        await client.disconnect()
