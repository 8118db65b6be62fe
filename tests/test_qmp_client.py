"""Tests for QmpClient (QMP monitor protocol).

Protocol tests talk to a real unix-socket server (FakeQmpServer) so the
full stack runs: connect → greeting → capabilities → command → framing.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from qemu_driver.exceptions import CommandError, ProtocolError
from qemu_driver.qmp_client import QmpClient, _JsonStreamReader, is_query_command
from tests.conftest import FakeQmpServer, encode


def _client(server: FakeQmpServer, **kwargs: float | int) -> QmpClient:
    return QmpClient(server.path, **kwargs)  # type: ignore[arg-type]


# ============================================================================
# Reply handling
# ============================================================================


class TestQmpClientExecute:
    """Tests for execute() reply rules."""

    async def test_query_returns_result(self, qmp_server: FakeQmpServer) -> None:
        """query-* commands return the populated result."""
        qmp_server.set_status("running")
        result = await _client(qmp_server).execute("query-status")
        assert result == {"status": "running", "running": True}

    async def test_handshake_precedes_command(self, qmp_server: FakeQmpServer) -> None:
        """qmp_capabilities is always sent before the command."""
        await _client(qmp_server).execute("system_powerdown")
        assert qmp_server.received == ["qmp_capabilities", "system_powerdown"]

    async def test_action_with_empty_result_succeeds(self, qmp_server: FakeQmpServer) -> None:
        """Non-query command answered with {} succeeds."""
        assert await _client(qmp_server).execute("system_powerdown") == {}

    async def test_action_with_populated_result_fails(self, qmp_server: FakeQmpServer) -> None:
        """Non-query command answered with a populated result is a CommandError."""
        qmp_server.reply("system_powerdown", {"return": {"unexpected": 1}})

        with pytest.raises(CommandError) as exc_info:
            await _client(qmp_server).execute("system_powerdown")

        assert exc_info.value.command == "system_powerdown"
        assert exc_info.value.response == {"unexpected": 1}

    async def test_error_reply_raises_command_error(self, qmp_server: FakeQmpServer) -> None:
        """{"error": ...} replies carry the error payload."""
        error = {"class": "CommandNotFound", "desc": "The command bogus has not been found"}
        qmp_server.reply("bogus", {"error": error})

        with pytest.raises(CommandError) as exc_info:
            await _client(qmp_server).execute("bogus")

        assert exc_info.value.response == error
        assert isinstance(exc_info.value, ProtocolError)

    async def test_error_reply_on_query(self, qmp_server: FakeQmpServer) -> None:
        """An error answer to a query is a CommandError too."""
        qmp_server.reply("query-status", {"error": {"class": "GenericError", "desc": "nope"}})
        with pytest.raises(CommandError):
            await _client(qmp_server).execute("query-status")

    async def test_reply_without_return_is_protocol_error(self, qmp_server: FakeQmpServer) -> None:
        """A reply with neither return nor error is malformed."""
        qmp_server.reply("stop", {"id": 1})
        with pytest.raises(ProtocolError, match="unexpected QMP reply"):
            await _client(qmp_server).execute("stop")

    async def test_each_call_uses_fresh_connection(self, qmp_server: FakeQmpServer) -> None:
        """No session is kept between calls."""
        client = _client(qmp_server)
        qmp_server.set_status("paused")
        await client.execute("query-status")
        await client.execute("query-status")
        assert qmp_server.connections == 2
        assert qmp_server.received == ["qmp_capabilities", "query-status"] * 2


# ============================================================================
# Handshake
# ============================================================================


class TestQmpClientHandshake:
    """Tests for greeting and capabilities negotiation."""

    async def test_non_empty_capabilities_reply_aborts(self, qmp_server: FakeQmpServer) -> None:
        """A populated capabilities reply aborts before the command is sent."""
        qmp_server.capabilities_reply = [encode({"return": {"oob": True}})]

        with pytest.raises(ProtocolError, match="qmp_capabilities failed"):
            await _client(qmp_server).execute("system_powerdown")

        assert qmp_server.received == ["qmp_capabilities"]

    async def test_capabilities_error_aborts(self, qmp_server: FakeQmpServer) -> None:
        qmp_server.capabilities_reply = [encode({"error": {"class": "GenericError", "desc": "x"}})]
        with pytest.raises(ProtocolError):
            await _client(qmp_server).execute("system_powerdown")
        assert qmp_server.received == ["qmp_capabilities"]

    async def test_unparseable_greeting_is_tolerated(self, qmp_server: FakeQmpServer) -> None:
        """Only a greeting read failure is fatal; garbage is ignored."""
        qmp_server.greeting = b"this is not json\n"
        qmp_server.set_status("shutdown")

        result = await _client(qmp_server).execute("query-status")
        assert result["status"] == "shutdown"

    async def test_closed_before_greeting(self, qmp_server: FakeQmpServer) -> None:
        """EOF instead of a greeting is a ProtocolError."""
        qmp_server.greeting = None
        with pytest.raises(ProtocolError, match="closed unexpectedly"):
            await _client(qmp_server).execute("query-status")

    async def test_missing_socket(self, short_tmp: Path) -> None:
        """Connect failure is a ProtocolError naming the socket."""
        client = QmpClient(short_tmp / "nothing-here")
        with pytest.raises(ProtocolError, match="connection failed") as exc_info:
            await client.execute("query-status")
        assert exc_info.value.context["socket"] == str(short_tmp / "nothing-here")

    async def test_silent_server_times_out(self, qmp_server: FakeQmpServer) -> None:
        """A server that never answers trips the per-call timeout."""
        qmp_server.greeting = b""
        with pytest.raises(ProtocolError, match="timed out"):
            await _client(qmp_server, timeout=0.2).execute("query-status")


# ============================================================================
# Framing
# ============================================================================


class TestQmpClientFraming:
    """Tests for incremental reply framing over the socket."""

    async def test_skips_events_before_reply(self, qmp_server: FakeQmpServer) -> None:
        """Async events ahead of the reply are skipped."""
        qmp_server.reply(
            "query-status",
            {"event": "RESUME", "data": {}, "timestamp": {"seconds": 1, "microseconds": 0}},
            {"event": "NIC_RX_FILTER_CHANGED", "data": {"path": "/machine/peripheral-anon/device[0]"}},
            {"return": {"status": "running", "running": True}},
        )
        result = await _client(qmp_server).execute("query-status")
        assert result["status"] == "running"

    async def test_reply_split_across_writes(self, qmp_server: FakeQmpServer) -> None:
        """A reply delivered in several pieces is reassembled."""
        raw = encode({"return": {"status": "paused", "running": False, "singlestep": False}})
        qmp_server.reply_chunks("query-status", raw[:7], raw[7:20], raw[20:])

        result = await _client(qmp_server, read_chunk_bytes=8).execute("query-status")
        assert result["status"] == "paused"

    async def test_multibyte_utf8_split(self, qmp_server: FakeQmpServer) -> None:
        """A UTF-8 sequence cut between reads decodes correctly."""
        raw = json.dumps({"return": {"status": "running", "name": "café"}}, ensure_ascii=False).encode() + b"\n"
        cut = raw.index("é".encode()) + 1
        qmp_server.reply_chunks("query-name", raw[:cut], raw[cut:])

        result = await _client(qmp_server).execute("query-name")
        assert result["name"] == "café"

    async def test_malformed_reply(self, qmp_server: FakeQmpServer) -> None:
        qmp_server.reply_chunks("stop", b"{oops\n")
        with pytest.raises(ProtocolError, match="malformed"):
            await _client(qmp_server).execute("stop")

    async def test_eof_mid_reply(self, qmp_server: FakeQmpServer) -> None:
        """A truncated reply followed by EOF is a ProtocolError."""
        qmp_server.reply_chunks("stop", b'{"return": ')

        async def _close_after_partial() -> None:
            await asyncio.sleep(0.2)
            await qmp_server.close()

        closer = asyncio.create_task(_close_after_partial())
        with pytest.raises(ProtocolError):
            await _client(qmp_server, timeout=2.0).execute("stop")
        await closer

    async def test_too_many_events(self, qmp_server: FakeQmpServer) -> None:
        """An endless event stream does not hang the call."""
        qmp_server.reply("query-status", *[{"event": "STOP", "data": {}}] * 40)
        with pytest.raises(ProtocolError, match="too many QMP events"):
            await _client(qmp_server).execute("query-status")


# ============================================================================
# _JsonStreamReader
# ============================================================================


class TestJsonStreamReader:
    """Tests for the incremental JSON reader on a plain StreamReader."""

    async def test_two_messages_in_one_chunk(self) -> None:
        reader = asyncio.StreamReader()
        reader.feed_data(b'{"a": 1}\n{"b": 2}\n')
        stream = _JsonStreamReader(reader)
        assert await stream.read_message() == {"a": 1}
        assert await stream.read_message() == {"b": 2}

    async def test_message_without_trailing_newline(self) -> None:
        """A complete object is returned even before its newline arrives."""
        reader = asyncio.StreamReader()
        reader.feed_data(b'{"return": {}}')
        assert await _JsonStreamReader(reader).read_message() == {"return": {}}

    async def test_oversized_message(self) -> None:
        reader = asyncio.StreamReader()
        reader.feed_data(b'{"return": "' + b"x" * 200)
        with pytest.raises(ProtocolError, match="exceeds"):
            await _JsonStreamReader(reader, chunk_size=64, max_bytes=128).read_message()

    async def test_eof(self) -> None:
        reader = asyncio.StreamReader()
        reader.feed_eof()
        with pytest.raises(ProtocolError, match="closed unexpectedly"):
            await _JsonStreamReader(reader).read_message()

    async def test_malformed_line_is_dropped(self) -> None:
        """After a malformed line the next message is still readable."""
        reader = asyncio.StreamReader()
        reader.feed_data(b'not-json\n{"ok": true}\n')
        stream = _JsonStreamReader(reader)
        with pytest.raises(ProtocolError):
            await stream.read_message()
        assert await stream.read_message() == {"ok": True}


class TestIsQueryCommand:
    @pytest.mark.parametrize(
        ("command", "expected"),
        [
            ("query-status", True),
            ("query-version", True),
            ("system_powerdown", False),
            ("quit", False),
            ("qmp_capabilities", False),
        ],
    )
    def test_prefix(self, command: str, expected: bool) -> None:
        assert is_query_command(command) is expected
