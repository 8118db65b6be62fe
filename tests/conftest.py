"""Shared pytest fixtures for qemu-driver tests."""

from __future__ import annotations

import asyncio
import contextlib
import json
import shutil
import tempfile
from collections.abc import AsyncGenerator, Generator
from pathlib import Path
from typing import Any

import pytest

from qemu_driver.system_probes import _probe_cache

# ============================================================================
# Fake QMP Server
# ============================================================================

GREETING: dict[str, Any] = {
    "QMP": {
        "version": {"qemu": {"micro": 0, "minor": 2, "major": 8}, "package": ""},
        "capabilities": ["oob"],
    }
}


def encode(*messages: Any) -> bytes:
    """Newline-delimited JSON, the way QEMU writes the monitor stream."""
    return b"".join(json.dumps(m).encode() + b"\n" for m in messages)


class FakeQmpServer:
    """Unix-socket server playing the QEMU side of the monitor protocol.

    Each connection gets the greeting, then one scripted reply per command
    line received. Replies are lists of byte chunks written separately, so
    tests can split a message across reads.

    greeting:
        bytes  - written as-is on connect (``b""`` sends nothing)
        None   - connection is closed right after accept

    exit_after:
        Command name after which the server stops accepting, the way QEMU
        goes away once it has answered a power-down or quit.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.greeting: bytes | None = encode(GREETING)
        self.capabilities_reply: list[bytes] = [encode({"return": {}})]
        self.replies: dict[str, list[bytes]] = {}
        self.received: list[str] = []
        self.connections = 0
        self.log: list[tuple[int, str]] = []
        self.exit_after: str | None = None
        self._server: asyncio.AbstractServer | None = None
        self._writers: list[asyncio.StreamWriter] = []

    def reply(self, command: str, *messages: Any) -> None:
        self.replies[command] = [encode(*messages)]

    def reply_chunks(self, command: str, *chunks: bytes) -> None:
        self.replies[command] = list(chunks)

    def set_status(self, status: str) -> None:
        self.reply("query-status", {"return": {"status": status, "running": status == "running"}})

    async def start(self) -> None:
        self._server = await asyncio.start_unix_server(self._handle, path=str(self.path))

    async def close(self) -> None:
        for writer in self._writers:
            writer.close()
        if self._server is not None:
            self._server.close()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._server.wait_closed(), timeout=2.0)

    async def _write_chunks(self, writer: asyncio.StreamWriter, chunks: list[bytes]) -> None:
        for chunk in chunks:
            writer.write(chunk)
            await writer.drain()
            await asyncio.sleep(0.01)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        conn_id = self.connections
        self._writers.append(writer)
        try:
            if self.greeting is None:
                return
            await self._write_chunks(writer, [self.greeting])
            while line := await reader.readline():
                command = json.loads(line)["execute"]
                self.received.append(command)
                self.log.append((conn_id, command))
                if command == self.exit_after and self._server is not None:
                    self._server.close()
                if command == "qmp_capabilities":
                    await self._write_chunks(writer, self.capabilities_reply)
                else:
                    await self._write_chunks(writer, self.replies.get(command, [encode({"return": {}})]))
        except (ConnectionError, OSError):
            pass
        finally:
            writer.close()


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def short_tmp() -> Generator[Path]:
    """Short temp directory; unix socket paths are limited to ~108 bytes."""
    path = Path(tempfile.mkdtemp(prefix="qd-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
async def qmp_server(short_tmp: Path) -> AsyncGenerator[FakeQmpServer]:
    server = FakeQmpServer(short_tmp / "monitor")
    await server.start()
    yield server
    await server.close()


@pytest.fixture(autouse=True)
def _clear_probe_cache() -> Generator[None]:
    _probe_cache.clear()
    yield
    _probe_cache.clear()


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip qemu-img integration tests when the binary is not installed."""
    if shutil.which("qemu-img"):
        return
    skip = pytest.mark.skip(reason="qemu-img not installed")
    for item in items:
        if "qemu_img" in item.keywords:
            item.add_marker(skip)
