"""QMP (QEMU Monitor Protocol) client for machine control.

Each call opens its own connection to the machine's monitor socket, runs
one command and closes:

    connect → read greeting → {"execute": "qmp_capabilities"} → expect {"return": {}}
            → {"execute": "<command>"} → read one reply → close

Reply rules:
- ``query-*`` commands answer with a populated ``return``; it is the result.
- Any other command must answer ``{"return": {}}``. A populated ``return``
  means the command failed and is raised as CommandError with the payload.
- ``{"error": {...}}`` is always a CommandError.

Framing: QEMU does not length-prefix messages, so replies are read in
chunks and decoded incrementally until one complete JSON object is
available. Asynchronous events (``{"event": ...}``) that arrive before the
reply are skipped.

There is no persistent session and no pipelining. QEMU serves one monitor
client at a time, so callers serialize calls per machine.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
from typing import TYPE_CHECKING, Any, Final

from qemu_driver import constants
from qemu_driver._logging import get_logger
from qemu_driver.exceptions import CommandError, ProtocolError

if TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)

_INCOMPLETE: Final = object()


class _MalformedMessageError(ProtocolError):
    """A complete line arrived that is not valid JSON."""


class _JsonStreamReader:
    """Incremental JSON object reader over an asyncio stream.

    A decode error is treated as "need more data" unless it occurs on a line
    that is already newline-terminated; then that line is dropped from the
    buffer and reported as malformed.
    """

    __slots__ = ("_buf", "_chunk_size", "_decoder", "_max_bytes", "_reader")

    _json = json.JSONDecoder()

    def __init__(
        self,
        reader: asyncio.StreamReader,
        chunk_size: int = constants.QMP_READ_CHUNK_BYTES,
        max_bytes: int = constants.QMP_MAX_MESSAGE_BYTES,
    ) -> None:
        self._reader = reader
        self._chunk_size = chunk_size
        self._max_bytes = max_bytes
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buf = ""

    def _try_parse(self) -> Any:
        text = self._buf.lstrip()
        if not text:
            self._buf = ""
            return _INCOMPLETE
        try:
            obj, end = self._json.raw_decode(text)
        except json.JSONDecodeError as e:
            newline = text.find("\n", e.pos)
            if newline == -1:
                self._buf = text
                return _INCOMPLETE
            bad = text[:newline].strip()
            self._buf = text[newline + 1 :]
            raise _MalformedMessageError(f"malformed QMP message: {bad[:200]!r}") from e
        self._buf = text[end:]
        return obj

    async def read_message(self) -> Any:
        """Read the next complete JSON value.

        Raises:
            ProtocolError: EOF, transport error, oversize or malformed message.
        """
        while True:
            msg = self._try_parse()
            if msg is not _INCOMPLETE:
                return msg
            if len(self._buf) > self._max_bytes:
                raise ProtocolError(f"QMP message exceeds {self._max_bytes} bytes")
            try:
                chunk = await self._reader.read(self._chunk_size)
            except OSError as e:
                raise ProtocolError(f"QMP read failed: {e}") from e
            if not chunk:
                raise ProtocolError("QMP connection closed unexpectedly")
            self._buf += self._decoder.decode(chunk)


def is_query_command(command: str) -> bool:
    return command.startswith(constants.QMP_QUERY_PREFIX)


class QmpClient:
    """One-shot QMP command runner bound to a monitor socket path.

    Usage:
        client = QmpClient(instance.monitor_path)
        status = await client.execute("query-status")
        await client.execute("system_powerdown")
    """

    __slots__ = ("_read_chunk_bytes", "_socket_path", "_timeout")

    def __init__(
        self,
        socket_path: Path,
        *,
        timeout: float = constants.QMP_TIMEOUT_SECONDS,
        read_chunk_bytes: int = constants.QMP_READ_CHUNK_BYTES,
    ) -> None:
        self._socket_path = socket_path
        self._timeout = timeout
        self._read_chunk_bytes = read_chunk_bytes

    async def execute(self, command: str) -> Any:
        """Run ``command`` on a fresh connection.

        Returns:
            The ``return`` payload: the query result for ``query-*``
            commands, ``{}`` for everything else.

        Raises:
            CommandError: The command was answered with an error or, for a
                non-query command, a populated result.
            ProtocolError: Connect, handshake, framing or timeout failure.
        """
        try:
            async with asyncio.timeout(self._timeout):
                return await self._execute(command)
        except TimeoutError as e:
            raise ProtocolError(
                f"QMP {command} timed out after {self._timeout}s",
                context={"socket": str(self._socket_path), "command": command},
            ) from e

    async def _execute(self, command: str) -> Any:
        try:
            reader, writer = await asyncio.open_unix_connection(str(self._socket_path))
        except OSError as e:
            raise ProtocolError(
                f"QMP connection failed: {e}",
                context={"socket": str(self._socket_path)},
            ) from e

        try:
            stream = _JsonStreamReader(reader, self._read_chunk_bytes)
            await self._read_greeting(stream)

            await self._send(writer, constants.QMP_CAPABILITIES_COMMAND)
            caps = self._expect_return(await self._read_reply(stream, constants.QMP_CAPABILITIES_COMMAND))
            if caps != {}:
                raise ProtocolError(
                    f"qmp_capabilities failed: {caps}",
                    context={"socket": str(self._socket_path), "response": caps},
                )

            await self._send(writer, command)
            reply = await self._read_reply(stream, command)
        finally:
            writer.close()
            with contextlib.suppress(OSError, TimeoutError):
                await asyncio.wait_for(writer.wait_closed(), timeout=1.0)

        if "error" in reply:
            raise CommandError(f"{command} failed: {reply['error']}", command, reply["error"])
        result = self._expect_return(reply)
        if is_query_command(command):
            return result
        if result:
            raise CommandError(f"{command} failed: {result}", command, result)
        return result

    async def _read_greeting(self, stream: _JsonStreamReader) -> None:
        """Consume the server greeting. Only a read failure is fatal."""
        try:
            greeting = await stream.read_message()
        except _MalformedMessageError as e:
            logger.debug("Ignoring unparseable QMP greeting", extra={"error": e.message})
            return
        if isinstance(greeting, dict) and isinstance(greeting.get("QMP"), dict):
            logger.debug("QMP greeting received", extra={"version": greeting["QMP"].get("version")})
        else:
            logger.debug("Unexpected QMP greeting shape", extra={"greeting": greeting})

    @staticmethod
    async def _send(writer: asyncio.StreamWriter, command: str) -> None:
        logger.debug("QMP command: %s", command)
        try:
            writer.write(json.dumps({"execute": command}).encode() + b"\n")
            await writer.drain()
        except OSError as e:
            raise ProtocolError(f"QMP write failed: {e}") from e

    async def _read_reply(self, stream: _JsonStreamReader, command: str) -> dict[str, Any]:
        """Read the reply to ``command``, skipping async events."""
        for _ in range(constants.QMP_MAX_EVENTS_PER_REPLY):
            msg = await stream.read_message()
            if not isinstance(msg, dict):
                raise ProtocolError(f"unexpected QMP reply to {command}: {msg!r}")
            if "event" in msg:
                logger.debug("QMP event: %s data=%s", msg.get("event"), msg.get("data"))
                continue
            logger.debug("QMP response: %s -> %s", command, msg)
            return msg
        raise ProtocolError(f"too many QMP events without a reply to {command}")

    @staticmethod
    def _expect_return(reply: dict[str, Any]) -> Any:
        if "return" not in reply:
            raise ProtocolError(f"unexpected QMP reply: {reply}", context={"response": reply})
        return reply["return"]
