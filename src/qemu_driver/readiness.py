"""Guest readiness wait.

The guest counts as ready once its forwarded SSH port accepts a connection
AND sends at least one byte. QEMU's user-mode forwarder accepts on the host
port long before sshd runs inside the guest, so a bare connect proves
nothing; the SSH banner does.
"""

from __future__ import annotations

import asyncio
import contextlib

from qemu_driver import constants
from qemu_driver._logging import get_logger
from qemu_driver.exceptions import ReadinessTimeoutError

logger = get_logger(__name__)


async def _probe(host: str, port: int, read_timeout: float) -> bool | None:
    """One attempt.

    Returns:
        None if the connect failed, False if connected but no data arrived,
        True if at least one byte was read.
    """
    try:
        reader, writer = await asyncio.open_connection(host, port)
    except OSError:
        return None
    try:
        try:
            async with asyncio.timeout(read_timeout):
                data = await reader.read(1)
        except (OSError, TimeoutError):
            return False
        return bool(data)
    finally:
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()


async def wait_for_tcp(
    host: str,
    port: int,
    *,
    timeout: float = constants.READY_TIMEOUT_SECONDS,
    retry_delay: float = constants.READY_RETRY_DELAY_SECONDS,
    read_timeout: float = constants.READY_READ_TIMEOUT_SECONDS,
) -> None:
    """Block until ``host:port`` is connectable and yields data.

    A refused connect is retried straight away (yielding to the loop only);
    a connect that produced no data is retried after ``retry_delay``.
    Cancelling the awaiting task aborts the pending connect or read.

    Raises:
        ReadinessTimeoutError: Not ready within ``timeout`` seconds.
    """
    attempts = 0
    try:
        async with asyncio.timeout(timeout):
            while True:
                attempts += 1
                result = await _probe(host, port, read_timeout)
                if result:
                    logger.debug("TCP endpoint ready", extra={"host": host, "port": port, "attempts": attempts})
                    return
                if result is None:
                    await asyncio.sleep(0)
                else:
                    await asyncio.sleep(retry_delay)
    except TimeoutError as e:
        raise ReadinessTimeoutError(
            f"{host}:{port} not ready after {timeout}s",
            context={"host": host, "port": port, "attempts": attempts},
        ) from e
