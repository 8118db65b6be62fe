"""Host TCP port allocation for guest port forwarding.

Ports are found by binding a loopback listener to port 0 and reading back
the number the OS assigned. The reservation is best-effort: once the lease
is released, another process may claim the port before QEMU binds it for
hostfwd. That window is accepted; the caller can recreate the machine.
"""

from __future__ import annotations

import socket
import types

from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from qemu_driver import constants
from qemu_driver._logging import get_logger
from qemu_driver.exceptions import AllocationExhaustedError

logger = get_logger(__name__)


class _ZeroPortError(OSError):
    """OS reported port 0 for an ephemeral bind."""


class PortLease:
    """A bound loopback listener holding one ephemeral port until released."""

    __slots__ = ("_sock", "host", "port")

    def __init__(self, sock: socket.socket, host: str, port: int) -> None:
        self._sock: socket.socket | None = sock
        self.host = host
        self.port = port

    def release(self) -> None:
        """Close the listener. Safe to call more than once."""
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> PortLease:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        self.release()


def _bind_ephemeral(host: str) -> PortLease:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind((host, 0))
        port = s.getsockname()[1]
    except BaseException:
        s.close()
        raise
    if port == 0:
        s.close()
        raise _ZeroPortError(f"ephemeral bind on {host} returned port 0")
    return PortLease(s, host, port)


def lease_tcp_port(
    host: str = constants.LOOPBACK_HOST,
    *,
    max_attempts: int = constants.PORT_ALLOC_MAX_ATTEMPTS,
    retry_delay: float = constants.PORT_ALLOC_RETRY_DELAY_SECONDS,
) -> PortLease:
    """Bind an ephemeral listener and return the lease holding it.

    Only a port-0 answer is retried; any other bind failure propagates.

    Raises:
        AllocationExhaustedError: Every attempt returned port 0.
        OSError: The bind itself failed.
    """
    try:
        for attempt in Retrying(
            retry=retry_if_exception_type(_ZeroPortError),
            stop=stop_after_attempt(max_attempts),
            wait=wait_fixed(retry_delay),
        ):
            with attempt:
                return _bind_ephemeral(host)
    except RetryError as e:
        raise AllocationExhaustedError(
            "unable to allocate tcp port",
            context={"host": host, "attempts": max_attempts},
        ) from e
    raise AssertionError("unreachable")  # pragma: no cover


def allocate_tcp_ports(
    count: int,
    host: str = constants.LOOPBACK_HOST,
    *,
    max_attempts: int = constants.PORT_ALLOC_MAX_ATTEMPTS,
    retry_delay: float = constants.PORT_ALLOC_RETRY_DELAY_SECONDS,
) -> list[int]:
    """Allocate ``count`` distinct ephemeral ports.

    All leases stay open until every port is assigned, so the OS cannot hand
    out a just-released number twice within one call.

    Raises:
        AllocationExhaustedError: A port could not be obtained within the retry bound.
    """
    held: list[PortLease] = []
    try:
        for _ in range(count):
            held.append(lease_tcp_port(host, max_attempts=max_attempts, retry_delay=retry_delay))
    finally:
        for lease in held:
            lease.release()
    ports = [lease.port for lease in held]
    logger.debug("Allocated ephemeral ports", extra={"ports": ports, "host": host})
    return ports
