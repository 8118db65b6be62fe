"""Tests for ephemeral TCP port allocation.

Real sockets on loopback; only the port-0 retry path patches the binder.
"""

import socket
from unittest.mock import patch

import pytest

from qemu_driver import port_allocator
from qemu_driver.exceptions import AllocationExhaustedError, TransientError
from qemu_driver.port_allocator import (
    PortLease,
    _ZeroPortError,
    allocate_tcp_ports,
    lease_tcp_port,
)


def _can_bind(host: str, port: int) -> bool:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        s.bind((host, port))
    except OSError:
        return False
    finally:
        s.close()
    return True


# ============================================================================
# PortLease
# ============================================================================


class TestPortLease:
    """Tests for the held-listener lease."""

    def test_lease_holds_port_until_release(self) -> None:
        """While leased, the port is bound and cannot be taken again."""
        with lease_tcp_port() as lease:
            assert lease.port > 0
            assert not _can_bind(lease.host, lease.port)
        assert _can_bind(lease.host, lease.port)

    def test_release_is_idempotent(self) -> None:
        lease = lease_tcp_port()
        lease.release()
        lease.release()
        assert _can_bind(lease.host, lease.port)

    def test_slots_defined(self) -> None:
        assert "_sock" in PortLease.__slots__


# ============================================================================
# Allocation
# ============================================================================


class TestAllocateTcpPorts:
    """Tests for allocate_tcp_ports."""

    def test_single_port_in_range(self) -> None:
        (port,) = allocate_tcp_ports(1)
        assert 0 < port <= 65535

    def test_two_ports_are_distinct(self) -> None:
        """Both forward ports of one machine differ."""
        for _ in range(50):
            ssh_port, engine_port = allocate_tcp_ports(2)
            assert ssh_port != engine_port

    def test_ports_are_released(self) -> None:
        """Returned ports are free for QEMU to bind."""
        (port,) = allocate_tcp_ports(1)
        assert _can_bind("127.0.0.1", port)

    def test_zero_port_is_retried(self) -> None:
        """A port-0 answer is retried until a real port comes back."""
        real_bind = port_allocator._bind_ephemeral
        calls = {"n": 0}

        def flaky(host: str) -> PortLease:
            calls["n"] += 1
            if calls["n"] < 3:
                raise _ZeroPortError("port 0")
            return real_bind(host)

        with patch.object(port_allocator, "_bind_ephemeral", side_effect=flaky):
            (port,) = allocate_tcp_ports(1, retry_delay=0)

        assert port > 0
        assert calls["n"] == 3

    def test_exhausted_after_max_attempts(self) -> None:
        """Port 0 on every attempt raises AllocationExhaustedError."""
        with patch.object(port_allocator, "_bind_ephemeral", side_effect=_ZeroPortError("port 0")) as bind:
            with pytest.raises(AllocationExhaustedError, match="unable to allocate tcp port") as exc_info:
                allocate_tcp_ports(1, max_attempts=11, retry_delay=0)

        assert bind.call_count == 11
        assert exc_info.value.context["attempts"] == 11
        assert isinstance(exc_info.value, TransientError)

    def test_bind_failure_is_not_retried(self) -> None:
        """Errors other than port 0 propagate on the first attempt."""
        with patch.object(port_allocator, "_bind_ephemeral", side_effect=PermissionError("denied")) as bind:
            with pytest.raises(PermissionError):
                allocate_tcp_ports(1, retry_delay=0)
        assert bind.call_count == 1

    def test_partial_failure_releases_held_leases(self) -> None:
        """If the second lease fails, the first is still released."""
        first = lease_tcp_port()
        with patch.object(
            port_allocator, "lease_tcp_port", side_effect=[first, AllocationExhaustedError("unable to allocate tcp port")]
        ):
            with pytest.raises(AllocationExhaustedError):
                allocate_tcp_ports(2)
        assert _can_bind(first.host, first.port)
