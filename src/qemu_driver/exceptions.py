"""Exception hierarchy for qemu-driver.

All exceptions inherit from DriverError.

Hierarchy:
    DriverError (base)
    ├── TransientError (retryable marker base)
    │   ├── AllocationExhaustedError  ← no free host port after bounded retries
    │   ├── ProcessLaunchError        ← hypervisor exited nonzero / reported error
    │   └── ReadinessTimeoutError     ← guest SSH port never became ready
    ├── PermanentError (non-retryable marker base)
    │   ├── BootDiskError             ← archive, conversion or resize failed
    │   ├── DependencyError           ← missing binary or boot media
    │   ├── MachineRunningError       ← a live QEMU already serves the monitor socket
    │   └── UnsupportedOperationError ← operation the driver does not provide
    └── ProtocolError                 ← control channel transport/framing failure
        ├── CommandError              ← command understood but failed
        └── StateQueryError           ← status query failed (state = Error)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from qemu_driver.models import MachineState


class DriverError(Exception):
    """Base exception for all driver errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(DriverError):
    """Base for errors that may succeed on retry (host contention, slow guests)."""


class PermanentError(DriverError):
    """Base for errors that won't succeed on retry without a configuration change."""


# =============================================================================
# Transient Errors
# =============================================================================


class AllocationExhaustedError(TransientError):
    """No usable ephemeral TCP port was returned within the retry bound."""


class ProcessLaunchError(TransientError):
    """Hypervisor (or helper tool) launch failed.

    Raised on a nonzero exit code, and also on a zero exit code when stderr
    carries an ``error:`` marker, since QEMU reports some startup failures
    that way.

    Attributes:
        stdout: Captured standard output
        stderr: Captured standard error
        returncode: Process exit code (None if the process never started)
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        stdout: str = "",
        stderr: str = "",
        returncode: int | None = None,
    ):
        super().__init__(message, context)
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode


class ReadinessTimeoutError(TransientError):
    """Guest SSH port did not yield data before the readiness deadline."""


# =============================================================================
# Permanent Errors
# =============================================================================


class BootDiskError(PermanentError):
    """Boot or seed disk assembly failed.

    The underlying cause is chained (``__cause__``). Partial artifacts are
    left on disk.

    Attributes:
        stderr: Standard error output from qemu-img (if available)
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        stderr: str = "",
    ):
        super().__init__(message, context)
        self.stderr = stderr


class DependencyError(PermanentError):
    """Required dependency missing.

    Raised when the hypervisor binary, qemu-img, ssh-keygen or the boot
    media is not available.
    """


class MachineRunningError(PermanentError):
    """A QEMU process still answers on the machine's monitor socket.

    Launching another would take over the socket path from the live one.
    """


class UnsupportedOperationError(PermanentError):
    """Operation is not provided by this driver (upgrade, docker start/stop)."""


# =============================================================================
# Control Channel Errors
# =============================================================================


class ProtocolError(DriverError):
    """Control channel failure.

    Covers connect/read/write errors, an unreadable greeting, malformed or
    unexpected reply shapes, a non-empty capabilities handshake reply and
    timeouts.
    """


class CommandError(ProtocolError):
    """Command was delivered and answered, but the answer signals failure.

    Attributes:
        command: Command name that failed
        response: Echoed reply payload
    """

    def __init__(self, message: str, command: str, response: Any):
        super().__init__(message, context={"command": command, "response": response})
        self.command = command
        self.response = response


class StateQueryError(ProtocolError):
    """Status query failed; the machine is reported in the Error state.

    Attributes:
        state: Always MachineState.ERROR
    """

    def __init__(self, message: str, state: MachineState, context: dict[str, Any] | None = None):
        super().__init__(message, context)
        self.state = state
