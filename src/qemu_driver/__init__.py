"""qemu-driver: run a boot2docker machine under a daemonized QEMU.

Provisions the boot disk, forwards the guest SSH and engine ports to
loopback, and controls the running VM over QMP.

Quick Start:
    ```python
    from pathlib import Path

    from qemu_driver import DriverConfig, QemuDriver

    driver = QemuDriver(
        "dev",
        Path("~/.docker/machine").expanduser(),
        DriverConfig(memory_mb=2048, boot2docker_url="/isos/boot2docker.iso"),
    )
    await driver.create()
    print(driver.get_url())   # tcp://127.0.0.1:<forwarded port>
    print(await driver.get_state())
    ```

Requirements:
    - qemu-system-x86_64 and qemu-img on PATH
    - ssh-keygen (default key generator)
    - KVM is used when /dev/kvm is accessible
    - Python 3.12+
"""

from qemu_driver.config import DriverConfig
from qemu_driver.driver import QemuDriver
from qemu_driver.exceptions import (
    AllocationExhaustedError,
    BootDiskError,
    CommandError,
    DependencyError,
    DriverError,
    MachineRunningError,
    PermanentError,
    ProcessLaunchError,
    ProtocolError,
    ReadinessTimeoutError,
    StateQueryError,
    TransientError,
    UnsupportedOperationError,
)
from qemu_driver.models import Instance, MachineState
from qemu_driver.settings import Settings

__version__ = "0.1.0"

__all__ = [
    "AllocationExhaustedError",
    "BootDiskError",
    "CommandError",
    "DependencyError",
    "DriverConfig",
    "DriverError",
    "Instance",
    "MachineRunningError",
    "MachineState",
    "PermanentError",
    "ProcessLaunchError",
    "ProtocolError",
    "QemuDriver",
    "ReadinessTimeoutError",
    "Settings",
    "StateQueryError",
    "TransientError",
    "UnsupportedOperationError",
    "__version__",
]
