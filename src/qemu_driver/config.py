"""Machine creation options for qemu-driver.

DriverConfig holds the per-machine options that the host-management tool
exposes as ``create`` flags.

Example:
    ```python
    from qemu_driver import DriverConfig, QemuDriver

    config = DriverConfig(memory_mb=2048, cpu_count=2, boot2docker_url="/isos/boot2docker.iso")
    driver = QemuDriver("dev", Path("~/.docker/machine").expanduser(), config)
    await driver.create()
    ```
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from qemu_driver import constants


class DriverConfig(BaseModel):
    """Configuration for QemuDriver.

    Attributes:
        memory_mb: Guest memory in MB. Default: 1024.
        disk_size_mb: Boot disk growth in MB. Default: 20000.
        cpu_count: Number of vCPUs. Default: 1.
        program: Hypervisor binary. Default: qemu-system-x86_64.
        network: Network name (recorded, guest networking is host-forwarded).
        boot2docker_url: Boot media source. A local path or file:// URL.
        network_bridge: Bridge name (recorded, currently unused).
        cache_mode: Disk cache mode.
        io_mode: Disk IO mode.
        ssh_user: SSH username. Default: docker.
        userdata_file: cloud-config user-data file. When set, a seed
            directory is built and passed to the guest over 9p.
        stop_command: QMP command for a graceful stop.
        kill_command: QMP command for a forced stop.
        legacy_first_url_port: Report the well-known engine port on the
            first get_url() call after configuration.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    memory_mb: int = Field(default=constants.DEFAULT_MEMORY_MB, ge=1, description="Guest memory in MB")
    disk_size_mb: int = Field(default=constants.DEFAULT_DISK_SIZE_MB, ge=1, description="Boot disk size in MB")
    cpu_count: int = Field(default=constants.DEFAULT_CPU_COUNT, ge=1, description="Number of vCPUs")
    program: str = Field(default=constants.DEFAULT_QEMU_PROGRAM, min_length=1, description="Hypervisor binary")

    # TODO: support for multiple networks
    network: str = Field(default=constants.DEFAULT_NETWORK, description="Network to connect to")
    network_bridge: str = Field(default=constants.DEFAULT_NETWORK_BRIDGE, description="Bridge name (unused)")

    boot2docker_url: str = Field(default="", description="Boot media path or file:// URL")

    cache_mode: Literal["default", "none", "writethrough", "writeback", "directsync", "unsafe"] = "default"
    io_mode: Literal["threads", "native"] = "threads"

    ssh_user: str = Field(default=constants.DEFAULT_SSH_USER, description="SSH username")
    userdata_file: Path | None = Field(default=None, description="cloud-config user-data file")

    stop_command: str = Field(default=constants.QMP_POWERDOWN_COMMAND, min_length=1)
    kill_command: str = Field(default=constants.QMP_POWERDOWN_COMMAND, min_length=1)

    legacy_first_url_port: bool = False
