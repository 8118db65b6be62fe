"""Data models for qemu-driver."""

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator

from qemu_driver import constants


class MachineState(str, Enum):
    """Externally visible machine state."""

    RUNNING = "Running"
    PAUSED = "Paused"
    STOPPED = "Stopped"
    ERROR = "Error"
    UNKNOWN = "Unknown"


# Any other QMP RunState (inmigrate, prelaunch, internal-error, io-error,
# suspended, watchdog, guest-panicked, ...) maps to UNKNOWN.
_RUN_STATE_MAP: dict[str, MachineState] = {
    "running": MachineState.RUNNING,
    "paused": MachineState.PAUSED,
    "shutdown": MachineState.STOPPED,
}


def map_run_state(status: object) -> MachineState:
    """Map a raw QMP ``query-status`` status string to a MachineState."""
    if not isinstance(status, str):
        return MachineState.UNKNOWN
    return _RUN_STATE_MAP.get(status, MachineState.UNKNOWN)


class Instance(BaseModel):
    """Persistent record of one machine.

    Ports and disk paths are fixed at create time. All file paths are
    derived from ``store_path`` and ``name``, so the control socket path is
    deterministic per machine.
    """

    model_config = ConfigDict(validate_assignment=True)

    name: str = Field(min_length=1)
    store_path: Path
    memory_mb: int = Field(ge=1)
    cpu_count: int = Field(ge=1)
    disk_size_mb: int = Field(ge=1)
    ssh_port: int = Field(default=0, ge=0, le=65535)
    engine_port: int = Field(default=0, ge=0, le=65535)
    cache_mode: str = "default"
    io_mode: str = "threads"
    ssh_user: str = constants.DEFAULT_SSH_USER
    seed_root: Path | None = None
    first_query: bool = False

    @model_validator(mode="after")
    def _ports_distinct(self) -> "Instance":
        if self.ssh_port and self.ssh_port == self.engine_port:
            raise ValueError(f"ssh_port and engine_port must differ (both {self.ssh_port})")
        return self

    @property
    def machine_dir(self) -> Path:
        return self.store_path / constants.MACHINES_DIRNAME / self.name

    @property
    def boot_media_path(self) -> Path:
        return self.machine_dir / constants.BOOT_MEDIA_FILENAME

    @property
    def disk_path(self) -> Path:
        return self.machine_dir / constants.BOOT_DISK_FILENAME

    @property
    def monitor_path(self) -> Path:
        """Path to QMP control socket."""
        return self.machine_dir / constants.MONITOR_SOCKET_FILENAME

    @property
    def ssh_key_path(self) -> Path:
        return self.machine_dir / constants.SSH_KEY_FILENAME

    @property
    def public_key_path(self) -> Path:
        return self.ssh_key_path.with_name(constants.SSH_KEY_FILENAME + ".pub")

    @property
    def instance_file(self) -> Path:
        return self.machine_dir / constants.INSTANCE_FILENAME
