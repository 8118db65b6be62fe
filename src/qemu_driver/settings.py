"""Host-wide runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from qemu_driver import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    Tool locations are resolved here once and handed to each component,
    rather than looked up from module globals.

    All settings can be overridden via environment variables with QEMU_DRIVER_ prefix.
    Example: QEMU_DRIVER_FORCE_EMULATION=true
    """

    model_config = SettingsConfigDict(
        env_prefix="QEMU_DRIVER_",
        extra="ignore",
    )

    # Tools
    qemu_img_bin: str = "qemu-img"
    ssh_keygen_bin: str = "ssh-keygen"
    kvm_device: Path = Path("/dev/kvm")

    # Control channel
    qmp_timeout_seconds: float = Field(default=constants.QMP_TIMEOUT_SECONDS, gt=0)
    qmp_read_chunk_bytes: int = Field(default=constants.QMP_READ_CHUNK_BYTES, ge=1)

    # Port allocation
    port_alloc_max_attempts: int = Field(default=constants.PORT_ALLOC_MAX_ATTEMPTS, ge=1)
    port_alloc_retry_delay_seconds: float = Field(default=constants.PORT_ALLOC_RETRY_DELAY_SECONDS, ge=0)

    # Readiness
    ready_timeout_seconds: float = Field(default=constants.READY_TIMEOUT_SECONDS, gt=0)
    ready_retry_delay_seconds: float = Field(default=constants.READY_RETRY_DELAY_SECONDS, ge=0)
    ready_read_timeout_seconds: float = Field(default=constants.READY_READ_TIMEOUT_SECONDS, gt=0)

    # Restart
    shutdown_timeout_seconds: float = Field(default=constants.SHUTDOWN_TIMEOUT_SECONDS, gt=0)
    shutdown_poll_interval_seconds: float = Field(default=constants.SHUTDOWN_POLL_INTERVAL_SECONDS, ge=0)

    # Testing/Debug
    force_emulation: bool = False
    """Never pass -enable-kvm, even when /dev/kvm is usable."""
