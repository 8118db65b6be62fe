"""Constants for qemu-driver defaults, guest ports and on-disk layout."""

from typing import Final

# ============================================================================
# Driver identity
# ============================================================================

DRIVER_NAME: Final[str] = "qemu"
"""Driver name reported to the host-management tool."""

DEFAULT_SSH_USER: Final[str] = "docker"
"""SSH user baked into boot2docker images."""

# ============================================================================
# Creation Defaults
# ============================================================================

DEFAULT_MEMORY_MB: Final[int] = 1024
"""Default guest memory in MB."""

DEFAULT_DISK_SIZE_MB: Final[int] = 20000
"""Default boot disk growth in MB."""

DEFAULT_CPU_COUNT: Final[int] = 1
"""Default number of vCPUs."""

DEFAULT_QEMU_PROGRAM: Final[str] = "qemu-system-x86_64"
"""Hypervisor binary, resolved on PATH."""

DEFAULT_NETWORK: Final[str] = "default"
DEFAULT_NETWORK_BRIDGE: Final[str] = "virbr0"

# ============================================================================
# Guest Ports
# ============================================================================

GUEST_SSH_PORT: Final[int] = 22
"""SSH port inside the guest (host-forwarded)."""

GUEST_ENGINE_PORT: Final[int] = 2376
"""Docker engine TLS port inside the guest (host-forwarded)."""

LOOPBACK_HOST: Final[str] = "127.0.0.1"
"""All guest services are reached through host forwarding on loopback."""

SSH_HOSTNAME: Final[str] = "localhost"

# ============================================================================
# Control Channel (QMP)
# ============================================================================

QMP_CAPABILITIES_COMMAND: Final[str] = "qmp_capabilities"
QMP_QUERY_PREFIX: Final[str] = "query-"
QMP_STATUS_COMMAND: Final[str] = "query-status"
QMP_POWERDOWN_COMMAND: Final[str] = "system_powerdown"
QMP_QUIT_COMMAND: Final[str] = "quit"

QMP_TIMEOUT_SECONDS: Final[float] = 5.0
"""Upper bound for one connect/handshake/command/close round trip."""

QMP_READ_CHUNK_BYTES: Final[int] = 4096

QMP_MAX_MESSAGE_BYTES: Final[int] = 1024 * 1024
"""Reply size cap; a peer streaming more than this without a complete object is broken."""

QMP_MAX_EVENTS_PER_REPLY: Final[int] = 32
"""Async events tolerated before a command reply."""

# ============================================================================
# Port Allocation
# ============================================================================

PORT_ALLOC_MAX_ATTEMPTS: Final[int] = 11
PORT_ALLOC_RETRY_DELAY_SECONDS: Final[float] = 0.001

# ============================================================================
# Readiness
# ============================================================================

READY_TIMEOUT_SECONDS: Final[float] = 300.0
"""Deadline for the guest SSH port to produce its banner."""

READY_RETRY_DELAY_SECONDS: Final[float] = 1.0
"""Pause after a connect that succeeded but produced no data."""

READY_READ_TIMEOUT_SECONDS: Final[float] = 5.0
"""Per-attempt wait for the first byte after connecting."""

SHUTDOWN_TIMEOUT_SECONDS: Final[float] = 60.0
"""Deadline for an old QEMU to release its monitor socket before a restart relaunches."""

SHUTDOWN_POLL_INTERVAL_SECONDS: Final[float] = 0.5

# ============================================================================
# Boot Disk
# ============================================================================

BOOT2DOCKER_MAGIC: Final[str] = "boot2docker, please format-me"
"""First archive entry; tells the boot2docker automount script to format the disk."""

SSH_DIR_MODE: Final[int] = 0o700
SSH_KEY_FILE_MODE: Final[int] = 0o644
AUTHORIZED_KEY_NAMES: Final[tuple[str, ...]] = ("authorized_keys", "authorized_keys2")

BOOT_DISK_FORMAT: Final[str] = "qcow2"
SEED_USERDATA_SUBDIR: Final[tuple[str, ...]] = ("openstack", "latest")
SEED_USERDATA_FILENAME: Final[str] = "user_data"
SEED_MOUNT_TAG: Final[str] = "config-2"

# ============================================================================
# Machine Directory Layout
# ============================================================================

MACHINES_DIRNAME: Final[str] = "machines"
BOOT_MEDIA_FILENAME: Final[str] = "boot2docker.iso"
BOOT_DISK_FILENAME: Final[str] = "disk.qcow2"
MONITOR_SOCKET_FILENAME: Final[str] = "monitor"
SSH_KEY_FILENAME: Final[str] = "id_rsa"
SEED_ROOT_DIRNAME: Final[str] = "cloud-config"
INSTANCE_FILENAME: Final[str] = "config.json"

# ============================================================================
# Subprocess
# ============================================================================

STDERR_ERROR_MARKER: Final[str] = "error:"
"""Substring that marks a failure in stderr even when the exit code is 0."""

PROCESS_OUTPUT_MAX_BYTES: Final[int] = 2000
"""Maximum bytes of tool stdout/stderr carried in error messages."""

QEMU_LAUNCH_TIMEOUT_SECONDS: Final[float] = 60.0
"""QEMU daemonizes once the machine is set up; this bounds the foreground phase."""
