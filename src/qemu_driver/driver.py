"""QEMU machine driver: lifecycle orchestration for one boot2docker VM.

Create → allocate ports → stage boot media → SSH key → boot disk
       (→ seed directory) → save record → Start
Start  → refuse if the monitor answers → launch daemonized QEMU
       → wait for the guest SSH banner
Restart → stop if running → wait for the old QEMU to exit → Start
Stop / Kill / Remove / GetState → one QMP call each over the
machine's monitor socket

Every operation that touches the machine takes the driver's lock, so calls
on one driver instance run one at a time. Nested steps (create → start,
restart → stop/start, remove → kill) use the unlocked ``_`` helpers.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
from pydantic import BaseModel, ValidationError

from qemu_driver import constants
from qemu_driver._logging import get_logger
from qemu_driver.boot_disk import create_boot_disk, create_seed_dir
from qemu_driver.boot_media import MediaStager, copy_local_media
from qemu_driver.config import DriverConfig
from qemu_driver.exceptions import (
    BootDiskError,
    CommandError,
    DependencyError,
    DriverError,
    MachineRunningError,
    ProtocolError,
    StateQueryError,
    UnsupportedOperationError,
)
from qemu_driver.models import Instance, MachineState, map_run_state
from qemu_driver.port_allocator import allocate_tcp_ports
from qemu_driver.qmp_client import QmpClient
from qemu_driver.readiness import wait_for_tcp
from qemu_driver.settings import Settings
from qemu_driver.ssh_keys import KeyGenerator, read_public_key, ssh_keygen
from qemu_driver.supervisor import launch_qemu
from qemu_driver.system_probes import check_kvm_available

logger = get_logger(__name__)


class SavedMachine(BaseModel):
    """On-disk form of a machine: creation options plus the instance record."""

    config: DriverConfig
    instance: Instance


class QemuDriver:
    """Drives a single QEMU VM through its lifecycle.

    Usage:
        driver = QemuDriver("dev", store_path, DriverConfig(boot2docker_url="/isos/b2d.iso"))
        await driver.create()
        print(driver.get_url())

        # Later, in another process
        driver = await QemuDriver.load(store_path, "dev")
        await driver.stop()
    """

    def __init__(
        self,
        machine_name: str,
        store_path: Path,
        config: DriverConfig | None = None,
        *,
        settings: Settings | None = None,
        key_generator: KeyGenerator | None = None,
        media_stager: MediaStager | None = None,
        instance: Instance | None = None,
    ) -> None:
        self.config = config or DriverConfig()
        self.settings = settings or Settings()
        self.instance = instance or Instance(
            name=machine_name,
            store_path=store_path,
            memory_mb=self.config.memory_mb,
            cpu_count=self.config.cpu_count,
            disk_size_mb=self.config.disk_size_mb,
            cache_mode=self.config.cache_mode,
            io_mode=self.config.io_mode,
            ssh_user=self.config.ssh_user,
            first_query=self.config.legacy_first_url_port,
        )
        self._key_generator = key_generator or ssh_keygen(self.settings.ssh_keygen_bin)
        self._media_stager = media_stager or copy_local_media
        self._qmp = QmpClient(
            self.instance.monitor_path,
            timeout=self.settings.qmp_timeout_seconds,
            read_chunk_bytes=self.settings.qmp_read_chunk_bytes,
        )
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @classmethod
    async def load(cls, store_path: Path, machine_name: str, **kwargs: Any) -> QemuDriver:
        """Rebuild a driver from the record saved by create().

        Raises:
            DriverError: No readable record exists for ``machine_name``.
        """
        record_path = store_path / constants.MACHINES_DIRNAME / machine_name / constants.INSTANCE_FILENAME
        try:
            async with aiofiles.open(record_path) as f:
                saved = SavedMachine.model_validate_json(await f.read())
        except FileNotFoundError as e:
            raise DriverError(f"machine {machine_name} does not exist", context={"path": str(record_path)}) from e
        except (OSError, ValidationError) as e:
            raise DriverError(f"cannot load machine {machine_name}: {e}", context={"path": str(record_path)}) from e
        return cls(machine_name, store_path, saved.config, instance=saved.instance, **kwargs)

    async def save(self) -> None:
        """Write the machine record to ``<machine_dir>/config.json``."""
        await aiofiles.os.makedirs(self.instance.machine_dir, exist_ok=True)
        payload = SavedMachine(config=self.config, instance=self.instance).model_dump_json(indent=2)
        async with aiofiles.open(self.instance.instance_file, "w") as f:
            await f.write(payload)

    # ------------------------------------------------------------------
    # Identity and accessors
    # ------------------------------------------------------------------

    @property
    def driver_name(self) -> str:
        return constants.DRIVER_NAME

    @property
    def machine_name(self) -> str:
        return self.instance.name

    def get_ip(self) -> str:
        """Guest networking is host-forwarded, so the machine is always on loopback."""
        return constants.LOOPBACK_HOST

    def get_ssh_hostname(self) -> str:
        return constants.SSH_HOSTNAME

    def get_ssh_port(self) -> int:
        if self.instance.ssh_port == 0:
            return constants.GUEST_SSH_PORT
        return self.instance.ssh_port

    def get_ssh_username(self) -> str:
        return self.instance.ssh_user or constants.DEFAULT_SSH_USER

    def get_ssh_key_path(self) -> Path:
        return self.instance.ssh_key_path

    def get_port(self) -> int:
        """Host port forwarded to the guest engine port (0 before create)."""
        return self.instance.engine_port

    def get_engine_port(self) -> int:
        if self.instance.engine_port == 0:
            return constants.GUEST_ENGINE_PORT
        return self.instance.engine_port

    def get_url(self) -> str:
        """Engine URL, ``tcp://<ip>:<port>``.

        With ``legacy_first_url_port`` the first call reports the well-known
        engine port instead of the forwarded one.
        """
        port = self.get_engine_port()
        if self.instance.first_query:
            self.instance.first_query = False
            port = constants.GUEST_ENGINE_PORT
        return f"tcp://{self.get_ip()}:{port}"

    def get_docker_config_dir(self) -> str:
        return ""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def pre_create_check(self) -> None:
        """Check that the hypervisor and qemu-img binaries can be found.

        Raises:
            DependencyError: A binary is missing from PATH.
        """
        for binary in (self.config.program, self.settings.qemu_img_bin):
            if shutil.which(binary) is None:
                raise DependencyError(f"{binary} not found in PATH", context={"binary": binary})

    async def create(self) -> None:
        """Provision the machine and start it.

        Raises:
            AllocationExhaustedError: Host ports could not be allocated.
            BootDiskError: Boot disk or seed directory could not be built.
            DependencyError: Boot media or a required tool is missing.
            ProcessLaunchError: QEMU failed to start.
            ReadinessTimeoutError: The guest never became reachable.
        """
        async with self._lock:
            ssh_port, engine_port = allocate_tcp_ports(
                2,
                max_attempts=self.settings.port_alloc_max_attempts,
                retry_delay=self.settings.port_alloc_retry_delay_seconds,
            )
            self.instance = instance = Instance.model_validate(
                self.instance.model_dump() | {"ssh_port": ssh_port, "engine_port": engine_port}
            )
            logger.debug(
                "Allocated forward ports",
                extra={"machine": instance.name, "ssh_port": instance.ssh_port, "engine_port": instance.engine_port},
            )

            await aiofiles.os.makedirs(instance.machine_dir, exist_ok=True)
            await self._media_stager(self.config.boot2docker_url, instance.boot_media_path)

            logger.info("Creating SSH key...")
            await self._key_generator(instance.ssh_key_path)

            logger.info("Creating Disk image...")
            public_key = await read_public_key(instance.public_key_path)
            await create_boot_disk(
                public_key,
                instance.disk_path,
                instance.disk_size_mb,
                qemu_img=self.settings.qemu_img_bin,
            )

            if self.config.userdata_file is not None:
                logger.info("Creating Userdata Disk...")
                userdata = await self._read_userdata(self.config.userdata_file)
                instance.seed_root = await create_seed_dir(
                    instance.machine_dir / constants.SEED_ROOT_DIRNAME,
                    userdata,
                )

            await self.save()

            logger.info("Starting QEMU VM...")
            await self._start()

    async def start(self) -> None:
        """Launch QEMU and wait for the guest SSH banner.

        Raises:
            MachineRunningError: A QEMU already answers on the monitor socket.
            ProcessLaunchError: QEMU failed to start.
            ReadinessTimeoutError: The guest never became reachable.
        """
        async with self._lock:
            await self._start()

    async def stop(self) -> None:
        """Ask the guest to shut down (``DriverConfig.stop_command``)."""
        async with self._lock:
            await self._stop()

    async def kill(self) -> None:
        """Force the machine down (``DriverConfig.kill_command``)."""
        async with self._lock:
            await self._kill()

    async def restart(self) -> None:
        """Stop the machine if it is running, then start it.

        The relaunch waits until the old QEMU has let go of the monitor
        socket (``Settings.shutdown_timeout_seconds``).

        Raises:
            MachineRunningError: The old QEMU was still alive at the deadline.
        """
        async with self._lock:
            if await self._query_state() == MachineState.RUNNING:
                await self._stop()
            await self._wait_for_monitor_release()
            await self._start()

    async def remove(self) -> None:
        """Kill the machine if it is running, then make QEMU quit.

        On-disk artifacts are left for the storage layer to delete.
        """
        async with self._lock:
            if await self._query_state() == MachineState.RUNNING:
                await self._kill()
            await self._qmp.execute(constants.QMP_QUIT_COMMAND)

    async def get_state(self) -> MachineState:
        """Current machine state, mapped from QMP ``query-status``.

        Raises:
            StateQueryError: The query failed; ``.state`` is MachineState.ERROR.
        """
        async with self._lock:
            return await self._query_state()

    async def upgrade(self) -> None:
        raise UnsupportedOperationError("hosts without a driver cannot be upgraded")

    async def start_docker(self) -> None:
        raise UnsupportedOperationError("hosts without a driver cannot start docker")

    async def stop_docker(self) -> None:
        raise UnsupportedOperationError("hosts without a driver cannot stop docker")

    # ------------------------------------------------------------------
    # Unlocked steps
    # ------------------------------------------------------------------

    async def _start(self) -> None:
        if await self._monitor_answers():
            raise MachineRunningError(
                f"machine {self.instance.name} is already running",
                context={"machine": self.instance.name, "monitor": str(self.instance.monitor_path)},
            )

        enable_kvm = await check_kvm_available(
            self.settings.kvm_device,
            force_emulation=self.settings.force_emulation,
        )
        await launch_qemu(self.config.program, self.instance, enable_kvm=enable_kvm)

        logger.info(
            "Waiting for VM to start (ssh -p %d %s@localhost)...",
            self.instance.ssh_port,
            self.get_ssh_username(),
        )
        await wait_for_tcp(
            constants.LOOPBACK_HOST,
            self.instance.ssh_port,
            timeout=self.settings.ready_timeout_seconds,
            retry_delay=self.settings.ready_retry_delay_seconds,
            read_timeout=self.settings.ready_read_timeout_seconds,
        )

    async def _monitor_answers(self) -> bool:
        """True if a QEMU process is serving the monitor socket."""
        try:
            await self._qmp.execute(constants.QMP_STATUS_COMMAND)
        except CommandError:
            return True
        except ProtocolError:
            return False
        return True

    async def _wait_for_monitor_release(self) -> None:
        timeout = self.settings.shutdown_timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                while await self._monitor_answers():
                    await asyncio.sleep(self.settings.shutdown_poll_interval_seconds)
        except TimeoutError as e:
            raise MachineRunningError(
                f"machine {self.instance.name} did not shut down within {timeout}s",
                context={"machine": self.instance.name},
            ) from e

    async def _stop(self) -> None:
        await self._qmp.execute(self.config.stop_command)

    async def _kill(self) -> None:
        await self._qmp.execute(self.config.kill_command)

    async def _query_state(self) -> MachineState:
        try:
            result = await self._qmp.execute(constants.QMP_STATUS_COMMAND)
        except ProtocolError as e:
            raise StateQueryError(
                f"state query failed: {e.message}",
                MachineState.ERROR,
                context={"machine": self.instance.name},
            ) from e
        status = result.get("status") if isinstance(result, dict) else None
        return map_run_state(status)

    @staticmethod
    async def _read_userdata(path: Path) -> bytes:
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except OSError as e:
            raise BootDiskError(f"failed to read user data {path}: {e}", context={"path": str(path)}) from e
