"""Host capability probes.

Results are cached per device path. The lock prevents a stampede of
identical probes when several drivers start at once.
"""

import asyncio
import os
from pathlib import Path

import aiofiles.os

from qemu_driver._logging import get_logger

logger = get_logger(__name__)


class _ProbeCache:
    """Container for cached probe results.

    Locks are created lazily because asyncio.Lock must be created inside
    the running loop.
    """

    __slots__ = ("_lock", "kvm")

    def __init__(self) -> None:
        self.kvm: dict[Path, bool] = {}
        self._lock: asyncio.Lock | None = None

    def get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def clear(self) -> None:
        self.kvm.clear()


_probe_cache = _ProbeCache()


async def check_kvm_available(kvm_device: Path = Path("/dev/kvm"), *, force_emulation: bool = False) -> bool:
    """Whether QEMU should be started with ``-enable-kvm``.

    The device must exist and be readable and writable by this user; a
    present but inaccessible /dev/kvm makes QEMU abort at startup.
    """
    if force_emulation:
        return False

    cached = _probe_cache.kvm.get(kvm_device)
    if cached is not None:
        return cached

    async with _probe_cache.get_lock():
        cached = _probe_cache.kvm.get(kvm_device)
        if cached is not None:
            return cached

        available = await aiofiles.os.path.exists(kvm_device) and await asyncio.to_thread(
            os.access, kvm_device, os.R_OK | os.W_OK
        )
        _probe_cache.kvm[kvm_device] = available
        if available:
            logger.debug("KVM acceleration available", extra={"device": str(kvm_device)})
        else:
            logger.info("KVM not available, using TCG emulation", extra={"device": str(kvm_device)})
        return available
