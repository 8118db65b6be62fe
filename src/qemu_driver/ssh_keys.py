"""SSH keypair generation.

Key handling is delegated to ``ssh-keygen``; the driver only needs the
private key for the host-management tool and the public key bytes for
the boot disk.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from pathlib import Path

import aiofiles
import aiofiles.os

from qemu_driver._logging import get_logger
from qemu_driver.exceptions import BootDiskError
from qemu_driver.subprocess_utils import run_command

logger = get_logger(__name__)

KeyGenerator = Callable[[Path], Awaitable[None]]
"""Async callable creating ``key_path`` and ``key_path.pub``."""


def ssh_keygen(binary: str = "ssh-keygen") -> KeyGenerator:
    """Return a KeyGenerator backed by the ``ssh-keygen`` binary."""

    async def generate(key_path: Path) -> None:
        if await aiofiles.os.path.exists(key_path):
            await aiofiles.os.remove(key_path)
        await run_command(binary, "-q", "-t", "rsa", "-b", "2048", "-N", "", "-C", key_path.stem, "-f", str(key_path))
        logger.debug("Generated SSH key", extra={"path": str(key_path)})

    return generate


async def read_public_key(pub_path: Path) -> bytes:
    """Read the public half written next to the private key.

    Raises:
        BootDiskError: The public key is missing or unreadable.
    """
    try:
        async with aiofiles.open(pub_path, "rb") as f:
            return await f.read()
    except OSError as e:
        raise BootDiskError(f"failed to read public key {pub_path}: {e}", context={"path": str(pub_path)}) from e
