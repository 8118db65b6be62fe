"""Boot disk and seed directory assembly.

Boot disk
=========
boot2docker formats its data disk on first boot when the disk starts with a
tar archive whose first entry is the magic string. The archive also carries
the SSH public key, which the automount script copies into the docker
user's home:

    "boot2docker, please format-me"   file, content = the same string
    .ssh/                             directory, mode 0700
    .ssh/authorized_keys              file, content = public key
    .ssh/authorized_keys2             file, content = public key

The archive is written to ``<disk>.raw``, converted to qcow2, then grown by
the requested size. Resize must run after conversion: growing the raw file
first would make qemu-img copy the zero tail into the qcow2.

Seed directory
==============
When cloud-config user data is supplied it is laid out as an OpenStack
config-drive tree (``<root>/openstack/latest/user_data``) and handed to the
guest as a read-only 9p share, not as a disk image.

Failures abort creation with BootDiskError; partial artifacts stay on disk.
"""

from __future__ import annotations

import io
import json
import tarfile
from typing import TYPE_CHECKING

import aiofiles
import aiofiles.os

from qemu_driver import constants
from qemu_driver._logging import get_logger
from qemu_driver.exceptions import BootDiskError, ProcessLaunchError
from qemu_driver.subprocess_utils import run_command

if TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)

_MB = 1024 * 1024


def _add_file(tw: tarfile.TarFile, name: str, content: bytes, mode: int) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(content)
    info.mode = mode
    tw.addfile(info, io.BytesIO(content))


def build_ssh_archive(public_key: bytes) -> bytes:
    """Build the in-memory tar archive that seeds the boot disk.

    Args:
        public_key: OpenSSH public key, written verbatim.

    Returns:
        Raw tar bytes, magic entry first.
    """
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.USTAR_FORMAT) as tw:
        magic = constants.BOOT2DOCKER_MAGIC.encode()
        _add_file(tw, constants.BOOT2DOCKER_MAGIC, magic, constants.SSH_KEY_FILE_MODE)

        ssh_dir = tarfile.TarInfo(".ssh")
        ssh_dir.type = tarfile.DIRTYPE
        ssh_dir.mode = constants.SSH_DIR_MODE
        tw.addfile(ssh_dir)

        for key_name in constants.AUTHORIZED_KEY_NAMES:
            _add_file(tw, f".ssh/{key_name}", public_key, constants.SSH_KEY_FILE_MODE)
    return buf.getvalue()


async def query_virtual_size(disk_path: Path, *, qemu_img: str = "qemu-img") -> int:
    """Return the virtual size in bytes reported by ``qemu-img info``.

    Raises:
        BootDiskError: qemu-img failed or printed something unparseable.
    """
    try:
        stdout, _ = await run_command(qemu_img, "info", "--output=json", str(disk_path))
        return int(json.loads(stdout)["virtual-size"])
    except ProcessLaunchError as e:
        raise BootDiskError(f"qemu-img info failed: {e.message}", stderr=e.stderr) from e
    except (ValueError, KeyError, TypeError) as e:
        raise BootDiskError(f"unexpected qemu-img info output for {disk_path}") from e


async def create_boot_disk(
    public_key: bytes,
    disk_path: Path,
    size_mb: int,
    *,
    qemu_img: str = "qemu-img",
) -> None:
    """Write the seeded qcow2 boot disk at ``disk_path``.

    Args:
        public_key: OpenSSH public key for the docker user.
        disk_path: Destination qcow2 path. ``<disk_path>.raw`` is left beside it.
        size_mb: Capacity added on top of the archive, in MB.
        qemu_img: qemu-img binary.

    Raises:
        BootDiskError: Archive build, raw write, convert, resize or the final
            size check failed.
        DependencyError: qemu-img is not installed.
    """
    logger.debug("Creating %d MB hard disk image...", size_mb, extra={"disk": str(disk_path)})

    try:
        archive = build_ssh_archive(public_key)
    except (tarfile.TarError, OSError) as e:
        raise BootDiskError(f"failed to build boot archive: {e}", context={"disk": str(disk_path)}) from e

    raw_path = disk_path.with_name(disk_path.name + ".raw")
    try:
        async with aiofiles.open(raw_path, "wb") as f:
            await f.write(archive)
    except OSError as e:
        raise BootDiskError(f"failed to write raw image {raw_path}: {e}", context={"raw": str(raw_path)}) from e

    try:
        await run_command(
            qemu_img, "convert", "-f", "raw", "-O", constants.BOOT_DISK_FORMAT, str(raw_path), str(disk_path)
        )
    except ProcessLaunchError as e:
        raise BootDiskError(
            f"qemu-img convert failed: {e.message}", context={"disk": str(disk_path)}, stderr=e.stderr
        ) from e

    try:
        await run_command(qemu_img, "resize", str(disk_path), f"+{size_mb}M")
    except ProcessLaunchError as e:
        raise BootDiskError(
            f"qemu-img resize failed: {e.message}", context={"disk": str(disk_path)}, stderr=e.stderr
        ) from e

    virtual_size = await query_virtual_size(disk_path, qemu_img=qemu_img)
    if virtual_size < size_mb * _MB:
        raise BootDiskError(
            f"boot disk is {virtual_size} bytes, expected at least {size_mb} MB",
            context={"disk": str(disk_path), "virtual_size": virtual_size},
        )

    logger.debug("DONE writing to %s and %s", raw_path, disk_path)


async def create_seed_dir(root: Path, userdata: bytes) -> Path:
    """Lay out ``userdata`` as ``<root>/openstack/latest/user_data``.

    Returns:
        ``root``, for use as the 9p share path.

    Raises:
        BootDiskError: Directory or file could not be written.
    """
    userdata_dir = root.joinpath(*constants.SEED_USERDATA_SUBDIR)
    target = userdata_dir / constants.SEED_USERDATA_FILENAME
    try:
        await aiofiles.os.makedirs(userdata_dir, mode=0o755, exist_ok=True)
        async with aiofiles.open(target, "wb") as f:
            await f.write(userdata)
    except OSError as e:
        raise BootDiskError(f"failed to write user data {target}: {e}", context={"seed_root": str(root)}) from e
    logger.debug("Wrote user data", extra={"path": str(target), "bytes": len(userdata)})
    return root
