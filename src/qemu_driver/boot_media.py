"""Boot media staging.

Only local sources are handled here (a path or a ``file://`` URL).
Downloading and caching release images belongs to the host-management
tool; pass a custom MediaStager to plug that in.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from pathlib import Path
from urllib.parse import unquote, urlparse

import aiofiles
import aiofiles.os

from qemu_driver._logging import get_logger
from qemu_driver.exceptions import DependencyError

logger = get_logger(__name__)

MediaStager = Callable[[str, Path], Awaitable[None]]
"""Async callable placing the boot media named by ``source`` at ``destination``."""

_COPY_CHUNK_BYTES = 1024 * 1024


def resolve_local_source(source: str) -> Path:
    """Map a path or ``file://`` URL to a local Path.

    Raises:
        DependencyError: Empty source or a non-file URL scheme.
    """
    if not source:
        raise DependencyError("no boot media configured (boot2docker_url is empty)")
    parsed = urlparse(source)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if not parsed.scheme or len(parsed.scheme) == 1:  # bare path, or a Windows drive letter
        return Path(source).expanduser()
    raise DependencyError(
        f"cannot fetch boot media from {source}: only local paths are supported",
        context={"source": source},
    )


async def copy_local_media(source: str, destination: Path) -> None:
    """Copy local boot media into the machine directory."""
    src = resolve_local_source(source)
    if not await aiofiles.os.path.isfile(src):
        raise DependencyError(f"boot media not found: {src}", context={"source": str(src)})

    logger.info("Copying %s to %s...", src, destination)
    async with aiofiles.open(src, "rb") as fin, aiofiles.open(destination, "wb") as fout:
        while chunk := await fin.read(_COPY_CHUNK_BYTES):
            await fout.write(chunk)
