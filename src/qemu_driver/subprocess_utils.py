"""Subprocess helpers for qemu, qemu-img and ssh-keygen.

Commands run directly via exec (no shell). stdout and stderr are captured
separately and both are checked: QEMU and qemu-img sometimes print
``error:`` to stderr and still exit 0, so a zero exit code alone is not
success.
"""

from __future__ import annotations

import asyncio
import shlex

from qemu_driver import constants
from qemu_driver._logging import get_logger
from qemu_driver.exceptions import DependencyError, ProcessLaunchError
from qemu_driver.platform_utils import reap_process_tree

logger = get_logger(__name__)


def _truncate(text: str) -> str:
    return text[: constants.PROCESS_OUTPUT_MAX_BYTES]


async def run_command(program: str, *args: str, timeout: float | None = None) -> tuple[str, str]:
    """Run ``program args...`` to completion and return (stdout, stderr).

    Args:
        program: Executable name or path.
        *args: Arguments, passed verbatim.
        timeout: Optional limit in seconds. The child and anything it
            spawned are killed on expiry.

    Raises:
        DependencyError: ``program`` could not be found.
        ProcessLaunchError: Nonzero exit, an ``error:`` marker in stderr, or
            ``timeout`` expired.
    """
    cmdline = shlex.join([program, *args])
    logger.debug("executing: %s", cmdline)

    try:
        proc = await asyncio.create_subprocess_exec(
            program,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise DependencyError(f"{program} not found", context={"program": program}) from e
    except OSError as e:
        raise ProcessLaunchError(f"failed to execute {program}: {e}", context={"command": cmdline}) from e

    try:
        async with asyncio.timeout(timeout):
            stdout_b, stderr_b = await proc.communicate()
    except TimeoutError as e:
        await reap_process_tree(proc)
        raise ProcessLaunchError(
            f"{cmdline} timed out after {timeout}s",
            context={"command": cmdline, "timeout": timeout},
            returncode=proc.returncode,
        ) from e

    stdout = stdout_b.decode(errors="replace")
    stderr = stderr_b.decode(errors="replace")
    logger.debug("STDOUT: %s", stdout, extra={"command": cmdline})
    logger.debug("STDERR: %s", stderr, extra={"command": cmdline})

    if proc.returncode != 0:
        raise ProcessLaunchError(
            f"{cmdline} failed with exit code {proc.returncode}: {_truncate(stderr).strip()}",
            context={"command": cmdline},
            stdout=_truncate(stdout),
            stderr=_truncate(stderr),
            returncode=proc.returncode,
        )
    if constants.STDERR_ERROR_MARKER in stderr:
        raise ProcessLaunchError(
            f"{cmdline} failed: {_truncate(stderr).strip()}",
            context={"command": cmdline},
            stdout=_truncate(stdout),
            stderr=_truncate(stderr),
            returncode=proc.returncode,
        )
    return stdout, stderr
