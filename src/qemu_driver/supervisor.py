"""QEMU process launch.

QEMU is started with ``-daemonize``: the foreground process exits once the
machine is set up and the QMP socket is listening, leaving the emulator
running in the background. A zero exit means launched, not booted; guest
readiness is checked separately.
"""

from __future__ import annotations

from qemu_driver import constants
from qemu_driver._logging import get_logger
from qemu_driver.exceptions import ProcessLaunchError
from qemu_driver.models import Instance
from qemu_driver.qemu_cmd import build_qemu_cmd
from qemu_driver.subprocess_utils import run_command

logger = get_logger(__name__)


async def launch_qemu(
    program: str,
    instance: Instance,
    *,
    enable_kvm: bool,
    timeout: float = constants.QEMU_LAUNCH_TIMEOUT_SECONDS,
) -> list[str]:
    """Launch a daemonized QEMU for ``instance``.

    Returns:
        The argument vector that was used (program excluded).

    Raises:
        ProcessLaunchError: QEMU exited nonzero or reported an error on stderr.
        DependencyError: ``program`` is not installed.
    """
    args = build_qemu_cmd(instance, enable_kvm=enable_kvm)
    try:
        await run_command(program, *args, timeout=timeout)
    except ProcessLaunchError as e:
        logger.error(
            "QEMU launch failed",
            extra={"machine": instance.name, "returncode": e.returncode, "stdout": e.stdout, "stderr": e.stderr},
        )
        raise
    logger.debug("QEMU daemonized", extra={"machine": instance.name, "monitor": str(instance.monitor_path)})
    return args
