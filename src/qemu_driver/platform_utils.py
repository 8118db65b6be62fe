"""Child process cleanup for helper tools and the hypervisor launcher.

asyncio only tracks the direct child. qemu-img and ssh-keygen run alone,
but QEMU forks while daemonizing, so a launch that times out can leave a
half-detached grandchild behind. Timeouts therefore reap the whole tree,
found through psutil while the child is still unreaped (its PID cannot
be recycled until then).
"""

import asyncio
import contextlib

import psutil

from qemu_driver._logging import get_logger

logger = get_logger(__name__)

_REAP_GRACE_SECONDS = 2.0


def _process_tree(pid: int) -> list[psutil.Process]:
    """Descendants first, then the process itself. Empty if it is gone."""
    try:
        parent = psutil.Process(pid)
        return [*parent.children(recursive=True), parent]
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


def _terminate_tree(procs: list[psutil.Process], grace: float) -> list[psutil.Process]:
    """SIGTERM every process, then SIGKILL the ones still alive after ``grace``."""
    for p in procs:
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            p.terminate()
    _, alive = psutil.wait_procs(procs, timeout=grace)
    for p in alive:
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            p.kill()
    return alive


async def reap_process_tree(proc: asyncio.subprocess.Process, grace: float = _REAP_GRACE_SECONDS) -> None:
    """Stop ``proc`` and everything it spawned, then collect its exit status."""
    if proc.returncode is None:
        procs = await asyncio.to_thread(_process_tree, proc.pid)
        if procs:
            survivors = await asyncio.to_thread(_terminate_tree, procs, grace)
            if survivors:
                logger.warning("Killed processes ignoring SIGTERM", extra={"pids": [p.pid for p in survivors]})
        else:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
    await proc.wait()
