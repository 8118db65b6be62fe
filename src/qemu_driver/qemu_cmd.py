"""QEMU command line builder.

Argument order is fixed and the boot disk is always the last (positional)
argument.
"""

from qemu_driver import constants
from qemu_driver.models import Instance


def build_netdev_arg(instance: Instance) -> str:
    """User-mode netdev forwarding the allocated loopback ports to guest SSH and engine ports."""
    return (
        "user,id=net0,"
        f"hostfwd=tcp:{constants.LOOPBACK_HOST}:{instance.ssh_port}-:{constants.GUEST_SSH_PORT},"
        f"hostfwd=tcp:{constants.LOOPBACK_HOST}:{instance.engine_port}-:{constants.GUEST_ENGINE_PORT},"
        f"hostname={instance.name}"
    )


def build_qemu_cmd(instance: Instance, *, enable_kvm: bool) -> list[str]:
    """Build the QEMU argument vector (program excluded).

    Args:
        instance: Machine record; ports and paths must already be set.
        enable_kvm: Append ``-enable-kvm``.

    Returns:
        Arguments in launch order.
    """
    cmd = [
        "-display",
        "none",
        "-m",
        str(instance.memory_mb),
        "-smp",
        str(instance.cpu_count),
        "-boot",
        "d",
        "-cdrom",
        str(instance.boot_media_path),
        # QMP control socket: QEMU listens, does not wait for a client
        "-qmp",
        f"unix:{instance.monitor_path},server=on,wait=off",
        "-netdev",
        build_netdev_arg(instance),
        "-device",
        "virtio-net-pci,netdev=net0",
    ]

    if enable_kvm:
        cmd.append("-enable-kvm")

    if instance.seed_root is not None:
        cmd.extend(
            [
                "-fsdev",
                f"local,security_model=passthrough,readonly=on,id=fsdev0,path={instance.seed_root}",
                "-device",
                f"virtio-9p-pci,id=fs0,fsdev=fsdev0,mount_tag={constants.SEED_MOUNT_TAG}",
            ]
        )

    cmd.append("-daemonize")

    # Last argument is always the boot disk
    cmd.append(str(instance.disk_path))
    return cmd
