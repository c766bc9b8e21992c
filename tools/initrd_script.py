"""Render the guest /init script.

Rendering is a pure function of the boot mode and the builder config so
it can be checked without touching the filesystem.  Every script starts
with the same network and /dev/null preamble; the rest depends on the
mode:

  code    mount proc/sys/dev, optionally mount /dev/vda on /mnt, start the
          vsock bridge, then exec an interactive shell.
  rootfs  reassemble and unpack the container rootfs, carry busybox and
          the helpers across, then chroot into the container init.
"""

from dataclasses import dataclass

from initrd_errors import ConfigurationError, InitWriteError

ROOTFS_PART_PREFIX = "rootfs_part_"
ROOTFS_MOUNT = "/mnt/rootfs"


@dataclass(frozen=True)
class CodeMode:
    """Boot straight into a shell next to a single sensitive program."""
    name = "code"


@dataclass(frozen=True)
class RootfsMode:
    """Boot a container root filesystem; ``work_path`` is its cwd."""
    work_path: str
    name = "rootfs"


def parse_mode(value, work_path=None):
    """Turn a CLI/config mode string into a mode variant."""
    key = str(value).strip().lower()
    if key == "code":
        return CodeMode()
    if key == "rootfs":
        if not work_path:
            raise ConfigurationError("rootfs mode requires a work path")
        return RootfsMode(work_path)
    raise ConfigurationError(f"unknown mode: {value!r}")


def render_preamble(config):
    sh = config.shell_name
    return (
        "#!/bin/sh\n"
        "# network\n"
        f"{sh} ip addr add {config.address} dev {config.interface}\n"
        f"{sh} ip link set {config.interface} up\n"
        f"{sh} ip route add default via {config.gateway}\n"
        "# device nodes\n"
        f"{sh} mknod /dev/null c 1 3\n"
        f"{sh} chmod 666 /dev/null\n"
    )


def render_code_body(config):
    sh = config.shell_name
    return (
        "# mount pseudo filesystems\n"
        f"{sh} mkdir -p /proc /sys /dev /mnt\n"
        f"{sh} mount -t proc none /proc\n"
        f"{sh} mount -t sysfs none /sys\n"
        f"{sh} mount -t devtmpfs none /dev\n"
        "\n"
        "# persistent disk, if attached\n"
        "if [ -b /dev/vda ]; then\n"
        f"  {sh} blockdev --setra 4096 /dev/vda || true\n"
        f"  {sh} mount -t ext4 -o noatime,nodiratime,commit=30 /dev/vda /mnt || true\n"
        "fi\n"
        "\n"
        "# start the vsock bridge, then hand over to a shell\n"
        f"/bin/{config.vsock_name}\n"
        "exec /bin/sh\n"
    )


def render_rootfs_body(config):
    sh = config.shell_name
    root = ROOTFS_MOUNT
    vsock = config.vsock_name
    cinit = config.container_init_name
    return (
        "# mount proc and sysfs\n"
        f"{sh} mkdir -p /proc /sys {root}\n"
        f"{sh} mount -t proc none /proc\n"
        f"{sh} mount -t sysfs none /sys\n"
        "\n"
        "# reassemble and unpack the rootfs\n"
        f"{sh} cat /bin/{ROOTFS_PART_PREFIX}* > /bin/rootfs.tar\n"
        f"{sh} rm /bin/{ROOTFS_PART_PREFIX}*\n"
        f"{sh} tar -xpf /bin/rootfs.tar -C {root}\n"
        "\n"
        f"# keep {sh} reachable after chroot\n"
        f"{sh} cp /bin/{sh} {root}/bin/\n"
        f"{sh} chmod +x {root}/bin/{sh}\n"
        "\n"
        f"{sh} chroot {root} /bin/{sh} --install -s /bin\n"
        "\n"
        f"{sh} cp /bin/qemu_init.sh {root}/bin/\n"
        f"{sh} chmod +x {root}/bin/qemu_init.sh\n"
        "\n"
        "# device nodes inside the new root\n"
        f"{sh} mount -t tmpfs none {root}/dev\n"
        f"{sh} mdev -s\n"
        "\n"
        "# move the guest helpers into the new root\n"
        f"{sh} mv /bin/{vsock} {root}/bin/\n"
        f"{sh} chmod +x {root}/bin/{vsock}\n"
        f"{sh} mv /bin/{cinit} {root}/bin/\n"
        f"{sh} chmod +x {root}/bin/{cinit}\n"
        "\n"
        f"{sh} chroot {root} /bin/{cinit}\n"
    )


_BODIES = {
    CodeMode: render_code_body,
    RootfsMode: render_rootfs_body,
}


def render_init_script(mode, config):
    """Return the full /init text for ``mode``.

    Raises ConfigurationError for anything that is not a mode variant.
    """
    body = _BODIES.get(type(mode))
    if body is None:
        raise ConfigurationError(f"unknown mode: {mode!r}")
    return render_preamble(config) + body(config)


def write_init_script(path, text):
    """Write ``text`` to ``path`` verbatim."""
    try:
        with open(path, "w") as f:
            f.write(text)
    except OSError as e:
        raise InitWriteError(f"failed to write init script {path}", cause=e) from e
