"""Build configuration for initrd images.

Holds the host paths of the guest helper binaries, the default component
directory, the guest network settings and the packaging knobs.  Values can
be overridden from the ``[initrd]`` section of an INI file:

    [initrd]
    busybox = /opt/shelter/busybox
    component_dir = /opt/shelter/default_component
    chunk_size = 300M
    compression = gz
"""

import configparser
import dataclasses
import os
import re
from dataclasses import dataclass

from initrd_errors import ConfigurationError

CHUNK_SIZE = 300 * 1024 ** 2

COMPRESS_CMDS = {
    "gz": ["gzip", "-9"],
    "xz": ["xz", "-9", "--check=crc32"],
    "lz4": ["lz4", "-l", "-9"],
    "zstd": ["zstd", "-19"],
}


def parse_size(size_str):
    """Parse a human-readable size string (e.g. '300M', '1G') to bytes."""
    m = re.fullmatch(r'(\d+)\s*([KMGTkmgt])?[iI]?[bB]?', str(size_str).strip())
    if not m:
        raise ConfigurationError(f"cannot parse size: {size_str!r}")
    n = int(m.group(1))
    suffix = (m.group(2) or '').upper()
    multipliers = {'': 1, 'K': 1024, 'M': 1024**2, 'G': 1024**3, 'T': 1024**4}
    return n * multipliers[suffix]


@dataclass(frozen=True)
class InitrdConfig:
    """Host-side locations and guest-side settings for one builder."""
    busybox: str = "default_component/busybox"
    docker_init: str = "default_component/docker_init"
    vsock_bridge: str = "default_component/vguest_vsock"
    component_dir: str = "default_component"
    build_root: str = "build"
    chunk_size: int = CHUNK_SIZE
    compression: str = "gz"
    interface: str = "eth0"
    address: str = "192.168.50.10/24"
    gateway: str = "192.168.50.1"

    @property
    def shell_name(self):
        return os.path.basename(self.busybox)

    @property
    def container_init_name(self):
        return os.path.basename(self.docker_init)

    @property
    def vsock_name(self):
        return os.path.basename(self.vsock_bridge)

    @property
    def pgms_dir(self):
        return os.path.join(self.component_dir, "pgms")

    @property
    def qemu_init(self):
        return os.path.join(self.component_dir, "qemu_init.sh")

    def validate(self):
        if self.compression not in COMPRESS_CMDS:
            raise ConfigurationError(
                f"unknown compression {self.compression!r}, "
                f"expected one of {', '.join(sorted(COMPRESS_CMDS))}"
            )
        if self.chunk_size <= 0:
            raise ConfigurationError(f"chunk_size must be positive, got {self.chunk_size}")
        for name in ("shell_name", "container_init_name", "vsock_name"):
            if not getattr(self, name):
                raise ConfigurationError(f"{name} resolves to an empty file name")
        return self


def load_config(path=None, **overrides):
    """Build an InitrdConfig from defaults, an optional INI file and overrides.

    Keys in ``overrides`` whose value is None are ignored so argparse
    namespaces can be passed through unfiltered.
    """
    values = {}
    if path is not None:
        parser = configparser.ConfigParser()
        try:
            with open(path) as f:
                parser.read_file(f)
        except (OSError, configparser.Error) as e:
            raise ConfigurationError(f"failed to read config {path}", cause=e) from e
        if parser.has_section("initrd"):
            values.update(parser.items("initrd"))

    values.update({k: v for k, v in overrides.items() if v is not None})

    fields = {f.name for f in dataclasses.fields(InitrdConfig)}
    unknown = set(values) - fields
    if unknown:
        raise ConfigurationError(f"unknown config keys: {', '.join(sorted(unknown))}")
    if "chunk_size" in values and not isinstance(values["chunk_size"], int):
        values["chunk_size"] = parse_size(values["chunk_size"])

    return InitrdConfig(**values).validate()
