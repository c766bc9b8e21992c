"""Split a staged rootfs archive into bounded parts.

``split -b`` names its outputs with a fixed-width alphabetic suffix
(aa, ab, ...), so sorting the part names gives byte-offset order and the
guest can rebuild the archive with a plain ``cat rootfs_part_*``.

The container init helper is also patched here: a ``cd <work_path>`` is
inserted as its second line, right after the shebang, so the container
starts in the directory its image expects.  The line is written from
Python so the path lands in the file byte for byte.
"""

import glob
import os
import subprocess

from initrd_errors import SplitError
from initrd_runner import CommandCancelled, describe_failure
from initrd_script import ROOTFS_PART_PREFIX

STAGE = "split"


def part_paths(bin_path, exclude=()):
    """Split parts currently in ``bin_path``, in reassembly order."""
    paths = glob.glob(os.path.join(glob.escape(bin_path), ROOTFS_PART_PREFIX + "*"))
    return sorted(p for p in paths if os.path.basename(p) not in exclude)


def expected_parts(size, chunk_size):
    return -(-size // chunk_size)


def patch_container_init(path, work_path):
    """Make ``cd <work_path>`` the second line of the script at ``path``.

    A one-line script (with or without a trailing newline) gets the line
    appended.  The file keeps its mode.
    """
    if "\n" in work_path or "\r" in work_path:
        raise ValueError(f"work path contains a line break: {work_path!r}")
    with open(path, "rb") as f:
        lines = f.read().splitlines(keepends=True)
    if not lines:
        raise ValueError(f"{path} is empty")
    if not lines[0].endswith(b"\n"):
        lines[0] += b"\n"
    lines.insert(1, b"cd " + os.fsencode(work_path) + b"\n")
    with open(path, "wb") as f:
        f.writelines(lines)


class PayloadSplitter:
    def __init__(self, config, runner, log):
        self.config = config
        self.runner = runner
        self.log = log

    def plan(self, bin_path, payload_name):
        payload = os.path.join(bin_path, payload_name)
        return [
            ("split payload", ["split", "-b", str(self.config.chunk_size), "--", payload,
                               os.path.join(bin_path, ROOTFS_PART_PREFIX)]),
            ("remove payload", ["rm", "-f", "--", payload]),
        ]

    def split(self, tag, bin_path, payload_name, work_path):
        """Split ``bin_path/payload_name`` and patch the container init.

        Returns the list of part paths.
        """
        payload = os.path.join(bin_path, payload_name)
        try:
            size = os.path.getsize(payload)
        except OSError as e:
            raise SplitError(f"rootfs payload {payload} is not readable",
                             tag=tag, stage=STAGE, cause=e) from e
        if size == 0:
            raise SplitError(f"rootfs payload {payload} is empty", tag=tag, stage=STAGE)

        try:
            for stale in part_paths(bin_path, exclude={payload_name}):
                os.unlink(stale)
        except OSError as e:
            raise SplitError("cannot remove stale rootfs parts", tag=tag, stage=STAGE, cause=e) from e

        for step, argv in self.plan(bin_path, payload_name):
            self.log.debug(f"{step}: {' '.join(argv)}")
            try:
                self.runner.run(argv)
            except CommandCancelled:
                raise
            except (subprocess.CalledProcessError, OSError) as e:
                raise SplitError(f"{step} failed", tag=tag, stage=STAGE,
                                 cause=describe_failure(e)) from e

        cinit = os.path.join(bin_path, self.config.container_init_name)
        self.log.debug(f"patch container init: cd {work_path} -> {cinit}")
        try:
            patch_container_init(cinit, work_path)
        except (OSError, ValueError) as e:
            raise SplitError("patch container init failed", tag=tag, stage=STAGE, cause=e) from e

        parts = part_paths(bin_path)
        want = expected_parts(size, self.config.chunk_size)
        if len(parts) != want:
            raise SplitError(f"expected {want} rootfs part(s), found {len(parts)}",
                             tag=tag, stage=STAGE)
        self.log.info(f"split {payload_name} ({size} bytes) into {len(parts)} part(s)")
        return parts
