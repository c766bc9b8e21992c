"""Pack a staged initrd tree into a compressed newc cpio image.

newc is the format the kernel unpacks for an initramfs; it keeps modes,
directories and symlinks.  The archive is produced with
``find . -print0 | cpio --null -o -H newc`` from inside the tree so
entries are relative to the guest root, then compressed into
``<image>.tmp`` and renamed over the final path only once every stage of
the pipe has exited 0.
"""

import os
import subprocess

from initrd_config import COMPRESS_CMDS
from initrd_errors import PackagingError
from initrd_runner import CommandCancelled, describe_failure

STAGE = "package"


def _remove(path):
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


class Packager:
    def __init__(self, config, runner, log):
        self.config = config
        self.runner = runner
        self.log = log

    def archive_commands(self):
        return [
            ["find", ".", "-print0"],
            ["cpio", "--null", "-o", "-H", "newc", "--quiet"],
            COMPRESS_CMDS[self.config.compression],
        ]

    def package(self, tag, tree, output):
        """Mark ``tree``/init executable and write the image to ``output``."""
        init = os.path.join(tree, "init")
        tmp = output + ".tmp"
        try:
            self.runner.run(["chmod", "0755", "--", init])
            self.runner.pipeline(self.archive_commands(), cwd=tree, output=tmp)
            os.replace(tmp, output)
        except CommandCancelled:
            _remove(tmp)
            raise
        except (subprocess.CalledProcessError, OSError) as e:
            _remove(tmp)
            raise PackagingError(f"failed to package {tree}", tag=tag, stage=STAGE,
                                 cause=describe_failure(e)) from e

        size_kb = os.path.getsize(output) // 1024
        self.log.info(f"initrd: {output} ({size_kb}K)")
        return output
