"""Stage the guest payload under build/<tag>/initrd/bin.

Each copy or link is its own command so one missing file does not hide
the others: every step runs, failures are collected, and a StagingError
listing all of them is raised before anything downstream can package a
half-populated tree.
"""

import os
import shutil
import subprocess

from initrd_errors import ConfigurationError, StagingError
from initrd_runner import CommandCancelled, describe_failure
from initrd_script import ROOTFS_PART_PREFIX

STAGE = "stage"


def build_dir(build_root, tag):
    return os.path.join(build_root, tag)


def initrd_dir(build_root, tag):
    return os.path.join(build_root, tag, "initrd")


def bin_dir(build_root, tag):
    return os.path.join(build_root, tag, "initrd", "bin")


def create_directory(path):
    """Create ``path`` and its parents; an existing directory is fine."""
    os.makedirs(path, exist_ok=True)


def reserved_names(config):
    """Names in bin/ that belong to the builder, not to user payloads."""
    return {
        config.shell_name, "sh", config.container_init_name,
        config.vsock_name, "pgms", "qemu_init.sh",
    }


class Stager:
    def __init__(self, config, runner, log):
        self.config = config
        self.runner = runner
        self.log = log

    def plan(self, bin_path, source_file, attestation_agent=None):
        """Return the ordered ``(step, argv)`` list that populates ``bin_path``."""
        cfg = self.config
        source_name = os.path.basename(source_file)
        steps = [
            ("copy shell", ["cp", "--", cfg.busybox, os.path.join(bin_path, cfg.shell_name)]),
            ("copy container init", ["cp", "--", cfg.docker_init, bin_path + "/"]),
            ("link sh", ["ln", "-sfn", "--", cfg.shell_name, os.path.join(bin_path, "sh")]),
            ("copy vsock bridge", ["cp", "--", cfg.vsock_bridge, bin_path + "/"]),
            ("copy source", ["cp", "--", source_file, os.path.join(bin_path, source_name)]),
            ("copy pgms", ["cp", "-r", "--", cfg.pgms_dir, bin_path + "/"]),
            ("copy qemu_init.sh", ["cp", "--", cfg.qemu_init, bin_path + "/"]),
            ("chmod qemu_init.sh", ["chmod", "0755", "--", os.path.join(bin_path, "qemu_init.sh")]),
        ]
        if attestation_agent is not None:
            steps.append(("copy attestation agent", ["cp", "--", attestation_agent, bin_path + "/"]))
        return steps

    def check_names(self, tag, source_file, attestation_agent=None):
        reserved = reserved_names(self.config)
        payloads = [("source", source_file)]
        if attestation_agent is not None:
            payloads.append(("attestation agent", attestation_agent))
        seen = set()
        for what, path in payloads:
            name = os.path.basename(path)
            if not name or name in (".", ".."):
                raise ConfigurationError(f"{what} path has no file name: {path!r}",
                                         tag=tag, stage=STAGE)
            if name in reserved or name in seen:
                raise ConfigurationError(f"{what} name {name!r} collides with a staged file",
                                         tag=tag, stage=STAGE)
            if what == "attestation agent" and name.startswith(ROOTFS_PART_PREFIX):
                raise ConfigurationError(
                    f"{what} name {name!r} would be reassembled as a rootfs part",
                    tag=tag, stage=STAGE)
            seen.add(name)

    def stage(self, tag, source_file, attestation_agent=None):
        """Reset build/<tag> and populate its bin/ directory.

        Returns the bin/ path.  Raises StagingError after running every
        step if any of them failed.
        """
        self.check_names(tag, source_file, attestation_agent)

        root = build_dir(self.config.build_root, tag)
        bin_path = bin_dir(self.config.build_root, tag)
        try:
            if os.path.lexists(root):
                self.log.debug(f"removing previous build tree {root}")
                shutil.rmtree(root)
            create_directory(bin_path)
        except OSError as e:
            raise StagingError(f"cannot create {bin_path}", tag=tag, stage=STAGE, cause=e) from e

        failures = []
        copied = 0
        for step, argv in self.plan(bin_path, source_file, attestation_agent):
            self.log.debug(f"{step}: {' '.join(argv)}")
            try:
                self.runner.run(argv)
            except CommandCancelled:
                raise
            except (subprocess.CalledProcessError, OSError) as e:
                self.log.error(f"{step} failed: {describe_failure(e)}")
                failures.append((step, describe_failure(e)))
            else:
                copied += 1

        if failures:
            raise StagingError(
                f"{len(failures)} staging step(s) failed",
                failures=failures, copied=copied, tag=tag, stage=STAGE,
            )
        self.log.debug(f"staged {copied} step(s) into {bin_path}")
        return bin_path
