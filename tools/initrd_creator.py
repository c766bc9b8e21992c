#!/usr/bin/env python3
"""Build a bootable initrd for a lightweight guest VM.

Two flavours share one pipeline:

  code    embed a single program next to busybox, the vsock bridge and the
          default components; the guest boots into a shell.
  rootfs  embed a container root filesystem, split into 300M parts; the
          guest unpacks it and chroots into the container init.

Pipeline: stage build/<tag>/initrd/bin -> write /init -> (rootfs: split
payload, patch container init) -> find | cpio | gzip into
build/<tag>/initrd.img.  Any fatal error stops the pipeline before
packaging and is reported in the returned BuildResult.
"""

import argparse
import contextlib
import enum
import fcntl
import os
import shutil
import signal
import sys
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from _env import add_path_args, resolve_path, tool_env
from _log import Log
from initrd_config import COMPRESS_CMDS, InitrdConfig, load_config
from initrd_errors import BuildCancelled, ConfigurationError, InitrdError, StagingError
from initrd_packager import Packager
from initrd_runner import CommandCancelled, ProcessRunner
from initrd_script import RootfsMode, parse_mode, render_init_script, write_init_script
from initrd_split import PayloadSplitter
from initrd_stager import Stager, build_dir, initrd_dir


@dataclass(frozen=True)
class BuildRequest:
    tag: str
    source_file: str
    mode: object
    attestation_agent: Optional[str] = None


class BuildStatus(enum.Enum):
    OK = "ok"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class StageResult:
    stage: str
    error: Optional[InitrdError] = None

    @property
    def ok(self):
        return self.error is None


@dataclass
class BuildResult:
    tag: str
    status: BuildStatus
    image: Optional[str] = None
    error: Optional[InitrdError] = None
    stages: List[StageResult] = field(default_factory=list)

    @property
    def ok(self):
        return self.status is BuildStatus.OK


def validate_tag(tag):
    """Reject tags that would escape build/ or are not a single path component."""
    if not tag or tag in (".", "..") or "/" in tag or "\0" in tag or (os.altsep and os.altsep in tag):
        raise ConfigurationError(f"unsafe build tag: {tag!r}", tag=tag, stage="validate")


@contextlib.contextmanager
def tag_lock(build_root, tag):
    """Hold an exclusive lock on build/.<tag>.lock.

    Builds of different tags never contend; builds of the same tag run
    one after the other.
    """
    os.makedirs(build_root, exist_ok=True)
    path = os.path.join(build_root, f".{tag}.lock")
    with open(path, "w") as f:
        fcntl.flock(f, fcntl.LOCK_EX)
        try:
            yield path
        finally:
            fcntl.flock(f, fcntl.LOCK_UN)


class InitrdCreator:
    """Runs the stage -> script -> split -> package pipeline for one config."""

    def __init__(self, config=None, runner=None, log=None, cancel=None):
        self.config = (config or InitrdConfig()).validate()
        self.cancel = cancel
        self.runner = runner if runner is not None else ProcessRunner(cancel=cancel)
        self.log = log or Log()
        self.stager = Stager(self.config, self.runner, self.log)
        self.splitter = PayloadSplitter(self.config, self.runner, self.log)
        self.packager = Packager(self.config, self.runner, self.log)

    def image_path(self, tag):
        return os.path.join(build_dir(self.config.build_root, tag), "initrd.img")

    def build(self, request):
        """Build the image for ``request`` and return a BuildResult."""
        try:
            validate_tag(request.tag)
        except ConfigurationError as e:
            return self._failed(request.tag, [], StageResult("validate", e))

        try:
            with tag_lock(self.config.build_root, request.tag):
                return self._build(request)
        except OSError as e:
            err = InitrdError("cannot lock build tree", tag=request.tag, stage="lock", cause=e)
            return self._failed(request.tag, [], StageResult("lock", err))

    def _build(self, request):
        tag = request.tag
        tree = initrd_dir(self.config.build_root, tag)
        image = self.image_path(tag)
        state = {}

        def render():
            state["script"] = render_init_script(request.mode, self.config)

        def stage():
            state["bin"] = self.stager.stage(tag, request.source_file, request.attestation_agent)

        def script():
            write_init_script(os.path.join(tree, "init"), state["script"])

        def split():
            self.splitter.split(tag, state["bin"], os.path.basename(request.source_file),
                                request.mode.work_path)

        def package():
            self.packager.package(tag, tree, image)

        steps = [("render", render), ("stage", stage), ("script", script)]
        if isinstance(request.mode, RootfsMode):
            steps.append(("split", split))
        steps.append(("package", package))

        stages = []
        for name, fn in steps:
            try:
                if self.cancel is not None and self.cancel.is_set():
                    raise BuildCancelled("build cancelled", tag=tag, stage=name)
                fn()
            except CommandCancelled as e:
                err = BuildCancelled("build cancelled", tag=tag, stage=name, cause=e)
                return self._cancelled(tag, stages, StageResult(name, err))
            except BuildCancelled as e:
                return self._cancelled(tag, stages, StageResult(name, e))
            except InitrdError as e:
                if e.tag is None:
                    e.tag = tag
                if e.stage is None:
                    e.stage = name
                return self._failed(tag, stages, StageResult(name, e))
            except OSError as e:
                err = InitrdError(f"{name} failed", tag=tag, stage=name, cause=e)
                return self._failed(tag, stages, StageResult(name, err))
            stages.append(StageResult(name))

        self.log.info(f"initrd created successfully for tag: {tag}")
        return BuildResult(tag, BuildStatus.OK, image=image, stages=stages)

    def _failed(self, tag, stages, failed):
        err = failed.error
        self.log.error(str(err))
        status = BuildStatus.FAILED
        if isinstance(err, StagingError) and err.copied:
            status = BuildStatus.PARTIAL
        return BuildResult(tag, status, error=err, stages=stages + [failed])

    def _cancelled(self, tag, stages, failed):
        shutil.rmtree(build_dir(self.config.build_root, tag), ignore_errors=True)
        return self._failed(tag, stages, failed)


def main():
    _host_path = os.environ.get("PATH", "")

    parser = argparse.ArgumentParser(description="Build an initrd image for a guest VM")
    parser.add_argument("--tag", required=True, help="Build name; output goes to <build-root>/<tag>")
    parser.add_argument("--source", required=True,
                        help="Program (code mode) or rootfs tarball (rootfs mode)")
    parser.add_argument("--mode", required=True, choices=["code", "rootfs"])
    parser.add_argument("--work-path", default=None,
                        help="Container working directory (rootfs mode)")
    parser.add_argument("--attestation-agent", default=None,
                        help="Optional attestation agent binary to embed")
    parser.add_argument("--config", default=None, help="INI file with an [initrd] section")
    parser.add_argument("--build-root", default=None)
    parser.add_argument("--compression", default=None, choices=sorted(COMPRESS_CMDS))
    parser.add_argument("--chunk-size", default=None, help="Rootfs part size (e.g. 300M)")
    parser.add_argument("-v", "--verbose", action="store_true")
    add_path_args(parser)
    args = parser.parse_args()

    log = Log(level="debug" if args.verbose else "info")
    try:
        config = load_config(args.config, build_root=args.build_root,
                             compression=args.compression, chunk_size=args.chunk_size)
        mode = parse_mode(args.mode, args.work_path)
    except ConfigurationError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)

    env = tool_env(resolve_path(args, _host_path))
    cancel = threading.Event()

    def _on_signal(_signum, _frame):
        cancel.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    creator = InitrdCreator(config, runner=ProcessRunner(env=env, cancel=cancel),
                            log=log, cancel=cancel)
    result = creator.build(BuildRequest(
        tag=args.tag,
        source_file=args.source,
        mode=mode,
        attestation_agent=args.attestation_agent,
    ))
    sys.exit(0 if result.ok else 1)


if __name__ == "__main__":
    main()
