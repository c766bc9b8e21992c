from __future__ import annotations

import gzip
import io
import os
import shutil
import stat
import subprocess
import sys
from pathlib import Path

import pytest

_REPO = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_REPO / "tools"))

from _log import Log  # noqa: E402
from initrd_config import InitrdConfig  # noqa: E402
from initrd_runner import ProcessRunner  # noqa: E402

CONTAINER_INIT = "#!/bin/sh\nexec /bin/sh \"$@\"\n"


def _write(path: Path, content: str = "", mode: int | None = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    if mode is not None:
        path.chmod(mode)
    return path


def have_tools(*names: str) -> bool:
    return all(shutil.which(n) for n in names)


needs_archive_tools = pytest.mark.skipif(
    not have_tools("find", "cpio", "gzip"),
    reason="find/cpio/gzip not on PATH",
)


class RecordingRunner:
    """Runner double: records argv lists, optionally fails selected ones.

    ``fail`` is a predicate over the argv list.  ``pipeline`` writes a
    placeholder image so the rename step has something to move.
    """

    def __init__(self, fail=None, raise_exc=None):
        self.calls: list[list[str]] = []
        self.pipelines: list[tuple[list[list[str]], str, str]] = []
        self.fail = fail or (lambda argv: False)
        self.raise_exc = raise_exc

    def _check(self, argv):
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail(argv):
            raise subprocess.CalledProcessError(1, argv, stderr="simulated failure\n")

    def run(self, argv, cwd=None):
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        self._check(argv)

    def pipeline(self, commands, cwd, output):
        commands = [[str(a) for a in argv] for argv in commands]
        self.pipelines.append((commands, cwd, output))
        for argv in commands:
            self._check(argv)
        with open(output, "wb") as f:
            f.write(b"placeholder image")

    def commands(self) -> list[str]:
        return [argv[0] for argv in self.calls]


class NoArchiveRunner(ProcessRunner):
    """Runs real commands but stubs out the find | cpio | compress pipe."""

    def pipeline(self, commands, cwd, output):
        with open(output, "wb") as f:
            f.write(b"placeholder image")


def read_newc(data: bytes) -> dict[str, tuple[int, bytes]]:
    """Parse a newc cpio archive into {name: (mode, data)}.

    Names are normalized to have no leading "./"; symlink data is the
    link target.
    """
    entries = {}
    pos = 0
    while True:
        hdr = data[pos:pos + 110]
        assert hdr[:6] in (b"070701", b"070702"), f"bad cpio magic at {pos}: {hdr[:6]!r}"
        fields = [int(hdr[6 + 8 * i:14 + 8 * i], 16) for i in range(13)]
        mode, filesize, namesize = fields[1], fields[6], fields[11]
        pos += 110
        name = data[pos:pos + namesize - 1].decode()
        pos = (pos + namesize + 3) & ~3
        body = data[pos:pos + filesize]
        pos = (pos + filesize + 3) & ~3
        if name == "TRAILER!!!":
            break
        if name.startswith("./"):
            name = name[2:]
        entries[name] = (mode, body)
    return entries


def read_image(path) -> dict[str, tuple[int, bytes]]:
    with gzip.open(path, "rb") as f:
        return read_newc(f.read())


def snapshot(root) -> dict[str, tuple[str, bytes]]:
    """Map relative path -> (kind, content) for everything under ``root``."""
    result = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            full = os.path.join(dirpath, name)
            rel = os.path.relpath(full, root)
            st = os.lstat(full)
            if stat.S_ISLNK(st.st_mode):
                result[rel] = ("link", os.readlink(full).encode())
            elif stat.S_ISDIR(st.st_mode):
                result[rel] = ("dir", b"")
            else:
                with open(full, "rb") as f:
                    result[rel] = ("file", f.read())
    return result


@pytest.fixture
def components(tmp_path: Path) -> Path:
    """A default_component directory with stand-in guest binaries."""
    comp = tmp_path / "default_component"
    _write(comp / "busybox", "busybox-binary", 0o755)
    _write(comp / "docker_init", CONTAINER_INIT, 0o755)
    _write(comp / "vguest_vsock", "vsock-binary", 0o755)
    _write(comp / "qemu_init.sh", "#!/bin/sh\necho qemu\n", 0o644)
    _write(comp / "pgms" / "hello", "hello-program", 0o755)
    _write(comp / "pgms" / "lib" / "data.txt", "data")
    return comp


@pytest.fixture
def config(tmp_path: Path, components: Path) -> InitrdConfig:
    return InitrdConfig(
        busybox=str(components / "busybox"),
        docker_init=str(components / "docker_init"),
        vsock_bridge=str(components / "vguest_vsock"),
        component_dir=str(components),
        build_root=str(tmp_path / "build"),
    )


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def log(log_stream: io.StringIO) -> Log:
    return Log(stream=log_stream, level="debug")


@pytest.fixture
def source_file(tmp_path: Path) -> Path:
    return _write(tmp_path / "src" / "agent.bin", "sensitive-program", 0o755)


@pytest.fixture
def make_file(tmp_path: Path):
    """Callable: make_file("name", size) -> Path with deterministic bytes."""

    def _make(name: str, size: int) -> Path:
        path = tmp_path / "src" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        pattern = bytes(range(251))
        with open(path, "wb") as f:
            remaining = size
            while remaining:
                chunk = pattern[:min(remaining, len(pattern))]
                f.write(chunk)
                remaining -= len(chunk)
        return path

    return _make
