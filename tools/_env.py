"""Environment handed to cp, split, find, cpio and the compressors.

Every external tool the initrd builder runs gets the same whitelisted
environment.  Compressors read tuning knobs from variables (GZIP, XZ_OPT,
ZSTD_CLEVEL, ...) and a host that sets one would silently change the
image; a localized LANG would change the error text that ends up in
failure reports.  Neither reaches a child process.

PATH is resolved separately from the --hermetic-path / --hermetic-empty /
--path-prepend flags so a build can be pinned to a known toolset.
"""

import os

# Vars passed through from the host environment when present.
_PASSTHROUGH = frozenset({
    "HOME", "USER", "LOGNAME",
    "TMPDIR",
    "TERM",
})

# Vars pinned so messages and archive metadata do not depend on the host.
_DETERMINISM_PINS = {
    "LC_ALL": "C",
    "LANG": "C",
    "TZ": "UTC",
    "SOURCE_DATE_EPOCH": "315576000",
}

# Read by gzip/xz/lz4/zstd; never forwarded.
COMPRESSOR_VARS = frozenset({
    "GZIP", "XZ_OPT", "XZ_DEFAULTS", "ZSTD_CLEVEL", "ZSTD_NBTHREADS", "LZ4",
})


def clean_env():
    """Whitelisted host vars plus the pins.  No PATH."""
    env = {}
    for key in _PASSTHROUGH:
        val = os.environ.get(key)
        if val is not None:
            env[key] = val
    env.update(_DETERMINISM_PINS)
    return env


def tool_env(path=None):
    """Return the env= mapping for a tool invocation.

    ``path`` defaults to the host PATH (or os.defpath when unset).
    """
    env = clean_env()
    env["PATH"] = os.environ.get("PATH", os.defpath) if path is None else path
    return env


def add_path_args(parser):
    """Register the PATH selection flags on the initrd-creator parser."""
    parser.add_argument("--hermetic-path", action="append",
                        dest="hermetic_path", default=[],
                        help="Run tools from only these dirs (repeatable)")
    parser.add_argument("--allow-host-path", action="store_true",
                        help="Run tools from the host PATH (the default)")
    parser.add_argument("--hermetic-empty", action="store_true",
                        help="Start with an empty PATH")
    parser.add_argument("--path-prepend", action="append",
                        dest="path_prepend", default=[],
                        help="Dir searched before the others (repeatable)")


def resolve_path(args, host_path=""):
    """Return the PATH string selected by the add_path_args() flags."""
    if args.hermetic_path:
        path = ":".join(os.path.abspath(p) for p in args.hermetic_path)
    elif args.hermetic_empty:
        path = ""
    else:
        path = host_path
    if args.path_prepend:
        prepend = ":".join(os.path.abspath(p) for p in args.path_prepend)
        path = prepend + (":" + path if path else "")
    return path
