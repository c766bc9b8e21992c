"""Leveled diagnostics on stderr.

Info lines print bare, everything else as ``<level>: <message>``, the same
shape the helpers have always used with print(..., file=sys.stderr).
"""

import sys

LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}


class Log:
    """Minimal log sink.  Losing a message never fails a build."""

    def __init__(self, stream=None, level="info", prefix=""):
        if level not in LEVELS:
            raise ValueError(f"unknown log level: {level}")
        self.stream = stream
        self.threshold = LEVELS[level]
        self.prefix = prefix

    def emit(self, level, msg):
        if LEVELS[level] < self.threshold:
            return
        text = f"{self.prefix}{msg}"
        if level != "info":
            text = f"{level}: {text}"
        try:
            print(text, file=self.stream or sys.stderr, flush=True)
        except (OSError, ValueError):
            # Closed or broken stream.
            pass

    def debug(self, msg):
        self.emit("debug", msg)

    def info(self, msg):
        self.emit("info", msg)

    def warning(self, msg):
        self.emit("warning", msg)

    def error(self, msg):
        self.emit("error", msg)
