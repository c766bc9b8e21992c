"""Errors raised by the initrd build stages.

Every error carries the build tag, the stage that raised it and the
underlying exception, so a single line on stderr is enough to diagnose a
failed build.
"""


class InitrdError(Exception):
    """Base class for all initrd build failures."""

    def __init__(self, message, tag=None, stage=None, cause=None):
        super().__init__(message)
        self.message = message
        self.tag = tag
        self.stage = stage
        self.cause = cause

    def __str__(self):
        where = []
        if self.tag is not None:
            where.append(f"tag={self.tag}")
        if self.stage is not None:
            where.append(f"stage={self.stage}")
        text = self.message
        if where:
            text = f"[{' '.join(where)}] {text}"
        if self.cause is not None:
            text = f"{text}: {self.cause}"
        return text


class StagingError(InitrdError):
    """One or more payload copies, links or directories did not complete.

    ``failures`` lists ``(step, exception)`` pairs for every step that
    failed; staging keeps going after a failed step so the whole list is
    reported at once.
    """

    def __init__(self, message, failures=(), copied=0, **kwargs):
        super().__init__(message, **kwargs)
        self.failures = list(failures)
        self.copied = copied

    def __str__(self):
        text = super().__str__()
        for step, exc in self.failures:
            text += f"\n  {step}: {exc}"
        return text


class ConfigurationError(InitrdError):
    """Unrecognized mode, unsafe tag or malformed configuration."""


class SplitError(InitrdError):
    """Chunking the rootfs payload failed."""


class PackagingError(InitrdError):
    """Archival or compression of the staging tree failed."""


class InitWriteError(InitrdError):
    """The /init script could not be written."""


class BuildCancelled(InitrdError):
    """The build was cancelled while a stage was running."""
