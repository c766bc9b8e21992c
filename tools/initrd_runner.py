"""Run the external tools an initrd build needs.

The stages only decide *which* commands to run, in what order and with
what arguments; this module owns how they are executed.  Tests swap in a
double with the same ``run``/``pipeline`` methods.
"""

import subprocess
import tempfile

from _env import tool_env


class CommandCancelled(Exception):
    """The cancel event fired while a command was running."""

    def __init__(self, argv):
        super().__init__(f"cancelled: {' '.join(argv)}")
        self.argv = argv


def describe_failure(exc):
    """One-line description of a failed command, including its stderr."""
    if isinstance(exc, subprocess.CalledProcessError):
        text = f"{exc.cmd[0]} exited with code {exc.returncode}"
        stderr = (exc.stderr or "").strip()
        if stderr:
            text += f" ({stderr.splitlines()[-1]})"
        return text
    return str(exc)


def _stop(proc):
    """Terminate a child, escalating to SIGKILL if it ignores SIGTERM."""
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


class ProcessRunner:
    """Synchronous subprocess runner with cooperative cancellation.

    ``cancel`` is an optional ``threading.Event``; once set, running
    children are terminated and CommandCancelled is raised.
    """

    poll_interval = 0.1

    def __init__(self, env=None, cancel=None):
        self.env = tool_env() if env is None else env
        self.cancel = cancel

    def _cancelled(self):
        return self.cancel is not None and self.cancel.is_set()

    def _wait(self, procs, argv):
        try:
            for proc in procs:
                while True:
                    try:
                        proc.wait(timeout=self.poll_interval)
                        break
                    except subprocess.TimeoutExpired:
                        if self._cancelled():
                            raise CommandCancelled(argv)
        except BaseException:
            for proc in procs:
                _stop(proc)
            raise

    def run(self, argv, cwd=None):
        """Run one command, raising CalledProcessError on non-zero exit."""
        argv = [str(a) for a in argv]
        if self._cancelled():
            raise CommandCancelled(argv)
        with tempfile.TemporaryFile() as err:
            proc = subprocess.Popen(
                argv, cwd=cwd, env=self.env,
                stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=err,
            )
            self._wait([proc], argv)
            if proc.returncode != 0:
                err.seek(0)
                raise subprocess.CalledProcessError(
                    proc.returncode, argv,
                    stderr=err.read().decode("utf-8", errors="replace"),
                )

    def pipeline(self, commands, cwd, output):
        """Run ``commands`` connected by pipes, last stdout written to ``output``.

        Every stage must exit 0; the first failing stage is reported.
        """
        commands = [[str(a) for a in argv] for argv in commands]
        if self._cancelled():
            raise CommandCancelled(commands[0])
        procs = []
        with tempfile.TemporaryFile() as err, open(output, "wb") as out:
            try:
                stdin = subprocess.DEVNULL
                for i, argv in enumerate(commands):
                    last = i == len(commands) - 1
                    proc = subprocess.Popen(
                        argv, cwd=cwd, env=self.env, stdin=stdin,
                        stdout=out if last else subprocess.PIPE, stderr=err,
                    )
                    if procs:
                        # Only the child may hold the read end, so an early
                        # exit downstream is seen as SIGPIPE upstream.
                        procs[-1].stdout.close()
                    procs.append(proc)
                    stdin = proc.stdout
            except BaseException:
                for proc in procs:
                    _stop(proc)
                raise

            self._wait(procs, commands[-1])

            for argv, proc in zip(commands, procs):
                if proc.returncode != 0:
                    err.seek(0)
                    raise subprocess.CalledProcessError(
                        proc.returncode, argv,
                        stderr=err.read().decode("utf-8", errors="replace"),
                    )
