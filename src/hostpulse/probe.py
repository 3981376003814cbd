"""Bounded execution of short-lived external diagnostic commands."""

import logging
import subprocess
import sys
from collections.abc import Sequence

import psutil

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 5.0


def is_windows() -> bool:
    """Check if the engine runs on Windows."""
    return sys.platform.startswith("win")


def kill_tree(proc: subprocess.Popen) -> None:
    """Forcibly kill a child process and every descendant it spawned."""
    try:
        children = psutil.Process(proc.pid).children(recursive=True)
    except psutil.Error:
        children = []

    for child in children:
        try:
            child.kill()
        except psutil.Error:
            continue

    try:
        proc.kill()
    except OSError:
        pass  # Already exited


class ProbeRunner:
    """
    Runs external commands with a hard timeout and captures their output.

    Every call spawns and reaps its own process. A process that outlives its
    timeout is killed together with its descendants before the call returns,
    so no probe is ever left running in the background. Failures of any kind
    are reported as None rather than raised.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_S) -> None:
        """
        Initialize the ProbeRunner.

        Args:
            timeout: Default hard timeout per command (in seconds).
        """
        self._timeout = timeout

    @property
    def timeout(self) -> float:
        """Get the default timeout."""
        return self._timeout

    def run(self, argv: Sequence[str], timeout: float | None = None) -> str | None:
        """
        Run a command and return its stdout (stderr merged).

        Returns None on timeout, a missing executable, a non-zero exit status
        or blank output.
        """
        limit = self._timeout if timeout is None else timeout
        try:
            proc = subprocess.Popen(
                list(argv),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
            )
        except (OSError, ValueError) as exc:
            log.debug("Probe failed to start: %s (%s)", argv[0], exc)
            return None

        with proc:
            try:
                output, _ = proc.communicate(timeout=limit)
            except subprocess.TimeoutExpired:
                log.debug("Probe timed out after %.1fs: %s", limit, argv[0])
                kill_tree(proc)
                proc.communicate()
                return None

        if proc.returncode != 0:
            log.debug("Probe exited with %d: %s", proc.returncode, argv[0])
            return None

        output = output or ""
        return output if output.strip() else None

    def run_lines(self, argv: Sequence[str], timeout: float | None = None) -> list[str]:
        """Run a command and return its stripped, non-empty output lines."""
        output = self.run(argv, timeout=timeout)
        if output is None:
            return []
        return [line.strip() for line in output.splitlines() if line.strip()]

    def powershell(self, command: str, timeout: float | None = None) -> str | None:
        """Run a PowerShell command. Always None off Windows."""
        if not is_windows():
            return None
        return self.run(
            [
                "powershell",
                "-NoProfile",
                "-ExecutionPolicy",
                "Bypass",
                "-Command",
                command,
            ],
            timeout=timeout,
        )
