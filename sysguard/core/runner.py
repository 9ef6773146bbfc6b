"""
Command Runner
~~~~~~~~~~~~~~

Thin subprocess wrapper every host-touching component goes through.
Each call carries a bounded timeout so a single hung probe cannot stall
a transaction. Tests swap in a scripted runner with the same interface.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

__all__ = ["CommandResult", "CommandRunner", "DEFAULT_TIMEOUT", "redact_argv"]

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

# Exit codes used when the command never produced one
_NOT_FOUND = 127
_TIMED_OUT = 124

# Options whose value is a credential, per program.
_SECRET_OPTIONS: dict[str, tuple[str, ...]] = {
    "usermod": ("-p", "--password"),
}
_REDACTED = "<redacted>"


def redact_argv(argv: Sequence[str]) -> str:
    """
    Render a command for logs and error text with credential values masked.

    Example::

        >>> redact_argv(["usermod", "-p", "$6$salt$hash", "deploy"])
        'usermod -p <redacted> deploy'
    """
    argv = list(argv)
    if not argv:
        return ""
    secret_options = _SECRET_OPTIONS.get(os.path.basename(argv[0]), ())
    shown: list[str] = []
    hide_next = False
    for arg in argv:
        if hide_next:
            shown.append(_REDACTED)
            hide_next = False
        elif arg in secret_options:
            shown.append(arg)
            hide_next = True
        elif secret_options and arg.startswith("--password="):
            shown.append("--password=" + _REDACTED)
        else:
            shown.append(arg)
    return " ".join(shown)


@dataclass(frozen=True)
class CommandResult:
    """
    Outcome of one external command.

    Attributes:
        argv: The command that was run.
        returncode: Process exit status (127 if not found, 124 on timeout).
        stdout: Captured standard output.
        stderr: Captured standard error.
        timed_out: Whether the per-call timeout expired.
    """

    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, stripped."""
        return "\n".join(p for p in (self.stdout.strip(), self.stderr.strip()) if p)


class CommandRunner:
    """
    Runs external commands locally with a timeout.

    Never raises for a missing binary or an expired timeout; both are
    reported through the returned CommandResult so callers can classify
    them.
    """

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT) -> None:
        self._default_timeout = default_timeout

    def run(
        self,
        argv: Sequence[str],
        timeout: float | None = None,
        input: str | None = None,
    ) -> CommandResult:
        """
        Run a command and capture its output.

        Args:
            argv: Program and arguments. Never passed through a shell.
            timeout: Seconds before the process is killed.
            input: Optional text written to the process's stdin.

        Returns:
            A CommandResult describing the run.
        """
        argv = tuple(argv)
        limit = self._default_timeout if timeout is None else timeout
        logger.debug("Running %s (timeout=%ss)", redact_argv(argv), limit)
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=limit,
                input=input,
                check=False,
            )
        except FileNotFoundError:
            return CommandResult(argv, _NOT_FOUND, stderr=f"{argv[0]}: not found")
        except subprocess.TimeoutExpired:
            logger.warning("Command timed out after %ss: %s", limit, redact_argv(argv))
            return CommandResult(argv, _TIMED_OUT, stderr="timed out", timed_out=True)
        except OSError as exc:
            return CommandResult(argv, _NOT_FOUND, stderr=str(exc))

        return CommandResult(argv, proc.returncode, proc.stdout, proc.stderr)

    def which(self, name: str) -> str | None:
        """Return the path of an executable on PATH, or None."""
        return shutil.which(name)
