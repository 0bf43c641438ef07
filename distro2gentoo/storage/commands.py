"""External command execution with argument lists only.

Every command is passed to ``subprocess.run`` as a list; nothing is ever
assembled into a shell string.
"""

from __future__ import annotations

import shutil
import subprocess
from typing import Iterable, Mapping, Sequence

from distro2gentoo.logging import LoggerFactory

from .exceptions import CommandError, MissingToolError


log = LoggerFactory.for_system()
output_log = LoggerFactory.for_command_output()


def run_command(
    command: Sequence[str],
    check: bool = True,
    input_text: str | None = None,
    env: Mapping[str, str] | None = None,
    log_output: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command and capture its output.

    Args:
        command: Argument list, the first item being the program
        check: Raise CommandError when the command exits non-zero
        input_text: Optional text written to stdin
        env: Optional replacement environment
        log_output: Log stdout/stderr at TRACE level

    Returns:
        The completed process

    Raises:
        CommandError: If check is set and the command fails
    """
    argv = [str(part) for part in command]
    log.debug(f"Running command: {' '.join(argv)}")
    result = subprocess.run(
        argv,
        input=input_text,
        text=True,
        capture_output=True,
        env=dict(env) if env is not None else None,
    )
    if result.stdout and (log_output or result.returncode != 0):
        output_log.trace(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        output_log.trace(f"stderr: {result.stderr.strip()}")
    if result.returncode != 0:
        log.debug(f"Command exited with code {result.returncode}: {argv[0]}")
        if check:
            stderr = (result.stderr or "").strip() or (result.stdout or "").strip()
            raise CommandError(argv, result.returncode, stderr)
    return result


def run_checked_command(command: Sequence[str], input_text: str | None = None) -> str:
    """Run a command and return its stdout, raising CommandError on failure."""
    return run_command(command, check=True, input_text=input_text).stdout


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def missing_commands(names: Iterable[str]) -> list[str]:
    return [name for name in names if not command_exists(name)]


def require_commands(names: Iterable[str]) -> None:
    """Raise MissingToolError listing every command not found on PATH."""
    missing = missing_commands(names)
    if missing:
        raise MissingToolError(missing)
