"""Custom exceptions for migration operations.

This module defines a hierarchy of exceptions so the CLI can tell fatal
precondition and integrity failures apart from tolerated, best-effort ones.

Exception Hierarchy:
    MigrationError (base)
        ├── PreconditionError
        │   └── MissingToolError
        ├── IntegrityError
        ├── CommandError
        ├── MountError
        │   └── UnmountFailedError
        ├── ReleaseError
        ├── BootloaderInstallError
        └── RootSwapError

Translation problems (unknown kernel options, several root= tokens,
unresolvable logical volumes) are not exceptions: they are reported as
``Diagnostic`` values so the run can continue with degraded output.

Usage:
    from distro2gentoo.storage.exceptions import PreconditionError

    if os.geteuid() != 0:
        raise PreconditionError("privileges", "must be run as the root user")
"""

from __future__ import annotations

from typing import Sequence


class MigrationError(Exception):
    """Base exception for all migration operations."""


class PreconditionError(MigrationError):
    """A check that must hold before anything is mutated failed."""

    def __init__(self, check: str, reason: str):
        self.check = check
        self.reason = reason
        super().__init__(f"Precondition '{check}' failed: {reason}")


class MissingToolError(PreconditionError):
    """Required external commands are not available on the host."""

    def __init__(self, tools: Sequence[str]):
        self.tools = list(tools)
        super().__init__("tools", f"missing commands: {', '.join(self.tools)}")


class IntegrityError(MigrationError):
    """Downloaded release failed checksum or signature verification."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Integrity check failed for {path}: {reason}")


class CommandError(MigrationError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command failed ({' '.join(self.command)}) with code {returncode}"
        if stderr:
            message += f": {stderr}"
        super().__init__(message)


class MountError(MigrationError):
    """Base exception for mount-related errors."""


class UnmountFailedError(MountError):
    """Failed to unmount one or more staged-root mounts."""

    def __init__(self, mountpoints: Sequence[str]):
        self.mountpoints = list(mountpoints)
        super().__init__(f"Failed to unmount: {', '.join(self.mountpoints)}")


class ReleaseError(MigrationError):
    """Mirror, stage3 list or download failure."""

    def __init__(self, message: str, url: str | None = None):
        self.url = url
        super().__init__(message)


class BootloaderInstallError(MigrationError):
    """Neither the BIOS nor the UEFI bootloader path succeeded."""

    def __init__(self, attempts: Sequence[str]):
        self.attempts = list(attempts)
        detail = "; ".join(self.attempts) if self.attempts else "no bootloader path applicable"
        super().__init__(f"Bootloader installation failed: {detail}")


class RootSwapError(MigrationError):
    """The staged root cannot provide a self-contained toolchain for the swap."""

    def __init__(self, staged_root: str, reason: str):
        self.staged_root = staged_root
        self.reason = reason
        super().__init__(f"Cannot swap root from {staged_root}: {reason}")
