"""Staging Root Manager.

The staged root is the Gentoo tree assembled next to the running system.
It owns every mount made below it so teardown can undo them in reverse
order, and it is the only way commands get executed inside the new tree.

Lifecycle:
    create() -> unpack() -> prepare_chroot() -> ... run() ...
    -> unmount_all() -> remove()

``remove()`` refuses to delete anything while mounts are still active
below the staged root: a recursive delete through a live ``/dev`` or
``/boot`` bind would destroy the host.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Iterable, Sequence

from distro2gentoo.logging import LoggerFactory

from .commands import run_command
from .exceptions import CommandError, PreconditionError, UnmountFailedError
from .mount import bind_mount, make_rslave, mount_device, unmount_recursive


log = LoggerFactory.for_staging()

CHROOT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# Copied verbatim; the new system must resolve names like the old one.
HOST_FILES = ("/etc/resolv.conf",)
OPTIONAL_HOST_FILES = ("/etc/hosts", "/etc/hostname")


def staging_path(arch: str, parent: str | os.PathLike = "/") -> Path:
    return Path(parent) / f"root.d2g.{arch}"


def active_mounts(mounts_file: str = "/proc/mounts") -> list[str]:
    targets = []
    try:
        with open(mounts_file, "r", encoding="utf-8") as handle:
            for line in handle:
                parts = line.split()
                if len(parts) > 1:
                    # /proc/mounts escapes spaces as \040
                    targets.append(parts[1].replace("\\040", " "))
    except FileNotFoundError:
        pass
    return targets


class StagedRoot:
    """The temporary target-root directory tree."""

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)
        self.mounts: list[Path] = []

    def __repr__(self) -> str:
        return f"StagedRoot({str(self.path)!r})"

    def host_path(self, path: str | os.PathLike) -> Path:
        """Host location of an absolute path inside the staged root."""
        return self.path / str(path).lstrip("/")

    def exists(self) -> bool:
        return self.path.exists() or self.path.is_symlink()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self) -> None:
        if self.exists():
            raise PreconditionError(
                "staging", f"{self.path} already exists, remove it or check a previous run"
            )
        self.path.mkdir(mode=0o755, parents=True)
        log.info(f"Created staged root {self.path}")

    def unpack(self, tarball: str | os.PathLike) -> None:
        log.info(f"Unpacking {tarball} into {self.path}")
        run_command(
            [
                "tar",
                "xpf",
                str(tarball),
                "--xattrs-include=*.*",
                "--numeric-owner",
                "-C",
                str(self.path),
            ],
            log_output=False,
        )

    def prepare_chroot(self, boot_mounted: bool = False) -> None:
        """Mount the pseudo filesystems (and /boot) the chroot needs."""
        self.mount("proc", "/proc", fstype="proc")
        for directory in ("/sys", "/dev"):
            self.bind(directory, directory, recursive=True)
            make_rslave(self.host_path(directory))
        self.mount("tmpfs", "/run", fstype="tmpfs", options=("mode=0755", "nosuid", "nodev"))
        if boot_mounted:
            self.bind("/boot", "/boot", recursive=True)
            make_rslave(self.host_path("/boot"))
        log.info(f"Chroot prepared with {len(self.mounts)} mounts")

    def mount(
        self,
        source: str,
        target: str,
        fstype: str | None = None,
        options: Sequence[str] = (),
    ) -> Path:
        location = self.host_path(target)
        mount_device(source, location, fstype=fstype, options=options)
        self.mounts.append(location)
        return location

    def bind(self, source: str | os.PathLike, target: str, recursive: bool = False) -> Path:
        location = self.host_path(target)
        bind_mount(source, location, recursive=recursive)
        self.mounts.append(location)
        return location

    def is_mounted(self, target: str) -> bool:
        return str(self.host_path(target)) in active_mounts()

    def copy_host_files(self, host_root: str | os.PathLike = "/") -> None:
        host_root = Path(host_root)
        for name in HOST_FILES:
            try:
                self._copy_file(host_root / name.lstrip("/"), name)
            except OSError as error:
                raise PreconditionError("host-files", f"cannot copy {name}: {error}") from error
        for name in OPTIONAL_HOST_FILES:
            try:
                self._copy_file(host_root / name.lstrip("/"), name)
            except OSError as error:
                log.warning(f"Skipping {name}: {error}")

        # Modules of the running kernel, for anything loaded before the reboot.
        modules = host_root / "lib" / "modules"
        if modules.is_dir():
            destination = self.host_path("/lib")
            destination.mkdir(parents=True, exist_ok=True)
            try:
                run_command(["cp", "-a", str(modules), str(destination)], log_output=False)
            except CommandError as error:
                log.warning(f"Could not copy kernel modules: {error.stderr}")

    def _copy_file(self, source: Path, target: str) -> None:
        destination = self.host_path(target)
        destination.parent.mkdir(parents=True, exist_ok=True)
        if destination.is_symlink():
            destination.unlink()
        shutil.copyfile(source, destination)
        log.debug(f"Copied {source} to {destination}")

    def run(
        self,
        command: Sequence[str],
        check: bool = True,
        input_text: str | None = None,
    ):
        """Run a command inside the staged root with a clean environment."""
        argv = [
            "chroot",
            str(self.path),
            "/usr/bin/env",
            "-i",
            "HOME=/root",
            f"TERM={os.environ.get('TERM', 'linux')}",
            f"PATH={CHROOT_PATH}",
            *command,
        ]
        return run_command(argv, check=check, input_text=input_text)

    def init_system(self) -> str:
        """``"openrc"`` or ``"systemd"`` depending on the unpacked stage."""
        for candidate in ("/sbin/openrc", "/usr/sbin/openrc", "/sbin/openrc-run"):
            if self.host_path(candidate).exists():
                return "openrc"
        for candidate in ("/lib/systemd/systemd", "/usr/lib/systemd/systemd"):
            if self.host_path(candidate).exists():
                return "systemd"
        log.warning("Cannot tell the stage's init system, assuming OpenRC")
        return "openrc"

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def read_text(self, path: str, default: str = "") -> str:
        location = self.host_path(path)
        if not location.exists():
            return default
        return location.read_text(encoding="utf-8")

    def write_text(self, path: str, content: str, mode: int | None = None) -> Path:
        location = self.host_path(path)
        location.parent.mkdir(parents=True, exist_ok=True)
        location.write_text(content, encoding="utf-8")
        if mode is not None:
            location.chmod(mode)
        log.debug(f"Wrote {path} ({len(content)} bytes)")
        return location

    def symlink(self, path: str, target: str) -> None:
        location = self.host_path(path)
        if location.is_symlink() or location.exists():
            location.unlink()
        location.symlink_to(target)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def mounted_below(self, mounts: Iterable[str] | None = None) -> list[str]:
        prefix = str(self.path).rstrip("/") + "/"
        mounts = active_mounts() if mounts is None else mounts
        return [
            target for target in mounts if target == str(self.path) or target.startswith(prefix)
        ]

    def unmount_all(self) -> list[str]:
        """Unmount everything recorded, newest first.

        Returns:
            Mount points that could not be unmounted
        """
        failed = []
        for location in reversed(self.mounts):
            if not unmount_recursive(location):
                failed.append(str(location))
        self.mounts = []
        if failed:
            log.warning(f"Still mounted below the staged root: {', '.join(failed)}")
        return failed

    def remove(self) -> bool:
        """Delete the staged root tree.

        Raises:
            UnmountFailedError: If anything is still mounted below it
        """
        still_mounted = self.mounted_below()
        if still_mounted:
            raise UnmountFailedError(still_mounted)
        if not self.exists():
            return True
        try:
            run_command(["rm", "-rf", "--one-file-system", str(self.path)], log_output=False)
        except CommandError as error:
            log.warning(f"Could not remove {self.path}: {error.stderr}")
            return False
        log.info(f"Removed staged root {self.path}")
        return True
