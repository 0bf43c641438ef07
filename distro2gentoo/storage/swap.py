"""Root Swap Executor: replace the host's files with the staged root's.

This is the point of no return. Once deletion starts, the host's own
dynamic loader and libraries disappear, so every command issued after
that point is started through the *staged root's* loader with the staged
root's library directories as an explicit search path::

    /root.d2g.amd64/lib64/ld-linux-x86-64.so.2 \\
        --library-path /root.d2g.amd64/lib64:/root.d2g.amd64/usr/lib64 \\
        /root.d2g.amd64/bin/cp -a /root.d2g.amd64/usr /

The toolchain is pinned (resolved once) before anything is deleted and
must not be re-resolved through the host afterwards. Python modules used
during the swap are all imported before the first deletion.

Order:
    1. Delete every top-level entry of the host root that is not
       preserved (best effort, failures recorded).
    2. Copy the staged root's directories over the host root (each copy
       best effort, failures recorded).
    3. The staged root itself is left in place; the caller removes it
       only when the copy phase reported no failures.

An interruption between 1 and 2 leaves the host with a partial tree.
Nothing here can recover from that; the operator is warned before the
swap starts.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Sequence

from distro2gentoo.domain import SYSTEM_MOUNTPOINTS, StorageTopology
from distro2gentoo.logging import LoggerFactory

from .commands import run_command
from .exceptions import CommandError, RootSwapError
from .topology import btrfs_subvolume


log = LoggerFactory.for_swap()

PRESERVED_PATHS = ("boot", "dev", "home", "proc", "root", "run", "sys", "selinux", "tmp")
COPY_DIRECTORIES = ("bin", "sbin", "etc", "lib", "lib64", "usr", "var", "mnt", "opt")
SYSTEM_DIRECTORIES = ("bin", "sbin", "etc", "lib", "lib64", "usr", "var")

_LOADER_PATTERNS = ("ld-linux*.so*", "ld-*.so*")
_LIBRARY_DIRS = ("lib64", "usr/lib64", "lib", "usr/lib")
_SUBVOLUME_PATH_RE = re.compile(r"\bpath (?P<path>\S.*)$")
_MAX_SYMLINK_DEPTH = 40


def resolve_inside(root: Path, path: Path) -> Path:
    """Resolve symlinks in ``path`` as if ``root`` were ``/``."""
    root = Path(root)
    current = Path(path)
    for _ in range(_MAX_SYMLINK_DEPTH):
        if not current.is_symlink():
            return current
        target = os.readlink(current)
        if target.startswith("/"):
            current = root / target.lstrip("/")
        else:
            current = current.parent / target
    raise RootSwapError(str(root), f"too many symlinks resolving {path}")


@dataclass(frozen=True)
class SwapToolchain:
    """Commands that keep working while the host's libraries are deleted."""

    loader: Optional[str]
    library_path: str = ""
    bin_dirs: tuple[str, ...] = ()

    @classmethod
    def host(cls) -> SwapToolchain:
        """Plain host commands, for swaps into a root that is not ``/``."""
        return cls(loader=None)

    def command(self, program: str, *args: str) -> list[str]:
        if self.loader is None:
            return [program, *args]
        for bin_dir in self.bin_dirs:
            binary = os.path.join(bin_dir, program)
            if os.path.exists(binary):
                return [self.loader, "--library-path", self.library_path, binary, *args]
        raise RootSwapError(self.library_path, f"{program} not found in {', '.join(self.bin_dirs)}")


def pin_toolchain(staged_root: str | os.PathLike) -> SwapToolchain:
    """Locate the staged root's dynamic loader, libraries and core tools.

    Raises:
        RootSwapError: If no loader or no cp/rm can be found
    """
    staged_root = Path(staged_root)
    library_dirs = []
    for name in _LIBRARY_DIRS:
        directory = staged_root / name
        if directory.is_dir() and str(directory) not in library_dirs:
            library_dirs.append(str(directory))

    loader = None
    for name in ("lib64", "lib"):
        directory = staged_root / name
        if not directory.is_dir():
            continue
        for pattern in _LOADER_PATTERNS:
            for candidate in sorted(directory.glob(pattern)):
                resolved = resolve_inside(staged_root, candidate)
                if resolved.is_file():
                    loader = str(resolved)
                    break
            if loader:
                break
        if loader:
            break
    if loader is None:
        raise RootSwapError(str(staged_root), "no dynamic loader in lib64 or lib")

    bin_dirs = tuple(
        str(staged_root / name)
        for name in ("bin", "usr/bin")
        if (staged_root / name / "cp").exists() and (staged_root / name / "rm").exists()
    )
    if not bin_dirs:
        raise RootSwapError(str(staged_root), "cp and rm not found in bin or usr/bin")

    toolchain = SwapToolchain(loader=loader, library_path=":".join(library_dirs), bin_dirs=bin_dirs)
    log.info(f"Pinned swap toolchain: {toolchain.loader} --library-path {toolchain.library_path}")
    return toolchain


# ==============================================================================
# Btrfs exclusions
# ==============================================================================


def parse_subvolume_paths(text: str) -> list[str]:
    """Subvolume paths from ``btrfs subvolume list`` (or ``get-default``)."""
    paths = []
    for line in text.splitlines():
        match = _SUBVOLUME_PATH_RE.search(line.strip())
        if match:
            paths.append(match.group("path").strip())
    return paths


def _normalize_subvolume(path: str | None) -> str:
    return (path or "").strip("/")


def btrfs_exclusions(
    topology: StorageTopology,
    readonly_subvolumes: Iterable[str],
    default_subvolume: str | None,
) -> list[str]:
    """Host paths that must survive because they belong to other subvolumes."""
    mounted = {}
    for mount in topology.mounts:
        if mount.fstype == "btrfs" and mount.target.startswith("/"):
            mounted[_normalize_subvolume(btrfs_subvolume(mount))] = mount.target
    root = topology.root_subvolume
    root_subvolume = _normalize_subvolume(root.subvolume) if root else ""

    def host_path(subvolume: str) -> str | None:
        if subvolume in mounted:
            return mounted[subvolume]
        if not root_subvolume:
            return "/" + subvolume
        if subvolume.startswith(root_subvolume + "/"):
            return "/" + subvolume[len(root_subvolume) + 1 :]
        return None

    excluded: list[str] = []
    for subvolume in readonly_subvolumes:
        path = host_path(_normalize_subvolume(subvolume))
        if path and path != "/" and path not in excluded:
            log.info(f"Excluding read-only subvolume {subvolume} at {path}")
            excluded.append(path)

    default = _normalize_subvolume(default_subvolume)
    if root is not None and default and default != root_subvolume:
        path = host_path(default)
        if path and path != "/" and path not in excluded:
            log.info(f"Excluding default subvolume {default} at {path}")
            excluded.append(path)
    return excluded


def discover_btrfs_exclusions(topology: StorageTopology) -> list[str]:
    if topology.root_subvolume is None:
        return []
    try:
        readonly = parse_subvolume_paths(
            run_command(["btrfs", "subvolume", "list", "-r", "/"], log_output=False).stdout
        )
        default = parse_subvolume_paths(
            run_command(["btrfs", "subvolume", "get-default", "/"], log_output=False).stdout
        )
    except CommandError as error:
        log.warning(f"Cannot list btrfs subvolumes: {error.stderr}")
        return []
    return btrfs_exclusions(topology, readonly, default[0] if default else None)


def data_mountpoints(topology: StorageTopology) -> list[str]:
    """Mounted filesystems under ``/`` that carry no system files."""
    paths = []
    for mount in topology.mounts:
        target = mount.target
        if not target.startswith("/") or target == "/" or target in SYSTEM_MOUNTPOINTS:
            continue
        # Top-level system directories on their own filesystem get replaced.
        if target.count("/") == 1 and target[1:] in SYSTEM_DIRECTORIES:
            continue
        if target not in paths:
            paths.append(target)
    return paths


# ==============================================================================
# Executor
# ==============================================================================


@dataclass
class SwapReport:
    deleted: list[str] = field(default_factory=list)
    delete_failures: list[str] = field(default_factory=list)
    copied: list[str] = field(default_factory=list)
    copy_failures: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.copy_failures


class RootSwap:
    """Delete the host's old files and merge the staged root into place.

    Args:
        staged_root: The staged root directory (always preserved)
        root: The root being replaced, ``/`` outside of tests
        preserved: Top-level names (or absolute paths) kept untouched
        extra_preserved: More absolute paths kept, such as the EFI mount
        boot_mounted: /boot is its own filesystem bound into the staged root,
            so nothing under boot/ is copied
        toolchain: Pinned commands; resolved from the staged root when omitted
    """

    def __init__(
        self,
        staged_root: str | os.PathLike,
        root: str | os.PathLike = "/",
        preserved: Sequence[str] = PRESERVED_PATHS,
        extra_preserved: Iterable[str] = (),
        boot_mounted: bool = False,
        toolchain: SwapToolchain | None = None,
    ):
        self.staged_root = Path(staged_root)
        self.root = Path(root)
        self.boot_mounted = boot_mounted
        self.toolchain = toolchain
        self.preserved = {self._host(path) for path in preserved}
        self.preserved.update(self._host(path) for path in extra_preserved)
        self.preserved.add(self.staged_root)

    def _host(self, path: str) -> Path:
        return self.root / str(path).lstrip("/")

    def deletion_targets(self) -> list[Path]:
        """Every path to delete; directories holding preserved paths are descended."""
        return sorted(self._walk(self.root))

    def _walk(self, directory: Path) -> Iterable[Path]:
        with os.scandir(directory) as entries:
            for entry in entries:
                path = Path(entry.path)
                if path in self.preserved:
                    continue
                if entry.is_dir(follow_symlinks=False) and any(
                    path in preserved.parents for preserved in self.preserved
                ):
                    yield from self._walk(path)
                    continue
                yield path

    def copy_sources(self) -> list[tuple[Path, Path]]:
        """(source, destination directory) pairs for the copy phase."""
        pairs = []
        for name in COPY_DIRECTORIES:
            source = self.staged_root / name
            if source.exists() or source.is_symlink():
                pairs.append((source, self.root))
        boot = self.staged_root / "boot"
        if not self.boot_mounted and boot.is_dir():
            # Kernel, initramfs and grub were installed into the staged /boot.
            # An EFI partition mounted below it is not copied.
            for entry in sorted(boot.iterdir()):
                if not entry.is_mount():
                    pairs.append((entry, self.root / "boot"))
        return pairs

    def execute(self) -> SwapReport:
        toolchain = self.toolchain or pin_toolchain(self.staged_root)
        targets = self.deletion_targets()
        copies = self.copy_sources()
        report = SwapReport()

        log.warning(
            f"Point of no return: deleting {len(targets)} paths under {self.root}, "
            "an interruption now leaves a partially replaced system"
        )
        for path in targets:
            command = toolchain.command("rm", "-rf", "--one-file-system", str(path))
            result = run_command(command, check=False, log_output=False)
            if result.returncode == 0:
                report.deleted.append(str(path))
            else:
                log.warning(f"Could not fully delete {path}: {(result.stderr or '').strip()}")
                report.delete_failures.append(str(path))

        for source, destination in copies:
            destination.mkdir(parents=True, exist_ok=True)
            command = toolchain.command("cp", "-a", str(source), str(destination) + "/")
            result = run_command(command, check=False, log_output=False)
            if result.returncode == 0:
                report.copied.append(str(source))
                log.info(f"Copied {source} to {destination}")
            else:
                log.error(f"Failed to copy {source}: {(result.stderr or '').strip()}")
                report.copy_failures.append(str(source))

        log.info(
            f"Root swap finished: {len(report.deleted)} deleted "
            f"({len(report.delete_failures)} failed), {len(report.copied)} copied "
            f"({len(report.copy_failures)} failed)"
        )
        return report
