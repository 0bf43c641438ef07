"""Mount helpers for the staged root with argument-list subprocess calls.

Functions:
    - is_mountpoint_active(): Check /proc/mounts for a mount point
    - mount_device(): Mount a block device or pseudo filesystem
    - bind_mount(): Bind (or recursively bind) a directory
    - make_rslave(): Stop mount events propagating back to the host
    - unmount_recursive(): Force-unmount a tree, best effort
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Sequence

from distro2gentoo.logging import LoggerFactory

from .commands import run_command
from .exceptions import CommandError, MountError


log = LoggerFactory.for_storage()

_INVALID_PATH_CHARS = (";", "&", "|", "$", "`", "\n", "\r")


def _validate_path(path: str | os.PathLike) -> str:
    path = str(path)
    if not path:
        raise ValueError("Empty mount path")
    if any(char in path for char in _INVALID_PATH_CHARS):
        raise ValueError(f"Mount path contains invalid characters: {path}")
    return path


def is_mountpoint_active(mountpoint: str | os.PathLike) -> bool:
    mountpoint = os.path.normpath(str(mountpoint))
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and parts[1] == mountpoint:
                    return True
    except FileNotFoundError:
        return os.path.ismount(mountpoint)
    return False


def mount_device(
    source: str,
    target: str | os.PathLike,
    fstype: str | None = None,
    options: Sequence[str] = (),
) -> None:
    """Mount ``source`` on ``target``, creating the directory first.

    Raises:
        ValueError: If a path contains shell metacharacters
        MountError: If mount fails
    """
    target = _validate_path(target)
    Path(target).mkdir(parents=True, exist_ok=True)
    command = ["mount"]
    if fstype:
        command += ["-t", fstype]
    if options:
        command += ["-o", ",".join(options)]
    command += [_validate_path(source), target]
    try:
        run_command(command)
    except CommandError as e:
        raise MountError(f"Failed to mount {source} on {target}: {e.stderr}") from e
    log.debug(f"Mounted {source} on {target}")


def bind_mount(
    source: str | os.PathLike, target: str | os.PathLike, recursive: bool = False
) -> None:
    source = _validate_path(source)
    target = _validate_path(target)
    Path(target).mkdir(parents=True, exist_ok=True)
    flag = "--rbind" if recursive else "--bind"
    try:
        run_command(["mount", flag, source, target])
    except CommandError as e:
        raise MountError(f"Failed to bind {source} on {target}: {e.stderr}") from e
    log.debug(f"Bound {source} on {target}")


def make_rslave(target: str | os.PathLike) -> None:
    target = _validate_path(target)
    try:
        run_command(["mount", "--make-rslave", target])
    except CommandError as e:
        raise MountError(f"Failed to make {target} rslave: {e.stderr}") from e


def unmount_recursive(target: str | os.PathLike) -> bool:
    """Force-unmount ``target`` and everything below it.

    Returns:
        True when nothing is left mounted there
    """
    target = _validate_path(target)
    if not is_mountpoint_active(target):
        return True
    try:
        run_command(["umount", "-R", "-f", target])
    except CommandError as error:
        log.warning(f"Failed to unmount {target}: {error.stderr}")
        try:
            run_command(["umount", "-R", "-l", target])
            log.info(f"Lazy unmounted {target}")
        except CommandError as lazy_error:
            log.warning(f"Lazy unmount of {target} failed: {lazy_error.stderr}")
            return False
    return not is_mountpoint_active(target)
