"""Filesystem table parsing and generation for the target system."""

from __future__ import annotations

from typing import Iterable

from distro2gentoo.domain import MountEntry, StorageTopology
from distro2gentoo.logging import LoggerFactory

from .topology import btrfs_device


log = LoggerFactory.for_storage()

# Live mounts that must survive into the target's fstab.
PERSISTED_MOUNTPOINTS = ("/", "/boot", "/boot/efi", "/efi", "/usr", "/var", "/home")

# Options that describe a live mount rather than how to mount it.
_VOLATILE_OPTION_PREFIXES = ("subvolid=",)

FSTAB_HEADER = (
    "# /etc/fstab: static file system information.\n"
    "# Carried over from the previous installation by distro2gentoo.\n"
    "#\n"
    "# <fs>\t<mountpoint>\t<type>\t<opts>\t<dump> <pass>\n"
)


def parse_fstab(text: str) -> list[MountEntry]:
    entries = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        fields = line.split()
        if len(fields) < 3:
            log.warning(f"Ignoring malformed fstab line: {line}")
            continue
        options = fields[3] if len(fields) > 3 else "defaults"
        entries.append(
            MountEntry(
                source=fields[0],
                target=fields[1],
                fstype=fields[2],
                options=tuple(opt for opt in options.split(",") if opt),
                dump=int(fields[4]) if len(fields) > 4 and fields[4].isdigit() else 0,
                passno=int(fields[5]) if len(fields) > 5 and fields[5].isdigit() else 0,
            )
        )
    return entries


def render_fstab(entries: Iterable[MountEntry]) -> str:
    lines = [entry.to_fstab_line() for entry in entries]
    return FSTAB_HEADER + "\n" + "\n".join(lines) + "\n"


def _persistent_source(topology: StorageTopology, device: str) -> str:
    uuid = topology.uuid_of(device)
    return f"UUID={uuid}" if uuid else device


def live_entry(topology: StorageTopology, mount: MountEntry) -> MountEntry:
    """Convert a live mount into an fstab entry with a stable source."""
    device = btrfs_device(mount) if mount.fstype == "btrfs" else mount.source
    options = tuple(
        opt for opt in mount.options if not opt.startswith(_VOLATILE_OPTION_PREFIXES)
    )
    return MountEntry(
        source=_persistent_source(topology, device),
        target=mount.target,
        fstype=mount.fstype,
        options=options,
        dump=0,
        passno=1 if mount.target == "/" and mount.fstype != "btrfs" else 0,
    )


def merge_live_mounts(
    configured: Iterable[MountEntry], topology: StorageTopology
) -> list[MountEntry]:
    """Configured entries plus live system mounts the host's fstab is missing."""
    entries = list(configured)
    known_targets = {entry.target for entry in entries}
    for target in PERSISTED_MOUNTPOINTS:
        if target in known_targets:
            continue
        mount = topology.mount_for(target)
        if mount is None or not mount.source.startswith("/dev/"):
            continue
        entry = live_entry(topology, mount)
        log.info(f"Adding live mount {target} missing from fstab: {entry.source}")
        entries.append(entry)
        known_targets.add(target)

    if not any(entry.fstype == "swap" for entry in entries):
        for layer in topology.layers:
            if layer.mount_point != "[SWAP]":
                continue
            device = getattr(layer, "device", None)
            if not device:
                continue
            entries.append(
                MountEntry(
                    source=_persistent_source(topology, device),
                    target="none",
                    fstype="swap",
                    options=("sw",),
                )
            )
            log.info(f"Adding active swap device {device} to fstab")
            break
    return entries
