"""Host storage topology discovery using findmnt and lsblk.

The analyzer turns the live mount table and the block-device tree into
``MountEntry`` and storage-layer records:

    1. findmnt lists every mount, recorded verbatim (source, target, type,
       options in their original order).
    2. lsblk's device tree is walked once. ``crypt`` and ``lvm`` devices
       become LUKS / LVM layers, one per mount point found on the device
       or anywhere below it, so a LUKS volume that only carries
       ``/mnt/data`` never enables LUKS support in the initramfs.
    3. Each LUKS layer keeps the device directly above it in the tree
       (the encrypted partition) so its UUID can be used later.
    4. Every btrfs mount on an absolute path becomes a btrfs layer with
       the subvolume taken from the mount source (``/dev/sda2[/@home]``)
       or from the ``subvol=`` option; the one on ``/`` is the root
       subvolume.

Layers stack (LUKS -> LVM -> btrfs is common); nothing here assumes a
mount point has a single backing layer.

Example:
    >>> from distro2gentoo.storage.topology import discover_topology
    >>> topology = discover_topology()
    >>> topology.luks_enabled, topology.lvm_enabled, topology.btrfs_enabled
    (True, True, False)
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, Iterator, Optional

from distro2gentoo.domain import (
    BtrfsLayer,
    LuksLayer,
    LvmLayer,
    MountEntry,
    PlainLayer,
    StorageLayer,
    StorageTopology,
)
from distro2gentoo.logging import LoggerFactory

from .commands import run_command


log = LoggerFactory.for_storage()

LSBLK_COLUMNS = "NAME,TYPE,MOUNTPOINT,FSTYPE,UUID,PARTUUID,LABEL"
FINDMNT_COLUMNS = "SOURCE,TARGET,FSTYPE,OPTIONS"

_BTRFS_SOURCE_RE = re.compile(r"^(?P<device>[^\[]+)\[(?P<subvol>[^\]]*)\]$")


# ==============================================================================
# Raw data
# ==============================================================================


def parse_findmnt_json(text: str) -> list[MountEntry]:
    data = json.loads(text)
    mounts = []
    for fs in data.get("filesystems", []):
        target = fs.get("target")
        if not target:
            continue
        options = fs.get("options") or ""
        mounts.append(
            MountEntry(
                source=fs.get("source") or "none",
                target=target,
                fstype=fs.get("fstype") or "none",
                options=tuple(opt for opt in options.split(",") if opt),
            )
        )
    return mounts


def get_mount_table() -> list[MountEntry]:
    """Every mount currently active on the host, in mount order."""
    result = run_command(
        ["findmnt", "-J", "-l", "-o", FINDMNT_COLUMNS], log_output=False
    )
    mounts = parse_findmnt_json(result.stdout)
    log.debug(f"findmnt reported {len(mounts)} mounts")
    return mounts


def parse_lsblk_json(text: str) -> list[dict[str, Any]]:
    return json.loads(text).get("blockdevices", [])


def get_block_devices() -> list[dict[str, Any]]:
    """The host's block-device tree as reported by ``lsblk -J -p``."""
    result = run_command(["lsblk", "-J", "-p", "-o", LSBLK_COLUMNS], log_output=False)
    return parse_lsblk_json(result.stdout)


def get_children(device: dict) -> list[dict]:
    return device.get("children", []) or []


def device_mountpoints(device: dict) -> list[str]:
    """Mount points of a single lsblk node (old and new lsblk column styles)."""
    mountpoints = device.get("mountpoints")
    if mountpoints:
        return [mp for mp in mountpoints if mp]
    mountpoint = device.get("mountpoint")
    return [mountpoint] if mountpoint else []


def collect_mountpoints(device: dict) -> list[str]:
    """Mount points of a device and everything stacked on top of it."""
    found = list(device_mountpoints(device))
    for child in get_children(device):
        for mountpoint in collect_mountpoints(child):
            if mountpoint not in found:
                found.append(mountpoint)
    return found


def walk_devices(
    devices: Iterable[dict], parent: Optional[dict] = None
) -> Iterator[tuple[dict, Optional[dict]]]:
    """Yield ``(device, parent)`` for every node in the lsblk tree."""
    for device in devices:
        yield device, parent
        yield from walk_devices(get_children(device), device)


def split_dm_name(name: str) -> tuple[str, str] | None:
    """Split a device-mapper LVM name into ``(vg, lv)``.

    Device mapper doubles every ``-`` inside VG and LV names, so the
    separator is the only single dash: ``vg--data-root`` -> ``("vg-data", "root")``.
    """
    name = name.rsplit("/", 1)[-1]
    parts = re.split(r"(?<!-)-(?!-)", name)
    if len(parts) != 2 or not all(parts):
        return None
    vg, lv = (part.replace("--", "-") for part in parts)
    return vg, lv


def btrfs_subvolume(mount: MountEntry) -> str | None:
    match = _BTRFS_SOURCE_RE.match(mount.source)
    if match:
        return match.group("subvol") or None
    return mount.option("subvol")


def btrfs_device(mount: MountEntry) -> str:
    match = _BTRFS_SOURCE_RE.match(mount.source)
    if match:
        return match.group("device")
    return mount.source


# ==============================================================================
# Analysis
# ==============================================================================


def analyze(
    mounts: Iterable[MountEntry], block_devices: Iterable[dict]
) -> StorageTopology:
    """Build the storage topology from already-collected raw data."""
    mounts = list(mounts)
    layers: list[StorageLayer] = []
    uuids: dict[str, str] = {}
    partuuids: dict[str, str] = {}
    labels: dict[str, str] = {}
    fstypes: dict[str, str] = {}

    for device, parent in walk_devices(block_devices):
        name = device.get("name")
        if not name:
            continue
        if device.get("uuid"):
            uuids[name] = device["uuid"]
        if device.get("partuuid"):
            partuuids[name] = device["partuuid"]
        if device.get("label"):
            labels[name] = device["label"]
        if device.get("fstype"):
            fstypes[name] = device["fstype"]

        dev_type = device.get("type")
        if dev_type == "crypt":
            parent_name = parent.get("name") if parent else None
            if parent_name is None:
                log.warning(f"LUKS device {name} has no parent block device")
            mountpoints = collect_mountpoints(device)
            if not mountpoints:
                log.debug(f"LUKS device {name} backs no mounted filesystem")
            for mountpoint in mountpoints:
                layers.append(
                    LuksLayer(
                        mapper_name=name.rsplit("/", 1)[-1],
                        mount_point=mountpoint,
                        parent_device=parent_name,
                    )
                )
        elif dev_type == "lvm":
            split = split_dm_name(name)
            if split is None:
                log.warning(f"Cannot split LVM device name {name} into VG and LV")
            vg, lv = split if split else (None, None)
            for mountpoint in collect_mountpoints(device):
                layers.append(
                    LvmLayer(
                        logical_volume=lv,
                        volume_group=vg,
                        mount_point=mountpoint,
                        device=name,
                    )
                )
        elif dev_type in ("part", "disk", "loop"):
            for mountpoint in device_mountpoints(device):
                layers.append(PlainLayer(device=name, mount_point=mountpoint))

    for mount in mounts:
        if mount.fstype != "btrfs" or not mount.target.startswith("/"):
            continue
        layers.append(
            BtrfsLayer(
                mount_point=mount.target,
                subvolume=btrfs_subvolume(mount),
                options=mount.options,
                is_root_subvolume=mount.target == "/",
            )
        )

    topology = StorageTopology(
        mounts=tuple(mounts),
        layers=tuple(layers),
        uuids=uuids,
        partuuids=partuuids,
        labels=labels,
        fstypes=fstypes,
    )
    log.info(
        "Storage topology: "
        f"lvm={topology.lvm_enabled} luks={topology.luks_enabled} "
        f"btrfs={topology.btrfs_enabled} ({len(layers)} layers)"
    )
    return topology


def discover_topology() -> StorageTopology:
    return analyze(get_mount_table(), get_block_devices())


def mount_source_device(topology: StorageTopology, target: str) -> str | None:
    """Block device behind a mount point, without any btrfs subvolume suffix."""
    mount = topology.mount_for(target)
    if mount is None:
        return None
    return btrfs_device(mount)
