"""Bootloader Installer for BIOS and UEFI hosts.

The UEFI path needs the EFI system partition. It is located from the
firmware first (``efibootmgr -v``: the partition GUID of ``BootCurrent``)
and only then by looking at FAT mounts:

    1. a mount point whose last component is ``efi``
    2. a mount point or label containing ``efi``
    3. a mount point or label containing ``boot``

FAT mounts matching none of these leave the partition unresolved, even
when there is only one of them (a USB stick on /media/usb is no ESP).
This is reported as an error diagnostic instead of picking one.

Either path failing only moves on to the next one. Only when no path
installed a loader is the migration aborted, before the root swap.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

from distro2gentoo.domain import Diagnostic, EfiPartition, Severity, StorageTopology
from distro2gentoo.logging import LoggerFactory
from distro2gentoo.storage.commands import command_exists, run_command
from distro2gentoo.storage.exceptions import BootloaderInstallError, CommandError, MountError
from distro2gentoo.storage.staging import StagedRoot
from distro2gentoo.storage.topology import mount_source_device, walk_devices


log = LoggerFactory.for_bootloader()

FIRMWARE_EFI_DIR = Path("/sys/firmware/efi")
EFI_FSTYPES = ("vfat", "fat", "msdos")
DEFAULT_EFI_MOUNTPOINT = "/boot/efi"

GRUB_EFI_TARGETS = {"amd64": "x86_64-efi", "arm64": "arm64-efi"}
GRUB_BIOS_TARGET = "i386-pc"

_BOOT_CURRENT_RE = re.compile(r"^BootCurrent:\s*(?P<entry>[0-9A-Fa-f]{4})", re.MULTILINE)
_PARTUUID_RE = re.compile(r"HD\(\d+,GPT,(?P<partuuid>[0-9A-Fa-f-]{36})", re.IGNORECASE)


def is_efi_host(firmware_dir: str | os.PathLike = FIRMWARE_EFI_DIR) -> bool:
    return Path(firmware_dir).is_dir()


def parse_efibootmgr(text: str) -> Optional[str]:
    """Partition GUID of the entry the firmware booted, if it names one."""
    current = _BOOT_CURRENT_RE.search(text)
    if not current:
        return None
    entry = current.group("entry").upper()
    for line in text.splitlines():
        if not line.upper().startswith(f"BOOT{entry}"):
            continue
        match = _PARTUUID_RE.search(line)
        if match:
            return match.group("partuuid").lower()
    return None


def current_boot_partuuid() -> Optional[str]:
    if not command_exists("efibootmgr"):
        log.warning("efibootmgr not available, cannot ask the firmware for the EFI partition")
        return None
    result = run_command(["efibootmgr", "-v"], check=False, log_output=False)
    if result.returncode != 0:
        log.warning("efibootmgr failed, falling back to FAT mount heuristics")
        return None
    return parse_efibootmgr(result.stdout)


def _device_for_partuuid(topology: StorageTopology, partuuid: str) -> Optional[str]:
    for device, value in topology.partuuids.items():
        if value.lower() == partuuid.lower():
            return device
    return None


def find_efi_partition(
    topology: StorageTopology, partuuid: Optional[str] = None
) -> tuple[Optional[EfiPartition], list[Diagnostic]]:
    """Locate the EFI system partition.

    Returns:
        The partition (None when unresolved) and diagnostics for the operator
    """
    diagnostics: list[Diagnostic] = []
    if partuuid:
        device = _device_for_partuuid(topology, partuuid)
        if device:
            mount = next(
                (m for m in topology.mounts if m.source == device and m.target.startswith("/")),
                None,
            )
            if mount is not None:
                return EfiPartition(device, mount.target, partuuid, True, "firmware"), diagnostics
            return (
                EfiPartition(device, DEFAULT_EFI_MOUNTPOINT, partuuid, False, "firmware"),
                diagnostics,
            )
        diagnostics.append(
            Diagnostic(
                Severity.WARNING,
                "efi-partuuid-unknown",
                f"Firmware boot entry points at partition {partuuid}, which is not on this host",
            )
        )

    candidates = [
        m for m in topology.mounts if m.fstype in EFI_FSTYPES and m.target.startswith("/")
    ]

    def label(mount) -> str:
        return (topology.labels.get(mount.source) or "").lower()

    rules = (
        ("efi", lambda m: os.path.basename(m.target).lower() == "efi"),
        ("efi", lambda m: "efi" in m.target.lower() or "efi" in label(m)),
        ("boot", lambda m: "boot" in m.target.lower() or "boot" in label(m)),
    )
    for matched_by, rule in rules:
        for mount in candidates:
            if rule(mount):
                return (
                    EfiPartition(
                        mount.source,
                        mount.target,
                        topology.partuuids.get(mount.source),
                        True,
                        matched_by,
                    ),
                    diagnostics,
                )

    names = ", ".join(m.target for m in candidates) or "none mounted"
    diagnostics.append(
        Diagnostic(
            Severity.ERROR,
            "efi-unresolved",
            f"Cannot tell which FAT filesystem is the EFI system partition ({names}); "
            "mount it on /boot/efi and run again",
        )
    )
    return None, diagnostics


def boot_disk(topology: StorageTopology, block_devices: Iterable[dict[str, Any]]) -> Optional[str]:
    """Whole disk holding /boot, or / when /boot is not its own mount."""
    device = mount_source_device(topology, "/boot") or mount_source_device(topology, "/")
    if device is None:
        return None
    for disk in block_devices:
        for node, _parent in walk_devices([disk]):
            if node.get("name") == device:
                return disk.get("name")
    return None


@dataclass
class BootloaderReport:
    installed: list[str] = field(default_factory=list)
    attempts: list[str] = field(default_factory=list)
    efi_partition: Optional[EfiPartition] = None
    diagnostics: list[Diagnostic] = field(default_factory=list)


class BootloaderInstaller:
    """Install GRUB into the staged root for the host's firmware."""

    def __init__(
        self,
        staged_root: StagedRoot,
        topology: StorageTopology,
        block_devices: Iterable[dict[str, Any]],
        efi: bool,
        arch: str = "amd64",
        bootloader_id: str = "Gentoo",
        efi_partuuid: Optional[str] = None,
    ):
        self.staged_root = staged_root
        self.topology = topology
        self.block_devices = list(block_devices)
        self.efi = efi
        self.arch = arch
        self.bootloader_id = bootloader_id
        self.efi_partuuid = efi_partuuid
        self.report = BootloaderReport()

    def install(self) -> BootloaderReport:
        """Install every applicable loader.

        Raises:
            BootloaderInstallError: If no loader could be installed
        """
        if self.efi:
            self._attempt("uefi", self.install_uefi)
        if not self.report.installed and self.arch in ("amd64", "x86"):
            self._attempt("bios", self.install_bios)
        if not self.report.installed:
            raise BootloaderInstallError(self.report.attempts)
        return self.report

    def _attempt(self, name: str, action) -> None:
        try:
            action()
        except (CommandError, MountError) as error:
            log.error(f"{name.upper()} bootloader installation failed: {error}")
            self.report.attempts.append(f"{name}: {error}")
            return
        if name in self.report.installed:
            log.info(f"{name.upper()} bootloader installed")

    def install_bios(self) -> None:
        disk = boot_disk(self.topology, self.block_devices)
        if disk is None:
            self.report.attempts.append("bios: cannot find the disk holding /boot")
            return
        if disk.startswith("/dev/mapper/"):
            self.report.attempts.append(f"bios: {disk} is a device-mapper node, skipped")
            log.warning(f"Not installing a BIOS loader on device-mapper disk {disk}")
            return
        log.info(f"Installing GRUB ({GRUB_BIOS_TARGET}) on {disk}")
        self.staged_root.run(["grub-install", f"--target={GRUB_BIOS_TARGET}", disk])
        self.report.installed.append("bios")

    def install_uefi(self) -> None:
        partuuid = self.efi_partuuid or current_boot_partuuid()
        partition, diagnostics = find_efi_partition(self.topology, partuuid)
        self.report.diagnostics.extend(diagnostics)
        if partition is None:
            self.report.attempts.append("uefi: EFI system partition unresolved")
            return
        self.report.efi_partition = partition
        log.info(
            f"EFI system partition {partition.device} at {partition.mount_point} "
            f"(matched by {partition.matched_by})"
        )
        self._mount_efi(partition)

        target = GRUB_EFI_TARGETS.get(self.arch, "x86_64-efi")
        base = ["grub-install", f"--target={target}", f"--efi-directory={partition.mount_point}"]
        self.staged_root.run(base + [f"--bootloader-id={self.bootloader_id}"])
        # Fallback loader for firmware that lost its boot entry.
        self.staged_root.run(base + ["--removable"])
        self.report.installed.append("uefi")

    def _mount_efi(self, partition: EfiPartition) -> None:
        if self.staged_root.is_mounted(partition.mount_point):
            return
        if partition.host_mounted:
            self.staged_root.bind(partition.mount_point, partition.mount_point)
        else:
            self.staged_root.mount(partition.device, partition.mount_point)
