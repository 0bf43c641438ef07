"""Domain model for in-place migrations.

Type-safe records for what is discovered on the host (mounts, storage
layers, network interfaces) and what is produced for the target (kernel
options, network units), replacing raw lsblk/findmnt/ip dictionaries past
the parsing boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import ClassVar, Mapping, Optional, Union


# Mount points whose backing storage must be reachable from the initramfs.
SYSTEM_MOUNTPOINTS = frozenset({"/", "/usr", "/lib", "/var", "[SWAP]"})


def is_system_mountpoint(mountpoint: str | None) -> bool:
    return mountpoint in SYSTEM_MOUNTPOINTS


# ==============================================================================
# Mounts
# ==============================================================================


@dataclass(frozen=True)
class MountEntry:
    """One active or configured filesystem mount.

    Options keep their original order: ``subvol=`` and friends are
    order-sensitive for some filesystems.
    """

    source: str  # /dev/sda2, UUID=..., or /dev/sda2[/@home] for btrfs
    target: str  # mount point, or "none"/"swap" for swap entries
    fstype: str
    options: tuple[str, ...] = ()
    dump: int = 0
    passno: int = 0

    @property
    def option_string(self) -> str:
        return ",".join(self.options) if self.options else "defaults"

    def option(self, key: str) -> str | None:
        """Value of a ``key=value`` mount option, or None."""
        prefix = f"{key}="
        for option in self.options:
            if option.startswith(prefix):
                return option[len(prefix):]
        return None

    def with_source(self, source: str) -> MountEntry:
        return replace(self, source=source)

    def to_fstab_line(self) -> str:
        return (
            f"{self.source}\t{self.target}\t{self.fstype}\t"
            f"{self.option_string}\t{self.dump} {self.passno}"
        )


# ==============================================================================
# Storage layers
# ==============================================================================


class LayerKind(Enum):
    """Kind of storage layer backing a mount point."""

    PLAIN = "plain"
    LVM = "lvm"
    LUKS = "luks"
    BTRFS = "btrfs"


@dataclass(frozen=True)
class PlainLayer:
    device: str
    mount_point: str | None = None

    kind: ClassVar[LayerKind] = LayerKind.PLAIN


@dataclass(frozen=True)
class LvmLayer:
    """A logical volume; names are None when the mapper name cannot be split."""

    logical_volume: str | None
    volume_group: str | None
    mount_point: str
    device: str = ""

    kind: ClassVar[LayerKind] = LayerKind.LVM

    @property
    def lv_spec(self) -> str | None:
        """``<vg>/<lv>`` as dracut expects it in ``rd.lvm.lv=``."""
        if not self.logical_volume or not self.volume_group:
            return None
        return f"{self.volume_group}/{self.logical_volume}"


@dataclass(frozen=True)
class LuksLayer:
    """A LUKS mapping; parent_device is the raw encrypted block device."""

    mapper_name: str
    mount_point: str
    parent_device: str | None

    kind: ClassVar[LayerKind] = LayerKind.LUKS


@dataclass(frozen=True)
class BtrfsLayer:
    mount_point: str
    subvolume: str | None
    options: tuple[str, ...] = ()
    is_root_subvolume: bool = False

    kind: ClassVar[LayerKind] = LayerKind.BTRFS


StorageLayer = Union[PlainLayer, LvmLayer, LuksLayer, BtrfsLayer]


@dataclass(frozen=True)
class StorageTopology:
    """Everything the analyzer learned about the host's storage stack.

    A mount point may appear in several layers (LUKS under LVM under
    btrfs); each layer is recorded on its own.
    """

    mounts: tuple[MountEntry, ...] = ()
    layers: tuple[StorageLayer, ...] = ()
    uuids: Mapping[str, str] = field(default_factory=dict)
    partuuids: Mapping[str, str] = field(default_factory=dict)
    labels: Mapping[str, str] = field(default_factory=dict)
    fstypes: Mapping[str, str] = field(default_factory=dict)

    def layers_of(self, kind: LayerKind) -> list[StorageLayer]:
        return [layer for layer in self.layers if layer.kind is kind]

    def system_layers(self, kind: LayerKind) -> list[StorageLayer]:
        return [
            layer
            for layer in self.layers_of(kind)
            if is_system_mountpoint(layer.mount_point)
        ]

    @property
    def lvm_enabled(self) -> bool:
        return bool(self.system_layers(LayerKind.LVM))

    @property
    def luks_enabled(self) -> bool:
        return bool(self.system_layers(LayerKind.LUKS))

    @property
    def btrfs_enabled(self) -> bool:
        return bool(self.system_layers(LayerKind.BTRFS))

    @property
    def root_subvolume(self) -> BtrfsLayer | None:
        for layer in self.layers_of(LayerKind.BTRFS):
            if layer.is_root_subvolume:
                return layer
        return None

    def mount_for(self, target: str) -> MountEntry | None:
        """Last mount stacked on ``target``, as the kernel resolves it."""
        found = None
        for mount in self.mounts:
            if mount.target == target:
                found = mount
        return found

    def uuid_of(self, device: str | None) -> str | None:
        if not device:
            return None
        return self.uuids.get(device)

    def device_for_uuid(self, uuid: str) -> str | None:
        lowered = uuid.lower()
        for device, value in self.uuids.items():
            if value.lower() == lowered:
                return device
        return None


# ==============================================================================
# Kernel command line
# ==============================================================================


@dataclass(frozen=True)
class BootOption:
    """A kernel command-line token: ``key=value`` or a bare flag."""

    key: str
    value: Optional[str] = None

    @classmethod
    def parse(cls, token: str) -> BootOption:
        key, sep, value = token.partition("=")
        return cls(key=key, value=value if sep else None)

    def __str__(self) -> str:
        if self.value is None:
            return self.key
        return f"{self.key}={self.value}"


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Diagnostic:
    """A non-fatal finding surfaced to the operator at the end of the run."""

    severity: Severity
    code: str
    message: str
    token: str | None = None

    def __str__(self) -> str:
        if self.token:
            return f"[{self.code}] {self.message} ({self.token})"
        return f"[{self.code}] {self.message}"


@dataclass(frozen=True)
class TranslationResult:
    """Canonical command line plus everything the operator should review."""

    options: tuple[str, ...]
    unparsed: tuple[str, ...] = ()
    dropped: tuple[str, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()

    @property
    def cmdline(self) -> str:
        return " ".join(self.options)

    @property
    def warnings(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.severity is not Severity.INFO]

    def values_of(self, key: str) -> list[str]:
        prefix = f"{key}="
        return [opt[len(prefix):] for opt in self.options if opt.startswith(prefix)]


# ==============================================================================
# Network
# ==============================================================================


class IpProtocol(Enum):
    """How an address family is configured on an interface.

    RA is neither static (no addresses to write) nor DHCP (no client to
    start): it only keeps router advertisements accepted.
    """

    DHCP = "dhcp"
    STATIC = "static"
    RA = "ra"


@dataclass(frozen=True)
class Route:
    destination: str
    gateway: str | None = None

    @property
    def is_default(self) -> bool:
        return self.destination == "default"


@dataclass
class NetworkInterface:
    """Per-interface network configuration for both address families."""

    name: str
    host_name: str | None = None  # name on the host before alias resolution
    ipv4: IpProtocol | None = None
    ipv4_addresses: list[str] = field(default_factory=list)
    ipv4_routes: list[Route] = field(default_factory=list)
    ipv6: IpProtocol | None = None
    ipv6_addresses: list[str] = field(default_factory=list)
    ipv6_routes: list[Route] = field(default_factory=list)
    primary_ipv4: bool = False
    primary_ipv6: bool = False

    @property
    def accept_ra(self) -> bool:
        return self.ipv6 is IpProtocol.RA

    @property
    def dhcp_mode(self) -> str:
        """systemd-networkd ``DHCP=`` value."""
        v4 = self.ipv4 is IpProtocol.DHCP
        v6 = self.ipv6 is IpProtocol.DHCP
        if v4 and v6:
            return "yes"
        if v4:
            return "ipv4"
        if v6:
            return "ipv6"
        return "no"


@dataclass(frozen=True)
class NetworkUnit:
    """Both dialects rendered for one interface; only one gets installed."""

    interface: str
    networkd: str
    netifrc: str
    sysctl: str = ""


# ==============================================================================
# Boot
# ==============================================================================


@dataclass(frozen=True)
class EfiPartition:
    device: str | None
    mount_point: str
    partuuid: str | None = None
    host_mounted: bool = True
    matched_by: str = "firmware"  # "firmware", "efi" or "boot"
