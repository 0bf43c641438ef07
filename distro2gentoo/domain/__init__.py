"""Domain models for in-place migrations."""

from __future__ import annotations

from .models import (
    SYSTEM_MOUNTPOINTS,
    BootOption,
    BtrfsLayer,
    Diagnostic,
    EfiPartition,
    IpProtocol,
    LayerKind,
    LuksLayer,
    LvmLayer,
    MountEntry,
    NetworkInterface,
    NetworkUnit,
    PlainLayer,
    Route,
    Severity,
    StorageLayer,
    StorageTopology,
    TranslationResult,
    is_system_mountpoint,
)


__all__ = [
    "SYSTEM_MOUNTPOINTS",
    "BootOption",
    "BtrfsLayer",
    "Diagnostic",
    "EfiPartition",
    "IpProtocol",
    "LayerKind",
    "LuksLayer",
    "LvmLayer",
    "MountEntry",
    "NetworkInterface",
    "NetworkUnit",
    "PlainLayer",
    "Route",
    "Severity",
    "StorageLayer",
    "StorageTopology",
    "TranslationResult",
    "is_system_mountpoint",
]
