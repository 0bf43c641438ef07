"""
Pytest configuration and shared fixtures for distro2gentoo tests.

This module provides host snapshots (lsblk trees, findmnt mount lists,
``ip -j`` route and address data) and subprocess mocks used across all
test modules.
"""

import subprocess
from typing import Any, Dict, List
from unittest.mock import Mock

import pytest

from distro2gentoo.config import settings
from distro2gentoo.domain import MountEntry
from distro2gentoo.storage.staging import StagedRoot


ROOT_LUKS_UUID = "0f1e2d3c-4b5a-6978-8796-a5b4c3d2e1f0"
DATA_LUKS_UUID = "11111111-2222-3333-4444-555555555555"
ROOT_FS_UUID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"
EFI_PARTUUID = "6d2c1a4e-8f3b-4c5d-9e7f-0a1b2c3d4e5f"


def mount(source: str, target: str, fstype: str, *options: str) -> MountEntry:
    """Shorthand for a live mount as findmnt reports it."""
    return MountEntry(source=source, target=target, fstype=fstype, options=tuple(options))


@pytest.fixture
def make_mount():
    """
    Fixture providing a factory for live MountEntry values.

    Returns:
        Callable ``(source, target, fstype, *options) -> MountEntry``
    """
    return mount


@pytest.fixture
def host_uuids() -> Dict[str, str]:
    """
    Fixture providing the identifiers used by the block device fixtures.

    Returns:
        Dict with root_luks, data_luks, root_fs and efi_partuuid.
    """
    return {
        "root_luks": ROOT_LUKS_UUID,
        "data_luks": DATA_LUKS_UUID,
        "root_fs": ROOT_FS_UUID,
        "efi_partuuid": EFI_PARTUUID,
    }


# ==============================================================================
# Block Device Fixtures
# ==============================================================================


@pytest.fixture
def plain_block_devices() -> List[Dict[str, Any]]:
    """
    Fixture providing an lsblk tree with an EFI partition and a plain root.

    Returns:
        List shaped like ``lsblk -J -p`` blockdevices.
    """
    return [
        {
            "name": "/dev/sda",
            "type": "disk",
            "mountpoint": None,
            "children": [
                {
                    "name": "/dev/sda1",
                    "type": "part",
                    "mountpoint": "/boot/efi",
                    "fstype": "vfat",
                    "uuid": "ABCD-1234",
                    "partuuid": EFI_PARTUUID,
                    "label": "EFI",
                },
                {
                    "name": "/dev/sda2",
                    "type": "part",
                    "mountpoint": "/",
                    "fstype": "ext4",
                    "uuid": ROOT_FS_UUID,
                    "partuuid": "7e3d2b5f-9a4c-4d6e-8f1a-2b3c4d5e6f70",
                },
            ],
        }
    ]


@pytest.fixture
def plain_mounts() -> List[MountEntry]:
    """Fixture providing the live mounts matching plain_block_devices."""
    return [
        mount("/dev/sda2", "/", "ext4", "rw", "relatime"),
        mount("proc", "/proc", "proc", "rw", "nosuid"),
        mount("/dev/sda1", "/boot/efi", "vfat", "rw", "fmask=0077"),
    ]


def _luks_tree(mountpoint: str) -> List[Dict[str, Any]]:
    return [
        {
            "name": "/dev/vda",
            "type": "disk",
            "mountpoint": None,
            "children": [
                {
                    "name": "/dev/vda1",
                    "type": "part",
                    "mountpoint": "/boot",
                    "fstype": "ext4",
                    "uuid": "bbbbbbbb-0000-1111-2222-333333333333",
                },
                {
                    "name": "/dev/vda2",
                    "type": "part",
                    "mountpoint": "/" if mountpoint != "/" else None,
                    "fstype": "ext4" if mountpoint != "/" else "crypto_LUKS",
                    "uuid": ROOT_FS_UUID if mountpoint != "/" else ROOT_LUKS_UUID,
                },
                {
                    "name": "/dev/vda3",
                    "type": "part",
                    "mountpoint": None,
                    "fstype": "crypto_LUKS",
                    "uuid": DATA_LUKS_UUID,
                    "children": [
                        {
                            "name": "/dev/mapper/cryptdata",
                            "type": "crypt",
                            "mountpoint": "/mnt/data",
                            "fstype": "ext4",
                            "uuid": "cccccccc-0000-1111-2222-333333333333",
                        }
                    ],
                }
                if mountpoint != "/"
                else {
                    "name": "/dev/vda3",
                    "type": "part",
                    "mountpoint": None,
                    "fstype": "swap",
                },
            ],
        }
    ]


@pytest.fixture
def luks_root_block_devices() -> List[Dict[str, Any]]:
    """
    Fixture providing a LUKS container on a plain partition mounted at ``/``.

    Returns:
        lsblk tree where /dev/vda2 holds the mapping /dev/mapper/cryptroot.
    """
    devices = _luks_tree("/")
    devices[0]["children"][1]["children"] = [
        {
            "name": "/dev/mapper/cryptroot",
            "type": "crypt",
            "mountpoint": "/",
            "fstype": "ext4",
            "uuid": ROOT_FS_UUID,
        }
    ]
    return devices


@pytest.fixture
def luks_data_block_devices() -> List[Dict[str, Any]]:
    """Fixture providing the same LUKS stack, mounted only at ``/mnt/data``."""
    return _luks_tree("/mnt/data")


@pytest.fixture
def lvm_on_luks_block_devices() -> List[Dict[str, Any]]:
    """
    Fixture providing LVM on LUKS: root and swap logical volumes.

    Returns:
        lsblk tree /dev/nvme0n1p3 -> luks-<uuid> -> vg--sys-root, vg--sys-swap.
    """
    return [
        {
            "name": "/dev/nvme0n1",
            "type": "disk",
            "mountpoint": None,
            "children": [
                {
                    "name": "/dev/nvme0n1p1",
                    "type": "part",
                    "mountpoint": "/boot/efi",
                    "fstype": "vfat",
                    "uuid": "ABCD-1234",
                    "partuuid": EFI_PARTUUID,
                },
                {
                    "name": "/dev/nvme0n1p3",
                    "type": "part",
                    "mountpoint": None,
                    "fstype": "crypto_LUKS",
                    "uuid": ROOT_LUKS_UUID,
                    "children": [
                        {
                            "name": f"/dev/mapper/luks-{ROOT_LUKS_UUID}",
                            "type": "crypt",
                            "mountpoint": None,
                            "fstype": "LVM2_member",
                            "children": [
                                {
                                    "name": "/dev/mapper/vg--sys-root",
                                    "type": "lvm",
                                    "mountpoint": "/",
                                    "fstype": "ext4",
                                    "uuid": ROOT_FS_UUID,
                                },
                                {
                                    "name": "/dev/mapper/vg--sys-swap",
                                    "type": "lvm",
                                    "mountpoint": "[SWAP]",
                                    "fstype": "swap",
                                    "uuid": "dddddddd-0000-1111-2222-333333333333",
                                },
                            ],
                        }
                    ],
                },
            ],
        }
    ]


@pytest.fixture
def btrfs_mounts() -> List[MountEntry]:
    """Fixture providing a btrfs root in subvolume ``@`` with ``@home`` on /home."""
    return [
        mount("/dev/sda2[/@]", "/", "btrfs", "rw", "noatime", "subvolid=256", "subvol=/@"),
        mount("/dev/sda2[/@home]", "/home", "btrfs", "rw", "noatime", "subvolid=257", "subvol=/@home"),
        mount("/dev/sda1", "/boot/efi", "vfat", "rw"),
    ]


@pytest.fixture
def btrfs_block_devices() -> List[Dict[str, Any]]:
    """Fixture providing the lsblk tree matching btrfs_mounts."""
    return [
        {
            "name": "/dev/sda",
            "type": "disk",
            "mountpoint": None,
            "children": [
                {
                    "name": "/dev/sda1",
                    "type": "part",
                    "mountpoint": "/boot/efi",
                    "fstype": "vfat",
                    "uuid": "ABCD-1234",
                },
                {
                    "name": "/dev/sda2",
                    "type": "part",
                    "mountpoints": ["/home", "/"],
                    "fstype": "btrfs",
                    "uuid": ROOT_FS_UUID,
                },
            ],
        }
    ]


# ==============================================================================
# Network Fixtures
# ==============================================================================


@pytest.fixture
def static_eth0_host() -> Dict[str, List[Dict[str, Any]]]:
    """
    Fixture providing ``ip -j`` output for a host with a static eth0.

    Returns:
        Dict with ipv4_routes, ipv6_routes and links. IPv4 default route via
        10.0.0.1 on eth0 (10.0.0.5/24); IPv6 has only a link-local route.
    """
    return {
        "ipv4_routes": [
            {"dst": "default", "gateway": "10.0.0.1", "dev": "eth0", "protocol": "static", "flags": []},
            {
                "dst": "10.0.0.0/24",
                "dev": "eth0",
                "protocol": "kernel",
                "scope": "link",
                "prefsrc": "10.0.0.5",
                "flags": [],
            },
        ],
        "ipv6_routes": [
            {"dst": "fe80::/64", "dev": "eth0", "protocol": "kernel", "metric": 256, "flags": []},
        ],
        "links": [
            {
                "ifindex": 1,
                "ifname": "lo",
                "addr_info": [
                    {"family": "inet", "local": "127.0.0.1", "prefixlen": 8, "scope": "host"},
                ],
            },
            {
                "ifindex": 2,
                "ifname": "eth0",
                "addr_info": [
                    {"family": "inet", "local": "10.0.0.5", "prefixlen": 24, "scope": "global"},
                    {"family": "inet6", "local": "fe80::5054:ff:fe12:3456", "prefixlen": 64, "scope": "link"},
                ],
            },
        ],
    }


@pytest.fixture
def dhcp_wlan0_host() -> Dict[str, List[Dict[str, Any]]]:
    """
    Fixture providing ``ip -j`` output for a laptop on wlan0.

    Returns:
        Dict with ipv4_routes (DHCP default route), ipv6_routes (RA default
        route) and links (dynamic addresses on wlan0, docker0 bridge).
    """
    return {
        "ipv4_routes": [
            {
                "dst": "default",
                "gateway": "192.168.1.1",
                "dev": "wlan0",
                "protocol": "dhcp",
                "metric": 600,
                "flags": [],
            },
            {"dst": "172.17.0.0/16", "dev": "docker0", "protocol": "kernel", "scope": "link", "flags": []},
            {
                "dst": "192.168.1.0/24",
                "dev": "wlan0",
                "protocol": "kernel",
                "scope": "link",
                "metric": 600,
                "flags": [],
            },
        ],
        "ipv6_routes": [
            {"dst": "2001:db8:1::/64", "dev": "wlan0", "protocol": "ra", "metric": 600, "flags": []},
            {"dst": "fe80::/64", "dev": "wlan0", "protocol": "kernel", "metric": 1024, "flags": []},
            {
                "dst": "default",
                "gateway": "fe80::1",
                "dev": "wlan0",
                "protocol": "ra",
                "metric": 600,
                "flags": [],
            },
        ],
        "links": [
            {
                "ifindex": 3,
                "ifname": "wlan0",
                "addr_info": [
                    {
                        "family": "inet",
                        "local": "192.168.1.23",
                        "prefixlen": 24,
                        "scope": "global",
                        "dynamic": True,
                    },
                    {
                        "family": "inet6",
                        "local": "2001:db8:1::23",
                        "prefixlen": 64,
                        "scope": "global",
                        "dynamic": True,
                    },
                ],
            },
            {
                "ifindex": 4,
                "ifname": "docker0",
                "addr_info": [
                    {"family": "inet", "local": "172.17.0.1", "prefixlen": 16, "scope": "global"},
                ],
            },
        ],
    }


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_subprocess_success(mocker):
    """
    Fixture that mocks subprocess.run to always succeed.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch(
        "subprocess.run",
        return_value=Mock(returncode=0, stdout="", stderr=""),
    )


@pytest.fixture
def mock_subprocess_failure(mocker):
    """
    Fixture that mocks subprocess.run to always fail.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch(
        "subprocess.run",
        return_value=Mock(returncode=1, stdout="", stderr="Command failed"),
    )


@pytest.fixture
def capture_subprocess_calls(mocker):
    """
    Fixture that captures all subprocess calls for verification.

    Returns:
        List that will be populated with argument lists
    """
    calls = []

    def side_effect(cmd, *args, **kwargs):
        calls.append(list(cmd))
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    mocker.patch("subprocess.run", side_effect=side_effect)
    return calls


# ==============================================================================
# Staging and Settings Fixtures
# ==============================================================================


@pytest.fixture
def staged_root(tmp_path) -> StagedRoot:
    """
    Fixture providing an existing, empty staged root under tmp_path.

    Returns:
        StagedRoot for tmp_path/root.d2g.amd64
    """
    root = StagedRoot(tmp_path / "root.d2g.amd64")
    root.path.mkdir()
    return root


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point the settings store at a temporary file and reset it to defaults."""
    settings_file = tmp_path / "settings" / "settings.json"
    monkeypatch.setattr("distro2gentoo.config.settings.SETTINGS_PATH", settings_file)
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield settings_file
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
