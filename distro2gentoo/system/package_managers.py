"""Host package managers, used to install the tools the migration needs.

One class per family; ``detect_package_manager()`` probes their marker
commands once, in a fixed order, and the rest of the code only talks to
the ``PackageManager`` interface.
"""

from __future__ import annotations

import os
from typing import ClassVar, Iterable, Optional

from distro2gentoo.logging import LoggerFactory
from distro2gentoo.storage.commands import command_exists, missing_commands, require_commands, run_command


log = LoggerFactory.for_system()

# Logical tool names checked on the host before anything else runs.
REQUIRED_TOOLS = ("gpg", "findmnt", "lsblk", "ip", "openssl", "tar", "xz")


class PackageManager:
    """Base class for a host package manager family."""

    name: ClassVar[str] = ""
    marker: ClassVar[str] = ""
    packages: ClassVar[dict[str, str]] = {}

    def package_for(self, tool: str) -> str:
        return self.packages.get(tool, tool)

    def refresh_command(self) -> Optional[list[str]]:
        return None

    def install_command(self, packages: list[str]) -> list[str]:
        raise NotImplementedError

    def environment(self) -> Optional[dict[str, str]]:
        return None

    def install(self, tools: Iterable[str]) -> list[str]:
        """Install the packages providing ``tools``; returns the package names."""
        packages: list[str] = []
        for tool in tools:
            package = self.package_for(tool)
            if package not in packages:
                packages.append(package)
        if not packages:
            return []
        log.info(f"Installing {', '.join(packages)} with {self.name}")
        refresh = self.refresh_command()
        if refresh:
            run_command(refresh, env=self.environment(), log_output=False)
        run_command(self.install_command(packages), env=self.environment(), log_output=False)
        return packages

    def ensure_tools(self, tools: Iterable[str]) -> list[str]:
        """Install only the tools that are missing, then check they all exist.

        Raises:
            MissingToolError: If a tool is still missing afterwards
            CommandError: If the package manager fails
        """
        tools = list(tools)
        missing = missing_commands(tools)
        installed = self.install(missing) if missing else []
        require_commands(tools)
        return installed


class Apt(PackageManager):
    name = "apt"
    marker = "apt-get"
    packages = {
        "gpg": "gpg",
        "findmnt": "util-linux",
        "lsblk": "util-linux",
        "ip": "iproute2",
        "xz": "xz-utils",
        "btrfs": "btrfs-progs",
    }

    def refresh_command(self):
        return ["apt-get", "update"]

    def install_command(self, packages):
        return ["apt-get", "install", "-y", *packages]

    def environment(self):
        return {**os.environ, "DEBIAN_FRONTEND": "noninteractive"}


class Dnf(PackageManager):
    name = "dnf"
    marker = "dnf"
    packages = {
        "gpg": "gnupg2",
        "findmnt": "util-linux",
        "lsblk": "util-linux",
        "ip": "iproute",
        "btrfs": "btrfs-progs",
    }

    def install_command(self, packages):
        return ["dnf", "install", "-y", *packages]


class Yum(Dnf):
    name = "yum"
    marker = "yum"

    def install_command(self, packages):
        return ["yum", "install", "-y", *packages]


class Pacman(PackageManager):
    name = "pacman"
    marker = "pacman"
    packages = {
        "gpg": "gnupg",
        "findmnt": "util-linux",
        "lsblk": "util-linux",
        "ip": "iproute2",
        "btrfs": "btrfs-progs",
    }

    def install_command(self, packages):
        return ["pacman", "-Sy", "--noconfirm", "--needed", *packages]


class Zypper(PackageManager):
    name = "zypper"
    marker = "zypper"
    packages = {
        "gpg": "gpg2",
        "findmnt": "util-linux",
        "lsblk": "util-linux",
        "ip": "iproute2",
        "btrfs": "btrfsprogs",
    }

    def install_command(self, packages):
        return ["zypper", "--non-interactive", "install", *packages]


class Urpmi(PackageManager):
    name = "urpmi"
    marker = "urpmi"
    packages = {
        "gpg": "gnupg2",
        "findmnt": "util-linux",
        "lsblk": "util-linux",
        "ip": "iproute2",
        "btrfs": "btrfs-progs",
    }

    def install_command(self, packages):
        return ["urpmi", "--auto", *packages]


class Opkg(PackageManager):
    name = "opkg"
    marker = "opkg"
    packages = {
        "gpg": "gnupg",
        "ip": "ip-full",
        "openssl": "openssl-util",
        "btrfs": "btrfs-progs",
    }

    def refresh_command(self):
        return ["opkg", "update"]

    def install_command(self, packages):
        return ["opkg", "install", *packages]


class Xbps(PackageManager):
    name = "xbps"
    marker = "xbps-install"
    packages = {
        "gpg": "gnupg",
        "findmnt": "util-linux",
        "lsblk": "util-linux",
        "ip": "iproute2",
        "btrfs": "btrfs-progs",
    }

    def install_command(self, packages):
        return ["xbps-install", "-Sy", *packages]


PACKAGE_MANAGERS: tuple[type[PackageManager], ...] = (
    Apt,
    Dnf,
    Yum,
    Pacman,
    Zypper,
    Urpmi,
    Opkg,
    Xbps,
)


def detect_package_manager() -> Optional[PackageManager]:
    for family in PACKAGE_MANAGERS:
        if command_exists(family.marker):
            log.debug(f"Host package manager: {family.name}")
            return family()
    log.warning("No supported package manager found on the host")
    return None
