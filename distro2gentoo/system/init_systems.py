"""Init systems of the target stage: service enablement and network files."""

from __future__ import annotations

from typing import ClassVar, Iterable

from distro2gentoo.domain import NetworkUnit
from distro2gentoo.logging import LoggerFactory
from distro2gentoo.storage.staging import StagedRoot


log = LoggerFactory.for_system()


class InitSystem:
    """Base class for the target's init system."""

    name: ClassVar[str] = ""

    def enable_command(self, service: str) -> list[str]:
        raise NotImplementedError

    def enable_service(self, staged_root: StagedRoot, service: str) -> None:
        log.info(f"Enabling {service} ({self.name})")
        staged_root.run(self.enable_command(service))

    def extra_packages(self) -> list[str]:
        return []

    def install_network(self, staged_root: StagedRoot, units: Iterable[NetworkUnit]) -> list[str]:
        """Write network configuration; returns the services to enable."""
        raise NotImplementedError


class OpenRC(InitSystem):
    name = "openrc"

    NET_CONFIG = "/etc/conf.d/net"
    SYSCTL_FRAGMENT = "/etc/sysctl.d/50-distro2gentoo-ipv6.conf"

    def enable_command(self, service):
        return ["rc-update", "add", service, "default"]

    def extra_packages(self):
        return ["net-misc/netifrc", "net-misc/dhcpcd"]

    def install_network(self, staged_root, units):
        units = list(units)
        if not units:
            return []
        staged_root.write_text(self.NET_CONFIG, "\n".join(unit.netifrc for unit in units))
        staged_root.write_text(self.SYSCTL_FRAGMENT, "".join(unit.sysctl for unit in units))
        services = []
        for unit in units:
            service = f"net.{unit.interface}"
            staged_root.symlink(f"/etc/init.d/{service}", "net.lo")
            services.append(service)
            log.debug(f"Linked {service} to net.lo")
        return services


class Systemd(InitSystem):
    name = "systemd"

    NETWORK_DIR = "/etc/systemd/network"

    def enable_command(self, service):
        return ["systemctl", "enable", service]

    def install_network(self, staged_root, units):
        units = list(units)
        if not units:
            return []
        for unit in units:
            staged_root.write_text(f"{self.NETWORK_DIR}/50-{unit.interface}.network", unit.networkd)
        return ["systemd-networkd"]


INIT_SYSTEMS = {family.name: family for family in (OpenRC, Systemd)}


def init_system_for(staged_root: StagedRoot) -> InitSystem:
    return INIT_SYSTEMS[staged_root.init_system()]()
