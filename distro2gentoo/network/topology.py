"""Host network discovery and translation into per-interface records.

Steps, run separately for IPv4 and IPv6 and collected into one record per
interface (so an interface seen by both passes ends up unified):

    1. The primary interface of a family is the device of its default
       route; several candidates are ranked by name prefix
       (en* > wl* > eth* > wlan* > anything else), then metric. Its
       protocol comes from the route, except that a "static" route over
       nothing but leased addresses means DHCP (IPv4) or RA (IPv6).
    2. Other unicast routes add addresses and routes to the interface they
       name, but only for primary interfaces or physical interfaces that
       carry an address of that family; bridges, veths and container
       interfaces are ignored.
    3. Legacy names (eth*, wlan*) are replaced by their predictable
       alternative name. Without one, the legacy name is kept and
       ``net.ifnames=0`` is requested on the kernel command line.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from distro2gentoo.domain import (
    Diagnostic,
    IpProtocol,
    NetworkInterface,
    NetworkUnit,
    Route,
    Severity,
)
from distro2gentoo.logging import LoggerFactory
from distro2gentoo.storage.commands import run_command

from .units import render_unit


log = LoggerFactory.for_network()

LEGACY_NAME_RE = re.compile(r"^(eth|wlan)\d+$")
LEGACY_NAMES_OPTION = "net.ifnames=0"

# Routes the kernel or a dynamic client installs on its own.
IMPLIED_ROUTE_PROTOCOLS = frozenset({"kernel", "dhcp", "ra"})

_FAMILIES = {4: "inet", 6: "inet6"}


def interface_rank(name: str) -> Optional[int]:
    """Priority of an interface name; None for non-physical names."""
    if re.match(r"^eth\d+$", name):
        return 2
    if re.match(r"^wlan\d+$", name):
        return 3
    if name.startswith("en"):
        return 0
    if name.startswith("wl"):
        return 1
    return None


def route_protocol(route: dict[str, Any]) -> IpProtocol:
    protocol = route.get("protocol")
    if protocol == "dhcp":
        return IpProtocol.DHCP
    if protocol == "ra":
        return IpProtocol.RA
    return IpProtocol.STATIC


def _is_unicast(route: dict[str, Any]) -> bool:
    return route.get("type", "unicast") == "unicast" and bool(route.get("dev"))


def pick_primary(routes: Iterable[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Default route whose interface wins the prefix ranking."""
    candidates = [
        (index, route)
        for index, route in enumerate(routes)
        if route.get("dst") == "default" and _is_unicast(route)
    ]
    if not candidates:
        return None

    def sort_key(item):
        index, route = item
        rank = interface_rank(route["dev"])
        return (99 if rank is None else rank, route.get("metric", 0), index)

    return min(candidates, key=sort_key)[1]


def global_addresses(link: dict[str, Any], version: int, include_dynamic: bool = True) -> list[str]:
    family = _FAMILIES[version]
    addresses = []
    for info in link.get("addr_info", []):
        if info.get("family") != family or info.get("scope") != "global":
            continue
        if info.get("dynamic") and not include_dynamic:
            continue
        addresses.append(f"{info['local']}/{info['prefixlen']}")
    return addresses


def _all_dynamic(link: dict[str, Any], version: int) -> bool:
    family = _FAMILIES[version]
    infos = [
        info
        for info in link.get("addr_info", [])
        if info.get("family") == family and info.get("scope") == "global"
    ]
    return bool(infos) and all(info.get("dynamic") for info in infos)


@dataclass(frozen=True)
class NetworkTranslation:
    interfaces: tuple[NetworkInterface, ...]
    units: tuple[NetworkUnit, ...]
    kernel_options: tuple[str, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()


class _NetworkBuilder:
    def __init__(self, links: Iterable[dict[str, Any]]):
        self.links = {link["ifname"]: link for link in links if link.get("ifname")}
        self.interfaces: dict[str, NetworkInterface] = {}
        self.diagnostics: list[Diagnostic] = []

    def interface(self, name: str) -> NetworkInterface:
        if name not in self.interfaces:
            self.interfaces[name] = NetworkInterface(name=name)
        return self.interfaces[name]

    def _set_protocol(self, iface: NetworkInterface, version: int, protocol: IpProtocol) -> None:
        setattr(iface, f"ipv{version}", protocol)

    def _protocol(self, iface: NetworkInterface, version: int) -> Optional[IpProtocol]:
        return getattr(iface, f"ipv{version}")

    def _addresses(self, iface: NetworkInterface, version: int) -> list[str]:
        return getattr(iface, f"ipv{version}_addresses")

    def _routes(self, iface: NetworkInterface, version: int) -> list[Route]:
        return getattr(iface, f"ipv{version}_routes")

    def _add_static_addresses(self, iface: NetworkInterface, version: int) -> None:
        link = self.links.get(iface.name, {})
        addresses = self._addresses(iface, version)
        for address in global_addresses(link, version, include_dynamic=False):
            if address not in addresses:
                addresses.append(address)

    def carriers(self, version: int) -> set[str]:
        return {
            name
            for name, link in self.links.items()
            if interface_rank(name) is not None and global_addresses(link, version)
        }

    def family_pass(self, version: int, routes: list[dict[str, Any]]) -> None:
        primary = pick_primary(routes)
        eligible = self.carriers(version)
        if primary is not None:
            iface = self.interface(primary["dev"])
            protocol = route_protocol(primary)
            if protocol is IpProtocol.STATIC and _all_dynamic(self.links.get(iface.name, {}), version):
                # dhclient under ifupdown installs its default route as "boot".
                protocol = IpProtocol.DHCP if version == 4 else IpProtocol.RA
            setattr(iface, f"primary_ipv{version}", True)
            self._set_protocol(iface, version, protocol)
            if protocol is IpProtocol.STATIC:
                self._add_static_addresses(iface, version)
                self._routes(iface, version).append(Route("default", primary.get("gateway")))
            eligible.add(iface.name)
            log.info(f"Primary IPv{version} interface: {iface.name} ({protocol.value})")
        else:
            log.info(f"No IPv{version} default route")

        for route in routes:
            if route.get("dst") == "default" or not _is_unicast(route):
                continue
            name = route["dev"]
            if name not in eligible:
                continue
            iface = self.interface(name)
            current = self._protocol(iface, version)
            if current in (IpProtocol.DHCP, IpProtocol.RA):
                continue
            link = self.links.get(name, {})
            if current is None and _all_dynamic(link, version):
                self._set_protocol(iface, version, IpProtocol.DHCP if version == 4 else IpProtocol.RA)
                continue
            if route.get("protocol") == "kernel":
                if global_addresses(link, version, include_dynamic=False):
                    self._set_protocol(iface, version, IpProtocol.STATIC)
                    self._add_static_addresses(iface, version)
                continue
            if route.get("protocol") in IMPLIED_ROUTE_PROTOCOLS:
                continue
            self._set_protocol(iface, version, IpProtocol.STATIC)
            self._add_static_addresses(iface, version)
            entry = Route(route["dst"], route.get("gateway"))
            if entry not in self._routes(iface, version):
                self._routes(iface, version).append(entry)

    def resolve_names(self, keep_legacy_names: bool) -> list[str]:
        kernel_options: list[str] = []
        for iface in self.interfaces.values():
            if not LEGACY_NAME_RE.match(iface.name) or keep_legacy_names:
                continue
            altnames = self.links.get(iface.name, {}).get("altnames", [])
            alias = next((alt for alt in altnames if interface_rank(alt) in (0, 1)), None)
            if alias:
                log.info(f"Interface {iface.name} will be configured as {alias}")
                iface.host_name = iface.name
                iface.name = alias
                continue
            if LEGACY_NAMES_OPTION not in kernel_options:
                kernel_options.append(LEGACY_NAMES_OPTION)
            self.diagnostics.append(
                Diagnostic(
                    Severity.WARNING,
                    "legacy-ifname",
                    f"No predictable name for {iface.name}; keeping legacy interface names",
                    LEGACY_NAMES_OPTION,
                )
            )
        return kernel_options


def translate_network(
    ipv4_routes: Iterable[dict[str, Any]],
    ipv6_routes: Iterable[dict[str, Any]],
    links: Iterable[dict[str, Any]],
    keep_legacy_names: bool = False,
) -> NetworkTranslation:
    """Translate ``ip -j`` route and address data into network records.

    Args:
        ipv4_routes: ``ip -j -4 route show table main`` output
        ipv6_routes: ``ip -j -6 route show table main`` output
        links: ``ip -j addr show`` output (with altnames)
        keep_legacy_names: The host already boots with net.ifnames=0

    Returns:
        NetworkTranslation with one record and one rendered unit per interface
    """
    builder = _NetworkBuilder(links)
    builder.family_pass(4, list(ipv4_routes))
    builder.family_pass(6, list(ipv6_routes))
    kernel_options = builder.resolve_names(keep_legacy_names)

    interfaces = tuple(builder.interfaces.values())
    if not interfaces:
        builder.diagnostics.append(
            Diagnostic(Severity.WARNING, "no-network", "No routable interface found; network left unconfigured")
        )
    units = tuple(render_unit(iface) for iface in interfaces)
    return NetworkTranslation(
        interfaces=interfaces,
        units=units,
        kernel_options=tuple(kernel_options),
        diagnostics=tuple(builder.diagnostics),
    )


def _ip_json(*args: str) -> list[dict[str, Any]]:
    result = run_command(["ip", "-j", *args], log_output=False)
    return json.loads(result.stdout or "[]")


def discover_network(keep_legacy_names: bool = False) -> NetworkTranslation:
    return translate_network(
        _ip_json("-4", "route", "show", "table", "main"),
        _ip_json("-6", "route", "show", "table", "main"),
        _ip_json("addr", "show"),
        keep_legacy_names=keep_legacy_names,
    )
