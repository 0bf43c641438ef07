"""Render network records as systemd-networkd units and netifrc settings."""

from __future__ import annotations

import re

from distro2gentoo.domain import IpProtocol, NetworkInterface, NetworkUnit


def netifrc_variable(name: str) -> str:
    """netifrc suffix for an interface: ``config_<suffix>``."""
    return re.sub(r"[^A-Za-z0-9_]", "_", name)


def _default_gateways(iface: NetworkInterface) -> list[str]:
    gateways = []
    for route in iface.ipv4_routes + iface.ipv6_routes:
        if route.is_default and route.gateway:
            gateways.append(route.gateway)
    return gateways


def _extra_routes(iface: NetworkInterface):
    return [route for route in iface.ipv4_routes + iface.ipv6_routes if not route.is_default]


def render_networkd(iface: NetworkInterface) -> str:
    lines = [
        "[Match]",
        f"Name={iface.name}",
        "",
        "[Network]",
        f"DHCP={iface.dhcp_mode}",
        f"IPv6AcceptRA={'yes' if iface.accept_ra else 'no'}",
    ]
    for address in iface.ipv4_addresses + iface.ipv6_addresses:
        lines.append(f"Address={address}")
    for gateway in _default_gateways(iface):
        lines.append(f"Gateway={gateway}")
    for route in _extra_routes(iface):
        lines += ["", "[Route]", f"Destination={route.destination}"]
        if route.gateway:
            lines.append(f"Gateway={route.gateway}")
    return "\n".join(lines) + "\n"


def render_netifrc(iface: NetworkInterface) -> str:
    var = netifrc_variable(iface.name)
    config = []
    if iface.ipv4 is IpProtocol.DHCP:
        config.append("dhcp")
    config += iface.ipv4_addresses
    config += iface.ipv6_addresses
    if iface.ipv6 is IpProtocol.DHCP and "dhcp" not in config:
        config.append("dhcp")

    lines = [f'config_{var}="{" ".join(config) if config else "null"}"']
    routes = []
    for route in iface.ipv4_routes + iface.ipv6_routes:
        if route.gateway:
            routes.append(f"{route.destination} via {route.gateway}")
        else:
            routes.append(f"{route.destination} dev {iface.name}")
    if routes:
        joined = "\n".join(routes)
        lines.append(f'routes_{var}="{joined}"')
    return "\n".join(lines) + "\n"


def render_sysctl(iface: NetworkInterface) -> str:
    """Router advertisement setting for netifrc, which has no unit option for it."""
    key = iface.name.replace(".", "/")
    return f"net.ipv6.conf.{key}.accept_ra = {1 if iface.accept_ra else 0}\n"


def render_unit(iface: NetworkInterface) -> NetworkUnit:
    return NetworkUnit(
        interface=iface.name,
        networkd=render_networkd(iface),
        netifrc=render_netifrc(iface),
        sysctl=render_sysctl(iface),
    )
