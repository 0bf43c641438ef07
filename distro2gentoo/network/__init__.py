"""Network Topology Translator."""

from .topology import NetworkTranslation, discover_network, interface_rank, translate_network
from .units import render_netifrc, render_networkd, render_unit


__all__ = [
    "NetworkTranslation",
    "discover_network",
    "interface_rank",
    "translate_network",
    "render_netifrc",
    "render_networkd",
    "render_unit",
]
