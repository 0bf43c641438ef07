"""
Tests for distro2gentoo.network module.

This test suite covers:
- Primary interface selection and name ranking
- Static, DHCP and router-advertisement translation per family
- Unification of both address families into one record
- Legacy interface name resolution
- systemd-networkd, netifrc and sysctl rendering
"""

import json
import subprocess

import pytest

from distro2gentoo.domain import IpProtocol, NetworkInterface, Route
from distro2gentoo.network import topology as network_topology
from distro2gentoo.network.topology import (
    LEGACY_NAMES_OPTION,
    interface_rank,
    pick_primary,
    route_protocol,
    translate_network,
)
from distro2gentoo.network.units import netifrc_variable, render_netifrc, render_networkd, render_sysctl


def translate(host, **kwargs):
    return translate_network(host["ipv4_routes"], host["ipv6_routes"], host["links"], **kwargs)


class TestInterfaceRank:
    """Tests for interface_rank() and pick_primary()."""

    @pytest.mark.parametrize(
        "name,rank",
        [
            ("enp3s0", 0),
            ("eno1", 0),
            ("wlp2s0", 1),
            ("eth0", 2),
            ("wlan1", 3),
            ("docker0", None),
            ("veth12ab", None),
            ("br0", None),
        ],
    )
    def test_rank(self, name, rank):
        assert interface_rank(name) == rank

    def test_prefix_beats_metric(self):
        routes = [
            {"dst": "default", "dev": "eth0", "metric": 100},
            {"dst": "default", "dev": "enp3s0", "metric": 200},
        ]

        assert pick_primary(routes)["dev"] == "enp3s0"

    def test_metric_breaks_ties(self):
        routes = [
            {"dst": "default", "dev": "enp2s0", "metric": 200},
            {"dst": "default", "dev": "enp1s0", "metric": 100},
        ]

        assert pick_primary(routes)["dev"] == "enp1s0"

    def test_no_default_route(self):
        assert pick_primary([{"dst": "10.0.0.0/8", "dev": "eth0"}]) is None

    def test_non_unicast_default_ignored(self):
        assert pick_primary([{"dst": "default", "type": "unreachable", "dev": "lo"}]) is None

    @pytest.mark.parametrize(
        "protocol,expected",
        [("dhcp", IpProtocol.DHCP), ("ra", IpProtocol.RA), ("static", IpProtocol.STATIC), (None, IpProtocol.STATIC)],
    )
    def test_route_protocol(self, protocol, expected):
        assert route_protocol({"protocol": protocol}) is expected


class TestStaticHost:
    """A single default IPv4 route via a static eth0, no IPv6 default route."""

    def test_single_record(self, static_eth0_host):
        result = translate(static_eth0_host)

        assert len(result.interfaces) == 1
        iface = result.interfaces[0]
        assert iface.name == "eth0"
        assert iface.ipv4 is IpProtocol.STATIC
        assert iface.ipv4_addresses == ["10.0.0.5/24"]
        assert iface.ipv4_routes == [Route("default", "10.0.0.1")]
        assert iface.primary_ipv4 is True

    def test_no_ipv6_configuration(self, static_eth0_host):
        iface = translate(static_eth0_host).interfaces[0]

        assert iface.ipv6 is None
        assert iface.ipv6_addresses == []
        assert iface.accept_ra is False

    def test_networkd_unit(self, static_eth0_host):
        unit = translate(static_eth0_host).units[0]

        assert unit.networkd == (
            "[Match]\n"
            "Name=eth0\n"
            "\n"
            "[Network]\n"
            "DHCP=no\n"
            "IPv6AcceptRA=no\n"
            "Address=10.0.0.5/24\n"
            "Gateway=10.0.0.1\n"
        )

    def test_netifrc_settings(self, static_eth0_host):
        unit = translate(static_eth0_host).units[0]

        assert unit.netifrc == 'config_eth0="10.0.0.5/24"\nroutes_eth0="default via 10.0.0.1"\n'
        assert unit.sysctl == "net.ipv6.conf.eth0.accept_ra = 0\n"

    def test_legacy_name_without_alias_requests_ifnames_option(self, static_eth0_host):
        result = translate(static_eth0_host)

        assert result.kernel_options == (LEGACY_NAMES_OPTION,)
        assert [d.code for d in result.diagnostics] == ["legacy-ifname"]

    def test_legacy_name_alias(self, static_eth0_host):
        """Test that a predictable altname replaces the legacy name."""
        static_eth0_host["links"][1]["altnames"] = ["enp0s3"]

        result = translate(static_eth0_host)

        iface = result.interfaces[0]
        assert iface.name == "enp0s3"
        assert iface.host_name == "eth0"
        assert result.kernel_options == ()
        assert "Name=enp0s3" in result.units[0].networkd

    def test_keep_legacy_names(self, static_eth0_host):
        result = translate(static_eth0_host, keep_legacy_names=True)

        assert result.interfaces[0].name == "eth0"
        assert result.kernel_options == ()
        assert result.diagnostics == ()


class TestDhcpHost:
    """IPv4 DHCP and IPv6 router advertisements on one wireless interface."""

    def test_unified_record(self, dhcp_wlan0_host):
        result = translate(dhcp_wlan0_host)

        assert [iface.name for iface in result.interfaces] == ["wlan0"]
        iface = result.interfaces[0]
        assert iface.ipv4 is IpProtocol.DHCP
        assert iface.ipv6 is IpProtocol.RA
        assert iface.primary_ipv4 and iface.primary_ipv6
        assert iface.ipv4_addresses == []
        assert iface.ipv6_addresses == []

    def test_networkd_unit(self, dhcp_wlan0_host):
        unit = translate(dhcp_wlan0_host).units[0]

        assert "DHCP=ipv4\n" in unit.networkd
        assert "IPv6AcceptRA=yes\n" in unit.networkd
        assert "Address=" not in unit.networkd
        assert "Gateway=" not in unit.networkd

    def test_netifrc_and_sysctl(self, dhcp_wlan0_host):
        unit = translate(dhcp_wlan0_host).units[0]

        assert unit.netifrc == 'config_wlan0="dhcp"\n'
        assert unit.sysctl == "net.ipv6.conf.wlan0.accept_ra = 1\n"

    def test_bridge_routes_ignored(self, dhcp_wlan0_host):
        """Test that docker0's kernel route does not create a record."""
        names = [iface.name for iface in translate(dhcp_wlan0_host).interfaces]

        assert "docker0" not in names

    def test_wireless_alias(self, dhcp_wlan0_host):
        dhcp_wlan0_host["links"][0]["altnames"] = ["wlp2s0"]

        unit = translate(dhcp_wlan0_host).units[0]

        assert unit.interface == "wlp2s0"
        assert unit.netifrc == 'config_wlp2s0="dhcp"\n'


class TestLeasedPrimary:
    """A default route installed as "boot" by dhclient under ifupdown."""

    @pytest.fixture
    def ifupdown_host(self, static_eth0_host):
        static_eth0_host["ipv4_routes"][0]["protocol"] = "boot"
        static_eth0_host["links"][1]["addr_info"][0].update({"dynamic": True, "valid_life_time": 86000})
        static_eth0_host["links"][1]["altnames"] = ["enp1s0"]
        return static_eth0_host

    def test_leased_address_becomes_dhcp(self, ifupdown_host):
        iface = translate(ifupdown_host).interfaces[0]

        assert iface.name == "enp1s0"
        assert iface.ipv4 is IpProtocol.DHCP
        assert iface.ipv4_routes == []

    def test_rendered_units_use_dhcp(self, ifupdown_host):
        unit = translate(ifupdown_host).units[0]

        assert unit.netifrc == 'config_enp1s0="dhcp"\n'
        assert "DHCP=ipv4\n" in unit.networkd
        assert "Gateway=" not in unit.networkd

    def test_static_address_kept_next_to_lease(self, ifupdown_host):
        ifupdown_host["links"][1]["addr_info"].append(
            {"family": "inet", "local": "10.0.0.6", "prefixlen": 24, "scope": "global"}
        )

        iface = translate(ifupdown_host).interfaces[0]

        assert iface.ipv4 is IpProtocol.STATIC
        assert iface.ipv4_addresses == ["10.0.0.6/24"]
        assert iface.ipv4_routes == [Route("default", "10.0.0.1")]


class TestSecondaryInterfaces:
    """Routes on interfaces other than the primary one."""

    @pytest.fixture
    def two_nic_host(self):
        return {
            "ipv4_routes": [
                {"dst": "default", "gateway": "192.168.0.1", "dev": "enp1s0", "protocol": "dhcp"},
                {"dst": "10.1.0.0/24", "dev": "enp2s0", "protocol": "kernel", "scope": "link"},
                {"dst": "10.2.0.0/16", "gateway": "10.1.0.254", "dev": "enp2s0", "protocol": "static"},
                {"dst": "192.168.0.0/24", "dev": "enp1s0", "protocol": "kernel", "scope": "link"},
            ],
            "ipv6_routes": [],
            "links": [
                {
                    "ifname": "enp1s0",
                    "addr_info": [
                        {"family": "inet", "local": "192.168.0.10", "prefixlen": 24, "scope": "global", "dynamic": True}
                    ],
                },
                {
                    "ifname": "enp2s0",
                    "addr_info": [{"family": "inet", "local": "10.1.0.2", "prefixlen": 24, "scope": "global"}],
                },
            ],
        }

    def test_static_secondary_with_route(self, two_nic_host):
        result = translate(two_nic_host)

        by_name = {iface.name: iface for iface in result.interfaces}
        assert by_name["enp1s0"].ipv4 is IpProtocol.DHCP
        secondary = by_name["enp2s0"]
        assert secondary.ipv4 is IpProtocol.STATIC
        assert secondary.ipv4_addresses == ["10.1.0.2/24"]
        assert secondary.ipv4_routes == [Route("10.2.0.0/16", "10.1.0.254")]
        assert secondary.primary_ipv4 is False

    def test_secondary_route_rendered(self, two_nic_host):
        units = {unit.interface: unit for unit in translate(two_nic_host).units}

        networkd = units["enp2s0"].networkd
        assert "[Route]\nDestination=10.2.0.0/16\nGateway=10.1.0.254\n" in networkd
        assert units["enp2s0"].netifrc == 'config_enp2s0="10.1.0.2/24"\nroutes_enp2s0="10.2.0.0/16 via 10.1.0.254"\n'

    def test_dynamic_secondary_becomes_dhcp(self, two_nic_host):
        two_nic_host["links"][1]["addr_info"][0]["dynamic"] = True

        by_name = {iface.name: iface for iface in translate(two_nic_host).interfaces}

        assert by_name["enp2s0"].ipv4 is IpProtocol.DHCP
        assert by_name["enp2s0"].ipv4_routes == []

    def test_no_routes(self):
        result = translate_network([], [], [])

        assert result.interfaces == ()
        assert [d.code for d in result.diagnostics] == ["no-network"]


class TestRendering:
    """Tests for the unit renderers on hand-built records."""

    def test_dual_stack_static(self):
        iface = NetworkInterface(
            name="enp0s31f6",
            ipv4=IpProtocol.STATIC,
            ipv4_addresses=["192.0.2.10/24"],
            ipv4_routes=[Route("default", "192.0.2.1")],
            ipv6=IpProtocol.STATIC,
            ipv6_addresses=["2001:db8::10/64"],
            ipv6_routes=[Route("default", "2001:db8::1")],
        )

        networkd = render_networkd(iface)

        assert "DHCP=no\n" in networkd
        assert "Address=192.0.2.10/24\nAddress=2001:db8::10/64\n" in networkd
        assert "Gateway=192.0.2.1\nGateway=2001:db8::1\n" in networkd
        assert render_netifrc(iface).startswith('config_enp0s31f6="192.0.2.10/24 2001:db8::10/64"\n')

    def test_dhcp_both_families(self):
        iface = NetworkInterface(name="eno1", ipv4=IpProtocol.DHCP, ipv6=IpProtocol.DHCP)

        assert "DHCP=yes\n" in render_networkd(iface)
        assert render_netifrc(iface) == 'config_eno1="dhcp"\n'

    def test_unconfigured_interface(self):
        assert render_netifrc(NetworkInterface(name="enp1s0")) == 'config_enp1s0="null"\n'

    def test_vlan_names(self):
        iface = NetworkInterface(name="enp1s0.100", ipv6=IpProtocol.RA)

        assert netifrc_variable("enp1s0.100") == "enp1s0_100"
        assert render_sysctl(iface) == "net.ipv6.conf.enp1s0/100.accept_ra = 1\n"


class TestDiscoverNetwork:
    """Tests for discover_network() with mocked ``ip -j``."""

    def test_queries_both_families_and_addresses(self, mocker, static_eth0_host):
        calls = []

        def fake_run(cmd, *args, **kwargs):
            calls.append(cmd)
            if "-4" in cmd:
                payload = static_eth0_host["ipv4_routes"]
            elif "-6" in cmd:
                payload = static_eth0_host["ipv6_routes"]
            else:
                payload = static_eth0_host["links"]
            return subprocess.CompletedProcess(cmd, 0, stdout=json.dumps(payload), stderr="")

        mocker.patch("subprocess.run", side_effect=fake_run)

        result = network_topology.discover_network()

        assert calls[0] == ["ip", "-j", "-4", "route", "show", "table", "main"]
        assert calls[1] == ["ip", "-j", "-6", "route", "show", "table", "main"]
        assert calls[2] == ["ip", "-j", "addr", "show"]
        assert [iface.name for iface in result.interfaces] == ["eth0"]
