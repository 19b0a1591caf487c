"""Tests for interface and subnet helpers."""

import ipaddress
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from lan_scanner.subnet import (
    InterfaceAddress,
    active_networks,
    cidr_hosts,
    enumerate_hosts,
    interface_addresses,
    primary_ipv4,
)

ADDRESSES = [
    InterfaceAddress("lo", "127.0.0.1", "255.0.0.0"),
    InterfaceAddress("utun3", "10.8.0.2", "255.255.255.0"),
    InterfaceAddress("wlan0", "192.168.2.10", "255.255.255.0"),
    InterfaceAddress("eth0", "192.168.1.23", "255.255.255.0"),
    InterfaceAddress("eth1", "169.254.10.2", "255.255.0.0"),
]


class TestEnumerateHosts:
    """Tests for candidate host enumeration."""

    def test_slash_24_excludes_self(self):
        hosts = enumerate_hosts("192.168.1.23")
        assert len(hosts) == 253
        assert "192.168.1.23" not in hosts
        assert hosts[0] == "192.168.1.1"
        assert hosts[-1] == "192.168.1.254"

    def test_wide_network_narrowed(self):
        """A /16 should be narrowed to the /24 holding the address."""
        hosts = enumerate_hosts("10.20.30.40", "255.255.0.0")
        assert len(hosts) == 253
        assert all(h.startswith("10.20.30.") for h in hosts)

    def test_small_network(self):
        assert enumerate_hosts("192.168.1.1", "255.255.255.252") == ["192.168.1.2"]

    def test_max_hosts(self):
        assert len(enumerate_hosts("192.168.1.23", max_hosts=10)) == 10


class TestCidrHosts:
    """Tests for explicit ranges."""

    def test_single_address(self):
        assert cidr_hosts("192.168.1.7/32") == ["192.168.1.7"]

    def test_range(self):
        assert cidr_hosts(" 10.0.0.0/30 ") == ["10.0.0.1", "10.0.0.2"]

    def test_invalid(self):
        with pytest.raises(ValueError):
            cidr_hosts("not-a-range")


class TestInterfaces:
    """Tests for interface selection."""

    def test_primary_prefers_ethernet(self):
        assert primary_ipv4(ADDRESSES).interface == "eth0"

    def test_primary_falls_back(self):
        assert primary_ipv4(ADDRESSES[:3]).interface == "wlan0"

    def test_primary_none(self):
        assert primary_ipv4(ADDRESSES[:2]) is None

    def test_active_networks_skip_tunnels(self):
        assert active_networks(ADDRESSES) == [
            ipaddress.IPv4Network("192.168.2.0/24"),
            ipaddress.IPv4Network("192.168.1.0/24"),
        ]

    def test_ip_command_fallback(self):
        """Should parse `ip -4 -o addr show` when netifaces finds nothing."""
        result = MagicMock()
        result.returncode = 0
        result.stdout = (
            "1: lo    inet 127.0.0.1/8 scope host lo\n"
            "2: eth0    inet 192.168.88.241/24 brd 192.168.88.255 scope global eth0\n"
        )
        with patch("lan_scanner.subnet._netifaces_addresses", return_value=[]), \
                patch("subprocess.run", return_value=result):
            addresses = interface_addresses()

        assert addresses[1] == InterfaceAddress("eth0", "192.168.88.241", "255.255.255.0")

    def test_no_ip_command(self):
        with patch("lan_scanner.subnet._netifaces_addresses", return_value=[]), \
                patch("subprocess.run", side_effect=FileNotFoundError("ip")):
            assert interface_addresses() == []

    def test_ip_command_timeout(self):
        with patch("lan_scanner.subnet._netifaces_addresses", side_effect=OSError("boom")), \
                patch("subprocess.run", side_effect=subprocess.TimeoutExpired("ip", 5)):
            assert interface_addresses() == []
