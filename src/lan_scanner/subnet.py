"""
Local interface and subnet helpers.

Finds the host's IPv4 interfaces (netifaces, falling back to the `ip`
command on Linux) and enumerates the candidate hosts to probe.
"""

from __future__ import annotations

import ipaddress
import logging
import subprocess
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_HOSTS = 256

# Tunnels and loopback never hold LAN neighbors
_SKIPPED_INTERFACE_PREFIXES = ("utun", "ppp", "ipsec", "lo", "gif")
_PREFERRED_INTERFACE_PREFIXES = ("en", "eth")


@dataclass
class InterfaceAddress:
    """One IPv4 address bound to a local interface."""
    interface: str
    ip: str
    netmask: str

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network(f"{self.ip}/{self.netmask}", strict=False)


def _netifaces_addresses() -> list[InterfaceAddress]:
    import netifaces

    addresses = []
    for iface in netifaces.interfaces():
        for addr in netifaces.ifaddresses(iface).get(netifaces.AF_INET, []):
            ip = addr.get("addr", "")
            netmask = addr.get("netmask", "")
            if ip and netmask:
                addresses.append(InterfaceAddress(iface, ip, netmask))
    return addresses


def _ip_command_addresses() -> list[InterfaceAddress]:
    addresses = []
    try:
        result = subprocess.run(
            ["ip", "-4", "-o", "addr", "show"],
            capture_output=True, text=True, timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        logger.debug(f"ip command unavailable: {e}")
        return addresses
    if result.returncode != 0:
        return addresses

    for line in result.stdout.splitlines():
        # Format: "2: eth0    inet 192.168.88.241/24 brd ..."
        parts = line.split()
        if len(parts) < 4 or parts[2] != "inet":
            continue
        try:
            iface_net = ipaddress.IPv4Interface(parts[3])
        except ValueError:
            continue
        addresses.append(InterfaceAddress(
            parts[1].rstrip(":"), str(iface_net.ip), str(iface_net.netmask),
        ))
    return addresses


def interface_addresses() -> list[InterfaceAddress]:
    """All IPv4 interface addresses, loopback included."""
    try:
        addresses = _netifaces_addresses()
    except (ImportError, OSError, ValueError) as e:
        logger.debug(f"netifaces lookup failed: {e}")
        addresses = []
    if not addresses:
        addresses = _ip_command_addresses()
    return addresses


def _is_lan_interface(addr: InterfaceAddress) -> bool:
    if addr.interface.startswith(_SKIPPED_INTERFACE_PREFIXES):
        return False
    return not addr.ip.startswith("127.") and not addr.ip.startswith("169.254.")


def primary_ipv4(addresses: Optional[list[InterfaceAddress]] = None) -> Optional[InterfaceAddress]:
    """
    Pick the interface address to scan from.

    Prefers en*/eth* interfaces, otherwise the first non-loopback one.
    """
    if addresses is None:
        addresses = interface_addresses()
    candidates = [a for a in addresses if _is_lan_interface(a)]
    for addr in candidates:
        if addr.interface.startswith(_PREFERRED_INTERFACE_PREFIXES):
            return addr
    return candidates[0] if candidates else None


def active_networks(addresses: Optional[list[InterfaceAddress]] = None) -> list[ipaddress.IPv4Network]:
    """Local IPv4 networks, skipping tunnels and loopback."""
    if addresses is None:
        addresses = interface_addresses()
    networks: list[ipaddress.IPv4Network] = []
    for addr in addresses:
        if not _is_lan_interface(addr):
            continue
        try:
            network = addr.network
        except ValueError:
            continue
        if network not in networks:
            networks.append(network)
    return networks


def detect_local_subnets() -> list[str]:
    """CIDR strings for every active LAN interface."""
    subnets = [str(n) for n in active_networks()]
    if subnets:
        logger.info(f"Auto-detected network ranges: {subnets}")
    else:
        logger.warning("Could not auto-detect network ranges")
    return subnets


def enumerate_hosts(ip: str, netmask: str = "255.255.255.0", max_hosts: int = DEFAULT_MAX_HOSTS) -> list[str]:
    """
    Candidate hosts around an interface address.

    Networks wider than /24 are narrowed to the /24 holding the address.
    Network, broadcast, link-local and the interface address itself are
    excluded; at most max_hosts addresses are returned.
    """
    network = ipaddress.IPv4Network(f"{ip}/{netmask}", strict=False)
    if network.prefixlen < 24:
        network = ipaddress.IPv4Network(f"{ip}/24", strict=False)
    hosts = []
    for host in network.hosts():
        text = str(host)
        if text == ip or text.startswith("169.254."):
            continue
        hosts.append(text)
        if len(hosts) >= max_hosts:
            break
    return hosts


def cidr_hosts(cidr: str, max_hosts: int = DEFAULT_MAX_HOSTS) -> list[str]:
    """Host addresses of a CIDR range; a /32 yields the address itself."""
    network = ipaddress.IPv4Network(cidr.strip(), strict=False)
    if network.prefixlen == 32:
        return [str(network.network_address)]
    hosts = []
    for host in network.hosts():
        hosts.append(str(host))
        if len(hosts) >= max_hosts:
            break
    return hosts
