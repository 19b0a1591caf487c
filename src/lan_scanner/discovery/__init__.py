"""
Evidence producers.

Each producer only publishes to the mutation bus:
- ARP table: neighbor MAC addresses for probed hosts
- Ping: reachability sweeps with bounded concurrency
- Bonjour: DNS-SD browse and resolve
- Port scan: TCP connect probes on newly addressed devices
- HTTP fingerprint: web server, title, favicon and certificate details
- SSH host keys: SHA256 fingerprints from ssh-keyscan
"""

from .base import DiscoveryProvider
from .arp_table import ARPEntry, ARPTableReader
from .ping import (
    PingConfig,
    PingOrchestrator,
    Pinger,
    ScanProgress,
    SystemPinger,
    TCPPinger,
)
from .bonjour import BonjourDiscoveryProvider, ResolvedService
from .port_scan import PortScanner
from .http_fingerprint import HTTPFingerprinter
from .ssh_hostkey import SSHHostKeyFingerprinter

__all__ = [
    "DiscoveryProvider",
    "ARPEntry",
    "ARPTableReader",
    "PingConfig",
    "PingOrchestrator",
    "Pinger",
    "ScanProgress",
    "SystemPinger",
    "TCPPinger",
    "BonjourDiscoveryProvider",
    "ResolvedService",
    "PortScanner",
    "HTTPFingerprinter",
    "SSHHostKeyFingerprinter",
]
