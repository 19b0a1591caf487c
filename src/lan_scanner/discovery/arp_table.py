"""
Neighbor (ARP) table reader.

Reads /proc/net/arp on Linux and falls back to `arp -an` elsewhere.
Fast but limited to hosts that have communicated recently, so a scan
first nudges every candidate with a one-byte UDP datagram.
"""

from __future__ import annotations

import asyncio
import logging
import re
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .._types import normalize_mac

logger = logging.getLogger(__name__)

PROC_NET_ARP = Path("/proc/net/arp")
DEFAULT_NUDGE_PORTS = (137, 1900, 5353, 67, 68)

# Linux:  ? (192.168.1.1) at aa:bb:cc:dd:ee:ff [ether] on eth0
# macOS:  ? (192.168.1.1) at aa:bb:cc:dd:ee:ff on en0 ifscope permanent [ethernet]
_ARP_LINE = re.compile(r"\((\d+\.\d+\.\d+\.\d+)\)\s+at\s+(\S+)")
_ARP_IFACE = re.compile(r"\son\s+(\S+)")

_IGNORED_MACS = {"FF:FF:FF:FF:FF:FF", "00:00:00:00:00:00"}
_MAC = re.compile(r"^[0-9A-F]{2}(:[0-9A-F]{2}){5}$")

# /proc/net/arp flags
_ATF_COM = 0x02
_ATF_PERM = 0x04


@dataclass
class ARPEntry:
    """One neighbor table entry."""
    ip: str
    mac: str
    interface: Optional[str] = None
    is_permanent: bool = False


def _clean_mac(raw: str) -> Optional[str]:
    mac = normalize_mac(raw)
    if not mac or mac in _IGNORED_MACS or not _MAC.match(mac):
        return None
    return mac


def parse_arp_output(output: str) -> list[ARPEntry]:
    """Parse `arp -an` output; incomplete and malformed lines are skipped."""
    entries = []
    for line in output.splitlines():
        match = _ARP_LINE.search(line)
        if not match:
            continue
        if "incomplete" in match.group(2):
            continue
        mac = _clean_mac(match.group(2))
        if mac is None:
            continue
        iface = _ARP_IFACE.search(line)
        entries.append(ARPEntry(
            ip=match.group(1),
            mac=mac,
            interface=iface.group(1) if iface else None,
            is_permanent="permanent" in line,
        ))
    return entries


def parse_proc_net_arp(text: str) -> list[ARPEntry]:
    """
    Parse /proc/net/arp.

    Columns: IP address, HW type, Flags, HW address, Mask, Device.
    """
    entries = []
    for line in text.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 6:
            continue
        try:
            flags = int(parts[2], 16)
        except ValueError:
            continue
        if not flags & _ATF_COM:
            continue
        mac = _clean_mac(parts[3])
        if mac is None:
            continue
        entries.append(ARPEntry(
            ip=parts[0],
            mac=mac,
            interface=parts[5],
            is_permanent=bool(flags & _ATF_PERM),
        ))
    return entries


def _send_nudges(targets: list[str], ports: Iterable[int]) -> int:
    sent = 0
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.setblocking(False)
        for target in targets:
            for port in ports:
                try:
                    sock.sendto(b"\x00", (target, port))
                    sent += 1
                except OSError:
                    continue
    return sent


class ARPTableReader:
    """
    Reads the host's neighbor table.

    Args:
        proc_path: Linux neighbor table file (ignored if missing)
    """

    def __init__(self, proc_path: Path = PROC_NET_ARP):
        self.proc_path = proc_path

    async def full_table(self) -> list[ARPEntry]:
        """Every complete entry in the neighbor table."""
        if self.proc_path.exists():
            try:
                return parse_proc_net_arp(self.proc_path.read_text())
            except OSError as e:
                logger.warning(f"Failed to read {self.proc_path}: {e}")

        try:
            proc = await asyncio.create_subprocess_exec(
                "arp", "-an",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
        except (FileNotFoundError, PermissionError) as e:
            logger.warning(f"arp command unavailable: {e}")
            return []

        if proc.returncode != 0:
            logger.error(f"ARP command failed: {stderr.decode(errors='replace')}")
            return []
        return parse_arp_output(stdout.decode(errors="replace"))

    async def resolve(self, ips: set[str], delay: float = 0.2) -> dict[str, str]:
        """
        MAC addresses for a set of IPs (the whole table when ips is empty).

        Args:
            ips: Addresses of interest
            delay: Seconds to let pending ARP replies land first
        """
        if delay > 0:
            await asyncio.sleep(delay)
        table = await self.full_table()
        return {e.ip: e.mac for e in table if not ips or e.ip in ips}

    async def populate_cache(
        self,
        hosts: list[str],
        broadcast: bool = True,
        ports: Iterable[int] = DEFAULT_NUDGE_PORTS,
        timeout: float = 0.25,
    ) -> None:
        """
        Provoke ARP traffic to every host so the table fills in.

        Sends a one-byte UDP datagram per host and port (plus the derived
        x.y.z.255 broadcast). Send failures are ignored.
        """
        targets = list(dict.fromkeys(hosts))
        if broadcast:
            for host in hosts:
                parts = host.split(".")
                if len(parts) == 4:
                    bcast = ".".join(parts[:3] + ["255"])
                    if bcast not in targets:
                        targets.append(bcast)
        if not targets:
            return
        try:
            sent = await asyncio.to_thread(_send_nudges, targets, tuple(ports))
            logger.debug(f"Sent {sent} ARP nudges to {len(targets)} targets")
        except OSError as e:
            logger.debug(f"ARP cache population failed: {e}")
        await asyncio.sleep(timeout)
