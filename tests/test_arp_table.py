"""Tests for the neighbor table reader."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from lan_scanner.discovery.arp_table import (
    ARPTableReader,
    parse_arp_output,
    parse_proc_net_arp,
)

ARP_AN_LINUX = """? (192.168.1.1) at aa:bb:cc:dd:ee:ff [ether] on eth0
? (192.168.1.100) at 11:22:33:44:55:66 [ether] on eth0
? (192.168.1.101) at <incomplete> on eth0
"""

ARP_AN_MACOS = """? (192.168.1.1) at 0:1b:63:a:b:c on en0 ifscope [ethernet]
? (192.168.1.255) at ff:ff:ff:ff:ff:ff on en0 ifscope [ethernet]
? (224.0.0.251) at 1:0:5e:0:0:fb on en0 ifscope permanent [ethernet]
? (192.168.1.77) at (incomplete) on en0 ifscope [ethernet]
garbage line
"""

PROC_NET_ARP = """IP address       HW type     Flags       HW address            Mask     Device
192.168.1.1      0x1         0x2         aa:bb:cc:dd:ee:ff     *        eth0
192.168.1.50     0x1         0x0         00:00:00:00:00:00     *        eth0
192.168.1.60     0x1         0x6         11:22:33:44:55:66     *        eth0
192.168.1.70     0x1         0xZZ        11:22:33:44:55:77     *        eth0
"""


class TestParseArpOutput:
    """Tests for `arp -an` parsing."""

    def test_linux_format(self):
        entries = parse_arp_output(ARP_AN_LINUX)

        assert len(entries) == 2
        assert entries[0].ip == "192.168.1.1"
        assert entries[0].mac == "AA:BB:CC:DD:EE:FF"
        assert entries[0].interface == "eth0"

    def test_macos_format(self):
        """Short octets should be padded; broadcast and incomplete entries skipped."""
        entries = parse_arp_output(ARP_AN_MACOS)

        assert [e.ip for e in entries] == ["192.168.1.1", "224.0.0.251"]
        assert entries[0].mac == "00:1B:63:0A:0B:0C"
        assert entries[1].is_permanent is True

    def test_empty(self):
        assert parse_arp_output("") == []


class TestParseProcNetArp:
    """Tests for /proc/net/arp parsing."""

    def test_complete_entries_only(self):
        entries = parse_proc_net_arp(PROC_NET_ARP)

        assert [e.ip for e in entries] == ["192.168.1.1", "192.168.1.60"]
        assert entries[0].is_permanent is False
        assert entries[1].is_permanent is True
        assert entries[1].interface == "eth0"


class TestARPTableReader:
    """Tests for table reading and resolution."""

    @pytest.mark.asyncio
    async def test_reads_proc_file(self, tmp_path: Path):
        proc = tmp_path / "arp"
        proc.write_text(PROC_NET_ARP)
        reader = ARPTableReader(proc_path=proc)

        entries = await reader.full_table()
        assert len(entries) == 2

    @pytest.mark.asyncio
    async def test_falls_back_to_arp_command(self, tmp_path: Path):
        reader = ARPTableReader(proc_path=tmp_path / "missing")

        process = MagicMock()
        process.returncode = 0
        process.communicate = AsyncMock(return_value=(ARP_AN_LINUX.encode(), b""))

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)) as exec_mock:
            entries = await reader.full_table()

        assert exec_mock.call_args[0][:2] == ("arp", "-an")
        assert len(entries) == 2

    @pytest.mark.asyncio
    async def test_command_missing(self, tmp_path: Path):
        reader = ARPTableReader(proc_path=tmp_path / "missing")
        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("arp"))):
            assert await reader.full_table() == []

    @pytest.mark.asyncio
    async def test_command_failure(self, tmp_path: Path):
        reader = ARPTableReader(proc_path=tmp_path / "missing")
        process = MagicMock()
        process.returncode = 1
        process.communicate = AsyncMock(return_value=(b"", b"permission denied"))
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            assert await reader.full_table() == []

    @pytest.mark.asyncio
    async def test_resolve_filters(self, tmp_path: Path):
        proc = tmp_path / "arp"
        proc.write_text(PROC_NET_ARP)
        reader = ARPTableReader(proc_path=proc)

        assert await reader.resolve({"192.168.1.60", "192.168.1.99"}, delay=0) == {
            "192.168.1.60": "11:22:33:44:55:66",
        }
        assert len(await reader.resolve(set(), delay=0)) == 2

    @pytest.mark.asyncio
    async def test_populate_cache_adds_broadcast(self, tmp_path: Path):
        reader = ARPTableReader(proc_path=tmp_path / "missing")
        with patch("lan_scanner.discovery.arp_table._send_nudges", return_value=4) as send:
            await reader.populate_cache(["192.168.1.5", "192.168.1.6"], ports=(137, 5353), timeout=0)

        targets, ports = send.call_args[0]
        assert targets == ["192.168.1.5", "192.168.1.6", "192.168.1.255"]
        assert ports == (137, 5353)

    @pytest.mark.asyncio
    async def test_populate_cache_send_failure(self, tmp_path: Path):
        """Send failures should be ignored."""
        reader = ARPTableReader(proc_path=tmp_path / "missing")
        with patch("lan_scanner.discovery.arp_table._send_nudges", side_effect=OSError("no route")):
            await reader.populate_cache(["192.168.1.5"], timeout=0)
