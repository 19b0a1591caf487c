"""Tests for the discovery coordinator."""

import asyncio

import pytest

from lan_scanner._types import (
    DeviceField,
    DiscoverySource,
    MutationKind,
    MutationSource,
    PingMeasurement,
    PingStatus,
)
from lan_scanner.coordinator import DiscoveryCoordinator
from lan_scanner.discovery import DiscoveryProvider, PingOrchestrator
from lan_scanner.discovery.ping import Pinger
from lan_scanner.mutation_bus import DeviceMutationBus


class FakePinger(Pinger):
    def __init__(self, reachable=(), delay=0.0):
        self.reachable = set(reachable)
        self.delay = delay
        self.probed = []

    async def probe(self, config, sequence):
        self.probed.append(config.host)
        if self.delay:
            await asyncio.sleep(self.delay)
        if config.host in self.reachable:
            return PingMeasurement(config.host, sequence, PingStatus.SUCCESS, rtt_millis=1.0)
        return PingMeasurement(config.host, sequence, PingStatus.TIMEOUT)


class FakeARPReader:
    def __init__(self, table):
        self.table = dict(table)
        self.populated = []

    async def populate_cache(self, hosts, ports=(137, 5353), timeout=0.4):
        self.populated.extend(hosts)

    async def resolve(self, ips, delay=0.2):
        return {ip: mac for ip, mac in self.table.items() if ip in ips}


class FakeProvider(DiscoveryProvider):
    def __init__(self, provider_name, available=True, fail=False):
        self._name = provider_name
        self.available = available
        self.fail = fail
        self.starts = 0
        self.stops = 0

    @property
    def name(self):
        return self._name

    async def start(self):
        self.starts += 1
        if self.fail:
            raise RuntimeError("cannot bind")

    async def stop(self):
        self.stops += 1

    async def is_available(self):
        return self.available


def _drain(subscription):
    events = []
    while subscription.pending:
        events.append(subscription._queue.get_nowait())
    return events


@pytest.fixture
def bus():
    return DeviceMutationBus()


class TestRunScan:
    """Tests for one discovery pass."""

    @pytest.mark.asyncio
    async def test_sweep_then_arp(self, bus):
        """Should ping every host, then publish MAC evidence for answering hosts."""
        subscription = bus.subscribe()
        pinger = FakePinger(reachable={"192.168.1.2", "192.168.1.3"})
        arp = FakeARPReader({"192.168.1.2": "AA:BB:CC:00:00:02", "192.168.1.99": "AA:BB:CC:00:00:99"})
        coordinator = DiscoveryCoordinator(
            bus, PingOrchestrator(bus, pinger=pinger), arp_reader=arp, mdns_warmup=0, arp_delay=0,
        )

        summary = await coordinator.run_scan(["192.168.1.2", "192.168.1.3", "192.168.1.4"], triggered_by="api")

        assert summary.status == "completed"
        assert summary.triggered_by == "api"
        assert summary.hosts == 3
        assert summary.reachable == 2
        assert summary.arp_entries == 1
        assert summary.completed_at >= summary.started_at
        assert sorted(pinger.probed) == ["192.168.1.2", "192.168.1.3", "192.168.1.4"]
        assert arp.populated == ["192.168.1.2", "192.168.1.3", "192.168.1.4"]

        events = _drain(subscription)
        pings = [e for e in events if e.kind == MutationKind.REACHABILITY]
        changes = [e.change for e in events if e.kind == MutationKind.CHANGE]
        assert len(pings) == 3
        assert len(changes) == 1
        assert changes[0].source == MutationSource.ARP
        assert changes[0].after.mac_address == "AA:BB:CC:00:00:02"
        assert changes[0].after.discovery_sources == {DiscoverySource.ARP}
        assert DeviceField.MAC_ADDRESS in changes[0].changed

    @pytest.mark.asyncio
    async def test_auto_hosts(self, bus):
        pinger = FakePinger()
        coordinator = DiscoveryCoordinator(
            bus, PingOrchestrator(bus, pinger=pinger), mdns_warmup=0,
            host_source=lambda max_hosts: ["10.0.0.5"],
        )

        summary = await coordinator.run_scan()
        assert summary.hosts == 1
        assert pinger.probed == ["10.0.0.5"]

    @pytest.mark.asyncio
    async def test_ping_disabled(self, bus):
        """Should still read the neighbor table when pinging is off."""
        pinger = FakePinger()
        arp = FakeARPReader({"10.0.0.5": "AA:BB:CC:00:00:05"})
        coordinator = DiscoveryCoordinator(
            bus, PingOrchestrator(bus, pinger=pinger), arp_reader=arp,
            mdns_warmup=0, arp_delay=0, ping_enabled=False,
        )

        summary = await coordinator.run_scan(["10.0.0.5"])
        assert pinger.probed == []
        assert summary.reachable == 0
        assert summary.arp_entries == 1

    @pytest.mark.asyncio
    async def test_no_targets(self, bus):
        coordinator = DiscoveryCoordinator(
            bus, PingOrchestrator(bus, pinger=FakePinger()), mdns_warmup=0,
            host_source=lambda max_hosts: [],
        )
        summary = await coordinator.run_scan()
        assert summary.status == "completed"
        assert summary.hosts == 0

    @pytest.mark.asyncio
    async def test_failure_reported(self, bus):
        def broken(max_hosts):
            raise OSError("no interfaces")

        coordinator = DiscoveryCoordinator(
            bus, PingOrchestrator(bus, pinger=FakePinger()), mdns_warmup=0, host_source=broken,
        )
        summary = await coordinator.run_scan()

        assert summary.status == "failed"
        assert summary.error_message == "no interfaces"
        assert coordinator.last_summary is summary
        assert coordinator.scanning is False

    @pytest.mark.asyncio
    async def test_stop_ends_running_sweep(self, bus):
        """Stopping mid-sweep should end the pass without reading the neighbor table."""
        pinger = FakePinger(delay=0.5)
        arp = FakeARPReader({"10.0.0.1": "AA:BB:CC:00:00:01"})
        orchestrator = PingOrchestrator(bus, pinger=pinger, max_concurrent=4)
        coordinator = DiscoveryCoordinator(bus, orchestrator, arp_reader=arp, mdns_warmup=0, arp_delay=0)
        hosts = [f"10.0.0.{i}" for i in range(1, 41)]

        scan = asyncio.create_task(coordinator.run_scan(hosts))
        await asyncio.sleep(0.1)
        await coordinator.stop()
        summary = await asyncio.wait_for(scan, timeout=2.0)

        assert summary.status == "stopped"
        assert summary.arp_entries == 0
        assert arp.populated == []
        assert orchestrator.progress.finished is True
        assert orchestrator.active_count == 0
        assert len(pinger.probed) == 4
        assert coordinator.scanning is False

    @pytest.mark.asyncio
    async def test_stop_during_warmup(self, bus):
        """Stopping during the provider warmup should skip the sweep."""
        pinger = FakePinger()
        coordinator = DiscoveryCoordinator(bus, PingOrchestrator(bus, pinger=pinger), mdns_warmup=5.0)

        scan = asyncio.create_task(coordinator.run_scan(["10.0.0.5"]))
        await asyncio.sleep(0.05)
        await coordinator.stop()
        summary = await asyncio.wait_for(scan, timeout=1.0)

        assert summary.status == "stopped"
        assert pinger.probed == []

    @pytest.mark.asyncio
    async def test_next_pass_after_stop(self, bus):
        pinger = FakePinger()
        coordinator = DiscoveryCoordinator(bus, PingOrchestrator(bus, pinger=pinger), mdns_warmup=0)
        await coordinator.stop()

        summary = await coordinator.run_scan(["10.0.0.5", "10.0.0.5"])
        assert summary.status == "completed"
        assert summary.hosts == 1
        assert pinger.probed == ["10.0.0.5"]


class TestProviders:
    """Tests for provider lifecycle."""

    @pytest.mark.asyncio
    async def test_started_once(self, bus):
        provider = FakeProvider("mdns")
        coordinator = DiscoveryCoordinator(
            bus, PingOrchestrator(bus, pinger=FakePinger()), providers=[provider], mdns_warmup=0,
        )

        await coordinator.run_scan(["10.0.0.5"])
        await coordinator.run_scan(["10.0.0.5"])
        assert provider.starts == 1

        await coordinator.stop()
        assert provider.stops == 1

    @pytest.mark.asyncio
    async def test_unavailable_and_failing_skipped(self, bus, caplog):
        """Should skip unavailable providers and survive one that fails to start."""
        missing = FakeProvider("missing", available=False)
        failing = FakeProvider("failing", fail=True)
        working = FakeProvider("working")
        coordinator = DiscoveryCoordinator(
            bus, PingOrchestrator(bus, pinger=FakePinger()),
            providers=[missing, failing, working], mdns_warmup=0,
        )

        summary = await coordinator.run_scan(["10.0.0.5"])
        assert summary.status == "completed"
        assert missing.starts == 0
        assert failing.starts == 1
        assert working.starts == 1
        assert "Provider missing unavailable" in caplog.text
        assert "Failed to start provider failing: cannot bind" in caplog.text

    @pytest.mark.asyncio
    async def test_stop_without_start(self, bus):
        provider = FakeProvider("mdns")
        coordinator = DiscoveryCoordinator(bus, PingOrchestrator(bus, pinger=FakePinger()), providers=[provider])
        await coordinator.stop()
        assert provider.stops == 0
