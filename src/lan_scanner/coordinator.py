"""
Discovery coordinator.

Runs one discovery pass: start the long-running providers, let mDNS warm
up, sweep the candidate hosts with the ping orchestrator, then read the
neighbor table and publish MAC evidence for every answering host.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Sequence

from ._types import Device, DeviceField, DeviceMutation, DiscoverySource, MutationSource, now_utc
from .discovery import ARPTableReader, DiscoveryProvider, PingOrchestrator
from .mutation_bus import DeviceMutationBus
from .subnet import DEFAULT_MAX_HOSTS, enumerate_hosts, primary_ipv4

logger = logging.getLogger(__name__)

_ARP_FIELDS = {DeviceField.MAC_ADDRESS, DeviceField.DISCOVERY_SOURCES, DeviceField.LAST_SEEN}


@dataclass
class ScanSummary:
    """Outcome of one discovery pass."""
    started_at: datetime = field(default_factory=now_utc)
    completed_at: Optional[datetime] = None
    hosts: int = 0
    reachable: int = 0
    arp_entries: int = 0
    status: str = "running"  # running, completed, stopped, failed
    triggered_by: str = "manual"
    error_message: Optional[str] = None


def auto_hosts(max_hosts: int = DEFAULT_MAX_HOSTS) -> list[str]:
    """Candidate hosts on the primary interface's /24."""
    interface = primary_ipv4()
    if interface is None:
        logger.warning("No LAN interface found for host enumeration")
        return []
    return enumerate_hosts(interface.ip, interface.netmask, max_hosts)


class DiscoveryCoordinator:
    """
    Orchestrates providers and sweeps.

    Args:
        bus: Mutation bus shared with the snapshot store
        orchestrator: Ping sweep runner
        providers: Long-running providers started with the first pass
        arp_reader: Neighbor table reader (None disables MAC collection)
        mdns_warmup: Seconds to let mDNS answers arrive before the sweep
        max_hosts: Cap on auto-enumerated hosts
        arp_delay: Seconds to wait before reading the neighbor table
        host_source: Auto-enumeration function (for tests)
        ping_enabled: Sweep hosts before reading the neighbor table
    """

    def __init__(
        self,
        bus: DeviceMutationBus,
        orchestrator: PingOrchestrator,
        providers: Sequence[DiscoveryProvider] = (),
        arp_reader: Optional[ARPTableReader] = None,
        mdns_warmup: float = 2.0,
        max_hosts: int = DEFAULT_MAX_HOSTS,
        arp_delay: float = 0.2,
        host_source: Callable[[int], list[str]] = auto_hosts,
        ping_enabled: bool = True,
    ):
        self.bus = bus
        self.orchestrator = orchestrator
        self.providers = list(providers)
        self.arp_reader = arp_reader
        self.mdns_warmup = mdns_warmup
        self.max_hosts = max_hosts
        self.arp_delay = arp_delay
        self.host_source = host_source
        self.ping_enabled = ping_enabled
        self.last_summary: Optional[ScanSummary] = None
        self._providers_started = False
        self._stop_requested = asyncio.Event()
        self._scan_lock = asyncio.Lock()

    @property
    def scanning(self) -> bool:
        return self._scan_lock.locked()

    async def start_providers(self) -> None:
        if self._providers_started:
            return
        self._providers_started = True
        for provider in self.providers:
            if not await provider.is_available():
                logger.warning(f"Provider {provider.name} unavailable, skipping")
                continue
            try:
                await provider.start()
                logger.info(f"Provider {provider.name} started")
            except Exception as e:
                logger.error(f"Failed to start provider {provider.name}: {e}")
        if self.mdns_warmup > 0:
            try:
                await asyncio.wait_for(self._stop_requested.wait(), timeout=self.mdns_warmup)
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        """Stop providers and end any running pass."""
        self._stop_requested.set()
        await self.orchestrator.stop()
        if not self._providers_started:
            return
        for provider in self.providers:
            try:
                await provider.stop()
            except Exception as e:
                logger.error(f"Failed to stop provider {provider.name}: {e}")
        self._providers_started = False

    async def run_scan(
        self,
        hosts: Optional[Sequence[str]] = None,
        triggered_by: str = "manual",
    ) -> ScanSummary:
        """
        Run one discovery pass.

        Args:
            hosts: Hosts to sweep (auto-enumerated when empty)
            triggered_by: Who triggered the scan

        Returns:
            ScanSummary for this pass
        """
        async with self._scan_lock:
            summary = ScanSummary(triggered_by=triggered_by)
            self.last_summary = summary
            self._stop_requested.clear()
            try:
                await self.start_providers()

                targets = list(dict.fromkeys(hosts or []))
                if not targets:
                    targets = self.host_source(self.max_hosts)
                summary.hosts = len(targets)

                if self.ping_enabled and targets and not self._stop_requested.is_set():
                    self.orchestrator.begin(len(targets))
                    logger.info(f"Sweeping {len(targets)} hosts")
                    await self.orchestrator.enqueue(targets)
                    await self.orchestrator.wait_finished()
                    summary.reachable = self.orchestrator.progress.succeeded

                if self._stop_requested.is_set():
                    summary.status = "stopped"
                else:
                    if self.arp_reader is not None and targets:
                        summary.arp_entries = await self.collect_arp(targets)
                    summary.status = "completed"
            except Exception as e:
                logger.error(f"Discovery pass failed: {e}")
                summary.status = "failed"
                summary.error_message = str(e)
            summary.completed_at = now_utc()
            logger.info(
                f"Discovery pass {summary.status}: {summary.reachable}/{summary.hosts} reachable, "
                f"{summary.arp_entries} MAC addresses"
            )
            return summary

    async def collect_arp(self, hosts: Sequence[str]) -> int:
        """Publish neighbor-table MACs for swept hosts; returns how many."""
        await self.arp_reader.populate_cache(list(hosts))
        mapping = await self.arp_reader.resolve(set(hosts), delay=self.arp_delay)
        for ip, mac in mapping.items():
            evidence = Device(
                primary_ip=ip,
                ips={ip},
                mac_address=mac,
                discovery_sources={DiscoverySource.ARP},
                last_seen=now_utc(),
            )
            self.bus.publish(DeviceMutation.changed(evidence, _ARP_FIELDS, MutationSource.ARP))
        return len(mapping)
