"""
TCP port probing.

Listens to the snapshot store's change stream and probes a small port list
on every newly addressed device. Open ports come back onto the mutation
bus as a port_scan change.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from .._types import (
    Device,
    DeviceChange,
    DeviceField,
    DeviceMutation,
    DiscoverySource,
    MutationKind,
    MutationSource,
    Port,
    PortStatus,
    now_utc,
)
from ..mutation_bus import DeviceMutationBus, MutationSubscription
from ..services import WELL_KNOWN_PORTS, service_for_port
from .base import DiscoveryProvider

if TYPE_CHECKING:
    from ..snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_PORTS = (22, 80, 443)

_TRIGGER_FIELDS = {DeviceField.PRIMARY_IP, DeviceField.IPS}
_SCAN_FIELDS = {
    DeviceField.OPEN_PORTS,
    DeviceField.SERVICES,
    DeviceField.DISCOVERY_SOURCES,
    DeviceField.LAST_SEEN,
    DeviceField.IS_ONLINE_OVERRIDE,
}


def should_scan(change: DeviceChange) -> bool:
    """New devices and address changes trigger a scan; our own results never do."""
    if change.source == MutationSource.PORT_SCAN:
        return False
    return change.before is None or bool(change.changed & _TRIGGER_FIELDS)


def scan_hosts(device: Device) -> list[str]:
    """Probe targets: primary IP first, then other IPv4s; no IPv6, loopback or link-local."""
    ordered = []
    if device.primary_ip:
        ordered.append(device.primary_ip)
    ordered.extend(sorted(ip for ip in device.ips if ip != device.primary_ip))
    return [
        ip for ip in ordered
        if ":" not in ip and not ip.startswith("127.") and not ip.startswith("169.254.")
    ]


def open_port_entry(number: int) -> Port:
    known = WELL_KNOWN_PORTS.get(number)
    return Port(
        number=number,
        transport="tcp",
        service_name=known[1] if known else f"Port {number}",
        description=known[1] if known else f"Open TCP port {number}",
        status=PortStatus.OPEN,
        last_seen_open=now_utc(),
    )


class PortScanner(DiscoveryProvider):
    """
    Connect-scan a few TCP ports on devices as they appear.

    Args:
        store: Snapshot store whose change stream triggers scans
        bus: Where results are published
        ports: Ports to probe, in order
        timeout: Per-connect timeout in seconds
        rescan_interval: Minimum seconds between scans of a (device, host)
        clock: Monotonic time source for throttling
    """

    def __init__(
        self,
        store: "SnapshotStore",
        bus: DeviceMutationBus,
        ports: Iterable[int] = DEFAULT_PORTS,
        timeout: float = 1.5,
        rescan_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.bus = bus
        self.ports = list(ports)
        self.timeout = timeout
        self.rescan_interval = rescan_interval
        self._clock = clock
        self._in_flight: set[tuple[str, str]] = set()
        self._last_scan: dict[tuple[str, str], float] = {}
        self._tasks: set[asyncio.Task] = set()
        self._listener: Optional[asyncio.Task] = None
        self._subscription: Optional[MutationSubscription] = None
        self._stopped = False

    @property
    def name(self) -> str:
        return "port_scan"

    async def start(self) -> None:
        self._stopped = False
        self._subscription = self.store.mutation_stream(include_initial_snapshot=False)
        self._listener = asyncio.create_task(self._listen(self._subscription), name="port-scan-listener")
        logger.info(f"Port scanner started for ports {self.ports}")

    async def stop(self) -> None:
        self._stopped = True
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        tasks = list(self._tasks)
        if self._listener is not None:
            tasks.append(self._listener)
            self._listener = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _listen(self, subscription: MutationSubscription) -> None:
        async for mutation in subscription:
            if mutation.kind != MutationKind.CHANGE or mutation.change is None:
                continue
            if not should_scan(mutation.change):
                continue
            device = mutation.change.after
            for host in scan_hosts(device):
                if not self.claim(device.id, host):
                    continue
                task = asyncio.create_task(self._scan_and_release(device, host))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    def claim(self, device_id: str, host: str) -> bool:
        """Reserve a (device, host) scan unless in flight or scanned recently."""
        key = (device_id, host)
        if key in self._in_flight:
            return False
        now = self._clock()
        last = self._last_scan.get(key)
        if last is not None and now - last < self.rescan_interval:
            return False
        self._in_flight.add(key)
        self._last_scan[key] = now
        return True

    async def _scan_and_release(self, device: Device, host: str) -> None:
        try:
            await self.scan(device, host)
        finally:
            self._in_flight.discard((device.id, host))

    async def probe(self, host: str, port: int) -> bool:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=self.timeout)
        except (asyncio.TimeoutError, OSError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def scan(self, device: Device, host: str) -> Optional[Device]:
        """
        Probe the port list sequentially and publish any open ports.

        Returns:
            The published evidence, or None when nothing was open
        """
        open_ports = []
        for port in self.ports:
            if await self.probe(host, port):
                open_ports.append(port)
        if not open_ports or self._stopped:
            return None

        logger.debug(f"Open ports on {host}: {open_ports}")
        services = [s for s in (service_for_port(p) for p in open_ports) if s is not None]
        evidence = Device(
            id=device.id,
            primary_ip=device.primary_ip or host,
            ips=set(device.ips) | {host},
            hostname=device.hostname,
            mac_address=device.mac_address,
            vendor=device.vendor,
            model_hint=device.model_hint,
            discovery_sources={DiscoverySource.PORT_SCAN},
            open_ports=[open_port_entry(p) for p in open_ports],
            services=services,
            last_seen=now_utc(),
            is_online_override=None,
        )
        self.bus.publish(DeviceMutation.changed(evidence, _SCAN_FIELDS, MutationSource.PORT_SCAN))
        return evidence
