"""
HTTP fingerprinting.

Listens to the snapshot store's change stream and, for devices with web
ports or services, collects the Server header, auth realm, page title,
favicon hash and TLS certificate CN. Only keys whose values changed are
published back to the mutation bus.
"""

from __future__ import annotations

import asyncio
import hashlib
import html
import logging
import re
import time
from typing import TYPE_CHECKING, Callable, Optional

import aiohttp
from cryptography import x509
from cryptography.x509.oid import NameOID

from .._types import (
    Device,
    DeviceChange,
    DeviceField,
    DeviceMutation,
    DiscoverySource,
    MutationKind,
    MutationSource,
    PortStatus,
    ServiceType,
    now_utc,
)
from ..mutation_bus import DeviceMutationBus, MutationSubscription
from .base import DiscoveryProvider

if TYPE_CHECKING:
    from ..snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = 1800.0
DEFAULT_TIMEOUT = 4.0
MAX_FAVICON_BYTES = 131072
MAX_BODY_BYTES = 65536

HTTPS_PORTS = {443, 8443}
HTTP_PORTS = {80, 8080, 8008, 8000}

_TITLE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_REALM = re.compile(r'realm="([^"]*)"', re.IGNORECASE)

_TRIGGER_FIELDS = {DeviceField.OPEN_PORTS, DeviceField.SERVICES}
_PROBE_FIELDS = {DeviceField.FINGERPRINTS, DeviceField.DISCOVERY_SOURCES, DeviceField.LAST_SEEN}


def parse_title(body: str) -> Optional[str]:
    match = _TITLE.search(body)
    if not match:
        return None
    title = " ".join(html.unescape(match.group(1)).split())
    return title[:200] or None


def parse_realm(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    match = _REALM.search(header)
    return match.group(1) if match and match.group(1) else None


def certificate_common_name(der: bytes) -> Optional[str]:
    """Subject CN of a DER certificate, if it has one."""
    try:
        cert = x509.load_der_x509_certificate(der)
    except ValueError:
        return None
    names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not names:
        return None
    value = names[0].value
    return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value


def http_targets(device: Device) -> list[tuple[str, int]]:
    """(scheme, port) pairs worth probing, in discovery order."""
    targets: list[tuple[str, int]] = []

    def add(scheme: str, port: int) -> None:
        if (scheme, port) not in targets:
            targets.append((scheme, port))

    services_by_port = {s.port: s.type for s in device.services if s.port is not None}
    for port in device.open_ports:
        if port.status != PortStatus.OPEN:
            continue
        name = (port.service_name or "").lower()
        if port.number in HTTPS_PORTS or "https" in name:
            add("https", port.number)
        elif port.number in HTTP_PORTS or "http" in name:
            add("http", port.number)
        elif services_by_port.get(port.number) == ServiceType.HTTPS:
            add("https", port.number)
        elif services_by_port.get(port.number) == ServiceType.HTTP:
            add("http", port.number)

    for service in device.services:
        if service.port is None:
            continue
        if service.type == ServiceType.HTTPS:
            add("https", service.port)
        elif service.type == ServiceType.HTTP:
            add("http", service.port)
    return targets


def probe_host(device: Device) -> Optional[str]:
    return device.best_display_ip or device.primary_ip or device.hostname


def should_fingerprint(change: DeviceChange) -> bool:
    if change.source == MutationSource.HTTP_FINGERPRINT:
        return False
    return change.before is None or bool(change.changed & _TRIGGER_FIELDS)


class HTTPFingerprinter(DiscoveryProvider):
    """
    Probe web endpoints of devices and record what they reveal.

    Args:
        store: Snapshot store whose change stream triggers probes
        bus: Where fingerprint deltas are published
        cooldown: Minimum seconds between probes of one endpoint
        timeout: Total request timeout in seconds
        clock: Monotonic time source for the cooldown
    """

    def __init__(
        self,
        store: "SnapshotStore",
        bus: DeviceMutationBus,
        cooldown: float = DEFAULT_COOLDOWN,
        timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.bus = bus
        self.cooldown = cooldown
        self.timeout = timeout
        self._clock = clock
        self._last_probe: dict[tuple[str, str, str, int], float] = {}
        self._session: Optional[aiohttp.ClientSession] = None
        self._subscription: Optional[MutationSubscription] = None
        self._listener: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._stopped = False

    @property
    def name(self) -> str:
        return "http_fingerprint"

    async def start(self) -> None:
        self._stopped = False
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            connector=aiohttp.TCPConnector(ssl=False),
        )
        self._subscription = self.store.mutation_stream(include_initial_snapshot=False)
        self._listener = asyncio.create_task(self._listen(self._subscription), name="http-fingerprint-listener")
        logger.info("HTTP fingerprinter started")

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
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _listen(self, subscription: MutationSubscription) -> None:
        async for mutation in subscription:
            if mutation.kind != MutationKind.CHANGE or mutation.change is None:
                continue
            if not should_fingerprint(mutation.change):
                continue
            device = mutation.change.after
            host = probe_host(device)
            if not host:
                continue
            for scheme, port in http_targets(device):
                if not self.claim(device.id, host, scheme, port):
                    continue
                task = asyncio.create_task(self.probe_device(device, host, scheme, port))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    def claim(self, device_id: str, host: str, scheme: str, port: int) -> bool:
        """Reserve an endpoint probe unless it ran within the cooldown."""
        key = (device_id, host, scheme, port)
        now = self._clock()
        last = self._last_probe.get(key)
        if last is not None and now - last < self.cooldown:
            return False
        self._last_probe[key] = now
        return True

    async def fingerprint(self, host: str, scheme: str, port: int) -> dict[str, str]:
        """
        Collect fingerprint entries from one endpoint.

        Request failures are logged and yield whatever was gathered.
        """
        if self._session is None:
            raise RuntimeError("HTTPFingerprinter.start() must be called first")
        url_host = f"[{host}]" if ":" in host else host
        base = f"{scheme}://{url_host}:{port}"
        entries: dict[str, str] = {}

        try:
            async with self._session.get(base + "/", allow_redirects=True) as response:
                if server := response.headers.get("Server"):
                    entries["http.server"] = server
                if realm := parse_realm(response.headers.get("WWW-Authenticate")):
                    entries["http.realm"] = realm
                if scheme == "https":
                    if cn := self._peer_common_name(response):
                        entries["https.cert.cn"] = cn
                body = await response.content.read(MAX_BODY_BYTES)
                if title := parse_title(body.decode(response.charset or "utf-8", errors="replace")):
                    entries["http.title"] = title
        except (aiohttp.ClientError, asyncio.TimeoutError, LookupError) as e:
            logger.debug(f"HTTP probe of {base} failed: {e}")
            return entries

        try:
            async with self._session.get(base + "/favicon.ico") as response:
                if response.status < 400:
                    data = await response.content.read(MAX_FAVICON_BYTES + 1)
                    if data and len(data) <= MAX_FAVICON_BYTES:
                        entries["http.favicon.sha256"] = hashlib.sha256(data).hexdigest()
                        entries["http.favicon.size"] = str(len(data))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Favicon fetch from {base} failed: {e}")
        return entries

    @staticmethod
    def _peer_common_name(response: aiohttp.ClientResponse) -> Optional[str]:
        connection = response.connection
        transport = connection.transport if connection is not None else None
        if transport is None:
            return None
        ssl_object = transport.get_extra_info("ssl_object")
        if ssl_object is None:
            return None
        der = ssl_object.getpeercert(binary_form=True)
        return certificate_common_name(der) if der else None

    async def probe_device(self, device: Device, host: str, scheme: str, port: int) -> Optional[Device]:
        """
        Fingerprint one endpoint and publish the changed keys.

        Returns:
            The published evidence, or None if nothing new was learned
        """
        entries = await self.fingerprint(host, scheme, port)
        current = self.store.get_device(device.id) or device
        delta = {k: v for k, v in entries.items() if current.fingerprints.get(k) != v}
        if not delta or self._stopped:
            return None

        logger.debug(f"HTTP fingerprint of {host}:{port} learned {sorted(delta)}")
        evidence = Device(
            id=device.id,
            primary_ip=device.primary_ip,
            ips=set(device.ips),
            fingerprints=delta,
            discovery_sources={DiscoverySource.HTTP_PROBE},
            last_seen=now_utc(),
        )
        self.bus.publish(DeviceMutation.changed(evidence, _PROBE_FIELDS, MutationSource.HTTP_FINGERPRINT))
        return evidence
