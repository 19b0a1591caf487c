"""
DNS-SD (Bonjour/mDNS) discovery.

The browser decides which service types to look at: a curated list plus
whatever the `_services._dns-sd._udp` meta query reveals. The resolver
browses each type, resolves instances (with a per-instance cooldown) and
turns every resolved instance into a single-service device change.
Browser and resolver are connected by an asyncio.Queue of types.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from zeroconf import ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from .._types import Device, DeviceMutation, DeviceField, DiscoverySource, MutationSource, now_utc
from ..mutation_bus import DeviceMutationBus
from ..services import make_service
from .base import DiscoveryProvider

logger = logging.getLogger(__name__)

META_QUERY_TYPE = "_services._dns-sd._udp."
DEFAULT_DOMAIN = "local."
DEFAULT_MAX_DYNAMIC_TYPES = 64
DEFAULT_RESOLVE_COOLDOWN = 12.0
DEFAULT_RESOLVE_TIMEOUT = 5.0

VALID_SERVICE_TYPE = re.compile(r"^_[A-Za-z0-9-]+\._(tcp|udp)\.$")

# Types still browsable where arbitrary browsing is restricted
CONSTRAINED_PLATFORM_TYPES = [
    META_QUERY_TYPE,
    "_companion-link._tcp.",
    "_device-info._tcp.",
    "_remotepairing._tcp.",
    "_apple-mobdev2._tcp.",
    "_touch-able._tcp.",
    "_sleep-proxy._udp.",
    "_workstation._tcp.",
    "_afp._tcp.",
]

_MDNS_FIELDS = {
    DeviceField.HOSTNAME,
    DeviceField.IPS,
    DeviceField.PRIMARY_IP,
    DeviceField.SERVICES,
    DeviceField.DISCOVERY_SOURCES,
    DeviceField.FINGERPRINTS,
    DeviceField.LAST_SEEN,
}


def normalize_service_type(raw: str) -> Optional[str]:
    """
    Lower-case, dot-terminated service type without the domain.

    "_HTTP._tcp.local." -> "_http._tcp."; returns None for anything that
    is not a TCP or UDP service type.
    """
    value = raw.strip().lower()
    if not value:
        return None
    if not value.endswith("."):
        value += "."
    if value.endswith("." + DEFAULT_DOMAIN):
        value = value[: -len(DEFAULT_DOMAIN)]
    if "._tcp." not in value and "._udp." not in value:
        return None
    return value


def _fqdn(service_type: str, domain: str = DEFAULT_DOMAIN) -> str:
    return service_type + domain


@dataclass
class ResolvedService:
    """One resolved DNS-SD instance."""
    name: str
    raw_type: str
    ips: list[str]
    hostname: Optional[str] = None
    port: Optional[int] = None
    txt: dict[str, str] = field(default_factory=dict)
    domain: str = DEFAULT_DOMAIN


def decode_txt(properties: dict) -> dict[str, str]:
    """Decode zeroconf TXT properties; keys without values are dropped."""
    txt = {}
    for key, value in (properties or {}).items():
        if isinstance(key, bytes):
            key = key.decode("utf-8", errors="replace")
        if value is None:
            continue
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        if key:
            txt[key] = value
    return txt


def order_addresses(addresses: Iterable[str]) -> list[str]:
    """IPv4 first, then IPv6; duplicates and unparsable entries removed."""
    v4, v6 = [], []
    for address in addresses:
        try:
            parsed = ipaddress.ip_address(address)
        except ValueError:
            continue
        bucket = v4 if parsed.version == 4 else v6
        if address not in bucket:
            bucket.append(address)
    return v4 + v6


def device_from_resolved(service: ResolvedService) -> Device:
    """Single-service device built from a resolved instance."""
    primary = next((ip for ip in service.ips if ":" not in ip), service.ips[0] if service.ips else None)
    return Device(
        primary_ip=primary,
        ips=set(service.ips),
        hostname=service.hostname,
        services=[make_service(service.raw_type, service.port)],
        discovery_sources={DiscoverySource.MDNS},
        fingerprints=dict(service.txt),
        last_seen=now_utc(),
    )


class BonjourBrowser:
    """
    Chooses which service types to browse.

    Args:
        types: Queue receiving each accepted type exactly once
        curated_types: Types browsed unconditionally
        allow_list: When set, only these types are ever emitted
        max_dynamic_types: Cap on types learned from the meta query
    """

    def __init__(
        self,
        types: asyncio.Queue,
        curated_types: Iterable[str],
        allow_list: Optional[Iterable[str]] = None,
        max_dynamic_types: int = DEFAULT_MAX_DYNAMIC_TYPES,
    ):
        self.types = types
        self.curated_types = [t for t in (normalize_service_type(c) for c in curated_types) if t]
        self.allow_list = (
            {t for t in (normalize_service_type(a) for a in allow_list) if t} if allow_list is not None else None
        )
        self.max_dynamic_types = max_dynamic_types
        self._emitted: set[str] = set()
        self._dynamic_count = 0
        self._meta_browser: Optional[AsyncServiceBrowser] = None

    @property
    def emitted(self) -> set[str]:
        return set(self._emitted)

    def emit(self, raw_type: str, dynamic: bool = False) -> bool:
        """Queue a type unless invalid, disallowed, over the cap or already seen."""
        service_type = normalize_service_type(raw_type)
        if service_type is None or not VALID_SERVICE_TYPE.match(service_type):
            logger.debug(f"Ignoring invalid service type {raw_type!r}")
            return False
        if service_type in self._emitted:
            return False
        if self.allow_list is not None and service_type not in self.allow_list:
            return False
        if dynamic:
            if self._dynamic_count >= self.max_dynamic_types:
                logger.debug(f"Dynamic type cap reached, skipping {service_type}")
                return False
            self._dynamic_count += 1
        self._emitted.add(service_type)
        self.types.put_nowait(service_type)
        return True

    def on_meta_result(self, name: str) -> bool:
        """A meta-query answer such as "_http._tcp.local." names a service type."""
        if not name.startswith("_"):
            return False
        if not name.endswith("."):
            name += "."
        return self.emit(name, dynamic=True)

    def start(self, zeroconf: Zeroconf) -> None:
        for service_type in self.curated_types:
            self.emit(service_type)
        self._meta_browser = AsyncServiceBrowser(
            zeroconf, _fqdn(META_QUERY_TYPE), handlers=[self._on_state_change],
        )

    def _on_state_change(
        self,
        zeroconf: Zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        if state_change == ServiceStateChange.Added:
            self.on_meta_result(name)

    async def stop(self) -> None:
        if self._meta_browser is not None:
            await self._meta_browser.async_cancel()
            self._meta_browser = None


class BonjourResolver:
    """
    Browses queued types and resolves their instances.

    Args:
        bus: Where resolved devices are published
        types: Queue fed by the browser
        cooldown: Minimum seconds between resolves of one instance
        resolve_timeout: Per-instance resolve timeout in seconds
        clock: Monotonic time source for the cooldown
    """

    def __init__(
        self,
        bus: DeviceMutationBus,
        types: asyncio.Queue,
        cooldown: float = DEFAULT_RESOLVE_COOLDOWN,
        resolve_timeout: float = DEFAULT_RESOLVE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.bus = bus
        self.types = types
        self.cooldown = cooldown
        self.resolve_timeout = resolve_timeout
        self._clock = clock
        self._browsers: dict[str, AsyncServiceBrowser] = {}
        self._last_resolved: dict[str, float] = {}
        self._pending: set[asyncio.Task] = set()
        self._zeroconf: Optional[AsyncZeroconf] = None
        self._stopped = False

    @property
    def browsed_types(self) -> set[str]:
        return set(self._browsers)

    def should_resolve(self, name: str, service_type: str, domain: str = DEFAULT_DOMAIN) -> bool:
        """Apply the per-instance cooldown; records the attempt when allowed."""
        key = f"{name}.{service_type}{domain}"
        now = self._clock()
        last = self._last_resolved.get(key)
        if last is not None and now - last < self.cooldown:
            return False
        self._last_resolved[key] = now
        return True

    async def run(self, zeroconf: AsyncZeroconf) -> None:
        """Create one browser per queued type until cancelled."""
        self._zeroconf = zeroconf
        while True:
            service_type = await self.types.get()
            if service_type in self._browsers or service_type == META_QUERY_TYPE:
                continue
            self._browsers[service_type] = AsyncServiceBrowser(
                zeroconf.zeroconf, _fqdn(service_type), handlers=[self._on_state_change],
            )
            logger.debug(f"Browsing {service_type}")

    def _on_state_change(
        self,
        zeroconf: Zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        if self._stopped or state_change == ServiceStateChange.Removed:
            return
        bare_type = normalize_service_type(service_type)
        if bare_type is None or not self.should_resolve(name, bare_type):
            return
        task = asyncio.ensure_future(self._resolve(service_type, name))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _resolve(self, service_type: str, name: str) -> None:
        if self._zeroconf is None:
            return
        info = AsyncServiceInfo(service_type, name)
        try:
            found = await info.async_request(self._zeroconf.zeroconf, int(self.resolve_timeout * 1000))
        except Exception as e:
            logger.debug(f"Resolve of {name} failed: {e}")
            return
        if not found:
            logger.debug(f"Resolve of {name} timed out")
            return
        resolved = self.to_resolved(name, service_type, info)
        if resolved is not None:
            self.publish(resolved)

    @staticmethod
    def to_resolved(name: str, service_type: str, info: AsyncServiceInfo) -> Optional[ResolvedService]:
        ips = order_addresses(info.parsed_addresses())
        if not ips:
            return None
        hostname = info.server.rstrip(".") if info.server else None
        instance = name[: -len(service_type)].rstrip(".") if name.endswith(service_type) else name
        return ResolvedService(
            name=instance,
            raw_type=normalize_service_type(service_type) or service_type,
            ips=ips,
            hostname=hostname or None,
            port=info.port or None,
            txt=decode_txt(info.properties),
        )

    def publish(self, service: ResolvedService) -> None:
        if self._stopped or not service.ips:
            return
        device = device_from_resolved(service)
        self.bus.publish(DeviceMutation.changed(device, _MDNS_FIELDS, MutationSource.MDNS))

    async def stop(self) -> None:
        self._stopped = True
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        for browser in self._browsers.values():
            await browser.async_cancel()
        self._browsers.clear()


class BonjourDiscoveryProvider(DiscoveryProvider):
    """
    mDNS/DNS-SD provider built on zeroconf's asyncio API.

    Args:
        bus: Where resolved devices are published
        curated_types: Types browsed unconditionally
        allow_list: Optional restriction on browsed types
        max_dynamic_types: Cap on meta-query types
        cooldown: Per-instance resolve cooldown
        resolve_timeout: Per-instance resolve timeout
    """

    def __init__(
        self,
        bus: DeviceMutationBus,
        curated_types: Iterable[str],
        allow_list: Optional[Iterable[str]] = None,
        max_dynamic_types: int = DEFAULT_MAX_DYNAMIC_TYPES,
        cooldown: float = DEFAULT_RESOLVE_COOLDOWN,
        resolve_timeout: float = DEFAULT_RESOLVE_TIMEOUT,
    ):
        self._types: asyncio.Queue = asyncio.Queue()
        self.browser = BonjourBrowser(self._types, curated_types, allow_list, max_dynamic_types)
        self.resolver = BonjourResolver(bus, self._types, cooldown, resolve_timeout)
        self._zeroconf: Optional[AsyncZeroconf] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def name(self) -> str:
        return "bonjour"

    async def start(self) -> None:
        self._zeroconf = AsyncZeroconf()
        self.browser.start(self._zeroconf.zeroconf)
        self._task = asyncio.create_task(self.resolver.run(self._zeroconf), name="bonjour-resolver")
        logger.info(f"Bonjour discovery started with {len(self.browser.curated_types)} curated types")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.browser.stop()
        await self.resolver.stop()
        if self._zeroconf is not None:
            await self._zeroconf.async_close()
            self._zeroconf = None
