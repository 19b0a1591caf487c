"""
Type definitions for the LAN scanner.

These dataclasses define the core domain model for device discovery,
evidence merging and classification.
"""

from __future__ import annotations

import ipaddress
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

# Seconds a device stays "online" after its last positive signal
ONLINE_GRACE_SECONDS = 300


def now_utc() -> datetime:
    """Get current UTC timestamp (replaces deprecated datetime.utcnow())."""
    return datetime.now(timezone.utc)


def normalize_mac(mac: Optional[str]) -> Optional[str]:
    """
    Normalize a MAC address to upper-case, colon separated, zero padded octets.

    "a:b:c:d:e:f" and "0A-0B-0C-0D-0E-0F" both become "0A:0B:0C:0D:0E:0F".
    Returns None for empty input.
    """
    if mac is None:
        return None
    cleaned = mac.strip().upper().replace("-", ":")
    if not cleaned:
        return None
    return ":".join(part.zfill(2) for part in cleaned.split(":"))


class DeviceFormFactor(str, Enum):
    """Physical/functional device category."""
    ROUTER = "router"
    COMPUTER = "computer"
    LAPTOP = "laptop"
    TV = "tv"
    PRINTER = "printer"
    GAME_CONSOLE = "game_console"
    PHONE = "phone"
    TABLET = "tablet"
    ACCESSORY = "accessory"
    IOT = "iot"
    SERVER = "server"
    CAMERA = "camera"
    SPEAKER = "speaker"
    HUB = "hub"
    UNKNOWN = "unknown"


class ClassificationConfidence(str, Enum):
    """How sure the classifier is, ordered unknown < low < medium < high."""
    UNKNOWN = "unknown"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def priority(self) -> int:
        return _CONFIDENCE_PRIORITY[self]


_CONFIDENCE_PRIORITY = {
    ClassificationConfidence.UNKNOWN: 0,
    ClassificationConfidence.LOW: 1,
    ClassificationConfidence.MEDIUM: 2,
    ClassificationConfidence.HIGH: 3,
}


class DiscoverySource(str, Enum):
    """How evidence about the device was obtained."""
    MDNS = "mdns"               # DNS-SD browse/resolve
    ARP = "arp"                 # Neighbor table
    PING = "ping"               # ICMP/TCP reachability
    SSDP = "ssdp"
    PORT_SCAN = "port_scan"     # TCP connect probes
    HTTP_PROBE = "http_probe"   # HTTP fingerprinting
    SSH_PROBE = "ssh_probe"     # SSH host keys
    REVERSE_DNS = "reverse_dns"
    MANUAL = "manual"
    UNKNOWN = "unknown"


class ServiceType(str, Enum):
    """Normalized network service categories."""
    HTTP = "http"
    HTTPS = "https"
    SSH = "ssh"
    DNS = "dns"
    DHCP = "dhcp"
    SMB = "smb"
    FTP = "ftp"
    VNC = "vnc"
    AIRPLAY = "airplay"
    AIRPLAY_AUDIO = "airplay_audio"
    HOMEKIT = "homekit"
    CHROMECAST = "chromecast"
    SPOTIFY = "spotify"
    PRINTER = "printer"
    IPP = "ipp"
    TELNET = "telnet"
    OTHER = "other"


class PortStatus(str, Enum):
    """Observed TCP/UDP port state."""
    OPEN = "open"
    CLOSED = "closed"
    FILTERED = "filtered"


class DeviceField(str, Enum):
    """Device attributes tracked by change events (values are attribute names)."""
    HOSTNAME = "hostname"
    VENDOR = "vendor"
    MODEL_HINT = "model_hint"
    RTT_MILLIS = "rtt_millis"
    SERVICES = "services"
    OPEN_PORTS = "open_ports"
    DISCOVERY_SOURCES = "discovery_sources"
    CLASSIFICATION = "classification"
    IPS = "ips"
    PRIMARY_IP = "primary_ip"
    LAST_SEEN = "last_seen"
    FIRST_SEEN = "first_seen"
    MAC_ADDRESS = "mac_address"
    FINGERPRINTS = "fingerprints"
    IS_ONLINE_OVERRIDE = "is_online_override"


ALL_DEVICE_FIELDS = frozenset(DeviceField)


class MutationSource(str, Enum):
    """Which producer caused a change event."""
    MDNS = "mdns"
    PING = "ping"
    ARP = "arp"
    PORT_SCAN = "port_scan"
    HTTP_FINGERPRINT = "http_fingerprint"
    SSH_FINGERPRINT = "ssh_fingerprint"
    CLASSIFICATION = "classification"
    PERSISTENCE_RESTORE = "persistence_restore"
    OFFLINE = "offline"


@dataclass
class NetworkService:
    """A service advertised by (or inferred for) a device."""
    name: str
    type: ServiceType
    raw_type: Optional[str] = None   # e.g. "_ssh._tcp."
    port: Optional[int] = None
    is_standard_port: bool = False

    @property
    def key(self) -> tuple[str, int]:
        return (self.type.value, self.port if self.port is not None else -1)


@dataclass
class Port:
    """A probed port on a device."""
    number: int
    transport: str = "tcp"
    service_name: str = ""
    description: str = ""
    status: PortStatus = PortStatus.OPEN
    last_seen_open: Optional[datetime] = None

    @property
    def key(self) -> tuple[int, str]:
        return (self.number, self.transport)


@dataclass
class Classification:
    """Inferred device category with the evidence behind it."""
    form_factor: Optional[DeviceFormFactor]
    raw_type: Optional[str]
    confidence: ClassificationConfidence
    reason: str
    sources: list[str] = field(default_factory=list)


@dataclass
class Device:
    """
    Canonical record for one network endpoint.

    The id is computed once when the record is created (MAC, then primary
    IP, then hostname, then a random UUID) and is never recomputed.
    """
    id: str = ""
    primary_ip: Optional[str] = None
    ips: set[str] = field(default_factory=set)
    hostname: Optional[str] = None
    mac_address: Optional[str] = None
    vendor: Optional[str] = None
    model_hint: Optional[str] = None
    classification: Optional[Classification] = None
    discovery_sources: set[DiscoverySource] = field(default_factory=set)
    rtt_millis: Optional[float] = None
    services: list[NetworkService] = field(default_factory=list)
    open_ports: list[Port] = field(default_factory=list)
    fingerprints: dict[str, str] = field(default_factory=dict)
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None

    # None = derive from last_seen, False = forced offline
    is_online_override: Optional[bool] = None

    def __post_init__(self) -> None:
        if not self.id:
            self.id = device_identity(self.mac_address, self.primary_ip, self.hostname)

    def is_online_at(self, now: datetime, grace_seconds: float = ONLINE_GRACE_SECONDS) -> bool:
        """Online state at a given instant."""
        if self.is_online_override is not None:
            return self.is_online_override
        if self.last_seen is None:
            return False
        return now - self.last_seen <= timedelta(seconds=grace_seconds)

    @property
    def is_online(self) -> bool:
        return self.is_online_at(now_utc())

    @property
    def best_display_ip(self) -> Optional[str]:
        """Primary IP, else private IPv4, else any IPv4, else IPv6."""
        if self.primary_ip:
            return self.primary_ip
        private, public, v6 = [], [], []
        for ip in sorted(self.ips):
            try:
                addr = ipaddress.ip_address(ip)
            except ValueError:
                continue
            if addr.version == 6:
                v6.append(ip)
            elif addr.is_private:
                private.append(ip)
            else:
                public.append(ip)
        for bucket in (private, public, v6):
            if bucket:
                return bucket[0]
        return None


def device_identity(
    mac_address: Optional[str],
    primary_ip: Optional[str],
    hostname: Optional[str],
) -> str:
    """Compute a stable device id from the strongest available identifier."""
    mac = normalize_mac(mac_address)
    if mac:
        return mac
    if primary_ip and primary_ip.strip():
        return primary_ip.strip()
    if hostname and hostname.strip():
        return hostname.strip()
    return str(uuid.uuid4())


class PingStatus(str, Enum):
    """Outcome of a single reachability probe."""
    SUCCESS = "success"
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    ERROR = "error"


@dataclass
class PingMeasurement:
    """One reachability probe result."""
    host: str
    sequence: int
    status: PingStatus
    rtt_millis: Optional[float] = None  # only for SUCCESS
    error: Optional[str] = None         # only for ERROR
    timestamp: datetime = field(default_factory=now_utc)


@dataclass
class DeviceChange:
    """A field-level change to one device."""
    before: Optional[Device]
    after: Device
    changed: set[DeviceField]
    source: MutationSource


class MutationKind(str, Enum):
    """Kinds of events carried by the mutation bus."""
    SNAPSHOT = "snapshot"
    CHANGE = "change"
    REACHABILITY = "reachability"


@dataclass
class DeviceMutation:
    """An event on the mutation bus or on the store's outbound stream."""
    kind: MutationKind
    devices: list[Device] = field(default_factory=list)
    change: Optional[DeviceChange] = None
    measurement: Optional[PingMeasurement] = None

    @classmethod
    def snapshot(cls, devices: list[Device]) -> "DeviceMutation":
        return cls(kind=MutationKind.SNAPSHOT, devices=list(devices))

    @classmethod
    def changed(
        cls,
        after: Device,
        changed: set[DeviceField],
        source: MutationSource,
        before: Optional[Device] = None,
    ) -> "DeviceMutation":
        return cls(
            kind=MutationKind.CHANGE,
            change=DeviceChange(before=before, after=after, changed=set(changed), source=source),
        )

    @classmethod
    def reachability(cls, measurement: PingMeasurement) -> "DeviceMutation":
        return cls(kind=MutationKind.REACHABILITY, measurement=measurement)
