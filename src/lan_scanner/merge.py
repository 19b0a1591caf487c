"""
Evidence merge and sanitization.

Pure functions over Device records: address sanitization, the merge
precedence contract, field-level diffs, the classification content
fingerprint and the canonical device ordering.
"""

from __future__ import annotations

import copy
import ipaddress
import logging
from enum import Enum
from typing import Iterable, Optional, Sequence

from ._types import (
    Device,
    DeviceField,
    NetworkService,
    Port,
    PortStatus,
    normalize_mac,
    now_utc,
)
from .oui_lookup import OUILookup
from .vendor_model import extract_vendor_model

logger = logging.getLogger(__name__)

IPv4Networks = Sequence[ipaddress.IPv4Network]

_PORT_STATUS_PRIORITY = {
    PortStatus.OPEN: 0,
    PortStatus.FILTERED: 1,
    PortStatus.CLOSED: 2,
}

_PRIVATE_V4 = (
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("172.16.0.0/12"),
    ipaddress.IPv4Network("192.168.0.0/16"),
)


class ServiceNamePolicy(str, Enum):
    """Which display name survives when two services share (type, port)."""
    LONGER = "longer"      # Longer (more descriptive) name wins
    INCOMING = "incoming"  # Newest evidence wins
    EXISTING = "existing"  # First name seen sticks


def should_keep_ip(ip: str, local_networks: IPv4Networks = ()) -> bool:
    """
    Decide whether an address may be stored on a device.

    Drops loopback, link-local, multicast and broadcast addresses. Public
    IPv4 addresses are kept only inside a detected local network (or when
    no local networks are known).
    """
    ip = ip.strip()
    if not ip:
        return False
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False

    if addr.is_loopback or addr.is_link_local or addr.is_multicast or addr.is_unspecified:
        return False
    if addr.version == 6:
        return True

    if ip.endswith(".255") or addr == ipaddress.IPv4Address("255.255.255.255"):
        return False
    for network in local_networks:
        if network.prefixlen < 31 and addr == network.broadcast_address:
            return False

    if any(addr in private for private in _PRIVATE_V4):
        return True
    if not local_networks:
        return True
    return any(addr in network for network in local_networks)


def sanitize(
    device: Device,
    local_networks: IPv4Networks = (),
    oui: Optional[OUILookup] = None,
) -> Optional[Device]:
    """
    Return a cleaned copy of a device, or None if no usable address survives.

    Args:
        device: Record to clean (not modified)
        local_networks: Detected local IPv4 networks
        oui: Vendor lookup for records without a vendor

    Returns:
        Sanitized copy, or None when the record must be deleted
    """
    cleaned = copy.deepcopy(device)
    cleaned.ips = {ip.strip() for ip in cleaned.ips if should_keep_ip(ip, local_networks)}

    primary = (cleaned.primary_ip or "").strip()
    if primary and should_keep_ip(primary, local_networks):
        cleaned.primary_ip = primary
        cleaned.ips.add(primary)
    else:
        cleaned.primary_ip = sorted(cleaned.ips, key=ip_sort_key)[0] if cleaned.ips else None

    if cleaned.primary_ip is None and not cleaned.ips:
        return None

    for attr in ("hostname", "vendor", "model_hint"):
        value = getattr(cleaned, attr)
        if value is not None:
            setattr(cleaned, attr, value.strip() or None)
    cleaned.mac_address = normalize_mac(cleaned.mac_address)

    if not cleaned.vendor:
        fp_vendor, fp_model = extract_vendor_model(cleaned.fingerprints)
        if fp_vendor:
            cleaned.vendor = fp_vendor
            if not cleaned.model_hint and fp_model:
                cleaned.model_hint = fp_model
        elif oui is not None:
            cleaned.vendor = oui.vendor_for(cleaned.mac_address)

    if cleaned.first_seen and cleaned.last_seen and cleaned.last_seen < cleaned.first_seen:
        cleaned.first_seen = cleaned.last_seen
    return cleaned


def _merge_services(
    existing: Iterable[NetworkService],
    incoming: Iterable[NetworkService],
    policy: ServiceNamePolicy,
) -> list[NetworkService]:
    merged: dict[tuple[str, int], NetworkService] = {}
    for service in existing:
        merged[service.key] = copy.copy(service)
    for service in incoming:
        current = merged.get(service.key)
        if current is None:
            merged[service.key] = copy.copy(service)
            continue
        replace_name = (
            policy == ServiceNamePolicy.INCOMING
            or (policy == ServiceNamePolicy.LONGER and len(service.name) > len(current.name))
        )
        if replace_name:
            current.name = service.name
        current.raw_type = current.raw_type or service.raw_type
        current.is_standard_port = current.is_standard_port or service.is_standard_port
    return sorted(merged.values(), key=lambda s: s.key)


def _merge_ports(existing: Iterable[Port], incoming: Iterable[Port]) -> list[Port]:
    merged: dict[tuple[int, str], Port] = {}
    for port in existing:
        merged[port.key] = copy.copy(port)
    for port in incoming:
        current = merged.get(port.key)
        if current is None or _PORT_STATUS_PRIORITY[port.status] <= _PORT_STATUS_PRIORITY[current.status]:
            merged[port.key] = copy.copy(port)
    return sorted(merged.values(), key=lambda p: (p.number, p.transport))


def merge(
    existing: Device,
    incoming: Device,
    name_policy: ServiceNamePolicy = ServiceNamePolicy.LONGER,
) -> Device:
    """
    Fold incoming evidence into an existing record.

    Deterministic and idempotent. Does not reclassify; callers compare
    classification_fingerprint() before and after.
    """
    merged = copy.deepcopy(existing)

    if not merged.primary_ip and incoming.primary_ip:
        merged.primary_ip = incoming.primary_ip
    merged.ips |= incoming.ips
    if incoming.primary_ip:
        merged.ips.add(incoming.primary_ip)
    merged.discovery_sources |= incoming.discovery_sources

    for attr in ("hostname", "vendor", "model_hint"):
        value = getattr(incoming, attr)
        if value and value.strip():
            setattr(merged, attr, value.strip())
    if normalize_mac(incoming.mac_address):
        merged.mac_address = normalize_mac(incoming.mac_address)
    if incoming.rtt_millis is not None:
        merged.rtt_millis = incoming.rtt_millis

    merged.services = _merge_services(merged.services, incoming.services, name_policy)
    merged.open_ports = _merge_ports(merged.open_ports, incoming.open_ports)

    for key, value in incoming.fingerprints.items():
        if value and value.strip():
            merged.fingerprints[key] = value
    if not merged.vendor or not merged.model_hint:
        fp_vendor, fp_model = extract_vendor_model(merged.fingerprints)
        merged.vendor = merged.vendor or fp_vendor
        merged.model_hint = merged.model_hint or fp_model

    seen = incoming.last_seen or now_utc()
    if merged.last_seen is None or seen > merged.last_seen:
        merged.last_seen = seen
    if merged.first_seen is None:
        merged.first_seen = incoming.first_seen or merged.last_seen

    merged.is_online_override = incoming.is_online_override
    return merged


def classification_fingerprint(device: Device) -> str:
    """Content key of everything the classifier looks at."""
    services = ",".join(sorted(
        f"{s.type.value}|{s.port if s.port is not None else -1}" for s in device.services
    ))
    ports = ",".join(sorted(f"{p.number}/{p.transport}" for p in device.open_ports))
    fingerprints = ",".join(sorted(f"{k}={v}" for k, v in device.fingerprints.items()))
    return (
        f"host={device.hostname or ''}"
        f"|vendor={device.vendor or ''}"
        f"|model={device.model_hint or ''}"
        f"|svc={services}"
        f"|ports={ports}"
        f"|fp={fingerprints}"
    )


def differences(old: Device, new: Device) -> set[DeviceField]:
    """Fields whose values differ between two versions of a device."""
    return {f for f in DeviceField if getattr(old, f.value) != getattr(new, f.value)}


def ip_sort_key(ip: str) -> tuple:
    """Numeric order for dotted IPv4, lexicographic otherwise (after all IPv4)."""
    parts = ip.split(".")
    if len(parts) == 4 and all(part.isdigit() for part in parts):
        return (0, tuple(int(part) for part in parts), "")
    return (1, (), ip)


def device_sort_key(device: Device) -> tuple:
    ip = device.best_display_ip or device.primary_ip or "255.255.255.255"
    return (ip_sort_key(ip), device.id)


def sort_devices(devices: Iterable[Device]) -> list[Device]:
    return sorted(devices, key=device_sort_key)
