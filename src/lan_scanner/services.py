"""
Service derivation.

Maps DNS-SD service types and well-known TCP ports onto normalized
ServiceType values with human readable names.
"""

from __future__ import annotations

from typing import Iterable, Optional

from ._types import NetworkService, Port, PortStatus, ServiceType

# port -> (type, display name)
WELL_KNOWN_PORTS: dict[int, tuple[ServiceType, str]] = {
    80: (ServiceType.HTTP, "HTTP"),
    443: (ServiceType.HTTPS, "HTTPS"),
    22: (ServiceType.SSH, "SSH"),
    53: (ServiceType.DNS, "DNS"),
    139: (ServiceType.SMB, "SMB"),
    445: (ServiceType.SMB, "SMB"),
    515: (ServiceType.PRINTER, "LPD"),
    631: (ServiceType.IPP, "IPP"),
    3689: (ServiceType.AIRPLAY_AUDIO, "DAAP"),
    7000: (ServiceType.AIRPLAY, "AirPlay"),
}

# Checked in order against the lower-cased raw type
_TYPE_PATTERNS: list[tuple[tuple[str, ...], ServiceType, str]] = [
    (("airplay",), ServiceType.AIRPLAY, "AirPlay"),
    (("_raop.",), ServiceType.AIRPLAY_AUDIO, "AirPlay Audio"),
    (("homekit", "_hap."), ServiceType.HOMEKIT, "HomeKit"),
    (("_sftp-ssh.",), ServiceType.SSH, "SFTP/SSH"),
    (("_ssh.",), ServiceType.SSH, "SSH"),
    (("_https.",), ServiceType.HTTPS, "HTTPS"),
    (("_http.",), ServiceType.HTTP, "HTTP"),
    (("_ipp.", "_ipps."), ServiceType.IPP, "IPP"),
    (("_printer.", "_pdl-datastream."), ServiceType.PRINTER, "Printer"),
    (("_spotify",), ServiceType.SPOTIFY, "Spotify"),
    (("_chromecast.", "_googlecast."), ServiceType.CHROMECAST, "Chromecast"),
    (("_rfb.",), ServiceType.VNC, "VNC"),
    (("_smb.",), ServiceType.SMB, "SMB"),
    (("_ftp.",), ServiceType.FTP, "FTP"),
    (("_telnet.",), ServiceType.TELNET, "Telnet"),
    (("_afpovertcp.",), ServiceType.OTHER, "AFP File Sharing"),
    (("_workstation.",), ServiceType.OTHER, "Workstation"),
    (("_device-info.",), ServiceType.OTHER, "Device Info"),
    (("_companion-link.",), ServiceType.OTHER, "Companion Link"),
    (("_remotepairing.",), ServiceType.OTHER, "Remote Pairing"),
    (("_touch-able.",), ServiceType.OTHER, "Touch Able"),
    (("_sleep-proxy.",), ServiceType.OTHER, "Sleep Proxy"),
    (("_apple-mobdev2.",), ServiceType.OTHER, "Apple Dev"),
]

_DISPLAY_ORDER = {stype: index for index, stype in enumerate(ServiceType)}


def normalize(raw_type: str) -> tuple[ServiceType, str]:
    """
    Map a DNS-SD type such as "_ipp._tcp." onto (ServiceType, display name).

    Unrecognized types map to OTHER with the underscores stripped.
    """
    lowered = raw_type.lower()
    if not lowered.endswith("."):
        lowered += "."
    for tokens, stype, name in _TYPE_PATTERNS:
        if any(token in lowered for token in tokens):
            return stype, name
    return ServiceType.OTHER, raw_type.replace("_", "").rstrip(".")


def make_service(raw_type: str, port: Optional[int]) -> NetworkService:
    """Build a NetworkService from a resolved DNS-SD instance."""
    stype, name = normalize(raw_type)
    known = WELL_KNOWN_PORTS.get(port) if port is not None else None
    return NetworkService(
        name=name,
        type=stype,
        raw_type=raw_type,
        port=port,
        is_standard_port=known is not None and known[0] == stype,
    )


def service_for_port(number: int) -> Optional[NetworkService]:
    """Well-known service for an open TCP port, if any."""
    known = WELL_KNOWN_PORTS.get(number)
    if known is None:
        return None
    stype, name = known
    return NetworkService(name=name, type=stype, port=number, is_standard_port=True)


def display_services(
    services: Iterable[NetworkService],
    ports: Iterable[Port],
) -> list[NetworkService]:
    """
    Combine advertised services with services implied by open ports.

    Entries are unique by (type, port) and ordered by service type.
    """
    combined: dict[tuple[str, int], NetworkService] = {}
    for service in services:
        combined.setdefault(service.key, service)
    for port in ports:
        if port.status != PortStatus.OPEN:
            continue
        implied = service_for_port(port.number)
        if implied is not None:
            combined.setdefault(implied.key, implied)
    return sorted(
        combined.values(),
        key=lambda s: (_DISPLAY_ORDER[s.type], s.port if s.port is not None else -1, s.name),
    )
