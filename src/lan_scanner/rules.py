"""
Standard classification rules.

Default evaluation order: fingerprint/model database, hostname pattern,
vendor + hostname, service combination, port profile, fallback.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ._types import ClassificationConfidence, DeviceFormFactor, ServiceType
from .classifier import ClassificationAccumulator, ClassificationRule, RuleContext

HIGH = ClassificationConfidence.HIGH
MEDIUM = ClassificationConfidence.MEDIUM
LOW = ClassificationConfidence.LOW


def _contains_any(haystack: str, needles: tuple[str, ...]) -> bool:
    return any(needle in haystack for needle in needles)


@dataclass
class TitleMatch:
    """Classification implied by an HTTP page title."""
    form_factor: DeviceFormFactor
    raw_type: str
    confidence: ClassificationConfidence
    reason: str
    authoritative: bool = False


def classify_http_title(title: str) -> Optional[TitleMatch]:
    lower = title.lower()
    if "synology" in lower:
        return TitleMatch(DeviceFormFactor.SERVER, "synology_nas", HIGH,
                          "HTTP title indicates Synology appliance", True)
    if "routeros" in lower or "mikrotik" in lower:
        return TitleMatch(DeviceFormFactor.ROUTER, "mikrotik_router", HIGH,
                          "HTTP title indicates MikroTik RouterOS", True)
    if "unifi" in lower or "ubiquiti" in lower:
        return TitleMatch(DeviceFormFactor.ROUTER, "ubiquiti_unifi", HIGH,
                          "HTTP title indicates Ubiquiti UniFi controller", True)
    if "pfsense" in lower:
        return TitleMatch(DeviceFormFactor.ROUTER, "pfsense", HIGH,
                          "HTTP title indicates pfSense firewall", True)
    if "hikvision" in lower:
        return TitleMatch(DeviceFormFactor.CAMERA, "hikvision_camera", MEDIUM,
                          "HTTP title indicates Hikvision device")
    if "laserjet" in lower or "hp printer" in lower:
        return TitleMatch(DeviceFormFactor.PRINTER, "hp_printer", MEDIUM,
                          "HTTP title indicates HP printer")
    if "qnap" in lower:
        return TitleMatch(DeviceFormFactor.SERVER, "qnap_nas", MEDIUM,
                          "HTTP title indicates QNAP NAS")
    return None


def apple_form_factor(name: str) -> Optional[DeviceFormFactor]:
    """Form factor for an Apple family name such as "Mac mini" or "HomePod"."""
    lower = name.lower()
    if "iphone" in lower or "ipod" in lower:
        return DeviceFormFactor.PHONE
    if "ipad" in lower:
        return DeviceFormFactor.TABLET
    if "macbook" in lower:
        return DeviceFormFactor.LAPTOP
    if "mac" in lower:
        return DeviceFormFactor.COMPUTER
    if "apple tv" in lower or "appletv" in lower:
        return DeviceFormFactor.TV
    if "homepod" in lower:
        return DeviceFormFactor.SPEAKER
    if "watch" in lower or "airpods" in lower:
        return DeviceFormFactor.ACCESSORY
    return None


# (prefix/containment test, form factor, reason) for Apple model strings
_APPLE_MODEL_CHECKS = [
    (lambda m: m.startswith("macbook"), DeviceFormFactor.LAPTOP, "Fingerprint indicates MacBook"),
    (lambda m: m.startswith("macmini") or "mac mini" in m, DeviceFormFactor.COMPUTER,
     "Fingerprint indicates Mac mini class"),
    (lambda m: m.startswith("imac"), DeviceFormFactor.COMPUTER, "Fingerprint indicates iMac"),
    (lambda m: m.startswith("macpro"), DeviceFormFactor.COMPUTER, "Fingerprint indicates Mac Pro"),
    (lambda m: m.startswith("macstudio"), DeviceFormFactor.COMPUTER, "Fingerprint indicates Mac Studio"),
    (lambda m: m.startswith("iphone") or m.startswith("ipod"), DeviceFormFactor.PHONE,
     "Fingerprint indicates iPhone/iPod"),
    (lambda m: m.startswith("ipad"), DeviceFormFactor.TABLET, "Fingerprint indicates iPad"),
]


class FingerprintRule(ClassificationRule):
    """Model identifiers, TXT records and HTTP probe results."""

    @property
    def name(self) -> str:
        return "fingerprint"

    def evaluate(self, context: RuleContext, accumulator: ClassificationAccumulator) -> None:
        model = context.fingerprint_model
        corpus = context.fingerprint_corpus
        if not model and not corpus:
            return

        model_sources = ["fingerprint:model"] if model else []
        http_sources = ["fingerprint:http"] if corpus else []
        sources = model_sources or http_sources

        apple = (
            "apple" in context.vendor
            or "apple" in corpus
            or "apple" in model
            or model.startswith("mac")
            or model.startswith("appletv")
        )

        if apple:
            if self._classify_apple_model(context, sources, accumulator):
                return
            if "appletv" in model or "appletv" in corpus:
                accumulator.add(DeviceFormFactor.TV, None, HIGH,
                                "Fingerprint indicates Apple TV", sources, authoritative=True)
                return
            if _contains_any(model, ("homepod", "audioaccessory")) or _contains_any(corpus, ("homepod", "audioaccessory")):
                accumulator.add(DeviceFormFactor.SPEAKER, "homepod", HIGH,
                                "Fingerprint indicates HomePod", sources, authoritative=True)
                return
            for check, form_factor, reason in _APPLE_MODEL_CHECKS:
                if check(model):
                    accumulator.add(form_factor, None, HIGH, reason, sources, authoritative=True)
                    return
            if "watch" in model:
                accumulator.add(DeviceFormFactor.ACCESSORY, None, MEDIUM,
                                "Fingerprint indicates Apple Watch", sources, authoritative=True)
                return
            if model.startswith("mac"):
                accumulator.add(DeviceFormFactor.COMPUTER, None, MEDIUM,
                                "Generic Mac fingerprint", sources)

        self._classify_vendor_text(context, http_sources, accumulator)

        title = context.fingerprints.get("http.title")
        if title:
            match = classify_http_title(title)
            if match is not None:
                accumulator.add(match.form_factor, match.raw_type, match.confidence,
                                match.reason, ["http.title"], authoritative=match.authoritative)

    def _classify_apple_model(
        self,
        context: RuleContext,
        sources: list[str],
        accumulator: ClassificationAccumulator,
    ) -> bool:
        raw = context.fingerprint_model_raw.strip()
        if not raw:
            return False
        mapped = None
        for candidate in (raw, raw.lower(), raw.upper(), context.fingerprint_model):
            mapped = context.apple_models.name_for(candidate)
            if mapped:
                break
        if not mapped:
            return False
        form_factor = apple_form_factor(mapped)
        if form_factor is None:
            return False
        sources = list(sources)
        if "apple:database" not in sources:
            sources.append("apple:database")
        accumulator.add(
            form_factor,
            mapped.lower().replace(" ", "_"),
            HIGH,
            f"Fingerprint model maps to Apple database ({mapped})",
            sources,
            authoritative=True,
        )
        return True

    def _classify_vendor_text(
        self,
        context: RuleContext,
        http_sources: list[str],
        accumulator: ClassificationAccumulator,
    ) -> None:
        corpus = context.fingerprint_corpus
        txt = context.fingerprints.get("txt", "")
        http = context.fingerprints.get("http", "")

        if "routeros" in corpus:
            accumulator.add(DeviceFormFactor.ROUTER, "routeros", HIGH,
                            "HTTP fingerprint indicates RouterOS", http_sources)
        elif _contains_any(txt, ("Echo", "Amazon", "Alexa")) or _contains_any(http, ("Echo", "Alexa")):
            accumulator.add(DeviceFormFactor.IOT, "alexa_echo", HIGH,
                            "Fingerprints indicate Amazon Echo/Alexa device", ["fingerprints:echo"])
        elif context.has_raw_type("_miio._udp") or _contains_any(txt, ("miio", "0xE0")):
            accumulator.add(DeviceFormFactor.IOT, "xiaomi", HIGH,
                            "Miio service or TXT indicates Xiaomi IoT",
                            ["service:miio", "fingerprints:xiaomi"])
        elif _contains_any(corpus, ("tp-link", "tplink", "archer")):
            accumulator.add(DeviceFormFactor.ROUTER, "tplink_router", HIGH,
                            "HTTP fingerprint indicates TP-Link router", http_sources)

        if "asus" in corpus:
            accumulator.add(DeviceFormFactor.ROUTER, "asus_router", HIGH,
                            "HTTP fingerprint indicates ASUS router", http_sources)
        if _contains_any(corpus, ("d-link", "dlink")):
            accumulator.add(DeviceFormFactor.ROUTER, "dlink_router", HIGH,
                            "HTTP fingerprint indicates D-Link router", http_sources)
        if "netgear" in corpus:
            accumulator.add(DeviceFormFactor.ROUTER, "netgear_router", HIGH,
                            "HTTP fingerprint indicates Netgear router", http_sources)
        if "miwifi" in corpus:
            accumulator.add(DeviceFormFactor.ROUTER, "xiaomi_router", HIGH,
                            "HTTP fingerprint indicates Xiaomi MIWIFI router", http_sources)
        if "synology" in corpus:
            accumulator.add(DeviceFormFactor.SERVER, "synology_nas", HIGH,
                            "HTTP fingerprint indicates Synology", http_sources)
        if _contains_any(corpus, ("airport", "time capsule")):
            accumulator.add(DeviceFormFactor.ROUTER, "airport", MEDIUM,
                            "HTTP fingerprint indicates AirPort base station", http_sources)


_APPLE_SERVICE_TYPES = {ServiceType.AIRPLAY, ServiceType.AIRPLAY_AUDIO, ServiceType.HOMEKIT}
_APPLE_RAW_TOKENS = (
    "_asquic.", "_companion-link.", "_device-info.", "_touch-able.",
    "_mediaremotetv.", "_sleep-proxy.", "_remotepairing.", "_apple-mobdev2.",
)

# token, form factor, raw type, confidence
_HOSTNAME_PATTERNS = [
    ("iphone", DeviceFormFactor.PHONE, "iphone", HIGH),
    ("ipad", DeviceFormFactor.TABLET, "ipad", HIGH),
    ("macbook", DeviceFormFactor.LAPTOP, "mac", MEDIUM),
    ("mac-mini", DeviceFormFactor.COMPUTER, "mac_mini", MEDIUM),
    ("macmini", DeviceFormFactor.COMPUTER, "mac_mini", MEDIUM),
    ("imac", DeviceFormFactor.COMPUTER, "imac", MEDIUM),
    ("airport", DeviceFormFactor.ROUTER, "airport_base_station", MEDIUM),
    ("apple-tv", DeviceFormFactor.TV, "apple_tv", MEDIUM),
    ("appletv", DeviceFormFactor.TV, "apple_tv", MEDIUM),
    ("homepod", DeviceFormFactor.SPEAKER, "homepod", MEDIUM),
]


class HostnamePatternRule(ClassificationRule):
    """Apple product names in hostnames, backed by Apple vendor or services."""

    @property
    def name(self) -> str:
        return "hostname_pattern"

    def evaluate(self, context: RuleContext, accumulator: ClassificationAccumulator) -> None:
        if not context.host or not context.services:
            return

        apple_vendor = _contains_any(context.vendor, ("apple", "ios", "mac"))
        apple_service = any(
            s.type in _APPLE_SERVICE_TYPES or _contains_any((s.raw_type or "").lower(), _APPLE_RAW_TOKENS)
            for s in context.services
        )
        if not apple_vendor and not apple_service:
            return

        for token, form_factor, raw_type, confidence in _HOSTNAME_PATTERNS:
            if token in context.host:
                accumulator.add(form_factor, raw_type, confidence,
                                f"Hostname contains '{token}'", [f"host:{token}"])
                break


class VendorHostnameRule(ClassificationRule):
    """Vendor strings combined with hostname conventions."""

    @property
    def name(self) -> str:
        return "vendor_hostname"

    def evaluate(self, context: RuleContext, accumulator: ClassificationAccumulator) -> None:
        vendor = context.vendor
        host = context.host
        services = context.service_types

        if ServiceType.PRINTER in services or ServiceType.IPP in services or "printer" in host:
            if _contains_any(vendor, ("hp", "canon", "epson", "brother")):
                accumulator.add(DeviceFormFactor.PRINTER, "network_printer", HIGH,
                                "Printer service + known vendor", ["service:printer", "vendor:printer"])
            else:
                accumulator.add(DeviceFormFactor.PRINTER, "network_printer", MEDIUM,
                                "Printer service or hostname", ["service:printer"])

        if _contains_any(host, ("router", "gateway", "fw")):
            network_vendors = ("ubiquiti", "netgear", "tplink", "tp-link", "asus", "synology", "mikrotik", "linksys")
            if _contains_any(vendor, network_vendors):
                accumulator.add(DeviceFormFactor.ROUTER, "router", HIGH,
                                "Hostname router/gateway + network vendor", ["host:router", "vendor:network"])
            else:
                accumulator.add(DeviceFormFactor.ROUTER, "router", MEDIUM,
                                "Hostname router/gateway", ["host:router"])

        if "apple" in vendor and _contains_any(host, ("apple-tv", "appletv")):
            accumulator.add(DeviceFormFactor.TV, None, HIGH,
                            "Hostname indicates Apple TV", ["host:appletv"])

        if "raspberrypi" in host or host == "pi" or host.startswith("pi-"):
            accumulator.add(DeviceFormFactor.COMPUTER, "raspberry_pi", MEDIUM,
                            "Hostname indicates Raspberry Pi", ["host:raspberrypi"])

        if ServiceType.CHROMECAST in services:
            accumulator.add(DeviceFormFactor.TV, "chromecast", MEDIUM,
                            "Chromecast service", ["mdns:chromecast"])

        if _contains_any(vendor, ("xiaomi", "tplink", "tp-link")) and _contains_any(host, ("plug", "smart")):
            accumulator.add(DeviceFormFactor.IOT, "smart_plug", MEDIUM,
                            "Smart plug hostname + vendor", ["host:plug", "vendor:smart"])

        if host.startswith("zhimi-airpurifier-"):
            accumulator.add(DeviceFormFactor.IOT, "xiaomi_air_purifier", HIGH,
                            "Hostname indicates Xiaomi Air Purifier", ["host:zhimi-airpurifier"])
        elif host.startswith("xiaomi-repeater-"):
            accumulator.add(DeviceFormFactor.ROUTER, "xiaomi_repeater", HIGH,
                            "Hostname indicates Xiaomi Repeater", ["host:xiaomi-repeater"])


class ServiceCombinationRule(ClassificationRule):
    """Characteristic sets of advertised services."""

    @property
    def name(self) -> str:
        return "service_combination"

    def evaluate(self, context: RuleContext, accumulator: ClassificationAccumulator) -> None:
        vendor = context.vendor
        services = context.service_types
        ssh = ServiceType.SSH in services
        airplay = ServiceType.AIRPLAY in services
        airplay_audio = ServiceType.AIRPLAY_AUDIO in services

        if "apple" in vendor and ssh and airplay:
            accumulator.add(DeviceFormFactor.COMPUTER, "mac", MEDIUM,
                            "SSH + AirPlay + Apple vendor",
                            ["service:ssh", "service:airplay", "vendor:apple"])
        if "ubiquiti" in vendor and ssh and ServiceType.HTTP in services:
            accumulator.add(DeviceFormFactor.ROUTER, "ubiquiti_device", MEDIUM,
                            "SSH + HTTP mgmt + ubiquiti",
                            ["service:ssh", "service:http", "vendor:ubiquiti"])
        if ServiceType.HOMEKIT in services and len(services) == 1:
            accumulator.add(DeviceFormFactor.ACCESSORY, "homekit_accessory", MEDIUM,
                            "Single HomeKit service", ["service:homekit"])

        if "apple" in vendor and airplay_audio and not airplay and not ssh:
            accumulator.add(DeviceFormFactor.SPEAKER, "homepod", MEDIUM,
                            "AirPlay Audio only + Apple vendor",
                            ["service:airplay_audio", "vendor:apple"])
        elif (airplay or airplay_audio) and not ssh and ServiceType.PRINTER not in services:
            source = "service:airplay_audio" if airplay_audio and not airplay else "service:airplay"
            accumulator.add(DeviceFormFactor.TV, "airplay_target", MEDIUM,
                            "AirPlay without SSH", [source])


class PortProfileRule(ClassificationRule):
    """Open port patterns."""

    @property
    def name(self) -> str:
        return "port_profile"

    def evaluate(self, context: RuleContext, accumulator: ClassificationAccumulator) -> None:
        vendor = context.vendor
        services = context.service_types
        ports = context.ports

        if not services and ports == {80} and _contains_any(vendor, ("tp-link", "tplink", "xiaomi")):
            accumulator.add(DeviceFormFactor.IOT, "embedded_http", MEDIUM,
                            "Only port 80 + consumer vendor", ["port:80", "vendor:consumer"])
        if not services and len(context.device.open_ports) == 1 and 80 in ports and not vendor:
            accumulator.add(DeviceFormFactor.IOT, "embedded_http", LOW,
                            "Single HTTP port only", ["port:80"])

        file_sharing = ServiceType.SMB in services or 445 in ports or 139 in ports
        web = ServiceType.HTTP in services or ServiceType.HTTPS in services or 80 in ports or 443 in ports
        if file_sharing and web:
            accumulator.add(DeviceFormFactor.SERVER, "nas", MEDIUM,
                            "File sharing + web mgmt", ["service:smb_or_ports", "port:web"])


class FallbackRule(ClassificationRule):
    """Last resort: an SSH-only host is probably a server."""

    @property
    def name(self) -> str:
        return "fallback"

    def evaluate(self, context: RuleContext, accumulator: ClassificationAccumulator) -> None:
        only_ssh = context.service_types == {ServiceType.SSH}
        single_ssh = len(context.services) == 1 and context.services[0].type == ServiceType.SSH
        if only_ssh or single_ssh:
            accumulator.add(DeviceFormFactor.SERVER, "ssh_only", LOW,
                            "Only SSH service discovered", ["service:ssh"])


def default_rules() -> list[ClassificationRule]:
    return [
        FingerprintRule(),
        HostnamePatternRule(),
        VendorHostnameRule(),
        ServiceCombinationRule(),
        PortProfileRule(),
        FallbackRule(),
    ]
