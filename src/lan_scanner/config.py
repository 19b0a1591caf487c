"""
LAN scanner configuration.

Loaded from environment variables or a YAML file; CLI arguments may
override the API address and log level afterwards.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from .errors import ConfigError
from .merge import ServiceNamePolicy
from .subnet import detect_local_subnets

logger = logging.getLogger(__name__)

LOG_LEVELS = ("off", "error", "warn", "info", "debug")

DEFAULT_BONJOUR_TYPES = [
    "_http._tcp.",
    "_https._tcp.",
    "_ssh._tcp.",
    "_sftp-ssh._tcp.",
    "_smb._tcp.",
    "_afpovertcp._tcp.",
    "_ipp._tcp.",
    "_ipps._tcp.",
    "_printer._tcp.",
    "_pdl-datastream._tcp.",
    "_airplay._tcp.",
    "_raop._tcp.",
    "_hap._tcp.",
    "_homekit._tcp.",
    "_googlecast._tcp.",
    "_spotify-connect._tcp.",
    "_rfb._tcp.",
    "_workstation._tcp.",
    "_device-info._tcp.",
    "_companion-link._tcp.",
    "_sleep-proxy._udp.",
    "_miio._udp.",
]


def _env_flag(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() in ("true", "1", "yes")


def _env_number(name: str, default: str, kind=int):
    value = os.getenv(name, default)
    try:
        return kind(value)
    except ValueError as e:
        raise ConfigError(f"{name} is not a valid number: {value!r}") from e


def _parse_policy(value: str) -> ServiceNamePolicy:
    try:
        return ServiceNamePolicy(str(value).lower())
    except ValueError as e:
        choices = ", ".join(p.value for p in ServiceNamePolicy)
        raise ConfigError(f"Unknown service name policy {value!r} (expected {choices})") from e


@dataclass
class ScannerConfig:
    """LAN scanner configuration."""

    # Network ranges to ping (empty = enumerate the primary interface's /24)
    network_ranges: list[str] = field(default_factory=list)
    max_hosts: int = 256

    # Producers
    enable_arp: bool = True
    enable_ping: bool = True
    enable_bonjour: bool = True
    enable_port_scan: bool = True
    enable_http_fingerprint: bool = True
    enable_ssh_fingerprint: bool = True

    # Ping
    ping_count: int = 1
    ping_interval_seconds: float = 1.0
    ping_timeout_seconds: float = 1.5
    ping_max_concurrent: int = 32
    arp_resolve_delay_seconds: float = 0.2

    # Bonjour / DNS-SD
    bonjour_types: list[str] = field(default_factory=lambda: list(DEFAULT_BONJOUR_TYPES))
    bonjour_allow_list: Optional[list[str]] = None
    bonjour_max_dynamic_types: int = 64
    bonjour_resolve_cooldown_seconds: float = 12.0
    bonjour_resolve_timeout_seconds: float = 5.0
    mdns_warmup_seconds: float = 2.0

    # Port scan
    port_scan_ports: list[int] = field(default_factory=lambda: [22, 80, 443])
    port_scan_timeout_seconds: float = 1.5
    port_scan_rescan_seconds: float = 300.0

    # HTTP fingerprinting
    http_fingerprint_cooldown_seconds: float = 1800.0
    http_fingerprint_timeout_seconds: float = 4.0

    # SSH host key fingerprinting
    ssh_fingerprint_cooldown_seconds: float = 3600.0
    ssh_fingerprint_timeout_seconds: float = 3.0

    # Store
    bus_buffer_size: int = 256
    offline_sweep_interval_seconds: float = 60.0
    online_grace_seconds: float = 300.0
    service_name_policy: ServiceNamePolicy = ServiceNamePolicy.LONGER
    scan_interval_seconds: float = 600.0

    # Persistence
    db_path: Path = field(default_factory=lambda: Path("/var/lib/lan-scanner/devices.db"))
    persistence_key: str = "devices"
    disable_persistence: bool = False
    clear_on_start: bool = False
    disable_discovery: bool = False

    # Lookup table overrides (bundled copies when None)
    oui_csv_path: Optional[Path] = None
    apple_models_csv_path: Optional[Path] = None

    # API server
    api_host: str = "127.0.0.1"
    api_port: int = 8083

    # Logging
    log_level: str = "info"

    @classmethod
    def from_env(cls) -> "ScannerConfig":
        """Load configuration from environment variables."""
        config = cls()

        # Comma-separated, or "auto" for every local subnet
        ranges = os.getenv("NETWORK_RANGES", "")
        if ranges.strip().lower() == "auto":
            config.network_ranges = detect_local_subnets()
        elif ranges:
            config.network_ranges = [r.strip() for r in ranges.split(",") if r.strip()]
        config.max_hosts = _env_number("MAX_HOSTS", "256")

        config.enable_arp = _env_flag("ENABLE_ARP", True)
        config.enable_ping = _env_flag("ENABLE_PING", True)
        config.enable_bonjour = _env_flag("ENABLE_BONJOUR", True)
        config.enable_port_scan = _env_flag("ENABLE_PORT_SCAN", True)
        config.enable_http_fingerprint = _env_flag("ENABLE_HTTP_FINGERPRINT", True)
        config.enable_ssh_fingerprint = _env_flag("ENABLE_SSH_FINGERPRINT", True)

        config.ping_timeout_seconds = _env_number("PING_TIMEOUT", "1.5", float)
        config.ping_max_concurrent = _env_number("PING_MAX_CONCURRENT", "32")
        config.scan_interval_seconds = _env_number("SCAN_INTERVAL", "600", float)

        if policy := os.getenv("SERVICE_NAME_POLICY"):
            config.service_name_policy = _parse_policy(policy)

        if db_path := os.getenv("DB_PATH"):
            config.db_path = Path(db_path)
        if oui_path := os.getenv("OUI_CSV_PATH"):
            config.oui_csv_path = Path(oui_path)
        if apple_path := os.getenv("APPLE_MODELS_CSV_PATH"):
            config.apple_models_csv_path = Path(apple_path)

        config.api_host = os.getenv("API_HOST", "127.0.0.1")
        config.api_port = _env_number("API_PORT", "8083")
        config.log_level = os.getenv("LOG_LEVEL", "info").lower()

        config.apply_runtime_flags()
        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "ScannerConfig":
        """
        Load configuration from YAML file.

        Raises:
            ConfigError: The file is not valid YAML or holds invalid values
        """
        if not path.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
            config = cls()
            config.apply_runtime_flags()
            return config

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Expected a mapping at the top of {path}")

        config = cls()

        ranges = data.get("network_ranges")
        if ranges == "auto":
            config.network_ranges = detect_local_subnets()
        elif ranges:
            config.network_ranges = list(ranges)
        config.max_hosts = data.get("max_hosts", 256)

        if "discovery" in data:
            d = data["discovery"]
            config.enable_arp = d.get("arp", True)
            config.enable_ping = d.get("ping", True)
            config.enable_bonjour = d.get("bonjour", True)
            config.enable_port_scan = d.get("port_scan", True)
            config.enable_http_fingerprint = d.get("http_fingerprint", True)
            config.enable_ssh_fingerprint = d.get("ssh_fingerprint", True)
            config.disable_discovery = d.get("disabled", False)
            config.scan_interval_seconds = d.get("interval_seconds", 600.0)

        if "ping" in data:
            p = data["ping"]
            config.ping_count = p.get("count", 1)
            config.ping_interval_seconds = p.get("interval_seconds", 1.0)
            config.ping_timeout_seconds = p.get("timeout_seconds", 1.5)
            config.ping_max_concurrent = p.get("max_concurrent", 32)

        if "bonjour" in data:
            b = data["bonjour"]
            config.bonjour_types = b.get("types", config.bonjour_types)
            config.bonjour_allow_list = b.get("allow_list")
            config.bonjour_max_dynamic_types = b.get("max_dynamic_types", 64)
            config.bonjour_resolve_cooldown_seconds = b.get("resolve_cooldown_seconds", 12.0)
            config.mdns_warmup_seconds = b.get("warmup_seconds", 2.0)

        if "port_scan" in data:
            s = data["port_scan"]
            config.port_scan_ports = s.get("ports", [22, 80, 443])
            config.port_scan_timeout_seconds = s.get("timeout_seconds", 1.5)
            config.port_scan_rescan_seconds = s.get("rescan_seconds", 300.0)

        if "http_fingerprint" in data:
            h = data["http_fingerprint"]
            config.http_fingerprint_cooldown_seconds = h.get("cooldown_seconds", 1800.0)
            config.http_fingerprint_timeout_seconds = h.get("timeout_seconds", 4.0)

        if "ssh_fingerprint" in data:
            k = data["ssh_fingerprint"]
            config.ssh_fingerprint_cooldown_seconds = k.get("cooldown_seconds", 3600.0)
            config.ssh_fingerprint_timeout_seconds = k.get("timeout_seconds", 3.0)

        if "store" in data:
            s = data["store"]
            config.bus_buffer_size = s.get("buffer_size", 256)
            config.offline_sweep_interval_seconds = s.get("sweep_interval_seconds", 60.0)
            config.online_grace_seconds = s.get("grace_seconds", 300.0)
            config.service_name_policy = _parse_policy(s.get("service_name_policy", "longer"))

        if "api" in data:
            a = data["api"]
            config.api_host = a.get("host", "127.0.0.1")
            config.api_port = a.get("port", 8083)

        if "paths" in data:
            p = data["paths"]
            if "db" in p:
                config.db_path = Path(p["db"])
            if "oui_csv" in p:
                config.oui_csv_path = Path(p["oui_csv"])
            if "apple_models_csv" in p:
                config.apple_models_csv_path = Path(p["apple_models_csv"])

        config.persistence_key = data.get("persistence_key", "devices")
        config.log_level = str(data.get("log_level", "info")).lower()

        config.apply_runtime_flags()
        return config

    def apply_runtime_flags(self) -> None:
        """Environment switches that apply whatever the config source."""
        if os.getenv("LAN_SCANNER_DISABLE_DISCOVERY") == "1":
            self.disable_discovery = True
        if os.getenv("LAN_SCANNER_DISABLE_PERSISTENCE") == "1":
            self.disable_persistence = True
        if os.getenv("LAN_SCANNER_CLEAR_ON_START") == "1":
            self.clear_on_start = True

    def validate(self) -> list[str]:
        """Validate configuration, returning list of errors."""
        errors = []

        if self.log_level not in LOG_LEVELS:
            errors.append(f"Invalid log level: {self.log_level}")
        if self.ping_count < 1:
            errors.append(f"Ping count must be at least 1: {self.ping_count}")
        if self.ping_interval_seconds < 0.2:
            errors.append(f"Ping interval below 0.2s: {self.ping_interval_seconds}")
        if self.ping_timeout_seconds < 0.5:
            errors.append(f"Ping timeout below 0.5s: {self.ping_timeout_seconds}")
        if self.ping_max_concurrent < 1:
            errors.append(f"Invalid ping concurrency: {self.ping_max_concurrent}")
        if self.bus_buffer_size < 1:
            errors.append(f"Invalid bus buffer size: {self.bus_buffer_size}")
        if not 0 < self.max_hosts <= 65536:
            errors.append(f"Invalid max hosts: {self.max_hosts}")
        for port in self.port_scan_ports:
            if not 0 < port < 65536:
                errors.append(f"Invalid port in port_scan_ports: {port}")
        if not 0 < self.api_port < 65536:
            errors.append(f"Invalid API port: {self.api_port}")

        return errors


# Example lan_scanner.yaml:
"""
network_ranges:
  - "192.168.1.0/24"

discovery:
  arp: true
  ping: true
  bonjour: true
  port_scan: true
  http_fingerprint: true
  ssh_fingerprint: true
  interval_seconds: 600

ping:
  timeout_seconds: 1.5
  max_concurrent: 32

port_scan:
  ports: [22, 80, 443]

ssh_fingerprint:
  cooldown_seconds: 3600

store:
  service_name_policy: "longer"

api:
  host: "127.0.0.1"
  port: 8083

paths:
  db: "/var/lib/lan-scanner/devices.db"

log_level: "info"
"""
