"""Tests for scanner configuration."""

from pathlib import Path

import pytest

from lan_scanner.config import ScannerConfig
from lan_scanner.errors import ConfigError
from lan_scanner.merge import ServiceNamePolicy

RUNTIME_FLAGS = (
    "LAN_SCANNER_DISABLE_DISCOVERY",
    "LAN_SCANNER_DISABLE_PERSISTENCE",
    "LAN_SCANNER_CLEAR_ON_START",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in RUNTIME_FLAGS + ("NETWORK_RANGES", "SERVICE_NAME_POLICY", "MAX_HOSTS", "API_PORT"):
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    """Tests for default values."""

    def test_defaults_valid(self):
        config = ScannerConfig()
        assert config.validate() == []
        assert config.service_name_policy == ServiceNamePolicy.LONGER
        assert config.port_scan_ports == [22, 80, 443]
        assert config.disable_discovery is False

    def test_lists_not_shared(self):
        a, b = ScannerConfig(), ScannerConfig()
        a.bonjour_types.append("_x._tcp.")
        assert "_x._tcp." not in b.bonjour_types


class TestFromEnv:
    """Tests for environment loading."""

    def test_reads_variables(self, monkeypatch):
        monkeypatch.setenv("NETWORK_RANGES", "192.168.1.0/24, 10.0.0.0/24")
        monkeypatch.setenv("ENABLE_BONJOUR", "false")
        monkeypatch.setenv("ENABLE_SSH_FINGERPRINT", "0")
        monkeypatch.setenv("PING_TIMEOUT", "2.5")
        monkeypatch.setenv("SERVICE_NAME_POLICY", "Incoming")
        monkeypatch.setenv("DB_PATH", "/tmp/lan.db")
        monkeypatch.setenv("API_PORT", "9090")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")

        config = ScannerConfig.from_env()
        assert config.network_ranges == ["192.168.1.0/24", "10.0.0.0/24"]
        assert config.enable_bonjour is False
        assert config.enable_arp is True
        assert config.enable_ssh_fingerprint is False
        assert config.enable_http_fingerprint is True
        assert config.ping_timeout_seconds == 2.5
        assert config.service_name_policy == ServiceNamePolicy.INCOMING
        assert config.db_path == Path("/tmp/lan.db")
        assert config.api_port == 9090
        assert config.log_level == "debug"

    def test_bad_number(self, monkeypatch):
        monkeypatch.setenv("MAX_HOSTS", "lots")
        with pytest.raises(ConfigError, match="MAX_HOSTS"):
            ScannerConfig.from_env()

    def test_bad_policy(self, monkeypatch):
        monkeypatch.setenv("SERVICE_NAME_POLICY", "loudest")
        with pytest.raises(ConfigError, match="loudest"):
            ScannerConfig.from_env()

    @pytest.mark.parametrize("flag,attribute", [
        ("LAN_SCANNER_DISABLE_DISCOVERY", "disable_discovery"),
        ("LAN_SCANNER_DISABLE_PERSISTENCE", "disable_persistence"),
        ("LAN_SCANNER_CLEAR_ON_START", "clear_on_start"),
    ])
    def test_runtime_flags(self, monkeypatch, flag, attribute):
        monkeypatch.setenv(flag, "1")
        assert getattr(ScannerConfig.from_env(), attribute) is True


class TestFromYaml:
    """Tests for YAML loading."""

    def test_sections(self, tmp_path: Path):
        path = tmp_path / "lan_scanner.yaml"
        path.write_text("""
network_ranges:
  - "192.168.50.0/24"
discovery:
  bonjour: false
  interval_seconds: 120
ping:
  count: 2
  max_concurrent: 8
bonjour:
  allow_list: ["_ipp._tcp."]
port_scan:
  ports: [22, 8080]
ssh_fingerprint:
  cooldown_seconds: 900
  timeout_seconds: 5
store:
  service_name_policy: existing
api:
  port: 9000
paths:
  db: "/data/devices.db"
log_level: WARN
""")
        config = ScannerConfig.from_yaml(path)

        assert config.network_ranges == ["192.168.50.0/24"]
        assert config.enable_bonjour is False
        assert config.enable_ping is True
        assert config.scan_interval_seconds == 120
        assert config.ping_count == 2
        assert config.ping_max_concurrent == 8
        assert config.bonjour_allow_list == ["_ipp._tcp."]
        assert config.port_scan_ports == [22, 8080]
        assert config.enable_ssh_fingerprint is True
        assert config.ssh_fingerprint_cooldown_seconds == 900
        assert config.ssh_fingerprint_timeout_seconds == 5
        assert config.service_name_policy == ServiceNamePolicy.EXISTING
        assert config.api_port == 9000
        assert config.db_path == Path("/data/devices.db")
        assert config.log_level == "warn"
        assert config.validate() == []

    def test_missing_file_uses_defaults(self, tmp_path: Path):
        config = ScannerConfig.from_yaml(tmp_path / "missing.yaml")
        assert config.api_port == 8083

    def test_empty_file(self, tmp_path: Path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert ScannerConfig.from_yaml(path).max_hosts == 256

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "bad.yaml"
        path.write_text("discovery: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            ScannerConfig.from_yaml(path)

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            ScannerConfig.from_yaml(path)

    def test_bad_policy(self, tmp_path: Path):
        path = tmp_path / "policy.yaml"
        path.write_text("store:\n  service_name_policy: random\n")
        with pytest.raises(ConfigError):
            ScannerConfig.from_yaml(path)

    def test_runtime_flag_applies(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("LAN_SCANNER_DISABLE_DISCOVERY", "1")
        assert ScannerConfig.from_yaml(tmp_path / "missing.yaml").disable_discovery is True


class TestValidate:
    """Tests for validation."""

    def test_collects_errors(self):
        config = ScannerConfig(
            log_level="verbose",
            ping_count=0,
            ping_interval_seconds=0.1,
            ping_timeout_seconds=0.1,
            ping_max_concurrent=0,
            bus_buffer_size=0,
            max_hosts=0,
            port_scan_ports=[22, 70000],
            api_port=0,
        )
        errors = config.validate()
        assert len(errors) == 9
        assert any("log level" in e for e in errors)
        assert any("70000" in e for e in errors)
