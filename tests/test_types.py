"""Tests for LAN scanner domain types."""

from datetime import timedelta

import pytest

from lan_scanner._types import (
    ClassificationConfidence,
    Device,
    DeviceField,
    DeviceMutation,
    DiscoverySource,
    MutationKind,
    MutationSource,
    NetworkService,
    PingMeasurement,
    PingStatus,
    ServiceType,
    normalize_mac,
    now_utc,
)


class TestNormalizeMac:
    """Tests for MAC address normalization."""

    def test_pads_and_uppercases(self):
        """Should zero-pad octets and upper-case hex digits."""
        assert normalize_mac("a:b:c:d:e:f") == "0A:0B:0C:0D:0E:0F"

    def test_dash_separated(self):
        """Should accept dash separated addresses."""
        assert normalize_mac("aa-bb-cc-dd-ee-ff") == "AA:BB:CC:DD:EE:FF"

    def test_empty(self):
        """Should return None for empty input."""
        assert normalize_mac(None) is None
        assert normalize_mac("   ") is None


class TestDeviceIdentity:
    """Tests for device id assignment."""

    def test_mac_wins(self):
        """MAC address should take precedence over IP and hostname."""
        device = Device(primary_ip="192.168.1.10", hostname="nas", mac_address="aa:bb:cc:dd:ee:ff")
        assert device.id == "AA:BB:CC:DD:EE:FF"

    def test_primary_ip_next(self):
        """Primary IP should be used when no MAC is known."""
        device = Device(primary_ip="192.168.1.10", hostname="nas")
        assert device.id == "192.168.1.10"

    def test_hostname_next(self):
        """Hostname should be used when there is no MAC or IP."""
        assert Device(hostname="printer.local").id == "printer.local"

    def test_random_fallback(self):
        """Should generate a unique id when nothing identifies the device."""
        assert Device().id != Device().id

    def test_explicit_id_kept(self):
        """Should never recompute a given id."""
        device = Device(id="custom", mac_address="aa:bb:cc:dd:ee:ff")
        assert device.id == "custom"


class TestOnlineState:
    """Tests for the derived online state."""

    def test_recent_device_online(self):
        """Device seen within the grace window should be online."""
        now = now_utc()
        device = Device(primary_ip="10.0.0.2", last_seen=now - timedelta(seconds=299))
        assert device.is_online_at(now) is True

    def test_stale_device_offline(self):
        """Device idle past the grace window should be offline."""
        now = now_utc()
        device = Device(primary_ip="10.0.0.2", last_seen=now - timedelta(seconds=301))
        assert device.is_online_at(now) is False

    def test_override_wins(self):
        """Explicit override should beat the derived state."""
        device = Device(primary_ip="10.0.0.2", last_seen=now_utc(), is_online_override=False)
        assert device.is_online is False

    def test_never_seen(self):
        """Device without last_seen should be offline."""
        assert Device(primary_ip="10.0.0.2").is_online is False


class TestBestDisplayIp:
    """Tests for display address selection."""

    def test_primary_preferred(self):
        device = Device(primary_ip="10.0.0.5", ips={"10.0.0.5", "192.168.1.2"})
        assert device.best_display_ip == "10.0.0.5"

    def test_private_before_public_before_v6(self):
        """Should prefer private IPv4, then public IPv4, then IPv6."""
        device = Device(id="x", ips={"fd00::1", "8.8.8.8", "192.168.1.7"})
        assert device.best_display_ip == "192.168.1.7"

        device = Device(id="y", ips={"fd00::1", "8.8.8.8"})
        assert device.best_display_ip == "8.8.8.8"

        device = Device(id="z", ips={"fd00::1"})
        assert device.best_display_ip == "fd00::1"

    def test_no_addresses(self):
        assert Device(id="x").best_display_ip is None


class TestEnums:
    """Tests for enum helpers."""

    def test_confidence_ordering(self):
        """Confidence priorities should be ordered unknown < low < medium < high."""
        ordered = [
            ClassificationConfidence.UNKNOWN,
            ClassificationConfidence.LOW,
            ClassificationConfidence.MEDIUM,
            ClassificationConfidence.HIGH,
        ]
        assert [c.priority for c in ordered] == [0, 1, 2, 3]

    def test_device_field_names_attributes(self):
        """Every DeviceField value should name a Device attribute."""
        device = Device(id="x")
        for f in DeviceField:
            assert hasattr(device, f.value)

    def test_service_key(self):
        service = NetworkService(name="SSH", type=ServiceType.SSH)
        assert service.key == ("ssh", -1)


class TestDeviceMutation:
    """Tests for mutation constructors."""

    def test_changed(self):
        device = Device(primary_ip="10.0.0.2", discovery_sources={DiscoverySource.PING})
        mutation = DeviceMutation.changed(device, {DeviceField.RTT_MILLIS}, MutationSource.PING)

        assert mutation.kind == MutationKind.CHANGE
        assert mutation.change.before is None
        assert mutation.change.after is device
        assert mutation.change.changed == {DeviceField.RTT_MILLIS}

    def test_reachability(self):
        measurement = PingMeasurement("10.0.0.2", 0, PingStatus.SUCCESS, rtt_millis=1.2)
        mutation = DeviceMutation.reachability(measurement)
        assert mutation.kind == MutationKind.REACHABILITY
        assert mutation.measurement is measurement

    def test_snapshot_copies_list(self):
        devices = [Device(primary_ip="10.0.0.2")]
        mutation = DeviceMutation.snapshot(devices)
        devices.clear()
        assert len(mutation.devices) == 1
