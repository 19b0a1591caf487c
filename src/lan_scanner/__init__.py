"""
LAN Scanner - Device discovery and merging for the local network.

Evidence producers (Bonjour, ping sweeps, ARP, port probes, HTTP
fingerprints) publish partial device observations onto a mutation bus.
A single snapshot store merges them into one record per physical device,
classifies it and republishes the resulting changes.

Architecture:
    producers -> DeviceMutationBus -> SnapshotStore -> mutation_stream()

Sovereignty:
    - Snapshots persisted locally in /var/lib/lan-scanner/devices.db
    - Works fully offline, no cloud lookups
"""

__version__ = "1.0.0"

from ._types import (
    Classification,
    ClassificationConfidence,
    Device,
    DeviceChange,
    DeviceField,
    DeviceFormFactor,
    DeviceMutation,
    DiscoverySource,
    MutationSource,
    NetworkService,
    PingMeasurement,
    PingStatus,
    Port,
    PortStatus,
    ServiceType,
)
from .mutation_bus import DeviceMutationBus
from .snapshot_store import SnapshotStore

__all__ = [
    "__version__",
    "Classification",
    "ClassificationConfidence",
    "Device",
    "DeviceChange",
    "DeviceField",
    "DeviceFormFactor",
    "DeviceMutation",
    "DiscoverySource",
    "MutationSource",
    "NetworkService",
    "PingMeasurement",
    "PingStatus",
    "Port",
    "PortStatus",
    "ServiceType",
    "DeviceMutationBus",
    "SnapshotStore",
]
