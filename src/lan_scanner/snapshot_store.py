"""
Snapshot store.

The single writer of the device collection. Consumes the mutation bus one
event at a time, resolves identity, merges evidence, classifies, persists
and re-publishes field-level change events on its own outbound stream.
"""

from __future__ import annotations

import asyncio
import copy
import ipaddress
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from ._types import (
    ALL_DEVICE_FIELDS,
    Classification,
    Device,
    DeviceChange,
    DeviceField,
    DeviceMutation,
    DiscoverySource,
    MutationKind,
    MutationSource,
    ONLINE_GRACE_SECONDS,
    PingMeasurement,
    PingStatus,
    normalize_mac,
    now_utc,
)
from .classifier import ClassificationPipeline
from .device_db import DEFAULT_KEY, DeviceDatabase
from .errors import PersistenceError
from .merge import (
    ServiceNamePolicy,
    classification_fingerprint,
    differences,
    merge,
    sanitize,
    should_keep_ip,
    sort_devices,
)
from .mutation_bus import DEFAULT_BUFFER_SIZE, DeviceMutationBus, MutationSubscription
from .oui_lookup import OUILookup

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 60.0


class SnapshotStore:
    """
    Canonical device collection fed by the mutation bus.

    Args:
        bus: Inbound mutation bus (producers publish here)
        persistence: Snapshot database, or None to keep state in memory
        persistence_key: Key of the stored snapshot
        classifier: Classification pipeline (default rules when None)
        oui: Vendor lookup for sanitization
        local_networks: Detected LAN networks for address filtering
        name_policy: Service display-name conflict policy
        grace_seconds: Idle time before a device is forced offline
        sweep_interval: Seconds between idle sweeps
        buffer_size: Replay/queue bound of the outbound stream
        disable_persistence: Skip loading the stored snapshot on start
        clear_on_start: Wipe the stored snapshot on start
        clock: Time source
    """

    def __init__(
        self,
        bus: DeviceMutationBus,
        persistence: Optional[DeviceDatabase] = None,
        persistence_key: str = DEFAULT_KEY,
        classifier: Optional[ClassificationPipeline] = None,
        oui: Optional[OUILookup] = None,
        local_networks: Sequence[ipaddress.IPv4Network] = (),
        name_policy: ServiceNamePolicy = ServiceNamePolicy.LONGER,
        grace_seconds: float = ONLINE_GRACE_SECONDS,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        disable_persistence: bool = False,
        clear_on_start: bool = False,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.bus = bus
        self.persistence = persistence
        self.persistence_key = persistence_key
        self.classifier = classifier or ClassificationPipeline(oui=oui)
        self.oui = oui
        self.local_networks = list(local_networks)
        self.name_policy = name_policy
        self.grace_seconds = grace_seconds
        self.sweep_interval = sweep_interval
        self.disable_persistence = disable_persistence
        self.clear_on_start = clear_on_start
        self._clock = clock

        self._devices: list[Device] = []
        self._outbound = DeviceMutationBus(buffer_size)
        self._subscription: Optional[MutationSubscription] = None
        self._tasks: list[asyncio.Task] = []
        self._stored_at: Optional[datetime] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Restore persisted state, then consume the bus and run the idle sweep."""
        self.restore()
        self._subscription = self.bus.subscribe(replay_buffered=True)
        self._tasks = [
            asyncio.create_task(self._consume(self._subscription), name="snapshot-store-consume"),
            asyncio.create_task(self._sweep_loop(), name="snapshot-store-sweep"),
        ]
        logger.info(f"Snapshot store started with {len(self._devices)} devices")

    async def stop(self) -> None:
        """Stop consuming; nothing is published after this returns."""
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

    async def _consume(self, subscription: MutationSubscription) -> None:
        async for mutation in subscription:
            try:
                self.handle(mutation)
            except Exception as e:
                logger.error(f"Failed to apply {mutation.kind.value} mutation: {e}", exc_info=True)

    async def _sweep_loop(self) -> None:
        while True:
            self.sweep_offline()
            await asyncio.sleep(self.sweep_interval)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def devices(self) -> list[Device]:
        """Current snapshot, sorted by address."""
        return [copy.deepcopy(d) for d in self._devices]

    def get_device(self, device_id: str) -> Optional[Device]:
        for device in self._devices:
            if device.id == device_id:
                return copy.deepcopy(device)
        return None

    def mutation_stream(self, include_initial_snapshot: bool = True) -> MutationSubscription:
        """
        Subscribe to the store's outbound change stream.

        Args:
            include_initial_snapshot: Start with a snapshot of current devices
        """
        subscription = self._outbound.subscribe(replay_buffered=False)
        if include_initial_snapshot:
            subscription.deliver(DeviceMutation.snapshot(self.devices))
        return subscription

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def handle(self, mutation: DeviceMutation) -> None:
        """Apply one bus event."""
        if mutation.kind == MutationKind.SNAPSHOT:
            self.replace_all(mutation.devices)
        elif mutation.kind == MutationKind.CHANGE and mutation.change is not None:
            self.upsert(mutation.change.after, mutation.change.source)
        elif mutation.kind == MutationKind.REACHABILITY and mutation.measurement is not None:
            self.apply_ping(mutation.measurement)

    def upsert(self, incoming: Device, source: MutationSource) -> Optional[DeviceChange]:
        """
        Merge evidence into the matching record, or create a new one.

        Returns:
            The published change, or None when nothing changed
        """
        candidate = self._sanitize(incoming)
        if candidate is None:
            logger.debug(f"Dropped {source.value} evidence for {incoming.id}: no usable address")
            return None

        # Only the idle sweep may force a device offline
        if candidate.is_online_override is False:
            candidate.is_online_override = None
        if candidate.last_seen is None:
            candidate.last_seen = self._clock()
        if candidate.first_seen is None:
            candidate.first_seen = candidate.last_seen

        index = self._find_match(candidate)
        if index is None:
            candidate.classification = self._classify(candidate)
            self._devices.append(candidate)
            return self._commit(None, candidate, set(ALL_DEVICE_FIELDS), source)

        before = self._devices[index]
        merged = self._sanitize(merge(before, candidate, self.name_policy))
        if merged is None:
            logger.info(f"Removing {before.id}: no usable address after merge")
            del self._devices[index]
            self._devices = sort_devices(self._devices)
            self._persist()
            self._outbound.publish(DeviceMutation.snapshot(self.devices))
            return None

        if merged.classification is None or classification_fingerprint(merged) != classification_fingerprint(before):
            merged.classification = self._classify(merged)

        changed = differences(before, merged)
        if not changed:
            return None
        self._devices[index] = merged
        return self._commit(before, merged, changed, source)

    def apply_ping(self, measurement: PingMeasurement) -> Optional[DeviceChange]:
        """
        Fold a reachability result into the store.

        Only a successful probe creates a device; failures never change
        an existing one.
        """
        host = measurement.host.strip()
        index = next(
            (i for i, d in enumerate(self._devices) if d.primary_ip == host or host in d.ips),
            None,
        )
        if measurement.status != PingStatus.SUCCESS:
            return None

        if index is not None:
            before = self._devices[index]
            after = copy.deepcopy(before)
            after.rtt_millis = measurement.rtt_millis
            if after.last_seen is None or measurement.timestamp > after.last_seen:
                after.last_seen = measurement.timestamp
            if after.first_seen is None:
                after.first_seen = after.last_seen
            after.discovery_sources.add(DiscoverySource.PING)
            after.is_online_override = None
            changed = differences(before, after)
            if not changed:
                return None
            self._devices[index] = after
            return self._commit(before, after, changed, MutationSource.PING)

        if not should_keep_ip(host, self.local_networks):
            return None
        device = self._sanitize(Device(
            primary_ip=host,
            ips={host},
            discovery_sources={DiscoverySource.PING},
            rtt_millis=measurement.rtt_millis,
            first_seen=measurement.timestamp,
            last_seen=measurement.timestamp,
        ))
        if device is None:
            return None
        device.classification = self._classify(device)
        self._devices.append(device)
        return self._commit(None, device, set(ALL_DEVICE_FIELDS), MutationSource.PING)

    def replace_all(self, devices: Sequence[Device]) -> None:
        """Replace the whole collection with a snapshot."""
        replacement = []
        for device in devices:
            cleaned = self._sanitize(device)
            if cleaned is None:
                continue
            if cleaned.classification is None:
                cleaned.classification = self._classify(cleaned)
            replacement.append(cleaned)
        self._devices = sort_devices(replacement)
        self._persist()
        self._outbound.publish(DeviceMutation.snapshot(self.devices))

    def sweep_offline(self, now: Optional[datetime] = None) -> list[DeviceChange]:
        """Force devices idle past the grace window offline."""
        now = now or self._clock()
        grace = timedelta(seconds=self.grace_seconds)
        changes = []
        for index, device in enumerate(self._devices):
            if device.is_online_override is False or device.last_seen is None:
                continue
            if now - device.last_seen <= grace:
                continue
            after = copy.deepcopy(device)
            after.is_online_override = False
            self._devices[index] = after
            change = DeviceChange(
                before=copy.deepcopy(device),
                after=copy.deepcopy(after),
                changed={DeviceField.IS_ONLINE_OVERRIDE},
                source=MutationSource.OFFLINE,
            )
            self._outbound.publish(DeviceMutation(kind=MutationKind.CHANGE, change=change))
            changes.append(change)
        if changes:
            logger.info(f"Marked {len(changes)} idle devices offline")
            self._persist()
        return changes

    def refresh_classifications(self) -> int:
        """Re-run the classifier over every device; returns how many changed."""
        updated = 0
        for index, device in enumerate(self._devices):
            classification = self._classify(device)
            if classification == device.classification:
                continue
            after = copy.deepcopy(device)
            after.classification = classification
            self._devices[index] = after
            self._publish_change(device, after, {DeviceField.CLASSIFICATION}, MutationSource.CLASSIFICATION)
            updated += 1
        if updated:
            self._persist()
        return updated

    def remove_all(self) -> None:
        self._devices = []
        self._persist()
        self._outbound.publish(DeviceMutation.snapshot([]))

    def clear_all_data(self) -> None:
        """Forget every device, including the stored snapshot and bus replay buffer."""
        self._devices = []
        self.bus.clear_buffer()
        if self.persistence is not None:
            try:
                self.persistence.clear(self.persistence_key)
                self._stored_at = None
            except PersistenceError as e:
                logger.error(f"Failed to clear stored devices: {e}")
        self._outbound.publish(DeviceMutation.snapshot([]))

    def restore(self) -> None:
        """Load the stored snapshot; restored devices start forced offline."""
        if self.persistence is None:
            return
        if self.clear_on_start:
            logger.info("Clearing stored devices on start")
            self._devices = []
            self._persist()
            return
        if self.disable_persistence:
            logger.info("Persistence disabled, starting empty")
            return

        self._stored_at = self._stored_timestamp()
        loaded = self._load()
        for device in loaded:
            device.is_online_override = False
        self._devices = self._clean_loaded(loaded)
        logger.info(f"Restored {len(self._devices)} devices from {MutationSource.PERSISTENCE_RESTORE.value}")
        self._outbound.publish(DeviceMutation.snapshot(self.devices))

    def reload_if_changed(self) -> bool:
        """
        Reload when another writer replaced the stored snapshot.

        The stored write time is checked first; the payload is only read when
        it moved, and memory is only replaced when the device ids differ.
        """
        if self.persistence is None or self.disable_persistence:
            return False
        stamp = self._stored_timestamp()
        if stamp == self._stored_at:
            return False
        self._stored_at = stamp
        loaded = self._clean_loaded(self._load())
        if [d.id for d in loaded] == [d.id for d in self._devices]:
            return False
        self._devices = loaded
        self._outbound.publish(DeviceMutation.snapshot(self.devices))
        return True

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _sanitize(self, device: Device) -> Optional[Device]:
        return sanitize(device, self.local_networks, self.oui)

    def _classify(self, device: Device) -> Classification:
        return self.classifier.classify(device)

    def _find_match(self, device: Device) -> Optional[int]:
        """Identity resolution: id, MAC, primary IP, any IP, hostname."""
        for index, existing in enumerate(self._devices):
            if existing.id == device.id:
                return index

        mac = normalize_mac(device.mac_address)
        if mac:
            for index, existing in enumerate(self._devices):
                if normalize_mac(existing.mac_address) == mac:
                    return index

        if device.primary_ip:
            for index, existing in enumerate(self._devices):
                if existing.primary_ip == device.primary_ip:
                    return index

        if device.ips:
            for index, existing in enumerate(self._devices):
                if existing.ips & device.ips:
                    return index

        if device.hostname:
            for index, existing in enumerate(self._devices):
                if existing.hostname == device.hostname:
                    return index
        return None

    def _commit(
        self,
        before: Optional[Device],
        after: Device,
        changed: set[DeviceField],
        source: MutationSource,
    ) -> DeviceChange:
        self._devices = sort_devices(self._devices)
        self._persist()
        return self._publish_change(before, after, changed, source)

    def _publish_change(
        self,
        before: Optional[Device],
        after: Device,
        changed: set[DeviceField],
        source: MutationSource,
    ) -> DeviceChange:
        change = DeviceChange(
            before=copy.deepcopy(before) if before is not None else None,
            after=copy.deepcopy(after),
            changed=set(changed),
            source=source,
        )
        self._outbound.publish(DeviceMutation(kind=MutationKind.CHANGE, change=change))
        return change

    def _clean_loaded(self, loaded: list[Device]) -> list[Device]:
        cleaned = []
        for device in loaded:
            device = self._sanitize(device)
            if device is None:
                continue
            if device.classification is None:
                device.classification = self._classify(device)
            cleaned.append(device)
        return sort_devices(cleaned)

    def _stored_timestamp(self) -> Optional[datetime]:
        try:
            return self.persistence.updated_at(self.persistence_key)
        except PersistenceError as e:
            logger.warning(f"Cannot read stored snapshot time: {e}")
            return None

    def _load(self) -> list[Device]:
        try:
            return self.persistence.load(self.persistence_key)
        except PersistenceError as e:
            logger.warning(f"Ignoring stored devices: {e}")
            return []

    def _persist(self) -> None:
        if self.persistence is None or self.disable_persistence:
            return
        try:
            self.persistence.save(self._devices, self.persistence_key)
            self._stored_at = self.persistence.updated_at(self.persistence_key)
        except PersistenceError as e:
            logger.error(f"Failed to persist devices: {e}")
