"""
SSH host key fingerprinting.

Listens to the snapshot store's change stream and, for devices with an
open port 22 or an advertised SSH service, runs `ssh-keyscan` and records
a SHA256 fingerprint per host key algorithm. Only keys whose values
changed are published back to the mutation bus.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import logging
import shutil
import time
from typing import TYPE_CHECKING, Callable, Optional

from .._types import (
    Device,
    DeviceChange,
    DeviceField,
    DeviceMutation,
    DiscoverySource,
    MutationKind,
    MutationSource,
    PortStatus,
    ServiceType,
    now_utc,
)
from ..mutation_bus import DeviceMutationBus, MutationSubscription
from .base import DiscoveryProvider
from .http_fingerprint import probe_host

if TYPE_CHECKING:
    from ..snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = 3600.0
DEFAULT_TIMEOUT = 3.0
KEYSCAN = "ssh-keyscan"
KEY_TYPES = "rsa,ecdsa,ed25519"
SSH_PORT = 22

_TRIGGER_FIELDS = {DeviceField.OPEN_PORTS, DeviceField.SERVICES}
_PROBE_FIELDS = {DeviceField.FINGERPRINTS, DeviceField.DISCOVERY_SOURCES, DeviceField.LAST_SEEN}


def key_fingerprint(encoded: str) -> Optional[str]:
    """OpenSSH-style SHA256 fingerprint of a base64 public key blob."""
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return None
    if not raw:
        return None
    digest = base64.b64encode(hashlib.sha256(raw).digest()).decode("ascii")
    return "SHA256:" + digest.rstrip("=")


def parse_keyscan(output: str) -> dict[str, str]:
    """
    Parse `ssh-keyscan` output into fingerprint entries.

    Each key line reads `host algorithm base64-key`; comments and lines that
    do not decode are skipped.

    Returns:
        {"ssh.hostkey.<algorithm>.sha256": "SHA256:..."}
    """
    entries: dict[str, str] = {}
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) < 3:
            continue
        fingerprint = key_fingerprint(parts[2])
        if fingerprint is None:
            continue
        entries[f"ssh.hostkey.{parts[1].lower()}.sha256"] = fingerprint
    return entries


def ssh_ports(device: Device) -> list[int]:
    """Ports worth scanning for host keys: open TCP 22 and SSH service ports."""
    ports: list[int] = []
    for port in device.open_ports:
        if port.status == PortStatus.OPEN and port.transport.lower() == "tcp" and port.number == SSH_PORT:
            ports.append(port.number)
    for service in device.services:
        if service.type == ServiceType.SSH and service.port is not None and service.port not in ports:
            ports.append(service.port)
    return ports


def should_collect(change: DeviceChange) -> bool:
    if change.source == MutationSource.SSH_FINGERPRINT:
        return False
    return change.before is None or bool(change.changed & _TRIGGER_FIELDS)


class SSHHostKeyFingerprinter(DiscoveryProvider):
    """
    Collect SSH host key fingerprints of devices that run an SSH server.

    Args:
        store: Snapshot store whose change stream triggers scans
        bus: Where fingerprint deltas are published
        cooldown: Minimum seconds between scans of one (device, host, port)
        timeout: Seconds allowed for one ssh-keyscan run
        clock: Monotonic time source for the cooldown
    """

    def __init__(
        self,
        store: "SnapshotStore",
        bus: DeviceMutationBus,
        cooldown: float = DEFAULT_COOLDOWN,
        timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.bus = bus
        self.cooldown = cooldown
        self.timeout = timeout
        self._clock = clock
        self._last_scan: dict[tuple[str, str, int], float] = {}
        self._subscription: Optional[MutationSubscription] = None
        self._listener: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._stopped = False

    @property
    def name(self) -> str:
        return "ssh_hostkey"

    async def is_available(self) -> bool:
        return shutil.which(KEYSCAN) is not None

    async def start(self) -> None:
        self._stopped = False
        self._subscription = self.store.mutation_stream(include_initial_snapshot=False)
        self._listener = asyncio.create_task(self._listen(self._subscription), name="ssh-hostkey-listener")
        logger.info("SSH host key fingerprinter started")

    async def stop(self) -> None:
        self._stopped = True
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        tasks = list(self._tasks)
        if self._listener is not None:
            tasks.append(self._listener)
            self._listener = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _listen(self, subscription: MutationSubscription) -> None:
        async for mutation in subscription:
            if mutation.kind != MutationKind.CHANGE or mutation.change is None:
                continue
            if not should_collect(mutation.change):
                continue
            device = mutation.change.after
            host = probe_host(device)
            if not host:
                continue
            for port in ssh_ports(device):
                if not self.claim(device.id, host, port):
                    continue
                task = asyncio.create_task(self.probe_device(device, host, port))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    def claim(self, device_id: str, host: str, port: int) -> bool:
        """Reserve a scan unless the same target ran within the cooldown."""
        key = (device_id, host, port)
        now = self._clock()
        last = self._last_scan.get(key)
        if last is not None and now - last < self.cooldown:
            return False
        self._last_scan[key] = now
        return True

    async def collect(self, host: str, port: int) -> dict[str, str]:
        """Run ssh-keyscan against one endpoint; failures yield no entries."""
        command = [KEYSCAN, "-p", str(port), "-T", str(max(int(self.timeout), 1)), "-t", KEY_TYPES, host]
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.debug(f"Cannot run {KEYSCAN}: {e}")
            return {}

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout + 1.0)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.debug(f"{KEYSCAN} of {host}:{port} timed out")
            return {}
        return parse_keyscan(stdout.decode(errors="replace"))

    async def probe_device(self, device: Device, host: str, port: int) -> Optional[Device]:
        """
        Collect host keys for one endpoint and publish the changed keys.

        Returns:
            The published evidence, or None if nothing new was learned
        """
        entries = await self.collect(host, port)
        current = self.store.get_device(device.id) or device
        delta = {k: v for k, v in entries.items() if current.fingerprints.get(k) != v}
        if not delta or self._stopped:
            return None

        logger.debug(f"SSH host keys of {host}:{port} learned {sorted(delta)}")
        evidence = Device(
            id=device.id,
            primary_ip=device.primary_ip,
            ips=set(device.ips),
            fingerprints=delta,
            discovery_sources={DiscoverySource.SSH_PROBE},
            last_seen=now_utc(),
        )
        self.bus.publish(DeviceMutation.changed(evidence, _PROBE_FIELDS, MutationSource.SSH_FINGERPRINT))
        return evidence
