"""
Reachability probing.

Pingers produce PingMeasurements for one host; the orchestrator runs many
hosts concurrently (bounded) and publishes every measurement to the bus.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Iterable, Optional

from .._types import DeviceMutation, PingMeasurement, PingStatus, now_utc
from ..mutation_bus import DeviceMutationBus

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 32

_RTT = re.compile(r"time[=<]\s*([0-9.]+)\s*ms")


@dataclass
class PingConfig:
    """Per-host probe settings; values below the minimums are raised to them."""
    host: str
    count: int = 1
    interval: float = 1.0
    timeout_per_ping: float = 1.5

    def __post_init__(self) -> None:
        self.count = max(1, self.count)
        self.interval = max(0.2, self.interval)
        self.timeout_per_ping = max(0.5, self.timeout_per_ping)


def parse_rtt(output: str) -> Optional[float]:
    """Round-trip time in ms from ping output, if present."""
    match = _RTT.search(output)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


class Pinger(ABC):
    """Probes one host `count` times, sequentially."""

    async def measurements(self, config: PingConfig) -> AsyncIterator[PingMeasurement]:
        for sequence in range(config.count):
            if sequence:
                await asyncio.sleep(config.interval)
            yield await self.probe(config, sequence)

    @abstractmethod
    async def probe(self, config: PingConfig, sequence: int) -> PingMeasurement:
        pass


class SystemPinger(Pinger):
    """Runs the system `ping` binary for each probe."""

    def _command(self, config: PingConfig) -> list[str]:
        if sys.platform == "darwin":
            # macOS: -W is in milliseconds
            return ["ping", "-c", "1", "-W", str(int(config.timeout_per_ping * 1000)), config.host]
        return ["ping", "-c", "1", "-W", str(max(1, math.ceil(config.timeout_per_ping))), config.host]

    async def probe(self, config: PingConfig, sequence: int) -> PingMeasurement:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command(config),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            return PingMeasurement(config.host, sequence, PingStatus.ERROR, error=str(e))

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=config.timeout_per_ping + 1.0)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return PingMeasurement(config.host, sequence, PingStatus.TIMEOUT)

        if proc.returncode != 0:
            return PingMeasurement(config.host, sequence, PingStatus.TIMEOUT)
        rtt = parse_rtt(stdout.decode(errors="replace"))
        return PingMeasurement(config.host, sequence, PingStatus.SUCCESS, rtt_millis=rtt if rtt is not None else 0.0)


class TCPPinger(Pinger):
    """
    Reachability via a TCP connect.

    A refused connection still proves the host is up.
    """

    def __init__(self, port: int = 80):
        self.port = port

    async def probe(self, config: PingConfig, sequence: int) -> PingMeasurement:
        started = time.monotonic()
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(config.host, self.port),
                timeout=config.timeout_per_ping,
            )
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
        except asyncio.TimeoutError:
            return PingMeasurement(config.host, sequence, PingStatus.TIMEOUT)
        except ConnectionRefusedError:
            pass
        except OSError as e:
            return PingMeasurement(config.host, sequence, PingStatus.UNREACHABLE, error=str(e))
        rtt = (time.monotonic() - started) * 1000.0
        return PingMeasurement(config.host, sequence, PingStatus.SUCCESS, rtt_millis=round(rtt, 3), timestamp=now_utc())


@dataclass
class ScanProgress:
    """Progress of one sweep."""
    total: int = 0
    completed: int = 0
    succeeded: int = 0
    started: bool = False
    finished: bool = False

    def begin(self, total: int) -> None:
        self.total = total
        self.completed = 0
        self.succeeded = 0
        self.started = True
        self.finished = total == 0

    def increment_completed(self, success: bool) -> None:
        self.completed += 1
        if success:
            self.succeeded += 1
        if self.total > 0 and self.completed >= self.total:
            self.finished = True


class PingOrchestrator:
    """
    Bounded concurrent reachability sweep.

    At most max_concurrent hosts are in flight; enqueue() waits for a free
    slot before launching the next host. Slots are released even when a
    host task is cancelled.

    Args:
        bus: Where measurements are published
        pinger: Probe implementation (system ping by default)
        max_concurrent: In-flight host limit
    """

    def __init__(
        self,
        bus: DeviceMutationBus,
        pinger: Optional[Pinger] = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        count: int = 1,
        interval: float = 1.0,
        timeout_per_ping: float = 1.5,
    ):
        self.bus = bus
        self.pinger = pinger or SystemPinger()
        self.max_concurrent = max_concurrent
        self.count = count
        self.interval = interval
        self.timeout_per_ping = timeout_per_ping
        self.progress = ScanProgress()
        self.finished = asyncio.Event()
        self._slots = asyncio.Semaphore(max_concurrent)
        self._active: set[asyncio.Task] = set()
        self._stopped = False

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def stopped(self) -> bool:
        return self._stopped

    def begin(self, total: int) -> None:
        self._stopped = False
        self.progress.begin(total)
        if self.progress.finished:
            self.finished.set()
        else:
            self.finished.clear()

    async def enqueue(self, hosts: Iterable[str]) -> None:
        """Launch one task per distinct host, throttled to max_concurrent."""
        for host in dict.fromkeys(hosts):
            await self._slots.acquire()
            if self._stopped:
                self._slots.release()
                self._mark_finished()
                return
            config = PingConfig(host, self.count, self.interval, self.timeout_per_ping)
            task = asyncio.create_task(self._run(config), name=f"ping-{host}")
            self._active.add(task)
            task.add_done_callback(lambda t, h=host: self._on_done(h, t))

    async def _run(self, config: PingConfig) -> bool:
        succeeded = False
        async for measurement in self.pinger.measurements(config):
            if self._stopped:
                break
            self.bus.publish(DeviceMutation.reachability(measurement))
            if measurement.status == PingStatus.SUCCESS:
                succeeded = True
        return succeeded

    def _on_done(self, host: str, task: asyncio.Task) -> None:
        self._slots.release()
        self._active.discard(task)
        success = False
        if not task.cancelled():
            error = task.exception()
            if error is not None:
                logger.warning(f"Ping task for {host} failed: {error}")
            else:
                success = task.result()
        self.progress.increment_completed(success)
        if self.progress.finished:
            self.finished.set()

    async def wait_finished(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self.finished.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _mark_finished(self) -> None:
        self.progress.finished = True
        self.finished.set()

    async def stop(self) -> None:
        """Cancel every in-flight host and release anyone waiting on the sweep."""
        self._stopped = True
        tasks = list(self._active)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._mark_finished()
