"""
LAN Scanner Service - Main orchestration loop.

Wires the mutation bus, snapshot store, evidence producers and discovery
coordinator together, runs periodic discovery passes and serves the
device inventory over a small HTTP API.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional

from aiohttp import web
from pydantic import TypeAdapter

from ._types import Device
from .apple_models import AppleModelDatabase
from .classifier import ClassificationPipeline
from .config import ScannerConfig
from .coordinator import DiscoveryCoordinator, ScanSummary
from .device_db import DeviceDatabase
from .discovery import (
    ARPTableReader,
    BonjourDiscoveryProvider,
    DiscoveryProvider,
    HTTPFingerprinter,
    PingOrchestrator,
    PortScanner,
    SSHHostKeyFingerprinter,
)
from .errors import ConfigError
from .logging_setup import configure_logging, shutdown_logging
from .mutation_bus import DeviceMutationBus
from .oui_lookup import OUILookup
from .snapshot_store import SnapshotStore
from .subnet import active_networks, cidr_hosts

logger = logging.getLogger(__name__)

_DEVICE = TypeAdapter(Device)


def device_to_dict(device: Device) -> dict[str, Any]:
    """JSON-ready device representation including derived fields."""
    data = _DEVICE.dump_python(device, mode="json")
    data["is_online"] = device.is_online
    data["best_display_ip"] = device.best_display_ip
    return data


def summary_to_dict(summary: Optional[ScanSummary]) -> Optional[dict[str, Any]]:
    if summary is None:
        return None
    return {
        "status": summary.status,
        "triggered_by": summary.triggered_by,
        "hosts": summary.hosts,
        "reachable": summary.reachable,
        "arp_entries": summary.arp_entries,
        "started_at": summary.started_at.isoformat(),
        "completed_at": summary.completed_at.isoformat() if summary.completed_at else None,
        "error_message": summary.error_message,
    }


class LanScannerService:
    """
    Main LAN scanner service.

    Orchestrates discovery, merging, classification and storage of devices.
    """

    def __init__(self, config: ScannerConfig):
        """
        Initialize scanner service.

        Args:
            config: Scanner configuration
        """
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.oui = OUILookup.load(config.oui_csv_path)
        self.apple_models = AppleModelDatabase.load(config.apple_models_csv_path)
        self.classifier = ClassificationPipeline(oui=self.oui, apple_models=self.apple_models)

        self.bus = DeviceMutationBus(config.bus_buffer_size)
        self.db: Optional[DeviceDatabase] = None
        if not config.disable_persistence:
            self.db = DeviceDatabase(config.db_path)

        self.store = SnapshotStore(
            self.bus,
            persistence=self.db,
            persistence_key=config.persistence_key,
            classifier=self.classifier,
            oui=self.oui,
            local_networks=active_networks(),
            name_policy=config.service_name_policy,
            grace_seconds=config.online_grace_seconds,
            sweep_interval=config.offline_sweep_interval_seconds,
            buffer_size=config.bus_buffer_size,
            disable_persistence=config.disable_persistence,
            clear_on_start=config.clear_on_start,
        )

        self.orchestrator = PingOrchestrator(
            self.bus,
            max_concurrent=config.ping_max_concurrent,
            count=config.ping_count,
            interval=config.ping_interval_seconds,
            timeout_per_ping=config.ping_timeout_seconds,
        )
        self.coordinator = DiscoveryCoordinator(
            self.bus,
            self.orchestrator,
            providers=self._init_providers(),
            arp_reader=ARPTableReader() if config.enable_arp else None,
            mdns_warmup=config.mdns_warmup_seconds if config.enable_bonjour else 0.0,
            max_hosts=config.max_hosts,
            arp_delay=config.arp_resolve_delay_seconds,
            ping_enabled=config.enable_ping,
        )

        self._scan_task: Optional[asyncio.Task] = None
        self._api_app: Optional[web.Application] = None
        self._api_runner: Optional[web.AppRunner] = None

    def _init_providers(self) -> list[DiscoveryProvider]:
        """Initialize enabled long-running providers."""
        providers: list[DiscoveryProvider] = []
        if self.config.enable_bonjour:
            providers.append(BonjourDiscoveryProvider(
                self.bus,
                curated_types=self.config.bonjour_types,
                allow_list=self.config.bonjour_allow_list,
                max_dynamic_types=self.config.bonjour_max_dynamic_types,
                cooldown=self.config.bonjour_resolve_cooldown_seconds,
                resolve_timeout=self.config.bonjour_resolve_timeout_seconds,
            ))
            logger.info("Bonjour discovery enabled")
        if self.config.enable_port_scan:
            providers.append(PortScanner(
                self.store,
                self.bus,
                ports=self.config.port_scan_ports,
                timeout=self.config.port_scan_timeout_seconds,
                rescan_interval=self.config.port_scan_rescan_seconds,
            ))
            logger.info(f"Port scanning enabled for {self.config.port_scan_ports}")
        if self.config.enable_http_fingerprint:
            providers.append(HTTPFingerprinter(
                self.store,
                self.bus,
                cooldown=self.config.http_fingerprint_cooldown_seconds,
                timeout=self.config.http_fingerprint_timeout_seconds,
            ))
            logger.info("HTTP fingerprinting enabled")
        if self.config.enable_ssh_fingerprint:
            providers.append(SSHHostKeyFingerprinter(
                self.store,
                self.bus,
                cooldown=self.config.ssh_fingerprint_cooldown_seconds,
                timeout=self.config.ssh_fingerprint_timeout_seconds,
            ))
            logger.info("SSH host key fingerprinting enabled")
        return providers

    def scan_targets(self) -> list[str]:
        """Hosts from configured ranges; empty means auto-enumerate."""
        hosts: list[str] = []
        for cidr in self.config.network_ranges:
            try:
                hosts.extend(cidr_hosts(cidr, self.config.max_hosts))
            except ValueError as e:
                logger.error(f"Invalid network range {cidr}: {e}")
        return list(dict.fromkeys(hosts))

    async def start(self) -> None:
        """Start the scanner service."""
        logger.info("Starting LAN Scanner Service")
        self._running = True

        await self.store.start()
        await self._start_api_server()
        await self._main_loop()

    async def stop(self) -> None:
        """Stop the scanner service."""
        if not self._running and self._api_runner is None:
            return
        logger.info("Stopping LAN Scanner Service")
        self._running = False
        self._shutdown_event.set()

        if self._scan_task is not None and not self._scan_task.done():
            self._scan_task.cancel()
            try:
                await self._scan_task
            except asyncio.CancelledError:
                pass
        await self.coordinator.stop()
        await self.store.stop()

        if self._api_runner:
            await self._api_runner.cleanup()
            self._api_runner = None

    async def _start_api_server(self) -> None:
        """Start API server for inventory queries and on-demand scans."""
        self._api_app = self.build_app()
        self._api_runner = web.AppRunner(self._api_app)
        await self._api_runner.setup()
        site = web.TCPSite(self._api_runner, self.config.api_host, self.config.api_port)
        await site.start()
        logger.info(f"API server started on {self.config.api_host}:{self.config.api_port}")

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/scans/trigger", self._handle_trigger_scan)
        app.router.add_get("/api/scans/status", self._handle_scan_status)
        app.router.add_get("/api/devices", self._handle_list_devices)
        app.router.add_get("/api/devices/{device_id}", self._handle_get_device)
        app.router.add_get("/api/health", self._handle_health)
        return app

    async def _main_loop(self) -> None:
        """Main service loop - runs discovery passes on an interval."""
        logger.info("Scanner main loop started")
        if self.config.disable_discovery:
            logger.info("Discovery disabled, serving stored devices only")

        triggered_by = "startup"
        while self._running:
            if not self.config.disable_discovery:
                try:
                    await self.run_scan(triggered_by=triggered_by)
                except Exception as e:
                    logger.error(f"Error in main loop: {e}")
            triggered_by = "schedule"

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.config.scan_interval_seconds,
                )
                break
            except asyncio.TimeoutError:
                pass

        logger.info("Scanner main loop stopped")

    async def run_scan(self, triggered_by: str = "manual") -> ScanSummary:
        """Run a discovery pass over the configured (or auto-detected) hosts."""
        return await self.coordinator.run_scan(self.scan_targets(), triggered_by=triggered_by)

    # -------------------------------------------------------------------------
    # API Handlers
    # -------------------------------------------------------------------------

    async def _handle_trigger_scan(self, request: web.Request) -> web.Response:
        """Handle POST /api/scans/trigger."""
        try:
            if self.config.disable_discovery:
                return web.json_response(
                    {"status": "error", "message": "Discovery is disabled"},
                    status=409,
                )
            if self.coordinator.scanning:
                return web.json_response(
                    {"status": "error", "message": "Scan already in progress"},
                    status=409,
                )
            self._scan_task = asyncio.create_task(self.run_scan(triggered_by="api"))
            return web.json_response({"status": "started"}, status=202)

        except Exception as e:
            return web.json_response(
                {"status": "error", "message": str(e)},
                status=500,
            )

    async def _handle_scan_status(self, request: web.Request) -> web.Response:
        """Handle GET /api/scans/status."""
        progress = self.orchestrator.progress
        return web.json_response({
            "scanning": self.coordinator.scanning,
            "progress": {
                "total": progress.total,
                "completed": progress.completed,
                "succeeded": progress.succeeded,
                "started": progress.started,
                "finished": progress.finished,
            },
            "latest": summary_to_dict(self.coordinator.last_summary),
        })

    async def _handle_list_devices(self, request: web.Request) -> web.Response:
        """Handle GET /api/devices."""
        try:
            online = request.query.get("online")
            form_factor = request.query.get("form_factor")

            devices = self.store.devices
            if online is not None:
                wanted = online.lower() == "true"
                devices = [d for d in devices if d.is_online == wanted]
            if form_factor:
                devices = [
                    d for d in devices
                    if d.classification and d.classification.form_factor
                    and d.classification.form_factor.value == form_factor
                ]

            return web.json_response({
                "devices": [device_to_dict(d) for d in devices],
                "total": len(devices),
            })

        except Exception as e:
            return web.json_response(
                {"status": "error", "message": str(e)},
                status=500,
            )

    async def _handle_get_device(self, request: web.Request) -> web.Response:
        """Handle GET /api/devices/{device_id}."""
        device_id = request.match_info["device_id"]
        device = self.store.get_device(device_id)
        if device is None:
            return web.json_response(
                {"status": "error", "message": "Device not found"},
                status=404,
            )
        return web.json_response({"device": device_to_dict(device)})

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /api/health."""
        devices = self.store.devices
        latest = self.coordinator.last_summary
        return web.json_response({
            "status": "ok",
            "service": "lan-scanner",
            "devices": len(devices),
            "online": sum(1 for d in devices if d.is_online),
            "last_scan": latest.started_at.isoformat() if latest else None,
        })


def main():
    """Entry point for lan-scanner service."""
    import argparse

    parser = argparse.ArgumentParser(description="LAN Device Scanner Service")
    parser.add_argument("--config", type=str, help="Path to config file")
    parser.add_argument("--host", type=str, default=None, help="API host")
    parser.add_argument("--port", type=int, default=None, help="API port")
    parser.add_argument("--log-level", type=str, default=None, help="off, error, warn, info or debug")
    args = parser.parse_args()

    # Load configuration
    try:
        if args.config:
            config = ScannerConfig.from_yaml(Path(args.config))
        else:
            config = ScannerConfig.from_env()
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(1)

    # Override with CLI args
    if args.host:
        config.api_host = args.host
    if args.port:
        config.api_port = args.port
    if args.log_level:
        config.log_level = args.log_level.lower()

    configure_logging(config.log_level)

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Config error: {error}")
        shutdown_logging()
        sys.exit(1)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    service = LanScannerService(config)

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(service.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        loop.run_until_complete(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        loop.run_until_complete(service.stop())
        loop.close()
        shutdown_logging()


if __name__ == "__main__":
    main()
