"""
Shelter Engine
==============

Service wiring for one site. Every collaborator is constructed here and
passed in explicitly; the resolver cache is owned by the engine and shared
by the resolver and the polling scheduler.

    Transport (simulated or Modbus TCP)
        └── CommandQueue
              ├── PollingScheduler  (LOW)
              └── CommandExecutor   (HIGH writes / NORMAL reads)
                    └── BatchRunner
    AddressResolver + ResolverCache
    ResultMapper -> InMemoryUnitStore / InMemoryCommandLogStore
    WebSocketManager (broadcast sink)
"""

import logging
from typing import Dict, Optional

import config
from shelter_master.command_queue import CommandQueue
from shelter_master.control import BatchRunner, CommandExecutor, get_strategy
from shelter_master.errors import UnknownSiteError
from shelter_master.mapping import AddressResolver, ResolverCache, load_site_mapping
from shelter_master.polling import PollingScheduler
from shelter_master.results import ResultMapper
from shelter_master.retry import RetryPolicy
from shelter_master.storage import InMemoryCommandLogStore, InMemoryUnitStore
from shelter_master.transport import ModbusTcpTransport, SimulatedDDCTransport, Transport
from shelter_master.websocket import WebSocketManager

logger = logging.getLogger(__name__)


class ShelterEngine:
    def __init__(self, site_id: str, transport: Transport,
                 polling_config: Optional[Dict] = None,
                 queue_config: Optional[Dict] = None,
                 control_config: Optional[Dict] = None,
                 persistence_config: Optional[Dict] = None,
                 supported_types=None,
                 broadcaster: Optional[WebSocketManager] = None):
        polling_config = {**config.POLLING_CONFIG, **(polling_config or {})}
        queue_config = {**config.QUEUE_CONFIG, **(queue_config or {})}
        control_config = {**config.CONTROL_CONFIG, **(control_config or {})}
        persistence_config = {**config.PERSISTENCE_CONFIG, **(persistence_config or {})}

        site = load_site_mapping(site_id)
        if site is None:
            raise UnknownSiteError(site_id)

        self.site_id = site_id
        self.site = site
        self.transport = transport
        self.broadcaster = broadcaster or WebSocketManager()

        self.cache = ResolverCache(sweep_interval_s=polling_config["memory_cleanup_interval_s"])
        self.resolver = AddressResolver(self.cache, sites={site_id: site})

        self.unit_store = InMemoryUnitStore()
        self.unit_store.seed_from_mapping(site)
        self.log_store = InMemoryCommandLogStore()

        self.command_queue = CommandQueue(
            transport,
            transaction_timeout_s=queue_config["transaction_timeout_s"],
            size_warning_threshold=queue_config["size_warning_threshold"],
            slow_batch_ms=queue_config["slow_batch_ms"],
            broadcaster=self.broadcaster,
        )
        self.result_mapper = ResultMapper(self.resolver, self.unit_store, self.log_store, self.broadcaster)

        self.executor = CommandExecutor(
            self.resolver, self.command_queue, self.result_mapper, self.log_store,
            supported_types if supported_types is not None else config.SUPPORTED_UNIT_TYPES,
        )
        self.batch_runner = BatchRunner(
            self.executor, self.log_store,
            get_strategy(control_config["batch_strategy"], control_config["max_concurrency"]),
        )

        self.scheduler = PollingScheduler(
            site_id, self.resolver, self.cache, self.command_queue, self.result_mapper, self.unit_store,
            broadcaster=self.broadcaster,
            interval_ms=polling_config["default_interval_ms"],
            min_interval_ms=polling_config["min_interval_ms"],
            enabled=polling_config["enabled"],
            device_cache_ttl_s=polling_config["device_cache_ttl_s"],
            retry_policy=RetryPolicy(polling_config["max_retry_attempts"],
                                     polling_config["retry_delay_ms"] / 1000),
            save_retry_policy=RetryPolicy(persistence_config["save_max_retries"],
                                          persistence_config["save_retry_delay_ms"] / 1000),
            poll_system_ports=polling_config["poll_system_ports"],
            response_time_alpha=polling_config["response_time_alpha"],
        )

        self.running = False

    @classmethod
    def from_config(cls) -> "ShelterEngine":
        """Build the engine from config.py (environment overrides applied)."""
        modbus = config.MODBUS_CONFIG
        if modbus["use_mock"]:
            transport = SimulatedDDCTransport(latency_s=modbus["mock_latency_s"])
        else:
            transport = ModbusTcpTransport(modbus["host"], modbus["port"], modbus["unit_id"], modbus["timeout_s"])
        return cls(config.SITE_ID, transport)

    async def start(self):
        logger.info("=" * 60)
        logger.info(f"SHELTER MASTER STARTING (site {self.site_id}, transport {self.transport.name})")
        logger.info("=" * 60)

        await self.broadcaster.start_broadcasting()
        if not await self.transport.connect():
            logger.warning("Transport not connected; transactions will fail until it reconnects")
        await self.scheduler.start()
        self.running = True

        await self.broadcaster.broadcast_log("info", "system", f"Shelter master started for site {self.site_id}")
        logger.info(f"✅ Shelter master operational ({len(self.unit_store.units)} units)")

    async def stop(self):
        logger.info("Shutting down shelter master...")
        await self.scheduler.stop()
        await self.batch_runner.stop()
        await self.command_queue.stop()
        await self.transport.disconnect()
        await self.broadcaster.stop_broadcasting()
        self.running = False
        logger.info("Shelter master stopped")

    def get_health(self) -> Dict:
        return {
            "status": "healthy" if self.running and self.transport.is_connected() else "degraded",
            "site": self.site_id,
            "polling": {
                "running": self.scheduler.running,
                "enabled": self.scheduler.enabled,
                "intervalMs": self.scheduler.interval_ms,
            },
            "transport": {
                "type": self.transport.name,
                "connected": self.transport.is_connected(),
            },
            "websocket_clients": self.broadcaster.get_connection_count(),
        }
