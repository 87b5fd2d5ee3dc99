"""
Polling Scheduler
=================

Periodically reads every registered unit through the command queue.

Cycle (idle -> running -> idle):
    1. Fetch the unit list (device cache, refreshed after a TTL)
    2. Poll the common system ports (DDC clock, seasonal flags)
    3. For each unit: resolve its GET_ actions, read each at LOW priority with
       bounded retry, hand every value to the result mapper
    4. Flip health to error when every action of a unit failed, clear it
       when every action succeeded

Timer ticks that arrive while a cycle is running are skipped, not queued.
Interval changes requested mid-cycle are applied when the cycle ends. The
stop flag is checked between units; units already polled keep their data.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, List, Optional

from shelter_master.command_queue import CommandPriority, CommandQueue
from shelter_master.errors import MappingError, ShelterError, command_execution_error
from shelter_master.mapping.cache import ResolverCache
from shelter_master.mapping.models import CommandIntent, PlainCommand, TimeCompositeCommand
from shelter_master.mapping.resolver import AddressResolver
from shelter_master.polling.metrics import CycleReport, PollingMetrics, UnitPollOutcome
from shelter_master.results.mapper import ResultMapper, format_time
from shelter_master.retry import RetryPolicy
from shelter_master.storage.models import CommunicationHealth, UnitRecord

logger = logging.getLogger(__name__)

SYSTEM_DEVICE_ID = "ddc"
SYSTEM_UNIT_ID = "system"


class PollingScheduler:
    def __init__(self, site_id: str, resolver: AddressResolver, cache: ResolverCache,
                 command_queue: CommandQueue, result_mapper: ResultMapper, unit_store,
                 broadcaster=None,
                 interval_ms: int = 20000,
                 min_interval_ms: int = 1000,
                 enabled: bool = True,
                 device_cache_ttl_s: float = 300.0,
                 retry_policy: Optional[RetryPolicy] = None,
                 save_retry_policy: Optional[RetryPolicy] = None,
                 poll_system_ports: bool = True,
                 response_time_alpha: float = 0.1,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the scheduler.

        Args:
            site_id: Site whose mapping drives action resolution
            resolver: Address resolver (shares the injected cache)
            cache: Resolver cache, swept from the cycle boundary
            command_queue: Queue in front of the transport
            result_mapper: Sole writer of unit data fields
            unit_store: Unit catalog and data store
            broadcaster: Optional real-time sink (broadcast_log)
            interval_ms: Timer period between ticks
            enabled: Auto polling on/off
            device_cache_ttl_s: Unit list refresh period
            retry_policy: Per-action read retry
            save_retry_policy: Retry around persisting a polled value
        """
        self.site_id = site_id
        self.resolver = resolver
        self.cache = cache
        self.command_queue = command_queue
        self.result_mapper = result_mapper
        self.unit_store = unit_store
        self.broadcaster = broadcaster

        self.interval_ms = interval_ms
        self.min_interval_ms = min_interval_ms
        self.pending_interval_ms: Optional[int] = None
        self.enabled = enabled
        self.device_cache_ttl_s = device_cache_ttl_s
        self.retry_policy = retry_policy or RetryPolicy(max_retries=1, backoff_s=0.1)
        self.save_retry_policy = save_retry_policy or RetryPolicy(max_retries=2, backoff_s=0.1)
        self.poll_system_ports = poll_system_ports
        self._clock = clock

        # State
        self.running = False
        self.cycle_running = False
        self.stop_requested = False
        self._timer_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None

        # Device cache
        self._units: Optional[List[UnitRecord]] = None
        self._units_fetched_at = 0.0

        self.metrics = PollingMetrics(alpha=response_time_alpha)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Start the periodic timer."""
        if self.running:
            return
        self.running = True
        self.stop_requested = False
        self._wakeup = asyncio.Event()
        self._timer_task = asyncio.create_task(self._timer_loop())
        logger.info(f"Polling scheduler started (interval={self.interval_ms}ms, "
                    f"mode={'auto' if self.enabled else 'manual'})")

    async def stop(self):
        """Stop the timer and let an in-progress cycle wind down at the next unit boundary."""
        self.stop_requested = True
        self.running = False
        if self._wakeup:
            self._wakeup.set()
        if self._timer_task:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None
        if self._cycle_task and not self._cycle_task.done():
            await asyncio.gather(self._cycle_task, return_exceptions=True)
        if not self.cycle_running:
            # Honoured; a later trigger runs a full cycle
            self.stop_requested = False
        logger.info("Polling scheduler stopped")

    async def _timer_loop(self):
        while self.running:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval_ms / 1000)
                # Interval changed while idle: restart the wait with the new period
                self._wakeup.clear()
                continue
            except asyncio.TimeoutError:
                pass
            if self.running:
                self.tick()

    def tick(self) -> bool:
        """
        Handle one timer tick.

        Returns:
            True if a cycle was started
        """
        if not self.enabled:
            return False
        return self.trigger()

    def trigger(self) -> bool:
        """Start one cycle now (also in manual mode); obeys the reentrancy guard."""
        if self.cycle_running or (self._cycle_task and not self._cycle_task.done()):
            self.metrics.skipped_ticks += 1
            logger.warning("Previous polling cycle still running; tick skipped")
            return False
        self.stop_requested = False
        self._cycle_task = asyncio.create_task(self._run_cycle_safely())
        return True

    async def _run_cycle_safely(self):
        try:
            await self.run_cycle()
        except Exception as e:
            logger.error(f"Polling cycle aborted: {e}")

    # ------------------------------------------------------------------
    # Runtime control
    # ------------------------------------------------------------------

    def set_interval(self, interval_ms: int) -> bool:
        """
        Request a new polling interval.

        Returns:
            True if applied immediately, False if deferred to the end of the running cycle
        """
        if interval_ms < self.min_interval_ms:
            raise ValueError(f"Polling interval must be >= {self.min_interval_ms}ms")
        if self.cycle_running:
            self.pending_interval_ms = interval_ms
            logger.info(f"Polling interval change to {interval_ms}ms deferred to cycle end")
            return False
        self._apply_interval(interval_ms)
        return True

    def _apply_interval(self, interval_ms: int):
        previous = self.interval_ms
        self.interval_ms = interval_ms
        self.pending_interval_ms = None
        if self._wakeup:
            self._wakeup.set()
        logger.info(f"Polling interval changed {previous}ms -> {interval_ms}ms")

    def set_enabled(self, enabled: bool):
        self.enabled = enabled
        logger.info(f"Polling {'enabled (auto)' if enabled else 'disabled (manual)'}")

    def invalidate_device_cache(self):
        self._units = None

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> Optional[CycleReport]:
        """
        Run one polling cycle.

        Returns:
            CycleReport, or None if a cycle was already running
        """
        if self.cycle_running:
            self.metrics.skipped_ticks += 1
            logger.warning("Polling cycle already running; request skipped")
            return None

        self.cycle_running = True
        report = CycleReport(started_at=datetime.utcnow())
        started = self._clock()
        try:
            units = await self._get_units()
            report.units_total = len(units)
            if not units:
                logger.info("No registered units; polling cycle skipped")
                return report

            await self._broadcast("info", f"Polling cycle started ({len(units)} units)")

            if self.poll_system_ports:
                await self._poll_system_ports(report)

            for unit in units:
                if self.stop_requested:
                    report.abandoned = True
                    logger.info(f"Polling cycle abandoned after {report.units_polled}/{len(units)} units")
                    break
                outcome = await self.poll_unit(unit)
                self._record(report, unit, outcome)
                await self._update_health(unit, outcome)

            report.duration_ms = (self._clock() - started) * 1000
            self.metrics.last_cycle = report
            if report.abandoned:
                self.metrics.abandoned_cycles += 1
                await self._broadcast("warn", f"Polling cycle abandoned ({report.units_polled} units, "
                                              f"{report.duration_ms:.0f}ms)")
            else:
                self.metrics.completed_cycles += 1
                await self._broadcast("info", f"Polling cycle completed ({report.units_polled} units, "
                                              f"{report.duration_ms:.0f}ms)", report.to_dict())
            return report

        except Exception as e:
            self.metrics.failed_cycles += 1
            logger.error(f"Polling cycle failed: {e}")
            await self._broadcast("error", f"Polling cycle failed: {e}")
            raise

        finally:
            self.cycle_running = False
            if self.pending_interval_ms is not None:
                self._apply_interval(self.pending_interval_ms)
            if self.cache.sweep_if_due():
                self.metrics.last_cleanup = datetime.utcnow()
                self._units = None

    def _record(self, report: CycleReport, unit: UnitRecord, outcome: UnitPollOutcome):
        report.units_polled += 1
        report.actions_succeeded += outcome.succeeded
        report.actions_failed += outcome.failed
        report.outcomes[f"{unit.device_id}/{unit.unit_id}"] = outcome

    async def _get_units(self) -> List[UnitRecord]:
        now = self._clock()
        if self._units is None or now - self._units_fetched_at >= self.device_cache_ttl_s:
            self._units = await self.unit_store.list_units()
            self._units_fetched_at = now
            logger.debug(f"Device cache refreshed ({len(self._units)} units)")
        return self._units

    async def _poll_system_ports(self, report: CycleReport):
        site = self.resolver.get_site(self.site_id)
        for port_type in site.system_ports:
            pseudo_unit = UnitRecord(self.site_id, SYSTEM_DEVICE_ID, SYSTEM_UNIT_ID, port_type)
            outcome = await self.poll_unit(pseudo_unit)
            report.actions_succeeded += outcome.succeeded
            report.actions_failed += outcome.failed

    async def poll_unit(self, unit: UnitRecord) -> UnitPollOutcome:
        """Read every GET_ action of one unit; failures are counted, never raised."""
        outcome = UnitPollOutcome(unit.device_id, unit.unit_id, unit.device_type)
        try:
            keys = self.resolver.get_polling_keys(unit.site_id, unit.device_type, unit.unit_id)
        except MappingError as e:
            outcome.failed += 1
            outcome.errors["*"] = e.message
            logger.warning(f"Cannot poll {unit.device_id}/{unit.unit_id}: {e.message}")
            return outcome

        for key in keys:
            try:
                value = await self._read_action(unit, key)
                await self.save_retry_policy.run(
                    lambda: self.result_mapper.apply(unit, key, value),
                    description=f"Saving {unit.device_id}/{unit.unit_id} {key}",
                )
                outcome.succeeded += 1
            except ShelterError as e:
                outcome.failed += 1
                outcome.errors[key] = e.message
                logger.debug(f"Poll {unit.device_id}/{unit.unit_id} {key} failed: {e.message}")
            except Exception as e:
                outcome.failed += 1
                outcome.errors[key] = str(e)
                logger.error(f"Unexpected error polling {unit.device_id}/{unit.unit_id} {key}: {e}")
        return outcome

    async def _read_action(self, unit: UnitRecord, key: str):
        command = self.resolver.resolve_command(unit.site_id, unit.device_type, unit.unit_id, key)
        if isinstance(command, TimeCompositeCommand):
            hour_command, minute_command = self.resolver.resolve_time_pair(
                unit.site_id, unit.device_type, unit.unit_id, key)
            # Two independent reads; the pair is not read atomically
            hour = await self._read_with_retry(unit, hour_command)
            minute = await self._read_with_retry(unit, minute_command)
            return format_time(hour, minute)
        return await self._read_with_retry(unit, command)

    async def _read_with_retry(self, unit: UnitRecord, command: PlainCommand):
        return await self.retry_policy.run(
            lambda: self._read_once(unit, command),
            description=f"Poll {unit.device_id}/{unit.unit_id} {command.key}",
        )

    async def _read_once(self, unit: UnitRecord, command: PlainCommand):
        started = self._clock()
        result = await self.command_queue.submit(
            command.descriptor, CommandIntent.READ, CommandPriority.LOW, unit_id=unit.unit_id)
        self.metrics.record_call(result.success, (self._clock() - started) * 1000)

        if not result.success:
            raise command_execution_error(command.key, result.error or "read failed", result.error_code)
        if not result.data:
            raise command_execution_error(command.key, "empty response")
        return result.data[0]

    async def _update_health(self, unit: UnitRecord, outcome: UnitPollOutcome):
        try:
            if outcome.all_failed:
                if await self.unit_store.set_health(unit.device_id, unit.unit_id, CommunicationHealth.ERROR):
                    first_error = next(iter(outcome.errors.values()), "unknown error")
                    logger.warning(f"Unit {unit.device_id}/{unit.unit_id} communication error: {first_error}")
                    await self._broadcast("warn", f"Unit {unit.device_id}/{unit.unit_id} communication error",
                                          {"deviceId": unit.device_id, "unitId": unit.unit_id,
                                           "error": first_error})
            elif outcome.fully_successful and unit.health == CommunicationHealth.ERROR:
                if await self.unit_store.set_health(unit.device_id, unit.unit_id, CommunicationHealth.NORMAL):
                    logger.info(f"Unit {unit.device_id}/{unit.unit_id} communication restored")
                    await self._broadcast("info", f"Unit {unit.device_id}/{unit.unit_id} communication restored")
        except ShelterError as e:
            logger.error(f"Health update failed for {unit.device_id}/{unit.unit_id}: {e.message}")

    async def _broadcast(self, level: str, message: str, data=None):
        if self.broadcaster:
            await self.broadcaster.broadcast_log(level, "polling", message, data)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self):
        return {
            "running": self.running,
            "enabled": self.enabled,
            "mode": "auto" if self.enabled else "manual",
            "intervalMs": self.interval_ms,
            "pendingIntervalMs": self.pending_interval_ms,
            "cycleRunning": self.cycle_running,
            "cachedUnits": len(self._units) if self._units is not None else 0,
            "metrics": self.metrics.to_dict(),
            "resolverCache": self.cache.get_stats(),
        }
