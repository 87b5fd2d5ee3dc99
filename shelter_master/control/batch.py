"""
Batch Runner
============

Runs several commands for one unit through a BatchStrategy.

execute_batch() awaits the whole batch and returns per-command results.

submit_batch() is detached: it creates one waiting command log entry per
command, starts the batch as a background task and returns the request ids
immediately. No caller awaits that task; completion is observable only
through the command log and command_status broadcasts.
If the batch is cancelled (stop()), every entry still waiting is finalized
as fail.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from shelter_master.control.executor import CommandExecutor
from shelter_master.control.strategies import (
    BatchCommand,
    BatchItemResult,
    BatchStrategy,
    SequentialStrategy,
)
from shelter_master.errors import ShelterError
from shelter_master.storage.models import UnitRecord

logger = logging.getLogger(__name__)


class BatchRunner:
    def __init__(self, executor: CommandExecutor, log_store, strategy: Optional[BatchStrategy] = None):
        self.executor = executor
        self.log_store = log_store
        self.strategy = strategy or SequentialStrategy()
        self._tasks: Dict[asyncio.Task, Tuple[UnitRecord, List[BatchCommand]]] = {}

        self.stats = {
            'batches_run': 0,
            'batches_detached': 0,
            'commands_failed': 0,
        }

    async def execute_batch(self, unit: UnitRecord, commands: List[BatchCommand],
                            strategy: Optional[BatchStrategy] = None) -> List[BatchItemResult]:
        strategy = strategy or self.strategy
        results = await strategy.run(self.executor, unit, commands)
        failed = sum(1 for r in results if not r.success)

        self.stats['batches_run'] += 1
        self.stats['commands_failed'] += failed
        logger.info(f"Batch on {unit.device_id}/{unit.unit_id} ({strategy.name}): "
                    f"{len(results) - failed}/{len(results)} succeeded")
        return results

    async def submit_batch(self, unit: UnitRecord, commands: List[BatchCommand],
                           strategy: Optional[BatchStrategy] = None) -> List[str]:
        """
        Start a batch in the background.

        Returns:
            Request ids of the pre-created waiting log entries, in command order
        """
        prepared = []
        for command in commands:
            if command.request_id is None:
                entry = await self.log_store.create(unit.device_id, unit.unit_id, command.action, command.value)
                command = BatchCommand(command.action, command.value, entry.request_id)
            prepared.append(command)

        task = asyncio.create_task(self.execute_batch(unit, prepared, strategy))
        self._tasks[task] = (unit, prepared)
        task.add_done_callback(self._on_batch_done)

        self.stats['batches_detached'] += 1
        logger.info(f"Detached batch of {len(prepared)} commands for {unit.device_id}/{unit.unit_id}")
        return [c.request_id for c in prepared]

    async def _fail_waiting(self, unit: UnitRecord, commands: List[BatchCommand], reason: str):
        """Finalize every entry of the batch that never left waiting."""
        for command in commands:
            entry = await self.log_store.get(command.request_id)
            if entry is None or entry.is_terminal:
                continue
            try:
                await self.executor.result_mapper.handle_failure(
                    command.request_id, unit, command.action, reason, command.value)
            except ShelterError as e:
                logger.error(f"Could not finalize command log {command.request_id}: {e.message}")
            self.stats['commands_failed'] += 1

    def _on_batch_done(self, task: asyncio.Task):
        self._tasks.pop(task, None)
        if task.cancelled():
            logger.warning("Detached batch cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Detached batch failed: {error}")

    @property
    def pending_batches(self) -> int:
        return len(self._tasks)

    async def wait_idle(self):
        """Wait for every detached batch started so far."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self):
        """Cancel detached batches and fail the entries they never finished."""
        batches = list(self._tasks.values())
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()
        for unit, commands in batches:
            await self._fail_waiting(unit, commands, "Batch cancelled")
