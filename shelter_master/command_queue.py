"""
Priority Command Queue
======================

Single serialization point in front of the DDC transport.

Guarantees:
    - At most one transaction in flight on the transport
    - Dispatch in priority order (high > normal > low), FIFO within a class
    - One failed transaction never blocks the ones behind it

Priorities:
    HIGH   - operator writes
    NORMAL - operator and ad-hoc reads
    LOW    - background polling
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Deque, Dict, List, Optional

from shelter_master.errors import CommunicationError, QueueClosedError, ShelterError, TransportTimeoutError
from shelter_master.mapping.models import CommandIntent, TransactionDescriptor
from shelter_master.transport.base import Transport

logger = logging.getLogger(__name__)


class CommandPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


PRIORITY_ORDER = (CommandPriority.HIGH, CommandPriority.NORMAL, CommandPriority.LOW)


@dataclass
class CommandResult:
    success: bool
    command_id: str
    intent: CommandIntent
    function_code: int
    address: int
    unit_id: Optional[str] = None
    data: List[int] = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def first_value(self) -> Optional[int]:
        return self.data[0] if self.data else None

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "commandId": self.command_id,
            "type": self.intent.value,
            "unitId": self.unit_id,
            "functionCode": int(self.function_code),
            "address": self.address,
            "data": self.data,
            "error": self.error,
            "errorCode": self.error_code,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class QueuedCommand:
    command_id: str
    descriptor: TransactionDescriptor
    intent: CommandIntent
    priority: CommandPriority
    future: asyncio.Future
    unit_id: Optional[str] = None
    value: Optional[int] = None
    enqueued_at: float = field(default_factory=time.monotonic)


class CommandQueue:
    """
    Priority queue owning the transport.

    Args:
        transport: The shared DDC link (only this queue calls it)
        transaction_timeout_s: Upper bound on one transaction
        size_warning_threshold: Backlog size that triggers a warning
        slow_batch_ms: Drain pass duration that triggers a warning
        broadcaster: Optional real-time sink for queue warnings (broadcast_log)
    """

    def __init__(self, transport: Transport, transaction_timeout_s: float = 5.0,
                 size_warning_threshold: int = 100, slow_batch_ms: float = 5000, broadcaster=None):
        self.transport = transport
        self.broadcaster = broadcaster
        self.transaction_timeout_s = transaction_timeout_s
        self.size_warning_threshold = size_warning_threshold
        self.slow_batch_ms = slow_batch_ms

        self._queues: Dict[CommandPriority, Deque[QueuedCommand]] = {p: deque() for p in PRIORITY_ORDER}
        self._worker: Optional[asyncio.Task] = None
        self.is_processing = False
        self.closed = False

        self.stats = {
            'submitted': 0,
            'processed': 0,
            'failed': 0,
            'timeouts': 0,
            'max_backlog': 0,
        }

    def __len__(self) -> int:
        return sum(len(q) for q in self._queues.values())

    async def submit(self, descriptor: TransactionDescriptor, intent: CommandIntent,
                     priority: CommandPriority = CommandPriority.NORMAL,
                     unit_id: Optional[str] = None, value: Optional[int] = None) -> CommandResult:
        """
        Enqueue one transaction and wait for its result.

        Transport failures come back as a CommandResult with success=False;
        the caller decides whether that is an error.

        Raises:
            QueueClosedError: the queue was cleared or stopped before dispatch
        """
        if self.closed:
            raise QueueClosedError("Command queue is stopped")

        loop = asyncio.get_running_loop()
        command = QueuedCommand(
            command_id=str(uuid.uuid4()),
            descriptor=descriptor,
            intent=intent,
            priority=priority,
            future=loop.create_future(),
            unit_id=unit_id,
            value=value,
        )
        self._queues[priority].append(command)
        self.stats['submitted'] += 1

        backlog = len(self)
        self.stats['max_backlog'] = max(self.stats['max_backlog'], backlog)
        if backlog > self.size_warning_threshold:
            logger.warning(f"Command queue backlog {backlog} exceeds {self.size_warning_threshold}")
            await self._broadcast("warn", f"Command queue backlog {backlog} exceeds {self.size_warning_threshold}",
                                  {"backlog": backlog})

        logger.debug(f"Queued {intent.value} FC{int(descriptor.function_code):02d} @{descriptor.address} "
                     f"[{priority.value}] id={command.command_id}")

        self._ensure_worker()
        return await command.future

    def _ensure_worker(self):
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._process_loop())

    def _next_command(self) -> Optional[QueuedCommand]:
        for priority in PRIORITY_ORDER:
            queue = self._queues[priority]
            while queue:
                command = queue.popleft()
                if not command.future.done():
                    return command
        return None

    async def _process_loop(self):
        """Drain the queues one transaction at a time, highest priority first."""
        self.is_processing = True
        batch_start = time.monotonic()
        batch_count = 0
        try:
            while True:
                command = self._next_command()
                if command is None:
                    break
                result = await self._execute(command)
                batch_count += 1
                if not command.future.done():
                    command.future.set_result(result)
        finally:
            self.is_processing = False

        elapsed_ms = (time.monotonic() - batch_start) * 1000
        if elapsed_ms > self.slow_batch_ms:
            logger.warning(f"Command queue drain took {elapsed_ms:.0f}ms for {batch_count} commands")
            await self._broadcast("warn", f"Command queue drain took {elapsed_ms:.0f}ms for {batch_count} commands",
                                  {"elapsedMs": round(elapsed_ms), "commands": batch_count})

    async def _broadcast(self, level: str, message: str, data=None):
        if self.broadcaster:
            await self.broadcaster.broadcast_log(level, "queue", message, data)

    async def _execute(self, command: QueuedCommand) -> CommandResult:
        descriptor = command.descriptor
        result = CommandResult(
            success=False,
            command_id=command.command_id,
            intent=command.intent,
            function_code=descriptor.function_code,
            address=descriptor.address,
            unit_id=command.unit_id,
        )

        try:
            outcome = await asyncio.wait_for(
                self.transport.execute(descriptor, command.intent, command.value),
                timeout=self.transaction_timeout_s,
            )
            result.success = outcome.success
            result.data = list(outcome.data)
            result.error = outcome.error
            if not outcome.success:
                result.error_code = CommunicationError.code
        except asyncio.TimeoutError:
            self.stats['timeouts'] += 1
            result.error = f"Transaction timed out after {self.transaction_timeout_s}s"
            result.error_code = TransportTimeoutError.code
        except ShelterError as e:
            result.error = e.message
            result.error_code = e.code
        except Exception as e:
            logger.error(f"Transport raised on command {command.command_id}: {e}")
            result.error = str(e)
            result.error_code = CommunicationError.code

        result.timestamp = datetime.utcnow()
        if result.success:
            self.stats['processed'] += 1
        else:
            self.stats['failed'] += 1
            logger.warning(f"Command {command.command_id} failed: FC{int(descriptor.function_code):02d} "
                           f"@{descriptor.address} - {result.error}")
        return result

    def get_status(self) -> Dict:
        return {
            "high": len(self._queues[CommandPriority.HIGH]),
            "normal": len(self._queues[CommandPriority.NORMAL]),
            "low": len(self._queues[CommandPriority.LOW]),
            "totalCommands": len(self),
            "isProcessing": self.is_processing,
            **self.stats,
        }

    def get_unit_status(self, unit_id: str) -> Dict:
        counts = {
            priority.value: sum(1 for c in self._queues[priority] if c.unit_id == unit_id)
            for priority in PRIORITY_ORDER
        }
        counts["totalCommands"] = sum(counts.values())
        counts["unitId"] = unit_id
        return counts

    def clear(self) -> int:
        """Reject every pending (not yet dispatched) command."""
        rejected = 0
        for queue in self._queues.values():
            while queue:
                command = queue.popleft()
                if not command.future.done():
                    command.future.set_exception(QueueClosedError("Command queue cleared"))
                    rejected += 1
        if rejected:
            logger.warning(f"Command queue cleared, {rejected} pending commands rejected")
        return rejected

    async def stop(self):
        """Reject pending work and wait for the in-flight transaction to finish."""
        self.closed = True
        self.clear()
        if self._worker and not self._worker.done():
            await self._worker
