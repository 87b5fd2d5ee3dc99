"""
Command Executor
================

Control path for operator commands on a single unit.

Plain command:
    validate unit type -> resolve -> waiting log -> queue (HIGH for writes,
    NORMAL for reads) -> result mapper -> log success/fail

Time-composite command (e.g. SET_START_TIME_1 "07:30"):
    parse "HH:MM" / HHMM -> HOUR transaction -> MINUTE transaction, both
    under one log entry -> log success only when both halves succeed

Every path that created (or was handed) a log entry finalizes it before an
error or a cancellation leaves execute(); an entry is never left waiting.
A handed-in request_id must name a waiting entry or nothing is sent.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from shelter_master.command_queue import CommandPriority, CommandQueue
from shelter_master.control.time_values import parse_time_value
from shelter_master.errors import (
    CommandLogNotFoundError,
    CompositeCommandError,
    InvalidCommandError,
    LogAlreadyFinalizedError,
    MissingValueError,
    ShelterError,
    UnitTypeNotSupportedError,
    command_execution_error,
)
from shelter_master.mapping.models import CommandIntent, PlainCommand, TimeCompositeCommand
from shelter_master.mapping.resolver import AddressResolver
from shelter_master.results.mapper import ResultMapper, format_time
from shelter_master.storage.models import CommandStatus, UnitRecord

logger = logging.getLogger(__name__)


@dataclass
class CommandOutcome:
    request_id: str
    device_id: str
    unit_id: str
    action: str
    status: CommandStatus
    value: Any = None

    def to_dict(self) -> Dict:
        return {
            "request_id": self.request_id,
            "deviceId": self.device_id,
            "unitId": self.unit_id,
            "action": self.action,
            "status": self.status.value,
            "value": self.value,
        }


class CommandExecutor:
    def __init__(self, resolver: AddressResolver, command_queue: CommandQueue,
                 result_mapper: ResultMapper, log_store, supported_types: Iterable[str]):
        self.resolver = resolver
        self.command_queue = command_queue
        self.result_mapper = result_mapper
        self.log_store = log_store
        self.supported_types = set(supported_types)

        self.stats = {
            'executed': 0,
            'succeeded': 0,
            'failed': 0,
        }

    async def execute(self, unit: UnitRecord, action: str, value: Any = None,
                      request_id: Optional[str] = None) -> CommandOutcome:
        """
        Execute one command on a unit.

        Args:
            unit: Target unit record
            action: Abstract command key (GET_* / SET_*)
            value: Requested value for writes ("HH:MM"/HHMM for schedule times)
            request_id: Existing waiting log entry to finalize instead of creating one

        Returns:
            CommandOutcome with status success

        Raises:
            MappingError, CommandValidationError, TransactionError
            CommandLogNotFoundError, LogAlreadyFinalizedError: request_id is unknown or no
                longer waiting (nothing is sent to the DDC)
        """
        self.stats['executed'] += 1

        if request_id is not None:
            try:
                await self._check_waiting(request_id)
            except ShelterError:
                self.stats['failed'] += 1
                raise

        try:
            if unit.device_type not in self.supported_types:
                raise UnitTypeNotSupportedError(unit.device_type)
            command = self.resolver.resolve_command(unit.site_id, unit.device_type, unit.unit_id, action)
        except ShelterError as e:
            # Nothing logged yet unless the caller pre-created the entry
            if request_id:
                await self._finalize_failure(request_id, unit, action, e, value)
            self.stats['failed'] += 1
            raise

        if request_id is None:
            entry = await self.log_store.create(unit.device_id, unit.unit_id, action, value)
            request_id = entry.request_id

        try:
            if isinstance(command, TimeCompositeCommand):
                result = await self._execute_time_command(request_id, unit, command, value)
            else:
                result = await self._execute_plain_command(request_id, unit, command, value)
        except asyncio.CancelledError:
            await self._finalize_failure(request_id, unit, action, "Command cancelled", value)
            self.stats['failed'] += 1
            raise
        except Exception as e:
            await self._finalize_failure(request_id, unit, action, e, value)
            self.stats['failed'] += 1
            raise

        self.stats['succeeded'] += 1
        return CommandOutcome(request_id, unit.device_id, unit.unit_id, action, CommandStatus.SUCCESS, result)

    # ------------------------------------------------------------------
    # Plain commands
    # ------------------------------------------------------------------

    async def _execute_plain_command(self, request_id: str, unit: UnitRecord, command: PlainCommand, value: Any):
        descriptor = command.descriptor
        if descriptor.is_write:
            if value is None:
                value = descriptor.fixed_value
            if value is None:
                raise MissingValueError(command.key)
            raw = self._encode(command, value)
            await self._transact(unit, command, CommandIntent.WRITE, raw)
            updates = await self.result_mapper.handle_success(request_id, unit, command.key, value)
        else:
            raw = await self._transact(unit, command, CommandIntent.READ)
            updates = await self.result_mapper.handle_success(request_id, unit, command.key, raw)
        return updates.get(command.field)

    @staticmethod
    def _encode(command: PlainCommand, value: Any) -> int:
        try:
            return command.encode(value)
        except (TypeError, ValueError):
            raise InvalidCommandError(f"Invalid value {value!r} for {command.key}",
                                      command_key=command.key) from None

    async def _transact(self, unit: UnitRecord, command: PlainCommand, intent: CommandIntent,
                        raw: Optional[int] = None):
        """Submit one transaction; returns the first word read (reads) or None (writes)."""
        priority = CommandPriority.HIGH if intent == CommandIntent.WRITE else CommandPriority.NORMAL
        result = await self.command_queue.submit(command.descriptor, intent, priority,
                                                 unit_id=unit.unit_id, value=raw)
        if not result.success:
            raise command_execution_error(command.key, result.error or "transaction failed", result.error_code)
        if intent == CommandIntent.READ:
            if not result.data:
                raise command_execution_error(command.key, "empty response")
            return result.data[0]
        return None

    # ------------------------------------------------------------------
    # Time-composite commands
    # ------------------------------------------------------------------

    async def _execute_time_command(self, request_id: str, unit: UnitRecord, command: TimeCompositeCommand,
                                    value: Any) -> str:
        hour_command, minute_command = self.resolver.resolve_time_pair(
            unit.site_id, unit.device_type, unit.unit_id, command.key)

        if command.is_get:
            # Two independent reads; the pair is not read atomically
            hour = await self._transact(unit, hour_command, CommandIntent.READ)
            minute = await self._transact(unit, minute_command, CommandIntent.READ)
            time_value = format_time(hour, minute)
        else:
            if value is None:
                raise MissingValueError(command.key)
            hour, minute = parse_time_value(value)
            time_value = format_time(hour, minute)

            completed = []
            for part, sub_command, raw in (("HOUR", hour_command, hour), ("MINUTE", minute_command, minute)):
                try:
                    await self._transact(unit, sub_command, CommandIntent.WRITE, raw)
                except ShelterError as e:
                    if not completed:
                        raise
                    raise CompositeCommandError(command.key, part, completed, e.message) from e
                completed.append(part)

        await self.result_mapper.handle_success(request_id, unit, command.key, time_value)
        logger.info(f"{command.key} on {unit.device_id}/{unit.unit_id}: {time_value}")
        return time_value

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------

    async def _check_waiting(self, request_id: str):
        entry = await self.log_store.get(request_id)
        if entry is None:
            raise CommandLogNotFoundError(request_id)
        if entry.is_terminal:
            raise LogAlreadyFinalizedError(request_id, entry.status.value)

    async def _finalize_failure(self, request_id: str, unit: UnitRecord, action: str, error,
                                value: Any):
        entry = await self.log_store.get(request_id)
        if entry is not None and entry.is_terminal:
            logger.error(f"Command {action} on {unit.device_id}/{unit.unit_id} failed after "
                         f"log {request_id} was finalized as {entry.status.value}: {error}")
            return
        message = error.message if isinstance(error, ShelterError) else str(error)
        try:
            await self.result_mapper.handle_failure(request_id, unit, action, message, value)
        except ShelterError as e:
            logger.error(f"Could not finalize command log {request_id}: {e.message}")
