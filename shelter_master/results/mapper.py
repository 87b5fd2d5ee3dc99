"""
Result Mapper
=============

Converts a raw transaction result for an abstract action into a field update
on the unit's data record. It is the only writer of unit data fields; the
polling scheduler and the command executor both go through it.

Per action:
    - Target field comes from the site mapping (action key -> field)
    - Scaled fields are decoded (e.g. cur_temp 220 -> 22.0)
    - Boolean fields are coerced (1 -> True)
    - _hour/_minute fields re-sync their "HH:MM" composite field
    - Composite time actions write the composite and both halves

Control-path results additionally finalize the command log entry and emit a
command status event.
"""

import logging
from typing import Any, Dict, Optional

from shelter_master.mapping.models import PlainCommand, TimeCompositeCommand
from shelter_master.mapping.resolver import AddressResolver
from shelter_master.storage.models import CommandStatus, UnitRecord

logger = logging.getLogger(__name__)

SYSTEM_COLLECTION = "ddcConfig"
HOUR_FIELD_SUFFIX = "_hour"
MINUTE_FIELD_SUFFIX = "_minute"


def format_time(hour: int, minute: int) -> str:
    return f"{int(hour):02d}:{int(minute):02d}"


def split_time(value: str):
    hour, minute = value.split(":")
    return int(hour), int(minute)


class ResultMapper:
    def __init__(self, resolver: AddressResolver, unit_store, log_store, broadcaster=None):
        self.resolver = resolver
        self.unit_store = unit_store
        self.log_store = log_store
        self.broadcaster = broadcaster

        self.stats = {
            'fields_written': 0,
            'time_syncs': 0,
            'successes': 0,
            'failures': 0,
        }

    async def apply(self, unit: UnitRecord, action_key: str, value: Any) -> Dict[str, Any]:
        """
        Write the field(s) produced by one action result.

        Args:
            unit: Target unit (or a system port pseudo-unit)
            action_key: Abstract action (GET_* carries a raw register value,
                SET_* carries the requested semantic value)
            value: Raw or requested value; "HH:MM" for composite time actions

        Returns:
            The fields written
        """
        command = self.resolver.resolve_command(unit.site_id, unit.device_type, unit.unit_id, action_key)

        if isinstance(command, TimeCompositeCommand):
            hour, minute = split_time(value)
            updates = {
                command.field: format_time(hour, minute),
                command.field + HOUR_FIELD_SUFFIX: hour,
                command.field + MINUTE_FIELD_SUFFIX: minute,
            }
            await self._write(unit, "data", updates)
            return updates

        semantic = command.decode(value) if command.is_get else command.semantic_value(value)
        updates = {command.field: semantic}

        if command.collection != SYSTEM_COLLECTION:
            composite = await self._sync_time_field(unit, command, semantic)
            if composite:
                updates.update(composite)

        await self._write(unit, command.collection, updates)
        return updates

    async def _sync_time_field(self, unit: UnitRecord, command: PlainCommand, semantic) -> Optional[Dict]:
        """Recompute "HH:MM" from the written half and the sibling's last-known value."""
        field = command.field
        if field.endswith(HOUR_FIELD_SUFFIX):
            base = field[:-len(HOUR_FIELD_SUFFIX)]
            sibling = base + MINUTE_FIELD_SUFFIX
            minute = await self.unit_store.get_field(unit.device_id, unit.unit_id, sibling, 0)
            hour = semantic
        elif field.endswith(MINUTE_FIELD_SUFFIX):
            base = field[:-len(MINUTE_FIELD_SUFFIX)]
            sibling = base + HOUR_FIELD_SUFFIX
            hour = await self.unit_store.get_field(unit.device_id, unit.unit_id, sibling, 0)
            minute = semantic
        else:
            return None

        self.stats['time_syncs'] += 1
        return {base: format_time(hour or 0, minute or 0)}

    async def _write(self, unit: UnitRecord, collection: str, updates: Dict[str, Any]):
        if collection == SYSTEM_COLLECTION:
            await self.unit_store.set_system_fields(updates)
        else:
            await self.unit_store.set_fields(unit.device_id, unit.unit_id, updates)
        self.stats['fields_written'] += len(updates)
        logger.debug(f"{unit.device_id}/{unit.unit_id} {collection} <- {updates}")

    # ------------------------------------------------------------------
    # Control path
    # ------------------------------------------------------------------

    async def handle_success(self, request_id: str, unit: UnitRecord, action_key: str, value: Any,
                             result: Any = None) -> Dict[str, Any]:
        """
        Apply a control result, then finalize its log entry as success.

        Args:
            request_id: Command log entry id
            value: Value handed to apply() (raw for GET, requested for SET)
            result: Value stored on the log entry (defaults to the written field value)
        """
        updates = await self.apply(unit, action_key, value)
        if result is None:
            result = next(iter(updates.values()))

        await self.log_store.finalize(request_id, CommandStatus.SUCCESS, result=result)
        self.stats['successes'] += 1
        logger.info(f"Command {action_key} on {unit.device_id}/{unit.unit_id} succeeded: {result}")

        if self.broadcaster:
            await self.broadcaster.broadcast_command_status(
                unit.device_id, unit.unit_id, action_key, CommandStatus.SUCCESS.value, value=result)
        return updates

    async def handle_failure(self, request_id: str, unit: UnitRecord, action_key: str, error: str,
                             value: Any = None):
        """Finalize a log entry as fail and publish the failure."""
        await self.log_store.finalize(request_id, CommandStatus.FAIL, result=value, error=error)
        self.stats['failures'] += 1
        logger.error(f"Command {action_key} on {unit.device_id}/{unit.unit_id} failed: {error}")

        if self.broadcaster:
            await self.broadcaster.broadcast_log(
                "error", "control", f"Command {action_key} on {unit.device_id}/{unit.unit_id} failed: {error}",
                {"requestId": request_id, "deviceId": unit.device_id, "unitId": unit.unit_id, "action": action_key})
            await self.broadcaster.broadcast_command_status(
                unit.device_id, unit.unit_id, action_key, CommandStatus.FAIL.value, value=value, error=error)
