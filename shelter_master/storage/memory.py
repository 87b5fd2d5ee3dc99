"""
In-Memory Stores
================

Persistence boundary of the engine, kept in process memory.

Stores:
    - InMemoryUnitStore: device/unit catalog, unit data fields ($set-style
      partial updates), communication health, system configuration record
    - InMemoryCommandLogStore: command log with a single terminal transition

Both expose async methods so a database-backed store can replace them
without touching the engine.
"""

import logging
import uuid
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from shelter_master.errors import CommandLogNotFoundError, LogAlreadyFinalizedError, PersistenceError
from shelter_master.mapping.table import SiteMapping
from shelter_master.storage.models import (
    CommandLogEntry,
    CommandStatus,
    CommunicationHealth,
    UnitRecord,
)

logger = logging.getLogger(__name__)


class InMemoryUnitStore:
    def __init__(self):
        self.units: Dict[Tuple[str, str], UnitRecord] = {}
        self.system_config: Dict[str, Any] = {}
        self.available = True  # Flip to simulate an unreachable store

        self.stats = {
            'catalog_reads': 0,
            'field_writes': 0,
        }

    def _check_available(self):
        if not self.available:
            raise PersistenceError("Unit store unavailable")

    def add_unit(self, record: UnitRecord) -> UnitRecord:
        self.units[record.key] = record
        return record

    def seed_from_mapping(self, site: SiteMapping) -> int:
        """Register one device per mapped device type, with every mapped unit."""
        count = 0
        for index, device_type in enumerate(site.get_device_types(), start=1):
            device_id = f"d{index:03d}"
            for unit_id in site.get_units(device_type):
                self.add_unit(UnitRecord(site.site_id, device_id, unit_id, device_type,
                                         name=f"{device_type}_{unit_id}"))
                count += 1
        logger.info(f"Seeded {count} units for site {site.site_id}")
        return count

    async def list_units(self) -> List[UnitRecord]:
        self._check_available()
        self.stats['catalog_reads'] += 1
        return list(self.units.values())

    async def get_unit(self, device_id: str, unit_id: str) -> Optional[UnitRecord]:
        self._check_available()
        return self.units.get((device_id, unit_id))

    async def get_field(self, device_id: str, unit_id: str, field: str, default: Any = None) -> Any:
        unit = await self.get_unit(device_id, unit_id)
        if unit is None:
            return default
        return unit.data.get(field, default)

    async def set_fields(self, device_id: str, unit_id: str, fields: Dict[str, Any]) -> UnitRecord:
        """Partial update of a unit's data fields."""
        self._check_available()
        unit = self.units.get((device_id, unit_id))
        if unit is None:
            raise PersistenceError(f"Unit {device_id}/{unit_id} not found", device_id=device_id, unit_id=unit_id)
        unit.data.update(fields)
        unit.updated_at = datetime.utcnow()
        self.stats['field_writes'] += len(fields)
        return unit

    async def set_health(self, device_id: str, unit_id: str, health: CommunicationHealth) -> bool:
        """Set communication health; returns True if it changed."""
        self._check_available()
        unit = self.units.get((device_id, unit_id))
        if unit is None or unit.health == health:
            return False
        unit.health = health
        unit.health_changed_at = datetime.utcnow()
        return True

    async def set_system_fields(self, fields: Dict[str, Any]):
        self._check_available()
        self.system_config.update(fields)
        self.stats['field_writes'] += len(fields)


class InMemoryCommandLogStore:
    def __init__(self, max_entries: int = 10000):
        self.entries: Dict[str, CommandLogEntry] = {}
        self.max_entries = max_entries

    async def create(self, device_id: str, unit_id: str, action: str, requested_value: Any = None) -> CommandLogEntry:
        entry = CommandLogEntry(
            request_id=uuid.uuid4().hex,
            device_id=device_id,
            unit_id=unit_id,
            action=action,
            requested_value=requested_value,
        )
        self.entries[entry.request_id] = entry
        self._trim()
        logger.debug(f"Command log created: {entry.request_id} {device_id}/{unit_id} {action}")
        return entry

    async def get(self, request_id: str) -> Optional[CommandLogEntry]:
        return self.entries.get(request_id)

    async def finalize(self, request_id: str, status: CommandStatus, result: Any = None,
                       error: Optional[str] = None) -> CommandLogEntry:
        """
        Move an entry from waiting to success/fail.

        Raises:
            CommandLogNotFoundError: unknown request id
            LogAlreadyFinalizedError: entry already in a terminal state
        """
        entry = self.entries.get(request_id)
        if entry is None:
            raise CommandLogNotFoundError(request_id)
        if entry.is_terminal:
            raise LogAlreadyFinalizedError(request_id, entry.status.value)
        if status == CommandStatus.WAITING:
            raise ValueError("finalize() requires a terminal status")

        entry.status = status
        entry.result = result
        entry.error = error
        entry.finished_at = datetime.utcnow()
        return entry

    async def list(self, device_id: Optional[str] = None, unit_id: Optional[str] = None,
                   status: Optional[CommandStatus] = None, limit: int = 100) -> List[CommandLogEntry]:
        results = list(self.entries.values())
        if device_id:
            results = [e for e in results if e.device_id == device_id]
        if unit_id:
            results = [e for e in results if e.unit_id == unit_id]
        if status:
            results = [e for e in results if e.status == status]
        results.sort(key=lambda e: e.requested_at, reverse=True)
        return results[:limit]

    async def get_stats(self) -> Dict:
        counts = Counter(e.status.value for e in self.entries.values())
        return {
            "total": len(self.entries),
            "waiting": counts.get(CommandStatus.WAITING.value, 0),
            "success": counts.get(CommandStatus.SUCCESS.value, 0),
            "fail": counts.get(CommandStatus.FAIL.value, 0),
        }

    def _trim(self):
        # Oldest finished entries go first; waiting entries are never dropped
        overflow = len(self.entries) - self.max_entries
        if overflow <= 0:
            return
        finished = sorted((e for e in self.entries.values() if e.is_terminal), key=lambda e: e.requested_at)
        for entry in finished[:overflow]:
            del self.entries[entry.request_id]
