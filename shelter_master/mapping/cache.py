"""
Resolver Cache
==============

Memoizes command resolution and existence checks for the address resolver.

The mapping tables are immutable for the process lifetime, so entries never
go stale; the cache is only cleared wholesale by a periodic sweep to bound
memory. One instance is created by the engine wiring and injected into the
resolver and the polling scheduler.
"""

import logging
import time
from datetime import datetime
from typing import Callable, Dict, Hashable, Optional, Tuple

from shelter_master.mapping.models import MappedCommand

logger = logging.getLogger(__name__)

CommandCacheKey = Tuple[str, str, Optional[str], str]


class ResolverCache:
    def __init__(self, sweep_interval_s: float = 600.0, clock: Callable[[], float] = time.monotonic):
        self.sweep_interval_s = sweep_interval_s
        self._clock = clock
        self._commands: Dict[CommandCacheKey, MappedCommand] = {}
        self._existence: Dict[Hashable, bool] = {}
        self._last_sweep = clock()
        self.last_sweep_at: Optional[datetime] = None

        self.stats = {
            'hits': 0,
            'misses': 0,
            'existence_hits': 0,
            'sweeps': 0,
        }

    def get_command(self, key: CommandCacheKey) -> Optional[MappedCommand]:
        command = self._commands.get(key)
        if command is None:
            self.stats['misses'] += 1
        else:
            self.stats['hits'] += 1
        return command

    def put_command(self, key: CommandCacheKey, command: MappedCommand):
        # Concurrent misses may both populate; values are identical
        self._commands[key] = command

    def get_exists(self, key: Hashable) -> Optional[bool]:
        exists = self._existence.get(key)
        if exists is not None:
            self.stats['existence_hits'] += 1
        return exists

    def put_exists(self, key: Hashable, exists: bool):
        self._existence[key] = exists

    def clear(self):
        self._commands.clear()
        self._existence.clear()

    def sweep_if_due(self) -> bool:
        """Clear everything once the sweep interval has elapsed."""
        now = self._clock()
        if now - self._last_sweep < self.sweep_interval_s:
            return False
        entries = len(self._commands) + len(self._existence)
        self.clear()
        self._last_sweep = now
        self.last_sweep_at = datetime.utcnow()
        self.stats['sweeps'] += 1
        logger.debug(f"Resolver cache swept ({entries} entries dropped)")
        return True

    def size(self) -> int:
        return len(self._commands) + len(self._existence)

    def get_stats(self) -> Dict:
        return {
            **self.stats,
            "command_entries": len(self._commands),
            "existence_entries": len(self._existence),
            "last_sweep_at": self.last_sweep_at.isoformat() if self.last_sweep_at else None,
        }
