"""
Batch execution strategies
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from shelter_master.errors import ShelterError
from shelter_master.storage.models import UnitRecord

logger = logging.getLogger(__name__)


@dataclass
class BatchCommand:
    action: str
    value: Any = None
    request_id: Optional[str] = None


@dataclass
class BatchItemResult:
    action: str
    success: bool
    request_id: Optional[str] = None
    value: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "action": self.action,
            "success": self.success,
            "request_id": self.request_id,
            "value": self.value,
            "error": self.error,
            "errorCode": self.error_code,
        }


class BatchStrategy(ABC):
    name = "base"

    @abstractmethod
    async def run(self, executor, unit: UnitRecord, commands: List[BatchCommand]) -> List[BatchItemResult]:
        pass

    async def _run_one(self, executor, unit: UnitRecord, command: BatchCommand) -> BatchItemResult:
        try:
            outcome = await executor.execute(unit, command.action, command.value, request_id=command.request_id)
            return BatchItemResult(command.action, True, outcome.request_id, outcome.value)
        except ShelterError as e:
            return BatchItemResult(command.action, False, command.request_id, command.value,
                                   error=e.message, error_code=e.code)


class SequentialStrategy(BatchStrategy):
    """One command at a time, in request order."""

    name = "sequential"

    async def run(self, executor, unit, commands):
        results = []
        for command in commands:
            results.append(await self._run_one(executor, unit, command))
        return results


class ParallelStrategy(BatchStrategy):
    """Commands admitted to the queue concurrently, bounded by max_concurrency."""

    name = "parallel"

    def __init__(self, max_concurrency: int = 3):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.max_concurrency = max_concurrency

    async def run(self, executor, unit, commands):
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(command: BatchCommand) -> BatchItemResult:
            async with semaphore:
                return await self._run_one(executor, unit, command)

        return list(await asyncio.gather(*(bounded(c) for c in commands)))


def get_strategy(name: str, max_concurrency: int = 3) -> BatchStrategy:
    if name == SequentialStrategy.name:
        return SequentialStrategy()
    if name == ParallelStrategy.name:
        return ParallelStrategy(max_concurrency)
    raise ValueError(f"Unknown batch strategy: {name}")
