from shelter_master.control.batch import BatchRunner
from shelter_master.control.executor import CommandExecutor, CommandOutcome
from shelter_master.control.strategies import (
    BatchCommand,
    BatchItemResult,
    BatchStrategy,
    ParallelStrategy,
    SequentialStrategy,
    get_strategy,
)
from shelter_master.control.time_values import parse_time_value

__all__ = [
    'BatchRunner',
    'CommandExecutor',
    'CommandOutcome',
    'BatchCommand',
    'BatchItemResult',
    'BatchStrategy',
    'ParallelStrategy',
    'SequentialStrategy',
    'get_strategy',
    'parse_time_value',
]
