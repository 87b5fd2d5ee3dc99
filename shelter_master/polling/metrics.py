"""
Polling performance metrics.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional


@dataclass
class UnitPollOutcome:
    device_id: str
    unit_id: str
    device_type: str
    succeeded: int = 0
    failed: int = 0
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    @property
    def all_failed(self) -> bool:
        return self.total > 0 and self.succeeded == 0

    @property
    def fully_successful(self) -> bool:
        return self.total > 0 and self.failed == 0


@dataclass
class CycleReport:
    started_at: datetime
    units_total: int = 0
    units_polled: int = 0
    actions_succeeded: int = 0
    actions_failed: int = 0
    duration_ms: float = 0.0
    abandoned: bool = False
    outcomes: Dict[str, UnitPollOutcome] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "startedAt": self.started_at.isoformat(),
            "unitsTotal": self.units_total,
            "unitsPolled": self.units_polled,
            "actionsSucceeded": self.actions_succeeded,
            "actionsFailed": self.actions_failed,
            "durationMs": round(self.duration_ms, 1),
            "abandoned": self.abandoned,
        }


class PollingMetrics:
    """Counters plus an exponential moving average of read response time."""

    def __init__(self, alpha: float = 0.1):
        self.alpha = alpha
        self.total_polling_calls = 0
        self.successful_polls = 0
        self.failed_polls = 0
        self.average_response_time_ms = 0.0
        self.completed_cycles = 0
        self.abandoned_cycles = 0
        self.failed_cycles = 0
        self.skipped_ticks = 0
        self.last_cleanup: Optional[datetime] = None
        self.last_cycle: Optional[CycleReport] = None

    def record_call(self, success: bool, response_time_ms: float):
        self.total_polling_calls += 1
        if success:
            self.successful_polls += 1
        else:
            self.failed_polls += 1
        if self.total_polling_calls == 1:
            self.average_response_time_ms = response_time_ms
        else:
            self.average_response_time_ms = (
                self.alpha * response_time_ms + (1 - self.alpha) * self.average_response_time_ms
            )

    def to_dict(self) -> Dict:
        success_rate = (self.successful_polls / self.total_polling_calls * 100) if self.total_polling_calls else 0.0
        return {
            "totalPollingCalls": self.total_polling_calls,
            "successfulPolls": self.successful_polls,
            "failedPolls": self.failed_polls,
            "successRate": round(success_rate, 1),
            "averageResponseTimeMs": round(self.average_response_time_ms, 2),
            "completedCycles": self.completed_cycles,
            "abandonedCycles": self.abandoned_cycles,
            "failedCycles": self.failed_cycles,
            "skippedTicks": self.skipped_ticks,
            "lastCleanup": self.last_cleanup.isoformat() if self.last_cleanup else None,
            "lastCycle": self.last_cycle.to_dict() if self.last_cycle else None,
        }
