from shelter_master.polling.metrics import CycleReport, PollingMetrics, UnitPollOutcome
from shelter_master.polling.scheduler import PollingScheduler

__all__ = ['CycleReport', 'PollingMetrics', 'UnitPollOutcome', 'PollingScheduler']
