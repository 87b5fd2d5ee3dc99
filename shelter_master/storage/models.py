"""
Persistence records: units, system configuration and command log entries.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class CommunicationHealth(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    ERROR = "error"


class CommandStatus(str, Enum):
    WAITING = "waiting"
    SUCCESS = "success"
    FAIL = "fail"


@dataclass
class UnitRecord:
    site_id: str
    device_id: str
    unit_id: str
    device_type: str
    name: Optional[str] = None
    health: CommunicationHealth = CommunicationHealth.NORMAL
    data: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None
    health_changed_at: Optional[datetime] = None

    @property
    def key(self):
        return (self.device_id, self.unit_id)

    def to_dict(self) -> Dict:
        return {
            "siteId": self.site_id,
            "deviceId": self.device_id,
            "unitId": self.unit_id,
            "type": self.device_type,
            "name": self.name or self.unit_id,
            "health": self.health.value,
            "data": dict(self.data),
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "healthChangedAt": self.health_changed_at.isoformat() if self.health_changed_at else None,
        }


@dataclass
class CommandLogEntry:
    request_id: str
    device_id: str
    unit_id: str
    action: str
    requested_value: Any = None
    status: CommandStatus = CommandStatus.WAITING
    result: Any = None
    error: Optional[str] = None
    requested_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != CommandStatus.WAITING

    def to_dict(self) -> Dict:
        return {
            "requestId": self.request_id,
            "deviceId": self.device_id,
            "unitId": self.unit_id,
            "action": self.action,
            "value": self.requested_value,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "requestedAt": self.requested_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }
