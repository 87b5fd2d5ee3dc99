"""
Persistence boundary (in-memory implementation).
"""

from shelter_master.storage.models import CommandLogEntry, CommandStatus, CommunicationHealth, UnitRecord
from shelter_master.storage.memory import InMemoryCommandLogStore, InMemoryUnitStore

__all__ = [
    'CommandLogEntry',
    'CommandStatus',
    'CommunicationHealth',
    'UnitRecord',
    'InMemoryCommandLogStore',
    'InMemoryUnitStore',
]
