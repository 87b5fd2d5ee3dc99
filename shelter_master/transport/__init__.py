"""
Transports to the shelter DDC.
"""

from shelter_master.transport.base import Transport, TransactionResult
from shelter_master.transport.modbus_tcp import ModbusTcpTransport
from shelter_master.transport.simulated import SimulatedDDCTransport

__all__ = [
    'Transport',
    'TransactionResult',
    'ModbusTcpTransport',
    'SimulatedDDCTransport',
]
