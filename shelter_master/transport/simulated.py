"""
Simulated DDC Transport
=======================

In-memory stand-in for the shelter DDC, used when MODBUS_CONFIG["use_mock"]
is set and by the test suite.

Behaves like a single-threaded RTU:
    - One request at a time; a second concurrent request is rejected BUSY
    - Coil bank (FC01/02/05/15) and register bank (FC03/04/06/16)
    - Configurable response latency
    - Failure injection per address or for every request
    - Transaction history and concurrency statistics
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from protocols.modbus.client import ModbusExceptionCode
from protocols.modbus.register_map import COIL_FUNCTION_CODES, FunctionCode
from shelter_master.errors import UnsupportedFunctionCodeError
from shelter_master.mapping.models import CommandIntent, TransactionDescriptor
from shelter_master.transport.base import Transport, TransactionResult

logger = logging.getLogger(__name__)


@dataclass
class TransactionRecord:
    function_code: int
    address: int
    intent: str
    value: Optional[int]
    success: bool
    timestamp: datetime


class SimulatedDDCTransport(Transport):
    name = "simulated"

    def __init__(self, latency_s: float = 0.0, registers: Dict[int, int] = None,
                 coils: Dict[int, int] = None):
        self.latency_s = latency_s
        self.registers: Dict[int, int] = dict(registers or {})
        self.coils: Dict[int, int] = dict(coils or {})
        self.connected = False

        # Failure injection
        self.fail_all = False
        self.fail_addresses: Set[int] = set()
        self.hang_addresses: Set[int] = set()

        self.history: List[TransactionRecord] = []
        self.in_flight = 0
        self.max_in_flight = 0

        self.stats = {
            "total_requests": 0,
            "reads": 0,
            "writes": 0,
            "failures": 0,
            "busy_rejections": 0,
        }

    async def connect(self) -> bool:
        self.connected = True
        logger.info("Simulated DDC connected")
        return True

    async def disconnect(self):
        self.connected = False
        logger.info("Simulated DDC disconnected")

    def is_connected(self) -> bool:
        return self.connected

    # ------------------------------------------------------------------
    # Test/diagnostic helpers
    # ------------------------------------------------------------------

    def preset_register(self, address: int, value: int):
        self.registers[address] = value

    def preset_coil(self, address: int, value: int):
        self.coils[address] = 1 if value else 0

    def fail(self, addresses: Iterable[int]):
        self.fail_addresses.update(addresses)

    def recover(self):
        self.fail_all = False
        self.fail_addresses.clear()
        self.hang_addresses.clear()

    def reset_history(self):
        self.history.clear()
        self.max_in_flight = 0

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def execute(self, descriptor: TransactionDescriptor, intent: CommandIntent,
                      value: Optional[int] = None) -> TransactionResult:
        fc = int(descriptor.function_code)
        try:
            FunctionCode(fc)
        except ValueError:
            raise UnsupportedFunctionCodeError(fc) from None

        self.stats["total_requests"] += 1
        if self.in_flight:
            self.stats["busy_rejections"] += 1
            logger.warning(f"Simulated DDC BUSY - rejecting FC{fc:02d} @{descriptor.address}")
            return TransactionResult.failed(f"Modbus exception {ModbusExceptionCode.SLAVE_DEVICE_BUSY.value} "
                                            f"(SLAVE_DEVICE_BUSY)")

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if descriptor.address in self.hang_addresses:
                # Never answers; the caller's timeout decides
                await asyncio.Event().wait()
            if self.latency_s:
                await asyncio.sleep(self.latency_s)
            result = self._apply(fc, descriptor, intent, value)
        finally:
            self.in_flight -= 1

        self.history.append(TransactionRecord(
            function_code=fc,
            address=descriptor.address,
            intent=intent.value,
            value=value,
            success=result.success,
            timestamp=datetime.utcnow(),
        ))
        if not result.success:
            self.stats["failures"] += 1
        return result

    def _apply(self, fc: int, descriptor: TransactionDescriptor, intent: CommandIntent,
               value: Optional[int]) -> TransactionResult:
        address = descriptor.address
        if self.fail_all or address in self.fail_addresses:
            return TransactionResult.failed(f"Timeout waiting for response from DDC (FC{fc:02d} @{address})")

        bank = self.coils if fc in COIL_FUNCTION_CODES else self.registers
        if intent == CommandIntent.WRITE:
            if fc in COIL_FUNCTION_CODES:
                word = 1 if value else 0
            else:
                word = int(value) & 0xFFFF
            for offset in range(descriptor.length):
                bank[address + offset] = word
            self.stats["writes"] += 1
            return TransactionResult.ok([word])

        self.stats["reads"] += 1
        return TransactionResult.ok([bank.get(address + offset, 0) for offset in range(descriptor.length)])

    def get_stats(self) -> Dict:
        return {
            "connected": self.connected,
            "max_in_flight": self.max_in_flight,
            "transactions": len(self.history),
            **self.stats,
        }
