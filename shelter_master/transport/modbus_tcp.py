"""
Modbus TCP transport backed by the blocking ModbusClient.

Socket I/O runs in the default executor so the event loop keeps serving the
API and the broadcast loop while a transaction is on the wire.
A cancelled transaction (queue timeout) aborts the socket and waits for the
blocked call to return, so the link never carries two requests at once.
"""

import asyncio
import logging
from typing import Dict, Optional

from protocols.modbus.client import ModbusClient
from protocols.modbus.register_map import FunctionCode
from shelter_master.errors import NoConnectionError, UnsupportedFunctionCodeError
from shelter_master.mapping.models import CommandIntent, TransactionDescriptor
from shelter_master.transport.base import Transport, TransactionResult

logger = logging.getLogger(__name__)


class ModbusTcpTransport(Transport):
    name = "modbus_tcp"

    def __init__(self, host: str, port: int = 502, unit_id: int = 1, timeout_s: float = 2.0,
                 client: Optional[ModbusClient] = None):
        self.client = client or ModbusClient(host, port, unit_id=unit_id, timeout_s=timeout_s)

    async def connect(self) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.client.connect)

    async def disconnect(self):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.client.disconnect)

    def is_connected(self) -> bool:
        return self.client.connected

    async def execute(self, descriptor: TransactionDescriptor, intent: CommandIntent,
                      value: Optional[int] = None) -> TransactionResult:
        call = self._bind(descriptor, value)
        if not self.client.connected and not await self.connect():
            raise NoConnectionError(f"No connection to DDC at {self.client.host}:{self.client.port}: "
                                    f"{self.client.last_error}")
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, call)
        try:
            outcome = await asyncio.shield(future)
        except asyncio.CancelledError:
            # The worker thread still owns the socket: unblock it and wait for
            # it to return before the queue dispatches the next transaction
            self.client.abort()
            await asyncio.wait([future])
            raise

        if outcome is None or outcome is False:
            return TransactionResult.failed(self.client.last_error or "No response from DDC")
        if outcome is True:
            return TransactionResult.ok([value] if value is not None else [])
        return TransactionResult.ok(outcome)

    def _bind(self, descriptor: TransactionDescriptor, value: Optional[int]):
        fc = descriptor.function_code
        address = descriptor.address
        length = descriptor.length
        client = self.client

        if fc == FunctionCode.READ_COILS:
            return lambda: client.read_coils(address, length)
        if fc == FunctionCode.READ_DISCRETE_INPUTS:
            return lambda: client.read_discrete_inputs(address, length)
        if fc == FunctionCode.READ_HOLDING_REGISTERS:
            return lambda: client.read_holding_registers(address, length)
        if fc == FunctionCode.READ_INPUT_REGISTERS:
            return lambda: client.read_input_registers(address, length)
        if fc == FunctionCode.WRITE_SINGLE_COIL:
            return lambda: client.write_coil(address, bool(value))
        if fc == FunctionCode.WRITE_SINGLE_REGISTER:
            return lambda: client.write_register(address, int(value))
        if fc == FunctionCode.WRITE_MULTIPLE_COILS:
            return lambda: client.write_coils(address, [bool(value)] * length)
        if fc == FunctionCode.WRITE_MULTIPLE_REGISTERS:
            return lambda: client.write_registers(address, [int(value)] * length)
        raise UnsupportedFunctionCodeError(fc)

    def get_stats(self) -> Dict:
        return {
            "host": self.client.host,
            "port": self.client.port,
            "connected": self.client.connected,
            "healthy": self.client.is_healthy(),
            "last_error": self.client.last_error,
            **self.client.stats,
        }
