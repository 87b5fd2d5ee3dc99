"""
Test Suite for the Modbus TCP Client and Transport
==================================================

Frames are checked byte-for-byte against a fake socket, so no DDC is needed.
"""

import unittest
import asyncio
import struct
import sys
import threading
from pathlib import Path

# Add workspace to path
sys.path.insert(0, str(Path(__file__).parent))

from protocols.modbus.client import ModbusClient, ModbusExceptionCode
from protocols.modbus.register_map import FunctionCode
from shelter_master.command_queue import CommandQueue
from shelter_master.errors import NoConnectionError, UnsupportedFunctionCodeError, command_execution_error
from shelter_master.mapping.models import CommandIntent, TransactionDescriptor
from shelter_master.transport import ModbusTcpTransport


class FakeSocket:
    """Records sent frames and replays canned responses."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.sent = []
        self.closed = False

    def sendall(self, data):
        self.sent.append(bytes(data))

    def recv(self, size):
        return self.responses.pop(0) if self.responses else b''

    def settimeout(self, timeout):
        pass

    def close(self):
        self.closed = True


class HangingSocket(FakeSocket):
    """recv() blocks until the socket is shut down."""

    def __init__(self):
        super().__init__([])
        self.released = threading.Event()
        self.receiving = False
        self.shut_down = False

    def recv(self, size):
        self.receiving = True
        self.released.wait(2.0)
        self.receiving = False
        return b''

    def shutdown(self, how):
        self.shut_down = True
        self.released.set()


def mbap(txn_id: int, fc: int, body: bytes, unit_id: int = 1) -> bytes:
    return struct.pack('>HHHBB', txn_id, 0, len(body) + 2, unit_id, fc) + body


def connected_client(*responses) -> ModbusClient:
    client = ModbusClient("192.0.2.10", 502)
    client.socket = FakeSocket(responses)
    client.connected = True
    return client


class TestModbusClient(unittest.TestCase):
    """Test request framing and response parsing"""

    def test_read_holding_registers(self):
        client = connected_client(mbap(1, 3, struct.pack('>BHH', 4, 220, 7)))
        self.assertEqual(client.read_holding_registers(120, 2), [220, 7])

        request = client.socket.sent[0]
        self.assertEqual(request, mbap(1, 3, struct.pack('>HH', 120, 2)))
        self.assertEqual(client.stats['reads'], 1)

    def test_read_coils_unpacks_bits(self):
        client = connected_client(mbap(1, 1, bytes([1, 0b00000101])))
        self.assertEqual(client.read_coils(820, 3), [1, 0, 1])

    def test_write_coil_frame(self):
        echo = mbap(1, 5, struct.pack('>HH', 367, 0xFF00))
        client = connected_client(echo)
        self.assertTrue(client.write_coil(367, True))
        self.assertEqual(client.socket.sent[0], echo)
        self.assertEqual(client.stats['writes'], 1)

    def test_write_register_masks_value(self):
        client = connected_client(mbap(1, 6, struct.pack('>HH', 41, 7)))
        self.assertTrue(client.write_register(41, 7))
        self.assertEqual(client.socket.sent[0][-4:], struct.pack('>HH', 41, 7))

    def test_write_multiple_coils_packs_bits(self):
        client = connected_client(mbap(1, 15, struct.pack('>HH', 327, 10)))
        values = [True, False, True] + [False] * 6 + [True]
        self.assertTrue(client.write_coils(327, values))
        body = client.socket.sent[0][8:]
        self.assertEqual(body, struct.pack('>HHB', 327, 10, 2) + bytes([0b00000101, 0b00000010]))

    def test_exception_response(self):
        client = connected_client(mbap(1, 0x83, bytes([ModbusExceptionCode.ILLEGAL_DATA_ADDRESS])))
        self.assertIsNone(client.read_holding_registers(9999))
        self.assertIn("ILLEGAL_DATA_ADDRESS", client.last_error)
        self.assertEqual(client.stats['errors'], 1)
        self.assertTrue(client.connected)

    def test_short_payload_rejected(self):
        client = connected_client(mbap(1, 3, struct.pack('>BH', 2, 220)))
        self.assertIsNone(client.read_holding_registers(120, 2))
        self.assertIn("Expected 4 data bytes", client.last_error)

    def test_closed_connection_disconnects(self):
        client = connected_client()
        fake = client.socket
        self.assertFalse(client.write_register(41, 7))
        self.assertTrue(fake.closed)
        self.assertFalse(client.connected)
        self.assertEqual(client.stats['disconnections'], 1)

    def test_transaction_id_wraps(self):
        client = ModbusClient("192.0.2.10")
        client.transaction_id = 65535
        self.assertEqual(client._get_transaction_id(), 1)


class TestModbusTcpTransport(unittest.TestCase):
    """Test the asyncio transport over the blocking client"""

    def test_read_through_transport(self):
        asyncio.run(self._test_read_through_transport())

    async def _test_read_through_transport(self):
        client = connected_client(mbap(1, 3, struct.pack('>BH', 2, 215)))
        transport = ModbusTcpTransport("192.0.2.10", client=client)
        descriptor = TransactionDescriptor(FunctionCode.READ_HOLDING_REGISTERS, 120)

        result = await transport.execute(descriptor, CommandIntent.READ)
        self.assertTrue(result.success)
        self.assertEqual(result.data, [215])
        self.assertTrue(transport.is_connected())

    def test_failed_write_carries_error(self):
        asyncio.run(self._test_failed_write_carries_error())

    async def _test_failed_write_carries_error(self):
        client = connected_client(mbap(1, 0x86, bytes([ModbusExceptionCode.SLAVE_DEVICE_BUSY])))
        transport = ModbusTcpTransport("192.0.2.10", client=client)
        descriptor = TransactionDescriptor(FunctionCode.WRITE_SINGLE_REGISTER, 41)

        result = await transport.execute(descriptor, CommandIntent.WRITE, 7)
        self.assertFalse(result.success)
        self.assertIn("SLAVE_DEVICE_BUSY", result.error)

    def test_unreachable_ddc_raises_no_connection(self):
        asyncio.run(self._test_unreachable_ddc_raises_no_connection())

    async def _test_unreachable_ddc_raises_no_connection(self):
        client = ModbusClient("192.0.2.10")
        client.connect = lambda: False
        client.last_error = "Connection refused"
        transport = ModbusTcpTransport("192.0.2.10", client=client)
        descriptor = TransactionDescriptor(FunctionCode.READ_COILS, 820)

        with self.assertRaises(NoConnectionError) as ctx:
            await transport.execute(descriptor, CommandIntent.READ)
        self.assertIn("Connection refused", ctx.exception.message)

        # Through the queue the failure keeps its code
        queue = CommandQueue(transport)
        result = await queue.submit(descriptor, CommandIntent.READ)
        self.assertFalse(result.success)
        self.assertEqual(result.error_code, "no_connection")
        error = command_execution_error("GET_POWER", result.error, result.error_code)
        self.assertIsInstance(error, NoConnectionError)
        self.assertTrue(error.retryable)
        await queue.stop()

    def test_queue_timeout_waits_for_blocked_call(self):
        asyncio.run(self._test_queue_timeout_waits_for_blocked_call())

    async def _test_queue_timeout_waits_for_blocked_call(self):
        client = connected_client()
        hung = HangingSocket()
        client.socket = hung
        transport = ModbusTcpTransport("192.0.2.10", client=client)
        queue = CommandQueue(transport, transaction_timeout_s=0.05)
        descriptor = TransactionDescriptor(FunctionCode.READ_HOLDING_REGISTERS, 120)

        result = await queue.submit(descriptor, CommandIntent.READ)
        self.assertEqual(result.error_code, "transport_timeout")
        self.assertTrue(hung.shut_down)

        # The blocked call returned and dropped the socket before the queue moved on
        self.assertFalse(hung.receiving)
        self.assertTrue(hung.closed)
        self.assertFalse(client.connected)
        await queue.stop()

    def test_unsupported_function_code(self):
        asyncio.run(self._test_unsupported_function_code())

    async def _test_unsupported_function_code(self):
        transport = ModbusTcpTransport("192.0.2.10", client=connected_client())
        with self.assertRaises(UnsupportedFunctionCodeError):
            await transport.execute(TransactionDescriptor(7, 10), CommandIntent.READ)


if __name__ == "__main__":
    unittest.main(verbosity=2)
