"""
Test Suite for the Priority Command Queue
=========================================

Tests validate:
    - At most one transaction in flight on the transport
    - Strict priority dispatch (high > normal > low), FIFO within a class
    - Failures and timeouts do not block later transactions
    - clear()/stop() reject pending work
"""

import unittest
import asyncio
import sys
from pathlib import Path

# Add workspace to path
sys.path.insert(0, str(Path(__file__).parent))

from protocols.modbus.register_map import FunctionCode
from shelter_master.command_queue import CommandPriority, CommandQueue
from shelter_master.errors import QueueClosedError
from shelter_master.mapping.models import CommandIntent, TransactionDescriptor
from shelter_master.transport import SimulatedDDCTransport
from shelter_master.websocket import WebSocketManager


def read(address: int) -> TransactionDescriptor:
    return TransactionDescriptor(FunctionCode.READ_HOLDING_REGISTERS, address)


class TestCommandQueue(unittest.TestCase):
    """Test queue serialization and ordering"""

    def setUp(self):
        self.transport = SimulatedDDCTransport(registers={10: 1, 11: 2, 12: 3, 20: 4, 30: 5})
        self.queue = CommandQueue(self.transport, transaction_timeout_s=1.0)

    def test_single_transaction_in_flight(self):
        asyncio.run(self._test_single_transaction_in_flight())

    async def _test_single_transaction_in_flight(self):
        self.transport.latency_s = 0.002
        results = await asyncio.gather(*(
            self.queue.submit(read(10 + i % 3), CommandIntent.READ, priority)
            for i, priority in enumerate([CommandPriority.LOW, CommandPriority.HIGH, CommandPriority.NORMAL] * 4)
        ))

        self.assertTrue(all(r.success for r in results))
        self.assertEqual(self.transport.max_in_flight, 1)
        self.assertEqual(self.transport.stats['busy_rejections'], 0)
        self.assertEqual(len(self.transport.history), 12)

    def test_priority_order(self):
        asyncio.run(self._test_priority_order())

    async def _test_priority_order(self):
        await asyncio.gather(
            self.queue.submit(read(10), CommandIntent.READ, CommandPriority.LOW),
            self.queue.submit(read(11), CommandIntent.READ, CommandPriority.LOW),
            self.queue.submit(read(20), CommandIntent.READ, CommandPriority.NORMAL),
            self.queue.submit(read(12), CommandIntent.READ, CommandPriority.LOW),
            self.queue.submit(read(30), CommandIntent.READ, CommandPriority.HIGH),
        )
        order = [record.address for record in self.transport.history]
        self.assertEqual(order, [30, 20, 10, 11, 12])

    def test_result_propagates_to_caller(self):
        asyncio.run(self._test_result_propagates_to_caller())

    async def _test_result_propagates_to_caller(self):
        result = await self.queue.submit(read(20), CommandIntent.READ, unit_id="u001")
        self.assertTrue(result.success)
        self.assertEqual(result.data, [4])
        self.assertEqual(result.first_value, 4)
        self.assertEqual(result.to_dict()["type"], "read")
        self.assertEqual(result.to_dict()["unitId"], "u001")

        write = TransactionDescriptor(FunctionCode.WRITE_SINGLE_REGISTER, 20)
        result = await self.queue.submit(write, CommandIntent.WRITE, CommandPriority.HIGH, value=99)
        self.assertTrue(result.success)
        self.assertEqual(self.transport.registers[20], 99)

    def test_failure_does_not_block(self):
        asyncio.run(self._test_failure_does_not_block())

    async def _test_failure_does_not_block(self):
        self.transport.fail([10])
        failed, ok = await asyncio.gather(
            self.queue.submit(read(10), CommandIntent.READ),
            self.queue.submit(read(11), CommandIntent.READ),
        )
        self.assertFalse(failed.success)
        self.assertIn("Timeout waiting for response", failed.error)
        self.assertEqual(failed.error_code, "communication_error")
        self.assertTrue(ok.success)
        self.assertEqual(self.queue.stats['failed'], 1)
        self.assertEqual(self.queue.stats['processed'], 1)

    def test_transaction_timeout(self):
        asyncio.run(self._test_transaction_timeout())

    async def _test_transaction_timeout(self):
        self.queue.transaction_timeout_s = 0.05
        self.transport.hang_addresses.add(10)
        hung, ok = await asyncio.gather(
            self.queue.submit(read(10), CommandIntent.READ),
            self.queue.submit(read(11), CommandIntent.READ),
        )
        self.assertFalse(hung.success)
        self.assertIn("timed out", hung.error)
        self.assertEqual(hung.error_code, "transport_timeout")
        self.assertTrue(ok.success)
        self.assertEqual(self.queue.stats['timeouts'], 1)
        self.assertEqual(self.transport.in_flight, 0)

    def test_unsupported_function_code(self):
        asyncio.run(self._test_unsupported_function_code())

    async def _test_unsupported_function_code(self):
        result = await self.queue.submit(TransactionDescriptor(7, 10), CommandIntent.READ)
        self.assertFalse(result.success)
        self.assertIn("Unsupported function code: 7", result.error)

    def test_status_and_clear(self):
        asyncio.run(self._test_status_and_clear())

    async def _test_status_and_clear(self):
        tasks = [
            asyncio.create_task(self.queue.submit(read(10), CommandIntent.READ, CommandPriority.LOW, unit_id="u001")),
            asyncio.create_task(self.queue.submit(read(11), CommandIntent.READ, CommandPriority.LOW, unit_id="u002")),
            asyncio.create_task(self.queue.submit(read(30), CommandIntent.READ, CommandPriority.HIGH, unit_id="u001")),
        ]
        await asyncio.sleep(0)  # Enqueued, worker not yet running

        status = self.queue.get_status()
        self.assertEqual(status['low'], 2)
        self.assertEqual(status['high'], 1)
        self.assertEqual(status['totalCommands'], 3)
        self.assertEqual(len(self.queue), 3)
        self.assertEqual(status['max_backlog'], 3)
        unit_status = self.queue.get_unit_status("u001")
        self.assertEqual(unit_status['totalCommands'], 2)

        self.assertEqual(self.queue.clear(), 3)
        results = await asyncio.gather(*tasks, return_exceptions=True)
        self.assertTrue(all(isinstance(r, QueueClosedError) for r in results))
        self.assertEqual(len(self.transport.history), 0)

    def test_warnings_are_broadcast(self):
        asyncio.run(self._test_warnings_are_broadcast())

    async def _test_warnings_are_broadcast(self):
        broadcaster = WebSocketManager()
        queue = CommandQueue(self.transport, size_warning_threshold=1, slow_batch_ms=0, broadcaster=broadcaster)
        self.transport.latency_s = 0.002
        await asyncio.gather(
            queue.submit(read(10), CommandIntent.READ),
            queue.submit(read(11), CommandIntent.READ),
        )

        events = [e for e in broadcaster.history if e["type"] == "log" and e["service"] == "queue"]
        messages = [e["message"] for e in events]
        self.assertTrue(any("backlog 2 exceeds 1" in m for m in messages))
        self.assertTrue(any("drain took" in m for m in messages))
        self.assertTrue(all(e["level"] == "warn" for e in events))

    def test_stopped_queue_rejects(self):
        asyncio.run(self._test_stopped_queue_rejects())

    async def _test_stopped_queue_rejects(self):
        await self.queue.submit(read(10), CommandIntent.READ)
        await self.queue.stop()
        with self.assertRaises(QueueClosedError):
            await self.queue.submit(read(10), CommandIntent.READ)


if __name__ == "__main__":
    unittest.main(verbosity=2)
