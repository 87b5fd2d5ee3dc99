"""
Test Suite for the Control Path
===============================

Tests validate:
    - Plain reads/writes: queue priority, log lifecycle, field update
    - Time-composite round trip ("07:30" and 730), range rejection
    - Existing log entry reuse and single terminal transition
    - Distinct failures: mapping, unit type, missing value, transaction,
      composite partial failure
    - Sequential/parallel batches, detached batch submission and stop()
"""

import unittest
import asyncio
import sys
from pathlib import Path

# Add workspace to path
sys.path.insert(0, str(Path(__file__).parent))

from protocols.modbus.register_map import FunctionCode
from shelter_master.command_queue import CommandPriority
from shelter_master.control import (
    BatchCommand,
    ParallelStrategy,
    SequentialStrategy,
    get_strategy,
    parse_time_value,
)
from shelter_master.engine import ShelterEngine
from shelter_master.errors import (
    CommandLogNotFoundError,
    CommunicationError,
    CompositeCommandError,
    InvalidCommandError,
    LogAlreadyFinalizedError,
    MissingValueError,
    TimeValueParseError,
    UnitTypeNotSupportedError,
    UnsupportedCommandError,
)
from shelter_master.storage import CommandStatus, UnitRecord
from shelter_master.transport import SimulatedDDCTransport


def find_unit(engine: ShelterEngine, device_type: str, unit_id: str) -> UnitRecord:
    for unit in engine.unit_store.units.values():
        if unit.device_type == device_type and unit.unit_id == unit_id:
            return unit
    raise LookupError(f"{device_type}/{unit_id} not seeded")


class TestTimeValues(unittest.TestCase):
    """Test schedule time parsing"""

    def test_accepted_forms(self):
        self.assertEqual(parse_time_value("07:30"), (7, 30))
        self.assertEqual(parse_time_value("7:05"), (7, 5))
        self.assertEqual(parse_time_value("0730"), (7, 30))
        self.assertEqual(parse_time_value(730), (7, 30))
        self.assertEqual(parse_time_value(2359), (23, 59))
        self.assertEqual(parse_time_value(0), (0, 0))

    def test_rejected_forms(self):
        for value in ("25:99", "24:00", "12:60", 2400, 1275, "ab", "7.30", "", -5, True, None):
            with self.assertRaises(TimeValueParseError, msg=repr(value)):
                parse_time_value(value)

    def test_error_message_names_formats(self):
        with self.assertRaises(TimeValueParseError) as ctx:
            parse_time_value("25:99")
        self.assertIn('Expected format: "HH:MM" or HHMM', ctx.exception.message)


class TestCommandExecutor(unittest.TestCase):
    """Test single command execution"""

    def setUp(self):
        self.transport = SimulatedDDCTransport(registers={120: 220})
        self.engine = ShelterEngine("c0101", self.transport)
        self.executor = self.engine.executor
        self.log_store = self.engine.log_store
        self.lighting = find_unit(self.engine, "lighting", "u001")
        self.cooler = find_unit(self.engine, "cooler", "u001")

    def _record_priorities(self):
        priorities = []
        submit = self.engine.command_queue.submit

        async def recording_submit(descriptor, intent, priority=CommandPriority.NORMAL, **kwargs):
            priorities.append(priority)
            return await submit(descriptor, intent, priority, **kwargs)

        self.engine.command_queue.submit = recording_submit
        return priorities

    def test_plain_write(self):
        asyncio.run(self._test_plain_write())

    async def _test_plain_write(self):
        priorities = self._record_priorities()
        outcome = await self.executor.execute(self.lighting, "SET_POWER", True)

        self.assertEqual(outcome.status, CommandStatus.SUCCESS)
        self.assertIs(outcome.value, True)
        self.assertIs(self.lighting.data["power"], True)
        self.assertEqual(priorities, [CommandPriority.HIGH])

        record = self.transport.history[-1]
        self.assertEqual(record.function_code, FunctionCode.WRITE_SINGLE_COIL)
        self.assertEqual(record.address, 367)
        self.assertEqual(record.value, 1)

        entry = await self.log_store.get(outcome.request_id)
        self.assertEqual(entry.status, CommandStatus.SUCCESS)
        self.assertEqual(entry.requested_value, True)
        self.assertIsNotNone(entry.finished_at)

    def test_plain_read(self):
        asyncio.run(self._test_plain_read())

    async def _test_plain_read(self):
        priorities = self._record_priorities()
        outcome = await self.executor.execute(self.cooler, "GET_CUR_TEMP")

        self.assertEqual(outcome.value, 22.0)
        self.assertEqual(self.cooler.data["cur_temp"], 22.0)
        self.assertEqual(priorities, [CommandPriority.NORMAL])
        entry = await self.log_store.get(outcome.request_id)
        self.assertEqual(entry.result, 22.0)

    def test_scaled_write(self):
        asyncio.run(self._test_scaled_write())

    async def _test_scaled_write(self):
        await self.executor.execute(self.cooler, "SET_SUMMER_CONT_TEMP", 24.5)
        self.assertEqual(self.transport.registers[125], 245)
        self.assertEqual(self.cooler.data["summer_cont_temp"], 24.5)

    def test_composite_round_trip(self):
        asyncio.run(self._test_composite_round_trip())

    async def _test_composite_round_trip(self):
        priorities = self._record_priorities()
        outcome = await self.executor.execute(self.lighting, "SET_START_TIME_1", "07:30")
        self.assertEqual(outcome.value, "07:30")
        self.assertEqual(priorities, [CommandPriority.HIGH, CommandPriority.HIGH])

        writes = [(r.address, r.value) for r in self.transport.history]
        self.assertEqual(writes, [(41, 7), (57, 30)])

        self.lighting.data.clear()
        outcome = await self.executor.execute(self.lighting, "GET_START_TIME_1")
        self.assertEqual(outcome.value, "07:30")
        self.assertEqual(self.lighting.data["start_time_1"], "07:30")
        self.assertEqual(self.lighting.data["start_time_1_hour"], 7)
        self.assertEqual(self.lighting.data["start_time_1_minute"], 30)

        # One log entry per composite command
        stats = await self.log_store.get_stats()
        self.assertEqual(stats["total"], 2)
        self.assertEqual(stats["success"], 2)

    def test_numeric_time_is_equivalent(self):
        asyncio.run(self._test_numeric_time_is_equivalent())

    async def _test_numeric_time_is_equivalent(self):
        await self.executor.execute(self.lighting, "SET_END_TIME_1", 730)
        self.assertEqual(self.transport.registers[73], 7)
        self.assertEqual(self.transport.registers[89], 30)
        self.assertEqual(self.lighting.data["end_time_1"], "07:30")

        outcome = await self.executor.execute(self.lighting, "GET_END_TIME_1")
        self.assertEqual(outcome.value, "07:30")

    def test_out_of_range_time_rejected_before_transaction(self):
        asyncio.run(self._test_out_of_range_time_rejected_before_transaction())

    async def _test_out_of_range_time_rejected_before_transaction(self):
        with self.assertRaises(TimeValueParseError):
            await self.executor.execute(self.lighting, "SET_START_TIME_1", "25:99")

        self.assertEqual(len(self.transport.history), 0)
        entries = await self.log_store.list()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].status, CommandStatus.FAIL)
        self.assertIn("Expected format", entries[0].error)

    def test_existing_log_reused(self):
        asyncio.run(self._test_existing_log_reused())

    async def _test_existing_log_reused(self):
        entry = await self.log_store.create(self.lighting.device_id, "u001", "SET_AUTO", False)
        outcome = await self.executor.execute(self.lighting, "SET_AUTO", False, request_id=entry.request_id)

        self.assertEqual(outcome.request_id, entry.request_id)
        entries = await self.log_store.list()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].status, CommandStatus.SUCCESS)

    def test_no_double_finalization(self):
        asyncio.run(self._test_no_double_finalization())

    async def _test_no_double_finalization(self):
        outcome = await self.executor.execute(self.lighting, "SET_POWER", False)
        writes = len(self.transport.history)

        # Reusing a finished entry must not flip it to fail
        with self.assertRaises(LogAlreadyFinalizedError):
            await self.executor.execute(self.lighting, "SET_POWER", True, request_id=outcome.request_id)

        entry = await self.log_store.get(outcome.request_id)
        self.assertEqual(entry.status, CommandStatus.SUCCESS)
        statuses = [e["status"] for e in self.engine.broadcaster.history if e["type"] == "command_status"]
        self.assertEqual(statuses.count("fail"), 0)

        # Rejected before the queue: nothing written, unit data untouched
        self.assertEqual(len(self.transport.history), writes)
        self.assertEqual(self.transport.coils[367], False)
        self.assertEqual(self.lighting.data["power"], False)

    def test_unknown_request_id(self):
        asyncio.run(self._test_unknown_request_id())

    async def _test_unknown_request_id(self):
        with self.assertRaises(CommandLogNotFoundError):
            await self.executor.execute(self.lighting, "SET_POWER", True, request_id="no-such-entry")

        self.assertEqual(len(self.transport.history), 0)
        self.assertEqual(await self.log_store.list(), [])
        self.assertNotIn("power", self.lighting.data)
        self.assertEqual(self.executor.stats["failed"], 1)

    def test_transaction_failure(self):
        asyncio.run(self._test_transaction_failure())

    async def _test_transaction_failure(self):
        self.transport.fail([367])
        with self.assertRaises(CommunicationError) as ctx:
            await self.executor.execute(self.lighting, "SET_POWER", True)
        self.assertIn("SET_POWER", ctx.exception.message)

        entries = await self.log_store.list()
        self.assertEqual(entries[0].status, CommandStatus.FAIL)
        self.assertNotIn("power", self.lighting.data)

        event = self.engine.broadcaster.history[-1]
        self.assertEqual(event["type"], "command_status")
        self.assertEqual(event["status"], "fail")

        logs = [e for e in self.engine.broadcaster.history if e["type"] == "log" and e["service"] == "control"]
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]["level"], "error")
        self.assertEqual(logs[0]["data"]["requestId"], entries[0].request_id)

    def test_composite_partial_failure(self):
        asyncio.run(self._test_composite_partial_failure())

    async def _test_composite_partial_failure(self):
        self.transport.fail([57])
        with self.assertRaises(CompositeCommandError) as ctx:
            await self.executor.execute(self.lighting, "SET_START_TIME_1", "07:30")

        self.assertEqual(ctx.exception.details["failed_part"], "MINUTE")
        self.assertEqual(ctx.exception.details["completed_parts"], ["HOUR"])
        self.assertEqual(self.transport.registers[41], 7)

        entries = await self.log_store.list()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].status, CommandStatus.FAIL)
        self.assertNotIn("start_time_1", self.lighting.data)

    def test_composite_first_half_failure(self):
        asyncio.run(self._test_composite_first_half_failure())

    async def _test_composite_first_half_failure(self):
        self.transport.fail([41])
        with self.assertRaises(CommunicationError):
            await self.executor.execute(self.lighting, "SET_START_TIME_1", "07:30")
        self.assertEqual([r.address for r in self.transport.history], [41])

    def test_missing_value(self):
        asyncio.run(self._test_missing_value())

    async def _test_missing_value(self):
        with self.assertRaises(MissingValueError):
            await self.executor.execute(self.lighting, "SET_POWER")
        with self.assertRaises(MissingValueError):
            await self.executor.execute(self.lighting, "SET_START_TIME_1")

        self.assertEqual(len(self.transport.history), 0)
        stats = await self.log_store.get_stats()
        self.assertEqual(stats["fail"], 2)
        self.assertEqual(stats["waiting"], 0)

    def test_invalid_value(self):
        asyncio.run(self._test_invalid_value())

    async def _test_invalid_value(self):
        with self.assertRaises(InvalidCommandError):
            await self.executor.execute(self.cooler, "SET_SUMMER_CONT_TEMP", "hot")
        self.assertEqual(len(self.transport.history), 0)

    def test_unsupported_unit_type(self):
        asyncio.run(self._test_unsupported_unit_type())

    async def _test_unsupported_unit_type(self):
        camera = self.engine.unit_store.add_unit(UnitRecord("c0101", "d009", "u001", "camera"))

        with self.assertRaises(UnitTypeNotSupportedError):
            await self.executor.execute(camera, "GET_POWER")
        self.assertEqual((await self.log_store.get_stats())["total"], 0)

        entry = await self.log_store.create("d009", "u001", "GET_POWER")
        with self.assertRaises(UnitTypeNotSupportedError):
            await self.executor.execute(camera, "GET_POWER", request_id=entry.request_id)
        entry = await self.log_store.get(entry.request_id)
        self.assertEqual(entry.status, CommandStatus.FAIL)

    def test_unmapped_command(self):
        asyncio.run(self._test_unmapped_command())

    async def _test_unmapped_command(self):
        with self.assertRaises(UnsupportedCommandError):
            await self.executor.execute(self.cooler, "SET_START_TIME_2", "08:00")
        self.assertEqual((await self.log_store.get_stats())["total"], 0)
        self.assertEqual(self.executor.stats['failed'], 1)


class TestBatchExecution(unittest.TestCase):
    """Test batch strategies and detached batches"""

    def setUp(self):
        self.transport = SimulatedDDCTransport(latency_s=0.001)
        self.engine = ShelterEngine("c0101", self.transport)
        self.runner = self.engine.batch_runner
        self.lighting = find_unit(self.engine, "lighting", "u001")

    def commands(self):
        return [
            BatchCommand("SET_AUTO", False),
            BatchCommand("SET_POWER", True),
            BatchCommand("SET_START_TIME_1", "18:00"),
            BatchCommand("SET_BRIGHTNESS", 80),
        ]

    def test_sequential_batch(self):
        asyncio.run(self._test_sequential_batch())

    async def _test_sequential_batch(self):
        results = await self.runner.execute_batch(self.lighting, self.commands(), SequentialStrategy())

        self.assertEqual([r.success for r in results], [True, True, True, False])
        self.assertEqual(results[3].error_code, "unsupported_command")
        self.assertEqual([r.address for r in self.transport.history], [351, 367, 41, 57])
        self.assertEqual(self.lighting.data["start_time_1"], "18:00")

    def test_parallel_batch(self):
        asyncio.run(self._test_parallel_batch())

    async def _test_parallel_batch(self):
        results = await self.runner.execute_batch(self.lighting, self.commands(), ParallelStrategy(3))

        self.assertEqual(sum(r.success for r in results), 3)
        self.assertEqual(self.transport.max_in_flight, 1)
        self.assertEqual(self.transport.stats['busy_rejections'], 0)
        self.assertEqual(self.runner.stats['commands_failed'], 1)

    def test_detached_batch(self):
        asyncio.run(self._test_detached_batch())

    async def _test_detached_batch(self):
        request_ids = await self.runner.submit_batch(self.lighting, self.commands())
        self.assertEqual(len(request_ids), 4)

        # Returned before any command ran
        for request_id in request_ids:
            entry = await self.engine.log_store.get(request_id)
            self.assertEqual(entry.status, CommandStatus.WAITING)
        self.assertEqual(self.runner.pending_batches, 1)

        await self.runner.wait_idle()

        statuses = [(await self.engine.log_store.get(r)).status for r in request_ids]
        self.assertEqual(statuses, [CommandStatus.SUCCESS] * 3 + [CommandStatus.FAIL])
        self.assertEqual(self.runner.pending_batches, 0)
        self.assertEqual((await self.engine.log_store.get_stats())["total"], 4)

    def test_stop_fails_unstarted_batch(self):
        asyncio.run(self._test_stop_fails_unstarted_batch())

    async def _test_stop_fails_unstarted_batch(self):
        request_ids = await self.runner.submit_batch(self.lighting, self.commands())
        await self.runner.stop()

        for request_id in request_ids:
            entry = await self.engine.log_store.get(request_id)
            self.assertEqual(entry.status, CommandStatus.FAIL)
            self.assertEqual(entry.error, "Batch cancelled")
        self.assertEqual(len(self.transport.history), 0)
        self.assertEqual(self.runner.pending_batches, 0)

    def test_stop_fails_running_batch(self):
        asyncio.run(self._test_stop_fails_running_batch())

    async def _test_stop_fails_running_batch(self):
        self.transport.latency_s = 0.05
        request_ids = await self.runner.submit_batch(self.lighting, self.commands())
        await asyncio.sleep(0.01)  # First command in flight
        await self.runner.stop()

        entries = [await self.engine.log_store.get(r) for r in request_ids]
        self.assertTrue(all(e.status == CommandStatus.FAIL for e in entries))
        self.assertEqual(entries[0].error, "Command cancelled")
        self.assertTrue(all(e.error == "Batch cancelled" for e in entries[1:]))

        statuses = [e["status"] for e in self.engine.broadcaster.history if e["type"] == "command_status"]
        self.assertEqual(statuses, ["fail"] * 4)
        await self.engine.command_queue.stop()

    def test_strategy_lookup(self):
        self.assertIsInstance(get_strategy("sequential"), SequentialStrategy)
        self.assertEqual(get_strategy("parallel", 5).max_concurrency, 5)
        with self.assertRaises(ValueError):
            get_strategy("round_robin")
        with self.assertRaises(ValueError):
            ParallelStrategy(0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
