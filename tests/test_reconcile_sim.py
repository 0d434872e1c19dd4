"""Simulation tests for the reconciliation state machine with fake sessions."""
from __future__ import annotations

import asyncio
import csv
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from biosync.connector import SessionConfig
from biosync.errors import ConnectError, FetchError
from biosync.hub import DistributionHub
from biosync.metrics import MetricsLogger
from biosync.models import DeviceState, EnrolledUser, RawRecord
from biosync.reconcile import ReconciliationEngine, deduplicate, within_year

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def _record(serial: int, user_id: int, when: datetime) -> RawRecord:
    return RawRecord(serial=serial, user_id=user_id, record_time=when, type=0, state=1)


class _FakeDevice:
    """Scripted terminal shared by every session the engine creates."""

    def __init__(self) -> None:
        self.reachable = True
        self.users: List[EnrolledUser] = [EnrolledUser(7, "Alice", 0), EnrolledUser(9, "Bob", 14)]
        self.records: List[RawRecord] = [
            _record(1, 7, datetime(2025, 5, 30, 8, 15, tzinfo=timezone.utc)),
            _record(2, 42, datetime(2025, 5, 30, 8, 20, tzinfo=timezone.utc)),
        ]
        self.fail_attendance = 0
        self.fail_users = False
        self.fail_metadata = False
        self.attendance_delay = 0.0
        self.connects = 0
        self.disconnects = 0


class _FakeSession:
    def __init__(self, config: SessionConfig, device: _FakeDevice) -> None:
        self.config = config
        self.device = device
        self.connected = False

    async def connect(self) -> bool:
        await asyncio.sleep(0)
        self.device.connects += 1
        if not self.device.reachable:
            raise ConnectError("connection refused")
        self.connected = True
        return True

    async def disconnect(self) -> None:
        if self.connected:
            self.device.disconnects += 1
        self.connected = False

    def is_healthy(self) -> bool:
        return self.connected

    async def fetch_device_metadata(self) -> Dict[str, Any]:
        if self.device.fail_metadata:
            raise FetchError("metadata read failed")
        return {"serial_number": "A8N5203360017", "firmware": "Ver 6.60"}

    async def fetch_users(self) -> List[EnrolledUser]:
        if self.device.fail_users:
            raise FetchError("user read failed")
        return list(self.device.users)

    async def fetch_attendance(self) -> List[RawRecord]:
        if self.device.attendance_delay:
            await asyncio.sleep(self.device.attendance_delay)
        if self.device.fail_attendance:
            self.device.fail_attendance -= 1
            raise FetchError("recv timed out")
        return list(self.device.records)


class _Factory:
    def __init__(self, device: _FakeDevice) -> None:
        self.device = device
        self.calls = 0

    def __call__(self, config: SessionConfig) -> _FakeSession:
        self.calls += 1
        return _FakeSession(config, self.device)


def _engine(device: _FakeDevice, hub: Optional[DistributionHub] = None, **kwargs: Any) -> ReconciliationEngine:
    config = kwargs.pop("config", None) or SessionConfig(address="10.0.0.5")
    return ReconciliationEngine(
        config,
        hub,
        clock=lambda: NOW,
        session_factory=_Factory(device),
        **kwargs,
    )


class WindowAndEnrichmentTest(unittest.TestCase):
    def test_year_window_is_inclusive_at_lower_bound(self) -> None:
        records = [
            _record(1, 7, datetime(2024, 12, 31, 23, 59, 59, tzinfo=timezone.utc)),
            _record(2, 7, datetime(2025, 1, 1, 0, 0, 0, tzinfo=timezone.utc)),
            _record(3, 7, NOW),
            _record(4, 7, datetime(2025, 6, 1, 12, 0, 1, tzinfo=timezone.utc)),
        ]
        self.assertEqual([r.serial for r in within_year(records, NOW)], [2, 3])

    def test_naive_device_times_use_clock_timezone(self) -> None:
        records = [_record(1, 7, datetime(2025, 1, 1)), _record(2, 7, datetime(2026, 1, 1))]
        self.assertEqual([r.serial for r in within_year(records, NOW)], [1])

    def test_deduplicate_keeps_first_occurrence(self) -> None:
        first = _record(1, 7, NOW)
        records = [first, _record(1, 7, NOW), _record(2, 7, NOW)]
        self.assertEqual(deduplicate(records), [first, records[2]])


class ReconciliationEngineSimulationTest(unittest.IsolatedAsyncioTestCase):
    async def test_first_tick_connects_and_builds_enriched_snapshot(self) -> None:
        device = _FakeDevice()
        hub = DistributionHub()
        await hub.start()
        engine = _engine(device, hub)

        snapshot = await engine.tick()

        self.assertIsNotNone(snapshot)
        self.assertIs(engine.state, DeviceState.ACTIVE)
        self.assertIs(hub.current_snapshot(), snapshot)
        self.assertIs(engine.last_snapshot, snapshot)
        names = {record.employee_id: record.employee_name for record in snapshot.logs}
        self.assertEqual(names, {7: "Alice", 42: "Unknown"})
        self.assertEqual(snapshot.device_details["serial_number"], "A8N5203360017")
        self.assertEqual(len(snapshot.users), 2)
        self.assertEqual(engine.connection.last_success, NOW)

    async def test_active_is_logged_once_across_ticks(self) -> None:
        engine = _engine(_FakeDevice())
        with self.assertLogs("biosync.reconcile", level="INFO") as captured:
            for _ in range(6):
                await engine.tick()
        active_lines = [line for line in captured.output if "became active" in line]
        self.assertEqual(len(active_lines), 1)

    async def test_fetch_failure_degrades_and_forces_reconnect(self) -> None:
        device = _FakeDevice()
        factory = _Factory(device)
        engine = ReconciliationEngine(SessionConfig(address="10.0.0.5"), clock=lambda: NOW, session_factory=factory)

        await engine.tick()
        device.fail_attendance = 1
        with self.assertLogs("biosync.reconcile", level="WARNING") as captured:
            self.assertIsNone(await engine.tick())
        self.assertIs(engine.state, DeviceState.DEGRADED)
        self.assertEqual(device.disconnects, 1)
        self.assertTrue(any("degraded" in line for line in captured.output))
        self.assertEqual(engine.connection.last_failure, "recv timed out")

        self.assertIsNotNone(await engine.tick())
        self.assertIs(engine.state, DeviceState.ACTIVE)
        self.assertEqual(factory.calls, 2)

    async def test_sustained_outage_logs_first_failure_only(self) -> None:
        device = _FakeDevice()
        device.reachable = False
        engine = _engine(device)

        with self.assertLogs("biosync.reconcile", level="WARNING") as captured:
            for _ in range(5):
                self.assertIsNone(await engine.tick())

        self.assertIs(engine.state, DeviceState.OFFLINE)
        self.assertEqual(device.connects, 5)
        self.assertEqual(len(captured.output), 1)
        self.assertIn("Cannot connect", captured.output[0])

    async def test_degraded_then_unreachable_goes_offline(self) -> None:
        device = _FakeDevice()
        engine = _engine(device)
        await engine.tick()
        device.fail_attendance = 1
        await engine.tick()
        device.reachable = False
        await engine.tick()
        self.assertIs(engine.state, DeviceState.OFFLINE)

    async def test_directory_survives_failed_refresh(self) -> None:
        device = _FakeDevice()
        engine = _engine(device)
        first = await engine.tick()

        device.fail_attendance = 1
        await engine.tick()
        device.fail_users = True
        device.fail_metadata = True
        with self.assertLogs("biosync.reconcile", level="WARNING"):
            second = await engine.tick()

        self.assertEqual(engine.lookup_name(7), "Alice")
        self.assertEqual(second.device_details, first.device_details)
        self.assertEqual([r.employee_name for r in second.logs], ["Alice", "Unknown"])

    async def test_users_replaced_wholesale_on_reconnect(self) -> None:
        device = _FakeDevice()
        engine = _engine(device)
        await engine.tick()
        device.users = [EnrolledUser(42, "Carol", 0)]
        device.fail_attendance = 1
        await engine.tick()
        snapshot = await engine.tick()
        self.assertIsNone(engine.lookup_name(7))
        self.assertEqual([r.employee_name for r in snapshot.logs], ["Unknown", "Carol"])

    async def test_concurrent_ticks_are_single_flight(self) -> None:
        device = _FakeDevice()
        device.attendance_delay = 0.05
        engine = _engine(device)

        results = await asyncio.gather(engine.tick(), engine.tick())

        self.assertEqual(sum(result is not None for result in results), 1)
        self.assertEqual(device.connects, 1)

    async def test_unexpected_error_never_escapes_tick(self) -> None:
        def broken_factory(config: SessionConfig) -> Any:
            raise RuntimeError("sdk import exploded")

        engine = ReconciliationEngine(SessionConfig(address="10.0.0.5"), session_factory=broken_factory)
        with self.assertLogs("biosync.reconcile", level="ERROR"):
            self.assertIsNone(await engine.tick())
        self.assertIs(engine.state, DeviceState.DEGRADED)
        self.assertEqual(engine.connection.last_failure, "sdk import exploded")

        # the next tick retries instead of staying wedged
        self.assertIsNone(await engine.tick())

    async def test_run_loop_ticks_until_runtime(self) -> None:
        device = _FakeDevice()
        engine = _engine(device, poll_interval=0.01)
        await engine.run(runtime=0.1)
        self.assertIs(engine.state, DeviceState.ACTIVE)
        self.assertEqual(device.connects, 1)
        self.assertIsNotNone(engine.last_snapshot)

    async def test_state_changes_recorded_in_metrics(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            log_path = Path(tmp, "metrics.csv")
            metrics = MetricsLogger(log_path, static_extra={"address": "10.0.0.5"})
            device = _FakeDevice()
            engine = _engine(device, config=SessionConfig(address="10.0.0.5", metrics=metrics))

            await engine.tick()
            device.fail_attendance = 1
            await engine.tick()

            with log_path.open("r", encoding="utf-8", newline="") as handle:
                rows = list(csv.DictReader(handle))

        changes = [row["status"] for row in rows if row["event"] == "state_change"]
        self.assertEqual(changes, ["active", "degraded"])
        self.assertTrue(any(row["event"] == "snapshot" for row in rows))


if __name__ == "__main__":
    unittest.main()
