"""CLI helpers that do not need a device."""
from __future__ import annotations

import unittest
from datetime import datetime, timezone

from biosync.cli import _build_parser, _snapshot_rows
from biosync.models import AttendanceRecord, Snapshot


def _snapshot(count: int) -> Snapshot:
    logs = tuple(
        AttendanceRecord(
            serial=index,
            employee_id=7,
            employee_name="Alice",
            record_time=datetime(2025, 5, 30, 8, index, tzinfo=timezone.utc),
        )
        for index in range(1, count + 1)
    )
    return Snapshot(produced_at=datetime(2025, 6, 1, tzinfo=timezone.utc), logs=logs)


class SnapshotTableTest(unittest.TestCase):
    def test_limit_keeps_newest_rows(self) -> None:
        rows = _snapshot_rows(_snapshot(5), 2)
        self.assertEqual([row[0] for row in rows], [4, 5])
        self.assertEqual(rows[0][3], "2025-05-30T08:04:00+00:00")

    def test_limit_larger_than_log(self) -> None:
        self.assertEqual(len(_snapshot_rows(_snapshot(3), 50)), 3)

    def test_zero_or_negative_limit_shows_nothing(self) -> None:
        self.assertEqual(_snapshot_rows(_snapshot(3), 0), [])
        self.assertEqual(_snapshot_rows(_snapshot(3), -1), [])

    def test_parser_accepts_zero_limit(self) -> None:
        args = _build_parser().parse_args(["snapshot", "--limit", "0"])
        self.assertEqual(args.limit, 0)
        self.assertFalse(args.json)


if __name__ == "__main__":
    unittest.main()
