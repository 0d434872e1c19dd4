from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ._fields import as_int, parse_record_time, pick

UNKNOWN_EMPLOYEE = "Unknown"


@dataclass(frozen=True, slots=True)
class RawRecord:
    """An attendance row as read from the terminal, before enrichment."""

    serial: Optional[int]
    user_id: int
    record_time: datetime
    type: int = 0
    state: int = 0

    @classmethod
    def from_raw(cls, raw: Any) -> "RawRecord":
        """Accept pyzk ``Attendance`` objects and zkteco-js style mappings.

        pyzk exposes ``uid/user_id/timestamp/punch/status``; the JS SDK shape
        uses ``sn/user_id/record_time/type/state``.
        """
        user_id = pick(raw, "user_id", "userId")
        if user_id is None:
            raise ValueError("attendance record has no user id")
        serial = pick(raw, "sn", "uid")
        return cls(
            serial=as_int(serial) if serial is not None else None,
            user_id=as_int(user_id),
            record_time=parse_record_time(pick(raw, "record_time", "timestamp")),
            type=as_int(pick(raw, "type", "punch", default=0)),
            state=as_int(pick(raw, "state", "status", default=0)),
        )


@dataclass(frozen=True, slots=True)
class AttendanceRecord:
    """Canonical, enriched attendance event."""

    serial: Optional[int]
    employee_id: int
    employee_name: str
    record_time: datetime
    type: int = 0
    state: int = 0
    source_device_serial: Optional[str] = None

    @classmethod
    def enrich(cls, raw: RawRecord, name: Optional[str]) -> "AttendanceRecord":
        return cls(
            serial=raw.serial,
            employee_id=raw.user_id,
            employee_name=name or UNKNOWN_EMPLOYEE,
            record_time=raw.record_time,
            type=raw.type,
            state=raw.state,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sn": self.serial,
            "employee_id": self.employee_id,
            "name": self.employee_name,
            "record_time": self.record_time.isoformat(),
            "type": self.type,
            "state": self.state,
            "device_sn": self.source_device_serial,
        }
