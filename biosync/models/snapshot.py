from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .attendance_record import AttendanceRecord
from .enrolled_user import EnrolledUser


def _plain(value: Any) -> Any:
    """Coerce device metadata into msgpack/JSON friendly values."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Latest consistent view of device metadata, users and filtered logs."""

    produced_at: datetime
    device_details: Optional[Dict[str, Any]] = None
    users: Tuple[EnrolledUser, ...] = field(default_factory=tuple)
    logs: Tuple[AttendanceRecord, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": int(self.produced_at.timestamp() * 1000),
            "device_details": _plain(self.device_details) if self.device_details is not None else None,
            "users": [user.to_dict() for user in self.users],
            "logs": [record.to_dict() for record in self.logs],
        }
