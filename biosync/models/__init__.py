"""Data model for the attendance bridge."""
from .attendance_record import UNKNOWN_EMPLOYEE, AttendanceRecord, RawRecord
from .device_connection import DeviceConnection, DeviceState
from .enrolled_user import EnrolledUser
from .snapshot import Snapshot

__all__ = [
    "AttendanceRecord",
    "DeviceConnection",
    "DeviceState",
    "EnrolledUser",
    "RawRecord",
    "Snapshot",
    "UNKNOWN_EMPLOYEE",
]
