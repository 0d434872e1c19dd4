"""Device-initiated push callbacks (iclock register / cdata / getrequest)."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from biosync.errors import ParseError
from biosync.hub import PUSH_KIND, DistributionHub
from biosync.models import UNKNOWN_EMPLOYEE, AttendanceRecord
from biosync.models._fields import as_int, parse_record_time

logger = logging.getLogger(__name__)

ATTLOG_MARKER = "ATTLOG"
UNKNOWN_SERIAL = "unknown"

NameLookup = Callable[[int], Optional[str]]

_LINE_SPLIT = re.compile(r"\r?\n")
_TOKEN_SPLIT = re.compile(r"[,\t]")


def parse_attlog_line(line: str, device_serial: str, name_lookup: Optional[NameLookup] = None) -> AttendanceRecord:
    """Tokenize ``ATTLOG,<user id>,<time>[,<state>[,<type>]]``."""
    tokens = [token.strip() for token in _TOKEN_SPLIT.split(line)]
    if len(tokens) < 3:
        raise ParseError(f"expected at least 3 fields, got {len(tokens)}")
    try:
        user_id = as_int(tokens[1], default=-1)
        record_time = parse_record_time(tokens[2])
        state = as_int(tokens[3]) if len(tokens) > 3 else 0
        punch = as_int(tokens[4]) if len(tokens) > 4 else 0
    except ValueError as exc:
        raise ParseError(str(exc)) from exc
    if user_id < 0:
        raise ParseError("missing user id")

    name = name_lookup(user_id) if name_lookup else None
    return AttendanceRecord(
        serial=None,
        employee_id=user_id,
        employee_name=name or UNKNOWN_EMPLOYEE,
        record_time=record_time,
        type=punch,
        state=state,
        source_device_serial=device_serial,
    )


def parse_attlog(
    raw: str,
    device_serial: str = UNKNOWN_SERIAL,
    name_lookup: Optional[NameLookup] = None,
) -> List[AttendanceRecord]:
    """Extract ATTLOG records from a pushed body; other lines are ignored."""
    records: List[AttendanceRecord] = []
    for line in _LINE_SPLIT.split(raw.strip()):
        if not line.startswith(ATTLOG_MARKER):
            continue
        try:
            records.append(parse_attlog_line(line, device_serial, name_lookup))
        except ParseError as exc:
            logger.debug("Dropping ATTLOG line from %s: %s", device_serial, exc)
    return records


class CommandStore:
    """Pending command per device serial, handed out on the next poll."""

    def __init__(self) -> None:
        self._commands: Dict[str, str] = {}

    def get(self, serial: str) -> str:
        return self._commands.get(serial, "")

    def set(self, serial: str, command: str) -> None:
        self._commands[serial] = command

    def clear(self, serial: str) -> None:
        self._commands.pop(serial, None)


class PushIngress:
    """Forwards pushed attendance straight to the hub.

    Pushed records never touch the reconciliation engine's snapshot; they go
    out as their own ``push`` frames on the shared channel.
    """

    def __init__(
        self,
        hub: DistributionHub,
        commands: Optional[CommandStore] = None,
        *,
        name_lookup: Optional[NameLookup] = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.hub = hub
        self.commands = commands or CommandStore()
        self._name_lookup = name_lookup
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def register(self, serial: str) -> str:
        logger.info("Device register/heartbeat from SN=%s", serial)
        return "OK"

    async def push_data(self, serial: str, body: str) -> str:
        serial = serial or UNKNOWN_SERIAL
        records = parse_attlog(body, serial, self._name_lookup)
        logger.info("cdata from SN=%s (%d chars, %d records)", serial, len(body), len(records))
        if not records:
            return "OK"
        payload = {
            "timestamp": int(self._clock().timestamp() * 1000),
            "source": PUSH_KIND,
            "device_sn": serial,
            "logs": [record.to_dict() for record in records],
        }
        try:
            await self.hub.publish(PUSH_KIND, payload)
        except Exception:
            logger.exception("Publishing pushed records from SN=%s failed", serial)
        return "OK"

    def pending_command(self, serial: str) -> str:
        return self.commands.get(serial)


__all__ = [
    "ATTLOG_MARKER",
    "CommandStore",
    "PushIngress",
    "parse_attlog",
    "parse_attlog_line",
]
