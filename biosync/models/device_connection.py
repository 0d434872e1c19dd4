from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


class DeviceState(enum.Enum):
    """Connectivity of the single terminal an engine talks to."""

    OFFLINE = "offline"
    CONNECTING = "connecting"
    ACTIVE = "active"
    DEGRADED = "degraded"


@dataclass
class DeviceConnection:
    """Mutable link status; only the reconciliation tick writes to it."""

    address: str
    port: int
    send_timeout: float
    recv_timeout: float
    state: DeviceState = DeviceState.OFFLINE
    last_success: Optional[datetime] = None
    last_failure: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "port": self.port,
            "state": self.state.value,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_failure": self.last_failure,
        }
