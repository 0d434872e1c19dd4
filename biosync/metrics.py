"""CSV recorder for device operations and link state changes."""
from __future__ import annotations

import csv
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

COLUMNS: Sequence[str] = ("timestamp", "event", "status", "duration_ms", "message", "extra")


class MetricsLogger:
    """Append-only CSV log, one flushed line per device call or state change.

    ``static_extra`` (typically the device address and port) is merged into
    the ``extra`` JSON column of every line.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        static_extra: Mapping[str, Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path)
        self.static_extra: Dict[str, Any] = dict(static_extra or {})
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists() or self.path.stat().st_size == 0:
            with self.path.open("w", newline="", encoding="utf-8") as handle:
                csv.writer(handle).writerow(COLUMNS)

    def log(
        self,
        event: str,
        *,
        status: Optional[str] = None,
        duration_ms: Optional[float] = None,
        message: Optional[str] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        stamp = self._clock()
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        merged = {**self.static_extra, **(extra or {})}
        line = [
            stamp.astimezone(timezone.utc).isoformat(timespec="milliseconds"),
            event,
            status or "",
            "" if duration_ms is None else f"{duration_ms:.1f}",
            message or "",
            json.dumps(merged, sort_keys=True, default=str) if merged else "",
        ]
        # connector calls arrive from worker threads
        with self._lock, self.path.open("a", newline="", encoding="utf-8") as handle:
            csv.writer(handle).writerow(line)
            handle.flush()


__all__ = ["COLUMNS", "MetricsLogger"]
