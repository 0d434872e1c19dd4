"""Pull-side reconciliation of one attendance terminal.

Each tick walks the connectivity state machine::

    OFFLINE -> CONNECTING -> ACTIVE <-> DEGRADED -> OFFLINE

and, while ACTIVE, turns the device's attendance log into a :class:`Snapshot`
that is handed to the :class:`~biosync.hub.DistributionHub`.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from time import monotonic
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from biosync.connector import DeviceSession, SessionConfig
from biosync.hub import DistributionHub
from biosync.ingress import CommandStore
from biosync.metrics import MetricsLogger
from biosync.models import (
    AttendanceRecord,
    DeviceConnection,
    DeviceState,
    EnrolledUser,
    RawRecord,
    Snapshot,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _local_now() -> datetime:
    return datetime.now().astimezone()


def start_of_year(now: datetime) -> datetime:
    return now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)


def _aligned(value: datetime, reference: datetime) -> datetime:
    """Read naive device times in the reference clock's timezone."""
    if value.tzinfo is None and reference.tzinfo is not None:
        return value.replace(tzinfo=reference.tzinfo)
    if value.tzinfo is not None and reference.tzinfo is None:
        return value.astimezone().replace(tzinfo=None)
    return value


def within_year(records: Iterable[RawRecord], now: datetime) -> List[RawRecord]:
    """Keep records in the inclusive window [Jan 1 00:00 of ``now``'s year, ``now``]."""
    lower = start_of_year(now)
    return [record for record in records if lower <= _aligned(record.record_time, now) <= now]


def deduplicate(records: Iterable[RawRecord]) -> List[RawRecord]:
    seen = set()
    unique: List[RawRecord] = []
    for record in records:
        key = (record.serial, record.user_id, record.record_time)
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique


def enrich(records: Iterable[RawRecord], directory: Mapping[int, EnrolledUser]) -> List[AttendanceRecord]:
    enriched = []
    for record in records:
        user = directory.get(record.user_id)
        enriched.append(AttendanceRecord.enrich(record, user.name if user else None))
    return enriched


class ReconciliationEngine:
    """Owns the device link, the user directory and the last good snapshot."""

    def __init__(
        self,
        config: SessionConfig,
        hub: Optional[DistributionHub] = None,
        *,
        poll_interval: float = 60.0,
        year_window: bool = True,
        clock: Optional[Clock] = None,
        session_factory: Optional[Callable[[SessionConfig], DeviceSession]] = None,
        commands: Optional[CommandStore] = None,
    ) -> None:
        self.config = config
        self.hub = hub
        self.poll_interval = max(0.01, poll_interval)
        self.year_window = year_window
        self.commands = commands or CommandStore()
        self.metrics: Optional[MetricsLogger] = config.metrics
        self.connection = DeviceConnection(
            address=config.address,
            port=config.port,
            send_timeout=config.send_timeout,
            recv_timeout=config.recv_timeout,
        )

        self._clock: Clock = clock or _local_now
        self._session_factory = session_factory or DeviceSession
        self._session: Optional[DeviceSession] = None
        self._users: Dict[int, EnrolledUser] = {}
        self._device_details: Optional[Dict[str, Any]] = None
        self._last_snapshot: Optional[Snapshot] = None
        self._reported = DeviceState.OFFLINE
        self._connect_failures = 0
        self._tick_lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def state(self) -> DeviceState:
        return self.connection.state

    @property
    def last_snapshot(self) -> Optional[Snapshot]:
        return self._last_snapshot

    @property
    def users(self) -> List[EnrolledUser]:
        return list(self._users.values())

    def lookup_name(self, user_id: int) -> Optional[str]:
        user = self._users.get(user_id)
        return user.name if user else None

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    async def run(self, runtime: Optional[float] = None) -> None:
        """Tick every ``poll_interval`` seconds until stopped.

        A tick that overruns the interval delays the next one; ticks never
        overlap.
        """
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        deadline = monotonic() + runtime if runtime else None
        try:
            while not stop_event.is_set():
                started = monotonic()
                await self.tick()
                if deadline and monotonic() >= deadline:
                    break
                wait = max(0.0, self.poll_interval - (monotonic() - started))
                if deadline:
                    wait = min(wait, max(0.0, deadline - monotonic()))
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass
        finally:
            stop_event.set()

    def request_stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()

    async def close(self) -> None:
        self.request_stop()
        await self._drop_session()
        self.connection.state = DeviceState.OFFLINE
        self._reported = DeviceState.OFFLINE

    async def tick(self) -> Optional[Snapshot]:
        """Run one reconciliation cycle; never raises.

        Returns the new snapshot, or ``None`` when the cycle produced nothing
        or another tick was already in flight.
        """
        if self._tick_lock.locked():
            logger.debug("Tick skipped; previous tick still running")
            return None
        async with self._tick_lock:
            try:
                return await self._reconcile()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Reconciliation tick failed")
                await self._degrade(exc)
                return None

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    async def _reconcile(self) -> Optional[Snapshot]:
        if self.state is not DeviceState.ACTIVE or self._session is None or not self._session.is_healthy():
            if self.state is DeviceState.ACTIVE:
                await self._degrade("session dropped")
            if not await self._establish():
                return None

        session = self._session
        if session is None:  # pragma: no cover - _establish guarantees a session
            raise RuntimeError("reconcile reached fetch without a session")
        try:
            raw_records = await session.fetch_attendance()
        except Exception as exc:
            await self._degrade(exc)
            return None

        snapshot = self._build_snapshot(raw_records)
        self._last_snapshot = snapshot
        self.connection.last_success = snapshot.produced_at
        self._transition(DeviceState.ACTIVE)

        if self.hub is not None:
            try:
                await self.hub.publish_snapshot(snapshot)
            except Exception:
                logger.exception("Handing snapshot to the distribution hub failed")
        self._metrics_log("snapshot", status="ok", extra={"logs": len(snapshot.logs), "users": len(snapshot.users)})
        return snapshot

    async def _establish(self) -> bool:
        await self._drop_session()
        self._transition(DeviceState.CONNECTING)
        session = self._session_factory(self.config)
        try:
            await session.connect()
        except Exception as exc:
            self._connect_failed(exc)
            return False

        self._session = session
        if self._connect_failures:
            logger.info("Reconnected to %s after %d failed attempts", self._endpoint, self._connect_failures)
        self._connect_failures = 0
        await self._refresh_directory(session)
        self._transition(DeviceState.ACTIVE)
        return True

    async def _refresh_directory(self, session: DeviceSession) -> None:
        try:
            self._device_details = await session.fetch_device_metadata()
        except Exception as exc:
            logger.warning("Device metadata fetch failed; keeping cached copy: %s", exc)
        try:
            users = await session.fetch_users()
        except Exception as exc:
            logger.warning("User fetch failed; keeping cached directory: %s", exc)
        else:
            self._users = {user.user_id: user for user in users}

    def _connect_failed(self, exc: BaseException) -> None:
        self._connect_failures += 1
        self.connection.last_failure = str(exc) or type(exc).__name__
        if self._connect_failures == 1:
            logger.warning("Cannot connect to %s: %s; retrying every %.0fs", self._endpoint, exc, self.poll_interval)
        else:
            logger.debug("Connect attempt %d to %s failed: %s", self._connect_failures, self._endpoint, exc)
        self._transition(DeviceState.OFFLINE)

    async def _degrade(self, reason: Any) -> None:
        self.connection.last_failure = str(reason) or type(reason).__name__
        self._transition(DeviceState.DEGRADED, reason)
        await self._drop_session()

    async def _drop_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.disconnect()

    def _transition(self, new: DeviceState, reason: Any = None) -> None:
        old = self.connection.state
        self.connection.state = new
        if new is DeviceState.CONNECTING:
            if old is not new:
                logger.debug("Device %s: %s -> connecting", self._endpoint, old.value)
            return
        if new is self._reported:
            return
        previous, self._reported = self._reported, new
        if new is DeviceState.ACTIVE:
            logger.info("Device %s became active", self._endpoint)
        elif new is DeviceState.DEGRADED:
            logger.warning("Device %s degraded: %s", self._endpoint, reason)
        else:
            logger.warning("Device %s went offline", self._endpoint)
        self._metrics_log(
            "state_change",
            status=new.value,
            message=str(reason) if reason is not None else None,
            extra={"previous": previous.value},
        )

    # ------------------------------------------------------------------
    # Snapshot construction
    # ------------------------------------------------------------------
    def _build_snapshot(self, raw_records: Iterable[RawRecord]) -> Snapshot:
        now = self._clock()
        records = list(raw_records)
        if self.year_window:
            records = within_year(records, now)
        logs = enrich(deduplicate(records), self._users)
        return Snapshot(
            produced_at=now,
            device_details=dict(self._device_details) if self._device_details is not None else None,
            users=tuple(self._users.values()),
            logs=tuple(logs),
        )

    @property
    def _endpoint(self) -> str:
        return f"{self.config.address}:{self.config.port}"

    def _metrics_log(self, event: str, **kwargs: Any) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.log(event, **kwargs)
        except Exception:  # pragma: no cover - metrics must not break a tick
            logger.debug("Metrics logging failed for %s", event, exc_info=True)


__all__ = [
    "ReconciliationEngine",
    "deduplicate",
    "enrich",
    "start_of_year",
    "within_year",
]
