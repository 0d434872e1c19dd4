"""Snapshot store and pub/sub fan-out to live subscribers.

Frames travel over a Redis channel so several bridge processes can share one
stream. When Redis cannot be reached the hub falls back to :class:`LocalBus`,
which only reaches subscribers living in the same process.
"""
from __future__ import annotations

import asyncio
import contextlib
import functools
import itertools
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol

import msgpack
import redis.asyncio as aioredis

from biosync.errors import DistributionError
from biosync.models import Snapshot

logger = logging.getLogger(__name__)

CLIENT_EVENT = "attendance"
SNAPSHOT_KIND = "snapshot"
PUSH_KIND = "push"

FrameHandler = Callable[[bytes], None]
LostHandler = Callable[[Exception], None]


@dataclass(frozen=True, slots=True)
class Frame:
    """One published message. ``seq`` is monotonic per ``origin`` hub."""

    origin: str
    seq: int
    kind: str
    data: Dict[str, Any]

    def encode(self) -> bytes:
        return msgpack.packb(
            {"origin": self.origin, "seq": self.seq, "kind": self.kind, "data": self.data},
            use_bin_type=True,
        )

    @classmethod
    def decode(cls, raw: bytes) -> "Frame":
        body = msgpack.unpackb(raw, raw=False)
        return cls(origin=body["origin"], seq=int(body["seq"]), kind=body["kind"], data=body["data"])

    def encode_for_client(self) -> bytes:
        return msgpack.packb({"event": CLIENT_EVENT, "kind": self.kind, "data": self.data}, use_bin_type=True)


class Bus(Protocol):
    kind: str

    async def start(self, handler: FrameHandler, on_lost: Optional[LostHandler] = None) -> None: ...

    async def publish(self, data: bytes) -> None: ...

    async def close(self) -> None: ...


class LocalBus:
    """In-process substitute for Redis: delivers synchronously, in order."""

    kind = "local"

    def __init__(self) -> None:
        self._handler: Optional[FrameHandler] = None

    async def start(self, handler: FrameHandler, on_lost: Optional[LostHandler] = None) -> None:
        self._handler = handler

    async def publish(self, data: bytes) -> None:
        if self._handler is not None:
            self._handler(data)

    async def close(self) -> None:
        self._handler = None


class RedisBus:
    """Redis pub/sub channel with a background listener task."""

    kind = "redis"

    def __init__(self, client: aioredis.Redis, channel: str) -> None:
        self._client = client
        self.channel = channel
        self._pubsub: Any = None
        self._listener: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        *,
        host: str,
        port: int,
        channel: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 5.0,
    ) -> "RedisBus":
        client = aioredis.Redis(
            host=host,
            port=port,
            username=username or None,
            password=password or None,
            socket_connect_timeout=timeout,
        )
        return cls(client, channel)

    async def start(self, handler: FrameHandler, on_lost: Optional[LostHandler] = None) -> None:
        try:
            await self._client.ping()
            self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
            await self._pubsub.subscribe(self.channel)
        except Exception as exc:
            await self.close()
            raise DistributionError(f"redis unavailable: {exc}") from exc
        self._listener = asyncio.create_task(self._listen(handler, on_lost), name="biosync-redis-listener")

    async def publish(self, data: bytes) -> None:
        if self._listener is not None and self._listener.done():
            raise DistributionError(f"redis listener on {self.channel} is gone")
        try:
            await self._client.publish(self.channel, data)
        except Exception as exc:
            raise DistributionError(f"redis publish failed: {exc}") from exc

    async def close(self) -> None:
        listener, self._listener = self._listener, None
        if listener is not None and listener is not asyncio.current_task():
            listener.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await listener
        if self._pubsub is not None:
            with contextlib.suppress(Exception):
                await self._pubsub.aclose()
            self._pubsub = None
        with contextlib.suppress(Exception):
            await self._client.aclose()

    async def _listen(self, handler: FrameHandler, on_lost: Optional[LostHandler]) -> None:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    handler(message["data"])
                except Exception:
                    logger.exception("Dropping undeliverable frame from %s", self.channel)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Redis listener on %s stopped: %s", self.channel, exc)
            if on_lost is not None:
                on_lost(DistributionError(f"redis subscription lost: {exc}"))


class Subscription:
    """A live-stream registration. Release it with ``async with`` or :meth:`close`."""

    def __init__(self, hub: "DistributionHub", *, maxsize: int, primed: Optional[Frame]) -> None:
        self._hub = hub
        self._queue: asyncio.Queue[Frame] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._last_seq: Dict[str, int] = {}
        self.dropped = 0
        if primed is not None:
            self._queue.put_nowait(primed)
            self._last_seq[primed.origin] = primed.seq

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, frame: Frame) -> None:
        """Enqueue without blocking; the oldest frame gives way when full."""
        if self._closed:
            return
        if frame.seq <= self._last_seq.get(frame.origin, 0):
            return
        self._last_seq[frame.origin] = frame.seq
        while self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            logger.debug("Subscriber queue full; dropped oldest frame")
        self._queue.put_nowait(frame)

    async def get(self) -> Frame:
        return await self._queue.get()

    def get_nowait(self) -> Frame:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._hub.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[Frame]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Frame]:
        while not self._closed:
            yield await self._queue.get()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class DistributionHub:
    """Owns the current snapshot and fans frames out to subscribers."""

    def __init__(
        self,
        bus_factory: Optional[Callable[[], Bus]] = None,
        *,
        queue_size: int = 32,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._bus_factory = bus_factory
        self._bus: Bus = LocalBus()
        self._queue_size = max(1, queue_size)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.origin = uuid.uuid4().hex
        self._seq = itertools.count(1)
        # held from seq assignment until the bus accepted the frame
        self._send_lock = asyncio.Lock()
        self._subscribers: List[Subscription] = []
        self._snapshot: Optional[Snapshot] = None
        self._snapshot_frame: Optional[Frame] = None
        self._fallback_task: Optional[asyncio.Task] = None
        self._started = False

    @property
    def bus_kind(self) -> str:
        return self._bus.kind

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self._bus_factory is not None:
            bus = self._bus_factory()
            try:
                await bus.start(self._dispatch_raw, functools.partial(self._bus_lost, bus))
            except Exception as exc:
                logger.warning("Pub/sub medium unavailable (%s); using in-process bus", exc)
            else:
                self._bus = bus
                logger.info("Connected to %s pub/sub", bus.kind)
                return
        await self._bus.start(self._dispatch_raw)

    async def close(self) -> None:
        if self._fallback_task is not None:
            self._fallback_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._fallback_task
            self._fallback_task = None
        for subscription in list(self._subscribers):
            subscription.close()
        await self._bus.close()
        self._started = False

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    def current_snapshot(self) -> Optional[Snapshot]:
        return self._snapshot

    async def publish_snapshot(self, snapshot: Snapshot) -> None:
        async with self._send_lock:
            frame = self._frame(SNAPSHOT_KIND, snapshot.to_dict())
            self._snapshot, self._snapshot_frame = snapshot, frame
            await self._send(frame)

    async def publish(self, kind: str, payload: Dict[str, Any]) -> None:
        async with self._send_lock:
            await self._send(self._frame(kind, payload))

    def _frame(self, kind: str, data: Dict[str, Any]) -> Frame:
        return Frame(origin=self.origin, seq=next(self._seq), kind=kind, data=data)

    async def _send(self, frame: Frame) -> None:
        data = frame.encode()
        try:
            await self._bus.publish(data)
        except DistributionError as exc:
            await self._fall_back(self._bus, exc)
            await self._bus.publish(data)

    async def _fall_back(self, failed: Bus, reason: Exception) -> None:
        if self._bus is not failed:
            return
        logger.warning("%s pub/sub failed (%s); switching to in-process bus", failed.kind, reason)
        self._bus = LocalBus()
        await self._bus.start(self._dispatch_raw)
        with contextlib.suppress(Exception):
            await failed.close()

    def _bus_lost(self, failed: Bus, reason: Exception) -> None:
        """Called by a bus whose subscription died outside of a publish."""
        self._fallback_task = asyncio.create_task(self._recover(failed, reason), name="biosync-bus-fallback")

    async def _recover(self, failed: Bus, reason: Exception) -> None:
        async with self._send_lock:
            await self._fall_back(failed, reason)

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------
    def subscribe(self) -> Subscription:
        subscription = Subscription(self, maxsize=self._queue_size, primed=self._snapshot_frame)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove(subscription)
        if not subscription.closed:
            subscription.close()

    def _dispatch_raw(self, raw: bytes) -> None:
        try:
            frame = Frame.decode(raw)
        except Exception:
            logger.warning("Discarding undecodable frame (%d bytes)", len(raw))
            return
        self.dispatch(frame)

    def dispatch(self, frame: Frame) -> None:
        for subscription in list(self._subscribers):
            subscription.offer(frame)


async def send_frames(subscription: Subscription, send: Callable[[bytes], Awaitable[None]]) -> None:
    """Forward every frame of ``subscription`` to ``send`` until it closes."""
    async for frame in subscription:
        await send(frame.encode_for_client())


__all__ = [
    "CLIENT_EVENT",
    "PUSH_KIND",
    "SNAPSHOT_KIND",
    "DistributionHub",
    "Frame",
    "LocalBus",
    "RedisBus",
    "Subscription",
    "send_frames",
]
