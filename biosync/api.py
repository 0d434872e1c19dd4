"""HTTP/WebSocket surface: snapshot, live stream and device push routes."""
from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from fastapi import APIRouter, FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from biosync import __version__
from biosync.config import BridgeConfig
from biosync.connector import SessionConfig
from biosync.hub import DistributionHub, RedisBus, send_frames
from biosync.ingress import UNKNOWN_SERIAL, PushIngress
from biosync.metrics import MetricsLogger
from biosync.reconcile import ReconciliationEngine

logger = logging.getLogger(__name__)


@dataclass
class BridgeContext:
    """Everything one bridge process owns, started and stopped together."""

    engine: ReconciliationEngine
    hub: DistributionHub
    ingress: PushIngress
    task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        await self.hub.start()
        self.task = asyncio.create_task(self.engine.run(), name="biosync-reconcile")
        self.task.add_done_callback(_report_task_exit)

    async def stop(self) -> None:
        self.engine.request_stop()
        if self.task is not None:
            self.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.task
            self.task = None
        await self.engine.close()
        await self.hub.close()


def _report_task_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Reconciliation loop exited", exc_info=exc)


def session_config(config: BridgeConfig) -> SessionConfig:
    device = config.device
    metrics = None
    if config.metrics_log:
        metrics = MetricsLogger(config.metrics_log, static_extra={"address": device.ip, "port": device.port})
    return SessionConfig(
        address=device.ip,
        port=device.port,
        send_timeout=device.send_timeout_ms / 1000.0,
        recv_timeout=device.recv_timeout_ms / 1000.0,
        password=device.password,
        ping_before_connect=device.ping_before_connect,
        metrics=metrics,
    )


def build_context(config: BridgeConfig) -> BridgeContext:
    bus_factory = None
    if config.redis.enabled:
        bus_factory = functools.partial(
            RedisBus.from_settings,
            host=config.redis.host,
            port=config.redis.port,
            channel=config.redis.channel,
            username=config.redis.username,
            password=config.redis.password,
        )

    hub = DistributionHub(bus_factory, queue_size=config.subscriber_queue)
    engine = ReconciliationEngine(
        session_config(config),
        hub,
        poll_interval=config.poll_interval,
        year_window=config.year_window,
    )
    ingress = PushIngress(hub, engine.commands, name_lookup=engine.lookup_name)
    return BridgeContext(engine=engine, hub=hub, ingress=ingress)


router = APIRouter()


def _bridge(request: Request) -> BridgeContext:
    return request.app.state.bridge


def _serial(request: Request) -> str:
    params = request.query_params
    return params.get("SN") or params.get("sn") or UNKNOWN_SERIAL


@router.get("/health")
async def health():
    return {"status": "ok", "time": time.time()}


@router.get("/api/v1/bio-sync")
async def bio_sync(request: Request):
    snapshot = _bridge(request).hub.current_snapshot()
    if snapshot is None:
        return Response(status_code=204)
    return JSONResponse(snapshot.to_dict())


@router.get("/api/v1/status")
async def status(request: Request):
    bridge = _bridge(request)
    snapshot = bridge.hub.current_snapshot()
    return {
        "device": bridge.engine.connection.to_dict(),
        "users": len(bridge.engine.users),
        "logs": len(snapshot.logs) if snapshot else 0,
        "subscribers": bridge.hub.subscriber_count,
        "bus": bridge.hub.bus_kind,
    }


@router.put("/api/v1/devices/{sn}/command")
async def set_command(sn: str, request: Request):
    command = (await request.body()).decode("utf-8", errors="replace").strip()
    _bridge(request).engine.commands.set(sn, command)
    return {"sn": sn, "command": command}


@router.delete("/api/v1/devices/{sn}/command")
async def clear_command(sn: str, request: Request):
    _bridge(request).engine.commands.clear(sn)
    return {"sn": sn, "command": ""}


@router.get("/iclock/register", response_class=PlainTextResponse)
async def register_device(request: Request):
    return _bridge(request).ingress.register(_serial(request))


@router.get("/iclock/getrequest", response_class=PlainTextResponse)
async def get_request(request: Request):
    serial = _serial(request)
    info = request.query_params.get("INFO") or request.query_params.get("info") or ""
    logger.debug("Device getrequest SN=%s INFO=%s", serial, info)
    return _bridge(request).ingress.pending_command(serial)


@router.post("/iclock/cdata", response_class=PlainTextResponse)
async def post_cdata(request: Request):
    body = (await request.body()).decode("utf-8", errors="replace")
    return await _bridge(request).ingress.push_data(_serial(request), body)


@router.get("/iclock/cdata", response_class=PlainTextResponse)
async def get_cdata():
    return PlainTextResponse("Send attendance data with POST (Content-Type: text/plain)", status_code=405)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws/attendance")
async def attendance_stream(websocket: WebSocket):
    bridge: BridgeContext = websocket.app.state.bridge
    await websocket.accept()
    async with bridge.hub.subscribe() as subscription:
        sender = asyncio.create_task(send_frames(subscription, websocket.send_bytes))
        receiver = asyncio.create_task(_wait_for_disconnect(websocket))
        done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.debug("Live stream closed: %s", task.exception())


def create_app(config: Optional[BridgeConfig] = None, context: Optional[BridgeContext] = None) -> FastAPI:
    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        bridge = context or build_context(config or BridgeConfig.from_env())
        app.state.bridge = bridge
        await bridge.start()
        try:
            yield
        finally:
            await bridge.stop()

    application = FastAPI(title="biosync", version=__version__, lifespan=lifespan)
    application.include_router(router)
    return application


app = create_app()


__all__ = ["BridgeContext", "app", "build_context", "create_app", "router", "session_config"]
