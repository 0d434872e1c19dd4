"""Device capability client built on top of pyzk."""
from __future__ import annotations

import asyncio
import enum
import logging
import math
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from zk import ZK

from biosync.errors import ConnectError, DeviceTimeoutError, FetchError
from biosync.metrics import MetricsLogger
from biosync.models import EnrolledUser, RawRecord

logger = logging.getLogger(__name__)

SdkFactory = Callable[["SessionConfig"], Any]

# (metadata key, pyzk getter) pairs; getters the SDK does not expose are skipped
METADATA_GETTERS: Tuple[Tuple[str, str], ...] = (
	("firmware", "get_firmware_version"),
	("serial_number", "get_serialnumber"),
	("platform", "get_platform"),
	("device_name", "get_device_name"),
	("mac_address", "get_mac"),
	("current_time", "get_time"),
	("pin_width", "get_pin_width"),
	("face_version", "get_face_version"),
	("fp_version", "get_fp_version"),
)


class ResponseShape(enum.Enum):
	"""The three container shapes a device list call may come back in."""

	LIST = "list"
	WRAPPED = "wrapped"
	MAPPING = "mapping"


def classify_response(raw: Any) -> ResponseShape:
	if raw is None or isinstance(raw, (list, tuple)):
		return ResponseShape.LIST
	if isinstance(raw, Mapping):
		if isinstance(raw.get("data"), (list, tuple)):
			return ResponseShape.WRAPPED
		return ResponseShape.MAPPING
	raise FetchError(f"unsupported device response type: {type(raw).__name__}")


def normalize_response(raw: Any) -> List[Any]:
	"""Flatten a bare list, a ``{"data": [...]}`` wrapper or a keyed mapping."""
	shape = classify_response(raw)
	if shape is ResponseShape.LIST:
		return list(raw or ())
	if shape is ResponseShape.WRAPPED:
		return list(raw["data"])
	return list(raw.values())


@dataclass(slots=True)
class SessionConfig:
	"""Configuration bundle for :class:`DeviceSession`."""

	address: str
	port: int = 4370
	send_timeout: float = 20.0
	recv_timeout: float = 20.0
	password: int = 0
	ping_before_connect: bool = False
	metrics: Optional[MetricsLogger] = None

	@property
	def budget(self) -> float:
		"""Upper bound for one round trip: send plus receive budget."""
		return self.send_timeout + self.recv_timeout


def _describe(exc: BaseException) -> str:
	return str(exc) or type(exc).__name__


def _zk_factory(config: SessionConfig) -> Any:
	return ZK(
		config.address,
		port=config.port,
		timeout=max(1, math.ceil(config.recv_timeout)),
		password=config.password,
		ommit_ping=not config.ping_before_connect,
	)


class DeviceSession:
	"""One outbound link to a terminal; surfaces typed failures, never retries."""

	def __init__(self, config: SessionConfig, *, sdk_factory: Optional[SdkFactory] = None) -> None:
		self.config = config
		self._sdk_factory: SdkFactory = sdk_factory or _zk_factory
		self._handle: Any = None
		self._lock = asyncio.Lock()

	# ------------------------------------------------------------------
	# Lifecycle
	# ------------------------------------------------------------------
	async def connect(self) -> bool:
		async with self._lock:
			if self.is_healthy():
				return True
			self._handle = None

			sdk = None
			try:
				sdk = self._sdk_factory(self.config)
				handle = await self._call(sdk.connect, "connect")
			except Exception as exc:
				if isinstance(exc, DeviceTimeoutError) and sdk is not None:
					await self._abandon(sdk)
				raise ConnectError(
					f"cannot reach {self.config.address}:{self.config.port}: {_describe(exc)}"
				) from exc

			self._handle = handle if handle is not None else sdk
			if not self.is_healthy():
				self._handle = None
				raise ConnectError(f"{self.config.address}:{self.config.port} refused the session")
			return True

	async def disconnect(self) -> None:
		async with self._lock:
			handle, self._handle = self._handle, None
			if handle is None or not hasattr(handle, "disconnect"):
				return
			try:
				await self._call(handle.disconnect, "disconnect")
			except Exception as exc:
				logger.warning("Disconnect encountered error for %s: %s", self.config.address, exc)

	async def _abandon(self, sdk: Any) -> None:
		"""Close a handle whose connect timed out while its worker thread may still be running."""
		disconnect = getattr(sdk, "disconnect", None)
		if not callable(disconnect):
			return
		try:
			await asyncio.wait_for(asyncio.to_thread(disconnect), timeout=self.config.budget)
		except Exception as exc:
			logger.debug("Discarding timed-out handle for %s failed: %s", self.config.address, _describe(exc))

	async def __aenter__(self) -> "DeviceSession":
		await self.connect()
		return self

	async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
		await self.disconnect()

	def is_healthy(self) -> bool:
		"""Non-blocking liveness check of the underlying SDK handle."""
		if self._handle is None:
			return False
		return bool(getattr(self._handle, "is_connect", True))

	# ------------------------------------------------------------------
	# Reads
	# ------------------------------------------------------------------
	async def fetch_device_metadata(self) -> Dict[str, Any]:
		handle = self._require_handle()
		details: Dict[str, Any] = {}
		for key, getter in METADATA_GETTERS:
			method = getattr(handle, getter, None)
			if not callable(method):
				continue
			details[key] = await self._fetch(method, getter)

		read_sizes = getattr(handle, "read_sizes", None)
		if callable(read_sizes):
			await self._fetch(read_sizes, "read_sizes")
			for key, attr in (("user_count", "users"), ("attendance_size", "records"), ("finger_count", "fingers")):
				value = getattr(handle, attr, None)
				if isinstance(value, int):
					details[key] = value
		return details

	async def fetch_users(self) -> List[EnrolledUser]:
		handle = self._require_handle()
		raw = await self._fetch(handle.get_users, "fetch_users")
		return self._convert(normalize_response(raw), EnrolledUser.from_raw, "user")

	async def fetch_attendance(self) -> List[RawRecord]:
		handle = self._require_handle()
		raw = await self._fetch(handle.get_attendance, "fetch_attendance")
		return self._convert(normalize_response(raw), RawRecord.from_raw, "attendance")

	# ------------------------------------------------------------------
	# Helpers
	# ------------------------------------------------------------------
	def _require_handle(self) -> Any:
		if not self.is_healthy():
			raise FetchError(f"no live session to {self.config.address}")
		return self._handle

	def _convert(self, items: Sequence[Any], build: Callable[[Any], Any], label: str) -> List[Any]:
		converted = []
		skipped = 0
		for item in items:
			try:
				converted.append(build(item))
			except (TypeError, ValueError):
				skipped += 1
		if skipped:
			logger.warning("Skipped %d malformed %s rows from %s", skipped, label, self.config.address)
		return converted

	async def _fetch(self, fn: Callable[[], Any], op: str) -> Any:
		try:
			return await self._call(fn, op)
		except FetchError:
			raise
		except Exception as exc:
			raise FetchError(f"{op} failed: {_describe(exc)}") from exc

	async def _call(self, fn: Callable[[], Any], op: str) -> Any:
		# wait_for only stops waiting; the pyzk socket timeout (ceil of recv_timeout)
		# is what ends a stuck worker thread
		start = perf_counter()
		try:
			result = await asyncio.wait_for(asyncio.to_thread(fn), timeout=self.config.budget)
		except asyncio.TimeoutError as exc:
			self._metrics_log(op, "timeout", start, f"exceeded {self.config.budget:.1f}s")
			raise DeviceTimeoutError(f"{op} exceeded {self.config.budget:.1f}s budget") from exc
		except Exception as exc:
			self._metrics_log(op, "error", start, str(exc))
			raise
		self._metrics_log(op, "ok", start)
		return result

	def _metrics_log(self, op: str, status: str, start: float, message: Optional[str] = None) -> None:
		if not self.config.metrics:
			return
		try:
			self.config.metrics.log(
				op,
				status=status,
				duration_ms=(perf_counter() - start) * 1000.0,
				message=message,
				extra={"address": self.config.address, "port": self.config.port},
			)
		except Exception:  # pragma: no cover - metrics must not break the session
			logger.debug("Metrics logging failed for %s", op, exc_info=True)


__all__ = [
	"DeviceSession",
	"SessionConfig",
	"ResponseShape",
	"classify_response",
	"normalize_response",
]
