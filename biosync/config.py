"""Environment-driven settings for the bridge process."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


@dataclass
class DeviceSettings:
    """Terminal endpoint. Timeouts are milliseconds, as the device SDK expects."""

    ip: str = "192.168.1.1"
    port: int = 4370
    send_timeout_ms: int = 20000
    recv_timeout_ms: int = 20000
    password: int = 0
    ping_before_connect: bool = False


@dataclass
class RedisSettings:
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 6379
    username: str = "default"
    password: str = ""
    channel: str = "attendance:updates"


@dataclass
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 8090


@dataclass
class BridgeConfig:
    device: DeviceSettings = field(default_factory=DeviceSettings)
    redis: RedisSettings = field(default_factory=RedisSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    poll_interval: float = 60.0
    year_window: bool = True
    subscriber_queue: int = 32
    log_level: str = "INFO"
    metrics_log: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BridgeConfig":
        env = os.environ if environ is None else environ
        poll_interval = _float(env, "POLL_INTERVAL", 60.0)
        if poll_interval <= 0:
            raise ValueError("POLL_INTERVAL must be positive")
        return cls(
            device=DeviceSettings(
                ip=env.get("DEVICE_IP", "192.168.1.1"),
                port=_int(env, "DEVICE_PORT", 4370),
                send_timeout_ms=_int(env, "SEND_TIMEOUT", 20000),
                recv_timeout_ms=_int(env, "RECV_TIMEOUT", 20000),
                password=_int(env, "DEVICE_PASSWORD", 0),
                ping_before_connect=_bool(env, "DEVICE_PING", False),
            ),
            redis=RedisSettings(
                enabled=_bool(env, "REDIS_ENABLED", True),
                host=env.get("REDIS_HOST", "127.0.0.1"),
                port=_int(env, "REDIS_PORT", 6379),
                username=env.get("REDIS_USERNAME", "default"),
                password=env.get("REDIS_PASSWORD", ""),
                channel=env.get("REDIS_CHANNEL", "attendance:updates"),
            ),
            server=ServerSettings(
                host=env.get("SERVER_HOST", "0.0.0.0"),
                port=_int(env, "SERVER_PORT", 8090),
            ),
            poll_interval=poll_interval,
            year_window=_bool(env, "YEAR_WINDOW", True),
            subscriber_queue=_int(env, "SUBSCRIBER_QUEUE", 32),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            metrics_log=env.get("METRICS_LOG") or None,
        )


__all__ = ["BridgeConfig", "DeviceSettings", "RedisSettings", "ServerSettings"]
