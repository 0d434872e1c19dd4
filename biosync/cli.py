"""biosync command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import socket
import sys
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
import uvicorn
from rich.console import Console
from rich.table import Table

from biosync.api import create_app, session_config
from biosync.config import BridgeConfig
from biosync.hub import DistributionHub
from biosync.models import Snapshot
from biosync.reconcile import ReconciliationEngine


def _configure_logging(level: str) -> None:
	logging.basicConfig(
		level=getattr(logging, level.upper(), logging.INFO),
		format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
	)


def _print_table(title: str, columns: List[str], rows: List[List[Any]]) -> None:
	table = Table(title=title, show_lines=False)
	for column in columns:
		table.add_column(column.upper())
	for row in rows:
		table.add_row(*(("" if value is None else str(value)) for value in row))
	Console().print(table)


async def _cmd_serve(args: argparse.Namespace, config: BridgeConfig) -> int:
	if args.host:
		config.server.host = args.host
	if args.port:
		config.server.port = args.port
	server = uvicorn.Server(
		uvicorn.Config(
			create_app(config),
			host=config.server.host,
			port=config.server.port,
			log_level=config.log_level.lower(),
		)
	)
	await server.serve()
	return 0


SNAPSHOT_COLUMNS = ["sn", "employee_id", "name", "record_time", "type", "state"]


def _snapshot_rows(snapshot: Snapshot, limit: int) -> List[List[Any]]:
	"""Newest ``limit`` records as table rows; a limit of 0 or less shows none."""
	if limit <= 0:
		return []
	return [
		[record.serial, record.employee_id, record.employee_name, record.record_time.isoformat(), record.type, record.state]
		for record in snapshot.logs[-limit:]
	]


async def _cmd_snapshot(args: argparse.Namespace, config: BridgeConfig) -> int:
	engine = ReconciliationEngine(
		session_config(config),
		DistributionHub(),
		year_window=config.year_window,
	)
	try:
		snapshot = await engine.tick()
	finally:
		await engine.close()

	if snapshot is None:
		sys.stderr.write(
			f"no snapshot: device {engine.connection.state.value} ({engine.connection.last_failure or 'unknown error'})\n"
		)
		return 1

	if args.json:
		json.dump(snapshot.to_dict(), sys.stdout, indent=2)
		sys.stdout.write("\n")
		return 0

	_print_table(
		f"Attendance ({len(snapshot.logs)} records, {len(snapshot.users)} users)",
		SNAPSHOT_COLUMNS,
		_snapshot_rows(snapshot, args.limit),
	)
	return 0


async def _probe_redis(config: BridgeConfig) -> Dict[str, Any]:
	target = f"{config.redis.host}:{config.redis.port}"
	if not config.redis.enabled:
		return {"check": "redis", "target": target, "ok": None, "detail": "disabled"}
	client = aioredis.Redis(
		host=config.redis.host,
		port=config.redis.port,
		username=config.redis.username or None,
		password=config.redis.password or None,
		socket_connect_timeout=5,
	)
	try:
		await client.ping()
		return {"check": "redis", "target": target, "ok": True, "detail": "PONG"}
	except Exception as exc:
		return {"check": "redis", "target": target, "ok": False, "detail": str(exc)}
	finally:
		with contextlib.suppress(Exception):
			await client.aclose()


async def _probe_device(config: BridgeConfig, timeout: float) -> Dict[str, Any]:
	target = f"{config.device.ip}:{config.device.port}"
	try:
		_, writer = await asyncio.wait_for(
			asyncio.open_connection(config.device.ip, config.device.port),
			timeout=timeout,
		)
	except (OSError, asyncio.TimeoutError) as exc:
		return {"check": "device", "target": target, "ok": False, "detail": str(exc) or "timed out"}
	writer.close()
	with contextlib.suppress(Exception):
		await writer.wait_closed()
	return {"check": "device", "target": target, "ok": True, "detail": "TCP reachable"}


def _probe_port(config: BridgeConfig) -> Dict[str, Any]:
	target = f"{config.server.host}:{config.server.port}"
	with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
		try:
			sock.bind((config.server.host, config.server.port))
		except OSError as exc:
			return {"check": "server_port", "target": target, "ok": False, "detail": str(exc)}
	return {"check": "server_port", "target": target, "ok": True, "detail": "available"}


async def _cmd_check(args: argparse.Namespace, config: BridgeConfig) -> int:
	results = [
		await _probe_redis(config),
		await _probe_device(config, args.timeout),
		_probe_port(config),
	]
	if args.json:
		json.dump(results, sys.stdout, indent=2)
		sys.stdout.write("\n")
	else:
		marks = {True: "ok", False: "FAIL", None: "skipped"}
		_print_table(
			"biosync system check",
			["check", "target", "status", "detail"],
			[[item["check"], item["target"], marks[item["ok"]], item["detail"]] for item in results],
		)
	return 0 if all(item["ok"] is not False for item in results) else 1


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="Attendance terminal bridge")
	sub = parser.add_subparsers(dest="command", required=True)

	serve = sub.add_parser("serve", help="Run the HTTP/WebSocket bridge")
	serve.add_argument("--host", help="Bind address (default SERVER_HOST)")
	serve.add_argument("--port", type=int, help="Bind port (default SERVER_PORT)")
	serve.set_defaults(handler=_cmd_serve)

	snapshot = sub.add_parser("snapshot", help="Pull one snapshot from the device and print it")
	snapshot.add_argument("--json", action="store_true", help="Output JSON")
	snapshot.add_argument("--limit", type=int, default=50, help="Rows to show in the table")
	snapshot.set_defaults(handler=_cmd_snapshot)

	check = sub.add_parser("check", help="Check Redis, device reachability and the server port")
	check.add_argument("--timeout", type=float, default=5.0, help="Device probe timeout seconds")
	check.add_argument("--json", action="store_true", help="Output JSON")
	check.set_defaults(handler=_cmd_check)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	try:
		config = BridgeConfig.from_env()
	except ValueError as exc:
		parser.error(str(exc))
	_configure_logging(config.log_level)
	try:
		return asyncio.run(args.handler(args, config))
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	sys.exit(main())
