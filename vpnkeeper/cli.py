"""vpnkeeper command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import getpass
import json
import logging
import os
import signal
import sys
from typing import Any, Dict, List, Optional

import requests
from rich.console import Console
from rich.table import Table

from vpnkeeper.config import Settings
from vpnkeeper.connector import SUPPORTED_PROTOCOLS, ConnectArgs, Credentials
from vpnkeeper.errors import VpnError
from vpnkeeper.reaper import ProcessReaper
from vpnkeeper.supervisor import VpnSupervisor

DEFAULT_API_BASE = os.getenv("VPNKEEPER_API_BASE", "http://127.0.0.1:8000")


def _read_secret(args: argparse.Namespace) -> str:
	secret = os.getenv(args.password_env) if args.password_env else None
	if secret:
		return secret
	if not sys.stdin.isatty():
		line = sys.stdin.readline().rstrip("\n")
		if line:
			return line
		raise ValueError("no password on stdin")
	return getpass.getpass(f"Password for {args.user}@{args.server}: ")


def _settings() -> Settings:
	return Settings.from_env().validate()


def _print_mapping(title: str, data: Dict[str, Any], as_json: bool) -> None:
	if as_json:
		json.dump(data, sys.stdout, indent=2, default=str)
		sys.stdout.write("\n")
		return
	console = Console()
	table = Table(title=title, show_header=False)
	table.add_column("key", style="bold")
	table.add_column("value")
	for key, value in data.items():
		if isinstance(value, dict):
			value = ", ".join(f"{k}={v}" for k, v in value.items())
		table.add_row(key, "" if value is None else str(value))
	console.print(table)


async def _cmd_connect(args: argparse.Namespace) -> int:
	connect_args = ConnectArgs(
		server=args.server,
		username=args.user,
		protocol=args.protocol,
		no_dtls=args.no_dtls,
		extra_args=tuple(args.extra or ()),
	)
	credentials = Credentials(_read_secret(args))
	supervisor = VpnSupervisor(_settings())
	console = Console()

	stop_event = asyncio.Event()
	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		with contextlib.suppress(NotImplementedError):
			loop.add_signal_handler(sig, stop_event.set)

	try:
		event = await supervisor.connect(connect_args, credentials=credentials, force=args.force)
	except VpnError as exc:
		console.print(f"[red]Connection failed:[/red] {exc}")
		await supervisor.close()
		return 1

	console.print(f"[green]Connected[/green] ip={event.ip} device={event.device}; Ctrl+C to disconnect")
	try:
		await stop_event.wait()
	finally:
		report = await supervisor.disconnect()
		await supervisor.close()
		console.print(f"Disconnected (reaped {report.reaped} orphaned process(es))")
	return 0


async def _cmd_disconnect(args: argparse.Namespace) -> int:
	supervisor = VpnSupervisor(_settings())
	report = await supervisor.disconnect()
	_print_mapping("vpnkeeper disconnect", report.to_dict(), args.json)
	return 0


async def _cmd_status(args: argparse.Namespace) -> int:
	supervisor = VpnSupervisor(_settings())
	snapshot = supervisor.status()
	_print_mapping("vpnkeeper status", snapshot.to_dict(), args.json)
	return 0 if snapshot.connected else 3


async def _cmd_cleanup(args: argparse.Namespace) -> int:
	settings = _settings()
	reaper = ProcessReaper(settings.executable, grace_period=args.grace_period)
	count = await reaper.sweep()
	report = {str(pid): outcome.value for pid, outcome in reaper.last_report.items()}
	_print_mapping("vpnkeeper cleanup", {"terminated": count, **report}, args.json)
	return 0


async def _cmd_reset(args: argparse.Namespace) -> int:
	# The controller lives in the long-running API process.
	url = f"{args.api.rstrip('/')}/vpn/reset"
	try:
		response = requests.post(url, timeout=args.timeout)
		response.raise_for_status()
	except requests.RequestException as exc:
		Console().print(f"[red]Reset failed:[/red] {exc}")
		return 1
	_print_mapping("vpnkeeper reset", response.json(), args.json)
	return 0


def _cmd_serve(args: argparse.Namespace) -> int:
	import uvicorn

	uvicorn.run("vpnkeeper.api:app", host=args.host, port=args.port, log_level="debug" if args.verbose else "info")
	return 0


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="vpnkeeper VPN client supervisor")
	parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
	sub = parser.add_subparsers(dest="command", required=True)

	connect = sub.add_parser("connect", help="Connect and keep the tunnel alive until interrupted")
	connect.add_argument("server", help="VPN server host or URL")
	connect.add_argument("--user", required=True, help="Login name")
	connect.add_argument("--protocol", default="f5", choices=SUPPORTED_PROTOCOLS, help="Client protocol")
	connect.add_argument("--no-dtls", action="store_true", help="Disable DTLS")
	connect.add_argument("--force", action="store_true", help="Tear down an existing connection first")
	connect.add_argument(
		"--password-env",
		default="VPNKEEPER_PASSWORD",
		help="Environment variable holding the password (falls back to stdin or a prompt)",
	)
	connect.add_argument("--extra", action="append", help="Extra argument passed to the client")
	connect.set_defaults(handler=_cmd_connect)

	disconnect = sub.add_parser("disconnect", help="Stop the VPN client and clean up orphans")
	disconnect.add_argument("--json", action="store_true", help="Output JSON")
	disconnect.set_defaults(handler=_cmd_disconnect)

	status = sub.add_parser("status", help="Show the persisted connection state")
	status.add_argument("--json", action="store_true", help="Output JSON")
	status.set_defaults(handler=_cmd_status)

	cleanup = sub.add_parser("cleanup", help="Terminate orphaned VPN client processes")
	cleanup.add_argument("--grace-period", type=float, default=5.0, help="Seconds to wait after SIGTERM")
	cleanup.add_argument("--json", action="store_true", help="Output JSON")
	cleanup.set_defaults(handler=_cmd_cleanup)

	reset = sub.add_parser("reset", help="Re-arm a failed reconnection controller via the API")
	reset.add_argument("--api", default=DEFAULT_API_BASE, help="Base URL of the vpnkeeper API")
	reset.add_argument("--timeout", type=float, default=5.0, help="HTTP timeout seconds")
	reset.add_argument("--json", action="store_true", help="Output JSON")
	reset.set_defaults(handler=_cmd_reset)

	serve = sub.add_parser("serve", help="Run the HTTP control API")
	serve.add_argument("--host", default="127.0.0.1")
	serve.add_argument("--port", type=int, default=8000)
	serve.set_defaults(handler=_cmd_serve)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	logging.basicConfig(
		level=logging.DEBUG if args.verbose else logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)
	if args.handler is _cmd_serve:
		return _cmd_serve(args)
	try:
		return asyncio.run(args.handler(args))
	except ValueError as exc:
		parser.error(str(exc))
	except VpnError as exc:
		Console(stderr=True).print(f"[red]Error:[/red] {exc}")
		return 1


if __name__ == "__main__":
	sys.exit(main())
