"""Konnect command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import inspect
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from konnect.metrics import EventLogger
from konnect.models import ConnectionEvent, ConnectionEventKind, ConnectionRecord, ConsoleNotifier
from konnect.scanner import ConsoleScanner, ScannerConfig, discover

_EVENT_STYLES = {
	ConnectionEventKind.ADDED: "green",
	ConnectionEventKind.UPDATED: "yellow",
	ConnectionEventKind.REMOVED: "red",
}


def _config_from_args(args: argparse.Namespace) -> ScannerConfig:
	overrides: Dict[str, Any] = {}
	for key in ("scan_frequency", "disconnect_timeout", "bridged_subnet", "probe_port"):
		value = getattr(args, key, None)
		if value is not None:
			overrides[key] = value
	if getattr(args, "remove_on_disconnect", False):
		overrides["remove_on_disconnect"] = True
	return ScannerConfig.from_env(**overrides)


def _records_table(records: List[ConnectionRecord], title: str) -> Table:
	table = Table(title=title, show_lines=False)
	for column in ("address", "name", "type", "connection", "state", "last seen"):
		table.add_column(column.upper())
	for record in sorted(records, key=lambda r: r.address):
		table.add_row(
			record.address,
			record.name,
			record.console_type.value,
			record.connection_type.name.lower(),
			record.state.value,
			record.last_seen.strftime("%H:%M:%S"),
		)
	return table


async def _cmd_scan(args: argparse.Namespace) -> int:
	config = _config_from_args(args)
	records = await discover(timeout=args.timeout, config=config)
	if args.json:
		json.dump([record.to_dict() for record in records], sys.stdout, indent=2)
		sys.stdout.write("\n")
		return 0
	Console().print(_records_table(records, "Konnect Scan Results"))
	return 0


async def _cmd_watch(args: argparse.Namespace) -> int:
	config = _config_from_args(args)
	scanner = ConsoleScanner(config)
	console = Console()

	def _print_event(event: ConnectionEvent) -> None:
		record = event.record
		style = _EVENT_STYLES.get(event.kind, "white")
		console.print(
			f"[{style}]{event.kind.value:<8}[/{style}] {record.address:<15} "
			f"{record.name or '-':<20} {record.state.value}"
		)

	scanner.hub.subscribe(_print_event)
	ConsoleNotifier().attach(scanner.hub)
	if args.log:
		log_path = Path(args.log)
		EventLogger(log_path).attach(scanner.hub)

	stop_event = asyncio.Event()

	def _signal_handler(*_: Any) -> None:
		stop_event.set()

	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		with contextlib.suppress(NotImplementedError):
			loop.add_signal_handler(sig, _signal_handler)

	await scanner.start()
	if not scanner.scanning:
		console.print("[red]Unable to open the discovery socket.[/red]")
		return 1
	console.print(f"Watching {', '.join(scanner.subnet_ranges)} (Ctrl-C to stop)")
	try:
		with contextlib.suppress(asyncio.TimeoutError):
			await asyncio.wait_for(stop_event.wait(), timeout=args.runtime)
	finally:
		await scanner.stop()
	console.print(_records_table(scanner.registry.snapshot(), "Known Consoles"))
	return 0


def _cmd_api(args: argparse.Namespace) -> int:
	import uvicorn

	uvicorn.run("konnect.api:app", host=args.host, port=args.port, reload=args.reload)
	return 0


def _add_scanner_options(parser: argparse.ArgumentParser) -> None:
	parser.add_argument("--scan-frequency", type=float, help="Seconds between probe/monitor cycles (default 1)")
	parser.add_argument("--disconnect-timeout", type=float, help="Seconds of silence before a console is offline (default 3)")
	parser.add_argument("--remove-on-disconnect", action="store_true", help="Drop offline consoles automatically")
	parser.add_argument("--bridged-subnet", help="Bridged subnet prefix (default 192.168.137)")
	parser.add_argument("--probe-port", type=int, help="UDP port consoles listen on (default 730)")


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="Konnect console discovery")
	parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")
	sub = parser.add_subparsers(dest="command", required=True)

	scan = sub.add_parser("scan", help="Probe the network once and list responding consoles")
	scan.add_argument("--timeout", type=float, default=3.0, help="Seconds to listen for replies")
	scan.add_argument("--json", action="store_true", help="Output JSON")
	_add_scanner_options(scan)
	scan.set_defaults(handler=_cmd_scan)

	watch = sub.add_parser("watch", help="Track consoles coming online and going offline")
	watch.add_argument("--runtime", type=float, help="Optional watch duration seconds")
	watch.add_argument("--log", help="Append connection events to this CSV file")
	_add_scanner_options(watch)
	watch.set_defaults(handler=_cmd_watch)

	api = sub.add_parser("api", help="Serve the HTTP API")
	api.add_argument("--host", default="127.0.0.1")
	api.add_argument("--port", type=int, default=8000)
	api.add_argument("--reload", action="store_true")
	api.set_defaults(handler=_cmd_api)

	return parser


def _configure_logging(verbosity: int) -> None:
	level = logging.WARNING
	if verbosity == 1:
		level = logging.INFO
	elif verbosity >= 2:
		level = logging.DEBUG
	logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	_configure_logging(args.verbose)
	try:
		if not inspect.iscoroutinefunction(args.handler):
			return args.handler(args)
		return asyncio.run(args.handler(args))
	except ValueError as exc:
		parser.error(str(exc))
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	sys.exit(main())
