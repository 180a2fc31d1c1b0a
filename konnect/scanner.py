"""Console discovery and liveness scanning for Konnect."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from konnect import subnet
from konnect.models import (
	ConnectionRecord,
	ConnectionState,
	ConnectionType,
	ConsoleType,
	NotificationHub,
	utc_now,
)
from konnect.protocol import PROBE_PORT, MalformedReplyError, decode_reply, probe_packet
from konnect.registry import ConnectionRegistry
from konnect.subnet import DEFAULT_BRIDGED_SUBNET, DEFAULT_ROUTE_PROBE, Endpoint

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
HostResolver = Callable[[Endpoint], Endpoint]
ProtocolFactory = Callable[[], asyncio.DatagramProtocol]
EndpointFactory = Callable[[ProtocolFactory, Endpoint], Awaitable[Tuple[Any, asyncio.DatagramProtocol]]]
Datagram = Tuple[bytes, Tuple[Any, ...]]

_TRUTHY = frozenset({"1", "true", "yes", "on"})


def _env_bool(raw: str) -> bool:
	return raw.strip().lower() in _TRUTHY


@dataclass(slots=True)
class ScannerConfig:
	"""Configuration bundle used by :class:`ConsoleScanner`."""

	auto_start: bool = False
	scan_frequency: float = 1.0
	disconnect_timeout: float = 3.0
	remove_on_disconnect: bool = False
	bridged_subnet: str = DEFAULT_BRIDGED_SUBNET
	probe_port: int = PROBE_PORT
	probe_type: ConsoleType = ConsoleType.JTAG
	default_console_type: ConsoleType = ConsoleType.JTAG
	bind_host: str = "0.0.0.0"
	route_probe: Endpoint = DEFAULT_ROUTE_PROBE
	queue_size: int = 1024

	def __post_init__(self) -> None:
		if self.scan_frequency <= 0:
			raise ValueError("scan_frequency must be positive")
		if self.disconnect_timeout <= 0:
			raise ValueError("disconnect_timeout must be positive")
		if not 0 < self.probe_port < 65536:
			raise ValueError("probe_port must be a valid UDP port")
		if self.queue_size < 0:
			raise ValueError("queue_size must not be negative")
		self.bridged_subnet = subnet.validate_prefix(self.bridged_subnet)
		probe_packet(self.probe_type)

	@property
	def probe(self) -> bytes:
		return probe_packet(self.probe_type)

	@classmethod
	def from_env(
		cls,
		prefix: str = "KONNECT_",
		environ: Optional[Mapping[str, str]] = None,
		**overrides: Any,
	) -> "ScannerConfig":
		env = os.environ if environ is None else environ
		values: Dict[str, Any] = {}
		readers: Dict[str, Callable[[str], Any]] = {
			"auto_start": _env_bool,
			"scan_frequency": float,
			"disconnect_timeout": float,
			"remove_on_disconnect": _env_bool,
			"bridged_subnet": str,
			"probe_port": int,
			"bind_host": str,
		}
		for key, reader in readers.items():
			raw = env.get(prefix + key.upper())
			if raw is None or raw == "":
				continue
			try:
				values[key] = reader(raw)
			except ValueError as exc:
				raise ValueError(f"invalid {prefix}{key.upper()}={raw!r}: {exc}") from exc
		values.update(overrides)
		return cls(**values)


class ScannerState(Enum):
	STOPPED = "stopped"
	RUNNING = "running"


class _ReplyProtocol(asyncio.DatagramProtocol):
	"""Feeds received datagrams into the listener queue."""

	def __init__(self, queue: "asyncio.Queue[Optional[Datagram]]") -> None:
		self._queue = queue
		self.transport: Optional[asyncio.DatagramTransport] = None

	def connection_made(self, transport: asyncio.BaseTransport) -> None:
		self.transport = transport  # type: ignore[assignment]

	def datagram_received(self, data: bytes, addr: Tuple[Any, ...]) -> None:
		try:
			self._queue.put_nowait((bytes(data), addr))
		except asyncio.QueueFull:
			logger.warning("reply queue full; dropping datagram from %s", addr[0])

	def error_received(self, exc: Exception) -> None:
		logger.warning("Discovery socket error: %s", exc)

	def connection_lost(self, exc: Optional[Exception]) -> None:
		# Wakes the listener; a full queue wakes it anyway.
		with contextlib.suppress(asyncio.QueueFull):
			self._queue.put_nowait(None)


async def _open_endpoint(protocol_factory: ProtocolFactory, local_addr: Endpoint) -> Tuple[Any, asyncio.DatagramProtocol]:
	loop = asyncio.get_running_loop()
	return await loop.create_datagram_endpoint(
		protocol_factory,
		local_addr=local_addr,
		allow_broadcast=True,
	)


class ConsoleScanner:
	"""Scans the local network for consoles and tracks their connection state.

	While running, three tasks share the registry: the broadcaster probes
	every subnet each ``scan_frequency`` seconds, the listener turns replies
	into new or refreshed records, and the monitor marks records offline
	once they have been silent for longer than ``disconnect_timeout``.
	"""

	def __init__(
		self,
		config: ScannerConfig | None = None,
		*,
		registry: Optional[ConnectionRegistry] = None,
		hub: Optional[NotificationHub] = None,
		clock: Optional[Clock] = None,
		host_resolver: Optional[HostResolver] = None,
		endpoint_factory: Optional[EndpointFactory] = None,
	) -> None:
		self.config = config or ScannerConfig()
		self.registry = registry if registry is not None else ConnectionRegistry(hub)
		self.hub = self.registry.hub
		self._clock: Clock = clock or utc_now
		self._host_resolver: HostResolver = host_resolver or subnet.get_host_endpoint
		self._endpoint_factory: EndpointFactory = endpoint_factory or _open_endpoint

		self._state = ScannerState.STOPPED
		self._host_endpoint: Optional[Endpoint] = None
		self._subnet_ranges: List[str] = []
		self._transport: Any = None
		self._replies: Optional[asyncio.Queue] = None
		self._stop_event: Optional[asyncio.Event] = None
		self._tasks: List[asyncio.Task] = []
		self._lifecycle_lock = asyncio.Lock()
		self._autostart_task: Optional[asyncio.Task] = None

		if self.config.auto_start:
			self._schedule_auto_start()

	# ------------------------------------------------------------------
	# Observation
	# ------------------------------------------------------------------
	@property
	def state(self) -> ScannerState:
		return self._state

	@property
	def scanning(self) -> bool:
		return self._state is ScannerState.RUNNING

	@property
	def host_endpoint(self) -> Optional[Endpoint]:
		return self._host_endpoint

	@property
	def subnet_ranges(self) -> List[str]:
		return list(self._subnet_ranges)

	@property
	def connections(self) -> Dict[str, ConnectionRecord]:
		return {record.address: record for record in self.registry.snapshot()}

	# ------------------------------------------------------------------
	# Lifecycle
	# ------------------------------------------------------------------
	async def start(self) -> None:
		"""Start monitoring the local network for new or changed connections."""
		async with self._lifecycle_lock:
			if self._state is ScannerState.RUNNING:
				return

			targets = self._resolve_subnet_ranges()
			queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.queue_size)
			try:
				transport, _ = await self._endpoint_factory(
					lambda: _ReplyProtocol(queue),
					(self.config.bind_host, 0),
				)
			except Exception as exc:
				logger.error("Unable to open discovery socket on %s: %s", self.config.bind_host, exc)
				return

			stop_event = asyncio.Event()
			self._transport = transport
			self._replies = queue
			self._stop_event = stop_event
			self._subnet_ranges = targets
			self._state = ScannerState.RUNNING

			self._tasks = [
				asyncio.create_task(self._listen(queue, stop_event), name="konnect-listen"),
				asyncio.create_task(self._broadcast(transport, list(targets), stop_event), name="konnect-broadcast"),
				asyncio.create_task(self._monitor(stop_event), name="konnect-monitor"),
			]

			logger.info("Monitoring %d local network ranges for new or changed connections.", len(targets))

	async def stop(self) -> None:
		"""Stop monitoring and wait for the scanner tasks to finish."""
		pending_start = self._autostart_task
		if pending_start is not None and not pending_start.done() and pending_start is not asyncio.current_task():
			with contextlib.suppress(Exception):
				await pending_start

		async with self._lifecycle_lock:
			if self._state is ScannerState.STOPPED:
				return

			self._state = ScannerState.STOPPED
			if self._stop_event is not None:
				self._stop_event.set()

			transport, self._transport = self._transport, None
			if transport is not None:
				try:
					transport.close()
				except Exception as exc:
					logger.warning("Closing discovery socket failed: %s", exc)

			if self._replies is not None:
				with contextlib.suppress(asyncio.QueueFull):
					self._replies.put_nowait(None)
			self._replies = None
			self._subnet_ranges = []

			tasks, self._tasks = self._tasks, []
			results = await asyncio.gather(*tasks, return_exceptions=True)
			for task, result in zip(tasks, results):
				if isinstance(result, Exception):
					logger.error("%s ended with an error", task.get_name(), exc_info=result)

			logger.info("Scanning stopped.")

	def purge_list(self) -> int:
		"""Remove every offline connection, regardless of how long it has been offline."""
		purged = 0
		for record in self.registry.snapshot():
			if record.state is not ConnectionState.OFFLINE:
				continue
			if self.registry.remove(record.address, expected_state=ConnectionState.OFFLINE) is not None:
				purged += 1
		logger.info("Purged %d offline connections", purged)
		return purged

	async def __aenter__(self) -> "ConsoleScanner":
		await self.start()
		return self

	async def __aexit__(self, exc_type, exc, tb) -> None:
		await self.stop()

	# ------------------------------------------------------------------
	# Reply handling and monitoring
	# ------------------------------------------------------------------
	def process_response(self, data: bytes, addr: Tuple[Any, ...]) -> Optional[ConnectionRecord]:
		"""Apply one reply datagram to the registry.

		Raises :class:`MalformedReplyError` when the datagram is too short.
		"""
		reply = decode_reply(data, self.config.default_console_type)
		address, port = str(addr[0]), int(addr[1])
		now = self._clock()

		record = self.registry.refresh(address, now, port=port)
		if record is not None:
			if record.state is ConnectionState.ONLINE:
				return record
			updated = self.registry.update_state(
				address,
				ConnectionState.ONLINE,
				expected_state=record.state,
			)
			return updated or self.registry.get(address)

		if subnet.is_bridged(address, self.config.bridged_subnet):
			connection_type = ConnectionType.BRIDGED
		else:
			connection_type = ConnectionType.LAN

		record = ConnectionRecord.discovered(
			address,
			reply.name,
			port=port,
			console_type=reply.console_type,
			connection_type=connection_type,
			seen_at=now,
		)
		if not self.registry.add(record):
			return self.registry.get(address)
		logger.debug("discovered %s %r (%s, %s)", address, reply.name, reply.console_type.value, connection_type.name)
		return record

	def check_connections(self, now: Optional[datetime] = None) -> List[ConnectionRecord]:
		"""Demote or drop connections silent for longer than the disconnect timeout."""
		now = now or self._clock()
		changed: List[ConnectionRecord] = []
		for record in self.registry.snapshot():
			if not record.is_stale(now, self.config.disconnect_timeout):
				continue
			if record.state is ConnectionState.ONLINE:
				updated = self.registry.update_state(
					record.address,
					ConnectionState.OFFLINE,
					expected_state=ConnectionState.ONLINE,
				)
				if updated is not None:
					changed.append(updated)
			elif self.config.remove_on_disconnect:
				removed = self.registry.remove(record.address, expected_state=record.state)
				if removed is not None:
					changed.append(removed)
		return changed

	# ------------------------------------------------------------------
	# Loops
	# ------------------------------------------------------------------
	async def _listen(self, queue: asyncio.Queue, stop_event: asyncio.Event) -> None:
		while not stop_event.is_set():
			item = await queue.get()
			if item is None or stop_event.is_set():
				break
			data, addr = item
			try:
				self.process_response(data, addr)
			except MalformedReplyError as exc:
				logger.warning("Ignoring malformed reply from %s: %s", addr[0], exc)
			except Exception:
				logger.exception("Failed to process reply from %s", addr[0])

	async def _broadcast(self, transport: Any, targets: List[str], stop_event: asyncio.Event) -> None:
		while not stop_event.is_set():
			if transport.is_closing():
				break
			probe = self.config.probe
			port = self.config.probe_port
			for target in targets:
				try:
					transport.sendto(probe, (target, port))
				except Exception as exc:
					logger.warning("Probe to %s:%d failed: %s", target, port, exc)
			await self._sleep_with_stop(self.config.scan_frequency, stop_event)

	async def _monitor(self, stop_event: asyncio.Event) -> None:
		while not stop_event.is_set():
			try:
				self.check_connections()
			except Exception:
				logger.exception("Connection monitor cycle failed")
			await self._sleep_with_stop(self.config.scan_frequency, stop_event)

	@staticmethod
	async def _sleep_with_stop(duration: float, stop_event: asyncio.Event) -> None:
		try:
			await asyncio.wait_for(stop_event.wait(), timeout=duration)
		except asyncio.TimeoutError:
			pass

	# ------------------------------------------------------------------
	# Helpers
	# ------------------------------------------------------------------
	def _resolve_subnet_ranges(self) -> List[str]:
		prefixes: List[str] = []
		try:
			self._host_endpoint = self._host_resolver(self.config.route_probe)
			prefixes.append(subnet.get_subnet_range(self._host_endpoint))
		except (OSError, ValueError) as exc:
			self._host_endpoint = None
			logger.warning("Could not resolve the local subnet (%s); probing the bridged subnet only", exc)
		prefixes.append(self.config.bridged_subnet)
		return subnet.get_subnet_ranges(prefixes)

	def _schedule_auto_start(self) -> None:
		try:
			loop = asyncio.get_running_loop()
		except RuntimeError:
			logger.warning("auto_start requested outside a running event loop; call start() to begin scanning")
			return
		self._autostart_task = loop.create_task(self.start(), name="konnect-autostart")


async def start_scanning(scanner: ConsoleScanner) -> ConsoleScanner:
	"""Start ``scanner`` and hand it back, for one-line construction."""
	await scanner.start()
	return scanner


async def discover(
	timeout: float = 3.0,
	*,
	config: ScannerConfig | None = None,
	**scanner_kwargs: Any,
) -> List[ConnectionRecord]:
	"""Scan for ``timeout`` seconds and return the consoles that answered."""
	scanner = ConsoleScanner(config, **scanner_kwargs)
	async with scanner:
		await asyncio.sleep(timeout)
		return scanner.registry.snapshot()


__all__ = [
	"ScannerConfig",
	"ScannerState",
	"ConsoleScanner",
	"start_scanning",
	"discover",
]
