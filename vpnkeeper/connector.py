"""Owns one VPN client child process from spawn to confirmed exit."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from vpnkeeper.classifier import STDERR, STDOUT, LineInterpreter, OutputClassifier
from vpnkeeper.errors import (
	AuthenticationFailure,
	ConfigError,
	ConnectionAborted,
	ConnectionFailure,
	ConnectionTimeout,
	ConnectorBusy,
	PermissionDenied,
	ProcessSpawnFailure,
	UnexpectedTermination,
	VpnError,
)
from vpnkeeper.events import (
	Connected,
	ConnectionEvent,
	DisconnectReason,
	Disconnected,
	Error,
	ErrorKind,
	EventBus,
	Unrecognized,
)
from vpnkeeper.metrics import MetricsLogger
from vpnkeeper.state import ConnectionState, StateStore

logger = logging.getLogger(__name__)

SUPPORTED_PROTOCOLS: Sequence[str] = ("anyconnect", "nc", "gp", "pulse", "f5", "fortinet", "array")


@dataclass(slots=True)
class Credentials:
	"""Finished secret material for one connection attempt.

	The secret only ever leaves this object through :meth:`stdin_payload`.
	"""

	secret: str = field(repr=False)

	def stdin_payload(self) -> bytes:
		return self.secret.encode("utf-8") + b"\n"


@dataclass(slots=True)
class ConnectArgs:
	"""Dynamic part of the client command line."""

	server: str
	username: str
	protocol: str = "f5"
	no_dtls: bool = False
	extra_args: Sequence[str] = ()

	def __post_init__(self) -> None:
		if not self.server:
			raise ConfigError("server must not be empty")
		if not self.username:
			raise ConfigError("username must not be empty")
		if self.protocol not in SUPPORTED_PROTOCOLS:
			raise ConfigError(
				f"unsupported protocol {self.protocol!r}; expected one of {', '.join(SUPPORTED_PROTOCOLS)}"
			)


@dataclass(slots=True)
class TerminationPolicy:
	grace_period: float = 5.0
	poll_interval: float = 0.5
	kill_wait: float = 0.5
	drain_timeout: float = 2.0


@dataclass(slots=True)
class ConnectorConfig:
	"""Static spawn settings shared by every incarnation."""

	executable: str = "openconnect"
	base_flags: Sequence[str] = ("--passwd-on-stdin", "--non-inter")
	use_sudo: bool = False
	connect_timeout: float = 60.0
	termination: TerminationPolicy = field(default_factory=TerminationPolicy)
	stream_limit: int = 64 * 1024

	def command(self, args: ConnectArgs) -> List[str]:
		argv: List[str] = ["sudo", "-n"] if self.use_sudo else []
		argv.append(self.executable)
		argv.extend(self.base_flags)
		argv.extend(["--protocol", args.protocol, "--user", args.username])
		if args.no_dtls:
			argv.append("--no-dtls")
		argv.extend(args.extra_args)
		argv.append(args.server)
		return argv


@dataclass(slots=True)
class ProcessHandle:
	"""Bookkeeping for the child process of one incarnation."""

	process: asyncio.subprocess.Process
	spawn_time: datetime
	interpreter: LineInterpreter
	ready: "asyncio.Future[Connected]"
	termination_requested: bool = False
	exit_reason: Optional[DisconnectReason] = None
	disconnect_published: bool = False
	monitor: Optional["asyncio.Task[None]"] = None

	@property
	def process_id(self) -> int:
		return self.process.pid

	def is_alive(self) -> bool:
		return self.process.returncode is None


def _failure_for(event: Error) -> VpnError:
	if event.kind is ErrorKind.AUTHENTICATION:
		return AuthenticationFailure(event.raw_output)
	return ConnectionFailure(event.kind.value, event.raw_output)


class ProcessConnector:
	"""Spawn, monitor and stop the VPN client executable.

	Output from stdout and stderr is classified line by line and published on
	:attr:`bus` in arrival order. The connector is the only writer of the
	persisted :class:`ConnectionState`.
	"""

	def __init__(
		self,
		config: ConnectorConfig | None = None,
		*,
		state_store: StateStore | None = None,
		bus: EventBus | None = None,
		classifier: OutputClassifier | None = None,
		metrics: MetricsLogger | None = None,
	) -> None:
		self.config = config or ConnectorConfig()
		self.state_store = state_store or StateStore()
		self.bus = bus or EventBus()
		self.metrics = metrics
		self._classifier = classifier or OutputClassifier()
		self._handle: Optional[ProcessHandle] = None
		self._lock = asyncio.Lock()

	# ------------------------------------------------------------------
	# Public API
	# ------------------------------------------------------------------
	@property
	def handle(self) -> Optional[ProcessHandle]:
		return self._handle

	@property
	def interpreter(self) -> Optional[LineInterpreter]:
		return self._handle.interpreter if self._handle is not None else None

	def is_alive(self) -> bool:
		return self._handle is not None and self._handle.is_alive()

	def has_live_session(self) -> bool:
		"""True while the tracked child runs and has not reported a disconnect."""
		handle = self._handle
		return handle is not None and handle.is_alive() and not handle.disconnect_published

	async def connect(self, args: ConnectArgs, credentials: Credentials) -> Connected:
		async with self._lock:
			if self._handle is not None:
				if self._handle.is_alive():
					raise ConnectorBusy(self._handle.process_id)
				await self._stop_handle(self._handle, DisconnectReason.PROCESS_TERMINATED)

			argv = self.config.command(args)
			self._metrics_log("connect", status="pending", extra={"server": args.server, "protocol": args.protocol})
			process = await self._spawn(argv)
			handle = ProcessHandle(
				process=process,
				spawn_time=datetime.now(timezone.utc),
				interpreter=LineInterpreter(self._classifier),
				ready=asyncio.get_running_loop().create_future(),
			)
			self._handle = handle
			logger.info("Spawned VPN client %s (PID %s)", self.config.executable, process.pid)
			handle.monitor = asyncio.create_task(self._monitor(handle), name=f"vpnkeeper-monitor-{process.pid}")
			await self._send_credentials(handle, credentials)

		try:
			event = await asyncio.wait_for(asyncio.shield(handle.ready), timeout=self.config.connect_timeout)
		except asyncio.TimeoutError:
			logger.warning("No connection confirmation within %.1fs, terminating PID %s", self.config.connect_timeout, handle.process_id)
			self._metrics_log("connect", status="timeout", value=self.config.connect_timeout)
			await self._abort(handle, DisconnectReason.TIMEOUT)
			raise ConnectionTimeout(self.config.connect_timeout) from None
		except asyncio.CancelledError:
			await self._abort(handle, DisconnectReason.USER_REQUESTED)
			raise
		except VpnError as exc:
			self._metrics_log("connect", status="error", message=str(exc))
			await self._abort(handle, DisconnectReason.USER_REQUESTED)
			raise

		self._metrics_log("connect", status="ok", extra={"ip": event.ip, "device": event.device})
		return event

	async def disconnect(self) -> bool:
		"""Stop the tracked child, if any, and drop the persisted state.

		Returns ``True`` when a tracked process was handled. Safe to call when
		nothing is running.
		"""
		async with self._lock:
			handle = self._handle
			if handle is not None:
				await self._stop_handle(handle, DisconnectReason.USER_REQUESTED)
			self.state_store.clear()
		self._metrics_log("disconnect", status="ok", extra={"tracked": handle is not None})
		return handle is not None

	# ------------------------------------------------------------------
	# Spawning and stream monitoring
	# ------------------------------------------------------------------
	async def _spawn(self, argv: List[str]) -> asyncio.subprocess.Process:
		try:
			return await asyncio.create_subprocess_exec(
				*argv,
				stdin=asyncio.subprocess.PIPE,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
				limit=self.config.stream_limit,
			)
		except FileNotFoundError as exc:
			self._metrics_log("connect", status="spawn_error", message=str(exc))
			raise ProcessSpawnFailure(f"VPN client executable not found: {argv[0]}") from exc
		except OSError as exc:
			self._metrics_log("connect", status="spawn_error", message=str(exc))
			raise ProcessSpawnFailure(f"Failed to spawn {argv[0]}: {exc}") from exc

	async def _send_credentials(self, handle: ProcessHandle, credentials: Credentials) -> None:
		stdin = handle.process.stdin
		if stdin is None:  # pragma: no cover - spawned with PIPE
			return
		try:
			stdin.write(credentials.stdin_payload())
			await stdin.drain()
		except (BrokenPipeError, ConnectionResetError) as exc:
			# The exit itself is reported by the monitor.
			logger.warning("VPN client PID %s closed stdin before credentials were sent: %s", handle.process_id, exc)
		# stdin stays open; closing it makes some clients exit.

	async def _monitor(self, handle: ProcessHandle) -> None:
		process = handle.process
		returncode: Optional[int] = None
		try:
			await asyncio.gather(
				self._pump(process.stdout, STDOUT, handle),
				self._pump(process.stderr, STDERR, handle),
			)
			returncode = await process.wait()
		finally:
			self._on_exit(handle, returncode)

	async def _pump(self, stream: Optional[asyncio.StreamReader], name: str, handle: ProcessHandle) -> None:
		if stream is None:
			return
		while True:
			try:
				raw = await stream.readline()
			except ValueError:
				logger.debug("Dropped %s line longer than %d bytes", name, self.config.stream_limit)
				continue
			if not raw:
				return
			line = raw.decode("utf-8", errors="replace")
			logger.debug("client %s: %s", name, line.rstrip())
			self._publish(handle, handle.interpreter.feed(line, stream=name))

	def _publish(self, handle: ProcessHandle, event: ConnectionEvent) -> None:
		self.bus.publish(event)
		if self.metrics and not isinstance(event, Unrecognized):
			try:
				self.metrics.record_event(event, pid=handle.process_id)
			except Exception:  # pragma: no cover - ledger I/O must not break monitoring
				logger.debug("Metrics logging failed for %s", event.tag, exc_info=True)

		if isinstance(event, Connected):
			logger.info("VPN connected: ip=%s device=%s (PID %s)", event.ip, event.device, handle.process_id)
			self._persist(handle, event)
			if not handle.ready.done():
				handle.ready.set_result(event)
		elif isinstance(event, Error):
			if not handle.ready.done():
				handle.ready.set_exception(_failure_for(event))
			else:
				logger.warning("VPN client reported %s error: %s", event.kind.value, event.raw_output)
		elif isinstance(event, Disconnected):
			handle.disconnect_published = True
			if event.reason is DisconnectReason.SERVER_DISCONNECT:
				logger.warning("VPN server ended the session (PID %s)", handle.process_id)
				if not handle.ready.done():
					handle.ready.set_exception(ConnectionFailure(event.reason.value))

	def _persist(self, handle: ProcessHandle, event: Connected) -> None:
		state = ConnectionState(ip=event.ip, device=event.device, process_id=handle.process_id)
		try:
			self.state_store.save(state)
		except OSError:
			logger.exception("Could not persist connection state to %s", self.state_store.path)

	def _on_exit(self, handle: ProcessHandle, returncode: Optional[int]) -> None:
		reason = handle.exit_reason or DisconnectReason.PROCESS_TERMINATED
		if not handle.termination_requested:
			logger.warning("VPN client PID %s exited unexpectedly (code %s)", handle.process_id, returncode)
		if not handle.disconnect_published:
			self._publish(handle, Disconnected(reason=reason))
		if not handle.ready.done():
			if handle.termination_requested:
				handle.ready.set_exception(ConnectionAborted())
			else:
				handle.ready.set_exception(UnexpectedTermination(returncode))
		self.state_store.clear()

	# ------------------------------------------------------------------
	# Termination
	# ------------------------------------------------------------------
	async def _abort(self, handle: ProcessHandle, reason: DisconnectReason) -> None:
		if not handle.ready.done():
			handle.ready.cancel()
		async with self._lock:
			if self._handle is handle:
				await self._stop_handle(handle, reason)

	async def _stop_handle(self, handle: ProcessHandle, reason: DisconnectReason) -> None:
		if handle.is_alive():
			handle.termination_requested = True
			handle.exit_reason = reason
			await self._terminate(handle)

		monitor = handle.monitor
		if monitor is not None and not monitor.done():
			try:
				await asyncio.wait_for(asyncio.shield(monitor), timeout=self.config.termination.drain_timeout)
			except asyncio.TimeoutError:
				# A grandchild may still hold the pipes open.
				monitor.cancel()
				with contextlib.suppress(asyncio.CancelledError):
					await monitor

		if not handle.ready.done():
			handle.ready.cancel()
		stdin = handle.process.stdin
		if stdin is not None:
			stdin.close()
		self._handle = None

	async def _terminate(self, handle: ProcessHandle) -> None:
		policy = self.config.termination
		pid = handle.process_id

		logger.info("Sending SIGTERM to VPN client PID %s", pid)
		if not await self._signal(handle, signal.SIGTERM):
			return
		if await self._wait_exit(handle, policy.grace_period):
			logger.info("VPN client PID %s terminated gracefully", pid)
			return

		logger.warning("Graceful shutdown of PID %s timed out after %.1fs, sending SIGKILL", pid, policy.grace_period)
		if not await self._signal(handle, signal.SIGKILL):
			return
		if not await self._wait_exit(handle, policy.kill_wait):
			logger.error("VPN client PID %s still alive after SIGKILL", pid)

	async def _signal(self, handle: ProcessHandle, sig: signal.Signals) -> bool:
		"""Deliver ``sig``; ``False`` means the process is gone or unreachable."""
		if not handle.is_alive():
			return False
		try:
			try:
				handle.process.send_signal(sig)
			except PermissionError as exc:
				if not self.config.use_sudo:
					raise PermissionDenied(handle.process_id, sig.name) from exc
				await self._sudo_kill(handle.process_id, sig)
		except ProcessLookupError:
			return False
		except PermissionDenied as exc:
			logger.warning("%s; leaving it to the process reaper", exc)
			return False
		return True

	async def _sudo_kill(self, pid: int, sig: signal.Signals) -> None:
		proc = await asyncio.create_subprocess_exec(
			"sudo", "-n", "kill", f"-{sig.name[3:]}", str(pid),
			stdout=asyncio.subprocess.DEVNULL,
			stderr=asyncio.subprocess.DEVNULL,
		)
		if await proc.wait() != 0:
			raise PermissionDenied(pid, sig.name)

	async def _wait_exit(self, handle: ProcessHandle, timeout: float) -> bool:
		loop = asyncio.get_running_loop()
		deadline = loop.time() + timeout
		while handle.is_alive():
			remaining = deadline - loop.time()
			if remaining <= 0:
				return False
			await asyncio.sleep(min(self.config.termination.poll_interval, remaining))
		return True

	# ------------------------------------------------------------------
	# Metrics helper
	# ------------------------------------------------------------------
	def _metrics_log(
		self,
		event: str,
		*,
		status: Optional[str] = None,
		value: Optional[float] = None,
		message: Optional[str] = None,
		extra: Optional[Dict[str, Any]] = None,
	) -> None:
		if not self.metrics:
			return
		try:
			self.metrics.log(event, status=status, value=value, message=message, extra=extra)
		except Exception:  # pragma: no cover - ledger I/O must not break the connector
			logger.debug("Metrics logging failed for %s", event, exc_info=True)


__all__ = [
	"ConnectArgs",
	"ConnectorConfig",
	"Credentials",
	"ProcessConnector",
	"ProcessHandle",
	"SUPPORTED_PROTOCOLS",
	"TerminationPolicy",
]
