"""Automatic reconnection controller with bounded exponential backoff."""
from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from vpnkeeper.connector import ConnectArgs, Credentials, ProcessConnector
from vpnkeeper.errors import AuthenticationFailure, ConfigError, VpnError
from vpnkeeper.events import Connected, DisconnectReason, Disconnected, EventBus
from vpnkeeper.health import HealthCheckResult, HealthProber
from vpnkeeper.metrics import MetricsLogger

logger = logging.getLogger(__name__)

CredentialsProvider = Callable[[], Union[Credentials, Awaitable[Credentials]]]

_UNEXPECTED_REASONS = frozenset({DisconnectReason.PROCESS_TERMINATED, DisconnectReason.SERVER_DISCONNECT})


class ControllerState(str, Enum):
    IDLE = "idle"
    MONITORING = "monitoring"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(slots=True)
class ReconnectionPolicy:
    base_interval: float = 5.0
    multiplier: float = 2.0
    max_interval: float = 60.0
    max_attempts: int = 5
    failure_threshold: int = 3

    def interval_for(self, attempt_count: int) -> float:
        """Delay before the attempt that follows ``attempt_count`` failures."""
        try:
            delay = self.base_interval * self.multiplier ** attempt_count
        except OverflowError:
            return self.max_interval
        return min(delay, self.max_interval)

    def validate(self) -> "ReconnectionPolicy":
        if not 1 <= self.max_attempts <= 20:
            raise ConfigError(f"max_attempts must be between 1 and 20, got {self.max_attempts}")
        if not 1 <= self.base_interval <= 300:
            raise ConfigError(f"base_interval must be between 1 and 300 seconds, got {self.base_interval}")
        if not 1 <= self.multiplier <= 10:
            raise ConfigError(f"multiplier must be between 1 and 10, got {self.multiplier}")
        if self.max_interval < self.base_interval:
            raise ConfigError(
                f"max_interval ({self.max_interval}) must be >= base_interval ({self.base_interval})"
            )
        if not 1 <= self.failure_threshold <= 10:
            raise ConfigError(f"failure_threshold must be between 1 and 10, got {self.failure_threshold}")
        return self


@dataclass(slots=True)
class RetryState:
    attempt_count: int = 0
    current_interval: float = 0.0
    consecutive_health_failures: int = 0
    last_attempt_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_count": self.attempt_count,
            "current_interval": self.current_interval,
            "consecutive_health_failures": self.consecutive_health_failures,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
        }


class ReconnectionController:
    """Watch one connection and re-establish it when it degrades.

    Health probe failures past the threshold, or an unexpected ``Disconnected``
    on the event bus, start a reconnection cycle. Only one cycle runs at a
    time; after ``max_attempts`` failed attempts the controller parks in
    ``failed`` until :meth:`reset` is called.
    """

    def __init__(
        self,
        connector: ProcessConnector,
        policy: ReconnectionPolicy,
        args: ConnectArgs,
        credentials_provider: CredentialsProvider,
        *,
        prober: Optional[HealthProber] = None,
        bus: Optional[EventBus] = None,
        metrics: Optional[MetricsLogger] = None,
    ) -> None:
        self.connector = connector
        self.policy = policy
        self.args = args
        self.prober = prober
        self.bus = bus or connector.bus
        self.metrics = metrics
        self._credentials_provider = credentials_provider
        self._state = ControllerState.IDLE
        self._retry = RetryState(current_interval=policy.interval_for(0))
        self._cycle: Optional[asyncio.Task[None]] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # State inspection
    # ------------------------------------------------------------------
    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def in_flight(self) -> bool:
        return self._cycle is not None and not self._cycle.done()

    def snapshot(self) -> RetryState:
        return dataclasses.replace(self._retry)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def arm(self) -> None:
        self._reset_counters()
        self.last_error = None
        self._transition(ControllerState.MONITORING, "armed")

    def reset(self) -> None:
        """Clear retry counters and re-arm a failed controller."""
        self._reset_counters()
        self.last_error = None
        if self._state is ControllerState.FAILED:
            self._transition(ControllerState.MONITORING, "reset")

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        await self._cancel_cycle()
        self._transition(ControllerState.IDLE, "stopped")

    async def wait_for_cycle(self) -> None:
        """Wait for the in-flight reconnection cycle, if any, to finish."""
        if self._cycle is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.shield(self._cycle)

    async def handle_probe_result(self, result: HealthCheckResult) -> None:
        if self._state is not ControllerState.MONITORING:
            return
        await self._log(
            "health_probe",
            status="ok" if result.success else "error",
            value=result.latency,
            message=result.error,
        )
        if result.success:
            self._retry.consecutive_health_failures = 0
            return
        self._retry.consecutive_health_failures += 1
        logger.warning(
            "Health probe failed (%d/%d): %s",
            self._retry.consecutive_health_failures,
            self.policy.failure_threshold,
            result.error,
        )
        if self._retry.consecutive_health_failures >= self.policy.failure_threshold:
            self._start_cycle("health_check")

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Drive the probe loop and the event watcher until stopped."""
        stop_event = stop_event or asyncio.Event()
        self._stop_event = stop_event
        tasks = [asyncio.create_task(self._watch_bus(stop_event), name="vpnkeeper-bus-watch")]
        if self.prober is not None:
            tasks.append(
                asyncio.create_task(
                    self.prober.run(self.handle_probe_result, stop_event),
                    name="vpnkeeper-health-probe",
                )
            )
        await self._log("monitor_start", status="pending")
        try:
            await stop_event.wait()
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            await self._cancel_cycle()
            await self._log("monitor_stop", status="ok")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _reset_counters(self) -> None:
        self._retry.attempt_count = 0
        self._retry.consecutive_health_failures = 0
        self._retry.current_interval = self.policy.interval_for(0)

    def _transition(self, state: ControllerState, reason: str) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        if state is ControllerState.FAILED:
            logger.error("Reconnection controller failed (%s); waiting for reset", reason)
        else:
            logger.info("Reconnection controller %s -> %s (%s)", previous.value, state.value, reason)
        if self.metrics:
            try:
                self.metrics.log(
                    "controller_state",
                    status=state.value,
                    message=reason,
                    extra={"previous": previous.value, **self._retry.to_dict()},
                )
            except Exception:  # pragma: no cover - I/O failure safeguard
                logger.debug("Metrics logging failed for controller_state", exc_info=True)

    def _start_cycle(self, trigger: str) -> None:
        if self.in_flight:
            logger.debug("Reconnection already in flight, ignoring %s trigger", trigger)
            return
        self._transition(ControllerState.RECONNECTING, trigger)
        self._cycle = asyncio.create_task(self._reconnect_cycle(), name="vpnkeeper-reconnect")
        self._cycle.add_done_callback(self._cycle_finished)

    def _cycle_finished(self, task: "asyncio.Task[None]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Reconnection cycle crashed", exc_info=exc)
            self.last_error = str(exc)
            self._transition(ControllerState.FAILED, "crashed")

    async def _cancel_cycle(self) -> None:
        task, self._cycle = self._cycle, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _credentials(self) -> Credentials:
        credentials = self._credentials_provider()
        if inspect.isawaitable(credentials):
            credentials = await credentials
        return credentials

    async def _reconnect_cycle(self) -> None:
        while self._state is ControllerState.RECONNECTING:
            await self.connector.disconnect()

            delay = self.policy.interval_for(self._retry.attempt_count)
            self._retry.current_interval = delay
            logger.info(
                "Reconnecting in %.1fs (attempt %d/%d)",
                delay,
                self._retry.attempt_count + 1,
                self.policy.max_attempts,
            )
            await asyncio.sleep(delay)

            self._retry.last_attempt_at = datetime.now(timezone.utc)
            attempt = self._retry.attempt_count + 1
            await self._log("reconnect_attempt", status="pending", value=delay, extra={"attempt": attempt})
            try:
                credentials = await self._credentials()
                event = await self.connector.connect(self.args, credentials)
            except VpnError as exc:
                self.last_error = str(exc)
                await self._log("reconnect_attempt", status="error", message=str(exc), extra={"attempt": attempt})
                if isinstance(exc, AuthenticationFailure) or not exc.retryable:
                    self._transition(ControllerState.FAILED, exc.__class__.__name__)
                    return
                self._retry.attempt_count += 1
                self._retry.current_interval = self.policy.interval_for(self._retry.attempt_count)
                logger.warning("Reconnection attempt %d failed: %s", attempt, exc)
                if self._retry.attempt_count >= self.policy.max_attempts:
                    self._transition(ControllerState.FAILED, "max_attempts")
                    return
                continue

            await self._log(
                "reconnect_attempt",
                status="ok",
                extra={"attempt": attempt, "ip": event.ip, "device": event.device},
            )
            self._reset_counters()
            self.last_error = None
            self._transition(ControllerState.MONITORING, "reconnected")

    async def _watch_bus(self, stop_event: asyncio.Event) -> None:
        queue = self.bus.subscribe()
        try:
            while not stop_event.is_set():
                event = await queue.get()
                if isinstance(event, Connected):
                    self._retry.attempt_count = 0
                elif isinstance(event, Disconnected) and event.reason in _UNEXPECTED_REASONS:
                    # A healthy current session means the event belongs to a replaced incarnation.
                    if self._state is ControllerState.MONITORING and not self.connector.has_live_session():
                        self._start_cycle(event.reason.value)
        finally:
            self.bus.unsubscribe(queue)

    async def _log(
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
        payload: Dict[str, Any] = {"server": self.args.server}
        if extra:
            payload.update(extra)
        try:
            await self.metrics.log_async(
                event,
                status=status,
                value=value,
                message=message,
                extra=payload,
            )
        except Exception:  # pragma: no cover - I/O failure safeguard
            logger.debug("Metrics logging failed for %s", event, exc_info=True)


__all__ = [
    "ControllerState",
    "CredentialsProvider",
    "ReconnectionController",
    "ReconnectionPolicy",
    "RetryState",
]
