"""Top-level connect/disconnect/status/reset operations.

:class:`VpnSupervisor` wires the connector, reconnection controller, health
prober and process reaper together for a single VPN profile. The API and CLI
are thin layers over it.
"""
from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import psutil

from vpnkeeper.config import Settings
from vpnkeeper.connector import ConnectArgs, Credentials, ProcessConnector
from vpnkeeper.errors import AlreadyConnected, ConfigError
from vpnkeeper.events import Connected, ConnectionEvent, EventBus
from vpnkeeper.health import HealthProber
from vpnkeeper.metrics import MetricsLogger
from vpnkeeper.reaper import ProcessReaper, ReapOutcome
from vpnkeeper.reconnect import (
    ControllerState,
    CredentialsProvider,
    ReconnectionController,
    RetryState,
)
from vpnkeeper.state import ConnectionState, StateStore

logger = logging.getLogger(__name__)


def process_alive(pid: int) -> bool:
    """True when ``pid`` exists and is not a zombie."""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists, owned by someone else (typically root via sudo).
        return True


@dataclass(slots=True)
class DisconnectReport:
    tracked_stopped: bool = False
    persisted_pid: Optional[int] = None
    persisted_outcome: Optional[ReapOutcome] = None
    reaped: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tracked_stopped": self.tracked_stopped,
            "persisted_pid": self.persisted_pid,
            "persisted_outcome": self.persisted_outcome.value if self.persisted_outcome else None,
            "reaped": self.reaped,
        }


@dataclass(slots=True)
class StatusSnapshot:
    connected: bool
    state: Optional[ConnectionState]
    process_alive: bool
    controller: ControllerState
    retry: RetryState
    last_event: Optional[ConnectionEvent] = None
    last_error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "connected": self.connected,
            "process_alive": self.process_alive,
            "controller": self.controller.value,
            "retry": self.retry.to_dict(),
            "last_event": self.last_event.to_dict() if self.last_event else None,
            "last_error": self.last_error,
        }
        if self.state is not None:
            payload.update(self.state.to_dict())
            payload["uptime"] = round(self.state.uptime(), 1)
        payload.update(self.extra)
        return payload


class VpnSupervisor:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        credentials_provider: Optional[CredentialsProvider] = None,
        *,
        connector: Optional[ProcessConnector] = None,
        reaper: Optional[ProcessReaper] = None,
        prober: Optional[HealthProber] = None,
        metrics: Optional[MetricsLogger] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.credentials_provider = credentials_provider
        if metrics is None and self.settings.metrics_log is not None:
            metrics = MetricsLogger(self.settings.metrics_log)
        self.metrics = metrics
        self.state_store = connector.state_store if connector else StateStore(self.settings.state_file)
        self.connector = connector or ProcessConnector(
            self.settings.connector_config(),
            state_store=self.state_store,
            bus=bus,
            metrics=metrics,
        )
        self.bus = self.connector.bus
        self.reaper = reaper or ProcessReaper(self.settings.executable)
        if prober is None and self.settings.health_endpoint:
            prober = HealthProber(
                self.settings.health_endpoint,
                interval=self.settings.health_interval,
                timeout=self.settings.health_timeout,
            )
        self.prober = prober
        self.controller: Optional[ReconnectionController] = None
        self._monitor_task: Optional[asyncio.Task[None]] = None
        self._lock = asyncio.Lock()

    async def connect(
        self,
        args: ConnectArgs,
        *,
        credentials: Optional[Credentials] = None,
        force: bool = False,
    ) -> Connected:
        """Establish the tunnel and arm automatic reconnection.

        ``credentials`` overrides the configured provider for this connection
        and for every reconnection attempt it triggers.
        """
        if credentials is not None:
            provider: CredentialsProvider = lambda: credentials
        elif self.credentials_provider is not None:
            provider = self.credentials_provider
        else:
            raise ConfigError("no credentials supplied and no credentials provider configured")

        async with self._lock:
            await self._clear_previous(force)
            await self._stop_monitoring()

            controller = ReconnectionController(
                self.connector,
                self.settings.policy(),
                args,
                provider,
                prober=self.prober,
                bus=self.bus,
                metrics=self.metrics,
            )
            self.controller = controller

            secret = provider()
            if inspect.isawaitable(secret):
                secret = await secret
            event = await self.connector.connect(args, secret)

            controller.arm()
            self._monitor_task = asyncio.create_task(controller.run(), name="vpnkeeper-controller")
            if self.prober is None:
                logger.info("No health endpoint configured; reconnecting on process exit only")
            return event

    async def disconnect(self) -> DisconnectReport:
        """Stop everything; always ends with a reaper sweep."""
        async with self._lock:
            report = DisconnectReport()
            await self._stop_monitoring()

            record = self.state_store.load()
            handle = self.connector.handle
            tracked_pid = handle.process_id if handle is not None else None

            report.tracked_stopped = await self.connector.disconnect()
            if record is not None and record.process_id != tracked_pid and record.process_id != os.getpid():
                report.persisted_pid = record.process_id
                report.persisted_outcome = await self.reaper.terminate_pid(record.process_id)
            self.state_store.clear()

            report.reaped = await self.reaper.sweep()
            if self.metrics:
                try:
                    await self.metrics.log_async("supervisor_disconnect", status="ok", extra=report.to_dict())
                except Exception:  # pragma: no cover - I/O failure safeguard
                    logger.debug("Metrics logging failed for supervisor_disconnect", exc_info=True)
            logger.info("Disconnected: %s", report.to_dict())
            return report

    def status(self) -> StatusSnapshot:
        record = self.state_store.load()
        alive = process_alive(record.process_id) if record is not None else False
        controller = self.controller
        return StatusSnapshot(
            connected=record is not None and alive,
            state=record,
            process_alive=alive,
            controller=controller.state if controller else ControllerState.IDLE,
            retry=controller.snapshot() if controller else RetryState(),
            last_event=self.bus.last_terminal(),
            last_error=controller.last_error if controller else None,
        )

    def reset(self) -> RetryState:
        """Clear a failed controller and its retry counters."""
        if self.controller is None:
            return RetryState()
        self.controller.reset()
        return self.controller.snapshot()

    async def close(self) -> None:
        await self._stop_monitoring()
        if self.prober is not None:
            self.prober.close()

    async def _clear_previous(self, force: bool) -> None:
        record = self.state_store.load()
        handle = self.connector.handle
        live_pid: Optional[int] = None
        if handle is not None and handle.is_alive():
            live_pid = handle.process_id
        elif record is not None and process_alive(record.process_id):
            live_pid = record.process_id

        if live_pid is not None:
            if not force:
                raise AlreadyConnected(live_pid, record.ip if record else None)
            logger.warning("Forcing reconnect; tearing down PID %s", live_pid)
            await self._stop_monitoring()
            await self.connector.disconnect()
            if record is not None and record.process_id != os.getpid():
                await self.reaper.terminate_pid(record.process_id)
            self.state_store.clear()
        elif record is not None:
            logger.info("Removing stale connection record for PID %s", record.process_id)
            self.state_store.clear()

    async def _stop_monitoring(self) -> None:
        controller, task = self.controller, self._monitor_task
        self._monitor_task = None
        if controller is not None:
            await controller.stop()
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


__all__ = ["DisconnectReport", "StatusSnapshot", "VpnSupervisor", "process_alive"]
