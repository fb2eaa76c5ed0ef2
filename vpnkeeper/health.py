"""Periodic HTTP reachability probe through the tunnel."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import monotonic
from typing import Awaitable, Callable, Optional, Union
from urllib.parse import urlparse

import requests

from vpnkeeper.errors import ConfigError, ProbeFailure

logger = logging.getLogger(__name__)

ProbeCallback = Callable[["HealthCheckResult"], Union[None, Awaitable[None]]]


@dataclass(slots=True)
class HealthCheckResult:
    success: bool
    latency: float
    error: Optional[str] = None
    status_code: Optional[int] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "latency": round(self.latency, 4),
            "error": self.error,
            "status_code": self.status_code,
        }


def validate_endpoint(endpoint: str) -> str:
    parsed = urlparse(endpoint)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"health endpoint must be an http(s) URL, got {endpoint!r}")
    return endpoint


class HealthProber:
    """Issue one GET per check; any HTTP response counts as reachable.

    ``requests`` is blocking, so each request runs in a worker thread.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        interval: float = 60.0,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.endpoint = validate_endpoint(endpoint)
        self.interval = interval
        self.timeout = timeout
        self._session = session or requests.Session()

    def _get(self) -> int:
        try:
            response = self._session.get(self.endpoint, timeout=self.timeout, allow_redirects=False)
        except requests.RequestException as exc:
            raise ProbeFailure(self.endpoint, str(exc) or exc.__class__.__name__) from exc
        status = response.status_code
        response.close()
        return status

    async def probe(self) -> HealthCheckResult:
        started = monotonic()
        try:
            status = await asyncio.to_thread(self._get)
        except ProbeFailure as exc:
            result = HealthCheckResult(success=False, latency=monotonic() - started, error=exc.reason)
            logger.debug("Health probe failed: %s", exc)
            return result
        result = HealthCheckResult(success=True, latency=monotonic() - started, status_code=status)
        logger.debug("Health probe ok (%s) in %.3fs", status, result.latency)
        return result

    async def run(self, callback: ProbeCallback, stop_event: asyncio.Event) -> None:
        """Probe every ``interval`` seconds until ``stop_event`` is set."""
        while not stop_event.is_set():
            result = await self.probe()
            outcome = callback(result)
            if asyncio.iscoroutine(outcome):
                await outcome
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def close(self) -> None:
        self._session.close()


__all__ = ["HealthCheckResult", "HealthProber", "validate_endpoint"]
