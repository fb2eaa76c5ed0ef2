"""Tests for the HTTP health prober using a fake requests session."""
from __future__ import annotations

import asyncio
import unittest
from types import SimpleNamespace
from typing import Any, List

import requests

from vpnkeeper.errors import ConfigError
from vpnkeeper.health import HealthCheckResult, HealthProber


class _FakeSession:
    def __init__(self, outcomes: List[Any]) -> None:
        self._outcomes = list(outcomes)
        self.calls: List[dict] = []
        self.closed = False

    def get(self, url: str, **kwargs: Any) -> Any:
        self.calls.append({"url": url, **kwargs})
        outcome = self._outcomes.pop(0) if self._outcomes else 200
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(status_code=outcome, close=lambda: None)

    def close(self) -> None:
        self.closed = True


class HealthProberTest(unittest.IsolatedAsyncioTestCase):
    async def test_any_http_response_is_success(self) -> None:
        session = _FakeSession([503])
        prober = HealthProber("https://intranet.example.com/ping", timeout=2.5, session=session)

        result = await prober.probe()

        self.assertTrue(result.success)
        self.assertEqual(result.status_code, 503)
        self.assertIsNone(result.error)
        self.assertEqual(len(session.calls), 1)
        self.assertEqual(session.calls[0]["timeout"], 2.5)

    async def test_timeouts_and_connection_errors_are_failures(self) -> None:
        session = _FakeSession([requests.ConnectTimeout("timed out"), requests.ConnectionError("refused")])
        prober = HealthProber("http://10.0.0.1/", session=session)

        first = await prober.probe()
        second = await prober.probe()

        self.assertFalse(first.success)
        self.assertIn("timed out", first.error)
        self.assertFalse(second.success)
        self.assertIn("refused", second.error)
        self.assertEqual(len(session.calls), 2)

    async def test_run_probes_until_stopped(self) -> None:
        session = _FakeSession([200, 200, 200])
        prober = HealthProber("http://10.0.0.1/", interval=0.01, session=session)
        stop_event = asyncio.Event()
        results: List[HealthCheckResult] = []

        async def callback(result: HealthCheckResult) -> None:
            results.append(result)
            if len(results) == 3:
                stop_event.set()

        await asyncio.wait_for(prober.run(callback, stop_event), timeout=5.0)

        self.assertEqual(len(results), 3)
        self.assertTrue(all(result.success for result in results))

    def test_endpoint_must_be_http(self) -> None:
        for endpoint in ("ftp://example.com", "example.com", "https://"):
            with self.subTest(endpoint=endpoint):
                with self.assertRaises(ConfigError):
                    HealthProber(endpoint, session=_FakeSession([]))

    def test_close_closes_session(self) -> None:
        session = _FakeSession([])
        HealthProber("http://10.0.0.1/", session=session).close()
        self.assertTrue(session.closed)


if __name__ == "__main__":
    unittest.main()
