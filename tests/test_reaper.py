"""Tests for orphaned client cleanup using fake psutil processes."""
from __future__ import annotations

import os
import unittest
from typing import Any, List, Optional
from unittest.mock import patch

import psutil

from vpnkeeper.reaper import ProcessReaper, ReapOutcome


class _FakeProcess:
    def __init__(
        self,
        pid: int,
        name: str = "openconnect",
        cmdline: Optional[List[str]] = None,
        *,
        ignores_term: bool = False,
        vanished: bool = False,
        denied: bool = False,
    ) -> None:
        self.pid = pid
        self.info = {"pid": pid, "name": name, "cmdline": cmdline if cmdline is not None else [name]}
        self.ignores_term = ignores_term
        self.vanished = vanished
        self.denied = denied
        self.signals: List[str] = []

    def name(self) -> str:
        return self.info["name"]

    def cmdline(self) -> List[str]:
        return self.info["cmdline"]

    def _send(self, sig: str) -> None:
        if self.vanished:
            raise psutil.NoSuchProcess(self.pid)
        if self.denied:
            raise psutil.AccessDenied(self.pid)
        self.signals.append(sig)

    def terminate(self) -> None:
        self._send("TERM")

    def kill(self) -> None:
        self._send("KILL")

    def wait(self, timeout: Optional[float] = None) -> None:
        if self.ignores_term and self.signals == ["TERM"]:
            raise psutil.TimeoutExpired(timeout, pid=self.pid)
        return None


def _iter(processes: List[_FakeProcess]):
    def process_iter(attrs: Any = None):
        return iter(processes)

    return process_iter


class ProcessReaperTest(unittest.IsolatedAsyncioTestCase):
    async def test_sweep_with_no_candidates_reports_zero(self) -> None:
        reaper = ProcessReaper(process_iter=_iter([]))
        self.assertEqual(await reaper.sweep(), 0)
        self.assertEqual(reaper.last_report, {})

    async def test_sweep_matches_by_name_and_argv0(self) -> None:
        by_name = _FakeProcess(101)
        by_argv = _FakeProcess(102, name="sudo-helper", cmdline=["/usr/sbin/openconnect", "--protocol", "f5"])
        unrelated = _FakeProcess(103, name="sshd", cmdline=["/usr/sbin/sshd"])
        reaper = ProcessReaper("openconnect", process_iter=_iter([by_name, by_argv, unrelated]))

        self.assertEqual(await reaper.sweep(), 2)
        self.assertEqual(reaper.last_report, {101: ReapOutcome.TERMINATED, 102: ReapOutcome.TERMINATED})
        self.assertEqual(unrelated.signals, [])

    async def test_sweep_skips_current_process(self) -> None:
        me = _FakeProcess(os.getpid())
        reaper = ProcessReaper(process_iter=_iter([me]))
        self.assertEqual(await reaper.sweep(), 0)
        self.assertEqual(me.signals, [])

    async def test_stubborn_process_is_killed(self) -> None:
        stubborn = _FakeProcess(201, ignores_term=True)
        reaper = ProcessReaper(grace_period=0.01, kill_wait=0.01, process_iter=_iter([stubborn]))

        self.assertEqual(await reaper.sweep(), 1)
        self.assertEqual(stubborn.signals, ["TERM", "KILL"])
        self.assertEqual(reaper.last_report[201], ReapOutcome.KILLED)

    async def test_vanished_and_denied_processes_are_not_counted(self) -> None:
        gone = _FakeProcess(301, vanished=True)
        denied = _FakeProcess(302, denied=True)
        fine = _FakeProcess(303)
        reaper = ProcessReaper(process_iter=_iter([gone, denied, fine]))

        with self.assertLogs("vpnkeeper.reaper", level="WARNING"):
            count = await reaper.sweep()

        self.assertEqual(count, 1)
        self.assertEqual(
            reaper.last_report,
            {301: ReapOutcome.GONE, 302: ReapOutcome.DENIED, 303: ReapOutcome.TERMINATED},
        )

    async def test_terminate_pid_handles_missing_process(self) -> None:
        reaper = ProcessReaper()
        with patch("vpnkeeper.reaper.psutil.Process", side_effect=psutil.NoSuchProcess(401)):
            self.assertEqual(await reaper.terminate_pid(401), ReapOutcome.GONE)

    async def test_terminate_pid_leaves_reused_pid_alone(self) -> None:
        other = _FakeProcess(402, name="postgres", cmdline=["postgres"])
        reaper = ProcessReaper()
        with patch("vpnkeeper.reaper.psutil.Process", return_value=other):
            self.assertEqual(await reaper.terminate_pid(402), ReapOutcome.MISMATCH)
        self.assertEqual(other.signals, [])

    async def test_terminate_pid_stops_matching_process(self) -> None:
        target = _FakeProcess(403)
        reaper = ProcessReaper()
        with patch("vpnkeeper.reaper.psutil.Process", return_value=target):
            self.assertEqual(await reaper.terminate_pid(403), ReapOutcome.TERMINATED)
        self.assertEqual(target.signals, ["TERM"])

    async def test_terminate_pid_refuses_current_process(self) -> None:
        with self.assertRaises(ValueError):
            await ProcessReaper().terminate_pid(os.getpid())


if __name__ == "__main__":
    unittest.main()
