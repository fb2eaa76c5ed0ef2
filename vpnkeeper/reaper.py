"""Best-effort cleanup of orphaned VPN client processes."""
from __future__ import annotations

import asyncio
import logging
import os
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

import psutil

logger = logging.getLogger(__name__)

_ATTRS = ["pid", "name", "cmdline"]


class ReapOutcome(str, Enum):
    TERMINATED = "terminated"
    KILLED = "killed"
    GONE = "gone"
    DENIED = "denied"
    SURVIVED = "survived"
    MISMATCH = "mismatch"

    @property
    def counted(self) -> bool:
        return self in (ReapOutcome.TERMINATED, ReapOutcome.KILLED)


class ProcessReaper:
    """Find client processes by executable name and stop them.

    Processes that vanish mid-sweep count as success but not as terminations.
    Permission problems are logged and skipped so one stubborn process never
    aborts the sweep.
    """

    def __init__(
        self,
        executable_name: str = "openconnect",
        *,
        grace_period: float = 5.0,
        kill_wait: float = 0.5,
        process_iter: Optional[Callable[..., Iterable[psutil.Process]]] = None,
    ) -> None:
        self.executable_name = os.path.basename(executable_name)
        self.grace_period = grace_period
        self.kill_wait = kill_wait
        self._process_iter = process_iter or psutil.process_iter
        self.last_report: Dict[int, ReapOutcome] = {}

    def _matches(self, info: dict) -> bool:
        if info.get("name") == self.executable_name:
            return True
        cmdline = info.get("cmdline") or []
        return bool(cmdline) and os.path.basename(cmdline[0]) == self.executable_name

    def find(self) -> List[psutil.Process]:
        own_pid = os.getpid()
        found: List[psutil.Process] = []
        for proc in self._process_iter(_ATTRS):
            try:
                info = proc.info
                if info.get("pid") == own_pid:
                    continue
                if self._matches(info):
                    found.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return found

    async def sweep(self) -> int:
        """Terminate every matching process; returns how many were stopped."""
        candidates = await asyncio.to_thread(self.find)
        report: Dict[int, ReapOutcome] = {}
        for proc in candidates:
            report[proc.pid] = await self._reap(proc)
        self.last_report = report
        terminated = sum(1 for outcome in report.values() if outcome.counted)
        if candidates:
            logger.info(
                "Reaper sweep for %s: %d candidate(s), %d terminated",
                self.executable_name,
                len(candidates),
                terminated,
            )
        else:
            logger.debug("Reaper sweep for %s found nothing", self.executable_name)
        return terminated

    async def terminate_pid(self, pid: int) -> ReapOutcome:
        """Stop a single known pid, provided it still runs our executable."""
        if pid == os.getpid():
            raise ValueError("refusing to terminate the current process")
        try:
            proc = psutil.Process(pid)
            info = {"pid": pid, "name": proc.name(), "cmdline": proc.cmdline()}
        except psutil.NoSuchProcess:
            outcome = ReapOutcome.GONE
        except psutil.AccessDenied:
            logger.warning("Permission denied inspecting PID %s; run cleanup with elevated privileges", pid)
            outcome = ReapOutcome.DENIED
        else:
            if self._matches(info):
                outcome = await self._reap(proc)
            else:
                logger.warning("PID %s is no longer %s (%s); leaving it alone", pid, self.executable_name, info["name"])
                outcome = ReapOutcome.MISMATCH
        self.last_report = {pid: outcome}
        return outcome

    async def _reap(self, proc: psutil.Process) -> ReapOutcome:
        pid = proc.pid
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            return ReapOutcome.GONE
        except psutil.AccessDenied:
            logger.warning("Permission denied sending SIGTERM to PID %s; run cleanup with elevated privileges", pid)
            return ReapOutcome.DENIED

        try:
            await asyncio.to_thread(proc.wait, self.grace_period)
            logger.info("Terminated %s PID %s", self.executable_name, pid)
            return ReapOutcome.TERMINATED
        except psutil.NoSuchProcess:
            return ReapOutcome.TERMINATED
        except psutil.TimeoutExpired:
            logger.warning("PID %s ignored SIGTERM for %.1fs, sending SIGKILL", pid, self.grace_period)

        try:
            proc.kill()
        except psutil.NoSuchProcess:
            return ReapOutcome.TERMINATED
        except psutil.AccessDenied:
            logger.warning("Permission denied sending SIGKILL to PID %s", pid)
            return ReapOutcome.DENIED

        try:
            await asyncio.to_thread(proc.wait, self.kill_wait)
        except psutil.NoSuchProcess:
            pass
        except psutil.TimeoutExpired:
            logger.error("PID %s still alive after SIGKILL", pid)
            return ReapOutcome.SURVIVED
        logger.info("Killed %s PID %s", self.executable_name, pid)
        return ReapOutcome.KILLED


__all__ = ["ProcessReaper", "ReapOutcome"]
