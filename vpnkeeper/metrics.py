"""CSV ledger of supervisor lifecycle records.

Connect attempts, classified client output, probe results and controller
transitions are appended as rows so an operator (or the ``/events``
websocket) can follow what the supervisor did without parsing free-form logs.
"""
from __future__ import annotations

import asyncio
import csv
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from vpnkeeper.events import ConnectionEvent

LEDGER_FIELDS: Sequence[str] = (
    "timestamp",
    "event",
    "status",
    "value",
    "message",
    "extra",
)

# Field names that must never reach the ledger even if a caller passes them.
_REDACTED_KEYS = frozenset({"secret", "password", "passwd", "otp", "token", "credentials"})


def _encode_extra(extra: Mapping[str, Any]) -> str:
    if not extra:
        return ""
    cleaned = {
        key: ("<redacted>" if key.lower() in _REDACTED_KEYS else value)
        for key, value in extra.items()
    }
    try:
        return json.dumps(cleaned, separators=(",", ":"), ensure_ascii=True, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return repr(cleaned)


class MetricsLogger:
    """Append-only CSV writer, safe to share between tasks and threads."""

    def __init__(
        self,
        path: str | Path,
        *,
        static_extra: Mapping[str, Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path)
        self.fields: Sequence[str] = LEDGER_FIELDS
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._static_extra: Dict[str, Any] = dict(static_extra or {})
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_header()

    def _ensure_header(self) -> None:
        if self.path.exists() and self.path.stat().st_size > 0:
            return
        with self._lock, self.path.open("w", newline="", encoding="utf-8") as handle:
            csv.DictWriter(handle, fieldnames=self.fields).writeheader()

    def log(
        self,
        event: str,
        *,
        status: Optional[str] = None,
        value: Optional[float] = None,
        message: Optional[str] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        merged: Dict[str, Any] = dict(self._static_extra)
        if extra:
            merged.update(extra)
        row = {
            "timestamp": self._clock().astimezone(timezone.utc).isoformat(timespec="milliseconds"),
            "event": event,
            "status": status or "",
            "value": "" if value is None else value,
            "message": message or "",
            "extra": _encode_extra(merged),
        }
        with self._lock, self.path.open("a", newline="", encoding="utf-8") as handle:
            csv.DictWriter(handle, fieldnames=self.fields).writerow(row)

    async def log_async(self, event: str, **kwargs: Any) -> None:
        await asyncio.to_thread(self.log, event, **kwargs)

    def record_event(self, event: ConnectionEvent, **extra: Any) -> None:
        """Write one classified client event as a ledger row."""
        payload = event.to_dict()
        name = payload.pop("event")
        raw = payload.pop("raw_output", None) or payload.pop("raw_line", None)
        payload.update(extra)
        self.log(
            f"client_{name}",
            status="terminal" if event.is_terminal else "progress",
            message=raw,
            extra=payload,
        )


__all__ = ["MetricsLogger", "LEDGER_FIELDS"]
