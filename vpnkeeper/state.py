"""Persisted descriptor of the currently established VPN connection."""
from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_STATE_PATH = Path("/tmp/vpnkeeper_state.json")
STATE_PATH_ENV = "VPNKEEPER_STATE_FILE"


def default_state_path() -> Path:
    return Path(os.getenv(STATE_PATH_ENV, str(DEFAULT_STATE_PATH)))


@dataclass(slots=True)
class ConnectionState:
    """Record written when the client reports ``Connected``."""

    ip: Optional[str]
    device: Optional[str]
    process_id: int
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "device": self.device,
            "connected_at": self.connected_at.isoformat(),
            "pid": self.process_id,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ConnectionState":
        connected_at = datetime.fromisoformat(str(payload["connected_at"]))
        if connected_at.tzinfo is None:
            connected_at = connected_at.replace(tzinfo=timezone.utc)
        return cls(
            ip=payload.get("ip"),
            device=payload.get("device"),
            process_id=int(payload["pid"]),
            connected_at=connected_at,
        )

    def uptime(self, now: Optional[datetime] = None) -> float:
        current = now or datetime.now(timezone.utc)
        return max(0.0, (current - self.connected_at).total_seconds())


class StateStore:
    """JSON file holding at most one :class:`ConnectionState`.

    Saves go through a temporary file and ``os.replace`` so readers never see
    a half-written record.
    """

    def __init__(self, path: Union[str, Path, None] = None) -> None:
        self.path = Path(path) if path is not None else default_state_path()

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[ConnectionState]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Could not read state file %s: %s", self.path, exc)
            return None
        try:
            return ConnectionState.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring corrupt state file %s: %s", self.path, exc)
            return None

    def save(self, state: ConnectionState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".vpnkeeper-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(state.to_dict(), handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise
        logger.debug("Saved connection state to %s (PID %s)", self.path, state.process_id)

    def clear(self) -> bool:
        """Remove the record; returns ``True`` if one existed."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Removed connection state %s", self.path)
        return True


__all__ = ["ConnectionState", "StateStore", "DEFAULT_STATE_PATH", "default_state_path"]
