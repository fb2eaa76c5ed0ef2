"""Typed lifecycle events emitted while supervising the VPN client."""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, ClassVar, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class DisconnectReason(str, Enum):
    USER_REQUESTED = "user_requested"
    SERVER_DISCONNECT = "server_disconnect"
    PROCESS_TERMINATED = "process_terminated"
    TIMEOUT = "timeout"


class ErrorKind(str, Enum):
    AUTHENTICATION = "authentication"
    NETWORK = "network"
    CERTIFICATE = "certificate"
    DEVICE = "device"
    DNS = "dns"


@dataclass(frozen=True, slots=True)
class ConnectionEvent:
    """Base class for every event variant."""

    tag: ClassVar[str] = "event"
    terminal: ClassVar[bool] = False

    @property
    def is_terminal(self) -> bool:
        return self.terminal

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"event": self.tag}
        for item in fields(self):
            value = getattr(self, item.name)
            payload[item.name] = value.value if isinstance(value, Enum) else value
        return payload


@dataclass(frozen=True, slots=True)
class Authenticating(ConnectionEvent):
    message: str = ""

    tag: ClassVar[str] = "authenticating"


@dataclass(frozen=True, slots=True)
class SessionEstablished(ConnectionEvent):
    message: str = ""

    tag: ClassVar[str] = "session_established"


@dataclass(frozen=True, slots=True)
class DeviceConfigured(ConnectionEvent):
    device: str
    ip: str

    tag: ClassVar[str] = "device_configured"


@dataclass(frozen=True, slots=True)
class Connected(ConnectionEvent):
    ip: Optional[str] = None
    device: Optional[str] = None

    tag: ClassVar[str] = "connected"
    terminal: ClassVar[bool] = True


@dataclass(frozen=True, slots=True)
class Disconnected(ConnectionEvent):
    reason: DisconnectReason = DisconnectReason.PROCESS_TERMINATED

    tag: ClassVar[str] = "disconnected"
    terminal: ClassVar[bool] = True


@dataclass(frozen=True, slots=True)
class Error(ConnectionEvent):
    kind: ErrorKind
    raw_output: str = ""

    tag: ClassVar[str] = "error"
    terminal: ClassVar[bool] = True


@dataclass(frozen=True, slots=True)
class Unrecognized(ConnectionEvent):
    raw_line: str

    tag: ClassVar[str] = "unrecognized"


class EventBus:
    """Ordered, multi-consumer fan-out of :class:`ConnectionEvent` values.

    Every published event is appended to :attr:`history` and pushed to each
    subscriber queue in publication order. Publishing never blocks; subscriber
    queues are unbounded so a slow consumer cannot stall the stream monitor.
    """

    def __init__(self, *, history_limit: int = 1000) -> None:
        if history_limit <= 0:
            raise ValueError("history_limit must be positive")
        self._history: Deque[ConnectionEvent] = deque(maxlen=history_limit)
        self._subscribers: List[asyncio.Queue[ConnectionEvent]] = []
        self._last_terminal: Optional[ConnectionEvent] = None

    @property
    def history(self) -> List[ConnectionEvent]:
        return list(self._history)

    def publish(self, event: ConnectionEvent) -> None:
        self._history.append(event)
        if event.is_terminal:
            self._last_terminal = event
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    def subscribe(self) -> asyncio.Queue[ConnectionEvent]:
        queue: asyncio.Queue[ConnectionEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ConnectionEvent]) -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            logger.debug("unsubscribe called for an unknown queue")

    def last_terminal(self) -> Optional[ConnectionEvent]:
        return self._last_terminal


__all__ = [
    "Authenticating",
    "Connected",
    "ConnectionEvent",
    "DeviceConfigured",
    "DisconnectReason",
    "Disconnected",
    "Error",
    "ErrorKind",
    "EventBus",
    "SessionEstablished",
    "Unrecognized",
]
