"""Exception hierarchy shared by the supervisor components."""
from __future__ import annotations

from typing import Optional


class VpnError(Exception):
    """Base class for all supervisor failures.

    ``retryable`` tells the reconnection controller whether the failure is
    transient and may be retried under backoff.
    """

    retryable: bool = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigError(VpnError):
    retryable = False


class ProcessSpawnFailure(VpnError):
    """The client executable is missing or could not be started."""

    retryable = False


class AuthenticationFailure(VpnError):
    """The client reported rejected credentials."""

    retryable = False

    def __init__(self, raw_output: str = "") -> None:
        message = "Authentication failed"
        if raw_output:
            message = f"{message}: {raw_output}"
        super().__init__(message)
        self.raw_output = raw_output


class ConnectionFailure(VpnError):
    """The client reported a network, certificate, device or DNS error."""

    def __init__(self, kind: str, raw_output: str = "") -> None:
        message = f"Connection failed ({kind})"
        if raw_output:
            message = f"{message}: {raw_output}"
        super().__init__(message)
        self.kind = kind
        self.raw_output = raw_output


class ConnectionTimeout(VpnError):
    def __init__(self, seconds: float) -> None:
        super().__init__(f"Connection timeout after {seconds:g} seconds")
        self.seconds = seconds


class UnexpectedTermination(VpnError):
    """The client exited outside the disconnect flow."""

    def __init__(self, returncode: Optional[int] = None) -> None:
        detail = f" with code {returncode}" if returncode is not None else ""
        super().__init__(f"VPN client exited unexpectedly{detail}")
        self.returncode = returncode


class ConnectionAborted(VpnError):
    """The attempt was cut short by an explicit disconnect."""

    def __init__(self) -> None:
        super().__init__("Connection attempt aborted by disconnect")


class PermissionDenied(VpnError):
    """Signal delivery was refused; operator action is required."""

    def __init__(self, pid: int, action: str = "signal") -> None:
        super().__init__(f"Permission denied to {action} process {pid}")
        self.pid = pid
        self.action = action


class ProbeFailure(VpnError):
    def __init__(self, endpoint: str, reason: str) -> None:
        super().__init__(f"Health probe to {endpoint} failed: {reason}")
        self.endpoint = endpoint
        self.reason = reason


class ConnectorBusy(VpnError):
    retryable = False

    def __init__(self, pid: int) -> None:
        super().__init__(f"A VPN client process is already tracked (PID {pid})")
        self.pid = pid


class AlreadyConnected(VpnError):
    retryable = False

    def __init__(self, pid: int, ip: Optional[str] = None) -> None:
        where = f" as {ip}" if ip else ""
        super().__init__(f"VPN already connected{where} (PID {pid}); disconnect first or use force")
        self.pid = pid
        self.ip = ip


__all__ = [
    "AlreadyConnected",
    "AuthenticationFailure",
    "ConnectionAborted",
    "ConfigError",
    "ConnectionFailure",
    "ConnectionTimeout",
    "ConnectorBusy",
    "PermissionDenied",
    "ProbeFailure",
    "ProcessSpawnFailure",
    "UnexpectedTermination",
    "VpnError",
]
