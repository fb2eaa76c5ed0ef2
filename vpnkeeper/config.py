"""Environment-driven settings for the supervisor."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from vpnkeeper.connector import ConnectorConfig, TerminationPolicy
from vpnkeeper.errors import ConfigError
from vpnkeeper.health import validate_endpoint
from vpnkeeper.reconnect import ReconnectionPolicy
from vpnkeeper.state import DEFAULT_STATE_PATH, default_state_path

ENV_PREFIX = "VPNKEEPER_"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


def _env(environ: Mapping[str, str], name: str) -> Optional[str]:
    return environ.get(ENV_PREFIX + name)


def _as_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = _env(environ, name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from exc


def _as_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = _env(environ, name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc


def _as_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = _env(environ, name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ConfigError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


@dataclass(slots=True)
class Settings:
    executable: str = "openconnect"
    use_sudo: bool = False
    connect_timeout: float = 60.0
    state_file: Path = field(default_factory=default_state_path)
    metrics_log: Optional[Path] = None
    health_endpoint: Optional[str] = None
    health_interval: float = 60.0
    health_timeout: float = 5.0
    base_interval: float = 5.0
    multiplier: float = 2.0
    max_interval: float = 60.0
    max_attempts: int = 5
    failure_threshold: int = 3

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls()
        metrics_log = _env(env, "METRICS_LOG")
        return cls(
            executable=_env(env, "EXECUTABLE") or defaults.executable,
            use_sudo=_as_bool(env, "USE_SUDO", defaults.use_sudo),
            connect_timeout=_as_float(env, "CONNECT_TIMEOUT", defaults.connect_timeout),
            state_file=Path(_env(env, "STATE_FILE") or DEFAULT_STATE_PATH),
            metrics_log=Path(metrics_log) if metrics_log else None,
            health_endpoint=_env(env, "HEALTH_ENDPOINT") or None,
            health_interval=_as_float(env, "HEALTH_INTERVAL", defaults.health_interval),
            health_timeout=_as_float(env, "HEALTH_TIMEOUT", defaults.health_timeout),
            base_interval=_as_float(env, "BASE_INTERVAL", defaults.base_interval),
            multiplier=_as_float(env, "MULTIPLIER", defaults.multiplier),
            max_interval=_as_float(env, "MAX_INTERVAL", defaults.max_interval),
            max_attempts=_as_int(env, "MAX_ATTEMPTS", defaults.max_attempts),
            failure_threshold=_as_int(env, "FAILURE_THRESHOLD", defaults.failure_threshold),
        )

    def validate(self) -> "Settings":
        if not self.executable:
            raise ConfigError("executable must not be empty")
        if self.connect_timeout <= 0:
            raise ConfigError(f"connect_timeout must be positive, got {self.connect_timeout}")
        if self.health_endpoint is not None:
            validate_endpoint(self.health_endpoint)
            if not 10 <= self.health_interval <= 3600:
                raise ConfigError(f"health_interval must be between 10 and 3600 seconds, got {self.health_interval}")
            if self.health_timeout <= 0:
                raise ConfigError(f"health_timeout must be positive, got {self.health_timeout}")
        self.policy().validate()
        return self

    def policy(self) -> ReconnectionPolicy:
        return ReconnectionPolicy(
            base_interval=self.base_interval,
            multiplier=self.multiplier,
            max_interval=self.max_interval,
            max_attempts=self.max_attempts,
            failure_threshold=self.failure_threshold,
        )

    def connector_config(self) -> ConnectorConfig:
        return ConnectorConfig(
            executable=self.executable,
            use_sudo=self.use_sudo,
            connect_timeout=self.connect_timeout,
            termination=TerminationPolicy(),
        )


__all__ = ["ENV_PREFIX", "Settings"]
