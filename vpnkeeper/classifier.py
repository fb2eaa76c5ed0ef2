"""Line classification for VPN client output.

Each line of client output maps to exactly one :class:`ConnectionEvent`.
Classification is an ordered list of independent :class:`PatternRule`
objects evaluated most-specific first; the first rule that matches and builds
an event wins. Lines nobody recognises become :class:`Unrecognized` so that
vendor output drift degrades gracefully instead of failing the connection.
"""
from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

from vpnkeeper.events import (
	Authenticating,
	Connected,
	ConnectionEvent,
	DeviceConfigured,
	DisconnectReason,
	Disconnected,
	Error,
	ErrorKind,
	SessionEstablished,
	Unrecognized,
)

logger = logging.getLogger(__name__)

MAX_LINE_LENGTH = 4096
DEFAULT_DEVICE = "tun"

STDOUT = "stdout"
STDERR = "stderr"

EventBuilder = Callable[["re.Match[str]", str], Optional[ConnectionEvent]]


class MalformedField(ValueError):
	"""Raised by builders when a captured field has the wrong shape."""


def normalize_ip(token: str) -> str:
	cleaned = token.strip().rstrip(",;.")
	try:
		return str(ipaddress.ip_address(cleaned))
	except ValueError as exc:
		raise MalformedField(f"not an IP address: {token!r}") from exc


@dataclass(frozen=True, slots=True)
class PatternRule:
	"""A single regex rule producing an event for matching lines."""

	name: str
	pattern: "re.Pattern[str]"
	build: EventBuilder
	streams: frozenset[str] = frozenset({STDOUT, STDERR})

	def apply(self, line: str, stream: str) -> Optional[ConnectionEvent]:
		if stream not in self.streams:
			return None
		match = self.pattern.search(line)
		if match is None:
			return None
		return self.build(match, line)


def _rule(
	name: str,
	pattern: str,
	build: EventBuilder,
	*,
	flags: int = 0,
	streams: Iterable[str] = (STDOUT, STDERR),
) -> PatternRule:
	return PatternRule(name, re.compile(pattern, flags), build, frozenset(streams))


def _error(kind: ErrorKind) -> EventBuilder:
	return lambda _match, line: Error(kind=kind, raw_output=line)


def _f5_connected(match: "re.Match[str]", _line: str) -> ConnectionEvent:
	return Connected(ip=normalize_ip(match.group("ip")), device=DEFAULT_DEVICE)


def _device_configured(match: "re.Match[str]", _line: str) -> ConnectionEvent:
	device = match.groupdict().get("device") or DEFAULT_DEVICE
	return DeviceConfigured(device=device, ip=normalize_ip(match.group("ip")))


DEFAULT_RULES: Sequence[PatternRule] = (
	_rule(
		"auth_failed",
		r"Failed to authenticate|Login failed|authentication fail(?:ed|ure)",
		_error(ErrorKind.AUTHENTICATION),
		flags=re.IGNORECASE,
	),
	# F5 prints the address and the tunnel confirmation on one line.
	_rule(
		"f5_configured_connected",
		r"Configured as (?P<ip>\S+?),? with (?:SSL|DTLS) connected",
		_f5_connected,
	),
	_rule("tun_connected_as", r"Connected (?P<device>[\w.-]+) as (?P<ip>\S+)", _device_configured),
	_rule("configured_as", r"Configured as (?P<ip>\S+)", _device_configured),
	_rule("got_address", r"Got (?:Legacy IP|IPv6) address (?P<ip>\S+)", _device_configured),
	_rule("bare_connected", r"^\s*Connected\.?\s*$", lambda _m, _l: Connected()),
	_rule(
		"session_established",
		r"Connected to F5 Session Manager|Got CONNECT response|Established connection"
		r"|ESP session established|DTLS connected|SSL connected",
		lambda match, _line: SessionEstablished(message=match.group(0)),
	),
	_rule(
		"authenticating",
		r"POST https?://|^\s*Authenticating|XML POST enabled|^\s*(?:Password|PIN|Passcode)\s*:",
		lambda _match, line: Authenticating(message=line.strip()),
		flags=re.IGNORECASE,
	),
	_rule(
		"server_disconnect",
		r"Session terminated by server|Server closed connection|Received server disconnect"
		r"|Session (?:has )?expired",
		lambda _m, _l: Disconnected(reason=DisconnectReason.SERVER_DISCONNECT),
		flags=re.IGNORECASE,
	),
	_rule(
		"certificate_error",
		r"certificate.*(?:invalid|verif|fail|untrusted|expired)|verification failed",
		_error(ErrorKind.CERTIFICATE),
		flags=re.IGNORECASE,
	),
	_rule(
		"tun_error",
		r"failed to open tun|tun.*error|no tun device|/dev/net/tun",
		_error(ErrorKind.DEVICE),
		flags=re.IGNORECASE,
	),
	_rule(
		"dns_error",
		r"cannot resolve|unknown host|name resolution|getaddrinfo failed|Name or service not known",
		_error(ErrorKind.DNS),
		flags=re.IGNORECASE,
	),
	_rule(
		"ssl_error",
		r"\bSSL\b|\bTLS\b|connection failure|handshake",
		_error(ErrorKind.NETWORK),
		flags=re.IGNORECASE,
		streams=(STDERR,),
	),
)


class OutputClassifier:
	"""Stateless classifier mapping one output line to one event."""

	def __init__(self, rules: Sequence[PatternRule] | None = None) -> None:
		self.rules: List[PatternRule] = list(rules if rules is not None else DEFAULT_RULES)

	def classify(self, line: str, *, stream: str = STDOUT) -> ConnectionEvent:
		text = line.rstrip("\r\n")[:MAX_LINE_LENGTH]
		for rule in self.rules:
			try:
				event = rule.apply(text, stream)
			except MalformedField as exc:
				logger.debug("Rule %s matched but field extraction failed: %s", rule.name, exc)
				return Unrecognized(raw_line=text)
			if event is not None:
				return event
		logger.debug("Unrecognized %s output: %s", stream, text)
		return Unrecognized(raw_line=text)

	def matching_rules(self, line: str, *, stream: str = STDOUT) -> List[str]:
		"""Names of every rule whose pattern matches ``line`` (diagnostics)."""
		text = line.rstrip("\r\n")[:MAX_LINE_LENGTH]
		return [
			rule.name
			for rule in self.rules
			if stream in rule.streams and rule.pattern.search(text)
		]


class LineInterpreter:
	"""Per-incarnation wrapper that completes events from earlier lines.

	Some clients announce the tunnel address and the final confirmation on
	separate lines; a bare ``Connected`` inherits the last configured address.
	"""

	def __init__(self, classifier: OutputClassifier | None = None) -> None:
		self.classifier = classifier or OutputClassifier()
		self.device: Optional[str] = None
		self.ip: Optional[str] = None

	def feed(self, line: str, *, stream: str = STDOUT) -> ConnectionEvent:
		event = self.classifier.classify(line, stream=stream)
		if isinstance(event, DeviceConfigured):
			self.device, self.ip = event.device, event.ip
		elif isinstance(event, Connected):
			if event.ip is None and self.ip is not None:
				event = Connected(ip=self.ip, device=event.device or self.device)
			self.device = event.device or self.device
			self.ip = event.ip or self.ip
		return event


__all__ = [
	"DEFAULT_RULES",
	"LineInterpreter",
	"MAX_LINE_LENGTH",
	"OutputClassifier",
	"PatternRule",
	"STDERR",
	"STDOUT",
]
