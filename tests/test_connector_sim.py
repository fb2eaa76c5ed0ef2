"""Connector tests against a Python stand-in for the VPN client.

The stand-in receives the same argv tail as the real client and reads the
password from stdin, so spawn, classification and termination all run for
real.
"""
from __future__ import annotations

import asyncio
import signal
import sys
import tempfile
import textwrap
import unittest
from pathlib import Path
from unittest.mock import patch

from vpnkeeper.connector import (
    ConnectArgs,
    ConnectorConfig,
    Credentials,
    ProcessConnector,
    TerminationPolicy,
)
from vpnkeeper.errors import (
    AuthenticationFailure,
    ConfigError,
    ConnectionFailure,
    ConnectionTimeout,
    ConnectorBusy,
    ProcessSpawnFailure,
    UnexpectedTermination,
)
from vpnkeeper.events import (
    Authenticating,
    Connected,
    DisconnectReason,
    Disconnected,
    Error,
    ErrorKind,
)
from vpnkeeper.state import StateStore

CLIENT = textwrap.dedent(
    """
    import signal, sys, time
    mode = sys.argv[-1]
    if mode == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    secret = sys.stdin.readline().strip()
    print("POST https://" + mode + "/", flush=True)
    if secret != "hunter2":
        print("Login failed", flush=True)
        time.sleep(30)
    if mode == "silent":
        time.sleep(30)
    if mode == "crash":
        sys.exit(3)
    if mode == "tls":
        print("SSL handshake failed", file=sys.stderr, flush=True)
        time.sleep(30)
    print("Got Legacy IP address 10.10.1.5", flush=True)
    print("Connected", flush=True)
    if mode == "short":
        time.sleep(0.2)
        sys.exit(0)
    time.sleep(30)
    """
)

ARGS = ConnectArgs(server="ok", username="alice")


def _args(mode: str) -> ConnectArgs:
    return ConnectArgs(server=mode, username="alice")


class ConnectorSimulationTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = StateStore(Path(self._tmp.name, "state.json"))
        self.config = ConnectorConfig(
            executable=sys.executable,
            base_flags=("-c", CLIENT),
            connect_timeout=10.0,
            termination=TerminationPolicy(grace_period=2.0, poll_interval=0.05, kill_wait=0.5),
        )
        self.connector = ProcessConnector(self.config, state_store=self.store)

    async def asyncTearDown(self) -> None:
        await self.connector.disconnect()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_connect_returns_connected_and_persists_state(self) -> None:
        event = await self.connector.connect(ARGS, Credentials("hunter2"))

        self.assertEqual(event, Connected(ip="10.10.1.5", device="tun"))
        self.assertTrue(self.connector.is_alive())
        state = self.store.load()
        self.assertEqual(state.ip, "10.10.1.5")
        self.assertEqual(state.process_id, self.connector.handle.process_id)
        history = self.connector.bus.history
        self.assertIsInstance(history[0], Authenticating)
        self.assertEqual(history[-1], event)

    async def test_connect_while_running_is_rejected(self) -> None:
        await self.connector.connect(ARGS, Credentials("hunter2"))
        with self.assertRaises(ConnectorBusy):
            await self.connector.connect(ARGS, Credentials("hunter2"))

    async def test_disconnect_stops_process_and_is_idempotent(self) -> None:
        await self.connector.connect(ARGS, Credentials("hunter2"))
        process = self.connector.handle.process

        self.assertTrue(await self.connector.disconnect())
        self.assertIsNotNone(process.returncode)
        self.assertFalse(self.store.exists())
        self.assertEqual(self.connector.bus.last_terminal(), Disconnected(reason=DisconnectReason.USER_REQUESTED))

        self.assertFalse(await self.connector.disconnect())

    async def test_disconnect_escalates_to_sigkill_when_sigterm_is_ignored(self) -> None:
        self.config.termination.grace_period = 0.3
        await self.connector.connect(_args("stubborn"), Credentials("hunter2"))
        process = self.connector.handle.process

        with self.assertLogs("vpnkeeper.connector", level="WARNING") as logs:
            self.assertTrue(await self.connector.disconnect())

        self.assertEqual(process.returncode, -signal.SIGKILL)
        self.assertTrue(any("sending SIGKILL" in line for line in logs.output))
        self.assertIsNone(self.connector.handle)
        self.assertFalse(self.store.exists())
        self.assertEqual(self.connector.bus.last_terminal(), Disconnected(reason=DisconnectReason.USER_REQUESTED))

    async def test_refused_signal_is_logged_and_left_to_reaper(self) -> None:
        self.config.termination.drain_timeout = 0.2
        await self.connector.connect(ARGS, Credentials("hunter2"))
        process = self.connector.handle.process
        try:
            with patch.object(process, "send_signal", side_effect=PermissionError("denied")) as send_signal:
                with self.assertLogs("vpnkeeper.connector", level="WARNING") as logs:
                    self.assertTrue(await self.connector.disconnect())

            send_signal.assert_called_once_with(signal.SIGTERM)
            self.assertTrue(any("Permission denied to SIGTERM" in line for line in logs.output))
            self.assertIsNone(process.returncode)
            self.assertIsNone(self.connector.handle)
            self.assertFalse(self.store.exists())
        finally:
            process.kill()
            await process.wait()

    async def test_rejected_credentials_raise_authentication_failure(self) -> None:
        with self.assertRaises(AuthenticationFailure):
            await self.connector.connect(ARGS, Credentials("wrong"))

        self.assertFalse(self.connector.is_alive())
        self.assertIsNone(self.connector.handle)
        errors = [event for event in self.connector.bus.history if isinstance(event, Error)]
        self.assertEqual([event.kind for event in errors], [ErrorKind.AUTHENTICATION])
        self.assertFalse(self.store.exists())

    async def test_stderr_tls_failure_raises_connection_failure(self) -> None:
        with self.assertRaises(ConnectionFailure) as ctx:
            await self.connector.connect(_args("tls"), Credentials("hunter2"))
        self.assertEqual(ctx.exception.kind, "network")

    async def test_timeout_terminates_and_publishes_timeout(self) -> None:
        self.config.connect_timeout = 0.5
        with self.assertRaises(ConnectionTimeout):
            await self.connector.connect(_args("silent"), Credentials("hunter2"))

        self.assertIsNone(self.connector.handle)
        self.assertEqual(self.connector.bus.last_terminal(), Disconnected(reason=DisconnectReason.TIMEOUT))

    async def test_exit_before_connected_raises_unexpected_termination(self) -> None:
        with self.assertRaises(UnexpectedTermination) as ctx:
            await self.connector.connect(_args("crash"), Credentials("hunter2"))
        self.assertEqual(ctx.exception.returncode, 3)
        self.assertEqual(
            self.connector.bus.last_terminal(),
            Disconnected(reason=DisconnectReason.PROCESS_TERMINATED),
        )

    async def test_exit_after_connected_publishes_disconnected_and_clears_state(self) -> None:
        await self.connector.connect(_args("short"), Credentials("hunter2"))
        self.assertTrue(self.store.exists())

        await asyncio.wait_for(self.connector.handle.monitor, timeout=5.0)

        self.assertFalse(self.connector.is_alive())
        self.assertFalse(self.store.exists())
        disconnects = [event for event in self.connector.bus.history if isinstance(event, Disconnected)]
        self.assertEqual(disconnects, [Disconnected(reason=DisconnectReason.PROCESS_TERMINATED)])

    async def test_missing_executable_raises_spawn_failure(self) -> None:
        connector = ProcessConnector(
            ConnectorConfig(executable="/nonexistent/openconnect"),
            state_store=self.store,
        )
        with self.assertRaises(ProcessSpawnFailure):
            await connector.connect(ARGS, Credentials("hunter2"))

    async def test_disconnect_without_process_clears_stale_state(self) -> None:
        self.store.path.write_text("{}", encoding="utf-8")
        self.assertFalse(await self.connector.disconnect())
        self.assertFalse(self.store.exists())


class ConnectArgsTest(unittest.TestCase):
    def test_command_keeps_secret_out_of_argv(self) -> None:
        config = ConnectorConfig(use_sudo=True)
        credentials = Credentials("hunter2")
        args = ConnectArgs(server="vpn.example.com", username="alice", protocol="anyconnect", no_dtls=True)

        argv = config.command(args)

        self.assertEqual(
            argv,
            [
                "sudo", "-n", "openconnect", "--passwd-on-stdin", "--non-inter",
                "--protocol", "anyconnect", "--user", "alice", "--no-dtls", "vpn.example.com",
            ],
        )
        self.assertNotIn("hunter2", " ".join(argv))
        self.assertNotIn("hunter2", repr(credentials))
        self.assertEqual(credentials.stdin_payload(), b"hunter2\n")

    def test_invalid_arguments_are_rejected(self) -> None:
        with self.assertRaises(ConfigError):
            ConnectArgs(server="vpn.example.com", username="alice", protocol="ipsec")
        with self.assertRaises(ConfigError):
            ConnectArgs(server="", username="alice")


if __name__ == "__main__":
    unittest.main()
