"""Tests for the event model and the in-process event bus."""
from __future__ import annotations

import unittest

from vpnkeeper.events import (
    Authenticating,
    Connected,
    DisconnectReason,
    Disconnected,
    Error,
    ErrorKind,
    EventBus,
    Unrecognized,
)


class EventModelTest(unittest.TestCase):
    def test_terminal_flags(self) -> None:
        self.assertTrue(Connected(ip="10.0.0.2").is_terminal)
        self.assertTrue(Disconnected().is_terminal)
        self.assertTrue(Error(kind=ErrorKind.DNS).is_terminal)
        self.assertFalse(Authenticating().is_terminal)
        self.assertFalse(Unrecognized(raw_line="banner").is_terminal)

    def test_to_dict_flattens_enums(self) -> None:
        self.assertEqual(
            Disconnected(reason=DisconnectReason.TIMEOUT).to_dict(),
            {"event": "disconnected", "reason": "timeout"},
        )
        self.assertEqual(
            Error(kind=ErrorKind.AUTHENTICATION, raw_output="Login failed").to_dict(),
            {"event": "error", "kind": "authentication", "raw_output": "Login failed"},
        )


class EventBusTest(unittest.IsolatedAsyncioTestCase):
    async def test_subscribers_receive_events_in_order(self) -> None:
        bus = EventBus()
        first, second = bus.subscribe(), bus.subscribe()
        events = [Authenticating(message="POST"), Connected(ip="10.0.0.2", device="tun")]
        for event in events:
            bus.publish(event)

        for queue in (first, second):
            self.assertEqual([queue.get_nowait(), queue.get_nowait()], events)
        self.assertEqual(bus.history, events)

    async def test_unsubscribed_queue_stops_receiving(self) -> None:
        bus = EventBus()
        queue = bus.subscribe()
        bus.unsubscribe(queue)
        bus.publish(Disconnected())
        self.assertTrue(queue.empty())
        # Unknown queues are ignored.
        bus.unsubscribe(queue)

    async def test_last_terminal_tracks_most_recent_terminal_event(self) -> None:
        bus = EventBus()
        self.assertIsNone(bus.last_terminal())
        bus.publish(Connected(ip="10.0.0.2"))
        bus.publish(Unrecognized(raw_line="noise"))
        self.assertEqual(bus.last_terminal(), Connected(ip="10.0.0.2"))
        bus.publish(Disconnected(reason=DisconnectReason.USER_REQUESTED))
        self.assertEqual(bus.last_terminal(), Disconnected(reason=DisconnectReason.USER_REQUESTED))

    async def test_history_is_bounded(self) -> None:
        bus = EventBus(history_limit=3)
        for index in range(5):
            bus.publish(Unrecognized(raw_line=str(index)))
        self.assertEqual([event.raw_line for event in bus.history], ["2", "3", "4"])


if __name__ == "__main__":
    unittest.main()
