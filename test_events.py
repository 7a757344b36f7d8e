#!/usr/bin/env python3
"""
Tests for the simulated clock and event queue.
"""
import unittest

from events import (
    EventError, EventQueue, cps_to_ns, cycle_ns, hz_to_ns, ms_to_ns,
    ns_to_ms, ns_to_us, us_to_ns,
)


class Recorder:
    """Minimal event target that remembers what fired and when."""

    def __init__(self, events: EventQueue, name: str = "REC"):
        self.events = events
        self.name = name
        self.fired = []

    def on_event(self, param):
        self.fired.append((param, self.events.now))


class TestConversions(unittest.TestCase):
    def test_units(self):
        self.assertEqual(us_to_ns(10), 10_000)
        self.assertEqual(ms_to_ns(25), 25_000_000)
        self.assertEqual(ns_to_us(1_500), 1)
        self.assertEqual(ns_to_ms(2_500_000), 2)

    def test_rates(self):
        self.assertEqual(hz_to_ns(1200), 833_333)
        self.assertEqual(cps_to_ns(2000), 500_000)
        self.assertEqual(hz_to_ns(0), 0)

    def test_cycle_time(self):
        # 8 clocks at 2.5 MHz
        self.assertEqual(cycle_ns(2_500_000, 8), 3_200)


class TestEventQueue(unittest.TestCase):
    def setUp(self):
        self.events = EventQueue()
        self.dev = Recorder(self.events)

    def test_fires_at_deadline(self):
        self.events.schedule(self.dev, 1, 100)
        self.events.advance(99)
        self.assertEqual(self.dev.fired, [])
        self.events.advance(1)
        self.assertEqual(self.dev.fired, [(1, 100)])
        self.assertEqual(self.events.now, 100)

    def test_delay_of_one(self):
        self.events.schedule(self.dev, 7, 1)
        self.events.advance(1)
        self.assertEqual(self.dev.fired, [(7, 1)])

    def test_non_positive_delay_rejected(self):
        with self.assertRaises(EventError):
            self.events.schedule(self.dev, 1, 0)
        with self.assertRaises(EventError):
            self.events.schedule(self.dev, 1, -5)

    def test_ties_fire_in_schedule_order(self):
        other = Recorder(self.events, "OTHER")
        order = []
        self.dev.on_event = lambda p: order.append(("a", p))
        other.on_event = lambda p: order.append(("b", p))
        self.events.schedule(self.dev, 1, 50)
        self.events.schedule(other, 1, 50)
        self.events.schedule(self.dev, 2, 50)
        self.events.advance(50)
        self.assertEqual(order, [("a", 1), ("b", 1), ("a", 2)])

    def test_deadline_order(self):
        self.events.schedule(self.dev, 1, 300)
        self.events.schedule(self.dev, 2, 100)
        self.events.schedule(self.dev, 3, 200)
        self.events.advance(1000)
        self.assertEqual([p for p, _ in self.dev.fired], [2, 3, 1])
        self.assertEqual([t for _, t in self.dev.fired], [100, 200, 300])

    def test_reschedule_replaces(self):
        self.events.schedule(self.dev, 1, 100)
        self.events.schedule(self.dev, 1, 500)
        self.assertEqual(self.events.pending_count, 1)
        self.events.advance(200)
        self.assertEqual(self.dev.fired, [])
        self.assertEqual(self.events.deadline(self.dev, 1), 500)
        self.events.advance(300)
        self.assertEqual(self.dev.fired, [(1, 500)])

    def test_cancel(self):
        self.events.schedule(self.dev, 1, 100)
        self.events.cancel(self.dev, 1)
        self.events.cancel(self.dev, 99)    # absent, no error
        self.assertFalse(self.events.is_pending(self.dev, 1))
        self.assertIsNone(self.events.next_deadline())
        self.events.advance(1000)
        self.assertEqual(self.dev.fired, [])

    def test_cancel_all(self):
        other = Recorder(self.events, "OTHER")
        self.events.schedule(self.dev, 1, 10)
        self.events.schedule(self.dev, 2, 20)
        self.events.schedule(other, 1, 30)
        self.assertEqual(self.events.pending_params(self.dev), [1, 2])
        self.events.cancel_all(self.dev)
        self.assertEqual(len(self.events), 1)
        self.assertEqual(self.events.pending_params(self.dev), [])
        self.assertEqual(self.events.pending_params(other), [1])
        self.events.advance(100)
        self.assertEqual(self.dev.fired, [])
        self.assertEqual(other.fired, [(1, 30)])

    def test_handler_can_reschedule(self):
        def tick(param):
            self.dev.fired.append((param, self.events.now))
            self.events.schedule(self.dev, param, 10)
        self.dev.on_event = tick
        self.events.schedule(self.dev, 1, 10)
        self.events.advance(35)
        self.assertEqual([t for _, t in self.dev.fired], [10, 20, 30])
        self.assertEqual(self.events.next_deadline(), 40)

    def test_reentrant_advance_rejected(self):
        def nested(param):
            self.events.advance(1)
        self.dev.on_event = nested
        self.events.schedule(self.dev, 1, 5)
        with self.assertRaises(EventError):
            self.events.advance(10)

    def test_time_never_goes_backwards(self):
        self.events.advance(100)
        self.events.advance_to(50)
        self.assertEqual(self.events.now, 100)

    def test_reset(self):
        self.events.schedule(self.dev, 1, 100)
        self.events.advance(10)
        self.events.reset()
        self.assertEqual(self.events.now, 0)
        self.assertEqual(len(self.events), 0)
        self.events.advance(1000)
        self.assertEqual(self.dev.fired, [])

    def test_show(self):
        self.events.schedule(self.dev, 3, 250)
        text = self.events.show()
        self.assertIn("1 events pending", text)
        self.assertIn("REC", text)


if __name__ == "__main__":
    unittest.main()
