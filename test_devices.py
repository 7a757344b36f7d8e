#!/usr/bin/env python3
"""
Tests for the device layer: port map, EF / Q wiring and interrupts.
"""
import unittest

from devices import (
    DEV_INPUT, DEV_INOUT, DEV_OUTPUT, EDGE_TRIGGERED, EF2, LEVEL_TRIGGERED,
    Device, DeviceError, FlagMap, PortConflictError, PortMap, PostDisplay,
    PriorityInterrupt, SenseMap, SimpleInterrupt, Switches,
)
from events import EventQueue


class Latch(Device):
    """Device that remembers the last byte written to each port."""

    def __init__(self, name="LATCH", base=1, count=1, direction=DEV_INOUT, events=None):
        super().__init__(name, "test latch", base, count, direction, events)
        self.values = {}
        self.flags = []
        self.sense = 0

    def read(self, port):
        return self.values.get(port, 0x00)

    def write(self, port, value):
        self.values[port] = value

    def set_flag(self, index, bit):
        self.flags.append(bit)

    def get_sense(self, index, default=0):
        return self.sense


class TestPortMap(unittest.TestCase):
    def test_unmapped_port_floats(self):
        ports = PortMap()
        self.assertEqual(ports.read(5), 0xFF)
        self.assertTrue(ports.unmapped)
        ports.write(5, 0x12)
        self.assertTrue(ports.unmapped)

    def test_read_write_routing(self):
        ports = PortMap()
        latch = Latch(base=2, count=2)
        ports.install(latch)
        ports.write(3, 0x1AB)
        self.assertFalse(ports.unmapped)
        self.assertEqual(latch.values[3], 0xAB)
        self.assertEqual(ports.read(3), 0xAB)
        self.assertIs(ports.find_input(2), latch)
        self.assertIs(ports.find_output(3), latch)

    def test_conflict(self):
        ports = PortMap()
        ports.install(Latch("A", base=2, count=2))
        with self.assertRaises(PortConflictError):
            ports.install(Latch("B", base=3))
        self.assertEqual(len(ports), 1)

    def test_input_and_output_share_a_port(self):
        ports = PortMap()
        post = PostDisplay(4)
        switches = Switches(4, 0x5A)
        ports.install(post)
        ports.install(switches)
        ports.write(4, 0x42)
        self.assertEqual(post.value, 0x42)
        self.assertEqual(ports.read(4), 0x5A)

    def test_double_install(self):
        ports = PortMap()
        latch = Latch()
        ports.install(latch)
        with self.assertRaises(PortConflictError):
            ports.install(latch)

    def test_remove_frees_ports(self):
        ports = PortMap()
        a = Latch("A")
        ports.install(a)
        ports.remove(a)
        self.assertNotIn(a, ports)
        ports.install(Latch("B"))
        self.assertIsNotNone(ports.find("b"))
        self.assertIsNone(ports.find("A"))

    def test_reset_all_cancels_events(self):
        events = EventQueue()
        ports = PortMap()
        latch = Latch(events=events)
        ports.install(latch)
        latch.schedule(1, 1000)
        self.assertTrue(latch.is_pending(1))
        ports.reset_all()
        self.assertFalse(latch.is_pending(1))


class TestLines(unittest.TestCase):
    def test_sense_default_when_unconnected(self):
        senses = SenseMap()
        self.assertEqual(senses.get_sense(EF2, 1), 1)
        self.assertEqual(senses.get_sense(EF2), 0)

    def test_sense_from_device(self):
        senses = SenseMap()
        latch = Latch()
        latch.sense = 1
        senses.install(latch, EF2)
        self.assertEqual(senses.get_sense(EF2), 1)
        self.assertEqual(senses.index_of(latch), EF2)
        self.assertEqual(senses.line_name(EF2), "EF2")
        with self.assertRaises(PortConflictError):
            senses.install(Latch("OTHER"), EF2)
        with self.assertRaises(DeviceError):
            senses.install(Latch("OTHER"), 7)

    def test_flag_reaches_device(self):
        flags = FlagMap()
        latch = Latch()
        flags.set_flag(0, 1)                # nothing connected, ignored
        flags.install(latch)
        flags.set_flag(0, 1)
        flags.set_flag(0, 0)
        self.assertEqual(latch.flags, [1, 0])
        flags.remove(latch)
        self.assertIsNone(flags.find(0))


class TestInterrupts(unittest.TestCase):
    def test_level_is_wire_or(self):
        irq = SimpleInterrupt(LEVEL_TRIGGERED)
        a, b = irq.allocate(), irq.allocate()
        self.assertNotEqual(a, b)
        irq.request(a)
        irq.request(b)
        irq.request(a, False)
        self.assertTrue(irq.is_requested())
        irq.acknowledge()
        self.assertTrue(irq.is_requested())
        irq.request(b, False)
        self.assertFalse(irq.is_requested())

    def test_edge_latches_until_acknowledged(self):
        irq = SimpleInterrupt(EDGE_TRIGGERED)
        mask = irq.allocate()
        irq.request(mask)
        irq.request(mask, False)
        self.assertTrue(irq.is_requested())
        irq.acknowledge()
        self.assertFalse(irq.is_requested())

    def test_release_drops_request(self):
        irq = SimpleInterrupt()
        mask = irq.allocate()
        irq.request(mask)
        irq.release(mask)
        self.assertFalse(irq.is_requested())
        self.assertFalse(irq.is_attached)

    def test_device_helpers(self):
        irq = SimpleInterrupt()
        latch = Latch()
        latch.attach_interrupt(irq)
        latch.request_interrupt()
        self.assertTrue(irq.is_requested())
        latch.attach_interrupt(None)
        self.assertFalse(irq.is_requested())
        latch.request_interrupt()           # detached, ignored

    def test_priority(self):
        prio = PriorityInterrupt(4, EDGE_TRIGGERED)
        low, high = prio.level(1), prio.level(3)
        low.request(low.allocate())
        high.request(high.allocate())
        self.assertEqual(prio.highest(), 3)
        self.assertEqual(prio.get_requests(), 0b101)
        prio.acknowledge()
        self.assertEqual(prio.highest(), 1)
        prio.clear()
        self.assertFalse(prio.is_requested())

    def test_priority_levels_checked(self):
        with self.assertRaises(ValueError):
            PriorityInterrupt(0)
        with self.assertRaises(ValueError):
            PriorityInterrupt(PriorityInterrupt.MAX_LEVELS + 1)


class TestFrontPanel(unittest.TestCase):
    def test_post_history(self):
        post = PostDisplay()
        self.assertEqual(post.direction, DEV_OUTPUT)
        for code in range(20):
            post.write(4, code)
        self.assertEqual(post.value, 19)
        self.assertEqual(len(post.history), 16)
        self.assertEqual(post.show(), "POST=13")
        post.reset()
        self.assertEqual(post.value, 0)

    def test_switches(self):
        sw = Switches(value=0x81)
        self.assertEqual(sw.direction, DEV_INPUT)
        self.assertEqual(sw.read(4), 0x81)


if __name__ == "__main__":
    unittest.main()
