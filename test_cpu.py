#!/usr/bin/env python3
"""
Tests for the COSMAC 1802 interpreter.

Each test loads a few bytes at address 0 and runs them from reset, where
P = X = 0 and R0 is the program counter.
"""
import unittest

from cpu import COSMAC, StopCode
from devices import (
    DEV_INOUT, EF3, Device, FlagMap, PortMap, PostDisplay, SenseMap,
    SimpleInterrupt, Switches,
)
from events import EventQueue
from memory import Memory


class Timer(Device):
    """Raises an interrupt and drives EF3 once its event fires."""

    def __init__(self, events):
        super().__init__("TIMER", "test timer", 0, 0, DEV_INOUT, events)
        self.fired = 0

    def on_event(self, param):
        self.fired = 1
        self.request_interrupt()

    def get_sense(self, index, default=0):
        return self.fired


class CPUTestBase(unittest.TestCase):
    def setUp(self):
        self.memory = Memory()
        self.memory.set_ram()
        self.events = EventQueue()
        self.ports = PortMap()
        self.senses = SenseMap()
        self.flags = FlagMap()
        self.irq = SimpleInterrupt()
        self.cpu = COSMAC(self.memory, self.events, self.ports, self.senses,
                          self.flags, self.irq)
        self.cpu.reset()

    def load(self, code, addr=0):
        for i, b in enumerate(bytes.fromhex(code)):
            self.memory.ui_write(addr + i, b)

    def run_code(self, code, count=0):
        self.load(code)
        return self.cpu.run(count)


class TestALU(CPUTestBase):
    def test_ldi_adi(self):
        self.assertEqual(self.run_code("F8 40 FC 50", 2), StopCode.FINISHED)
        self.assertEqual(self.cpu.d, 0x90)
        self.assertEqual(self.cpu.df, 0)

    def test_add_carry(self):
        self.run_code("F8 F0 FC 20", 2)
        self.assertEqual((self.cpu.d, self.cpu.df), (0x10, 1))

    def test_smi_borrow(self):
        self.run_code("F8 10 FF 20", 2)
        self.assertEqual((self.cpu.d, self.cpu.df), (0xF0, 0))

    def test_smi_no_borrow(self):
        self.run_code("F8 20 FF 10", 2)
        self.assertEqual((self.cpu.d, self.cpu.df), (0x10, 1))

    def test_shr(self):
        self.run_code("F8 03 F6", 2)
        self.assertEqual((self.cpu.d, self.cpu.df), (0x01, 1))

    def test_logic(self):
        self.run_code("F8 F0 F9 0F FA 3C FB FF", 4)
        self.assertEqual(self.cpu.d, 0xC3)

    def test_adc_uses_df(self):
        # SHL sets DF from bit 7, then ADCI adds it back in
        self.run_code("F8 80 FE 7C 01", 3)
        self.assertEqual((self.cpu.d, self.cpu.df), (0x02, 0))


class TestRegisters(CPUTestBase):
    def test_phi_plo_ghi(self):
        self.run_code("F8 12 B5 F8 34 A5 95", 5)
        self.assertEqual(self.cpu.r[5], 0x1234)
        self.assertEqual(self.cpu.d, 0x12)

    def test_inc_dec_wrap(self):
        self.run_code("26 16 16", 3)
        self.assertEqual(self.cpu.r[6], 0x0001)

    def test_by_name(self):
        self.cpu.set_register("r5", 0x1234)
        self.assertEqual(self.cpu.get_register("R5"), 0x1234)
        self.cpu.set_register("DF", 1)
        self.assertEqual(self.cpu.df, 1)
        with self.assertRaises(KeyError):
            self.cpu.get_register("R16")
        with self.assertRaises(ValueError):
            self.cpu.set_register("D", 0x100)
        with self.assertRaises(ValueError):
            self.cpu.set_register("EF1", 1)

    def test_reset_keeps_scratchpad(self):
        self.cpu.r[3] = 0xBEEF
        self.cpu.d = 0x55
        self.cpu.ie = 0
        self.cpu.reset()
        self.assertEqual((self.cpu.r[3], self.cpu.d, self.cpu.ie), (0xBEEF, 0x55, 1))

    def test_dump(self):
        self.assertIn("R0=0000<P", self.cpu.dump_regs())
        self.assertIn("IE=1", self.cpu.dump_regs())


class TestBranches(CPUTestBase):
    def test_bz_taken(self):
        self.run_code("F8 00 32 10", 2)
        self.assertEqual(self.cpu.pc, 0x10)

    def test_bnz_not_taken(self):
        self.run_code("F8 00 3A 10", 2)
        self.assertEqual(self.cpu.pc, 4)

    def test_lbr(self):
        self.run_code("C0 12 34", 1)
        self.assertEqual(self.cpu.pc, 0x1234)

    def test_lskp(self):
        self.run_code("C8", 1)
        self.assertEqual(self.cpu.pc, 3)

    def test_lsz(self):
        self.run_code("F8 00 CE", 2)
        self.assertEqual(self.cpu.pc, 5)

    def test_ef_branch(self):
        timer = Timer(self.events)
        self.senses.install(timer, EF3)
        self.run_code("36 10", 1)
        self.assertEqual(self.cpu.pc, 2)
        timer.fired = 1
        self.cpu.reset()
        self.cpu.run(1)
        self.assertEqual(self.cpu.pc, 0x10)
        self.assertEqual(self.cpu.get_register("EF3"), 1)

    def test_sep_sex(self):
        self.run_code("E5 D3", 2)
        self.assertEqual((self.cpu.x, self.cpu.p), (5, 3))


class TestQandIO(CPUTestBase):
    def test_q(self):
        self.assertEqual(self.run_code("7B 31 10", 2), StopCode.FINISHED)
        self.assertEqual(self.cpu.q, 1)
        self.assertEqual(self.cpu.pc, 0x10)
        self.load("7A", 0x10)
        self.cpu.run(1)
        self.assertEqual(self.cpu.get_register("Q"), 0)

    def test_out_inline(self):
        post = PostDisplay(4)
        self.ports.install(post)
        self.run_code("64 42", 1)
        self.assertEqual(post.value, 0x42)
        self.assertEqual(self.cpu.pc, 2)

    def test_inp(self):
        self.ports.install(Switches(4, 0x5A))
        self.run_code("6C", 1)
        self.assertEqual(self.cpu.d, 0x5A)
        self.assertEqual(self.memory.ui_read(1), 0x5A)

    def test_illegal_io(self):
        self.cpu.stop_on_illegal_io = True
        self.assertEqual(self.run_code("61 00"), StopCode.ILLEGAL_IO)
        self.cpu.stop_on_illegal_io = False
        self.cpu.reset()
        self.assertEqual(self.cpu.run(1), StopCode.FINISHED)

    def test_illegal_opcode(self):
        self.assertEqual(self.run_code("68"), StopCode.ILLEGAL_OPCODE)
        self.assertEqual(self.cpu.pc, 0)
        self.cpu.stop_on_illegal_opcode = False
        self.assertEqual(self.cpu.run(1), StopCode.FINISHED)
        self.assertEqual(self.cpu.pc, 1)


class TestStops(CPUTestBase):
    def test_endless_loop(self):
        self.assertEqual(self.run_code("71 00 30 02"), StopCode.ENDLESS_LOOP)
        self.assertEqual(self.cpu.pc, 2)
        self.assertEqual(self.cpu.ie, 0)

    def test_code_breakpoint_then_continue(self):
        self.memory.set_break(2)
        self.assertEqual(self.run_code("C4 C4 C4 C4"), StopCode.BREAKPOINT)
        self.assertEqual(self.cpu.pc, 2)
        self.assertEqual(self.cpu.run(1), StopCode.FINISHED)
        self.assertEqual(self.cpu.pc, 3)

    def test_data_breakpoint(self):
        self.memory.ui_write(0x20, 0x77)
        self.memory.set_break(0x20)
        self.assertEqual(self.run_code("F8 20 A3 43 C4"), StopCode.BREAKPOINT)
        self.assertEqual(self.cpu.pc, 4)
        self.assertEqual(self.cpu.d, 0x77)

    def test_idle_without_interrupts(self):
        self.assertEqual(self.run_code("71 00 00"), StopCode.BREAK)
        self.assertEqual(self.cpu.pc, 2)
        self.assertFalse(self.cpu.idle)

    def test_idle_with_nothing_pending(self):
        self.assertEqual(self.run_code("00"), StopCode.BREAK)

    def test_break_from_device(self):
        cpu = self.cpu

        class Breaker:
            def on_event(self, param):
                cpu.break_()

        self.events.schedule(Breaker(), 1, 20_000)
        self.load("30 00")
        self.assertEqual(cpu.run(), StopCode.BREAK)
        self.assertGreaterEqual(self.events.now, 20_000)


class TestInterrupts(CPUTestBase):
    def test_entry(self):
        self.cpu.r[1] = 0x40
        self.load("C4", 0x40)
        self.cpu.x = 5
        self.irq.request(self.irq.allocate())
        self.cpu.run(1)
        self.assertEqual(self.cpu.t, 0x50)
        self.assertEqual((self.cpu.x, self.cpu.p, self.cpu.ie), (2, 1, 0))
        self.assertEqual(self.cpu.pc, 0x41)

    def test_masked(self):
        self.cpu.ie = 0
        self.irq.request(self.irq.allocate())
        self.run_code("C4", 1)
        self.assertEqual(self.cpu.p, 0)

    def test_idle_wakes_on_event(self):
        timer = Timer(self.events)
        timer.attach_interrupt(self.irq)
        timer.schedule(1, 10_000)
        self.cpu.r[1] = 0x40
        self.load("C4", 0x40)
        self.assertEqual(self.run_code("00", 2), StopCode.FINISHED)
        self.assertEqual(self.cpu.p, 1)
        self.assertEqual(self.cpu.pc, 0x41)
        self.assertGreaterEqual(self.events.now, 10_000)

    def test_ret_restores(self):
        # R2 points at a saved X/P byte of 0x03
        self.cpu.r[2] = 0x30
        self.memory.ui_write(0x30, 0x03)
        self.cpu.x = 2
        self.cpu.ie = 0
        self.run_code("70", 1)
        self.assertEqual((self.cpu.x, self.cpu.p, self.cpu.ie), (0, 3, 1))
        self.assertEqual(self.cpu.r[2], 0x31)


class TestTiming(CPUTestBase):
    def test_cycle_time(self):
        self.assertEqual(self.cpu.cycle_ns, 3200)
        self.run_code("C4 F8 00", 2)
        self.assertEqual(self.cpu.cycles, 5)
        self.assertEqual(self.events.now, 5 * 3200)

    def test_bad_crystal(self):
        with self.assertRaises(ValueError):
            self.cpu.crystal = 0


if __name__ == "__main__":
    unittest.main()
