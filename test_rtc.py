#!/usr/bin/env python3
"""
Tests for the DS12887 RTC / NVR.
"""
import os
import tempfile
import time
import unittest

import pytest

from events import EventQueue, ms_to_ns
from rtc import (
    DS12887, EVENT_PF, FIRST_FREE, NVRSIZE, REG_A, REG_B, REG_C, REG_D,
    REG_DAY, REG_HOURS, REG_MINUTES, REG_MONTH, REG_SECONDS, REG_WEEKDAY, REG_YEAR,
    REGA_UIP, REGB_24HR, REGB_BINARY, REGC_PF, REGD_VRT, bcd_to_binary,
    binary_to_bcd,
)

# Tuesday 2024-03-05 21:07:09
FIXED_TIME = time.struct_time((2024, 3, 5, 21, 7, 9, 1, 65, 0))


def make_rtc(elfos=True):
    events = EventQueue()
    rtc = DS12887(events, elfos=elfos, clock=lambda: FIXED_TIME)
    rtc.reset()
    return rtc, events


class TestClock(unittest.TestCase):
    def test_binary_24_hour_elfos(self):
        rtc, _ = make_rtc()
        self.assertEqual(rtc.read_register(REG_SECONDS), 9)
        self.assertEqual(rtc.read_register(REG_MINUTES), 7)
        self.assertEqual(rtc.read_register(REG_HOURS), 21)
        self.assertEqual(rtc.read_register(REG_DAY), 5)
        self.assertEqual(rtc.read_register(REG_MONTH), 3)
        self.assertEqual(rtc.read_register(REG_YEAR), 2024 - 1972)
        self.assertEqual(rtc.read_register(REG_WEEKDAY), 3)

    def test_plain_year(self):
        rtc, _ = make_rtc(elfos=False)
        self.assertEqual(rtc.read_register(REG_YEAR), 24)

    def test_bcd_12_hour(self):
        rtc, _ = make_rtc()
        rtc.write_register(REG_B, 0)            # BCD, 12 hour
        rtc.update_time()
        self.assertEqual(rtc.read_register(REG_HOURS), 0x80 | 0x09)
        self.assertEqual(rtc.read_register(REG_MINUTES), 0x07)
        self.assertIn("09:07:09 PM", rtc.format_time())

    def test_uip_toggles_and_refreshes(self):
        rtc, _ = make_rtc()
        rtc.nvr[REG_SECONDS] = 0
        first = rtc.read_register(REG_A)
        self.assertTrue(first & REGA_UIP)
        self.assertEqual(rtc.nvr[REG_SECONDS], 9)
        second = rtc.read_register(REG_A)
        self.assertFalse(second & REGA_UIP)

    def test_fixed_registers(self):
        rtc, _ = make_rtc()
        self.assertEqual(rtc.read_register(REG_D), REGD_VRT)
        rtc.write_register(REG_C, 0xFF)
        rtc.write_register(REG_D, 0x00)
        self.assertEqual(rtc.read_register(REG_C), 0)
        self.assertEqual(rtc.read_register(REG_D), REGD_VRT)
        rtc.write_register(REG_B, 0xFF)
        self.assertEqual(rtc.reg_b & (REGB_BINARY | REGB_24HR), REGB_BINARY | REGB_24HR)
        self.assertFalse(rtc.reg_b & 0x70)

    def test_bcd_helpers(self):
        self.assertEqual(binary_to_bcd(59), 0x59)
        self.assertEqual(bcd_to_binary(0x42), 42)


class TestSquareWave(unittest.TestCase):
    @pytest.mark.slow
    def test_two_hertz(self):
        rtc, events = make_rtc()
        rtc.write_register(REG_A, 0x0F)
        self.assertEqual(rtc.pf_delay, ms_to_ns(250))
        samples = []
        for _ in range(2000):
            events.advance(ms_to_ns(1))
            samples.append(bool(rtc.read_register(REG_C) & REGC_PF))
        toggles = sum(1 for a, b in zip(samples, samples[1:]) if a != b)
        rising = sum(1 for a, b in zip(samples, samples[1:]) if b and not a)
        self.assertEqual(toggles, 8)
        self.assertEqual(rising, 4)

    def test_rate_zero_stops(self):
        rtc, events = make_rtc()
        rtc.write_register(REG_A, 0x06)
        self.assertEqual(rtc.pf_delay, 1_000_000_000 // 1024 // 2)
        rtc.write_register(REG_A, 0x00)
        self.assertFalse(rtc.is_pending(1))
        events.advance(ms_to_ns(10))
        self.assertFalse(rtc.read_register(REG_C) & REGC_PF)

    def test_reset_stops_square_wave(self):
        rtc, events = make_rtc()
        fresh = (rtc.reg_a, rtc.reg_b, rtc.reg_c, rtc.pf_delay, bytes(rtc.nvr))
        rtc.write_register(REG_A, 0x06)
        events.advance(rtc.pf_delay)
        self.assertEqual(events.pending_params(rtc), [EVENT_PF])
        rtc.reset()
        rtc.reset()
        self.assertEqual(events.pending_params(rtc), [])
        self.assertEqual((rtc.reg_a, rtc.reg_b, rtc.reg_c, rtc.pf_delay, bytes(rtc.nvr)),
                         fresh)
        events.advance(ms_to_ns(10))
        self.assertEqual(rtc.reg_c, 0)

    def test_unknown_event(self):
        rtc, _ = make_rtc()
        with self.assertRaises(RuntimeError):
            rtc.on_event(EVENT_PF + 1)


class TestNVR(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "elf2k.nvr")

    def tearDown(self):
        self.tmp.cleanup()

    def test_user_bytes(self):
        rtc, _ = make_rtc()
        rtc.write_register(0x40, 0xAB)
        self.assertEqual(rtc.read_register(0x40), 0xAB)
        self.assertEqual(rtc.read_register(0xC0), 0xAB)     # 7-bit address

    def test_save_load_round_trip(self):
        rtc, _ = make_rtc()
        for reg in range(FIRST_FREE, NVRSIZE):
            rtc.write_register(reg, reg ^ 0x5A)
        self.assertEqual(rtc.save_nvr(self.path), NVRSIZE)
        self.assertEqual(os.path.getsize(self.path), NVRSIZE)

        other, _ = make_rtc()
        self.assertEqual(other.load_nvr(self.path), NVRSIZE)
        self.assertEqual(other.file_name, self.path)
        self.assertEqual(other.read_register(0x7F), 0x7F ^ 0x5A)

    def test_save_without_name(self):
        rtc, _ = make_rtc()
        with self.assertRaises(ValueError):
            rtc.save_nvr()

    def test_clear_keeps_clock(self):
        rtc, _ = make_rtc()
        rtc.write_register(0x20, 0x11)
        rtc.clear_nvr()
        self.assertEqual(rtc.read_register(0x20), 0)
        self.assertEqual(rtc.read_register(REG_MINUTES), 7)

    def test_show(self):
        rtc, _ = make_rtc()
        text = rtc.show()
        self.assertIn("TUE 21:07:09 05-03-2024", text)


if __name__ == "__main__":
    unittest.main()
