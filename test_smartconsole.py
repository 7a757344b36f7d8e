#!/usr/bin/env python3
"""
Tests for the smart console: log capture, paced text upload and XMODEM.
"""
import os
import tempfile
import unittest

from console import BufferConsole
from events import EventQueue
from smartconsole import ACK, EOT, NAK, SOH, SUB, XBLKLEN, SmartConsole, XState


def make_console(events=None):
    events = EventQueue() if events is None else events
    inner = BufferConsole()
    return SmartConsole(events, inner), inner, events


def pattern(n):
    return bytes((i * 7 + 1) & 0xFF for i in range(n))


class SmartConsoleTestBase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def path(self, name):
        return os.path.join(self.tmp.name, name)


class TestConsoleContract(unittest.TestCase):
    def test_break_character_is_shared(self):
        sc, inner, _ = make_console()
        sc.console_break = 3
        self.assertEqual(inner.console_break, 3)
        self.assertEqual(sc.get_console_break(), 3)

    def test_unknown_event(self):
        sc, *_ = make_console()
        with self.assertRaises(RuntimeError):
            sc.on_event(99)


class TestLog(SmartConsoleTestBase):
    def test_output_is_captured(self):
        sc, inner, _ = make_console()
        name = sc.open_log(self.path("session"))
        self.assertTrue(name.endswith(".log"))
        self.assertTrue(sc.is_logging)
        sc.raw_write(b"hello\r\n")
        sc.close_log()
        self.assertFalse(sc.is_logging)
        self.assertEqual(sc.log_total, 7)
        self.assertEqual(inner.take_output(), b"hello\r\n")
        with open(name, "rb") as f:
            self.assertEqual(f.read(), b"hello\r\n")

    def test_append(self):
        name = self.path("run.log")
        with open(name, "wb") as f:
            f.write(b"old ")
        sc, *_ = make_console()
        sc.open_log(name, append=True)
        sc.raw_write(b"new")
        sc.close()
        with open(name, "rb") as f:
            self.assertEqual(f.read(), b"old new")

    def test_large_output_flushes(self):
        sc, *_ = make_console()
        name = sc.open_log(self.path("big.log"))
        sc.raw_write(b"x" * 1000)
        self.assertEqual(sc.log_total, 512)
        sc.close_log()
        self.assertEqual(os.path.getsize(name), 1000)


class TestSendText(SmartConsoleTestBase):
    def upload(self, sc, events):
        received = b""
        for _ in range(100):
            if not sc.is_sending_text:
                break
            received += sc.raw_read()
            events.advance(sc.line_delay)
        return received

    def write_text(self, data):
        name = self.path("upload.txt")
        with open(name, "wb") as f:
            f.write(data)
        return name

    def test_crlf_folding(self):
        sc, _, events = make_console()
        sc.send_text(self.write_text(b"AB\r\nC\n"))
        self.assertEqual(self.upload(sc, events), b"AB\rC\r")
        self.assertEqual(sc.text_total, 6)

    def test_crlf_passthrough(self):
        sc, _, events = make_console()
        sc.no_crlf = False
        sc.send_text(self.write_text(b"AB\r\nC\n"))
        self.assertEqual(self.upload(sc, events), b"AB\r\nC\n")

    def test_paced(self):
        sc, _, events = make_console()
        sc.send_text(self.write_text(b"XY"))
        self.assertEqual(sc.raw_read(), b"X")
        self.assertEqual(sc.raw_read(), b"")
        events.advance(sc.char_delay)
        self.assertEqual(sc.raw_read(), b"Y")

    def test_default_extension_and_abort(self):
        self.write_text(b"data")
        sc, *_ = make_console()
        name = sc.send_text(self.path("upload"))
        self.assertTrue(name.endswith("upload.txt"))
        sc.abort_text()
        self.assertFalse(sc.is_sending_text)

    def test_missing_file(self):
        sc, *_ = make_console()
        with self.assertRaises(OSError):
            sc.send_text(self.path("nothing.txt"))
        self.assertFalse(sc.is_sending_text)

    def test_bad_delays(self):
        sc, *_ = make_console()
        with self.assertRaises(ValueError):
            sc.set_text_delay(0, 10)
        with self.assertRaises(ValueError):
            sc.set_xmodem_delay(-1)


class TestXModem(SmartConsoleTestBase):
    def write_source(self, data):
        source = self.path("source.bin")
        with open(source, "wb") as f:
            f.write(data)
        return source

    def transfer(self, data, sender=None, receiver=None, events=None):
        """Run one file from a sending console to a receiving one."""
        if events is None:
            events = EventQueue()
            sender, *_ = make_console(events)
            receiver, *_ = make_console(events)
        target = self.path("target.bin")
        sender.send_file(self.write_source(data))
        receiver.receive_file(target)
        for _ in range(10_000):
            if not sender.is_xmodem_active and not receiver.is_xmodem_active:
                break
            out = sender.raw_read()
            if out:
                receiver.raw_write(out)
            back = receiver.raw_read()
            if back:
                sender.raw_write(back)
            events.advance(sender.xmodem_delay)
        else:
            self.fail("transfer did not finish")
        with open(target, "rb") as f:
            return f.read(), sender, receiver

    def test_partial_last_block(self):
        data = pattern(200)
        received, sender, receiver = self.transfer(data)
        self.assertEqual(received, data)
        self.assertEqual(sender.xmodem_total, 200)
        self.assertEqual(receiver.xmodem_total, 200)

    def test_exact_blocks(self):
        data = pattern(2 * XBLKLEN)
        received, *_ = self.transfer(data)
        self.assertEqual(received, data)

    def test_receive_block_from_program(self):
        sc, inner, events = make_console()
        target = self.path("prog.bin")
        sc.receive_file(target)
        self.assertEqual(sc.raw_read(), bytes([NAK]))
        block = bytes(range(XBLKLEN))
        sc.raw_write(bytes([SOH, 1, 254]) + block + bytes([sum(block) & 0xFF]))
        self.assertEqual(sc.xmodem_state, XState.SEND_ACK)
        events.advance(sc.xmodem_delay)
        self.assertEqual(sc.raw_read(), bytes([ACK]))
        sc.raw_write(bytes([EOT]))
        events.advance(sc.xmodem_delay)
        self.assertEqual(sc.raw_read(), bytes([ACK]))
        self.assertFalse(sc.is_xmodem_active)
        self.assertEqual(inner.take_output(), b"")
        with open(target, "rb") as f:
            self.assertEqual(f.read(), block)

    def test_chatter_passes_through(self):
        sc, inner, _ = make_console()
        sc.receive_file(self.path("prog.bin"))
        sc.raw_read()
        sc.raw_write(b"Ready")
        self.assertEqual(inner.take_output(), b"Ready")
        self.assertEqual(sc.xmodem_state, XState.WAIT_BLOCK)

    def test_bad_block_number_aborts(self):
        sc, *_ = make_console()
        sc.receive_file(self.path("prog.bin"))
        sc.raw_read()
        sc.raw_write(bytes([SOH, 7]))
        self.assertFalse(sc.is_xmodem_active)

    def test_protocol_bytes_not_logged(self):
        events = EventQueue()
        sender, *_ = make_console(events)
        receiver, *_ = make_console(events)
        send_log = sender.open_log(self.path("sender"))
        receive_log = receiver.open_log(self.path("receiver"))
        receiver.raw_write(b"Ready")
        received, *_ = self.transfer(pattern(200), sender, receiver, events)
        self.assertEqual(received, pattern(200))
        sender.close_log()
        receiver.close_log()
        with open(send_log, "rb") as f:
            self.assertEqual(f.read(), b"")
        with open(receive_log, "rb") as f:
            self.assertEqual(f.read(), b"Ready")

    def send_block(self, sc, events, number, block, checksum=None):
        if checksum is None:
            checksum = sum(block) & 0xFF
        sc.raw_write(bytes([SOH, number, 255 - number]) + block + bytes([checksum]))
        if sc.xmodem_state == XState.SEND_ACK:
            events.advance(sc.xmodem_delay)
            self.assertEqual(sc.raw_read(), bytes([ACK]))

    def test_bad_checksum_aborts(self):
        sc, _, events = make_console()
        target = self.path("prog.bin")
        sc.receive_file(target)
        sc.raw_read()
        first = pattern(XBLKLEN)
        self.send_block(sc, events, 1, first)
        self.assertEqual(sc.xmodem_state, XState.WAIT_BLOCK)
        second = bytes(XBLKLEN)
        self.send_block(sc, events, 2, second, checksum=0x55)
        self.assertFalse(sc.is_xmodem_active)
        with open(target, "rb") as f:
            self.assertEqual(f.read(), first)

    def test_trailing_sub_is_treated_as_padding(self):
        sc, _, events = make_console()
        target = self.path("prog.bin")
        sc.receive_file(target)
        sc.raw_read()
        block = b"DATA\x1a\x1a" + bytes([SUB]) * (XBLKLEN - 6)
        self.send_block(sc, events, 1, block)
        sc.raw_write(bytes([EOT]))
        self.assertEqual(sc.xmodem_state, XState.SEND_ACK_FINISH)
        with open(target, "rb") as f:
            self.assertEqual(f.read(), b"DATA")

    def test_nak_for_data_block_aborts(self):
        sc, _, events = make_console()
        sc.send_file(self.write_source(b"abc"))
        sc.raw_write(bytes([NAK]))
        sent = b""
        for _ in range(1000):
            if sc.xmodem_state == XState.WAIT_ACK_NAK:
                break
            events.advance(sc.xmodem_delay)
            sent += sc.raw_read()
        self.assertEqual(len(sent), XBLKLEN + 3)
        self.assertEqual(sent[:3], bytes([SOH, 1, 254]))
        sc.raw_write(bytes([NAK]))
        self.assertFalse(sc.is_xmodem_active)

    def test_text_upload_cancels_transfer(self):
        sc, *_ = make_console()
        text = self.path("upload.txt")
        with open(text, "wb") as f:
            f.write(b"DIR\r")
        sc.send_file(self.write_source(b"abc"))
        sc.send_text(text)
        self.assertTrue(sc.is_sending_text)
        self.assertFalse(sc.is_xmodem_active)

        sc.receive_file(self.path("incoming"))
        self.assertFalse(sc.is_sending_text)
        self.assertEqual(sc.xmodem_state, XState.SEND_NAK_START)

        sc.send_file(self.write_source(b"abc"))
        self.assertEqual(sc.xmodem_state, XState.WAIT_NAK_START)
        sc.close()

    def test_abort(self):
        sc, *_ = make_console()
        sc.send_file(self.write_source(b"abc"))
        self.assertTrue(sc.is_xmodem_active)
        self.assertIn("WAIT_NAK_START", sc.show())
        sc.abort_xmodem()
        self.assertFalse(sc.is_xmodem_active)


if __name__ == "__main__":
    unittest.main()
