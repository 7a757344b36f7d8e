"""
Smart Console
==============
A VirtualConsole wrapper that adds three host-side conveniences on top of
any console:

  * log capture   - everything the emulated program prints is copied to a
                    file (512-byte buffered)
  * text send     - a host text file is "typed" into the program at a
                    fixed pace, with an extra pause after every line
  * XMODEM        - 128-byte checksum XMODEM send and receive, with the
                    emulated program on the other end of the wire

All pacing goes through the event queue: after handing a byte out the
console schedules a TX_READY event and refuses to produce another byte
until it fires.

XMODEM send (host -> program):

  WAIT_NAK_START --NAK--> SEND_BLOCK -> SEND_BLKNO_1 -> SEND_BLKNO_2
      -> SEND_DATA x128 -> SEND_CKSUM -> WAIT_ACK_NAK --ACK--> SEND_BLOCK
      ... SEND_BLOCK at end of file sends EOT -> WAIT_ACK_FINISH --ACK--> idle

XMODEM receive (program -> host):

  SEND_NAK_START -> WAIT_BLOCK --SOH--> WAIT_BLKNO_1 -> WAIT_BLKNO_2
      -> WAIT_DATA x128 -> WAIT_CKSUM -> SEND_ACK -> WAIT_BLOCK ...
      WAIT_BLOCK --EOT--> SEND_ACK_FINISH -> idle

There are no timeouts and no retries; any unexpected byte ends the
transfer with an error in the log.
"""

from __future__ import annotations
import enum
import logging
from typing import BinaryIO, Optional

from console import VirtualConsole
from events import EventQueue, cps_to_ns, ms_to_ns
from memory import default_extension

log = logging.getLogger(__name__)

# ASCII control characters used by XMODEM
SOH = 0x01
EOT = 0x04
ACK = 0x06
NAK = 0x15
SUB = 0x1A
XPAD = SUB
CR = 0x0D
LF = 0x0A

XBLKLEN = 128
LOG_BUFFER_SIZE = 512
TEXT_BUFFER_SIZE = 512

SEND_CHAR_DELAY = cps_to_ns(500)
SEND_LINE_DELAY = ms_to_ns(25)
XMODEM_DELAY    = cps_to_ns(50)

EVENT_TXREADY = 1

DEFAULT_LOG_TYPE    = ".log"
DEFAULT_TEXT_TYPE   = ".txt"
DEFAULT_BINARY_TYPE = ".bin"


class XState(enum.Enum):
    XIDLE           = 0
    # receiving
    SEND_NAK_START  = 1
    WAIT_BLOCK      = 2
    WAIT_BLKNO_1    = 3
    WAIT_BLKNO_2    = 4
    WAIT_DATA       = 5
    WAIT_CKSUM      = 6
    SEND_ACK        = 7
    SEND_ACK_FINISH = 8
    # sending
    WAIT_NAK_START  = 9
    WAIT_ACK_NAK    = 10
    SEND_BLOCK      = 11
    SEND_BLKNO_1    = 12
    SEND_BLKNO_2    = 13
    SEND_DATA       = 14
    SEND_CKSUM      = 15
    WAIT_ACK_FINISH = 16


_HANDSHAKE_WAITS = (XState.WAIT_ACK_NAK, XState.WAIT_ACK_FINISH, XState.WAIT_NAK_START)


class SmartConsole(VirtualConsole):
    """Console wrapper adding logging, text upload and XMODEM."""

    name = "CONSOLE"

    def __init__(self, events: EventQueue, console: VirtualConsole):
        super().__init__(console.console_break)
        self.events = events
        self.console = console
        self.tx_ready = True

        # log capture
        self.log_name: Optional[str] = None
        self._log_file: Optional[BinaryIO] = None
        self._log_buffer = bytearray()
        self.log_total = 0

        # text send
        self.text_name: Optional[str] = None
        self._text_file: Optional[BinaryIO] = None
        self._text_buffer = b""
        self._text_next = 0
        self.text_total = 0
        self.no_crlf = True
        self._cr_last = False
        self.char_delay = SEND_CHAR_DELAY
        self.line_delay = SEND_LINE_DELAY

        # XMODEM
        self.xmodem_name: Optional[str] = None
        self._xfile: Optional[BinaryIO] = None
        self.xmodem_state = XState.XIDLE
        self._xbuffer = bytearray([XPAD]) * XBLKLEN
        self._xlen = 0
        self._xnext = 0
        self._xchecksum = 0
        self._xblock = 0
        self.xmodem_total = 0
        self.xmodem_delay = XMODEM_DELAY

    # -- Break character lives on the wrapped console --

    @property
    def console_break(self) -> int:
        return self.console.console_break

    @console_break.setter
    def console_break(self, ch: int):
        self.console.console_break = ch

    def get_console_break(self) -> int:
        return self.console.console_break

    def is_console_break(self, timeout_ms: int = 0) -> bool:
        return self.console.is_console_break(timeout_ms)

    # -- Console contract --

    def raw_read(self, count: int = 1, timeout_ms: int = 0) -> bytes:
        if self.is_sending_text:
            ch = self._next_text_byte()
            return b"" if ch is None else bytes([ch])
        if self.is_xmodem_active:
            ch = self._xsend_byte()
            if ch is not None:
                return bytes([ch])
        return self.console.raw_read(count, timeout_ms)

    def raw_write(self, data: bytes):
        if not self.is_xmodem_active:
            self._write_log(data)
            self.console.raw_write(data)
            return
        for ch in data:
            state = self.xmodem_state
            if ((state == XState.WAIT_BLOCK and ch not in (SOH, EOT))
                    or (state in _HANDSHAKE_WAITS and ch not in (ACK, NAK))):
                self._write_log(bytes([ch]))
                self.console.raw_write(bytes([ch]))
            else:
                self._xreceive_byte(ch)

    def close(self):
        self.close_log()
        self.abort_text()
        self.abort_xmodem()
        self.events.cancel_all(self)

    # -- Pacing --

    def _schedule_tx(self, delay_ns: int):
        self.tx_ready = False
        self.events.schedule(self, EVENT_TXREADY, delay_ns)

    def on_event(self, param: int):
        if param != EVENT_TXREADY:
            raise RuntimeError(f"unknown console event {param}")
        self.tx_ready = True

    def set_text_delay(self, char_ns: int, line_ns: int):
        if char_ns <= 0 or line_ns <= 0:
            raise ValueError("text delays must be positive")
        self.char_delay, self.line_delay = char_ns, line_ns

    def set_xmodem_delay(self, delay_ns: int):
        if delay_ns <= 0:
            raise ValueError("XMODEM delay must be positive")
        self.xmodem_delay = delay_ns

    # ------------------------------------------------------------------
    #  Log capture
    # ------------------------------------------------------------------

    @property
    def is_logging(self) -> bool:
        return self._log_file is not None

    def open_log(self, path: str, append: bool = False) -> str:
        """Start capturing console output.  Returns the file name used."""
        self.close_log()
        name = default_extension(path, DEFAULT_LOG_TYPE)
        self._log_file = open(name, "ab" if append else "wb")
        self.log_name = name
        self._log_buffer.clear()
        self.log_total = 0
        log.info("capturing console output to %s", name)
        return name

    def _write_log(self, data: bytes):
        if self._log_file is None:
            return
        for ch in data:
            self._log_buffer.append(ch)
            if len(self._log_buffer) >= LOG_BUFFER_SIZE:
                self._flush_log()
                if self._log_file is None:
                    return

    def _flush_log(self):
        if not self._log_buffer:
            return
        try:
            self._log_file.write(self._log_buffer)
        except OSError as e:
            log.error("error writing %s: %s", self.log_name, e)
            self._log_buffer.clear()
            self.close_log(flush=False)
            return
        self.log_total += len(self._log_buffer)
        self._log_buffer.clear()

    def close_log(self, flush: bool = True):
        if self._log_file is None:
            return
        if flush:
            self._flush_log()
        if self._log_file is None:
            return
        log.info("wrote %d bytes to %s", self.log_total, self.log_name)
        try:
            self._log_file.close()
        except OSError as e:
            log.error("error closing %s: %s", self.log_name, e)
        self._log_file = None

    # ------------------------------------------------------------------
    #  Paced text send
    # ------------------------------------------------------------------

    @property
    def is_sending_text(self) -> bool:
        return self._text_file is not None

    def send_text(self, path: str) -> str:
        self.abort_text()
        self.abort_xmodem()
        name = default_extension(path, DEFAULT_TEXT_TYPE)
        self._text_file = open(name, "rb")
        self.text_name = name
        self._text_buffer, self._text_next = b"", 0
        self.text_total = 0
        self.tx_ready = True
        self._cr_last = False
        log.info("sending text file %s", name)
        return name

    def _fill_text_buffer(self):
        self._text_next = 0
        try:
            self._text_buffer = self._text_file.read(TEXT_BUFFER_SIZE)
        except OSError as e:
            log.error("error reading %s: %s", self.text_name, e)
            self._text_buffer = b""
        if not self._text_buffer:
            self.abort_text()

    def _get_text_byte(self) -> Optional[int]:
        if not self.is_sending_text or not self.tx_ready:
            return None
        if self._text_next >= len(self._text_buffer):
            self._fill_text_buffer()
            if not self.is_sending_text:
                return None
        ch = self._text_buffer[self._text_next]
        self._text_next += 1
        self.text_total += 1
        return ch

    def _next_text_byte(self) -> Optional[int]:
        ch = self._get_text_byte()
        if ch is None:
            return None
        # drop the LF of a CRLF pair
        while self.no_crlf and self._cr_last and ch == LF:
            ch = self._get_text_byte()
            if ch is None:
                return None
        self._cr_last = False
        if ch in (CR, LF):
            self._schedule_tx(self.line_delay)
            if ch == CR:
                self._cr_last = True
            elif self.no_crlf:
                ch = CR
        else:
            self._schedule_tx(self.char_delay)
        return ch

    def abort_text(self):
        if self._text_file is None:
            return
        log.info("read %d bytes from %s", self.text_total, self.text_name)
        self._text_file.close()
        self._text_file = None

    # ------------------------------------------------------------------
    #  XMODEM
    # ------------------------------------------------------------------

    @property
    def is_xmodem_active(self) -> bool:
        return self.xmodem_state != XState.XIDLE

    def _xnext_state(self, state: XState):
        if state != self.xmodem_state:
            log.debug("XMODEM %s -> %s", self.xmodem_state.name, state.name)
            self.xmodem_state = state

    def _xschedule_tx(self, state: XState):
        self._xnext_state(state)
        self._schedule_tx(self.xmodem_delay)

    def _xstart(self, state: XState):
        self._xbuffer[:] = bytes([XPAD]) * XBLKLEN
        self._xlen = XBLKLEN
        self._xnext = self.xmodem_total = 0
        self._xblock = self._xchecksum = 0
        self.tx_ready = True
        self._xnext_state(state)

    def receive_file(self, path: str) -> str:
        """Receive a file from the emulated program."""
        self.abort_text()
        self.abort_xmodem()
        name = default_extension(path, DEFAULT_BINARY_TYPE)
        self._xfile = open(name, "wb")
        self.xmodem_name = name
        self._xstart(XState.SEND_NAK_START)
        self._xblock = 1
        return name

    def send_file(self, path: str) -> str:
        """Send a file to the emulated program."""
        self.abort_text()
        self.abort_xmodem()
        name = default_extension(path, DEFAULT_BINARY_TYPE)
        self._xfile = open(name, "rb")
        self.xmodem_name = name
        self._xstart(XState.WAIT_NAK_START)
        return name

    def _xfinish(self):
        if self._xfile is None:
            return
        log.info("transferred %d bytes for %s", self.xmodem_total, self.xmodem_name)
        self._xfile.close()
        self._xfile = None

    def abort_xmodem(self):
        if not self.is_xmodem_active:
            return
        self._xfinish()
        self._xnext_state(XState.XIDLE)

    def _xread_buffer(self) -> bool:
        self._xnext = self._xchecksum = 0
        try:
            chunk = self._xfile.read(XBLKLEN) if self._xfile is not None else b""
        except OSError as e:
            log.error("error reading %s: %s", self.xmodem_name, e)
            chunk = b""
        if not chunk:
            self._xfinish()
            return False
        self._xbuffer[:] = chunk + bytes([XPAD]) * (XBLKLEN - len(chunk))
        self._xlen = len(chunk)
        self.xmodem_total += len(chunk)
        self._xblock = (self._xblock + 1) & 0xFF
        return True

    def _xwrite_buffer(self, last: bool = False):
        """Write the received block to the file.

        The last block has its SUB padding stripped.  XMODEM carries no
        length, so a file that really ends in 0x1A bytes loses them.
        """
        count = self._xnext
        if last:
            while count > 0 and self._xbuffer[count - 1] == XPAD:
                count -= 1
        self.xmodem_total += count
        if count and self._xfile is not None:
            try:
                self._xfile.write(self._xbuffer[:count])
            except OSError as e:
                log.error("error writing %s: %s", self.xmodem_name, e)
                self._xfinish()
        self._xnext = self._xchecksum = 0
        self._xblock = (self._xblock + 1) & 0xFF
        if last:
            self._xfinish()

    def _xreceive_byte(self, ch: int):
        state = self.xmodem_state
        log.debug("XMODEM state %s received 0x%02X", state.name, ch)

        if state == XState.WAIT_BLOCK:
            if ch == SOH:
                if self._xnext > 0:
                    self._xwrite_buffer()
                elif self._xblock == 1:
                    log.info("receiving file %s", self.xmodem_name)
                self._xnext_state(XState.WAIT_BLKNO_1)
                return
            if ch == EOT:
                self._xwrite_buffer(last=True)
                self._xschedule_tx(XState.SEND_ACK_FINISH)
                return

        elif state == XState.WAIT_BLKNO_1:
            if ch == self._xblock:
                self._xnext_state(XState.WAIT_BLKNO_2)
                return
            log.error("XMODEM received block number %d when expecting %d", ch, self._xblock)

        elif state == XState.WAIT_BLKNO_2:
            if ch == 255 - self._xblock:
                self._xnext_state(XState.WAIT_DATA)
                return
            log.error("XMODEM received inverse block number %d when expecting %d",
                      ch, 255 - self._xblock)

        elif state == XState.WAIT_DATA:
            self._xbuffer[self._xnext] = ch
            self._xnext += 1
            self._xchecksum = (self._xchecksum + ch) & 0xFF
            if self._xnext >= XBLKLEN:
                self._xnext_state(XState.WAIT_CKSUM)
            return

        elif state == XState.WAIT_CKSUM:
            if ch == self._xchecksum:
                self._xschedule_tx(XState.SEND_ACK)
                return
            log.error("XMODEM received checksum 0x%02X but expected 0x%02X",
                      ch, self._xchecksum)

        elif state == XState.WAIT_ACK_NAK:
            if ch == ACK:
                self._xschedule_tx(XState.SEND_BLOCK)
                return
            if ch == NAK:
                log.error("XMODEM received a NAK for our data block")

        elif state == XState.WAIT_NAK_START:
            if ch == NAK:
                log.info("sending file %s", self.xmodem_name)
                self._xschedule_tx(XState.SEND_BLOCK)
                return

        elif state == XState.WAIT_ACK_FINISH:
            if ch == ACK:
                self._xnext_state(XState.XIDLE)
                return

        log.error("XMODEM protocol error, state %s, data 0x%02X", state.name, ch)
        self._xfinish()
        self._xnext_state(XState.XIDLE)

    def _xsend_byte(self) -> Optional[int]:
        if not self.tx_ready:
            return None
        state = self.xmodem_state

        if state == XState.SEND_NAK_START:
            ch = NAK
            self._xnext_state(XState.WAIT_BLOCK)
        elif state == XState.SEND_ACK:
            ch = ACK
            self._xnext_state(XState.WAIT_BLOCK)
        elif state == XState.SEND_ACK_FINISH:
            ch = ACK
            self._xnext_state(XState.XIDLE)
        elif state == XState.SEND_BLOCK:
            if self._xread_buffer():
                ch = SOH
                self._xschedule_tx(XState.SEND_BLKNO_1)
            else:
                ch = EOT
                self._xnext_state(XState.WAIT_ACK_FINISH)
        elif state == XState.SEND_BLKNO_1:
            ch = self._xblock
            self._xschedule_tx(XState.SEND_BLKNO_2)
        elif state == XState.SEND_BLKNO_2:
            ch = 255 - self._xblock
            self._xschedule_tx(XState.SEND_DATA)
        elif state == XState.SEND_DATA:
            ch = self._xbuffer[self._xnext] if self._xnext < self._xlen else XPAD
            self._xnext += 1
            self._xchecksum = (self._xchecksum + ch) & 0xFF
            self._xschedule_tx(XState.SEND_DATA if self._xnext < XBLKLEN
                               else XState.SEND_CKSUM)
        elif state == XState.SEND_CKSUM:
            ch = self._xchecksum
            self._xnext_state(XState.WAIT_ACK_NAK)
        else:
            return None

        log.debug("XMODEM state %s sending 0x%02X", state.name, ch)
        return ch

    # ------------------------------------------------------------------

    def show(self) -> str:
        lines = []
        if self.is_logging:
            lines.append(f"Logging to {self.log_name} ({self.log_total} bytes)")
        if self.is_sending_text:
            lines.append(f"Sending {self.text_name} ({self.text_total} bytes)")
        if self.is_xmodem_active:
            lines.append(f"XMODEM {self.xmodem_name} state {self.xmodem_state.name}, "
                         f"block {self._xblock}, {self.xmodem_total} bytes")
        lines.append(f"Text delay {self.char_delay}ns/char, {self.line_delay}ns/line, "
                     f"XMODEM delay {self.xmodem_delay}ns, "
                     f"CRLF folding {'on' if self.no_crlf else 'off'}")
        return "\n".join(lines)
