"""
Bit-Banged Serial
==================
The ELF2K monitor and ElfOS talk to a terminal by toggling Q and sampling
an EF input in software.  This device plays the terminal's end of that
wire.

  Direction        CPU line   Machine
  ---------------  ---------  ------------------------------------------
  terminal -> CPU  EF (sense) TX: console key -> start bit, 8 data bits
                              LSB first, 2 stop bits, one per bit time
  CPU -> terminal  Q (flag)   RX: falling edge starts the receiver, which
                              samples mid-bit and writes the byte out

Both lines can be inverted independently (the ELF2K hardware inverts
both).  Machine states:

  0      idle
  1      start bit
  2-9    data bits
  10-11  stop bits
"""

from __future__ import annotations
import logging
from typing import Callable, Optional

from console import VirtualConsole
from devices import Device, DEV_INOUT, EF3, MARK, SPACE
from events import EventQueue, hz_to_ns, ns_to_hz, ns_to_us, us_to_ns

log = logging.getLogger(__name__)

DATA_BITS = 8
STOP_BITS = 2

STATE_IDLE  = 0
STATE_START = 1
STATE_DATA  = 2
STATE_STOP  = STATE_DATA + DATA_BITS

EVENT_TXBIT  = 1
EVENT_RXBIT  = 2
EVENT_TXPOLL = 3

DEFAULT_BAUD = 1200
DEFAULT_POLL = us_to_ns(100)


class SoftwareSerial(Device):
    """Terminal on the far end of a Q / EF bit-banged serial line."""

    def __init__(self, events: EventQueue, console: VirtualConsole,
                 on_break: Optional[Callable[[], None]] = None,
                 baud: int = DEFAULT_BAUD, poll_ns: int = DEFAULT_POLL,
                 tx_invert: bool = False, rx_invert: bool = False,
                 sense: int = EF3, name: str = "SERIAL"):
        super().__init__(name, "Software serial", 0, 0, DEV_INOUT, events)
        self.console = console
        self.on_break = on_break
        self.sense = sense
        self.bit_ns = hz_to_ns(baud)
        self.poll_ns = poll_ns
        self.tx_invert = tx_invert
        self.rx_invert = rx_invert
        self.tx_state = self.rx_state = STATE_IDLE
        self.tx_buffer = self.rx_buffer = 0
        self.tx_bit = MARK
        self.rx_last = MARK
        self.framing_errors = 0

    # -- Configuration --

    @property
    def baud(self) -> int:
        return ns_to_hz(self.bit_ns)

    @baud.setter
    def baud(self, baud: int):
        if baud <= 0:
            raise ValueError(f"bad baud rate {baud}")
        self.bit_ns = hz_to_ns(baud)

    def set_invert(self, tx: bool, rx: bool):
        self.tx_invert, self.rx_invert = tx, rx
        if not self.tx_busy:
            self._transmit_bit(MARK)

    @property
    def tx_busy(self) -> bool:
        return self.tx_state != STATE_IDLE

    @property
    def rx_busy(self) -> bool:
        return self.rx_state != STATE_IDLE

    def reset(self):
        super().reset()
        self.tx_state = self.rx_state = STATE_IDLE
        self.tx_buffer = self.rx_buffer = 0
        self.rx_last = MARK
        self._transmit_bit(MARK)
        self.schedule(EVENT_TXPOLL, self.poll_ns)

    # -- Terminal -> CPU --

    def _transmit_bit(self, bit: int):
        self.tx_bit = (bit ^ 1 if self.tx_invert else bit) & 1

    def get_sense(self, index: int, default: int = 0) -> int:
        return self.tx_bit

    def start_transmitter(self, data: int):
        if self.tx_busy:
            return
        self.tx_buffer = data & 0xFF
        self.tx_state = STATE_START
        self._transmit_bit(SPACE)
        self.schedule(EVENT_TXBIT, self.bit_ns)

    def _transmit_next(self):
        self.tx_state += 1
        if STATE_DATA <= self.tx_state < STATE_STOP:
            self._transmit_bit(self.tx_buffer & 1)
            self.tx_buffer >>= 1
        elif STATE_STOP <= self.tx_state < STATE_STOP + STOP_BITS:
            self._transmit_bit(MARK)
        else:
            self.tx_state = STATE_IDLE
            return
        self.schedule(EVENT_TXBIT, self.bit_ns)

    def _poll_keyboard(self):
        if not self.tx_busy and not self.rx_busy:
            if self.console.is_console_break():
                if self.on_break is not None:
                    self.on_break()
            else:
                data = self.console.raw_read(1)
                if data:
                    self.start_transmitter(data[0])
        self.schedule(EVENT_TXPOLL, self.poll_ns)

    # -- CPU -> terminal --

    def set_flag(self, index: int, bit: int):
        if self.rx_invert:
            bit ^= 1
        bit &= 1
        if self.rx_state == STATE_IDLE and self.rx_last == MARK and bit == SPACE:
            self._start_receiver()
        self.rx_last = bit

    def _start_receiver(self):
        self.rx_state = STATE_DATA
        self.rx_buffer = 0
        # first sample lands in the middle of data bit 0
        self.schedule(EVENT_RXBIT, self.bit_ns + self.bit_ns // 2)

    def _receive_next(self):
        if STATE_DATA <= self.rx_state < STATE_DATA + DATA_BITS:
            self.rx_state += 1
            self.rx_buffer >>= 1
            if self.rx_last:
                self.rx_buffer |= 0x80
            self.schedule(EVENT_RXBIT, self.bit_ns)
        else:
            self._receiver_done(self.rx_last != MARK)

    def _receiver_done(self, framing_error: bool):
        self.rx_state = STATE_IDLE
        if framing_error:
            self.framing_errors += 1
            log.warning("software serial framing error, dropped 0x%02X", self.rx_buffer)
            return
        self.console.raw_write(bytes([self.rx_buffer]))

    def on_event(self, param: int):
        if param == EVENT_TXPOLL:
            self._poll_keyboard()
        elif param == EVENT_TXBIT:
            self._transmit_next()
        elif param == EVENT_RXBIT:
            self._receive_next()
        else:
            raise RuntimeError(f"unknown serial event {param}")

    def show(self) -> str:
        if self.tx_invert:
            invert = "BOTH" if self.rx_invert else "TX"
        else:
            invert = "RX" if self.rx_invert else "NONE"
        return "\n".join([
            f"Invert={invert}, Baud={self.baud}, Bit time={ns_to_us(self.bit_ns)}us, "
            f"Polling interval={ns_to_us(self.poll_ns)}us",
            f"RXstate={self.rx_state}, RXlast={self.rx_last}, RXbuffer=0x{self.rx_buffer:02X}",
            f"TXstate={self.tx_state}, TXlast={self.tx_bit}, TXbuffer=0x{self.tx_buffer:02X}",
        ])
