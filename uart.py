"""
INS8250 UART
=============
8250 / 16450 class UART wired to the virtual console.

  Reg  DLAB=0 read  DLAB=0 write  DLAB=1
  ---  -----------  ------------  -----------
   0   RBR          THR           divisor low
   1   IER          IER           divisor high
   2   IIR          -
   3   LCR          LCR
   4   MCR          MCR
   5   LSR          -
   6   MSR          -
   7   SCR          SCR

Character timing is what the console can bear rather than what the
divisor says: THR empties one character time after it is written, and a
periodic receiver poll fetches at most one console key whenever RBR is
empty.  In loopback (MCR.LOOP) transmitted bytes come back into RBR
instead of going to the console, and MCR drives MSR.
"""

from __future__ import annotations
import logging
from typing import Callable, Optional

from console import VirtualConsole
from devices import Device, DEV_INOUT
from events import EventQueue, cps_to_ns, ms_to_ns, ns_to_cps, ns_to_ms

log = logging.getLogger(__name__)

REG_RBR = 0
REG_THR = 0
REG_DLL = 0
REG_DLM = 1
REG_IER = 1
REG_IIR = 2
REG_LCR = 3
REG_MCR = 4
REG_LSR = 5
REG_MSR = 6
REG_SCR = 7
REG_COUNT = 8

IER_RDA  = 0x01
IER_THRE = 0x02
IER_LSR  = 0x04
IER_MSR  = 0x08

IIR_NOINT = 0x01
IIR_RLS   = 0x06
IIR_RDA   = 0x04
IIR_THRE  = 0x02
IIR_MODEM = 0x00

LCR_BREAK = 0x40
LCR_DLAB  = 0x80

MCR_DTR  = 0x01
MCR_RTS  = 0x02
MCR_OUT1 = 0x04
MCR_OUT2 = 0x08
MCR_LOOP = 0x10

LSR_DR   = 0x01
LSR_OE   = 0x02
LSR_PE   = 0x04
LSR_FE   = 0x08
LSR_BI   = 0x10
LSR_THRE = 0x20
LSR_TEMT = 0x40
LSR_ERRORS = LSR_OE | LSR_PE | LSR_FE | LSR_BI

MSR_DCTS  = 0x01
MSR_DDSR  = 0x02
MSR_TERI  = 0x04
MSR_DDCD  = 0x08
MSR_DELTA = 0x0F
MSR_CTS   = 0x10
MSR_DSR   = 0x20
MSR_RI    = 0x40
MSR_DCD   = 0x80

EVENT_TXDONE  = 1
EVENT_RXREADY = 2
EVENT_BRKDONE = 3

DEFAULT_SPEED = 2000        # characters per second
DEFAULT_BREAK_TIME = ms_to_ns(100)


class INS8250(Device):
    """8250 UART connected to a virtual console."""

    def __init__(self, events: EventQueue, console: VirtualConsole,
                 on_break: Optional[Callable[[], None]] = None,
                 base_port: int = 0, name: str = "SLU"):
        super().__init__(name, "INS8250 UART", base_port, REG_COUNT, DEV_INOUT, events)
        self.console = console
        self.on_break = on_break
        self.char_ns = self.poll_ns = cps_to_ns(DEFAULT_SPEED)
        self.break_ns = DEFAULT_BREAK_TIME
        self._clear_registers()

    def _clear_registers(self):
        self.rbr = self.thr = self.ier = self.lcr = 0
        self.mcr = self.msr = self.scr = 0
        self.iir = IIR_NOINT
        self.lsr = LSR_THRE | LSR_TEMT
        self.divisor = 0
        self.sending_break = False
        self._thre_pending = False

    def reset(self):
        super().reset()
        self._clear_registers()
        self._update_interrupt()
        self.schedule(EVENT_RXREADY, self.poll_ns)

    # -- Configuration --

    @property
    def speed(self) -> int:
        return ns_to_cps(self.char_ns)

    @speed.setter
    def speed(self, cps: int):
        if cps <= 0:
            raise ValueError(f"bad UART speed {cps}")
        self.char_ns = self.poll_ns = cps_to_ns(cps)

    @property
    def loopback(self) -> bool:
        return bool(self.mcr & MCR_LOOP)

    @property
    def dlab(self) -> bool:
        return bool(self.lcr & LCR_DLAB)

    @property
    def rx_busy(self) -> bool:
        return bool(self.lsr & LSR_DR)

    # -- Interrupts --

    def _update_interrupt(self):
        if self.ier & IER_LSR and self.lsr & LSR_ERRORS:
            self.iir = IIR_RLS
        elif self.ier & IER_RDA and self.lsr & LSR_DR:
            self.iir = IIR_RDA
        elif self.ier & IER_THRE and self._thre_pending:
            self.iir = IIR_THRE
        elif self.ier & IER_MSR and self.msr & MSR_DELTA:
            self.iir = IIR_MODEM
        else:
            self.iir = IIR_NOINT
        self.request_interrupt(self.iir != IIR_NOINT)

    @property
    def irq_pending(self) -> bool:
        return self.iir != IIR_NOINT

    # -- Register side effects --

    def _update_lsr(self, set_bits: int, clear_bits: int = 0):
        self.lsr = (self.lsr | set_bits) & ~clear_bits & 0xFF
        self._update_interrupt()

    def _update_rbr(self, data: int):
        overrun = LSR_OE if self.lsr & LSR_DR else 0
        self.rbr = data & 0xFF
        self._update_lsr(LSR_DR | overrun)

    def _read_rbr(self) -> int:
        self._update_lsr(0, LSR_DR)
        return self.rbr

    def _read_lsr(self) -> int:
        value = self.lsr
        self._update_lsr(0, LSR_ERRORS)
        return value & 0x7F

    def _update_msr(self, new: int):
        new &= ~MSR_DELTA
        if (self.msr ^ new) & MSR_CTS:
            new |= MSR_DCTS
        if (self.msr ^ new) & MSR_DSR:
            new |= MSR_DDSR
        if (self.msr ^ new) & MSR_DCD:
            new |= MSR_DDCD
        if self.msr & MSR_RI and not new & MSR_RI:
            new |= MSR_TERI
        self.msr = new
        self._update_interrupt()

    def _read_msr(self) -> int:
        value = self.msr
        self.msr &= ~MSR_DELTA
        self._update_interrupt()
        return value

    def _read_iir(self) -> int:
        value = self.iir
        if value == IIR_THRE:
            self._thre_pending = False
            self._update_interrupt()
        return value

    def _update_mcr(self, value: int):
        self.mcr = value
        if self.loopback:
            msr = 0
            if value & MCR_RTS:
                msr |= MSR_CTS
            if value & MCR_DTR:
                msr |= MSR_DSR
            if value & MCR_OUT1:
                msr |= MSR_RI
            if value & MCR_OUT2:
                msr |= MSR_DCD
            self._update_msr(msr)

    def _update_lcr(self, value: int):
        starting = value & LCR_BREAK and not self.lcr & LCR_BREAK
        self.lcr = value
        if starting:
            self.sending_break = True
            self.schedule(EVENT_BRKDONE, self.break_ns)

    def _write_thr(self, data: int):
        self.thr = data
        self._thre_pending = False
        self._update_lsr(0, LSR_THRE | LSR_TEMT)
        if not self.loopback:
            self.console.raw_write(bytes([data]))
        self.schedule(EVENT_TXDONE, self.char_ns)

    def _transmitter_done(self):
        if self.loopback:
            self._update_rbr(self.thr)
        self._thre_pending = True
        self._update_lsr(LSR_THRE | LSR_TEMT)

    def _receiver_ready(self):
        if self.console.is_console_break():
            if self.on_break is not None:
                self.on_break()
        elif not self.loopback and not self.rx_busy:
            data = self.console.raw_read(1)
            if data:
                self._update_rbr(data[0])
        self.schedule(EVENT_RXREADY, self.poll_ns)

    def on_event(self, param: int):
        if param == EVENT_TXDONE:
            self._transmitter_done()
        elif param == EVENT_RXREADY:
            self._receiver_ready()
        elif param == EVENT_BRKDONE:
            self.sending_break = False
        else:
            raise RuntimeError(f"unknown UART event {param}")

    # -- Register access --

    def read_register(self, reg: int) -> int:
        reg &= REG_COUNT - 1
        if reg == REG_RBR:
            return self.divisor & 0xFF if self.dlab else self._read_rbr()
        if reg == REG_IER:
            return self.divisor >> 8 if self.dlab else self.ier
        if reg == REG_IIR:
            return self._read_iir()
        if reg == REG_LCR:
            return self.lcr
        if reg == REG_MCR:
            return self.mcr
        if reg == REG_LSR:
            return self._read_lsr()
        if reg == REG_MSR:
            return self._read_msr()
        return self.scr

    def write_register(self, reg: int, value: int):
        reg &= REG_COUNT - 1
        value &= 0xFF
        if reg == REG_THR:
            if self.dlab:
                self.divisor = (self.divisor & 0xFF00) | value
            else:
                self._write_thr(value)
        elif reg == REG_IER:
            if self.dlab:
                self.divisor = (value << 8) | (self.divisor & 0xFF)
            else:
                self.ier = value & 0x0F
                self._update_interrupt()
        elif reg == REG_LCR:
            self._update_lcr(value)
        elif reg == REG_MCR:
            self._update_mcr(value & 0x1F)
        elif reg == REG_SCR:
            self.scr = value
        # IIR, LSR and MSR are read only

    def read(self, port: int) -> int:
        return self.read_register(port - self.base_port)

    def write(self, port: int, value: int):
        self.write_register(port - self.base_port, value)

    def show(self) -> str:
        return "\n".join([
            f"RBR=0x{self.rbr:02X} THR=0x{self.thr:02X} IER=0x{self.ier:02X} "
            f"IIR=0x{self.iir:02X} SCR=0x{self.scr:02X}",
            f"LCR=0x{self.lcr:02X} MCR=0x{self.mcr:02X} LSR=0x{self.lsr:02X} "
            f"MSR=0x{self.msr:02X} DIV={self.divisor}",
            f"Transmit speed {ns_to_cps(self.char_ns)} cps, "
            f"Receive speed {ns_to_cps(self.poll_ns)} cps, "
            f"Break time {ns_to_ms(self.break_ns)} ms, "
            f"BREAK Control-{chr(self.console.console_break + 0x40)}",
        ])
