"""
ELF2K Disk / UART / RTC Combo Card
===================================
One card, two I/O ports, up to three sub-devices behind a select latch.

  Port  Read                      Write
  ----  ------------------------  ----------------------
  +0    card status               select latch
  +1    selected sub-register     selected sub-register

  select & 0x90   Sub-device   Register
  -------------   ----------   ---------------
  0x00            IDE          select & 0x1F
  0x10            UART         select & 0x07
  0x80 / 0x90     NVR / RTC    select & 0x7F

  Status bit   Meaning
  ----------   ------------------------------
  0x20 CD1     card detect (disk installed)
  0x10 CD2     card detect (disk installed)
  0x08 DASP    drive active
  0x04         UART interrupt request
  0x02         RTC interrupt request
  0x01         disk interrupt request

A sub-device that isn't installed reads as 0xFF and ignores writes.
"""

from __future__ import annotations
import logging
from typing import Callable, Optional

from console import VirtualConsole
from devices import Device, DEV_INOUT, SimpleInterrupt
from events import EventQueue
from ide import IDE
from rtc import DS12887, REGC_IRQF
from uart import INS8250

log = logging.getLogger(__name__)

STS_CD1      = 0x20
STS_CD2      = 0x10
STS_DASP     = 0x08
STS_UART_IRQ = 0x04
STS_RTC_IRQ  = 0x02
STS_DISK_IRQ = 0x01

SELECT_MASK = 0x90
SELECT_IDE  = 0x00
SELECT_UART = 0x10


class ComboCard(Device):
    """Disk/UART/RTC card with a select latch in front of its sub-devices."""

    def __init__(self, events: EventQueue, base_port: int = 2):
        super().__init__("COMBO", "Disk/UART/RTC card", base_port, 2, DEV_INOUT, events)
        self.select = 0
        self.uart: Optional[INS8250] = None
        self.nvr: Optional[DS12887] = None
        self.ide: Optional[IDE] = None

    # -- Sub-devices --

    def subdevices(self) -> list[Device]:
        return [d for d in (self.uart, self.nvr, self.ide) if d is not None]

    def _attach_line(self, device: Device):
        if self.interrupt is not None:
            device.attach_interrupt(self.interrupt)

    def attach_interrupt(self, interrupt: Optional[SimpleInterrupt]):
        # the card has no request of its own, only its sub-devices do
        self.interrupt = interrupt
        for dev in self.subdevices():
            dev.attach_interrupt(interrupt)

    def install_uart(self, console: VirtualConsole,
                     on_break: Optional[Callable[[], None]] = None) -> INS8250:
        if self.uart is None:
            self.uart = INS8250(self.events, console, on_break)
            self._attach_line(self.uart)
            self.uart.reset()
            log.debug("%s attached to %s", self.uart.description, self.description)
        return self.uart

    def remove_uart(self):
        if self.uart is not None:
            self._drop(self.uart)
            self.uart = None

    def install_nvr(self, path: str = "", **kwargs) -> DS12887:
        if self.nvr is None:
            nvr = DS12887(self.events, **kwargs)
            if path:
                nvr.load_nvr(path)
            self.nvr = nvr
            self.nvr.reset()
            log.debug("%s attached to %s", self.nvr.description, self.description)
        elif path:
            self.nvr.load_nvr(path)
        return self.nvr

    def remove_nvr(self):
        if self.nvr is not None:
            self._drop(self.nvr)
            self.nvr = None

    def install_ide(self, path: str = "", capacity: int = 0) -> IDE:
        if self.ide is None:
            ide = IDE(self.events)
            if path:
                ide.attach(0, path, capacity)
            self.ide = ide
            self._attach_line(self.ide)
            self.ide.reset()
            log.debug("%s attached to %s", self.ide.description, self.description)
        elif path:
            self.ide.attach(0, path, capacity)
        return self.ide

    def remove_ide(self):
        if self.ide is not None:
            self.ide.detach_all()
            self._drop(self.ide)
            self.ide = None

    def _drop(self, device: Device):
        log.debug("removing %s from %s", device.description, self.description)
        self.events.cancel_all(device)
        device.attach_interrupt(None)

    def is_uart_installed(self) -> bool:
        return self.uart is not None

    def is_nvr_installed(self) -> bool:
        return self.nvr is not None

    def is_ide_installed(self) -> bool:
        return self.ide is not None

    @property
    def is_empty(self) -> bool:
        return not self.subdevices()

    def find(self, name: str) -> Optional[Device]:
        name = name.upper()
        for dev in self.subdevices():
            if dev.name.upper() == name:
                return dev
        return None

    # -- Card --

    def reset(self):
        super().reset()
        self.select = 0
        for dev in self.subdevices():
            dev.reset()

    @property
    def status(self) -> int:
        value = 0
        if self.ide is not None:
            value |= STS_CD1 | STS_CD2
            if self.ide.busy:
                value |= STS_DASP
            if self.ide.irq_pending:
                value |= STS_DISK_IRQ
        if self.uart is not None and self.uart.irq_pending:
            value |= STS_UART_IRQ
        if self.nvr is not None and self.nvr.reg_c & REGC_IRQF:
            value |= STS_RTC_IRQ
        return value

    def _target(self) -> tuple[Optional[Device], int]:
        kind = self.select & SELECT_MASK
        if kind == SELECT_IDE:
            return self.ide, self.select & 0x1F
        if kind == SELECT_UART:
            return self.uart, self.select & 0x07
        return self.nvr, self.select & 0x7F

    def read(self, port: int) -> int:
        if port == self.base_port:
            return self.status
        dev, reg = self._target()
        return 0xFF if dev is None else dev.read_register(reg)

    def write(self, port: int, value: int):
        if port == self.base_port:
            self.select = value & 0xFF
            return
        dev, reg = self._target()
        if dev is not None:
            dev.write_register(reg, value)

    def close(self):
        if self.ide is not None:
            self.ide.detach_all()

    def show(self) -> str:
        installed = ", ".join(d.name for d in self.subdevices()) or "none"
        return f"Select=0x{self.select:02X} Status=0x{self.status:02X} Installed: {installed}"
