"""
DS12887 Real Time Clock / NVR
==============================
128 bytes of battery-backed RAM; the first fourteen are the clock.

  Reg   Contents            Reg   Contents
  ----  ------------------  ----  ----------------------------------
  0x00  seconds             0x07  day of month
  0x01  seconds alarm       0x08  month
  0x02  minutes             0x09  year (ElfOS: years since 1972)
  0x03  minutes alarm       0x0A  REG_A  UIP | DV2-0 | RS3-0
  0x04  hours               0x0B  REG_B  SET|PIE|AIE|UIE|SQWE|DM|24/12|DSE
  0x05  hours alarm         0x0C  REG_C  IRQF|PF|AF|UF
  0x06  day of week (1=Sun) 0x0D  REG_D  VRT
  0x0E-0x7F  general purpose NVR

The clock never ticks on its own.  Every read of REG_A flips UIP, and
the read that finds UIP set copies the host's wall clock into the time
registers and clears it.  A program that waits for UIP to drop therefore
always sees fresh time.

REG_A's rate bits run the square wave: PF in REG_C toggles every half
period through a self-rescheduling event.
"""

from __future__ import annotations
import logging
import time
from typing import Callable

from devices import Device, DEV_INOUT
from events import EventQueue, NS_PER_SECOND, ns_to_hz

log = logging.getLogger(__name__)

NVRSIZE = 128

REG_SECONDS     = 0x00
REG_SEC_ALARM   = 0x01
REG_MINUTES     = 0x02
REG_MIN_ALARM   = 0x03
REG_HOURS       = 0x04
REG_HOUR_ALARM  = 0x05
REG_WEEKDAY     = 0x06
REG_DAY         = 0x07
REG_MONTH       = 0x08
REG_YEAR        = 0x09
REG_A           = 0x0A
REG_B           = 0x0B
REG_C           = 0x0C
REG_D           = 0x0D
FIRST_FREE      = 0x0E

REGA_UIP  = 0x80
REGA_DV1  = 0x20
REGA_RATE = 0x0F

REGB_SET    = 0x80
REGB_PIE    = 0x40
REGB_AIE    = 0x20
REGB_UIE    = 0x10
REGB_SQWE   = 0x08
REGB_BINARY = 0x04
REGB_24HR   = 0x02
REGB_DSE    = 0x01
REGB_WRITABLE = REGB_SET | REGB_SQWE | REGB_BINARY | REGB_24HR | REGB_DSE

REGC_IRQF = 0x80
REGC_PF   = 0x40
REGC_AF   = 0x20
REGC_UF   = 0x10

REGD_VRT = 0x80

EVENT_PF = 1
ELFOS_YEAR = 1972

SQW_FREQUENCIES = (0, 256, 128, 8192, 4096, 2048, 1024, 512,
                   256, 128, 64, 32, 16, 8, 4, 2)

WEEKDAYS = ("SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT")


def binary_to_bcd(value: int) -> int:
    return ((value // 10) << 4) | (value % 10)


def bcd_to_binary(value: int) -> int:
    return (value >> 4) * 10 + (value & 0x0F)


class DS12887(Device):
    """DS12887 RTC and NVR."""

    def __init__(self, events: EventQueue, base_port: int = 0, elfos: bool = True,
                 clock: Callable[[], time.struct_time] = time.localtime,
                 name: str = "RTC"):
        super().__init__(name, "DS12887 real time clock", base_port, NVRSIZE,
                         DEV_INOUT, events)
        self.elfos = elfos
        self.clock = clock
        self.nvr = bytearray(NVRSIZE)
        self.file_name = ""
        self.reg_a = REGA_UIP | REGA_DV1
        self.reg_b = REGB_BINARY | REGB_24HR | REGB_DSE
        self.reg_c = 0
        self.pf_delay = 0

    @property
    def is_binary(self) -> bool:
        return bool(self.reg_b & REGB_BINARY)

    @property
    def is_24hour(self) -> bool:
        return bool(self.reg_b & REGB_24HR)

    def reset(self):
        super().reset()
        self.reg_a = REGA_UIP | REGA_DV1
        self.reg_b = REGB_BINARY | REGB_24HR | REGB_DSE
        self.reg_c = 0
        self.pf_delay = 0
        self.update_time()

    # -- Clock --

    def update_time(self):
        """Copy the host's wall clock into the time registers."""
        now = self.clock()
        hours = now.tm_hour
        pm = hours >= 12
        if not self.is_24hour:
            hours = hours % 12 or 12
        year = now.tm_year % 100
        if self.elfos:
            year = (now.tm_year - ELFOS_YEAR) % 100
        fields = {
            REG_SECONDS: min(now.tm_sec, 59),
            REG_MINUTES: now.tm_min,
            REG_HOURS: hours,
            REG_DAY: now.tm_mday,
            REG_MONTH: now.tm_mon,
            REG_YEAR: year,
            # struct_time counts Monday as 0, the chip counts Sunday as 1
            REG_WEEKDAY: (now.tm_wday + 1) % 7 + 1,
        }
        for reg, value in fields.items():
            if not self.is_binary:
                value = binary_to_bcd(value)
            self.nvr[reg] = value
        if not self.is_24hour and pm:
            self.nvr[REG_HOURS] |= 0x80

    def _read_reg_a(self) -> int:
        value = self.reg_a
        if self.reg_a & REGA_UIP:
            self.update_time()
            self.reg_a &= ~REGA_UIP
        else:
            self.reg_a |= REGA_UIP
        return value

    def _write_reg_a(self, value: int):
        self.reg_a = (self.reg_a & ~REGA_RATE) | (value & REGA_RATE)
        rate = self.reg_a & REGA_RATE
        if rate == 0:
            self.pf_delay = 0
            self.cancel(EVENT_PF)
        else:
            self.pf_delay = NS_PER_SECOND // SQW_FREQUENCIES[rate] // 2
            self.schedule(EVENT_PF, self.pf_delay)

    def on_event(self, param: int):
        if param != EVENT_PF:
            raise RuntimeError(f"unknown RTC event {param}")
        self.reg_c ^= REGC_PF
        self.schedule(EVENT_PF, self.pf_delay)

    # -- Register access --

    def read_register(self, reg: int) -> int:
        reg &= NVRSIZE - 1
        if reg == REG_A:
            return self._read_reg_a()
        if reg == REG_B:
            return self.reg_b
        if reg == REG_C:
            return self.reg_c
        if reg == REG_D:
            return REGD_VRT
        return self.nvr[reg]

    def write_register(self, reg: int, value: int):
        reg &= NVRSIZE - 1
        value &= 0xFF
        if reg == REG_A:
            self._write_reg_a(value)
        elif reg == REG_B:
            self.reg_b = value & REGB_WRITABLE
        elif reg in (REG_C, REG_D):
            pass
        else:
            self.nvr[reg] = value

    def read(self, port: int) -> int:
        return self.read_register(port - self.base_port)

    def write(self, port: int, value: int):
        self.write_register(port - self.base_port, value)

    # -- NVR files --

    def load_nvr(self, path: str) -> int:
        """Load NVR contents from a raw file.  Returns bytes read."""
        with open(path, "rb") as f:
            data = f.read(NVRSIZE)
        self.nvr[:len(data)] = data
        self.file_name = path
        log.info("loaded %d bytes of NVR from %s", len(data), path)
        return len(data)

    def save_nvr(self, path: str = "") -> int:
        path = path or self.file_name
        if not path:
            raise ValueError("no NVR file name")
        with open(path, "wb") as f:
            f.write(self.nvr)
        log.info("saved NVR to %s", path)
        return NVRSIZE

    def clear_nvr(self):
        self.nvr[FIRST_FREE:] = bytes(NVRSIZE - FIRST_FREE)

    # -- Display --

    def _field(self, reg: int) -> int:
        value = self.nvr[reg]
        if reg == REG_HOURS:
            value &= 0x7F
        return value if self.is_binary else bcd_to_binary(value)

    def format_time(self) -> str:
        weekday = WEEKDAYS[(self.nvr[REG_WEEKDAY] - 1) % 7]
        hours = self._field(REG_HOURS)
        suffix = ""
        if not self.is_24hour:
            suffix = " PM" if self.nvr[REG_HOURS] & 0x80 else " AM"
        year = self._field(REG_YEAR) + (ELFOS_YEAR if self.elfos else 2000)
        return (f"{weekday} {hours:02d}:{self._field(REG_MINUTES):02d}:"
                f"{self._field(REG_SECONDS):02d}{suffix} "
                f"{self._field(REG_DAY):02d}-{self._field(REG_MONTH):02d}-{year:04d}")

    def show(self) -> str:
        lines = [f"Last time was {self.format_time()}",
                 f"REGA=0x{self.reg_a:02X}, REGB=0x{self.reg_b:02X}, "
                 f"REGC=0x{self.reg_c:02X}, REGD=0x{REGD_VRT:02X}"]
        if self.pf_delay:
            lines.append(f"Square wave delay={self.pf_delay}ns, "
                         f"frequency={ns_to_hz(self.pf_delay)}Hz")
        if self.file_name:
            lines.append(f"NVR file {self.file_name}")
        for row in range(0, NVRSIZE, 16):
            chunk = self.nvr[row:row + 16]
            text = "".join(chr(b) if 0x20 <= b < 0x7F else "." for b in chunk)
            lines.append(f"  {row:02X}/ {chunk.hex(' ').upper()}  |{text}|")
        return "\n".join(lines)
