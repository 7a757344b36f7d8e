"""
IDE / ATA Disk
===============
Two drives (master and slave) sharing one 512-byte sector buffer, each
backed by a raw image file of 512-byte sectors with no header.

Register map (register = port offset, or the combo card's select & 0x1F):

  Reg  Read            Write
  ---  --------------  --------------
   0   DATA            DATA
   1   ERROR           FEATURE
   2   COUNT           COUNT
   3   LBA0 / sector   LBA0 / sector
   4   LBA1 / cyl lo   LBA1 / cyl lo
   5   LBA2 / cyl hi   LBA2 / cyl hi
   6   LBA3 / drv+head LBA3 / drv+head
   7   STATUS          COMMAND
  14   ALTSTS          DEVCTL
  15   DRVADDR         -

Commands:

  0x20  READ          count sectors (0 = 256) image -> CPU
  0x30  WRITE         count sectors (0 = 256) CPU -> image
  0xE4  READ BUFFER   sector buffer -> CPU
  0xE8  WRITE BUFFER  CPU -> sector buffer
  0xEC  IDENTIFY      drive description -> CPU
  0xEF  SET FEATURES  only 0x01 (8-bit transfers) is accepted
  0x90, 0xE0, 0xE1    diagnose / spin down / spin up (no-ops)

Anything else, or any command to a drive without an image, fails with
ERROR in the status and ABORT in the error register.

In the power-on 16-bit mode each DATA access moves a whole word: the
low byte travels on the 8-bit port and the high byte is lost on reads
and written as zero.  After SET FEATURES 0x01 each access moves one
byte.
"""

from __future__ import annotations
import logging
import os
from typing import BinaryIO, Optional

from devices import Device, DeviceError, DEV_INOUT
from events import EventQueue, ms_to_ns, ns_to_us, us_to_ns

log = logging.getLogger(__name__)

SECTOR_SIZE = 512
DEFAULT_CAPACITY = 65536        # sectors, 32 MiB
NDRIVES = 2
MODELLEN = 40

# Registers
REG_DATA    = 0
REG_ERROR   = 1
REG_FEATURE = 1
REG_COUNT   = 2
REG_LBA0    = 3
REG_LBA1    = 4
REG_LBA2    = 5
REG_LBA3    = 6
REG_STATUS  = 7
REG_COMMAND = 7
REG_ALTSTS  = 14
REG_DEVCTL  = 14
REG_DRVADDR = 15
MAXREG      = 16

# Error register
ERR_IDNF  = 0x10
ERR_ABORT = 0x04

# Status register
STS_BUSY      = 0x80
STS_READY     = 0x40
STS_FAULT     = 0x20
STS_SEEK_DONE = 0x10
STS_DRQ       = 0x08
STS_COR       = 0x04
STS_ERROR     = 0x01

# Device control register
CTL_SRST = 0x04
CTL_nIEN = 0x02

# Commands
CMD_FEATURES     = 0xEF
CMD_IDENTIFY     = 0xEC
CMD_DIAGNOSE     = 0x90
CMD_READ         = 0x20
CMD_READ_BUFFER  = 0xE4
CMD_WRITE        = 0x30
CMD_WRITE_BUFFER = 0xE8
CMD_SPIN_UP      = 0xE1
CMD_SPIN_DOWN    = 0xE0

FEA_8BIT = 0x01

# Drive / head register
DRV_SLAVE = 0x10
DRV_LBA   = 0x40
DRV_HEAD  = 0x0F

# IDENTIFY geometry used for C/H/S translation
HEADS = 16
SECTORS_PER_TRACK = 63
MAX_CYLINDERS = 16383

IDD_FIXED_DEVICE  = 1 << 6
IDD_LBA_SUPPORTED = 1 << 9
IDD_LBA48         = 1 << 10

# Events, one set per drive
EVENT_READY_0 = 10
EVENT_READ_0  = 20
EVENT_WRITE_0 = 30

DEFAULT_SHORT_DELAY = us_to_ns(10)
DEFAULT_LONG_DELAY  = ms_to_ns(1)


class DiskImageError(DeviceError):
    """The image file can't be used as an IDE drive."""
    pass


# ---------------------------------------------------------------------------
#  Image file
# ---------------------------------------------------------------------------

class DiskImage:
    """Raw sector image opened for update."""

    def __init__(self, path: str, capacity: int = 0):
        self.path = path
        if os.path.exists(path):
            if not os.access(path, os.W_OK):
                raise DiskImageError(f"{path} is read only")
            size = os.path.getsize(path)
            if size % SECTOR_SIZE:
                raise DiskImageError(
                    f"{path} is {size} bytes, not a whole number of {SECTOR_SIZE}-byte sectors")
            self.file: BinaryIO = open(path, "r+b")
            self.capacity = size // SECTOR_SIZE
            if self.capacity == 0:
                self._extend(capacity or DEFAULT_CAPACITY)
        else:
            self.file = open(path, "w+b")
            self.capacity = 0
            self._extend(capacity or DEFAULT_CAPACITY)

    def _extend(self, sectors: int):
        self.file.truncate(sectors * SECTOR_SIZE)
        self.capacity = sectors

    def read_sector(self, lba: int) -> bytes:
        self.file.seek(lba * SECTOR_SIZE)
        data = self.file.read(SECTOR_SIZE)
        if len(data) != SECTOR_SIZE:
            raise OSError(f"short read at sector {lba} of {self.path}")
        return data

    def write_sector(self, lba: int, data: bytes):
        self.file.seek(lba * SECTOR_SIZE)
        self.file.write(data)
        self.file.flush()

    def close(self):
        self.file.close()


def ata_string(text: str, length: int) -> bytes:
    """Space-padded ATA string with the two bytes of every word swapped."""
    raw = text.upper().encode("ascii", "replace")[:length].ljust(length, b" ")
    swapped = bytearray(length)
    swapped[0::2] = raw[1::2]
    swapped[1::2] = raw[0::2]
    return bytes(swapped)


# ---------------------------------------------------------------------------
#  Controller
# ---------------------------------------------------------------------------

class IDE(Device):
    """Two-drive IDE controller."""

    def __init__(self, events: EventQueue, base_port: int = 0, name: str = "DISK"):
        super().__init__(name, "IDE/ATA disk", base_port, MAXREG, DEV_INOUT, events)
        self.short_delay = DEFAULT_SHORT_DELAY
        self.long_delay = DEFAULT_LONG_DELAY
        self.images: list[Optional[DiskImage]] = [None] * NDRIVES
        self.status = [0] * NDRIVES
        self.error = [0] * NDRIVES
        self.ien = [False] * NDRIVES
        self.irq = [False] * NDRIVES
        self.eight_bit = [False] * NDRIVES
        self.force_8bit = [False] * NDRIVES
        self.model = ["EMULATOR"] * NDRIVES
        self.buffer = bytearray(SECTOR_SIZE)
        self._clear_registers()

    def _clear_registers(self):
        self.features = 0
        self.count = 1
        self.lba = [1, 0, 0, DRV_LBA]
        self.last_command = 0
        self.unit = 0
        self.transfer = 0           # bytes left in the current transfer
        self.read_transfer = False
        self.buffer_only = False
        self.sectors_left = 0
        self.buffer[:] = bytes(SECTOR_SIZE)

    def reset(self):
        super().reset()
        self._clear_registers()
        for unit in range(NDRIVES):
            self.error[unit] = 0
            self.ien[unit] = self.irq[unit] = self.eight_bit[unit] = False
            if self.is_attached(unit):
                self.status[unit] = STS_BUSY
                self.schedule(EVENT_READY_0 + unit, self.short_delay)
            else:
                self.status[unit] = 0
        self.request_interrupt(False)

    # -- Drives --

    def attach(self, unit: int, path: str, capacity: int = 0):
        """Attach ``unit`` to an image file, creating it when missing."""
        if not 0 <= unit < NDRIVES:
            raise DeviceError(f"no IDE unit {unit}")
        self.detach(unit)
        self.images[unit] = DiskImage(path, capacity)
        self.model[unit] = os.path.basename(path)
        self.status[unit] = STS_READY | STS_SEEK_DONE
        self.error[unit] = 0
        log.info("IDE unit %d attached to %s, %d sectors",
                 unit, path, self.images[unit].capacity)

    def detach(self, unit: int):
        image = self.images[unit]
        if image is None:
            return
        log.info("IDE unit %d detached from %s", unit, image.path)
        image.close()
        self.images[unit] = None
        self.status[unit] = 0
        self.events.cancel(self, EVENT_READY_0 + unit)
        self.events.cancel(self, EVENT_READ_0 + unit)
        self.events.cancel(self, EVENT_WRITE_0 + unit)

    def detach_all(self):
        for unit in range(NDRIVES):
            self.detach(unit)

    def is_attached(self, unit: int = 0) -> bool:
        return self.images[unit] is not None

    def capacity(self, unit: int = 0) -> int:
        image = self.images[unit]
        return image.capacity if image is not None else 0

    def file_name(self, unit: int = 0) -> str:
        image = self.images[unit]
        return image.path if image is not None else ""

    def is_8bit(self, unit: int) -> bool:
        return self.eight_bit[unit] or self.force_8bit[unit]

    def set_delays(self, short_ns: int, long_ns: int):
        if short_ns <= 0 or long_ns <= 0:
            raise ValueError("IDE delays must be positive")
        self.short_delay, self.long_delay = short_ns, long_ns

    @property
    def irq_pending(self) -> bool:
        return self.irq[self.unit] and self.ien[self.unit]

    @property
    def busy(self) -> bool:
        """True while the selected drive is busy or transferring data."""
        return bool(self.status[self.unit] & (STS_BUSY | STS_DRQ))

    # -- Status helpers --

    def _update_interrupt(self, unit: int, request: bool):
        self.irq[unit] = request
        if unit == self.unit:
            self.request_interrupt(request and self.ien[unit])

    def _set_error(self, unit: int, error: int):
        self.status[unit] |= STS_ERROR
        self.error[unit] = error

    def _clear_error(self, unit: int):
        self.status[unit] &= ~STS_ERROR
        self.error[unit] = 0

    def _drive_busy(self, unit: int):
        self.status[unit] &= ~STS_READY
        self.status[unit] |= STS_BUSY

    def _drive_ready(self, unit: int):
        self.status[unit] |= STS_READY | STS_SEEK_DONE
        self.status[unit] &= ~(STS_BUSY | STS_DRQ)
        self._update_interrupt(unit, True)

    def _fail(self, unit: int, error: int):
        self.transfer = 0
        self.sectors_left = 0
        self._set_error(unit, error)
        self._drive_ready(unit)

    def _select_unit(self):
        unit = 1 if self.lba[3] & DRV_SLAVE else 0
        if unit != self.unit:
            log.debug("IDE unit %d selected", unit)
            self.unit = unit

    def _do_control(self, value: int):
        self.ien[self.unit] = not value & CTL_nIEN
        if value & CTL_SRST:
            self.reset()
        self._update_interrupt(self.unit, self.irq[self.unit])

    # -- Addressing --

    @property
    def geometry(self) -> tuple[int, int, int]:
        """(cylinders, heads, sectors per track) reported by IDENTIFY."""
        cylinders = min(self.capacity(self.unit) // (HEADS * SECTORS_PER_TRACK), MAX_CYLINDERS)
        return cylinders, HEADS, SECTORS_PER_TRACK

    def _get_lba(self) -> Optional[int]:
        """Current disk address, or None (IDNF) when it is out of range."""
        if self.lba[3] & DRV_LBA:
            lba = (((self.lba[3] & DRV_HEAD) << 24) | (self.lba[2] << 16)
                   | (self.lba[1] << 8) | self.lba[0])
        else:
            head = self.lba[3] & DRV_HEAD
            cylinder = (self.lba[2] << 8) | self.lba[1]
            sector = self.lba[0]
            cylinders, heads, spt = self.geometry
            if cylinder >= cylinders or sector == 0 or sector > spt:
                log.warning("IDE unit %d invalid C/H/S address %d/%d/%d",
                            self.unit, cylinder, head, sector)
                return None
            lba = (cylinder * heads + head) * spt + sector - 1
        if lba >= self.capacity(self.unit):
            log.warning("IDE unit %d invalid LBA %d", self.unit, lba)
            return None
        return lba

    def _set_lba(self, lba: int):
        if self.lba[3] & DRV_LBA:
            self.lba[0] = lba & 0xFF
            self.lba[1] = (lba >> 8) & 0xFF
            self.lba[2] = (lba >> 16) & 0xFF
            self.lba[3] = (self.lba[3] & ~DRV_HEAD) | ((lba >> 24) & DRV_HEAD)
        else:
            _, heads, spt = self.geometry
            cylinder, rest = divmod(lba, heads * spt)
            head, sector = divmod(rest, spt)
            self.lba[0] = sector + 1
            self.lba[1] = cylinder & 0xFF
            self.lba[2] = (cylinder >> 8) & 0xFF
            self.lba[3] = (self.lba[3] & ~DRV_HEAD) | head

    def _next_sector(self):
        """Step the address and count registers past the sector just moved."""
        lba = self._get_lba()
        if lba is not None:
            self._set_lba(lba + 1)
        self.count = (self.count - 1) & 0xFF
        self.sectors_left -= 1

    # -- Data transfer --

    def _start_transfer(self, unit: int, read: bool):
        self.status[unit] |= STS_DRQ | STS_READY | STS_SEEK_DONE
        self.status[unit] &= ~STS_BUSY
        self.transfer = SECTOR_SIZE
        if not read:
            self.buffer[:] = bytes(SECTOR_SIZE)
        self.read_transfer = read
        if read:
            self._update_interrupt(unit, True)

    def _abort_transfer(self, unit: int):
        if not self.transfer:
            return
        self.status[unit] &= ~STS_DRQ
        self._fail(unit, ERR_ABORT)

    def _advance_pointer(self):
        if self.is_8bit(self.unit):
            self.transfer -= 1
        else:
            self.transfer = max((self.transfer & ~1) - 2, 0)

    def _read_data(self) -> int:
        if not self.transfer:
            return 0
        if not self.read_transfer:
            self._abort_transfer(self.unit)
            return 0
        data = self.buffer[SECTOR_SIZE - self.transfer]
        self._advance_pointer()
        if self.transfer == 0:
            if self.sectors_left > 1:
                self._next_sector()
                self._drive_busy(self.unit)
                self.status[self.unit] &= ~STS_DRQ
                self._load_sector()
            else:
                self.sectors_left = 0
                self._drive_ready(self.unit)
        return data

    def _write_data(self, value: int):
        if not self.transfer:
            return
        if self.read_transfer:
            self._abort_transfer(self.unit)
            return
        pos = SECTOR_SIZE - self.transfer
        self.buffer[pos] = value
        if not self.is_8bit(self.unit) and pos + 1 < SECTOR_SIZE:
            self.buffer[pos + 1] = 0
        self._advance_pointer()
        if self.transfer == 0:
            self.status[self.unit] &= ~STS_DRQ
            if self.buffer_only:
                self._drive_busy(self.unit)
                self.schedule(EVENT_READY_0 + self.unit, self.short_delay)
            else:
                self._write_sector()

    def _write_sector(self):
        unit = self.unit
        self._drive_busy(unit)
        lba = self._get_lba()
        if lba is None:
            self._fail(unit, ERR_IDNF)
            return
        log.debug("IDE unit %d write sector %d", unit, lba)
        try:
            self.images[unit].write_sector(lba, bytes(self.buffer))
        except OSError as e:
            log.error("IDE unit %d offline after write error: %s", unit, e)
            self._fail(unit, ERR_ABORT)
            self.detach(unit)
            return
        if self.sectors_left > 1:
            self._next_sector()
            self.schedule(EVENT_WRITE_0 + unit, self.long_delay)
        else:
            self.sectors_left = 0
            self.schedule(EVENT_READY_0 + unit, self.long_delay)

    def _load_sector(self):
        unit = self.unit
        lba = self._get_lba()
        if lba is None:
            self._fail(unit, ERR_IDNF)
            return
        log.debug("IDE unit %d read sector %d", unit, lba)
        try:
            self.buffer[:] = self.images[unit].read_sector(lba)
        except OSError as e:
            log.error("IDE unit %d offline after read error: %s", unit, e)
            self._fail(unit, ERR_ABORT)
            self.detach(unit)
            return
        self.schedule(EVENT_READ_0 + unit, self.long_delay)

    # -- Commands --

    def _do_read(self):
        self.sectors_left = self.count or 256
        self._load_sector()

    def _do_write(self):
        self.sectors_left = self.count or 256
        self.buffer_only = False
        self._start_transfer(self.unit, False)

    def _do_read_buffer(self):
        self.sectors_left = 0
        self.schedule(EVENT_READ_0 + self.unit, self.short_delay)

    def _do_write_buffer(self):
        self.sectors_left = 0
        self.buffer_only = True
        self._start_transfer(self.unit, False)

    def _set_features(self):
        if self.features == FEA_8BIT:
            self.eight_bit[self.unit] = True
        else:
            log.debug("unimplemented IDE feature 0x%02X", self.features)
            self._set_error(self.unit, ERR_ABORT)
        self.schedule(EVENT_READY_0 + self.unit, self.short_delay)

    def identify_block(self, unit: int) -> bytes:
        """The 512-byte IDENTIFY DEVICE response for ``unit``."""
        words = [0] * (SECTOR_SIZE // 2)
        capacity = self.capacity(unit)
        cylinders = min(capacity // (HEADS * SECTORS_PER_TRACK), MAX_CYLINDERS)
        words[0] = IDD_FIXED_DEVICE
        words[1] = cylinders
        words[3] = HEADS
        words[6] = SECTORS_PER_TRACK
        words[20] = 1                   # single ported buffer
        words[21] = 1                   # buffer size, sectors
        words[49] = IDD_LBA_SUPPORTED
        words[53] = 0x0001              # words 54-58 valid
        words[54] = cylinders
        words[55] = HEADS
        words[56] = SECTORS_PER_TRACK
        chs = cylinders * HEADS * SECTORS_PER_TRACK
        words[57], words[58] = chs & 0xFFFF, chs >> 16
        words[60], words[61] = capacity & 0xFFFF, (capacity >> 16) & 0xFFFF
        words[83] = IDD_LBA48
        words[100], words[101] = capacity & 0xFFFF, (capacity >> 16) & 0xFFFF
        block = bytearray()
        for w in words:
            block += w.to_bytes(2, "little")
        block[20:40] = ata_string("01242020".rjust(20), 20)
        block[46:54] = ata_string("V0.0.0", 8)
        block[54:94] = ata_string(self.model[unit], MODELLEN)
        return bytes(block)

    def _identify(self):
        self.sectors_left = 0
        self.buffer[:] = self.identify_block(self.unit)
        self.schedule(EVENT_READ_0 + self.unit, self.short_delay)

    def _do_command(self, command: int):
        unit = self.unit
        if not self.is_attached(unit):
            log.debug("IDE command 0x%02X to unattached unit %d", command, unit)
            self._set_error(unit, ERR_ABORT)
            return
        if self.transfer:
            self._abort_transfer(unit)
            return
        self._clear_error(unit)
        self._drive_busy(unit)
        self.last_command = command
        log.debug("IDE unit %d command 0x%02X", unit, command)
        if command == CMD_FEATURES:
            self._set_features()
        elif command == CMD_IDENTIFY:
            self._identify()
        elif command == CMD_READ:
            self._do_read()
        elif command == CMD_WRITE:
            self._do_write()
        elif command == CMD_READ_BUFFER:
            self._do_read_buffer()
        elif command == CMD_WRITE_BUFFER:
            self._do_write_buffer()
        elif command in (CMD_DIAGNOSE, CMD_SPIN_UP, CMD_SPIN_DOWN):
            self.schedule(EVENT_READY_0 + unit, self.short_delay)
        else:
            log.debug("unimplemented IDE command 0x%02X", command)
            self._fail(unit, ERR_ABORT)

    def on_event(self, param: int):
        kind, unit = divmod(param, 10)
        if kind * 10 == EVENT_READY_0:
            self._drive_ready(unit)
        elif kind * 10 == EVENT_READ_0:
            self._start_transfer(unit, True)
        elif kind * 10 == EVENT_WRITE_0:
            self._start_transfer(unit, False)
        else:
            raise RuntimeError(f"unknown IDE event {param}")

    # -- Register access --

    def read_register(self, reg: int) -> int:
        unit = self.unit
        if reg == REG_DATA:
            return self._read_data() if self.is_attached(unit) else 0xFF
        if reg == REG_ERROR:
            return self.error[unit]
        if reg == REG_COUNT:
            return self.count
        if REG_LBA0 <= reg <= REG_LBA3:
            return self.lba[reg - REG_LBA0]
        if reg == REG_STATUS:
            # reading STATUS clears the interrupt, ALTSTS doesn't
            self._update_interrupt(unit, False)
            return self.status[unit]
        if reg == REG_ALTSTS:
            return self.status[unit]
        if reg == REG_DRVADDR:
            head = self.lba[3] & DRV_HEAD
            return 0xC0 | ((~head & 0x0F) << 2) | (0x02 if unit == 0 else 0x01)
        return 0xFF

    def write_register(self, reg: int, value: int):
        value &= 0xFF
        if reg == REG_DATA:
            self._write_data(value)
        elif reg == REG_FEATURE:
            self.features = value
        elif reg == REG_COUNT:
            self.count = value
        elif REG_LBA0 <= reg <= REG_LBA3:
            self.lba[reg - REG_LBA0] = value
            if reg == REG_LBA3:
                self._select_unit()
        elif reg == REG_COMMAND:
            self._do_command(value)
        elif reg == REG_DEVCTL:
            self._do_control(value)

    def read(self, port: int) -> int:
        return self.read_register(port - self.base_port)

    def write(self, port: int, value: int):
        self.write_register(port - self.base_port, value)

    def close(self):
        self.detach_all()

    def show(self) -> str:
        lines = []
        for unit in range(NDRIVES):
            if self.is_attached(unit):
                lines.append(f"Unit {unit}: {self.file_name(unit)}, {self.capacity(unit)} blocks")
            else:
                lines.append(f"Unit {unit}: not attached")
            lines.append(f"       {8 if self.is_8bit(unit) else 16} bit mode, "
                         f"IEN={int(self.ien[unit])}, IRQ={int(self.irq[unit])}, "
                         f"status=0x{self.status[unit]:02X}, error=0x{self.error[unit]:02X}")
        lines.append(f"Last command=0x{self.last_command:02X}, "
                     f"Short delay={ns_to_us(self.short_delay)}us, "
                     f"Long={ns_to_us(self.long_delay)}us")
        lines.append("SECTOR BUFFER")
        for row in range(0, SECTOR_SIZE, 16):
            chunk = self.buffer[row:row + 16]
            text = "".join(chr(b) if 0x20 <= b < 0x7F else "." for b in chunk)
            lines.append(f"  {row:03X}/ {chunk.hex(' ').upper()}  |{text}|")
        return "\n".join(lines)
