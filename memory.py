"""
COSMAC Memory Map
==================
A flat 16-bit address space of 65,536 byte cells.  Every cell carries an
attribute byte:

  bit 0  MEM_READ    the CPU may read the cell (RAM or ROM)
  bit 1  MEM_WRITE   the CPU may write the cell (RAM only)
  bit 7  MEM_BREAK   a CPU read of the cell raises a pending breakpoint

A cell with neither READ nor WRITE is non-existent (NXM): CPU reads
return the floating-bus value and writes vanish.  The ``ui_*`` accessors
used by examine/deposit and load/save ignore attributes entirely.

Cell contents and attributes live in bytearrays for fast per-byte CPU
access; numpy views over the same buffers handle the bulk range
operations (flag reshaping, breakpoint search, image I/O).
"""

from __future__ import annotations
import logging
import os
from typing import Optional

import numpy as np

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Attribute flags
# ---------------------------------------------------------------------------

MEM_NONE  = 0x00
MEM_READ  = 0x01
MEM_WRITE = 0x02
MEM_BREAK = 0x80
MEM_FLAGS = 0xFF
MEM_RAM   = MEM_READ | MEM_WRITE
MEM_ROM   = MEM_READ

MEMSIZE      = 0x10000
ADDRESS_MASK = 0xFFFF
FLOATING_BUS = 0xFF

# Intel HEX record types
HEX_DATA = 0x00
HEX_EOF  = 0x01
HEX_RECORD_LEN = 16


class HexFormatError(ValueError):
    """Malformed Intel HEX input."""
    pass


# ---------------------------------------------------------------------------
#  Memory
# ---------------------------------------------------------------------------

class Memory:
    """64 KiB byte-addressable memory with per-byte attributes."""

    def __init__(self, size: int = MEMSIZE, flags: int = MEM_NONE):
        self.size = size
        self._mem = bytearray(size)
        self._flags = bytearray([flags]) * size
        # numpy views share storage with the bytearrays above
        self.data = np.frombuffer(self._mem, dtype=np.uint8)
        self.flags = np.frombuffer(self._flags, dtype=np.uint8)
        self.break_pending = False

    # -- CPU access (honours attributes) --

    def cpu_read(self, addr: int) -> int:
        addr &= ADDRESS_MASK
        f = self._flags[addr]
        if f & MEM_BREAK:
            self.break_pending = True
        if not f & MEM_READ:
            return FLOATING_BUS
        return self._mem[addr]

    def cpu_write(self, addr: int, value: int):
        addr &= ADDRESS_MASK
        if self._flags[addr] & MEM_WRITE:
            self._mem[addr] = value & 0xFF

    def take_break_pending(self) -> bool:
        """Return and clear the breakpoint-pending condition."""
        pending = self.break_pending
        self.break_pending = False
        return pending

    # -- UI access (ignores attributes) --

    def ui_read(self, addr: int) -> int:
        return self._mem[addr & ADDRESS_MASK]

    def ui_write(self, addr: int, value: int):
        self._mem[addr & ADDRESS_MASK] = value & 0xFF

    # -- Attributes --

    def get_flags(self, addr: int) -> int:
        return self._flags[addr & ADDRESS_MASK]

    def set_flags(self, first: int, last: int, set_mask: int, clear_mask: int = 0):
        """Set and clear attribute bits on every cell in [first, last]."""
        if first > last:
            raise ValueError(f"bad address range {first:04X}-{last:04X}")
        seg = self.flags[first:last + 1]
        seg &= np.uint8(~clear_mask & 0xFF)
        seg |= np.uint8(set_mask & 0xFF)

    def set_ram(self, first: int = 0, last: Optional[int] = None):
        self.set_flags(first, self.size - 1 if last is None else last,
                       MEM_READ | MEM_WRITE)

    def set_rom(self, first: int = 0, last: Optional[int] = None):
        self.set_flags(first, self.size - 1 if last is None else last,
                       MEM_READ, MEM_WRITE)

    def set_nxm(self, first: int = 0, last: Optional[int] = None):
        self.set_flags(first, self.size - 1 if last is None else last,
                       0, MEM_READ | MEM_WRITE)

    def is_ram(self, addr: int) -> bool:
        return (self.get_flags(addr) & MEM_RAM) == MEM_RAM

    def is_rom(self, addr: int) -> bool:
        return (self.get_flags(addr) & MEM_RAM) == MEM_READ

    def is_nxm(self, addr: int) -> bool:
        return (self.get_flags(addr) & MEM_RAM) == 0

    def count_flags(self, mask: int) -> int:
        """Number of cells with every bit of ``mask`` set."""
        return int(np.count_nonzero((self.flags & mask) == mask))

    # -- Breakpoints --

    def set_break(self, addr: int, on: bool = True):
        addr &= ADDRESS_MASK
        if on:
            self._flags[addr] |= MEM_BREAK
        else:
            self._flags[addr] &= ~MEM_BREAK & 0xFF

    def is_break(self, addr: int) -> bool:
        return bool(self._flags[addr & ADDRESS_MASK] & MEM_BREAK)

    def clear_all_breaks(self):
        self.flags &= np.uint8(~MEM_BREAK & 0xFF)
        self.break_pending = False

    def find_break(self, start: int = 0) -> Optional[int]:
        """Address of the first breakpoint at or above ``start``."""
        hits = np.flatnonzero(self.flags[start:] & MEM_BREAK)
        return int(hits[0]) + start if hits.size else None

    def breakpoints(self) -> list[int]:
        return [int(a) for a in np.flatnonzero(self.flags & MEM_BREAK)]

    # -- Bulk clear --

    def clear(self, value: int = 0):
        self.data[:] = value

    def clear_ram(self):
        self.data[(self.flags & MEM_RAM) == MEM_RAM] = 0

    def clear_rom(self):
        self.data[(self.flags & MEM_RAM) == MEM_READ] = 0

    # -- Binary images --

    def load_binary(self, path: str, base: int = 0, limit: int = 0) -> int:
        """Load a raw binary file at ``base``.  Returns bytes loaded."""
        with open(path, "rb") as f:
            raw = f.read()
        if limit:
            raw = raw[:limit]
        raw = raw[:self.size]
        self._store(base, np.frombuffer(raw, dtype=np.uint8))
        log.debug("loaded %d bytes from %s at %04X", len(raw), path, base)
        return len(raw)

    def save_binary(self, path: str, base: int = 0, count: int = 0) -> int:
        """Write ``count`` bytes starting at ``base`` (to top of memory if 0)."""
        if count <= 0:
            count = self.size - base
        data = self._fetch(base, count)
        with open(path, "wb") as f:
            f.write(data.tobytes())
        return count

    def _store(self, base: int, data: np.ndarray):
        # addresses wrap around at the top of memory
        first = min(len(data), self.size - base)
        self.data[base:base + first] = data[:first]
        if first < len(data):
            self.data[:len(data) - first] = data[first:]

    def _fetch(self, base: int, count: int) -> np.ndarray:
        count = min(count, self.size)
        if base + count <= self.size:
            return self.data[base:base + count].copy()
        return np.concatenate((self.data[base:], self.data[:base + count - self.size]))

    # -- Intel HEX --

    def load_intel_hex(self, path: str, base: int = 0, limit: int = 0) -> int:
        """Load an Intel HEX file, adding ``base`` to every record address."""
        count = 0
        with open(path, "r") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                if not line.startswith(":"):
                    raise HexFormatError(f"{path} line {line_num}: missing start code ':'")
                try:
                    raw = bytes.fromhex(line[1:])
                except ValueError:
                    raise HexFormatError(f"{path} line {line_num}: bad hex digits") from None
                if len(raw) < 5 or len(raw) != raw[0] + 5:
                    raise HexFormatError(f"{path} line {line_num}: byte count mismatch")
                if sum(raw) & 0xFF:
                    raise HexFormatError(f"{path} line {line_num}: checksum mismatch")
                addr = (raw[1] << 8) | raw[2]
                rec_type = raw[3]
                data = raw[4:-1]
                if rec_type == HEX_EOF:
                    break
                if rec_type != HEX_DATA:
                    log.debug("%s line %d: ignored record type %02X", path, line_num, rec_type)
                    continue
                for i, b in enumerate(data):
                    if limit and count >= limit:
                        return count
                    self.ui_write(base + addr + i, b)
                    count += 1
        return count

    def save_intel_hex(self, path: str, base: int = 0, count: int = 0,
                       offset: int = 0) -> int:
        """Write memory as Intel HEX; ``offset`` is added to record addresses."""
        if count <= 0:
            count = self.size - base
        data = self._fetch(base, count).tobytes()
        with open(path, "w") as f:
            for pos in range(0, len(data), HEX_RECORD_LEN):
                chunk = data[pos:pos + HEX_RECORD_LEN]
                addr = (base + offset + pos) & ADDRESS_MASK
                rec = bytes([len(chunk), addr >> 8, addr & 0xFF, HEX_DATA]) + chunk
                f.write(":" + rec.hex().upper() + f"{-sum(rec) & 0xFF:02X}\n")
            f.write(":00000001FF\n")
        return len(data)

    # -- Debug --

    def dump(self, first: int, last: int) -> str:
        """Hex + ASCII dump of [first, last], 16 bytes per row."""
        lines = []
        for row in range(first & ~0xF, last + 1, 16):
            hex_bytes = []
            ascii_chars = []
            for a in range(row, row + 16):
                if first <= a <= last:
                    b = self.ui_read(a)
                    hex_bytes.append(f"{b:02X}")
                    ascii_chars.append(chr(b) if 0x20 <= b < 0x7F else '.')
                else:
                    hex_bytes.append("  ")
                    ascii_chars.append(' ')
            hex_str = ' '.join(hex_bytes[:8]) + '  ' + ' '.join(hex_bytes[8:])
            lines.append(f"  {row:04X}/ {hex_str}  |{''.join(ascii_chars)}|")
        return "\n".join(lines)

    def show(self) -> str:
        """Summarise the memory map as runs of identical attributes."""
        lines = []
        start = 0
        kinds = {MEM_RAM: "RAM", MEM_READ: "ROM", MEM_WRITE: "WOM", 0: "NXM"}
        for a in range(1, self.size + 1):
            if a == self.size or (self._flags[a] & MEM_RAM) != (self._flags[start] & MEM_RAM):
                kind = kinds[self._flags[start] & MEM_RAM]
                lines.append(f"  {start:04X}-{a - 1:04X}  {kind}")
                start = a
        nbreaks = self.count_flags(MEM_BREAK)
        if nbreaks:
            lines.append(f"  {nbreaks} breakpoint(s) set")
        return "\n".join(lines)


def default_extension(path: str, ext: str) -> str:
    """Append ``ext`` when ``path`` has no extension of its own."""
    return path if os.path.splitext(path)[1] else path + ext
