"""
ELF2K System Emulator
======================
Wires together:
  - the COSMAC 1802 CPU (cpu.py)
  - 32 KiB RAM at 0x0000 and 32 KiB ROM at 0x8000 (memory.py)
  - the Disk/UART/RTC combo card on ports 2-3 (combo.py)
  - the POST display and DIP switches on port 4 (devices.py)
  - optionally, the bit-banged serial terminal on Q / EF3 (softserial.py)
  - the smart console overlay in front of the host terminal (smartconsole.py)

  Memory          Contents
  --------------  ------------------------------
  0x0000-0x7FFF   RAM
  0x8000-0xFFFF   ROM (monitor / BIOS / ElfOS boot)

All devices share one EventQueue and one level triggered interrupt line;
everything the devices need is passed in from here.
"""

from __future__ import annotations
import logging
import os
from typing import Optional

from combo import ComboCard
from console import BufferConsole, VirtualConsole
from cpu import COSMAC, DEFAULT_CRYSTAL, StopCode
from devices import (
    Device, EF3, FlagMap, LEVEL_TRIGGERED, PortMap, PostDisplay, Q, SenseMap,
    SimpleInterrupt, Switches,
)
from events import EventQueue
from ide import IDE
from memory import Memory, default_extension
from rtc import DS12887
from smartconsole import SmartConsole
from softserial import DEFAULT_BAUD, SoftwareSerial
from uart import INS8250

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  ELF2K map
# ---------------------------------------------------------------------------

RAM_BASE = 0x0000
RAM_TOP  = 0x7FFF
ROM_BASE = 0x8000
ROM_TOP  = 0xFFFF

COMBO_PORT = 2
POST_PORT  = 4
SERIAL_SENSE = EF3

HEX_TYPE = ".hex"
VERSION = "1.0"


class Emulator:
    """Everything that makes up one ELF2K."""

    def __init__(self, console: Optional[VirtualConsole] = None,
                 crystal: int = DEFAULT_CRYSTAL, serial: bool = False,
                 baud: int = DEFAULT_BAUD):
        self.events = EventQueue()
        self.memory = Memory()
        self.memory.set_ram(RAM_BASE, RAM_TOP)
        self.memory.set_rom(ROM_BASE, ROM_TOP)
        self.ports = PortMap()
        self.senses = SenseMap()
        self.flags = FlagMap()
        self.interrupt = SimpleInterrupt(LEVEL_TRIGGERED)
        self.console = SmartConsole(self.events, console or BufferConsole())
        self.cpu = COSMAC(self.memory, self.events, self.ports, self.senses,
                          self.flags, self.interrupt, crystal)

        self.combo = ComboCard(self.events, COMBO_PORT)
        self.combo.attach_interrupt(self.interrupt)
        self._install_combo()
        self.post = PostDisplay(POST_PORT)
        self.ports.install(self.post)
        self.switches = Switches(POST_PORT)
        self.ports.install(self.switches)

        self.serial: Optional[SoftwareSerial] = None
        if serial:
            self.install_serial(baud)
        else:
            self.install_uart()
        self.install_nvr()
        self.install_ide()
        self.reset()

    # -- Console break --

    def user_break(self):
        """Called by the console devices when the break character is typed."""
        self.cpu.break_(StopCode.BREAK)

    # -- Configuration --

    def _install_combo(self) -> ComboCard:
        if self.combo not in self.ports.devices:
            self.combo.reset()
            self.ports.install(self.combo)
            log.debug("%s installed", self.combo.description)
        return self.combo

    def _remove_combo_if_empty(self):
        # the card goes when its last sub-device does
        if self.combo.is_empty and self.combo in self.ports.devices:
            self.ports.remove(self.combo)
            log.debug("%s removed", self.combo.description)

    def install_uart(self) -> INS8250:
        self._install_combo()
        return self.combo.install_uart(self.console, self.user_break)

    def remove_uart(self):
        self.combo.remove_uart()
        self._remove_combo_if_empty()

    def install_nvr(self, path: str = "") -> DS12887:
        self._install_combo()
        return self.combo.install_nvr(path)

    def remove_nvr(self):
        self.combo.remove_nvr()
        self._remove_combo_if_empty()

    def install_ide(self) -> IDE:
        self._install_combo()
        return self.combo.install_ide()

    def remove_ide(self):
        self.combo.remove_ide()
        self._remove_combo_if_empty()

    def install_serial(self, baud: int = DEFAULT_BAUD,
                       tx_invert: bool = True, rx_invert: bool = True) -> SoftwareSerial:
        """Connect the bit-banged terminal to Q and EF3 (both inverted on an ELF2K)."""
        if self.serial is None:
            serial = SoftwareSerial(self.events, self.console, self.user_break,
                                    baud=baud, tx_invert=tx_invert,
                                    rx_invert=rx_invert, sense=SERIAL_SENSE)
            self.senses.install(serial, SERIAL_SENSE)
            self.flags.install(serial, Q)
            self.ports.install(serial)
            self.serial = serial
            serial.reset()
        return self.serial

    def remove_serial(self):
        if self.serial is not None:
            self.events.cancel_all(self.serial)
            self.senses.remove(self.serial)
            self.flags.remove(self.serial)
            self.ports.remove(self.serial)
            self.serial = None

    @property
    def ide(self) -> Optional[IDE]:
        return self.combo.ide

    def attach_ide(self, unit: int, path: str, capacity: int = 0):
        ide = self.install_ide()
        ide.attach(unit, path, capacity)
        ide.reset()

    def find_device(self, name: str) -> Optional[Device | SmartConsole]:
        if name.upper() == SmartConsole.name:
            return self.console
        return self.ports.find(name)

    # -- Lifecycle --

    def reset(self):
        """Press the reset switch: master clear the CPU and every device."""
        self.interrupt.clear()
        self.ports.reset_all()
        self.cpu.reset()

    def run(self, count: int = 0) -> StopCode:
        return self.cpu.run(count)

    def close(self):
        nvr = self.combo.nvr
        if nvr is not None and nvr.file_name:
            try:
                nvr.save_nvr()
            except OSError as e:
                log.error("unable to save NVR to %s: %s", nvr.file_name, e)
        self.combo.close()
        self.console.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    # -- Memory images --

    def load(self, path: str, base: int = 0, limit: int = 0,
             hex_format: Optional[bool] = None) -> int:
        """Load a binary or Intel HEX file.  Returns bytes loaded.

        The format follows the extension unless ``hex_format`` says
        otherwise.  A binary image lands at ``base``; for HEX files
        ``base`` is added to every record address, which is how an EPROM
        image origined at 0x0000 ends up at 0x8000.
        """
        if hex_format is None:
            hex_format = os.path.splitext(path)[1].lower() == HEX_TYPE
        if hex_format:
            count = self.memory.load_intel_hex(path, base, limit)
        else:
            count = self.memory.load_binary(path, base, limit)
        log.info("loaded %d bytes from %s at %04X", count, path, base)
        return count

    def load_rom(self, path: str) -> int:
        return self.load(path, ROM_BASE, ROM_TOP - ROM_BASE + 1)

    def load_ram(self, path: str) -> int:
        return self.load(path, RAM_BASE, RAM_TOP - RAM_BASE + 1)

    def save(self, path: str, base: int = 0, count: int = 0,
             hex_format: bool = False) -> int:
        if hex_format:
            path = default_extension(path, HEX_TYPE)
            return self.memory.save_intel_hex(path, base, count)
        return self.memory.save_binary(path, base, count)

    # -- Display --

    def show_all(self) -> str:
        lines = ["=== CPU ===", self.cpu.dump_regs(),
                 f"  Instructions: {self.cpu.instructions}  Cycles: {self.cpu.cycles}",
                 "", "=== Memory ===", self.memory.show(), "", "=== Devices ==="]
        for dev in self.ports:
            lines.append(f"[{dev.name}] {dev.description}")
            lines.append(dev.show())
            for sub in getattr(dev, "subdevices", lambda: [])():
                lines.append(f"[{sub.name}] {sub.description}")
                lines.append(sub.show())
        lines.append(f"[{self.console.name}]")
        lines.append(self.console.show())
        return "\n".join(lines)
