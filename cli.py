#!/usr/bin/env python3
"""
ELF2K System Monitor / CLI
===========================
Interactive command-line interface for the ELF2K emulator.

Provides:
  - Memory image loading and saving (binary and Intel HEX)
  - Device configuration (IDE drives, UART, NVR, bit-banged serial)
  - Run / continue / step / breakpoint execution
  - Register and memory inspection / modification
  - Disassembly
  - Console log capture, paced text upload and XMODEM transfers

Commands are case insensitive and take DCL style switches, e.g.

  LOAD /HEX ELF2K.HEX /ROM
  ATTACH IDE disk.img /UNIT=0 /CAPACITY=65536
  EXAMINE 8000-801F /INSTRUCTION

Usage:
  python cli.py [--rom FILE] [--ram FILE] [--ide IMAGE] [--ide1 IMAGE]
                [--nvr FILE] [--serial] [--baud N] [--run]
"""

from __future__ import annotations
import argparse
import cmd
import logging
import os
import re
import shlex
import sys
from typing import Optional

from console import CONSOLE_BREAK, HostConsole
from cpu import REGISTER_WIDTHS, STOP_MESSAGES, StopCode, DEFAULT_CRYSTAL
from devices import DeviceError
from events import cps_to_ns, ms_to_ns, ns_to_ms, ns_to_us, us_to_ns
from memory import Memory, MEMSIZE
from softserial import DEFAULT_BAUD
from system import Emulator, RAM_BASE, RAM_TOP, ROM_BASE, ROM_TOP, VERSION

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

SHORT_BRANCHES = (
    "BR", "BQ", "BZ", "BDF", "B1", "B2", "B3", "B4",
    "SKP", "BNQ", "BNZ", "BNF", "BN1", "BN2", "BN3", "BN4",
)

CONTROL_NAMES = (
    "RET", "DIS", "LDXA", "STXD", "ADC", "SDB", "SHRC", "SMB",
    "SAV", "MARK", "REQ", "SEQ", "ADCI", "SDBI", "SHLC", "SMBI",
)

LONG_NAMES = (
    "LBR", "LBQ", "LBZ", "LBDF", "NOP", "LSNQ", "LSNZ", "LSNF",
    "LSKP", "LBNQ", "LBNZ", "LBNF", "LSIE", "LSQ", "LSZ", "LSDF",
)

ALU_NAMES = (
    "LDX", "OR", "AND", "XOR", "ADD", "SD", "SHR", "SM",
    "LDI", "ORI", "ANI", "XRI", "ADI", "SDI", "SHL", "SMI",
)

REGISTER_FAMILIES = {
    0x1: "INC", 0x2: "DEC", 0x4: "LDA", 0x5: "STR", 0x8: "GLO", 0x9: "GHI",
    0xA: "PLO", 0xB: "PHI", 0xD: "SEP", 0xE: "SEX",
}

LONG_BRANCHES = (0x0, 0x1, 0x2, 0x3, 0x9, 0xA, 0xB)


def disasm_one(memory: Memory, addr: int) -> tuple[str, int]:
    """Disassemble one instruction at `addr`. Returns (text, byte_count)."""
    def rb(a):
        return memory.ui_read(a & 0xFFFF)

    b0 = rb(addr)
    f = b0 >> 4
    n = b0 & 0xF

    if f == 0x0:
        return ("IDL", 1) if n == 0 else (f"LDN R{n:X}", 1)
    if f in REGISTER_FAMILIES:
        return f"{REGISTER_FAMILIES[f]} R{n:X}", 1
    if f == 0x3:
        if n == 0x8:
            return "SKP", 1
        target = ((addr + 1) & 0xFF00) | rb(addr + 1)
        return f"{SHORT_BRANCHES[n]} {target:04X}", 2
    if f == 0x6:
        if n == 0:
            return "IRX", 1
        if n == 8:
            return f"DB {b0:02X}", 1
        return (f"OUT {n}", 1) if n < 8 else (f"INP {n - 8}", 1)
    if f == 0x7:
        if n in (0xC, 0xD, 0xF):
            return f"{CONTROL_NAMES[n]} {rb(addr + 1):02X}", 2
        return CONTROL_NAMES[n], 1
    if f == 0xC:
        if n in LONG_BRANCHES:
            return f"{LONG_NAMES[n]} {rb(addr + 1):02X}{rb(addr + 2):02X}", 3
        return LONG_NAMES[n], 1
    # 0xF family
    if n >= 8 and n != 0xE:
        return f"{ALU_NAMES[n]} {rb(addr + 1):02X}", 2
    return ALU_NAMES[n], 1


# ---------------------------------------------------------------------------
#  Argument parsing helpers
# ---------------------------------------------------------------------------

_SWITCH = re.compile(r"^/([A-Za-z]+)(?:=(.*))?$")


def split_switches(arg: str) -> tuple[list[str], dict[str, Optional[str]]]:
    """Split a command tail into plain words and /SWITCH[=value] modifiers."""
    words, switches = [], {}
    for tok in shlex.split(arg):
        m = _SWITCH.match(tok)
        if m:
            switches[m.group(1).upper()] = m.group(2)
        else:
            words.append(tok)
    return words, switches


def parse_number(s: str, radix: int = 10) -> int:
    s = s.strip()
    if s.lower().startswith("0x"):
        return int(s, 16)
    return int(s, radix)


def parse_addr(s: str) -> int:
    value = parse_number(s, 16)
    if not 0 <= value < MEMSIZE:
        raise ValueError(f"address {s} out of range")
    return value


def parse_on_off(s: str) -> bool:
    s = s.upper()
    if s not in ("ON", "OFF"):
        raise ValueError(f"expected ON or OFF, not {s}")
    return s == "ON"


def attach_nvr(emu: Emulator, path: str):
    """Install the NVR, loading ``path`` if it exists; it is saved there on exit."""
    nvr = emu.install_nvr(path if path and os.path.exists(path) else "")
    if path:
        nvr.file_name = path
    return nvr


# ---------------------------------------------------------------------------
#  CLI
# ---------------------------------------------------------------------------

class ELF2KMonitor(cmd.Cmd):
    """Interactive monitor for the ELF2K emulator."""

    intro = (
        "\n"
        f"ELF2K Emulator v{VERSION}\n"
        "Type 'help' for commands.  'exit' to quit.\n"
    )
    prompt = "ELF2K> "

    def __init__(self, emulator: Emulator):
        super().__init__()
        self.emu = emulator

    # -- Dispatch --

    def parseline(self, line):
        command, arg, line = super().parseline(line)
        return (command.lower() if command else command), arg, line

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except (OSError, ValueError, KeyError, DeviceError) as e:
            log.debug("command %r failed", line, exc_info=True)
            print(f"?{e}")
            return False

    def default(self, line):
        """Handle unknown commands gracefully."""
        print(f"Unknown command: {line.split()[0]!r}. Type 'help' for available commands.")

    def emptyline(self):
        """Don't repeat the last command on empty input."""
        pass

    def do_help(self, arg):
        """List commands, or show help for one: HELP [command]"""
        super().do_help(arg.lower())

    # -- Execution helpers --

    def _simulate(self, count: int = 0) -> StopCode:
        console = self.emu.console
        host = console.console if isinstance(console.console, HostConsole) else None
        if count == 0:
            print(f"[Simulation started.  Type CONTROL+{chr(console.console_break + 0x40)} to break.]")
        if host is not None:
            host.enter_raw()
        try:
            code = self.emu.run(count)
        finally:
            if host is not None:
                host.leave_raw()
        if count == 0:
            print()
        cpu = self.emu.cpu
        if code in (StopCode.ILLEGAL_IO, StopCode.ILLEGAL_OPCODE, StopCode.HALT):
            print(f"{STOP_MESSAGES[code]} at 0x{cpu.last_pc:04X}")
        elif code in STOP_MESSAGES:
            print(f"{STOP_MESSAGES[code]} at 0x{cpu.pc:04X}")
        return code

    def _examine_instruction(self, addr: int) -> int:
        text, size = disasm_one(self.emu.memory, addr)
        raw = " ".join(f"{self.emu.memory.ui_read(addr + i):02X}" for i in range(size))
        print(f"{addr:04X}/ {raw:<9s} {text}")
        return size

    def _image_format(self, path: str, switches: dict) -> tuple[str, Optional[bool]]:
        """Pick the file format from the switches, else from the extension."""
        if "HEX" in switches or "INTEL" in switches:
            return path, True
        if "BINARY" in switches:
            return path, False
        if not os.path.splitext(path)[1]:
            for ext, hex_format in ((".bin", False), (".hex", True)):
                if os.path.exists(path + ext):
                    return path + ext, hex_format
        return path, None

    def _base_and_count(self, switches: dict) -> tuple[int, int]:
        if switches.get("BASE") is not None:
            base = parse_addr(switches["BASE"])
        elif "RAM" in switches:
            base = RAM_BASE
        elif "ROM" in switches:
            base = ROM_BASE
        else:
            base = 0
        if switches.get("COUNT") is not None:
            count = parse_number(switches["COUNT"], 16)
        elif "RAM" in switches:
            count = RAM_TOP - RAM_BASE + 1
        elif "ROM" in switches:
            count = ROM_TOP - ROM_BASE + 1
        else:
            count = MEMSIZE - base
        return base, count

    # ================================================================
    #  Commands
    # ================================================================

    # -- Loading / saving --

    def do_load(self, arg):
        """Load memory: LOAD [/BINARY|/HEX] file [/BASE=addr] [/COUNT=n] [/RAM|/ROM]
        LOAD /NVR file loads the RTC's non-volatile RAM."""
        words, switches = split_switches(arg)
        if len(words) != 1:
            print("Usage: LOAD [/BINARY|/HEX] file [/BASE=addr] [/RAM|/ROM]")
            return
        if "NVR" in switches:
            self._load_nvr(words[0])
            return
        path, hex_format = self._image_format(words[0], switches)
        base, count = self._base_and_count(switches)
        nbytes = self.emu.load(path, base, count, hex_format)
        print(f"{nbytes} bytes loaded from {path}")

    def _load_nvr(self, path: str):
        nvr = self.emu.combo.nvr
        if nvr is None:
            print("?ATTACH NVR first")
            return
        nbytes = nvr.load_nvr(path)
        print(f"{nbytes} bytes loaded from {path}")

    def do_save(self, arg):
        """Save memory: SAVE [/BINARY|/HEX] file [/BASE=addr] [/COUNT=n] [/RAM|/ROM]
        SAVE NVR file saves the RTC's non-volatile RAM."""
        words, switches = split_switches(arg)
        if len(words) == 2 and words[0].upper() == "NVR":
            switches["NVR"] = None
            words = words[1:]
        if len(words) != 1:
            print("Usage: SAVE [/BINARY|/HEX] file [/BASE=addr] [/COUNT=n]")
            return
        if "NVR" in switches:
            nvr = self.emu.combo.nvr
            if nvr is None:
                print("?ATTACH NVR first")
                return
            nbytes = nvr.save_nvr(words[0])
            print(f"{nbytes} bytes saved to {words[0]}")
            return
        path, hex_format = self._image_format(words[0], switches)
        if hex_format is None:
            hex_format = os.path.splitext(path)[1].lower() == ".hex"
        base, count = self._base_and_count(switches)
        nbytes = self.emu.save(path, base, count, hex_format)
        print(f"{nbytes} bytes saved to {path}")

    # -- Devices --

    def do_attach(self, arg):
        """Attach a device:
          ATTACH IDE file [/UNIT=n] [/CAPACITY=sectors]
          ATTACH UART
          ATTACH NVR [file]
          ATTACH SERIAL [/BAUD=n]"""
        words, switches = split_switches(arg)
        what = words[0].upper() if words else ""
        if what == "IDE" and len(words) == 2:
            unit = parse_number(switches.get("UNIT") or "0")
            capacity = parse_number(switches.get("CAPACITY") or "0")
            self.emu.attach_ide(unit, words[1], capacity)
            print(f"IDE unit {unit} attached to {words[1]}, "
                  f"{self.emu.ide.capacity(unit)} sectors")
        elif what == "UART":
            if self.emu.serial is not None:
                print("?DETACH SERIAL first")
                return
            self.emu.install_uart()
        elif what == "NVR":
            attach_nvr(self.emu, words[1] if len(words) > 1 else "")
        elif what == "SERIAL":
            if self.emu.combo.uart is not None:
                print("?DETACH UART first")
                return
            baud = parse_number(switches.get("BAUD") or str(DEFAULT_BAUD))
            self.emu.install_serial(baud)
        else:
            print("Usage: ATTACH IDE file|UART|NVR [file]|SERIAL")

    def do_detach(self, arg):
        """Detach a device: DETACH IDE [/UNIT=n] | UART | NVR | SERIAL

        DETACH IDE without a unit removes the whole disk interface.  The
        combo card itself goes away once its UART, NVR and disk are all gone."""
        words, switches = split_switches(arg)
        what = words[0].upper() if words else ""
        if what == "IDE":
            ide = self.emu.ide
            if ide is None:
                return
            if switches.get("UNIT") is not None:
                ide.detach(parse_number(switches["UNIT"]))
            else:
                self.emu.remove_ide()
        elif what == "UART":
            self.emu.remove_uart()
        elif what == "NVR":
            self.emu.remove_nvr()
        elif what == "SERIAL":
            self.emu.remove_serial()
        else:
            print("Usage: DETACH IDE|UART|NVR|SERIAL")

    # -- Inspection --

    def do_examine(self, arg):
        """Examine memory or registers:
          EXAMINE addr[-addr] [/INSTRUCTION]
          EXAMINE register
          EXAMINE /REGISTERS"""
        words, switches = split_switches(arg)
        cpu = self.emu.cpu
        if "REGISTERS" in switches or not words:
            print(cpu.dump_regs())
            return
        for word in words:
            if word.upper() in REGISTER_WIDTHS:
                width = (REGISTER_WIDTHS[word.upper()] + 3) // 4
                print(f"{word.upper()}={cpu.get_register(word):0{width}X}")
                continue
            first, _, last = word.partition("-")
            start = parse_addr(first)
            end = parse_addr(last) if last else start
            if end < start:
                raise ValueError(f"bad address range {word}")
            if "INSTRUCTION" in switches:
                addr = start
                while addr <= end:
                    addr += self._examine_instruction(addr)
            elif start == end:
                print(f"{start:04X}/ {self.emu.memory.ui_read(start):02X}")
            else:
                print(self.emu.memory.dump(start, end))

    def do_deposit(self, arg):
        """Change memory or registers:
          DEPOSIT addr byte [byte ...]
          DEPOSIT register value"""
        words, _ = split_switches(arg)
        if len(words) < 2:
            print("Usage: DEPOSIT addr byte... | DEPOSIT register value")
            return
        if words[0].upper() in REGISTER_WIDTHS:
            self.emu.cpu.set_register(words[0], parse_number(words[1], 16))
            return
        addr = parse_addr(words[0])
        for i, tok in enumerate(words[1:]):
            value = parse_number(tok, 16)
            if not 0 <= value <= 0xFF:
                raise ValueError(f"{tok} is not a byte")
            self.emu.memory.ui_write(addr + i, value)

    # -- Execution --

    def do_run(self, arg):
        """Reset everything and run: RUN [addr]"""
        words, _ = split_switches(arg)
        addr = parse_addr(words[0]) if words else None
        self.emu.reset()
        if addr is not None:
            self.emu.cpu.set_register("R0", addr)
        self._simulate()

    def do_continue(self, arg):
        """Continue from where the CPU stopped."""
        self._simulate()

    def do_step(self, arg):
        """Step N instructions: STEP [count]"""
        words, _ = split_switches(arg)
        count = parse_number(words[0]) if words else 1
        for _ in range(max(count, 1)):
            self._examine_instruction(self.emu.cpu.pc)
            if self._simulate(1) != StopCode.FINISHED:
                break
            print(self.emu.cpu.dump_regs())

    def do_reset(self, arg):
        """Reset the CPU and every device."""
        self.emu.reset()

    # -- Configuration --

    def do_set(self, arg):
        """Change settings:
          SET BREAKPOINT addr
          SET BREAK char               (console break, 1-31)
          SET UART SPEED cps
          SET SERIAL BAUD n | INVERT NONE|TX|RX|BOTH
          SET IDE SHORT|LONG us
          SET TEXT DELAY cps line_ms
          SET XMODEM DELAY cps
          SET CRLF ON|OFF              (ON sends line endings unchanged)
          SET CPU ILLEGAL ON|OFF       (stop on illegal opcodes)
          SET CPU IO ON|OFF            (stop on unmapped I/O)"""
        words, _ = split_switches(arg)
        what = [w.upper() for w in words[:2]]
        if not what:
            print("Usage: SET BREAKPOINT|BREAK|UART|SERIAL|IDE|TEXT|XMODEM|CRLF|CPU ...")
        elif what[0] == "BREAKPOINT" and len(words) == 2:
            self.emu.memory.set_break(parse_addr(words[1]))
        elif what[0] == "BREAK" and len(words) == 2:
            ch = parse_number(words[1])
            if not 1 <= ch <= 31:
                raise ValueError("break character must be 1..31")
            self.emu.console.console_break = ch
        elif what == ["UART", "SPEED"] and len(words) == 3:
            uart = self.emu.combo.uart
            if uart is None:
                print("?ATTACH UART first")
                return
            uart.speed = parse_number(words[2])
        elif what[0] == "SERIAL" and len(words) == 3:
            self._set_serial(what[1], words[2].upper())
        elif what[0] == "IDE" and len(words) == 3:
            ide = self.emu.ide
            delay = us_to_ns(parse_number(words[2]))
            if what[1] == "SHORT":
                ide.set_delays(delay, ide.long_delay)
            elif what[1] == "LONG":
                ide.set_delays(ide.short_delay, delay)
            else:
                print("Usage: SET IDE SHORT|LONG us")
        elif what == ["TEXT", "DELAY"] and len(words) == 4:
            self.emu.console.set_text_delay(cps_to_ns(parse_number(words[2])),
                                            ms_to_ns(parse_number(words[3])))
        elif what == ["XMODEM", "DELAY"] and len(words) == 3:
            self.emu.console.set_xmodem_delay(cps_to_ns(parse_number(words[2])))
        elif what[0] == "CRLF" and len(words) == 2:
            self.emu.console.no_crlf = not parse_on_off(words[1])
        elif what[0] == "CPU" and len(words) == 3 and what[1] in ("ILLEGAL", "IO"):
            on = parse_on_off(words[2])
            if what[1] == "ILLEGAL":
                self.emu.cpu.stop_on_illegal_opcode = on
            else:
                self.emu.cpu.stop_on_illegal_io = on
        else:
            print(f"?unknown SET option: {arg}")

    def _set_serial(self, option: str, value: str):
        serial = self.emu.serial
        if serial is None:
            print("?ATTACH SERIAL first")
            return
        if option == "BAUD":
            serial.baud = parse_number(value)
        elif option == "INVERT":
            modes = {"NONE": (False, False), "TX": (True, False),
                     "RX": (False, True), "BOTH": (True, True)}
            if value not in modes:
                raise ValueError(f"INVERT must be NONE, TX, RX or BOTH, not {value}")
            serial.set_invert(*modes[value])
        else:
            print("Usage: SET SERIAL BAUD n | INVERT NONE|TX|RX|BOTH")

    # -- Display --

    def do_show(self, arg):
        """Show state: SHOW BREAKPOINTS|DEVICE name|ALL|EVENTS|MEMORY|TIME|VERSION"""
        words, _ = split_switches(arg)
        what = words[0].upper() if words else ""
        if what == "BREAKPOINTS":
            breaks = self.emu.memory.breakpoints()
            if breaks:
                print("Breakpoints: " + " ".join(f"{a:04X}" for a in breaks))
            else:
                print("No breakpoints set.")
        elif what == "DEVICE" and len(words) == 2:
            dev = self.emu.find_device(words[1])
            if dev is None:
                print(f"?no device named {words[1]}")
            else:
                print(dev.show())
        elif what == "ALL":
            self.do_show("VERSION")
            print(self.emu.show_all())
        elif what == "EVENTS":
            print(self.emu.events.show())
        elif what == "MEMORY":
            print(self.emu.memory.show())
        elif what == "TIME":
            now = self.emu.events.now
            print(f"Simulated time {ns_to_ms(now)}ms ({ns_to_us(now)}us), "
                  f"{self.emu.cpu.instructions} instructions, "
                  f"{self.emu.cpu.cycles} cycles")
        elif what == "VERSION":
            print(f"ELF2K Emulator v{VERSION}")
        else:
            print("Usage: SHOW BREAKPOINTS|DEVICE name|ALL|EVENTS|MEMORY|TIME|VERSION")

    def do_clear(self, arg):
        """Clear state: CLEAR BREAKPOINT addr|ALL | CLEAR MEMORY | CLEAR NVR"""
        words, _ = split_switches(arg)
        what = words[0].upper() if words else ""
        if what == "BREAKPOINT" and len(words) == 2:
            if words[1].upper() == "ALL":
                self.emu.memory.clear_all_breaks()
            else:
                self.emu.memory.set_break(parse_addr(words[1]), False)
        elif what == "MEMORY":
            self.emu.memory.clear()
        elif what == "NVR":
            nvr = self.emu.combo.nvr
            if nvr is None:
                print("?ATTACH NVR first")
                return
            nvr.clear_nvr()
        else:
            print("Usage: CLEAR BREAKPOINT addr|ALL | MEMORY | NVR")

    # -- File transfer --

    def do_send(self, arg):
        """Send a file to the program: SEND [/TEXT|/XMODEM] file | SEND /ABORT"""
        words, switches = split_switches(arg)
        console = self.emu.console
        if "ABORT" in switches:
            console.abort_text()
            console.abort_xmodem()
            return
        if len(words) != 1:
            print("Usage: SEND [/TEXT|/XMODEM] file")
            return
        if "XMODEM" in switches:
            name = console.send_file(words[0])
            print(f"Sending {name} by XMODEM; start the receiver and CONTINUE")
        else:
            name = console.send_text(words[0])
            print(f"Sending {name} as text")

    def do_receive(self, arg):
        """Receive a file from the program by XMODEM: RECEIVE file | RECEIVE /ABORT"""
        words, switches = split_switches(arg)
        console = self.emu.console
        if "ABORT" in switches:
            console.abort_xmodem()
            return
        if len(words) != 1:
            print("Usage: RECEIVE file")
            return
        name = console.receive_file(words[0])
        print(f"Receiving {name} by XMODEM; start the sender and CONTINUE")

    def do_log(self, arg):
        """Capture console output: LOG file [/APPEND] | LOG /CLOSE"""
        words, switches = split_switches(arg)
        console = self.emu.console
        if "CLOSE" in switches:
            console.close_log()
            return
        if len(words) != 1:
            print("Usage: LOG file [/APPEND] | LOG /CLOSE")
            return
        name = console.open_log(words[0], "APPEND" in switches)
        print(f"Logging to {name}")

    # -- Misc --

    def do_exit(self, arg):
        """Exit the emulator."""
        print("Goodbye.")
        return True
    do_quit = do_exit

    def do_eof(self, arg):
        """Exit on end of input."""
        print()
        return self.do_exit(arg)


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ELF2K Emulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py --rom ELF2K.hex --ide disk.img --run\n"
               "  python cli.py --rom ELF2K.bin --serial --baud 9600\n"
    )
    parser.add_argument("--rom", type=str, default=None,
                        help="ROM image (binary or .hex) loaded at 0x8000")
    parser.add_argument("--ram", type=str, default=None,
                        help="RAM image (binary or .hex) loaded at 0x0000")
    parser.add_argument("--ide", type=str, default=None, metavar="IMAGE",
                        help="Disk image for IDE unit 0")
    parser.add_argument("--ide1", type=str, default=None, metavar="IMAGE",
                        help="Disk image for IDE unit 1")
    parser.add_argument("--nvr", type=str, default=None, metavar="FILE",
                        help="NVR contents, saved again on exit")
    parser.add_argument("--serial", action="store_true",
                        help="Use the bit-banged serial port instead of the UART")
    parser.add_argument("--baud", type=int, default=DEFAULT_BAUD,
                        help=f"Bit-banged serial baud rate (default: {DEFAULT_BAUD})")
    parser.add_argument("--crystal", type=int, default=DEFAULT_CRYSTAL, metavar="HZ",
                        help=f"CPU clock frequency (default: {DEFAULT_CRYSTAL})")
    parser.add_argument("--break-char", type=int, default=CONSOLE_BREAK, metavar="N",
                        help="Console break character code (default: 5, ^E)")
    parser.add_argument("--log-level", type=str, default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Emulator message level (default: WARNING)")
    parser.add_argument("--log-file", type=str, default=None,
                        help="Write emulator messages to FILE instead of stderr")
    parser.add_argument("--run", action="store_true",
                        help="Reset and run before entering the monitor")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level),
                        filename=args.log_file,
                        format="%(levelname)s %(name)s: %(message)s")

    console = HostConsole(args.break_char)
    with Emulator(console, crystal=args.crystal, serial=args.serial,
                  baud=args.baud) as emu:
        try:
            if args.rom:
                print(f"{emu.load_rom(args.rom)} bytes loaded from {args.rom}")
            if args.ram:
                print(f"{emu.load_ram(args.ram)} bytes loaded from {args.ram}")
            if args.ide:
                emu.attach_ide(0, args.ide)
            if args.ide1:
                emu.attach_ide(1, args.ide1)
            if args.nvr:
                attach_nvr(emu, args.nvr)
        except (OSError, ValueError, DeviceError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        monitor = ELF2KMonitor(emu)
        if args.run:
            monitor.onecmd(f"RUN {ROM_BASE:04X}" if args.rom else "RUN")
        try:
            monitor.cmdloop()
        except KeyboardInterrupt:
            print()
    return 0


if __name__ == "__main__":
    sys.exit(main())
