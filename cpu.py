"""
COSMAC 1802 Interpreter
========================
A cycle-counted interpreter for the basic RCA 1802 instruction set, wired
to the emulator's memory map, port map, EF / Q lines and interrupt level.

  Register  Width  Meaning
  --------  -----  ---------------------------------------------
  R0-RF     16     scratchpad registers
  D         8      accumulator
  DF        1      data flag (carry / not borrow)
  P         4      selects the program counter register
  X         4      selects the data pointer register
  N, I      4      low / high nibble of the last opcode
  T         8      X and P saved by an interrupt
  IE        1      interrupt enable
  Q         1      Q output flip-flop
  EF1-EF4   1      sense inputs (read only)

Every instruction takes two machine cycles except the 0xCx long branches
and skips, which take three.  A machine cycle is eight clocks, so with a
2.5 MHz crystal one cycle is 3.2 us.  Simulated time advances after each
instruction by calling EventQueue.advance().

run() never raises for anything the emulated program does; it returns a
StopCode instead.
"""

from __future__ import annotations
import enum
import logging
from typing import Optional

from devices import FlagMap, PortMap, Q, SenseMap, SimpleInterrupt
from events import EventQueue, cycle_ns
from memory import Memory

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

DEFAULT_CRYSTAL  = 2_500_000
CLOCKS_PER_CYCLE = 8
CYCLES_SHORT     = 2
CYCLES_LONG      = 3

ILLEGAL_OPCODE = 0x68   # the 1804/5/6 extended instruction prefix


class StopCode(enum.IntEnum):
    NONE           = 0
    FINISHED       = 1   # the requested instruction count ran out
    ILLEGAL_IO     = 2
    ILLEGAL_OPCODE = 3
    HALT           = 4
    ENDLESS_LOOP   = 5
    BREAKPOINT     = 6
    BREAK          = 7   # user typed the console break character


STOP_MESSAGES = {
    StopCode.ILLEGAL_IO:     "illegal I/O",
    StopCode.ILLEGAL_OPCODE: "illegal instruction",
    StopCode.HALT:           "halt",
    StopCode.ENDLESS_LOOP:   "endless loop",
    StopCode.BREAKPOINT:     "breakpoint",
    StopCode.BREAK:          "break",
}

REGISTER_NAMES = tuple(f"R{i:X}" for i in range(16)) + (
    "D", "DF", "P", "X", "N", "I", "T", "IE", "Q", "EF1", "EF2", "EF3", "EF4")

REGISTER_WIDTHS = {name: 16 for name in REGISTER_NAMES[:16]}
REGISTER_WIDTHS.update({"D": 8, "DF": 1, "P": 4, "X": 4, "N": 4, "I": 4,
                        "T": 8, "IE": 1, "Q": 1,
                        "EF1": 1, "EF2": 1, "EF3": 1, "EF4": 1})

READ_ONLY_REGISTERS = ("EF1", "EF2", "EF3", "EF4")


class COSMAC:
    """RCA CDP1802 CPU."""

    def __init__(self, memory: Memory, events: EventQueue, ports: PortMap,
                 senses: SenseMap, flags: FlagMap,
                 interrupt: Optional[SimpleInterrupt] = None,
                 crystal: int = DEFAULT_CRYSTAL):
        self.memory = memory
        self.events = events
        self.ports = ports
        self.senses = senses
        self.flags = flags
        self.interrupt = interrupt
        self.crystal = crystal

        self.stop_on_illegal_opcode = True
        self.stop_on_illegal_io = False

        self.r: list[int] = [0] * 16
        self.d = 0
        self.df = 0
        self.p = 0
        self.x = 0
        self.i = 0
        self.n = 0
        self.t = 0
        self.ie = 1
        self.q = 0
        self.idle = False

        self.last_pc = 0
        self.instructions = 0
        self.cycles = 0
        self._stop = StopCode.NONE

    # -- Configuration --

    @property
    def crystal(self) -> int:
        return self._crystal

    @crystal.setter
    def crystal(self, hz: int):
        if hz <= 0:
            raise ValueError(f"bad crystal frequency {hz}")
        self._crystal = hz
        self.cycle_ns = cycle_ns(hz, CLOCKS_PER_CYCLE)

    # -- Property shortcuts --

    @property
    def pc(self) -> int:
        return self.r[self.p]

    @pc.setter
    def pc(self, value: int):
        self.r[self.p] = value & 0xFFFF

    @property
    def rx(self) -> int:
        """R(X), the data pointer."""
        return self.r[self.x]

    @rx.setter
    def rx(self, value: int):
        self.r[self.x] = value & 0xFFFF

    # -- Reset --

    def reset(self):
        """Master clear: X=P=Q=0, R0=0, IE=1.  D, DF, T and R1-RF survive."""
        self.x = self.p = 0
        self.r[0] = 0
        self.ie = 1
        self.idle = False
        self._set_q(0)
        self._stop = StopCode.NONE
        self.memory.break_pending = False

    # -- Register access by name --

    def get_register(self, name: str) -> int:
        name = name.upper()
        if name not in REGISTER_WIDTHS:
            raise KeyError(f"unknown register {name}")
        if name.startswith("R") and len(name) == 2:
            return self.r[int(name[1], 16)]
        if name.startswith("EF"):
            return self.senses.get_sense(int(name[2]) - 1)
        return getattr(self, name.lower())

    def set_register(self, name: str, value: int):
        name = name.upper()
        if name not in REGISTER_WIDTHS:
            raise KeyError(f"unknown register {name}")
        if name in READ_ONLY_REGISTERS:
            raise ValueError(f"{name} is read only")
        width = REGISTER_WIDTHS[name]
        if not 0 <= value < (1 << width):
            raise ValueError(f"{name} is only {width} bits")
        if name.startswith("R") and len(name) == 2:
            self.r[int(name[1], 16)] = value
        elif name == "Q":
            self._set_q(value)
        else:
            setattr(self, name.lower(), value)

    def dump_regs(self) -> str:
        lines = []
        for row in range(0, 16, 4):
            lines.append("  " + "  ".join(
                f"R{i:X}={self.r[i]:04X}{'<P' if i == self.p else '<X' if i == self.x else '  '}"
                for i in range(row, row + 4)))
        efs = " ".join(f"EF{i + 1}={self.senses.get_sense(i)}" for i in range(4))
        lines.append(f"  D={self.d:02X} DF={self.df} P={self.p:X} X={self.x:X} "
                     f"T={self.t:02X} IE={self.ie} Q={self.q}  {efs}")
        return "\n".join(lines)

    # -- Memory helpers --

    def fetch8(self) -> int:
        """Fetch one byte at R(P) and advance R(P)."""
        val = self.memory.cpu_read(self.pc)
        self.pc = self.pc + 1
        return val

    def _set_q(self, bit: int):
        self.q = bit & 1
        self.flags.set_flag(Q, self.q)

    def _ef(self, index: int) -> int:
        return self.senses.get_sense(index, 0)

    # =====================================================================
    #  Run loop
    # =====================================================================

    def break_(self, code: StopCode = StopCode.BREAK):
        """Ask run() to stop after the current instruction."""
        self._stop = code

    def run(self, count: int = 0) -> StopCode:
        """Execute until something stops the CPU, or ``count`` instructions.

        A breakpoint on the address the run starts at is ignored, so
        CONTINUE after a breakpoint makes progress.
        """
        self._stop = StopCode.NONE
        executed = 0
        first = True
        while True:
            if self.ie and self.interrupt is not None and self.interrupt.is_requested():
                self._take_interrupt()
            if self.idle:
                self._wait_for_interrupt()
                if self._stop != StopCode.NONE:
                    return self._stop
                continue
            if not first and self.memory.is_break(self.pc):
                return StopCode.BREAKPOINT
            first = False
            self.step()
            executed += 1
            if self._stop != StopCode.NONE:
                return self._stop
            if self.memory.take_break_pending():
                return StopCode.BREAKPOINT
            if count and executed >= count:
                return StopCode.FINISHED

    def _take_interrupt(self):
        self.t = (self.x << 4) | self.p
        self.x, self.p = 2, 1
        self.ie = 0
        self.idle = False
        self.interrupt.acknowledge()
        self._spend(1)

    def _wait_for_interrupt(self):
        if not self.ie or self.interrupt is None:
            log.warning("IDL with interrupts disabled at %04X", self.last_pc)
            self.idle = False
            self.pc = self.last_pc
            self._stop = StopCode.BREAK
            return
        deadline = self.events.next_deadline()
        if deadline is None:
            log.warning("IDL with nothing left to wake the CPU at %04X", self.last_pc)
            self.idle = False
            self.pc = self.last_pc
            self._stop = StopCode.BREAK
            return
        # skip straight to the next device event, whole machine cycles at a time
        waited = max(deadline - self.events.now, 0)
        idle_cycles = -(-waited // self.cycle_ns) if self.cycle_ns else 0
        self._spend(max(idle_cycles, 1))

    def _spend(self, cycles: int):
        self.cycles += cycles
        self.events.advance(cycles * self.cycle_ns)

    # =====================================================================
    #  Fetch / decode / execute
    # =====================================================================

    def step(self) -> int:
        """Execute one instruction.  Returns number of machine cycles."""
        self.last_pc = self.pc
        opcode = self.fetch8()
        # an opcode fetch from a break address is a code breakpoint, not a data one
        self.memory.break_pending = False
        self.i = opcode >> 4
        self.n = opcode & 0xF
        f, n = self.i, self.n

        cycles = CYCLES_SHORT
        if   f == 0x0: self._exec_ldn(n)
        elif f == 0x1: self.r[n] = (self.r[n] + 1) & 0xFFFF
        elif f == 0x2: self.r[n] = (self.r[n] - 1) & 0xFFFF
        elif f == 0x3: self._exec_short_branch(n)
        elif f == 0x4:
            self.d = self.memory.cpu_read(self.r[n])
            self.r[n] = (self.r[n] + 1) & 0xFFFF
        elif f == 0x5: self.memory.cpu_write(self.r[n], self.d)
        elif f == 0x6: self._exec_io(n)
        elif f == 0x7: self._exec_control(n)
        elif f == 0x8: self.d = self.r[n] & 0xFF
        elif f == 0x9: self.d = self.r[n] >> 8
        elif f == 0xA: self.r[n] = (self.r[n] & 0xFF00) | self.d
        elif f == 0xB: self.r[n] = (self.d << 8) | (self.r[n] & 0xFF)
        elif f == 0xC:
            self._exec_long(n)
            cycles = CYCLES_LONG
        elif f == 0xD: self.p = n
        elif f == 0xE: self.x = n
        else:          self._exec_alu(n)

        self.instructions += 1
        self._spend(cycles)
        return cycles

    # -- 0x0: IDL / LDN --
    def _exec_ldn(self, n: int):
        if n == 0:
            self.idle = True
        else:
            self.d = self.memory.cpu_read(self.r[n])

    # -- 0x3: short branch / skip --
    def _short_condition(self, n: int) -> bool:
        c = n & 7
        if c == 0:
            taken = True
        elif c == 1:
            taken = self.q == 1
        elif c == 2:
            taken = self.d == 0
        elif c == 3:
            taken = self.df == 1
        else:
            taken = self._ef(c - 4) == 1
        return not taken if n & 8 else taken

    def _exec_short_branch(self, n: int):
        if self._short_condition(n):
            target = (self.pc & 0xFF00) | self.memory.cpu_read(self.pc)
            self.pc = target
            # EF tests can change under a device, everything else can't
            if target == self.last_pc and not self.ie and (n & 7) < 4:
                self._stop = StopCode.ENDLESS_LOOP
        else:
            self.pc = self.pc + 1

    # -- 0x6: IRX / OUT / INP --
    def _exec_io(self, n: int):
        if n == 0:
            self.rx = self.rx + 1
        elif n == 8:
            self._illegal_opcode()
        elif n < 8:
            self.ports.write(n, self.memory.cpu_read(self.rx))
            self.rx = self.rx + 1
            self._check_io()
        else:
            self.d = self.ports.read(n - 8)
            self.memory.cpu_write(self.rx, self.d)
            self._check_io()

    def _check_io(self):
        if self.ports.unmapped and self.stop_on_illegal_io:
            self._stop = StopCode.ILLEGAL_IO

    def _illegal_opcode(self):
        if self.stop_on_illegal_opcode:
            self.pc = self.last_pc
            self._stop = StopCode.ILLEGAL_OPCODE

    # -- 0x7: control and carry arithmetic --
    def _exec_control(self, n: int):
        if n in (0x0, 0x1):                 # RET, DIS
            value = self.memory.cpu_read(self.rx)
            self.rx = self.rx + 1
            self.x, self.p = value >> 4, value & 0xF
            self.ie = 1 if n == 0 else 0
        elif n == 0x2:                      # LDXA
            self.d = self.memory.cpu_read(self.rx)
            self.rx = self.rx + 1
        elif n == 0x3:                      # STXD
            self.memory.cpu_write(self.rx, self.d)
            self.rx = self.rx - 1
        elif n == 0x4:                      # ADC
            self._add(self.memory.cpu_read(self.rx), self.df)
        elif n == 0x5:                      # SDB
            self._subtract(self.memory.cpu_read(self.rx), self.d, self.df)
        elif n == 0x6:                      # SHRC
            carry = self.d & 1
            self.d = (self.d >> 1) | (self.df << 7)
            self.df = carry
        elif n == 0x7:                      # SMB
            self._subtract(self.d, self.memory.cpu_read(self.rx), self.df)
        elif n == 0x8:                      # SAV
            self.memory.cpu_write(self.rx, self.t)
        elif n == 0x9:                      # MARK
            self.t = (self.x << 4) | self.p
            self.memory.cpu_write(self.r[2], self.t)
            self.x = self.p
            self.r[2] = (self.r[2] - 1) & 0xFFFF
        elif n == 0xA:                      # REQ
            self._set_q(0)
        elif n == 0xB:                      # SEQ
            self._set_q(1)
        elif n == 0xC:                      # ADCI
            self._add(self.fetch8(), self.df)
        elif n == 0xD:                      # SDBI
            self._subtract(self.fetch8(), self.d, self.df)
        elif n == 0xE:                      # SHLC
            carry = self.d >> 7
            self.d = ((self.d << 1) | self.df) & 0xFF
            self.df = carry
        else:                               # SMBI
            self._subtract(self.d, self.fetch8(), self.df)

    # -- 0xC: long branch / long skip --
    def _long_condition(self, c: int) -> bool:
        if c == 0:
            return True
        if c == 1:
            return self.q == 1
        if c == 2:
            return self.d == 0
        return self.df == 1

    def _exec_long(self, n: int):
        if n == 0x4:                        # NOP
            return
        if n == 0xC:                        # LSIE
            self._long_skip(self.ie == 1)
        elif n & 4:
            # C5-C7 skip on the false condition, CD-CF on the true one
            taken = self._long_condition(n & 3)
            self._long_skip(taken if n & 8 else not taken)
        else:
            taken = self._long_condition(n & 3)
            if n & 8:
                taken = not taken           # C8 (LSKP) never branches, so it skips
            if taken:
                hi = self.memory.cpu_read(self.pc)
                lo = self.memory.cpu_read(self.pc + 1)
                self.pc = (hi << 8) | lo
                if self.pc == self.last_pc and not self.ie:
                    self._stop = StopCode.ENDLESS_LOOP
            else:
                self.pc = self.pc + 2

    def _long_skip(self, taken: bool):
        if taken:
            self.pc = self.pc + 2

    # -- 0xF: memory reference ALU / immediate --
    def _exec_alu(self, n: int):
        if n == 0x0:                        # LDX
            self.d = self.memory.cpu_read(self.rx)
            return
        if n == 0x8:                        # LDI
            self.d = self.fetch8()
            return
        if n in (0x6, 0xE):                 # SHR, SHL
            if n == 0x6:
                self.df = self.d & 1
                self.d >>= 1
            else:
                self.df = self.d >> 7
                self.d = (self.d << 1) & 0xFF
            return
        operand = self.fetch8() if n & 8 else self.memory.cpu_read(self.rx)
        op = n & 7
        if op == 1:
            self.d |= operand
        elif op == 2:
            self.d &= operand
        elif op == 3:
            self.d ^= operand
        elif op == 4:
            self._add(operand, 0)
        elif op == 5:
            self._subtract(operand, self.d, 1)
        else:
            self._subtract(self.d, operand, 1)

    def _add(self, operand: int, carry: int):
        result = self.d + operand + carry
        self.d = result & 0xFF
        self.df = result >> 8

    def _subtract(self, a: int, b: int, not_borrow: int):
        """D = a - b - borrow; DF is 1 when no borrow occurred."""
        result = a - b - (1 - not_borrow)
        self.d = result & 0xFF
        self.df = 1 if result >= 0 else 0
