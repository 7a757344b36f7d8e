"""
COSMAC Device Layer
====================
Port-mapped I/O devices, EF sense / Q flag wiring and interrupt plumbing
for the emulator.

The 1802 I/O space is tiny: OUT 1..7 and INP 1..7 select one of seven
device addresses, and the input and output sides are independent (the
ELF2K puts the POST display on output port 4 and the DIP switches on
input port 4).  PortMap therefore keeps two separate maps and an INOUT
device lands in both.

  Port  Device (ELF2K)
  ----  ------------------------------------------
   1    video (unused)
   2    combo card select / status
   3    combo card data
   4    POST display (out) / DIP switches (in)
   5    80-column video (unused)
   6-7  GPIO / PS2 (unused)

Every device talks to the rest of the emulator through handles passed in
at construction: the shared EventQueue (for timed events) and, when
wired, a SimpleInterrupt level.
"""

from __future__ import annotations
from typing import Iterator, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from events import EventQueue

# ---------------------------------------------------------------------------
#  Direction flags
# ---------------------------------------------------------------------------

DEV_INPUT  = 0x01   # CPU <- device
DEV_OUTPUT = 0x02   # CPU -> device
DEV_INOUT  = DEV_INPUT | DEV_OUTPUT

DIRECTION_NAMES = {DEV_INPUT: "input", DEV_OUTPUT: "output", DEV_INOUT: "in-out"}

# Sense and flag indices on the 1802
EF1, EF2, EF3, EF4 = 0, 1, 2, 3
Q = 0
MARK, SPACE = 1, 0


class DeviceError(Exception):
    """Base for device configuration errors."""
    pass


class PortConflictError(DeviceError):
    pass


# ---------------------------------------------------------------------------
#  Device base class
# ---------------------------------------------------------------------------

class Device:
    """Abstract port-mapped peripheral."""

    def __init__(self, name: str, description: str, base_port: int = 0,
                 port_count: int = 1, direction: int = DEV_INOUT,
                 events: Optional[EventQueue] = None):
        self.name = name
        self.description = description
        self.base_port = base_port
        self.port_count = port_count
        self.direction = direction
        self.events = events
        self.interrupt: Optional[SimpleInterrupt] = None
        self._irq_mask: int = 0

    @property
    def last_port(self) -> int:
        return self.base_port + self.port_count - 1

    def reset(self):
        """Return to the power-on state.  Subclasses call this first."""
        if self.events is not None:
            self.events.cancel_all(self)

    def read(self, port: int) -> int:
        """Read one byte from ``port`` (an absolute port number)."""
        return 0xFF

    def write(self, port: int, value: int):
        pass

    def set_flag(self, index: int, bit: int):
        """Called when a CPU flag output (Q) changes."""
        pass

    def get_sense(self, index: int, default: int = 0) -> int:
        """Current state of EF input ``index``; ``default`` when not driven."""
        return default

    def on_event(self, param: int):
        """Callback from the event queue."""
        pass

    def show(self) -> str:
        return ""

    # -- Event helpers --

    def schedule(self, param: int, delay_ns: int):
        self.events.schedule(self, param, delay_ns)

    def cancel(self, param: int):
        self.events.cancel(self, param)

    def is_pending(self, param: int) -> bool:
        return self.events is not None and self.events.is_pending(self, param)

    # -- Interrupt helpers --

    def attach_interrupt(self, interrupt: Optional[SimpleInterrupt]):
        if self.interrupt is not None:
            self.interrupt.release(self._irq_mask)
            self.interrupt, self._irq_mask = None, 0
        if interrupt is not None:
            self._irq_mask = interrupt.allocate()
            self.interrupt = interrupt

    def request_interrupt(self, on: bool = True):
        if self.interrupt is not None:
            self.interrupt.request(self._irq_mask, on)

    def __repr__(self):
        return (f"<{type(self).__name__} {self.name} "
                f"ports={self.base_port}..{self.last_port}>")


# ---------------------------------------------------------------------------
#  Port map
# ---------------------------------------------------------------------------

class PortMap:
    """Routes CPU INP/OUT instructions to installed devices."""

    def __init__(self):
        self.devices: list[Device] = []
        self._inputs: dict[int, Device] = {}
        self._outputs: dict[int, Device] = {}
        self.unmapped = False

    def _ports(self, device: Device) -> range:
        return range(device.base_port, device.base_port + device.port_count)

    def install(self, device: Device):
        """Install ``device``; overlapping ports are refused."""
        if device in self.devices:
            raise PortConflictError(f"{device.name} is already installed")
        for port in self._ports(device):
            for mask, table in ((DEV_INPUT, self._inputs), (DEV_OUTPUT, self._outputs)):
                if device.direction & mask and port in table:
                    raise PortConflictError(
                        f"{DIRECTION_NAMES[mask]} port {port} of {device.name} "
                        f"conflicts with {table[port].name}")
        for port in self._ports(device):
            if device.direction & DEV_INPUT:
                self._inputs[port] = device
            if device.direction & DEV_OUTPUT:
                self._outputs[port] = device
        self.devices.append(device)

    def remove(self, device: Device):
        for table in (self._inputs, self._outputs):
            for port in [p for p, d in table.items() if d is device]:
                del table[port]
        if device in self.devices:
            self.devices.remove(device)

    def find_input(self, port: int) -> Optional[Device]:
        return self._inputs.get(port)

    def find_output(self, port: int) -> Optional[Device]:
        return self._outputs.get(port)

    def find(self, name: str) -> Optional[Device]:
        """Find a device by name, looking inside composite cards too."""
        name = name.upper()
        for dev in self.devices:
            if dev.name.upper() == name:
                return dev
            finder = getattr(dev, "find", None)
            if finder is not None:
                sub = finder(name)
                if sub is not None:
                    return sub
        return None

    def read(self, port: int) -> int:
        """Read ``port``; sets ``unmapped`` when nothing answers."""
        dev = self._inputs.get(port)
        self.unmapped = dev is None
        if dev is None:
            return 0xFF  # floating bus
        return dev.read(port) & 0xFF

    def write(self, port: int, value: int):
        dev = self._outputs.get(port)
        self.unmapped = dev is None
        if dev is not None:
            dev.write(port, value & 0xFF)

    def reset_all(self):
        for dev in self.devices:
            dev.reset()

    def __iter__(self) -> Iterator[Device]:
        return iter(list(self.devices))

    def __len__(self) -> int:
        return len(self.devices)

    def __contains__(self, device: Device) -> bool:
        return device in self.devices


# ---------------------------------------------------------------------------
#  Sense (EF) and flag (Q) wiring
# ---------------------------------------------------------------------------

class LineMap:
    """One device per single-bit CPU line (EF1-EF4 inputs or the Q output)."""

    def __init__(self, prefix: str, count: int):
        self.prefix = prefix
        self.count = count
        self._lines: list[Optional[Device]] = [None] * count

    def line_name(self, index: int) -> str:
        return f"{self.prefix}{index + 1}" if self.count > 1 else self.prefix

    def install(self, device: Device, index: int = 0):
        if not 0 <= index < self.count:
            raise DeviceError(f"no such line {self.prefix}{index}")
        if self._lines[index] is not None:
            raise PortConflictError(
                f"{self.line_name(index)} is already connected to {self._lines[index].name}")
        self._lines[index] = device

    def remove(self, device: Device):
        self._lines = [None if d is device else d for d in self._lines]

    def find(self, index: int) -> Optional[Device]:
        return self._lines[index]

    def index_of(self, device: Device) -> Optional[int]:
        for i, d in enumerate(self._lines):
            if d is device:
                return i
        return None

    def get_sense(self, index: int, default: int = 0) -> int:
        dev = self._lines[index]
        return default if dev is None else dev.get_sense(index, default) & 1

    def set_flag(self, index: int, bit: int):
        dev = self._lines[index]
        if dev is not None:
            dev.set_flag(index, bit & 1)


class SenseMap(LineMap):
    """EF1-EF4 inputs (indices 0-3)."""

    def __init__(self):
        super().__init__("EF", 4)


class FlagMap(LineMap):
    """The Q output (index 0)."""

    def __init__(self):
        super().__init__("Q", 1)


# ---------------------------------------------------------------------------
#  Interrupts
# ---------------------------------------------------------------------------

LEVEL_TRIGGERED = 0
EDGE_TRIGGERED  = 1
MAX_IRQ_DEVICES = 32


class SimpleInterrupt:
    """Single interrupt level; every device request is wire-OR'd.

    Level triggered: the CPU sees a request for as long as any device is
    asserting one.  Edge triggered: a new request latches, and the CPU's
    acknowledge cycle clears the latch.
    """

    def __init__(self, mode: int = LEVEL_TRIGGERED):
        self.mode = mode
        self._masks_used = 0
        self._requests = 0
        self._latched = False

    def allocate(self) -> int:
        for bit in range(MAX_IRQ_DEVICES):
            mask = 1 << bit
            if not self._masks_used & mask:
                self._masks_used |= mask
                return mask
        raise DeviceError("too many devices on one interrupt level")

    def release(self, mask: int):
        self.request(mask, False)
        self._masks_used &= ~mask

    @property
    def is_attached(self) -> bool:
        return self._masks_used != 0

    def request(self, mask: int, on: bool = True):
        if on:
            if not self._requests & mask:
                self._latched = True
            self._requests |= mask
        else:
            self._requests &= ~mask

    def is_requested(self, mask: int = 0) -> bool:
        if mask:
            return bool(self._requests & mask)
        if self.mode == EDGE_TRIGGERED:
            return self._latched
        return self._requests != 0

    def acknowledge(self):
        if self.mode == EDGE_TRIGGERED:
            self._latched = False

    def clear(self):
        self._requests = 0
        self._latched = False


class PriorityInterrupt:
    """Up to eight SimpleInterrupt levels; level 1 is the lowest priority."""

    MAX_LEVELS = 8

    def __init__(self, levels: int = MAX_LEVELS, mode: int = EDGE_TRIGGERED):
        if not 0 < levels <= self.MAX_LEVELS:
            raise ValueError(f"bad interrupt level count {levels}")
        self.levels = [SimpleInterrupt(mode) for _ in range(levels)]

    def level(self, n: int) -> SimpleInterrupt:
        return self.levels[n - 1]

    def get_requests(self) -> int:
        """Bit n-1 is set for every level n with a pending request."""
        vector = 0
        for i, lvl in enumerate(self.levels):
            if lvl.is_requested():
                vector |= 1 << i
        return vector

    def highest(self) -> int:
        """Highest requesting level, or 0 when nothing is pending."""
        return self.get_requests().bit_length()

    def is_requested(self) -> bool:
        return self.get_requests() != 0

    def acknowledge(self, n: int = 0):
        n = n or self.highest()
        if n:
            self.level(n).acknowledge()

    def clear(self):
        for lvl in self.levels:
            lvl.clear()


# ---------------------------------------------------------------------------
#  POST display and DIP switches
# ---------------------------------------------------------------------------

class PostDisplay(Device):
    """Two-digit hex LED latch written by firmware during power-on self test."""

    def __init__(self, port: int = 4):
        super().__init__("POST", "POST display", port, 1, DEV_OUTPUT)
        self.value: int = 0
        self.history: list[int] = []

    def reset(self):
        super().reset()
        self.value = 0

    def write(self, port: int, value: int):
        self.value = value & 0xFF
        self.history.append(self.value)
        del self.history[:-16]

    def show(self) -> str:
        return f"POST={self.value:02X}"


class Switches(Device):
    """Front-panel DIP switches, read back as one input byte."""

    def __init__(self, port: int = 4, value: int = 0):
        super().__init__("SWITCHES", "Toggle switches", port, 1, DEV_INPUT)
        self.value = value & 0xFF

    def read(self, port: int) -> int:
        return self.value

    def show(self) -> str:
        return f"SWITCHES={self.value:02X}"
