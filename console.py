"""
Virtual Console
================
The byte-stream terminal every serial device talks to.

  raw_read(count, timeout_ms)  -> bytes     (empty when nothing arrives)
  raw_write(data)                           (7-bit clean output)
  is_console_break(timeout_ms) -> bool      (user pressed the break key)

The break key (default ^E) never reaches the emulated program.  While
looking for it ``is_console_break`` moves any other keys it sees into a
type-ahead buffer, and ``raw_read`` serves that buffer first, so no
keystroke is ever lost.

HostConsole puts the host terminal into raw mode (termios / tty) for as
long as the emulation runs and polls stdin with select.  BufferConsole keeps everything in memory; it
is what the tests and piped runs use.
"""

from __future__ import annotations
import os
import sys
from collections import deque
from typing import Optional

CONSOLE_BREAK = 0x05    # ^E


class VirtualConsole:
    """Console contract with break-key detection and type-ahead."""

    def __init__(self, break_char: int = CONSOLE_BREAK):
        self._break_char = break_char & 0xFF
        self._type_ahead: deque[int] = deque()
        self._break_seen = False

    # -- Break character --

    @property
    def console_break(self) -> int:
        return self._break_char

    @console_break.setter
    def console_break(self, ch: int):
        self._break_char = ch & 0xFF

    def set_console_break(self, ch: int):
        self.console_break = ch

    def get_console_break(self) -> int:
        return self._break_char

    # -- Host side, implemented by subclasses --

    def _read_key(self, timeout_ms: int) -> Optional[int]:
        """Return one key from the host, or None after ``timeout_ms``."""
        return None

    def _write(self, data: bytes):
        pass

    # -- Contract --

    def _next_key(self, timeout_ms: int) -> Optional[int]:
        # Break keys are swallowed here and only latched.
        while True:
            key = self._read_key(timeout_ms)
            if key is None:
                return None
            if key == self._break_char:
                self._break_seen = True
                timeout_ms = 0
                continue
            return key

    def is_console_break(self, timeout_ms: int = 0) -> bool:
        while True:
            key = self._next_key(timeout_ms)
            if key is None:
                break
            self._type_ahead.append(key)
            timeout_ms = 0
        seen, self._break_seen = self._break_seen, False
        return seen

    def raw_read(self, count: int = 1, timeout_ms: int = 0) -> bytes:
        out = bytearray()
        while len(out) < count and self._type_ahead:
            out.append(self._type_ahead.popleft())
        while len(out) < count:
            key = self._next_key(timeout_ms if not out else 0)
            if key is None:
                break
            out.append(key)
        return bytes(out)

    def raw_write(self, data: bytes):
        if any(b == 0 or b & 0x80 for b in data):
            data = bytes(b & 0x7F for b in data if b & 0x7F)
        if data:
            self._write(data)

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


# ---------------------------------------------------------------------------
#  In-memory console
# ---------------------------------------------------------------------------

class BufferConsole(VirtualConsole):
    """Console whose keyboard is a queue and whose screen is a bytearray."""

    def __init__(self, break_char: int = CONSOLE_BREAK):
        super().__init__(break_char)
        self.keys: deque[int] = deque()
        self.output = bytearray()

    def type_ahead(self, data: bytes | str):
        """Queue keystrokes as if the user had typed them."""
        if isinstance(data, str):
            data = data.encode("latin-1")
        self.keys.extend(data)

    def _read_key(self, timeout_ms: int) -> Optional[int]:
        return self.keys.popleft() if self.keys else None

    def _write(self, data: bytes):
        self.output.extend(data)

    def take_output(self) -> bytes:
        data = bytes(self.output)
        self.output.clear()
        return data


# ---------------------------------------------------------------------------
#  Host terminal
# ---------------------------------------------------------------------------

class HostConsole(VirtualConsole):
    """POSIX terminal, put in raw mode while the emulation runs.

    On a pipe there is no raw mode and reads are plain.
    """

    def __init__(self, break_char: int = CONSOLE_BREAK,
                 in_fd: Optional[int] = None, out_fd: Optional[int] = None):
        super().__init__(break_char)
        self.in_fd = sys.stdin.fileno() if in_fd is None else in_fd
        self.out_fd = sys.stdout.fileno() if out_fd is None else out_fd
        self.eof = False
        self._saved = None

    @property
    def is_tty(self) -> bool:
        return os.isatty(self.in_fd)

    @property
    def is_raw(self) -> bool:
        return self._saved is not None

    def enter_raw(self):
        if self._saved is None and self.is_tty:
            import termios, tty
            self._saved = termios.tcgetattr(self.in_fd)
            tty.setraw(self.in_fd)

    def leave_raw(self):
        if self._saved is not None:
            import termios
            termios.tcsetattr(self.in_fd, termios.TCSADRAIN, self._saved)
            self._saved = None

    def _read_key(self, timeout_ms: int) -> Optional[int]:
        import select
        if self.eof:
            return None
        if not select.select([self.in_fd], [], [], timeout_ms / 1000.0)[0]:
            return None
        ch = os.read(self.in_fd, 1)
        if not ch:
            self.eof = True
            return None
        return ch[0]

    def _write(self, data: bytes):
        os.write(self.out_fd, data)

    def close(self):
        self.leave_raw()
