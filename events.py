"""
Simulated Time & Event Queue
=============================
A single monotonically increasing nanosecond clock plus a min-heap of
pending device callbacks.

Every pending event is keyed by (device, param).  Scheduling an event
with a key that is already pending replaces it, so a device never has
more than one outstanding event of the same kind.  Events with equal
deadlines fire in the order they were scheduled.

The CPU drives the queue: after each instruction it calls
``advance_to(now + instruction_ns)`` and every event whose deadline has
been reached is dispatched to ``device.on_event(param)``.
"""

from __future__ import annotations
import heapq
import itertools
from typing import Any, Optional

# ---------------------------------------------------------------------------
#  Time conversions (all simulated time is in nanoseconds)
# ---------------------------------------------------------------------------

NS_PER_SECOND = 1_000_000_000


def hz_to_ns(hz: int) -> int:
    """Period of a frequency in Hz, in nanoseconds (0 for 0 Hz)."""
    return NS_PER_SECOND // hz if hz else 0


def ns_to_hz(ns: int) -> int:
    return NS_PER_SECOND // ns if ns else 0


# Characters per second behave exactly like Hz.
cps_to_ns = hz_to_ns
ns_to_cps = ns_to_hz


def us_to_ns(us: int) -> int:
    return us * 1_000


def ns_to_us(ns: int) -> int:
    return ns // 1_000


def ms_to_ns(ms: int) -> int:
    return ms * 1_000_000


def ns_to_ms(ns: int) -> int:
    return ns // 1_000_000


def cycle_ns(crystal_hz: int, clocks_per_cycle: int) -> int:
    """Duration of one CPU machine cycle."""
    return (NS_PER_SECOND * clocks_per_cycle) // crystal_hz


class EventError(ValueError):
    """Raised for invalid scheduling requests."""
    pass


# ---------------------------------------------------------------------------
#  Event queue
# ---------------------------------------------------------------------------

class EventQueue:
    """Discrete-event scheduler driven by simulated CPU time."""

    def __init__(self):
        self._now: int = 0
        self._heap: list[tuple[int, int, Any, int]] = []
        self._pending: dict[tuple[Any, int], int] = {}   # key -> live seq
        self._seq = itertools.count()
        self._dispatching = False

    # -- Clock --

    @property
    def now(self) -> int:
        return self._now

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # -- Scheduling --

    def schedule(self, device, param: int, delay_ns: int):
        """Schedule ``device.on_event(param)`` ``delay_ns`` from now.

        Any event already pending for the same (device, param) is
        cancelled first.
        """
        if delay_ns <= 0:
            raise EventError(f"event delay must be positive, got {delay_ns}")
        seq = next(self._seq)
        self._pending[(device, param)] = seq
        heapq.heappush(self._heap, (self._now + delay_ns, seq, device, param))

    def cancel(self, device, param: int):
        # Stale heap entries are skipped when popped.
        self._pending.pop((device, param), None)

    def cancel_all(self, device):
        """Cancel every pending event owned by ``device``."""
        for key in [k for k in self._pending if k[0] is device]:
            del self._pending[key]

    def is_pending(self, device, param: int) -> bool:
        return (device, param) in self._pending

    def pending_params(self, device) -> list[int]:
        """Params of every live event owned by ``device``, sorted."""
        return sorted(p for d, p in self._pending if d is device)

    def deadline(self, device, param: int) -> Optional[int]:
        """Absolute deadline of a pending event, or None."""
        seq = self._pending.get((device, param))
        if seq is None:
            return None
        for when, s, _, _ in self._heap:
            if s == seq:
                return when
        return None

    def next_deadline(self) -> Optional[int]:
        self._discard_stale()
        return self._heap[0][0] if self._heap else None

    def _discard_stale(self):
        heap = self._heap
        while heap:
            _, seq, device, param = heap[0]
            if self._pending.get((device, param)) == seq:
                return
            heapq.heappop(heap)

    # -- Dispatch --

    def advance_to(self, t: int):
        """Fire every event with deadline <= t, then set now = t."""
        if self._dispatching:
            raise EventError("advance_to() called from inside an event handler")
        if t < self._now:
            t = self._now
        self._dispatching = True
        try:
            heap = self._heap
            while heap and heap[0][0] <= t:
                when, seq, device, param = heapq.heappop(heap)
                key = (device, param)
                if self._pending.get(key) != seq:
                    continue
                del self._pending[key]
                self._now = when
                device.on_event(param)
            self._now = t
        finally:
            self._dispatching = False

    def advance(self, delta_ns: int):
        self.advance_to(self._now + delta_ns)

    def reset(self):
        """Drop every event and return the clock to zero."""
        self._heap.clear()
        self._pending.clear()
        self._now = 0

    def show(self) -> str:
        lines = [f"Simulated time {self._now}ns, {len(self._pending)} events pending"]
        live = sorted(e for e in self._heap
                      if self._pending.get((e[2], e[3])) == e[1])
        for when, _, device, param in live:
            name = getattr(device, "name", type(device).__name__)
            lines.append(f"  +{when - self._now:>12d}ns  {name:<8s} param={param}")
        return "\n".join(lines)
