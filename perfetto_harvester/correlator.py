"""Context-switch correlation: who occupied a core during a window."""

from __future__ import annotations

from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field

from perfetto_harvester.errors import NoPriorState
from perfetto_harvester.models import ContextSwitch, EventFrame, EventThread, TraceProcess


def switches_by_core(switches: list[ContextSwitch]) -> dict[int, list[ContextSwitch]]:
    """
    Partition switches per core, each list sorted by timestamp.

    The sort is stable, so switches sharing a timestamp keep capture order.
    """
    per_core: dict[int, list[ContextSwitch]] = {}
    for sw in switches:
        per_core.setdefault(sw.core, []).append(sw)
    for core, items in per_core.items():
        per_core[core] = sorted(items, key=lambda sw: sw.timestamp)
    return per_core


@dataclass
class CoreCursor:
    """
    Carry-forward state for a single core.

    Holds the core's sorted switches and the most recent switch seen so far.
    Windows must be fed in ascending time order.
    """

    core: int
    switches: list[ContextSwitch] = field(default_factory=list)
    last: ContextSwitch | None = None

    def __post_init__(self):
        self._times = [sw.timestamp for sw in self.switches]

    @classmethod
    def primed(cls, core: int, switches: list[ContextSwitch], start: int) -> "CoreCursor":
        """Create a cursor whose state is the last switch strictly before start."""
        cursor = cls(core, switches)
        index = bisect_left(cursor._times, start)
        if index > 0:
            cursor.last = switches[index - 1]
        return cursor

    def window(self, window_start: int, window_end: int) -> list[ContextSwitch]:
        """Switches with window_start <= timestamp <= window_end, in order."""
        lo = bisect_left(self._times, window_start)
        hi = bisect_right(self._times, window_end)
        return self.switches[lo:hi]

    @property
    def cold(self) -> bool:
        return self.last is None


def correlate_window(
    cursor: CoreCursor,
    window_start: int,
    window_end: int,
    process: TraceProcess,
) -> EventFrame:
    """
    Build the occupancy part of the frame for one window on the cursor's core.

    Each switch charges its outgoing thread for the time since the previous
    boundary; the tail after the last switch goes to the incoming thread.
    A window without switches is charged entirely to the thread that was
    running as of the cursor's last switch.

    Raises:
        NoPriorState: the window is silent and the core has no history yet
    """
    interval = window_end - window_start
    frame = EventFrame(window_start, interval, cursor.core)
    switches = cursor.window(window_start, window_end)

    if not switches:
        if cursor.last is None:
            raise NoPriorState(cursor.core, window_start)
        last = cursor.last
        frame.increment(EventThread.from_trace(last.new_tid, last.new_pid, process), interval)
        return frame

    previous = window_start
    for sw in switches:
        elapsed = sw.timestamp - previous
        previous = sw.timestamp
        frame.increment(EventThread.from_trace(sw.old_tid, sw.old_pid, process), elapsed)

    last = switches[-1]
    frame.increment(
        EventThread.from_trace(last.new_tid, last.new_pid, process),
        window_end - previous,
    )
    cursor.last = last
    return frame
