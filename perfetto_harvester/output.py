"""Flat (kind, subject, time, value) entries derived from a frame store."""

from __future__ import annotations

from typing import NamedTuple

from perfetto_harvester.frames import FrameStore
from perfetto_harvester.models import SYSTEM_THREAD, EventFrame, EventThread

OCCUPANCY_KIND = "time"
THREAD_COUNTER_KINDS = ("ipc", "l2perf", "l3perf")
SYSTEM_COUNTER_KINDS = (
    "ipc",
    "l1miss",
    "l2hit",
    "l2miss",
    "l3hit",
    "l3miss",
    "l2clk",
    "l3clk",
    "l2perf",
    "l3perf",
    "pfminor",
    "pfmajor",
)


class EventEntry(NamedTuple):
    kind: str
    process_name: str
    user: str
    time: int
    value: float
    tid: int
    pid: int
    core: int
    uid: int


class EventOutput(list):
    """Entries of one analysis, in frame order."""

    def __init__(self, process_name: str = "", entries=()):
        super().__init__(entries)
        self.process_name = process_name

    def add(self, kind: str, frame: EventFrame, thread: EventThread, value: float) -> None:
        self.append(
            EventEntry(
                kind,
                thread.process_name,
                thread.user,
                frame.start_time,
                float(value),
                thread.tid,
                thread.pid,
                frame.core,
                thread.uid,
            )
        )

    def add_system(self, kind: str, frame: EventFrame, value: float) -> None:
        self.add(kind, frame, SYSTEM_THREAD, value)


def counter_values(frame: EventFrame) -> dict[str, float]:
    c = frame.counters
    return {
        "ipc": c.ipc,
        "l1miss": c.l1_misses,
        "l2hit": c.l2_hits,
        "l2miss": c.l2_misses,
        "l3hit": c.l3_hits,
        "l3miss": c.l3_misses,
        "l2clk": c.l2_clock,
        "l3clk": c.l3_clock,
        "l2perf": c.l2_perf,
        "l3perf": c.l3_perf,
        "pfminor": c.minor_page_faults,
        "pfmajor": c.major_page_faults,
    }


def flatten_frames(store: FrameStore) -> EventOutput:
    """
    Turn frames into entries.

    For every frame: one occupancy entry (fraction of the interval) and the
    thread-attributed counter entries per thread that ran, then one system
    entry per counter kind for the core.
    """
    output = EventOutput(store.process.name)
    for frame in store:
        values = counter_values(frame)
        for thread, elapsed in frame.occupancy.items():
            if elapsed <= 0:
                continue
            output.add(OCCUPANCY_KIND, frame, thread, elapsed / frame.interval)
            for kind in THREAD_COUNTER_KINDS:
                output.add(kind, frame, thread, values[kind])
        for kind in SYSTEM_COUNTER_KINDS:
            output.add_system(kind, frame, values[kind])
    return output


def regroup_occupancy(
    entries: list[EventEntry], start: int, interval: int
) -> dict[tuple[int, int], dict[tuple[int, int], float]]:
    """
    Group occupancy entries back into cells.

    Returns:
        Mapping of (core, window index) to {(tid, pid): fraction}
    """
    cells: dict[tuple[int, int], dict[tuple[int, int], float]] = {}
    for entry in entries:
        if entry.kind != OCCUPANCY_KIND:
            continue
        key = (entry.core, (entry.time - start) // interval)
        cell = cells.setdefault(key, {})
        subject = (entry.tid, entry.pid)
        cell[subject] = cell.get(subject, 0.0) + entry.value
    return cells
