"""Frame grid: the analysis window split into fixed intervals per core."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterator

from perfetto_harvester.config import NS_PER_MS
from perfetto_harvester.correlator import CoreCursor, correlate_window, switches_by_core
from perfetto_harvester.counters import CounterIndex
from perfetto_harvester.errors import ConfigError, EmptyWindow, NoPriorState, ProcessNotFound
from perfetto_harvester.models import (
    UNKNOWN_THREAD,
    CounterSample,
    EventFrame,
    TraceData,
    TraceProcess,
)

logger = logging.getLogger(__name__)


def resolve_process(trace: TraceData, prefix: str) -> TraceProcess:
    """Return the first process whose name starts with prefix."""
    for process in trace.processes:
        if process.name.startswith(prefix):
            return process
    raise ProcessNotFound(prefix)


def resolve_window(process: TraceProcess, counters: list[CounterSample]) -> tuple[int, int]:
    """
    Intersect the process lifetime with the counter stream coverage.

    Returns:
        Tuple of (start, end) in nanoseconds
    """
    if not counters:
        raise EmptyWindow("Counter stream is empty")
    first = min(sample.timestamp for sample in counters)
    last = max(sample.timestamp for sample in counters)
    start = max(process.start_time, first)
    end = min(process.end_time, last)
    if end <= start:
        raise EmptyWindow(
            f"Process '{process.name}' [{process.start_time}, {process.end_time}] "
            f"does not overlap counters [{first}, {last}]"
        )
    return start, end


def window_count(start: int, end: int, interval: int) -> int:
    return -(-(end - start) // interval)


class FrameStore:
    """
    Frames of one analysis run, ordered by (window, core).

    Built once by build_frames and not mutated afterwards.
    """

    def __init__(
        self,
        process: TraceProcess,
        start: int,
        end: int,
        interval: int,
        core_count: int,
        frames: list[EventFrame],
        cold_windows: dict[int, int] | None = None,
    ):
        self.process = process
        self.start = start
        self.end = end
        self.interval = interval
        self.core_count = core_count
        self._frames = tuple(frames)
        self.cold_windows = dict(cold_windows or {})

    @property
    def window_count(self) -> int:
        return window_count(self.start, self.end, self.interval)

    def frame(self, window: int, core: int) -> EventFrame:
        if not 0 <= core < self.core_count:
            raise IndexError(f"core {core} out of range")
        return self._frames[window * self.core_count + core]

    def __iter__(self) -> Iterator[EventFrame]:
        return iter(self._frames)

    def __len__(self) -> int:
        return len(self._frames)


def _build_core(
    core: int,
    cursor: CoreCursor,
    counters: CounterIndex,
    process: TraceProcess,
    start: int,
    interval: int,
    count: int,
) -> tuple[list[EventFrame], int]:
    """Walk one core's windows in ascending order. Returns (frames, cold windows)."""
    frames = []
    cold = 0
    for index in range(count):
        window_start = start + index * interval
        window_end = window_start + interval
        try:
            frame = correlate_window(cursor, window_start, window_end, process)
        except NoPriorState as exc:
            if cold == 0:
                logger.warning("%s; using the unknown thread until a switch appears", exc)
            cold += 1
            frame = EventFrame(window_start, interval, core)
            frame.increment(UNKNOWN_THREAD, interval)
        frame.counters = counters.aggregate(core, window_start, window_end)
        frames.append(frame)
    return frames, cold


def build_frames(
    trace: TraceData,
    process_name_prefix: str,
    interval_ms: int,
    workers: int = 1,
) -> FrameStore:
    """
    Assemble the frame grid for the monitored process.

    Every core owns its carry-forward cursor, so cores are independent and
    may run on a thread pool; frames come back ordered by (window, core).

    Args:
        trace: Materialized trace data
        process_name_prefix: Prefix of the process to monitor
        interval_ms: Frame width in milliseconds
        workers: Number of threads used to process cores

    Raises:
        ProcessNotFound: no process matches the prefix
        EmptyWindow: the process and the counter stream do not overlap
    """
    if interval_ms <= 0:
        raise ConfigError(f"interval_ms must be positive, got {interval_ms}")

    process = resolve_process(trace, process_name_prefix)
    start, end = resolve_window(process, trace.counters)
    interval = interval_ms * NS_PER_MS
    count = window_count(start, end, interval)
    core_count = trace.core_count

    logger.info(
        "Analyzing %s process (pid=%s) with %d threads",
        process.name, process.pid, len(process.threads),
    )
    logger.info("Duration = %.3fms, #cores = %d", (end - start) / NS_PER_MS, core_count)
    logger.info("Creating %d frames of %dms per core", count, interval_ms)

    per_core_switches = switches_by_core(trace.switches)
    counters = CounterIndex(trace.counters, trace.faults, process.pid)
    cursors = {
        core: CoreCursor.primed(core, per_core_switches.get(core, []), start)
        for core in range(core_count)
    }

    def run(core: int) -> tuple[list[EventFrame], int]:
        return _build_core(core, cursors[core], counters, process, start, interval, count)

    if workers > 1 and core_count > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(run, range(core_count)))
    else:
        results = [run(core) for core in range(core_count)]

    frames = [results[core][0][index] for index in range(count) for core in range(core_count)]
    cold_windows = {core: cold for core, (_, cold) in enumerate(results) if cold}
    return FrameStore(process, start, end, interval, core_count, frames, cold_windows)
