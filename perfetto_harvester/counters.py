"""Hardware counter and page fault aggregation per (window, core)."""

from __future__ import annotations

from bisect import bisect_left, bisect_right

from perfetto_harvester.models import Counters, CounterSample, FaultEvent, FaultKind


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class _TimeIndex:
    """Items of one core sorted by timestamp, sliced with inclusive bounds."""

    def __init__(self, items: list):
        self.items = sorted(items, key=lambda item: item.timestamp)
        self.times = [item.timestamp for item in self.items]

    def between(self, start: int, end: int) -> list:
        lo = bisect_left(self.times, start)
        hi = bisect_right(self.times, end)
        return self.items[lo:hi]


class CounterIndex:
    """
    Counter samples and page faults of the monitored process, indexed per core.

    Samples on a window boundary belong to both adjacent windows.
    """

    def __init__(self, samples: list[CounterSample], faults: list[FaultEvent], pid: int):
        self.pid = pid
        by_core: dict[int, list[CounterSample]] = {}
        for sample in samples:
            by_core.setdefault(sample.core, []).append(sample)
        self._samples = {core: _TimeIndex(items) for core, items in by_core.items()}

        faults_by_core: dict[tuple[int, FaultKind], list[FaultEvent]] = {}
        for fault in faults:
            if fault.pid != pid:
                continue
            faults_by_core.setdefault((fault.core, fault.kind), []).append(fault)
        self._faults = {key: _TimeIndex(items) for key, items in faults_by_core.items()}

    def samples(self, core: int, start: int, end: int) -> list[CounterSample]:
        index = self._samples.get(core)
        return index.between(start, end) if index else []

    def fault_count(self, core: int, kind: FaultKind, start: int, end: int) -> int:
        index = self._faults.get((core, kind))
        return len(index.between(start, end)) if index else 0

    def aggregate(self, core: int, start: int, end: int) -> Counters:
        """Reduce the samples and faults of one cell into a Counters record."""
        counters = Counters(
            minor_page_faults=self.fault_count(core, FaultKind.MINOR, start, end),
            major_page_faults=self.fault_count(core, FaultKind.MAJOR, start, end),
        )

        hardware = self.samples(core, start, end)
        if not hardware:
            return counters

        counters.samples = len(hardware)
        counters.ipc = _mean([sample.ipc for sample in hardware])
        counters.l2_hits = sum(sample.l2_hits for sample in hardware)
        counters.l2_misses = sum(sample.l2_misses for sample in hardware)
        # l3 totals are read from the l2 counters
        counters.l3_hits = counters.l2_hits
        counters.l3_misses = counters.l2_misses
        counters.l2_clock = _mean([sample.l2_clock for sample in hardware])
        counters.l3_clock = _mean([sample.l3_clock for sample in hardware])
        return counters
