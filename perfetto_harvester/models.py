"""Data model for trace correlation: inputs, resolved identities and frames."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ThreadState(str, Enum):
    """State a thread is left in by a context switch."""

    RUNNING = "running"
    WAITING = "waiting"
    OTHER = "other"

    @classmethod
    def from_end_state(cls, end_state: str | None) -> "ThreadState":
        """Map a Linux scheduler end state (R, R+, S, D, ...) to a ThreadState."""
        if not end_state:
            return cls.OTHER
        if end_state in ("R", "R+"):
            return cls.RUNNING
        if end_state in ("S", "D"):
            return cls.WAITING
        return cls.OTHER


class FaultKind(str, Enum):
    MINOR = "minor"
    MAJOR = "major"


@dataclass(frozen=True)
class ContextSwitch:
    timestamp: int
    core: int
    old_tid: int
    old_pid: int
    new_tid: int
    new_pid: int
    state: ThreadState = ThreadState.OTHER


@dataclass(frozen=True)
class CounterSample:
    timestamp: int
    core: int
    ipc: float = 0.0
    l2_hits: int = 0
    l2_misses: int = 0
    l3_hits: int = 0
    l3_misses: int = 0
    l2_clock: float = 0.0
    l3_clock: float = 0.0


@dataclass(frozen=True)
class FaultEvent:
    timestamp: int
    core: int
    pid: int
    tid: int
    kind: FaultKind


@dataclass(frozen=True)
class TraceThread:
    tid: int
    name: str = ""
    user: str = "unknown"
    uid: int = -1


@dataclass(frozen=True)
class TraceProcess:
    pid: int
    name: str
    start_time: int
    end_time: int
    user: str = "unknown"
    uid: int = -1
    threads: tuple[TraceThread, ...] = ()

    def find_thread(self, tid: int) -> TraceThread | None:
        for thread in self.threads:
            if thread.tid == tid:
                return thread
        return None


@dataclass
class TraceData:
    """
    A captured trace, already materialized in memory.

    Records are kept in capture order; consumers sort them where order matters.
    """

    processes: list[TraceProcess] = field(default_factory=list)
    switches: list[ContextSwitch] = field(default_factory=list)
    faults: list[FaultEvent] = field(default_factory=list)
    counters: list[CounterSample] = field(default_factory=list)
    cores: int | None = None

    @property
    def core_count(self) -> int:
        if self.cores is not None:
            return self.cores
        seen = [sample.core for sample in self.counters]
        seen.extend(sw.core for sw in self.switches)
        return max(seen) + 1 if seen else 0


@dataclass(frozen=True)
class EventThread:
    """Resolved identity of a thread that occupied a core."""

    tid: int
    pid: int
    process_name: str
    user: str
    uid: int

    @classmethod
    def from_trace(cls, tid: int, pid: int, process: TraceProcess) -> "EventThread":
        """
        Resolve a (tid, pid) pair against the monitored process's thread table.

        Pairs that do not belong to the process still get an identity carrying
        the raw ids, so their time is never dropped.
        """
        if pid == process.pid:
            thread = process.find_thread(tid)
            if thread is not None:
                return cls(tid, pid, process.name, thread.user, thread.uid)
        return cls(tid, pid, "unknown", "unknown", -1)

    @property
    def resolved(self) -> bool:
        return self.process_name not in ("unknown", "system")


UNKNOWN_THREAD = EventThread(-1, -1, "unknown", "unknown", -1)
SYSTEM_THREAD = EventThread(0, 0, "system", "root", 0)


@dataclass
class Counters:
    ipc: float = 0.0
    l2_hits: int = 0
    l2_misses: int = 0
    l3_hits: int = 0
    l3_misses: int = 0
    l2_clock: float = 0.0
    l3_clock: float = 0.0
    minor_page_faults: int = 0
    major_page_faults: int = 0
    samples: int = 0

    @property
    def l1_misses(self) -> int:
        return self.l2_hits + self.l2_misses

    @property
    def l2_perf(self) -> float:
        accesses = self.l2_hits + self.l2_misses
        return self.l2_hits / accesses if accesses else 0.0

    @property
    def l3_perf(self) -> float:
        accesses = self.l3_hits + self.l3_misses
        return self.l3_hits / accesses if accesses else 0.0


@dataclass
class EventFrame:
    """Occupancy and hardware summary of one (time window, core) cell."""

    start_time: int
    interval: int
    core: int
    occupancy: dict[EventThread, int] = field(default_factory=dict)
    counters: Counters = field(default_factory=Counters)

    def increment(self, thread: EventThread, elapsed: int) -> None:
        self.occupancy[thread] = self.occupancy.get(thread, 0) + elapsed

    @property
    def total(self) -> int:
        return sum(self.occupancy.values())

    @property
    def end_time(self) -> int:
        return self.start_time + self.interval

    def fraction(self, thread: EventThread) -> float:
        return self.occupancy.get(thread, 0) / self.interval
