"""Loaders that materialize a captured trace into TraceData."""

from __future__ import annotations

import csv
import json
from pathlib import Path

from perfetto.trace_processor import TraceProcessor

from perfetto_harvester.errors import TraceFormatError
from perfetto_harvester.models import (
    ContextSwitch,
    CounterSample,
    FaultEvent,
    FaultKind,
    ThreadState,
    TraceData,
    TraceProcess,
    TraceThread,
)

COUNTER_COLUMNS = [
    "ts",
    "cpu",
    "ipc",
    "l2_hits",
    "l2_misses",
    "l3_hits",
    "l3_misses",
    "l2_clock",
    "l3_clock",
]

# cpu_counter_track names for each CounterSample field
DEFAULT_COUNTER_TRACKS = {
    "ipc": "ipc",
    "l2_hits": "l2_hit",
    "l2_misses": "l2_miss",
    "l3_hits": "l3_hit",
    "l3_misses": "l3_miss",
    "l2_clock": "l2_clk",
    "l3_clock": "l3_clk",
}

DEFAULT_FAULT_EVENTS = {
    FaultKind.MINOR: "page_fault_user",
    FaultKind.MAJOR: "mm_filemap_fault",
}


def _sample_from_row(row: dict) -> CounterSample:
    return CounterSample(
        timestamp=int(row["ts"]),
        core=int(row["cpu"]),
        ipc=float(row.get("ipc") or 0.0),
        l2_hits=int(float(row.get("l2_hits") or 0)),
        l2_misses=int(float(row.get("l2_misses") or 0)),
        l3_hits=int(float(row.get("l3_hits") or 0)),
        l3_misses=int(float(row.get("l3_misses") or 0)),
        l2_clock=float(row.get("l2_clock") or 0.0),
        l3_clock=float(row.get("l3_clock") or 0.0),
    )


def load_counter_csv(path: str | Path) -> list[CounterSample]:
    """Read a per-core counter stream from CSV (see COUNTER_COLUMNS)."""
    with open(path, newline="") as f:
        reader = csv.DictReader(f)
        try:
            missing = {"ts", "cpu"} - set(reader.fieldnames or [])
            if missing:
                raise TraceFormatError(f"Counter CSV {path} lacks columns: {', '.join(sorted(missing))}")
            return [_sample_from_row(row) for row in reader]
        except (TypeError, ValueError) as exc:
            raise TraceFormatError(f"Bad counter row in {path}: {exc}") from exc


def _process_from_json(data: dict) -> TraceProcess:
    threads = tuple(
        TraceThread(
            tid=int(thread["tid"]),
            name=thread.get("name", ""),
            user=thread.get("user", data.get("user", "unknown")),
            uid=int(thread.get("uid", data.get("uid", -1))),
        )
        for thread in data.get("threads", [])
    )
    return TraceProcess(
        pid=int(data["pid"]),
        name=data["name"],
        start_time=int(data["start_ns"]),
        end_time=int(data["end_ns"]),
        user=data.get("user", "unknown"),
        uid=int(data.get("uid", -1)),
        threads=threads,
    )


def parse_json_trace(data: dict) -> TraceData:
    """Build TraceData from a decoded JSON capture."""
    try:
        processes = [_process_from_json(item) for item in data.get("processes", [])]
        switches = [
            ContextSwitch(
                timestamp=int(item["ts"]),
                core=int(item["cpu"]),
                old_tid=int(item["old_tid"]),
                old_pid=int(item["old_pid"]),
                new_tid=int(item["new_tid"]),
                new_pid=int(item["new_pid"]),
                state=ThreadState(item.get("state", "other")),
            )
            for item in data.get("switches", [])
        ]
        faults = [
            FaultEvent(
                timestamp=int(item["ts"]),
                core=int(item["cpu"]),
                pid=int(item["pid"]),
                tid=int(item.get("tid", 0)),
                kind=FaultKind(item["kind"]),
            )
            for item in data.get("faults", [])
        ]
        counters = [_sample_from_row(item) for item in data.get("counters", [])]
    except (KeyError, TypeError, ValueError) as exc:
        raise TraceFormatError(f"Malformed trace record: {exc}") from exc

    cores = data.get("core_count")
    return TraceData(
        processes=processes,
        switches=switches,
        faults=faults,
        counters=counters,
        cores=int(cores) if cores is not None else None,
    )


def load_json_trace(path: str | Path) -> TraceData:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise TraceFormatError(f"{path} is not a JSON capture: {exc}") from exc
    if not isinstance(data, dict):
        raise TraceFormatError(f"{path} does not contain a JSON object")
    return parse_json_trace(data)


def _q(tp: TraceProcessor, sql: str) -> list[dict]:
    """Execute a SQL query and return results as a list of dictionaries."""
    result = tp.query(sql)
    rows = []
    for row in result:
        row_dict = {col: getattr(row, col) for col in result.column_names}
        rows.append(row_dict)
    return rows


def _safe_q(tp: TraceProcessor, sql: str, assumption_key: str, assumptions: dict | None) -> list[dict]:
    """Execute a SQL query, returning [] on failure and recording the reason."""
    try:
        return _q(tp, sql)
    except Exception as exc:
        if assumptions is not None and assumption_key not in assumptions:
            assumptions[assumption_key] = f"Query failed for {assumption_key}: {str(exc)}"
        return []


def _sql_list(values) -> str:
    return ", ".join("'" + str(value).replace("'", "''") + "'" for value in values)


class PerfettoTraceSource:
    """Reads processes, scheduler events and cpu counters from a Perfetto trace."""

    def __init__(
        self,
        trace_path: str,
        counter_tracks: dict[str, str] | None = None,
        fault_events: dict[FaultKind, str] | None = None,
        tp: TraceProcessor | None = None,
    ):
        """
        Args:
            trace_path: Path to the Perfetto trace file
            counter_tracks: CounterSample field -> cpu_counter_track name
            fault_events: fault kind -> ftrace event name
            tp: An already opened trace processor to read from
        """
        self.trace_path = trace_path
        self.counter_tracks = counter_tracks or DEFAULT_COUNTER_TRACKS
        self.fault_events = fault_events or DEFAULT_FAULT_EVENTS
        self.tp = tp if tp is not None else TraceProcessor(trace=trace_path)

    def close(self):
        self.tp.close()

    def get_processes(self, assumptions: dict) -> list[TraceProcess]:
        """
        Get processes with their threads.

        Missing start/end timestamps fall back to the trace bounds.
        """
        bounds = _safe_q(
            self.tp,
            "SELECT start_ts, end_ts FROM trace_bounds",
            "trace_bounds",
            assumptions
        )
        trace_start = bounds[0].get("start_ts") or 0 if bounds else 0
        trace_end = bounds[0].get("end_ts") or 0 if bounds else 0

        process_rows = _safe_q(
            self.tp,
            """
            SELECT upid, pid, name, start_ts, end_ts, uid
            FROM process
            WHERE pid IS NOT NULL AND name IS NOT NULL
            ORDER BY upid
            """,
            "processes",
            assumptions
        )
        thread_rows = _safe_q(
            self.tp,
            """
            SELECT upid, tid, name
            FROM thread
            WHERE upid IS NOT NULL AND tid IS NOT NULL
            """,
            "threads",
            assumptions
        )

        threads_by_upid: dict[int, list[dict]] = {}
        for row in thread_rows:
            threads_by_upid.setdefault(row["upid"], []).append(row)

        processes = []
        for row in process_rows:
            uid = row.get("uid")
            user = str(uid) if uid is not None else "unknown"
            uid = int(uid) if uid is not None else -1
            processes.append(
                TraceProcess(
                    pid=row["pid"],
                    name=row["name"],
                    start_time=row.get("start_ts") or trace_start,
                    end_time=row.get("end_ts") or trace_end,
                    user=user,
                    uid=uid,
                    threads=tuple(
                        TraceThread(tid=t["tid"], name=t.get("name") or "", user=user, uid=uid)
                        for t in threads_by_upid.get(row["upid"], [])
                    ),
                )
            )
        return processes

    def get_switches(self, assumptions: dict) -> list[ContextSwitch]:
        """
        Derive context switches from consecutive sched slices on each cpu.

        The switch at a slice's start moves the cpu from the previous slice's
        thread to this one; the outgoing thread ends in the previous slice's
        end_state. The first slice of each cpu switches away from tid 0.
        """
        rows = _safe_q(
            self.tp,
            """
            SELECT
                s.ts AS ts,
                s.cpu AS cpu,
                t.tid AS tid,
                COALESCE(p.pid, 0) AS pid,
                LAG(t.tid) OVER (PARTITION BY s.cpu ORDER BY s.ts) AS prev_tid,
                LAG(COALESCE(p.pid, 0)) OVER (PARTITION BY s.cpu ORDER BY s.ts) AS prev_pid,
                LAG(s.end_state) OVER (PARTITION BY s.cpu ORDER BY s.ts) AS prev_end_state
            FROM sched s
            JOIN thread t USING (utid)
            LEFT JOIN process p USING (upid)
            ORDER BY s.cpu, s.ts
            """,
            "switches",
            assumptions
        )
        return [switch_from_sched_row(row) for row in rows]

    def get_faults(self, assumptions: dict) -> list[FaultEvent]:
        kinds_by_name = {name: kind for kind, name in self.fault_events.items()}
        rows = _safe_q(
            self.tp,
            f"""
            SELECT e.ts AS ts, e.cpu AS cpu, e.name AS name,
                   COALESCE(t.tid, 0) AS tid, COALESCE(p.pid, 0) AS pid
            FROM ftrace_event e
            LEFT JOIN thread t USING (utid)
            LEFT JOIN process p USING (upid)
            WHERE e.name IN ({_sql_list(kinds_by_name)})
            """,
            "faults",
            assumptions
        )
        return [
            FaultEvent(
                timestamp=row["ts"],
                core=row["cpu"],
                pid=row["pid"],
                tid=row["tid"],
                kind=kinds_by_name[row["name"]],
            )
            for row in rows
        ]

    def get_counters(self, assumptions: dict) -> list[CounterSample]:
        """Pivot cpu counter tracks into one CounterSample per (ts, cpu)."""
        fields_by_track = {track: name for name, track in self.counter_tracks.items()}
        rows = _safe_q(
            self.tp,
            f"""
            SELECT c.ts AS ts, t.cpu AS cpu, t.name AS name, c.value AS value
            FROM counter c
            JOIN cpu_counter_track t ON c.track_id = t.id
            WHERE t.name IN ({_sql_list(fields_by_track)})
            ORDER BY c.ts, t.cpu
            """,
            "counters",
            assumptions
        )
        return pivot_counter_rows(rows, fields_by_track)

    def load(self, assumptions: dict) -> TraceData:
        return TraceData(
            processes=self.get_processes(assumptions),
            switches=self.get_switches(assumptions),
            faults=self.get_faults(assumptions),
            counters=self.get_counters(assumptions),
        )


def switch_from_sched_row(row: dict) -> ContextSwitch:
    return ContextSwitch(
        timestamp=row["ts"],
        core=row["cpu"],
        old_tid=row.get("prev_tid") or 0,
        old_pid=row.get("prev_pid") or 0,
        new_tid=row["tid"],
        new_pid=row["pid"],
        state=ThreadState.from_end_state(row.get("prev_end_state")),
    )


def pivot_counter_rows(rows: list[dict], fields_by_track: dict[str, str]) -> list[CounterSample]:
    samples: dict[tuple[int, int], dict] = {}
    for row in rows:
        field_name = fields_by_track.get(row["name"])
        if field_name is None:
            continue
        sample = samples.setdefault((row["ts"], row["cpu"]), {"ts": row["ts"], "cpu": row["cpu"]})
        sample[field_name] = row["value"]
    return [_sample_from_row(sample) for sample in samples.values()]


def load_trace(
    trace_path: str | Path,
    counters_path: str | Path | None = None,
    assumptions: dict | None = None,
) -> TraceData:
    """
    Load a capture: JSON files directly, anything else through Perfetto.

    A counter CSV, when given, replaces the counters found in the trace.
    """
    if assumptions is None:
        assumptions = {}
    path = Path(trace_path)
    if path.suffix.lower() == ".json":
        trace = load_json_trace(path)
    else:
        try:
            source = PerfettoTraceSource(str(path))
        except Exception as exc:
            raise TraceFormatError(f"{path} could not be loaded as a Perfetto trace: {exc}") from exc
        try:
            trace = source.load(assumptions)
        finally:
            source.close()

    if counters_path is not None:
        trace.counters = load_counter_csv(counters_path)
    return trace
