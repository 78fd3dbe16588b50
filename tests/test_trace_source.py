import json
import os
import tempfile
import unittest
from types import SimpleNamespace

from perfetto_harvester.errors import TraceFormatError
from perfetto_harvester.models import FaultKind, ThreadState
from perfetto_harvester.trace_source import (
    load_counter_csv,
    load_json_trace,
    load_trace,
    parse_json_trace,
    PerfettoTraceSource,
    pivot_counter_rows,
    switch_from_sched_row,
)

from sample_trace import APP_PID, MS, json_capture


class TestJsonCapture(unittest.TestCase):
    def test_parse(self):
        trace = parse_json_trace(json_capture())
        self.assertEqual(trace.core_count, 2)
        process = trace.processes[0]
        self.assertEqual(process.name, "app.exe")
        self.assertEqual(process.end_time, 1000 * MS)
        self.assertEqual(process.find_thread(102).name, "worker")
        self.assertEqual(process.find_thread(102).user, "alice")
        self.assertEqual(len(trace.switches), 3)
        self.assertEqual(trace.switches[2].state, ThreadState.WAITING)
        self.assertEqual(trace.faults[0].kind, FaultKind.MINOR)
        self.assertEqual(len(trace.counters), 10)
        self.assertEqual(trace.counters[0].l2_hits, 10)

    def test_malformed_record(self):
        data = json_capture()
        del data["switches"][0]["new_tid"]
        with self.assertRaises(TraceFormatError):
            parse_json_trace(data)

    def test_load_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "capture.json")
            with open(path, "w") as f:
                json.dump(json_capture(), f)
            trace = load_json_trace(path)
            self.assertEqual(trace.processes[0].pid, APP_PID)

            bad = os.path.join(tmp, "bad.json")
            with open(bad, "w") as f:
                f.write("[1, 2")
            with self.assertRaises(TraceFormatError):
                load_json_trace(bad)

    def test_counter_csv_replaces_trace_counters(self):
        with tempfile.TemporaryDirectory() as tmp:
            trace_path = os.path.join(tmp, "capture.json")
            with open(trace_path, "w") as f:
                json.dump(json_capture(), f)
            counters_path = os.path.join(tmp, "counters.csv")
            with open(counters_path, "w") as f:
                f.write("ts,cpu,ipc,l2_hits,l2_misses\n")
                f.write("0,0,1.5,4,1\n")
                f.write("1000,1,0.5,2,\n")

            samples = load_counter_csv(counters_path)
            self.assertEqual(len(samples), 2)
            self.assertEqual(samples[0].ipc, 1.5)
            self.assertEqual(samples[1].l2_misses, 0)
            self.assertEqual(samples[1].l3_clock, 0.0)

            trace = load_trace(trace_path, counters_path)
            self.assertEqual(len(trace.counters), 2)

    def test_counter_csv_requires_ts_and_cpu(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "counters.csv")
            with open(path, "w") as f:
                f.write("time,ipc\n0,1.0\n")
            with self.assertRaises(TraceFormatError):
                load_counter_csv(path)


class TestPerfettoRows(unittest.TestCase):
    def test_switch_from_sched_row(self):
        sw = switch_from_sched_row(
            {"ts": 10, "cpu": 2, "tid": 7, "pid": 5, "prev_tid": 3, "prev_pid": 5, "prev_end_state": "S"}
        )
        self.assertEqual((sw.old_tid, sw.old_pid, sw.new_tid, sw.new_pid), (3, 5, 7, 5))
        self.assertEqual(sw.state, ThreadState.WAITING)

        first = switch_from_sched_row(
            {"ts": 0, "cpu": 0, "tid": 7, "pid": 5, "prev_tid": None, "prev_pid": None, "prev_end_state": None}
        )
        self.assertEqual((first.old_tid, first.old_pid), (0, 0))
        self.assertEqual(first.state, ThreadState.OTHER)

    def test_end_state_mapping(self):
        self.assertEqual(ThreadState.from_end_state("R+"), ThreadState.RUNNING)
        self.assertEqual(ThreadState.from_end_state("D"), ThreadState.WAITING)
        self.assertEqual(ThreadState.from_end_state("X"), ThreadState.OTHER)

    def test_pivot_counter_rows(self):
        rows = [
            {"ts": 0, "cpu": 0, "name": "ipc", "value": 1.5},
            {"ts": 0, "cpu": 0, "name": "l2_hit", "value": 12.0},
            {"ts": 0, "cpu": 1, "name": "ipc", "value": 0.5},
            {"ts": 0, "cpu": 1, "name": "cpufreq", "value": 1800.0},
        ]
        samples = pivot_counter_rows(rows, {"ipc": "ipc", "l2_hit": "l2_hits"})
        self.assertEqual(len(samples), 2)
        by_core = {s.core: s for s in samples}
        self.assertEqual(by_core[0].l2_hits, 12)
        self.assertEqual(by_core[1].ipc, 0.5)


class _QueryResult(list):
    def __init__(self, column_names, rows):
        super().__init__(SimpleNamespace(**dict(zip(column_names, row))) for row in rows)
        self.column_names = column_names


class _FakeTraceProcessor:
    """Answers the loader's queries from canned tables, keyed by the table queried."""

    def __init__(self, tables: dict):
        self.tables = tables
        self.queries: list[str] = []
        self.closed = False

    def query(self, sql: str):
        self.queries.append(sql)
        for marker in ["trace_bounds", "FROM sched", "FROM ftrace_event", "cpu_counter_track", "FROM process", "FROM thread"]:
            if marker in sql:
                if marker not in self.tables:
                    raise RuntimeError(f"no such table: {marker}")
                column_names, rows = self.tables[marker]
                return _QueryResult(column_names, rows)
        raise AssertionError(f"unexpected query: {sql}")

    def close(self):
        self.closed = True


class TestPerfettoTraceSource(unittest.TestCase):
    def setUp(self):
        self.tp = _FakeTraceProcessor({
            "trace_bounds": (["start_ts", "end_ts"], [(0, 1000 * MS)]),
            "FROM process": (
                ["upid", "pid", "name", "start_ts", "end_ts", "uid"],
                [(1, APP_PID, "app.exe", 10 * MS, None, 1000), (2, 7, "other", None, None, None)],
            ),
            "FROM thread": (
                ["upid", "tid", "name"],
                [(1, APP_PID, "main"), (1, 101, None), (2, 70, "bg")],
            ),
            "FROM sched": (
                ["ts", "cpu", "tid", "pid", "prev_tid", "prev_pid", "prev_end_state"],
                [(0, 0, 101, APP_PID, None, None, None), (5 * MS, 0, 70, 7, 101, APP_PID, "S")],
            ),
            "cpu_counter_track": (
                ["ts", "cpu", "name", "value"],
                [(0, 0, "ipc", 1.25), (0, 0, "l2_miss", 4.0), (0, 1, "ipc", 0.5)],
            ),
        })
        self.source = PerfettoTraceSource("trace.pftrace", tp=self.tp)

    def test_processes_and_threads(self):
        assumptions: dict = {}
        processes = self.source.get_processes(assumptions)

        app_proc, other = processes
        self.assertEqual((app_proc.pid, app_proc.name), (APP_PID, "app.exe"))
        self.assertEqual((app_proc.start_time, app_proc.end_time), (10 * MS, 1000 * MS))
        self.assertEqual((app_proc.user, app_proc.uid), ("1000", 1000))
        self.assertEqual([t.tid for t in app_proc.threads], [APP_PID, 101])
        self.assertEqual(app_proc.find_thread(101).name, "")
        self.assertEqual((other.start_time, other.user, other.uid), (0, "unknown", -1))
        self.assertEqual(assumptions, {})

    def test_switches_from_sched_slices(self):
        switches = self.source.get_switches({})

        self.assertEqual((switches[0].old_tid, switches[0].new_tid), (0, 101))
        self.assertEqual((switches[1].old_tid, switches[1].old_pid), (101, APP_PID))
        self.assertEqual((switches[1].new_tid, switches[1].new_pid), (70, 7))
        self.assertEqual(switches[1].state, ThreadState.WAITING)

    def test_counters_pivoted_per_cpu(self):
        samples = {s.core: s for s in self.source.get_counters({})}

        self.assertEqual(samples[0].ipc, 1.25)
        self.assertEqual(samples[0].l2_misses, 4)
        self.assertEqual(samples[1].ipc, 0.5)
        self.assertIn("'l3_clk'", self.tp.queries[-1])

    def test_failed_query_is_recorded(self):
        assumptions: dict = {}
        self.assertEqual(self.source.get_faults(assumptions), [])
        self.assertIn("faults", assumptions)
        self.assertIn("'page_fault_user'", self.tp.queries[-1])

    def test_faults_by_event_name(self):
        self.tp.tables["FROM ftrace_event"] = (
            ["ts", "cpu", "name", "tid", "pid"],
            [(3, 1, "page_fault_user", 101, APP_PID), (4, 0, "mm_filemap_fault", 101, APP_PID)],
        )
        faults = self.source.get_faults({})

        self.assertEqual([f.kind for f in faults], [FaultKind.MINOR, FaultKind.MAJOR])
        self.assertEqual((faults[0].core, faults[0].pid), (1, APP_PID))

    def test_load_and_close(self):
        trace = self.source.load({})
        self.source.close()

        self.assertEqual(len(trace.processes), 2)
        self.assertEqual(trace.core_count, 2)
        self.assertTrue(self.tp.closed)


if __name__ == "__main__":
    unittest.main()
