import json
import os
import tempfile
import unittest
from unittest import mock

from typer.testing import CliRunner

from perfetto_harvester.cli import app

from sample_trace import json_capture


class TestCli(unittest.TestCase):
    def setUp(self):
        self.runner = CliRunner()
        self.tmp = tempfile.TemporaryDirectory()
        self.trace_path = os.path.join(self.tmp.name, "capture.json")
        with open(self.trace_path, "w") as f:
            json.dump(json_capture(), f)

    def tearDown(self):
        self.tmp.cleanup()

    def _path(self, name: str) -> str:
        return os.path.join(self.tmp.name, name)

    def test_analyze_writes_outputs(self):
        result = self.runner.invoke(
            app,
            [
                "analyze",
                "--trace", self.trace_path,
                "--process", "app",
                "--interval-ms", "250",
                "--out", self._path("analysis.json"),
                "--csv-out", self._path("entries.csv"),
                "--by-thread-out", self._path("by_thread.csv"),
                "--chart-out", self._path("chart.json"),
            ],
        )
        self.assertEqual(result.exit_code, 0, result.output)
        with open(self._path("analysis.json")) as f:
            analysis = json.load(f)
        self.assertEqual(analysis["window"]["window_count"], 4)
        self.assertEqual(analysis["window"]["core_count"], 2)
        for name in ["entries.csv", "by_thread.csv", "chart.json"]:
            self.assertTrue(os.path.exists(self._path(name)))
        with open(self._path("chart.json")) as f:
            chart = json.load(f)
        self.assertEqual(chart["name"], "app.exe")
        self.assertEqual({t["id"] for t in chart["threads"]}, {"101", "102"})

    def test_process_from_environment(self):
        result = self.runner.invoke(
            app,
            ["analyze", "--trace", self.trace_path, "--out", self._path("analysis.json")],
            env={"HARVESTER_PROCESS": "app", "HARVESTER_INTERVAL_MS": "500"},
        )
        self.assertEqual(result.exit_code, 0, result.output)
        with open(self._path("analysis.json")) as f:
            self.assertEqual(json.load(f)["window"]["interval_ms"], 500)

    def test_unknown_process_fails(self):
        result = self.runner.invoke(
            app,
            [
                "analyze",
                "--trace", self.trace_path,
                "--process", "nothing",
                "--interval-ms", "100",
                "--out", self._path("analysis.json"),
            ],
        )
        self.assertEqual(result.exit_code, 1)
        self.assertIn("nothing", result.output)
        self.assertFalse(os.path.exists(self._path("analysis.json")))

    def test_bad_interval_fails(self):
        result = self.runner.invoke(
            app,
            ["analyze", "--trace", self.trace_path, "--process", "app", "--interval-ms", "0"],
        )
        self.assertEqual(result.exit_code, 1)

    def test_missing_trace(self):
        result = self.runner.invoke(
            app,
            ["analyze", "--trace", self._path("absent.json"), "--process", "app", "--interval-ms", "10"],
        )
        self.assertEqual(result.exit_code, 1)
        self.assertIn("not found", result.output)

    def test_undecodable_capture_reports_error(self):
        with open(self.trace_path, "wb") as f:
            f.write(b'{"processes": ["\xff\xfe"]}')
        result = self.runner.invoke(
            app,
            ["analyze", "--trace", self.trace_path, "--process", "app", "--interval-ms", "10"],
        )
        self.assertEqual(result.exit_code, 1)
        self.assertIsInstance(result.exception, SystemExit)
        self.assertIn("Error", result.output)

        result = self.runner.invoke(app, ["processes", "--trace", self.trace_path])
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Error", result.output)

    def test_unloadable_perfetto_trace_reports_error(self):
        trace_path = self._path("broken.pftrace")
        with open(trace_path, "wb") as f:
            f.write(b"not a trace")
        with mock.patch(
            "perfetto_harvester.trace_source.TraceProcessor",
            side_effect=RuntimeError("trace processor failed to load"),
        ):
            result = self.runner.invoke(
                app,
                ["analyze", "--trace", trace_path, "--process", "app", "--interval-ms", "10"],
            )
        self.assertEqual(result.exit_code, 1)
        self.assertIsInstance(result.exception, SystemExit)
        self.assertIn("Perfetto", result.output)

    def test_processes_lists_catalog(self):
        result = self.runner.invoke(app, ["processes", "--trace", self.trace_path])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("app.exe", result.output)


if __name__ == "__main__":
    unittest.main()
