"""JSON chart payload: per-thread series of occupancy and cache/IPC metrics."""

from __future__ import annotations

import json
from pathlib import Path

from perfetto_harvester.config import NS_PER_MS
from perfetto_harvester.output import OCCUPANCY_KIND, EventEntry, EventOutput


def _charted(kind: str) -> bool:
    return kind.endswith("perf") or kind == "ipc" or kind == OCCUPANCY_KIND


def _scaled(kind: str) -> bool:
    return kind.endswith("perf") or kind == "ipc"


def build_chart(output: EventOutput) -> dict:
    """
    Build the chart payload.

    Values are averaged per time step; perf and ipc series are scaled to
    percent, capped at 100 and rounded to 2 decimals. Occupancy feeds each
    thread's runtimeAvg. The system thread is left out and threads are
    sorted by runtimeAvg.
    """
    entries: list[EventEntry] = list(output)
    if not entries:
        return {"name": output.process_name, "duration": 0.0, "frames": 0, "threads": []}

    threads = list(dict.fromkeys(entry.tid for entry in entries))
    kinds = [kind for kind in dict.fromkeys(entry.kind for entry in entries) if _charted(kind)]
    times = sorted({entry.time for entry in entries})

    grouped: dict[tuple[int, str, int], list[float]] = {}
    for entry in entries:
        grouped.setdefault((entry.time, entry.kind, entry.tid), []).append(entry.value)

    chart_threads = []
    for tid in threads:
        measures = []
        runtime: list[float] = []
        for kind in kinds:
            data = []
            for time in times:
                values = grouped.get((time, kind, tid), [])
                average = sum(values) / len(values) if values else 0.0
                if _scaled(kind):
                    average *= 100
                if kind == OCCUPANCY_KIND:
                    runtime.append(average)
                else:
                    data.append(min(round(average, 2), 100))
            if data:
                measures.append({"name": kind.replace("perf", "").upper(), "data": data})
        chart_threads.append(
            {
                "id": str(tid),
                "runtimeAvg": (sum(runtime) / len(runtime) * 100) if runtime else 0.0,
                "measures": measures,
            }
        )

    frames = len(times)
    chart_threads = sorted(
        (thread for thread in chart_threads if thread["id"] != "0"),
        key=lambda thread: thread["runtimeAvg"],
    )
    return {
        "name": output.process_name,
        "duration": (times[-1] - times[0]) / NS_PER_MS,
        "frames": frames,
        "threads": chart_threads,
    }


def write_chart(output: EventOutput, path: Path) -> None:
    with open(path, "w") as f:
        json.dump(build_chart(output), f, indent=2)
