"""CSV exporters: one row per entry, and a per-thread time pivot."""

from __future__ import annotations

import csv
from pathlib import Path

from perfetto_harvester.output import EventEntry

CSV_HEADER = ["type", "program", "user", "time", "value", "tid", "pid", "cpu", "uid"]


def write_csv(entries: list[EventEntry], path: Path) -> None:
    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)
        for entry in entries:
            writer.writerow(list(entry))


def _distinct(values) -> list:
    return list(dict.fromkeys(values))


def pivot_by_thread(entries: list[EventEntry]) -> list[list]:
    """
    Pivot entries into rows of time x (kind@tid) columns.

    Each cell is the sum of values for that time, kind and thread.
    """
    threads = _distinct(entry.tid for entry in entries)
    kinds = _distinct(entry.kind for entry in entries)

    totals: dict[int, dict[tuple[str, int], float]] = {}
    for entry in entries:
        row = totals.setdefault(entry.time, {})
        key = (entry.kind, entry.tid)
        row[key] = row.get(key, 0.0) + entry.value

    rows: list[list] = [["Time"] + [f"{kind}@{tid}" for tid in threads for kind in kinds]]
    for time, row in totals.items():
        rows.append([time] + [row.get((kind, tid), 0.0) for tid in threads for kind in kinds])
    return rows


def write_by_thread(entries: list[EventEntry], path: Path) -> None:
    with open(path, "w", newline="") as f:
        writer = csv.writer(f, delimiter=";")
        writer.writerows(pivot_by_thread(entries))
