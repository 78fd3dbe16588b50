"""Exporters for flattened analysis entries."""

from perfetto_harvester.export.chart import build_chart, write_chart
from perfetto_harvester.export.tables import pivot_by_thread, write_by_thread, write_csv

__all__ = [
    "build_chart",
    "pivot_by_thread",
    "write_by_thread",
    "write_chart",
    "write_csv"
]
