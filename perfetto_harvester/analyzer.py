"""Run orchestration: trace in, frames and summary out."""

from __future__ import annotations

import logging

from perfetto_harvester.config import NS_PER_MS, AnalysisConfig
from perfetto_harvester.frames import FrameStore, build_frames
from perfetto_harvester.models import TraceData
from perfetto_harvester.output import EventOutput, flatten_frames
from perfetto_harvester.trace_source import load_trace

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "H1"


def _set_assumption(assumptions: dict, key: str, note: str) -> None:
    if key not in assumptions:
        assumptions[key] = note


def summarize_threads(store: FrameStore, top_n: int = 10) -> list[dict]:
    """Threads ranked by mean occupancy over all frames."""
    totals: dict = {}
    for frame in store:
        for thread, elapsed in frame.occupancy.items():
            if elapsed:
                totals[thread] = totals.get(thread, 0) + elapsed

    frame_time = len(store) * store.interval
    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)[:top_n]
    return [
        {
            "tid": thread.tid,
            "pid": thread.pid,
            "process_name": thread.process_name,
            "user": thread.user,
            "occupancy_ms": elapsed / NS_PER_MS,
            "occupancy_avg": elapsed / frame_time if frame_time else 0.0
        }
        for thread, elapsed in ranked
    ]


def summarize_counters(store: FrameStore) -> dict:
    sampled = [frame.counters.ipc for frame in store if frame.counters.samples]
    return {
        "ipc_avg": sum(sampled) / len(sampled) if sampled else None,
        "frames_with_counters": len(sampled),
        "l2_hits": sum(frame.counters.l2_hits for frame in store),
        "l2_misses": sum(frame.counters.l2_misses for frame in store),
        "minor_page_faults": sum(frame.counters.minor_page_faults for frame in store),
        "major_page_faults": sum(frame.counters.major_page_faults for frame in store)
    }


def analyze(
    trace: TraceData,
    config: AnalysisConfig,
    assumptions: dict | None = None,
    schema_version: str = SCHEMA_VERSION
) -> tuple[dict, EventOutput]:
    """
    Build frames for a loaded trace and summarize them.

    Returns:
        Tuple of (analysis dictionary, flattened entries)
    """
    if assumptions is None:
        assumptions = {}

    store = build_frames(
        trace,
        config.process_name_prefix,
        config.interval_ms,
        workers=config.workers
    )
    logger.info("Flattening %d frames", len(store))
    output = flatten_frames(store)

    unresolved = {
        (thread.tid, thread.pid)
        for frame in store
        for thread in frame.occupancy
        if not thread.resolved and thread.tid >= 0
    }

    process = store.process
    result = {
        "schema_version": schema_version,
        "process": {
            "pid": process.pid,
            "name": process.name,
            "user": process.user,
            "threads": len(process.threads)
        },
        "window": {
            "start_ns": store.start,
            "end_ns": store.end,
            "duration_ms": (store.end - store.start) / NS_PER_MS,
            "interval_ms": config.interval_ms,
            "window_count": store.window_count,
            "core_count": store.core_count,
            "frame_count": len(store)
        },
        "threads": summarize_threads(store),
        "counters": summarize_counters(store),
        "entries": len(output),
        "assumptions": assumptions
    }

    for core, count in sorted(store.cold_windows.items()):
        _set_assumption(
            assumptions,
            f"cold_core_{core}",
            f"No context switch seen on core {core}; {count} window(s) attributed to the unknown thread"
        )
    if unresolved:
        _set_assumption(
            assumptions,
            "unresolved_threads",
            f"{len(unresolved)} thread(s) outside {process.name} kept with placeholder identities"
        )
    _set_assumption(
        assumptions,
        "l3_counters",
        "L3 hits/misses mirror the L2 counters"
    )
    _set_assumption(
        assumptions,
        "window_boundaries",
        "Samples and events on a window boundary are counted in both adjacent windows"
    )
    return result, output


def analyze_trace(
    trace_path: str,
    config: AnalysisConfig,
    counters_path: str | None = None,
    schema_version: str = SCHEMA_VERSION
) -> tuple[dict, EventOutput]:
    """
    Load a capture and analyze it.

    Args:
        trace_path: JSON capture or Perfetto trace
        config: Analysis configuration
        counters_path: Optional counter CSV replacing the trace's counters
    """
    assumptions: dict = {}
    trace = load_trace(trace_path, counters_path, assumptions)
    result, output = analyze(trace, config, assumptions, schema_version)
    result["trace_path"] = trace_path
    return result, output
