"""Per-phase timing and operation counters with the console report."""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List

from .data_models import PerformanceStats


class PerformanceTracker:
    """性能统计 / Thread-safe accumulator of PerformanceStats keyed by phase name.

    Repeated records for the same phase add up durations and operation counts,
    so concurrent verifications land in one line of the report.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stats: Dict[str, PerformanceStats] = {}

    def add(self, phase_name: str, duration: float, operations: Dict[str, int] | None = None) -> None:
        with self._lock:
            stat = self._stats.get(phase_name)
            if stat is None:
                stat = PerformanceStats(phase_name, 0.0)
                self._stats[phase_name] = stat
            stat.duration += duration
            for op_name, count in (operations or {}).items():
                stat.operations[op_name] = stat.operations.get(op_name, 0) + count

    def snapshot(self) -> List[PerformanceStats]:
        with self._lock:
            return [
                PerformanceStats(stat.phase_name, stat.duration, dict(stat.operations))
                for stat in self._stats.values()
            ]

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()


def merge_max(groups: Iterable[List[PerformanceStats]]) -> List[PerformanceStats]:
    """Combine per-node stats: parallel nodes take the max duration and sum their counts."""
    merged: Dict[str, PerformanceStats] = {}
    for stats in groups:
        for stat in stats:
            target = merged.get(stat.phase_name)
            if target is None:
                merged[stat.phase_name] = PerformanceStats(stat.phase_name, stat.duration, dict(stat.operations))
                continue
            target.duration = max(target.duration, stat.duration)
            for op_name, count in stat.operations.items():
                target.operations[op_name] = target.operations.get(op_name, 0) + count
    return list(merged.values())


def print_performance_report(performance_stats: List[PerformanceStats]) -> None:
    """打印优雅的性能报告 / Pretty-print collected performance statistics."""
    print("\n" + "=" * 80)
    print("***  PROTOCOL PERFORMANCE ANALYSIS REPORT  ***".center(80))
    print("=" * 80 + "\n")

    total_time = sum(stat.duration for stat in performance_stats)

    for idx, stat in enumerate(performance_stats, 1):
        percentage = (stat.duration / total_time * 100) if total_time > 0 else 0

        print(f"┌─ Phase {idx}: {stat.phase_name}")
        print(f"│  ⏱  Duration:    {stat.duration*1000:.4f} ms  ({percentage:.1f}% of total)")

        if stat.operations:
            print("│  📊 操作次数:")
            for op_name, count in stat.operations.items():
                print(f"│     • {op_name}: {count:,}")
        print(f"└{'─'*78}\n")

    print("=" * 80)
    print(f"🕐 TOTAL EXECUTION TIME: {total_time*1000:.4f} ms ({total_time:.6f} seconds)")
    print("=" * 80 + "\n")
