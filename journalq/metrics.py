"""Metrics sinks for pipeline traces.

The orchestrator writes one record per run to an injected sink; the core
keeps no process-wide counters of its own.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from journalq.agents.models import PipelineTrace

logger = logging.getLogger(__name__)


class MetricsSink(ABC):
    """Receives one trace per orchestration run."""

    @abstractmethod
    def record_run(self, trace: PipelineTrace, degraded: bool, metadata: dict[str, Any]) -> None:
        pass


class NullMetricsSink(MetricsSink):
    """Discards everything."""

    def record_run(self, trace: PipelineTrace, degraded: bool, metadata: dict[str, Any]) -> None:
        return None


class InMemoryMetricsSink(MetricsSink):
    """Keeps the most recent runs in a bounded ring buffer."""

    __slots__ = ("_runs",)

    def __init__(self, capacity: int = 500):
        self._runs: deque[dict[str, Any]] = deque(maxlen=capacity)

    def record_run(self, trace: PipelineTrace, degraded: bool, metadata: dict[str, Any]) -> None:
        self._runs.append({
            "total_time_ms": trace.total_time_ms,
            "success": trace.success,
            "degraded": degraded,
            "stages": {s.agent: s.time_ms for s in trace.stages},
            "failed_stages": [s.agent for s in trace.stages if not s.success],
            "execution_strategy": metadata.get("execution_strategy"),
        })

    @property
    def runs(self) -> list[dict[str, Any]]:
        return list(self._runs)

    def snapshot(self) -> dict[str, Any]:
        """Aggregate view for the metrics endpoint."""
        runs = self._runs
        if not runs:
            return {"runs": 0, "degraded": 0, "avg_total_ms": 0, "stage_avg_ms": {}}

        totals: dict[str, list[int]] = {}
        for run in runs:
            for agent, ms in run["stages"].items():
                totals.setdefault(agent, []).append(ms)

        return {
            "runs": len(runs),
            "degraded": sum(1 for r in runs if r["degraded"]),
            "failed": sum(1 for r in runs if not r["success"]),
            "avg_total_ms": round(sum(r["total_time_ms"] for r in runs) / len(runs), 1),
            "stage_avg_ms": {agent: round(sum(v) / len(v), 1) for agent, v in totals.items()},
        }
