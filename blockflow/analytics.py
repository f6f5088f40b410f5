"""Read-only execution statistics."""

from __future__ import annotations

import datetime as dt
import statistics
from collections import defaultdict
from typing import Dict, List, Optional

from pydantic import BaseModel

from .constants import (
    COMPLETED,
    DEFAULT_ANALYTICS_DAYS,
    EXECUTION_STATUSES,
    FAILED,
    SKIPPED,
)
from .persistence import Execution, ExecutionRepository
from .persistence.models import utcnow


class DurationStats(BaseModel):
    count: int = 0
    min_ms: float = 0.0
    avg_ms: float = 0.0
    max_ms: float = 0.0
    median_ms: float = 0.0


class NodeStats(BaseModel):
    node_id: str
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0


class DailyTrend(BaseModel):
    date: dt.date
    total: int
    completed: int
    failed: int
    avg_duration_ms: float
    success_rate: float
    failure_rate: float


class ExecutionSummary(BaseModel):
    total: int
    status_counts: Dict[str, int]
    success_rate: float
    avg_duration_ms: float
    median_duration_ms: float
    peak_concurrency: int


def _rate(count: int, total: int) -> float:
    return count / total * 100 if total else 0.0


def _durations(executions: List[Execution]) -> List[float]:
    return [
        e.duration_ms
        for e in executions
        if e.status == COMPLETED and e.duration_ms is not None
    ]


class ExecutionAnalytics:
    """Aggregates over executions started in a trailing window of days.

    ``now`` can be injected to pin the window end, which tests rely on.
    """

    def __init__(self, repository: ExecutionRepository, now=utcnow) -> None:
        self._repository = repository
        self._now = now

    async def _window(
        self, workflow_id: Optional[str], days: int
    ) -> List[Execution]:
        since = self._now() - dt.timedelta(days=days)
        return await self._repository.list_executions(workflow_id=workflow_id, since=since)

    async def status_counts(
        self, workflow_id: Optional[str] = None, days: int = DEFAULT_ANALYTICS_DAYS
    ) -> Dict[str, int]:
        counts = {status: 0 for status in EXECUTION_STATUSES}
        for execution in await self._window(workflow_id, days):
            counts[execution.status] += 1
        return counts

    async def duration_stats(
        self, workflow_id: Optional[str] = None, days: int = DEFAULT_ANALYTICS_DAYS
    ) -> DurationStats:
        durations = _durations(await self._window(workflow_id, days))
        if not durations:
            return DurationStats()
        return DurationStats(
            count=len(durations),
            min_ms=min(durations),
            avg_ms=sum(durations) / len(durations),
            max_ms=max(durations),
            median_ms=statistics.median(durations),
        )

    async def node_stats(
        self, workflow_id: str, days: int = DEFAULT_ANALYTICS_DAYS
    ) -> Dict[str, NodeStats]:
        since = self._now() - dt.timedelta(days=days)
        stats: Dict[str, NodeStats] = {}
        for row in await self._repository.list_workflow_node_executions(workflow_id, since):
            entry = stats.setdefault(row.node_id, NodeStats(node_id=row.node_id))
            entry.total += 1
            if row.status == COMPLETED:
                entry.completed += 1
            elif row.status == FAILED:
                entry.failed += 1
            elif row.status == SKIPPED:
                entry.skipped += 1
        return stats

    async def daily_trends(
        self, workflow_id: Optional[str] = None, days: int = DEFAULT_ANALYTICS_DAYS
    ) -> List[DailyTrend]:
        buckets: Dict[dt.date, List[Execution]] = defaultdict(list)
        for execution in await self._window(workflow_id, days):
            buckets[execution.started_at.date()].append(execution)

        trends = []
        for day in sorted(buckets):
            rows = buckets[day]
            total = len(rows)
            completed = sum(1 for e in rows if e.status == COMPLETED)
            failed = sum(1 for e in rows if e.status == FAILED)
            durations = _durations(rows)
            trends.append(
                DailyTrend(
                    date=day,
                    total=total,
                    completed=completed,
                    failed=failed,
                    avg_duration_ms=sum(durations) / len(durations) if durations else 0.0,
                    success_rate=_rate(completed, total),
                    failure_rate=_rate(failed, total),
                )
            )
        return trends

    async def summary(
        self, workflow_id: Optional[str] = None, days: int = DEFAULT_ANALYTICS_DAYS
    ) -> ExecutionSummary:
        executions = await self._window(workflow_id, days)
        counts = {status: 0 for status in EXECUTION_STATUSES}
        for execution in executions:
            counts[execution.status] += 1
        durations = _durations(executions)
        return ExecutionSummary(
            total=len(executions),
            status_counts=counts,
            success_rate=_rate(counts[COMPLETED], len(executions)),
            avg_duration_ms=sum(durations) / len(durations) if durations else 0.0,
            median_duration_ms=statistics.median(durations) if durations else 0.0,
            peak_concurrency=self._peak_concurrency(executions),
        )

    def _peak_concurrency(self, executions: List[Execution]) -> int:
        events: List[tuple[dt.datetime, int]] = []
        now = self._now()
        for execution in executions:
            events.append((execution.started_at, 1))
            events.append((execution.finished_at or now, -1))
        # Ends sort before starts at the same instant.
        events.sort()
        peak = current = 0
        for _, delta in events:
            current += delta
            peak = max(peak, current)
        return peak
