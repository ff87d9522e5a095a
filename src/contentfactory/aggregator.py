from __future__ import annotations

import threading
from collections.abc import Iterable
from types import MappingProxyType

from contentfactory.models import PerformanceMetrics, StatusSnapshot, WorkerResult, utcnow


class _DepartmentCounters:
    __slots__ = ("lock", "metrics", "samples")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.metrics = PerformanceMetrics()
        self.samples = 0


class StatusAggregator:
    """Folds worker results into per-department performance metrics.

    Each department has its own lock, so concurrent ``record`` calls for
    different departments never contend and calls for the same department
    are serialized.
    """

    def __init__(self, departments: Iterable[str] = (), *, ewma_alpha: float = 0.3) -> None:
        if not 0.0 < ewma_alpha <= 1.0:
            raise ValueError("ewma_alpha must be in (0, 1].")
        self.ewma_alpha = ewma_alpha
        self._counters: dict[str, _DepartmentCounters] = {}
        self._registry_lock = threading.Lock()
        for department in departments:
            self._counters_for(department)

    def _counters_for(self, department: str) -> _DepartmentCounters:
        counters = self._counters.get(department)
        if counters is not None:
            return counters
        with self._registry_lock:
            return self._counters.setdefault(department, _DepartmentCounters())

    def record(self, result: WorkerResult) -> None:
        if result.cancelled:
            return
        counters = self._counters_for(result.department)
        with counters.lock:
            metrics = counters.metrics
            metrics.total += 1
            if result.succeeded:
                metrics.completed += 1
            metrics.success_rate = metrics.completed / metrics.total
            if counters.samples == 0:
                metrics.avg_response_time = result.duration_seconds
            else:
                metrics.avg_response_time = (
                    self.ewma_alpha * result.duration_seconds
                    + (1.0 - self.ewma_alpha) * metrics.avg_response_time
                )
            counters.samples += 1

    def department(self, name: str) -> PerformanceMetrics:
        counters = self._counters_for(name)
        with counters.lock:
            return counters.metrics.copy()

    def snapshot(self) -> StatusSnapshot:
        with self._registry_lock:
            items = list(self._counters.items())
        departments: dict[str, PerformanceMetrics] = {}
        for name, counters in items:
            with counters.lock:
                departments[name] = counters.metrics.copy()

        completed = sum(item.completed for item in departments.values())
        total = sum(item.total for item in departments.values())
        active = [item for item in departments.values() if item.total > 0]
        system = PerformanceMetrics(
            completed=completed,
            total=total,
            success_rate=min((item.success_rate for item in active), default=0.0),
            avg_response_time=(
                sum(item.avg_response_time for item in active) / len(active) if active else 0.0
            ),
        )
        return StatusSnapshot(
            departments=MappingProxyType(departments),
            system=system,
            taken_at=utcnow(),
        )
