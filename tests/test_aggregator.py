import threading

import pytest

from contentfactory.aggregator import StatusAggregator
from contentfactory.models import Task, WorkerResult


def _result(department: str, ok: bool = True, duration: float = 1.0) -> WorkerResult:
    return WorkerResult(
        task=Task(id=f"{department}-task", department=department, description="work"),
        outcome="success" if ok else "failure",
        duration_seconds=duration,
    )


def test_concurrent_records_from_threads_are_not_lost() -> None:
    departments = ["content", "production", "distribution", "revenue"]
    aggregator = StatusAggregator(departments)
    per_thread = 250
    threads_per_department = 4
    barrier = threading.Barrier(len(departments) * threads_per_department)

    def feed(department: str) -> None:
        barrier.wait()
        for index in range(per_thread):
            aggregator.record(_result(department, ok=index % 5 != 0))

    threads = [
        threading.Thread(target=feed, args=(department,))
        for department in departments
        for _ in range(threads_per_department)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    snapshot = aggregator.snapshot()
    expected_total = per_thread * threads_per_department
    for department in departments:
        metrics = snapshot.departments[department]
        assert metrics.total == expected_total
        assert metrics.completed == expected_total * 4 // 5
        assert metrics.success_rate == pytest.approx(0.8)
    assert snapshot.system.total == expected_total * len(departments)


def test_response_time_is_an_ewma_seeded_by_first_sample() -> None:
    aggregator = StatusAggregator(ewma_alpha=0.5)

    aggregator.record(_result("content", duration=10.0))
    assert aggregator.department("content").avg_response_time == 10.0

    aggregator.record(_result("content", duration=2.0))
    assert aggregator.department("content").avg_response_time == pytest.approx(6.0)

    aggregator.record(_result("content", duration=2.0))
    assert aggregator.department("content").avg_response_time == pytest.approx(4.0)


def test_snapshot_rollup_uses_minimum_rate_of_active_departments() -> None:
    aggregator = StatusAggregator(["content", "production", "idle"])
    for ok in (True, True, True, False):
        aggregator.record(_result("content", ok=ok, duration=2.0))
    aggregator.record(_result("production", duration=4.0))

    snapshot = aggregator.snapshot()

    assert snapshot.system.completed == 4
    assert snapshot.system.total == 5
    assert snapshot.system.success_rate == pytest.approx(0.75)
    assert snapshot.system.avg_response_time == pytest.approx(3.0)
    assert snapshot.departments["idle"].total == 0
    with pytest.raises(TypeError):
        snapshot.departments["content"] = snapshot.system  # type: ignore[index]


def test_cancelled_results_are_ignored_and_alpha_is_validated() -> None:
    aggregator = StatusAggregator(["content"])
    cancelled = _result("content", ok=False)
    cancelled.cancelled = True

    aggregator.record(cancelled)

    assert aggregator.department("content").total == 0
    with pytest.raises(ValueError):
        StatusAggregator(ewma_alpha=0.0)
