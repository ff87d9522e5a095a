import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from contentfactory.aggregator import StatusAggregator
from contentfactory.config import FactoryConfig, TaskTemplate
from contentfactory.coordinator import Coordinator, severity_for_gap, severity_for_lateness
from contentfactory.executors import (
    ExecutionError,
    ExecutionOutcome,
    SimulatedExecutor,
    SimulatedMetricsSource,
    WorkExecutor,
)
from contentfactory.gate import AutonomyGate, AutonomyRules, BudgetLedger
from contentfactory.metrics import StaticMetricsSource
from contentfactory.models import Proposal, RevenueMetrics, StatusSnapshot, Task
from contentfactory.queue import TaskQueue
from contentfactory.registry import DepartmentRegistry
from contentfactory.worker import DepartmentWorker

START = datetime(2026, 3, 2, 6, 0, tzinfo=UTC)


class ScriptedExecutor(WorkExecutor):
    """Fails the tasks whose id ends with one of ``failing`` suffixes."""

    def __init__(self, failing: tuple[str, ...] = (), *, retriable: bool = True) -> None:
        self.failing = failing
        self.retriable = retriable
        self.calls: list[str] = []

    async def execute(self, task: Task, cancel_event: asyncio.Event) -> ExecutionOutcome:
        _ = cancel_event
        self.calls.append(task.id)
        await asyncio.sleep(0)
        if self.failing and task.id.endswith(self.failing):
            raise ExecutionError(f"scripted failure for {task.id}", retriable=self.retriable)
        return ExecutionOutcome(metrics={"task": task.id})


class UnhealthyExecutor(ScriptedExecutor):
    async def health_check(self) -> bool:
        return False


class BrokenAggregator(StatusAggregator):
    def snapshot(self) -> StatusSnapshot:
        raise RuntimeError("metrics store unreachable")


class FlakyAggregator(StatusAggregator):
    """Serves the planning snapshot, then loses its backing store."""

    def __init__(self, departments: list[str]) -> None:
        super().__init__(departments)
        self.calls = 0

    def snapshot(self) -> StatusSnapshot:
        self.calls += 1
        if self.calls > 1:
            raise RuntimeError("metrics store unreachable")
        return super().snapshot()


class FailingRevenueSource(StaticMetricsSource):
    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def revenue(self) -> RevenueMetrics:
        self.calls += 1
        if self.calls > 1:
            raise ConnectionError("billing api timed out")
        return super().revenue()


class JammedQueue(TaskQueue):
    def enqueue(self, task: Task) -> bool:
        _ = task
        raise RuntimeError("queue storage full")


def _config(departments: list[str] | None = None) -> FactoryConfig:
    config = FactoryConfig.default()
    config.monitoring.poll_interval_seconds = 0.01
    config.monitoring.max_monitor_seconds = 10.0
    if departments is not None:
        config.planning.departments = departments
    return config


def _coordinator(
    config: FactoryConfig,
    executors: dict[str, WorkExecutor],
    *,
    aggregator: StatusAggregator | None = None,
    clock=None,
    metrics_source=None,
    archive_limit: int = 500,
) -> Coordinator:
    registry = DepartmentRegistry.from_config(config, executors, clock=clock)
    gate = AutonomyGate(
        AutonomyRules.from_config(config.autonomy),
        BudgetLedger(config.budget.daily_limit),
        approval_timeout_seconds=0.1,
    )
    return Coordinator(
        registry,
        aggregator or StatusAggregator(registry.names()),
        gate,
        config,
        metrics_source=metrics_source,
        clock=clock,
        archive_limit=archive_limit,
    )


def _simulated(config: FactoryConfig, **kwargs) -> dict[str, SimulatedExecutor]:
    return {
        name: SimulatedExecutor(name, seed=index, **kwargs)
        for index, name in enumerate(config.planning.departments)
    }


def test_full_cycle_completes_all_planned_work() -> None:
    config = _config()
    executors = _simulated(config)
    coordinator = _coordinator(
        config,
        dict(executors),
        metrics_source=SimulatedMetricsSource(executors.values()),
    )

    result = asyncio.run(coordinator.run_cycle([Proposal("Daily content themes and topics")]))

    assert result.status == "complete"
    assert result.plan is not None and result.report is not None
    assert [entry["phase"] for entry in coordinator.phase_history] == [
        "planning",
        "dispatch",
        "monitoring",
        "reporting",
    ]
    assert len(result.plan.department_tasks) == 4
    assert len(result.plan.content_themes) == 4
    assert result.plan.budget_allocation.shares["content"] == 240.0
    assert [decision.action for decision in result.plan.priorities] == [
        "Daily content themes and topics"
    ]
    report = result.report
    assert len(report.completed_tasks) == 4
    assert report.failed_tasks == ()
    assert report.issues == ()
    assert report.budget["spent"] == 400.0
    assert report.content.posts_created == 10
    assert report.performance.success_rate == 1.0
    assert any(item.type == "milestone" for item in report.achievements)
    assert report.tomorrows_plan == tuple(config.planning.follow_ups)
    assert coordinator.gate.ledger.spent_today == 0
    assert coordinator.phase == "idle"
    assert coordinator.carried_over == []
    assert len(coordinator.archive) == 4


def test_nine_of_ten_successes_raise_low_success_rate_issue() -> None:
    config = _config(["content"])
    config.planning.tasks = [
        TaskTemplate("content", f"Post batch {index}", "medium", 24.0, 0.0)
        for index in range(1, 11)
    ]
    executor = ScriptedExecutor(failing=("-content-10",), retriable=False)
    coordinator = _coordinator(config, {"content": executor})

    result = asyncio.run(coordinator.run_cycle())

    assert result.report is not None
    assert result.report.performance.completed == 9
    assert result.report.performance.total == 10
    low_rate = [issue for issue in result.report.issues if issue.kind == "low_success_rate"]
    assert len(low_rate) == 1
    assert low_rate[0].department == "content"
    assert low_rate[0].severity == "medium"
    failed = [issue for issue in result.report.issues if issue.kind == "task_failed"]
    assert [issue.task_id for issue in failed] == [result.report.failed_tasks[0].id]


def test_retriable_failure_is_retried_then_reported_once() -> None:
    config = _config(["content"])
    config.planning.tasks = [TaskTemplate("content", "Always failing", "high", 24.0, 0.0)]
    executor = ScriptedExecutor(failing=("-content-1",))
    coordinator = _coordinator(config, {"content": executor})

    result = asyncio.run(coordinator.run_cycle())

    assert result.report is not None
    assert len(executor.calls) == config.queue.max_attempts
    assert len(result.report.failed_tasks) == 1
    failed_task = result.report.failed_tasks[0]
    assert failed_task.status == "failed"
    assert failed_task.attempts == 3
    task_failed = [issue for issue in result.report.issues if issue.kind == "task_failed"]
    assert len(task_failed) == 1
    assert task_failed[0].task_id == failed_task.id
    assert task_failed[0].severity == "high"


def test_offline_department_gets_no_tasks_and_an_issue() -> None:
    config = _config(["content", "production"])
    production = UnhealthyExecutor()
    coordinator = _coordinator(
        config,
        {"content": ScriptedExecutor(), "production": production},
    )
    worker = coordinator.registry["production"].worker

    async def _take_offline() -> None:
        for _ in range(3):
            await worker.check_health()

    asyncio.run(_take_offline())
    assert worker.status == "offline"

    result = asyncio.run(coordinator.run_cycle())

    assert result.status == "complete"
    assert result.report is not None
    assert production.calls == []
    assert [task.department for task in result.report.completed_tasks] == ["content"]
    unavailable = [
        issue for issue in result.report.issues if issue.kind == "department_unavailable"
    ]
    assert len(unavailable) == 1
    assert unavailable[0].department == "production"
    assert [task.department for task in coordinator.carried_over] == ["production"]
    assert coordinator.carried_over[0].status == "pending"


def test_cancellation_leaves_no_task_in_progress_and_carries_work_over() -> None:
    config = _config()
    coordinator = _coordinator(config, dict(_simulated(config, unit_delay_seconds=0.05)))

    async def _run():
        cycle = asyncio.create_task(coordinator.run_cycle())
        await asyncio.sleep(0.05)
        coordinator.cancel()
        return await cycle

    result = asyncio.run(_run())

    assert result.status == "cancelled"
    everything = coordinator.carried_over + coordinator.archive
    assert len(everything) == 4
    assert all(task.status != "in-progress" for task in everything)
    assert all(task.assigned_worker is None for task in coordinator.carried_over)
    carried_ids = {task.id for task in coordinator.carried_over}
    assert any(task_id.endswith("-content-1") for task_id in carried_ids)
    for department in coordinator.registry:
        assert department.worker.current_load == 0
        assert department.queue.depth == 0

    follow_up = asyncio.run(coordinator.run_cycle())

    assert follow_up.status == "complete"
    assert follow_up.report is not None
    completed_ids = {task.id for task in follow_up.report.completed_tasks}
    assert carried_ids <= completed_ids
    assert coordinator.carried_over == []


def test_cancel_before_planning_returns_cancelled_without_dispatch() -> None:
    config = _config(["content"])
    executor = ScriptedExecutor()
    coordinator = _coordinator(config, {"content": executor})

    coordinator.cancel()
    result = asyncio.run(coordinator.run_cycle())

    assert result.status == "cancelled"
    assert result.plan is None
    assert executor.calls == []
    assert coordinator.cancel_requested is False


def test_aggregation_failure_aborts_planning() -> None:
    config = _config(["content"])
    executor = ScriptedExecutor()
    coordinator = _coordinator(
        config,
        {"content": executor},
        aggregator=BrokenAggregator(["content"]),
    )

    result = asyncio.run(coordinator.run_cycle())

    assert result.status == "aborted"
    assert "metrics store unreachable" in (result.error or "")
    assert executor.calls == []
    assert coordinator.phase == "idle"


def test_aggregator_failure_after_planning_becomes_an_issue() -> None:
    config = _config(["content", "production"])
    aggregator = FlakyAggregator(["content", "production"])
    coordinator = _coordinator(
        config,
        {"content": ScriptedExecutor(), "production": ScriptedExecutor()},
        aggregator=aggregator,
    )

    result = asyncio.run(coordinator.run_cycle())

    assert result.status == "complete"
    assert result.report is not None
    assert len(result.report.completed_tasks) == 2
    unavailable = [
        issue for issue in result.report.issues if issue.kind == "aggregation_unavailable"
    ]
    assert len(unavailable) == 1
    assert unavailable[0].severity == "high"
    assert unavailable[0].department == "coordinator"
    assert result.report.performance.total == 0
    assert coordinator.gate.ledger.spent_today == 0
    assert coordinator.phase == "idle"
    assert coordinator.cycle_id is None

    retry = asyncio.run(coordinator.run_cycle())

    assert retry.status == "aborted"
    assert coordinator.phase == "idle"
    assert coordinator.cycle_id is None


def test_unexpected_error_in_reporting_aborts_and_closes_the_cycle() -> None:
    config = _config(["content"])
    metrics = FailingRevenueSource()
    coordinator = _coordinator(config, {"content": ScriptedExecutor()}, metrics_source=metrics)

    result = asyncio.run(coordinator.run_cycle())

    assert result.status == "aborted"
    assert result.plan is not None
    assert result.report is None
    assert "billing api timed out" in (result.error or "")
    assert coordinator.phase == "idle"
    assert coordinator.cycle_id is None
    assert [task.status for task in coordinator.archive] == ["completed"]
    worker = coordinator.registry["content"].worker
    assert worker.current_load == 0


def test_dispatch_error_in_one_department_does_not_skip_the_others() -> None:
    config = _config(["content", "production"])
    registry = DepartmentRegistry()
    registry.register(
        DepartmentWorker("content-manager", "content", ScriptedExecutor()),
        JammedQueue("content"),
    )
    production = ScriptedExecutor()
    registry.register(DepartmentWorker("production-manager", "production", production))
    gate = AutonomyGate(
        AutonomyRules.from_config(config.autonomy),
        BudgetLedger(config.budget.daily_limit),
    )
    coordinator = Coordinator(registry, StatusAggregator(registry.names()), gate, config)

    result = asyncio.run(coordinator.run_cycle())

    assert result.status == "complete"
    assert result.report is not None
    assert [task.department for task in result.report.completed_tasks] == ["production"]
    assert len(production.calls) == 1
    errors = [issue for issue in result.report.issues if issue.kind == "department_error"]
    assert len(errors) == 1
    assert errors[0].department == "content"
    assert "queue storage full" in errors[0].description
    assert [task.department for task in coordinator.carried_over] == ["content"]


def test_phases_driven_one_at_a_time_start_a_new_cycle_each_day() -> None:
    config = _config()
    executors = {name: ScriptedExecutor() for name in config.planning.departments}
    coordinator = _coordinator(config, dict(executors), archive_limit=6)

    async def _day():
        plan = await coordinator.plan()
        await coordinator.dispatch()
        await coordinator.monitor()
        report = await coordinator.report()
        return plan, report

    first_plan, first_report = asyncio.run(_day())
    second_plan, second_report = asyncio.run(_day())

    assert second_plan.cycle_id != first_plan.cycle_id
    assert len(second_plan.department_tasks) == 4
    first_ids = {task.id for task in first_report.completed_tasks}
    second_ids = {task.id for task in second_report.completed_tasks}
    assert len(first_ids) == 4
    assert len(second_ids) == 4
    assert first_ids.isdisjoint(second_ids)
    assert second_report.budget["spent"] == 400.0
    assert second_report.issues == ()
    assert sum(len(executor.calls) for executor in executors.values()) == 8
    archive = coordinator.archive
    assert len(archive) == 6
    assert {task.id for task in archive[-4:]} == second_ids
    assert coordinator.tasks == []


def test_replanning_the_same_cycle_is_idempotent() -> None:
    config = _config()
    coordinator = _coordinator(config, dict(_simulated(config)))

    first = asyncio.run(coordinator.plan())
    second = asyncio.run(coordinator.plan())

    assert [task.id for task in first.department_tasks] == [
        task.id for task in second.department_tasks
    ]
    assert len(coordinator.tasks) == 4
    assert coordinator.gate.ledger.spent_today == 400.0
    assert first.department_tasks[0].id.endswith("-content-1")


def test_task_over_department_cap_is_blocked_with_issue() -> None:
    config = _config(["content"])
    config.planning.tasks = [
        TaskTemplate("content", "Commission a premium video series", "high", 24.0, 500.0),
        TaskTemplate("content", "Write captions", "low", 24.0, 20.0),
    ]
    executor = ScriptedExecutor()
    coordinator = _coordinator(config, {"content": executor})

    result = asyncio.run(coordinator.run_cycle())

    assert result.report is not None
    assert len(executor.calls) == 1
    kinds = sorted(issue.kind for issue in result.report.issues)
    assert kinds == ["approval_denied", "budget_exceeded"]
    assert [task.description for task in result.report.completed_tasks] == ["Write captions"]
    assert any(
        decision.rationale == "department budget exceeded"
        for decision in result.report.decisions
    )
    blocked = [task for task in coordinator.archive if task.status == "blocked"]
    assert [task.cost for task in blocked] == [500.0]


def test_monitor_reports_missed_deadlines_and_escalates() -> None:
    now = [START]
    config = _config()
    coordinator = _coordinator(config, dict(_simulated(config)), clock=lambda: now[0])
    asyncio.run(coordinator.plan())

    now[0] = START + timedelta(hours=50)
    asyncio.run(coordinator.monitor())
    by_department = {
        issue.department: issue
        for issue in coordinator.issues()
        if issue.kind == "deadline_missed"
    }
    assert by_department["content"].severity == "critical"
    assert by_department["production"].severity == "medium"
    assert by_department["revenue"].severity == "high"
    production_issue_id = by_department["production"].id

    now[0] = START + timedelta(hours=60)
    asyncio.run(coordinator.monitor())
    missed = [issue for issue in coordinator.issues() if issue.kind == "deadline_missed"]
    assert len(missed) == 4
    production = next(issue for issue in missed if issue.department == "production")
    assert production.id == production_issue_id
    assert production.severity == "high"


def test_status_view_lists_departments_budget_and_issues() -> None:
    config = _config(["content"])
    coordinator = _coordinator(config, {"content": ScriptedExecutor()})
    asyncio.run(coordinator.plan())

    status = coordinator.status()

    assert status["phase"] == "planning"
    assert status["cycle_id"].startswith("cycle-")
    assert status["departments"]["content"]["worker"]["status"] == "online"
    assert status["departments"]["content"]["queue_depth"] == 0
    assert status["departments"]["content"]["queued"] == []
    assert status["departments"]["content"]["in_flight"] == []
    assert status["budget"]["spent_today"] == 120.0
    assert status["tasks"] == {"pending": 1}


@pytest.mark.parametrize(
    ("gap", "expected"),
    [(0.45, "critical"), (0.2, "high"), (0.95 - 0.9, "medium"), (0.01, "low")],
)
def test_severity_scales_with_success_rate_gap(gap: float, expected: str) -> None:
    assert severity_for_gap(gap) == expected


def test_severity_scales_with_lateness() -> None:
    assert severity_for_lateness(timedelta(hours=30)) == "critical"
    assert severity_for_lateness(timedelta(hours=7)) == "high"
    assert severity_for_lateness(timedelta(hours=1)) == "medium"
    assert severity_for_lateness(timedelta(minutes=5)) == "low"
