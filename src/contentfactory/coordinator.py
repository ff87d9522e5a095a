from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Literal
from uuid import uuid4

from contentfactory.aggregator import StatusAggregator
from contentfactory.config import FactoryConfig
from contentfactory.errors import (
    AggregationUnavailable,
    BudgetExceeded,
    CycleCancelled,
    DepartmentUnavailable,
    DispatchError,
    PermanentTaskFailure,
)
from contentfactory.gate import AutonomyGate
from contentfactory.metrics import (
    DAILY_POST_TARGET,
    MONTHLY_REVENUE_TARGET,
    MetricsSource,
    StaticMetricsSource,
)
from contentfactory.models import (
    KPI,
    SEVERITY_RANK,
    Achievement,
    AutonomyDecision,
    BudgetAllocation,
    ContentMetrics,
    DailyPlan,
    DailyReport,
    Issue,
    PerformanceMetrics,
    Proposal,
    RevenueMetrics,
    Severity,
    StatusSnapshot,
    Task,
    WorkerResult,
    utcnow,
)
from contentfactory.registry import Department, DepartmentRegistry

logger = logging.getLogger(__name__)

Phase = Literal["idle", "planning", "dispatch", "monitoring", "reporting"]
CycleStatus = Literal["complete", "aborted", "cancelled"]


def severity_for_gap(gap: float) -> Severity:
    gap = round(gap, 6)
    if gap >= 0.3:
        return "critical"
    if gap >= 0.15:
        return "high"
    if gap >= 0.05:
        return "medium"
    return "low"


def severity_for_lateness(lateness: timedelta) -> Severity:
    hours = lateness.total_seconds() / 3600.0
    if hours >= 24:
        return "critical"
    if hours >= 6:
        return "high"
    if hours >= 1:
        return "medium"
    return "low"


@dataclass(slots=True)
class CycleResult:
    cycle_id: str
    status: CycleStatus
    plan: DailyPlan | None = None
    report: DailyReport | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "status": self.status,
            "plan": self.plan.to_dict() if self.plan else None,
            "report": self.report.to_dict() if self.report else None,
            "error": self.error,
        }


class Coordinator:
    """Runs the daily cycle: planning, dispatch, monitoring and reporting.

    The coordinator never executes work itself. It plans tasks, routes them
    through the department queues to the department workers, watches the
    aggregated status while the drains run, and turns failures into issues
    for the evening report. Pending work from a cancelled or aborted cycle
    is carried into the next one.
    """

    def __init__(
        self,
        registry: DepartmentRegistry,
        aggregator: StatusAggregator,
        gate: AutonomyGate,
        config: FactoryConfig,
        *,
        metrics_source: MetricsSource | None = None,
        clock: Callable[[], datetime] | None = None,
        archive_limit: int = 500,
    ) -> None:
        self.registry = registry
        self.aggregator = aggregator
        self.gate = gate
        self.config = config
        self.metrics_source = metrics_source or StaticMetricsSource()
        self.clock = clock or utcnow

        self.phase: Phase = "idle"
        self.phase_history: list[dict[str, str]] = []
        self.cycle_id: str | None = None
        self.cycle_started_at: datetime | None = None

        # oldest terminal tasks fall off once the limit is reached
        self._archive: deque[Task] = deque(maxlen=max(1, int(archive_limit)))
        self._reported = False
        self._cycle_counter = 0
        self._tasks: dict[str, Task] = {}
        self._carried: list[Task] = []
        self._priorities: dict[str, AutonomyDecision] = {}
        self._issues: dict[tuple[str, str, str | None], Issue] = {}
        self._drains: dict[str, asyncio.Task[None]] = {}
        self._plan: DailyPlan | None = None
        self._cancel_event = asyncio.Event()

        for department in self.registry:
            department.worker.add_result_hook(self.aggregator.record)

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    @property
    def carried_over(self) -> list[Task]:
        return list(self._carried)

    @property
    def archive(self) -> list[Task]:
        return list(self._archive)

    def issues(self) -> list[Issue]:
        return list(self._issues.values())

    def cancel(self) -> None:
        if not self._cancel_event.is_set():
            logger.warning("Cancellation requested for cycle %s", self.cycle_id or "(next)")
        self._cancel_event.set()

    def _enter(self, phase: Phase) -> None:
        self.phase = phase
        self.phase_history.append(
            {
                "cycle_id": self.cycle_id or "",
                "phase": phase,
                "at": self.clock().isoformat(),
            }
        )
        logger.info("Cycle %s entering %s", self.cycle_id, phase)

    def _begin_cycle(self) -> str:
        self._cycle_counter += 1
        started = self.clock()
        self.cycle_id = f"cycle-{started:%Y%m%d}-{self._cycle_counter:03d}"
        self.cycle_started_at = started
        self._tasks = {}
        self._priorities = {}
        self._issues = {}
        self._drains = {}
        self._plan = None
        self._reported = False
        return self.cycle_id

    def _open_cycle(self) -> str:
        if self.cycle_id is not None:
            self._end_cycle()
        return self._begin_cycle()

    def _end_cycle(self) -> None:
        for department in self.registry:
            department.queue.drain()
        carried: list[Task] = list(self._carried)
        for task in self._tasks.values():
            if task.status == "in-progress":
                # only reachable when a drain was torn down mid-flight
                task.status = "pending"
            if task.status == "pending":
                task.assigned_worker = None
                task.started_at = None
                carried.append(task)
            else:
                self._archive.append(task)
        self._carried = carried
        if carried:
            logger.info("Carrying %d pending task(s) into the next cycle", len(carried))
        self._tasks = {}
        self._drains = {}
        self.cycle_id = None
        self.phase = "idle"
        self._cancel_event = asyncio.Event()

    def _record_issue(
        self,
        *,
        kind: str,
        severity: Severity,
        description: str,
        department: str,
        task_id: str | None = None,
    ) -> Issue:
        key = (kind, department, task_id)
        existing = self._issues.get(key)
        if existing is not None:
            if SEVERITY_RANK[severity] > SEVERITY_RANK[existing.severity]:
                logger.warning(
                    "Issue %s escalated from %s to %s: %s",
                    existing.id,
                    existing.severity,
                    severity,
                    description,
                )
                existing.severity = severity
                existing.description = description
            return existing

        issue = Issue(
            id=f"issue-{uuid4().hex[:8]}",
            severity=severity,
            kind=kind,
            description=description,
            department=department,
            task_id=task_id,
            reported_at=self.clock(),
        )
        self._issues[key] = issue
        logger.warning("Issue %s [%s/%s] %s", issue.id, severity, kind, description)
        return issue

    def _issue_from_error(
        self,
        error: DispatchError,
        *,
        kind: str,
        severity: Severity,
        task_id: str | None = None,
    ) -> Issue:
        return self._record_issue(
            kind=kind,
            severity=severity,
            description=str(error),
            department=error.department or "coordinator",
            task_id=task_id,
        )

    def _snapshot(self) -> StatusSnapshot | None:
        """Take a status snapshot, recording an issue if the aggregator fails."""
        try:
            return self.aggregator.snapshot()
        except Exception as exc:
            logger.exception("Status snapshot failed during %s", self.phase)
            error = AggregationUnavailable(f"Status snapshot failed during {self.phase}: {exc}")
            self._issue_from_error(error, kind="aggregation_unavailable", severity="high")
            return None

    # planning

    def _allocate_budget(self) -> BudgetAllocation:
        total = min(self.config.budget.planning_budget, self.gate.ledger.daily_limit)
        return BudgetAllocation.from_split(total, self.config.budget.split)

    def _generate_tasks(self) -> list[Task]:
        assert self.cycle_id is not None and self.cycle_started_at is not None
        created: list[Task] = []
        counters: dict[str, int] = {}
        for template in self.config.planning.tasks:
            if template.department not in self.registry:
                logger.debug("Skipping template for unregistered department %s", template.department)
                continue
            counters[template.department] = counters.get(template.department, 0) + 1
            task_id = f"{self.cycle_id}-{template.department}-{counters[template.department]}"
            if task_id in self._tasks:
                continue
            task = Task(
                id=task_id,
                department=template.department,
                description=template.description,
                priority=template.priority,
                deadline=self.cycle_started_at + timedelta(hours=template.deadline_hours),
                cost=template.cost,
                created_at=self.cycle_started_at,
            )
            self._tasks[task.id] = task
            created.append(task)
        return created

    def _select_themes(self) -> tuple[str, ...]:
        count = max(0, int(self.config.planning.theme_count))
        return tuple(self.config.planning.content_themes[:count])

    def _kpis(self, snapshot: StatusSnapshot) -> tuple[KPI, ...]:
        content = self.metrics_source.content()
        revenue = self.metrics_source.revenue()
        departments = list(self.registry)
        online = sum(1 for item in departments if item.worker.status != "offline")
        uptime = round(100.0 * online / len(departments), 1) if departments else 0.0
        return (
            KPI(
                name="Daily Content Production",
                current=float(content.posts_created),
                target=float(DAILY_POST_TARGET),
                unit="posts",
                trend="up" if content.posts_created >= DAILY_POST_TARGET else "stable",
            ),
            KPI(
                name="System Uptime",
                current=uptime,
                target=100.0,
                unit="%",
                trend="stable" if uptime == 100.0 else "down",
            ),
            KPI(
                name="Monthly Revenue",
                current=revenue.monthly_revenue,
                target=MONTHLY_REVENUE_TARGET,
                unit="$",
                trend="up" if revenue.growth > 0 else "stable",
            ),
            KPI(
                name="Task Success Rate",
                current=round(100.0 * snapshot.system.success_rate, 1),
                target=round(100.0 * self.config.monitoring.success_rate_threshold, 1),
                unit="%",
            ),
        )

    async def _fund_tasks(self, tasks: list[Task]) -> None:
        for task in tasks:
            decision = await self.gate.submit(
                f"{task.department}: {task.description}",
                task.cost,
                task.department,
            )
            if decision.executable:
                continue
            task.status = "blocked"
            task.failure_reason = decision.rationale
            error = BudgetExceeded(
                f"Task {task.id} blocked: {decision.rationale} (cost {task.cost:.2f})",
                department=task.department,
            )
            self._issue_from_error(error, kind="budget_exceeded", severity="medium", task_id=task.id)

    async def plan(self, proposals: Iterable[Proposal] = ()) -> DailyPlan:
        if self.cycle_id is None or self._reported:
            self._open_cycle()
        self._enter("planning")
        if self.cancel_requested:
            raise CycleCancelled(f"Cycle {self.cycle_id} cancelled before planning.")

        try:
            snapshot = self.aggregator.snapshot()
        except Exception as exc:
            raise AggregationUnavailable(f"Status snapshot failed: {exc}") from exc

        allocation = self._allocate_budget()
        self.gate.ledger.set_caps(allocation.as_caps(self.registry.names()))

        for task in self._carried:
            self._tasks.setdefault(task.id, task)
        self._carried = []

        created = self._generate_tasks()
        await self._fund_tasks(created)

        for proposal in proposals:
            if proposal.action in self._priorities:
                continue
            decision = await self.gate.submit(proposal.action, proposal.cost, proposal.department)
            if decision.executable:
                self._priorities[proposal.action] = decision

        self._plan = DailyPlan(
            cycle_id=self.cycle_id or "",
            date=self.cycle_started_at or self.clock(),
            content_themes=self._select_themes(),
            budget_allocation=allocation,
            department_tasks=tuple(task.copy() for task in self._tasks.values()),
            kpis=self._kpis(snapshot),
            priorities=tuple(self._priorities.values()),
            snapshot=snapshot,
        )
        logger.info(
            "Planned cycle %s: %d task(s), %d new, %d active priorities",
            self.cycle_id,
            len(self._tasks),
            len(created),
            len(self._priorities),
        )
        return self._plan

    # dispatch

    async def dispatch(self) -> None:
        self._enter("dispatch")
        if self.cancel_requested:
            logger.info("Cycle %s cancelled; nothing dispatched", self.cycle_id)
            return

        for department in self.registry:
            try:
                self._dispatch_department(department)
            except Exception as exc:
                logger.exception("Dispatch to %s failed", department.name)
                self._record_issue(
                    kind="department_error",
                    severity="high",
                    description=f"Dispatch failed: {type(exc).__name__}: {exc}",
                    department=department.name,
                )

    def _dispatch_department(self, department: Department) -> None:
        pending = [
            task
            for task in self._tasks.values()
            if task.department == department.name and task.status == "pending"
        ]
        if department.worker.status == "offline":
            error = DepartmentUnavailable(
                f"Department {department.name} is offline; {len(pending)} task(s) held back",
                department=department.name,
            )
            self._issue_from_error(error, kind="department_unavailable", severity="high")
            return
        for task in pending:
            department.queue.enqueue(task)
        if department.name in self._drains and not self._drains[department.name].done():
            return
        self._drains[department.name] = asyncio.create_task(
            self._drain(department),
            name=f"drain:{department.name}",
        )
        logger.info("Dispatched %d task(s) to %s", len(pending), department.worker.name)

    def _fill(self, department: Department, running: set[asyncio.Task[WorkerResult]]) -> None:
        worker, queue = department.worker, department.queue
        while worker.has_capacity:
            task = queue.dequeue()
            if task is None:
                return
            assignment = worker.assign(task, self._cancel_event)
            if not assignment.accepted or assignment.handle is None:
                logger.debug("%s rejected %s (%s)", worker.name, task.id, assignment.reason)
                queue.enqueue(task)
                return
            running.add(assignment.handle)

    def _settle(self, department: Department, result: WorkerResult) -> None:
        task = result.task
        if result.cancelled:
            logger.info("Task %s returned to pending after cancellation", task.id)
            return
        if result.succeeded:
            logger.info("Task %s completed by %s", task.id, department.worker.name)
            return

        reason = result.error or "unknown failure"
        if result.retriable:
            if department.queue.requeue(task, reason):
                return
        else:
            department.queue.fail(task, reason)
        error = PermanentTaskFailure(
            f"Task {task.id} failed after {task.attempts} attempt(s): {reason}",
            department=department.name,
        )
        self._issue_from_error(error, kind="task_failed", severity="high", task_id=task.id)

    async def _drain(self, department: Department) -> None:
        running: set[asyncio.Task[WorkerResult]] = set()
        try:
            while True:
                if not self.cancel_requested:
                    self._fill(department, running)
                if not running:
                    break
                done, running = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for handle in done:
                    if not handle.cancelled():
                        self._settle(department, handle.result())
        except Exception as exc:
            logger.exception("Drain for %s failed", department.name)
            self._record_issue(
                kind="department_error",
                severity="high",
                description=f"{type(exc).__name__}: {exc}",
                department=department.name,
            )
            return

        held = department.queue.depth
        if held and department.worker.status == "offline":
            error = DepartmentUnavailable(
                f"Department {department.name} went offline with {held} task(s) queued",
                department=department.name,
            )
            self._issue_from_error(error, kind="department_unavailable", severity="high")

    # monitoring

    async def _poll(self) -> None:
        now = self.clock()
        for department in self.registry:
            worker = department.worker
            await worker.check_health()
            logger.debug(
                "%s: status %s, load %d/%d, queue depth %d",
                worker.name,
                worker.status,
                worker.current_load,
                worker.concurrency,
                department.queue.depth,
            )
            if worker.status == "offline":
                error = DepartmentUnavailable(
                    f"Department {department.name} is offline",
                    department=department.name,
                )
                self._issue_from_error(error, kind="department_unavailable", severity="high")

        threshold = self.config.monitoring.success_rate_threshold
        snapshot = self._snapshot()
        departments = snapshot.departments if snapshot is not None else {}
        for name, metrics in departments.items():
            if metrics.total == 0 or metrics.success_rate >= threshold:
                continue
            self._record_issue(
                kind="low_success_rate",
                severity=severity_for_gap(threshold - metrics.success_rate),
                description=(
                    f"{name} success rate {metrics.success_rate:.0%} is below "
                    f"{threshold:.0%} ({metrics.completed}/{metrics.total})"
                ),
                department=name,
            )

        for task in self._tasks.values():
            if task.status not in ("pending", "in-progress") or task.deadline >= now:
                continue
            lateness = now - task.deadline
            self._record_issue(
                kind="deadline_missed",
                severity=severity_for_lateness(lateness),
                description=f"Task {task.id} is {lateness} past its deadline",
                department=task.department,
                task_id=task.id,
            )

    async def monitor(self) -> list[Issue]:
        self._enter("monitoring")
        loop = asyncio.get_running_loop()
        interval = max(0.01, float(self.config.monitoring.poll_interval_seconds))
        deadline = loop.time() + max(0.0, float(self.config.monitoring.max_monitor_seconds))

        while True:
            await self._poll()
            active = [drain for drain in self._drains.values() if not drain.done()]
            if not active:
                break
            remaining = deadline - loop.time()
            if remaining <= 0:
                self._record_issue(
                    kind="cycle_timeout",
                    severity="medium",
                    description=(
                        f"Cycle {self.cycle_id} still had {len(active)} active department(s) "
                        f"after {self.config.monitoring.max_monitor_seconds:.0f}s"
                    ),
                    department="coordinator",
                )
                await self._stop_drains()
                break
            await asyncio.wait(active, timeout=min(interval, remaining))
        return [issue for issue in self._issues.values() if issue.status != "resolved"]

    async def _stop_drains(self) -> None:
        drains = [drain for drain in self._drains.values() if not drain.done()]
        for drain in drains:
            drain.cancel()
        if drains:
            await asyncio.gather(*drains, return_exceptions=True)
        for department in self.registry:
            await department.worker.cancel_in_flight()

    # reporting

    def _achievements(
        self,
        completed: list[Task],
        content: ContentMetrics,
        revenue: RevenueMetrics,
        snapshot: StatusSnapshot,
    ) -> tuple[Achievement, ...]:
        now = self.clock()
        achievements: list[Achievement] = []
        planned = len(self._tasks)
        if planned and len(completed) == planned:
            achievements.append(
                Achievement(
                    id=f"ach-{uuid4().hex[:8]}",
                    type="milestone",
                    description=f"All {planned} planned task(s) completed",
                    value=float(planned),
                    date=now,
                )
            )
        if content.posts_created >= DAILY_POST_TARGET:
            achievements.append(
                Achievement(
                    id=f"ach-{uuid4().hex[:8]}",
                    type="content",
                    description=f"Daily post target reached ({content.posts_created} posts)",
                    value=float(content.posts_created),
                    date=now,
                )
            )
        if revenue.daily_revenue > 0:
            achievements.append(
                Achievement(
                    id=f"ach-{uuid4().hex[:8]}",
                    type="revenue",
                    description=f"Generated ${revenue.daily_revenue:,.2f} today",
                    value=revenue.daily_revenue,
                    date=now,
                )
            )
        for name, metrics in snapshot.departments.items():
            if metrics.total and metrics.success_rate == 1.0:
                achievements.append(
                    Achievement(
                        id=f"ach-{uuid4().hex[:8]}",
                        type="performance",
                        description=f"{name} kept a perfect success rate",
                        value=float(metrics.total),
                        date=now,
                    )
                )
        return tuple(achievements)

    async def _wait_in_flight(self) -> None:
        drains = [drain for drain in self._drains.values() if not drain.done()]
        if drains:
            await asyncio.gather(*drains, return_exceptions=True)
        for department in self.registry:
            await department.worker.wait_idle()

    async def report(self) -> DailyReport:
        self._enter("reporting")
        await self._wait_in_flight()
        for department in self.registry:
            department.queue.drain()

        completed = [task for task in self._tasks.values() if task.status == "completed"]
        failed: dict[str, Task] = {}
        for department in self.registry:
            for task in department.queue.take_failed():
                failed[task.id] = task
        for task in self._tasks.values():
            if task.status == "failed":
                failed.setdefault(task.id, task)
        pending = [task for task in self._tasks.values() if task.status == "pending"]

        snapshot = self._snapshot() or StatusSnapshot(
            departments=MappingProxyType({}),
            system=PerformanceMetrics(),
            taken_at=self.clock(),
        )
        revenue = self.metrics_source.revenue()
        content = self.metrics_source.content()
        decisions = self.gate.reportable()
        _, denials = self.gate.take_trail()
        ledger = self.gate.ledger

        report = DailyReport(
            cycle_id=self.cycle_id or "",
            date=self.clock(),
            performance=snapshot.system,
            departments=snapshot.departments,
            revenue=revenue,
            content=content,
            completed_tasks=tuple(task.copy() for task in completed),
            failed_tasks=tuple(task.copy() for task in failed.values()),
            issues=tuple(self._issues.values()) + tuple(denials),
            achievements=self._achievements(completed, content, revenue, snapshot),
            decisions=tuple(decisions),
            tomorrows_plan=tuple(
                [f"Carry over: {task.description} ({task.department})" for task in pending]
                + list(self.config.planning.follow_ups)
            ),
            budget={
                "daily_limit": ledger.daily_limit,
                "spent": round(ledger.spent_today, 2),
                "remaining": round(ledger.remaining, 2),
                "approved_overrides": round(ledger.approved_overrides, 2),
            },
        )
        ledger.reset()
        for task in list(self._tasks.values()):
            if task.status in ("completed", "failed", "blocked"):
                self._archive.append(self._tasks.pop(task.id))
        self._reported = True
        logger.info(
            "Report for %s: %d completed, %d failed, %d issue(s), %d carried over",
            report.cycle_id,
            len(report.completed_tasks),
            len(report.failed_tasks),
            len(report.issues),
            len(pending),
        )
        return report

    async def run_cycle(self, proposals: Iterable[Proposal] = ()) -> CycleResult:
        cycle_id = self._open_cycle()
        plan: DailyPlan | None = None
        try:
            plan = await self.plan(proposals)
            await self.dispatch()
            await self.monitor()
            report = await self.report()
            status: CycleStatus = "cancelled" if self.cancel_requested else "complete"
        except AggregationUnavailable as exc:
            logger.error("Planning aborted for %s: %s", cycle_id, exc)
            return CycleResult(cycle_id=cycle_id, status="aborted", error=str(exc))
        except CycleCancelled as exc:
            logger.warning("%s", exc)
            return CycleResult(cycle_id=cycle_id, status="cancelled", error=str(exc))
        except asyncio.CancelledError:
            await self._stop_drains()
            raise
        except Exception as exc:
            logger.exception("Cycle %s aborted in %s", cycle_id, self.phase)
            await self._stop_drains()
            return CycleResult(
                cycle_id=cycle_id,
                status="aborted",
                plan=plan,
                error=f"{type(exc).__name__}: {exc}",
            )
        finally:
            self._end_cycle()

        logger.info("Cycle %s finished: %s", cycle_id, status)
        return CycleResult(cycle_id=cycle_id, status=status, plan=plan, report=report)

    def status(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        for task in self._tasks.values():
            counts[task.status] = counts.get(task.status, 0) + 1
        return {
            "cycle_id": self.cycle_id,
            "phase": self.phase,
            "cancel_requested": self.cancel_requested,
            "departments": {
                department.name: {
                    "worker": department.worker.handle().to_dict(),
                    "queue_depth": department.queue.depth,
                    "queued": [task.id for task in department.queue.snapshot()],
                    "in_flight": [task.id for task in department.worker.in_flight()],
                }
                for department in self.registry
            },
            "budget": self.gate.ledger.to_dict(),
            "tasks": counts,
            "carried_over": len(self._carried),
            "issues": [
                issue.to_dict() for issue in self._issues.values() if issue.status != "resolved"
            ],
            "phase_history": list(self.phase_history[-8:]),
        }
