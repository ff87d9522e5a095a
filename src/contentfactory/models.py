from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any, Literal

Priority = Literal["high", "medium", "low"]
TaskStatus = Literal["pending", "in-progress", "completed", "blocked", "failed"]
WorkerStatus = Literal["online", "busy", "offline"]
Outcome = Literal["success", "failure"]
ClassificationKind = Literal["auto", "approval-required", "must-report"]
Severity = Literal["critical", "high", "medium", "low"]
IssueStatus = Literal["open", "in-progress", "resolved"]

PRIORITY_RANK: dict[str, int] = {"high": 0, "medium": 1, "low": 2}
SEVERITY_RANK: dict[str, int] = {"low": 0, "medium": 1, "high": 2, "critical": 3}
TERMINAL_STATUSES = frozenset({"completed", "failed"})


def utcnow() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


@dataclass(slots=True)
class Task:
    id: str
    department: str
    description: str
    priority: Priority = "medium"
    deadline: datetime = field(default_factory=utcnow)
    assigned_worker: str | None = None
    status: TaskStatus = "pending"
    attempts: int = 0
    cost: float = 0.0
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failure_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def copy(self) -> Task:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "department": self.department,
            "description": self.description,
            "priority": self.priority,
            "deadline": _iso(self.deadline),
            "assigned_worker": self.assigned_worker,
            "status": self.status,
            "attempts": self.attempts,
            "cost": self.cost,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "failure_reason": self.failure_reason,
        }


@dataclass(slots=True)
class PerformanceMetrics:
    completed: int = 0
    total: int = 0
    success_rate: float = 0.0
    avg_response_time: float = 0.0

    def copy(self) -> PerformanceMetrics:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed": self.completed,
            "total": self.total,
            "success_rate": round(self.success_rate, 4),
            "avg_response_time": round(self.avg_response_time, 4),
        }


@dataclass(slots=True)
class WorkerHandle:
    name: str
    department: str
    status: WorkerStatus = "online"
    current_load: int = 0
    concurrency: int = 1
    performance: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    consecutive_health_failures: int = 0
    last_update: datetime = field(default_factory=utcnow)

    def copy(self) -> WorkerHandle:
        return replace(self, performance=self.performance.copy())

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "department": self.department,
            "status": self.status,
            "current_load": self.current_load,
            "concurrency": self.concurrency,
            "performance": self.performance.to_dict(),
            "consecutive_health_failures": self.consecutive_health_failures,
            "last_update": _iso(self.last_update),
        }


@dataclass(slots=True)
class WorkerResult:
    task: Task
    outcome: Outcome
    metrics: dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0
    error: str | None = None
    retriable: bool = True
    cancelled: bool = False

    @property
    def department(self) -> str:
        return self.task.department

    @property
    def succeeded(self) -> bool:
        return self.outcome == "success"


@dataclass(slots=True)
class Proposal:
    action: str
    cost: float = 0.0
    department: str | None = None


@dataclass(slots=True)
class AutonomyDecision:
    action: str
    classification: ClassificationKind
    rationale: str
    cost: float = 0.0
    department: str | None = None
    report: bool = False
    resolved: Literal["approved", "denied"] | None = None
    decided_at: datetime = field(default_factory=utcnow)

    @property
    def executable(self) -> bool:
        if self.classification == "approval-required":
            return self.resolved == "approved"
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "classification": self.classification,
            "rationale": self.rationale,
            "cost": self.cost,
            "department": self.department,
            "report": self.report,
            "resolved": self.resolved,
            "decided_at": _iso(self.decided_at),
        }


@dataclass(slots=True, frozen=True)
class BudgetAllocation:
    total: float
    shares: Mapping[str, float]

    @classmethod
    def from_split(cls, total: float, split: Mapping[str, float]) -> BudgetAllocation:
        shares = {name: round(total * float(ratio), 2) for name, ratio in split.items()}
        return cls(total=total, shares=MappingProxyType(shares))

    def as_caps(self, departments: list[str]) -> dict[str, float]:
        return {name: self.shares[name] for name in departments if name in self.shares}

    def to_dict(self) -> dict[str, Any]:
        return {"total": self.total, **dict(self.shares)}


@dataclass(slots=True)
class Issue:
    id: str
    severity: Severity
    kind: str
    description: str
    department: str
    status: IssueStatus = "open"
    task_id: str | None = None
    reported_at: datetime = field(default_factory=utcnow)
    resolved_at: datetime | None = None

    def resolve(self, at: datetime | None = None) -> None:
        self.status = "resolved"
        self.resolved_at = at or utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity,
            "kind": self.kind,
            "description": self.description,
            "department": self.department,
            "status": self.status,
            "task_id": self.task_id,
            "reported_at": _iso(self.reported_at),
            "resolved_at": _iso(self.resolved_at),
        }


@dataclass(slots=True, frozen=True)
class Achievement:
    id: str
    type: Literal["milestone", "performance", "revenue", "content"]
    description: str
    value: float
    date: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "description": self.description,
            "value": self.value,
            "date": _iso(self.date),
        }


@dataclass(slots=True, frozen=True)
class KPI:
    name: str
    current: float
    target: float
    unit: str
    trend: Literal["up", "down", "stable"] = "stable"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "current": self.current,
            "target": self.target,
            "unit": self.unit,
            "trend": self.trend,
        }


@dataclass(slots=True, frozen=True)
class RevenueSource:
    platform: str
    amount: float
    percentage: float


@dataclass(slots=True, frozen=True)
class RevenueMetrics:
    daily_revenue: float = 0.0
    monthly_revenue: float = 0.0
    target: float = 0.0
    growth: float = 0.0
    sources: tuple[RevenueSource, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "daily_revenue": self.daily_revenue,
            "monthly_revenue": self.monthly_revenue,
            "target": self.target,
            "growth": self.growth,
            "sources": [
                {"platform": item.platform, "amount": item.amount, "percentage": item.percentage}
                for item in self.sources
            ],
        }


@dataclass(slots=True, frozen=True)
class ContentMetrics:
    posts_created: int = 0
    videos_produced: int = 0
    audio_stories_generated: int = 0
    blog_posts_written: int = 0
    engagement_rate: float = 0.0
    reach_total: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "posts_created": self.posts_created,
            "videos_produced": self.videos_produced,
            "audio_stories_generated": self.audio_stories_generated,
            "blog_posts_written": self.blog_posts_written,
            "engagement_rate": self.engagement_rate,
            "reach_total": self.reach_total,
        }


@dataclass(slots=True, frozen=True)
class StatusSnapshot:
    departments: Mapping[str, PerformanceMetrics]
    system: PerformanceMetrics
    taken_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "departments": {
                name: metrics.to_dict() for name, metrics in self.departments.items()
            },
            "system": self.system.to_dict(),
            "taken_at": _iso(self.taken_at),
        }


@dataclass(slots=True, frozen=True)
class DailyPlan:
    cycle_id: str
    date: datetime
    content_themes: tuple[str, ...]
    budget_allocation: BudgetAllocation
    department_tasks: tuple[Task, ...]
    kpis: tuple[KPI, ...]
    priorities: tuple[AutonomyDecision, ...]
    snapshot: StatusSnapshot

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "date": _iso(self.date),
            "content_themes": list(self.content_themes),
            "budget_allocation": self.budget_allocation.to_dict(),
            "department_tasks": [task.to_dict() for task in self.department_tasks],
            "kpis": [kpi.to_dict() for kpi in self.kpis],
            "priorities": [decision.to_dict() for decision in self.priorities],
            "snapshot": self.snapshot.to_dict(),
        }


@dataclass(slots=True, frozen=True)
class DailyReport:
    cycle_id: str
    date: datetime
    performance: PerformanceMetrics
    departments: Mapping[str, PerformanceMetrics]
    revenue: RevenueMetrics
    content: ContentMetrics
    completed_tasks: tuple[Task, ...]
    failed_tasks: tuple[Task, ...]
    issues: tuple[Issue, ...]
    achievements: tuple[Achievement, ...]
    decisions: tuple[AutonomyDecision, ...]
    tomorrows_plan: tuple[str, ...]
    budget: Mapping[str, float]

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "date": _iso(self.date),
            "performance": self.performance.to_dict(),
            "departments": {
                name: metrics.to_dict() for name, metrics in self.departments.items()
            },
            "revenue": self.revenue.to_dict(),
            "content": self.content.to_dict(),
            "completed_tasks": [task.to_dict() for task in self.completed_tasks],
            "failed_tasks": [task.to_dict() for task in self.failed_tasks],
            "issues": [issue.to_dict() for issue in self.issues],
            "achievements": [item.to_dict() for item in self.achievements],
            "decisions": [decision.to_dict() for decision in self.decisions],
            "tomorrows_plan": list(self.tomorrows_plan),
            "budget": dict(self.budget),
        }
