from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from contentfactory.models import Priority

DEFAULT_SPLIT: dict[str, float] = {
    "content": 0.30,
    "production": 0.25,
    "distribution": 0.25,
    "marketing": 0.15,
    "operations": 0.05,
}

DEFAULT_REQUIRES_APPROVAL = [
    "Major strategy pivots or business model changes",
    "Budget expenditure over $1000",
    "New market or platform entry",
    "Staff restructuring or role changes",
    "Partnership agreements and collaborations",
    "Brand guidelines major modifications",
    "Legal compliance deviations",
    "Product pricing changes",
    "Market expansion strategies",
    "Technology stack modifications",
]

DEFAULT_MUST_REPORT = [
    "Daily performance metrics and KPIs",
    "Revenue and expense summaries",
    "Department status updates",
    "System errors and resolutions",
    "Content performance analytics",
    "Budget utilization reports",
    "Security incidents or breaches",
    "Customer feedback and complaints",
    "Competitive analysis insights",
    "Strategic recommendations",
]

DEFAULT_AUTONOMOUS = [
    "Daily content themes and topics",
    "Team task assignment and prioritization",
    "Performance optimization strategies",
    "Content scheduling and publishing",
    "A/B testing experiments",
    "Resource allocation across departments",
    "Minor workflow adjustments",
    "Social media engagement responses",
    "Content format selection",
    "Posting frequency optimization",
    "Audience targeting refinements",
]

DEFAULT_THEMES = [
    "AI & Technology",
    "Business Growth",
    "Productivity Hacks",
    "Industry Insights",
    "Success Stories",
    "Market Analysis",
    "Innovation Trends",
    "Leadership Tips",
]

DEFAULT_FOLLOW_UPS = [
    "Review and optimize yesterday's content performance",
    "Scale successful content formats",
]


@dataclass(slots=True)
class TaskTemplate:
    department: str
    description: str
    priority: Priority = "medium"
    deadline_hours: float = 24.0
    cost: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "department": self.department,
            "description": self.description,
            "priority": self.priority,
            "deadline_hours": self.deadline_hours,
            "cost": self.cost,
        }


def _default_templates() -> list[TaskTemplate]:
    return [
        TaskTemplate("content", "Create 10+ social media posts", "high", 24.0, 120.0),
        TaskTemplate("production", "Produce 2 videos for weekly schedule", "medium", 48.0, 150.0),
        TaskTemplate(
            "distribution", "Schedule and publish content across platforms", "high", 12.0, 80.0
        ),
        TaskTemplate(
            "revenue", "Analyze conversion rates and optimize funnels", "medium", 36.0, 50.0
        ),
    ]


@dataclass(slots=True)
class BudgetConfig:
    daily_limit: float = 1000.0
    planning_budget: float = 800.0
    split: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_SPLIT))


@dataclass(slots=True)
class AutonomyConfig:
    requires_approval: list[str] = field(default_factory=lambda: list(DEFAULT_REQUIRES_APPROVAL))
    must_report: list[str] = field(default_factory=lambda: list(DEFAULT_MUST_REPORT))
    can_decide_autonomously: list[str] = field(default_factory=lambda: list(DEFAULT_AUTONOMOUS))
    approval_timeout_seconds: float = 30.0


@dataclass(slots=True)
class QueueConfig:
    max_attempts: int = 3


@dataclass(slots=True)
class WorkersConfig:
    concurrency: int = 1
    health_failure_limit: int = 3
    department_concurrency: dict[str, int] = field(default_factory=dict)

    def concurrency_for(self, department: str) -> int:
        return max(1, int(self.department_concurrency.get(department, self.concurrency)))


@dataclass(slots=True)
class MonitoringConfig:
    poll_interval_seconds: float = 5.0
    success_rate_threshold: float = 0.95
    max_monitor_seconds: float = 3600.0
    response_time_alpha: float = 0.3


@dataclass(slots=True)
class PlanningConfig:
    departments: list[str] = field(
        default_factory=lambda: ["content", "production", "distribution", "revenue"]
    )
    content_themes: list[str] = field(default_factory=lambda: list(DEFAULT_THEMES))
    theme_count: int = 4
    follow_ups: list[str] = field(default_factory=lambda: list(DEFAULT_FOLLOW_UPS))
    tasks: list[TaskTemplate] = field(default_factory=_default_templates)


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@dataclass(slots=True)
class FactoryConfig:
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    autonomy: AutonomyConfig = field(default_factory=AutonomyConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    workers: WorkersConfig = field(default_factory=WorkersConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    planning: PlanningConfig = field(default_factory=PlanningConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> FactoryConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> FactoryConfig:
        planning = dict(data.get("planning", {}))
        templates = planning.pop("tasks", None)
        planning_config = PlanningConfig(**planning)
        if templates is not None:
            planning_config.tasks = [TaskTemplate(**item) for item in templates]
        return cls(
            budget=BudgetConfig(**data.get("budget", {})),
            autonomy=AutonomyConfig(**data.get("autonomy", {})),
            queue=QueueConfig(**data.get("queue", {})),
            workers=WorkersConfig(**data.get("workers", {})),
            monitoring=MonitoringConfig(**data.get("monitoring", {})),
            planning=planning_config,
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "budget": {
                "daily_limit": self.budget.daily_limit,
                "planning_budget": self.budget.planning_budget,
                "split": dict(self.budget.split),
            },
            "autonomy": {
                "requires_approval": list(self.autonomy.requires_approval),
                "must_report": list(self.autonomy.must_report),
                "can_decide_autonomously": list(self.autonomy.can_decide_autonomously),
                "approval_timeout_seconds": self.autonomy.approval_timeout_seconds,
            },
            "queue": {
                "max_attempts": self.queue.max_attempts,
            },
            "workers": {
                "concurrency": self.workers.concurrency,
                "health_failure_limit": self.workers.health_failure_limit,
                "department_concurrency": dict(self.workers.department_concurrency),
            },
            "monitoring": {
                "poll_interval_seconds": self.monitoring.poll_interval_seconds,
                "success_rate_threshold": self.monitoring.success_rate_threshold,
                "max_monitor_seconds": self.monitoring.max_monitor_seconds,
                "response_time_alpha": self.monitoring.response_time_alpha,
            },
            "planning": {
                "departments": list(self.planning.departments),
                "content_themes": list(self.planning.content_themes),
                "theme_count": self.planning.theme_count,
                "follow_ups": list(self.planning.follow_ups),
                "tasks": [template.to_dict() for template in self.planning.tasks],
            },
            "logging": {
                "level": self.logging.level,
                "format": self.logging.format,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        if not value:
            return "{}"
        items = ", ".join(
            f"{json.dumps(str(key))} = {_toml_value(item)}" for key, item in value.items()
        )
        return "{ " + items + " }"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: FactoryConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["budget", "autonomy", "queue", "workers", "monitoring", "planning", "logging"]
    for section in section_order:
        tables: list[tuple[str, list[dict]]] = []
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            if isinstance(value, list) and value and all(isinstance(item, dict) for item in value):
                tables.append((key, value))
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
        for key, items in tables:
            for item in items:
                lines.append(f"[[{section}.{key}]]")
                for item_key, item_value in item.items():
                    lines.append(f"{item_key} = {_toml_value(item_value)}")
                lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> FactoryConfig:
    if not path.exists():
        return FactoryConfig.default()
    return FactoryConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: FactoryConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
