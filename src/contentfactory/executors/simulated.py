"""
Seeded stand-in executors for demo runs of the dispatch core.

They mimic the departments of the content factory prototype (posts, videos,
publications, funnel analysis) without calling any external service, and
they double as the metrics source for the CLI's reports.
"""
from __future__ import annotations

import asyncio
import random
import re
from collections.abc import Iterable

from contentfactory.executors.base import (
    ExecutionCancelled,
    ExecutionError,
    ExecutionOutcome,
    WorkExecutor,
)
from contentfactory.metrics import MONTHLY_REVENUE_TARGET, MetricsSource
from contentfactory.models import ContentMetrics, RevenueMetrics, RevenueSource, Task

POST_TEMPLATES = [
    "Did you know that AI can increase productivity by 40%?",
    "Top 5 business automation tools every entrepreneur needs",
    "The future of work is here - embrace the change!",
    "How AI is transforming customer service",
    "Building passive income streams with AI automation",
]

OPTIMIZATION_STRATEGIES = [
    "Add more visual hooks",
    "Use trending hashtags",
    "Optimize posting times",
    "Add call-to-action at the end",
]

REVENUE_PLATFORMS = ["YouTube", "Instagram", "Blog", "Courses"]

UNIT_PATTERN = re.compile(r"(\d+)")
MAX_UNITS = 20


class SimulatedExecutor(WorkExecutor):
    def __init__(
        self,
        department: str,
        *,
        seed: int | None = None,
        failure_rate: float = 0.0,
        unit_delay_seconds: float = 0.0,
        healthy: bool = True,
    ) -> None:
        self.department = department
        self.rng = random.Random(seed)
        self.failure_rate = min(1.0, max(0.0, float(failure_rate)))
        self.unit_delay_seconds = max(0.0, float(unit_delay_seconds))
        self.healthy = healthy
        self.buffer: list[str] = []
        self.units_produced = 0
        self.revenue_by_platform: dict[str, float] = {}
        self.engagement = 0.0

    @staticmethod
    def _units_for(task: Task) -> int:
        match = UNIT_PATTERN.search(task.description)
        if not match:
            return 1
        return max(1, min(MAX_UNITS, int(match.group(1))))

    def _produce_unit(self, index: int) -> None:
        if self.department == "content":
            template = self.rng.choice(POST_TEMPLATES)
            self.buffer.append(f"Post {index + 1}: {template}")
        elif self.department == "revenue":
            platform = self.rng.choice(REVENUE_PLATFORMS)
            amount = round(self.rng.uniform(50.0, 400.0), 2)
            self.revenue_by_platform[platform] = (
                self.revenue_by_platform.get(platform, 0.0) + amount
            )
        else:
            self.buffer.append(f"{self.department} unit {index + 1}")
        self.units_produced += 1

    async def execute(self, task: Task, cancel_event: asyncio.Event) -> ExecutionOutcome:
        units = self._units_for(task)
        for index in range(units):
            if cancel_event.is_set():
                raise ExecutionCancelled(f"Cancelled after {index} of {units} units.")
            self._produce_unit(index)
            if self.unit_delay_seconds:
                await asyncio.sleep(self.unit_delay_seconds)
            else:
                await asyncio.sleep(0)

        if self.rng.random() < self.failure_rate:
            raise ExecutionError(
                f"Simulated {self.department} failure for task {task.id}",
                retriable=True,
                metrics={"units": units},
            )

        strategy = self.rng.choice(OPTIMIZATION_STRATEGIES)
        self.engagement += self.rng.random() * 0.02
        return ExecutionOutcome(
            success=True,
            metrics={"units": units, "strategy": strategy},
        )

    async def health_check(self) -> bool:
        return self.healthy


class SimulatedMetricsSource(MetricsSource):
    def __init__(self, executors: Iterable[SimulatedExecutor]) -> None:
        self.executors = {executor.department: executor for executor in executors}

    def _units(self, department: str) -> int:
        executor = self.executors.get(department)
        return executor.units_produced if executor else 0

    def revenue(self) -> RevenueMetrics:
        executor = self.executors.get("revenue")
        by_platform = dict(executor.revenue_by_platform) if executor else {}
        total = round(sum(by_platform.values()), 2)
        sources = tuple(
            RevenueSource(
                platform=platform,
                amount=round(amount, 2),
                percentage=round(100.0 * amount / total, 1) if total else 0.0,
            )
            for platform, amount in sorted(by_platform.items())
        )
        return RevenueMetrics(
            daily_revenue=total,
            monthly_revenue=total,
            target=MONTHLY_REVENUE_TARGET,
            growth=0.0,
            sources=sources,
        )

    def content(self) -> ContentMetrics:
        content_executor = self.executors.get("content")
        engagement = content_executor.engagement if content_executor else 0.0
        return ContentMetrics(
            posts_created=self._units("content"),
            videos_produced=self._units("production"),
            audio_stories_generated=0,
            blog_posts_written=0,
            engagement_rate=round(engagement, 4),
            reach_total=self._units("distribution") * 1000,
        )
