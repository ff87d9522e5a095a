from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from contentfactory.models import Task


class ExecutionError(RuntimeError):
    """Raised by an executor when a task attempt fails."""

    def __init__(
        self,
        message: str,
        *,
        retriable: bool = True,
        metrics: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.retriable = retriable
        self.metrics = dict(metrics or {})


class ExecutionCancelled(ExecutionError):
    """Raised when an executor stops early because the cycle was cancelled."""

    def __init__(self, message: str = "Execution cancelled.") -> None:
        super().__init__(message, retriable=True)


@dataclass(slots=True)
class ExecutionOutcome:
    success: bool = True
    metrics: dict[str, Any] = field(default_factory=dict)


class WorkExecutor(ABC):
    @abstractmethod
    async def execute(self, task: Task, cancel_event: asyncio.Event) -> ExecutionOutcome:
        """Run the department work for one task."""

    async def health_check(self) -> bool:
        """Report whether the executor can currently take work."""
        return True
