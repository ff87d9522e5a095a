from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

from contentfactory.executors.base import ExecutionOutcome, WorkExecutor
from contentfactory.models import Task

WorkFunction = Callable[[Task], Any]
HealthProbe = Callable[[], Any]


def _normalize_outcome(value: Any) -> ExecutionOutcome:
    if isinstance(value, ExecutionOutcome):
        return value
    if value is None:
        return ExecutionOutcome()
    if isinstance(value, bool):
        return ExecutionOutcome(success=value)
    if isinstance(value, dict):
        metrics = value.get("metrics", {})
        return ExecutionOutcome(
            success=bool(value.get("success", True)),
            metrics=dict(metrics) if isinstance(metrics, dict) else {},
        )
    raise TypeError(f"Unsupported executor result: {type(value).__name__}")


class CallableExecutor(WorkExecutor):
    """Adapts a plain sync or async function into a work executor.

    Sync functions run in a worker thread so a slow department never blocks
    the event loop. The function may return an ``ExecutionOutcome``, a dict
    with ``success``/``metrics`` keys, a bool, or None for success.
    """

    def __init__(self, fn: WorkFunction, probe: HealthProbe | None = None) -> None:
        self.fn = fn
        self.probe = probe

    async def execute(self, task: Task, cancel_event: asyncio.Event) -> ExecutionOutcome:
        _ = cancel_event
        if inspect.iscoroutinefunction(self.fn):
            result = await self.fn(task)
        else:
            result = await asyncio.to_thread(self.fn, task)
            if inspect.isawaitable(result):
                result = await result
        return _normalize_outcome(result)

    async def health_check(self) -> bool:
        if self.probe is None:
            return True
        result = self.probe()
        if inspect.isawaitable(result):
            result = await result
        return bool(result)
