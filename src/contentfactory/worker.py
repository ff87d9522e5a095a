from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from contentfactory.errors import DispatchError
from contentfactory.executors.base import ExecutionCancelled, ExecutionError, WorkExecutor
from contentfactory.models import Task, WorkerHandle, WorkerResult, utcnow

logger = logging.getLogger(__name__)

ResultHook = Callable[[WorkerResult], None]
Clock = Callable[[], datetime]


@dataclass(slots=True)
class Assignment:
    accepted: bool
    reason: str | None = None
    handle: asyncio.Task[WorkerResult] | None = None


class DepartmentWorker:
    """Runs one department's tasks, up to ``concurrency`` at a time.

    The worker owns its ``WorkerHandle``; callers get copies through
    ``handle()``. Every finished execution is reported to the registered
    result hooks, which is how the status aggregator is fed.
    """

    def __init__(
        self,
        name: str,
        department: str,
        executor: WorkExecutor,
        *,
        concurrency: int = 1,
        health_failure_limit: int = 3,
        on_result: ResultHook | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.executor = executor
        self.health_failure_limit = max(1, int(health_failure_limit))
        self.clock = clock or utcnow
        self._handle = WorkerHandle(
            name=name,
            department=department,
            concurrency=max(1, int(concurrency)),
        )
        self._running: dict[str, asyncio.Task[WorkerResult]] = {}
        self._in_flight: dict[str, Task] = {}
        self._result_hooks: list[ResultHook] = []
        if on_result is not None:
            self._result_hooks.append(on_result)
        self._cancel_event = asyncio.Event()

    @property
    def name(self) -> str:
        return self._handle.name

    @property
    def department(self) -> str:
        return self._handle.department

    @property
    def status(self) -> str:
        return self._handle.status

    @property
    def current_load(self) -> int:
        return self._handle.current_load

    @property
    def concurrency(self) -> int:
        return self._handle.concurrency

    @property
    def has_capacity(self) -> bool:
        return (
            self._handle.status != "offline"
            and self._handle.current_load < self._handle.concurrency
        )

    def handle(self) -> WorkerHandle:
        return self._handle.copy()

    def in_flight(self) -> list[Task]:
        return list(self._in_flight.values())

    def add_result_hook(self, hook: ResultHook) -> None:
        self._result_hooks.append(hook)

    def assign(self, task: Task, cancel_event: asyncio.Event | None = None) -> Assignment:
        if task.department != self.department:
            return Assignment(accepted=False, reason="department")
        if self._handle.status == "offline":
            return Assignment(accepted=False, reason="offline")
        if self._handle.current_load >= self._handle.concurrency:
            return Assignment(accepted=False, reason="busy")
        if task.id in self._running:
            return Assignment(accepted=False, reason="duplicate")

        task.status = "in-progress"
        task.assigned_worker = self.name
        task.started_at = self.clock()
        self._handle.current_load += 1
        self._handle.status = "busy"
        self._handle.last_update = self.clock()

        event = cancel_event if cancel_event is not None else self._cancel_event
        handle = asyncio.create_task(self._execute(task, event), name=f"{self.name}:{task.id}")
        self._running[task.id] = handle
        self._in_flight[task.id] = task
        logger.debug("%s accepted task %s", self.name, task.id)
        return Assignment(accepted=True, handle=handle)

    async def _execute(self, task: Task, cancel_event: asyncio.Event) -> WorkerResult:
        started = time.monotonic()
        try:
            outcome = await self.executor.execute(task.copy(), cancel_event)
        except ExecutionCancelled as exc:
            self._return_to_pending(task)
            result = WorkerResult(
                task=task,
                outcome="failure",
                duration_seconds=time.monotonic() - started,
                error=str(exc),
                cancelled=True,
            )
        except asyncio.CancelledError:
            self._return_to_pending(task)
            self._release(task)
            raise
        except (ExecutionError, DispatchError) as exc:
            result = WorkerResult(
                task=task,
                outcome="failure",
                metrics=dict(getattr(exc, "metrics", {})),
                duration_seconds=time.monotonic() - started,
                error=str(exc),
                retriable=exc.retriable,
            )
        except Exception as exc:
            logger.warning("%s executor raised on task %s: %s", self.name, task.id, exc)
            result = WorkerResult(
                task=task,
                outcome="failure",
                duration_seconds=time.monotonic() - started,
                error=f"{type(exc).__name__}: {exc}",
            )
        else:
            if outcome.success:
                task.status = "completed"
                task.completed_at = self.clock()
                task.failure_reason = None
            result = WorkerResult(
                task=task,
                outcome="success" if outcome.success else "failure",
                metrics=dict(outcome.metrics),
                duration_seconds=time.monotonic() - started,
                error=None if outcome.success else "Executor reported failure.",
            )

        if not result.succeeded and not result.cancelled:
            # retry bookkeeping belongs to the queue
            task.status = "pending"
            task.assigned_worker = None
            task.failure_reason = result.error
        self._release(task)
        if not result.cancelled:
            self._record_performance(result)
            self._emit(result)
        return result

    @staticmethod
    def _return_to_pending(task: Task) -> None:
        task.status = "pending"
        task.assigned_worker = None
        task.started_at = None

    def _release(self, task: Task) -> None:
        self._running.pop(task.id, None)
        self._in_flight.pop(task.id, None)
        self._handle.current_load = max(0, self._handle.current_load - 1)
        if self._handle.status != "offline":
            self._handle.status = "busy" if self._handle.current_load else "online"
        self._handle.last_update = self.clock()

    def _record_performance(self, result: WorkerResult) -> None:
        performance = self._handle.performance
        performance.total += 1
        if result.succeeded:
            performance.completed += 1
        performance.success_rate = performance.completed / performance.total
        performance.avg_response_time += (
            result.duration_seconds - performance.avg_response_time
        ) / performance.total

    def _emit(self, result: WorkerResult) -> None:
        for hook in self._result_hooks:
            try:
                hook(result)
            except Exception:
                logger.exception("%s result hook failed for task %s", self.name, result.task.id)

    async def check_health(self) -> bool:
        try:
            healthy = bool(await self.executor.health_check())
        except Exception as exc:
            logger.warning("%s health probe raised: %s", self.name, exc)
            healthy = False

        if healthy:
            self._handle.consecutive_health_failures = 0
            return True

        self._handle.consecutive_health_failures += 1
        failures = self._handle.consecutive_health_failures
        if failures >= self.health_failure_limit and self._handle.status != "offline":
            self._handle.status = "offline"
            self._handle.last_update = self.clock()
            logger.error(
                "%s marked offline after %d consecutive failed health checks",
                self.name,
                failures,
            )
        return False

    def reset(self) -> None:
        """Bring an offline worker back; the only way out of ``offline``."""
        self._handle.consecutive_health_failures = 0
        self._handle.status = "busy" if self._handle.current_load else "online"
        self._handle.last_update = self.clock()
        logger.info("%s reset to %s", self.name, self._handle.status)

    async def wait_idle(self) -> None:
        if self._running:
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)

    async def cancel_in_flight(self) -> None:
        handles = list(self._running.values())
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
        for task in list(self._in_flight.values()):
            # cancelled before the coroutine started running
            self._return_to_pending(task)
            self._release(task)
