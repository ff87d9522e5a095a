from __future__ import annotations

import heapq
import itertools
import logging
import threading

from contentfactory.models import PRIORITY_RANK, Task

logger = logging.getLogger(__name__)


class TaskQueue:
    """Priority-ordered pending work for one department.

    Ordering is high before medium before low, then earliest deadline, then
    insertion order. Requeued tasks keep their original sort key.
    """

    def __init__(self, department: str, *, max_attempts: int = 3) -> None:
        self.department = department
        self.max_attempts = max(1, int(max_attempts))
        self._heap: list[tuple[int, float, int, Task]] = []
        self._queued_ids: set[str] = set()
        self._sequence: dict[str, int] = {}
        self._counter = itertools.count()
        self._failed: list[Task] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)

    @property
    def depth(self) -> int:
        return len(self)

    def _sort_key(self, task: Task) -> tuple[int, float, int]:
        sequence = self._sequence.setdefault(task.id, next(self._counter))
        rank = PRIORITY_RANK.get(task.priority, len(PRIORITY_RANK))
        return (rank, task.deadline.timestamp(), sequence)

    def _push(self, task: Task) -> None:
        rank, deadline, sequence = self._sort_key(task)
        heapq.heappush(self._heap, (rank, deadline, sequence, task))
        self._queued_ids.add(task.id)

    def enqueue(self, task: Task) -> bool:
        if task.department != self.department:
            raise ValueError(
                f"Task {task.id} belongs to '{task.department}', not '{self.department}'."
            )
        with self._lock:
            if task.id in self._queued_ids:
                return False
            self._push(task)
        return True

    def dequeue(self) -> Task | None:
        with self._lock:
            if not self._heap:
                return None
            *_, task = heapq.heappop(self._heap)
            self._queued_ids.discard(task.id)
            return task

    def peek(self) -> Task | None:
        with self._lock:
            if not self._heap:
                return None
            return self._heap[0][3]

    def requeue(self, task: Task, reason: str) -> bool:
        """Record a failed attempt; return False once the task has failed for good."""
        with self._lock:
            task.attempts += 1
            task.assigned_worker = None
            if task.attempts >= self.max_attempts:
                self._mark_failed(task, reason)
                return False
            task.status = "pending"
            task.failure_reason = reason
            if task.id not in self._queued_ids:
                self._push(task)
        logger.info(
            "Requeued task %s (attempt %d/%d): %s",
            task.id,
            task.attempts,
            self.max_attempts,
            reason,
        )
        return True

    def fail(self, task: Task, reason: str) -> None:
        """Fail a task without retrying it, e.g. on a non-retriable error."""
        with self._lock:
            task.attempts += 1
            task.assigned_worker = None
            self._mark_failed(task, reason)

    def _mark_failed(self, task: Task, reason: str) -> None:
        task.status = "failed"
        task.failure_reason = reason
        if all(item.id != task.id for item in self._failed):
            self._failed.append(task)
        logger.warning(
            "Task %s failed permanently after %d attempts: %s",
            task.id,
            task.attempts,
            reason,
        )

    def drain(self) -> list[Task]:
        with self._lock:
            ordered = [entry[3] for entry in sorted(self._heap, key=lambda item: item[:3])]
            self._heap.clear()
            self._queued_ids.clear()
        return ordered

    def take_failed(self) -> list[Task]:
        with self._lock:
            failed, self._failed = self._failed, []
        return failed

    def snapshot(self) -> list[Task]:
        with self._lock:
            return [entry[3] for entry in sorted(self._heap, key=lambda item: item[:3])]

