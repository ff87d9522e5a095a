from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass

from contentfactory.config import FactoryConfig
from contentfactory.executors.base import WorkExecutor
from contentfactory.queue import TaskQueue
from contentfactory.worker import Clock, DepartmentWorker, ResultHook


@dataclass(slots=True)
class Department:
    name: str
    worker: DepartmentWorker
    queue: TaskQueue


class DepartmentRegistry:
    """Explicit department -> (worker, queue) table handed to the coordinator."""

    def __init__(self) -> None:
        self._departments: dict[str, Department] = {}

    @classmethod
    def from_config(
        cls,
        config: FactoryConfig,
        executors: Mapping[str, WorkExecutor],
        *,
        on_result: ResultHook | None = None,
        clock: Clock | None = None,
    ) -> DepartmentRegistry:
        registry = cls()
        for name in config.planning.departments:
            executor = executors.get(name)
            if executor is None:
                raise ValueError(f"No executor configured for department '{name}'.")
            worker = DepartmentWorker(
                name=f"{name}-manager",
                department=name,
                executor=executor,
                concurrency=config.workers.concurrency_for(name),
                health_failure_limit=config.workers.health_failure_limit,
                on_result=on_result,
                clock=clock,
            )
            registry.register(worker, max_attempts=config.queue.max_attempts)
        return registry

    def register(
        self,
        worker: DepartmentWorker,
        queue: TaskQueue | None = None,
        *,
        max_attempts: int = 3,
    ) -> Department:
        name = worker.department
        if name in self._departments:
            raise ValueError(f"Department '{name}' is already registered.")
        if queue is None:
            queue = TaskQueue(name, max_attempts=max_attempts)
        elif queue.department != name:
            raise ValueError(f"Queue for '{queue.department}' cannot serve '{name}'.")
        department = Department(name=name, worker=worker, queue=queue)
        self._departments[name] = department
        return department

    def __getitem__(self, name: str) -> Department:
        return self._departments[name]

    def __contains__(self, name: object) -> bool:
        return name in self._departments

    def __iter__(self) -> Iterator[Department]:
        return iter(list(self._departments.values()))

    def __len__(self) -> int:
        return len(self._departments)

    def names(self) -> list[str]:
        return list(self._departments)
