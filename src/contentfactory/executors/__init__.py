from contentfactory.executors.base import (
    ExecutionCancelled,
    ExecutionError,
    ExecutionOutcome,
    WorkExecutor,
)
from contentfactory.executors.callable import CallableExecutor
from contentfactory.executors.simulated import SimulatedExecutor, SimulatedMetricsSource

__all__ = [
    "CallableExecutor",
    "ExecutionCancelled",
    "ExecutionError",
    "ExecutionOutcome",
    "SimulatedExecutor",
    "SimulatedMetricsSource",
    "WorkExecutor",
]
