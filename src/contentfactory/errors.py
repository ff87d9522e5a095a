from __future__ import annotations


class DispatchError(RuntimeError):
    """Base error for the coordinator/worker dispatch core."""

    def __init__(
        self,
        message: str,
        *,
        department: str | None = None,
        retriable: bool = False,
    ) -> None:
        super().__init__(message)
        self.department = department
        self.retriable = retriable


class TransientWorkerFailure(DispatchError):
    """Raised when a task attempt fails but may succeed on retry."""

    def __init__(self, message: str, *, department: str | None = None) -> None:
        super().__init__(message, department=department, retriable=True)


class PermanentTaskFailure(DispatchError):
    """Raised when a task has exhausted its attempts."""


class BudgetExceeded(DispatchError):
    """Raised when a spend would push the ledger past its daily limit."""


class DepartmentUnavailable(DispatchError):
    """Raised when a department worker is offline for the cycle."""


class AggregationUnavailable(DispatchError):
    """Raised when the status aggregator cannot produce a snapshot."""


class CycleCancelled(DispatchError):
    """Raised when a running cycle observes the cancellation signal."""
