from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from contentfactory.config import (
    DEFAULT_AUTONOMOUS,
    DEFAULT_MUST_REPORT,
    DEFAULT_REQUIRES_APPROVAL,
    AutonomyConfig,
)
from contentfactory.models import AutonomyDecision, ClassificationKind, Issue

logger = logging.getLogger(__name__)

Approver = Callable[[AutonomyDecision], Awaitable[bool]]

BUDGET_EXCEEDED = "budget exceeded"
DEPARTMENT_BUDGET_EXCEEDED = "department budget exceeded"


@dataclass(slots=True, frozen=True)
class AutonomyRules:
    requires_approval: tuple[str, ...] = tuple(DEFAULT_REQUIRES_APPROVAL)
    must_report: tuple[str, ...] = tuple(DEFAULT_MUST_REPORT)
    can_decide_autonomously: tuple[str, ...] = tuple(DEFAULT_AUTONOMOUS)

    @classmethod
    def from_config(cls, config: AutonomyConfig) -> AutonomyRules:
        return cls(
            requires_approval=tuple(config.requires_approval),
            must_report=tuple(config.must_report),
            can_decide_autonomously=tuple(config.can_decide_autonomously),
        )


@dataclass(slots=True, frozen=True)
class Classification:
    kind: ClassificationKind
    rationale: str
    report: bool = False


def match_rule(action: str, rules: Iterable[str]) -> str | None:
    """Case-insensitive match of a rule appearing inside the action."""
    normalized = action.strip().lower()
    if not normalized:
        return None
    for rule in rules:
        candidate = rule.strip().lower()
        if candidate and candidate in normalized:
            return rule
    return None


class BudgetLedger:
    """Process-wide spend tracking for one planning day.

    ``spent_today`` never exceeds ``daily_limit``; spends approved outside
    the autonomous limit are booked separately as overrides.
    """

    def __init__(
        self,
        daily_limit: float,
        per_department_caps: Mapping[str, float] | None = None,
    ) -> None:
        if daily_limit < 0:
            raise ValueError("daily_limit must be non-negative.")
        self._daily_limit = float(daily_limit)
        self._caps: dict[str, float] = dict(per_department_caps or {})
        self._spent = 0.0
        self._department_spent: dict[str, float] = {}
        self._overrides = 0.0
        self._lock = threading.Lock()

    @property
    def daily_limit(self) -> float:
        return self._daily_limit

    @property
    def spent_today(self) -> float:
        with self._lock:
            return self._spent

    @property
    def remaining(self) -> float:
        with self._lock:
            return self._daily_limit - self._spent

    @property
    def approved_overrides(self) -> float:
        with self._lock:
            return self._overrides

    @property
    def per_department_caps(self) -> dict[str, float]:
        with self._lock:
            return dict(self._caps)

    def department_spent(self, department: str) -> float:
        with self._lock:
            return self._department_spent.get(department, 0.0)

    def set_caps(self, caps: Mapping[str, float]) -> None:
        with self._lock:
            self._caps = {name: float(value) for name, value in caps.items()}

    def _violation(self, cost: float, department: str | None) -> str | None:
        if self._spent + cost > self._daily_limit:
            return BUDGET_EXCEEDED
        if department is not None and department in self._caps:
            if self._department_spent.get(department, 0.0) + cost > self._caps[department]:
                return DEPARTMENT_BUDGET_EXCEEDED
        return None

    def check(self, cost: float, department: str | None = None) -> str | None:
        """Return the violated limit for ``cost``, or None when it fits."""
        with self._lock:
            return self._violation(float(cost), department)

    def try_debit(self, cost: float, department: str | None = None) -> bool:
        cost = float(cost)
        if cost < 0:
            raise ValueError("cost must be non-negative.")
        with self._lock:
            if self._violation(cost, department) is not None:
                return False
            self._spent += cost
            if department is not None:
                self._department_spent[department] = (
                    self._department_spent.get(department, 0.0) + cost
                )
            return True

    def book_override(self, cost: float, department: str | None = None) -> None:
        with self._lock:
            self._overrides += float(cost)
            if department is not None:
                self._department_spent[department] = (
                    self._department_spent.get(department, 0.0) + float(cost)
                )

    def reset(self) -> None:
        with self._lock:
            self._spent = 0.0
            self._overrides = 0.0
            self._department_spent.clear()

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "daily_limit": self._daily_limit,
                "spent_today": round(self._spent, 2),
                "remaining": round(self._daily_limit - self._spent, 2),
                "approved_overrides": round(self._overrides, 2),
                "per_department_caps": dict(self._caps),
                "department_spent": {
                    name: round(value, 2) for name, value in self._department_spent.items()
                },
            }


def classify_action(
    action: str,
    cost: float,
    ledger: BudgetLedger,
    rules: AutonomyRules,
    department: str | None = None,
) -> Classification:
    """Ordered rule evaluation: approval rules, budget, department cap, report rules."""
    matched = match_rule(action, rules.requires_approval)
    if matched is not None:
        return Classification("approval-required", f"requires approval: {matched}")

    violation = ledger.check(cost, department)
    if violation is not None:
        return Classification("approval-required", violation)

    matched = match_rule(action, rules.must_report)
    if matched is not None:
        return Classification("auto", f"must report: {matched}", report=True)

    return Classification("auto", "within autonomy limits")


@dataclass(slots=True)
class _Trail:
    decisions: list[AutonomyDecision] = field(default_factory=list)
    denials: list[Issue] = field(default_factory=list)


class AutonomyGate:
    def __init__(
        self,
        rules: AutonomyRules,
        ledger: BudgetLedger,
        *,
        approver: Approver | None = None,
        approval_timeout_seconds: float = 30.0,
    ) -> None:
        self.rules = rules
        self.ledger = ledger
        self.approver = approver
        self.approval_timeout_seconds = max(0.0, float(approval_timeout_seconds))
        self._trail = _Trail()

    @property
    def decisions(self) -> list[AutonomyDecision]:
        return list(self._trail.decisions)

    def evaluate(
        self,
        action: str,
        cost: float = 0.0,
        department: str | None = None,
    ) -> AutonomyDecision:
        if cost < 0:
            raise ValueError("cost must be non-negative.")
        classification = classify_action(action, cost, self.ledger, self.rules, department)
        if classification.kind == "auto" and not self.ledger.try_debit(cost, department):
            # budget consumed between classification and debit
            violation = self.ledger.check(cost, department) or BUDGET_EXCEEDED
            classification = Classification("approval-required", violation)

        decision = AutonomyDecision(
            action=action,
            classification=classification.kind,
            rationale=classification.rationale,
            cost=float(cost),
            department=department,
            report=classification.report,
        )
        self._trail.decisions.append(decision)
        logger.info(
            "Gate %s for '%s' (cost %.2f): %s",
            decision.classification,
            action,
            decision.cost,
            decision.rationale,
        )
        return decision

    async def resolve(self, decision: AutonomyDecision) -> bool:
        if decision.classification != "approval-required" or decision.resolved is not None:
            return decision.executable

        approved = False
        if self.approver is None:
            logger.info("No approver configured; denying '%s'", decision.action)
        else:
            try:
                approved = bool(
                    await asyncio.wait_for(
                        self.approver(decision),
                        timeout=self.approval_timeout_seconds,
                    )
                )
            except TimeoutError:
                logger.warning(
                    "Approval for '%s' timed out after %.1fs",
                    decision.action,
                    self.approval_timeout_seconds,
                )
            except Exception as exc:
                logger.warning("Approver failed for '%s': %s", decision.action, exc)

        if approved:
            decision.resolved = "approved"
            if not self.ledger.try_debit(decision.cost, decision.department):
                self.ledger.book_override(decision.cost, decision.department)
            logger.info("Approved '%s'", decision.action)
            return True

        decision.resolved = "denied"
        issue = Issue(
            id=f"issue-{uuid4().hex[:8]}",
            severity="low",
            kind="approval_denied",
            description=f"Denied: {decision.action} ({decision.rationale})",
            department=decision.department or "coordinator",
        )
        issue.resolve()
        self._trail.denials.append(issue)
        logger.info("Denied '%s'", decision.action)
        return False

    async def submit(
        self,
        action: str,
        cost: float = 0.0,
        department: str | None = None,
    ) -> AutonomyDecision:
        decision = self.evaluate(action, cost, department)
        if decision.classification == "approval-required":
            await self.resolve(decision)
        return decision

    def reportable(self) -> list[AutonomyDecision]:
        return [
            decision
            for decision in self._trail.decisions
            if decision.report or decision.classification == "approval-required"
        ]

    def take_trail(self) -> tuple[list[AutonomyDecision], list[Issue]]:
        """Hand the audit trail to reporting and start a fresh one."""
        trail, self._trail = self._trail, _Trail()
        return trail.decisions, trail.denials
