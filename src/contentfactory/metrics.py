from __future__ import annotations

from abc import ABC, abstractmethod

from contentfactory.models import ContentMetrics, RevenueMetrics

DAILY_POST_TARGET = 10
MONTHLY_REVENUE_TARGET = 50000.0


class MetricsSource(ABC):
    """Read-only provider of business figures consumed during reporting."""

    @abstractmethod
    def revenue(self) -> RevenueMetrics:
        """Return current revenue figures."""

    @abstractmethod
    def content(self) -> ContentMetrics:
        """Return current content production figures."""


class StaticMetricsSource(MetricsSource):
    def __init__(
        self,
        revenue: RevenueMetrics | None = None,
        content: ContentMetrics | None = None,
    ) -> None:
        self._revenue = revenue or RevenueMetrics()
        self._content = content or ContentMetrics()

    def revenue(self) -> RevenueMetrics:
        return self._revenue

    def content(self) -> ContentMetrics:
        return self._content
