"""
Spend attribution and dispatch metrics.

Tracks what the engine pays executors and how executors behave across
dispatches. Provides:

    - Settled amount per executor and per asset
    - Budget monitoring
    - Per-executor call, success and error counts
    - Handshake latency percentiles
    - Histogram of the stages at which handshakes ended
"""

from __future__ import annotations

import time
from collections import Counter, defaultdict
from typing import Any

import numpy as np
from pydantic import BaseModel


class SpendRecord(BaseModel):
    """One settled payment."""

    executor_id: str
    amount: float
    asset: str
    provider: str
    reference: str | None = None


class ExecutorMetrics(BaseModel):
    """Aggregated metrics for a single executor."""

    executor_id: str
    total_calls: int = 0
    success_count: int = 0
    error_count: int = 0
    total_spent: float = 0.0
    avg_latency_ms: float = 0.0
    p50_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0


class SpendTracker:
    """
    Tracks settled amounts per executor and asset.

    Args:
        budget: Optional spend ceiling (in the settlement asset) for alerts.
    """

    def __init__(self, budget: float | None = None) -> None:
        self._budget = budget
        self._total = 0.0
        self._by_executor: dict[str, float] = defaultdict(float)
        self._by_asset: dict[str, float] = defaultdict(float)
        self._history: list[SpendRecord] = []

    def record(
        self,
        executor_id: str,
        amount: float,
        asset: str,
        provider: str,
        reference: str | None = None,
    ) -> SpendRecord:
        record = SpendRecord(
            executor_id=executor_id,
            amount=amount,
            asset=asset,
            provider=provider,
            reference=reference,
        )
        self._total += amount
        self._by_executor[executor_id] += amount
        self._by_asset[asset] += amount
        self._history.append(record)
        return record

    @property
    def total_spent(self) -> float:
        return self._total

    @property
    def is_over_budget(self) -> bool:
        if self._budget is None:
            return False
        return self._total > self._budget

    @property
    def budget_remaining(self) -> float | None:
        if self._budget is None:
            return None
        return max(self._budget - self._total, 0.0)

    def spent_by(self, executor_id: str) -> float:
        return self._by_executor.get(executor_id, 0.0)

    def get_breakdown(self) -> dict[str, Any]:
        """Spend by executor and asset."""
        return {
            "total": self._total,
            "by_executor": dict(self._by_executor),
            "by_asset": dict(self._by_asset),
            "budget": self._budget,
            "budget_remaining": self.budget_remaining,
            "settlements": len(self._history),
        }


class _ExecutorStats:
    __slots__ = ("calls", "successes", "latencies")

    def __init__(self) -> None:
        self.calls = 0
        self.successes = 0
        self.latencies: list[float] = []


class DispatchMetrics:
    """
    Collects per-executor dispatch outcomes.

    Args:
        spend_tracker: Tracker receiving settled amounts.
    """

    def __init__(self, spend_tracker: SpendTracker | None = None) -> None:
        self._spend = spend_tracker or SpendTracker()
        self._executors: dict[str, _ExecutorStats] = {}
        self._stages: Counter[str] = Counter()
        self._started = time.monotonic()

    @property
    def spend_tracker(self) -> SpendTracker:
        return self._spend

    def record_call(
        self,
        executor_id: str,
        latency_ms: float,
        success: bool,
        stage: str,
    ) -> None:
        """Record one finished handshake."""
        stats = self._executors.setdefault(executor_id, _ExecutorStats())
        stats.calls += 1
        stats.successes += int(success)
        stats.latencies.append(latency_ms)
        self._stages[stage] += 1

    def get_executor_metrics(self, executor_id: str) -> ExecutorMetrics:
        stats = self._executors.get(executor_id)
        if stats is None or not stats.latencies:
            return ExecutorMetrics(
                executor_id=executor_id,
                total_spent=self._spend.spent_by(executor_id),
            )

        latencies = np.asarray(stats.latencies)
        p50, p95, p99 = np.percentile(latencies, [50, 95, 99])
        return ExecutorMetrics(
            executor_id=executor_id,
            total_calls=stats.calls,
            success_count=stats.successes,
            error_count=stats.calls - stats.successes,
            total_spent=self._spend.spent_by(executor_id),
            avg_latency_ms=float(latencies.mean()),
            p50_latency_ms=float(p50),
            p95_latency_ms=float(p95),
            p99_latency_ms=float(p99),
        )

    def get_all_metrics(self) -> dict[str, ExecutorMetrics]:
        return {eid: self.get_executor_metrics(eid) for eid in self._executors}

    def get_summary(self) -> dict[str, Any]:
        """Totals across all executors, stage histogram and spend."""
        calls = sum(s.calls for s in self._executors.values())
        successes = sum(s.successes for s in self._executors.values())
        return {
            "uptime_s": time.monotonic() - self._started,
            "total_calls": calls,
            "total_success": successes,
            "total_errors": calls - successes,
            "success_rate": successes / calls if calls else 0.0,
            "stages": dict(self._stages),
            "spend": self._spend.get_breakdown(),
            "num_executors": len(self._executors),
        }
