"""Executor records, advertised methods and pricing."""

from tollgate.executors.base import Executor, ExecutorState, ExecutorStatus, Location, Pricing

__all__ = [
    "Executor",
    "ExecutorState",
    "ExecutorStatus",
    "Location",
    "Pricing",
]
