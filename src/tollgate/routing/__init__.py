"""Routing components: built-in selection strategies and the external delegate."""

from tollgate.routing.delegate import ExternalScorer, SelectionDelegate
from tollgate.routing.scoring import RankedExecutor, SelectionStrategy

__all__ = [
    "ExternalScorer",
    "RankedExecutor",
    "SelectionDelegate",
    "SelectionStrategy",
]
