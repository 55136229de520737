"""
Executor selection.

Ranks ready candidates for an intent with one of the built-in strategies
in `tollgate.routing.scoring`. When a `SelectionDelegate` is configured it
is consulted first: its pick goes to the front and the remaining
candidates follow in built-in order. Any delegate failure is logged and
selection proceeds with the built-in strategy alone.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from tollgate.errors import IndeterminateSelectionError, ValidationError
from tollgate.executors.base import Executor
from tollgate.observability.logging import get_logger
from tollgate.routing.delegate import DelegateVerdict, SelectionDelegate
from tollgate.routing.scoring import (
    RankedExecutor,
    SelectionContext,
    SelectionMetadata,
    SelectionStrategy,
    rank,
    rank_sequential,
)

logger = get_logger(__name__)


class ExecutorSelector:
    """
    Orders candidate executors for an intent.

    Args:
        delegate: Optional external scorer consulted before the built-in
            strategy.
        rng: Random generator for the ``random`` strategy.
    """

    def __init__(
        self,
        delegate: SelectionDelegate | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self._delegate = delegate
        self._rng = rng

    @property
    def delegate(self) -> SelectionDelegate | None:
        return self._delegate

    async def rank(
        self,
        candidates: Sequence[Executor],
        intent: str,
        identifiers: Sequence[str],
        strategy: SelectionStrategy | str,
        context: SelectionContext | None = None,
        use_delegate: bool = True,
    ) -> list[RankedExecutor]:
        """
        Rank candidates, best first.

        With ``use_delegate=False`` no network call is made.

        Raises:
            ValidationError: Unknown strategy, or ``closest`` without a
                target location.
            IndeterminateSelectionError: The strategy could not rank any
                candidate and no delegate picked one.
        """
        strategy = _coerce_strategy(strategy)
        context = context or SelectionContext()
        if strategy == SelectionStrategy.CLOSEST and context.location is None:
            raise ValidationError("A target location is required for closest selection")
        if not candidates:
            return []

        verdict = None
        if use_delegate:
            verdict = await self._consult_delegate(candidates, intent, identifiers, context)

        try:
            ranked = rank(strategy, candidates, identifiers, context, rng=self._rng)
        except IndeterminateSelectionError:
            if verdict is None:
                raise
            ranked = rank_sequential(candidates)

        if verdict is None:
            return ranked

        chosen = next(e for e in candidates if e.id == verdict.executor_id)
        head = RankedExecutor(
            executor=chosen,
            metadata=SelectionMetadata(
                strategy=strategy.value,
                price=chosen.price_for(identifiers),
                confidence=verdict.confidence,
                reason=verdict.reason,
                delegated=True,
            ),
        )
        return [head] + [r for r in ranked if r.executor.id != chosen.id]

    async def select(
        self,
        candidates: Sequence[Executor],
        intent: str,
        identifiers: Sequence[str],
        strategy: SelectionStrategy | str,
        context: SelectionContext | None = None,
        use_delegate: bool = True,
    ) -> RankedExecutor:
        """Best single candidate."""
        ranked = await self.rank(
            candidates, intent, identifiers, strategy, context, use_delegate=use_delegate
        )
        if not ranked:
            raise IndeterminateSelectionError("No executors available for selection")
        return ranked[0]

    async def _consult_delegate(
        self,
        candidates: Sequence[Executor],
        intent: str,
        identifiers: Sequence[str],
        context: SelectionContext,
    ) -> DelegateVerdict | None:
        if self._delegate is None:
            return None
        try:
            verdict = await self._delegate.select(candidates, intent, identifiers, context)
        except Exception as exc:
            logger.warning(
                "Selection delegate failed, falling back to built-in strategy",
                intent=intent,
                error=str(exc) or type(exc).__name__,
            )
            return None

        if verdict.executor_id not in {e.id for e in candidates}:
            logger.warning(
                "Selection delegate picked an unknown executor, falling back",
                intent=intent,
                executor_id=verdict.executor_id,
            )
            return None
        return verdict


def _coerce_strategy(strategy: SelectionStrategy | str) -> SelectionStrategy:
    try:
        return SelectionStrategy(str(getattr(strategy, "value", strategy)).lower())
    except ValueError:
        raise ValidationError(
            f"Unknown selection strategy '{strategy}'",
            {"allowed": [s.value for s in SelectionStrategy]},
        ) from None
