"""
Built-in executor ranking strategies.

Every strategy is a pure function over a list of candidate executors and
the intent's identifier tokens, returning the candidates in preference
order together with the metadata that justified each position:

    lowest_price / highest_price   stable sort on the matching method price
    sequential                     registration order
    random                         Fisher-Yates shuffle (not reproducible)
    closest                        planar distance to a target location
    smart                          weighted price/proximity/availability/readiness
    fastest                        most recently probed first

Distances are planar Euclidean over (lat, lng), not geodesic.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import numpy as np
from pydantic import BaseModel, Field

from tollgate.errors import IndeterminateSelectionError, ValidationError
from tollgate.executors.base import Executor, Location

PRICE_WEIGHT = 0.3
PROXIMITY_WEIGHT = 0.3
AVAILABILITY_BONUS = 0.2
READINESS_BONUS = 0.2
_PRICE_EPSILON = 0.001


class SelectionStrategy(str, Enum):
    """Built-in ranking strategies."""

    LOWEST_PRICE = "lowest_price"
    HIGHEST_PRICE = "highest_price"
    SEQUENTIAL = "sequential"
    RANDOM = "random"
    CLOSEST = "closest"
    SMART = "smart"
    FASTEST = "fastest"


class SelectionContext(BaseModel):
    """Caller-supplied context that strategies may use."""

    location: Location | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    priority: str = "normal"


class SelectionMetadata(BaseModel):
    """Why an executor was placed where it was."""

    strategy: str
    price: float | None = None
    distance: float | None = None
    score: float | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    reason: str = ""
    delegated: bool = False


class RankedExecutor(BaseModel):
    """A candidate with its selection metadata."""

    executor: Executor
    metadata: SelectionMetadata


def planar_distance(a: Location | None, b: Location | None) -> float:
    """Euclidean distance in (lat, lng); infinite when either side is unknown."""
    if a is None or b is None:
        return math.inf
    return math.hypot(a.lat - b.lat, a.lng - b.lng)


def rank_by_price(
    executors: Sequence[Executor],
    identifiers: Sequence[str],
    descending: bool = False,
) -> list[RankedExecutor]:
    """
    Order by the price of the first matching method.

    Unpriced executors go last; equal prices keep their input order.
    """
    strategy = SelectionStrategy.HIGHEST_PRICE if descending else SelectionStrategy.LOWEST_PRICE
    priced = [(e, e.price_for(identifiers)) for e in executors]

    with_price = [item for item in priced if item[1] is not None]
    without_price = [item for item in priced if item[1] is None]
    with_price.sort(key=lambda item: item[1], reverse=descending)

    return [
        RankedExecutor(
            executor=e,
            metadata=SelectionMetadata(
                strategy=strategy.value,
                price=price,
                reason=f"Price: {price}" if price is not None else "No advertised price",
            ),
        )
        for e, price in with_price + without_price
    ]


def rank_sequential(executors: Sequence[Executor]) -> list[RankedExecutor]:
    return [
        RankedExecutor(
            executor=e,
            metadata=SelectionMetadata(
                strategy=SelectionStrategy.SEQUENTIAL.value,
                reason=f"Registration order #{i + 1}",
            ),
        )
        for i, e in enumerate(executors)
    ]


def rank_random(
    executors: Sequence[Executor],
    rng: np.random.Generator | None = None,
) -> list[RankedExecutor]:
    """Uniform Fisher-Yates shuffle."""
    rng = rng or np.random.default_rng()
    shuffled = list(executors)
    for i in range(len(shuffled) - 1, 0, -1):
        j = int(rng.integers(0, i + 1))
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]

    return [
        RankedExecutor(
            executor=e,
            metadata=SelectionMetadata(
                strategy=SelectionStrategy.RANDOM.value,
                reason="Random order",
            ),
        )
        for e in shuffled
    ]


def rank_closest(
    executors: Sequence[Executor],
    target: Location | None,
) -> list[RankedExecutor]:
    """
    Order by planar distance to `target`, excluding executors without location.

    Raises:
        ValidationError: No target location was given.
        IndeterminateSelectionError: No candidate reports a location.
    """
    if target is None:
        raise ValidationError("A target location is required for closest selection")

    located = [(e, planar_distance(e.location, target)) for e in executors if e.location]
    if not located:
        raise IndeterminateSelectionError(
            "Unable to determine closest executor. Ensure executors report their location."
        )

    located.sort(key=lambda item: item[1])
    return [
        RankedExecutor(
            executor=e,
            metadata=SelectionMetadata(
                strategy=SelectionStrategy.CLOSEST.value,
                distance=distance,
                reason=f"Distance: {distance:.4f}",
            ),
        )
        for e, distance in located
    ]


def smart_scores(
    executors: Sequence[Executor],
    identifiers: Sequence[str],
    target: Location | None = None,
) -> list[float]:
    """
    Composite score per executor.

    Price is scored as inverse price relative to the cheapest candidate,
    proximity as ``1 / (distance + 1)``; both lie in [0, 1] before weighting.
    """
    inverse_prices: list[float | None] = []
    for e in executors:
        price = e.price_for(identifiers)
        inverse_prices.append(None if price is None else 1.0 / (max(price, 0.0) + _PRICE_EPSILON))
    best_inverse = max((p for p in inverse_prices if p is not None), default=None)

    scores: list[float] = []
    for e, inverse in zip(executors, inverse_prices):
        score = 0.0
        if inverse is not None and best_inverse:
            score += PRICE_WEIGHT * (inverse / best_inverse)
        if target is not None and e.location is not None:
            score += PROXIMITY_WEIGHT * (1.0 / (planar_distance(e.location, target) + 1.0))
        if e.supports(identifiers):
            score += AVAILABILITY_BONUS
        if e.is_ready:
            score += READINESS_BONUS
        scores.append(score)
    return scores


def rank_smart(
    executors: Sequence[Executor],
    identifiers: Sequence[str],
    target: Location | None = None,
) -> list[RankedExecutor]:
    scores = smart_scores(executors, identifiers, target)
    ordered = sorted(zip(executors, scores), key=lambda item: item[1], reverse=True)
    return [
        RankedExecutor(
            executor=e,
            metadata=SelectionMetadata(
                strategy=SelectionStrategy.SMART.value,
                price=e.price_for(identifiers),
                distance=planar_distance(e.location, target) if target and e.location else None,
                score=score,
                confidence=min(max(score, 0.0), 1.0),
                reason=(
                    "Smart selection based on price, location, and availability "
                    f"(score: {score:.2f})"
                ),
            ),
        )
        for e, score in ordered
    ]


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def rank_fastest(executors: Sequence[Executor]) -> list[RankedExecutor]:
    """Freshest probe first; never-probed executors last."""
    ordered = sorted(
        executors,
        key=lambda e: e.last_probed_at or _EPOCH,
        reverse=True,
    )
    return [
        RankedExecutor(
            executor=e,
            metadata=SelectionMetadata(
                strategy=SelectionStrategy.FASTEST.value,
                reason=(
                    f"Last health check at {e.last_probed_at.isoformat()}"
                    if e.last_probed_at
                    else "Never probed"
                ),
            ),
        )
        for e in ordered
    ]


def rank(
    strategy: SelectionStrategy,
    executors: Sequence[Executor],
    identifiers: Sequence[str],
    context: SelectionContext | None = None,
    rng: np.random.Generator | None = None,
) -> list[RankedExecutor]:
    """Apply a built-in strategy."""
    context = context or SelectionContext()
    rankers: dict[SelectionStrategy, Callable[[], list[RankedExecutor]]] = {
        SelectionStrategy.LOWEST_PRICE: lambda: rank_by_price(executors, identifiers),
        SelectionStrategy.HIGHEST_PRICE: lambda: rank_by_price(
            executors, identifiers, descending=True
        ),
        SelectionStrategy.SEQUENTIAL: lambda: rank_sequential(executors),
        SelectionStrategy.RANDOM: lambda: rank_random(executors, rng),
        SelectionStrategy.CLOSEST: lambda: rank_closest(executors, context.location),
        SelectionStrategy.SMART: lambda: rank_smart(executors, identifiers, context.location),
        SelectionStrategy.FASTEST: lambda: rank_fastest(executors),
    }
    return rankers[SelectionStrategy(strategy)]()
