"""
Selection benchmark: measures ranking latency and pick quality per strategy.

Builds a synthetic fleet of executors with random prices and locations
and tracks, for every built-in strategy:
  - Ranking latency (p50, p95, p99)
  - Mean advertised price of the chosen executor
  - Mean distance of the chosen executor to the target
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import numpy as np

from tollgate.core.selector import ExecutorSelector
from tollgate.executors.base import (
    Executor,
    ExecutorState,
    ExecutorStatus,
    Location,
    parse_method,
)
from tollgate.routing.scoring import SelectionContext, SelectionStrategy, planar_distance

IDENTIFIERS = ["move_demo"]


def build_fleet(size: int, rng: np.random.Generator) -> list[Executor]:
    """Ready executors with random prices, locations and probe times."""
    now = datetime.now(timezone.utc)
    fleet = []
    for i in range(size):
        method = parse_method({
            "path": "/commands/move_demo",
            "pricing": {"amount": round(float(rng.uniform(0.01, 1.0)), 4), "asset": "SOL"},
        })
        fleet.append(Executor(
            id=f"executor_{i}",
            base_url=f"http://executor-{i}.local",
            status=ExecutorStatus(state=ExecutorState.READY, available_methods=[method]),
            location=Location(lat=float(rng.uniform(-90, 90)), lng=float(rng.uniform(-180, 180))),
            last_probed_at=now - timedelta(seconds=float(rng.uniform(0, 600))),
        ))
    return fleet


async def benchmark_strategy(
    strategy: SelectionStrategy,
    fleet_size: int = 200,
    num_rounds: int = 500,
) -> dict:
    """Rank a synthetic fleet repeatedly with one strategy."""
    rng = np.random.default_rng(42)
    fleet = build_fleet(fleet_size, rng)
    selector = ExecutorSelector(rng=rng)

    latencies: list[float] = []
    prices: list[float] = []
    distances: list[float] = []

    for _ in range(num_rounds):
        target = Location(lat=float(rng.uniform(-90, 90)), lng=float(rng.uniform(-180, 180)))
        context = SelectionContext(location=target)

        start = time.perf_counter()
        chosen = await selector.select(fleet, "move", IDENTIFIERS, strategy, context)
        latencies.append((time.perf_counter() - start) * 1_000_000)

        prices.append(chosen.executor.price_for(IDENTIFIERS) or 0.0)
        distances.append(planar_distance(chosen.executor.location, target))

    lat_arr = np.array(latencies)
    return {
        "strategy": strategy.value,
        "rounds": num_rounds,
        "p50_latency_us": float(np.percentile(lat_arr, 50)),
        "p95_latency_us": float(np.percentile(lat_arr, 95)),
        "p99_latency_us": float(np.percentile(lat_arr, 99)),
        "mean_price": float(np.mean(prices)),
        "mean_distance": float(np.mean(distances)),
    }


async def main() -> None:
    print("=" * 70)
    print("Tollgate Selection Benchmark")
    print("=" * 70)

    for strategy in SelectionStrategy:
        print(f"\nBenchmarking {strategy.value}...")
        result = await benchmark_strategy(strategy)
        print(f"  Ranking latency  p50={result['p50_latency_us']:.1f}us  "
              f"p95={result['p95_latency_us']:.1f}us  "
              f"p99={result['p99_latency_us']:.1f}us")
        print(f"  Mean price:      {result['mean_price']:.4f} SOL")
        print(f"  Mean distance:   {result['mean_distance']:.2f}")

    print("\nBenchmark complete.")


if __name__ == "__main__":
    asyncio.run(main())
