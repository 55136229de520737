"""
Tollgate Quick Start Example

Demonstrates one paid dispatch end to end against a simulated fleet:
  1. Register executors (each is probed on registration)
  2. Estimate the price of an intent
  3. Dispatch it to the two cheapest executors
  4. Inspect per-executor outcomes and total cost

Executors and the payment gateway are simulated in-process with an httpx
mock transport, so the example runs without network access.
"""

import asyncio

import httpx

from tollgate import CommandIntent, DispatchRuntime, SelectionParams, load_config
from tollgate.core.protocol import REFERENCE_HEADER

PRICES = {"arm-1": 0.2, "arm-2": 0.1, "arm-3": 0.3}


# -- Simulated fleet ---------------------------------------------------------

def fleet(request: httpx.Request) -> httpx.Response:
    host = request.url.host

    if host == "gateway.local":
        return httpx.Response(200, json={"signature": "demo-signature", "status": "settled"})

    name = host.split(".")[0]
    if request.url.path == "/health":
        return httpx.Response(200, json={
            "status": "ready",
            "message": f"{name} online",
            "availableMethods": [{
                "path": "/commands/move_demo",
                "method": "POST",
                "description": "Demo move routine",
                "pricing": {"amount": PRICES[name], "asset": "SOL", "payTo": f"{name}-wallet"},
            }],
        })

    if REFERENCE_HEADER in request.headers:
        return httpx.Response(200, json={"executed_by": name, "status": "moving"})

    return httpx.Response(402, json={
        "x402Version": 2,
        "accepts": [{
            "amount": str(PRICES[name]),
            "asset": "SOL",
            "payTo": f"{name}-wallet",
            "extra": {"reference": f"{name}-invoice"},
        }],
    })


# -- Main dispatch loop ------------------------------------------------------

async def main() -> None:
    config = load_config(
        settlement={
            "private_key": "demo-secret",
            "gateway": {"url": "http://gateway.local", "payment_endpoint": "/v1/payments"},
        },
        confirmation={"delay_s": 0.0},
        log={"level": "WARNING", "format": "console"},
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(fleet))

    async with DispatchRuntime(config, http_client=client) as runtime:
        # 1. Register executors
        for name in PRICES:
            executor = await runtime.registry.register(f"{name}.local:8080", name=name)
            print(f"Registered {executor.name}: {executor.status.state.value}")

        intent = CommandIntent(name="move", identifiers=["move_demo"], payload={"speed": 2})

        # 2. Estimate without contacting anyone
        estimate = await runtime.dispatcher.estimate(intent)
        print(f"Estimate: {estimate.executor_name} at {estimate.price} SOL "
              f"(client pays {estimate.pricing.suggested_price})")

        # 3. Dispatch to the two cheapest executors
        report = await runtime.dispatcher.dispatch(intent, SelectionParams(count=2))
        for result in report.results:
            print(f"  {result.executor_id[:8]}: {result.stage.value} "
                  f"after {result.attempts} confirmation(s) -> {result.response}")

        # 4. Aggregate cost and metrics
        print(f"Total cost: {report.summary.total_cost} SOL, "
              f"suggested price: {report.summary.suggested_price} SOL")
        print(f"Spend breakdown: {runtime.metrics.spend_tracker.get_breakdown()['by_executor']}")

    await client.aclose()
    print("\nDone!")


if __name__ == "__main__":
    asyncio.run(main())
