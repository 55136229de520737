"""Core dispatch components: registry, selector, payment protocol, dispatcher."""

from tollgate.core.dispatcher import CommandDispatcher
from tollgate.core.protocol import DispatchResult, PaymentProtocolClient
from tollgate.core.registry import HealthRegistry
from tollgate.core.selector import ExecutorSelector

__all__ = [
    "CommandDispatcher",
    "DispatchResult",
    "ExecutorSelector",
    "HealthRegistry",
    "PaymentProtocolClient",
]
