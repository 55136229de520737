"""
Tollgate -- paid command dispatch for networked executors.

Selects healthy executors for a command, pays them through the x402
handshake (gateway or direct Solana transfer), and reports per-executor
outcomes with markup pricing.
"""

from tollgate.config import DispatchConfig, load_config
from tollgate.core.dispatcher import CommandDispatcher, CommandIntent, SelectionParams
from tollgate.core.registry import HealthRegistry
from tollgate.core.selector import ExecutorSelector
from tollgate.errors import DispatchError
from tollgate.executors.base import Executor
from tollgate.routing.scoring import SelectionStrategy
from tollgate.runtime import DispatchRuntime

__version__ = "0.1.0"

__all__ = [
    "CommandDispatcher",
    "CommandIntent",
    "DispatchConfig",
    "DispatchError",
    "DispatchRuntime",
    "Executor",
    "ExecutorSelector",
    "HealthRegistry",
    "SelectionParams",
    "SelectionStrategy",
    "__version__",
    "load_config",
]
