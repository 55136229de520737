"""
In-memory registry of executors.

The registry is the single owner of executor records. It stores probe
results but performs no network I/O itself; probing is delegated to a
`HealthProber`. All access happens from one asyncio event loop, so the
underlying dict needs no lock. Callers always receive copies, never the
stored records.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from tollgate.errors import ExecutorNotFoundError, ValidationError
from tollgate.executors.base import (
    Executor,
    ExecutorState,
    ExecutorStatus,
    Location,
    normalize_address,
)
from tollgate.executors.prober import HealthProber
from tollgate.observability.logging import get_logger

logger = get_logger(__name__)

_UPDATABLE_FIELDS = frozenset({"name", "base_url", "requires_secure", "location"})


class HealthRegistry:
    """
    Registry of known executors with their latest probe status.

    Args:
        prober: Prober used on registration and refresh.
    """

    def __init__(self, prober: HealthProber) -> None:
        self._prober = prober
        self._executors: dict[str, Executor] = {}

    def __len__(self) -> int:
        return len(self._executors)

    def __contains__(self, executor_id: object) -> bool:
        return executor_id in self._executors

    async def register(
        self,
        address: str,
        *,
        name: str = "",
        requires_secure: bool = False,
        location: Location | None = None,
    ) -> Executor:
        """
        Register an executor and probe it before returning.

        Args:
            address: ``host:port`` or base URL of the executor.
            name: Display name; generated from the id when empty.
            requires_secure: Whether the executor requires the secured
                probe/command path.
            location: Optional static location, replaced by any location
                the executor reports in its health payload.

        Returns:
            A copy of the registered executor with its first status.
        """
        if not address or not address.strip():
            raise ValidationError("Executor address is required")

        executor = Executor(
            base_url=normalize_address(address),
            name=name,
            requires_secure=requires_secure,
            location=location,
        )
        self._executors[executor.id] = executor
        logger.info(
            "Executor registered",
            executor_id=executor.id,
            base_url=executor.base_url,
            requires_secure=requires_secure,
        )

        await self.refresh(executor.id)
        return self._copy(executor.id)

    async def refresh(self, executor_id: str) -> ExecutorStatus:
        """Probe an executor now and store the result."""
        executor = self._get(executor_id)
        status = await self._prober.probe(executor)
        self.apply_status(executor_id, status)
        return status.model_copy(deep=True)

    async def probe_all(self) -> dict[str, ExecutorStatus]:
        """Re-probe every executor, one after another, in registration order."""
        results: dict[str, ExecutorStatus] = {}
        for executor_id in list(self._executors):
            if executor_id in self._executors:
                results[executor_id] = await self.refresh(executor_id)
        return results

    def apply_status(self, executor_id: str, status: ExecutorStatus) -> Executor:
        """Replace an executor's status wholesale with a probe result."""
        executor = self._get(executor_id)
        executor.status = status.model_copy(deep=True)
        if status.location is not None:
            executor.location = status.location
        executor.last_probed_at = datetime.now(timezone.utc)
        return executor.model_copy(deep=True)

    def list(self) -> list[Executor]:
        """Snapshot of all executors in registration order."""
        return [e.model_copy(deep=True) for e in self._executors.values()]

    def get_by_id(self, executor_id: str) -> Executor | None:
        if executor_id not in self._executors:
            return None
        return self._copy(executor_id)

    def by_state(self, state: ExecutorState) -> list[Executor]:
        return [e for e in self.list() if e.status.state == state]

    def ready(self, identifiers: Sequence[str] | None = None) -> list[Executor]:
        """Ready executors, optionally restricted to those supporting an intent."""
        ready = self.by_state(ExecutorState.READY)
        if identifiers is None:
            return ready
        return [e for e in ready if e.supports(identifiers)]

    def remove(self, executor_id: str) -> bool:
        removed = self._executors.pop(executor_id, None) is not None
        if removed:
            logger.info("Executor removed", executor_id=executor_id)
        return removed

    def update(self, executor_id: str, **changes: Any) -> Executor:
        """
        Administrative update of executor metadata.

        Only ``name``, ``base_url``, ``requires_secure`` and ``location``
        may change; the status is owned by probes.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Cannot update executor fields: {sorted(unknown)}",
                {"fields": sorted(unknown)},
            )

        executor = self._get(executor_id)
        if "base_url" in changes:
            changes["base_url"] = normalize_address(changes["base_url"])
        data = {**executor.model_dump(), **changes}
        try:
            updated = Executor.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid executor update: {exc}") from exc
        self._executors[executor_id] = updated
        logger.info("Executor updated", executor_id=executor_id, fields=sorted(changes))
        return updated.model_copy(deep=True)

    def _get(self, executor_id: str) -> Executor:
        try:
            return self._executors[executor_id]
        except KeyError:
            raise ExecutorNotFoundError(executor_id) from None

    def _copy(self, executor_id: str) -> Executor:
        return self._get(executor_id).model_copy(deep=True)
