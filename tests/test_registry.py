"""Tests for the executor registry."""

from __future__ import annotations

import pytest

from tollgate.core.registry import HealthRegistry
from tollgate.errors import ExecutorNotFoundError, ValidationError
from tollgate.executors.base import (
    Executor,
    ExecutorState,
    ExecutorStatus,
    Location,
    parse_method,
)


# -- Fixtures ----------------------------------------------------------------

class ScriptedProber:
    """Prober returning a fixed status per base URL."""

    def __init__(self, statuses: dict[str, ExecutorStatus] | None = None) -> None:
        self.statuses = statuses or {}
        self.probed: list[str] = []

    async def probe(self, executor: Executor) -> ExecutorStatus:
        self.probed.append(executor.base_url)
        return self.statuses.get(
            executor.base_url,
            ExecutorStatus(state=ExecutorState.UNREACHABLE, message="no route"),
        )


def ready_status(*methods: str, location: Location | None = None) -> ExecutorStatus:
    return ExecutorStatus(
        state=ExecutorState.READY,
        message="ok",
        available_methods=[parse_method(m) for m in methods],
        location=location,
    )


@pytest.fixture
def prober() -> ScriptedProber:
    return ScriptedProber({
        "http://arm-1:8080": ready_status("move_demo", location=Location(lat=1.0, lng=1.0)),
        "http://arm-2:8080": ready_status("dance"),
    })


@pytest.fixture
def registry(prober: ScriptedProber) -> HealthRegistry:
    return HealthRegistry(prober)  # type: ignore[arg-type]


# -- Tests -------------------------------------------------------------------

class TestRegistration:
    @pytest.mark.asyncio
    async def test_register_probes_before_returning(
        self, registry: HealthRegistry, prober: ScriptedProber
    ) -> None:
        executor = await registry.register("arm-1:8080", name="arm")

        assert prober.probed == ["http://arm-1:8080"]
        assert executor.status.state == ExecutorState.READY
        assert executor.last_probed_at is not None
        assert executor.name == "arm"
        assert executor.id in registry

    @pytest.mark.asyncio
    async def test_reported_location_replaces_static(self, registry: HealthRegistry) -> None:
        executor = await registry.register("arm-1:8080", location=Location(lat=9.0, lng=9.0))
        assert executor.location == Location(lat=1.0, lng=1.0)

    @pytest.mark.asyncio
    async def test_unreachable_executor_still_registered(self, registry: HealthRegistry) -> None:
        executor = await registry.register("ghost:1")
        assert executor.status.state == ExecutorState.UNREACHABLE
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_empty_address_rejected(self, registry: HealthRegistry) -> None:
        with pytest.raises(ValidationError):
            await registry.register("  ")


class TestQueries:
    @pytest.mark.asyncio
    async def test_ready_filters_by_intent(self, registry: HealthRegistry) -> None:
        arm1 = await registry.register("arm-1:8080")
        await registry.register("arm-2:8080")
        await registry.register("ghost:1")

        assert len(registry.ready()) == 2
        assert [e.id for e in registry.ready(["move_demo"])] == [arm1.id]
        assert len(registry.by_state(ExecutorState.UNREACHABLE)) == 1

    @pytest.mark.asyncio
    async def test_list_returns_copies(self, registry: HealthRegistry) -> None:
        executor = await registry.register("arm-1:8080")
        snapshot = registry.list()[0]
        snapshot.name = "mutated"

        assert registry.get_by_id(executor.id).name != "mutated"

    def test_unknown_id(self, registry: HealthRegistry) -> None:
        assert registry.get_by_id("missing") is None
        assert registry.remove("missing") is False


class TestUpdates:
    @pytest.mark.asyncio
    async def test_refresh_replaces_status(
        self, registry: HealthRegistry, prober: ScriptedProber
    ) -> None:
        executor = await registry.register("arm-1:8080")
        prober.statuses["http://arm-1:8080"] = ExecutorStatus(
            state=ExecutorState.UNREACHABLE, message="gone"
        )

        status = await registry.refresh(executor.id)

        assert status.state == ExecutorState.UNREACHABLE
        stored = registry.get_by_id(executor.id)
        assert stored.status.available_methods == []
        assert stored.status.message == "gone"

    @pytest.mark.asyncio
    async def test_probe_all_in_registration_order(
        self, registry: HealthRegistry, prober: ScriptedProber
    ) -> None:
        await registry.register("arm-1:8080")
        await registry.register("arm-2:8080")
        prober.probed.clear()

        results = await registry.probe_all()

        assert prober.probed == ["http://arm-1:8080", "http://arm-2:8080"]
        assert len(results) == 2

    @pytest.mark.asyncio
    async def test_update_metadata(self, registry: HealthRegistry) -> None:
        executor = await registry.register("arm-1:8080")
        updated = registry.update(executor.id, name="renamed", base_url="arm-9:9000")

        assert updated.name == "renamed"
        assert updated.base_url == "http://arm-9:9000"
        assert updated.status.state == ExecutorState.READY

    @pytest.mark.asyncio
    async def test_update_rejects_status(self, registry: HealthRegistry) -> None:
        executor = await registry.register("arm-1:8080")
        with pytest.raises(ValidationError):
            registry.update(executor.id, status=None)

    def test_refresh_unknown_raises(self, registry: HealthRegistry) -> None:
        with pytest.raises(ExecutorNotFoundError):
            registry.apply_status("missing", ExecutorStatus())

    @pytest.mark.asyncio
    async def test_remove(self, registry: HealthRegistry) -> None:
        executor = await registry.register("arm-2:8080")
        assert registry.remove(executor.id) is True
        assert executor.id not in registry
