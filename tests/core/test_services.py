"""
Tests for the service graph.
"""
import asyncio

import pytest

from core.errors import ServiceGraphError
from core.services import (
    BackgroundServiceBase,
    FunctionStartupTask,
    ServiceGraph,
    ServiceLayer,
    ServiceModuleBase,
    StartupTask,
    startup_task,
)


class Clock:
    pass


class Greeter:
    def __init__(self, clock: Clock):
        self.clock = clock


class RecordingModule(ServiceModuleBase):
    """Module that records its lifecycle calls into a shared journal."""

    def __init__(self, name, journal, layer=ServiceLayer.CORE, dependencies=(), registers=(), **kwargs):
        super().__init__(name, layer=layer, dependencies=dependencies, **kwargs)
        self.journal = journal
        self.registers = registers

    def configure_services(self, container, context):
        self.journal.append(f"configure:{self.name}")
        for service_type in self.registers:
            container.register_singleton(service_type)

    async def initialize(self, container):
        self.journal.append(f"initialize:{self.name}")

    async def shutdown(self, container):
        self.journal.append(f"shutdown:{self.name}")


class Ticker(BackgroundServiceBase):
    def __init__(self):
        super().__init__("Ticker")
        self.ticks = 0

    async def execute(self, cancellation_token):
        while not cancellation_token.is_set():
            self.ticks += 1
            await asyncio.sleep(0.001)


class TestWiring:
    """Tests for layered, dependency-ordered wiring."""

    @pytest.mark.asyncio
    async def test_dependency_order_within_layer(self, offline_context):
        journal = []
        graph = ServiceGraph(offline_context)
        graph.add_module(RecordingModule("b", journal, dependencies=("a",)))
        graph.add_module(RecordingModule("a", journal))

        await graph.initialize_core()

        assert journal == ["configure:a", "configure:b", "initialize:a", "initialize:b"]

    @pytest.mark.asyncio
    async def test_layers_are_wired_separately(self, offline_context):
        journal = []
        graph = ServiceGraph(offline_context)
        graph.add_module(RecordingModule("app", journal, layer=ServiceLayer.APPLICATION, dependencies=("core",)))
        graph.add_module(RecordingModule("core", journal))

        await graph.initialize_core()
        assert journal == ["configure:core", "initialize:core"]

        await graph.complete_wiring()
        assert journal[2:] == ["configure:app", "initialize:app"]

    @pytest.mark.asyncio
    async def test_constructor_injection(self, offline_context):
        graph = ServiceGraph(offline_context)
        graph.add_module(RecordingModule("core", [], registers=(Clock, Greeter)))

        await graph.initialize_core()

        greeter = graph.resolve(Greeter)
        assert greeter.clock is graph.resolve(Clock)
        assert graph.resolve(ServiceGraph) is graph

    @pytest.mark.asyncio
    async def test_unknown_dependency(self, offline_context):
        graph = ServiceGraph(offline_context)
        graph.add_module(RecordingModule("a", [], dependencies=("missing",)))

        with pytest.raises(ServiceGraphError, match="unknown module 'missing'"):
            await graph.initialize_core()

    @pytest.mark.asyncio
    async def test_core_cannot_depend_on_application(self, offline_context):
        graph = ServiceGraph(offline_context)
        graph.add_module(RecordingModule("core", [], dependencies=("app",)))
        graph.add_module(RecordingModule("app", [], layer=ServiceLayer.APPLICATION))

        with pytest.raises(ServiceGraphError, match="later layer"):
            await graph.initialize_core()

    @pytest.mark.asyncio
    async def test_cycle(self, offline_context):
        graph = ServiceGraph(offline_context)
        graph.add_module(RecordingModule("a", [], dependencies=("b",)))
        graph.add_module(RecordingModule("b", [], dependencies=("a",)))

        with pytest.raises(ServiceGraphError, match="Circular dependency"):
            await graph.initialize_core()

    @pytest.mark.asyncio
    async def test_missing_required_service(self, offline_context):
        graph = ServiceGraph(offline_context)
        graph.add_module(RecordingModule("a", [], required_services=(Clock,)))

        with pytest.raises(ServiceGraphError) as exc_info:
            await graph.initialize_core()

        assert exc_info.value.service == "Clock"

    @pytest.mark.asyncio
    async def test_failing_module_is_wrapped(self, offline_context):
        class Broken(ServiceModuleBase):
            def configure_services(self, container, context):
                raise ValueError("bad wiring")

        graph = ServiceGraph(offline_context)
        graph.add_module(Broken())

        with pytest.raises(ServiceGraphError) as exc_info:
            await graph.initialize_core()

        assert exc_info.value.service == "Broken"
        assert isinstance(exc_info.value.cause, ValueError)

    @pytest.mark.asyncio
    async def test_application_layer_needs_core_first(self, offline_context):
        graph = ServiceGraph(offline_context)

        with pytest.raises(ServiceGraphError, match="Core services"):
            await graph.complete_wiring()

    @pytest.mark.asyncio
    async def test_duplicate_module_name(self, offline_context):
        graph = ServiceGraph(offline_context)
        graph.add_module(RecordingModule("a", []))

        with pytest.raises(ServiceGraphError, match="already registered"):
            graph.add_module(RecordingModule("a", []))

    @pytest.mark.asyncio
    async def test_module_cannot_join_wired_layer(self, offline_context):
        graph = ServiceGraph(offline_context)
        await graph.initialize_core()

        with pytest.raises(ServiceGraphError, match="already wired"):
            graph.add_module(RecordingModule("late", []))


class TestResolution:
    """Tests for resolve and try_resolve."""

    def test_resolve_unregistered(self, offline_context):
        graph = ServiceGraph(offline_context)

        with pytest.raises(ServiceGraphError) as exc_info:
            graph.resolve(Clock)

        assert exc_info.value.service == "Clock"

    def test_try_resolve_unregistered(self, offline_context):
        assert ServiceGraph(offline_context).try_resolve(Clock) is None


class TestRunning:
    """Tests for start, stop and dispose."""

    async def _wired(self, context, journal, *services):
        graph = ServiceGraph(context)
        graph.add_module(RecordingModule("core", journal))
        graph.add_module(RecordingModule("app", journal, layer=ServiceLayer.APPLICATION))
        for service in services:
            graph.add_background_service(service)
        await graph.initialize_core()
        await graph.complete_wiring()
        return graph

    @pytest.mark.asyncio
    async def test_start_requires_full_wiring(self, offline_context):
        graph = ServiceGraph(offline_context)
        await graph.initialize_core()

        with pytest.raises(ServiceGraphError, match="wired"):
            await graph.start()

    @pytest.mark.asyncio
    async def test_background_services_run_until_stopped(self, offline_context):
        ticker = Ticker()
        graph = await self._wired(offline_context, [], ticker)

        await graph.start()
        await asyncio.sleep(0.02)
        assert graph.is_running
        assert ticker.is_running

        await graph.stop()

        assert ticker.ticks > 0
        assert not ticker.is_running
        assert not graph.is_running
        assert graph.cancellation_token.is_set()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent_and_reverse_ordered(self, offline_context):
        journal = []
        graph = await self._wired(offline_context, journal)
        await graph.start()

        first = await graph.stop()
        second = await graph.stop()

        assert first == [] and second == []
        assert [j for j in journal if j.startswith("shutdown")] == ["shutdown:app", "shutdown:core"]

    @pytest.mark.asyncio
    async def test_stop_collects_shutdown_errors(self, offline_context):
        class FailsOnShutdown(RecordingModule):
            async def shutdown(self, container):
                raise RuntimeError("stuck")

        graph = ServiceGraph(offline_context)
        graph.add_module(FailsOnShutdown("core", []))
        await graph.initialize_core()

        errors = await graph.stop()

        assert len(errors) == 1
        assert errors[0].resource_name == "module:core"

    @pytest.mark.asyncio
    async def test_only_initialized_modules_shut_down(self, offline_context):
        journal = []
        graph = ServiceGraph(offline_context)
        graph.add_module(RecordingModule("core", journal))
        graph.add_module(RecordingModule("app", journal, layer=ServiceLayer.APPLICATION))
        await graph.initialize_core()

        await graph.stop()

        assert "shutdown:app" not in journal
        assert "shutdown:core" in journal

    @pytest.mark.asyncio
    async def test_dispose_async_closes_singletons(self, offline_context):
        class Pool:
            closed = 0

            def close(self):
                Pool.closed += 1

        graph = ServiceGraph(offline_context)
        graph.add_module(RecordingModule("core", [], registers=(Pool,)))
        await graph.initialize_core()
        graph.resolve(Pool)

        await graph.dispose_async()
        await graph.dispose_async()

        assert Pool.closed == 1

    @pytest.mark.asyncio
    async def test_cannot_restart_after_stop(self, offline_context):
        graph = await self._wired(offline_context, [])
        await graph.stop()

        with pytest.raises(ServiceGraphError, match="stopped"):
            await graph.start()


class TestStartupTasks:
    """Tests for the StartupTask helpers."""

    @pytest.mark.asyncio
    async def test_decorated_function(self, offline_context):
        seen = []

        @startup_task()
        async def warm_cache(graph):
            seen.append(graph)

        graph = ServiceGraph(offline_context)
        await warm_cache.run(graph)

        assert warm_cache.name == "warm-cache"
        assert isinstance(warm_cache, StartupTask)
        assert seen == [graph]

    @pytest.mark.asyncio
    async def test_sync_function(self, offline_context):
        seen = []
        task = FunctionStartupTask(lambda graph: seen.append(graph), name="sync")

        await task.run(ServiceGraph(offline_context))

        assert task.name == "sync"
        assert len(seen) == 1
