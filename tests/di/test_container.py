"""
Tests for the dependency injection container.
"""
import pytest

from di.container import Container


class Settings:
    pass


class Repository:
    def __init__(self, settings: Settings):
        self.settings = settings


class Handler:
    def __init__(self, repository: Repository, retries: int = 3):
        self.repository = repository
        self.retries = retries


class Connection:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class AsyncConnection:
    def __init__(self):
        self.disposed = False

    async def dispose_async(self):
        self.disposed = True


class ChickenService:
    def __init__(self, egg: "EggService"):
        self.egg = egg


class EggService:
    def __init__(self, chicken: ChickenService):
        self.chicken = chicken


class TestRegistration:

    def test_singleton_is_shared(self):
        container = Container().register_singleton(Settings)

        assert container.resolve(Settings) is container.resolve(Settings)

    def test_instance(self):
        settings = Settings()
        container = Container().register_instance(Settings, settings)

        assert container.resolve(Settings) is settings

    def test_factory_called_once(self):
        calls = []

        def make():
            calls.append(1)
            return Settings()

        container = Container().register_factory(Settings, make)

        assert container.resolve(Settings) is container.resolve(Settings)
        assert calls == [1]

    def test_async_factory_rejected(self):
        async def make():
            return Settings()

        with pytest.raises(TypeError, match="register_instance"):
            Container().register_factory(Settings, make)

    def test_constructor_injection(self):
        container = Container()
        container.register_singleton(Settings)
        container.register_singleton(Repository)
        container.register_singleton(Handler)

        handler = container.resolve(Handler)

        assert handler.repository is container.resolve(Repository)
        assert handler.repository.settings is container.resolve(Settings)
        assert handler.retries == 3

    def test_reregistration_replaces_cached_instance(self):
        container = Container().register_singleton(Settings)
        first = container.resolve(Settings)
        replacement = Settings()

        container.register_instance(Settings, replacement)

        assert container.resolve(Settings) is replacement
        assert container.resolve(Settings) is not first

    def test_registered_types(self):
        container = Container().register_singleton(Settings).register_singleton(Repository)

        assert container.registered_types == [Settings, Repository]
        assert container.is_registered(Settings)
        assert not container.is_registered(Handler)


class TestResolution:

    def test_unregistered_raises_key_error(self):
        with pytest.raises(KeyError, match="Settings"):
            Container().resolve(Settings)

    def test_try_resolve(self):
        container = Container()

        assert container.try_resolve(Settings) is None
        container.register_singleton(Settings)
        assert isinstance(container.try_resolve(Settings), Settings)

    def test_circular_dependency(self):
        container = Container()
        container.register_singleton(ChickenService)
        container.register_singleton(EggService)

        with pytest.raises(RecursionError, match="Circular dependency"):
            container.resolve(ChickenService)

    def test_failed_build_can_be_retried(self):
        attempts = []

        def make():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("not yet")
            return Settings()

        container = Container().register_factory(Settings, make)

        with pytest.raises(RuntimeError):
            container.resolve(Settings)
        assert isinstance(container.resolve(Settings), Settings)


class TestDisposal:

    @pytest.mark.asyncio
    async def test_dispose_async_closes_only_built_instances(self):
        container = Container()
        container.register_singleton(Connection)
        container.register_factory(AsyncConnection, AsyncConnection)
        external = Connection()
        container.register_instance(Settings, external)

        owned = container.resolve(Connection)
        owned_async = container.resolve(AsyncConnection)
        await container.dispose_async()

        assert owned.closed
        assert owned_async.disposed
        assert not external.closed
        assert container.resolve(Settings) is external

    @pytest.mark.asyncio
    async def test_dispose_order_is_newest_first(self):
        order = []

        class First:
            def close(self):
                order.append("first")

        class Second:
            def close(self):
                order.append("second")

        container = Container().register_singleton(First).register_singleton(Second)
        container.resolve(First)
        container.resolve(Second)

        await container.dispose_async()

        assert order == ["second", "first"]

    @pytest.mark.asyncio
    async def test_unresolved_services_are_not_built_for_disposal(self):
        container = Container().register_singleton(Connection)

        await container.dispose_async()

        assert container.try_resolve(Connection).closed is False
