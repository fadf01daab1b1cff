"""Unit tests for process-exit teardown."""

import threading
from unittest.mock import patch

import pytest

from ephemeral_services.core import shutdown
from ephemeral_services.core.config import Settings
from ephemeral_services.core.container import (
    ServiceKind,
    ServiceRegistry,
    SlotState,
    set_registry,
    wire_services,
)
from ephemeral_services.core.shutdown import (
    ashutdown_services,
    register_shutdown_hook,
    shutdown_services,
)

from fakes import FakeRuntime


class TestShutdownServices:
    def test_without_registry_is_noop(self) -> None:
        shutdown_services()

    @pytest.mark.asyncio
    async def test_tears_down_started_services(
        self,
        registry: ServiceRegistry,
        fake_runtime: FakeRuntime,
    ) -> None:
        set_registry(registry)
        await registry.get_or_start(ServiceKind.GIT_SERVER)

        await ashutdown_services()

        container = fake_runtime.containers[0]
        assert container.stopped == 1
        assert container.removed == 1
        assert registry.slot(ServiceKind.GIT_SERVER).state is SlotState.TORN_DOWN
        assert registry.slot(ServiceKind.K3S_CLUSTER).state is SlotState.TORN_DOWN
        assert len(fake_runtime.starts) == 1

    @pytest.mark.asyncio
    async def test_concurrent_shutdowns_tear_down_once(
        self,
        registry: ServiceRegistry,
        fake_runtime: FakeRuntime,
    ) -> None:
        set_registry(registry)
        await registry.get_or_start(ServiceKind.K3S_CLUSTER)

        threads = [threading.Thread(target=shutdown_services) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        container = fake_runtime.containers[0]
        assert container.stopped == 1
        assert container.removed == 1

    @pytest.mark.asyncio
    async def test_teardown_failure_does_not_raise(self, settings: Settings) -> None:
        runtime = FakeRuntime(teardown_error=True)
        failing = ServiceRegistry()
        wire_services(failing, runtime=runtime, settings=settings)
        set_registry(failing)
        await failing.get_or_start(ServiceKind.GIT_SERVER)

        shutdown_services()

        assert runtime.containers[0].removed == 1


class TestRegisterShutdownHook:
    def test_registers_once(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(shutdown, "_hook_registered", False)

        with patch.object(shutdown.atexit, "register") as register:
            assert register_shutdown_hook() is True
            assert register_shutdown_hook() is False

        register.assert_called_once_with(shutdown_services)
