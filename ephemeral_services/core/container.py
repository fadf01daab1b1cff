"""Process-wide lifecycle registry for ephemeral service containers.

Each service kind owns one ``SingletonSlot``. The first caller to reach an
uninitialized slot runs the full start sequence (finalize descriptor, start
container, wait for readiness, run post-start commands); every concurrent
caller awaits that same attempt and observes the same container or the same
exception. A slot never starts a second container, even after a failure.

Slots are synchronized with ``threading`` primitives and
``concurrent.futures.Future`` rather than asyncio locks so that callers on
different event loops (pytest-asyncio creates one per test) and the
process-exit hook, which runs with no loop at all, share one state machine.

Usage:
    registry = get_registry()
    container = await registry.get_or_start(ServiceKind.GIT_SERVER)

    async with registry.read(ServiceKind.K3S_CLUSTER) as cluster:
        port = await cluster.get_host_port_ipv4(6443)
"""

__all__ = [
    "ReadWriteLock",
    "ServiceAlreadyRegisteredError",
    "ServiceKind",
    "ServiceNotFoundError",
    "ServiceRegistry",
    "SingletonSlot",
    "SlotState",
    "get_registry",
    "peek_registry",
    "reset_registry",
    "set_registry",
    "wire_services",
]

import asyncio
import concurrent.futures
import threading
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from enum import Enum
from typing import TYPE_CHECKING

from ephemeral_services.core.exceptions import (
    ContainerStartError,
    ServiceUnavailableError,
)
from ephemeral_services.core.logging import get_logger, sanitize_error, service_context
from ephemeral_services.core.protocols import ContainerHandle

if TYPE_CHECKING:
    from ephemeral_services.core.config import Settings
    from ephemeral_services.core.protocols import ContainerRuntime
    from ephemeral_services.services.gitea import GitServer
    from ephemeral_services.services.k3s import K8sCluster

logger = get_logger(__name__)

ServiceFactory = Callable[[], Awaitable[ContainerHandle]]

# Upper bound on waiting for in-flight readers before tearing a container down
TEARDOWN_LOCK_TIMEOUT_SECONDS = 30.0

_READ_POLL_INTERVAL = 0.01


class ServiceKind(str, Enum):
    """Service kinds managed by the registry."""

    GIT_SERVER = "git-server"
    K3S_CLUSTER = "k3s"


class SlotState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"
    TORN_DOWN = "torn_down"


class ServiceNotFoundError(Exception):
    """Raised when a requested service kind is not registered."""

    def __init__(self, service_name: str) -> None:
        super().__init__(f"Service '{service_name}' not found in registry")
        self.service_name = service_name


class ServiceAlreadyRegisteredError(Exception):
    """Raised when attempting to register a service kind twice."""

    def __init__(self, service_name: str) -> None:
        super().__init__(f"Service '{service_name}' is already registered")
        self.service_name = service_name


class ReadWriteLock:
    """Writer-preferring reader/writer lock usable from threads and event loops.

    Readers acquire without blocking the event loop by polling a non-blocking
    attempt. The writer side blocks its thread; it is only taken by teardown.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @property
    def readers(self) -> int:
        return self._readers

    def try_acquire_read(self) -> bool:
        with self._cond:
            if self._writer or self._writers_waiting:
                return False
            self._readers += 1
            return True

    async def acquire_read(self) -> None:
        while not self.try_acquire_read():
            await asyncio.sleep(_READ_POLL_INTERVAL)

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self, timeout: float | None = None) -> bool:
        """Block until exclusive. Returns False if ``timeout`` expired first."""
        with self._cond:
            self._writers_waiting += 1
            try:
                acquired = self._cond.wait_for(
                    lambda: not self._writer and self._readers == 0,
                    timeout=timeout,
                )
                if acquired:
                    self._writer = True
                return acquired
            finally:
                self._writers_waiting -= 1

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()


def _discard(kind: ServiceKind, handle: ContainerHandle) -> None:
    try:
        handle.remove()
    except Exception as e:
        logger.error(
            f"Failed to remove orphaned {kind.value} container: {sanitize_error(e)}",
            extra={"service": kind.value, "error_type": type(e).__name__},
        )


class SingletonSlot:
    """Exactly-once holder of one service container.

    Attributes:
        kind: Service kind this slot holds
    """

    def __init__(self, kind: ServiceKind, factory: ServiceFactory) -> None:
        self.kind = kind
        self._factory = factory
        self._lock = threading.Lock()
        self._state = SlotState.UNINITIALIZED
        self._future: concurrent.futures.Future[ContainerHandle] | None = None
        self._handle: ContainerHandle | None = None
        self._rw_lock = ReadWriteLock()

    def __repr__(self) -> str:
        return f"SingletonSlot(kind={self.kind.value!r}, state={self._state.value!r})"

    @property
    def state(self) -> SlotState:
        return self._state

    @property
    def handle(self) -> ContainerHandle | None:
        return self._handle

    async def get_or_start(self) -> ContainerHandle:
        """Return the slot's container, starting it on first access.

        Raises:
            ServiceUnavailableError: If the slot has been torn down
            EphemeralServiceError: The failure of the (single) start attempt
        """
        with self._lock:
            if self._state is SlotState.TORN_DOWN:
                raise ServiceUnavailableError(self.kind.value)
            future = self._future
            is_winner = future is None
            if future is None:
                future = concurrent.futures.Future()
                self._future = future
                self._state = SlotState.INITIALIZING

        if is_winner:
            await self._initialize(future)

        # shield: a cancelled waiter must not cancel the shared attempt
        return await asyncio.shield(asyncio.wrap_future(future))

    async def _initialize(self, future: "concurrent.futures.Future[ContainerHandle]") -> None:
        logger.info(f"Starting {self.kind.value} service", extra={"service": self.kind.value})
        try:
            handle = await self._factory()
        except Exception as e:
            self._fail(future, e)
            return
        except BaseException:
            self._fail(
                future,
                ContainerStartError(
                    f"Startup of {self.kind.value} was interrupted",
                    details={"service": self.kind.value},
                ),
            )
            raise

        with self._lock:
            torn_down = self._state is SlotState.TORN_DOWN
            if not torn_down:
                self._handle = handle
                self._state = SlotState.READY

        if torn_down:
            logger.warning(
                f"{self.kind.value} finished starting after shutdown; removing it",
                extra={"service": self.kind.value, "container_id": handle.id},
            )
            await asyncio.shield(asyncio.to_thread(_discard, self.kind, handle))
            future.set_exception(ServiceUnavailableError(self.kind.value))
            return

        logger.info(
            f"{self.kind.value} service ready",
            extra={"service": self.kind.value, "container_id": handle.id},
        )
        future.set_result(handle)

    def _fail(self, future: "concurrent.futures.Future[ContainerHandle]", error: BaseException) -> None:
        with self._lock:
            if self._state is not SlotState.TORN_DOWN:
                self._state = SlotState.FAILED
        logger.error(
            f"Failed to start {self.kind.value} service: {error}",
            extra={"service": self.kind.value, "error_type": type(error).__name__},
        )
        future.set_exception(error)

    @asynccontextmanager
    async def read(self) -> AsyncIterator[ContainerHandle]:
        """Shared access to the running container.

        Teardown waits for every open ``read()`` block to exit.
        """
        handle = await self.get_or_start()
        await self._rw_lock.acquire_read()
        try:
            if self._state is SlotState.TORN_DOWN:
                raise ServiceUnavailableError(self.kind.value)
            yield handle
        finally:
            self._rw_lock.release_read()

    def teardown(self, lock_timeout: float | None = TEARDOWN_LOCK_TIMEOUT_SECONDS) -> None:
        """Stop then remove the container, and close the slot for good.

        Blocking. Teardown errors are logged, never raised.
        """
        acquired = self._rw_lock.acquire_write(timeout=lock_timeout)
        if not acquired:
            logger.warning(
                f"Readers still hold {self.kind.value} after {lock_timeout}s; tearing down anyway",
                extra={"service": self.kind.value, "readers": self._rw_lock.readers},
            )
        try:
            with self._lock:
                handle, self._handle = self._handle, None
                previous = self._state
                self._state = SlotState.TORN_DOWN

            if handle is None:
                logger.debug(
                    f"Nothing to tear down for {self.kind.value}",
                    extra={"service": self.kind.value, "state": previous.value},
                )
                return

            logger.info(
                f"Tearing down {self.kind.value}",
                extra={"service": self.kind.value, "container_id": handle.id},
            )
            # each step runs even if the previous one failed
            for step in (handle.stop, handle.remove):
                try:
                    step()
                except Exception as e:
                    logger.error(
                        f"Teardown of {self.kind.value} failed: {sanitize_error(e)}",
                        extra={
                            "service": self.kind.value,
                            "container_id": handle.id,
                            "error_type": type(e).__name__,
                        },
                    )
        finally:
            if acquired:
                self._rw_lock.release_write()


class ServiceRegistry:
    """Registry of singleton service slots keyed by ``ServiceKind``."""

    def __init__(self) -> None:
        self._slots: dict[ServiceKind, SingletonSlot] = {}
        self._lock = threading.Lock()

    @property
    def registered_services(self) -> list[ServiceKind]:
        return list(self._slots)

    def register(self, kind: ServiceKind, factory: ServiceFactory) -> SingletonSlot:
        """Register the start sequence for ``kind``.

        Raises:
            ServiceAlreadyRegisteredError: If ``kind`` is already registered
        """
        with self._lock:
            if kind in self._slots:
                raise ServiceAlreadyRegisteredError(kind.value)
            slot = SingletonSlot(kind, factory)
            self._slots[kind] = slot
        logger.debug(f"Registered service: {kind.value}")
        return slot

    def slot(self, kind: ServiceKind) -> SingletonSlot:
        try:
            return self._slots[kind]
        except KeyError:
            raise ServiceNotFoundError(kind.value) from None

    async def get_or_start(self, kind: ServiceKind) -> ContainerHandle:
        return await self.slot(kind).get_or_start()

    @asynccontextmanager
    async def read(self, kind: ServiceKind) -> AsyncIterator[ContainerHandle]:
        async with self.slot(kind).read() as handle:
            yield handle

    def shutdown(self, lock_timeout: float | None = TEARDOWN_LOCK_TIMEOUT_SECONDS) -> None:
        """Tear down every slot, most recently registered first. Blocking."""
        logger.info("Service registry shutdown initiated")
        with self._lock:
            slots = list(self._slots.values())
        for slot in reversed(slots):
            slot.teardown(lock_timeout=lock_timeout)
        logger.info("Service registry shutdown complete")


# Global registry instance
_registry: ServiceRegistry | None = None
_registry_lock = threading.Lock()


def get_registry() -> ServiceRegistry:
    """Get the global registry, creating and wiring it on first call."""
    global _registry  # noqa: PLW0603
    with _registry_lock:
        if _registry is None:
            registry = ServiceRegistry()
            wire_services(registry)
            _registry = registry
        return _registry


def peek_registry() -> ServiceRegistry | None:
    """The global registry if one was created, without creating it."""
    return _registry


def set_registry(registry: ServiceRegistry | None) -> None:
    """Replace the global registry, useful for testing."""
    global _registry  # noqa: PLW0603
    with _registry_lock:
        _registry = registry


def reset_registry() -> None:
    """Drop the global registry without tearing anything down."""
    set_registry(None)


def wire_services(
    registry: ServiceRegistry,
    *,
    runtime: "ContainerRuntime | None" = None,
    settings: "Settings | None" = None,
    git_server: "GitServer | None" = None,
    k8s_cluster: "K8sCluster | None" = None,
) -> None:
    """Register the git-server and k3s start sequences.

    Descriptors default to the settings-derived ones (the k3s cluster with
    every optional feature disabled) and are resolved on first start, so a
    missing runtime directory surfaces as a configuration error to the
    first caller rather than at import time.

    Args:
        registry: Registry to wire services into
        runtime: Container runtime, docker by default
        settings: Settings, the cached global ones by default
        git_server: Git server descriptor overriding the default
        k8s_cluster: k3s descriptor overriding the default
    """
    from ephemeral_services.core.config import get_settings
    from ephemeral_services.core.docker_client import DockerRuntime
    from ephemeral_services.services.gitea import GitServer
    from ephemeral_services.services.k3s import K8sCluster
    from ephemeral_services.services.reconciler import start_service

    resolved_settings = settings or get_settings()
    resolved_runtime = runtime or DockerRuntime.from_settings(resolved_settings)
    timeout = resolved_settings.readiness_timeout_seconds

    async def git_server_factory() -> ContainerHandle:
        with service_context(ServiceKind.GIT_SERVER.value):
            builder = git_server or GitServer.from_settings(resolved_settings)
            spec = await asyncio.to_thread(builder.finalize)
            return await start_service(resolved_runtime, spec, readiness_timeout=timeout)

    async def k3s_factory() -> ContainerHandle:
        with service_context(ServiceKind.K3S_CLUSTER.value):
            builder = k8s_cluster or K8sCluster.from_settings(resolved_settings).with_all_features(False)
            spec = await asyncio.to_thread(builder.finalize)
            return await start_service(resolved_runtime, spec, readiness_timeout=timeout)

    registry.register(ServiceKind.GIT_SERVER, git_server_factory)
    registry.register(ServiceKind.K3S_CLUSTER, k3s_factory)

    logger.info("All services wired in registry")
