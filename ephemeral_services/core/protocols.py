"""Protocol definitions for the container runtime seam.

This module defines Protocol classes for structural subtyping, so the lifecycle
registry and post-start reconciliation work against any runtime that matches
them: the docker-backed runtime in production, an in-memory fake in tests.

Protocol Definitions:
    - ContainerHandle: A started container (host/port lookup, exec, teardown)
    - ContainerRuntime: Creates and starts containers from a ContainerSpec

See Also:
    - ephemeral_services/core/docker_client.py - Implements both protocols
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ephemeral_services.services.descriptor import ContainerSpec


@dataclass(frozen=True, slots=True)
class ExecResult:
    """Outcome of a one-shot command executed inside a container."""

    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@runtime_checkable
class ContainerHandle(Protocol):
    """Protocol for a started container.

    Async methods may suspend on runtime I/O. ``stop()`` and ``remove()`` are
    blocking on purpose: they are called from the process-exit hook, where no
    event loop or executor can be relied upon.
    """

    @property
    def id(self) -> str: ...

    @property
    def spec(self) -> ContainerSpec: ...

    async def wait_until_ready(self, timeout: float) -> None:
        """Block until the spec's readiness message shows up in the logs.

        Raises:
            ReadinessTimeoutError: If the message is not seen within ``timeout``
            ContainerStartError: If the container exits while waiting
        """
        ...

    async def get_host(self) -> str:
        """Hostname under which published ports are reachable."""
        ...

    async def get_host_port_ipv4(self, port: int) -> int:
        """Host port published for container TCP ``port``."""
        ...

    async def exec(self, cmd: tuple[str, ...]) -> ExecResult:
        """Run ``cmd`` inside the container and return its exit status."""
        ...

    def stop(self) -> None: ...

    def remove(self) -> None: ...


@runtime_checkable
class ContainerRuntime(Protocol):
    """Protocol for container runtimes."""

    async def start(self, spec: ContainerSpec) -> ContainerHandle:
        """Create and start a container described by ``spec``.

        Raises:
            ContainerStartError: If pulling, creating or starting fails
        """
        ...
