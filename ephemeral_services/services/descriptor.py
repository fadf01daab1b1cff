"""Container startup contract shared by every service builder.

A builder (``GitServer``, ``K8sCluster``) is an immutable configuration
snapshot. Calling its ``finalize()`` performs the file-system side effects
(directories, rendered config, TLS material) exactly once and returns a
``ContainerSpec``: the complete, frozen description the container runtime
needs to create, start and reconcile the container.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType


class LogStream(str, Enum):
    """Container output stream a readiness message is expected on."""

    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True, slots=True)
class ReadyCondition:
    """A substring the container prints once it has finished booting."""

    message: str
    stream: LogStream = LogStream.STDOUT

    @classmethod
    def on_stdout(cls, message: str) -> ReadyCondition:
        return cls(message=message, stream=LogStream.STDOUT)

    @classmethod
    def on_stderr(cls, message: str) -> ReadyCondition:
        return cls(message=message, stream=LogStream.STDERR)


@dataclass(frozen=True, slots=True)
class Mount:
    """Read/write bind mount of a host directory into the container."""

    source: Path
    target: str
    read_only: bool = False

    @classmethod
    def bind(cls, source: str | Path, target: str) -> Mount:
        return cls(source=Path(source), target=target)

    def to_docker(self) -> dict[str, str]:
        return {"bind": self.target, "mode": "ro" if self.read_only else "rw"}


@dataclass(frozen=True, slots=True)
class ExecCommand:
    """One-shot command run inside the container after readiness.

    Attributes:
        cmd: argv executed inside the container
        description: short human label used in logs and errors, never the
            argv itself since it may carry credentials
    """

    cmd: tuple[str, ...]
    description: str

    @classmethod
    def of(cls, description: str, *cmd: str) -> ExecCommand:
        return cls(cmd=tuple(cmd), description=description)


@dataclass(frozen=True)
class ContainerSpec:
    """Fully-specified, immutable container configuration.

    Attributes:
        name: Image repository (e.g., ``gitea/gitea``)
        tag: Concrete image tag resolved at build time
        exposed_ports: Container TCP ports published to the host
        ready: Readiness condition the runtime waits for
        env: Environment variables set on the container
        mounts: Host directory bind mounts
        command: Container command arguments (empty keeps the image default)
        exec_commands: Post-start commands, in execution order
        container_name: Optional fixed container name
        host_ports: Fixed host port per container port; unmapped ports get an
            ephemeral host port
        privileged: Run the container in privileged mode
        userns_mode: Docker user namespace mode (e.g., ``host``)
        labels: Extra container labels describing the service to consumers
    """

    name: str
    tag: str
    exposed_ports: tuple[int, ...]
    ready: ReadyCondition
    env: Mapping[str, str] = field(default_factory=dict)
    mounts: tuple[Mount, ...] = ()
    command: tuple[str, ...] = ()
    exec_commands: tuple[ExecCommand, ...] = ()
    container_name: str | None = None
    host_ports: Mapping[int, int] = field(default_factory=dict)
    privileged: bool = False
    userns_mode: str | None = None
    labels: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))
        object.__setattr__(self, "host_ports", MappingProxyType(dict(self.host_ports)))
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels)))

    @property
    def image(self) -> str:
        return f"{self.name}:{self.tag}"

    @property
    def display_name(self) -> str:
        return self.container_name or self.image
