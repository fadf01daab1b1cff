"""Docker-backed container runtime.

This module provides an async wrapper around docker-py that starts service
containers from a ``ContainerSpec``. Blocking docker-py calls run in a thread
pool via ``asyncio.to_thread()`` so concurrent fixtures never block the event
loop.

Features:
- Lazy daemon connection (DOCKER_HOST or the standard socket)
- Shared user-defined bridge network, created on demand
- Image pull on first use
- Readiness polling of stdout/stderr with a hard deadline
- One-shot exec with exit status
- Blocking stop/remove for the process-exit hook

Usage:
    runtime = DockerRuntime.from_settings(get_settings())
    container = await runtime.start(spec)
    await container.wait_until_ready(timeout=120)
    port = await container.get_host_port_ipv4(3000)
"""

from __future__ import annotations

import asyncio
import threading
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from docker import DockerClient as BaseDockerClient  # type: ignore[attr-defined]
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from requests.exceptions import RequestException

from ephemeral_services.core.exceptions import (
    ContainerStartError,
    ContainerTeardownError,
    ReadinessTimeoutError,
    RuntimeInteractionError,
)
from ephemeral_services.core.logging import get_logger, sanitize_error
from ephemeral_services.core.protocols import ExecResult
from ephemeral_services.services.descriptor import ContainerSpec, LogStream

if TYPE_CHECKING:
    from docker.models.containers import Container

    from ephemeral_services.core.config import Settings

logger = get_logger(__name__)

# Label attached to every container started by this package
MANAGED_LABEL = "org.ephemeral-services.managed"

_EXITED_STATES = frozenset({"exited", "dead"})

# docker-py lets transport failures from requests through unwrapped
DOCKER_ERRORS: tuple[type[Exception], ...] = (DockerException, RequestException)


def _parse_log_timestamp(stamp: str) -> float | None:
    """Unix time of an RFC 3339 docker log timestamp, None if ``stamp`` is not one."""
    if not stamp.endswith("Z"):
        return None
    seconds, _, fraction = stamp[:-1].partition(".")
    try:
        parsed = datetime.fromisoformat(seconds).replace(tzinfo=UTC)
    except ValueError:
        return None
    if fraction.isdigit():
        return parsed.timestamp() + float(f"0.{fraction}")
    return parsed.timestamp()


class RunningContainer:
    """Handle on a container started by ``DockerRuntime``.

    Attributes:
        spec: The container spec the container was created from
    """

    def __init__(
        self,
        container: Container,
        spec: ContainerSpec,
        *,
        host: str,
        poll_interval: float,
        stop_timeout: int,
    ) -> None:
        self._container = container
        self._spec = spec
        self._host = host
        self._poll_interval = poll_interval
        self._stop_timeout = stop_timeout
        self._log_since: float | None = None

    def __repr__(self) -> str:
        return f"RunningContainer(id={self.id[:12]!r}, image={self._spec.image!r})"

    @property
    def id(self) -> str:
        return str(self._container.id)

    @property
    def spec(self) -> ContainerSpec:
        return self._spec

    async def get_host(self) -> str:
        return self._host

    async def get_host_port_ipv4(self, port: int) -> int:
        """Return the host port published for container TCP ``port``.

        Raises:
            RuntimeInteractionError: If the port is not published.
        """
        try:
            await asyncio.to_thread(self._container.reload)
        except DOCKER_ERRORS as e:
            raise RuntimeInteractionError(
                f"Failed to inspect container {self._spec.display_name}: {e}"
            ) from e

        ports: dict[str, list[dict[str, str]] | None] = self._container.attrs.get(
            "NetworkSettings", {}
        ).get("Ports") or {}
        bindings = ports.get(f"{port}/tcp") or []
        for binding in bindings:
            if binding.get("HostIp") in ("0.0.0.0", "", None):  # noqa: S104
                return int(binding["HostPort"])
        if bindings:
            return int(bindings[0]["HostPort"])

        raise RuntimeInteractionError(
            f"Container port {port}/tcp of {self._spec.display_name} is not published",
            details={"container": self._spec.display_name, "port": port},
        )

    def _read_logs(self, stream: LogStream) -> str:
        """Log output written since the previous call.

        Lines are requested with daemon timestamps; the last timestamp seen
        becomes the next call's ``since`` so each poll only transfers new
        output. ``since`` is inclusive, so the last line may be read twice.
        """
        kwargs: dict[str, Any] = {
            "stdout": stream is LogStream.STDOUT,
            "stderr": stream is LogStream.STDERR,
            "timestamps": True,
        }
        if self._log_since is not None:
            kwargs["since"] = self._log_since
        raw: bytes = self._container.logs(**kwargs)

        messages = []
        for line in raw.decode("utf-8", errors="replace").splitlines():
            stamp, _, message = line.partition(" ")
            seen = _parse_log_timestamp(stamp)
            if seen is None:
                messages.append(line)
                continue
            self._log_since = seen
            messages.append(message)
        return "\n".join(messages)

    def _status(self) -> str:
        self._container.reload()
        return str(self._container.status)

    async def wait_until_ready(self, timeout: float) -> None:
        condition = self._spec.ready
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        logger.info(
            f"Waiting for {self._spec.display_name} readiness",
            extra={
                "container": self._spec.display_name,
                "expected": condition.message,
                "stream": condition.stream.value,
                "timeout": timeout,
            },
        )

        while True:
            try:
                logs = await asyncio.to_thread(self._read_logs, condition.stream)
                if condition.message in logs:
                    logger.info(
                        f"Container {self._spec.display_name} is ready",
                        extra={"container": self._spec.display_name},
                    )
                    return

                status = await asyncio.to_thread(self._status)
            except DOCKER_ERRORS as e:
                raise ContainerStartError(
                    f"Lost container {self._spec.display_name} while waiting for readiness: {e}"
                ) from e

            if status in _EXITED_STATES:
                raise ContainerStartError(
                    f"Container {self._spec.display_name} exited before becoming ready",
                    details={"container": self._spec.display_name, "status": status},
                )

            if loop.time() >= deadline:
                raise ReadinessTimeoutError(
                    self._spec.display_name,
                    message=condition.message,
                    timeout=timeout,
                )

            await asyncio.sleep(self._poll_interval)

    async def exec(self, cmd: tuple[str, ...]) -> ExecResult:
        try:
            result = await asyncio.to_thread(self._container.exec_run, list(cmd))
        except DOCKER_ERRORS as e:
            raise RuntimeInteractionError(
                f"Failed to exec in container {self._spec.display_name}: {sanitize_error(e)}"
            ) from e

        output = (result.output or b"").decode("utf-8", errors="replace")
        exit_code = result.exit_code if result.exit_code is not None else -1
        logger.debug(
            f"Executed command in container {self._spec.display_name}",
            extra={"container": self._spec.display_name, "exit_code": exit_code},
        )
        return ExecResult(exit_code=exit_code, output=output)

    def stop(self) -> None:
        """Stop the container gracefully.

        Raises:
            ContainerTeardownError: If the daemon rejects the stop request.
        """
        try:
            self._container.stop(timeout=self._stop_timeout)
        except NotFound:
            logger.warning(
                f"Cannot stop container - not found: {self._spec.display_name}",
                extra={"container_id": self.id},
            )
            return
        except DOCKER_ERRORS as e:
            raise ContainerTeardownError(
                f"Failed to stop container {self._spec.display_name}: {e}"
            ) from e
        logger.info(
            f"Stopped container {self._spec.display_name}",
            extra={"container_id": self.id, "timeout": self._stop_timeout},
        )

    def remove(self) -> None:
        """Remove the container and its anonymous volumes.

        Raises:
            ContainerTeardownError: If the daemon rejects the removal.
        """
        try:
            self._container.remove(v=True, force=True)
        except NotFound:
            logger.debug(
                f"Container already removed: {self._spec.display_name}",
                extra={"container_id": self.id},
            )
            return
        except DOCKER_ERRORS as e:
            raise ContainerTeardownError(
                f"Failed to remove container {self._spec.display_name}: {e}"
            ) from e
        logger.info(
            f"Removed container {self._spec.display_name}",
            extra={"container_id": self.id},
        )


class DockerRuntime:
    """Async container runtime on top of docker-py.

    The daemon connection is opened lazily on the first ``start()`` so that
    building descriptors and resolving configuration never requires Docker.

    Attributes:
        _docker_host: The Docker host URL (e.g., unix:///var/run/docker.sock)
        _network: Name of the bridge network containers join, if any
    """

    def __init__(
        self,
        docker_host: str | None = None,
        *,
        network: str | None = None,
        host: str = "localhost",
        poll_interval: float = 0.5,
        stop_timeout: int = 10,
    ) -> None:
        self._docker_host = docker_host
        self._network = network
        self._host = host
        self._poll_interval = poll_interval
        self._stop_timeout = stop_timeout
        self._client: BaseDockerClient | None = None
        self._client_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> DockerRuntime:
        return cls(
            settings.docker_host,
            network=settings.docker_network,
            host=settings.docker_hostname,
            poll_interval=settings.readiness_poll_interval_seconds,
            stop_timeout=settings.stop_timeout_seconds,
        )

    def _get_client(self) -> BaseDockerClient:
        with self._client_lock:
            if self._client is None:
                try:
                    if self._docker_host:
                        self._client = BaseDockerClient(base_url=self._docker_host)
                    else:
                        self._client = BaseDockerClient.from_env()
                except DOCKER_ERRORS as e:
                    raise ContainerStartError(f"Failed to connect to Docker daemon: {e}") from e
                logger.info(
                    "Connected to Docker daemon",
                    extra={"docker_host": self._docker_host or "default"},
                )
            return self._client

    async def ping(self) -> bool:
        """Return True if the Docker daemon answers a ping."""
        try:
            client = await asyncio.to_thread(self._get_client)
            await asyncio.to_thread(client.ping)
            return True
        except (ContainerStartError, *DOCKER_ERRORS) as e:
            logger.warning(f"Failed to connect to Docker daemon: {e}")
            return False

    def _ensure_network(self, client: BaseDockerClient, name: str) -> None:
        if client.networks.list(names=[name]):
            return
        try:
            client.networks.create(name, driver="bridge")
            logger.info(f"Created docker network {name}", extra={"network": name})
        except APIError as e:
            # created concurrently by another process
            if e.status_code != 409:
                raise

    def _ensure_image(self, client: BaseDockerClient, spec: ContainerSpec) -> None:
        try:
            client.images.get(spec.image)
        except ImageNotFound:
            logger.info(f"Pulling image {spec.image}", extra={"image": spec.image})
            client.images.pull(spec.name, tag=spec.tag)

    def _run_kwargs(self, spec: ContainerSpec) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "image": spec.image,
            "detach": True,
            "environment": dict(spec.env),
            "ports": {f"{port}/tcp": spec.host_ports.get(port) for port in spec.exposed_ports},
            "volumes": {str(mount.source): mount.to_docker() for mount in spec.mounts},
            "labels": {**spec.labels, MANAGED_LABEL: "true"},
            "privileged": spec.privileged,
        }
        if spec.command:
            kwargs["command"] = list(spec.command)
        if spec.container_name:
            kwargs["name"] = spec.container_name
        if spec.userns_mode:
            kwargs["userns_mode"] = spec.userns_mode
        if self._network:
            kwargs["network"] = self._network
        return kwargs

    def _start_blocking(self, spec: ContainerSpec) -> Container:
        client = self._get_client()
        try:
            if self._network:
                self._ensure_network(client, self._network)
            self._ensure_image(client, spec)
            container: Container = client.containers.run(**self._run_kwargs(spec))
        except APIError as e:
            if e.status_code == 409:
                raise ContainerStartError(
                    f"Container name '{spec.container_name}' is already in use; "
                    "remove the leftover container from a previous run",
                    details={"container": spec.display_name},
                ) from e
            raise ContainerStartError(
                f"Failed to start {spec.image}: {e}",
                details={"image": spec.image},
            ) from e
        except DOCKER_ERRORS as e:
            raise ContainerStartError(
                f"Failed to start {spec.image}: {e}",
                details={"image": spec.image},
            ) from e
        return container

    async def start(self, spec: ContainerSpec) -> RunningContainer:
        logger.info(
            f"Starting container {spec.display_name}",
            extra={
                "image": spec.image,
                "ports": list(spec.exposed_ports),
                "network": self._network,
            },
        )
        container = await asyncio.to_thread(self._start_blocking, spec)
        logger.info(
            f"Started container {spec.display_name}",
            extra={"container_id": container.id, "image": spec.image},
        )
        return RunningContainer(
            container,
            spec,
            host=self._host,
            poll_interval=self._poll_interval,
            stop_timeout=self._stop_timeout,
        )

    async def close(self) -> None:
        """Close the Docker client connection.

        Safe to call multiple times.
        """
        if self._client is not None:
            try:
                await asyncio.to_thread(self._client.close)
                logger.info("Docker client connection closed")
            except DOCKER_ERRORS as e:
                logger.debug(f"Error closing Docker client: {e}")
            finally:
                self._client = None
