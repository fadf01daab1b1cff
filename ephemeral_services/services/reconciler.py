"""Post-start reconciliation and the per-service startup sequence.

Startup Flow:
    1. Create and start the container from a finalized ContainerSpec
    2. Wait (bounded) for the readiness log line
    3. Run each post-start command in order; any non-zero exit is fatal
    4. Hand the container back to the caller

If any step after container creation fails, the half-started container is
removed before the error propagates so a failed fixture never leaks a
container past the process lifetime.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from ephemeral_services.core.exceptions import PostStartCommandError
from ephemeral_services.core.logging import get_logger, sanitize_error
from ephemeral_services.core.protocols import ContainerHandle, ContainerRuntime
from ephemeral_services.services.descriptor import ContainerSpec, ExecCommand

logger = get_logger(__name__)

# Captured command output kept on errors
_MAX_OUTPUT_CHARS = 2000


class PostStartReconciler:
    """Runs a container's post-start commands strictly in order."""

    def __init__(self, commands: Sequence[ExecCommand]) -> None:
        self._commands = tuple(commands)

    @property
    def commands(self) -> tuple[ExecCommand, ...]:
        return self._commands

    async def run(self, container: ContainerHandle) -> None:
        """Execute every command, awaiting each before the next starts.

        Raises:
            PostStartCommandError: On the first command with a non-zero exit.
        """
        for index, command in enumerate(self._commands, start=1):
            logger.info(
                f"Running post-start command {index}/{len(self._commands)}: {command.description}",
                extra={"container_id": container.id, "command": command.description},
            )
            result = await container.exec(command.cmd)
            if not result.ok:
                output = sanitize_error(result.output, max_length=_MAX_OUTPUT_CHARS)
                logger.error(
                    f"Post-start command failed: {command.description}",
                    extra={
                        "container_id": container.id,
                        "command": command.description,
                        "exit_code": result.exit_code,
                        "output": output,
                    },
                )
                raise PostStartCommandError(
                    command.description,
                    exit_code=result.exit_code,
                    output=output,
                )


def _discard(container: ContainerHandle) -> None:
    try:
        container.remove()
    except Exception as e:
        logger.warning(
            f"Could not remove failed container {container.id}: {sanitize_error(e)}",
            extra={"container_id": container.id, "error_type": type(e).__name__},
        )


async def start_service(
    runtime: ContainerRuntime,
    spec: ContainerSpec,
    *,
    readiness_timeout: float,
) -> ContainerHandle:
    """Start ``spec`` and bring it to a usable state.

    Args:
        runtime: Container runtime creating the container
        spec: Finalized container spec
        readiness_timeout: Upper bound in seconds on waiting for readiness

    Returns:
        The started, reconciled container

    Raises:
        ContainerStartError: If the container cannot be created or exits early
        ReadinessTimeoutError: If readiness is not reported in time
        PostStartCommandError: If a post-start command fails
    """
    container = await runtime.start(spec)
    try:
        await container.wait_until_ready(readiness_timeout)
        await PostStartReconciler(spec.exec_commands).run(container)
    except BaseException:
        await asyncio.shield(asyncio.to_thread(_discard, container))
        raise
    return container
