"""Process-exit teardown of service containers.

The hook is registered once, the first time a service is requested. It runs
under its own lock, distinct from the per-slot locks, so that concurrent
shutdown calls (an explicit one from the pytest plugin and the ``atexit``
one) never tear the same container down twice.

A hard kill skips ``atexit`` entirely; prefer calling ``shutdown_services()``
from the test suite's session teardown.
"""

import asyncio
import atexit
import threading

from ephemeral_services.core.container import peek_registry
from ephemeral_services.core.logging import get_logger

logger = get_logger(__name__)

_shutdown_lock = threading.Lock()
_hook_lock = threading.Lock()
_hook_registered = False


def shutdown_services() -> None:
    """Stop and remove every started service container.

    Blocking, idempotent and safe to call from ``atexit``. Teardown failures
    are logged and never raised.
    """
    with _shutdown_lock:
        registry = peek_registry()
        if registry is None:
            return
        registry.shutdown()


async def ashutdown_services() -> None:
    """Async variant of ``shutdown_services()`` for use inside an event loop."""
    await asyncio.to_thread(shutdown_services)


def register_shutdown_hook() -> bool:
    """Register ``shutdown_services()`` with ``atexit`` once per process.

    Returns:
        True if this call registered the hook
    """
    global _hook_registered  # noqa: PLW0603
    with _hook_lock:
        if _hook_registered:
            return False
        atexit.register(shutdown_services)
        _hook_registered = True
    logger.debug("Registered process-exit teardown hook")
    return True
