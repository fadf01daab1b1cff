"""Core infrastructure components."""

from ephemeral_services.core.config import Settings, get_settings
from ephemeral_services.core.logging import (
    get_logger,
    get_service_context,
    service_context,
    setup_logging,
)

__all__ = [
    "Settings",
    "get_logger",
    "get_service_context",
    "get_settings",
    "service_context",
    "setup_logging",
]
