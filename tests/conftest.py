"""Pytest configuration and shared fixtures.

This module provides shared test fixtures for all tests:
- settings: Settings pointing the runtime directory at ``tmp_path``
- fake_runtime: In-memory container runtime counting container starts
- registry: ServiceRegistry wired against the fake runtime

Unit tests never talk to Docker. Integration tests in tests/integration use
the real docker runtime and are skipped unless explicitly enabled.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from ephemeral_services.core.config import (
    RUNTIME_DIR_ENV,
    USE_EXISTING_K8S_CONTEXT_ENV,
    Settings,
    get_settings,
)
from ephemeral_services.core.container import ServiceRegistry, reset_registry, wire_services

from fakes import FakeRuntime


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Clear service environment variables and global state around each test."""
    for name in (
        RUNTIME_DIR_ENV,
        "OUT_DIR",
        USE_EXISTING_K8S_CONTEXT_ENV,
        "USE_EXISTING_K8S_CONTEXT",
        "EPHEMERAL_KUBE_VERSION",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    reset_registry()
    yield
    reset_registry()
    get_settings.cache_clear()


@pytest.fixture
def runtime_dir(tmp_path: Path) -> Path:
    path = tmp_path / "runtime"
    path.mkdir()
    return path


@pytest.fixture
def settings(runtime_dir: Path) -> Settings:
    return Settings(runtime_dir=str(runtime_dir), _env_file=None)  # type: ignore[call-arg]


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def registry(fake_runtime: FakeRuntime, settings: Settings) -> ServiceRegistry:
    registry = ServiceRegistry()
    wire_services(registry, runtime=fake_runtime, settings=settings)
    return registry
