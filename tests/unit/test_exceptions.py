"""Unit tests for the exception hierarchy."""

import pytest

from ephemeral_services.core.exceptions import (
    ClientConstructionError,
    ConfigurationError,
    ContainerStartError,
    ContainerTeardownError,
    EphemeralServiceError,
    KubeconfigError,
    MissingEnvironmentError,
    PostStartCommandError,
    ReadinessTimeoutError,
    RuntimeInteractionError,
    ServiceUnavailableError,
    StorageIOError,
    UnsupportedVersionError,
)


class TestEphemeralServiceError:
    def test_defaults(self) -> None:
        error = EphemeralServiceError()

        assert error.message == "An unexpected error occurred"
        assert error.error_code == "INTERNAL_ERROR"
        assert error.to_dict() == {
            "code": "INTERNAL_ERROR",
            "stage": "unknown",
            "message": "An unexpected error occurred",
        }

    def test_details_included_when_present(self) -> None:
        error = ContainerStartError("boom", details={"image": "gitea/gitea:1"})

        assert str(error) == "boom"
        assert error.to_dict()["details"] == {"image": "gitea/gitea:1"}


@pytest.mark.parametrize(
    ("error", "stage", "parent"),
    [
        (UnsupportedVersionError("1.2"), "configuration", ConfigurationError),
        (MissingEnvironmentError("X"), "configuration", ConfigurationError),
        (ContainerStartError(), "container_start", EphemeralServiceError),
        (ReadinessTimeoutError("k3s", message="ready", timeout=1), "readiness", RuntimeInteractionError),
        (PostStartCommandError("create admin", exit_code=1), "post_start", RuntimeInteractionError),
        (ContainerTeardownError(), "teardown", EphemeralServiceError),
        (StorageIOError(path="/tmp/x"), "io", EphemeralServiceError),
        (KubeconfigError(), "client_materialization", EphemeralServiceError),
        (ClientConstructionError(), "client_materialization", EphemeralServiceError),
        (ServiceUnavailableError("k3s"), "lifecycle", EphemeralServiceError),
    ],
)
def test_stage_classification(error: EphemeralServiceError, stage: str, parent: type) -> None:
    assert error.stage == stage
    assert isinstance(error, parent)


def test_unsupported_version_lists_supported() -> None:
    error = UnsupportedVersionError("1.2", supported=["1.30", "1.31"])

    assert error.message == "Kube version '1.2' is not supported"
    assert error.details == {"version": "1.2", "supported": ["1.30", "1.31"]}


def test_missing_environment_hint() -> None:
    error = MissingEnvironmentError("OUT_DIR", hint="set it")

    assert error.message == "`OUT_DIR` environment variable isn't set, set it"
    assert error.variable == "OUT_DIR"


def test_post_start_error_keeps_output() -> None:
    error = PostStartCommandError("create repo infra", exit_code=22, output="conflict")

    assert error.exit_code == 22
    assert error.details["output"] == "conflict"
    assert "create repo infra" in error.message


def test_readiness_timeout_message() -> None:
    error = ReadinessTimeoutError("git-server", message="Starting new Web server", timeout=120)

    assert error.message == "Container 'git-server' did not report 'Starting new Web server' within 120s"


def test_storage_error_path_in_details() -> None:
    error = StorageIOError("cannot write", path="/run/app.ini", details={"errno": 13})

    assert error.details == {"errno": 13, "path": "/run/app.ini"}
