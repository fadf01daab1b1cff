"""Service descriptors and the startup sequence."""

from .descriptor import ContainerSpec, ExecCommand, LogStream, Mount, ReadyCondition
from .versions import DEFAULT_KUBE_VERSION, supported_versions, version_to_tag

__all__ = [
    "DEFAULT_KUBE_VERSION",
    "ContainerSpec",
    "ExecCommand",
    "LogStream",
    "Mount",
    "ReadyCondition",
    "supported_versions",
    "version_to_tag",
]
