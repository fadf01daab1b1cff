"""Kubernetes version to k3s image tag resolution.

Usage:
    from ephemeral_services.services.versions import version_to_tag

    version_to_tag("v1.30")   # "v1.30.5-k3s1"
    version_to_tag("latest")  # tag of DEFAULT_KUBE_VERSION
"""

from ephemeral_services.core.exceptions import UnsupportedVersionError

DEFAULT_KUBE_VERSION = "1.31"

# Newest first
AVAILABLE_K3S_IMAGE_TAGS: tuple[tuple[str, str], ...] = (
    ("1.31", "v1.31.1-k3s1"),
    ("1.30", "v1.30.5-k3s1"),
    ("1.29", "v1.29.9-k3s1"),
    ("1.28", "v1.28.14-k3s1"),
    ("1.27", "v1.27.16-k3s1"),
    ("1.26", "v1.26.15-k3s1"),
)


def supported_versions() -> list[str]:
    return [version for version, _ in AVAILABLE_K3S_IMAGE_TAGS]


def normalize_version(version: str) -> str:
    """Strip a leading ``v`` and map ``""``/``latest`` to the default version."""
    version = version.removeprefix("v")
    if not version or version == "latest":
        return DEFAULT_KUBE_VERSION
    return version


def version_to_tag(version: str) -> str:
    """Resolve a logical Kubernetes version to a concrete k3s image tag.

    Args:
        version: Version such as ``1.29``, ``v1.29``, ``latest`` or ``""``

    Returns:
        The k3s image tag for that version

    Raises:
        UnsupportedVersionError: If the version is not in the supported table
    """
    normalized = normalize_version(version)
    for known, tag in AVAILABLE_K3S_IMAGE_TAGS:
        if known == normalized:
            return tag
    raise UnsupportedVersionError(normalized, supported=supported_versions())
