"""Airgap artifact lists.

Each subsystem that runs on the installed fabric declares the OCI artifacts
(images and charts) it needs as a mapping of artifact name to version. For
air-gapped deployments the merged lists are staged into the control node
installer so its local registry can serve them.
"""

from __future__ import annotations

from collections.abc import Callable

from fab_installer.errors import ConfigurationError
from fab_installer.fab.schema import Fabricator

ArtifactList = Callable[[Fabricator], dict[str, str]]


class ArtifactConflictError(ConfigurationError):
    """Raised when two lists request different versions of one artifact."""

    def __init__(self, message: str, code: str = "artifact_conflict") -> None:
        super().__init__(message, code=code)


def flatcar_artifacts(fab: Fabricator) -> dict[str, str]:
    """Toolbox image used by ``toolbox`` on the installed OS."""
    return {"toolbox": fab.spec.versions.toolbox}


def cert_manager_artifacts(fab: Fabricator) -> dict[str, str]:
    """cert-manager chart and the images of all its components."""
    version = fab.spec.versions.cert_manager
    return {
        "fabricator/charts/cert-manager": version,
        "fabricator/cert-manager-controller": version,
        "fabricator/cert-manager-webhook": version,
        "fabricator/cert-manager-cainjector": version,
        "fabricator/cert-manager-acmesolver": version,
        "fabricator/cert-manager-startupapicheck": version,
    }


def zot_artifacts(fab: Fabricator) -> dict[str, str]:
    """Registry chart and image."""
    version = fab.spec.versions.zot
    return {
        "fabricator/charts/zot": version,
        "fabricator/zot": version,
    }


def reloader_artifacts(fab: Fabricator) -> dict[str, str]:
    # the chart is versioned separately from the image
    versions = fab.spec.versions
    return {
        "fabricator/charts/reloader": versions.reloader_chart,
        "fabricator/reloader": versions.reloader,
    }


def fabricator_artifacts(fab: Fabricator) -> dict[str, str]:
    """Fabricator controller, its charts and the NTP server."""
    version = fab.spec.versions.fabricator
    return {
        "fabricator/fabricator": version,
        "fabricator/charts/fabricator": version,
        "fabricator/charts/fabricator-api": version,
        "fabricator/ntp": version,
        "fabricator/charts/ntp": version,
    }


def fabric_artifacts(fab: Fabricator) -> dict[str, str]:
    """Fabric controller, agent, boot and DHCP services and their charts."""
    version = fab.spec.versions.fabric
    return {
        "fabric/fabric": version,
        "fabric/charts/fabric": version,
        "fabric/charts/fabric-api": version,
        "fabric/agent": version,
        "fabric/fabric-boot": version,
        "fabric/charts/fabric-boot": version,
        "fabric/fabric-dhcpd": version,
        "fabric/charts/fabric-dhcpd": version,
    }


def gateway_artifacts(fab: Fabricator) -> dict[str, str]:
    """Gateway controller and dataplane, only when the gateway is enabled."""
    if not fab.spec.config.gateway.enable:
        return {}
    version = fab.spec.versions.gateway
    return {
        "gateway/gateway": version,
        "gateway/charts/gateway": version,
        "gateway/charts/gateway-api": version,
        "gateway/dataplane": version,
    }


AIRGAP_ARTIFACT_LISTS: tuple[ArtifactList, ...] = (
    flatcar_artifacts,
    cert_manager_artifacts,
    zot_artifacts,
    reloader_artifacts,
    fabricator_artifacts,
    fabric_artifacts,
    gateway_artifacts,
)


def collect_artifacts(fab: Fabricator, *lists: ArtifactList) -> dict[str, str]:
    """Merge artifact lists.

    Args:
        fab: Fabricator document the lists are evaluated against.
        *lists: Artifact list functions.

    Returns:
        Mapping of artifact name to version, sorted by name.

    Raises:
        ArtifactConflictError: If an artifact is requested at two versions.
    """
    merged: dict[str, str] = {}
    for artifact_list in lists:
        for name, version in artifact_list(fab).items():
            existing = merged.setdefault(name, version)
            if existing != version:
                raise ArtifactConflictError(
                    f"artifact {name} requested at versions {existing} and {version}"
                )
    return dict(sorted(merged.items()))


__all__ = [
    "AIRGAP_ARTIFACT_LISTS",
    "ArtifactConflictError",
    "ArtifactList",
    "cert_manager_artifacts",
    "collect_artifacts",
    "fabric_artifacts",
    "fabricator_artifacts",
    "flatcar_artifacts",
    "gateway_artifacts",
    "reloader_artifacts",
    "zot_artifacts",
]
