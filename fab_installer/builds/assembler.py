"""Payload assembly for installer builds.

A Payload lists everything a target's staged tree must contain; assemble()
materializes it through the artifact cache into a fresh staging directory
that only appears under its final name once complete.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from fab_installer.artifacts.cache import ArtifactCache
from fab_installer.builds.airgap import AIRGAP_ARTIFACT_LISTS, collect_artifacts
from fab_installer.builds.recipe import Recipe, load_recipe, save_recipe
from fab_installer.errors import IntegrityError, MissingFieldError
from fab_installer.fab.io import FabDocuments, dump_fab, dump_wiring, load_fab
from fab_installer.fab.schema import ControlNode, Fabricator, FabNode
from fab_installer.fsutil import atomic_directory
from fab_installer.types import NodeKind

logger = logging.getLogger(__name__)

FAB_FILE = "fab.yaml"
WIRING_FILE = "wiring.yaml"
INSTALLER_NAME = "fab-recipe"

INSTALLER_REF = "fabricator/fab-recipe"
K3S_REF = "fabricator/k3s-airgap"
K9S_REF = "fabricator/k9s"
ZOT_REF = "fabricator/zot-airgap"
FLATCAR_UPDATE_REF = "fabricator/flatcar-update"
CERT_MANAGER_REF = "fabricator/cert-manager-airgap"
FABRIC_CTL_REF = "fabric/hhfctl"
FABRICATOR_CTL_REF = "fabricator/hhfabctl"
NODE_CONFIG_REF = "fabricator/hhfab-node-config"


@dataclass(frozen=True)
class ArtifactFiles:
    """Files to stage from one cached artifact.

    Attributes:
        name: Artifact name.
        version: Artifact version.
        files: File names mapped to an optional mode for the staged copy.
    """

    name: str
    version: str
    files: Mapping[str, int | None]


@dataclass
class Payload:
    """Everything that goes into a target's staged tree."""

    kind: NodeKind
    name: str
    dependencies: list[ArtifactFiles] = field(default_factory=list)
    documents: dict[str, str] = field(default_factory=dict)
    oci_artifacts: dict[str, str] = field(default_factory=dict)

    @property
    def target(self) -> str:
        return f"{self.kind.value}/{self.name}"


def installer_files(fab: Fabricator) -> ArtifactFiles:
    """Standalone installer executable, released with the fabricator.

    It is a self-contained build of this tool's CLI, so the staged tree can
    run ``fab-recipe install`` on a target that has no Python runtime.
    """
    return ArtifactFiles(INSTALLER_REF, fab.spec.versions.fabricator, {INSTALLER_NAME: 0o755})


def k3s_files(fab: Fabricator) -> ArtifactFiles:
    return ArtifactFiles(
        K3S_REF,
        fab.spec.versions.k3s,
        {
            "k3s": 0o755,
            "k3s-install.sh": 0o700,
            "k3s-airgap-images-amd64.tar.gz": None,
        },
    )


def flatcar_update_files(fab: Fabricator) -> ArtifactFiles:
    return ArtifactFiles(
        FLATCAR_UPDATE_REF,
        fab.spec.versions.flatcar,
        {"flatcar_production_update.gz": None},
    )


def control_dependencies(fab: Fabricator) -> list[ArtifactFiles]:
    """Artifacts staged into every control node installer."""
    versions = fab.spec.versions
    return [
        installer_files(fab),
        k3s_files(fab),
        ArtifactFiles(K9S_REF, versions.k9s, {"k9s": 0o755}),
        ArtifactFiles(
            ZOT_REF,
            versions.zot,
            {"zot-airgap-images-amd64.tar.gz": None, "zot-chart.tgz": None},
        ),
        flatcar_update_files(fab),
        ArtifactFiles(
            CERT_MANAGER_REF,
            versions.cert_manager,
            {
                "cert-manager-airgap-images-amd64.tar.gz": None,
                "cert-manager-chart.tgz": None,
            },
        ),
        ArtifactFiles(FABRIC_CTL_REF, versions.fabric, {"hhfctl": 0o755}),
        ArtifactFiles(FABRICATOR_CTL_REF, versions.fabricator, {"hhfabctl": 0o755}),
    ]


def node_dependencies(fab: Fabricator) -> list[ArtifactFiles]:
    """Artifacts staged into every worker node installer."""
    return [installer_files(fab), k3s_files(fab), flatcar_update_files(fab)]


def control_payload(
    docs: FabDocuments,
    control: ControlNode,
    wiring: list[dict[str, Any]],
) -> Payload:
    """Payload of a control node installer.

    The staged fab.yaml holds this control node and every worker node.
    """
    fab = docs.fab
    payload = Payload(
        kind=NodeKind.CONTROL,
        name=control.name,
        dependencies=control_dependencies(fab),
        documents={
            FAB_FILE: dump_fab(fab, [control], docs.nodes),
            WIRING_FILE: dump_wiring(wiring),
        },
    )
    if fab.is_airgap:
        payload.oci_artifacts = collect_artifacts(fab, *AIRGAP_ARTIFACT_LISTS)
    return payload


def node_payload(docs: FabDocuments, node: FabNode) -> Payload:
    """Payload of a worker node installer.

    Raises:
        MissingFieldError: If the control plane join token is not set.
    """
    fab = docs.fab
    if not fab.spec.config.control.join_token:
        raise MissingFieldError("spec.config.control.joinToken", f"node/{node.name}")

    return Payload(
        kind=NodeKind.NODE,
        name=node.name,
        dependencies=node_dependencies(fab),
        documents={FAB_FILE: dump_fab(fab, [], [node])},
        oci_artifacts={NODE_CONFIG_REF: fab.spec.versions.fabricator},
    )


def assemble(cache: ArtifactCache, payload: Payload, install_dir: Path) -> Path:
    """Stage a payload into ``install_dir``.

    Stops at the first artifact that cannot be resolved; the partially
    staged temporary directory is discarded and ``install_dir`` is not
    created.

    Args:
        cache: Artifact cache.
        payload: What to stage.
        install_dir: Final path of the staged tree; must not exist.

    Returns:
        ``install_dir``.
    """
    target = payload.target
    with atomic_directory(install_dir) as staging:
        save_recipe(staging, Recipe(type=payload.kind, name=payload.name))

        for dep in payload.dependencies:
            logger.info("Adding %s to %s", dep.name, target)
            cache.copy_into(staging, dep.name, dep.version, dep.files)

        logger.info("Adding config files to %s", target)
        for file_name, text in payload.documents.items():
            (staging / file_name).write_text(text, encoding="utf-8")

        if payload.oci_artifacts:
            logger.info(
                "Adding %d OCI artifacts to %s", len(payload.oci_artifacts), target
            )
        for name, version in payload.oci_artifacts.items():
            cache.copy_oci_into(staging, name, version)

    return install_dir


class IncompletePayloadError(IntegrityError):
    """Raised when a staged tree lacks files its target needs."""

    def __init__(self, install_dir: Path, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(
            f"{install_dir} is missing {', '.join(missing)}", code="incomplete_payload"
        )


def check_staged(install_dir: Path) -> Recipe:
    """Check that a staged tree holds everything its recipe calls for.

    Args:
        install_dir: Staged tree, as produced by assemble().

    Returns:
        The tree's recipe.

    Raises:
        RecipeError: If recipe.yaml is missing or invalid.
        FabConfigError: If the staged fab.yaml is invalid.
        IncompletePayloadError: If any expected file is missing.
    """
    recipe = load_recipe(install_dir)
    expected = [INSTALLER_NAME, FAB_FILE]
    if recipe.type == NodeKind.CONTROL:
        expected.append(WIRING_FILE)

    missing = [name for name in expected if not (install_dir / name).exists()]
    if missing:
        raise IncompletePayloadError(install_dir, missing)

    fab = load_fab(install_dir / FAB_FILE).fab
    if recipe.type == NodeKind.CONTROL:
        deps = control_dependencies(fab)
    else:
        deps = node_dependencies(fab)
    missing = [
        file_name
        for dep in deps
        for file_name in dep.files
        if not (install_dir / file_name).exists()
    ]
    if missing:
        raise IncompletePayloadError(install_dir, missing)
    return recipe


__all__ = [
    "FAB_FILE",
    "INSTALLER_NAME",
    "INSTALLER_REF",
    "WIRING_FILE",
    "ArtifactFiles",
    "IncompletePayloadError",
    "Payload",
    "assemble",
    "check_staged",
    "control_dependencies",
    "control_payload",
    "installer_files",
    "node_dependencies",
    "node_payload",
]
