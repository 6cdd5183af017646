"""Build service module.

This module provides the high-level build API:
- build_control(): build the installer of a control node
- build_node(): build the installer of a worker node
- precache(): fetch every artifact a build would need, without building

A build computes the fingerprint of its inputs and returns early when the
stored fingerprint matches and every output of the requested mode exists.
Otherwise it runs a pipeline of named steps: drop the old fingerprint and
outputs, stage the payload, produce the mode's outputs, store the new
fingerprint.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import fab_installer
from fab_installer.artifacts.cache import ArtifactCache
from fab_installer.bootconfig.ignition import (
    BootConfigFactory,
    control_ignition,
    node_ignition,
)
from fab_installer.builds.airgap import AIRGAP_ARTIFACT_LISTS, collect_artifacts
from fab_installer.builds.archive import archive_directory
from fab_installer.builds.assembler import (
    NODE_CONFIG_REF,
    Payload,
    assemble,
    control_dependencies,
    control_payload,
    node_dependencies,
    node_payload,
)
from fab_installer.builds.fingerprint import FingerprintInputs, compute_fingerprint
from fab_installer.builds.gate import is_up_to_date, persist_fingerprint, reset_outputs
from fab_installer.builds.outputs import InstallPaths
from fab_installer.builds.pipeline import Step, run_steps
from fab_installer.diskimage.builder import USB_ROOT_REF, ImageRequest, build_image
from fab_installer.diskimage.layout import DATA_SIZE, ESP_SIZE
from fab_installer.fab.io import FabDocuments
from fab_installer.fab.schema import Fabricator
from fab_installer.fsutil import write_file_atomic
from fab_installer.types import BuildMode, NodeKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageSizes:
    """Partition sizes of USB and ISO images."""

    esp_size: int = ESP_SIZE
    data_size: int = DATA_SIZE


@dataclass
class BuildResult:
    """Outcome of one installer build."""

    kind: NodeKind
    name: str
    mode: BuildMode
    fingerprint: str
    skipped: bool
    outputs: list[Path] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "kind": self.kind.value,
            "name": self.name,
            "mode": self.mode.value,
            "fingerprint": self.fingerprint,
            "skipped": self.skipped,
            "outputs": [str(p) for p in self.outputs],
        }


@dataclass
class _BuildContext:
    cache: ArtifactCache
    fab: Fabricator
    payload: Payload
    paths: InstallPaths
    mode: BuildMode
    fingerprint: str
    boot_config: BootConfigFactory
    required: dict[str, str | None]
    bootstrap_disk: str | None
    sizes: ImageSizes


def compute_build_fingerprint(
    payload: Payload, mode: BuildMode, sizes: ImageSizes | None = None
) -> str:
    """Fingerprint of a payload built in ``mode`` by this tool version.

    Image modes also cover the partition sizes, so resizing rebuilds the image.
    """
    image_sizes: dict[str, int] = {}
    if mode != BuildMode.MANUAL:
        sizes = sizes or ImageSizes()
        image_sizes = {"esp": sizes.esp_size, "data": sizes.data_size}
    inputs = FingerprintInputs(
        tool_version=fab_installer.__version__,
        kind=payload.kind.value,
        name=payload.name,
        mode=mode.value,
        config=[payload.documents[name] for name in sorted(payload.documents)],
        image_sizes=image_sizes,
    )
    return compute_fingerprint(inputs)


def _reset(ctx: _BuildContext) -> _BuildContext:
    reset_outputs(ctx.paths)
    return ctx


def _stage(ctx: _BuildContext) -> _BuildContext:
    assemble(ctx.cache, ctx.payload, ctx.paths.install_dir)
    return ctx


def _archive(ctx: _BuildContext) -> _BuildContext:
    archive_directory(ctx.paths.install_dir, ctx.paths.archive)
    return ctx


def _boot_config(ctx: _BuildContext) -> _BuildContext:
    config = ctx.boot_config(ctx.paths.auto_install_path(ctx.mode))
    write_file_atomic(ctx.paths.ignition, config)
    return ctx


def _disk_image(ctx: _BuildContext) -> _BuildContext:
    build_image(
        ImageRequest(
            mode=ctx.mode,
            paths=ctx.paths,
            cache=ctx.cache,
            usb_root_version=ctx.fab.spec.versions.control_usb_root,
            boot_config=ctx.boot_config,
            required=ctx.required,
            bootstrap_disk=ctx.bootstrap_disk or "",
            esp_size=ctx.sizes.esp_size,
            data_size=ctx.sizes.data_size,
        )
    )
    return ctx


def _persist(ctx: _BuildContext) -> _BuildContext:
    persist_fingerprint(ctx.paths, ctx.fingerprint)
    return ctx


def build_steps(mode: BuildMode) -> list[Step[_BuildContext]]:
    """Pipeline of an installer build in ``mode``."""
    steps: list[Step[_BuildContext]] = [
        Step("reset-outputs", _reset),
        Step("stage-payload", _stage),
    ]
    if mode == BuildMode.MANUAL:
        steps.append(Step("archive", _archive))
        steps.append(Step("boot-config", _boot_config))
    else:
        steps.append(Step("disk-image", _disk_image))
    steps.append(Step("persist-fingerprint", _persist))
    return steps


def _run_build(ctx: _BuildContext) -> BuildResult:
    payload = ctx.payload
    target = payload.target
    result = BuildResult(
        kind=payload.kind,
        name=payload.name,
        mode=ctx.mode,
        fingerprint=ctx.fingerprint,
        skipped=False,
        outputs=ctx.paths.expected_outputs(ctx.mode),
    )

    if is_up_to_date(ctx.paths, ctx.mode, ctx.fingerprint):
        logger.info("Installer for %s (%s) is up to date", target, ctx.mode.value)
        result.skipped = True
        return result

    logger.info("Building installer for %s (%s)", target, ctx.mode.value)
    run_steps(build_steps(ctx.mode), ctx, target)
    logger.info("Built installer for %s (%s)", target, ctx.mode.value)
    return result


def build_control(
    cache: ArtifactCache,
    docs: FabDocuments,
    wiring: list[dict[str, Any]],
    name: str,
    mode: BuildMode,
    work_dir: Path,
    sizes: ImageSizes | None = None,
) -> BuildResult:
    """Build the installer of a control node.

    Args:
        cache: Artifact cache.
        docs: Parsed fab.yaml.
        wiring: Parsed wiring.yaml documents.
        name: Control node name.
        mode: Build mode.
        work_dir: Directory receiving the outputs.
        sizes: Partition sizes for image modes.

    Returns:
        BuildResult; ``skipped`` is True if nothing had to be rebuilt.

    Raises:
        FabConfigError: If the control node does not exist.
        BuildStepError: If a build step fails.
    """
    control = docs.get_control(name)
    payload = control_payload(docs, control, wiring)
    spec = control.spec
    ctx = _BuildContext(
        cache=cache,
        fab=docs.fab,
        payload=payload,
        paths=InstallPaths(work_dir, NodeKind.CONTROL, control.name),
        mode=mode,
        fingerprint=compute_build_fingerprint(payload, mode, sizes),
        boot_config=lambda auto_install: control_ignition(docs.fab, control, auto_install),
        required={
            "bootstrap.disk": spec.bootstrap.disk,
            "management.ip": spec.management.ip,
            "management.interface": spec.management.interface,
            "external.ip": spec.external.ip,
            "external.interface": spec.external.interface,
        },
        bootstrap_disk=spec.bootstrap.disk,
        sizes=sizes or ImageSizes(),
    )
    return _run_build(ctx)


def with_join_token(docs: FabDocuments, join_token: str) -> FabDocuments:
    """Copy of ``docs`` with the control plane join token replaced."""
    fab = docs.fab
    control = fab.spec.config.control.model_copy(update={"join_token": join_token})
    config = fab.spec.config.model_copy(update={"control": control})
    spec = fab.spec.model_copy(update={"config": config})
    return dataclasses.replace(docs, fab=fab.model_copy(update={"spec": spec}))


def build_node(
    cache: ArtifactCache,
    docs: FabDocuments,
    name: str,
    mode: BuildMode,
    work_dir: Path,
    join_token: str | None = None,
    sizes: ImageSizes | None = None,
) -> BuildResult:
    """Build the installer of a worker node.

    Args:
        cache: Artifact cache.
        docs: Parsed fab.yaml.
        name: Node name.
        mode: Build mode.
        work_dir: Directory receiving the outputs.
        join_token: Overrides ``spec.config.control.joinToken``.
        sizes: Partition sizes for image modes.

    Returns:
        BuildResult; ``skipped`` is True if nothing had to be rebuilt.

    Raises:
        FabConfigError: If the node does not exist.
        MissingFieldError: If no join token is available.
        BuildStepError: If a build step fails.
    """
    if join_token:
        docs = with_join_token(docs, join_token)
    node = docs.get_node(name)
    payload = node_payload(docs, node)
    spec = node.spec
    ctx = _BuildContext(
        cache=cache,
        fab=docs.fab,
        payload=payload,
        paths=InstallPaths(work_dir, NodeKind.NODE, node.name),
        mode=mode,
        fingerprint=compute_build_fingerprint(payload, mode, sizes),
        boot_config=lambda auto_install: node_ignition(docs.fab, node, auto_install),
        required={
            "bootstrap.disk": spec.bootstrap.disk,
            "management.ip": spec.management.ip,
            "management.interface": spec.management.interface,
        },
        bootstrap_disk=spec.bootstrap.disk,
        sizes=sizes or ImageSizes(),
    )
    return _run_build(ctx)


def precache(
    cache: ArtifactCache,
    fab: Fabricator,
    progress: Callable[[str], None] | None = None,
) -> list[str]:
    """Fetch every artifact any build of this fabric needs.

    Args:
        cache: Artifact cache.
        fab: Fabricator document.
        progress: Optional callback receiving ``name@version`` before each fetch.

    Returns:
        ``name@version`` of every artifact, in fetch order.
    """
    files: dict[tuple[str, str], None] = {}
    for dep in [*control_dependencies(fab), *node_dependencies(fab)]:
        files[(dep.name, dep.version)] = None
    files[(USB_ROOT_REF, fab.spec.versions.control_usb_root)] = None

    layouts: dict[tuple[str, str], None] = {
        (NODE_CONFIG_REF, fab.spec.versions.fabricator): None
    }
    if fab.is_airgap:
        for name, version in collect_artifacts(fab, *AIRGAP_ARTIFACT_LISTS).items():
            layouts[(name, version)] = None

    fetched = []
    for name, version in files:
        if progress is not None:
            progress(f"{name}@{version}")
        cache.fetch(name, version)
        fetched.append(f"{name}@{version}")
    for name, version in layouts:
        if progress is not None:
            progress(f"{name}@{version}")
        cache.fetch_oci(name, version)
        fetched.append(f"{name}@{version}")

    logger.info("Precached %d artifacts", len(fetched))
    return fetched


__all__ = [
    "BuildResult",
    "ImageSizes",
    "build_control",
    "build_node",
    "build_steps",
    "compute_build_fingerprint",
    "precache",
    "with_join_token",
]
