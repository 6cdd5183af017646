"""Tests for diskimage/builder.py module."""

import uuid
from pathlib import Path

import pytest

from fab_installer.artifacts.cache import ArtifactCache
from fab_installer.builds.outputs import InstallPaths
from fab_installer.diskimage.builder import (
    ImageBuildContext,
    ImageRequest,
    allocate,
    finalize,
    partition,
    populate_boot,
    populate_payload,
)
from fab_installer.diskimage.layout import MIB, compute_layout
from fab_installer.errors import FabInstallerError
from fab_installer.types import BuildMode, NodeKind


def make_context(cache: ArtifactCache, tmp_path: Path, mode: BuildMode) -> ImageBuildContext:
    request = ImageRequest(
        mode=mode,
        paths=InstallPaths(tmp_path, NodeKind.NODE, "node-1"),
        cache=cache,
        usb_root_version="v0.1.0",
        boot_config=lambda auto_install: b"{}",
        required={},
        bootstrap_disk="/dev/sda",
    )
    return ImageBuildContext(
        request=request,
        workdir=tmp_path / "image",
        layout=compute_layout(40 * MIB, 40 * MIB),
        disk_guid=uuid.uuid4(),
    )


class TestStepOrder:
    """Steps run out of order should fail with a clear error."""

    def test_partition_before_allocate(
        self, offline_cache: ArtifactCache, tmp_path: Path
    ) -> None:
        """Partitioning without an image file should raise."""
        ctx = make_context(offline_cache, tmp_path, BuildMode.USB)
        with pytest.raises(FabInstallerError, match="not allocated") as exc_info:
            partition(ctx)
        assert exc_info.value.code == "step_order"

    def test_populate_without_filesystems(
        self, offline_cache: ArtifactCache, tmp_path: Path
    ) -> None:
        """Populating before filesystems exist should raise."""
        ctx = make_context(offline_cache, tmp_path, BuildMode.USB)
        for step in (populate_boot, populate_payload):
            with pytest.raises(FabInstallerError, match="filesystems") as exc_info:
                step(ctx)
            assert exc_info.value.code == "step_order"

    def test_finalize_iso_without_writer(
        self, offline_cache: ArtifactCache, tmp_path: Path
    ) -> None:
        """Finalizing an ISO build without its writer should raise."""
        ctx = make_context(offline_cache, tmp_path, BuildMode.ISO)
        ctx.workdir.mkdir()
        allocate(ctx)
        try:
            with pytest.raises(FabInstallerError, match="ISO writer") as exc_info:
                finalize(ctx)
        finally:
            ctx.close()
        assert exc_info.value.code == "step_order"
        assert not ctx.request.paths.iso_image.exists()
