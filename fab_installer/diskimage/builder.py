"""USB and ISO installer image builds.

An image build is a fixed sequence of named steps over an ImageBuildContext:

    validate -> stage-os-root -> allocate -> partition -> create-filesystems
    -> populate-boot -> populate-payload -> finalize -> cleanup

The image is assembled as ``image.tmp`` inside the build's work directory and
renamed to its final name only in ``finalize``; on any failure the image file
is closed and the work directory removed, so no image exists under its final
name unless the whole sequence succeeded.
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

from fab_installer.artifacts.cache import ArtifactCache
from fab_installer.bootconfig.ignition import BootConfigFactory
from fab_installer.builds.outputs import InstallPaths
from fab_installer.builds.pipeline import Step, run_steps
from fab_installer.diskimage.fat32 import Fat32Writer
from fab_installer.diskimage.gpt import verify_gpt, write_gpt
from fab_installer.diskimage.iso import EFI_BOOT_IMAGE, IsoWriter
from fab_installer.diskimage.layout import (
    DATA_SIZE,
    ESP_SIZE,
    PartitionLayout,
    compute_layout,
)
from fab_installer.diskimage.oem import (
    IGNITION_FILE,
    INSTALL_ENV,
    MEDIA_LABEL,
    OEM_ARCHIVE,
    OS_IMAGE,
    install_env,
    oem_archive,
)
from fab_installer.diskimage.tree import FileSystemWriter, copy_file, copy_tree
from fab_installer.errors import ConfigurationError, FabInstallerError, MissingFieldError
from fab_installer.fsutil import remove_best_effort
from fab_installer.types import BuildMode

logger = logging.getLogger(__name__)

USB_ROOT_REF = "fabricator/control-usb-root"
PXE_KERNEL = "flatcar_production_pxe.vmlinuz"
PXE_INITRD = "flatcar_production_pxe_image.cpio.gz"
BOOT_DIRS = ("EFI", "boot", "images")
USB_ROOT_FILES: dict[str, int | None] = {
    "boot": None,
    "EFI": None,
    "images": None,
    OS_IMAGE: None,
    PXE_INITRD: None,
    PXE_KERNEL: None,
}

ESP_LABEL = "ESP"
TMP_IMAGE = "image.tmp"
ISO_SPOOL_DIR = "iso-spool"

IMAGE_GUID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_DNS, "githedgehog.com")


@dataclass
class ImageRequest:
    """Everything needed to build one installer image.

    Attributes:
        mode: ``usb`` or ``iso``.
        paths: Output paths of the target.
        cache: Artifact cache providing the OS root.
        usb_root_version: Version of the OS root artifact.
        boot_config: Renders the target's Ignition config for an
            auto-install path.
        required: Dotted field names mapped to their values; each must be set.
        bootstrap_disk: Disk the OS is installed onto.
        esp_size: EFI system partition size in bytes.
        data_size: Data partition size in bytes.
    """

    mode: BuildMode
    paths: InstallPaths
    cache: ArtifactCache
    usb_root_version: str
    boot_config: BootConfigFactory
    required: dict[str, str | None]
    bootstrap_disk: str
    esp_size: int = ESP_SIZE
    data_size: int = DATA_SIZE

    @property
    def owner(self) -> str:
        return f"{self.paths.kind.value}/{self.paths.name}"


@dataclass
class ImageBuildContext:
    """Mutable state threaded through the image build steps."""

    request: ImageRequest
    workdir: Path
    layout: PartitionLayout
    disk_guid: uuid.UUID
    image: BinaryIO | None = None
    boot_fs: FileSystemWriter | None = None
    data_fs: FileSystemWriter | None = None
    filesystems: list[Fat32Writer] = field(default_factory=list)
    iso: IsoWriter | None = None

    @property
    def tmp_image(self) -> Path:
        return self.workdir / TMP_IMAGE

    def close(self) -> None:
        if self.iso is not None:
            self.iso.close()
            self.iso = None
        if self.image is not None:
            self.image.close()
            self.image = None


def validate(ctx: ImageBuildContext) -> ImageBuildContext:
    request = ctx.request
    if request.mode not in (BuildMode.USB, BuildMode.ISO):
        raise ConfigurationError(
            f"{request.owner}: build mode {request.mode.value!r} does not produce an image",
            code="invalid_mode",
        )
    for name, value in request.required.items():
        if not value:
            raise MissingFieldError(name, request.owner)
    return ctx


def stage_os_root(ctx: ImageBuildContext) -> ImageBuildContext:
    request = ctx.request
    ctx.workdir.mkdir(parents=True, exist_ok=True)
    request.cache.copy_into(
        ctx.workdir, USB_ROOT_REF, request.usb_root_version, USB_ROOT_FILES
    )
    (ctx.workdir / OEM_ARCHIVE).write_bytes(oem_archive())
    return ctx


def allocate(ctx: ImageBuildContext) -> ImageBuildContext:
    image = open(ctx.tmp_image, "w+b")
    ctx.image = image
    image.truncate(ctx.layout.disk_size)
    logger.debug("Allocated %s (%d bytes)", ctx.tmp_image, ctx.layout.disk_size)
    return ctx


def _image(ctx: ImageBuildContext) -> BinaryIO:
    if ctx.image is None:
        raise FabInstallerError("image file is not allocated", code="step_order")
    return ctx.image


def partition(ctx: ImageBuildContext) -> ImageBuildContext:
    if ctx.request.mode != BuildMode.USB:
        return ctx
    image = _image(ctx)
    write_gpt(image, ctx.layout, ctx.disk_guid)
    verify_gpt(image, ctx.layout, ctx.disk_guid)
    return ctx


def create_filesystems(ctx: ImageBuildContext) -> ImageBuildContext:
    if ctx.request.mode == BuildMode.USB:
        image = _image(ctx)
        esp = Fat32Writer(image, ctx.layout.esp.offset, ctx.layout.esp.size, ESP_LABEL)
        data = Fat32Writer(image, ctx.layout.data.offset, ctx.layout.data.size, MEDIA_LABEL)
        ctx.filesystems = [esp, data]
        ctx.boot_fs, ctx.data_fs = esp, data
    else:
        spool = ctx.workdir / ISO_SPOOL_DIR
        spool.mkdir(exist_ok=True)
        ctx.iso = IsoWriter(spool, volume_id=MEDIA_LABEL)
        ctx.boot_fs = ctx.data_fs = ctx.iso
    return ctx


def _filesystems(ctx: ImageBuildContext) -> tuple[FileSystemWriter, FileSystemWriter]:
    if ctx.boot_fs is None or ctx.data_fs is None:
        raise FabInstallerError("filesystems are not created", code="step_order")
    return ctx.boot_fs, ctx.data_fs


def populate_boot(ctx: ImageBuildContext) -> ImageBuildContext:
    boot_fs, _ = _filesystems(ctx)
    for name in BOOT_DIRS:
        copy_tree(ctx.workdir, name, boot_fs)
    for name in (PXE_KERNEL, PXE_INITRD, OEM_ARCHIVE):
        copy_file("/", ctx.workdir / name, boot_fs)
    return ctx


def populate_payload(ctx: ImageBuildContext) -> ImageBuildContext:
    request = ctx.request
    paths = request.paths
    _, data_fs = _filesystems(ctx)

    copy_file("/", ctx.workdir / OS_IMAGE, data_fs)
    copy_tree(paths.install_dir.parent, paths.install_dir.name, data_fs)

    ignition = request.boot_config(paths.auto_install_path(request.mode))
    with data_fs.open_file(f"/{IGNITION_FILE}") as f:
        f.write(ignition)
    with data_fs.open_file(f"/{INSTALL_ENV}") as f:
        f.write(install_env(request.bootstrap_disk, paths.base_name))
    return ctx


def finalize(ctx: ImageBuildContext) -> ImageBuildContext:
    image = _image(ctx)
    if ctx.request.mode == BuildMode.USB:
        for fs in ctx.filesystems:
            fs.commit()
    else:
        if ctx.iso is None:
            raise FabInstallerError("ISO writer is not created", code="step_order")
        ctx.iso.finalize(image, boot_image=EFI_BOOT_IMAGE)

    image.flush()
    os.fsync(image.fileno())
    ctx.close()

    final = ctx.request.paths.image(ctx.request.mode)
    if os.path.lexists(final):
        raise FileExistsError(f"{final} already exists")
    os.rename(ctx.tmp_image, final)
    logger.info("Wrote %s", final)
    return ctx


def cleanup(ctx: ImageBuildContext) -> ImageBuildContext:
    remove_best_effort(ctx.workdir)
    return ctx


IMAGE_STEPS: tuple[Step[ImageBuildContext], ...] = (
    Step("validate", validate),
    Step("stage-os-root", stage_os_root),
    Step("allocate", allocate),
    Step("partition", partition),
    Step("create-filesystems", create_filesystems),
    Step("populate-boot", populate_boot),
    Step("populate-payload", populate_payload),
    Step("finalize", finalize),
    Step("cleanup", cleanup),
)


def build_image(request: ImageRequest) -> Path:
    """Build a USB or ISO installer image.

    Args:
        request: Image build request.

    Returns:
        Path of the finished image.

    Raises:
        BuildStepError: If a step fails; the original error is its cause.
    """
    paths = request.paths
    ctx = ImageBuildContext(
        request=request,
        workdir=paths.image_workdir,
        layout=compute_layout(request.esp_size, request.data_size),
        disk_guid=uuid.uuid5(IMAGE_GUID_NAMESPACE, paths.base_name),
    )

    logger.info(
        "Building %s image for %s, this may take several minutes",
        request.mode.value,
        request.owner,
    )
    try:
        run_steps(IMAGE_STEPS, ctx, request.owner)
    except BaseException:
        ctx.close()
        remove_best_effort(ctx.workdir)
        raise
    return paths.image(request.mode)


__all__ = [
    "IMAGE_STEPS",
    "USB_ROOT_FILES",
    "USB_ROOT_REF",
    "ImageBuildContext",
    "ImageRequest",
    "build_image",
]
