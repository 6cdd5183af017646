"""Output naming for installer builds.

Every file a build produces is named ``<kind>--<name>--install`` plus a
suffix and lives directly in the work directory.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from fab_installer.types import BuildMode, NodeKind

SEPARATOR = "--"
INSTALL_SUFFIX = "install"

ARCHIVE_SUFFIX = ".tgz"
IGNITION_SUFFIX = ".ign"
HASH_SUFFIX = ".inhash"
USB_IMAGE_SUFFIX = "-usb.img"
ISO_IMAGE_SUFFIX = "-usb.iso"
IMAGE_WORKDIR_SUFFIX = "-usb.wip"

# Where the staged tree lands on an installed OS
OS_TARGET_INSTALL_DIR = "/opt/hedgehog/install"


def install_name(kind: NodeKind, name: str) -> str:
    """Base name of all outputs of a target."""
    return SEPARATOR.join([kind.value, name, INSTALL_SUFFIX])


@dataclass(frozen=True)
class InstallPaths:
    """All output paths of one build target."""

    work_dir: Path
    kind: NodeKind
    name: str

    @property
    def base_name(self) -> str:
        return install_name(self.kind, self.name)

    def _path(self, suffix: str = "") -> Path:
        return self.work_dir / f"{self.base_name}{suffix}"

    @property
    def install_dir(self) -> Path:
        return self._path()

    @property
    def archive(self) -> Path:
        return self._path(ARCHIVE_SUFFIX)

    @property
    def ignition(self) -> Path:
        return self._path(IGNITION_SUFFIX)

    @property
    def hash_file(self) -> Path:
        return self._path(HASH_SUFFIX)

    @property
    def usb_image(self) -> Path:
        return self._path(USB_IMAGE_SUFFIX)

    @property
    def iso_image(self) -> Path:
        return self._path(ISO_IMAGE_SUFFIX)

    @property
    def image_workdir(self) -> Path:
        return self._path(IMAGE_WORKDIR_SUFFIX)

    def image(self, mode: BuildMode) -> Path:
        """Disk image path for an image build mode."""
        if mode == BuildMode.USB:
            return self.usb_image
        if mode == BuildMode.ISO:
            return self.iso_image
        raise ValueError(f"build mode {mode.value!r} produces no disk image")

    def auto_install_path(self, mode: BuildMode) -> str:
        """Path the first-boot installer runs from, empty for manual builds."""
        if mode == BuildMode.MANUAL:
            return ""
        return f"{OS_TARGET_INSTALL_DIR}/{self.base_name}"

    def expected_outputs(self, mode: BuildMode) -> list[Path]:
        """Outputs that must all exist for a build in ``mode`` to be complete."""
        if mode == BuildMode.MANUAL:
            return [self.install_dir, self.archive, self.ignition]
        return [self.install_dir, self.image(mode)]

    def all_outputs(self) -> list[Path]:
        """Every output any build mode may leave behind (hash file excluded)."""
        return [
            self.install_dir,
            self.archive,
            self.ignition,
            self.usb_image,
            self.iso_image,
            self.image_workdir,
        ]


__all__ = [
    "ARCHIVE_SUFFIX",
    "HASH_SUFFIX",
    "IGNITION_SUFFIX",
    "IMAGE_WORKDIR_SUFFIX",
    "INSTALL_SUFFIX",
    "ISO_IMAGE_SUFFIX",
    "OS_TARGET_INSTALL_DIR",
    "SEPARATOR",
    "USB_IMAGE_SUFFIX",
    "InstallPaths",
    "install_name",
]
