"""ISO9660 installer media with Rock Ridge names and an El Torito EFI entry.

IsoWriter maps every path to a conservative ISO9660 identifier (uppercase,
short, versioned) and records the real name in Rock Ridge. pycdlib reads file
data lazily when the image is written, so file contents are spooled to a
work directory until finalize().
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import BinaryIO

import pycdlib
from pycdlib.pycdlibexception import PyCdlibException

from fab_installer.diskimage.oem import MEDIA_LABEL
from fab_installer.errors import IntegrityError

logger = logging.getLogger(__name__)

INTERCHANGE_LEVEL = 3
ROCK_RIDGE_VERSION = "1.09"
EFI_PLATFORM_ID = 0xEF
BOOT_CATALOG = "/BOOT.CAT;1"
BOOT_CATALOG_RR_NAME = "boot.catalog"
EFI_BOOT_IMAGE = "/images/efi.img"

MAX_FILE_ID = 30
MAX_DIR_ID = 31

_INVALID_CHARS = re.compile(r"[^A-Z0-9_]")


class IsoError(IntegrityError):
    """Raised when the ISO image cannot be assembled."""

    def __init__(self, message: str, code: str = "iso_error") -> None:
        super().__init__(message, code=code)


def _clean(text: str) -> str:
    return _INVALID_CHARS.sub("_", text.upper())


def iso_identifier(name: str, is_dir: bool, taken: set[str]) -> str:
    """Unique ISO9660 identifier for ``name`` within one directory.

    Files get ``NAME.EXT;1``, directories ``NAME``. A numeric suffix
    resolves collisions after truncation.
    """
    if is_dir:
        base, ext = _clean(name.replace(".", "_")) or "_", ""
        limit = MAX_DIR_ID
    else:
        stem, dot, suffix = name.rpartition(".")
        if not dot or not stem:
            stem, suffix = name, ""
        base = _clean(stem.replace(".", "_")) or "_"
        ext = _clean(suffix)[:3]
        limit = MAX_FILE_ID - len(ext) - 1

    def render(b: str) -> str:
        return b if is_dir else f"{b}.{ext};1"

    candidate = render(base[:limit])
    n = 1
    while candidate in taken:
        tail = f"_{n}"
        candidate = render(base[: limit - len(tail)] + tail)
        n += 1
    return candidate


class IsoWriter:
    """Build an ISO9660 image through the FileSystemWriter interface.

    Args:
        spool_dir: Existing directory for spooled file contents.
        volume_id: Primary volume identifier.
    """

    def __init__(self, spool_dir: Path, volume_id: str = MEDIA_LABEL) -> None:
        self._spool_dir = spool_dir
        self._iso = pycdlib.PyCdlib()
        self._iso.new(
            interchange_level=INTERCHANGE_LEVEL,
            rock_ridge=ROCK_RIDGE_VERSION,
            vol_ident=volume_id,
        )
        # real path -> ISO path
        self._dirs: dict[str, str] = {"/": "/"}
        self._files: dict[str, str] = {}
        # ISO parent path -> identifiers in use
        self._taken: dict[str, set[str]] = {"/": set()}
        self._spooled = 0
        self._closed = False

    @staticmethod
    def _normalize(path: str) -> PurePosixPath:
        normalized = PurePosixPath("/" + path.lstrip("/"))
        if any(part in (".", "..") for part in normalized.parts):
            raise IsoError(f"invalid path {path!r}", code="invalid_path")
        return normalized

    def _child_path(self, parent_iso: str, identifier: str) -> str:
        return f"{parent_iso.rstrip('/')}/{identifier}"

    def mkdir(self, path: str) -> None:
        """Create a directory and any missing parents."""
        current = PurePosixPath("/")
        for part in self._normalize(path).parts[1:]:
            parent_iso = self._dirs[str(current)]
            current = current / part
            if str(current) in self._dirs:
                continue
            if str(current) in self._files:
                raise IsoError(f"{current} is a file", code="not_a_directory")

            identifier = iso_identifier(part, True, self._taken[parent_iso])
            iso_path = self._child_path(parent_iso, identifier)
            try:
                self._iso.add_directory(iso_path, rr_name=part)
            except PyCdlibException as e:
                raise IsoError(f"cannot add directory {current}: {e}") from e
            self._taken[parent_iso].add(identifier)
            self._taken[iso_path] = set()
            self._dirs[str(current)] = iso_path

    def iso_path(self, path: str) -> str:
        """ISO9660 path a file was added under."""
        return self._files[str(self._normalize(path))]

    @contextmanager
    def open_file(self, path: str) -> Iterator[BinaryIO]:
        """Create or replace a file; its parent directory must exist."""
        normalized = self._normalize(path)
        parent = str(normalized.parent)
        if parent not in self._dirs:
            raise IsoError(f"directory {parent} does not exist", code="not_found")
        if str(normalized) in self._dirs:
            raise IsoError(f"{normalized} is a directory", code="is_a_directory")

        self._spooled += 1
        spool = self._spool_dir / f"{self._spooled:08d}.data"
        with open(spool, "wb") as f:
            yield f

        parent_iso = self._dirs[parent]
        existing = self._files.get(str(normalized))
        try:
            if existing is not None:
                self._iso.rm_file(existing)
                iso_path = existing
            else:
                identifier = iso_identifier(normalized.name, False, self._taken[parent_iso])
                self._taken[parent_iso].add(identifier)
                iso_path = self._child_path(parent_iso, identifier)
            self._iso.add_file(str(spool), iso_path, rr_name=normalized.name)
        except PyCdlibException as e:
            raise IsoError(f"cannot add file {normalized}: {e}") from e
        self._files[str(normalized)] = iso_path

    def finalize(self, f: BinaryIO, boot_image: str = EFI_BOOT_IMAGE) -> None:
        """Add the El Torito EFI entry and write the image to ``f``.

        Args:
            f: Image file, written from offset 0.
            boot_image: Real path of the EFI boot image in the tree.

        Raises:
            IsoError: If the boot image is missing or pycdlib rejects the tree.
        """
        boot_path = str(self._normalize(boot_image))
        if boot_path not in self._files:
            raise IsoError(f"EFI boot image {boot_image} was not added", code="no_boot_image")

        try:
            self._iso.add_eltorito(
                self._files[boot_path],
                bootcatfile=BOOT_CATALOG,
                rr_bootcatname=BOOT_CATALOG_RR_NAME,
                platform_id=EFI_PLATFORM_ID,
                efi=True,
                media_name="noemul",
            )
            f.seek(0)
            self._iso.write_fp(f)
        except PyCdlibException as e:
            raise IsoError(f"failed to write ISO image: {e}") from e
        f.flush()
        logger.debug("Wrote ISO image with %d files", len(self._files))

    def close(self) -> None:
        if not self._closed:
            self._iso.close()
            self._closed = True


__all__ = ["EFI_BOOT_IMAGE", "IsoError", "IsoWriter", "iso_identifier"]
