"""Manual-mode archive of a staged installer tree."""

from __future__ import annotations

import logging
import tarfile
from pathlib import Path

from fab_installer.fsutil import atomic_write

logger = logging.getLogger(__name__)

# Payload is mostly already-compressed images, favour speed
COMPRESS_LEVEL = 1


def archive_directory(src: Path, dst: Path) -> Path:
    """Write a gzip'd tarball of ``src`` to ``dst``.

    Members are stored under the base name of ``src``; the archive only
    appears at ``dst`` once completely written.

    Args:
        src: Directory to archive.
        dst: Archive path.

    Returns:
        ``dst``.

    Raises:
        NotADirectoryError: If ``src`` is not a directory.
        OSError: If reading or writing fails.
    """
    if not src.is_dir():
        raise NotADirectoryError(f"{src} is not a directory")

    logger.debug("Archiving %s to %s", src, dst)
    with (
        atomic_write(dst) as f,
        tarfile.open(fileobj=f, mode="w:gz", compresslevel=COMPRESS_LEVEL) as tar,
    ):
        tar.add(src, arcname=src.name, recursive=True)
    return dst


__all__ = ["archive_directory"]
