"""Filesystem helpers shared by the artifact cache and the build outputs.

The atomic helpers here are the only way complete directories and files
appear under their final names: content is produced under a hidden temporary
name in the same parent directory and renamed into place once complete.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"


def is_temp_name(name: str) -> bool:
    """Check whether a directory entry is an in-progress temporary."""
    return name.startswith(".") and name.endswith(TEMP_SUFFIX)


@contextmanager
def atomic_directory(final_path: Path) -> Iterator[Path]:
    """Build a directory under a temporary name and rename it into place.

    The temporary directory is created next to ``final_path`` so the rename
    stays on one filesystem. On any exception (including KeyboardInterrupt)
    the temporary directory is removed and ``final_path`` is left untouched.

    Args:
        final_path: Path the finished directory should appear at.

    Yields:
        Path of the temporary directory to populate.

    Raises:
        FileExistsError: If ``final_path`` appeared while populating.
        OSError: If the rename fails.
    """
    final_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = Path(
        tempfile.mkdtemp(
            prefix=f".{final_path.name}.",
            suffix=TEMP_SUFFIX,
            dir=final_path.parent,
        )
    )
    try:
        yield tmp_path
        # rename(2) happily replaces an empty directory, so check explicitly
        if os.path.lexists(final_path):
            raise FileExistsError(f"{final_path} already exists")
        os.rename(tmp_path, final_path)
    except BaseException:
        shutil.rmtree(tmp_path, ignore_errors=True)
        raise


@contextmanager
def atomic_write(final_path: Path, mode: int = 0o644) -> Iterator[BinaryIO]:
    """Write a file under a temporary name and rename it into place.

    Args:
        final_path: Path the finished file should appear at.
        mode: Permission bits of the finished file.

    Yields:
        Binary file object to write to.
    """
    final_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{final_path.name}.",
        suffix=TEMP_SUFFIX,
        dir=final_path.parent,
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, final_path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def write_file_atomic(path: Path, data: bytes, mode: int = 0o644) -> None:
    """Write ``data`` to ``path`` atomically."""
    with atomic_write(path, mode=mode) as f:
        f.write(data)


def remove_if_exists(path: Path) -> None:
    """Remove a file, symlink or directory tree if it exists."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


def remove_best_effort(path: Path) -> None:
    """Remove a path, logging instead of raising on failure."""
    try:
        remove_if_exists(path)
    except OSError as e:
        logger.warning("Failed to remove %s: %s", path, e)


def is_present(*paths: Path) -> bool:
    """Check that every path exists."""
    return all(p.exists() for p in paths)


def copy_path(src: Path, dest: Path, mode: int | None = None) -> None:
    """Copy a file or directory tree to ``dest``.

    Args:
        src: Source file or directory.
        dest: Destination path (not the parent directory).
        mode: Optional permission bits applied to a copied file.
    """
    if src.is_dir():
        shutil.copytree(src, dest, dirs_exist_ok=True)
    else:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dest)
        if mode is not None:
            os.chmod(dest, mode)


def get_tree_size(path: Path) -> int:
    """Get the total size of all files below ``path`` in bytes."""
    if not path.exists():
        return 0

    total = 0
    for item in path.rglob("*"):
        if item.is_file() and not item.is_symlink():
            total += item.stat().st_size
    return total


def format_size(size_bytes: float) -> str:
    """Format a byte count for humans."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} PB"


__all__ = [
    "TEMP_SUFFIX",
    "atomic_directory",
    "atomic_write",
    "copy_path",
    "format_size",
    "get_tree_size",
    "is_present",
    "is_temp_name",
    "remove_best_effort",
    "remove_if_exists",
    "write_file_atomic",
]
