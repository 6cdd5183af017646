"""Copying host directory trees into image filesystems.

Any filesystem that can create directories and create-or-truncate files
(FAT32 volumes, ISO images) implements FileSystemWriter; copy_tree() and
copy_file() only go through that interface.
"""

from __future__ import annotations

import logging
import os
import shutil
from contextlib import AbstractContextManager
from pathlib import Path, PurePosixPath
from typing import Protocol

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 1024 * 1024


class WritableFile(Protocol):
    def write(self, data: bytes, /) -> int: ...

    def flush(self) -> None: ...


class FileSystemWriter(Protocol):
    """Minimal write interface of an image filesystem.

    Paths are absolute POSIX paths inside the filesystem.
    """

    def mkdir(self, path: str) -> None:
        """Create a directory and any missing parents."""
        ...

    def open_file(self, path: str) -> AbstractContextManager[WritableFile]:
        """Create or truncate a file; its parent must exist."""
        ...


def _sync(handle: object) -> None:
    flush = getattr(handle, "flush", None)
    if flush is not None:
        flush()
    fileno = getattr(handle, "fileno", None)
    if fileno is not None:
        try:
            fd = fileno()
        except OSError:
            return
        os.fsync(fd)


def _target_path(rel: PurePosixPath) -> str:
    return "/" if str(rel) == "." else f"/{rel}"


def copy_tree(base: Path, local_dir: str, fs: FileSystemWriter) -> int:
    """Copy ``base/local_dir`` into ``fs`` at ``/local_dir``.

    Directories are created before their contents, entries are visited in
    sorted order and every file is flushed before the next is opened.

    Args:
        base: Host directory paths are made relative to.
        local_dir: Directory below ``base`` to copy; ``.`` copies ``base``
            itself into the filesystem root.
        fs: Target filesystem.

    Returns:
        Number of files copied.

    Raises:
        NotADirectoryError: If the source is not a directory.
        OSError: If reading a source file fails.
    """
    root = base / local_dir
    if not root.is_dir():
        raise NotADirectoryError(f"{root} is not a directory")

    copied = 0
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        current = Path(dirpath)
        rel_dir = PurePosixPath(current.relative_to(base).as_posix())
        fs.mkdir(_target_path(rel_dir))

        for name in sorted(filenames):
            src = current / name
            if src.is_symlink() and not src.exists():
                logger.warning("Skipping dangling symlink %s", src)
                continue
            copy_file(_target_path(rel_dir / name), src, fs)
            copied += 1

    logger.debug("Copied %d files from %s", copied, root)
    return copied


def copy_file(dst: str, src: Path, fs: FileSystemWriter) -> None:
    """Stream one host file into ``fs``.

    A destination of ``/`` (or empty) means the filesystem root and is
    replaced by ``/<basename of src>``.
    """
    if dst in ("", "/"):
        dst = f"/{src.name}"
    with open(src, "rb") as source, fs.open_file(dst) as target:
        shutil.copyfileobj(source, target, COPY_BUFFER_SIZE)
        _sync(target)


class HostDirectoryWriter:
    """FileSystemWriter backed by a host directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _resolve(self, path: str) -> Path:
        rel = PurePosixPath("/" + path.lstrip("/")).relative_to("/")
        if ".." in rel.parts:
            raise ValueError(f"path {path!r} escapes {self.root}")
        return self.root / rel

    def mkdir(self, path: str) -> None:
        self._resolve(path).mkdir(parents=True, exist_ok=True)

    def open_file(self, path: str) -> AbstractContextManager[WritableFile]:
        return open(self._resolve(path), "wb")


__all__ = [
    "FileSystemWriter",
    "HostDirectoryWriter",
    "WritableFile",
    "copy_file",
    "copy_tree",
]
