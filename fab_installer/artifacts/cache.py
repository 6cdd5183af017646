"""Locked, content-addressed artifact cache.

This module provides the ArtifactCache service:
- fetch(): ensure a file artifact is cached and return its directory
- fetch_oci(): ensure an OCI image layout is cached and return its directory
- copy_into(): copy selected files of a cached artifact into a directory
- copy_oci_into(): copy a cached OCI layout into a directory
- entries(), info(), prune(): cache inspection and cleanup

Entries live at ``<cache_dir>/v1/<name>@<version>`` (``/`` replaced by
``_``) and are either absent or complete: downloads land in a hidden
temporary directory that is renamed into place once every blob verified.
One lock per cache instance serializes the check-download-rename decision.
"""

from __future__ import annotations

import contextlib
import logging
import re
import shutil
import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING

import httpx
from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TransferSpeedColumn,
)

from fab_installer.artifacts.credentials import load_credentials
from fab_installer.artifacts.pull import DEFAULT_WORKERS, pull_files, pull_layout
from fab_installer.artifacts.refs import (
    CACHE_SCHEMA_VERSION,
    OCI_SUFFIX,
    ArtifactRef,
    cache_entry_name,
    resolve_ref,
)
from fab_installer.artifacts.registry import DOWNLOAD_TIMEOUT, create_client
from fab_installer.errors import ConfigurationError, IntegrityError, TransientError
from fab_installer.fsutil import (
    atomic_directory,
    copy_path,
    format_size,
    get_tree_size,
    is_temp_name,
    remove_if_exists,
)

if TYPE_CHECKING:
    from fab_installer.config import Settings

logger = logging.getLogger(__name__)

SCHEMA_DIR_RE = re.compile(r"v\d+")


class CacheError(TransientError):
    """Raised when the cache cannot be written."""

    def __init__(self, message: str, code: str = "cache_error") -> None:
        super().__init__(message, code=code)


class CacheEntryError(ConfigurationError):
    """Raised when a cache path exists but is not a directory."""

    def __init__(self, path: Path, code: str = "not_a_directory") -> None:
        super().__init__(f"Cache path {path} exists but is not a directory", code=code)
        self.path = path


class ArtifactFileMissingError(IntegrityError):
    """Raised when a requested file is not part of a cached artifact."""

    def __init__(
        self, name: str, version: str, file_name: str, code: str = "file_missing"
    ) -> None:
        super().__init__(
            f"Artifact {name}@{version} does not contain {file_name!r}", code=code
        )
        self.name = name
        self.version = version
        self.file_name = file_name


class OfflineModeError(ConfigurationError):
    """Raised when download is required but offline mode is enabled."""

    def __init__(
        self,
        message: str = "Cannot download in offline mode",
        code: str = "offline_mode",
    ) -> None:
        super().__init__(message, code=code)


@dataclass
class CacheEntry:
    """A complete cache entry on disk."""

    name: str
    path: Path
    oci: bool
    size_bytes: int


Puller = Callable[..., object]


class ArtifactCache:
    """Artifact cache bound to one registry location.

    Args:
        cache_dir: Cache root; entries go below ``<cache_dir>/v1``.
        client: HTTP client used for registry access.
        repo: Registry host and optional path.
        prefix: Path prefix for artifact names.
        workers: Concurrent blob transfers per artifact.
        offline: Refuse to download on a cache miss.
        show_progress: Render per-blob progress bars on stderr.
        download_timeout: Per-blob download timeout in seconds.
    """

    def __init__(
        self,
        cache_dir: Path,
        client: httpx.Client,
        repo: str = "ghcr.io",
        prefix: str = "githedgehog",
        workers: int = DEFAULT_WORKERS,
        offline: bool = False,
        show_progress: bool = False,
        download_timeout: float = DOWNLOAD_TIMEOUT,
    ) -> None:
        self.cache_dir = cache_dir
        self.root = cache_dir / CACHE_SCHEMA_VERSION
        self.repo = repo
        self.prefix = prefix
        self.workers = workers
        self.offline = offline
        self.show_progress = show_progress
        self.download_timeout = download_timeout
        self._client = client
        self._owns_client = False
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> ArtifactCache:
        """Create a cache (and its own HTTP client) from settings."""
        client = create_client(
            load_credentials(settings.docker_config),
        )
        cache = cls(
            settings.cache_dir,
            client,
            repo=settings.registry_repo,
            prefix=settings.registry_prefix,
            workers=settings.download_workers,
            offline=settings.offline,
            show_progress=settings.show_progress,
            download_timeout=settings.download_timeout,
        )
        cache._owns_client = True
        return cache

    def close(self) -> None:
        """Close the HTTP client if this cache created it."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> ArtifactCache:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def ref(self, name: str, version: str) -> ArtifactRef:
        """Registry reference of an artifact."""
        return resolve_ref(self.repo, self.prefix, name, version)

    @contextlib.contextmanager
    def _progress(self) -> Iterator[Progress | None]:
        if not self.show_progress:
            yield None
            return
        with Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            console=Console(stderr=True),
            transient=True,
        ) as progress:
            yield progress

    def _ensure(self, name: str, version: str, oci: bool, puller: Puller) -> Path:
        entry = self.root / cache_entry_name(name, version, oci=oci)

        with self._lock:
            if entry.exists() or entry.is_symlink():
                if not entry.is_dir():
                    raise CacheEntryError(entry)
                logger.debug("Cache hit for %s@%s", name, version)
                return entry

            if self.offline:
                raise OfflineModeError(
                    f"Artifact {name}@{version} is not cached and offline mode is enabled"
                )

            ref = self.ref(name, version)
            logger.info("Downloading %s", ref)

            try:
                with atomic_directory(entry) as tmp_dir, self._progress() as progress:
                    puller(
                        self._client,
                        ref,
                        tmp_dir,
                        self.workers,
                        progress,
                        timeout=self.download_timeout,
                    )
            except FileExistsError as e:
                raise CacheError(
                    f"Cache entry for {ref} appeared while downloading: {e}",
                    code="entry_exists",
                ) from e
            except OSError as e:
                raise CacheError(f"Failed to cache {ref}: {e}") from e

            logger.info("Cached %s", ref)
            return entry

    def fetch(self, name: str, version: str) -> Path:
        """Ensure a file artifact is cached.

        Args:
            name: Artifact name, e.g. ``fabricator/k9s``.
            version: Artifact version.

        Returns:
            Path to the cache entry directory.

        Raises:
            CacheEntryError: If the entry path is not a directory.
            OfflineModeError: If not cached and offline.
            CacheError: If the entry cannot be written.
            RegistryError: If the transfer fails.
            DigestMismatchError: If a blob fails verification.
        """
        return self._ensure(name, version, False, pull_files)

    def fetch_oci(self, name: str, version: str) -> Path:
        """Ensure an artifact is cached as an OCI image layout.

        Same contract as fetch(); the entry name carries the ``.oci`` suffix.
        """
        return self._ensure(name, version, True, pull_layout)

    def copy_into(
        self,
        dest_dir: Path,
        name: str,
        version: str,
        files: Mapping[str, int | None],
    ) -> None:
        """Copy selected files of a file artifact into ``dest_dir``.

        Args:
            dest_dir: Destination directory.
            name: Artifact name.
            version: Artifact version.
            files: File or directory names mapped to an optional mode to
                apply to the copy.

        Raises:
            ArtifactFileMissingError: If a requested file is not in the artifact.
            CacheError: If copying fails.
        """
        src_dir = self.fetch(name, version)

        for file_name in files:
            if not (src_dir / file_name).exists():
                raise ArtifactFileMissingError(name, version, file_name)

        for file_name, mode in files.items():
            try:
                copy_path(src_dir / file_name, dest_dir / file_name, mode)
            except OSError as e:
                raise CacheError(
                    f"Failed to copy {file_name} from {name}@{version}: {e}"
                ) from e

    def copy_oci_into(self, dest_dir: Path, name: str, version: str) -> Path:
        """Copy a cached OCI layout into ``dest_dir``.

        Returns:
            Path of the copied layout (``dest_dir/<name>@<version>.oci``).
        """
        src_dir = self.fetch_oci(name, version)
        target = dest_dir / src_dir.name
        try:
            shutil.copytree(src_dir, target)
        except OSError as e:
            raise CacheError(f"Failed to copy {name}@{version} layout: {e}") from e
        return target

    def entries(self) -> list[CacheEntry]:
        """List complete cache entries, sorted by name."""
        if not self.root.is_dir():
            return []
        return [
            CacheEntry(
                name=p.name,
                path=p,
                oci=p.name.endswith(OCI_SUFFIX),
                size_bytes=get_tree_size(p),
            )
            for p in sorted(self.root.iterdir())
            if p.is_dir() and not is_temp_name(p.name)
        ]

    def info(self) -> dict[str, object]:
        """Get information about the cache."""
        entries = self.entries()
        total_size = sum(e.size_bytes for e in entries)
        return {
            "cache_dir": str(self.cache_dir),
            "schema": CACHE_SCHEMA_VERSION,
            "exists": self.root.exists(),
            "entries": len(entries),
            "total_size_bytes": total_size,
            "total_size_human": format_size(total_size),
        }

    def prune(self, all_entries: bool = False, dry_run: bool = False) -> list[str]:
        """Remove stale data from the cache.

        Stale data is leftover temporary directories and entries of other
        cache schema versions. Anything else under the cache directory
        is left alone.

        Args:
            all_entries: Also remove every complete entry.
            dry_run: If True, only report what would be pruned.

        Returns:
            Paths (relative to the cache dir) that were/would be pruned.
        """
        candidates: list[Path] = []
        with self._lock:
            if self.cache_dir.is_dir():
                for schema_dir in sorted(self.cache_dir.iterdir()):
                    if (
                        SCHEMA_DIR_RE.fullmatch(schema_dir.name)
                        and schema_dir.name != CACHE_SCHEMA_VERSION
                    ):
                        candidates.append(schema_dir)
            if self.root.is_dir():
                for p in sorted(self.root.iterdir()):
                    if all_entries or is_temp_name(p.name):
                        candidates.append(p)

            pruned: list[str] = []
            for path in candidates:
                rel = str(path.relative_to(self.cache_dir))
                if dry_run:
                    logger.info("[DRY RUN] Would prune %s", rel)
                else:
                    logger.info("Pruning %s", rel)
                    remove_if_exists(path)
                pruned.append(rel)

        return pruned


__all__ = [
    "ArtifactCache",
    "ArtifactFileMissingError",
    "CacheEntry",
    "CacheEntryError",
    "CacheError",
    "OfflineModeError",
]
