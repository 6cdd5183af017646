"""Pulling artifacts from the registry into a directory.

Two shapes of artifact are supported:

- file artifacts (ORAS convention): every layer annotated with a title is a
  file of that name; layers marked for unpacking are gzip'd tarballs of a
  directory and are extracted in place,
- OCI image layouts: the manifest (following image indexes), config and
  layer blobs are stored content-addressed with ``index.json`` and
  ``oci-layout``, ready to be imported by a registry or container runtime.

Blob transfers fan out over a small thread pool; the caller owns the target
directory and discards it on failure.
"""

from __future__ import annotations

import json
import logging
import tarfile
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path, PurePosixPath
from typing import TypeVar

import httpx
from rich.progress import Progress

from fab_installer.artifacts.refs import ArtifactRef
from fab_installer.artifacts.registry import (
    DOWNLOAD_TIMEOUT,
    MEDIA_TYPE_OCI_INDEX,
    Descriptor,
    Manifest,
    ManifestError,
    download_blob,
    fetch_manifest,
)

logger = logging.getLogger(__name__)

# Default number of concurrent blob transfers per artifact
DEFAULT_WORKERS = 4

OCI_LAYOUT_VERSION = "1.0.0"
ANNOTATION_REF_NAME = "org.opencontainers.image.ref.name"

T = TypeVar("T")


class ExtractionError(ManifestError):
    """Raised when an unpackable layer cannot be extracted."""

    def __init__(self, message: str, code: str = "extraction_error") -> None:
        super().__init__(message, code=code)


def run_parallel(
    fn: Callable[[T], object],
    items: Iterable[T],
    workers: int,
    cancel: threading.Event | None = None,
) -> None:
    """Run ``fn`` over ``items`` with a bounded thread pool.

    The first failure (or an interrupt while waiting) sets ``cancel`` so
    running calls can stop, drops work that has not started yet and is
    re-raised once the running calls have returned.

    Args:
        fn: Function to call for every item.
        items: Work items.
        workers: Maximum concurrent calls.
        cancel: Event that running calls poll to abort early.
    """
    executor = ThreadPoolExecutor(max_workers=workers)
    try:
        futures = [executor.submit(fn, item) for item in items]
        for future in as_completed(futures):
            future.result()
    except BaseException:
        if cancel is not None:
            cancel.set()
        executor.shutdown(wait=True, cancel_futures=True)
        raise
    executor.shutdown(wait=True)


def _check_title(ref: ArtifactRef, title: str) -> None:
    path = PurePosixPath(title)
    if path.is_absolute() or ".." in path.parts or len(path.parts) != 1:
        raise ManifestError(
            f"{ref}: refusing file name {title!r}", code="path_traversal"
        )


def extract_tarball(archive_path: Path, dest_dir: Path) -> None:
    """Extract a gzip'd tarball, refusing paths outside ``dest_dir``.

    Raises:
        ExtractionError: If the archive is invalid or unsafe.
    """
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            for member in tar.getmembers():
                member_path = PurePosixPath(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise ExtractionError(
                        f"Refusing to extract {member.name}: path traversal detected",
                        code="path_traversal",
                    )
            tar.extractall(dest_dir, filter="data")
    except (tarfile.TarError, OSError) as e:
        raise ExtractionError(f"Failed to extract {archive_path.name}: {e}") from e


def pull_files(
    client: httpx.Client,
    ref: ArtifactRef,
    dest_dir: Path,
    workers: int = DEFAULT_WORKERS,
    progress: Progress | None = None,
    cancel: threading.Event | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> list[str]:
    """Pull a file artifact into ``dest_dir``.

    Args:
        client: HTTPX client instance.
        ref: Artifact reference.
        dest_dir: Existing directory receiving the files.
        workers: Concurrent blob transfers.
        progress: Optional progress display.
        cancel: Optional event aborting in-flight transfers.
        timeout: Per-blob download timeout in seconds.

    Returns:
        Names of the files pulled.

    Raises:
        RegistryError: If a request fails.
        ManifestError: If the artifact has no files or unsafe names.
        DigestMismatchError: If a blob fails verification.
    """
    cancel = cancel or threading.Event()
    manifest = fetch_manifest(client, ref)
    if manifest.is_index:
        raise ManifestError(
            f"{ref}: expected a file artifact, got an image index",
            code="unexpected_index",
        )

    layers = [layer for layer in manifest.layers if layer.title]
    if not layers:
        raise ManifestError(f"{ref}: artifact contains no files", code="empty_artifact")
    for layer in layers:
        assert layer.title is not None
        _check_title(ref, layer.title)

    def _pull(layer: Descriptor) -> None:
        assert layer.title is not None
        if not layer.unpack:
            download_blob(
                client, ref, layer, dest_dir / layer.title, progress, cancel, timeout=timeout
            )
            return

        archive = dest_dir / f".{layer.hex_digest}.tar.gz"
        try:
            download_blob(client, ref, layer, archive, progress, cancel, timeout=timeout)
            extract_tarball(archive, dest_dir)
        finally:
            archive.unlink(missing_ok=True)
        if not (dest_dir / layer.title).exists():
            raise ExtractionError(f"{ref}: {layer.title} missing after unpacking")

    run_parallel(_pull, layers, workers, cancel)

    names = [layer.title for layer in layers if layer.title]
    logger.debug("Pulled %s: %s", ref, ", ".join(names))
    return names


def _write_blob(blobs_dir: Path, manifest: Manifest) -> None:
    (blobs_dir / manifest.digest.split(":", 1)[1]).write_bytes(manifest.raw)


def _collect_blobs(
    client: httpx.Client,
    ref: ArtifactRef,
    manifest: Manifest,
    blobs_dir: Path,
    found: dict[str, Descriptor],
) -> None:
    _write_blob(blobs_dir, manifest)
    if manifest.is_index:
        for child in manifest.manifests:
            child_manifest = fetch_manifest(client, ref, child.digest)
            _collect_blobs(client, ref, child_manifest, blobs_dir, found)
        return

    config = manifest.config
    if config is not None:
        found.setdefault(config.digest, config)
    for layer in manifest.layers:
        found.setdefault(layer.digest, layer)


def pull_layout(
    client: httpx.Client,
    ref: ArtifactRef,
    dest_dir: Path,
    workers: int = DEFAULT_WORKERS,
    progress: Progress | None = None,
    cancel: threading.Event | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> Descriptor:
    """Pull an artifact into an OCI image layout at ``dest_dir``.

    Args:
        client: HTTPX client instance.
        ref: Artifact reference.
        dest_dir: Existing directory receiving the layout.
        workers: Concurrent blob transfers.
        progress: Optional progress display.
        cancel: Optional event aborting in-flight transfers.
        timeout: Per-blob download timeout in seconds.

    Returns:
        Descriptor of the top-level manifest recorded in index.json.
    """
    cancel = cancel or threading.Event()
    blobs_dir = dest_dir / "blobs" / "sha256"
    blobs_dir.mkdir(parents=True, exist_ok=True)

    manifest = fetch_manifest(client, ref)
    found: dict[str, Descriptor] = {}
    _collect_blobs(client, ref, manifest, blobs_dir, found)

    def _pull(blob: Descriptor) -> None:
        target = blobs_dir / blob.hex_digest
        if not target.exists():
            download_blob(client, ref, blob, target, progress, cancel, timeout=timeout)

    run_parallel(_pull, found.values(), workers, cancel)

    top = manifest.descriptor()
    entry = top.to_dict()
    entry["annotations"] = {ANNOTATION_REF_NAME: ref.tag}
    index = {
        "schemaVersion": 2,
        "mediaType": MEDIA_TYPE_OCI_INDEX,
        "manifests": [entry],
    }
    (dest_dir / "index.json").write_text(json.dumps(index, indent=2), encoding="utf-8")
    (dest_dir / "oci-layout").write_text(
        json.dumps({"imageLayoutVersion": OCI_LAYOUT_VERSION}), encoding="utf-8"
    )

    logger.debug("Pulled %s as OCI layout (%d blobs)", ref, len(found) + 1)
    return top


__all__ = [
    "DEFAULT_WORKERS",
    "ExtractionError",
    "extract_tarball",
    "pull_files",
    "pull_layout",
    "run_parallel",
]
