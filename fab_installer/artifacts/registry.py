"""OCI distribution API client.

This module handles:
- Registry authentication (static basic credentials and bearer tokens)
- Manifest retrieval and parsing
- Blob download with digest verification

Transfers are never retried here; failures surface as RegistryError
(transient) or DigestMismatchError/ManifestError (integrity).
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import re
import threading
from collections.abc import Generator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
from rich.progress import Progress

from fab_installer.artifacts.credentials import Credentials
from fab_installer.artifacts.refs import ArtifactRef
from fab_installer.errors import IntegrityError, TransientError

logger = logging.getLogger(__name__)

# Timeout for manifest and token requests (seconds)
REQUEST_TIMEOUT = 60

# Timeout for blob downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 1024 * 1024  # 1 MiB

MEDIA_TYPE_OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_OCI_INDEX = "application/vnd.oci.image.index.v1+json"
MEDIA_TYPE_DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
MEDIA_TYPE_DOCKER_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"

MANIFEST_MEDIA_TYPES = (
    MEDIA_TYPE_OCI_MANIFEST,
    MEDIA_TYPE_OCI_INDEX,
    MEDIA_TYPE_DOCKER_MANIFEST,
    MEDIA_TYPE_DOCKER_LIST,
)
INDEX_MEDIA_TYPES = frozenset({MEDIA_TYPE_OCI_INDEX, MEDIA_TYPE_DOCKER_LIST})

ANNOTATION_TITLE = "org.opencontainers.image.title"
ANNOTATION_UNPACK = "io.deis.oras.content.unpack"

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class RegistryError(TransientError):
    """Raised when a registry request fails."""

    def __init__(self, message: str, code: str = "registry_error") -> None:
        super().__init__(message, code=code)


class ManifestError(IntegrityError):
    """Raised when a manifest is malformed or of an unexpected type."""

    def __init__(self, message: str, code: str = "invalid_manifest") -> None:
        super().__init__(message, code=code)


class DigestMismatchError(IntegrityError):
    """Raised when downloaded content does not match its digest."""

    def __init__(self, message: str, code: str = "digest_mismatch") -> None:
        super().__init__(message, code=code)


@dataclass(frozen=True)
class Descriptor:
    """OCI content descriptor."""

    media_type: str
    digest: str
    size: int
    annotations: Mapping[str, str] = field(default_factory=dict)
    platform: Mapping[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Descriptor:
        """Parse a descriptor from manifest JSON.

        Raises:
            ManifestError: If required fields are missing.
        """
        try:
            return cls(
                media_type=str(data.get("mediaType", "")),
                digest=str(data["digest"]),
                size=int(data["size"]),
                annotations=dict(data.get("annotations") or {}),
                platform=data.get("platform"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ManifestError(f"invalid descriptor {data!r}") from e

    @property
    def title(self) -> str | None:
        """File name the blob is stored under (ORAS convention)."""
        return self.annotations.get(ANNOTATION_TITLE)

    @property
    def unpack(self) -> bool:
        """Whether the blob is a gzip'd tarball of a directory."""
        return self.annotations.get(ANNOTATION_UNPACK) == "true"

    @property
    def hex_digest(self) -> str:
        """Hex part of a sha256 digest.

        Raises:
            DigestMismatchError: If the algorithm is not sha256.
        """
        algorithm, _, value = self.digest.partition(":")
        if algorithm != "sha256" or not re.fullmatch(r"[0-9a-f]{64}", value):
            raise DigestMismatchError(
                f"unsupported digest {self.digest!r}", code="unsupported_digest"
            )
        return value

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "mediaType": self.media_type,
            "digest": self.digest,
            "size": self.size,
        }
        if self.annotations:
            data["annotations"] = dict(self.annotations)
        if self.platform:
            data["platform"] = dict(self.platform)
        return data


@dataclass
class Manifest:
    """A fetched manifest or image index, with its raw bytes."""

    media_type: str
    digest: str
    raw: bytes
    data: dict[str, Any]

    @property
    def is_index(self) -> bool:
        return self.media_type in INDEX_MEDIA_TYPES

    @property
    def layers(self) -> list[Descriptor]:
        return [Descriptor.from_dict(d) for d in self.data.get("layers") or []]

    @property
    def config(self) -> Descriptor | None:
        config = self.data.get("config")
        return Descriptor.from_dict(config) if config else None

    @property
    def manifests(self) -> list[Descriptor]:
        return [Descriptor.from_dict(d) for d in self.data.get("manifests") or []]

    def descriptor(self) -> Descriptor:
        """Descriptor pointing at this manifest."""
        return Descriptor(media_type=self.media_type, digest=self.digest, size=len(self.raw))


def sha256_digest(data: bytes) -> str:
    """Digest string of ``data``."""
    return "sha256:" + hashlib.sha256(data).hexdigest()


def parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    """Parse a ``WWW-Authenticate`` header.

    Returns:
        Tuple of (lower-cased scheme, parameters).
    """
    scheme, _, rest = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM.findall(rest))


def _basic_header(creds: Credentials) -> str:
    token = base64.b64encode(f"{creds.username}:{creds.password}".encode()).decode()
    return f"Basic {token}"


class RegistryAuth(httpx.Auth):
    """Authentication flow for OCI registries.

    Requests go out anonymously (or with a cached bearer token); on a 401 the
    challenge is answered with basic credentials or by fetching a bearer
    token from the advertised realm. Tokens are cached per repository.
    """

    def __init__(self, credentials: Mapping[str, Credentials] | None = None) -> None:
        self._credentials = dict(credentials or {})
        self._tokens: dict[str, str] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _scope_key(request: httpx.Request) -> str:
        path = request.url.path
        for marker in ("/manifests/", "/blobs/"):
            if marker in path:
                path = path.split(marker, 1)[0]
                break
        return f"{request.url.netloc.decode()}{path}"

    def auth_flow(
        self, request: httpx.Request
    ) -> Generator[httpx.Request, httpx.Response, None]:
        host = request.url.netloc.decode()
        key = self._scope_key(request)

        with self._lock:
            token = self._tokens.get(key)
        if token:
            request.headers["Authorization"] = f"Bearer {token}"

        response = yield request
        if response.status_code != 401:
            return

        scheme, params = parse_challenge(response.headers.get("WWW-Authenticate", ""))
        creds = self._credentials.get(host)

        if scheme == "basic":
            if creds is None:
                return
            request.headers["Authorization"] = _basic_header(creds)
            yield request
            return

        if scheme != "bearer" or "realm" not in params:
            return

        query = {k: params[k] for k in ("service", "scope") if k in params}
        token_request = httpx.Request("GET", params["realm"], params=query)
        if creds is not None:
            token_request.headers["Authorization"] = _basic_header(creds)

        token_response = yield token_request
        if token_response.status_code != 200:
            raise RegistryError(
                f"token request to {params['realm']} failed: "
                f"{token_response.status_code} {token_response.reason_phrase}",
                code="auth_error",
            )

        token_response.read()
        try:
            body = token_response.json()
            token = body.get("token") or body.get("access_token")
        except (json.JSONDecodeError, AttributeError) as e:
            raise RegistryError(
                f"invalid token response from {params['realm']}", code="auth_error"
            ) from e
        if not token:
            raise RegistryError(
                f"no token in response from {params['realm']}", code="auth_error"
            )

        with self._lock:
            self._tokens[key] = token
        request.headers["Authorization"] = f"Bearer {token}"
        yield request


def create_client(
    credentials: Mapping[str, Credentials] | None = None,
    timeout: float = REQUEST_TIMEOUT,
) -> httpx.Client:
    """Create an HTTP client configured for registry access.

    Args:
        credentials: Static credentials keyed by registry host.
        timeout: Default request timeout in seconds.

    Returns:
        httpx.Client following redirects (blob storage is often on a CDN).
    """
    return httpx.Client(
        auth=RegistryAuth(credentials),
        timeout=timeout,
        follow_redirects=True,
    )


def fetch_manifest(
    client: httpx.Client,
    ref: ArtifactRef,
    reference: str | None = None,
    timeout: float = REQUEST_TIMEOUT,
) -> Manifest:
    """Fetch a manifest or image index.

    Args:
        client: HTTPX client instance.
        ref: Artifact reference (repository and default tag).
        reference: Tag or digest to fetch; defaults to ``ref.tag``.
        timeout: Request timeout in seconds.

    Returns:
        Parsed Manifest.

    Raises:
        RegistryError: If the request fails.
        ManifestError: If the response is not a valid manifest.
        DigestMismatchError: If fetched by digest and the content differs.
    """
    reference = reference or ref.tag
    url = f"{ref.base_url}/manifests/{reference}"
    logger.debug("Fetching manifest %s", url)

    try:
        response = client.get(
            url,
            headers={"Accept": ", ".join(MANIFEST_MEDIA_TYPES)},
            timeout=timeout,
        )
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        code = "not_found" if e.response.status_code == 404 else "http_error"
        raise RegistryError(
            f"HTTP error fetching manifest {ref.repository}:{reference}: "
            f"{e.response.status_code} {e.response.reason_phrase}",
            code=code,
        ) from e
    except httpx.TimeoutException as e:
        raise RegistryError(f"Timeout fetching manifest {url}", code="timeout") from e
    except httpx.RequestError as e:
        raise RegistryError(
            f"Network error fetching manifest {url}: {e}", code="network_error"
        ) from e

    raw = response.content
    digest = sha256_digest(raw)
    if reference.startswith("sha256:") and digest != reference:
        raise DigestMismatchError(
            f"manifest {ref.repository}@{reference} has digest {digest}"
        )

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ManifestError(f"manifest {ref}: invalid JSON") from e
    if not isinstance(data, dict):
        raise ManifestError(f"manifest {ref}: expected a JSON object")

    media_type = data.get("mediaType") or response.headers.get("content-type", "")
    media_type = media_type.split(";", 1)[0].strip()
    if media_type not in MANIFEST_MEDIA_TYPES:
        raise ManifestError(
            f"manifest {ref}: unsupported media type {media_type!r}",
            code="unsupported_media_type",
        )

    return Manifest(media_type=media_type, digest=digest, raw=raw, data=data)


def download_blob(
    client: httpx.Client,
    ref: ArtifactRef,
    descriptor: Descriptor,
    dest_path: Path,
    progress: Progress | None = None,
    cancel: threading.Event | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> int:
    """Download a blob and verify it against its descriptor.

    Args:
        client: HTTPX client instance.
        ref: Artifact reference (repository).
        descriptor: Descriptor of the blob.
        dest_path: Destination file path.
        progress: Optional progress display; one task per blob.
        cancel: Optional event aborting the transfer when set.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        Number of bytes written.

    Raises:
        RegistryError: If the download fails.
        DigestMismatchError: If size or digest do not match.
    """
    expected = descriptor.hex_digest
    url = f"{ref.base_url}/blobs/{descriptor.digest}"
    label = descriptor.title or descriptor.digest[:19]
    logger.debug("Downloading %s to %s", url, dest_path)

    task_id = progress.add_task(label, total=descriptor.size) if progress else None

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    if cancel is not None and cancel.is_set():
                        raise RegistryError(
                            f"Download of {label} cancelled", code="cancelled"
                        )
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)
                    if progress is not None and task_id is not None:
                        progress.update(task_id, advance=len(chunk))

    except httpx.HTTPStatusError as e:
        dest_path.unlink(missing_ok=True)
        raise RegistryError(
            f"HTTP error downloading {ref.repository}@{descriptor.digest}: "
            f"{e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        dest_path.unlink(missing_ok=True)
        raise RegistryError(f"Timeout downloading {url}", code="timeout") from e
    except httpx.RequestError as e:
        dest_path.unlink(missing_ok=True)
        raise RegistryError(
            f"Network error downloading {url}: {e}", code="network_error"
        ) from e

    computed = sha256.hexdigest()
    if total_bytes != descriptor.size or computed != expected:
        dest_path.unlink(missing_ok=True)
        raise DigestMismatchError(
            f"Blob {label} from {ref}: expected {descriptor.digest} "
            f"({descriptor.size} bytes), got sha256:{computed} ({total_bytes} bytes)"
        )

    logger.debug("Downloaded %s (%d bytes)", label, total_bytes)
    return total_bytes


__all__ = [
    "ANNOTATION_TITLE",
    "ANNOTATION_UNPACK",
    "DOWNLOAD_TIMEOUT",
    "INDEX_MEDIA_TYPES",
    "MANIFEST_MEDIA_TYPES",
    "MEDIA_TYPE_DOCKER_LIST",
    "MEDIA_TYPE_DOCKER_MANIFEST",
    "MEDIA_TYPE_OCI_INDEX",
    "MEDIA_TYPE_OCI_MANIFEST",
    "Descriptor",
    "DigestMismatchError",
    "Manifest",
    "ManifestError",
    "RegistryAuth",
    "RegistryError",
    "create_client",
    "download_blob",
    "fetch_manifest",
    "parse_challenge",
    "sha256_digest",
]
