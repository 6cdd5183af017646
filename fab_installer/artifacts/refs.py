"""Registry references and cache entry names."""

from __future__ import annotations

from dataclasses import dataclass

from fab_installer.errors import ConfigurationError

# Bump when the on-disk cache layout changes; old entries are then ignored
CACHE_SCHEMA_VERSION = "v1"

# Suffix of cache entries holding an OCI image layout
OCI_SUFFIX = ".oci"

# Registries reached over plain HTTP
PLAIN_HTTP_HOSTS = frozenset({"localhost", "127.0.0.1"})


@dataclass(frozen=True)
class ArtifactRef:
    """A resolved registry reference ``host/repository:tag``."""

    host: str
    repository: str
    tag: str

    @property
    def plain_http(self) -> bool:
        """Whether the registry is reached without TLS."""
        return self.host.split(":", 1)[0] in PLAIN_HTTP_HOSTS

    @property
    def base_url(self) -> str:
        """Base URL of the registry API."""
        scheme = "http" if self.plain_http else "https"
        return f"{scheme}://{self.host}/v2/{self.repository}"

    def __str__(self) -> str:
        return f"{self.host}/{self.repository}:{self.tag}"


def resolve_ref(repo: str, prefix: str, name: str, version: str) -> ArtifactRef:
    """Build the registry reference ``repo/prefix/name:version``.

    The first path component of ``repo`` is the registry host.

    Args:
        repo: Registry host with optional path, e.g. ``ghcr.io``.
        prefix: Path prefix, e.g. ``githedgehog``.
        name: Artifact name, e.g. ``fabricator/k9s``.
        version: Artifact version (tag).

    Returns:
        ArtifactRef.

    Raises:
        ConfigurationError: If any part is empty.
    """
    if not name or not version:
        raise ConfigurationError(
            f"artifact name and version are required, got {name!r}:{version!r}",
            code="invalid_reference",
        )

    parts = [p for p in f"{repo}/{prefix}/{name}".split("/") if p]
    if len(parts) < 2:
        raise ConfigurationError(
            f"invalid registry reference {repo!r}/{prefix!r}/{name!r}",
            code="invalid_reference",
        )

    return ArtifactRef(host=parts[0], repository="/".join(parts[1:]), tag=version)


def cache_entry_name(name: str, version: str, oci: bool = False) -> str:
    """Directory name of a cache entry: ``name@version`` with ``/`` as ``_``."""
    entry = f"{name}@{version}".replace("/", "_")
    if oci:
        entry += OCI_SUFFIX
    return entry


__all__ = [
    "CACHE_SCHEMA_VERSION",
    "OCI_SUFFIX",
    "PLAIN_HTTP_HOSTS",
    "ArtifactRef",
    "cache_entry_name",
    "resolve_ref",
]
