"""Shared fixtures: sample fab.yaml documents and a pre-seeded artifact cache."""

import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest
import respx
import yaml

from fab_installer.artifacts.cache import ArtifactCache
from fab_installer.artifacts.refs import CACHE_SCHEMA_VERSION, cache_entry_name
from fab_installer.artifacts.registry import (
    ANNOTATION_TITLE,
    ANNOTATION_UNPACK,
    MEDIA_TYPE_OCI_MANIFEST,
    sha256_digest,
)
from fab_installer.builds.airgap import AIRGAP_ARTIFACT_LISTS, collect_artifacts
from fab_installer.builds.assembler import (
    NODE_CONFIG_REF,
    control_dependencies,
    node_dependencies,
)
from fab_installer.diskimage.builder import USB_ROOT_REF
from fab_installer.fab.io import FabDocuments, parse_fab


def fab_yaml_docs(
    registry_mode: str = "airgap", join_token: str | None = "token-1"
) -> list[dict[str, Any]]:
    """A Fabricator, one control node and one worker node."""
    control_config: dict[str, Any] = {
        "vip": "172.30.0.1/32",
        "defaultUser": {
            "passwordHash": "$5$salt$hash",
            "authorizedKeys": ["ssh-ed25519 AAAA test@example"],
        },
    }
    if join_token is not None:
        control_config["joinToken"] = join_token
    return [
        {
            "apiVersion": "fabricator.githedgehog.com/v1beta1",
            "kind": "Fabricator",
            "metadata": {"name": "default"},
            "spec": {
                "config": {
                    "control": control_config,
                    "registry": {"mode": registry_mode},
                },
            },
        },
        {
            "apiVersion": "fabricator.githedgehog.com/v1beta1",
            "kind": "ControlNode",
            "metadata": {"name": "control-1"},
            "spec": {
                "bootstrap": {"disk": "/dev/sda"},
                "management": {"interface": "enp2s1", "ip": "172.30.0.5/21"},
                "external": {
                    "interface": "enp2s0",
                    "ip": "192.168.1.10/24",
                    "gateway": "192.168.1.1",
                    "dns": ["1.1.1.1"],
                },
                "dummy": {"ip": "10.0.0.0/31"},
            },
        },
        {
            "apiVersion": "fabricator.githedgehog.com/v1beta1",
            "kind": "FabNode",
            "metadata": {"name": "node-1"},
            "spec": {
                "bootstrap": {"disk": "/dev/vda"},
                "management": {"interface": "enp2s1", "ip": "172.30.0.8/21"},
                "dummy": {"ip": "10.0.0.2/31"},
            },
        },
    ]


WIRING_DOCS: list[dict[str, Any]] = [
    {
        "apiVersion": "wiring.githedgehog.com/v1beta1",
        "kind": "Switch",
        "metadata": {"name": "leaf-1"},
        "spec": {"role": "server-leaf"},
    },
    {
        "apiVersion": "wiring.githedgehog.com/v1beta1",
        "kind": "Server",
        "metadata": {"name": "server-1"},
        "spec": {},
    },
]


@pytest.fixture
def fab_docs() -> FabDocuments:
    """Parsed sample fab.yaml."""
    return parse_fab(fab_yaml_docs())


@pytest.fixture
def wiring_docs() -> list[dict[str, Any]]:
    """Sample wiring objects."""
    return [dict(d) for d in WIRING_DOCS]


@pytest.fixture
def fab_file(tmp_path: Path) -> Path:
    """Sample fab.yaml on disk."""
    path = tmp_path / "fab.yaml"
    path.write_text(yaml.safe_dump_all(fab_yaml_docs()), encoding="utf-8")
    return path


@pytest.fixture
def wiring_file(tmp_path: Path) -> Path:
    """Sample wiring.yaml on disk."""
    path = tmp_path / "wiring.yaml"
    path.write_text(yaml.safe_dump_all(WIRING_DOCS), encoding="utf-8")
    return path


def seed_entry(cache_dir: Path, name: str, version: str, files: dict[str, bytes]) -> Path:
    """Create a complete file artifact entry directly on disk."""
    entry = cache_dir / CACHE_SCHEMA_VERSION / cache_entry_name(name, version)
    for rel, data in files.items():
        path = entry / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    entry.mkdir(parents=True, exist_ok=True)
    return entry


def seed_oci_entry(cache_dir: Path, name: str, version: str) -> Path:
    """Create a minimal OCI layout entry directly on disk."""
    entry = cache_dir / CACHE_SCHEMA_VERSION / cache_entry_name(name, version, oci=True)
    (entry / "blobs" / "sha256").mkdir(parents=True)
    (entry / "oci-layout").write_text(json.dumps({"imageLayoutVersion": "1.0.0"}))
    (entry / "index.json").write_text(json.dumps({"schemaVersion": 2, "manifests": []}))
    return entry


def usb_root_files() -> dict[str, bytes]:
    """Small stand-in for the live OS root artifact."""
    return {
        "EFI/BOOT/bootx64.efi": b"efi loader",
        "EFI/BOOT/grub.cfg": b"set timeout=1\n",
        "boot/grub/grub.cfg": b"menuentry flatcar {}\n",
        "images/efi.img": b"\x00" * 2048,
        "flatcar_production_image.bin.bz2": b"BZh9" + b"\x00" * 4096,
        "flatcar_production_pxe.vmlinuz": b"kernel" * 100,
        "flatcar_production_pxe_image.cpio.gz": b"initrd" * 100,
    }


def seed_fabric(cache_dir: Path, docs: FabDocuments) -> None:
    """Seed every artifact any build of ``docs`` needs."""
    fab = docs.fab
    for dep in [*control_dependencies(fab), *node_dependencies(fab)]:
        entry = cache_dir / CACHE_SCHEMA_VERSION / cache_entry_name(dep.name, dep.version)
        if entry.exists():
            continue
        seed_entry(
            cache_dir,
            dep.name,
            dep.version,
            {file_name: f"{dep.name}/{file_name}".encode() for file_name in dep.files},
        )
    seed_entry(cache_dir, USB_ROOT_REF, fab.spec.versions.control_usb_root, usb_root_files())
    seed_oci_entry(cache_dir, NODE_CONFIG_REF, fab.spec.versions.fabricator)
    if fab.is_airgap:
        for name, version in collect_artifacts(fab, *AIRGAP_ARTIFACT_LISTS).items():
            seed_oci_entry(cache_dir, name, version)


@pytest.fixture
def offline_cache(tmp_path: Path, fab_docs: FabDocuments) -> Iterator[ArtifactCache]:
    """Offline cache pre-seeded with every artifact of the sample fabric."""
    cache_dir = tmp_path / "cache"
    seed_fabric(cache_dir, fab_docs)
    with httpx.Client() as client:
        yield ArtifactCache(cache_dir, client, offline=True)


def oras_artifact(
    files: dict[str, bytes], unpack: frozenset[str] = frozenset()
) -> tuple[bytes, dict[str, bytes]]:
    """Manifest bytes and blobs of a file artifact in ORAS layout."""
    config = b"{}"
    blobs = {sha256_digest(config): config}
    layers = []
    for name, data in files.items():
        digest = sha256_digest(data)
        blobs[digest] = data
        annotations = {ANNOTATION_TITLE: name}
        if name in unpack:
            annotations[ANNOTATION_UNPACK] = "true"
        layers.append(
            {
                "mediaType": "application/vnd.oci.image.layer.v1.tar",
                "digest": digest,
                "size": len(data),
                "annotations": annotations,
            }
        )
    manifest = {
        "schemaVersion": 2,
        "mediaType": MEDIA_TYPE_OCI_MANIFEST,
        "config": {
            "mediaType": "application/vnd.oci.empty.v1+json",
            "digest": sha256_digest(config),
            "size": len(config),
        },
        "layers": layers,
    }
    return json.dumps(manifest).encode(), blobs


def mock_artifact(
    base_url: str,
    tag: str,
    manifest: bytes,
    blobs: dict[str, bytes],
    router: respx.MockRouter = respx.mock,
) -> respx.Route:
    """Serve an artifact from ``base_url`` under an active respx mock.

    Returns:
        The manifest route, for call counting.
    """
    for digest, data in blobs.items():
        router.get(f"{base_url}/blobs/{digest}").mock(
            return_value=httpx.Response(200, content=data)
        )
    return router.get(f"{base_url}/manifests/{tag}").mock(
        return_value=httpx.Response(
            200, content=manifest, headers={"content-type": MEDIA_TYPE_OCI_MANIFEST}
        )
    )
