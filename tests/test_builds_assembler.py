"""Tests for payload assembly, staged tree checks and archiving."""

import os
import tarfile
from pathlib import Path

import pytest
import yaml

from fab_installer.artifacts.cache import ArtifactCache, OfflineModeError
from fab_installer.builds.archive import archive_directory
from fab_installer.builds.assembler import (
    FAB_FILE,
    INSTALLER_NAME,
    INSTALLER_REF,
    WIRING_FILE,
    IncompletePayloadError,
    assemble,
    check_staged,
    control_payload,
    node_payload,
)
from fab_installer.builds.recipe import RECIPE_FILE, RecipeError, load_recipe
from fab_installer.errors import MissingFieldError
from fab_installer.fab.io import FabDocuments, parse_fab
from fab_installer.fsutil import remove_if_exists
from fab_installer.types import NodeKind

from conftest import fab_yaml_docs


class TestPayloads:
    """Tests for control_payload and node_payload."""

    def test_control_payload(self, fab_docs: FabDocuments, wiring_docs: list) -> None:
        """Control payload should carry fab, wiring and airgap artifacts."""
        payload = control_payload(fab_docs, fab_docs.get_control("control-1"), wiring_docs)

        assert payload.target == "control/control-1"
        assert sorted(payload.documents) == [FAB_FILE, WIRING_FILE]
        assert "fabric/agent" in payload.oci_artifacts
        assert any(dep.name == "fabricator/k9s" for dep in payload.dependencies)

    def test_control_payload_upstream(self, wiring_docs: list) -> None:
        """Upstream registry mode should stage no OCI artifacts."""
        docs = parse_fab(fab_yaml_docs("upstream"))
        payload = control_payload(docs, docs.get_control("control-1"), wiring_docs)
        assert payload.oci_artifacts == {}

    def test_node_payload(self, fab_docs: FabDocuments) -> None:
        """Node fab.yaml should hold only that node."""
        payload = node_payload(fab_docs, fab_docs.get_node("node-1"))

        staged = list(yaml.safe_load_all(payload.documents[FAB_FILE]))
        assert [d["kind"] for d in staged] == ["Fabricator", "FabNode"]
        assert list(payload.oci_artifacts) == ["fabricator/hhfab-node-config"]

    def test_installer_dependency(self, fab_docs: FabDocuments, wiring_docs: list) -> None:
        """Both payloads should stage the standalone installer at the fabricator version."""
        control = control_payload(fab_docs, fab_docs.get_control("control-1"), wiring_docs)
        node = node_payload(fab_docs, fab_docs.get_node("node-1"))

        for payload in (control, node):
            installer = payload.dependencies[0]
            assert installer.name == INSTALLER_REF
            assert installer.version == fab_docs.fab.spec.versions.fabricator
            assert installer.files == {INSTALLER_NAME: 0o755}

    def test_node_payload_requires_join_token(self) -> None:
        """Worker installers cannot be built without a join token."""
        docs = parse_fab(fab_yaml_docs(join_token=None))
        with pytest.raises(MissingFieldError) as exc_info:
            node_payload(docs, docs.get_node("node-1"))
        assert exc_info.value.field == "spec.config.control.joinToken"


class TestAssemble:
    """Tests for assemble and check_staged."""

    def test_control_tree(
        self,
        tmp_path: Path,
        offline_cache: ArtifactCache,
        fab_docs: FabDocuments,
        wiring_docs: list,
    ) -> None:
        """Every part of the payload should be staged."""
        payload = control_payload(fab_docs, fab_docs.get_control("control-1"), wiring_docs)
        install_dir = tmp_path / "work" / "control--control-1--install"

        assert assemble(offline_cache, payload, install_dir) == install_dir

        recipe = load_recipe(install_dir)
        assert recipe.type == NodeKind.CONTROL
        assert recipe.name == "control-1"
        assert (install_dir / FAB_FILE).read_text() == payload.documents[FAB_FILE]
        assert (install_dir / "k9s").stat().st_mode & 0o777 == 0o755
        assert (install_dir / "k3s-install.sh").stat().st_mode & 0o777 == 0o700
        assert (install_dir / "fabric_agent@v0.80.0.oci" / "index.json").exists()

        installer = install_dir / INSTALLER_NAME
        assert os.access(installer, os.X_OK)
        assert installer.read_bytes() == f"{INSTALLER_REF}/{INSTALLER_NAME}".encode()

        assert check_staged(install_dir) == recipe

    def test_node_tree(
        self, tmp_path: Path, offline_cache: ArtifactCache, fab_docs: FabDocuments
    ) -> None:
        """Worker trees should pass check_staged without wiring."""
        payload = node_payload(fab_docs, fab_docs.get_node("node-1"))
        install_dir = assemble(offline_cache, payload, tmp_path / "node--node-1--install")

        assert not (install_dir / WIRING_FILE).exists()
        assert check_staged(install_dir).type == NodeKind.NODE

    def test_missing_artifact_leaves_nothing(
        self,
        tmp_path: Path,
        offline_cache: ArtifactCache,
        fab_docs: FabDocuments,
        wiring_docs: list,
    ) -> None:
        """An unresolvable artifact should abort without a staged tree."""
        remove_if_exists(offline_cache.root / "fabricator_k9s@v0.50.6")
        payload = control_payload(fab_docs, fab_docs.get_control("control-1"), wiring_docs)
        work = tmp_path / "work"

        with pytest.raises(OfflineModeError):
            assemble(offline_cache, payload, work / "control--control-1--install")

        assert list(work.iterdir()) == []

    def test_check_staged_missing_file(
        self, tmp_path: Path, offline_cache: ArtifactCache, fab_docs: FabDocuments
    ) -> None:
        """A removed payload file should be reported by name."""
        payload = node_payload(fab_docs, fab_docs.get_node("node-1"))
        install_dir = assemble(offline_cache, payload, tmp_path / "node--node-1--install")
        (install_dir / "k3s").unlink()

        with pytest.raises(IncompletePayloadError) as exc_info:
            check_staged(install_dir)
        assert exc_info.value.missing == ["k3s"]

    def test_check_staged_without_recipe(self, tmp_path: Path) -> None:
        """A directory without recipe.yaml is not a staged tree."""
        with pytest.raises(RecipeError) as exc_info:
            check_staged(tmp_path)
        assert exc_info.value.code == "not_found"

    def test_invalid_recipe(self, tmp_path: Path) -> None:
        """Unknown kinds in recipe.yaml should be rejected."""
        (tmp_path / RECIPE_FILE).write_text("type: switch\nname: x\n")
        with pytest.raises(RecipeError):
            load_recipe(tmp_path)


class TestArchiveDirectory:
    """Tests for archive_directory."""

    def test_archive(self, tmp_path: Path) -> None:
        """Members should be stored under the directory's base name."""
        src = tmp_path / "node--node-1--install"
        (src / "sub").mkdir(parents=True)
        (src / "sub" / "file").write_text("data")

        dst = archive_directory(src, tmp_path / "out.tgz")

        with tarfile.open(dst, "r:gz") as tar:
            names = tar.getnames()
            member = tar.extractfile("node--node-1--install/sub/file")
            assert member is not None
            assert member.read() == b"data"
        assert all(n.startswith("node--node-1--install") for n in names)

    def test_not_a_directory(self, tmp_path: Path) -> None:
        """Archiving a file should fail without creating the archive."""
        src = tmp_path / "file"
        src.write_text("x")
        with pytest.raises(NotADirectoryError):
            archive_directory(src, tmp_path / "out.tgz")
        assert not (tmp_path / "out.tgz").exists()
