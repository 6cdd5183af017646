"""Tests for registry references and docker credentials."""

import base64
import json
from pathlib import Path

import pytest

from fab_installer.artifacts.credentials import (
    Credentials,
    CredentialsError,
    load_credentials,
)
from fab_installer.artifacts.refs import cache_entry_name, resolve_ref
from fab_installer.errors import ConfigurationError


class TestResolveRef:
    """Tests for resolve_ref."""

    def test_default_registry(self) -> None:
        """Name and prefix should form the repository path."""
        ref = resolve_ref("ghcr.io", "githedgehog", "fabricator/k9s", "v0.50.6")
        assert ref.host == "ghcr.io"
        assert ref.repository == "githedgehog/fabricator/k9s"
        assert ref.tag == "v0.50.6"
        assert str(ref) == "ghcr.io/githedgehog/fabricator/k9s:v0.50.6"
        assert ref.base_url == "https://ghcr.io/v2/githedgehog/fabricator/k9s"

    def test_repo_with_path(self) -> None:
        """Path components of repo should be kept in the repository."""
        ref = resolve_ref("registry.example.com/mirror", "", "fabric/hhfctl", "v1")
        assert ref.host == "registry.example.com"
        assert ref.repository == "mirror/fabric/hhfctl"

    def test_localhost_plain_http(self) -> None:
        """Local registries should be reached over plain HTTP."""
        ref = resolve_ref("localhost:5000", "githedgehog", "fabricator/k9s", "v1")
        assert ref.plain_http
        assert ref.base_url.startswith("http://localhost:5000/v2/")

    def test_empty_version(self) -> None:
        """Missing version should be rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            resolve_ref("ghcr.io", "githedgehog", "fabricator/k9s", "")
        assert exc_info.value.code == "invalid_reference"


class TestCacheEntryName:
    """Tests for cache_entry_name."""

    def test_file_entry(self) -> None:
        """Slashes should be replaced in entry names."""
        assert cache_entry_name("fabricator/k9s", "v1") == "fabricator_k9s@v1"

    def test_oci_entry(self) -> None:
        """OCI layouts should carry the .oci suffix."""
        assert cache_entry_name("fabric/agent", "v2", oci=True) == "fabric_agent@v2.oci"


class TestLoadCredentials:
    """Tests for load_credentials."""

    def test_missing_file(self, tmp_path: Path) -> None:
        """Missing config should yield no credentials."""
        assert load_credentials(tmp_path / "config.json") == {}

    def test_auth_entries(self, tmp_path: Path) -> None:
        """Both auth and username/password entries should be decoded."""
        path = tmp_path / "config.json"
        path.write_text(
            json.dumps(
                {
                    "auths": {
                        "ghcr.io": {"auth": base64.b64encode(b"user:pa:ss").decode()},
                        "https://registry.example.com/v1/": {
                            "username": "u2",
                            "password": "p2",
                        },
                        "helper-only.example.com": {},
                    }
                }
            )
        )
        creds = load_credentials(path)

        assert creds == {
            "ghcr.io": Credentials("user", "pa:ss"),
            "registry.example.com": Credentials("u2", "p2"),
        }

    def test_password_not_in_repr(self) -> None:
        """Passwords should never be rendered."""
        assert "secret" not in repr(Credentials("user", "secret"))

    def test_malformed_auth(self, tmp_path: Path) -> None:
        """An auth value without a colon should be rejected."""
        path = tmp_path / "config.json"
        path.write_text(
            json.dumps({"auths": {"ghcr.io": {"auth": base64.b64encode(b"nocolon").decode()}}})
        )
        with pytest.raises(CredentialsError):
            load_credentials(path)

    def test_invalid_json(self, tmp_path: Path) -> None:
        """Unparseable config should be rejected."""
        path = tmp_path / "config.json"
        path.write_text("{")
        with pytest.raises(CredentialsError):
            load_credentials(path)
