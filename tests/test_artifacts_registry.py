"""Tests for the registry client and artifact pulling."""

import io
import json
import tarfile
import threading
import time
from pathlib import Path

import httpx
import pytest
import respx

from fab_installer.artifacts.credentials import Credentials
from fab_installer.artifacts.pull import pull_files, pull_layout, run_parallel
from fab_installer.artifacts.refs import resolve_ref
from fab_installer.artifacts.registry import (
    MEDIA_TYPE_OCI_MANIFEST,
    Descriptor,
    DigestMismatchError,
    ManifestError,
    RegistryAuth,
    RegistryError,
    download_blob,
    fetch_manifest,
    parse_challenge,
    sha256_digest,
)

from conftest import mock_artifact, oras_artifact

REF = resolve_ref("ghcr.io", "githedgehog", "fabricator/k9s", "v0.50.6")
BASE = REF.base_url
CHALLENGE = (
    'Bearer realm="https://ghcr.io/token",service="ghcr.io",'
    'scope="repository:githedgehog/fabricator/k9s:pull"'
)


def _tarball(files: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class TestParseChallenge:
    """Tests for parse_challenge."""

    def test_bearer(self) -> None:
        """Scheme and parameters should be split out."""
        scheme, params = parse_challenge(CHALLENGE)
        assert scheme == "bearer"
        assert params == {
            "realm": "https://ghcr.io/token",
            "service": "ghcr.io",
            "scope": "repository:githedgehog/fabricator/k9s:pull",
        }


class TestFetchManifest:
    """Tests for fetch_manifest."""

    @respx.mock(assert_all_called=False)
    def test_fetch(self, respx_mock: respx.MockRouter) -> None:
        """Manifest should be parsed and its digest computed."""
        manifest, blobs = oras_artifact({"k9s": b"binary"})
        mock_artifact(BASE, REF.tag, manifest, blobs, respx_mock)

        with httpx.Client() as client:
            result = fetch_manifest(client, REF)

        assert result.media_type == MEDIA_TYPE_OCI_MANIFEST
        assert result.digest == sha256_digest(manifest)
        assert [layer.title for layer in result.layers] == ["k9s"]
        assert not result.is_index

    @respx.mock
    def test_not_found(self) -> None:
        """404 should raise RegistryError with code not_found."""
        respx.get(f"{BASE}/manifests/{REF.tag}").mock(return_value=httpx.Response(404))

        with httpx.Client() as client, pytest.raises(RegistryError) as exc_info:
            fetch_manifest(client, REF)
        assert exc_info.value.code == "not_found"

    @respx.mock
    def test_unsupported_media_type(self) -> None:
        """Non-manifest documents should be rejected."""
        respx.get(f"{BASE}/manifests/{REF.tag}").mock(
            return_value=httpx.Response(
                200, json={"schemaVersion": 2}, headers={"content-type": "text/plain"}
            )
        )

        with httpx.Client() as client, pytest.raises(ManifestError) as exc_info:
            fetch_manifest(client, REF)
        assert exc_info.value.code == "unsupported_media_type"

    @respx.mock
    def test_digest_reference_verified(self) -> None:
        """Fetching by digest should verify the returned bytes."""
        manifest, _ = oras_artifact({"k9s": b"binary"})
        wrong = sha256_digest(b"other")
        respx.get(f"{BASE}/manifests/{wrong}").mock(
            return_value=httpx.Response(
                200, content=manifest, headers={"content-type": MEDIA_TYPE_OCI_MANIFEST}
            )
        )

        with httpx.Client() as client, pytest.raises(DigestMismatchError):
            fetch_manifest(client, REF, wrong)


class TestDownloadBlob:
    """Tests for download_blob."""

    @respx.mock
    def test_download(self, tmp_path: Path) -> None:
        """Verified blob should be written to disk."""
        data = b"blob content"
        descriptor = Descriptor("application/octet-stream", sha256_digest(data), len(data))
        respx.get(f"{BASE}/blobs/{descriptor.digest}").mock(
            return_value=httpx.Response(200, content=data)
        )

        dest = tmp_path / "blob"
        with httpx.Client() as client:
            written = download_blob(client, REF, descriptor, dest)

        assert written == len(data)
        assert dest.read_bytes() == data

    @respx.mock
    def test_digest_mismatch(self, tmp_path: Path) -> None:
        """Tampered content should raise and leave no file behind."""
        descriptor = Descriptor("application/octet-stream", sha256_digest(b"expected"), 8)
        respx.get(f"{BASE}/blobs/{descriptor.digest}").mock(
            return_value=httpx.Response(200, content=b"tampered")
        )

        dest = tmp_path / "blob"
        with httpx.Client() as client, pytest.raises(DigestMismatchError):
            download_blob(client, REF, descriptor, dest)
        assert not dest.exists()

    @respx.mock
    def test_server_error(self, tmp_path: Path) -> None:
        """HTTP errors should raise RegistryError."""
        descriptor = Descriptor("application/octet-stream", sha256_digest(b"x"), 1)
        respx.get(f"{BASE}/blobs/{descriptor.digest}").mock(
            return_value=httpx.Response(500)
        )

        with httpx.Client() as client, pytest.raises(RegistryError) as exc_info:
            download_blob(client, REF, descriptor, tmp_path / "blob")
        assert exc_info.value.code == "http_error"

    def test_unsupported_digest(self, tmp_path: Path) -> None:
        """Only sha256 digests should be accepted."""
        descriptor = Descriptor("application/octet-stream", "md5:abc", 1)
        with httpx.Client() as client, pytest.raises(DigestMismatchError):
            download_blob(client, REF, descriptor, tmp_path / "blob")


class TestRegistryAuth:
    """Tests for the registry authentication flow."""

    @respx.mock
    def test_bearer_token(self) -> None:
        """A bearer challenge should be answered with a fetched token."""
        manifest, _ = oras_artifact({"k9s": b"binary"})

        def manifest_handler(request: httpx.Request) -> httpx.Response:
            if request.headers.get("Authorization") != "Bearer abc":
                return httpx.Response(401, headers={"WWW-Authenticate": CHALLENGE})
            return httpx.Response(
                200, content=manifest, headers={"content-type": MEDIA_TYPE_OCI_MANIFEST}
            )

        respx.get(f"{BASE}/manifests/{REF.tag}").mock(side_effect=manifest_handler)
        token_route = respx.route(method="GET", host="ghcr.io", path="/token").mock(
            return_value=httpx.Response(200, json={"token": "abc"})
        )

        with httpx.Client(auth=RegistryAuth()) as client:
            fetch_manifest(client, REF)
            fetch_manifest(client, REF)

        assert token_route.call_count == 1
        token_request = token_route.calls.last.request
        assert token_request.url.params["service"] == "ghcr.io"
        assert token_request.url.params["scope"].endswith(":pull")

    @respx.mock
    def test_token_request_uses_credentials(self) -> None:
        """Configured credentials should authenticate the token request."""
        respx.get(f"{BASE}/manifests/{REF.tag}").mock(
            return_value=httpx.Response(401, headers={"WWW-Authenticate": CHALLENGE})
        )
        token_route = respx.route(method="GET", host="ghcr.io", path="/token").mock(
            return_value=httpx.Response(403)
        )

        auth = RegistryAuth({"ghcr.io": Credentials("user", "secret")})
        with httpx.Client(auth=auth) as client, pytest.raises(RegistryError) as exc_info:
            fetch_manifest(client, REF)

        assert exc_info.value.code == "auth_error"
        assert token_route.calls.last.request.headers["Authorization"].startswith("Basic ")

    @respx.mock
    def test_basic_challenge(self) -> None:
        """A basic challenge should be answered with static credentials."""
        manifest, _ = oras_artifact({"k9s": b"binary"})

        def manifest_handler(request: httpx.Request) -> httpx.Response:
            if not request.headers.get("Authorization", "").startswith("Basic "):
                return httpx.Response(401, headers={"WWW-Authenticate": 'Basic realm="r"'})
            return httpx.Response(
                200, content=manifest, headers={"content-type": MEDIA_TYPE_OCI_MANIFEST}
            )

        route = respx.get(f"{BASE}/manifests/{REF.tag}").mock(side_effect=manifest_handler)

        auth = RegistryAuth({"ghcr.io": Credentials("user", "secret")})
        with httpx.Client(auth=auth) as client:
            fetch_manifest(client, REF)

        assert route.call_count == 2


class TestPullFiles:
    """Tests for pull_files."""

    @respx.mock(assert_all_called=False)
    def test_pull_files(self, respx_mock: respx.MockRouter, tmp_path: Path) -> None:
        """Every titled layer should become a file."""
        manifest, blobs = oras_artifact({"k9s": b"binary", "README": b"docs"})
        mock_artifact(BASE, REF.tag, manifest, blobs, respx_mock)

        with httpx.Client() as client:
            names = pull_files(client, REF, tmp_path)

        assert sorted(names) == ["README", "k9s"]
        assert (tmp_path / "k9s").read_bytes() == b"binary"
        assert (tmp_path / "README").read_bytes() == b"docs"

    @respx.mock(assert_all_called=False)
    def test_unpack_directory(self, respx_mock: respx.MockRouter, tmp_path: Path) -> None:
        """Layers marked for unpacking should be extracted in place."""
        tarball = _tarball({"charts/fabric.tgz": b"chart"})
        manifest, blobs = oras_artifact({"charts": tarball}, unpack=frozenset({"charts"}))
        mock_artifact(BASE, REF.tag, manifest, blobs, respx_mock)

        with httpx.Client() as client:
            pull_files(client, REF, tmp_path)

        assert (tmp_path / "charts" / "fabric.tgz").read_bytes() == b"chart"
        assert [p.name for p in tmp_path.iterdir()] == ["charts"]

    @respx.mock(assert_all_called=False)
    def test_refuses_traversal(self, respx_mock: respx.MockRouter, tmp_path: Path) -> None:
        """Titles escaping the directory should be rejected before download."""
        manifest, blobs = oras_artifact({"../evil": b"x"})
        mock_artifact(BASE, REF.tag, manifest, blobs, respx_mock)

        with httpx.Client() as client, pytest.raises(ManifestError) as exc_info:
            pull_files(client, REF, tmp_path)
        assert exc_info.value.code == "path_traversal"
        assert list(tmp_path.iterdir()) == []

    @respx.mock(assert_all_called=False)
    def test_empty_artifact(self, respx_mock: respx.MockRouter, tmp_path: Path) -> None:
        """Artifacts without titled layers should be rejected."""
        manifest, blobs = oras_artifact({})
        mock_artifact(BASE, REF.tag, manifest, blobs, respx_mock)

        with httpx.Client() as client, pytest.raises(ManifestError) as exc_info:
            pull_files(client, REF, tmp_path)
        assert exc_info.value.code == "empty_artifact"


    @respx.mock(assert_all_called=False)
    def test_failure_cancels_running_transfers(self, respx_mock: respx.MockRouter, tmp_path: Path) -> None:
        """A failed blob should abort transfers that are still streaming."""
        manifest, blobs = oras_artifact({"fail": b"f", "slow": b"s" * 1024})
        by_title = {"fail": sha256_digest(b"f"), "slow": sha256_digest(b"s" * 1024)}
        slow_started = threading.Event()
        cancel = threading.Event()

        def _slow_body():
            slow_started.set()
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline and not cancel.is_set():
                yield b"s"
                time.sleep(0.01)

        def _fail(request: httpx.Request) -> httpx.Response:
            slow_started.wait(2)
            return httpx.Response(500)

        respx_mock.get(f"{BASE}/blobs/{by_title['slow']}").mock(
            side_effect=lambda request: httpx.Response(200, content=_slow_body())
        )
        respx_mock.get(f"{BASE}/blobs/{by_title['fail']}").mock(side_effect=_fail)
        mock_artifact(BASE, REF.tag, manifest, blobs, respx_mock)

        start = time.monotonic()
        with httpx.Client() as client, pytest.raises(RegistryError) as exc_info:
            pull_files(client, REF, tmp_path, cancel=cancel)

        assert exc_info.value.code == "http_error"
        assert cancel.is_set()
        assert time.monotonic() - start < 3


class TestPullLayout:
    """Tests for pull_layout."""

    @respx.mock
    def test_layout(self, tmp_path: Path) -> None:
        """Manifest, config and layers should be stored content-addressed."""
        manifest, blobs = oras_artifact({"layer": b"layer data"})
        mock_artifact(BASE, REF.tag, manifest, blobs)

        with httpx.Client() as client:
            top = pull_layout(client, REF, tmp_path)

        blob_dir = tmp_path / "blobs" / "sha256"
        stored = {p.name for p in blob_dir.iterdir()}
        expected = {d.split(":", 1)[1] for d in [*blobs, sha256_digest(manifest)]}
        assert stored == expected

        index = json.loads((tmp_path / "index.json").read_text())
        assert index["manifests"][0]["digest"] == top.digest == sha256_digest(manifest)
        assert index["manifests"][0]["annotations"] == {
            "org.opencontainers.image.ref.name": REF.tag
        }
        assert json.loads((tmp_path / "oci-layout").read_text()) == {
            "imageLayoutVersion": "1.0.0"
        }


class TestRunParallel:
    """Tests for run_parallel."""

    def test_runs_every_item(self) -> None:
        """Every item should be processed."""
        seen: list[int] = []
        lock = threading.Lock()

        def _record(item: int) -> None:
            with lock:
                seen.append(item)

        run_parallel(_record, range(10), workers=4)
        assert sorted(seen) == list(range(10))

    def test_failure_sets_cancel(self) -> None:
        """A failing call should signal running calls to stop early."""
        cancel = threading.Event()
        started = threading.Event()
        observed: list[bool] = []

        def _work(item: str) -> None:
            if item == "slow":
                started.set()
                observed.append(cancel.wait(5))
                return
            started.wait(2)
            raise RuntimeError("boom")

        start = time.monotonic()
        with pytest.raises(RuntimeError, match="boom"):
            run_parallel(_work, ["slow", "fail"], workers=2, cancel=cancel)

        assert observed == [True]
        assert time.monotonic() - start < 3

    def test_interrupt_sets_cancel(self) -> None:
        """An interrupt in a worker should propagate and cancel the others."""
        cancel = threading.Event()
        started = threading.Event()
        observed: list[bool] = []

        def _work(item: str) -> None:
            if item == "slow":
                started.set()
                observed.append(cancel.wait(5))
                return
            started.wait(2)
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            run_parallel(_work, ["slow", "interrupt"], workers=2, cancel=cancel)

        assert observed == [True]

    def test_pending_work_dropped(self) -> None:
        """Items not yet started should not run after a failure."""
        ran: list[int] = []

        def _work(item: int) -> None:
            if item == 0:
                raise RuntimeError("first")
            time.sleep(0.05)
            ran.append(item)

        with pytest.raises(RuntimeError):
            run_parallel(_work, range(50), workers=1)

        assert len(ran) < 49
