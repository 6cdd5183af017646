"""Tests for the live environment OEM payload."""

import base64
import gzip
import json

from fab_installer.diskimage.oem import (
    INSTALL_SH,
    MEDIA_LABEL,
    build_cpio,
    install_env,
    live_config,
    oem_archive,
)


def _cpio_names(data: bytes) -> list[str]:
    """Names of the records of a newc archive."""
    names = []
    pos = 0
    while True:
        assert data[pos : pos + 6] == b"070701"
        header = data[pos : pos + 110]
        name_size = int(header[94:102], 16)
        file_size = int(header[54:62], 16)
        name = data[pos + 110 : pos + 110 + name_size - 1].decode()
        names.append(name)
        if name == "TRAILER!!!":
            return names
        pos += 110 + name_size
        pos += -pos % 4
        pos += file_size
        pos += -pos % 4


class TestOemArchive:
    """Tests for oem_archive and build_cpio."""

    def test_deterministic(self) -> None:
        """Every call should produce identical bytes."""
        assert oem_archive() == oem_archive()

    def test_contents(self) -> None:
        """The archive should hold the OEM config tree and a trailer."""
        names = _cpio_names(gzip.decompress(oem_archive()))
        assert names == [
            "usr",
            "usr/share",
            "usr/share/oem",
            "usr/share/oem/config.ign",
            "usr/share/oem/grub.cfg",
            "TRAILER!!!",
        ]

    def test_record_alignment(self) -> None:
        """Records should be padded to four bytes."""
        data = build_cpio([("a", 0o100644, b"xyz")])
        assert len(data) % 4 == 0
        assert _cpio_names(data) == ["a", "TRAILER!!!"]


class TestLiveConfig:
    """Tests for the live environment Ignition config."""

    def test_mounts_media_and_runs_installer(self) -> None:
        """The live config should mount the media by label and run the script."""
        config = json.loads(live_config())

        units = {u["name"]: u["contents"] for u in config["systemd"]["units"]}
        assert f"What=/dev/disk/by-label/{MEDIA_LABEL}" in units["mnt-hedgehog.mount"]
        assert "Requires=mnt-hedgehog.mount" in units["flatcar-install.service"]

        script = config["storage"]["files"][0]
        assert script["mode"] == 0o755
        source = script["contents"]["source"].split(",", 1)[1]
        assert base64.b64decode(source).decode() == INSTALL_SH


class TestInstallEnv:
    """Tests for install_env."""

    def test_values(self) -> None:
        """Disk and tree name should be shell-assignable."""
        env = install_env("/dev/sda", "control--control-1--install").decode()
        assert env == "HH_INSTALL_DISK=/dev/sda\nHH_INSTALL_DIR=control--control-1--install\n"

    def test_quoting(self) -> None:
        """Unusual values should be quoted."""
        env = install_env("/dev/disk/by-id/usb disk", "x").decode()
        assert "HH_INSTALL_DISK='/dev/disk/by-id/usb disk'" in env
