"""OEM payload of the installer media's live environment.

Flatcar's live environment loads ``oem.cpio.gz`` next to its initrd and
reads ``/usr/share/oem/config.ign`` from it. That config mounts the install
media by label and runs the install script, which writes the OS image to the
target disk and copies the staged installer tree onto it. Per-target values
come from ``install.env`` on the media, so the archive itself is constant.
"""

from __future__ import annotations

import gzip
import shlex
from typing import Any

from fab_installer.bootconfig.ignition import (
    IGNITION_VERSION,
    file_entry,
    ini,
    render_config,
)
from fab_installer.builds.outputs import OS_TARGET_INSTALL_DIR

OEM_ARCHIVE = "oem.cpio.gz"
MEDIA_LABEL = "HH-MEDIA"
MEDIA_MOUNT = "/mnt/hedgehog"
INSTALL_ENV = "install.env"
IGNITION_FILE = "ignition.json"
OS_IMAGE = "flatcar_production_image.bin.bz2"
INSTALL_SCRIPT = "/opt/hedgehog/media-install"

CPIO_MAGIC = b"070701"
CPIO_TRAILER = "TRAILER!!!"
S_IFDIR = 0o040000
S_IFREG = 0o100000

GRUB_CFG = 'set oem_id="hedgehog"\nset linux_append="flatcar.autologin"\n'

INSTALL_SH = f"""#!/bin/bash
set -euo pipefail

media={MEDIA_MOUNT}
source "$media/{INSTALL_ENV}"

flatcar-install -d "$HH_INSTALL_DISK" -i "$media/{IGNITION_FILE}" -f "$media/{OS_IMAGE}"

udevadm settle
mkdir -p /mnt/rootdir
mount /dev/disk/by-label/ROOT /mnt/rootdir
mkdir -p "/mnt/rootdir{OS_TARGET_INSTALL_DIR}"
cp -r "$media/$HH_INSTALL_DIR" "/mnt/rootdir{OS_TARGET_INSTALL_DIR}/"
sync
umount /mnt/rootdir

systemctl reboot
"""


def live_config() -> bytes:
    """Ignition config of the live environment."""
    mount_unit = ini(
        ("Unit", ["Description=Hedgehog install media"]),
        (
            "Mount",
            [f"What=/dev/disk/by-label/{MEDIA_LABEL}", f"Where={MEDIA_MOUNT}", "Options=ro"],
        ),
        ("Install", ["WantedBy=local-fs.target"]),
    )
    install_unit = ini(
        (
            "Unit",
            [
                "Description=Hedgehog automatic Flatcar install",
                "After=default.target mnt-hedgehog.mount",
                "Requires=mnt-hedgehog.mount",
            ],
        ),
        ("Service", ["Type=oneshot", f"ExecStart={INSTALL_SCRIPT}"]),
        ("Install", ["WantedBy=default.target"]),
    )
    config: dict[str, Any] = {
        "ignition": {"version": IGNITION_VERSION},
        "systemd": {
            "units": [
                {"name": "mnt-hedgehog.mount", "enabled": True, "contents": mount_unit},
                {"name": "flatcar-install.service", "enabled": True, "contents": install_unit},
            ]
        },
        "storage": {
            "files": [
                file_entry(INSTALL_SCRIPT, INSTALL_SH, mode=0o755, overwrite=True),
                file_entry(
                    "/etc/motd.d/hedgehog.conf",
                    "Flatcar live environment by Hedgehog. Automatic install in progress, "
                    "follow it with journalctl -f -u flatcar-install.service\n",
                ),
            ]
        },
    }
    return render_config(config)


def _pad4(length: int) -> bytes:
    return b"\x00" * (-length % 4)


def cpio_entry(name: str, mode: int, data: bytes = b"", ino: int = 0) -> bytes:
    """One newc cpio record with zeroed owner and timestamp."""
    name_bytes = name.encode("utf-8") + b"\x00"
    nlink = 2 if mode & S_IFDIR else 1
    fields = (ino, mode, 0, 0, nlink, 0, len(data), 0, 0, 0, 0, len(name_bytes), 0)
    header = CPIO_MAGIC + "".join(f"{v:08X}" for v in fields).encode("ascii")
    record = header + name_bytes
    record += _pad4(len(record))
    return record + data + _pad4(len(data))


def build_cpio(entries: list[tuple[str, int, bytes]]) -> bytes:
    """Uncompressed newc archive of ``(name, mode, data)`` entries plus trailer."""
    out = bytearray()
    for ino, (name, mode, data) in enumerate(entries, start=1):
        out += cpio_entry(name, mode, data, ino)
    out += cpio_entry(CPIO_TRAILER, 0)
    return bytes(out)


def oem_archive() -> bytes:
    """The gzip'd OEM cpio; identical bytes on every call."""
    entries = [
        ("usr", S_IFDIR | 0o755, b""),
        ("usr/share", S_IFDIR | 0o755, b""),
        ("usr/share/oem", S_IFDIR | 0o755, b""),
        ("usr/share/oem/config.ign", S_IFREG | 0o644, live_config()),
        ("usr/share/oem/grub.cfg", S_IFREG | 0o644, GRUB_CFG.encode("utf-8")),
    ]
    return gzip.compress(build_cpio(entries), mtime=0)


def install_env(disk: str, install_dir_name: str) -> bytes:
    """Per-target settings read by the install script."""
    lines = [
        f"HH_INSTALL_DISK={shlex.quote(disk)}",
        f"HH_INSTALL_DIR={shlex.quote(install_dir_name)}",
    ]
    return ("\n".join(lines) + "\n").encode("utf-8")


__all__ = [
    "IGNITION_FILE",
    "INSTALL_ENV",
    "MEDIA_LABEL",
    "MEDIA_MOUNT",
    "OEM_ARCHIVE",
    "OS_IMAGE",
    "build_cpio",
    "cpio_entry",
    "install_env",
    "live_config",
    "oem_archive",
]
