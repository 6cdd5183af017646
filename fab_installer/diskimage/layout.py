"""Disk geometry of the installer media.

The image holds a protective MBR, a primary and a backup GPT and two
partitions: an EFI system partition starting at LBA 2048 and a Linux
filesystem partition filling the rest of the usable space.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

SECTOR_SIZE = 512
MIB = 1024 * 1024
GIB = 1024 * MIB

ESP_SIZE = 500 * MIB
DATA_SIZE = 9 * GIB

# Header sector plus 32 sectors of partition entries
GPT_SIZE = 33 * SECTOR_SIZE
GPT_ENTRY_COUNT = 128
GPT_ENTRY_SIZE = 128

FIRST_PARTITION_LBA = 2048

ESP_TYPE_GUID = uuid.UUID("C12A7328-F81F-11D2-BA4B-00A0C93EC93B")
LINUX_FS_TYPE_GUID = uuid.UUID("0FC63DAF-8483-4772-8E79-3D69D8477DE4")

ESP_NAME = "EFI System"
DATA_NAME = "HH-MEDIA"


def disk_size(esp_size: int = ESP_SIZE, data_size: int = DATA_SIZE) -> int:
    """Size of an image holding both partitions, the GPTs and the alignment gap."""
    return esp_size + data_size + 2 * GPT_SIZE + MIB


@dataclass(frozen=True)
class Partition:
    """One GPT partition, in sectors (``end_lba`` inclusive)."""

    number: int
    name: str
    type_guid: uuid.UUID
    start_lba: int
    end_lba: int
    sector_size: int = SECTOR_SIZE

    @property
    def sectors(self) -> int:
        return self.end_lba - self.start_lba + 1

    @property
    def offset(self) -> int:
        return self.start_lba * self.sector_size

    @property
    def size(self) -> int:
        return self.sectors * self.sector_size


@dataclass(frozen=True)
class PartitionLayout:
    """Complete geometry of a partitioned image."""

    sector_size: int
    disk_size: int
    partitions: tuple[Partition, ...]

    @property
    def total_sectors(self) -> int:
        return self.disk_size // self.sector_size

    @property
    def entry_sectors(self) -> int:
        return GPT_ENTRY_COUNT * GPT_ENTRY_SIZE // self.sector_size

    @property
    def first_usable_lba(self) -> int:
        # MBR, header, entries
        return 2 + self.entry_sectors

    @property
    def last_usable_lba(self) -> int:
        # backup entries, backup header
        return self.total_sectors - 2 - self.entry_sectors

    @property
    def esp(self) -> Partition:
        return self.partitions[0]

    @property
    def data(self) -> Partition:
        return self.partitions[1]


def compute_layout(
    esp_size: int = ESP_SIZE,
    data_size: int = DATA_SIZE,
    sector_size: int = SECTOR_SIZE,
) -> PartitionLayout:
    """Compute the partition layout of the installer media.

    Args:
        esp_size: EFI system partition size in bytes.
        data_size: Minimum data partition size in bytes.
        sector_size: Logical sector size.

    Returns:
        The layout; the data partition ends at the last usable LBA.

    Raises:
        ValueError: If a size is not a positive multiple of the sector size.
    """
    for label, value in (("ESP", esp_size), ("data", data_size)):
        if value <= 0 or value % sector_size:
            raise ValueError(
                f"{label} size {value} is not a positive multiple of {sector_size}"
            )

    size = disk_size(esp_size, data_size)
    esp_start = FIRST_PARTITION_LBA * SECTOR_SIZE // sector_size
    esp_end = esp_start + esp_size // sector_size - 1

    layout = PartitionLayout(sector_size=sector_size, disk_size=size, partitions=())
    data_end = layout.last_usable_lba
    if data_end - esp_end < data_size // sector_size:
        raise ValueError(f"disk of {size} bytes cannot hold the data partition")

    partitions = (
        Partition(1, ESP_NAME, ESP_TYPE_GUID, esp_start, esp_end, sector_size),
        Partition(2, DATA_NAME, LINUX_FS_TYPE_GUID, esp_end + 1, data_end, sector_size),
    )
    return PartitionLayout(sector_size=sector_size, disk_size=size, partitions=partitions)


__all__ = [
    "DATA_SIZE",
    "ESP_SIZE",
    "ESP_TYPE_GUID",
    "FIRST_PARTITION_LBA",
    "GPT_ENTRY_COUNT",
    "GPT_ENTRY_SIZE",
    "GPT_SIZE",
    "LINUX_FS_TYPE_GUID",
    "MIB",
    "SECTOR_SIZE",
    "Partition",
    "PartitionLayout",
    "compute_layout",
    "disk_size",
]
