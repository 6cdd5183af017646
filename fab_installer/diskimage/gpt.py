"""Protective MBR and GUID partition table.

Writes the primary table at LBA 1, the backup entries and header at the end
of the disk, and reads them back to verify that what landed on disk matches
the layout (signatures, CRC32s and partition geometry).
"""

from __future__ import annotations

import struct
import uuid
import zlib
from dataclasses import dataclass
from typing import BinaryIO

from fab_installer.diskimage.layout import (
    GPT_ENTRY_COUNT,
    GPT_ENTRY_SIZE,
    Partition,
    PartitionLayout,
)
from fab_installer.errors import IntegrityError

GPT_SIGNATURE = b"EFI PART"
GPT_REVISION = 0x00010000
GPT_HEADER_SIZE = 92

MBR_SIGNATURE = b"\x55\xaa"
MBR_PROTECTIVE_TYPE = 0xEE

# signature, revision, header size, header crc, reserved, current lba,
# backup lba, first usable, last usable, disk guid, entries lba,
# entry count, entry size, entries crc
_HEADER = struct.Struct("<8sIIIIQQQQ16sQIII")
# type guid, unique guid, first lba, last lba, attributes, name
_ENTRY = struct.Struct("<16s16sQQQ72s")
# status, chs first, type, chs last, first lba, sectors
_MBR_ENTRY = struct.Struct("<B3sB3sII")


class PartitionTableError(IntegrityError):
    """Raised when the partition table read back does not match."""

    def __init__(self, message: str, code: str = "partition_table_mismatch") -> None:
        super().__init__(message, code=code)


@dataclass(frozen=True)
class GptEntry:
    """A partition entry as stored on disk."""

    type_guid: uuid.UUID
    unique_guid: uuid.UUID
    first_lba: int
    last_lba: int
    name: str


@dataclass(frozen=True)
class GptHeader:
    """Decoded GPT header."""

    current_lba: int
    backup_lba: int
    first_usable_lba: int
    last_usable_lba: int
    disk_guid: uuid.UUID
    entries_lba: int
    entries_crc: int


@dataclass(frozen=True)
class PartitionTable:
    """A GPT read back from disk."""

    primary: GptHeader
    backup: GptHeader
    entries: tuple[GptEntry, ...]


def partition_guid(disk_guid: uuid.UUID, number: int) -> uuid.UUID:
    """Unique partition GUID derived from the disk GUID."""
    return uuid.uuid5(disk_guid, f"partition-{number}")


def _protective_mbr(layout: PartitionLayout) -> bytes:
    sectors = min(layout.total_sectors - 1, 0xFFFFFFFF)
    entry = _MBR_ENTRY.pack(
        0x00, b"\x00\x02\x00", MBR_PROTECTIVE_TYPE, b"\xff\xff\xff", 1, sectors
    )
    mbr = bytearray(layout.sector_size)
    mbr[446 : 446 + _MBR_ENTRY.size] = entry
    mbr[510:512] = MBR_SIGNATURE
    return bytes(mbr)


def _encode_entries(layout: PartitionLayout, disk_guid: uuid.UUID) -> bytes:
    table = bytearray(GPT_ENTRY_COUNT * GPT_ENTRY_SIZE)
    for i, part in enumerate(layout.partitions):
        name = part.name.encode("utf-16-le")[:72]
        entry = _ENTRY.pack(
            part.type_guid.bytes_le,
            partition_guid(disk_guid, part.number).bytes_le,
            part.start_lba,
            part.end_lba,
            0,
            name.ljust(72, b"\x00"),
        )
        table[i * GPT_ENTRY_SIZE : i * GPT_ENTRY_SIZE + _ENTRY.size] = entry
    return bytes(table)


def _encode_header(
    layout: PartitionLayout,
    disk_guid: uuid.UUID,
    current_lba: int,
    backup_lba: int,
    entries_lba: int,
    entries_crc: int,
) -> bytes:
    fields = [
        GPT_SIGNATURE,
        GPT_REVISION,
        GPT_HEADER_SIZE,
        0,
        0,
        current_lba,
        backup_lba,
        layout.first_usable_lba,
        layout.last_usable_lba,
        disk_guid.bytes_le,
        entries_lba,
        GPT_ENTRY_COUNT,
        GPT_ENTRY_SIZE,
        entries_crc,
    ]
    fields[3] = zlib.crc32(_HEADER.pack(*fields))
    return _HEADER.pack(*fields).ljust(layout.sector_size, b"\x00")


def write_gpt(f: BinaryIO, layout: PartitionLayout, disk_guid: uuid.UUID) -> None:
    """Write the protective MBR and both GPT copies.

    Args:
        f: Image file opened for reading and writing, at least
            ``layout.disk_size`` bytes long.
        layout: Partition layout to write.
        disk_guid: Disk GUID; partition GUIDs are derived from it.
    """
    sector = layout.sector_size
    last_lba = layout.total_sectors - 1
    backup_entries_lba = last_lba - layout.entry_sectors

    entries = _encode_entries(layout, disk_guid)
    entries_crc = zlib.crc32(entries)

    f.seek(0)
    f.write(_protective_mbr(layout))
    f.write(_encode_header(layout, disk_guid, 1, last_lba, 2, entries_crc))
    f.write(entries)

    f.seek(backup_entries_lba * sector)
    f.write(entries)
    f.write(
        _encode_header(
            layout, disk_guid, last_lba, 1, backup_entries_lba, entries_crc
        )
    )
    f.flush()


def _read(f: BinaryIO, offset: int, size: int) -> bytes:
    f.seek(offset)
    data = f.read(size)
    if len(data) != size:
        raise PartitionTableError(
            f"short read at offset {offset}: {len(data)} of {size} bytes",
            code="short_read",
        )
    return data


def _read_header(f: BinaryIO, lba: int, sector_size: int) -> GptHeader:
    raw = _read(f, lba * sector_size, _HEADER.size)
    fields = list(_HEADER.unpack(raw))
    if fields[0] != GPT_SIGNATURE:
        raise PartitionTableError(f"no GPT signature at LBA {lba}")
    if fields[2] != GPT_HEADER_SIZE:
        raise PartitionTableError(f"unexpected GPT header size {fields[2]} at LBA {lba}")

    stored_crc = fields[3]
    fields[3] = 0
    if zlib.crc32(_HEADER.pack(*fields)) != stored_crc:
        raise PartitionTableError(f"GPT header CRC mismatch at LBA {lba}")
    if fields[11] != GPT_ENTRY_COUNT or fields[12] != GPT_ENTRY_SIZE:
        raise PartitionTableError(f"unsupported GPT entry array at LBA {lba}")

    return GptHeader(
        current_lba=fields[5],
        backup_lba=fields[6],
        first_usable_lba=fields[7],
        last_usable_lba=fields[8],
        disk_guid=uuid.UUID(bytes_le=fields[9]),
        entries_lba=fields[10],
        entries_crc=fields[13],
    )


def _read_entries(f: BinaryIO, header: GptHeader, sector_size: int) -> tuple[GptEntry, ...]:
    raw = _read(f, header.entries_lba * sector_size, GPT_ENTRY_COUNT * GPT_ENTRY_SIZE)
    if zlib.crc32(raw) != header.entries_crc:
        raise PartitionTableError(
            f"GPT entry array CRC mismatch at LBA {header.entries_lba}"
        )

    entries = []
    for i in range(GPT_ENTRY_COUNT):
        chunk = raw[i * GPT_ENTRY_SIZE : i * GPT_ENTRY_SIZE + _ENTRY.size]
        type_guid, unique_guid, first, last, _attrs, name = _ENTRY.unpack(chunk)
        if type_guid == bytes(16):
            continue
        entries.append(
            GptEntry(
                type_guid=uuid.UUID(bytes_le=type_guid),
                unique_guid=uuid.UUID(bytes_le=unique_guid),
                first_lba=first,
                last_lba=last,
                name=name.decode("utf-16-le").rstrip("\x00"),
            )
        )
    return tuple(entries)


def read_gpt(f: BinaryIO, sector_size: int, total_sectors: int) -> PartitionTable:
    """Read and check the protective MBR and both GPT copies.

    Raises:
        PartitionTableError: On a bad signature, CRC or inconsistent copies.
    """
    mbr = _read(f, 0, sector_size)
    if mbr[510:512] != MBR_SIGNATURE:
        raise PartitionTableError("missing MBR boot signature")
    if mbr[446 + 4] != MBR_PROTECTIVE_TYPE:
        raise PartitionTableError("first MBR partition is not a protective GPT entry")

    primary = _read_header(f, 1, sector_size)
    backup = _read_header(f, total_sectors - 1, sector_size)
    if primary.backup_lba != total_sectors - 1 or backup.backup_lba != 1:
        raise PartitionTableError("primary and backup GPT headers do not point at each other")
    if primary.disk_guid != backup.disk_guid or primary.entries_crc != backup.entries_crc:
        raise PartitionTableError("primary and backup GPT headers differ")

    entries = _read_entries(f, primary, sector_size)
    if _read_entries(f, backup, sector_size) != entries:
        raise PartitionTableError("primary and backup GPT entries differ")

    return PartitionTable(primary=primary, backup=backup, entries=entries)


def _matches(entry: GptEntry, part: Partition) -> bool:
    return (
        entry.type_guid == part.type_guid
        and entry.first_lba == part.start_lba
        and entry.last_lba == part.end_lba
        and entry.name == part.name
    )


def verify_gpt(f: BinaryIO, layout: PartitionLayout, disk_guid: uuid.UUID) -> PartitionTable:
    """Read the partition table back and compare it with ``layout``.

    Returns:
        The table read from disk.

    Raises:
        PartitionTableError: If anything differs from what was written.
    """
    table = read_gpt(f, layout.sector_size, layout.total_sectors)
    if table.primary.disk_guid != disk_guid:
        raise PartitionTableError(
            f"disk GUID {table.primary.disk_guid} does not match {disk_guid}"
        )
    if (
        table.primary.first_usable_lba != layout.first_usable_lba
        or table.primary.last_usable_lba != layout.last_usable_lba
    ):
        raise PartitionTableError("usable LBA range does not match the layout")
    if len(table.entries) != len(layout.partitions):
        raise PartitionTableError(
            f"expected {len(layout.partitions)} partitions, found {len(table.entries)}"
        )
    for entry, part in zip(table.entries, layout.partitions, strict=True):
        if not _matches(entry, part):
            raise PartitionTableError(f"partition {part.number} does not match the layout")
    return table


__all__ = [
    "GptEntry",
    "GptHeader",
    "PartitionTable",
    "PartitionTableError",
    "partition_guid",
    "read_gpt",
    "verify_gpt",
    "write_gpt",
]
