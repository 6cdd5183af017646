"""FAT32 filesystem writer and reader.

Fat32Writer formats a FAT32 volume inside an image file at a byte offset and
populates it: file data goes to disk as it is written, while the directory
tree and the allocation table are kept in memory and written by commit().
Clusters are handed out sequentially and never reused, so every file is one
contiguous run.

Long names use VFAT long file name entries next to a generated 8.3 alias.
Timestamps are fixed, so equal input trees produce equal volumes.

Fat32Reader reads such a volume back (labels, directories, file contents).
"""

from __future__ import annotations

import logging
import os
import struct
import sys
import zlib
from array import array
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import BinaryIO

from fab_installer.diskimage.layout import GIB, MIB
from fab_installer.errors import IntegrityError

logger = logging.getLogger(__name__)

SECTOR_SIZE = 512
RESERVED_SECTORS = 32
NUM_FATS = 2
ROOT_CLUSTER = 2
FSINFO_SECTOR = 1
BACKUP_BOOT_SECTOR = 6
MEDIA_DESCRIPTOR = 0xF8

MIN_CLUSTERS = 65525
MAX_CLUSTERS = 0x0FFFFFF5

FAT_EOC = 0x0FFFFFFF
FAT_MASK = 0x0FFFFFFF

ATTR_READ_ONLY = 0x01
ATTR_HIDDEN = 0x02
ATTR_SYSTEM = 0x04
ATTR_VOLUME_ID = 0x08
ATTR_DIRECTORY = 0x10
ATTR_ARCHIVE = 0x20
ATTR_LFN = ATTR_READ_ONLY | ATTR_HIDDEN | ATTR_SYSTEM | ATTR_VOLUME_ID

DIR_ENTRY_SIZE = 32
LFN_CHARS_PER_ENTRY = 13
LFN_LAST = 0x40
DELETED = 0xE5

# 1980-01-01 00:00:00
FIXED_DATE = (0 << 9) | (1 << 5) | 1
FIXED_TIME = 0

SHORT_NAME_CHARS = frozenset("ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789!#$%&'()-@^_`{}~")

# Volume size upper bound -> bytes per cluster
CLUSTER_SIZES = (
    (260 * MIB, 512),
    (8 * GIB, 4096),
    (16 * GIB, 8192),
    (32 * GIB, 16384),
)
MAX_CLUSTER_SIZE = 32768

# jump, oem, bytes/sector, sectors/cluster, reserved, fats, root entries,
# total16, media, fat16 size, sectors/track, heads, hidden, total32,
# fat32 size, ext flags, version, root cluster, fsinfo, backup boot,
# reserved, drive, reserved, boot sig, volume id, label, fs type
_BOOT = struct.Struct("<3s8sHBHBHHBHHHIIIHHIHH12sBBBI11s8s")
_DIR_ENTRY = struct.Struct("<11sBBBHHHHHHHI")
_LFN_ENTRY = struct.Struct("<B10sBBB12sH4s")

FSINFO_LEAD_SIG = 0x41615252
FSINFO_STRUCT_SIG = 0x61417272
FSINFO_TRAIL_SIG = 0xAA550000


class Fat32Error(IntegrityError):
    """Raised on invalid FAT32 geometry, paths or volume contents."""

    def __init__(self, message: str, code: str = "fat32_error") -> None:
        super().__init__(message, code=code)


def cluster_size_for(volume_size: int) -> int:
    """Bytes per cluster for a volume of ``volume_size`` bytes."""
    for limit, size in CLUSTER_SIZES:
        if volume_size <= limit:
            return size
    return MAX_CLUSTER_SIZE


@dataclass(frozen=True)
class Geometry:
    """Sector-level layout of a FAT32 volume."""

    total_sectors: int
    sectors_per_cluster: int
    fat_sectors: int
    cluster_count: int
    hidden_sectors: int = 0

    @property
    def cluster_size(self) -> int:
        return self.sectors_per_cluster * SECTOR_SIZE

    @property
    def fat_offset(self) -> int:
        return RESERVED_SECTORS * SECTOR_SIZE

    @property
    def data_offset(self) -> int:
        return (RESERVED_SECTORS + NUM_FATS * self.fat_sectors) * SECTOR_SIZE

    def cluster_offset(self, cluster: int) -> int:
        return self.data_offset + (cluster - 2) * self.cluster_size


def compute_geometry(size: int, hidden_sectors: int = 0) -> Geometry:
    """Compute FAT32 geometry for a volume of ``size`` bytes.

    Raises:
        Fat32Error: If the volume is too small or too large for FAT32.
    """
    total = size // SECTOR_SIZE
    spc = cluster_size_for(size) // SECTOR_SIZE

    fat_sectors = 1
    while True:
        clusters = (total - RESERVED_SECTORS - NUM_FATS * fat_sectors) // spc
        needed = -(-(clusters + 2) * 4 // SECTOR_SIZE)
        if needed <= fat_sectors:
            break
        fat_sectors = needed

    if clusters < MIN_CLUSTERS:
        raise Fat32Error(
            f"volume of {size} bytes has {clusters} clusters, FAT32 needs {MIN_CLUSTERS}",
            code="volume_too_small",
        )
    if clusters > MAX_CLUSTERS:
        raise Fat32Error(f"volume of {size} bytes is too large", code="volume_too_large")

    return Geometry(
        total_sectors=total,
        sectors_per_cluster=spc,
        fat_sectors=fat_sectors,
        cluster_count=clusters,
        hidden_sectors=hidden_sectors,
    )


def normalize_label(label: str) -> bytes:
    """Encode a volume label as 11 space-padded bytes."""
    upper = label.upper()
    if not upper or len(upper) > 11 or any(
        c not in SHORT_NAME_CHARS and c != " " for c in upper
    ):
        raise Fat32Error(f"invalid volume label {label!r}", code="invalid_label")
    return upper.encode("ascii").ljust(11, b" ")


def lfn_checksum(short_name: bytes) -> int:
    """Checksum of an 8.3 name stored in each of its LFN entries."""
    total = 0
    for byte in short_name:
        total = (((total & 1) << 7) + (total >> 1) + byte) & 0xFF
    return total


def _clean_short(text: str) -> str:
    return "".join(c if c in SHORT_NAME_CHARS else "_" for c in text.upper() if c != " ")


def exact_short_name(name: str) -> bytes | None:
    """The 8.3 form of ``name`` if it is already a valid uppercase 8.3 name."""
    if name in (".", "..") or name.startswith("."):
        return None
    base, dot, ext = name.partition(".")
    if not base or len(base) > 8 or len(ext) > 3 or "." in ext or (dot and not ext):
        return None
    if any(c not in SHORT_NAME_CHARS for c in base + ext):
        return None
    return base.encode("ascii").ljust(8, b" ") + ext.encode("ascii").ljust(3, b" ")


def generate_short_name(name: str, taken: set[bytes]) -> bytes:
    """Generate a unique ``BASE~N.EXT`` alias for a long name."""
    stripped = name.lstrip(".")
    if "." in stripped:
        base, _, ext = stripped.rpartition(".")
    else:
        base, ext = stripped, ""
    base = _clean_short(base.replace(".", "")) or "_"
    ext = _clean_short(ext)[:3]

    n = 1
    while True:
        tail = f"~{n}"
        candidate = (base[: 8 - len(tail)] + tail).encode("ascii").ljust(8, b" ")
        candidate += ext.encode("ascii").ljust(3, b" ")
        if candidate not in taken:
            return candidate
        n += 1


def lfn_entries(name: str, short_name: bytes) -> list[bytes]:
    """VFAT long name entries for ``name``, in on-disk order."""
    units = name.encode("utf-16-le")
    count = -(-len(units) // (2 * LFN_CHARS_PER_ENTRY))
    padded = units
    if len(padded) < count * 2 * LFN_CHARS_PER_ENTRY:
        padded += b"\x00\x00"
    padded = padded.ljust(count * 2 * LFN_CHARS_PER_ENTRY, b"\xff")

    checksum = lfn_checksum(short_name)
    entries = []
    for seq in range(1, count + 1):
        chunk = padded[(seq - 1) * 26 : seq * 26]
        order = seq | (LFN_LAST if seq == count else 0)
        entries.append(
            _LFN_ENTRY.pack(order, chunk[:10], ATTR_LFN, 0, checksum, chunk[10:22], 0, chunk[22:26])
        )
    entries.reverse()
    return entries


def short_entry(short_name: bytes, attr: int, cluster: int, size: int) -> bytes:
    return _DIR_ENTRY.pack(
        short_name,
        attr,
        0,
        0,
        FIXED_TIME,
        FIXED_DATE,
        FIXED_DATE,
        (cluster >> 16) & 0xFFFF,
        FIXED_TIME,
        FIXED_DATE,
        cluster & 0xFFFF,
        size,
    )


@dataclass
class _Node:
    name: str
    is_dir: bool
    short_name: bytes = b""
    needs_lfn: bool = False
    first_cluster: int = 0
    size: int = 0
    parent: _Node | None = None
    children: dict[str, _Node] = field(default_factory=dict)

    def lookup(self, name: str) -> _Node | None:
        return self.children.get(name.upper())


def split_path(path: str) -> list[str]:
    """Split an absolute volume path into its components.

    Raises:
        Fat32Error: If the path contains empty, ``.`` or ``..`` components.
    """
    parts = [p for p in PurePosixPath("/" + path.lstrip("/")).parts if p != "/"]
    for part in parts:
        if part in (".", "..") or "\x00" in part:
            raise Fat32Error(f"invalid path {path!r}", code="invalid_path")
    return parts


class _FatFile:
    """Writable handle for one file on a Fat32Writer volume."""

    def __init__(self, fs: Fat32Writer, node: _Node) -> None:
        self._fs = fs
        self._node = node
        self._buffer = bytearray()
        self._last_cluster = 0
        self.closed = False

    def writable(self) -> bool:
        return True

    def write(self, data: bytes) -> int:
        if self.closed:
            raise ValueError("write to closed file")
        self._buffer += data
        self._node.size += len(data)
        if len(self._buffer) >= self._fs.flush_threshold:
            self._drain(final=False)
        return len(data)

    def flush(self) -> None:
        self._drain(final=False)

    def _drain(self, final: bool) -> None:
        cluster_size = self._fs.geometry.cluster_size
        if final:
            count = -(-len(self._buffer) // cluster_size)
        else:
            count = len(self._buffer) // cluster_size
        if count == 0:
            return

        start = self._fs._allocate(count, self._last_cluster)
        if self._node.first_cluster == 0:
            self._node.first_cluster = start
        self._last_cluster = start + count - 1

        run = bytes(self._buffer[: count * cluster_size])
        del self._buffer[: count * cluster_size]
        self._fs._write_clusters(start, run.ljust(count * cluster_size, b"\x00"))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._fs._open_files -= 1
        self._drain(final=True)
        if self._node.size > 0xFFFFFFFF:
            raise Fat32Error(
                f"{self._node.name} is {self._node.size} bytes, over the FAT32 file size limit",
                code="file_too_large",
            )


class Fat32Writer:
    """Format and populate a FAT32 volume.

    Args:
        f: Image file opened for reading and writing.
        offset: Byte offset of the volume in ``f``.
        size: Volume size in bytes.
        label: Volume label (up to 11 characters).
    """

    def __init__(self, f: BinaryIO, offset: int, size: int, label: str) -> None:
        self._f = f
        self.offset = offset
        self.label = normalize_label(label)
        self.geometry = compute_geometry(size, hidden_sectors=offset // SECTOR_SIZE)
        self.volume_id = zlib.crc32(self.label + struct.pack("<QQ", offset, size))
        self.flush_threshold = max(self.geometry.cluster_size, MIB)

        self._fat = array("I", bytes(4 * (self.geometry.cluster_count + 2)))
        self._fat[0] = 0x0FFFFF00 | MEDIA_DESCRIPTOR
        self._fat[1] = FAT_EOC
        self._fat[ROOT_CLUSTER] = FAT_EOC
        self._next_free = ROOT_CLUSTER + 1

        self._root = _Node(name="", is_dir=True, first_cluster=ROOT_CLUSTER)
        self._open_files = 0
        self._committed = False

        self._format()

    def _format(self) -> None:
        geo = self.geometry
        logger.debug(
            "Formatting FAT32 %r: %d clusters of %d bytes",
            self.label.decode("ascii").rstrip(),
            geo.cluster_count,
            geo.cluster_size,
        )
        self._pwrite(0, bytes(RESERVED_SECTORS * SECTOR_SIZE))
        boot = self._boot_sector()
        self._pwrite(0, boot)
        self._pwrite(BACKUP_BOOT_SECTOR * SECTOR_SIZE, boot)

    def _boot_sector(self) -> bytes:
        geo = self.geometry
        header = _BOOT.pack(
            b"\xeb\x58\x90",
            b"MSWIN4.1",
            SECTOR_SIZE,
            geo.sectors_per_cluster,
            RESERVED_SECTORS,
            NUM_FATS,
            0,
            0,
            MEDIA_DESCRIPTOR,
            0,
            63,
            255,
            geo.hidden_sectors,
            geo.total_sectors,
            geo.fat_sectors,
            0,
            0,
            ROOT_CLUSTER,
            FSINFO_SECTOR,
            BACKUP_BOOT_SECTOR,
            bytes(12),
            0x80,
            0,
            0x29,
            self.volume_id,
            self.label,
            b"FAT32   ",
        )
        sector = bytearray(SECTOR_SIZE)
        sector[: len(header)] = header
        sector[510:512] = b"\x55\xaa"
        return bytes(sector)

    def _fsinfo_sector(self) -> bytes:
        free = self.geometry.cluster_count + 2 - self._next_free
        sector = bytearray(SECTOR_SIZE)
        struct.pack_into("<I", sector, 0, FSINFO_LEAD_SIG)
        struct.pack_into("<III", sector, 484, FSINFO_STRUCT_SIG, free, self._next_free)
        struct.pack_into("<I", sector, 508, FSINFO_TRAIL_SIG)
        return bytes(sector)

    def _pwrite(self, offset: int, data: bytes) -> None:
        self._f.seek(self.offset + offset)
        self._f.write(data)

    def _write_clusters(self, start: int, data: bytes) -> None:
        self._pwrite(self.geometry.cluster_offset(start), data)

    def _allocate(self, count: int, link_from: int = 0) -> int:
        """Allocate ``count`` contiguous clusters, chained after ``link_from``."""
        start = self._next_free
        end = start + count
        if end > self.geometry.cluster_count + 2:
            raise Fat32Error(
                f"volume {self.label.decode('ascii').rstrip()!r} is full", code="no_space"
            )
        for cluster in range(start, end - 1):
            self._fat[cluster] = cluster + 1
        self._fat[end - 1] = FAT_EOC
        if link_from:
            self._fat[link_from] = start
        self._next_free = end
        return start

    def _check_writable(self) -> None:
        if self._committed:
            raise Fat32Error("volume already committed", code="committed")

    def _add_child(self, parent: _Node, name: str, is_dir: bool) -> _Node:
        if len(name.encode("utf-16-le")) > 255 * 2:
            raise Fat32Error(f"name too long: {name!r}", code="invalid_path")
        taken = {child.short_name for child in parent.children.values()}
        short = exact_short_name(name)
        needs_lfn = short is None or short in taken
        if needs_lfn:
            short = generate_short_name(name, taken)
        assert short is not None
        node = _Node(
            name=name, is_dir=is_dir, short_name=short, needs_lfn=needs_lfn, parent=parent
        )
        parent.children[name.upper()] = node
        return node

    def _resolve_dir(self, parts: list[str], create: bool) -> _Node:
        node = self._root
        for i, part in enumerate(parts):
            child = node.lookup(part)
            if child is None:
                if not create:
                    raise Fat32Error(
                        f"directory /{'/'.join(parts[: i + 1])} does not exist",
                        code="not_found",
                    )
                child = self._add_child(node, part, is_dir=True)
            elif not child.is_dir:
                raise Fat32Error(
                    f"/{'/'.join(parts[: i + 1])} is not a directory", code="not_a_directory"
                )
            node = child
        return node

    def mkdir(self, path: str) -> None:
        """Create a directory and any missing parents."""
        self._check_writable()
        self._resolve_dir(split_path(path), create=True)

    @contextmanager
    def open_file(self, path: str) -> Iterator[_FatFile]:
        """Create or truncate a file and yield a writable handle.

        The parent directory must exist. The file's contents are complete
        once the context exits.
        """
        self._check_writable()
        parts = split_path(path)
        if not parts:
            raise Fat32Error("cannot open the root directory as a file", code="is_a_directory")
        parent = self._resolve_dir(parts[:-1], create=False)

        node = parent.lookup(parts[-1])
        if node is not None and node.is_dir:
            raise Fat32Error(f"{path} is a directory", code="is_a_directory")
        if node is None:
            node = self._add_child(parent, parts[-1], is_dir=False)
        else:
            # clusters of the old content stay allocated but unreferenced
            node.first_cluster = 0
            node.size = 0

        handle = _FatFile(self, node)
        self._open_files += 1
        try:
            yield handle
        finally:
            handle.close()

    def _entry_count(self, node: _Node) -> int:
        count = 1 if node is self._root else 2
        for child in node.children.values():
            count += 1
            if child.needs_lfn:
                count += -(-len(child.name.encode("utf-16-le")) // (2 * LFN_CHARS_PER_ENTRY))
        return count

    def _serialize_dir(self, node: _Node) -> bytes:
        out = bytearray()
        if node is self._root:
            out += short_entry(self.label, ATTR_VOLUME_ID, 0, 0)
        else:
            parent = node.parent
            parent_cluster = 0
            if parent is not None and parent is not self._root:
                parent_cluster = parent.first_cluster
            out += short_entry(b".          ", ATTR_DIRECTORY, node.first_cluster, 0)
            out += short_entry(b"..         ", ATTR_DIRECTORY, parent_cluster, 0)

        for key in sorted(node.children):
            child = node.children[key]
            if child.needs_lfn:
                for entry in lfn_entries(child.name, child.short_name):
                    out += entry
            if child.is_dir:
                out += short_entry(child.short_name, ATTR_DIRECTORY, child.first_cluster, 0)
            else:
                out += short_entry(child.short_name, ATTR_ARCHIVE, child.first_cluster, child.size)
        return bytes(out)

    def _walk_dirs(self) -> Iterator[_Node]:
        pending = [self._root]
        while pending:
            node = pending.pop(0)
            yield node
            pending.extend(
                node.children[key] for key in sorted(node.children) if node.children[key].is_dir
            )

    def _chain(self, start: int) -> list[int]:
        chain = [start]
        while self._fat[chain[-1]] & FAT_MASK < 0x0FFFFFF8:
            chain.append(self._fat[chain[-1]] & FAT_MASK)
        return chain

    def commit(self) -> None:
        """Write directories, both FATs and FSInfo, then flush the image.

        Raises:
            Fat32Error: If a file is still open, the volume is full or it
                was already committed.
        """
        self._check_writable()
        if self._open_files:
            raise Fat32Error("cannot commit with open files", code="files_open")

        cluster_size = self.geometry.cluster_size
        dirs = list(self._walk_dirs())

        # Cluster numbers of all directories must be known before serializing
        for node in dirs:
            clusters = max(1, -(-self._entry_count(node) * DIR_ENTRY_SIZE // cluster_size))
            if node is self._root:
                if clusters > 1:
                    self._allocate(clusters - 1, ROOT_CLUSTER)
            else:
                node.first_cluster = self._allocate(clusters)

        for node in dirs:
            data = self._serialize_dir(node)
            chain = self._chain(node.first_cluster)
            data = data.ljust(len(chain) * cluster_size, b"\x00")
            for i, cluster in enumerate(chain):
                self._write_clusters(cluster, data[i * cluster_size : (i + 1) * cluster_size])

        fat = array("I", self._fat)
        if sys.byteorder == "big":
            fat.byteswap()
        fat_bytes = fat.tobytes().ljust(self.geometry.fat_sectors * SECTOR_SIZE, b"\x00")
        for i in range(NUM_FATS):
            self._pwrite(self.geometry.fat_offset + i * len(fat_bytes), fat_bytes)

        fsinfo = self._fsinfo_sector()
        self._pwrite(FSINFO_SECTOR * SECTOR_SIZE, fsinfo)
        self._pwrite((BACKUP_BOOT_SECTOR + FSINFO_SECTOR) * SECTOR_SIZE, fsinfo)

        self._f.flush()
        fileno = getattr(self._f, "fileno", None)
        if fileno is not None:
            os.fsync(fileno())
        self._committed = True
        logger.debug(
            "Committed FAT32 %r: %d of %d clusters used",
            self.label.decode("ascii").rstrip(),
            self._next_free - 2,
            self.geometry.cluster_count,
        )


@dataclass(frozen=True)
class DirEntry:
    """A directory entry read from a volume."""

    name: str
    short_name: bytes
    is_dir: bool
    first_cluster: int
    size: int


def _decode_short(short_name: bytes) -> str:
    base = short_name[:8].decode("ascii", "replace").rstrip()
    ext = short_name[8:].decode("ascii", "replace").rstrip()
    return f"{base}.{ext}" if ext else base


class Fat32Reader:
    """Read a FAT32 volume from an image file.

    Args:
        f: Image file opened for reading.
        offset: Byte offset of the volume in ``f``.
    """

    def __init__(self, f: BinaryIO, offset: int = 0) -> None:
        self._f = f
        self.offset = offset

        boot = self._pread(0, SECTOR_SIZE)
        if boot[510:512] != b"\x55\xaa":
            raise Fat32Error("missing boot sector signature", code="not_fat32")
        fields = _BOOT.unpack(boot[: _BOOT.size])
        if fields[26] != b"FAT32   ":
            raise Fat32Error("not a FAT32 volume", code="not_fat32")

        self.boot_label = fields[25].decode("ascii").rstrip()
        self.volume_id = fields[24]
        self.geometry = Geometry(
            total_sectors=fields[13],
            sectors_per_cluster=fields[3],
            fat_sectors=fields[14],
            cluster_count=(fields[13] - fields[4] - fields[5] * fields[14]) // fields[3],
            hidden_sectors=fields[12],
        )
        self.root_cluster = fields[17]

        raw_fat = self._pread(self.geometry.fat_offset, self.geometry.fat_sectors * SECTOR_SIZE)
        self._fat = array("I")
        self._fat.frombytes(raw_fat[: 4 * (self.geometry.cluster_count + 2)])
        if sys.byteorder == "big":
            self._fat.byteswap()

    def _pread(self, offset: int, size: int) -> bytes:
        self._f.seek(self.offset + offset)
        return self._f.read(size)

    def fsinfo(self) -> tuple[int, int]:
        """Free cluster count and next free hint from FSInfo."""
        sector = self._pread(FSINFO_SECTOR * SECTOR_SIZE, SECTOR_SIZE)
        lead, = struct.unpack_from("<I", sector, 0)
        sig, free, next_free = struct.unpack_from("<III", sector, 484)
        if lead != FSINFO_LEAD_SIG or sig != FSINFO_STRUCT_SIG:
            raise Fat32Error("invalid FSInfo sector", code="not_fat32")
        return free, next_free

    def chain(self, start: int) -> list[int]:
        """Cluster chain starting at ``start``."""
        chain: list[int] = []
        cluster = start
        while 2 <= cluster < 0x0FFFFFF8:
            if len(chain) > self.geometry.cluster_count:
                raise Fat32Error("cluster chain loops", code="corrupt")
            chain.append(cluster)
            cluster = self._fat[cluster] & FAT_MASK
        return chain

    def _read_chain(self, start: int) -> bytes:
        size = self.geometry.cluster_size
        return b"".join(
            self._pread(self.geometry.cluster_offset(c), size) for c in self.chain(start)
        )

    def _scan(self, cluster: int) -> tuple[list[DirEntry], str | None]:
        data = self._read_chain(cluster)
        entries: list[DirEntry] = []
        label = None
        lfn_parts: dict[int, bytes] = {}
        lfn_checksum_value = -1

        for pos in range(0, len(data), DIR_ENTRY_SIZE):
            raw = data[pos : pos + DIR_ENTRY_SIZE]
            if raw[0] == 0:
                break
            if raw[0] == DELETED:
                lfn_parts = {}
                continue
            attr = raw[11]
            if attr == ATTR_LFN:
                order, name1, _, _, checksum, name2, _, name3 = _LFN_ENTRY.unpack(raw)
                if order & LFN_LAST:
                    lfn_parts = {}
                    lfn_checksum_value = checksum
                lfn_parts[order & 0x1F] = name1 + name2 + name3
                continue

            fields = _DIR_ENTRY.unpack(raw)
            short_name = fields[0]
            if attr & ATTR_VOLUME_ID:
                label = short_name.decode("ascii").rstrip()
                lfn_parts = {}
                continue
            if short_name in (b".          ", b"..         "):
                continue

            name = _decode_short(short_name)
            if lfn_parts and lfn_checksum_value == lfn_checksum(short_name):
                units = b"".join(lfn_parts[i] for i in sorted(lfn_parts))
                name = units.decode("utf-16-le", "replace").split("\x00", 1)[0]
            lfn_parts = {}

            entries.append(
                DirEntry(
                    name=name,
                    short_name=short_name,
                    is_dir=bool(attr & ATTR_DIRECTORY),
                    first_cluster=(fields[7] << 16) | fields[10],
                    size=fields[11],
                )
            )
        return entries, label

    @property
    def label(self) -> str | None:
        """Volume label from the root directory, else from the boot sector."""
        _, label = self._scan(self.root_cluster)
        return label or self.boot_label

    def _lookup(self, path: str) -> DirEntry | None:
        cluster = self.root_cluster
        entry = None
        for part in split_path(path):
            entries, _ = self._scan(cluster)
            matches = [e for e in entries if e.name.upper() == part.upper()]
            if not matches:
                raise Fat32Error(f"{path} does not exist", code="not_found")
            entry = matches[0]
            cluster = entry.first_cluster
        return entry

    def listdir(self, path: str = "/") -> list[DirEntry]:
        """Entries of a directory."""
        entry = self._lookup(path)
        if entry is not None and not entry.is_dir:
            raise Fat32Error(f"{path} is not a directory", code="not_a_directory")
        cluster = self.root_cluster if entry is None else entry.first_cluster
        entries, _ = self._scan(cluster)
        return entries

    def read_file(self, path: str) -> bytes:
        """Contents of a file."""
        entry = self._lookup(path)
        if entry is None or entry.is_dir:
            raise Fat32Error(f"{path} is a directory", code="is_a_directory")
        if entry.first_cluster == 0:
            return b""
        return self._read_chain(entry.first_cluster)[: entry.size]

    def walk(self, path: str = "/") -> Iterator[tuple[str, DirEntry]]:
        """Yield (path, entry) for everything below ``path``, depth first."""
        base = path.rstrip("/")
        for entry in self.listdir(path):
            child = f"{base}/{entry.name}"
            yield child, entry
            if entry.is_dir:
                yield from self.walk(child)


__all__ = [
    "Fat32Error",
    "Fat32Reader",
    "Fat32Writer",
    "DirEntry",
    "Geometry",
    "cluster_size_for",
    "compute_geometry",
    "exact_short_name",
    "generate_short_name",
    "lfn_checksum",
    "lfn_entries",
]
