"""The MANIFEST file: an append-only log of table creations and deletions.

Layout: the magic text ``Agat`` and a big-endian version number, followed by
records of ``length (u32 BE) | crc32c (u32 BE) | encoded change set``.
"""

from __future__ import annotations

import copy
import enum
import os
import struct
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator

from .options import DatabaseOptions

MANIFEST_FILENAME = "MANIFEST"
MANIFEST_REWRITE_FILENAME = "MANIFEST_REWRITE"
_DELETION_REWRITE_THRESHOLD = 10_000
_DELETIONS_RATIO = 10

_MAGIC_TEXT = b"Agat"
_MAGIC_VERSION = 8

_HEADER = struct.Struct(">4sI")
_LEN_CRC = struct.Struct(">II")

_U64_MASK = (1 << 64) - 1


class ManifestError(Exception):
    """The manifest is corrupt, inconsistent or cannot be opened."""


class ChangeOp(enum.IntEnum):
    CREATE = 0
    DELETE = 1


@dataclass(frozen=True)
class ManifestChange:
    table_id: int
    op: ChangeOp
    level: int = 0
    key_id: int = 0


def new_create_change(table_id: int, level: int, key_id: int) -> ManifestChange:
    return ManifestChange(table_id, ChangeOp.CREATE, level, key_id)


def new_delete_change(table_id: int) -> ManifestChange:
    return ManifestChange(table_id, ChangeOp.DELETE)


@dataclass
class LevelManifest:
    tables: set[int] = field(default_factory=set)


@dataclass
class TableManifest:
    level: int
    key_id: int


@dataclass
class Manifest:
    """The state of the LSM tree levels as recorded in the MANIFEST."""

    levels: list[LevelManifest] = field(default_factory=list)
    tables: dict[int, TableManifest] = field(default_factory=dict)
    creations: int = 0
    deletions: int = 0

    def as_changes(self) -> list[ManifestChange]:
        """Changes that recreate this manifest from scratch."""
        return [
            new_create_change(table_id, tm.level, tm.key_id)
            for table_id, tm in self.tables.items()
        ]

    def apply_changes(self, changes: Iterable[ManifestChange]) -> None:
        for change in changes:
            self._apply(change)

    def _apply(self, change: ManifestChange) -> None:
        if change.op is ChangeOp.CREATE:
            if change.table_id in self.tables:
                raise ManifestError(f"manifest invalid, table {change.table_id} exists")
            self.tables[change.table_id] = TableManifest(change.level, change.key_id)
            while len(self.levels) <= change.level:
                self.levels.append(LevelManifest())
            self.levels[change.level].tables.add(change.table_id)
            self.creations += 1
        else:
            tm = self.tables.pop(change.table_id, None)
            if tm is None:
                raise ManifestError(
                    f"manifest invalid, removing non-existing table {change.table_id}"
                )
            self.levels[tm.level].tables.remove(change.table_id)
            self.deletions += 1


# --- checksum -------------------------------------------------------------


def _crc_table() -> tuple[int, ...]:
    def entry(n: int) -> int:
        for _ in range(8):
            n = (n >> 1) ^ 0x82F63B78 if n & 1 else n >> 1
        return n

    return tuple(entry(n) for n in range(256))


_CRC_TABLE = _crc_table()


def _crc32c(data: bytes) -> int:
    crc = 0xFFFFFFFF
    for byte in data:
        crc = _CRC_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF


# --- change set encoding ---------------------------------------------------


def _put_varint(out: bytearray, value: int) -> None:
    value &= _U64_MASK
    while True:
        low = value & 0x7F
        value >>= 7
        if value:
            out.append(low | 0x80)
        else:
            out.append(low)
            return


def _encode_change(change: ManifestChange) -> bytes:
    out = bytearray()
    fields = (
        (1, change.table_id),
        (2, int(change.op)),
        (3, change.level),
        (4, change.key_id),
    )
    for number, value in fields:
        if value:
            _put_varint(out, number << 3)
            _put_varint(out, value)
    return bytes(out)


def _encode_change_set(changes: Iterable[ManifestChange]) -> bytes:
    out = bytearray()
    for change in changes:
        body = _encode_change(change)
        _put_varint(out, (1 << 3) | 2)
        _put_varint(out, len(body))
        out += body
    return bytes(out)


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ManifestError("truncated varint in manifest change set")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & _U64_MASK, pos
        shift += 7
        if shift >= 70:
            raise ManifestError("varint too long in manifest change set")


def _take(data: bytes, pos: int, size: int) -> tuple[bytes, int]:
    end = pos + size
    if end > len(data):
        raise ManifestError("truncated field in manifest change set")
    return data[pos:end], end


def _fields(data: bytes) -> Iterator[tuple[int, int, int | bytes]]:
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        number, wire_type = key >> 3, key & 7
        value: int | bytes
        if wire_type == 0:
            value, pos = _read_varint(data, pos)
        elif wire_type == 1:
            value, pos = _take(data, pos, 8)
        elif wire_type == 2:
            size, pos = _read_varint(data, pos)
            value, pos = _take(data, pos, size)
        elif wire_type == 5:
            value, pos = _take(data, pos, 4)
        else:
            raise ManifestError(f"unsupported wire type {wire_type} in manifest")
        yield number, wire_type, value


def _decode_change(data: bytes) -> ManifestChange:
    values = {1: 0, 2: 0, 3: 0, 4: 0}
    for number, wire_type, value in _fields(data):
        if number in values and wire_type == 0:
            values[number] = value
    try:
        op = ChangeOp(values[2])
    except ValueError:
        raise ManifestError(f"unknown manifest operation {values[2]}") from None
    return ManifestChange(values[1], op, values[3] & 0xFFFFFFFF, values[4])


def _decode_change_set(data: bytes) -> list[ManifestChange]:
    return [
        _decode_change(value)
        for number, wire_type, value in _fields(data)
        if number == 1 and wire_type == 2
    ]


# --- reading and writing ---------------------------------------------------


def replay_manifest(file: BinaryIO) -> tuple[Manifest, int]:
    """Rebuild a manifest from ``file``.

    Returns the manifest and the offset just after the last complete record.
    """
    file_len = file.seek(0, os.SEEK_END)
    file.seek(0)
    header = file.read(_HEADER.size)
    if len(header) < _HEADER.size:
        raise ManifestError("manifest is shorter than its header")
    magic, version = _HEADER.unpack(header)
    if magic != _MAGIC_TEXT:
        raise ManifestError("bad magic text")
    if version != _MAGIC_VERSION:
        raise ManifestError("bad magic version")

    manifest = Manifest()
    offset = _HEADER.size
    while True:
        len_crc = file.read(_LEN_CRC.size)
        if len(len_crc) < _LEN_CRC.size:
            break
        offset += _LEN_CRC.size
        length, checksum = _LEN_CRC.unpack(len_crc)
        if length > file_len:
            raise ManifestError("buffer length greater than file size")
        body = file.read(length)
        if len(body) < length:
            break
        offset += length
        if _crc32c(body) != checksum:
            raise ManifestError("bad checksum")
        manifest.apply_changes(_decode_change_set(body))
    return manifest, offset


def _frame(payload: bytes) -> bytes:
    return _LEN_CRC.pack(len(payload), _crc32c(payload)) + payload


def _sync_dir(directory: Path) -> None:
    if os.name != "posix":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _rewrite(directory: Path, manifest: Manifest) -> tuple[BinaryIO, int]:
    """Atomically replace the MANIFEST with a snapshot of ``manifest``."""
    rewrite_path = directory / MANIFEST_REWRITE_FILENAME
    payload = _encode_change_set(manifest.as_changes())
    with open(rewrite_path, "wb") as out:
        out.write(_HEADER.pack(_MAGIC_TEXT, _MAGIC_VERSION) + _frame(payload))
        out.flush()
        os.fsync(out.fileno())

    manifest_path = directory / MANIFEST_FILENAME
    os.replace(rewrite_path, manifest_path)
    file = open(manifest_path, "r+b")
    file.seek(0, os.SEEK_END)
    _sync_dir(directory)
    return file, len(manifest.tables)


class ManifestFile:
    """The MANIFEST log on disk together with its in-memory state."""

    def __init__(
        self,
        directory: Path,
        file: BinaryIO | None,
        manifest: Manifest,
        deletions_rewrite_threshold: int,
    ) -> None:
        self._directory = directory
        self._file = file
        self._manifest = manifest
        self._deletions_rewrite_threshold = deletions_rewrite_threshold
        self._lock = threading.Lock()

    @classmethod
    def open_or_create(cls, opts: DatabaseOptions) -> ManifestFile:
        """Open the manifest in ``opts.dir``, creating it if absent."""
        if opts.in_memory:
            return cls(Path(), None, Manifest(), 0)
        return cls._open(Path(opts.dir), opts.read_only, _DELETION_REWRITE_THRESHOLD)

    @classmethod
    def _open(cls, directory: Path, read_only: bool, threshold: int) -> ManifestFile:
        path = directory / MANIFEST_FILENAME
        if path.exists():
            file = open(path, "rb" if read_only else "r+b")
            try:
                manifest, trunc_offset = replay_manifest(file)
                if not read_only:
                    file.truncate(trunc_offset)
                file.seek(0, os.SEEK_END)
            except BaseException:
                file.close()
                raise
            return cls(directory, file, manifest, threshold)

        if read_only:
            raise ManifestError(f"cannot create manifest in read-only mode: {path}")
        manifest = Manifest()
        file, _ = _rewrite(directory, manifest)
        return cls(directory, file, manifest, threshold)

    def add_changes(self, changes: Iterable[ManifestChange]) -> None:
        """Append a batch of changes atomically; replay sees all or none."""
        changes = list(changes)
        with self._lock:
            if self._file is None:
                return
            payload = _encode_change_set(changes)
            manifest = self._manifest
            manifest.apply_changes(changes)

            if (
                manifest.deletions > self._deletions_rewrite_threshold
                and manifest.deletions
                > _DELETIONS_RATIO * (manifest.creations - manifest.deletions)
            ):
                self._file.close()
                self._file = None
                self._file, net_creations = _rewrite(self._directory, manifest)
                manifest.creations = net_creations
                manifest.deletions = 0
            else:
                self._file.write(_frame(payload))

            self._file.flush()
            os.fsync(self._file.fileno())

    def manifest_cloned(self) -> Manifest:
        with self._lock:
            return copy.deepcopy(self._manifest)

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def __enter__(self) -> ManifestFile:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()