"""
Read-only access to the Rockbox tag cache (database_idx.tcd + database_<n>.tcd).

Only the master header is read up front. Records are fetched by seek when a
track ID is resolved, and the result is cached for the lifetime of the reader.
"""

from __future__ import annotations

import logging
import os
import struct
from dataclasses import dataclass
from typing import BinaryIO

log = logging.getLogger("tagcache")

MAGIC_FAMILY = 0x544348  # "TCH"
SUPPORTED_VERSION = 0x10
TAGCACHE_MAGIC = (MAGIC_FAMILY << 8) | SUPPORTED_VERSION

MASTER_HEADER_SIZE = 24     # magic, datasize, entry_count, serial, commitid, dirty
TAGFILE_HEADER_SIZE = 12    # magic, datasize, entry_count
TAGFILE_ENTRY_HEADER_SIZE = 8  # tag_length, idx_id

TAG_COUNT = 23
RECORD_FIELDS = TAG_COUNT + 1  # tag slots + flag word
RECORD_SIZE = RECORD_FIELDS * 4

TAG_ARTIST = 0
TAG_ALBUM = 1
TAG_TITLE = 3
TAG_ALBUMARTIST = 7
TAG_LENGTH = 14
FLAG_INDEX = TAG_COUNT

FLAG_DELETED = 0x0001


class RockboxFormatError(Exception):
    """Base for anything wrong with the player's on-disk files."""


class UnsupportedIndexVersion(RockboxFormatError): ...
class IndexCorrupt(RockboxFormatError): ...
class IndexRefNotFound(RockboxFormatError): ...


@dataclass(frozen=True)
class TrackMetadata:
    title: str
    artist: str
    album: str | None
    duration_ms: int

    @property
    def duration_seconds(self) -> int:
        return self.duration_ms // 1000


def detect_byte_order(magic_bytes: bytes, family: int) -> str | None:
    """Return the struct byte-order prefix whose reading of the magic carries `family`."""
    for order in ("<", ">"):
        (magic,) = struct.unpack(f"{order}I", magic_bytes)
        if magic >> 8 == family:
            return order
    return None


@dataclass(frozen=True)
class IndexHeader:
    version: int
    data_size: int
    entry_count: int
    serial: int
    commit_id: int
    dirty: int


class TagCache:
    """
    Resolves integer track IDs against a Rockbox tag cache directory.

    Opening validates the master header: unknown magic -> IndexCorrupt, known
    family with another version -> UnsupportedIndexVersion.
    """

    def __init__(self, rockbox_dir: str | os.PathLike):
        self.rockbox_dir = os.fspath(rockbox_dir)
        self.master_path = os.path.join(self.rockbox_dir, "database_idx.tcd")
        self._tag_files: dict[int, BinaryIO] = {}
        self._cache: dict[int, TrackMetadata] = {}
        self._master = open(self.master_path, "rb")
        try:
            self.byte_order, self.header = self._read_master_header()
        except Exception:
            self._master.close()
            raise
        log.debug("Opened %s: version=0x%02x entries=%s serial=%s",
                  self.master_path, self.header.version, self.header.entry_count, self.header.serial)

    # -------- lifecycle --------
    def close(self) -> None:
        for handle in self._tag_files.values():
            handle.close()
        self._tag_files.clear()
        self._master.close()

    def __enter__(self) -> "TagCache":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def entry_count(self) -> int:
        return self.header.entry_count

    # -------- header parsing --------
    def _read_master_header(self) -> tuple[str, IndexHeader]:
        raw = self._master.read(MASTER_HEADER_SIZE)
        if len(raw) < MASTER_HEADER_SIZE:
            raise IndexCorrupt(f"{self.master_path}: header is {len(raw)} bytes, expected {MASTER_HEADER_SIZE}")

        order = detect_byte_order(raw[:4], MAGIC_FAMILY)
        if order is None:
            raise IndexCorrupt(f"{self.master_path}: unrecognized tag cache magic {raw[:4].hex()}")

        magic, data_size, entry_count, serial, commit_id, dirty = struct.unpack(f"{order}6I", raw)
        version = magic & 0xFF
        if version != SUPPORTED_VERSION:
            raise UnsupportedIndexVersion(
                f"{self.master_path}: tag cache version 0x{version:02x} "
                f"(only 0x{SUPPORTED_VERSION:02x} is supported)"
            )

        file_size = os.fstat(self._master.fileno()).st_size
        needed = MASTER_HEADER_SIZE + entry_count * RECORD_SIZE
        if file_size < needed:
            raise IndexCorrupt(
                f"{self.master_path}: {entry_count} records need {needed} bytes, file has {file_size}"
            )
        return order, IndexHeader(version, data_size, entry_count, serial, commit_id, dirty)

    def _tag_file(self, tag: int) -> BinaryIO:
        handle = self._tag_files.get(tag)
        if handle is not None:
            return handle

        path = os.path.join(self.rockbox_dir, f"database_{tag}.tcd")
        try:
            handle = open(path, "rb")
        except FileNotFoundError as e:
            raise IndexCorrupt(f"Missing tag file {path}") from e

        raw = handle.read(TAGFILE_HEADER_SIZE)
        if len(raw) < TAGFILE_HEADER_SIZE:
            handle.close()
            raise IndexCorrupt(f"{path}: short header")
        (magic,) = struct.unpack(f"{self.byte_order}I", raw[:4])
        if magic != TAGCACHE_MAGIC:
            handle.close()
            raise IndexCorrupt(f"{path}: magic 0x{magic:08x} does not match the master index")

        self._tag_files[tag] = handle
        return handle

    # -------- record access --------
    def _read_record(self, track_ref: int) -> tuple[int, ...]:
        self._master.seek(MASTER_HEADER_SIZE + track_ref * RECORD_SIZE)
        raw = self._master.read(RECORD_SIZE)
        if len(raw) != RECORD_SIZE:
            raise IndexCorrupt(f"{self.master_path}: short read for record {track_ref}")
        return struct.unpack(f"{self.byte_order}{RECORD_FIELDS}i", raw)

    def _read_string(self, tag: int, seek: int) -> str | None:
        if seek <= 0:
            return None

        handle = self._tag_file(tag)
        size = os.fstat(handle.fileno()).st_size
        if seek + TAGFILE_ENTRY_HEADER_SIZE > size:
            raise IndexCorrupt(f"database_{tag}.tcd: offset {seek} past end of file ({size} bytes)")

        handle.seek(seek)
        tag_length, _idx_id = struct.unpack(f"{self.byte_order}2I", handle.read(TAGFILE_ENTRY_HEADER_SIZE))
        if tag_length == 0:
            return None
        if seek + TAGFILE_ENTRY_HEADER_SIZE + tag_length > size:
            raise IndexCorrupt(f"database_{tag}.tcd: entry at {seek} runs past end of file")

        data = handle.read(tag_length).split(b"\0", 1)[0]
        value = data.decode("utf-8", errors="replace").strip()
        return value or None

    def lookup(self, track_ref: int) -> TrackMetadata:
        """Resolve a track ID. Raises IndexRefNotFound or IndexCorrupt."""
        cached = self._cache.get(track_ref)
        if cached is not None:
            return cached

        if track_ref < 0 or track_ref >= self.header.entry_count:
            raise IndexRefNotFound(f"Track {track_ref} outside index (0..{self.header.entry_count - 1})")

        record = self._read_record(track_ref)
        if record[FLAG_INDEX] & FLAG_DELETED:
            raise IndexRefNotFound(f"Track {track_ref} is marked deleted")

        artist = self._read_string(TAG_ARTIST, record[TAG_ARTIST])
        if not artist:
            artist = self._read_string(TAG_ALBUMARTIST, record[TAG_ALBUMARTIST])
        title = self._read_string(TAG_TITLE, record[TAG_TITLE])
        if not artist or not title:
            raise IndexRefNotFound(f"Track {track_ref} has no artist/title")

        meta = TrackMetadata(
            title=title,
            artist=artist,
            album=self._read_string(TAG_ALBUM, record[TAG_ALBUM]),
            duration_ms=max(0, record[TAG_LENGTH]),
        )
        self._cache[track_ref] = meta
        return meta
