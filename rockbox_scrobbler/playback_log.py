"""
Rockbox playback log reader.

The log is a 12-byte header followed by fixed 16-byte records appended by the
player. A partial record at the very end is what a crash mid-write leaves
behind; it is dropped. A bad record anywhere else means the file can no longer
be trusted, so parsing stops with LogCorrupt.
"""

from __future__ import annotations

import enum
import logging
import os
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator

from rockbox_scrobbler.tagcache import RockboxFormatError, detect_byte_order

log = logging.getLogger("playback-log")

MAGIC_FAMILY = 0x524250  # "RBP"
SUPPORTED_VERSION = 0x10
PLAYBACK_MAGIC = (MAGIC_FAMILY << 8) | SUPPORTED_VERSION

HEADER_SIZE = 12   # magic, record_size, reserved
RECORD_SIZE = 16   # track_ref, timestamp, elapsed_ms, stop_reason


class LogCorrupt(RockboxFormatError): ...
class UnsupportedLogVersion(LogCorrupt): ...


class StopReason(enum.IntEnum):
    UNKNOWN = 0
    FINISHED = 1
    SKIPPED = 2
    STOPPED = 3


@dataclass(frozen=True)
class RawPlayEvent:
    track_ref: int
    started_at: int   # unix seconds, UTC
    played_ms: int
    stop_reason: StopReason

    @property
    def played_duration_seconds(self) -> float:
        return self.played_ms / 1000


def local_timestamp_to_utc(timestamp: int) -> int:
    """Reinterpret a wall-clock local-time epoch (what Rockbox writes) as real UTC seconds."""
    wall_clock = datetime.fromtimestamp(timestamp, timezone.utc).replace(tzinfo=None)
    try:
        return int(wall_clock.timestamp())
    except (OverflowError, OSError, ValueError):
        return timestamp


def encode_header(byte_order: str = "<") -> bytes:
    return struct.pack(f"{byte_order}3I", PLAYBACK_MAGIC, RECORD_SIZE, 0)


class PlaybackLog:
    """
    One pass over a playback log file.

    Iterating opens the file from the start and yields RawPlayEvent lazily.
    `truncated_tail_bytes` is set once iteration reaches the end.
    """

    def __init__(self, path: str | os.PathLike, *, local_time: bool = True):
        self.path = os.fspath(path)
        self.local_time = local_time
        self.byte_order = "<"
        self.truncated_tail_bytes = 0

    def _read_header(self, f) -> bool:
        raw = f.read(HEADER_SIZE)
        if not raw:
            return False
        if len(raw) < HEADER_SIZE:
            # the player died while creating the file
            self.truncated_tail_bytes = len(raw)
            return False

        order = detect_byte_order(raw[:4], MAGIC_FAMILY)
        if order is None:
            raise LogCorrupt(f"{self.path}: unrecognized playback log magic {raw[:4].hex()}")
        magic, record_size, _reserved = struct.unpack(f"{order}3I", raw)
        version = magic & 0xFF
        if version != SUPPORTED_VERSION:
            raise UnsupportedLogVersion(
                f"{self.path}: playback log version 0x{version:02x} "
                f"(only 0x{SUPPORTED_VERSION:02x} is supported)"
            )
        if record_size != RECORD_SIZE:
            raise LogCorrupt(f"{self.path}: record size {record_size}, expected {RECORD_SIZE}")
        self.byte_order = order
        return True

    def _decode(self, raw: bytes, index: int) -> RawPlayEvent:
        track_ref, timestamp, elapsed_ms, reason = struct.unpack(f"{self.byte_order}iIII", raw)
        offset = HEADER_SIZE + index * RECORD_SIZE
        if track_ref < 0:
            raise LogCorrupt(f"{self.path}: record {index} at offset {offset} has track ref {track_ref}")
        if timestamp == 0:
            raise LogCorrupt(f"{self.path}: record {index} at offset {offset} has no timestamp")
        try:
            stop_reason = StopReason(reason)
        except ValueError:
            raise LogCorrupt(
                f"{self.path}: record {index} at offset {offset} has unknown stop reason {reason}"
            ) from None

        started_at = local_timestamp_to_utc(timestamp) if self.local_time else timestamp
        return RawPlayEvent(track_ref, started_at, elapsed_ms, stop_reason)

    def __iter__(self) -> Iterator[RawPlayEvent]:
        self.truncated_tail_bytes = 0
        with open(self.path, "rb") as f:
            if not self._read_header(f):
                return
            index = 0
            while True:
                raw = f.read(RECORD_SIZE)
                if not raw:
                    return
                if len(raw) < RECORD_SIZE:
                    self.truncated_tail_bytes = len(raw)
                    log.info("%s: dropping %d trailing bytes of a partial record", self.path, len(raw))
                    return
                yield self._decode(raw, index)
                index += 1


def truncate_log(path: str | os.PathLike, *, remove: bool = False) -> None:
    """Mark every logged play as consumed: either delete the file or cut it back to its header."""
    path = os.fspath(path)
    if remove:
        os.remove(path)
        return

    with open(path, "r+b") as f:
        raw = f.read(HEADER_SIZE)
        f.seek(0)
        f.truncate(0)
        if len(raw) == HEADER_SIZE:
            f.write(raw)
        f.flush()
        os.fsync(f.fileno())
