"""Fixture builders for Rockbox files and a fake scrobbling service."""

from __future__ import annotations

import json
import re
import struct
from pathlib import Path
from typing import Any

import pytest

from rockbox_scrobbler import playback_log, tagcache
from rockbox_scrobbler.lastfm_client import AccountBinding, ServiceEndpoint

STRING_TAGS = {
    "artist": tagcache.TAG_ARTIST,
    "album": tagcache.TAG_ALBUM,
    "title": tagcache.TAG_TITLE,
    "albumartist": tagcache.TAG_ALBUMARTIST,
}


def write_tagcache(
    rockbox_dir: Path,
    tracks: list[dict[str, Any]],
    *,
    byte_order: str = "<",
    magic: int = tagcache.TAGCACHE_MAGIC,
) -> Path:
    """Write database_idx.tcd plus the string tag files for `tracks`.

    Each track is a dict with optional artist/title/album/albumartist,
    `length_ms` and `deleted`.
    """
    rockbox_dir.mkdir(parents=True, exist_ok=True)
    string_data = {tag: bytearray() for tag in STRING_TAGS.values()}
    records = []
    for idx, track in enumerate(tracks):
        fields = [0] * tagcache.RECORD_FIELDS
        for name, tag in STRING_TAGS.items():
            value = track.get(name)
            if value is None:
                continue
            data = value.encode("utf-8") + b"\0"
            data += b"X" * (-len(data) % 4)
            offset = tagcache.TAGFILE_HEADER_SIZE + len(string_data[tag])
            string_data[tag] += struct.pack(f"{byte_order}2I", len(data), idx) + data
            fields[tag] = offset
        fields[tagcache.TAG_LENGTH] = track.get("length_ms", 0)
        fields[tagcache.FLAG_INDEX] = tagcache.FLAG_DELETED if track.get("deleted") else 0
        records.append(struct.pack(f"{byte_order}{tagcache.RECORD_FIELDS}i", *fields))

    body = b"".join(records)
    header = struct.pack(f"{byte_order}6I", magic, len(body), len(tracks), 1, 1, 0)
    master = rockbox_dir / "database_idx.tcd"
    master.write_bytes(header + body)

    for tag, data in string_data.items():
        tag_header = struct.pack(f"{byte_order}3I", magic, len(data), len(tracks))
        (rockbox_dir / f"database_{tag}.tcd").write_bytes(tag_header + bytes(data))
    return master


def log_record(track_ref: int, timestamp: int, elapsed_ms: int, stop_reason: int = 1, byte_order: str = "<") -> bytes:
    return struct.pack(f"{byte_order}iIII", track_ref, timestamp, elapsed_ms, stop_reason)


def write_playback_log(
    path: Path,
    records: list[tuple[int, int, int] | tuple[int, int, int, int]],
    *,
    byte_order: str = "<",
    tail: bytes = b"",
) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = playback_log.encode_header(byte_order)
    for rec in records:
        data += log_record(*rec, byte_order=byte_order)
    path.write_bytes(data + tail)
    return path


# -------------------------
# Fake HTTP
# -------------------------
class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str | None = None,
                 headers: dict[str, str] | None = None):
        self.status_code = status_code
        self.text = text if text is not None else json.dumps(payload)
        self.headers = headers or {}

    def json(self) -> Any:
        return json.loads(self.text)


_INDEXED = re.compile(r"^(\w+)\[(\d+)\]$")


def unpack_batch(data: dict[str, str]) -> list[dict[str, str]]:
    items: dict[int, dict[str, str]] = {}
    for key, value in data.items():
        m = _INDEXED.match(key)
        if m:
            items.setdefault(int(m.group(2)), {})[m.group(1)] = value
    return [items[i] for i in sorted(items)]


class FakeService:
    """Answers auth.getMobileSession and track.scrobble like the Last.fm JSON API.

    `script` entries (FakeResponse or Exception) are consumed first, one per
    call; after that the default behaviour applies.
    """

    def __init__(self, *, auth_error: int | None = None, ignored: dict[str, str] | None = None):
        self.auth_error = auth_error
        self.ignored = ignored or {}   # track title -> ignoredMessage code
        self.script: list[Any] = []
        self.calls: list[dict[str, str]] = []
        self.batches: list[list[dict[str, str]]] = []
        self.closed = False

    def post(self, url: str, data: dict[str, str], timeout: float) -> FakeResponse:
        self.calls.append(dict(data))
        if self.script:
            step = self.script.pop(0)
            if isinstance(step, Exception):
                raise step
            return step

        method = data["method"]
        if method == "auth.getMobileSession":
            if self.auth_error is not None:
                return FakeResponse(403, {"error": self.auth_error, "message": "Invalid username or password"})
            return FakeResponse(200, {"session": {"name": data["username"], "key": "sk-123", "subscriber": 0}})
        if method == "track.scrobble":
            batch = unpack_batch(data)
            self.batches.append(batch)
            entries = []
            for item in batch:
                code = self.ignored.get(item["track"], "0")
                entries.append({
                    "artist": {"corrected": "0", "#text": item["artist"]},
                    "track": {"corrected": "0", "#text": item["track"]},
                    "timestamp": item["timestamp"],
                    "ignoredMessage": {"code": code, "#text": ""},
                })
            accepted = sum(e["ignoredMessage"]["code"] == "0" for e in entries)
            return FakeResponse(200, {"scrobbles": {
                "scrobble": entries[0] if len(entries) == 1 else entries,
                "@attr": {"accepted": accepted, "ignored": len(entries) - accepted},
            }})
        return FakeResponse(400, {"error": 3, "message": "Invalid method"})

    def close(self) -> None:
        self.closed = True

    @property
    def submitted_titles(self) -> list[str]:
        return [item["track"] for batch in self.batches for item in batch]


@pytest.fixture
def endpoint() -> ServiceEndpoint:
    return ServiceEndpoint("lastfm", "https://ws.example.test/2.0/", "key", "secret")


@pytest.fixture
def account() -> AccountBinding:
    return AccountBinding(service="lastfm", username="alice", password_md5="5f4dcc3b5aa765d61d8327deb882cf99")


@pytest.fixture
def no_sleep() -> list[float]:
    """Collects backoff delays instead of sleeping."""
    return []
