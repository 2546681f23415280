"""
Durable record of submitted scrobbles.

- One JSON object per line (JSON Lines), append-only.
- record() returns only after the line is flushed and fsync'd, so a later
  process start sees it.
- Writes for one (service, account) are serialized by a per-account lock;
  different accounts only contend for the short file append.
- One process at a time: the store does not arbitrate between processes.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from typing import Dict, Set, Tuple

log = logging.getLogger("store")


@dataclass(frozen=True)
class SubmissionRecord:
    key: str
    submitted_at: int
    service: str
    account: str


class SubmissionStore:
    def __init__(self, path: str | os.PathLike):
        self.path = os.fspath(path)
        self._keys: Set[str] = set()
        self._torn_tail = False
        self._file_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._account_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._load()

    # -------- persistence --------
    def _load(self) -> None:
        if not os.path.isfile(self.path):
            return
        with open(self.path, "rb") as f:
            for line_number, raw in enumerate(f, start=1):
                self._torn_tail = not raw.endswith(b"\n")
                line = raw.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line.decode("utf-8"))
                    self._keys.add(obj["key"])
                except (ValueError, KeyError, TypeError) as e:
                    # Torn write from an interrupted run; the record it held was never confirmed
                    log.warning("Skipping unreadable line %d in %s: %s", line_number, self.path, e)
        log.debug("Loaded %d submission records from %s", len(self._keys), self.path)

    def _append(self, record: SubmissionRecord) -> None:
        line = json.dumps(asdict(record), ensure_ascii=False) + "\n"
        with self._file_lock:
            parent = os.path.dirname(os.path.abspath(self.path))
            created = not os.path.exists(self.path)
            if created:
                os.makedirs(parent, exist_ok=True)
            if self._torn_tail:
                line = "\n" + line
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
            self._torn_tail = False
            if created:
                _fsync_dir(parent)
            self._keys.add(record.key)

    # -------- public API --------
    def account_lock(self, service: str, account: str) -> threading.Lock:
        with self._locks_guard:
            return self._account_locks.setdefault((service, account), threading.Lock())

    def has(self, key: str) -> bool:
        return key in self._keys

    def record(self, record: SubmissionRecord) -> None:
        with self.account_lock(record.service, record.account):
            if record.key in self._keys:
                return
            self._append(record)

    def size(self) -> int:
        return len(self._keys)


def _fsync_dir(path: str) -> None:
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
