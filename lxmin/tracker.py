# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
lxmin Tracker - Registry of backups currently being generated or uploaded.

Status queries race with the upload that mutates progress. The registry
map is guarded by a readers-writer lock (many concurrent readers, one
writer for insert/remove). Byte counters live on each InFlightOperation
behind their own lock so per-chunk progress updates never contend with
the map lock.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Dict, Iterator, List

GENERATING = "generating"
UPLOADING = "uploading"


class ReadWriteLock:
    """Writer-preferring readers-writer lock."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class InFlightOperation:
    """
    Live state of one backup that has not finished uploading.

    Implements the progress sink interface so it can be wired directly
    into the upload stream.
    """

    name: str
    instance: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    _size: int = 0
    _progress: int = 0
    _started: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def size(self) -> int:
        with self._lock:
            return self._size

    @property
    def progress_bytes(self) -> int:
        with self._lock:
            return self._progress

    @property
    def started(self) -> bool:
        """True once the upload has begun."""
        with self._lock:
            return self._started

    def on_start(self, total: int) -> None:
        with self._lock:
            self._size = total
            self._started = True

    def on_bytes_transferred(self, n: int) -> None:
        if n <= 0:
            return
        with self._lock:
            self._progress += n

    def status(self) -> str:
        return UPLOADING if self.progress_bytes > 0 else GENERATING

    def to_dict(self) -> dict:
        with self._lock:
            progress, size = self._progress, self._size

        info: dict = {
            "instance": self.instance,
            "name": self.name,
            "state": UPLOADING if progress > 0 else GENERATING,
        }
        if progress > 0:
            info["progress"] = progress
            if size:
                info["size"] = size
        return info


class OperationTracker:
    """Concurrency-safe map of name -> InFlightOperation."""

    def __init__(self) -> None:
        self._ops: Dict[str, InFlightOperation] = {}
        self._lock = ReadWriteLock()

    def store(self, name: str, op: InFlightOperation) -> None:
        """Insert or replace an entry."""
        with self._lock.write():
            self._ops[name] = op

    def claim(self, name: str, op: InFlightOperation) -> bool:
        """Insert only if absent; returns False when another writer owns the name."""
        with self._lock.write():
            if name in self._ops:
                return False
            self._ops[name] = op
            return True

    def pop(self, name: str) -> InFlightOperation | None:
        """Remove an entry; removing an unknown name is a no-op."""
        with self._lock.write():
            return self._ops.pop(name, None)

    def get(self, name: str) -> InFlightOperation | None:
        with self._lock.read():
            return self._ops.get(name)

    def names(self) -> List[str]:
        with self._lock.read():
            return list(self._ops)

    def __contains__(self, name: object) -> bool:
        with self._lock.read():
            return name in self._ops

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._ops)
