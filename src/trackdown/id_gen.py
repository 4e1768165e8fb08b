"""Sequential identifier allocation.

Identifiers have the form ``<PREFIX>-<NNNN>`` with one counter per ticket
kind, persisted as JSON in ``.ai-trackdown/counters.json``:

    {"project": 1, "epic": 3, "issue": 12, "task": 40, "pr": 2}

The allocator is an explicit object rather than a module-level singleton.
Counter updates run inside an injected lock. The default lock does nothing,
which is fine for one process; pass a FileLock when several processes may
allocate against the same counter file.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import time

from trackdown.config import ProjectPaths
from trackdown.errors import PersistenceError
from trackdown.models import TicketKind

logger = logging.getLogger(__name__)

ID_WIDTH = 4


class NullLock:
    """Lock that does nothing. Sufficient for a single process."""

    def __enter__(self) -> NullLock:
        return self

    def __exit__(self, *exc: object) -> None:
        return None


class LockTimeout(PersistenceError):
    """Counter lock could not be acquired in time."""


class FileLock:
    """Exclusive advisory lock on ``<counters>.lock`` using flock.

    The lock file is never deleted; removing it would let two processes hold
    "exclusive" locks on different inodes with the same path.
    """

    def __init__(self, path: str, timeout: float = 10.0, poll_interval: float = 0.05):
        self.path = path
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._fd = None

    @classmethod
    def for_counters(cls, counters_path: str, timeout: float = 10.0) -> FileLock:
        return cls(counters_path + ".lock", timeout=timeout)

    def __enter__(self) -> FileLock:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        fd = open(self.path, "w")
        start = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() - start >= self.timeout:
                    fd.close()
                    raise LockTimeout(f"Timed out waiting for lock {self.path}") from None
                time.sleep(self.poll_interval)
        self._fd = fd
        return self

    def __exit__(self, *exc: object) -> None:
        if self._fd is not None:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            self._fd.close()
            self._fd = None


def _default_counters() -> dict[str, int]:
    return {kind: 1 for kind in TicketKind.ALL}


class IdAllocator:
    """Allocates ``<PREFIX>-<NNNN>`` ids from per-kind counters.

    Within one allocator, ids for a kind strictly increase and are never
    handed out twice. Every mutation re-reads the counter file under the lock
    and keeps the larger of the in-memory and on-disk values, so a FileLock is
    enough to make allocation safe across processes.
    """

    def __init__(self, counters_path: str, prefixes: dict[str, str], lock=None):
        self.counters_path = counters_path
        self.prefixes = dict(prefixes)
        self._lock = lock if lock is not None else NullLock()
        self._counters = self._load()

    def _load(self) -> dict[str, int]:
        counters = _default_counters()
        if not os.path.exists(self.counters_path):
            return counters
        try:
            with open(self.counters_path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Cannot read %s, using default counters: %s", self.counters_path, e)
            return counters
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed counter file %s", self.counters_path)
            return counters
        for kind in TicketKind.ALL:
            value = data.get(kind)
            if isinstance(value, int) and not isinstance(value, bool):
                counters[kind] = max(1, value)
        return counters

    def _save(self) -> None:
        tmp_path = self.counters_path + ".tmp"
        try:
            os.makedirs(os.path.dirname(self.counters_path) or ".", exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self._counters, f, indent=2)
                f.write("\n")
            os.replace(tmp_path, self.counters_path)
        except OSError as e:
            raise PersistenceError(f"Cannot save counters to {self.counters_path}: {e}") from e

    def _refresh(self) -> None:
        on_disk = self._load()
        for kind, value in on_disk.items():
            self._counters[kind] = max(self._counters.get(kind, 1), value)

    def _prefix(self, kind: str) -> str:
        if kind not in self.prefixes:
            raise ValueError(f"unknown ticket kind: {kind}")
        return self.prefixes[kind]

    def _format(self, kind: str, number: int) -> str:
        return f"{self._prefix(kind)}-{number:0{ID_WIDTH}d}"

    def generate_id(self, kind: str) -> str:
        """Allocate the next id for a kind and persist the counter."""
        self._prefix(kind)
        with self._lock:
            self._refresh()
            number = self._counters[kind]
            self._counters[kind] = number + 1
            self._save()
        return self._format(kind, number)

    def generate_batch_ids(self, kind: str, count: int) -> list[str]:
        """Allocate ``count`` consecutive ids with a single counter write."""
        if count < 0:
            raise ValueError("count cannot be negative")
        self._prefix(kind)
        with self._lock:
            self._refresh()
            first = self._counters[kind]
            self._counters[kind] = first + count
            self._save()
        return [self._format(kind, first + i) for i in range(count)]

    def peek_next_id(self, kind: str) -> str:
        """The id generate_id would return next, without allocating it."""
        return self._format(kind, self._counters[kind])

    def get_counters(self) -> dict[str, int]:
        return dict(self._counters)

    def set_counter(self, kind: str, value: int) -> None:
        self._prefix(kind)
        with self._lock:
            self._counters[kind] = max(1, int(value))
            self._save()

    def reset_counters(self) -> None:
        with self._lock:
            self._counters = _default_counters()
            self._save()

    def auto_detect_counters(self, paths: ProjectPaths) -> dict[str, int]:
        """Raise counters past the highest id found among existing filenames.

        Counters are never lowered. Returns the resulting counters.
        """
        highest: dict[str, int] = {}
        for kind in TicketKind.ALL:
            pattern = re.compile(rf"^{re.escape(self._prefix(kind))}-(\d+)")
            base = paths.type_directory(kind)
            if not os.path.isdir(base):
                continue
            for _dirpath, _dirnames, filenames in os.walk(base):
                for name in filenames:
                    m = pattern.match(name)
                    if m:
                        highest[kind] = max(highest.get(kind, 0), int(m.group(1)))

        with self._lock:
            self._refresh()
            for kind, number in highest.items():
                self._counters[kind] = max(self._counters[kind], number + 1)
            self._save()
        logger.debug("Detected counters: %s", self._counters)
        return self.get_counters()

    def validate_id(self, ticket_id: str, kind: str) -> bool:
        return re.fullmatch(rf"{re.escape(self._prefix(kind))}-\d+", ticket_id) is not None

    def extract_id_number(self, ticket_id: str, kind: str) -> int | None:
        m = re.fullmatch(rf"{re.escape(self._prefix(kind))}-(\d+)", ticket_id)
        return int(m.group(1)) if m else None
