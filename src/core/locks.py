from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, Hashable, Iterator


@dataclass
class _LockEntry:
    lock: Lock = field(default_factory=Lock)
    holders: int = 0


class RowLockRegistry:
    """Per-key mutexes for read-modify-write cycles inside one process.

    Entries are reference counted and dropped once no thread holds or waits
    on them, so the registry does not grow with every row ever touched.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._entries: Dict[Hashable, _LockEntry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(key, _LockEntry())
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
