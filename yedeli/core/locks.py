"""
按键加锁
同一批次的容量变更串行执行，不同批次之间互不阻塞。

锁表按持有者计数，最后一个持有者释放后删除该键，
长期运行时表的大小只取决于同时在途的请求数。
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLocks:
    """按需创建、用完即删的键锁表"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, _Entry] = {}

    def _acquire_entry(self, key: Hashable) -> _Entry:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _Entry()
                self._locks[key] = entry
            entry.holders += 1
            return entry

    def _release_entry(self, key: Hashable, entry: _Entry):
        with self._guard:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        entry = self._acquire_entry(key)
        try:
            with entry.lock:
                yield
        finally:
            self._release_entry(key, entry)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
