"""Lock striping for the cube store.

Cells are spread over N stripes by hash(key) & (N - 1); each stripe has
its own ReadWriteLock. Two upserts only contend when their keys share a
stripe, and a single cell always has at most one writer, which is what
sketch register updates need.

N must be a power of two so stripe selection is a mask, not a modulo.

Whole-store readers (roll-ups, snapshots, exports) take every stripe's
read lock in index order. Writers only ever hold one stripe, so the
fixed ordering cannot deadlock, and the reader sees one consistent
point in time across all cells.
"""
from __future__ import annotations

from contextlib import ExitStack, contextmanager
from typing import Hashable, Iterator

from distinct_cube.concurrency.rwlock import ReadWriteLock


class StripedLocks:
    """A power-of-two array of ReadWriteLocks indexed by key hash.

    Args:
        num_stripes: Number of stripes (default 16, must be power of 2).
    """

    __slots__ = ("_locks", "_mask")

    def __init__(self, num_stripes: int = 16) -> None:
        if num_stripes <= 0 or (num_stripes & (num_stripes - 1)) != 0:
            raise ValueError("num_stripes must be a positive power of 2")
        self._locks = tuple(ReadWriteLock() for _ in range(num_stripes))
        self._mask = num_stripes - 1

    def __len__(self) -> int:
        return len(self._locks)

    def index(self, key: Hashable) -> int:
        return hash(key) & self._mask

    def read(self, idx: int):
        return self._locks[idx].read()

    def write(self, idx: int):
        return self._locks[idx].write()

    @contextmanager
    def read_all(self) -> Iterator[None]:
        """Hold every stripe's read lock, acquired in index order."""
        with ExitStack() as stack:
            for lock in self._locks:
                stack.enter_context(lock.read())
            yield

    @contextmanager
    def write_all(self) -> Iterator[None]:
        """Hold every stripe's write lock, acquired in index order.

        Used for structural changes (compaction) that move cells
        between stripes.
        """
        with ExitStack() as stack:
            for lock in self._locks:
                stack.enter_context(lock.write())
            yield
