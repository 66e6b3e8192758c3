"""Thread-safety primitives for the cube store.

  - ReadWriteLock: many readers OR one writer, writer preference
  - StripedLocks: hash-partitioned ReadWriteLocks, one writer per cell
"""
from distinct_cube.concurrency.rwlock import ReadWriteLock
from distinct_cube.concurrency.striped_locks import StripedLocks

__all__ = [
    "ReadWriteLock",
    "StripedLocks",
]
