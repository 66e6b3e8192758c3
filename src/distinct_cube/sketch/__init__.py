"""Cardinality sketches.

Public API:
    HyperLogLog: mergeable approximate distinct counter
"""

from distinct_cube.sketch.hyperloglog import (
    DEFAULT_PRECISION,
    MAX_PRECISION,
    MIN_PRECISION,
    HyperLogLog,
)

__all__ = [
    "DEFAULT_PRECISION",
    "HyperLogLog",
    "MAX_PRECISION",
    "MIN_PRECISION",
]
