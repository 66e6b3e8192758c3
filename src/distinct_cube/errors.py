"""Exception types shared across the cube.

Configuration and merge failures are fatal to the operation that hit
them. MalformedRecord is raised by record validation and caught by the
aggregation pipeline, which counts it as a skip.
"""
from __future__ import annotations


class CubeError(Exception):
    """Base class for every error raised by distinct_cube."""


class InvalidConfig(CubeError, ValueError):
    """Raised for an out-of-range precision, bad schema, or unknown dimension."""


class IncompatibleSketch(CubeError, ValueError):
    """Raised when two sketches (or two stores) cannot be merged."""


class PeriodClosed(CubeError):
    """Raised when a write targets a period that has been finalized."""

    def __init__(self, period: object) -> None:
        super().__init__(f"Period {period!r} is finalized; no further writes accepted")
        self.period = period


class MalformedRecord(CubeError, ValueError):
    """Raised when a log record is missing or has unusable fields."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
