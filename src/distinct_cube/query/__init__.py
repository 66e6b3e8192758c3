"""Read side of the cube.

Public API:
    QueryEngine: grouped, filtered, windowed roll-ups
    QueryRow: one (group, value) result row
    DateRange: closed date window over the period dimension
"""
from distinct_cube.query.engine import QueryEngine, QueryRow
from distinct_cube.query.ranges import DateRange

__all__ = [
    "DateRange",
    "QueryEngine",
    "QueryRow",
]
