"""Query/rollup engine over a CubeStore.

A query names a metric, the dimensions to group by (possibly none, for
a grand total), a filter over dimension values and an optional date
window over the period dimension. Matching cells are partitioned by
their projection onto the grouping dimensions and each partition is
rolled up: counters summed, sketches merged.

Grouping by a strict subset of the stored dimensions is the reason the
cube keeps sketches rather than sets: "distinct customers per state over
the last 30 days" merges every (date, weekday, age, page) cell of each
state, and a customer seen in many of those cells is still counted once.

Rows come back sorted by group key so output is reproducible.
"""
from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Mapping, Sequence, Union

from distinct_cube.cube.store import CubeStore
from distinct_cube.domain.dimensions import DimensionKey
from distinct_cube.query.ranges import DateRange

Filter = Union[Mapping[str, Any], Callable[[DimensionKey], bool], None]


@dataclass(frozen=True, slots=True)
class QueryRow:
    """One group of a query result.

    group holds only the grouping dimensions; cells is how many cube
    cells were merged to produce value.
    """
    group: DimensionKey
    value: int | float
    cells: int = 0

    @property
    def labels(self) -> tuple:
        return self.group.values


def _value_matcher(expected: Any) -> Callable[[Any], bool]:
    if callable(expected):
        return expected
    if isinstance(expected, Collection) and not isinstance(expected, (str, bytes)):
        allowed = frozenset(expected)
        return allowed.__contains__
    return lambda v: v == expected


class QueryEngine:
    """Read-only query API over one cube.

    Args:
        store: The cube to query. Queries never mutate it and may run
            while ingestion into open periods continues.
    """

    def __init__(self, store: CubeStore) -> None:
        self._store = store

    @property
    def store(self) -> CubeStore:
        return self._store

    def query(
        self,
        metric: str,
        group_by: Sequence[str] = (),
        where: Filter = None,
        window: DateRange | None = None,
    ) -> list[QueryRow]:
        """Roll `metric` up per group of `group_by` values.

        where may be a callable over DimensionKey, or a mapping from
        dimension name to a value, a collection of accepted values, or a
        predicate over the value. With no grouping dimensions the result
        is a single total row, zero-valued if nothing matched. Raises
        KeyError for an unknown metric and InvalidConfig for an unknown
        dimension.
        """
        schema = self._store.schema
        schema.require_metric(metric)
        group_by = tuple(group_by)
        schema.dimensions.require(group_by)
        predicate = self._build_predicate(where, window)

        if not group_by:
            agg = self._store.rollup(predicate)
            return [QueryRow(DimensionKey((), ()), agg.value(metric), agg.cells)]

        def group_of(key: DimensionKey) -> DimensionKey | None:
            return key.project(group_by) if predicate(key) else None

        groups = self._store.rollup_by(group_of)
        return [
            QueryRow(group, groups[group].value(metric), groups[group].cells)
            for group in sorted(groups, key=DimensionKey.sort_key)
        ]

    def total(
        self,
        metric: str,
        where: Filter = None,
        window: DateRange | None = None,
    ) -> int | float:
        return self.query(metric, (), where, window)[0].value

    def trailing(
        self,
        metric: str,
        end: date,
        days: int,
        group_by: Sequence[str] = (),
        where: Filter = None,
    ) -> list[QueryRow]:
        """Query over the `days`-day window ending on `end`."""
        return self.query(metric, group_by, where, DateRange.trailing(end, days))

    def dau(self, end: date, metric: str = "customers", **kwargs: Any) -> list[QueryRow]:
        """Daily active users on `end`."""
        return self.trailing(metric, end, 1, **kwargs)

    def mau(self, end: date, metric: str = "customers", **kwargs: Any) -> list[QueryRow]:
        """Monthly (trailing 30 day) active users ending on `end`."""
        return self.trailing(metric, end, 30, **kwargs)

    def _build_predicate(
        self, where: Filter, window: DateRange | None
    ) -> Callable[[DimensionKey], bool]:
        checks: list[Callable[[DimensionKey], bool]] = []

        if callable(where):
            checks.append(where)
        elif where:
            self._store.schema.dimensions.require(where)
            for name, expected in where.items():
                match = _value_matcher(expected)
                checks.append(lambda k, n=name, m=match: m(k.get(n)))

        if window is not None:
            period = self._store.schema.dimensions.period
            checks.append(lambda k: window.contains(k.get(period)))

        return lambda key: all(check(key) for check in checks)
