"""Cube cells and the read-only snapshots handed out to readers.

CubeCell is the mutable metric bundle the store owns. Nothing outside
the store ever touches one directly: readers get CellSnapshot copies
taken under the stripe's read lock, and roll-ups get an
AggregateSnapshot built from such copies.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from distinct_cube.cube.schema import CubeSchema
from distinct_cube.domain.dimensions import DimensionKey
from distinct_cube.domain.records import LogRecord
from distinct_cube.sketch.hyperloglog import HyperLogLog


class CubeCell:
    """Exact counters plus one sketch per distinct metric."""

    __slots__ = ("counters", "sketches", "finalized")

    def __init__(self, schema: CubeSchema) -> None:
        self.counters: dict[str, int] = {name: 0 for name in schema.counter_names}
        self.sketches: dict[str, HyperLogLog] = {
            name: schema.new_sketch() for name in schema.distinct_names
        }
        self.finalized = False

    def apply(self, record: LogRecord, schema: CubeSchema) -> None:
        for counter in schema.counters:
            self.counters[counter.name] += counter.amount(record)
        for metric in schema.distinct:
            identifier = metric.identifier(record)
            if identifier is not None:
                self.sketches[metric.name].add(identifier)

    def absorb(self, counters: dict[str, int], sketches: dict[str, HyperLogLog]) -> None:
        """Fold another cell's metrics into this one."""
        for name, value in counters.items():
            self.counters[name] += value
        for name, sketch in sketches.items():
            self.sketches[name].merge(sketch)

    def snapshot(self, key: DimensionKey) -> CellSnapshot:
        return CellSnapshot(
            key=key,
            counters=dict(self.counters),
            sketches={name: s.copy() for name, s in self.sketches.items()},
            finalized=self.finalized,
        )


class _Metrics:
    """Shared metric accessors for snapshot types."""

    __slots__ = ()

    counters: dict[str, int]
    sketches: dict[str, HyperLogLog]

    def counter(self, name: str) -> int:
        return self.counters[name]

    def distinct(self, name: str) -> float:
        return self.sketches[name].estimate()

    def value(self, metric: str) -> int | float:
        """Counter value (int) or distinct estimate (float)."""
        if metric in self.counters:
            return self.counters[metric]
        if metric in self.sketches:
            return self.sketches[metric].estimate()
        raise KeyError(f"Unknown metric {metric!r}")


@dataclass(frozen=True, slots=True, eq=True)
class CellSnapshot(_Metrics):
    """Point-in-time copy of one cell."""
    key: DimensionKey
    counters: dict[str, int]
    sketches: dict[str, HyperLogLog]
    finalized: bool = False


@dataclass(frozen=True, slots=True, eq=True)
class AggregateSnapshot(_Metrics):
    """Counters summed and sketches merged over `cells` matching cells."""
    counters: dict[str, int]
    sketches: dict[str, HyperLogLog]
    cells: int = 0

    @classmethod
    def combine(cls, schema: CubeSchema, parts: Iterable[CellSnapshot]) -> AggregateSnapshot:
        """Merge snapshots; no parts yields zero counters and empty sketches."""
        counters = {name: 0 for name in schema.counter_names}
        sketches = {name: schema.new_sketch() for name in schema.distinct_names}
        n = 0
        for part in parts:
            for name, value in part.counters.items():
                counters[name] += value
            for name, sketch in part.sketches.items():
                sketches[name].merge(sketch)
            n += 1
        return cls(counters=counters, sketches=sketches, cells=n)
