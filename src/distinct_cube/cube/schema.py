"""CubeSchema: which cells a cube has and which metrics each cell holds.

A schema pairs a DimensionSpec (how to key a record) with two kinds of
metric:

    counters   exact integer sums, one increment per record by default
    distinct   one HyperLogLog per metric, fed from a LogRecord field

All sketches in a cube share one precision and seed so that any two
cells can be merged. Two stores can be merged only if their schemas
agree on all of the above.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Union

from distinct_cube.domain.dimensions import DimensionSpec
from distinct_cube.domain.records import LogRecord
from distinct_cube.errors import InvalidConfig
from distinct_cube.sketch.hyperloglog import (
    DEFAULT_PRECISION,
    MAX_PRECISION,
    MIN_PRECISION,
    HyperLogLog,
)

DEFAULT_COUNTERS = ("records",)
DEFAULT_DISTINCT = {"customers": "customer_id"}


@dataclass(frozen=True, slots=True)
class CounterMetric:
    """Exact counter. weight(record) is added per record (default 1)."""
    name: str
    weight: Callable[[LogRecord], int] | None = None

    def amount(self, record: LogRecord) -> int:
        return 1 if self.weight is None else self.weight(record)


@dataclass(frozen=True, slots=True)
class DistinctMetric:
    """Approximate distinct count over one LogRecord field."""
    name: str
    field: str

    def identifier(self, record: LogRecord):
        return getattr(record, self.field)


CounterLike = Union[str, CounterMetric]


@dataclass(frozen=True, slots=True)
class CubeSchema:
    """Shape of a cube: dimensions plus metric definitions.

    Args:
        dimensions: How records map to cell keys.
        counters: Counter names or CounterMetric objects.
        distinct: Mapping of metric name -> LogRecord field, or
            DistinctMetric objects.
        precision: HyperLogLog precision for every sketch in the cube.
        seed: HyperLogLog hash seed for every sketch in the cube.
    """
    dimensions: DimensionSpec
    counters: tuple[CounterMetric, ...] = DEFAULT_COUNTERS
    distinct: tuple[DistinctMetric, ...] = field(default_factory=lambda: dict(DEFAULT_DISTINCT))
    precision: int = DEFAULT_PRECISION
    seed: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "counters", _normalize_counters(self.counters))
        object.__setattr__(self, "distinct", _normalize_distinct(self.distinct))

        if not (MIN_PRECISION <= self.precision <= MAX_PRECISION):
            raise InvalidConfig(
                f"Precision must be {MIN_PRECISION}..{MAX_PRECISION}, got {self.precision}"
            )
        names = [c.name for c in self.counters] + [d.name for d in self.distinct]
        if len(set(names)) != len(names):
            raise InvalidConfig(f"Metric names must be unique across counters and distinct: {names}")
        for metric in self.distinct:
            if metric.field not in LogRecord.__dataclass_fields__:
                raise InvalidConfig(
                    f"Distinct metric {metric.name!r} reads unknown field {metric.field!r}"
                )

    @property
    def counter_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.counters)

    @property
    def distinct_names(self) -> tuple[str, ...]:
        return tuple(d.name for d in self.distinct)

    @property
    def metric_names(self) -> tuple[str, ...]:
        return self.counter_names + self.distinct_names

    def is_counter(self, metric: str) -> bool:
        return metric in self.counter_names

    def require_metric(self, metric: str) -> None:
        if metric not in self.metric_names:
            raise KeyError(f"Unknown metric {metric!r}; cube has {self.metric_names}")

    def new_sketch(self) -> HyperLogLog:
        return HyperLogLog(self.precision, self.seed)

    def compatible_with(self, other: CubeSchema) -> bool:
        """Whether cells of `other` can be merged into cells of this schema."""
        return (
            self.dimensions.names == other.dimensions.names
            and self.dimensions.period == other.dimensions.period
            and self.counter_names == other.counter_names
            and self.distinct == other.distinct
            and self.precision == other.precision
            and self.seed == other.seed
        )


def _normalize_counters(counters: Iterable[CounterLike]) -> tuple[CounterMetric, ...]:
    if isinstance(counters, str):
        counters = (counters,)
    return tuple(c if isinstance(c, CounterMetric) else CounterMetric(c) for c in counters)


def _normalize_distinct(
    distinct: Mapping[str, str] | Iterable[DistinctMetric],
) -> tuple[DistinctMetric, ...]:
    if isinstance(distinct, Mapping):
        return tuple(DistinctMetric(name, fld) for name, fld in distinct.items())
    return tuple(distinct)
