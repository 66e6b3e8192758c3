"""Dimension keys and the specs that derive them from log records.

A DimensionKey names one cube cell: an ordered tuple of dimension
values such as (date, weekday, age_bracket, page, state). Two records
with equal derived values land in the same cell.

Every dimension value is total: a missing attribute or a failed
geolocation lookup becomes the UNKNOWN sentinel, never None, so keys
stay hashable and sortable.

Derivation is a pure function of (record, spec). The only collaborator
is the geolocation callable, which must itself be deterministic for a
given (ip, date).
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable, Iterable, Sequence

from distinct_cube.domain.records import LogRecord
from distinct_cube.domain.types import DimensionValue, StateCode
from distinct_cube.errors import InvalidConfig


class Sentinel(Enum):
    UNKNOWN = "unknown"

    def __repr__(self) -> str:
        return "UNKNOWN"


UNKNOWN = Sentinel.UNKNOWN

GeoLookup = Callable[[str, date], "StateCode | Sentinel | None"]


def _order_token(value: DimensionValue) -> tuple:
    # UNKNOWN sorts after every real value; mixed types never compare directly.
    if value is UNKNOWN:
        return (1,)
    return (0, type(value).__name__, value)


@dataclass(frozen=True, slots=True)
class DimensionKey:
    """Canonical identity of one cube cell.

    Equality and hashing cover both the dimension names and the values,
    so keys from differently-shaped cubes never collide.
    """
    names: tuple[str, ...]
    values: tuple[DimensionValue, ...]

    def __post_init__(self) -> None:
        if len(self.names) != len(self.values):
            raise InvalidConfig(
                f"Key has {len(self.names)} names but {len(self.values)} values"
            )

    @classmethod
    def of(cls, **values: DimensionValue) -> DimensionKey:
        """Build a key from keyword arguments, in argument order."""
        return cls(tuple(values), tuple(values.values()))

    def get(self, name: str) -> DimensionValue:
        try:
            return self.values[self.names.index(name)]
        except ValueError:
            raise InvalidConfig(f"Unknown dimension {name!r}; key has {self.names}") from None

    def project(self, names: Sequence[str]) -> DimensionKey:
        """Restrict the key to `names`, in the order given."""
        return DimensionKey(tuple(names), tuple(self.get(n) for n in names))

    def replace(self, name: str, value: DimensionValue) -> DimensionKey:
        idx = self.names.index(name)
        values = list(self.values)
        values[idx] = value
        return DimensionKey(self.names, tuple(values))

    def as_dict(self) -> dict[str, DimensionValue]:
        return dict(zip(self.names, self.values))

    def sort_key(self) -> tuple:
        """Total ordering token, lexicographic over the values."""
        return tuple(_order_token(v) for v in self.values)

    def __lt__(self, other: DimensionKey) -> bool:
        if not isinstance(other, DimensionKey):
            return NotImplemented
        return (self.names, self.sort_key()) < (other.names, other.sort_key())


@dataclass(frozen=True, slots=True)
class Dimension:
    """One named projection of a LogRecord.

    extract returns the dimension value, or None when the record has
    nothing to offer. None, LookupError and ValueError all resolve to
    UNKNOWN.
    """
    name: str
    extract: Callable[[LogRecord], Any]

    def resolve(self, record: LogRecord) -> DimensionValue:
        try:
            value = self.extract(record)
        except (LookupError, ValueError):
            return UNKNOWN
        return UNKNOWN if value is None else value


def day(name: str = "date") -> Dimension:
    """Access time truncated to the calendar day."""
    return Dimension(name, lambda r: r.access_time.date())


def month(name: str = "month") -> Dimension:
    """First day of the access month."""
    return Dimension(name, lambda r: r.access_time.date().replace(day=1))


def weekday(name: str = "weekday") -> Dimension:
    """Day of week of the access, 0=Monday."""
    return Dimension(name, lambda r: r.access_time.weekday())


def attribute(field: str, name: str | None = None) -> Dimension:
    """Pass a LogRecord attribute through unchanged."""
    if field not in LogRecord.__dataclass_fields__:
        raise InvalidConfig(f"LogRecord has no field {field!r}")
    return Dimension(name or field, lambda r: getattr(r, field))


def geolocation(lookup: GeoLookup, name: str = "state") -> Dimension:
    """State resolved from (source_ip, access date) by an external lookup."""
    return Dimension(name, lambda r: lookup(r.source_ip, r.access_time.date()))


def no_geolocation(ip: str, on: date) -> None:
    """Lookup that never resolves; every state becomes UNKNOWN."""
    return None


@dataclass(frozen=True, slots=True)
class DimensionSpec:
    """Ordered set of dimensions that defines a cube's cell keys.

    period names the dimension used for finalization and time windows.
    It must hold date values.
    """
    dimensions: tuple[Dimension, ...]
    period: str = "date"

    def __post_init__(self) -> None:
        object.__setattr__(self, "dimensions", tuple(self.dimensions))
        names = self.names
        if not names:
            raise InvalidConfig("DimensionSpec needs at least one dimension")
        if len(set(names)) != len(names):
            raise InvalidConfig(f"Duplicate dimension names in {names}")
        if self.period not in names:
            raise InvalidConfig(f"Period dimension {self.period!r} not in {names}")

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(d.name for d in self.dimensions)

    def require(self, names: Iterable[str]) -> None:
        """Raise InvalidConfig if any of `names` is not a dimension here."""
        missing = [n for n in names if n not in self.names]
        if missing:
            raise InvalidConfig(f"Unknown dimensions {missing}; cube has {self.names}")

    def derive(self, record: LogRecord) -> DimensionKey:
        return DimensionKey(self.names, tuple(d.resolve(record) for d in self.dimensions))

    @classmethod
    def default(cls, lookup: GeoLookup = no_geolocation) -> DimensionSpec:
        """(date, weekday, age_bracket, page, state)."""
        return cls(
            (
                day(),
                weekday(),
                attribute("age_bracket"),
                attribute("page"),
                geolocation(lookup),
            )
        )


def derive(record: LogRecord, spec: DimensionSpec) -> DimensionKey:
    """Derive the cell key for `record` under `spec`.

    Deterministic: the same record and spec always produce the same key.
    """
    return spec.derive(record)
