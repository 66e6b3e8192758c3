"""Domain model for distinct_cube.

Re-exports the public types for convenient access:
    from distinct_cube.domain import LogRecord, DimensionKey, DimensionSpec, UNKNOWN
"""
from distinct_cube.domain.dimensions import (
    UNKNOWN,
    Dimension,
    DimensionKey,
    DimensionSpec,
    GeoLookup,
    Sentinel,
    attribute,
    day,
    derive,
    geolocation,
    month,
    no_geolocation,
    weekday,
)
from distinct_cube.domain.records import LogRecord
from distinct_cube.domain.types import (
    AgeBracket,
    CustomerId,
    DimensionValue,
    PageName,
    Period,
    StateCode,
)

__all__ = [
    "UNKNOWN",
    "Dimension",
    "DimensionKey",
    "DimensionSpec",
    "GeoLookup",
    "LogRecord",
    "Sentinel",
    "attribute",
    "day",
    "derive",
    "geolocation",
    "month",
    "no_geolocation",
    "weekday",
    "AgeBracket",
    "CustomerId",
    "DimensionValue",
    "PageName",
    "Period",
    "StateCode",
]
