"""Shared fixtures: record factories, a small geolocation table, cubes."""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from distinct_cube.cube.schema import CubeSchema
from distinct_cube.cube.store import CubeStore
from distinct_cube.domain.dimensions import DimensionSpec
from distinct_cube.domain.records import LogRecord

BASE_DAY = date(2024, 3, 1)  # a Friday

GEO_TABLE = {
    "10.0.0.1": "SP",
    "10.0.0.2": "RJ",
    "10.0.0.3": "MG",
}


def geo_lookup(ip: str, on: date) -> str | None:
    return GEO_TABLE.get(ip)


def record(
    customer_id: int | None = 1,
    day_offset: int = 0,
    hour: int = 12,
    source_ip: str = "10.0.0.1",
    page: str = "/economia/materia-0001",
    age_bracket: str | None = "25-34",
) -> LogRecord:
    day = BASE_DAY + timedelta(days=day_offset)
    return LogRecord(
        access_time=datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc),
        source_ip=source_ip,
        page=page,
        customer_id=customer_id,
        published_at=datetime(2024, 2, 28, 8, tzinfo=timezone.utc),
        registered_at=date(2023, 1, 15),
        age_bracket=age_bracket,
    )


@pytest.fixture
def make_record():
    return record


@pytest.fixture
def base_day() -> date:
    return BASE_DAY


@pytest.fixture
def spec() -> DimensionSpec:
    return DimensionSpec.default(geo_lookup)


@pytest.fixture
def schema(spec: DimensionSpec) -> CubeSchema:
    # p=10 keeps cell sketches at 1 KB so tests with many cells stay fast
    return CubeSchema(spec, precision=10)


@pytest.fixture
def store(schema: CubeSchema) -> CubeStore:
    return CubeStore(schema, name="test")
