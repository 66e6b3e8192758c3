"""Tests for CubeSchema validation and metric definitions."""
from __future__ import annotations

import pytest

from distinct_cube.cube.cell import AggregateSnapshot, CubeCell
from distinct_cube.cube.schema import CounterMetric, CubeSchema, DistinctMetric
from distinct_cube.domain.dimensions import DimensionSpec, attribute, day
from distinct_cube.errors import InvalidConfig


class TestCubeSchema:
    def test_defaults(self, spec):
        schema = CubeSchema(spec)
        assert schema.counter_names == ("records",)
        assert schema.distinct_names == ("customers",)
        assert schema.metric_names == ("records", "customers")
        assert schema.precision == 14
        assert schema.new_sketch().precision == 14

    def test_precision_out_of_range(self, spec):
        with pytest.raises(InvalidConfig):
            CubeSchema(spec, precision=3)
        with pytest.raises(InvalidConfig):
            CubeSchema(spec, precision=19)

    def test_duplicate_metric_names(self, spec):
        with pytest.raises(InvalidConfig):
            CubeSchema(spec, counters=("customers",))

    def test_distinct_on_unknown_field(self, spec):
        with pytest.raises(InvalidConfig):
            CubeSchema(spec, distinct={"visitors": "cookie_id"})

    def test_distinct_on_other_field(self, spec):
        schema = CubeSchema(spec, distinct={"customers": "customer_id", "ips": "source_ip"})
        assert schema.distinct_names == ("customers", "ips")

    def test_counter_objects_and_names_mix(self, spec):
        schema = CubeSchema(spec, counters=("records", CounterMetric("weighted", lambda r: 3)))
        assert schema.counter_names == ("records", "weighted")

    def test_require_metric(self, schema):
        schema.require_metric("customers")
        with pytest.raises(KeyError):
            schema.require_metric("pageviews")

    def test_is_counter(self, schema):
        assert schema.is_counter("records")
        assert not schema.is_counter("customers")

    def test_compatible_with(self, spec):
        a = CubeSchema(spec, precision=10)
        assert a.compatible_with(CubeSchema(spec, precision=10))
        assert not a.compatible_with(CubeSchema(spec, precision=11))
        assert not a.compatible_with(CubeSchema(spec, precision=10, seed=1))
        assert not a.compatible_with(
            CubeSchema(DimensionSpec((day(), attribute("page"))), precision=10)
        )
        assert not a.compatible_with(
            CubeSchema(spec, precision=10, distinct=[DistinctMetric("customers", "source_ip")])
        )


class TestCubeCell:
    def test_weighted_counter(self, spec, make_record):
        schema = CubeSchema(
            spec,
            counters=("records", CounterMetric("hours", lambda r: r.access_time.hour)),
            precision=8,
        )
        cell = CubeCell(schema)
        cell.apply(make_record(hour=5), schema)
        cell.apply(make_record(hour=7), schema)
        assert cell.counters == {"records": 2, "hours": 12}

    def test_missing_identifier_skips_sketch(self, spec, make_record):
        schema = CubeSchema(spec, precision=8)
        cell = CubeCell(schema)
        cell.apply(make_record(customer_id=None), schema)
        assert cell.counters["records"] == 1
        assert cell.sketches["customers"].is_empty()

    def test_combine_nothing(self, schema):
        agg = AggregateSnapshot.combine(schema, [])
        assert agg.cells == 0
        assert agg.value("records") == 0
        assert agg.value("customers") == 0.0
