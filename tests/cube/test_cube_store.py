"""Tests for CubeStore: upsert, lifecycle, merge, compaction, roll-ups."""
from __future__ import annotations

import random
from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest

from distinct_cube.cube.cell import CubeCell
from distinct_cube.cube.schema import CubeSchema
from distinct_cube.cube.store import CubeStore, load_many
from distinct_cube.domain.dimensions import UNKNOWN, DimensionSpec, attribute, day
from distinct_cube.errors import IncompatibleSketch, InvalidConfig, PeriodClosed
from distinct_cube.sketch.hyperloglog import HyperLogLog


def _ingest(store: CubeStore, records) -> None:
    spec = store.schema.dimensions
    for r in records:
        store.upsert(spec.derive(r), r)


def _sketch_of(ids, precision: int = 10) -> HyperLogLog:
    hll = HyperLogLog(precision)
    hll.update(ids)
    return hll


def _mixed_records(make_record, n: int = 400, seed: int = 3):
    rng = random.Random(seed)
    ips = ["10.0.0.1", "10.0.0.2", "10.0.0.3", "192.0.2.9"]
    return [
        make_record(
            customer_id=rng.randint(1, 150),
            day_offset=rng.randint(0, 4),
            hour=rng.randint(0, 23),
            source_ip=rng.choice(ips),
            page=f"/p/{rng.randint(0, 5)}",
            age_bracket=rng.choice(["18-24", "25-34", None]),
        )
        for _ in range(n)
    ]


class TestUpsertAndGet:
    def test_upsert_creates_cell(self, store, spec, make_record):
        r = make_record(customer_id=7)
        store.upsert(spec.derive(r), r)
        cell = store.get(spec.derive(r))
        assert cell is not None
        assert cell.counter("records") == 1
        assert cell.sketches["customers"] == _sketch_of([7])
        assert not cell.finalized
        assert len(store) == 1

    def test_get_missing_cell_is_none(self, store, spec, make_record):
        assert store.get(spec.derive(make_record())) is None

    def test_repeat_customer_counts_once(self, store, spec, make_record):
        _ingest(store, [make_record(customer_id=7, hour=h) for h in range(5)])
        cell = store.get(spec.derive(make_record(customer_id=7)))
        assert cell.counter("records") == 5
        assert cell.sketches["customers"] == _sketch_of([7])

    def test_key_from_other_spec_rejected(self, store, make_record):
        other = DimensionSpec((day(), attribute("page")))
        r = make_record()
        with pytest.raises(InvalidConfig):
            store.upsert(other.derive(r), r)

    def test_snapshot_is_a_copy(self, store, spec, make_record):
        r = make_record(customer_id=1)
        store.upsert(spec.derive(r), r)
        snap = store.get(spec.derive(r))
        store.upsert(spec.derive(r), make_record(customer_id=2))
        assert snap.counter("records") == 1
        assert snap.sketches["customers"] == _sketch_of([1])

    def test_keys_sorted(self, store, make_record):
        _ingest(store, [make_record(day_offset=d) for d in (3, 0, 2, 1)])
        dates = [k.get("date") for k in store.keys()]
        assert dates == sorted(dates)

    def test_value_of_unknown_metric(self, store, spec, make_record):
        r = make_record()
        store.upsert(spec.derive(r), r)
        with pytest.raises(KeyError):
            store.get(spec.derive(r)).value("pageviews")


class TestRollup:
    def test_empty_rollup_is_zero(self, store):
        agg = store.rollup()
        assert agg.cells == 0
        assert agg.counter("records") == 0
        assert agg.distinct("customers") == 0.0
        assert agg.sketches["customers"].is_empty()

    def test_no_match_is_zero(self, store, make_record):
        _ingest(store, [make_record()])
        agg = store.rollup(lambda k: k.get("state") == "BA")
        assert agg.cells == 0
        assert agg.value("records") == 0

    def test_rollup_over_subset_equals_union_of_ids(self, store, make_record):
        records = _mixed_records(make_record)
        _ingest(store, records)

        agg = store.rollup(lambda k: k.get("state") == "SP")
        expected = {r.customer_id for r in records if r.source_ip == "10.0.0.1"}
        assert agg.sketches["customers"] == _sketch_of(expected)
        assert agg.counter("records") == sum(1 for r in records if r.source_ip == "10.0.0.1")

    def test_rollup_of_everything(self, store, make_record):
        records = _mixed_records(make_record)
        _ingest(store, records)
        agg = store.rollup()
        assert agg.counter("records") == len(records)
        assert agg.cells == len(store)
        assert agg.sketches["customers"] == _sketch_of({r.customer_id for r in records})

    def test_unknown_state_is_its_own_group(self, store, make_record):
        records = _mixed_records(make_record)
        _ingest(store, records)
        agg = store.rollup(lambda k: k.get("state") is UNKNOWN)
        unrouted = {r.customer_id for r in records if r.source_ip == "192.0.2.9"}
        assert agg.sketches["customers"] == _sketch_of(unrouted)

    def test_rollup_by_matches_individual_rollups(self, store, make_record):
        _ingest(store, _mixed_records(make_record))
        grouped = store.rollup_by(lambda k: k.get("page"))
        for page, agg in grouped.items():
            direct = store.rollup(lambda k, p=page: k.get("page") == p)
            assert agg == direct

    def test_rollup_by_none_excludes(self, store, make_record):
        _ingest(store, _mixed_records(make_record))
        grouped = store.rollup_by(lambda k: None)
        assert grouped == {}

    def test_rollup_by_copies_only_grouped_cells(self, store, make_record, monkeypatch):
        _ingest(store, _mixed_records(make_record))
        wanted = store.keys()[0].get("page")
        copied = []
        original = CubeCell.snapshot

        def counting(cell, key):
            copied.append(key)
            return original(cell, key)

        monkeypatch.setattr(CubeCell, "snapshot", counting)
        grouped = store.rollup_by(lambda k: k.get("page") if k.get("page") == wanted else None)
        assert list(grouped) == [wanted]
        assert copied
        assert all(k.get("page") == wanted for k in copied)


class TestOrderIndependence:
    def test_batch_split_and_order_do_not_matter(self, schema, make_record):
        records = _mixed_records(make_record)

        whole = CubeStore(schema)
        _ingest(whole, records)

        shuffled = list(records)
        random.Random(99).shuffle(shuffled)
        first = CubeStore(schema)
        second = CubeStore(schema)
        _ingest(first, shuffled[:150])
        _ingest(second, shuffled[150:])
        first.merge(second)

        assert first.snapshot() == whole.snapshot()

    def test_small_example(self, schema, make_record):
        r1 = make_record(customer_id=1)
        r2 = make_record(customer_id=2, page="/other")
        r3 = make_record(customer_id=3)

        a = CubeStore(schema)
        _ingest(a, [r1, r2, r3])

        b = CubeStore(schema)
        _ingest(b, [r3, r1])
        c = CubeStore(schema)
        _ingest(c, [r2])
        b.merge(c)

        assert a.snapshot() == b.snapshot()


class TestFinalize:
    def test_finalize_rejects_writes(self, store, spec, make_record):
        r = make_record()
        store.upsert(spec.derive(r), r)
        assert store.finalize(r.access_date) == 1
        with pytest.raises(PeriodClosed) as exc_info:
            store.upsert(spec.derive(r), r)
        assert exc_info.value.period == r.access_date
        assert store.get(spec.derive(r)).counter("records") == 1

    def test_finalize_marks_cells(self, store, spec, make_record):
        r = make_record()
        store.upsert(spec.derive(r), r)
        store.finalize(r.access_date)
        assert store.get(spec.derive(r)).finalized

    def test_other_periods_stay_open(self, store, spec, make_record, base_day):
        store.finalize(base_day)
        r = make_record(day_offset=1)
        store.upsert(spec.derive(r), r)
        assert store.is_closed(base_day)
        assert not store.is_closed(r.access_date)

    def test_finalize_empty_period(self, store, base_day):
        assert store.finalize(base_day) == 0
        assert store.closed_periods == frozenset({base_day})

    def test_finalize_is_idempotent(self, store, make_record, base_day):
        _ingest(store, [make_record(customer_id=i) for i in range(3)])
        store.finalize(base_day)
        before = store.snapshot()
        store.finalize(base_day)
        assert store.snapshot() == before

    def test_reads_work_after_finalize(self, store, make_record, base_day):
        _ingest(store, [make_record(customer_id=i) for i in range(3)])
        store.finalize(base_day)
        assert store.rollup().counter("records") == 3


class TestMerge:
    def test_incompatible_precision(self, spec):
        a = CubeStore(CubeSchema(spec, precision=10))
        b = CubeStore(CubeSchema(spec, precision=11))
        with pytest.raises(IncompatibleSketch):
            a.merge(b)

    def test_incompatible_dimensions(self, spec):
        a = CubeStore(CubeSchema(spec, precision=10))
        b = CubeStore(CubeSchema(DimensionSpec((day(),)), precision=10))
        with pytest.raises(IncompatibleSketch):
            a.merge(b)

    def test_merge_into_closed_period_writes_nothing(self, schema, make_record, base_day):
        a = CubeStore(schema)
        _ingest(a, [make_record(customer_id=1, day_offset=1)])
        a.finalize(base_day)
        b = CubeStore(schema)
        _ingest(b, [make_record(customer_id=2, day_offset=1), make_record(customer_id=3)])
        with pytest.raises(PeriodClosed):
            a.merge(b)
        assert a.rollup().counter("records") == 1

    def test_merge_carries_closed_periods(self, schema, make_record, base_day):
        a = CubeStore(schema)
        b = CubeStore(schema)
        _ingest(b, [make_record()])
        b.finalize(base_day)
        a.merge(b)
        assert a.is_closed(base_day)
        assert a.snapshot() == b.snapshot()

    def test_merge_returns_cell_count(self, schema, make_record):
        a = CubeStore(schema)
        b = CubeStore(schema)
        _ingest(b, [make_record(day_offset=d) for d in range(3)])
        assert a.merge(b) == 3

    def test_load_rejects_foreign_sketch(self, spec, make_record):
        src = CubeStore(CubeSchema(spec, precision=11))
        _ingest(src, [make_record()])
        dst = CubeStore(CubeSchema(spec, precision=10))
        with pytest.raises(IncompatibleSketch):
            dst.load(src.snapshot())
        assert len(dst) == 0

    def test_load_many_checks_every_store_first(self, schema, make_record, base_day):
        src = CubeStore(schema)
        _ingest(src, [make_record(customer_id=1, day_offset=1), make_record(customer_id=2)])
        a = CubeStore(schema, name="a")
        b = CubeStore(schema, name="b")
        b.finalize(base_day)
        with pytest.raises(PeriodClosed):
            load_many([(a, src.snapshot()), (b, src.snapshot())])
        assert len(a) == 0
        assert len(b) == 0

    def test_load_many_same_store_twice(self, schema, make_record):
        src = CubeStore(schema)
        _ingest(src, [make_record(customer_id=1), make_record(customer_id=2, day_offset=1)])
        dst = CubeStore(schema)
        assert load_many([(dst, src.snapshot()), (dst, src.snapshot())]) == 4
        assert len(dst) == 2
        assert dst.rollup().counter("records") == 4


class TestCompact:
    @pytest.fixture
    def page_store(self):
        return CubeStore(CubeSchema(DimensionSpec((day(), attribute("page"))), precision=10))

    @staticmethod
    def _first_of_month(d: date) -> date:
        return d.replace(day=1)

    def test_compact_merges_days_into_month(self, page_store, make_record):
        records = [
            make_record(customer_id=c, day_offset=d, page=p)
            for c, d, p in [(1, 1, "/a"), (2, 2, "/a"), (1, 3, "/a"), (3, 2, "/b")]
        ]
        _ingest(page_store, records)
        periods = {r.access_date for r in records}
        for p in periods:
            page_store.finalize(p)
        page_store.finalize(date(2024, 3, 1))  # empty month bucket

        removed = page_store.compact(periods, self._first_of_month)

        assert removed == 4
        assert {k.get("date") for k in page_store.keys()} == {date(2024, 3, 1)}
        assert len(page_store) == 2
        a = page_store.rollup(lambda k: k.get("page") == "/a")
        assert a.counter("records") == 3
        assert a.sketches["customers"] == _sketch_of([1, 2])
        assert all(s.finalized for s in page_store.snapshot())

    def test_compact_preserves_totals(self, page_store, make_record):
        records = [make_record(customer_id=i % 40, day_offset=i % 5) for i in range(200)]
        _ingest(page_store, records)
        before = page_store.rollup()
        periods = {r.access_date for r in records}
        for p in periods:
            page_store.finalize(p)
        page_store.compact(periods, self._first_of_month)
        after = page_store.rollup()
        assert after.counters == before.counters
        assert after.sketches == before.sketches

    def test_compact_open_period_rejected(self, page_store, make_record, base_day):
        _ingest(page_store, [make_record()])
        with pytest.raises(InvalidConfig):
            page_store.compact({base_day}, self._first_of_month)
        assert len(page_store) == 1

    def test_fine_periods_stay_closed(self, page_store, make_record):
        r = make_record(day_offset=4)
        _ingest(page_store, [r])
        page_store.finalize(r.access_date)
        page_store.finalize(date(2024, 3, 1))
        page_store.compact({r.access_date}, self._first_of_month)
        with pytest.raises(PeriodClosed):
            page_store.upsert(page_store.schema.dimensions.derive(r), r)
        assert page_store.is_closed(date(2024, 3, 1))

    def test_open_coarse_period_rejected(self, page_store, make_record, base_day):
        first = make_record(customer_id=1)
        later = [make_record(customer_id=c, day_offset=1) for c in range(2, 12)]
        _ingest(page_store, [first, *later])
        page_store.finalize(later[0].access_date)
        before = page_store.snapshot()

        with pytest.raises(InvalidConfig):
            page_store.compact({later[0].access_date}, self._first_of_month)

        assert page_store.snapshot() == before
        assert not page_store.is_closed(base_day)
        page_store.upsert(page_store.schema.dimensions.derive(first), first)
        day_one = page_store.rollup(lambda k: k.get("date") == base_day)
        assert day_one.sketches["customers"] == _sketch_of([1])

    def test_closed_coarse_period_with_cells_rejected(self, page_store, make_record, base_day):
        _ingest(page_store, [make_record(customer_id=1), make_record(customer_id=2, day_offset=1)])
        page_store.finalize(base_day)
        page_store.finalize(date(2024, 3, 2))
        with pytest.raises(InvalidConfig):
            page_store.compact({date(2024, 3, 2)}, self._first_of_month)
        assert len(page_store) == 2

    def test_coarse_period_inside_compaction_is_accepted(self, page_store, make_record, base_day):
        _ingest(page_store, [make_record(customer_id=1), make_record(customer_id=2, day_offset=1)])
        page_store.finalize(base_day)
        page_store.finalize(date(2024, 3, 2))
        assert page_store.compact({base_day, date(2024, 3, 2)}, self._first_of_month) == 2
        assert page_store.rollup().sketches["customers"] == _sketch_of([1, 2])
        assert len(page_store) == 1


class TestConcurrency:
    def test_concurrent_upserts_match_sequential(self, schema, make_record):
        records = _mixed_records(make_record, n=2000, seed=11)
        chunks = [records[i::8] for i in range(8)]

        shared = CubeStore(schema, num_stripes=4)
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda chunk: _ingest(shared, chunk), chunks))

        sequential = CubeStore(schema)
        _ingest(sequential, records)

        assert shared.rollup().counter("records") == 2000
        assert shared.snapshot() == sequential.snapshot()

    def test_reads_during_writes_see_whole_records(self, schema, make_record):
        records = [make_record(customer_id=i, hour=i % 24) for i in range(3000)]
        store = CubeStore(schema)

        def reader():
            seen = []
            for _ in range(50):
                agg = store.rollup()
                seen.append(agg.counter("records"))
            return seen

        with ThreadPoolExecutor(max_workers=3) as pool:
            writer = pool.submit(_ingest, store, records)
            readers = [pool.submit(reader) for _ in range(2)]
            writer.result()
            observed = [n for f in readers for n in f.result()]

        assert all(0 <= n <= 3000 for n in observed)
        for seen in (f.result() for f in readers):
            assert seen == sorted(seen)
        assert store.rollup().counter("records") == 3000


class TestMemoryReport:
    def test_memory_report(self, store, make_record):
        _ingest(store, [make_record(day_offset=d) for d in range(3)])
        report = store.memory_report()
        assert report == {"cells": 3, "sketches": 3, "sketch_bytes": 3 * 1024}
