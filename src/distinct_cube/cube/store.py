"""CubeStore: the owned, explicitly lifecycled map of cube cells.

Cells are created lazily by upsert() and live in lock stripes (see
concurrency.striped_locks). A cell has at most one writer at a time;
readers copy cells under read locks and never observe a half-applied
record.

Lifecycle of a period (a value of the schema's period dimension):

    open       upsert() creates and mutates cells freely
    finalized  finalize(period) closes it; upserts raise PeriodClosed
    compacted  compact() merges closed fine-grained periods into coarser
               ones and drops the fine cells

Counters are commutative sums and sketch merges are commutative,
associative and idempotent, so the final cell state does not depend on
record order or on how the input was split into batches. That is also
why partial stores built by independent workers can be merge()d.
"""
from __future__ import annotations

import logging
import threading
from contextlib import ExitStack
from typing import Callable, Hashable, Iterable, Iterator

from distinct_cube.concurrency.striped_locks import StripedLocks
from distinct_cube.cube.cell import AggregateSnapshot, CellSnapshot, CubeCell
from distinct_cube.cube.schema import CubeSchema
from distinct_cube.domain.dimensions import DimensionKey
from distinct_cube.domain.records import LogRecord
from distinct_cube.domain.types import Period
from distinct_cube.errors import IncompatibleSketch, InvalidConfig, PeriodClosed

log = logging.getLogger(__name__)

KeyPredicate = Callable[[DimensionKey], bool]


class CubeStore:
    """Thread-safe store of cube cells for one schema.

    Args:
        schema: Dimensions and metrics of every cell.
        name: Label used in logs and reports.
        num_stripes: Lock stripes (default 16, must be power of 2).
    """

    def __init__(
        self,
        schema: CubeSchema,
        name: str = "cube",
        num_stripes: int = 16,
    ) -> None:
        self._schema = schema
        self._name = name
        self._locks = StripedLocks(num_stripes)
        self._stripes: list[dict[DimensionKey, CubeCell]] = [
            {} for _ in range(num_stripes)
        ]
        self._closed: set[Period] = set()
        self._closed_lock = threading.Lock()

    @property
    def schema(self) -> CubeSchema:
        return self._schema

    @property
    def name(self) -> str:
        return self._name

    def empty_like(self, name: str | None = None) -> CubeStore:
        """A fresh, empty store with the same schema and striping."""
        return CubeStore(self._schema, name=name or self._name, num_stripes=len(self._locks))

    # -- writes --------------------------------------------------------

    def upsert(self, key: DimensionKey, record: LogRecord) -> None:
        """Apply one record to the cell for `key`, creating it if needed.

        Raises PeriodClosed if the key's period has been finalized and
        InvalidConfig if the key was derived from a different spec.
        """
        self._check_key(key)
        period = key.get(self._schema.dimensions.period)
        idx = self._locks.index(key)
        with self._locks.write(idx):
            # checked under the stripe lock so finalize() can fence writers
            if self.is_closed(period):
                raise PeriodClosed(period)
            stripe = self._stripes[idx]
            cell = stripe.get(key)
            if cell is None:
                cell = CubeCell(self._schema)
                stripe[key] = cell
            cell.apply(record, self._schema)

    def finalize(self, period: Period) -> int:
        """Close `period`. Returns the number of cells frozen.

        Idempotent. After this returns, no upsert for the period is in
        flight and every later one raises PeriodClosed.
        """
        with self._closed_lock:
            self._closed.add(period)
        period_name = self._schema.dimensions.period
        frozen = 0
        for idx in range(len(self._locks)):
            with self._locks.write(idx):
                for key, cell in self._stripes[idx].items():
                    if key.get(period_name) == period:
                        cell.finalized = True
                        frozen += 1
        log.info("%s: finalized period %s (%d cells)", self._name, period, frozen)
        return frozen

    def is_closed(self, period: Period) -> bool:
        with self._closed_lock:
            return period in self._closed

    @property
    def closed_periods(self) -> frozenset[Period]:
        with self._closed_lock:
            return frozenset(self._closed)

    def merge(self, other: CubeStore) -> int:
        """Fold every cell of `other` into this store.

        Closed periods of `other` become closed here too. Raises
        IncompatibleSketch if the schemas differ and PeriodClosed, before
        anything is written, if a cell of `other` falls in a period this
        store has already closed. Returns the number of cells merged.
        """
        if not self._schema.compatible_with(other.schema):
            raise IncompatibleSketch(
                f"Cannot merge cube {other.name!r} into {self._name!r}: schemas differ"
            )
        snapshots = other.snapshot()
        merged = self.load(snapshots)
        for period in other.closed_periods:
            if not self.is_closed(period):
                self.finalize(period)
        log.debug("%s: merged %d cells from %s", self._name, merged, other.name)
        return merged

    def load(self, snapshots: Iterable[CellSnapshot]) -> int:
        """Merge cell snapshots (e.g. from persistence) into the store.

        All-or-nothing: keys, metrics, sketch compatibility and closed
        periods are all checked under the store's write locks before
        the first write. See load_many() for several stores at once.
        """
        return load_many([(self, snapshots)])

    def compact(
        self,
        periods: Iterable[Period],
        coarsen: Callable[[Period], Period],
    ) -> int:
        """Replace the cells of closed fine periods with coarser cells.

        Each fine cell is merged into the cell whose key has the period
        value replaced by coarsen(period), e.g. the first of the month.
        Every period in `periods` must be finalized, and every coarse
        period must either be one of `periods` or a finalized period
        with no cells of its own; InvalidConfig otherwise, before any
        cell moves. Returns the number of fine cells removed.
        """
        periods = set(periods)
        open_periods = [p for p in periods if not self.is_closed(p)]
        if open_periods:
            raise InvalidConfig(f"Cannot compact periods that are still open: {sorted(open_periods)}")

        period_name = self._schema.dimensions.period
        coarse_periods = {coarsen(p) for p in periods}
        with self._locks.write_all():
            foreign = coarse_periods - periods
            open_targets = [p for p in foreign if not self.is_closed(p)]
            if open_targets:
                raise InvalidConfig(
                    f"Coarse periods {sorted(open_targets)} are open; finalize them "
                    f"or include them in the compaction"
                )
            occupied = {
                key.get(period_name)
                for stripe in self._stripes
                for key in stripe
                if key.get(period_name) in foreign
            }
            if occupied:
                raise InvalidConfig(
                    f"Coarse periods {sorted(occupied)} already hold cells of their own; "
                    f"include them in the compaction"
                )

            moved: list[tuple[DimensionKey, CubeCell]] = []
            for stripe in self._stripes:
                for key in [k for k in stripe if k.get(period_name) in periods]:
                    moved.append((key, stripe.pop(key)))
            for key, cell in moved:
                coarse_key = key.replace(period_name, coarsen(key.get(period_name)))
                stripe = self._stripes[self._locks.index(coarse_key)]
                target = stripe.get(coarse_key)
                if target is None:
                    target = CubeCell(self._schema)
                    stripe[coarse_key] = target
                target.absorb(cell.counters, cell.sketches)
                target.finalized = True
            removed = len(moved)

        log.info(
            "%s: compacted %d periods into %d (%d cells removed)",
            self._name, len(periods), len(coarse_periods), removed,
        )
        return removed

    # -- reads ---------------------------------------------------------

    def get(self, key: DimensionKey) -> CellSnapshot | None:
        """Snapshot of one cell, or None if no record has hit it."""
        idx = self._locks.index(key)
        with self._locks.read(idx):
            cell = self._stripes[idx].get(key)
            if cell is None:
                return None
            return cell.snapshot(key)

    def rollup(self, predicate: KeyPredicate | None = None) -> AggregateSnapshot:
        """Sum counters and merge sketches over cells whose key matches.

        No match is not an error: the result has zero counters and empty
        sketches.
        """
        return AggregateSnapshot.combine(self._schema, self._iter_snapshots(predicate))

    def rollup_by(
        self, group_of: Callable[[DimensionKey], Hashable | None]
    ) -> dict[Hashable, AggregateSnapshot]:
        """One rollup per group, all taken from a single consistent copy.

        group_of maps a key to its group, or None to leave the cell out;
        cells left out are never copied.
        """
        groups: dict[Hashable, list[CellSnapshot]] = {}
        with self._locks.read_all():
            for stripe in self._stripes:
                for key, cell in stripe.items():
                    group = group_of(key)
                    if group is not None:
                        groups.setdefault(group, []).append(cell.snapshot(key))
        return {
            group: AggregateSnapshot.combine(self._schema, parts)
            for group, parts in groups.items()
        }

    def keys(self) -> list[DimensionKey]:
        """All cell keys, in key order."""
        with self._locks.read_all():
            keys = [k for stripe in self._stripes for k in stripe]
        return sorted(keys, key=DimensionKey.sort_key)

    def snapshot(self, predicate: KeyPredicate | None = None) -> list[CellSnapshot]:
        """Consistent copy of all (or matching) cells, in key order."""
        snaps = list(self._iter_snapshots(predicate))
        snaps.sort(key=lambda s: s.key.sort_key())
        return snaps

    def __len__(self) -> int:
        with self._locks.read_all():
            return sum(len(stripe) for stripe in self._stripes)

    def memory_report(self) -> dict[str, int]:
        """Approximate memory usage of the cube's sketches."""
        with self._locks.read_all():
            cells = sum(len(stripe) for stripe in self._stripes)
            sketch_bytes = sum(
                sketch.memory_bytes()
                for stripe in self._stripes
                for cell in stripe.values()
                for sketch in cell.sketches.values()
            )
        return {
            "cells": cells,
            "sketches": cells * len(self._schema.distinct),
            "sketch_bytes": sketch_bytes,
        }

    # -- internals -----------------------------------------------------

    def _check_snapshot(self, snap: CellSnapshot) -> None:
        self._check_key(snap.key)
        self._check_metrics(snap)
        period = snap.key.get(self._schema.dimensions.period)
        if self.is_closed(period):
            raise PeriodClosed(period)

    def _absorb(self, snap: CellSnapshot) -> None:
        # caller holds the write lock of the key's stripe
        stripe = self._stripes[self._locks.index(snap.key)]
        cell = stripe.get(snap.key)
        if cell is None:
            cell = CubeCell(self._schema)
            stripe[snap.key] = cell
        cell.absorb(snap.counters, snap.sketches)

    def _iter_snapshots(self, predicate: KeyPredicate | None) -> Iterator[CellSnapshot]:
        # copy under the locks, hand out after release
        with self._locks.read_all():
            snaps = [
                cell.snapshot(key)
                for stripe in self._stripes
                for key, cell in stripe.items()
                if predicate is None or predicate(key)
            ]
        return iter(snaps)

    def _check_key(self, key: DimensionKey) -> None:
        if key.names != self._schema.dimensions.names:
            raise InvalidConfig(
                f"Key dimensions {key.names} do not match cube "
                f"{self._name!r} dimensions {self._schema.dimensions.names}"
            )

    def _check_metrics(self, snap: CellSnapshot) -> None:
        if set(snap.counters) != set(self._schema.counter_names) or set(
            snap.sketches
        ) != set(self._schema.distinct_names):
            raise IncompatibleSketch(
                f"Cell {snap.key} carries metrics "
                f"{sorted(snap.counters) + sorted(snap.sketches)}, cube expects "
                f"{sorted(self._schema.metric_names)}"
            )
        for name, sketch in snap.sketches.items():
            if sketch.precision != self._schema.precision or sketch.seed != self._schema.seed:
                raise IncompatibleSketch(
                    f"Sketch {name!r} of cell {snap.key} has precision "
                    f"{sketch.precision}/seed {sketch.seed}, cube uses "
                    f"{self._schema.precision}/{self._schema.seed}"
                )

    def __repr__(self) -> str:
        return f"CubeStore(name={self._name!r}, dimensions={self._schema.dimensions.names})"


def load_many(batches: Iterable[tuple[CubeStore, Iterable[CellSnapshot]]]) -> int:
    """Merge snapshot batches into one or more stores as a single step.

    Every involved store is write-locked in a fixed order and every
    snapshot is validated before the first write, so on any error
    (PeriodClosed, IncompatibleSketch, InvalidConfig) no store has
    changed. Returns the number of snapshots loaded.
    """
    grouped: dict[int, tuple[CubeStore, list[CellSnapshot]]] = {}
    for store, snapshots in batches:
        grouped.setdefault(id(store), (store, []))[1].extend(snapshots)
    ordered = [grouped[k] for k in sorted(grouped)]

    with ExitStack() as stack:
        for store, _ in ordered:
            stack.enter_context(store._locks.write_all())
        for store, snaps in ordered:
            for snap in snaps:
                store._check_snapshot(snap)
        for store, snaps in ordered:
            for snap in snaps:
                store._absorb(snap)
    return sum(len(snaps) for _, snaps in ordered)
