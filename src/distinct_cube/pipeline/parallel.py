"""Fan ingestion out over worker threads, then merge.

Each worker owns private partial stores (empty copies of the target
stores), so workers never contend on a cell. When every worker is done,
the partials are merged into the targets on the calling thread. The
merge is safe for the same reason batch splitting is: counters add and
sketches take register maxima, both order-independent.

Input can arrive already partitioned (one iterable per Kafka partition,
per log file, ...) or as one iterable that shard() splits by a stable
hash of the first cube's dimension key, which keeps every record for a
given cell on one worker.

If a worker fails, its exception propagates from ingest_partitions()
and nothing is merged into the targets: the partials are discarded and
the run can simply be repeated. The same holds when a target closes a
period the workers wrote to while they ran: the merge is one
load_many() call, which raises PeriodClosed before touching any target.
"""
from __future__ import annotations

import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Sequence

from distinct_cube.cube.store import CubeStore, load_many
from distinct_cube.domain.dimensions import DimensionKey, DimensionSpec
from distinct_cube.domain.records import LogRecord
from distinct_cube.errors import MalformedRecord
from distinct_cube.pipeline.aggregator import AggregationPipeline, IngestSummary, RawRecord

log = logging.getLogger(__name__)


def stable_shard(key: DimensionKey, num_shards: int) -> int:
    """Process-independent shard index for a key.

    hash() is salted per interpreter for strings, so it cannot be used
    to route the same key consistently across runs.
    """
    digest = hashlib.blake2b(repr(key.values).encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") % num_shards


def shard(
    records: Iterable[RawRecord],
    num_shards: int,
    spec: DimensionSpec,
) -> list[list[RawRecord]]:
    """Split records into `num_shards` lists by dimension-key hash.

    Records that cannot be parsed go to shard 0, where the worker
    pipeline counts them as skipped.
    """
    if num_shards < 1:
        raise ValueError(f"num_shards must be >= 1, got {num_shards}")
    shards: list[list[RawRecord]] = [[] for _ in range(num_shards)]
    for raw in records:
        try:
            record = raw if isinstance(raw, LogRecord) else LogRecord.from_mapping(raw)
            record.validate()
        except (MalformedRecord, TypeError):
            shards[0].append(raw)
            continue
        shards[stable_shard(spec.derive(record), num_shards)].append(raw)
    return shards


class ParallelAggregator:
    """Ingest partitions concurrently into independent partial stores.

    Args:
        stores: Target stores; partial copies are merged into these.
        num_workers: Thread pool size (default 4).
    """

    def __init__(self, stores: CubeStore | Sequence[CubeStore], num_workers: int = 4) -> None:
        if isinstance(stores, CubeStore):
            stores = (stores,)
        if not stores:
            raise ValueError("ParallelAggregator needs at least one store")
        if num_workers < 1:
            raise ValueError(f"num_workers must be >= 1, got {num_workers}")
        self._stores = tuple(stores)
        self._num_workers = num_workers

    @property
    def stores(self) -> tuple[CubeStore, ...]:
        return self._stores

    def ingest(self, records: Iterable[RawRecord]) -> IngestSummary:
        """Shard a single input by key hash and ingest the shards."""
        spec = self._stores[0].schema.dimensions
        return self.ingest_partitions(shard(records, self._num_workers, spec))

    def ingest_partitions(self, partitions: Sequence[Iterable[RawRecord]]) -> IngestSummary:
        """Ingest each partition on its own worker, then merge.

        Returns the combined summary of all workers.
        """
        with ThreadPoolExecutor(max_workers=self._num_workers) as pool:
            futures = [
                pool.submit(self._run_worker, i, part)
                for i, part in enumerate(partitions)
            ]
            results = [f.result() for f in futures]

        load_many(
            (target, partial.snapshot())
            for partials, _ in results
            for target, partial in zip(self._stores, partials)
        )
        total = IngestSummary()
        for _, summary in results:
            total = total + summary
        log.info(
            "Parallel ingest: %d partitions, %d records, %d skipped, %d late",
            len(results), total.seen, total.skipped, total.late,
        )
        return total

    def _run_worker(
        self, worker_id: int, partition: Iterable[RawRecord]
    ) -> tuple[list[CubeStore], IngestSummary]:
        partials = []
        for target in self._stores:
            partial = target.empty_like(name=f"{target.name}#w{worker_id}")
            # late records must be rejected by the worker, not by the merge
            for period in target.closed_periods:
                partial.finalize(period)
            partials.append(partial)
        summary = AggregationPipeline(partials).ingest(partition)
        log.debug("Worker %d ingested %d records", worker_id, summary.ingested)
        return partials, summary
