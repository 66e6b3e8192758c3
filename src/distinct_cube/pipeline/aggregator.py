"""Aggregation pipeline: log records in, cube cells updated.

For each record:
    1. Parse it if it arrived as a raw mapping
    2. Validate it (MalformedRecord -> counted skip, batch continues)
    3. Derive one DimensionKey per configured cube
    4. Upsert into each cube's store (PeriodClosed -> counted as late)

The pipeline owns no aggregation state of its own beyond the summary
counters: stores are built by the caller and passed in, so several
pipelines (or worker threads) can feed the same or different stores.

ingest() pulls from any iterable lazily, so it works on a finite batch
and on an unbounded generator alike; for a stream that never ends,
call ingest_one() per record and read `summary` whenever needed.
"""
from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence, Union

from distinct_cube.cube.store import CubeStore
from distinct_cube.domain.records import LogRecord
from distinct_cube.errors import MalformedRecord, PeriodClosed

log = logging.getLogger(__name__)

RawRecord = Union[LogRecord, Mapping]


@dataclass(slots=True)
class IngestSummary:
    """What happened to a batch of records.

    seen:      records pulled from the input
    ingested:  records applied to at least one cube
    skipped:   malformed records, never applied anywhere
    late:      upserts rejected because the period was finalized
    """
    seen: int = 0
    ingested: int = 0
    skipped: int = 0
    late: int = 0
    skip_reasons: Counter = field(default_factory=Counter)

    def __add__(self, other: IngestSummary) -> IngestSummary:
        if not isinstance(other, IngestSummary):
            return NotImplemented
        return IngestSummary(
            seen=self.seen + other.seen,
            ingested=self.ingested + other.ingested,
            skipped=self.skipped + other.skipped,
            late=self.late + other.late,
            skip_reasons=self.skip_reasons + other.skip_reasons,
        )

    def copy(self) -> IngestSummary:
        return self + IngestSummary()


class AggregationPipeline:
    """Feeds log records into one or more cube stores.

    Args:
        stores: The cubes to update. Each derives its own key from the
            record using its schema's DimensionSpec.
    """

    def __init__(self, stores: CubeStore | Sequence[CubeStore]) -> None:
        if isinstance(stores, CubeStore):
            stores = (stores,)
        if not stores:
            raise ValueError("AggregationPipeline needs at least one store")
        self._stores = tuple(stores)
        self._summary = IngestSummary()
        self._lock = threading.Lock()  # protects _summary only

    @property
    def stores(self) -> tuple[CubeStore, ...]:
        return self._stores

    @property
    def summary(self) -> IngestSummary:
        """Running totals since construction (a copy)."""
        with self._lock:
            return self._summary.copy()

    def ingest(self, records: Iterable[RawRecord]) -> IngestSummary:
        """Ingest every record from `records`; return this call's summary."""
        batch = IngestSummary()
        try:
            for raw in records:
                self._ingest_into(raw, batch)
        finally:
            # records already applied to cells must show up in the totals
            with self._lock:
                self._summary = self._summary + batch
        if batch.skipped or batch.late:
            log.info(
                "Ingested %d of %d records (%d malformed, %d late upserts)",
                batch.ingested, batch.seen, batch.skipped, batch.late,
            )
        return batch

    def ingest_one(self, raw: RawRecord) -> bool:
        """Ingest a single record. Returns True if any cube accepted it."""
        one = IngestSummary()
        self._ingest_into(raw, one)
        with self._lock:
            self._summary = self._summary + one
        return one.ingested == 1

    def _ingest_into(self, raw: RawRecord, summary: IngestSummary) -> None:
        summary.seen += 1
        try:
            if isinstance(raw, LogRecord):
                record = raw
            elif isinstance(raw, Mapping):
                record = LogRecord.from_mapping(raw)
            else:
                raise MalformedRecord(f"unsupported record type {type(raw).__name__}")
            record.validate()
        except MalformedRecord as exc:
            summary.skipped += 1
            summary.skip_reasons[exc.reason] += 1
            log.debug("Skipping malformed record: %s", exc.reason)
            return

        accepted = False
        for store in self._stores:
            key = store.schema.dimensions.derive(record)
            try:
                store.upsert(key, record)
            except PeriodClosed as exc:
                summary.late += 1
                log.debug("%s: late record for closed period %s", store.name, exc.period)
                continue
            accepted = True
        if accepted:
            summary.ingested += 1
