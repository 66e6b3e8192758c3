"""Ingestion: log records into cube stores.

Public API:
    AggregationPipeline: single-threaded ingestion into one or more cubes
    IngestSummary: seen / ingested / skipped / late counts
    ParallelAggregator: worker fan-out over partitions, merged at the end
    shard: split records by a stable hash of their dimension key
"""
from distinct_cube.pipeline.aggregator import AggregationPipeline, IngestSummary
from distinct_cube.pipeline.parallel import ParallelAggregator, shard, stable_shard

__all__ = [
    "AggregationPipeline",
    "IngestSummary",
    "ParallelAggregator",
    "shard",
    "stable_shard",
]
