"""The cube: schema, cells, store and persistence codec.

Public API:
    CubeSchema: dimensions + counter/distinct metric definitions
    CubeStore: thread-safe map of DimensionKey -> cell
    CellSnapshot / AggregateSnapshot: read-only views handed to callers
    export_store / import_store: JSON-compatible persistence seam
"""
from distinct_cube.cube.cell import AggregateSnapshot, CellSnapshot
from distinct_cube.cube.persistence import (
    cell_from_dict,
    cell_to_dict,
    dumps,
    export_store,
    import_store,
    loads,
)
from distinct_cube.cube.schema import CounterMetric, CubeSchema, DistinctMetric
from distinct_cube.cube.store import CubeStore

__all__ = [
    "AggregateSnapshot",
    "CellSnapshot",
    "CounterMetric",
    "CubeSchema",
    "CubeStore",
    "DistinctMetric",
    "cell_from_dict",
    "cell_to_dict",
    "dumps",
    "export_store",
    "import_store",
    "loads",
]
