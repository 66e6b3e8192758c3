"""Export and import of cube cells for an external durable store.

The library does not write files or talk to databases. It turns cells
into JSON-compatible dicts (and back) so whatever persistence layer
the caller runs can store them:

    {
        "dimensions": ["date", "weekday", "age_bracket", "page", "state"],
        "values": [["date", "2024-03-01"], ["int", 4], ["str", "25-34"],
                   ["str", "/home"], ["unknown", null]],
        "counters": {"records": 812},
        "sketches": {"customers": "<base64 of HyperLogLog.to_bytes()>"},
        "finalized": true
    }

Dimension values are tagged so a date never comes back as a string.
Sketches keep the fixed HyperLogLog byte layout, so exported cells
re-import bit-for-bit.
"""
from __future__ import annotations

import base64
import json
from datetime import date, datetime
from typing import Any

from distinct_cube.cube.cell import CellSnapshot
from distinct_cube.cube.schema import CubeSchema
from distinct_cube.cube.store import CubeStore
from distinct_cube.domain.dimensions import UNKNOWN, DimensionKey
from distinct_cube.domain.types import DimensionValue
from distinct_cube.errors import InvalidConfig
from distinct_cube.sketch.hyperloglog import HyperLogLog

FORMAT_VERSION = 1


def _encode_value(value: DimensionValue) -> list[Any]:
    if value is UNKNOWN:
        return ["unknown", None]
    # bool before int, datetime before date: subclass checks
    if isinstance(value, bool):
        return ["bool", value]
    if isinstance(value, int):
        return ["int", value]
    if isinstance(value, float):
        return ["float", value]
    if isinstance(value, str):
        return ["str", value]
    if isinstance(value, datetime):
        return ["datetime", value.isoformat()]
    if isinstance(value, date):
        return ["date", value.isoformat()]
    raise InvalidConfig(f"Cannot persist dimension value of type {type(value).__name__}")


_DECODERS = {
    "unknown": lambda v: UNKNOWN,
    "bool": bool,
    "int": int,
    "float": float,
    "str": str,
    "datetime": datetime.fromisoformat,
    "date": date.fromisoformat,
}


def _decode_value(tagged: list[Any]) -> DimensionValue:
    try:
        tag, raw = tagged
        return _DECODERS[tag](raw)
    except (KeyError, TypeError, ValueError):
        raise InvalidConfig(f"Bad tagged dimension value {tagged!r}") from None


def cell_to_dict(snapshot: CellSnapshot) -> dict[str, Any]:
    return {
        "dimensions": list(snapshot.key.names),
        "values": [_encode_value(v) for v in snapshot.key.values],
        "counters": dict(snapshot.counters),
        "sketches": {
            name: base64.b64encode(sketch.to_bytes()).decode("ascii")
            for name, sketch in snapshot.sketches.items()
        },
        "finalized": snapshot.finalized,
    }


def cell_from_dict(data: dict[str, Any]) -> CellSnapshot:
    """Rebuild a CellSnapshot. Raises InvalidConfig on malformed input."""
    try:
        key = DimensionKey(
            tuple(data["dimensions"]),
            tuple(_decode_value(v) for v in data["values"]),
        )
        counters = {name: int(v) for name, v in data["counters"].items()}
        sketches = {
            name: HyperLogLog.from_bytes(base64.b64decode(encoded))
            for name, encoded in data["sketches"].items()
        }
    except KeyError as exc:
        raise InvalidConfig(f"Cell record missing {exc.args[0]!r}") from None
    return CellSnapshot(
        key=key,
        counters=counters,
        sketches=sketches,
        finalized=bool(data.get("finalized", False)),
    )


def export_store(store: CubeStore) -> dict[str, Any]:
    """Whole-store document: closed periods plus every cell."""
    return {
        "version": FORMAT_VERSION,
        "name": store.name,
        "closed_periods": [
            _encode_value(p) for p in sorted(store.closed_periods, key=lambda p: (type(p).__name__, p))
        ],
        "cells": [cell_to_dict(snap) for snap in store.snapshot()],
    }


def import_store(
    document: dict[str, Any],
    schema: CubeSchema,
    store: CubeStore | None = None,
) -> CubeStore:
    """Load an export_store() document into `store` (or a new store).

    Cells are merged, so importing into a non-empty store combines the
    two. Closed periods are re-closed after the cells are loaded.
    """
    version = document.get("version")
    if version != FORMAT_VERSION:
        raise InvalidConfig(f"Unsupported cube export version {version!r}")
    if store is None:
        store = CubeStore(schema, name=document.get("name", "cube"))
    elif not store.schema.compatible_with(schema):
        raise InvalidConfig(f"Store {store.name!r} does not use the given schema")
    store.load(cell_from_dict(c) for c in document.get("cells", []))
    for tagged in document.get("closed_periods", []):
        store.finalize(_decode_value(tagged))
    return store


def dumps(store: CubeStore) -> str:
    return json.dumps(export_store(store), separators=(",", ":"))


def loads(text: str, schema: CubeSchema, store: CubeStore | None = None) -> CubeStore:
    return import_store(json.loads(text), schema, store)
