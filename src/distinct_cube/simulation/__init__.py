"""Synthetic access-log traffic for demos and tests."""
from distinct_cube.simulation.traffic import (
    AGE_BRACKETS,
    STATES,
    StaticGeoLookup,
    TrafficGenerator,
)

__all__ = [
    "AGE_BRACKETS",
    "STATES",
    "StaticGeoLookup",
    "TrafficGenerator",
]
