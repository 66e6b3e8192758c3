"""Shared type aliases used across the domain."""
from __future__ import annotations

from datetime import date
from typing import Any, TypeAlias

CustomerId: TypeAlias = int
PageName: TypeAlias = str
StateCode: TypeAlias = str      # two-letter Brazilian state, e.g. "SP"
AgeBracket: TypeAlias = str     # e.g. "18-24", "25-34"
Period: TypeAlias = date        # value of a cube's period dimension
DimensionValue: TypeAlias = Any  # hashable value or UNKNOWN
