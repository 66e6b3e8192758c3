"""HyperLogLog cardinality sketch.

Answers the question: "How many distinct customers hit this cube cell?"
without storing every customer ID. A sketch holds 2^p one-byte
registers no matter how many identifiers are fed to it, at the cost of
a standard error of roughly 1.04 / sqrt(2^p).

The identifier is hashed to 64 bits. The low p bits select a register;
the remaining 64 - p bits contribute their leading-zero run (+1). Each
register keeps the largest run it has seen, which is a noisy estimate
of log2 of the number of distinct items routed to it. A harmonic mean
across all registers turns that into a usable estimate.

Registers only ever move up, and merging is an element-wise max, so two
sketches built over any two identifier sets merge into exactly the
sketch that would have been built over their union. This is what lets
the cube answer roll-ups over arbitrary groups of cells.

Wire format (big-endian, fixed size per precision):
    3 bytes  magic b"HLL"
    1 byte   format version
    1 byte   precision p
    8 bytes  hash seed
    2^p      registers, one byte each

References:
    Flajolet et al., "HyperLogLog: the analysis of a near-optimal
    cardinality estimation algorithm", 2007.
"""

from __future__ import annotations

import array
import hashlib
import math
import struct
from typing import Iterable, Union

from distinct_cube.errors import IncompatibleSketch, InvalidConfig

Identifier = Union[str, int, bytes]

MIN_PRECISION = 4
MAX_PRECISION = 18
DEFAULT_PRECISION = 14

_MAGIC = b"HLL"
_VERSION = 1
_HEADER = struct.Struct("!3sBBQ")
_MAX_SEED = (1 << 64) - 1
_TWO_POW_64 = 2.0 ** 64


def _identifier_bytes(item: Identifier) -> bytes:
    """Canonical byte form of an identifier.

    Integers are hashed through their decimal text, so customer 42 and
    the string "42" land in the same register.
    """
    if isinstance(item, bytes):
        return item
    if isinstance(item, str):
        return item.encode("utf-8")
    return str(item).encode("utf-8")


def _hash64(item: Identifier, seed_bytes: bytes) -> int:
    """Hash an identifier to a 64-bit integer using seeded SHA-256."""
    digest = hashlib.sha256(seed_bytes + _identifier_bytes(item)).digest()
    return int.from_bytes(digest[:8], "big")


def _rank(value: int, width: int) -> int:
    """Leading zeros of `value` inside a `width`-bit window, plus one.

    Ranges from 1 (top bit set) to width + 1 (value is zero).
    """
    return width - value.bit_length() + 1


def _alpha(m: int) -> float:
    if m == 16:
        return 0.673
    if m == 32:
        return 0.697
    if m == 64:
        return 0.709
    return 0.7213 / (1.0 + 1.079 / m)


class HyperLogLog:
    """Mergeable approximate distinct counter.

    Parameters:
        precision: Register-index bits, 4..18 (default 14 = 16384
            registers = 16 KB, ~0.81% standard error).
        seed: Hash seed. Sketches only merge with sketches that share
            both precision and seed.

    Typical precision values:
        p=10: 1024 registers, ~1 KB, ~3.25% error
        p=12: 4096 registers, ~4 KB, ~1.63% error
        p=14: 16384 registers, ~16 KB, ~0.81% error
        p=16: 65536 registers, ~64 KB, ~0.41% error
    """

    __slots__ = ("_p", "_m", "_seed", "_seed_bytes", "_width", "_registers")

    def __init__(self, precision: int = DEFAULT_PRECISION, seed: int = 0) -> None:
        if not (MIN_PRECISION <= precision <= MAX_PRECISION):
            raise InvalidConfig(
                f"Precision must be {MIN_PRECISION}..{MAX_PRECISION}, got {precision}"
            )
        if not (0 <= seed <= _MAX_SEED):
            raise InvalidConfig(f"Seed must fit in an unsigned 64-bit integer, got {seed}")
        self._p = precision
        self._m = 1 << precision
        self._seed = seed
        self._seed_bytes = seed.to_bytes(8, "big")
        self._width = 64 - precision
        self._registers = array.array("B", bytes(self._m))

    @property
    def precision(self) -> int:
        return self._p

    @property
    def seed(self) -> int:
        return self._seed

    @property
    def num_registers(self) -> int:
        return self._m

    def registers(self) -> bytes:
        """Copy of the register array."""
        return self._registers.tobytes()

    def add(self, item: Identifier) -> None:
        """Insert an identifier. Re-inserting the same identifier is a no-op."""
        h = _hash64(item, self._seed_bytes)
        idx = h & (self._m - 1)
        rank = _rank(h >> self._p, self._width)
        if rank > self._registers[idx]:
            self._registers[idx] = rank

    def update(self, items: Iterable[Identifier]) -> None:
        for item in items:
            self.add(item)

    def estimate(self) -> float:
        """Estimate the number of distinct identifiers inserted.

        Uses linear counting while many registers are still empty and
        the log correction once the raw estimate nears the 2^64 hash
        space. Deterministic for a given register state.
        """
        m = self._m
        indicator = math.fsum(2.0 ** (-r) for r in self._registers)
        raw = _alpha(m) * m * m / indicator

        if raw <= 2.5 * m:
            zeros = self._registers.count(0)
            if zeros > 0:
                return m * math.log(m / zeros)
            return raw

        if raw > _TWO_POW_64 / 30.0:
            return -_TWO_POW_64 * math.log(1.0 - raw / _TWO_POW_64)

        return raw

    def count(self) -> int:
        """Rounded estimate."""
        return int(round(self.estimate()))

    def is_empty(self) -> bool:
        return not any(self._registers)

    def merge(self, other: HyperLogLog) -> None:
        """Merge another sketch into this one (union).

        Raises IncompatibleSketch if precision or seed differ: silently
        merging those would undercount.
        """
        self._check_compatible(other)
        mine = self._registers
        theirs = other._registers
        for i in range(self._m):
            if theirs[i] > mine[i]:
                mine[i] = theirs[i]

    def copy(self) -> HyperLogLog:
        clone = HyperLogLog(self._p, self._seed)
        clone._registers = array.array("B", self._registers)
        return clone

    @classmethod
    def union(
        cls,
        sketches: Iterable[HyperLogLog],
        precision: int = DEFAULT_PRECISION,
        seed: int = 0,
    ) -> HyperLogLog:
        """Fresh sketch holding the union of `sketches`.

        An empty iterable yields an empty sketch with the given settings.
        """
        result = cls(precision, seed)
        for sketch in sketches:
            result.merge(sketch)
        return result

    def memory_bytes(self) -> int:
        """Approximate memory used by the registers."""
        return self._m

    def standard_error(self) -> float:
        """Theoretical standard error for this precision."""
        return 1.04 / math.sqrt(self._m)

    def to_bytes(self) -> bytes:
        return _HEADER.pack(_MAGIC, _VERSION, self._p, self._seed) + self._registers.tobytes()

    @classmethod
    def from_bytes(cls, data: bytes) -> HyperLogLog:
        """Rebuild a sketch from `to_bytes()` output.

        Raises InvalidConfig on a bad header, wrong length, or a register
        value no hash could have produced.
        """
        if len(data) < _HEADER.size:
            raise InvalidConfig(f"Sketch payload too short: {len(data)} bytes")
        magic, version, precision, seed = _HEADER.unpack_from(data)
        if magic != _MAGIC:
            raise InvalidConfig(f"Bad sketch magic: {magic!r}")
        if version != _VERSION:
            raise InvalidConfig(f"Unsupported sketch format version {version}")
        sketch = cls(precision, seed)
        body = data[_HEADER.size:]
        if len(body) != sketch._m:
            raise InvalidConfig(
                f"Expected {sketch._m} register bytes for precision {precision}, "
                f"got {len(body)}"
            )
        if body and max(body) > sketch._width + 1:
            raise InvalidConfig("Register value out of range for precision")
        sketch._registers = array.array("B", body)
        return sketch

    def _check_compatible(self, other: HyperLogLog) -> None:
        if self._p != other._p:
            raise IncompatibleSketch(
                f"Cannot merge sketches with different precision: "
                f"{self._p} vs {other._p}"
            )
        if self._seed != other._seed:
            raise IncompatibleSketch(
                f"Cannot merge sketches with different hash seeds: "
                f"{self._seed} vs {other._seed}"
            )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HyperLogLog):
            return NotImplemented
        return (
            self._p == other._p
            and self._seed == other._seed
            and self._registers == other._registers
        )

    def __repr__(self) -> str:
        return f"HyperLogLog(precision={self._p}, seed={self._seed}, estimate~{self.count()})"
