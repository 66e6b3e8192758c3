"""Simulate news-site access logs for demos, tests and the CLI.

Traffic pattern:
  - num_customers customers, each with a fixed age bracket, a
    registration date and a home IP (so a home state)
  - num_pages article pages with a Zipf-like distribution
    (the first few pages take most of the traffic)
  - a daily active fraction of the customer base, picked per day, so
    DAU is well below MAU, like real readership
  - a small share of IPs no geolocation table knows (state UNKNOWN)
  - optional malformed records (missing customer_id)

Everything is driven by one seeded random.Random, so the same
arguments always yield the same records.
"""
from __future__ import annotations

import ipaddress
import random
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator

from distinct_cube.domain.records import LogRecord
from distinct_cube.domain.types import StateCode

STATES = [
    "SP", "RJ", "MG", "BA", "RS", "PR", "PE", "CE", "PA", "SC",
    "GO", "MA", "AM", "ES", "PB", "RN", "MT", "AL", "PI", "DF",
    "MS", "SE", "RO", "TO", "AC", "AP", "RR",
]
AGE_BRACKETS = ["18-24", "25-34", "35-44", "45-54", "55-64", "65+"]
_SECTIONS = ["politica", "economia", "esportes", "cultura", "tecnologia", "mundo"]
_UNROUTED_NET = "203.0.113."  # TEST-NET-3, never geolocated


class StaticGeoLookup:
    """Geolocation collaborator backed by a fixed /16-per-state table.

    State i owns 10.i.0.0/16. Anything else resolves to None, which the
    state dimension turns into UNKNOWN.
    """

    __slots__ = ("_by_network",)

    def __init__(self, states: list[StateCode] | None = None) -> None:
        states = states or STATES
        self._by_network = {
            ipaddress.ip_network(f"10.{i}.0.0/16"): state
            for i, state in enumerate(states)
        }

    def ip_for(self, state_idx: int, host: int) -> str:
        return f"10.{state_idx}.{(host >> 8) & 0xFF}.{host & 0xFF}"

    def __call__(self, ip: str, on: date) -> StateCode | None:
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return None
        for network, state in self._by_network.items():
            if addr in network:
                return state
        return None


class TrafficGenerator:
    """Generate reproducible access logs spread over consecutive days."""

    __slots__ = (
        "_rng", "_geo", "_customers", "_pages", "_page_weights",
        "_start", "_days", "_records_per_day", "_active_fraction",
        "_malformed_rate", "_unknown_ip_rate",
    )

    def __init__(
        self,
        num_customers: int = 5_000,
        num_pages: int = 50,
        days: int = 30,
        records_per_day: int = 2_000,
        start: date = date(2024, 3, 1),
        active_fraction: float = 0.2,
        malformed_rate: float = 0.0,
        unknown_ip_rate: float = 0.02,
        seed: int = 42,
    ) -> None:
        if num_customers < 1 or num_pages < 1 or days < 1:
            raise ValueError("num_customers, num_pages and days must be positive")
        self._rng = random.Random(seed)
        self._geo = StaticGeoLookup()
        self._start = start
        self._days = days
        self._records_per_day = records_per_day
        self._active_fraction = active_fraction
        self._malformed_rate = malformed_rate
        self._unknown_ip_rate = unknown_ip_rate
        self._pages = self._generate_pages(num_pages)
        # Zipf weights: page i has weight 1/(i+1)
        self._page_weights = [1.0 / (i + 1) for i in range(num_pages)]
        self._customers = self._generate_customers(num_customers)

    def _generate_pages(self, n: int) -> list[tuple[str, datetime]]:
        pages = []
        for i in range(n):
            section = self._rng.choice(_SECTIONS)
            published = datetime.combine(
                self._start - timedelta(days=self._rng.randint(0, 10)),
                time(hour=self._rng.randint(5, 22)),
                tzinfo=timezone.utc,
            )
            pages.append((f"/{section}/materia-{i:04d}", published))
        return pages

    def _generate_customers(self, n: int) -> list[tuple[int, str, date, str]]:
        customers = []
        for customer_id in range(1, n + 1):
            state_idx = self._rng.randrange(len(STATES))
            ip = self._geo.ip_for(state_idx, self._rng.randrange(1, 65_000))
            registered = self._start - timedelta(days=self._rng.randint(0, 720))
            customers.append(
                (customer_id, self._rng.choice(AGE_BRACKETS), registered, ip)
            )
        return customers

    @property
    def geo_lookup(self) -> StaticGeoLookup:
        return self._geo

    @property
    def start(self) -> date:
        return self._start

    @property
    def end(self) -> date:
        return self._start + timedelta(days=self._days - 1)

    def stream(self) -> Iterator[LogRecord]:
        """Yield records day by day, in access-time order within a day."""
        n_active = max(1, int(len(self._customers) * self._active_fraction))
        for day_offset in range(self._days):
            day = self._start + timedelta(days=day_offset)
            active = self._rng.sample(self._customers, n_active)
            offsets = sorted(
                self._rng.uniform(0, 86_400) for _ in range(self._records_per_day)
            )
            for offset in offsets:
                yield self._make_record(day, offset, self._rng.choice(active))

    def generate(self) -> list[LogRecord]:
        return list(self.stream())

    def _make_record(
        self, day: date, offset: float, customer: tuple[int, str, date, str]
    ) -> LogRecord:
        customer_id, age_bracket, registered, ip = customer
        page, published = self._rng.choices(self._pages, weights=self._page_weights, k=1)[0]
        if self._rng.random() < self._unknown_ip_rate:
            ip = _UNROUTED_NET + str(self._rng.randint(1, 254))
        access = datetime.combine(day, time(), tzinfo=timezone.utc) + timedelta(seconds=offset)
        return LogRecord(
            access_time=access,
            source_ip=ip,
            page=page,
            customer_id=None if self._rng.random() < self._malformed_rate else customer_id,
            published_at=published,
            registered_at=registered,
            age_bracket=age_bracket,
        )
