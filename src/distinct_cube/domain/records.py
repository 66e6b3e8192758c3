"""LogRecord: one page access, as produced by the log-ingestion pipeline.

Each record says who (customer, age bracket, registration date), what
(page and when it was published), when (access time) and from where
(source IP, later resolved to a state by the geolocation collaborator).

Records are immutable once built. Validation is separate from
construction so the pipeline can hold a record, find it unusable, and
count it as a skip instead of crashing the batch.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Mapping

from distinct_cube.domain.types import AgeBracket, CustomerId, PageName
from distinct_cube.errors import MalformedRecord


@dataclass(frozen=True, slots=True)
class LogRecord:
    """Immutable access-log record.

    customer_id is Optional on purpose: upstream logs do contain
    anonymous hits, and the pipeline needs to see them to report them.
    """
    access_time: datetime
    source_ip: str
    page: PageName
    customer_id: CustomerId | None = None
    published_at: datetime | None = None
    registered_at: date | None = None
    age_bracket: AgeBracket | None = None

    @property
    def access_date(self) -> date:
        return self.access_time.date()

    @property
    def weekday(self) -> int:
        """Day of week (0=Monday, 6=Sunday)."""
        return self.access_time.weekday()

    def validate(self) -> None:
        """Raise MalformedRecord if the record cannot feed a cube."""
        if not isinstance(self.access_time, datetime):
            raise MalformedRecord("access_time missing or not a datetime")
        if self.customer_id is None:
            raise MalformedRecord("customer_id missing")
        if isinstance(self.customer_id, bool) or not isinstance(self.customer_id, int):
            raise MalformedRecord(
                f"customer_id must be an integer, got {type(self.customer_id).__name__}"
            )
        if not self.page:
            raise MalformedRecord("page missing")
        if not isinstance(self.page, str):
            raise MalformedRecord(f"page must be a string, got {type(self.page).__name__}")
        if self.age_bracket is not None and not isinstance(self.age_bracket, str):
            raise MalformedRecord(
                f"age_bracket must be a string, got {type(self.age_bracket).__name__}"
            )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> LogRecord:
        """Build a record from a decoded log line.

        Timestamps may be datetimes, ISO-8601 strings or Unix epoch
        seconds (read as UTC). Raises MalformedRecord for anything that
        cannot be parsed; a missing customer_id is kept as None so that
        validate() reports it.
        """
        try:
            access_time = _parse_datetime(raw["access_time"])
            page = raw["page"]
        except KeyError as exc:
            raise MalformedRecord(f"missing field {exc.args[0]!r}") from None
        if access_time is None:
            raise MalformedRecord("access_time missing")

        customer_id = raw.get("customer_id")
        if isinstance(customer_id, str):
            try:
                customer_id = int(customer_id)
            except ValueError:
                raise MalformedRecord(f"customer_id not an integer: {customer_id!r}") from None

        return cls(
            access_time=access_time,
            source_ip=str(raw.get("source_ip", "0.0.0.0")),
            page=page,
            customer_id=customer_id,
            published_at=_parse_datetime(raw.get("published_at")),
            registered_at=_parse_date(raw.get("registered_at")),
            age_bracket=raw.get("age_bracket"),
        )


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise MalformedRecord(f"epoch timestamp out of range: {value!r}") from None
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            raise MalformedRecord(f"unparseable timestamp {value!r}") from None
    raise MalformedRecord(f"unsupported timestamp type {type(value).__name__}")


def _parse_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError:
            raise MalformedRecord(f"unparseable date {value!r}") from None
    raise MalformedRecord(f"unsupported date type {type(value).__name__}")
