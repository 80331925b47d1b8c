from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal


def utc_now() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def today_iso() -> str:
    return date.today().isoformat()


def to_iso(value: datetime | date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def from_iso_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def from_iso_date(value: str | None) -> date | None:
    if not value:
        return None
    return date.fromisoformat(value)


def to_decimal(value: str | None) -> Decimal | None:
    if value is None:
        return None
    return Decimal(value)
