from __future__ import annotations

from collections.abc import Iterable
from datetime import date
from decimal import Decimal, InvalidOperation


class ValidationError(ValueError):
    pass


def require(value: str | None, field: str) -> None:
    if value is None or str(value).strip() == "":
        raise ValidationError(f"{field} is required.")


def validate_enum(value: str | None, allowed: Iterable[str], field: str) -> None:
    if value is None:
        return
    if value not in allowed:
        raise ValidationError(f"{field} must be one of: {', '.join(sorted(allowed))}")


def parse_date(value: str | None, field: str) -> date | None:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"{field} must be YYYY-MM-DD.") from exc


def parse_amount(value: str | int | float | Decimal | None, field: str) -> Decimal | None:
    if value is None:
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError(f"{field} must be a decimal number.") from exc
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite decimal number.")
    return amount


def validate_step_orders(orders: Iterable[int], field: str = "steps") -> None:
    """Step orders must be exactly 1..n with no duplicates or gaps."""
    ordered = sorted(orders)
    if not ordered:
        raise ValidationError(f"{field} must contain at least one step.")
    expected = list(range(1, len(ordered) + 1))
    if ordered != expected:
        found = ", ".join(str(order) for order in ordered)
        raise ValidationError(f"{field} orders must be contiguous from 1 (got {found}).")


def validate_delay(hours: int, field: str = "delay_hours") -> None:
    if hours < 0:
        raise ValidationError(f"{field} must be zero or positive.")
