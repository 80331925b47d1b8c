"""Normalize the structured fields handed over by document extraction."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from relance.domain import rules
from relance.domain.stages import OcrStatus

CURRENCY_MARKERS = ("€", "$", "£", "EUR", "USD", "GBP")
DATE_FORMATS = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%Y/%m/%d",
    "%d %b %Y",
    "%d %B %Y",
)
_SPACES_RE = re.compile(r"[\s  ]+")


@dataclass(frozen=True)
class ExtractedFields:
    amount: Decimal | None
    document_date: date | None
    vendor: str | None
    ocr_status: OcrStatus = OcrStatus.COMPLETED


def parse_amount(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return _finite(Decimal(str(value)))
    text = str(value)
    for marker in CURRENCY_MARKERS:
        text = text.replace(marker, "")
    text = _SPACES_RE.sub("", text)
    if not text:
        return None
    if "," in text and "." in text:
        # Whichever separator comes last is the decimal point.
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    else:
        text = text.replace(",", ".")
    try:
        return _finite(Decimal(text))
    except InvalidOperation:
        return None


def _finite(amount: Decimal) -> Decimal | None:
    return amount if amount.is_finite() else None


def parse_document_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_vendor(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def from_payload(payload: Mapping[str, Any]) -> ExtractedFields:
    status = payload.get("ocr_status", OcrStatus.COMPLETED.value)
    rules.validate_enum(status, [s.value for s in OcrStatus], "ocr_status")
    return ExtractedFields(
        amount=parse_amount(payload.get("amount")),
        document_date=parse_document_date(payload.get("date")),
        vendor=parse_vendor(payload.get("vendor")),
        ocr_status=OcrStatus(status),
    )
