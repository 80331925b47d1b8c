from datetime import date
from decimal import Decimal

import pytest

from relance.domain.rules import ValidationError
from relance.domain.stages import OcrStatus
from relance.services import extraction


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("120,50 €", Decimal("120.50")),
        ("$99.90", Decimal("99.90")),
        ("1 234,56", Decimal("1234.56")),
        ("1.234,56 EUR", Decimal("1234.56")),
        ("1,234.56", Decimal("1234.56")),
        (42, Decimal("42")),
        (19.9, Decimal("19.9")),
    ],
)
def test_parse_amount(raw, expected: Decimal) -> None:
    assert extraction.parse_amount(raw) == expected


@pytest.mark.parametrize(
    "raw",
    [None, "", "€", "n/a", True, "NaN", "Infinity", "-inf €", float("nan"), Decimal("Infinity")],
)
def test_parse_amount_unreadable(raw) -> None:
    assert extraction.parse_amount(raw) is None


@pytest.mark.parametrize(
    "raw",
    ["2026-01-15", "15/01/2026", "15-01-2026", "15.01.2026", "2026/01/15", "15 Jan 2026", "15 January 2026"],
)
def test_parse_document_date_formats(raw: str) -> None:
    assert extraction.parse_document_date(raw) == date(2026, 1, 15)


def test_parse_document_date_unreadable() -> None:
    assert extraction.parse_document_date("next tuesday") is None
    assert extraction.parse_document_date(None) is None


def test_from_payload() -> None:
    fields = extraction.from_payload({"amount": "59,99 €", "date": "03/02/2026", "vendor": "  Orange SA "})
    assert fields.amount == Decimal("59.99")
    assert fields.document_date == date(2026, 2, 3)
    assert fields.vendor == "Orange SA"
    assert fields.ocr_status == OcrStatus.COMPLETED


def test_from_payload_rejects_unknown_ocr_status() -> None:
    with pytest.raises(ValidationError):
        extraction.from_payload({"ocr_status": "done"})
