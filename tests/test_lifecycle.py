from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from relance.domain import lifecycle
from relance.domain.lifecycle import LineTransitionError
from relance.domain.models import Line
from relance.domain.stages import LineStatus

NOW = datetime(2026, 1, 6, 10, 0, tzinfo=UTC)


def _line(status: LineStatus = LineStatus.PENDING) -> Line:
    created = datetime(2026, 1, 1, tzinfo=UTC)
    return Line(
        line_id="line-1",
        tenant_id="tenant-a",
        client_id="client-1",
        amount=Decimal("42.00"),
        transaction_date=date(2026, 1, 1),
        label="PRLV ORANGE",
        status=status,
        contact_count=0,
        last_contacted_at=None,
        created_at=created,
        updated_at=created,
    )


def test_every_status_has_transitions() -> None:
    assert set(lifecycle.TRANSITIONS) == set(LineStatus)


def test_validated_is_terminal() -> None:
    for status in LineStatus:
        assert not lifecycle.can_transition(LineStatus.VALIDATED, status)


def test_transition_updates_status_and_timestamp() -> None:
    line = lifecycle.transition(_line(), LineStatus.RECEIVED, NOW)
    assert line.status == LineStatus.RECEIVED
    assert line.updated_at == NOW


def test_illegal_transition_raises() -> None:
    with pytest.raises(LineTransitionError):
        lifecycle.transition(_line(LineStatus.RECEIVED), LineStatus.PENDING, NOW)
    with pytest.raises(LineTransitionError):
        lifecycle.transition(_line(LineStatus.VALIDATED), LineStatus.RECEIVED, NOW)


def test_record_contact_counts_every_touch() -> None:
    line = lifecycle.record_contact(_line(), NOW)
    line = lifecycle.record_contact(line, NOW)
    assert line.status == LineStatus.CONTACTED
    assert line.contact_count == 2
    assert line.last_contacted_at == NOW


def test_guards() -> None:
    assert lifecycle.is_outreach_open(LineStatus.PENDING)
    assert lifecycle.is_outreach_open(LineStatus.CONTACTED)
    assert not lifecycle.is_outreach_open(LineStatus.RECEIVED)
    assert lifecycle.is_match_candidate(LineStatus.REJECTED)
    assert not lifecycle.is_match_candidate(LineStatus.VALIDATED)
    assert lifecycle.accepts_document(LineStatus.EXPIRED)
    assert not lifecycle.accepts_document(LineStatus.RECEIVED)
    assert not lifecycle.accepts_document(LineStatus.REJECTED)
