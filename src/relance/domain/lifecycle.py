"""Line status state machine.

Every status change on a Line goes through `transition` so the engine, the
matching service and the CLI agree on which moves are legal.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from relance.domain.models import Line
from relance.domain.rules import ValidationError
from relance.domain.stages import LineStatus

TRANSITIONS: dict[LineStatus, frozenset[LineStatus]] = {
    LineStatus.PENDING: frozenset(
        {
            LineStatus.CONTACTED,
            LineStatus.RECEIVED,
            LineStatus.VALIDATED,
            LineStatus.REJECTED,
            LineStatus.EXPIRED,
        }
    ),
    LineStatus.CONTACTED: frozenset(
        {
            LineStatus.CONTACTED,
            LineStatus.RECEIVED,
            LineStatus.VALIDATED,
            LineStatus.REJECTED,
            LineStatus.EXPIRED,
        }
    ),
    LineStatus.RECEIVED: frozenset({LineStatus.VALIDATED, LineStatus.REJECTED}),
    LineStatus.REJECTED: frozenset({LineStatus.VALIDATED}),
    LineStatus.EXPIRED: frozenset(
        {LineStatus.RECEIVED, LineStatus.VALIDATED, LineStatus.REJECTED}
    ),
    LineStatus.VALIDATED: frozenset(),
}


class LineTransitionError(ValidationError):
    pass


def can_transition(src: LineStatus, dst: LineStatus) -> bool:
    return dst in TRANSITIONS[LineStatus(src)]


def transition(line: Line, dst: LineStatus, now: datetime) -> Line:
    if not can_transition(line.status, dst):
        raise LineTransitionError(
            f"Line {line.line_id} cannot move from {line.status.value} to {LineStatus(dst).value}."
        )
    return replace(line, status=LineStatus(dst), updated_at=now)


def record_contact(line: Line, now: datetime) -> Line:
    contacted = transition(line, LineStatus.CONTACTED, now)
    return replace(
        contacted,
        contact_count=line.contact_count + 1,
        last_contacted_at=now,
    )


def is_outreach_open(status: LineStatus) -> bool:
    return status in (LineStatus.PENDING, LineStatus.CONTACTED)


def is_match_candidate(status: LineStatus) -> bool:
    return status != LineStatus.VALIDATED


def accepts_document(status: LineStatus) -> bool:
    return can_transition(status, LineStatus.RECEIVED)
