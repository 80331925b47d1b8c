from datetime import UTC, datetime
from zoneinfo import ZoneInfo

import pytest

from relance.domain.policy import QuietHours, StopPolicy, is_quiet_hours, stop_reason
from relance.domain.rules import ValidationError
from relance.domain.stages import LineStatus, StopReason


def test_quiet_hours_weekend_and_evening() -> None:
    # 2026-01-03 is a Saturday, 2026-01-06 a Tuesday.
    assert is_quiet_hours(datetime(2026, 1, 3, 10, 0)) is True
    assert is_quiet_hours(datetime(2026, 1, 6, 19, 30)) is True
    assert is_quiet_hours(datetime(2026, 1, 6, 10, 0)) is False


def test_quiet_hours_window_edges() -> None:
    assert is_quiet_hours(datetime(2026, 1, 6, 7, 59)) is True
    assert is_quiet_hours(datetime(2026, 1, 6, 8, 0)) is False
    assert is_quiet_hours(datetime(2026, 1, 6, 17, 59)) is False
    assert is_quiet_hours(datetime(2026, 1, 6, 18, 0)) is True
    assert is_quiet_hours(datetime(2026, 1, 4, 12, 0)) is True


def test_quiet_hours_custom_window() -> None:
    window = QuietHours(start_hour=9, end_hour=12)
    assert is_quiet_hours(datetime(2026, 1, 6, 8, 30), window) is True
    assert is_quiet_hours(datetime(2026, 1, 6, 11, 0), window) is False
    assert is_quiet_hours(datetime(2026, 1, 6, 12, 0), window) is True


def test_quiet_hours_reads_local_wall_clock() -> None:
    # 17:30 UTC is 18:30 in Paris in January.
    now = datetime(2026, 1, 6, 17, 30, tzinfo=UTC)
    assert is_quiet_hours(now) is False
    assert is_quiet_hours(now.astimezone(ZoneInfo("Europe/Paris"))) is True


def test_invalid_window_rejected() -> None:
    with pytest.raises(ValidationError):
        QuietHours(start_hour=18, end_hour=8)


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (LineStatus.PENDING, None),
        (LineStatus.CONTACTED, None),
        (LineStatus.RECEIVED, StopReason.RESOLVED_BY_DOCUMENT),
        (LineStatus.VALIDATED, StopReason.MANUALLY_VALIDATED),
        (LineStatus.REJECTED, StopReason.CLIENT_REFUSAL),
        (LineStatus.EXPIRED, StopReason.LINE_EXPIRED),
    ],
)
def test_stop_reason_default_policy(status: LineStatus, expected: StopReason | None) -> None:
    assert stop_reason(status) == expected


def test_stop_reason_policy_toggles() -> None:
    lenient = StopPolicy(stop_on_document_received=False, expired_action="continue")
    assert stop_reason(LineStatus.RECEIVED, lenient) is None
    assert stop_reason(LineStatus.EXPIRED, lenient) is None
    assert stop_reason(LineStatus.VALIDATED, lenient) == StopReason.MANUALLY_VALIDATED


def test_stop_policy_rejects_unknown_expired_action() -> None:
    with pytest.raises(ValidationError):
        StopPolicy(expired_action="ignore")
