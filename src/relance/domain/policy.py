from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from relance.domain.rules import ValidationError, validate_enum
from relance.domain.stages import LineStatus, StopReason

EXPIRED_ACTIONS = ("stop", "continue")

# Monday=0 ... Sunday=6
WEEKEND = (5, 6)


@dataclass(frozen=True)
class QuietHours:
    start_hour: int = 8
    end_hour: int = 18

    def __post_init__(self) -> None:
        if not 0 <= self.start_hour < self.end_hour <= 24:
            raise ValidationError("quiet_hours requires 0 <= start_hour < end_hour <= 24.")


@dataclass(frozen=True)
class StopPolicy:
    stop_on_document_received: bool = True
    expired_action: str = "stop"

    def __post_init__(self) -> None:
        validate_enum(self.expired_action, EXPIRED_ACTIONS, "expired_lines")


def is_quiet_hours(t: datetime, window: QuietHours | None = None) -> bool:
    """True on weekends and outside [start_hour, end_hour) on weekdays.

    `t` is read as wall-clock time; convert to the workspace timezone first.
    """
    window = window or QuietHours()
    if t.weekday() in WEEKEND:
        return True
    return t.hour < window.start_hour or t.hour >= window.end_hour


def stop_reason(status: LineStatus, policy: StopPolicy | None = None) -> StopReason | None:
    policy = policy or StopPolicy()
    status = LineStatus(status)
    if status in (LineStatus.PENDING, LineStatus.CONTACTED):
        return None
    if status == LineStatus.RECEIVED:
        return StopReason.RESOLVED_BY_DOCUMENT if policy.stop_on_document_received else None
    if status == LineStatus.VALIDATED:
        return StopReason.MANUALLY_VALIDATED
    if status == LineStatus.REJECTED:
        return StopReason.CLIENT_REFUSAL
    if status == LineStatus.EXPIRED:
        return StopReason.LINE_EXPIRED if policy.expired_action == "stop" else None
    return None
