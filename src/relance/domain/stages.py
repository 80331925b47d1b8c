from __future__ import annotations

from enum import Enum


class LineStatus(str, Enum):
    PENDING = "pending"
    CONTACTED = "contacted"
    RECEIVED = "received"
    VALIDATED = "validated"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_EXECUTION_STATUSES = (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)


class StopReason(str, Enum):
    RESOLVED_BY_DOCUMENT = "resolved-by-document"
    MANUALLY_VALIDATED = "manually-validated"
    CLIENT_REFUSAL = "client-refusal"
    LINE_EXPIRED = "line-expired"
    SEQUENCE_EXHAUSTED = "sequence-exhausted"


class CampaignTrigger(str, Enum):
    ON_PENDING = "on_pending"


class Channel(str, Enum):
    MESSAGE = "message"
    VOICE = "voice"
    NOTIFICATION = "notification"
    TEMPLATED_MESSAGE = "templated_message"


class MatchStatus(str, Enum):
    PENDING = "pending"
    AUTO_MATCHED = "auto_matched"
    APPROVED = "approved"
    REJECTED = "rejected"


class OcrStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
