from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from relance.domain.stages import (
    CampaignTrigger,
    Channel,
    ExecutionStatus,
    LineStatus,
    MatchStatus,
    OcrStatus,
    StopReason,
)


@dataclass(frozen=True)
class Client:
    client_id: str
    tenant_id: str
    name: str
    phone: str | None
    email: str | None
    contact_name: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Line:
    line_id: str
    tenant_id: str
    client_id: str | None
    amount: Decimal
    transaction_date: date
    label: str | None
    status: LineStatus
    contact_count: int
    last_contacted_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Step:
    order: int
    delay_hours: int
    channel: Channel
    template_id: str
    config: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Campaign:
    campaign_id: str
    tenant_id: str
    name: str
    trigger: CampaignTrigger
    is_active: bool
    quiet_hours_enabled: bool
    steps: tuple[Step, ...]
    created_at: datetime
    updated_at: datetime

    def step(self, order: int) -> Step | None:
        for step in self.steps:
            if step.order == order:
                return step
        return None

    @property
    def last_order(self) -> int:
        return max((step.order for step in self.steps), default=0)


@dataclass
class Execution:
    execution_id: str
    campaign_id: str
    line_id: str
    current_step_order: int
    status: ExecutionStatus
    stop_reason: StopReason | None
    last_step_executed_at: datetime | None
    next_step_scheduled_at: datetime | None
    created_at: datetime
    updated_at: datetime
    version: int = 0


@dataclass(frozen=True)
class Document:
    document_id: str
    client_id: str | None
    line_id: str | None
    amount: Decimal | None
    document_date: date | None
    vendor: str | None
    ocr_status: OcrStatus
    match_status: MatchStatus
    match_confidence: Decimal
    matched_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class MatchProposal:
    document_id: str
    line_id: str
    confidence: Decimal
    reasons: tuple[str, ...]
