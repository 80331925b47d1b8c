from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from relance.domain import lifecycle, rules
from relance.domain.models import Campaign, Client, Document, Line, Step
from relance.domain.stages import CampaignTrigger, Channel, LineStatus, MatchStatus, OcrStatus
from relance.services import extraction
from relance.services.matching import MatchingService
from relance.services.utils import utc_now
from relance.store.repositories import (
    CampaignRepository,
    ClientRepository,
    DocumentRepository,
    LineRepository,
)
from relance.store.sqlite import SqliteStore


def add_client(
    store: SqliteStore,
    tenant_id: str,
    name: str,
    phone: str | None = None,
    email: str | None = None,
    contact_name: str | None = None,
) -> Client:
    return ClientRepository(store).create(tenant_id, name, phone, email, contact_name)


def add_line(
    store: SqliteStore,
    tenant_id: str,
    client_id: str | None,
    amount: str,
    transaction_date: date,
    label: str | None,
) -> Line:
    rules.require(tenant_id, "tenant")
    parsed_amount = rules.parse_amount(amount, "amount")
    if parsed_amount is None:
        raise rules.ValidationError("amount is required.")
    if client_id:
        ClientRepository(store).get_by_id(client_id)

    now = utc_now()
    line = Line(
        line_id=str(uuid4()),
        tenant_id=tenant_id,
        client_id=client_id or None,
        amount=parsed_amount,
        transaction_date=transaction_date,
        label=label,
        status=LineStatus.PENDING,
        contact_count=0,
        last_contacted_at=None,
        created_at=now,
        updated_at=now,
    )
    return LineRepository(store).create(line)


def set_line_status(store: SqliteStore, line_id: str, status: str) -> Line:
    rules.validate_enum(status, [s.value for s in LineStatus], "status")
    repo = LineRepository(store)
    line = repo.get_by_id(line_id)
    return repo.update(lifecycle.transition(line, LineStatus(status), utc_now()))


def campaign_from_mapping(data: Mapping[str, Any], tenant_id: str | None = None) -> Campaign:
    """Build a Campaign from a parsed YAML definition."""
    tenant = tenant_id or data.get("tenant")
    rules.require(tenant, "tenant")
    rules.require(data.get("name"), "name")
    trigger = data.get("trigger", CampaignTrigger.ON_PENDING.value)
    rules.validate_enum(trigger, [t.value for t in CampaignTrigger], "trigger")

    raw_steps = data.get("steps") or []
    if not isinstance(raw_steps, list):
        raise rules.ValidationError("steps must be a list.")
    steps = []
    for index, raw in enumerate(raw_steps, start=1):
        if not isinstance(raw, Mapping):
            raise rules.ValidationError(f"steps[{index}] must be a mapping.")
        channel = raw.get("channel")
        rules.require(channel, f"steps[{index}].channel")
        rules.validate_enum(channel, [c.value for c in Channel], f"steps[{index}].channel")
        config = raw.get("config") or {}
        if not isinstance(config, Mapping):
            raise rules.ValidationError(f"steps[{index}].config must be a mapping.")
        try:
            order = int(raw.get("order", index))
            delay_hours = int(raw.get("delay_hours", 0))
        except (TypeError, ValueError) as exc:
            raise rules.ValidationError(f"steps[{index}] order and delay_hours must be integers.") from exc
        steps.append(
            Step(
                order=order,
                delay_hours=delay_hours,
                channel=Channel(channel),
                template_id=str(raw.get("template_id") or ""),
                config=dict(config),
            )
        )

    now = utc_now()
    return Campaign(
        campaign_id=str(uuid4()),
        tenant_id=str(tenant),
        name=str(data["name"]),
        trigger=CampaignTrigger(trigger),
        is_active=bool(data.get("active", True)),
        quiet_hours_enabled=bool(data.get("quiet_hours", True)),
        steps=tuple(sorted(steps, key=lambda step: step.order)),
        created_at=now,
        updated_at=now,
    )


def add_campaign(store: SqliteStore, data: Mapping[str, Any], tenant_id: str | None = None) -> Campaign:
    return CampaignRepository(store).create(campaign_from_mapping(data, tenant_id))


def ingest_document(
    store: SqliteStore,
    matcher: MatchingService,
    client_id: str | None,
    payload: Mapping[str, Any],
    file_name: str | None = None,
    now: datetime | None = None,
) -> Document:
    """Store an extracted document and, once OCR is done, try to reconcile it."""
    if client_id:
        ClientRepository(store).get_by_id(client_id)
    fields = extraction.from_payload(payload)
    now = now or utc_now()
    document = Document(
        document_id=str(uuid4()),
        client_id=client_id or None,
        line_id=None,
        amount=fields.amount,
        document_date=fields.document_date,
        vendor=fields.vendor,
        ocr_status=fields.ocr_status,
        match_status=MatchStatus.PENDING,
        match_confidence=Decimal("0"),
        matched_at=None,
        created_at=now,
        updated_at=now,
    )
    repo = DocumentRepository(store)
    repo.create(document, file_name)
    if document.ocr_status == OcrStatus.COMPLETED:
        matcher.auto_match(document, now)
    return repo.get_by_id(document.document_id)
