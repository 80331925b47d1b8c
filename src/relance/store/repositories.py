"""Row mapping and queries for the tables the engines work on."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

from relance.domain import rules
from relance.domain.models import Campaign, Client, Document, Execution, Line, Step
from relance.domain.stages import (
    ACTIVE_EXECUTION_STATUSES,
    CampaignTrigger,
    Channel,
    ExecutionStatus,
    LineStatus,
    MatchStatus,
    OcrStatus,
    StopReason,
)
from relance.services.utils import (
    from_iso_date,
    from_iso_datetime,
    to_decimal,
    to_iso,
    utc_now,
)
from relance.store.sqlite import PersistenceError, SqliteStore


class NotFoundError(RuntimeError):
    pass


class StaleExecutionError(PersistenceError):
    pass


class ClientRepository:
    def __init__(self, store: SqliteStore) -> None:
        self.store = store

    def create(
        self,
        tenant_id: str,
        name: str,
        phone: str | None = None,
        email: str | None = None,
        contact_name: str | None = None,
    ) -> Client:
        rules.require(tenant_id, "tenant")
        rules.require(name, "name")
        now = utc_now()
        client = Client(
            client_id=str(uuid4()),
            tenant_id=tenant_id,
            name=name,
            phone=phone,
            email=email,
            contact_name=contact_name,
            created_at=now,
            updated_at=now,
        )
        self.store.execute(
            "INSERT INTO clients (client_id, tenant_id, name, phone, email, contact_name, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                client.client_id,
                client.tenant_id,
                client.name,
                client.phone,
                client.email,
                client.contact_name,
                to_iso(now),
                to_iso(now),
            ),
        )
        return client

    def get_by_id(self, client_id: str) -> Client:
        row = self.store.fetch_one("SELECT * FROM clients WHERE client_id = ?", (client_id,))
        if row is None:
            raise NotFoundError(f"Client not found: {client_id}")
        return Client(
            client_id=row["client_id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            phone=row["phone"],
            email=row["email"],
            contact_name=row["contact_name"],
            created_at=from_iso_datetime(row["created_at"]),
            updated_at=from_iso_datetime(row["updated_at"]),
        )


class LineRepository:
    def __init__(self, store: SqliteStore) -> None:
        self.store = store

    def create(self, line: Line) -> Line:
        self.store.execute(
            "INSERT INTO lines (line_id, tenant_id, client_id, amount, transaction_date, label, status, "
            "contact_count, last_contacted_at, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                line.line_id,
                line.tenant_id,
                line.client_id,
                str(line.amount),
                to_iso(line.transaction_date),
                line.label,
                line.status.value,
                line.contact_count,
                to_iso(line.last_contacted_at),
                to_iso(line.created_at),
                to_iso(line.updated_at),
            ),
        )
        return line

    def get_by_id(self, line_id: str) -> Line:
        row = self.store.fetch_one("SELECT * FROM lines WHERE line_id = ?", (line_id,))
        if row is None:
            raise NotFoundError(f"Line not found: {line_id}")
        return _line_from_row(row)

    def update(self, line: Line) -> Line:
        count = self.store.execute(
            "UPDATE lines SET client_id = ?, amount = ?, transaction_date = ?, label = ?, status = ?, "
            "contact_count = ?, last_contacted_at = ?, updated_at = ? WHERE line_id = ?",
            (
                line.client_id,
                str(line.amount),
                to_iso(line.transaction_date),
                line.label,
                line.status.value,
                line.contact_count,
                to_iso(line.last_contacted_at),
                to_iso(line.updated_at),
                line.line_id,
            ),
        )
        if count == 0:
            raise NotFoundError(f"Line not found: {line.line_id}")
        return line

    def list_by_client(self, client_id: str) -> list[Line]:
        rows = self.store.fetch_all(
            "SELECT * FROM lines WHERE client_id = ? ORDER BY created_at ASC, line_id ASC",
            (client_id,),
        )
        return [_line_from_row(row) for row in rows]

    def list(self, tenant_id: str | None = None, status: str | None = None) -> list[Line]:
        clauses: list[str] = []
        params: list[str] = []
        if tenant_id:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.store.fetch_all(
            f"SELECT * FROM lines {where} ORDER BY transaction_date DESC, created_at DESC", params
        )
        return [_line_from_row(row) for row in rows]


class CampaignRepository:
    def __init__(self, store: SqliteStore) -> None:
        self.store = store

    def create(self, campaign: Campaign) -> Campaign:
        rules.require(campaign.name, "name")
        rules.validate_step_orders([step.order for step in campaign.steps])
        for step in campaign.steps:
            rules.validate_delay(step.delay_hours)
            rules.require(step.template_id, f"steps[{step.order}].template_id")

        with self.store.session() as session:
            session.execute(
                "INSERT INTO campaigns (campaign_id, tenant_id, name, trigger_type, is_active, "
                "quiet_hours_enabled, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    campaign.campaign_id,
                    campaign.tenant_id,
                    campaign.name,
                    campaign.trigger.value,
                    int(campaign.is_active),
                    int(campaign.quiet_hours_enabled),
                    to_iso(campaign.created_at),
                    to_iso(campaign.updated_at),
                ),
            )
            for step in campaign.steps:
                session.execute(
                    "INSERT INTO campaign_steps (campaign_id, step_order, delay_hours, channel, "
                    "template_id, config, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        campaign.campaign_id,
                        step.order,
                        step.delay_hours,
                        step.channel.value,
                        step.template_id,
                        json.dumps(step.config, sort_keys=True),
                        to_iso(campaign.created_at),
                    ),
                )
        return campaign

    def get_by_id(self, campaign_id: str) -> Campaign:
        row = self.store.fetch_one("SELECT * FROM campaigns WHERE campaign_id = ?", (campaign_id,))
        if row is None:
            raise NotFoundError(f"Campaign not found: {campaign_id}")
        return self._hydrate(row)

    def list_active(self, tenant_id: str) -> list[Campaign]:
        rows = self.store.fetch_all(
            "SELECT * FROM campaigns WHERE tenant_id = ? AND is_active = 1 ORDER BY created_at ASC",
            (tenant_id,),
        )
        return [self._hydrate(row) for row in rows]

    def active_tenants(self) -> list[str]:
        rows = self.store.fetch_all(
            "SELECT DISTINCT tenant_id FROM campaigns WHERE is_active = 1 ORDER BY tenant_id"
        )
        return [row["tenant_id"] for row in rows]

    def list(self, tenant_id: str | None = None) -> list[Campaign]:
        if tenant_id:
            rows = self.store.fetch_all(
                "SELECT * FROM campaigns WHERE tenant_id = ? ORDER BY created_at ASC", (tenant_id,)
            )
        else:
            rows = self.store.fetch_all("SELECT * FROM campaigns ORDER BY created_at ASC")
        return [self._hydrate(row) for row in rows]

    def set_active(self, campaign_id: str, active: bool) -> None:
        count = self.store.execute(
            "UPDATE campaigns SET is_active = ?, updated_at = ? WHERE campaign_id = ?",
            (int(active), to_iso(utc_now()), campaign_id),
        )
        if count == 0:
            raise NotFoundError(f"Campaign not found: {campaign_id}")

    def _hydrate(self, row: sqlite3.Row) -> Campaign:
        step_rows = self.store.fetch_all(
            "SELECT * FROM campaign_steps WHERE campaign_id = ? ORDER BY step_order ASC",
            (row["campaign_id"],),
        )
        steps = tuple(
            Step(
                order=step["step_order"],
                delay_hours=step["delay_hours"],
                channel=Channel(step["channel"]),
                template_id=step["template_id"],
                config=json.loads(step["config"]) if step["config"] else {},
            )
            for step in step_rows
        )
        return Campaign(
            campaign_id=row["campaign_id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            trigger=CampaignTrigger(row["trigger_type"]),
            is_active=bool(row["is_active"]),
            quiet_hours_enabled=bool(row["quiet_hours_enabled"]),
            steps=steps,
            created_at=from_iso_datetime(row["created_at"]),
            updated_at=from_iso_datetime(row["updated_at"]),
        )


class ExecutionRepository:
    def __init__(self, store: SqliteStore) -> None:
        self.store = store

    def create(self, execution: Execution) -> bool:
        """Insert unless the (campaign, line) pair is already enrolled."""
        count = self.store.execute(
            "INSERT INTO campaign_executions (execution_id, campaign_id, line_id, current_step_order, status, "
            "stop_reason, last_step_executed_at, next_step_scheduled_at, version, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(campaign_id, line_id) DO NOTHING",
            (
                execution.execution_id,
                execution.campaign_id,
                execution.line_id,
                execution.current_step_order,
                execution.status.value,
                execution.stop_reason.value if execution.stop_reason else None,
                to_iso(execution.last_step_executed_at),
                to_iso(execution.next_step_scheduled_at),
                execution.version,
                to_iso(execution.created_at),
                to_iso(execution.updated_at),
            ),
        )
        return count == 1

    def update(self, execution: Execution, now: datetime | None = None) -> Execution:
        """Overwrite the mutable fields if nobody else moved the row first."""
        updated = replace(execution, version=execution.version + 1, updated_at=now or utc_now())
        count = self.store.execute(
            "UPDATE campaign_executions SET current_step_order = ?, status = ?, stop_reason = ?, "
            "last_step_executed_at = ?, next_step_scheduled_at = ?, version = ?, updated_at = ? "
            "WHERE execution_id = ? AND version = ?",
            (
                updated.current_step_order,
                updated.status.value,
                updated.stop_reason.value if updated.stop_reason else None,
                to_iso(updated.last_step_executed_at),
                to_iso(updated.next_step_scheduled_at),
                updated.version,
                to_iso(updated.updated_at),
                execution.execution_id,
                execution.version,
            ),
        )
        if count == 0:
            raise StaleExecutionError(
                f"Execution {execution.execution_id} changed since version {execution.version}."
            )
        return updated

    def get(self, execution_id: str) -> Execution:
        row = self.store.fetch_one(
            "SELECT * FROM campaign_executions WHERE execution_id = ?", (execution_id,)
        )
        if row is None:
            raise NotFoundError(f"Execution not found: {execution_id}")
        return _execution_from_row(row)

    def find_active(self) -> list[Execution]:
        placeholders = ", ".join("?" for _ in ACTIVE_EXECUTION_STATUSES)
        rows = self.store.fetch_all(
            f"SELECT * FROM campaign_executions WHERE status IN ({placeholders}) "
            "ORDER BY created_at ASC, execution_id ASC",
            [status.value for status in ACTIVE_EXECUTION_STATUSES],
        )
        return [_execution_from_row(row) for row in rows]

    def find_unenrolled_lines(self, campaign_id: str, tenant_id: str) -> list[str]:
        rows = self.store.fetch_all(
            "SELECT lines.line_id FROM lines "
            "LEFT JOIN campaign_executions ce ON lines.line_id = ce.line_id AND ce.campaign_id = ? "
            "WHERE lines.tenant_id = ? AND lines.status = ? AND ce.execution_id IS NULL "
            "ORDER BY lines.created_at ASC, lines.line_id ASC",
            (campaign_id, tenant_id, LineStatus.PENDING.value),
        )
        return [row["line_id"] for row in rows]

    def list_for_line(self, line_id: str) -> list[Execution]:
        rows = self.store.fetch_all(
            "SELECT * FROM campaign_executions WHERE line_id = ? ORDER BY created_at ASC",
            (line_id,),
        )
        return [_execution_from_row(row) for row in rows]


class DocumentRepository:
    def __init__(self, store: SqliteStore) -> None:
        self.store = store

    def create(self, document: Document, file_name: str | None = None) -> Document:
        self.store.execute(
            "INSERT INTO documents (document_id, client_id, line_id, file_name, amount, document_date, vendor, "
            "ocr_status, match_status, match_confidence, matched_at, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                document.document_id,
                document.client_id,
                document.line_id,
                file_name,
                str(document.amount) if document.amount is not None else None,
                to_iso(document.document_date),
                document.vendor,
                document.ocr_status.value,
                document.match_status.value,
                str(document.match_confidence),
                to_iso(document.matched_at),
                to_iso(document.created_at),
                to_iso(document.updated_at),
            ),
        )
        return document

    def get_by_id(self, document_id: str) -> Document:
        row = self.store.fetch_one("SELECT * FROM documents WHERE document_id = ?", (document_id,))
        if row is None:
            raise NotFoundError(f"Document not found: {document_id}")
        return _document_from_row(row)

    def update_match(
        self,
        document_id: str,
        line_id: str | None,
        confidence: Decimal,
        status: MatchStatus,
        now: datetime,
    ) -> None:
        matched_at = to_iso(now) if status == MatchStatus.AUTO_MATCHED else None
        count = self.store.execute(
            "UPDATE documents SET line_id = ?, match_confidence = ?, match_status = ?, matched_at = ?, "
            "updated_at = ? WHERE document_id = ?",
            (line_id, str(confidence), status.value, matched_at, to_iso(now), document_id),
        )
        if count == 0:
            raise NotFoundError(f"Document not found: {document_id}")

    def approve(self, document_id: str, now: datetime) -> None:
        count = self.store.execute(
            "UPDATE documents SET match_status = ?, matched_at = ?, updated_at = ? WHERE document_id = ?",
            (MatchStatus.APPROVED.value, to_iso(now), to_iso(now), document_id),
        )
        if count == 0:
            raise NotFoundError(f"Document not found: {document_id}")

    def reject(self, document_id: str, now: datetime) -> None:
        count = self.store.execute(
            "UPDATE documents SET match_status = ?, matched_at = ?, line_id = NULL, updated_at = ? "
            "WHERE document_id = ?",
            (MatchStatus.REJECTED.value, to_iso(now), to_iso(now), document_id),
        )
        if count == 0:
            raise NotFoundError(f"Document not found: {document_id}")

    def list(self, match_status: str | None = None) -> list[Document]:
        if match_status:
            rows = self.store.fetch_all(
                "SELECT * FROM documents WHERE match_status = ? ORDER BY created_at DESC",
                (match_status,),
            )
        else:
            rows = self.store.fetch_all("SELECT * FROM documents ORDER BY created_at DESC")
        return [_document_from_row(row) for row in rows]



class MessageRepository:
    """Log of messages already handed to a channel, used for the daily cap."""

    def __init__(self, store: SqliteStore) -> None:
        self.store = store

    def record(
        self,
        client_id: str,
        execution_id: str,
        step_order: int,
        channel: Channel,
        provider_message_id: str | None,
        sent_at: datetime,
    ) -> str:
        message_id = str(uuid4())
        self.store.execute(
            "INSERT INTO outbound_messages (message_id, client_id, execution_id, step_order, channel, "
            "provider_message_id, sent_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                message_id,
                client_id,
                execution_id,
                step_order,
                Channel(channel).value,
                provider_message_id,
                to_iso(sent_at.astimezone(UTC)),
            ),
        )
        return message_id

    def count_since(self, client_id: str, since: datetime) -> int:
        row = self.store.fetch_one(
            "SELECT COUNT(*) AS sent FROM outbound_messages WHERE client_id = ? AND sent_at >= ?",
            (client_id, to_iso(since.astimezone(UTC))),
        )
        return row["sent"] if row else 0

def _line_from_row(row: sqlite3.Row) -> Line:
    return Line(
        line_id=row["line_id"],
        tenant_id=row["tenant_id"],
        client_id=row["client_id"],
        amount=Decimal(row["amount"]),
        transaction_date=from_iso_date(row["transaction_date"]),
        label=row["label"],
        status=LineStatus(row["status"]),
        contact_count=row["contact_count"],
        last_contacted_at=from_iso_datetime(row["last_contacted_at"]),
        created_at=from_iso_datetime(row["created_at"]),
        updated_at=from_iso_datetime(row["updated_at"]),
    )


def _execution_from_row(row: sqlite3.Row) -> Execution:
    return Execution(
        execution_id=row["execution_id"],
        campaign_id=row["campaign_id"],
        line_id=row["line_id"],
        current_step_order=row["current_step_order"],
        status=ExecutionStatus(row["status"]),
        stop_reason=StopReason(row["stop_reason"]) if row["stop_reason"] else None,
        last_step_executed_at=from_iso_datetime(row["last_step_executed_at"]),
        next_step_scheduled_at=from_iso_datetime(row["next_step_scheduled_at"]),
        created_at=from_iso_datetime(row["created_at"]),
        updated_at=from_iso_datetime(row["updated_at"]),
        version=row["version"],
    )


def _document_from_row(row: sqlite3.Row) -> Document:
    return Document(
        document_id=row["document_id"],
        client_id=row["client_id"],
        line_id=row["line_id"],
        amount=to_decimal(row["amount"]),
        document_date=from_iso_date(row["document_date"]),
        vendor=row["vendor"],
        ocr_status=OcrStatus(row["ocr_status"]),
        match_status=MatchStatus(row["match_status"]),
        match_confidence=Decimal(row["match_confidence"]),
        matched_at=from_iso_datetime(row["matched_at"]),
        created_at=from_iso_datetime(row["created_at"]),
        updated_at=from_iso_datetime(row["updated_at"]),
    )
