"""Campaign execution engine.

One call to `CampaignEngine.run_cycle` is one scheduler tick: enroll pending
lines into active campaigns, then move every active execution forward by at
most one step.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from uuid import uuid4

from relance.channels.base import ChannelDispatcher, DispatchError, Recipient
from relance.config import WorkspaceConfig
from relance.domain import lifecycle, policy
from relance.domain.models import Campaign, Execution, Line, Step
from relance.domain.policy import QuietHours, StopPolicy
from relance.domain.rules import ValidationError
from relance.domain.stages import CampaignTrigger, ExecutionStatus, StopReason
from relance.services.events import EventLogger
from relance.services.utils import utc_now
from relance.store.repositories import (
    CampaignRepository,
    ClientRepository,
    ExecutionRepository,
    LineRepository,
    MessageRepository,
    NotFoundError,
    StaleExecutionError,
)
from relance.store.sqlite import PersistenceError, SqliteStore

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    enrolled: int = 0
    dispatched: int = 0
    stopped: int = 0
    completed: int = 0
    deferred: int = 0
    capped: int = 0
    failed: int = 0
    errors: int = 0
    skipped: bool = False


def format_cycle_report(report: CycleReport) -> str:
    if report.skipped:
        return "cycle skipped (previous cycle still running)"
    return (
        "cycle"
        f" enrolled={report.enrolled}"
        f" dispatched={report.dispatched}"
        f" stopped={report.stopped}"
        f" completed={report.completed}"
        f" deferred={report.deferred}"
        f" capped={report.capped}"
        f" failed={report.failed}"
        f" errors={report.errors}"
    )


class CampaignEngine:
    def __init__(
        self,
        store: SqliteStore,
        dispatcher: ChannelDispatcher,
        *,
        quiet_hours: QuietHours | None = None,
        stop_policy: StopPolicy | None = None,
        tz: tzinfo = UTC,
        max_messages_per_day: int = 3,
        events: EventLogger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.dispatcher = dispatcher
        self.quiet_hours = quiet_hours or QuietHours()
        self.stop_policy = stop_policy or StopPolicy()
        self.tz = tz
        self.max_messages_per_day = max_messages_per_day
        self.events = events
        self.clock = clock
        self.lines = LineRepository(store)
        self.clients = ClientRepository(store)
        self.campaigns = CampaignRepository(store)
        self.executions = ExecutionRepository(store)
        self.messages = MessageRepository(store)
        self._run_lock = threading.Lock()

    @classmethod
    def from_workspace(
        cls,
        ws: WorkspaceConfig,
        store: SqliteStore,
        dispatcher: ChannelDispatcher,
        events: EventLogger | None = None,
    ) -> CampaignEngine:
        return cls(
            store,
            dispatcher,
            quiet_hours=ws.engine.quiet_hours,
            stop_policy=ws.engine.stop_policy,
            tz=ws.engine.tz,
            max_messages_per_day=ws.engine.max_messages_per_day,
            events=events,
        )

    def run_cycle(self, now: datetime | None = None) -> CycleReport:
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Campaign cycle already in flight; skipping this tick")
            return CycleReport(skipped=True)
        try:
            now = now or self.clock()
            if now.tzinfo is None:
                now = now.replace(tzinfo=UTC)
            report = CycleReport()
            logger.info("Running campaign cycle at %s", now.isoformat())
            self._enroll(now, report)
            self._advance(now, report)
            logger.info(format_cycle_report(report))
            return report
        finally:
            self._run_lock.release()

    def _enroll(self, now: datetime, report: CycleReport) -> None:
        for tenant_id in self.campaigns.active_tenants():
            for campaign in self.campaigns.list_active(tenant_id):
                if campaign.trigger != CampaignTrigger.ON_PENDING:
                    continue
                try:
                    line_ids = self.executions.find_unenrolled_lines(campaign.campaign_id, tenant_id)
                except PersistenceError as exc:
                    report.errors += 1
                    logger.error("Failed to find unenrolled lines for campaign %s: %s", campaign.name, exc)
                    continue
                for line_id in line_ids:
                    self._enroll_line(campaign, line_id, now, report)

    def _enroll_line(self, campaign: Campaign, line_id: str, now: datetime, report: CycleReport) -> None:
        execution = Execution(
            execution_id=str(uuid4()),
            campaign_id=campaign.campaign_id,
            line_id=line_id,
            current_step_order=0,
            status=ExecutionStatus.PENDING,
            stop_reason=None,
            last_step_executed_at=None,
            next_step_scheduled_at=now,
            created_at=now,
            updated_at=now,
        )
        try:
            created = self.executions.create(execution)
        except PersistenceError as exc:
            report.errors += 1
            logger.error("Failed to enroll line %s in campaign %s: %s", line_id, campaign.name, exc)
            return
        if not created:
            return
        report.enrolled += 1
        logger.info("Enrolled line %s in campaign %s", line_id, campaign.name)
        self._event("enrolled", execution)

    def _advance(self, now: datetime, report: CycleReport) -> None:
        local_now = now.astimezone(self.tz)
        campaigns: dict[str, Campaign] = {}
        for execution in self.executions.find_active():
            try:
                self._advance_one(execution, now, local_now, campaigns, report)
            except NotFoundError as exc:
                logger.error("Execution %s references a missing record: %s", execution.execution_id, exc)
                self._fail(execution, now, report)
            except DispatchError as exc:
                report.errors += 1
                logger.error(
                    "Dispatch failed for execution %s (step %d); retrying next tick: %s",
                    execution.execution_id,
                    execution.current_step_order + 1,
                    exc,
                )
            except (PersistenceError, ValidationError) as exc:
                report.errors += 1
                logger.error("Failed to advance execution %s: %s", execution.execution_id, exc)

    def _advance_one(
        self,
        execution: Execution,
        now: datetime,
        local_now: datetime,
        campaigns: dict[str, Campaign],
        report: CycleReport,
    ) -> None:
        if execution.campaign_id not in campaigns:
            campaigns[execution.campaign_id] = self.campaigns.get_by_id(execution.campaign_id)
        campaign = campaigns[execution.campaign_id]
        line = self.lines.get_by_id(execution.line_id)

        reason = policy.stop_reason(line.status, self.stop_policy)
        if reason is not None:
            execution.status = ExecutionStatus.STOPPED
            execution.stop_reason = reason
            self.executions.update(execution, now)
            report.stopped += 1
            logger.info("Campaign stopped for execution %s: %s", execution.execution_id, reason.value)
            self._event("stopped", execution, reason=reason.value)
            return

        if execution.next_step_scheduled_at is None or execution.next_step_scheduled_at > now:
            return

        if campaign.quiet_hours_enabled and policy.is_quiet_hours(local_now, self.quiet_hours):
            report.deferred += 1
            logger.debug("Quiet hours: deferring execution %s", execution.execution_id)
            return

        step = campaign.step(execution.current_step_order + 1)
        if step is None:
            self._complete(execution)
            self.executions.update(execution, now)
            report.completed += 1
            self._event("completed", execution, reason=StopReason.SEQUENCE_EXHAUSTED.value)
            return

        recipient = self._recipient(line)
        if self._daily_cap_reached(recipient, local_now):
            report.capped += 1
            logger.info(
                "Daily message cap reached for client %s; deferring execution %s",
                recipient.client_id,
                execution.execution_id,
            )
            return
        message_id = self.dispatcher.send(step.channel, step.template_id, step.config, recipient)
        self._record_message(recipient, execution, step, message_id, now)

        execution.current_step_order = step.order
        execution.last_step_executed_at = now
        following = campaign.step(step.order + 1)
        if following is not None:
            execution.next_step_scheduled_at = now + timedelta(hours=following.delay_hours)
            execution.status = ExecutionStatus.RUNNING
        else:
            self._complete(execution)
        try:
            self.executions.update(execution, now)
        except StaleExecutionError:
            logger.error(
                "Step %d for execution %s was dispatched as %s but not recorded; it may be sent again",
                step.order,
                execution.execution_id,
                message_id,
            )
            raise

        report.dispatched += 1
        logger.info(
            "Dispatched step %d (%s) for line %s: %s",
            step.order,
            step.channel.value,
            line.line_id,
            message_id,
        )
        self._event("dispatched", execution, step=step.order, channel=step.channel.value, message_id=message_id)
        if execution.status == ExecutionStatus.COMPLETED:
            report.completed += 1
            self._event("completed", execution, reason=StopReason.SEQUENCE_EXHAUSTED.value)
        self._record_contact(line, now)

    def _recipient(self, line: Line) -> Recipient:
        if not line.client_id:
            raise DispatchError(f"Line {line.line_id} has no responsible client.")
        try:
            client = self.clients.get_by_id(line.client_id)
        except NotFoundError as exc:
            raise DispatchError(str(exc)) from exc
        return Recipient.for_line(client, line)

    def _daily_cap_reached(self, recipient: Recipient, local_now: datetime) -> bool:
        day_start = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        return self.messages.count_since(recipient.client_id, day_start) >= self.max_messages_per_day

    def _record_message(
        self, recipient: Recipient, execution: Execution, step: Step, message_id: str, now: datetime
    ) -> None:
        try:
            self.messages.record(
                recipient.client_id, execution.execution_id, step.order, step.channel, message_id, now
            )
        except PersistenceError as exc:
            logger.warning("Failed to log message %s for client %s: %s", message_id, recipient.client_id, exc)

    def _record_contact(self, line: Line, now: datetime) -> None:
        if not lifecycle.is_outreach_open(line.status):
            return
        try:
            self.lines.update(lifecycle.record_contact(line, now))
        except (PersistenceError, NotFoundError) as exc:
            logger.warning("Failed to mark line %s as contacted: %s", line.line_id, exc)

    def _fail(self, execution: Execution, now: datetime, report: CycleReport) -> None:
        execution.status = ExecutionStatus.FAILED
        execution.next_step_scheduled_at = None
        try:
            self.executions.update(execution, now)
        except PersistenceError as exc:
            report.errors += 1
            logger.error("Failed to mark execution %s as failed: %s", execution.execution_id, exc)
            return
        report.failed += 1
        self._event("failed", execution)

    @staticmethod
    def _complete(execution: Execution) -> None:
        execution.status = ExecutionStatus.COMPLETED
        execution.stop_reason = StopReason.SEQUENCE_EXHAUSTED
        execution.next_step_scheduled_at = None

    def _event(self, event_type: str, execution: Execution, **details: object) -> None:
        if self.events is None:
            return
        self.events.log(
            event_type=event_type,
            entity_type="execution",
            entity_id=execution.execution_id,
            details={"campaign_id": execution.campaign_id, "line_id": execution.line_id, **details},
        )
