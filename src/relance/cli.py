from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path

import typer
import yaml

from relance import __version__
from relance.channels.senders import build_dispatcher
from relance.config import (
    WorkspaceError,
    ensure_workspaces_dir,
    load_workspace,
    set_current_workspace,
    workspace_config_path,
    write_workspace_config,
)
from relance.domain import lifecycle, rules
from relance.domain.rules import ValidationError
from relance.domain.stages import LineStatus, MatchStatus
from relance.services import exports, intake
from relance.services.engine import CampaignEngine, format_cycle_report
from relance.services.events import EventLogger
from relance.services.matching import MatchingService
from relance.services.utils import today_iso
from relance.services.worker import run_forever
from relance.store.repositories import (
    CampaignRepository,
    DocumentRepository,
    ExecutionRepository,
    LineRepository,
    NotFoundError,
)
from relance.store.sqlite import PersistenceError, SqliteStore

app = typer.Typer(help="Relance CLI")
workspace_app = typer.Typer(help="Workspace management")
schema_app = typer.Typer(help="Schema operations")
client_app = typer.Typer(help="Responsible parties")
line_app = typer.Typer(help="Transaction lines awaiting a justification")
campaign_app = typer.Typer(help="Outreach campaigns")
document_app = typer.Typer(help="Inbound documents and review")
engine_app = typer.Typer(help="Campaign scheduler")
export_app = typer.Typer(help="Exports")

app.add_typer(workspace_app, name="workspace")
app.add_typer(schema_app, name="schema")
app.add_typer(client_app, name="client")
app.add_typer(line_app, name="line")
app.add_typer(campaign_app, name="campaign")
app.add_typer(document_app, name="document")
app.add_typer(engine_app, name="engine")
app.add_typer(export_app, name="export")

SCHEMA_PATH = Path("resources/schema/canonical.yaml")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@app.callback()
def main_callback(
    version: bool = typer.Option(False, "--version", help="Show version and exit."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output."),
):
    if version:
        typer.echo(__version__)
        raise typer.Exit()
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


@app.command("init")
def init() -> None:
    """Initialize directories for workspaces and outputs."""
    ensure_workspaces_dir()
    Path("data").mkdir(exist_ok=True)
    Path("exports").mkdir(exist_ok=True)
    typer.echo("Initialized relance directories.")


@workspace_app.command("add")
def workspace_add(
    name: str = typer.Argument(...),
    timezone: str | None = typer.Option(None, "--timezone", help="IANA zone for quiet hours."),
    use: bool = typer.Option(True, "--use/--no-use", help="Set as current workspace."),
    force: bool = typer.Option(
        False, "--force", help="Overwrite existing workspace config if it exists."
    ),
) -> None:
    config_path = workspace_config_path(name)
    if config_path.exists() and not force:
        raise typer.BadParameter(
            f"Workspace already exists: {config_path}. Use --force to overwrite."
        )
    config_path = write_workspace_config(name, timezone)
    if use:
        set_current_workspace(name)
    typer.echo(f"Workspace created: {config_path}")


@workspace_app.command("use")
def workspace_use(name: str = typer.Argument(...)) -> None:
    if not workspace_config_path(name).exists():
        raise typer.BadParameter(f"Workspace config not found: {workspace_config_path(name)}")
    set_current_workspace(name)
    typer.echo(f"Active workspace: {name}")


@schema_app.command("apply")
def schema_apply() -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        store.apply_schema(SCHEMA_PATH)
    except PersistenceError as exc:
        _exit_with_error(str(exc))
    typer.echo("Applied schema to local SQLite.")


@client_app.command("add")
def client_add(
    name: str = typer.Option(..., "--name"),
    tenant: str = typer.Option(..., "--tenant"),
    phone: str | None = typer.Option(None, "--phone", help="E.164 number used by messaging channels."),
    email: str | None = typer.Option(None, "--email"),
    contact: str | None = typer.Option(None, "--contact"),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        client = intake.add_client(store, tenant, name, phone, email, contact)
    except (ValidationError, PersistenceError) as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Created client: {client.client_id}")


@line_app.command("add")
def line_add(
    tenant: str = typer.Option(..., "--tenant"),
    amount: str = typer.Option(..., "--amount"),
    on: str = typer.Option(..., "--date", help="Transaction date (YYYY-MM-DD)."),
    client: str | None = typer.Option(None, "--client"),
    label: str | None = typer.Option(None, "--label"),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        transaction_date = rules.parse_date(on, "date")
        line = intake.add_line(store, tenant, client, amount, transaction_date, label)
    except (ValidationError, NotFoundError, PersistenceError) as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Created line: {line.line_id}")


@line_app.command("list")
def line_list(
    tenant: str | None = typer.Option(None, "--tenant"),
    status: str | None = typer.Option(None, "--status"),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        rules.validate_enum(status, [s.value for s in LineStatus], "status")
    except ValidationError as exc:
        _exit_with_error(str(exc))
    for line in LineRepository(store).list(tenant, status):
        typer.echo(
            f"{line.line_id} | {line.transaction_date.isoformat()} | {line.amount} | {line.label or ''} | "
            f"{line.status.value} | contacted {line.contact_count}x"
        )


@line_app.command("status")
def line_status(
    line_id: str = typer.Argument(...),
    status: str = typer.Argument(..., help="New status, e.g. rejected or expired."),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        line = intake.set_line_status(store, line_id, status)
    except (ValidationError, NotFoundError, PersistenceError) as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Line {line.line_id} is now {line.status.value}")


@line_app.command("show")
def line_show(line_id: str = typer.Argument(...)) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        line = LineRepository(store).get_by_id(line_id)
    except NotFoundError as exc:
        _exit_with_error(str(exc))
    allowed = sorted(s.value for s in lifecycle.TRANSITIONS[line.status])
    typer.echo(f"{line.line_id} | {line.amount} | {line.label or ''} | {line.status.value}")
    typer.echo(f"Allowed next statuses: {', '.join(allowed) or 'none'}")
    for execution in ExecutionRepository(store).list_for_line(line_id):
        reason = execution.stop_reason.value if execution.stop_reason else ""
        typer.echo(
            f"  {execution.campaign_id} | step {execution.current_step_order} | "
            f"{execution.status.value} {reason}".rstrip()
        )


@campaign_app.command("add")
def campaign_add(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Campaign definition (YAML)."),
    tenant: str | None = typer.Option(None, "--tenant", help="Overrides the tenant in the file."),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        _exit_with_error("Campaign definition must be a mapping.")
    try:
        campaign = intake.add_campaign(store, data, tenant)
    except (ValidationError, PersistenceError) as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Created campaign: {campaign.campaign_id} ({len(campaign.steps)} steps)")


@campaign_app.command("list")
def campaign_list(tenant: str | None = typer.Option(None, "--tenant")) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    for campaign in CampaignRepository(store).list(tenant):
        state = "active" if campaign.is_active else "inactive"
        steps = ", ".join(f"{s.order}:{s.channel.value}+{s.delay_hours}h" for s in campaign.steps)
        typer.echo(f"{campaign.campaign_id} | {campaign.tenant_id} | {campaign.name} | {state} | {steps}")


@campaign_app.command("activate")
def campaign_activate(
    campaign_id: str = typer.Argument(...),
    active: bool = typer.Option(True, "--on/--off", help="Deactivating only stops new enrollment."),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        CampaignRepository(store).set_active(campaign_id, active)
    except NotFoundError as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Campaign {campaign_id} {'activated' if active else 'deactivated'}")


@document_app.command("ingest")
def document_ingest(
    client: str | None = typer.Option(None, "--client"),
    payload: Path | None = typer.Option(None, "--payload", help="JSON file with amount/date/vendor."),
    amount: str | None = typer.Option(None, "--amount"),
    on: str | None = typer.Option(None, "--date"),
    vendor: str | None = typer.Option(None, "--vendor"),
    file_name: str | None = typer.Option(None, "--file"),
    events: bool = typer.Option(True, "--events/--no-events", help="Write events to the workspace log."),
) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    if payload is not None:
        data = json.loads(payload.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            _exit_with_error("Document payload must be a JSON object.")
    else:
        data = {"amount": amount, "date": on, "vendor": vendor}
    matcher = MatchingService(store, ws.matching, _event_logger(ws, enabled=events))
    try:
        document = intake.ingest_document(store, matcher, client, data, file_name)
    except (ValidationError, NotFoundError, PersistenceError) as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Created document: {document.document_id}")
    if document.line_id:
        typer.echo(
            f"{document.match_status.value} -> line {document.line_id} "
            f"(confidence {document.match_confidence})"
        )
    else:
        typer.echo("No matching line.")


@document_app.command("matches")
def document_matches(document_id: str = typer.Argument(...)) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        document = DocumentRepository(store).get_by_id(document_id)
    except NotFoundError as exc:
        _exit_with_error(str(exc))
    proposals = MatchingService(store, ws.matching).find_matches(document)
    if not proposals:
        typer.echo("No candidate lines.")
        return
    for proposal in proposals:
        typer.echo(f"{proposal.line_id} | {proposal.confidence} | {', '.join(proposal.reasons)}")


@document_app.command("approve")
def document_approve(document_id: str = typer.Argument(...)) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    matcher = MatchingService(store, ws.matching, _event_logger(ws, enabled=True))
    try:
        document = matcher.approve_document(document_id)
    except (ValidationError, NotFoundError, PersistenceError) as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Approved document {document.document_id}; line {document.line_id} validated")


@document_app.command("reject")
def document_reject(document_id: str = typer.Argument(...)) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    matcher = MatchingService(store, ws.matching, _event_logger(ws, enabled=True))
    try:
        document = matcher.reject_document(document_id)
    except (NotFoundError, PersistenceError) as exc:
        _exit_with_error(str(exc))
    typer.echo(f"Rejected document {document.document_id}")


@document_app.command("list")
def document_list(status: str | None = typer.Option(None, "--status")) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    try:
        rules.validate_enum(status, [s.value for s in MatchStatus], "status")
    except ValidationError as exc:
        _exit_with_error(str(exc))
    for document in DocumentRepository(store).list(status):
        typer.echo(
            f"{document.document_id} | {document.vendor or ''} | {document.amount or ''} | "
            f"{document.match_status.value} | {document.line_id or ''} | {document.match_confidence}"
        )


@engine_app.command("run-once")
def engine_run_once(
    events: bool = typer.Option(True, "--events/--no-events", help="Write events to the workspace log."),
) -> None:
    """Run a single scheduler tick."""
    engine = _build_engine(events)
    try:
        report = engine.run_cycle()
    except PersistenceError as exc:
        _exit_with_error(str(exc))
    typer.echo(format_cycle_report(report))


@engine_app.command("run")
def engine_run(
    interval: int | None = typer.Option(None, "--interval", help="Seconds between ticks."),
    max_cycles: int | None = typer.Option(None, "--max-cycles"),
    events: bool = typer.Option(True, "--events/--no-events", help="Write events to the workspace log."),
) -> None:
    """Run the scheduler until interrupted."""
    ws = _load_workspace()
    engine = _build_engine(events)
    try:
        run_forever(engine, interval or ws.engine.tick_seconds, max_cycles=max_cycles)
    except KeyboardInterrupt:
        typer.echo("Interrupted.")


@export_app.command("excel")
def export_excel(out: str = typer.Option(..., "--out")) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    exports.export_excel(store, Path(out))
    typer.echo(f"Exported Excel to {out}")


@export_app.command("csv")
def export_csv(out: str = typer.Option(..., "--out")) -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    written = exports.export_csv_tables(store, Path(out))
    typer.echo(f"Exported {len(written)} CSV files to {out}")


@app.command("snapshot")
def snapshot() -> None:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    snapshot_dir = Path("data") / "snapshots" / today_iso()
    snapshot_dir.mkdir(parents=True, exist_ok=True)
    if ws.store.sqlite_path.exists():
        shutil.copy2(ws.store.sqlite_path, snapshot_dir / "local.sqlite")
    exports.export_csv_tables(store, snapshot_dir)
    typer.echo(f"Snapshot created at {snapshot_dir}")


def _load_workspace():
    try:
        return load_workspace()
    except WorkspaceError as exc:
        typer.echo(str(exc))
        raise typer.Exit(code=1) from exc


def _build_engine(events: bool) -> CampaignEngine:
    ws = _load_workspace()
    store = SqliteStore(ws.store.sqlite_path)
    dispatcher = build_dispatcher(ws.channels)
    if not dispatcher.channels:
        typer.echo("Warning: no outreach channel is configured; due steps will be retried.", err=True)
    return CampaignEngine.from_workspace(ws, store, dispatcher, _event_logger(ws, enabled=events))


def _exit_with_error(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


def _event_logger(ws, enabled: bool) -> EventLogger:
    return EventLogger(path=ws.path / "events.ndjson", workspace=ws.name, enabled=enabled)


if __name__ == "__main__":
    app()
