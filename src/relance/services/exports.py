from __future__ import annotations

import csv
from collections.abc import Iterable
from pathlib import Path

from openpyxl import Workbook
from openpyxl.styles import Font

from relance.store.sqlite import SqliteStore

TABLES = [
    "clients",
    "lines",
    "campaigns",
    "campaign_steps",
    "campaign_executions",
    "documents",
    "outbound_messages",
]

# Read-only views that join tables for follow-up work.
REPORTS = {
    "execution_progress": (
        "SELECT campaigns.name AS campaign, lines.line_id, lines.label, lines.amount, lines.status AS line_status, "
        "ce.current_step_order, ce.status, ce.stop_reason, ce.next_step_scheduled_at "
        "FROM campaign_executions ce "
        "JOIN campaigns ON ce.campaign_id = campaigns.campaign_id "
        "JOIN lines ON ce.line_id = lines.line_id "
        "ORDER BY campaigns.name, ce.created_at"
    ),
    "review_queue": (
        "SELECT documents.document_id, documents.file_name, documents.amount, documents.vendor, "
        "documents.match_confidence, lines.line_id, lines.label, lines.amount AS line_amount "
        "FROM documents JOIN lines ON documents.line_id = lines.line_id "
        "WHERE documents.match_status = 'pending' "
        "ORDER BY documents.match_confidence DESC, documents.created_at"
    ),
}


def export_excel(store: SqliteStore, out_path: Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    wb = Workbook()
    wb.remove(wb.active)

    for table in TABLES:
        ws = wb.create_sheet(title=table)
        _write_sheet(ws, store.fetch_all(f"SELECT * FROM {table}"))
    for name, query in REPORTS.items():
        ws = wb.create_sheet(title=name)
        _write_sheet(ws, store.fetch_all(query))

    wb.save(out_path)


def export_csv_tables(store: SqliteStore, out_dir: Path) -> list[Path]:
    out_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for table in TABLES:
        written.append(_write_csv(out_dir / f"{table}.csv", store.fetch_all(f"SELECT * FROM {table}")))
    for name, query in REPORTS.items():
        written.append(_write_csv(out_dir / f"{name}.csv", store.fetch_all(query)))
    return written


def _write_csv(csv_path: Path, rows: list) -> Path:
    headers = list(rows[0].keys()) if rows else []
    with csv_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(headers)
        for row in rows:
            writer.writerow([row[h] for h in headers])
    return csv_path


def _write_sheet(ws, rows: Iterable) -> None:
    rows = list(rows)
    if not rows:
        return
    headers = list(rows[0].keys())
    ws.append(headers)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    ws.freeze_panes = "A2"
    for row in rows:
        ws.append([row[h] for h in headers])
