"""
Decision history export (.xlsx).

Produces 5 worksheets:
    1. Decisions    — one row per exported decision (status, phase, approver,
                      selected option, signature).
    2. Audit Trail  — every audit entry of every exported decision, oldest
                      first; this is the compliance export.
    3. Versions     — every version snapshot with its scalar fields.
    4. Errors       — one row per requested id that could not be exported.
    5. Export Info  — generation timestamp, decision and failure counts.

The renderer is a collaborator: it is called after state has been read,
never inside a state-changing transaction.  Rendering failures are raised
as ExternalServiceError.  Control characters that the xlsx format cannot
hold are stripped from text cells.
"""

import io
import logging
from datetime import datetime, timezone

from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.utils.exceptions import IllegalCharacterError

from app.core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)

HEADER_FILL = PatternFill(start_color="354A5F", end_color="354A5F", fill_type="solid")
HEADER_FONT = Font(color="FFFFFF", bold=True, size=11)
THIN_BORDER = Border(
    left=Side(style="thin"),
    right=Side(style="thin"),
    top=Side(style="thin"),
    bottom=Side(style="thin"),
)
STATUS_FILLS = {
    "approved": PatternFill(start_color="27AE60", end_color="27AE60", fill_type="solid"),
    "pending": PatternFill(start_color="F39C12", end_color="F39C12", fill_type="solid"),
    "changes_requested": PatternFill(start_color="F39C12", end_color="F39C12", fill_type="solid"),
    "rejected": PatternFill(start_color="E74C3C", end_color="E74C3C", fill_type="solid"),
}

DECISION_HEADERS = [
    "Decision ID", "Title", "Status", "Phase", "Approver", "Due Date",
    "Selected Option", "Signed At", "Signer", "Version", "Created At",
]
AUDIT_HEADERS = ["Decision ID", "Decision", "#", "Action", "User", "IP Address", "Details", "Timestamp"]
VERSION_HEADERS = ["Decision ID", "Version", "Title", "Phase", "Options", "Created By", "Created At"]
ERROR_HEADERS = ["Decision ID", "Code", "Error"]


def _cell(value):
    if isinstance(value, str):
        return ILLEGAL_CHARACTERS_RE.sub("", value)
    return value


def _apply_header_style(ws, row: int, col_count: int) -> None:
    """Apply dark-header styling to an Excel row (1-indexed)."""
    for col in range(1, col_count + 1):
        cell = ws.cell(row=row, column=col)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.border = THIN_BORDER
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)


def _auto_width(ws) -> None:
    """Auto-size column widths based on content (capped at 60 chars)."""
    for col in ws.columns:
        max_len = 0
        col_letter = get_column_letter(col[0].column)
        for cell in col:
            if cell.value:
                max_len = max(max_len, min(len(str(cell.value)), 60))
        ws.column_dimensions[col_letter].width = max(max_len + 4, 12)


def _write_rows(ws, headers: list[str], rows: list[list]) -> None:
    ws.append(headers)
    _apply_header_style(ws, 1, len(headers))
    for row in rows:
        ws.append([_cell(v) for v in row])
    ws.freeze_panes = "A2"
    _auto_width(ws)


def _selected_option_title(record: dict) -> str | None:
    selected = record.get("selected_option_id")
    for option in record.get("options", []):
        if option["id"] == selected:
            return option["title"]
    return None


def render_history_workbook(records: list[dict], errors: list[dict] | None = None) -> bytes:
    """Render decision detail dicts (see decision_store.decision_detail).

    *errors* are the per-id failures of the request ({"decision_id",
    "code", "error"}); they land on the Errors sheet.

    Returns:
        bytes: Raw .xlsx file content ready to stream to the client.

    Raises:
        ExternalServiceError: the workbook could not be produced.
    """
    try:
        wb = Workbook()

        ws = wb.active
        ws.title = "Decisions"
        _write_rows(ws, DECISION_HEADERS, [
            [
                r["id"], r["title"], r["status"], r["phase"],
                r.get("approver_name") or r.get("approver_email") or r.get("approver_id"),
                r.get("due_date"), _selected_option_title(r), r.get("signed_at"),
                r.get("signer_name"), r["version"], r["created_at"],
            ]
            for r in records
        ])
        for row_idx, r in enumerate(records, start=2):
            fill = STATUS_FILLS.get(r["status"])
            if fill:
                ws.cell(row=row_idx, column=3).fill = fill

        _write_rows(wb.create_sheet("Audit Trail"), AUDIT_HEADERS, [
            [
                r["id"], r["title"], i, e["action"], e.get("user_name") or e["user_id"],
                e.get("ip_address"), e.get("details"), e["created_at"],
            ]
            for r in records
            for i, e in enumerate(r.get("audit_timeline", []), start=1)
        ])

        _write_rows(wb.create_sheet("Versions"), VERSION_HEADERS, [
            [
                r["id"], v["version_number"], v["snapshot"].get("title"), v["snapshot"].get("phase"),
                ", ".join(o["title"] for o in v["snapshot"].get("options", [])),
                v.get("created_by"), v["created_at"],
            ]
            for r in records
            for v in sorted(r.get("versions", []), key=lambda x: x["version_number"])
        ])

        _write_rows(wb.create_sheet("Errors"), ERROR_HEADERS, [
            [e["decision_id"], e.get("code"), e.get("error")] for e in errors or []
        ])

        info = wb.create_sheet("Export Info")
        info["A1"] = "Decision history export"
        info["A1"].font = Font(size=14, bold=True)
        info["A2"] = f"Generated: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}"
        info["A3"] = f"Decisions: {len(records)}"
        info["A4"] = f"Failed: {len(errors or [])}"

        buf = io.BytesIO()
        wb.save(buf)
    except (KeyError, TypeError, ValueError, OSError, IllegalCharacterError) as exc:
        logger.error("History export failed: %s", exc)
        raise ExternalServiceError("export", f"history workbook could not be rendered: {exc}") from exc

    logger.info("History workbook rendered", extra={"decision_count": len(records)})
    return buf.getvalue()
