"""
Bulk Operation Coordinator.

Fans one action out over many decision ids.  Items are independent: each
runs through the normal single-decision service call with its own commit,
and a failure is recorded for that id while the rest carry on.  There is
never an all-or-nothing transaction across the batch.

Actions:
    remind           → {"sent": int, "errors": [...]}
    change_phase     → {"updated": int, "errors": [...]}
    export_history   → {"content": bytes, "exported": int, "errors": [...]}

Each error entry: {"decision_id", "error", "code"}.

Fan-out is bounded by BULK_MAX_WORKERS; with more than one worker the
items run on a thread pool, each inside its own app context (and so its
own session).
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import EngineError, InvalidTransitionError, ValidationError
from app.models import db
from app.models.audit import AuditAction, AuditEntityType, write_audit
from app.models.decision import DecisionPhase, DecisionStatus
from app.services import decision_lifecycle, decision_store, export_service, notifier
from app.utils.errors import error_code_for
from app.utils.helpers import versioned_write

logger = logging.getLogger(__name__)


def _resolve_ids(decision_ids) -> list[str]:
    if not isinstance(decision_ids, list) or not decision_ids:
        raise ValidationError("decision_ids must be a non-empty list",
                              details={"decision_ids": "required"})
    if not all(isinstance(i, str) and i.strip() for i in decision_ids):
        raise ValidationError("decision_ids must be strings", details={"decision_ids": "invalid"})
    ids = list(dict.fromkeys(i.strip() for i in decision_ids))
    limit = current_app.config.get("BULK_MAX_ITEMS", 500)
    if len(ids) > limit:
        raise ValidationError(f"At most {limit} decisions per bulk request",
                              details={"decision_ids": f"{len(ids)} > {limit}"})
    return ids


def _run_one(fn, decision_id: str) -> tuple[str, object, dict | None]:
    try:
        return decision_id, fn(decision_id), None
    except (EngineError, SQLAlchemyError) as exc:
        db.session.rollback()
        logger.warning(
            "Bulk item failed",
            extra={"decision_id": decision_id, "error": str(exc)},
        )
        return decision_id, None, {
            "decision_id": decision_id,
            "error": str(exc),
            "code": error_code_for(exc),
        }


def _run_per_item(ids: list[str], fn) -> list[tuple[str, object, dict | None]]:
    """Apply *fn* to every id; results come back in input order."""
    workers = int(current_app.config.get("BULK_MAX_WORKERS", 1) or 1)
    if workers <= 1 or len(ids) <= 1:
        return [_run_one(fn, i) for i in ids]

    app = current_app._get_current_object()

    def task(decision_id):
        with app.app_context():
            return _run_one(fn, decision_id)

    with ThreadPoolExecutor(max_workers=min(workers, len(ids))) as pool:
        return list(pool.map(task, ids))


# ── Actions ──────────────────────────────────────────────────────────────────


def bulk_remind(decision_ids, actor) -> dict:
    """Remind the approver of every pending decision in the list."""
    ids = _resolve_ids(decision_ids)

    def remind(decision_id):
        decision = decision_store.get_decision(decision_id)
        if DecisionStatus(decision.status) is not DecisionStatus.PENDING:
            raise InvalidTransitionError("Decision", "remind", decision.status,
                                         "only pending decisions await a response")
        if not decision.approver_email:
            raise ValidationError("Decision has no approver email",
                                  details={"approver_email": "missing"})
        with versioned_write("Decision", decision.id):
            write_audit(
                entity_type=AuditEntityType.DECISION,
                entity_id=decision.id,
                action=AuditAction.REMINDER_SENT,
                actor=actor,
                details=f"Reminder sent to {decision.approver_email}",
                payload={"approver_email": decision.approver_email, "trigger": "bulk"},
            )
        notifier.remind_approver(
            approver_email=decision.approver_email,
            decision_title=decision.title,
            due_date=decision.due_date,
            sender=actor.display_name,
        )
        return True

    outcomes = _run_per_item(ids, remind)
    errors = [err for _, _, err in outcomes if err]
    result = {"sent": len(ids) - len(errors), "errors": errors}
    logger.info("Bulk remind finished",
                extra={"actor_id": actor.id, "sent": result["sent"], "failed": len(errors)})
    return result


def bulk_change_phase(decision_ids, phase, actor) -> dict:
    """Move every listed decision to *phase* via the normal edit path."""
    try:
        phase = DecisionPhase(phase).value
    except ValueError:
        raise ValidationError(f"Invalid phase: {phase}",
                              details={"phase": f"one of {[p.value for p in DecisionPhase]}"}) from None
    ids = _resolve_ids(decision_ids)

    outcomes = _run_per_item(ids, lambda i: decision_lifecycle.change_phase(i, phase, actor))
    errors = [err for _, _, err in outcomes if err]
    result = {"updated": len(ids) - len(errors), "errors": errors}
    logger.info("Bulk phase change finished",
                extra={"actor_id": actor.id, "updated": result["updated"], "failed": len(errors)})
    return result


def bulk_export_history(decision_ids, actor) -> dict:
    """Collect full histories and render them into one workbook.

    Archived decisions are exportable and per-id failures are listed on
    the workbook's Errors sheet.  A renderer failure raises
    ExternalServiceError for the whole request.
    """
    ids = _resolve_ids(decision_ids)

    def collect(decision_id):
        decision = decision_store.get_decision(decision_id, include_archived=True)
        return decision_store.decision_detail(decision)

    outcomes = _run_per_item(ids, collect)
    records = [rec for _, rec, err in outcomes if err is None]
    errors = [err for _, _, err in outcomes if err]

    content = export_service.render_history_workbook(records, errors)
    logger.info("Bulk history export finished",
                extra={"actor_id": actor.id, "exported": len(records), "failed": len(errors)})
    return {"content": content, "exported": len(records), "errors": errors}
