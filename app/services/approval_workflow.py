"""
Approval Workflow Configurator & Signer Queue.

Lifecycle of an Approval:
    pending ──activate──▶ active ──(last signer signs)──▶ signed
       │                    │
       └──────cancel────────┴──▶ cancelled

Signer queue (one ApprovalSigner row per required signer):
    parallel    every signer is ``pending`` from activation on.
    sequential  signer 0 is ``pending``, the rest ``waiting``; signing
                position k activates position k+1.

Reminders never change the stored state: they stamp ``reminder_sent_at``
and the display status becomes ``reminder`` (or ``overdue`` past due_at).

Usage:
    from app.services import approval_workflow

    approval = approval_workflow.create_approval(actor, title="Finishes package")
    approval_workflow.save_workflow(approval.id, actor, require_signers=["a@x.com"])
    approval_workflow.activate_workflow(approval.id, actor)
"""

from __future__ import annotations

import logging
from datetime import timedelta

from flask import current_app

from app.core.actor import Actor
from app.core.exceptions import (
    ConflictError,
    ExternalServiceError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.models.approval import (
    Approval,
    ApprovalOrder,
    ApprovalSigner,
    ApprovalStatus,
    ApprovalType,
    ApprovalWorkflowConfig,
    SignatureCapture,
    SignerState,
)
from app.models.audit import AuditAction, AuditEntityType, audit_trail, write_audit
from app.services import decision_store, events, notifier
from app.utils.helpers import ensure_utc, utcnow, versioned_write

logger = logging.getLogger(__name__)

_OPEN_STATUSES = {ApprovalStatus.PENDING, ApprovalStatus.ACTIVE}
WORKFLOW_FIELDS = ("require_signers", "approval_type", "approval_order", "legal_text", "due_in_days")


# ── Approval records ─────────────────────────────────────────────────────────


def _optional_text(value, field: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", details={field: "not a string"})
    return value.strip() or None


def create_approval(actor, *, title, description=None, decision_id=None, signs_decision=False) -> Approval:
    title = (title or "").strip() if isinstance(title, str) else ""
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    description = _optional_text(description, "description")
    if decision_id:
        decision_store.get_decision(decision_id)
    if signs_decision and not decision_id:
        raise ValidationError("signs_decision requires decision_id",
                              details={"signs_decision": "no bound decision"})

    approval = Approval(
        owner_id=actor.id,
        title=title,
        description=description,
        decision_id=decision_id or None,
        signs_decision=bool(signs_decision),
        status=ApprovalStatus.PENDING.value,
    )
    with versioned_write("Approval", None):
        db.session.add(approval)
        db.session.flush()
        write_audit(
            entity_type=AuditEntityType.APPROVAL,
            entity_id=approval.id,
            action=AuditAction.CREATED,
            actor=actor,
            payload={"title": title, "decision_id": approval.decision_id},
        )

    logger.info("Approval created", extra={"approval_id": approval.id, "actor_id": actor.id})
    return approval


def update_approval(approval_id: str, actor, fields: dict, *, version=None) -> Approval:
    """Edit title/description of an approval that is not yet signed or cancelled."""
    unknown = set(fields) - {"title", "description"}
    if unknown:
        raise ValidationError("Unknown fields", details={k: "not updatable" for k in sorted(unknown)})
    approval = get_approval(approval_id)
    check_version(approval, version)
    _require_open(approval, "update")

    updates = {}
    if "title" in fields:
        title = _optional_text(fields["title"], "title")
        if not title:
            raise ValidationError("title is required", details={"title": "required"})
        updates["title"] = title
    if "description" in fields:
        updates["description"] = _optional_text(fields["description"], "description")
    changes = {k: v for k, v in updates.items() if getattr(approval, k) != v}
    if not changes:
        return approval

    with versioned_write("Approval", approval.id):
        for key, value in changes.items():
            setattr(approval, key, value)
        approval.updated_at = utcnow()
        write_audit(
            entity_type=AuditEntityType.APPROVAL,
            entity_id=approval.id,
            action=AuditAction.UPDATED,
            actor=actor,
            payload={"changed_fields": sorted(changes)},
        )

    logger.info("Approval updated",
                extra={"approval_id": approval.id, "actor_id": actor.id, "action": "updated"})
    return approval


def get_approval(approval_id: str) -> Approval:
    approval = db.session.get(Approval, approval_id) if approval_id else None
    if approval is None:
        raise NotFoundError("Approval", approval_id)
    return approval


def list_approvals(*, status=None, decision_id=None) -> list[Approval]:
    q = Approval.query
    if status:
        try:
            q = q.filter(Approval.status == ApprovalStatus(status).value)
        except ValueError:
            raise ValidationError(f"Invalid status: {status}", details={"status": "unknown"}) from None
    if decision_id:
        q = q.filter(Approval.decision_id == decision_id)
    return q.order_by(Approval.created_at.desc()).all()


def approval_detail(approval: Approval, now=None) -> dict:
    data = approval.to_dict()
    config = ApprovalWorkflowConfig.query.filter_by(approval_id=approval.id).first()
    data["workflow"] = config.to_dict() if config else None
    data["signers"] = list_signers(approval.id, now=now)
    data["audit_timeline"] = [
        e.to_dict() for e in audit_trail(AuditEntityType.APPROVAL, approval.id)
    ]
    return data


def _require_open(approval: Approval, action: str) -> None:
    if ApprovalStatus(approval.status) not in _OPEN_STATUSES:
        raise InvalidTransitionError("Approval", action, approval.status)


def check_version(approval: Approval, expected_version) -> None:
    if expected_version is not None and int(expected_version) != approval.version:
        logger.warning(
            "Stale approval version",
            extra={"approval_id": approval.id, "expected_version": expected_version,
                   "actual_version": approval.version},
        )
        raise ConflictError("Approval", approval.id, int(expected_version), approval.version)


def cancel_approval(approval_id: str, actor, *, reason=None, version=None) -> Approval:
    approval = get_approval(approval_id)
    check_version(approval, version)
    _require_open(approval, "cancel")

    reason = _optional_text(reason, "reason")

    now = utcnow()
    with versioned_write("Approval", approval.id):
        approval.status = ApprovalStatus.CANCELLED.value
        approval.cancelled_at = now
        approval.updated_at = now
        write_audit(
            entity_type=AuditEntityType.APPROVAL,
            entity_id=approval.id,
            action=AuditAction.CANCELLED,
            actor=actor,
            details=reason,
        )

    logger.info("Approval cancelled", extra={"approval_id": approval.id, "actor_id": actor.id})
    return approval


# ── Workflow configuration ───────────────────────────────────────────────────


def get_workflow(approval_id: str) -> ApprovalWorkflowConfig:
    get_approval(approval_id)
    config = ApprovalWorkflowConfig.query.filter_by(approval_id=approval_id).first()
    if config is None:
        raise NotFoundError("ApprovalWorkflowConfig", approval_id)
    return config


def _normalize_workflow(require_signers, approval_type, approval_order, legal_text, due_in_days) -> dict:
    errors = {}

    signers = []
    if not isinstance(require_signers, list):
        errors["require_signers"] = "must be a list"
    else:
        for i, raw in enumerate(require_signers):
            sid = raw.strip() if isinstance(raw, str) else ""
            if not sid:
                errors[f"require_signers[{i}]"] = "must be a non-empty string"
            elif sid not in signers:
                signers.append(sid)
        if not signers and "require_signers" not in errors:
            errors["require_signers"] = "At least one signer is required"

    try:
        approval_type = ApprovalType(approval_type).value
    except ValueError:
        errors["approval_type"] = f"one of {[t.value for t in ApprovalType]}"
    try:
        approval_order = ApprovalOrder(approval_order).value
    except ValueError:
        errors["approval_order"] = f"one of {[o.value for o in ApprovalOrder]}"

    if legal_text is not None and not isinstance(legal_text, str):
        errors["legal_text"] = "must be a string"
        legal_text = None
    legal_text = (legal_text or "").strip() or None

    if due_in_days is not None and (
        isinstance(due_in_days, bool) or not isinstance(due_in_days, int) or due_in_days < 1
    ):
        errors["due_in_days"] = "must be a positive integer"

    if errors:
        raise ValidationError("Invalid workflow configuration", details=errors)
    return {
        "require_signers": signers,
        "approval_type": approval_type,
        "approval_order": approval_order,
        "legal_text": legal_text,
        "due_in_days": due_in_days,
    }


def save_workflow(
    approval_id: str,
    actor,
    *,
    require_signers,
    approval_type=ApprovalType.E_SIGN.value,
    approval_order=ApprovalOrder.SEQUENTIAL.value,
    legal_text=None,
    due_in_days=None,
    version=None,
) -> ApprovalWorkflowConfig:
    """Idempotent upsert of the approval's workflow configuration.

    Saving an identical configuration is a no-op.  Changing the config of
    an active approval rebuilds its signer queue, which is only allowed
    while no signature has been captured.
    """
    approval = get_approval(approval_id)
    check_version(approval, version)
    _require_open(approval, "configure")
    values = _normalize_workflow(require_signers, approval_type, approval_order, legal_text, due_in_days)

    config = ApprovalWorkflowConfig.query.filter_by(approval_id=approval.id).first()
    if config is not None and all(getattr(config, k) == v for k, v in values.items()):
        return config

    if SignatureCapture.query.filter_by(approval_id=approval.id).count():
        raise InvalidTransitionError("Approval", "configure", approval.status,
                                     "signatures have already been captured")

    now = utcnow()
    rebuilt = ApprovalStatus(approval.status) is ApprovalStatus.ACTIVE
    with versioned_write("Approval", approval.id):
        if config is None:
            config = ApprovalWorkflowConfig(approval_id=approval.id)
            db.session.add(config)
        for key, value in values.items():
            setattr(config, key, value)
        config.updated_at = now
        approval.updated_at = now

        if rebuilt:
            _build_queue(approval, config, now)
        write_audit(
            entity_type=AuditEntityType.APPROVAL,
            entity_id=approval.id,
            action=AuditAction.WORKFLOW_CONFIGURED,
            actor=actor,
            payload={**values, "queue_rebuilt": rebuilt},
        )

    logger.info(
        "Approval workflow configured",
        extra={"approval_id": approval.id, "actor_id": actor.id,
               "signer_count": len(values["require_signers"])},
    )
    if rebuilt:
        _publish_pending(approval)
    return config


def update_workflow(approval_id: str, actor, fields: dict, *, version=None) -> ApprovalWorkflowConfig:
    """Partial upsert: unspecified fields keep their saved (or default) values."""
    unknown = set(fields) - set(WORKFLOW_FIELDS)
    if unknown:
        raise ValidationError("Unknown fields", details={k: "not updatable" for k in sorted(unknown)})
    get_approval(approval_id)
    config = ApprovalWorkflowConfig.query.filter_by(approval_id=approval_id).first()
    current = {
        "require_signers": list(config.require_signers or []) if config else [],
        "approval_type": config.approval_type if config else ApprovalType.E_SIGN.value,
        "approval_order": config.approval_order if config else ApprovalOrder.SEQUENTIAL.value,
        "legal_text": config.legal_text if config else None,
        "due_in_days": config.due_in_days if config else None,
    }
    current.update(fields)
    return save_workflow(approval_id, actor, version=version, **current)


# ── Signer queue ─────────────────────────────────────────────────────────────


def _due_days(config: ApprovalWorkflowConfig) -> int:
    return config.due_in_days or current_app.config.get("SIGNER_DUE_DAYS", 7)


def _activate_signer(signer: ApprovalSigner, config: ApprovalWorkflowConfig, now) -> None:
    signer.state = SignerState.PENDING.value
    signer.activated_at = now
    signer.due_at = now + timedelta(days=_due_days(config))


def _build_queue(approval: Approval, config: ApprovalWorkflowConfig, now) -> list[ApprovalSigner]:
    """Replace the approval's signer rows according to *config*."""
    for existing in ApprovalSigner.query.filter_by(approval_id=approval.id).all():
        db.session.delete(existing)
    db.session.flush()

    parallel = ApprovalOrder(config.approval_order) is ApprovalOrder.PARALLEL
    signers = []
    for position, signer_id in enumerate(config.require_signers):
        signer = ApprovalSigner(
            approval_id=approval.id,
            signer_id=signer_id,
            position=position,
            state=SignerState.WAITING.value,
        )
        if parallel or position == 0:
            _activate_signer(signer, config, now)
        db.session.add(signer)
        signers.append(signer)
    db.session.flush()
    return signers


def activate_workflow(approval_id: str, actor, *, version=None) -> Approval:
    """pending → active: build the signer queue from the saved config."""
    approval = get_approval(approval_id)
    check_version(approval, version)
    if ApprovalStatus(approval.status) is not ApprovalStatus.PENDING:
        raise InvalidTransitionError("Approval", "activate", approval.status)
    config = ApprovalWorkflowConfig.query.filter_by(approval_id=approval.id).first()
    if config is None:
        raise InvalidTransitionError("Approval", "activate", approval.status,
                                     "workflow has not been configured")

    now = utcnow()
    with versioned_write("Approval", approval.id):
        signers = _build_queue(approval, config, now)
        approval.status = ApprovalStatus.ACTIVE.value
        approval.activated_at = now
        approval.updated_at = now
        write_audit(
            entity_type=AuditEntityType.APPROVAL,
            entity_id=approval.id,
            action=AuditAction.WORKFLOW_ACTIVATED,
            actor=actor,
            payload={
                "approval_order": config.approval_order,
                "pending": [s.signer_id for s in signers if s.state == SignerState.PENDING.value],
            },
        )

    logger.info("Approval workflow activated", extra={"approval_id": approval.id, "actor_id": actor.id})
    _publish_pending(approval)
    return approval


def get_signer(approval_id: str, signer_id: str) -> ApprovalSigner:
    signer = ApprovalSigner.query.filter_by(approval_id=approval_id, signer_id=signer_id).first()
    if signer is None:
        raise NotFoundError("Signer", signer_id)
    return signer


def list_signers(approval_id: str, now=None) -> list[dict]:
    signers = (
        ApprovalSigner.query
        .filter_by(approval_id=approval_id)
        .order_by(ApprovalSigner.position.asc())
        .all()
    )
    return [s.to_dict(now) for s in signers]


def advance_queue(approval: Approval, signer: ApprovalSigner, now) -> dict:
    """Mark *signer* signed and move the queue on (flush only).

    Returns:
        {"activated": signer_id | None, "completed": bool}
    """
    signer.state = SignerState.SIGNED.value
    signer.signed_at = now
    approval.updated_at = now

    config = ApprovalWorkflowConfig.query.filter_by(approval_id=approval.id).first()
    remaining = (
        ApprovalSigner.query
        .filter(ApprovalSigner.approval_id == approval.id,
                ApprovalSigner.state != SignerState.SIGNED.value)
        .order_by(ApprovalSigner.position.asc())
        .all()
    )

    activated = None
    if remaining and ApprovalOrder(config.approval_order) is ApprovalOrder.SEQUENTIAL:
        nxt = remaining[0]
        if nxt.state == SignerState.WAITING.value:
            _activate_signer(nxt, config, now)
            activated = nxt.signer_id

    completed = not remaining
    if completed:
        approval.status = ApprovalStatus.SIGNED.value
        approval.completed_at = now
    db.session.flush()
    return {"activated": activated, "completed": completed}


def _publish_pending(approval: Approval) -> None:
    pending = ApprovalSigner.query.filter_by(
        approval_id=approval.id, state=SignerState.PENDING.value,
    ).all()
    for signer in pending:
        events.publish(events.signer_advanced, approval.id,
                       signer_id=signer.signer_id, state=signer.state, version=approval.version)


# ── Inbox & reminders ────────────────────────────────────────────────────────


def list_pending_items(signer_id=None, now=None) -> list[dict]:
    """Active signers across open approvals, with display status.

    Each item: signer fields + approval_id/title and ``status`` in
    {pending, reminder, overdue}.
    """
    q = (
        db.session.query(ApprovalSigner, Approval)
        .join(Approval, Approval.id == ApprovalSigner.approval_id)
        .filter(Approval.status == ApprovalStatus.ACTIVE.value,
                ApprovalSigner.state == SignerState.PENDING.value)
    )
    if signer_id:
        q = q.filter(ApprovalSigner.signer_id == signer_id)
    items = []
    for signer, approval in q.order_by(ApprovalSigner.due_at.asc()).all():
        item = signer.to_dict(now)
        item["approval_title"] = approval.title
        item["decision_id"] = approval.decision_id
        items.append(item)
    return items


def _require_pending_signer(approval_id: str, signer_id: str) -> tuple[Approval, ApprovalSigner]:
    approval = get_approval(approval_id)
    if ApprovalStatus(approval.status) is not ApprovalStatus.ACTIVE:
        raise InvalidTransitionError("Approval", "remind", approval.status)
    signer = get_signer(approval.id, signer_id)
    if SignerState(signer.state) is not SignerState.PENDING:
        raise InvalidTransitionError("Signer", "remind", signer.state)
    return approval, signer


def remind_signer(approval_id: str, signer_id: str, actor, *, now=None) -> ApprovalSigner:
    """Explicit reminder for one pending signer.

    The reminder is committed before the notifier runs; a delivery failure
    surfaces as ExternalServiceError with reminder_sent_at already stored.
    """
    approval, signer = _require_pending_signer(approval_id, signer_id)
    now = ensure_utc(now) or utcnow()

    with versioned_write("ApprovalSigner", signer.id):
        signer.reminder_sent_at = now
        write_audit(
            entity_type=AuditEntityType.APPROVAL,
            entity_id=approval.id,
            action=AuditAction.REMINDER_SENT,
            actor=actor,
            details=f"Reminder sent to {signer.signer_id}",
            payload={"signer_id": signer.signer_id, "trigger": "manual"},
        )

    logger.info("Signer reminded",
                extra={"approval_id": approval.id, "signer_id": signer.signer_id, "actor_id": actor.id})
    events.publish(events.reminder_issued, approval.id, signer_id=signer.signer_id)
    notifier.remind_signer(signer_id=signer.signer_id, approval_title=approval.title,
                           due_at=ensure_utc(signer.due_at))
    return signer


def run_reminder_sweep(now=None) -> dict:
    """Remind every pending signer due within REMINDER_LEAD_HOURS (or overdue).

    Repeating the sweep only refreshes ``reminder_sent_at``: the
    ``reminder_sent`` audit entry is written the first time a signer is
    reminded, and the stored state stays ``pending``.

    Returns:
        {"scanned": int, "reminded": int, "first_reminders": int, "delivery_failures": int}
    """
    now = ensure_utc(now) or utcnow()
    lead = timedelta(hours=current_app.config.get("REMINDER_LEAD_HOURS", 24))
    horizon = now + lead
    system = Actor.system()

    rows = (
        db.session.query(ApprovalSigner, Approval)
        .join(Approval, Approval.id == ApprovalSigner.approval_id)
        .filter(Approval.status == ApprovalStatus.ACTIVE.value,
                ApprovalSigner.state == SignerState.PENDING.value,
                ApprovalSigner.due_at.isnot(None))
        .all()
    )

    reminded = []
    first = 0
    for signer, approval in rows:
        if ensure_utc(signer.due_at) > horizon:
            continue
        if signer.reminder_sent_at is None:
            first += 1
            write_audit(
                entity_type=AuditEntityType.APPROVAL,
                entity_id=approval.id,
                action=AuditAction.REMINDER_SENT,
                actor=system,
                details=f"Reminder sent to {signer.signer_id}",
                payload={"signer_id": signer.signer_id, "trigger": "sweep"},
            )
        signer.reminder_sent_at = now
        reminded.append((signer.signer_id, approval.id, approval.title, ensure_utc(signer.due_at)))
    db.session.commit()

    failures = 0
    for signer_id, approval_id, title, due_at in reminded:
        events.publish(events.reminder_issued, approval_id, signer_id=signer_id)
        try:
            notifier.remind_signer(signer_id=signer_id, approval_title=title, due_at=due_at)
        except ExternalServiceError:
            failures += 1
            logger.exception("Reminder delivery failed",
                             extra={"approval_id": approval_id, "signer_id": signer_id})

    result = {
        "scanned": len(rows),
        "reminded": len(reminded),
        "first_reminders": first,
        "delivery_failures": failures,
    }
    logger.info("Reminder sweep finished", extra=result)
    return result
