"""
Decision State Machine — creation, editing and status transitions.

Transitions (DECISION_TRANSITIONS):
    publish          draft | changes_requested → pending   (≥1 option)
    approve          pending → approved                    (selected option)
    request_changes  pending → changes_requested           (comment required)
    reject           pending → rejected
    sign             approved, signed_at unset → signed_at set (status kept)

Every mutating call:
  1. loads the decision (archived decisions are NotFound),
  2. compares the caller's observed ``version`` (ConflictError on mismatch),
  3. validates the transition against the current status,
  4. writes the change + audit entry (+ version snapshot for content edits),
  5. commits under the version guard (flushes included),
  6. publishes ``events.decision_changed`` after the commit.

Usage:
    from app.services import decision_lifecycle

    decision = decision_lifecycle.publish_decision(decision_id, actor, version=1)
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from flask import current_app

from app.core.exceptions import InvalidTransitionError, ValidationError
from app.models import db
from app.models.audit import AuditAction, AuditEntityType, write_audit
from app.models.decision import (
    DECISION_TRANSITIONS,
    EDITABLE_STATUSES,
    Decision,
    DecisionComment,
    DecisionPhase,
    DecisionStatus,
)
from app.services import decision_store, events, version_service
from app.utils.helpers import ensure_utc, parse_date, parse_datetime, utcnow, versioned_write

logger = logging.getLogger(__name__)

# Fields a caller may pass to update_decision.  "phase" is a classification
# and stays editable after publishing; everything else is content.
UPDATABLE_FIELDS = frozenset({
    "title",
    "description",
    "summary",
    "phase",
    "due_date",
    "approver_id",
    "approver_name",
    "approver_email",
    "recommended_option_id",
    "options",
})


# ── Validation helpers ───────────────────────────────────────────────────────


def validate_transition(decision: Decision, action: str) -> dict:
    """
    Validate whether *action* is legal from the decision's current status.

    Returns:
        {"valid": bool, "from": str, "to": str|None, "reason": str|None}
    """
    current = DecisionStatus(decision.status)
    rule = DECISION_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": current.value, "to": None,
                "reason": f"Unknown action: {action}"}
    if current not in rule["from"]:
        return {"valid": False, "from": current.value, "to": rule["to"].value,
                "reason": f"Cannot '{action}' from status '{current.value}'"}
    return {"valid": True, "from": current.value, "to": rule["to"].value, "reason": None}


def _require_transition(decision: Decision, action: str) -> str:
    result = validate_transition(decision, action)
    if not result["valid"]:
        logger.warning(
            "Rejected decision transition",
            extra={"decision_id": decision.id, "action": action, "status": decision.status},
        )
        raise InvalidTransitionError("Decision", action, decision.status, result["reason"])
    return result["to"]


def _clean_text(value, field: str, *, required: bool = False) -> str | None:
    if value is None:
        text = ""
    elif isinstance(value, str):
        text = value.strip()
    else:
        raise ValidationError(f"{field} must be a string", details={field: "not a string"})
    if required and not text:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return text or None


def _coerce_phase(value) -> str:
    try:
        return DecisionPhase(value).value
    except ValueError:
        raise ValidationError(
            f"Invalid phase: {value}",
            details={"phase": f"one of {[p.value for p in DecisionPhase]}"},
        ) from None


def _coerce_due_date(value):
    try:
        return parse_date(value)
    except ValueError as exc:
        raise ValidationError(str(exc), details={"due_date": "invalid date"}) from None


def _coerce_email(value) -> str | None:
    email = _clean_text(value, "approver_email")
    if email and "@" not in email:
        raise ValidationError("approver_email is not an email address",
                              details={"approver_email": "invalid"})
    return email


def _publish_change(decision: Decision, action: str, actor) -> None:
    events.publish(
        events.decision_changed,
        decision.id,
        action=action,
        status=decision.status,
        version=decision.version,
        actor_id=actor.id,
    )


def _log_change(decision: Decision, action: str, actor, **extra) -> None:
    logger.info(
        "Decision %s",
        action,
        extra={"decision_id": decision.id, "action": action, "actor_id": actor.id, **extra},
    )


# ── Create ───────────────────────────────────────────────────────────────────


def create_decision(
    actor,
    *,
    title,
    options,
    phase=None,
    description=None,
    summary=None,
    due_date=None,
    approver_id=None,
    approver_name=None,
    approver_email=None,
    project_id=None,
    recommended_option_index=None,
) -> Decision:
    """Create a draft decision with its options; records version 1.

    Raises:
        ValidationError: empty title, no options, bad option payload,
            bad phase/due date, or recommended_option_index out of range.
    """
    title = _clean_text(title, "title", required=True)
    cleaned = decision_store.normalize_options(options)
    if not cleaned:
        raise ValidationError("At least one option is required", details={"options": "empty"})
    if any(o["id"] for o in cleaned):
        raise ValidationError("New options must not carry ids", details={"options": "id given"})

    option_ids = [str(uuid.uuid4()) for _ in cleaned]
    recommended_option_id = None
    if recommended_option_index is not None:
        if (
            isinstance(recommended_option_index, bool)
            or not isinstance(recommended_option_index, int)
            or not 0 <= recommended_option_index < len(cleaned)
        ):
            raise ValidationError(
                "recommended_option_index does not reference an option",
                details={"recommended_option_index": recommended_option_index},
            )
        recommended_option_id = option_ids[recommended_option_index]

    decision = Decision(
        id=str(uuid.uuid4()),
        project_id=project_id,
        owner_id=actor.id,
        title=title,
        description=_clean_text(description, "description"),
        summary=_clean_text(summary, "summary"),
        status=DecisionStatus.DRAFT.value,
        phase=_coerce_phase(phase) if phase is not None else DecisionPhase.DESIGN.value,
        due_date=_coerce_due_date(due_date),
        approver_id=_clean_text(approver_id, "approver_id"),
        approver_name=_clean_text(approver_name, "approver_name"),
        approver_email=_coerce_email(approver_email),
        recommended_option_id=recommended_option_id,
    )
    with versioned_write("Decision", decision.id):
        db.session.add(decision)
        db.session.flush()

        decision_store.apply_options(decision.id, cleaned, new_ids=option_ids)
        write_audit(
            entity_type=AuditEntityType.DECISION,
            entity_id=decision.id,
            action=AuditAction.CREATED,
            actor=actor,
            payload={"title": decision.title, "option_count": len(cleaned)},
        )
        version_service.record_version(decision, actor)

    _log_change(decision, "created", actor)
    _publish_change(decision, "created", actor)
    return decision


# ── Edit ─────────────────────────────────────────────────────────────────────


def update_decision(decision_id: str, fields: dict, actor, *, version=None) -> Decision:
    """Partial edit of a decision's content and/or phase.

    Content fields are editable only in draft/changes_requested; ``phase``
    in any status.  A committed change appends a DecisionVersion and an
    ``updated`` and/or ``phase_changed`` audit entry.  An edit that changes
    nothing writes nothing.
    """
    decision = decision_store.get_decision(decision_id)
    decision_store.check_version(decision, version)

    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError("Unknown fields", details={k: "not updatable" for k in sorted(unknown)})

    content_keys = set(fields) - {"phase"}
    if content_keys and DecisionStatus(decision.status) not in EDITABLE_STATUSES:
        raise InvalidTransitionError(
            "Decision", "update", decision.status,
            "content is editable only in draft or changes_requested",
        )

    # Coerce every scalar first so a bad value fails before anything is written.
    updates = {}
    if "title" in fields:
        updates["title"] = _clean_text(fields["title"], "title", required=True)
    for key in ("description", "summary", "approver_id", "approver_name"):
        if key in fields:
            updates[key] = _clean_text(fields[key], key)
    if "approver_email" in fields:
        updates["approver_email"] = _coerce_email(fields["approver_email"])
    if "due_date" in fields:
        updates["due_date"] = _coerce_due_date(fields["due_date"])
    if "phase" in fields:
        updates["phase"] = _coerce_phase(fields["phase"])
    cleaned_options = None
    if "options" in fields:
        cleaned_options = decision_store.normalize_options(fields["options"])

    before = version_service.build_snapshot(decision)

    with versioned_write("Decision", decision.id):
        if cleaned_options is not None:
            decision_store.apply_options(decision.id, cleaned_options)
        if "recommended_option_id" in fields:
            option_id = fields["recommended_option_id"]
            if option_id:
                decision_store.get_option_of(decision.id, option_id)
            updates["recommended_option_id"] = option_id or None
        elif cleaned_options is not None and decision.recommended_option_id:
            remaining = {o.id for o, _ in decision_store.load_options(decision.id)}
            if decision.recommended_option_id not in remaining:
                updates["recommended_option_id"] = None

        # The decision row is dirtied only here, so the commit bumps its
        # version exactly once.
        for key, value in updates.items():
            setattr(decision, key, value)
        with db.session.no_autoflush:
            after = version_service.build_snapshot(decision)
        changed = version_service.diff_snapshots(before, after)["changed_fields"]
        if not changed:
            db.session.rollback()
            return decision

        decision.updated_at = utcnow()
        if "phase" in changed:
            write_audit(
                entity_type=AuditEntityType.DECISION,
                entity_id=decision.id,
                action=AuditAction.PHASE_CHANGED,
                actor=actor,
                details=f"{before['phase']} → {after['phase']}",
                payload={"from": before["phase"], "to": after["phase"]},
            )
        content_changed = [f for f in changed if f != "phase"]
        if content_changed:
            write_audit(
                entity_type=AuditEntityType.DECISION,
                entity_id=decision.id,
                action=AuditAction.UPDATED,
                actor=actor,
                payload={"changed_fields": content_changed},
            )
        new_version = version_service.record_version(decision, actor, snapshot=after)

    _log_change(decision, "updated", actor, changed_fields=changed,
                version_number=new_version.version_number)
    _publish_change(decision, "updated", actor)
    return decision


def change_phase(decision_id: str, phase, actor, *, version=None) -> Decision:
    """Move a decision to another phase (allowed in every status)."""
    return update_decision(decision_id, {"phase": phase}, actor, version=version)


# ── Transitions ──────────────────────────────────────────────────────────────


def publish_decision(decision_id: str, actor, *, version=None) -> Decision:
    decision = decision_store.get_decision(decision_id)
    decision_store.check_version(decision, version)
    target = _require_transition(decision, "publish")
    if decision_store.count_options(decision.id) < 1:
        raise InvalidTransitionError("Decision", "publish", decision.status,
                                     "a decision needs at least one option")

    previous = decision.status
    with versioned_write("Decision", decision.id):
        decision.status = target
        decision.updated_at = utcnow()
        write_audit(
            entity_type=AuditEntityType.DECISION,
            entity_id=decision.id,
            action=AuditAction.PUBLISHED,
            actor=actor,
            payload={"from": previous, "to": target},
        )

    _log_change(decision, "published", actor)
    _publish_change(decision, "published", actor)
    return decision


def approve_decision(decision_id: str, selected_option_id, actor, *, version=None) -> Decision:
    """pending → approved with the client's chosen option."""
    decision = decision_store.get_decision(decision_id)
    decision_store.check_version(decision, version)
    target = _require_transition(decision, "approve")
    if not selected_option_id:
        raise ValidationError("selected_option_id is required",
                              details={"selected_option_id": "required"})
    option = decision_store.get_option_of(decision.id, selected_option_id)

    with versioned_write("Decision", decision.id):
        decision.status = target
        decision.selected_option_id = option.id
        decision.updated_at = utcnow()
        write_audit(
            entity_type=AuditEntityType.DECISION,
            entity_id=decision.id,
            action=AuditAction.APPROVED,
            actor=actor,
            details=f"Selected option: {option.title}",
            payload={"selected_option_id": option.id, "selected_option_title": option.title},
        )

    _log_change(decision, "approved", actor, option_id=option.id)
    _publish_change(decision, "approved", actor)
    return decision


def request_changes(decision_id: str, comment, actor, *, version=None) -> Decision:
    """pending → changes_requested; the comment is stored and audited."""
    decision = decision_store.get_decision(decision_id)
    decision_store.check_version(decision, version)
    target = _require_transition(decision, "request_changes")
    body = _clean_text(comment, "comment", required=True)

    with versioned_write("Decision", decision.id):
        decision.status = target
        decision.updated_at = utcnow()
        db.session.add(DecisionComment(
            decision_id=decision.id, user_id=actor.id, user_name=actor.display_name, body=body,
        ))
        write_audit(
            entity_type=AuditEntityType.DECISION,
            entity_id=decision.id,
            action=AuditAction.CHANGES_REQUESTED,
            actor=actor,
            details=body,
        )

    _log_change(decision, "changes_requested", actor)
    _publish_change(decision, "changes_requested", actor)
    return decision


def reject_decision(decision_id: str, actor, *, comment=None, version=None) -> Decision:
    decision = decision_store.get_decision(decision_id)
    decision_store.check_version(decision, version)
    target = _require_transition(decision, "reject")
    reason = _clean_text(comment, "comment")

    with versioned_write("Decision", decision.id):
        decision.status = target
        decision.updated_at = utcnow()
        if reason:
            db.session.add(DecisionComment(
                decision_id=decision.id, user_id=actor.id, user_name=actor.display_name, body=reason,
            ))
        write_audit(
            entity_type=AuditEntityType.DECISION,
            entity_id=decision.id,
            action=AuditAction.REJECTED,
            actor=actor,
            details=reason,
        )

    _log_change(decision, "rejected", actor)
    _publish_change(decision, "rejected", actor)
    return decision


def sign_decision(
    decision_id: str,
    actor,
    *,
    signer_name=None,
    signed_at=None,
    version=None,
) -> Decision:
    """Record the decision-level confirmatory signature (once, on approved).

    ``signed_at`` may be supplied by the caller (the moment the client
    signed); it is rejected if it lies in the future beyond the configured
    clock-skew tolerance.  Otherwise the server time is used.
    """
    decision = decision_store.get_decision(decision_id)
    decision_store.check_version(decision, version)
    if DecisionStatus(decision.status) != DecisionStatus.APPROVED:
        raise InvalidTransitionError("Decision", "sign", decision.status,
                                     "only approved decisions can be signed")
    if decision.signed_at is not None:
        raise InvalidTransitionError("Decision", "sign", decision.status,
                                     f"already signed at {ensure_utc(decision.signed_at).isoformat()}")

    now = utcnow()
    try:
        when = parse_datetime(signed_at) or now
    except ValueError as exc:
        raise ValidationError(str(exc), details={"signed_at": "invalid timestamp"}) from None
    skew = timedelta(seconds=current_app.config.get("SIGNATURE_CLOCK_SKEW_SECONDS", 300))
    if when > now + skew:
        raise ValidationError("signed_at lies in the future", details={"signed_at": when.isoformat()})

    name = _clean_text(signer_name, "signer_name") or actor.display_name
    with versioned_write("Decision", decision.id):
        decision.signed_at = when
        decision.signer_name = name
        decision.updated_at = now
        write_audit(
            entity_type=AuditEntityType.DECISION,
            entity_id=decision.id,
            action=AuditAction.SIGNED,
            actor=actor,
            details=f"Signed by {name}",
            payload={"signer_name": name, "signed_at": when.isoformat()},
        )

    _log_change(decision, "signed", actor)
    _publish_change(decision, "signed", actor)
    return decision


# ── Comments & archive ───────────────────────────────────────────────────────


def add_comment(decision_id: str, body, actor) -> DecisionComment:
    decision = decision_store.get_decision(decision_id)
    text = _clean_text(body, "body", required=True)
    comment = DecisionComment(
        decision_id=decision.id, user_id=actor.id, user_name=actor.display_name, body=text,
    )
    with versioned_write("Decision", decision.id):
        db.session.add(comment)
        write_audit(
            entity_type=AuditEntityType.DECISION,
            entity_id=decision.id,
            action=AuditAction.COMMENTED,
            actor=actor,
            details=text,
        )

    _log_change(decision, "commented", actor)
    events.publish(events.decision_changed, decision.id, action="commented",
                   status=decision.status, version=decision.version, actor_id=actor.id)
    return comment


def archive_decision(decision_id: str, actor, *, version=None) -> Decision:
    """Soft-delete: the decision disappears from lists but its history stays."""
    decision = decision_store.get_decision(decision_id)
    decision_store.check_version(decision, version)

    now = utcnow()
    with versioned_write("Decision", decision.id):
        decision.archived_at = now
        decision.updated_at = now
        write_audit(
            entity_type=AuditEntityType.DECISION,
            entity_id=decision.id,
            action=AuditAction.ARCHIVED,
            actor=actor,
            payload={"status": decision.status},
        )

    _log_change(decision, "archived", actor)
    _publish_change(decision, "archived", actor)
    return decision
