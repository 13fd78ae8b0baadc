"""
Signature Capture — e-sign and checkbox approvals on an active approval.

Business rules:
  - Only a signer in ``pending`` state may act (NotYourTurnError otherwise);
    in a sequential workflow that is exactly one signer at a time.
  - The capture method must match the workflow's approval_type.
  - Non-empty legal_text requires legal_text_accepted = true.
  - Drawn signatures must be longer than MIN_DRAWN_SIGNATURE_LENGTH
    characters of image data; typed signatures must be non-blank.
  - signed_at is server-assigned; ip_address comes from the actor.
  - Approval.version serialises racing submissions: the loser's commit
    fails the version guard and surfaces as ConflictError.
"""

from __future__ import annotations

import logging

from flask import current_app

from app.core.exceptions import (
    EngineError,
    InvalidTransitionError,
    NotFoundError,
    NotYourTurnError,
    ValidationError,
)
from app.models import db
from app.models.approval import (
    Approval,
    ApprovalStatus,
    ApprovalType,
    SignatureCapture,
    SignatureType,
    SignerState,
)
from app.models.audit import AuditAction, AuditEntityType, write_audit
from app.services import approval_workflow, decision_lifecycle, events
from app.utils.helpers import utcnow, versioned_write

logger = logging.getLogger(__name__)


def _validate_payload(signature_type, signature_data) -> tuple[str, str]:
    try:
        kind = SignatureType(signature_type)
    except ValueError:
        raise ValidationError(
            f"Invalid signature_type: {signature_type}",
            details={"signature_type": f"one of {[t.value for t in SignatureType]}"},
        ) from None
    if not isinstance(signature_data, str):
        raise ValidationError("signature_data is required", details={"signature_data": "required"})

    if kind is SignatureType.DRAW:
        minimum = current_app.config.get("MIN_DRAWN_SIGNATURE_LENGTH", 100)
        if len(signature_data) <= minimum:
            raise ValidationError(
                "Drawn signature is empty or too small",
                details={"signature_data": f"must exceed {minimum} characters"},
            )
        return kind.value, signature_data

    typed = signature_data.strip()
    if not typed:
        raise ValidationError("Typed signature is blank", details={"signature_data": "blank"})
    return kind.value, typed


def _capture(
    approval_id: str,
    signer_id: str,
    actor,
    *,
    capture_type: ApprovalType,
    legal_text_accepted,
    signature_type=None,
    signature_data=None,
    version=None,
) -> tuple[Approval, SignatureCapture, dict]:
    approval = approval_workflow.get_approval(approval_id)
    approval_workflow.check_version(approval, version)
    if ApprovalStatus(approval.status) is not ApprovalStatus.ACTIVE:
        raise InvalidTransitionError("Approval", "sign", approval.status,
                                     "approval is not collecting signatures")

    config = approval_workflow.get_workflow(approval.id)
    if signer_id not in (config.require_signers or []):
        raise NotFoundError("Signer", signer_id)
    if ApprovalType(config.approval_type) is not capture_type:
        raise ValidationError(
            f"This approval expects {config.approval_type} capture",
            details={"approval_type": config.approval_type},
        )

    signer = approval_workflow.get_signer(approval.id, signer_id)
    if SignerState(signer.state) is not SignerState.PENDING:
        logger.warning(
            "Out-of-turn signature rejected",
            extra={"approval_id": approval.id, "signer_id": signer_id, "state": signer.state},
        )
        raise NotYourTurnError(approval.id, signer_id, signer.state)

    if config.requires_legal_acceptance and legal_text_accepted is not True:
        raise ValidationError(
            "The legal text must be accepted before signing",
            details={"legal_text_accepted": "required"},
        )

    sig_type, sig_data = None, None
    if capture_type is ApprovalType.E_SIGN:
        sig_type, sig_data = _validate_payload(signature_type, signature_data)

    now = utcnow()
    capture = SignatureCapture(
        approval_id=approval.id,
        signer_id=signer_id,
        capture_type=capture_type.value,
        signature_type=sig_type,
        signature_data=sig_data,
        legal_text_accepted=bool(legal_text_accepted),
        legal_text_snapshot=config.legal_text,
        ip_address=actor.ip_address,
        signed_at=now,
    )
    # uq_signature_per_signer and the approval version guard both surface
    # as ConflictError when a concurrent submission stored first.
    with versioned_write("Approval", approval.id):
        db.session.add(capture)
        write_audit(
            entity_type=AuditEntityType.APPROVAL,
            entity_id=approval.id,
            action=AuditAction.SIGNED if capture_type is ApprovalType.E_SIGN else AuditAction.CHECKBOX_APPROVED,
            actor=actor,
            details=f"{signer_id} signed" if capture_type is ApprovalType.E_SIGN else f"{signer_id} approved",
            payload={
                "signer_id": signer_id,
                "signature_type": sig_type,
                "legal_text_accepted": bool(legal_text_accepted),
                "ip_address": actor.ip_address,
            },
        )

        result = approval_workflow.advance_queue(approval, signer, now)
        if result["completed"]:
            write_audit(
                entity_type=AuditEntityType.APPROVAL,
                entity_id=approval.id,
                action=AuditAction.APPROVAL_COMPLETED,
                actor=actor,
                payload={"signers": list(config.require_signers)},
            )

    logger.info(
        "Signature captured",
        extra={"approval_id": approval.id, "signer_id": signer_id, "actor_id": actor.id,
               "action": capture_type.value},
    )
    _after_capture(approval, signer_id, result, actor)
    return approval, capture, result


def _after_capture(approval: Approval, signer_id: str, result: dict, actor) -> None:
    events.publish(events.signer_advanced, approval.id,
                   signer_id=signer_id, state=SignerState.SIGNED.value, version=approval.version)
    if result["activated"]:
        events.publish(events.signer_advanced, approval.id,
                       signer_id=result["activated"], state=SignerState.PENDING.value,
                       version=approval.version)
    if not result["completed"]:
        return

    events.publish(events.approval_completed, approval.id, decision_id=approval.decision_id)
    if approval.signs_decision and approval.decision_id:
        _sign_bound_decision(approval, actor)


def _sign_bound_decision(approval: Approval, actor) -> None:
    """Best effort: the approval stays complete even if this fails."""
    try:
        decision_lifecycle.sign_decision(
            approval.decision_id, actor, signer_name=f"Approval: {approval.title}",
        )
    except EngineError:
        db.session.rollback()
        logger.exception(
            "Bound decision could not be signed",
            extra={"approval_id": approval.id, "decision_id": approval.decision_id},
        )


# ── Public API ───────────────────────────────────────────────────────────────


def submit_signature(
    approval_id: str,
    signer_id: str,
    actor,
    *,
    signature_type,
    signature_data,
    legal_text_accepted=False,
    version=None,
) -> dict:
    """Capture an e-signature; returns the signed-document record."""
    approval, capture, result = _capture(
        approval_id, signer_id, actor,
        capture_type=ApprovalType.E_SIGN,
        legal_text_accepted=legal_text_accepted,
        signature_type=signature_type,
        signature_data=signature_data,
        version=version,
    )
    doc = capture.to_signed_document(approval.title)
    doc["approval_completed"] = result["completed"]
    return doc


def submit_checkbox_approval(
    approval_id: str,
    signer_id: str,
    actor,
    *,
    legal_text_accepted=False,
    version=None,
) -> None:
    _capture(
        approval_id, signer_id, actor,
        capture_type=ApprovalType.CHECKBOX,
        legal_text_accepted=legal_text_accepted,
        version=version,
    )


def list_signed_documents(*, approval_id=None, signer_id=None) -> list[dict]:
    q = db.session.query(SignatureCapture, Approval).join(
        Approval, Approval.id == SignatureCapture.approval_id,
    )
    if approval_id:
        approval_workflow.get_approval(approval_id)
        q = q.filter(SignatureCapture.approval_id == approval_id)
    if signer_id:
        q = q.filter(SignatureCapture.signer_id == signer_id)
    rows = q.order_by(SignatureCapture.signed_at.desc()).all()
    return [capture.to_signed_document(approval.title) for capture, approval in rows]
