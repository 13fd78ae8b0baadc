"""
Decision & Approval Workflow Engine
Approval & e-signature models.

Models:
    - Approval: a signable unit, optionally bound to a Decision.
    - ApprovalWorkflowConfig: required signers, capture type, ordering.
    - ApprovalSigner: per-signer queue state (one row per required signer).
    - SignatureCapture: write-once record of a signature or checkbox approval.
"""

import enum
import uuid
from datetime import datetime, timezone

from app.models import db
from app.utils.helpers import ensure_utc


__all__ = [
    "ApprovalStatus",
    "ApprovalType",
    "ApprovalOrder",
    "SignerState",
    "SignerStatus",
    "SignatureType",
    "Approval",
    "ApprovalWorkflowConfig",
    "ApprovalSigner",
    "SignatureCapture",
]


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Constants ────────────────────────────────────────────────────────────────

class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"        # created, workflow not yet activated
    ACTIVE = "active"          # signer queue running
    SIGNED = "signed"          # every required signer has signed
    CANCELLED = "cancelled"


class ApprovalType(str, enum.Enum):
    E_SIGN = "e_sign"
    CHECKBOX = "checkbox"


class ApprovalOrder(str, enum.Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class SignerState(str, enum.Enum):
    """Stored queue state."""

    WAITING = "waiting"        # sequential signer whose turn has not come
    PENDING = "pending"        # active: may sign now
    SIGNED = "signed"


class SignerStatus(str, enum.Enum):
    """Display status derived from SignerState + due_at + reminder_sent_at."""

    WAITING = "waiting"
    PENDING = "pending"
    REMINDER = "reminder"
    OVERDUE = "overdue"
    SIGNED = "signed"


class SignatureType(str, enum.Enum):
    DRAW = "draw"
    TYPE = "type"


# ═════════════════════════════════════════════════════════════════════════════
# Approval
# ═════════════════════════════════════════════════════════════════════════════


class Approval(db.Model):
    """
    Signable unit.  ``version`` guards concurrent signature submissions:
    every queue advance bumps it, so two racing submissions cannot both
    commit.
    """

    __tablename__ = "approvals"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    owner_id = db.Column(db.String(150), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    status = db.Column(
        db.String(20), nullable=False, default=ApprovalStatus.PENDING.value,
        comment="pending | active | signed | cancelled",
    )

    decision_id = db.Column(
        db.String(36),
        db.ForeignKey("decisions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    signs_decision = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="When True, completion triggers the decision-level sign step",
    )

    version = db.Column(db.Integer, nullable=False)

    activated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.owner_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "decision_id": self.decision_id,
            "signs_decision": self.signs_decision,
            "version": self.version,
            "activated_at": _iso(self.activated_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Approval {self.id} [{self.status}] v{self.version}>"


class ApprovalWorkflowConfig(db.Model):
    """One config per approval (upsert keyed by approval_id)."""

    __tablename__ = "approval_workflow_configs"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    approval_id = db.Column(
        db.String(36),
        db.ForeignKey("approvals.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    require_signers = db.Column(db.JSON, nullable=False, default=list, comment="Ordered signer ids")
    approval_type = db.Column(db.String(20), nullable=False, default=ApprovalType.E_SIGN.value)
    approval_order = db.Column(db.String(20), nullable=False, default=ApprovalOrder.SEQUENTIAL.value)
    legal_text = db.Column(db.Text, nullable=True)
    due_in_days = db.Column(db.Integer, nullable=True, comment="Overrides SIGNER_DUE_DAYS")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def requires_legal_acceptance(self) -> bool:
        return bool((self.legal_text or "").strip())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "approval_id": self.approval_id,
            "require_signers": list(self.require_signers or []),
            "approval_type": self.approval_type,
            "approval_order": self.approval_order,
            "legal_text": self.legal_text,
            "due_in_days": self.due_in_days,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class ApprovalSigner(db.Model):
    """Queue slot for one required signer."""

    __tablename__ = "approval_signers"
    __table_args__ = (
        db.UniqueConstraint("approval_id", "signer_id", name="uq_approval_signer"),
        db.Index("ix_approval_signer_state", "state", "due_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    approval_id = db.Column(
        db.String(36),
        db.ForeignKey("approvals.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    signer_id = db.Column(db.String(255), nullable=False, comment="Signer identifier (usually email)")
    position = db.Column(db.Integer, nullable=False)
    state = db.Column(db.String(20), nullable=False, default=SignerState.WAITING.value)

    activated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    due_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reminder_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    signed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def display_status(self, now: datetime | None = None) -> SignerStatus:
        """Overdue wins over reminder; neither changes the stored state."""
        state = SignerState(self.state)
        if state is SignerState.SIGNED:
            return SignerStatus.SIGNED
        if state is SignerState.WAITING:
            return SignerStatus.WAITING
        now = ensure_utc(now) or _utcnow()
        due_at = ensure_utc(self.due_at)
        if due_at is not None and now > due_at:
            return SignerStatus.OVERDUE
        if self.reminder_sent_at is not None:
            return SignerStatus.REMINDER
        return SignerStatus.PENDING

    def to_dict(self, now: datetime | None = None) -> dict:
        return {
            "id": self.id,
            "approval_id": self.approval_id,
            "signer_id": self.signer_id,
            "position": self.position,
            "state": self.state,
            "status": self.display_status(now).value,
            "activated_at": _iso(self.activated_at),
            "due_at": _iso(self.due_at),
            "reminder_sent_at": _iso(self.reminder_sent_at),
            "signed_at": _iso(self.signed_at),
        }


class SignatureCapture(db.Model):
    """
    Write-once proof of signing.

    Business rules:
    - One capture per (approval_id, signer_id).
    - signed_at is server-assigned; ip_address comes from the request edge.
    - legal_text_snapshot keeps the exact text the signer accepted, so the
      record stays meaningful if the workflow's legal text is later edited.
    - Never updated or deleted (see app.models.immutability).
    """

    __tablename__ = "signature_captures"
    __table_args__ = (
        db.UniqueConstraint("approval_id", "signer_id", name="uq_signature_per_signer"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    approval_id = db.Column(
        db.String(36),
        db.ForeignKey("approvals.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    signer_id = db.Column(db.String(255), nullable=False)

    capture_type = db.Column(db.String(20), nullable=False, comment="e_sign | checkbox")
    signature_type = db.Column(db.String(10), nullable=True, comment="draw | type (e_sign only)")
    signature_data = db.Column(db.Text, nullable=True)

    legal_text_accepted = db.Column(db.Boolean, nullable=False, default=False)
    legal_text_snapshot = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    signed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    document_url = db.Column(db.String(1000), nullable=True, comment="Set by the document store")
    file_name = db.Column(db.String(255), nullable=True)

    def to_signed_document(self, title: str | None = None) -> dict:
        return {
            "id": self.id,
            "approval_id": self.approval_id,
            "title": title,
            "signer_email": self.signer_id,
            "signed_at": _iso(self.signed_at),
            "ip_address": self.ip_address,
            "document_url": self.document_url,
            "file_name": self.file_name,
            "metadata": {
                "capture_type": self.capture_type,
                "signature_type": self.signature_type,
                "legal_text_accepted": self.legal_text_accepted,
                "legal_text": self.legal_text_snapshot,
            },
        }

    def __repr__(self):
        return f"<SignatureCapture {self.approval_id}/{self.signer_id} {self.capture_type}>"
