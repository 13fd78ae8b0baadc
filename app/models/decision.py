"""
Decision & Approval Workflow Engine
Decision domain models.

Models:
    - Decision: a client-facing choice tracked through the approval lifecycle.
    - DecisionOption: one alternative (media references + cost impacts).
    - CostImpact: a priced line item attached to an option.
    - DecisionComment: append-only discussion entry.
    - DecisionVersion: immutable full snapshot of a decision's content.

Child rows reference their parent by id only; there are no ORM
relationships between these tables, so the object graph never cycles.
"""

import enum
import uuid
from datetime import datetime, timezone

from app.models import db


__all__ = [
    "DecisionStatus",
    "DecisionPhase",
    "DECISION_TRANSITIONS",
    "EDITABLE_STATUSES",
    "SNAPSHOT_FIELDS",
    "Decision",
    "DecisionOption",
    "CostImpact",
    "DecisionComment",
    "DecisionVersion",
]


# ── Helpers ──────────────────────────────────────────────────────────────────

def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Constants ────────────────────────────────────────────────────────────────

class DecisionStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUESTED = "changes_requested"


class DecisionPhase(str, enum.Enum):
    CONCEPT = "concept"
    DESIGN = "design"
    CONSTRUCTION = "construction"
    CLOSEOUT = "closeout"
    OTHER = "other"


# Content may only change while the client is not looking at it.
EDITABLE_STATUSES = frozenset({DecisionStatus.DRAFT, DecisionStatus.CHANGES_REQUESTED})

# action → allowed source statuses and target status.
# "sign" is not listed: it sets signed_at on an approved decision and
# leaves status untouched.
DECISION_TRANSITIONS = {
    "publish": {
        "from": {DecisionStatus.DRAFT, DecisionStatus.CHANGES_REQUESTED},
        "to": DecisionStatus.PENDING,
    },
    "approve": {"from": {DecisionStatus.PENDING}, "to": DecisionStatus.APPROVED},
    "request_changes": {"from": {DecisionStatus.PENDING}, "to": DecisionStatus.CHANGES_REQUESTED},
    "reject": {"from": {DecisionStatus.PENDING}, "to": DecisionStatus.REJECTED},
}

# Scalar fields captured in every DecisionVersion snapshot (options are
# captured separately, by position).
SNAPSHOT_FIELDS = (
    "title",
    "description",
    "summary",
    "phase",
    "due_date",
    "approver_id",
    "approver_name",
    "approver_email",
    "recommended_option_id",
)


# ═════════════════════════════════════════════════════════════════════════════
# Decision
# ═════════════════════════════════════════════════════════════════════════════


class Decision(db.Model):
    """
    Aggregate root of the decision log.

    Business rules (enforced in app.services.decision_lifecycle):
    - selected_option_id, if set, references an option of this decision.
    - status == approved implies selected_option_id is set.
    - signed_at is set at most once, and only while approved.
    - version is bumped by every UPDATE (optimistic concurrency); a write
      carrying a stale version fails with ConflictError.
    """

    __tablename__ = "decisions"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    project_id = db.Column(db.String(36), nullable=True, index=True)
    owner_id = db.Column(db.String(150), nullable=False, comment="Actor who created the decision")

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    summary = db.Column(db.Text, nullable=True)

    status = db.Column(
        db.String(20), nullable=False, default=DecisionStatus.DRAFT.value,
        comment="draft | pending | approved | rejected | changes_requested",
    )
    phase = db.Column(
        db.String(20), nullable=False, default=DecisionPhase.DESIGN.value,
        comment="concept | design | construction | closeout | other",
    )

    approver_id = db.Column(db.String(150), nullable=True, index=True)
    approver_name = db.Column(db.String(255), nullable=True)
    approver_email = db.Column(db.String(255), nullable=True)
    due_date = db.Column(db.Date, nullable=True)

    # Plain id columns (no FK): options reference the decision, so an FK
    # back to options would make the two tables cyclic.
    recommended_option_id = db.Column(db.String(36), nullable=True)
    selected_option_id = db.Column(db.String(36), nullable=True)

    signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    signer_name = db.Column(db.String(255), nullable=True)

    archived_at = db.Column(
        db.DateTime(timezone=True), nullable=True,
        comment="Soft-archive marker; decisions are never hard-deleted",
    )

    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.Index("ix_decision_status_phase", "status", "phase"),
    )

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.owner_id,
            "title": self.title,
            "description": self.description,
            "summary": self.summary,
            "status": self.status,
            "phase": self.phase,
            "approver_id": self.approver_id,
            "approver_name": self.approver_name,
            "approver_email": self.approver_email,
            "due_date": _iso(self.due_date),
            "recommended_option_id": self.recommended_option_id,
            "selected_option_id": self.selected_option_id,
            "signed_at": _iso(self.signed_at),
            "signer_name": self.signer_name,
            "archived_at": _iso(self.archived_at),
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Decision {self.id} [{self.status}] v{self.version}>"


# ═════════════════════════════════════════════════════════════════════════════
# Options & cost impacts
# ═════════════════════════════════════════════════════════════════════════════


class DecisionOption(db.Model):
    __tablename__ = "decision_options"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    decision_id = db.Column(
        db.String(36),
        db.ForeignKey("decisions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    media_urls = db.Column(db.JSON, nullable=False, default=list, comment="Ordered image/PDF URLs")
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self, cost_impacts=None) -> dict:
        return {
            "id": self.id,
            "decision_id": self.decision_id,
            "title": self.title,
            "description": self.description,
            "media_urls": list(self.media_urls or []),
            "cost_impacts": [c.to_dict() for c in (cost_impacts or [])],
            "sort_order": self.sort_order,
        }


class CostImpact(db.Model):
    __tablename__ = "cost_impacts"
    __table_args__ = (
        db.CheckConstraint("amount_minor_units >= 0", name="ck_cost_impact_amount_non_negative"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    option_id = db.Column(
        db.String(36),
        db.ForeignKey("decision_options.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    label = db.Column(db.String(255), nullable=False)
    amount_minor_units = db.Column(db.BigInteger, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "option_id": self.option_id,
            "label": self.label,
            "amount_minor_units": self.amount_minor_units,
            "currency": self.currency,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Append-only children
# ═════════════════════════════════════════════════════════════════════════════


class DecisionComment(db.Model):
    """Immutable once created."""

    __tablename__ = "decision_comments"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    decision_id = db.Column(
        db.String(36),
        db.ForeignKey("decisions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(db.String(150), nullable=False)
    user_name = db.Column(db.String(255), nullable=True)
    body = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "decision_id": self.decision_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "body": self.body,
            "created_at": _iso(self.created_at),
        }


class DecisionVersion(db.Model):
    """
    Full field snapshot taken after each committed content edit.

    version_number runs 1, 2, 3, … per decision with no gaps; the unique
    constraint turns a racing duplicate into an IntegrityError.
    """

    __tablename__ = "decision_versions"
    __table_args__ = (
        db.UniqueConstraint("decision_id", "version_number", name="uq_decision_version_number"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    decision_id = db.Column(
        db.String(36),
        db.ForeignKey("decisions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version_number = db.Column(db.Integer, nullable=False)
    snapshot = db.Column(db.JSON, nullable=False)
    created_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "decision_id": self.decision_id,
            "version_number": self.version_number,
            "snapshot": self.snapshot,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<DecisionVersion {self.decision_id} #{self.version_number}>"
