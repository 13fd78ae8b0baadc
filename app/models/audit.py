"""
Decision & Approval Workflow Engine
Audit domain model.

Models:
    - AuditEntry: immutable, append-only record of every action taken on a
      decision or an approval.  This table is the compliance export source.
"""

import enum
import json
from datetime import UTC, datetime

from app.models import db


class AuditEntityType(str, enum.Enum):
    DECISION = "decision"
    APPROVAL = "approval"


class AuditAction(str, enum.Enum):
    """Every action kind the engine can record."""

    # Decision lifecycle
    CREATED = "created"
    UPDATED = "updated"
    PUBLISHED = "published"
    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUESTED = "changes_requested"
    SIGNED = "signed"
    PHASE_CHANGED = "phase_changed"
    COMMENTED = "commented"
    ARCHIVED = "archived"
    # Approval workflow
    WORKFLOW_CONFIGURED = "workflow_configured"
    WORKFLOW_ACTIVATED = "workflow_activated"
    CHECKBOX_APPROVED = "checkbox_approved"
    APPROVAL_COMPLETED = "approval_completed"
    CANCELLED = "cancelled"
    # Shared
    REMINDER_SENT = "reminder_sent"


class AuditEntry(db.Model):
    """
    One row per action.  Rows are never updated or deleted (enforced by
    ``app.models.immutability``).

    ``actor_name`` and ``payload_json`` are captured at write time so that
    "who did what, when" can be reconstructed from this row alone.
    """

    __tablename__ = "audit_entries"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)

    entity_type = db.Column(db.String(20), nullable=False, comment="decision | approval")
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(db.String(40), nullable=False)
    actor_id = db.Column(db.String(150), nullable=False, default="system")
    actor_name = db.Column(db.String(255), nullable=True)
    actor_ip = db.Column(db.String(45), nullable=True)

    details = db.Column(db.Text, nullable=True, comment="Free-text detail (comment, reason, …)")
    payload_json = db.Column(
        db.Text, default="{}",
        comment="JSON: structured context (old/new values, option ids, versions)",
    )

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def payload(self) -> dict:
        try:
            return json.loads(self.payload_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "user_id": self.actor_id,
            "user_name": self.actor_name,
            "ip_address": self.actor_ip,
            "details": self.details,
            "payload": self.payload,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<AuditEntry {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: AuditEntityType,
    entity_id: str,
    action: AuditAction,
    actor,
    details: str | None = None,
    payload: dict | None = None,
) -> AuditEntry:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    ``actor`` is an ``app.core.actor.Actor``.
    """
    entry = AuditEntry(
        entity_type=AuditEntityType(entity_type).value,
        entity_id=str(entity_id),
        action=AuditAction(action).value,
        actor_id=actor.id,
        actor_name=actor.display_name,
        actor_ip=actor.ip_address,
        details=details,
        payload_json=json.dumps(payload or {}, default=str),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def audit_trail(entity_type: AuditEntityType, entity_id: str) -> list[AuditEntry]:
    """Chronological audit entries for one entity (oldest first)."""
    return (
        AuditEntry.query
        .filter_by(entity_type=AuditEntityType(entity_type).value, entity_id=str(entity_id))
        .order_by(AuditEntry.id.asc())
        .all()
    )
