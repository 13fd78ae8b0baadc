"""
Version Snapshot Manager.

Every committed content edit appends a DecisionVersion holding a full
snapshot of the decision (scalar fields + options by position).  Storage
is append-only; diffs are computed on read by comparing a version with the
one immediately before it.

``diff_snapshots`` is a pure function and is what the API exposes through
``diff_version``.
"""

from __future__ import annotations

import logging

from sqlalchemy import func

from app.core.exceptions import NotFoundError
from app.models import db
from app.models.decision import SNAPSHOT_FIELDS, Decision, DecisionVersion
from app.services import decision_store

logger = logging.getLogger(__name__)

OPTION_DIFF_FIELDS = ("title", "description", "media_urls", "cost_impacts")


# ── Snapshots ────────────────────────────────────────────────────────────────


def build_snapshot(decision: Decision) -> dict:
    """Full content snapshot of *decision* as a JSON-safe dict."""
    snapshot = {}
    for field in SNAPSHOT_FIELDS:
        value = getattr(decision, field)
        snapshot[field] = value.isoformat() if hasattr(value, "isoformat") else value
    snapshot["options"] = [
        {
            "id": option.id,
            "title": option.title,
            "description": option.description,
            "media_urls": list(option.media_urls or []),
            "cost_impacts": [
                {
                    "label": c.label,
                    "amount_minor_units": c.amount_minor_units,
                    "currency": c.currency,
                }
                for c in costs
            ],
        }
        for option, costs in decision_store.load_options(decision.id)
    ]
    return snapshot


def record_version(decision: Decision, actor, snapshot: dict | None = None) -> DecisionVersion:
    """Append the next DecisionVersion for *decision* (flush only).

    version_number = previous max + 1, so numbering is 1, 2, 3, … with no
    gaps; the (decision_id, version_number) unique constraint rejects a
    racing duplicate.
    """
    current_max = (
        db.session.query(func.max(DecisionVersion.version_number))
        .filter(DecisionVersion.decision_id == decision.id)
        .scalar()
    ) or 0
    version = DecisionVersion(
        decision_id=decision.id,
        version_number=current_max + 1,
        snapshot=snapshot if snapshot is not None else build_snapshot(decision),
        created_by=actor.id,
    )
    db.session.add(version)
    db.session.flush()
    logger.debug(
        "Decision version recorded",
        extra={"decision_id": decision.id, "version_number": version.version_number},
    )
    return version


# ── Reads ────────────────────────────────────────────────────────────────────


def list_versions(decision_id: str) -> list[dict]:
    """Versions newest first."""
    decision_store.get_decision(decision_id, include_archived=True)
    versions = (
        DecisionVersion.query
        .filter_by(decision_id=decision_id)
        .order_by(DecisionVersion.version_number.desc())
        .all()
    )
    return [v.to_dict() for v in versions]


def get_version(decision_id: str, version_number: int) -> DecisionVersion:
    version = DecisionVersion.query.filter_by(
        decision_id=decision_id, version_number=version_number,
    ).first()
    if version is None:
        raise NotFoundError("DecisionVersion", f"{decision_id}#{version_number}")
    return version


def diff_version(decision_id: str, version_number: int) -> dict:
    """Diff version *version_number* against its predecessor."""
    decision_store.get_decision(decision_id, include_archived=True)
    current = get_version(decision_id, version_number)
    previous = None
    if version_number > 1:
        previous = get_version(decision_id, version_number - 1)

    result = diff_snapshots(previous.snapshot if previous else None, current.snapshot)
    result.update({
        "decision_id": decision_id,
        "version_number": current.version_number,
        "previous_version_number": previous.version_number if previous else None,
        "created_at": current.created_at.isoformat() if current.created_at else None,
    })
    return result


# ── Pure diff ────────────────────────────────────────────────────────────────


def diff_snapshots(previous: dict | None, current: dict) -> dict:
    """Field-by-field diff of two snapshots.

    Scalar fields are compared by name; options are compared by position.
    With no predecessor (version 1) nothing is flagged.

    Returns:
        {
            "is_initial": bool,
            "changed_fields": ["title", ...],
            "fields": {"title": {"old": ..., "new": ...}, ...},
            "options": [
                {"position": 0, "change": "changed", "changed_fields": [...],
                 "old": {...}, "new": {...}},
                ...
            ],
        }
    """
    if previous is None:
        return {
            "is_initial": True,
            "changed_fields": [],
            "fields": {},
            "options": [
                {"position": i, "change": "unchanged", "changed_fields": [], "old": None, "new": o}
                for i, o in enumerate(current.get("options", []))
            ],
        }

    fields = {}
    for name in SNAPSHOT_FIELDS:
        old, new = previous.get(name), current.get(name)
        if old != new:
            fields[name] = {"old": old, "new": new}

    old_options = previous.get("options", [])
    new_options = current.get("options", [])
    option_diffs = []
    for i in range(max(len(old_options), len(new_options))):
        old = old_options[i] if i < len(old_options) else None
        new = new_options[i] if i < len(new_options) else None
        if old is None:
            change, changed = "added", list(OPTION_DIFF_FIELDS)
        elif new is None:
            change, changed = "removed", list(OPTION_DIFF_FIELDS)
        else:
            changed = [f for f in OPTION_DIFF_FIELDS if old.get(f) != new.get(f)]
            change = "changed" if changed else "unchanged"
        option_diffs.append({
            "position": i,
            "change": change,
            "changed_fields": changed,
            "old": old,
            "new": new,
        })

    changed_fields = list(fields)
    if any(d["change"] != "unchanged" for d in option_diffs):
        changed_fields.append("options")

    return {
        "is_initial": False,
        "changed_fields": changed_fields,
        "fields": fields,
        "options": option_diffs,
    }
