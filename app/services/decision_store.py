"""
Decision Store — persistence helpers and invariant checks for Decision,
DecisionOption and CostImpact rows.

This module never commits: the lifecycle service owns the transaction
boundary and calls in here to load rows, validate option payloads and
write option/cost-impact children.

Usage:
    from app.services import decision_store

    decision = decision_store.get_decision(decision_id)
    decision_store.check_version(decision, expected_version=3)
"""

from __future__ import annotations

import logging
import re
from datetime import date

from sqlalchemy import or_

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.audit import AuditEntityType, audit_trail
from app.models.decision import (
    CostImpact,
    Decision,
    DecisionComment,
    DecisionOption,
    DecisionPhase,
    DecisionStatus,
    DecisionVersion,
)

logger = logging.getLogger(__name__)

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
DEFAULT_CURRENCY = "USD"


# ── Loading ──────────────────────────────────────────────────────────────────


def get_decision(decision_id: str, *, include_archived: bool = False) -> Decision:
    """Return the decision or raise NotFoundError.

    Archived decisions are invisible to every operation except reads that
    explicitly ask for them (history export, audit review).
    """
    decision = db.session.get(Decision, decision_id) if decision_id else None
    if decision is None or (decision.is_archived and not include_archived):
        raise NotFoundError("Decision", decision_id)
    return decision


def load_options(decision_id: str) -> list[tuple[DecisionOption, list[CostImpact]]]:
    """Options in display order, each with its ordered cost impacts."""
    options = (
        DecisionOption.query
        .filter_by(decision_id=decision_id)
        .order_by(DecisionOption.sort_order.asc(), DecisionOption.id.asc())
        .all()
    )
    if not options:
        return []
    costs = (
        CostImpact.query
        .filter(CostImpact.option_id.in_([o.id for o in options]))
        .order_by(CostImpact.sort_order.asc(), CostImpact.id.asc())
        .all()
    )
    by_option: dict[str, list[CostImpact]] = {}
    for cost in costs:
        by_option.setdefault(cost.option_id, []).append(cost)
    return [(o, by_option.get(o.id, [])) for o in options]


def count_options(decision_id: str) -> int:
    return DecisionOption.query.filter_by(decision_id=decision_id).count()


def get_option_of(decision_id: str, option_id: str) -> DecisionOption:
    """Return the option if it belongs to *decision_id*, else NotFoundError."""
    option = db.session.get(DecisionOption, option_id) if option_id else None
    if option is None or option.decision_id != decision_id:
        raise NotFoundError("DecisionOption", option_id)
    return option


def check_version(decision: Decision, expected_version: int | None) -> None:
    """Raise ConflictError when the caller's observed version is stale.

    ``None`` skips the caller-side comparison; the flush-time version guard
    still protects the write.
    """
    if expected_version is None:
        return
    if int(expected_version) != decision.version:
        logger.warning(
            "Stale decision version",
            extra={
                "decision_id": decision.id,
                "expected_version": expected_version,
                "actual_version": decision.version,
            },
        )
        raise ConflictError("Decision", decision.id, int(expected_version), decision.version)


# ── Option payloads ──────────────────────────────────────────────────────────


def normalize_options(raw_options) -> list[dict]:
    """Validate an options payload and return cleaned dicts.

    Each option: {id?, title, description?, media_urls?, cost_impacts?}
    Each cost impact: {label, amount_minor_units, currency?}

    Raises:
        ValidationError with field paths in ``details``.
    """
    if not isinstance(raw_options, list):
        raise ValidationError("options must be a list", details={"options": "not a list"})

    errors: dict[str, str] = {}
    cleaned: list[dict] = []
    for i, raw in enumerate(raw_options):
        path = f"options[{i}]"
        if not isinstance(raw, dict):
            errors[path] = "must be an object"
            continue
        title = (raw.get("title") or "").strip() if isinstance(raw.get("title"), str) else ""
        if not title:
            errors[f"{path}.title"] = "Option title required"

        description = raw.get("description")
        if description is not None and not isinstance(description, str):
            errors[f"{path}.description"] = "must be a string"
            description = None
        option_id = raw.get("id")
        if option_id is not None and not isinstance(option_id, str):
            errors[f"{path}.id"] = "must be a string"
            option_id = None

        media_urls = raw.get("media_urls") or []
        if not isinstance(media_urls, list) or not all(isinstance(u, str) and u.strip() for u in media_urls):
            errors[f"{path}.media_urls"] = "must be a list of non-empty URLs"
            media_urls = []

        costs = []
        raw_costs = raw.get("cost_impacts") or []
        if not isinstance(raw_costs, list):
            errors[f"{path}.cost_impacts"] = "must be a list"
            raw_costs = []
        for j, rc in enumerate(raw_costs):
            cpath = f"{path}.cost_impacts[{j}]"
            if not isinstance(rc, dict):
                errors[cpath] = "must be an object"
                continue
            label = (rc.get("label") or "").strip() if isinstance(rc.get("label"), str) else ""
            if not label:
                errors[f"{cpath}.label"] = "label is required"
            amount = rc.get("amount_minor_units")
            if isinstance(amount, bool) or not isinstance(amount, int):
                errors[f"{cpath}.amount_minor_units"] = "must be an integer"
            elif amount < 0:
                errors[f"{cpath}.amount_minor_units"] = "must be >= 0"
            currency = (rc.get("currency") or DEFAULT_CURRENCY)
            currency = currency.strip().upper() if isinstance(currency, str) else ""
            if not _CURRENCY_RE.match(currency):
                errors[f"{cpath}.currency"] = "must be a 3-letter ISO 4217 code"
            costs.append({"label": label, "amount_minor_units": amount, "currency": currency})

        cleaned.append({
            "id": option_id or None,
            "title": title,
            "description": (description or "").strip() or None,
            "media_urls": [u.strip() for u in media_urls],
            "cost_impacts": costs,
        })

    if errors:
        raise ValidationError("Invalid options", details=errors)
    return cleaned


def apply_options(
    decision_id: str,
    options: list[dict],
    *,
    new_ids: list[str] | None = None,
) -> list[DecisionOption]:
    """Write *options* (already normalised) as the decision's full option list.

    Options carrying an ``id`` of this decision are updated in place so
    references to them stay valid; options without an id are created;
    existing options absent from the payload are removed along with their
    cost impacts.  ``new_ids`` pre-assigns ids to created options by
    position.  Returns the options in their new order.
    """
    existing = {o.id: o for o in DecisionOption.query.filter_by(decision_id=decision_id).all()}

    keep_ids = {o["id"] for o in options if o["id"]}
    unknown = keep_ids - set(existing)
    if unknown:
        raise ValidationError(
            "Option ids do not belong to this decision",
            details={"options": sorted(unknown)},
        )

    for option_id, option in existing.items():
        if option_id not in keep_ids:
            CostImpact.query.filter_by(option_id=option_id).delete()
            db.session.delete(option)

    written: list[DecisionOption] = []
    for position, data in enumerate(options):
        option = existing.get(data["id"]) if data["id"] else None
        if option is None:
            option = DecisionOption(decision_id=decision_id)
            if new_ids:
                option.id = new_ids[position]
            db.session.add(option)
        option.title = data["title"]
        option.description = data["description"]
        option.media_urls = list(data["media_urls"])
        option.sort_order = position
        db.session.flush()

        CostImpact.query.filter_by(option_id=option.id).delete()
        for cpos, cost in enumerate(data["cost_impacts"]):
            db.session.add(CostImpact(
                option_id=option.id,
                label=cost["label"],
                amount_minor_units=cost["amount_minor_units"],
                currency=cost["currency"],
                sort_order=cpos,
            ))
        written.append(option)

    db.session.flush()
    return written


# ── Queries ──────────────────────────────────────────────────────────────────


def list_decisions(
    *,
    project_id: str | None = None,
    phase: str | None = None,
    status: str | None = None,
    approver_id: str | None = None,
    due_date_from: date | None = None,
    due_date_to: date | None = None,
    search: str | None = None,
) -> list[Decision]:
    """Non-archived decisions, newest first, narrowed by the given filters."""
    q = Decision.query.filter(Decision.archived_at.is_(None))
    if project_id:
        q = q.filter(Decision.project_id == project_id)
    if phase:
        q = q.filter(Decision.phase == DecisionPhase(phase).value)
    if status:
        q = q.filter(Decision.status == DecisionStatus(status).value)
    if approver_id:
        q = q.filter(Decision.approver_id == approver_id)
    if due_date_from:
        q = q.filter(Decision.due_date >= due_date_from)
    if due_date_to:
        q = q.filter(Decision.due_date <= due_date_to)
    if search and search.strip():
        term = f"%{search.strip()}%"
        q = q.filter(or_(Decision.title.ilike(term), Decision.summary.ilike(term)))
    return q.order_by(Decision.created_at.desc()).all()


def decision_detail(decision: Decision) -> dict:
    """Decision plus options, comments, audit timeline and versions."""
    data = decision.to_dict()
    data["options"] = [o.to_dict(costs) for o, costs in load_options(decision.id)]
    data["comments"] = [
        c.to_dict()
        for c in DecisionComment.query
        .filter_by(decision_id=decision.id)
        .order_by(DecisionComment.created_at.asc())
        .all()
    ]
    data["audit_timeline"] = [
        e.to_dict() for e in audit_trail(AuditEntityType.DECISION, decision.id)
    ]
    data["versions"] = [
        v.to_dict()
        for v in DecisionVersion.query
        .filter_by(decision_id=decision.id)
        .order_by(DecisionVersion.version_number.desc())
        .all()
    ]
    return data
