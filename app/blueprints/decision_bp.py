"""
Decision Blueprint — decision log, state machine and bulk actions.

Routes (prefix /api/v1/decisions):
  GET    /                                  – list (project_id, phase, status,
                                              approver_id, due_from, due_to, q)
  POST   /                                  – create (draft)
  GET    /<did>                             – detail (options, comments, audit, versions)
  PATCH  /<did>                             – edit content / phase        {version}
  DELETE /<did>                             – soft archive
  POST   /<did>/publish                     – draft → pending             {version}
  POST   /<did>/approve                     – pending → approved          {selected_option_id, version}
  POST   /<did>/request-changes             – pending → changes_requested {comment, version}
  POST   /<did>/reject                      – pending → rejected          {comment?, version}
  POST   /<did>/sign                        – confirmatory signature      {signer_name?, signed_at?}
  POST   /<did>/comments                    – append comment              {body}
  GET    /<did>/versions                    – version list (newest first)
  GET    /<did>/versions/<n>/diff           – diff against version n-1
  GET    /<did>/audit                       – audit timeline
  POST   /bulk/remind                       – {decision_ids}
  POST   /bulk/export                       – {decision_ids} → .xlsx
  POST   /bulk/phase                        – {decision_ids, phase}

Business failures are raised by the services and rendered by the app-wide
handlers in app.utils.errors; this module only rejects malformed input.
"""

from __future__ import annotations

import io
import logging

from flask import Blueprint, jsonify, request, send_file

from app.blueprints import (
    BadRequest,
    current_actor,
    json_body,
    optional_version,
    paginate_items,
    require_field,
)
from app.models.audit import AuditEntityType, audit_trail
from app.models.decision import DecisionPhase, DecisionStatus
from app.services import bulk_service, decision_lifecycle, decision_store, version_service
from app.utils.errors import E, api_error
from app.utils.helpers import parse_date

logger = logging.getLogger(__name__)

decision_bp = Blueprint("decisions", __name__, url_prefix="/api/v1/decisions")

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@decision_bp.errorhandler(BadRequest)
def _handle_bad_request(error: BadRequest):
    code = E.VALIDATION_REQUIRED if "required" in str(error) else E.VALIDATION_INVALID
    details = {error.field: str(error)} if error.field else None
    return api_error(code, str(error), details=details)


def _detail(decision_id: str):
    decision = decision_store.get_decision(decision_id)
    return jsonify(decision_store.decision_detail(decision))


# ═════════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════════


@decision_bp.route("", methods=["GET"])
def list_decisions():
    phase = request.args.get("phase")
    if phase and phase not in {p.value for p in DecisionPhase}:
        raise BadRequest(f"Unknown phase: {phase}", "phase")
    status = request.args.get("status")
    if status and status not in {s.value for s in DecisionStatus}:
        raise BadRequest(f"Unknown status: {status}", "status")
    try:
        due_from = parse_date(request.args.get("due_from"))
        due_to = parse_date(request.args.get("due_to"))
    except ValueError as exc:
        raise BadRequest(str(exc), "due_from/due_to") from None

    decisions = decision_store.list_decisions(
        project_id=request.args.get("project_id"),
        phase=phase,
        status=status,
        approver_id=request.args.get("approver_id"),
        due_date_from=due_from,
        due_date_to=due_to,
        search=request.args.get("q"),
    )
    items, total = paginate_items(decisions)
    return jsonify({"items": [d.to_dict() for d in items], "total": total})


@decision_bp.route("", methods=["POST"])
def create_decision():
    """Create a draft decision.

    Body: { title, options: [{title, description?, media_urls?, cost_impacts?}],
            phase?, description?, summary?, due_date?, approver_id?,
            approver_name?, approver_email?, project_id?, recommended_option_index? }
    """
    data = json_body()
    require_field(data, "title")
    options = require_field(data, "options", list)
    decision = decision_lifecycle.create_decision(
        current_actor(),
        title=data["title"],
        options=options,
        phase=data.get("phase"),
        description=data.get("description"),
        summary=data.get("summary"),
        due_date=data.get("due_date"),
        approver_id=data.get("approver_id"),
        approver_name=data.get("approver_name"),
        approver_email=data.get("approver_email"),
        project_id=data.get("project_id"),
        recommended_option_index=data.get("recommended_option_index"),
    )
    return jsonify(decision_store.decision_detail(decision)), 201


@decision_bp.route("/<did>", methods=["GET"])
def get_decision(did):
    return _detail(did)


@decision_bp.route("/<did>", methods=["PATCH"])
def update_decision(did):
    data = json_body()
    version = require_field(data, "version", int)
    fields = {k: v for k, v in data.items() if k != "version"}
    if not fields:
        raise BadRequest("No fields to update")
    decision_lifecycle.update_decision(did, fields, current_actor(), version=version)
    return _detail(did)


@decision_bp.route("/<did>", methods=["DELETE"])
def delete_decision(did):
    """Soft-archive; the decision's history stays exportable."""
    data = json_body()
    version = optional_version(data)
    if version is None and request.args.get("version"):
        try:
            version = int(request.args["version"])
        except ValueError:
            raise BadRequest("version must be an integer", "version") from None
    decision = decision_lifecycle.archive_decision(did, current_actor(), version=version)
    return jsonify({"archived": True, "id": decision.id, "archived_at": decision.to_dict()["archived_at"]})


# ═════════════════════════════════════════════════════════════════════════════
# TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════════


@decision_bp.route("/<did>/publish", methods=["POST"])
def publish_decision(did):
    data = json_body()
    decision_lifecycle.publish_decision(did, current_actor(), version=require_field(data, "version", int))
    return _detail(did)


@decision_bp.route("/<did>/approve", methods=["POST"])
def approve_decision(did):
    data = json_body()
    selected = require_field(data, "selected_option_id", str)
    version = require_field(data, "version", int)
    decision_lifecycle.approve_decision(did, selected, current_actor(), version=version)
    return _detail(did)


@decision_bp.route("/<did>/request-changes", methods=["POST"])
def request_changes(did):
    data = json_body()
    version = require_field(data, "version", int)
    decision_lifecycle.request_changes(did, data.get("comment"), current_actor(), version=version)
    return _detail(did)


@decision_bp.route("/<did>/reject", methods=["POST"])
def reject_decision(did):
    data = json_body()
    version = require_field(data, "version", int)
    decision_lifecycle.reject_decision(did, current_actor(), comment=data.get("comment"), version=version)
    return _detail(did)


@decision_bp.route("/<did>/sign", methods=["POST"])
def sign_decision(did):
    data = json_body()
    decision_lifecycle.sign_decision(
        did,
        current_actor(),
        signer_name=data.get("signer_name"),
        signed_at=data.get("signed_at"),
        version=optional_version(data),
    )
    return _detail(did)


@decision_bp.route("/<did>/comments", methods=["POST"])
def add_comment(did):
    data = json_body()
    comment = decision_lifecycle.add_comment(did, data.get("body"), current_actor())
    return jsonify(comment.to_dict()), 201


# ═════════════════════════════════════════════════════════════════════════════
# HISTORY
# ═════════════════════════════════════════════════════════════════════════════


@decision_bp.route("/<did>/versions", methods=["GET"])
def list_versions(did):
    return jsonify({"items": version_service.list_versions(did)})


@decision_bp.route("/<did>/versions/<int:number>/diff", methods=["GET"])
def diff_version(did, number):
    return jsonify(version_service.diff_version(did, number))


@decision_bp.route("/<did>/audit", methods=["GET"])
def decision_audit(did):
    decision = decision_store.get_decision(did, include_archived=True)
    return jsonify({"items": [e.to_dict() for e in audit_trail(AuditEntityType.DECISION, decision.id)]})


# ═════════════════════════════════════════════════════════════════════════════
# BULK
# ═════════════════════════════════════════════════════════════════════════════


@decision_bp.route("/bulk/remind", methods=["POST"])
def bulk_remind():
    data = json_body()
    ids = require_field(data, "decision_ids", list)
    return jsonify(bulk_service.bulk_remind(ids, current_actor()))


@decision_bp.route("/bulk/phase", methods=["POST"])
def bulk_phase():
    data = json_body()
    ids = require_field(data, "decision_ids", list)
    phase = require_field(data, "phase", str)
    return jsonify(bulk_service.bulk_change_phase(ids, phase, current_actor()))


@decision_bp.route("/bulk/export", methods=["POST"])
def bulk_export():
    data = json_body()
    ids = require_field(data, "decision_ids", list)
    result = bulk_service.bulk_export_history(ids, current_actor())
    response = send_file(
        io.BytesIO(result["content"]),
        mimetype=XLSX_MIMETYPE,
        as_attachment=True,
        download_name="decision-history.xlsx",
    )
    response.headers["X-Exported-Count"] = str(result["exported"])
    response.headers["X-Failed-Count"] = str(len(result["errors"]))
    return response
