"""
Approval & e-Signature Blueprint.

Routes (prefix /api/v1/approvals-e-signatures):
  GET    /                                  – list approvals (?status, ?decision_id)
  POST   /                                  – create approval
  GET    /<aid>                             – detail (workflow, signers, audit)
  PATCH  /<aid>                             – edit title/description   {title?, description?, version?}
  POST   /<aid>/cancel                      – cancel                   {reason?, version?}
  GET    /<aid>/workflow                    – saved workflow config
  POST   /<aid>/workflow                    – save (full upsert)       {require_signers, ...}
  PATCH  /<aid>/workflow                    – partial upsert
  POST   /<aid>/activate                    – pending → active          {version?}
  GET    /<aid>/signers                     – signer queue with display status
  POST   /<aid>/signers/<sid>/remind        – explicit reminder
  POST   /<aid>/sign                        – e-signature capture      {signer_id, signature_type, signature_data}
  POST   /<aid>/approve                     – checkbox approval        {signer_id}
  GET    /inbox/pending                     – pending items (?signer_id)
  GET    /signed                            – signed documents (?approval_id, ?signer_id)
  POST   /reminders/sweep                   – run the reminder sweep now
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import (
    BadRequest,
    current_actor,
    json_body,
    optional_version,
    paginate_items,
    require_field,
)
from app.services import approval_workflow, signature_service
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approvals", __name__, url_prefix="/api/v1/approvals-e-signatures")


@approval_bp.errorhandler(BadRequest)
def _handle_bad_request(error: BadRequest):
    code = E.VALIDATION_REQUIRED if "required" in str(error) else E.VALIDATION_INVALID
    details = {error.field: str(error)} if error.field else None
    return api_error(code, str(error), details=details)


def _detail(approval_id):
    approval = approval_workflow.get_approval(approval_id)
    return jsonify(approval_workflow.approval_detail(approval))


# ═════════════════════════════════════════════════════════════════════════════
# APPROVAL RECORDS
# ═════════════════════════════════════════════════════════════════════════════


@approval_bp.route("", methods=["GET"])
def list_approvals():
    approvals = approval_workflow.list_approvals(
        status=request.args.get("status"),
        decision_id=request.args.get("decision_id"),
    )
    items, total = paginate_items(approvals)
    return jsonify({"items": [a.to_dict() for a in items], "total": total})


@approval_bp.route("", methods=["POST"])
def create_approval():
    """Create an approval record.

    Body: { title, description?, decision_id?, signs_decision? }
    """
    data = json_body()
    title = require_field(data, "title", str)
    signs_decision = data.get("signs_decision", False)
    if not isinstance(signs_decision, bool):
        raise BadRequest("signs_decision must be a boolean", "signs_decision")
    approval = approval_workflow.create_approval(
        current_actor(),
        title=title,
        description=data.get("description"),
        decision_id=data.get("decision_id"),
        signs_decision=signs_decision,
    )
    return jsonify(approval_workflow.approval_detail(approval)), 201


@approval_bp.route("/<aid>", methods=["GET"])
def get_approval(aid):
    return _detail(aid)


@approval_bp.route("/<aid>", methods=["PATCH"])
def update_approval(aid):
    """Edit an open approval.

    Body: { title?, description?, version? }
    """
    data = json_body()
    fields = {k: v for k, v in data.items() if k != "version"}
    if not fields:
        raise BadRequest("title or description is required")
    approval_workflow.update_approval(aid, current_actor(), fields, version=optional_version(data))
    return _detail(aid)


@approval_bp.route("/<aid>/cancel", methods=["POST"])
def cancel_approval(aid):
    data = json_body()
    approval_workflow.cancel_approval(
        aid, current_actor(), reason=data.get("reason"), version=optional_version(data),
    )
    return _detail(aid)


# ═════════════════════════════════════════════════════════════════════════════
# WORKFLOW CONFIGURATION
# ═════════════════════════════════════════════════════════════════════════════


@approval_bp.route("/<aid>/workflow", methods=["GET"])
def get_workflow(aid):
    return jsonify(approval_workflow.get_workflow(aid).to_dict())


@approval_bp.route("/<aid>/workflow", methods=["POST"])
def save_workflow(aid):
    """Body: { require_signers, approval_type?, approval_order?, legal_text?, due_in_days?, version? }"""
    data = json_body()
    require_signers = require_field(data, "require_signers", list)
    config = approval_workflow.save_workflow(
        aid,
        current_actor(),
        require_signers=require_signers,
        approval_type=data.get("approval_type") or "e_sign",
        approval_order=data.get("approval_order") or "sequential",
        legal_text=data.get("legal_text"),
        due_in_days=data.get("due_in_days"),
        version=optional_version(data),
    )
    return jsonify(config.to_dict())


@approval_bp.route("/<aid>/workflow", methods=["PATCH"])
def update_workflow(aid):
    data = json_body()
    version = optional_version(data)
    fields = {k: v for k, v in data.items() if k != "version"}
    if not fields:
        raise BadRequest("No fields to update")
    config = approval_workflow.update_workflow(aid, current_actor(), fields, version=version)
    return jsonify(config.to_dict())


@approval_bp.route("/<aid>/activate", methods=["POST"])
def activate_workflow(aid):
    data = json_body()
    approval_workflow.activate_workflow(aid, current_actor(), version=optional_version(data))
    return _detail(aid)


# ═════════════════════════════════════════════════════════════════════════════
# SIGNERS
# ═════════════════════════════════════════════════════════════════════════════


@approval_bp.route("/<aid>/signers", methods=["GET"])
def list_signers(aid):
    approval_workflow.get_approval(aid)
    return jsonify({"items": approval_workflow.list_signers(aid)})


@approval_bp.route("/<aid>/signers/<sid>/remind", methods=["POST"])
def remind_signer(aid, sid):
    signer = approval_workflow.remind_signer(aid, sid, current_actor())
    return jsonify(signer.to_dict())


@approval_bp.route("/<aid>/sign", methods=["POST"])
def submit_signature(aid):
    data = json_body()
    signer_id = require_field(data, "signer_id", str)
    signature_type = require_field(data, "signature_type", str)
    signature_data = require_field(data, "signature_data", str)
    accepted = data.get("legal_text_accepted", False)
    if not isinstance(accepted, bool):
        raise BadRequest("legal_text_accepted must be a boolean", "legal_text_accepted")
    doc = signature_service.submit_signature(
        aid,
        signer_id,
        current_actor(),
        signature_type=signature_type,
        signature_data=signature_data,
        legal_text_accepted=accepted,
        version=optional_version(data),
    )
    return jsonify(doc), 201


@approval_bp.route("/<aid>/approve", methods=["POST"])
def submit_checkbox_approval(aid):
    data = json_body()
    signer_id = require_field(data, "signer_id", str)
    accepted = data.get("legal_text_accepted", False)
    if not isinstance(accepted, bool):
        raise BadRequest("legal_text_accepted must be a boolean", "legal_text_accepted")
    signature_service.submit_checkbox_approval(
        aid, signer_id, current_actor(),
        legal_text_accepted=accepted,
        version=optional_version(data),
    )
    return _detail(aid)


# ═════════════════════════════════════════════════════════════════════════════
# INBOX, ARCHIVE, REMINDERS
# ═════════════════════════════════════════════════════════════════════════════


@approval_bp.route("/inbox/pending", methods=["GET"])
def pending_items():
    items = approval_workflow.list_pending_items(signer_id=request.args.get("signer_id"))
    return jsonify({"items": items, "total": len(items)})


@approval_bp.route("/signed", methods=["GET"])
def signed_documents():
    docs = signature_service.list_signed_documents(
        approval_id=request.args.get("approval_id"),
        signer_id=request.args.get("signer_id"),
    )
    items, total = paginate_items(docs)
    return jsonify({"items": items, "total": total})


@approval_bp.route("/reminders/sweep", methods=["POST"])
def reminder_sweep():
    result = approval_workflow.run_reminder_sweep()
    logger.info("Reminder sweep triggered over HTTP", extra={"actor_id": current_actor().id, **result})
    return jsonify(result)
