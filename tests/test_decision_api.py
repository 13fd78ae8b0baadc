"""
Decision & approval HTTP API tests.

Tests cover:
  - decision CRUD, filters, pagination
  - transition endpoints and their error codes (400 / 404 / 409 / 422)
  - versions, diff and audit endpoints
  - bulk endpoints (phase, remind, export)
  - approval / workflow / signature endpoints end to end
"""

import io

import pytest
from openpyxl import load_workbook

from app.utils.errors import E


def _create(client, headers, **overrides):
    body = {
        "title": "Bathroom vanity",
        "options": [
            {"title": "Oak", "cost_impacts": [{"label": "Unit", "amount_minor_units": 120000}]},
            {"title": "Walnut", "media_urls": ["https://cdn.example.com/walnut.jpg"]},
        ],
        "approver_email": "casey@example.com",
        "project_id": "proj-1",
    }
    body.update(overrides)
    res = client.post("/api/v1/decisions", json=body, headers=headers)
    assert res.status_code == 201, res.get_json()
    return res.get_json()


def _publish(client, headers, decision):
    res = client.post(f"/api/v1/decisions/{decision['id']}/publish",
                      json={"version": decision["version"]}, headers=headers)
    assert res.status_code == 200, res.get_json()
    return res.get_json()


# ═════════════════════════════════════════════════════════════════════════
# DECISIONS
# ═════════════════════════════════════════════════════════════════════════


class TestDecisionCRUD:
    def test_create_returns_detail(self, client, auth_headers):
        data = _create(client, auth_headers)
        assert data["status"] == "draft"
        assert data["version"] == 1
        assert data["user_id"] == "pm-1"
        assert [o["title"] for o in data["options"]] == ["Oak", "Walnut"]
        assert data["options"][0]["cost_impacts"][0]["amount_minor_units"] == 120000
        assert [a["action"] for a in data["audit_timeline"]] == ["created"]
        assert len(data["versions"]) == 1

    def test_create_missing_title_is_400(self, client, auth_headers):
        res = client.post("/api/v1/decisions", json={"options": [{"title": "A"}]}, headers=auth_headers)
        assert res.status_code == 400
        assert res.get_json()["code"] == E.VALIDATION_REQUIRED

    def test_create_bad_options_is_422(self, client, auth_headers):
        res = client.post("/api/v1/decisions", json={"title": "X", "options": [{"title": ""}]},
                          headers=auth_headers)
        assert res.status_code == 422
        assert "options[0].title" in res.get_json()["details"]

    def test_create_non_string_option_description_is_422(self, client, auth_headers):
        res = client.post("/api/v1/decisions",
                          json={"title": "X", "options": [{"title": "A", "description": 5}]},
                          headers=auth_headers)
        assert res.status_code == 422
        assert "options[0].description" in res.get_json()["details"]

    def test_non_object_body_is_400(self, client, auth_headers):
        res = client.post("/api/v1/decisions", json=["not", "an", "object"], headers=auth_headers)
        assert res.status_code == 400

    def test_get_unknown_is_404(self, client):
        res = client.get("/api/v1/decisions/does-not-exist")
        assert res.status_code == 404
        assert res.get_json()["code"] == E.NOT_FOUND

    def test_list_filters(self, client, auth_headers):
        a = _create(client, auth_headers, title="Flooring")
        _create(client, auth_headers, title="Lighting", project_id="proj-2")
        _publish(client, auth_headers, a)

        res = client.get("/api/v1/decisions?status=pending")
        assert [d["title"] for d in res.get_json()["items"]] == ["Flooring"]
        res = client.get("/api/v1/decisions?project_id=proj-2")
        assert res.get_json()["total"] == 1
        res = client.get("/api/v1/decisions?q=light")
        assert [d["title"] for d in res.get_json()["items"]] == ["Lighting"]

    def test_list_bad_phase_is_400(self, client):
        res = client.get("/api/v1/decisions?phase=demolition")
        assert res.status_code == 400
        assert res.get_json()["code"] == E.VALIDATION_INVALID

    def test_list_pagination(self, client, auth_headers):
        for i in range(3):
            _create(client, auth_headers, title=f"Item {i}")
        data = client.get("/api/v1/decisions?limit=2&offset=0").get_json()
        assert data["total"] == 3
        assert len(data["items"]) == 2

    def test_patch_requires_version(self, client, auth_headers):
        d = _create(client, auth_headers)
        res = client.patch(f"/api/v1/decisions/{d['id']}", json={"title": "New"}, headers=auth_headers)
        assert res.status_code == 400

    def test_patch_rejects_boolean_version(self, client, auth_headers):
        d = _create(client, auth_headers)
        res = client.patch(f"/api/v1/decisions/{d['id']}", json={"title": "New", "version": True},
                           headers=auth_headers)
        assert res.status_code == 400

    def test_patch_stale_version_is_409(self, client, auth_headers):
        d = _create(client, auth_headers)
        client.patch(f"/api/v1/decisions/{d['id']}", json={"title": "New", "version": 1}, headers=auth_headers)
        res = client.patch(f"/api/v1/decisions/{d['id']}", json={"title": "Newer", "version": 1},
                           headers=auth_headers)
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == E.CONFLICT_VERSION
        assert body["details"] == {"expected_version": 1, "actual_version": 2}

    def test_delete_archives(self, client, auth_headers):
        d = _create(client, auth_headers)
        res = client.delete(f"/api/v1/decisions/{d['id']}", headers=auth_headers)
        assert res.status_code == 200
        assert res.get_json()["archived"] is True
        assert client.get(f"/api/v1/decisions/{d['id']}").status_code == 404
        audit = client.get(f"/api/v1/decisions/{d['id']}/audit").get_json()["items"]
        assert audit[-1]["action"] == "archived"


class TestDecisionTransitionsAPI:
    def test_full_flow(self, client, auth_headers, client_headers):
        d = _publish(client, auth_headers, _create(client, auth_headers))
        assert d["status"] == "pending"
        option_id = d["options"][1]["id"]

        res = client.post(f"/api/v1/decisions/{d['id']}/approve",
                          json={"selected_option_id": option_id, "version": d["version"]},
                          headers=client_headers)
        assert res.status_code == 200
        d = res.get_json()
        assert d["status"] == "approved"
        assert d["selected_option_id"] == option_id
        assert d["audit_timeline"][-1]["user_id"] == "client-1"

        res = client.post(f"/api/v1/decisions/{d['id']}/sign", json={}, headers=client_headers)
        assert res.status_code == 200
        assert res.get_json()["signer_name"] == "Casey Client"

    def test_approve_draft_is_409(self, client, auth_headers):
        d = _create(client, auth_headers)
        res = client.post(f"/api/v1/decisions/{d['id']}/approve",
                          json={"selected_option_id": d["options"][0]["id"], "version": 1},
                          headers=auth_headers)
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == E.CONFLICT_STATE
        assert body["details"] == {"action": "approve", "current_status": "draft"}

    def test_approve_missing_option_is_400(self, client, auth_headers):
        d = _publish(client, auth_headers, _create(client, auth_headers))
        res = client.post(f"/api/v1/decisions/{d['id']}/approve", json={"version": d["version"]},
                          headers=auth_headers)
        assert res.status_code == 400

    def test_request_changes_without_comment_is_422(self, client, auth_headers):
        d = _publish(client, auth_headers, _create(client, auth_headers))
        res = client.post(f"/api/v1/decisions/{d['id']}/request-changes",
                          json={"version": d["version"]}, headers=auth_headers)
        assert res.status_code == 422

    def test_request_changes_and_reject(self, client, auth_headers, client_headers):
        d = _publish(client, auth_headers, _create(client, auth_headers))
        res = client.post(f"/api/v1/decisions/{d['id']}/request-changes",
                          json={"comment": "Add a painted option", "version": d["version"]},
                          headers=client_headers)
        d = res.get_json()
        assert d["status"] == "changes_requested"
        assert d["comments"][0]["body"] == "Add a painted option"

        d = _publish(client, auth_headers, d)
        res = client.post(f"/api/v1/decisions/{d['id']}/reject",
                          json={"version": d["version"]}, headers=client_headers)
        assert res.get_json()["status"] == "rejected"

    def test_comments(self, client, auth_headers):
        d = _create(client, auth_headers)
        res = client.post(f"/api/v1/decisions/{d['id']}/comments", json={"body": "Samples on site"},
                          headers=auth_headers)
        assert res.status_code == 201
        assert res.get_json()["user_name"] == "Pat Manager"


class TestHistoryAPI:
    def test_versions_and_diff(self, client, auth_headers):
        d = _create(client, auth_headers)
        client.patch(f"/api/v1/decisions/{d['id']}", json={"summary": "Matte finish", "version": 1},
                     headers=auth_headers)
        versions = client.get(f"/api/v1/decisions/{d['id']}/versions").get_json()["items"]
        assert [v["version_number"] for v in versions] == [2, 1]

        diff = client.get(f"/api/v1/decisions/{d['id']}/versions/2/diff").get_json()
        assert diff["changed_fields"] == ["summary"]
        assert diff["fields"]["summary"] == {"old": None, "new": "Matte finish"}

    def test_diff_unknown_version_is_404(self, client, auth_headers):
        d = _create(client, auth_headers)
        assert client.get(f"/api/v1/decisions/{d['id']}/versions/5/diff").status_code == 404


class TestBulkAPI:
    def test_bulk_phase(self, client, auth_headers):
        d1 = _create(client, auth_headers, title="d1")
        d2 = _create(client, auth_headers, title="d2")
        res = client.post("/api/v1/decisions/bulk/phase",
                          json={"decision_ids": [d1["id"], d2["id"], "missing-id"], "phase": "construction"},
                          headers=auth_headers)
        assert res.status_code == 200
        data = res.get_json()
        assert data["updated"] == 2
        assert len(data["errors"]) == 1

    def test_bulk_phase_requires_ids(self, client, auth_headers):
        res = client.post("/api/v1/decisions/bulk/phase", json={"phase": "construction"}, headers=auth_headers)
        assert res.status_code == 400

    def test_bulk_remind(self, client, auth_headers):
        d = _publish(client, auth_headers, _create(client, auth_headers))
        res = client.post("/api/v1/decisions/bulk/remind", json={"decision_ids": [d["id"]]},
                          headers=auth_headers)
        assert res.get_json() == {"sent": 1, "errors": []}

    def test_bulk_export(self, client, auth_headers):
        d = _create(client, auth_headers)
        res = client.post("/api/v1/decisions/bulk/export",
                          json={"decision_ids": [d["id"], "missing-id"]}, headers=auth_headers)
        assert res.status_code == 200
        assert res.mimetype.endswith("spreadsheetml.sheet")
        assert res.headers["X-Exported-Count"] == "1"
        assert res.headers["X-Failed-Count"] == "1"
        wb = load_workbook(io.BytesIO(res.data))
        assert "Audit Trail" in wb.sheetnames
        assert [row[0] for row in wb["Errors"].iter_rows(min_row=2, values_only=True)] == ["missing-id"]

    def test_bulk_export_with_newline_in_id(self, client, auth_headers):
        d = _create(client, auth_headers)
        res = client.post("/api/v1/decisions/bulk/export",
                          json={"decision_ids": [d["id"], "bad\nid"]}, headers=auth_headers)
        assert res.status_code == 200
        assert res.headers["X-Exported-Count"] == "1"
        assert res.headers["X-Failed-Count"] == "1"
        wb = load_workbook(io.BytesIO(res.data))
        assert [row[0] for row in wb["Errors"].iter_rows(min_row=2, values_only=True)] == ["bad\nid"]


# ═════════════════════════════════════════════════════════════════════════
# APPROVALS & E-SIGNATURES
# ═════════════════════════════════════════════════════════════════════════

BASE = "/api/v1/approvals-e-signatures"


@pytest.fixture()
def active_approval(client, auth_headers):
    res = client.post(BASE, json={"title": "Cabinet hardware"}, headers=auth_headers)
    assert res.status_code == 201
    approval = res.get_json()
    res = client.post(f"{BASE}/{approval['id']}/workflow",
                      json={"require_signers": ["a@x.com", "b@x.com"], "legal_text": "I agree."},
                      headers=auth_headers)
    assert res.status_code == 200
    res = client.post(f"{BASE}/{approval['id']}/activate", json={}, headers=auth_headers)
    assert res.status_code == 200
    return res.get_json()


class TestApprovalAPI:
    def test_activate_builds_queue(self, active_approval):
        assert active_approval["status"] == "active"
        assert [s["state"] for s in active_approval["signers"]] == ["pending", "waiting"]
        assert active_approval["workflow"]["legal_text"] == "I agree."

    def test_sign_flow(self, client, auth_headers, active_approval):
        aid = active_approval["id"]
        res = client.post(f"{BASE}/{aid}/sign", json={
            "signer_id": "b@x.com", "signature_type": "type", "signature_data": "Bo",
            "legal_text_accepted": True,
        }, headers=auth_headers)
        assert res.status_code == 409
        assert res.get_json()["code"] == E.NOT_YOUR_TURN

        res = client.post(f"{BASE}/{aid}/sign", json={
            "signer_id": "a@x.com", "signature_type": "type", "signature_data": "Ann",
        }, headers=auth_headers)
        assert res.status_code == 422

        res = client.post(f"{BASE}/{aid}/sign", json={
            "signer_id": "a@x.com", "signature_type": "type", "signature_data": "Ann",
            "legal_text_accepted": True,
        }, headers={**auth_headers, "X-Forwarded-For": "203.0.113.9, 10.0.0.1"})
        assert res.status_code == 201
        doc = res.get_json()
        assert doc["ip_address"] == "203.0.113.9"
        assert doc["approval_completed"] is False

        pending = client.get(f"{BASE}/inbox/pending?signer_id=b@x.com").get_json()
        assert pending["total"] == 1

        signed = client.get(f"{BASE}/signed?approval_id={aid}").get_json()
        assert [d["signer_email"] for d in signed["items"]] == ["a@x.com"]

    def test_sign_missing_field_is_400(self, client, auth_headers, active_approval):
        res = client.post(f"{BASE}/{active_approval['id']}/sign", json={"signer_id": "a@x.com"},
                          headers=auth_headers)
        assert res.status_code == 400

    def test_workflow_patch(self, client, auth_headers, active_approval):
        res = client.patch(f"{BASE}/{active_approval['id']}/workflow",
                           json={"approval_order": "parallel"}, headers=auth_headers)
        assert res.status_code == 200
        signers = client.get(f"{BASE}/{active_approval['id']}/signers").get_json()["items"]
        assert [s["state"] for s in signers] == ["pending", "pending"]

    def test_remind_and_sweep(self, client, auth_headers, active_approval):
        aid = active_approval["id"]
        res = client.post(f"{BASE}/{aid}/signers/a@x.com/remind", json={}, headers=auth_headers)
        assert res.status_code == 200
        assert res.get_json()["status"] == "reminder"

        res = client.post(f"{BASE}/reminders/sweep", json={}, headers=auth_headers)
        assert res.status_code == 200
        assert set(res.get_json()) == {"scanned", "reminded", "first_reminders", "delivery_failures"}

    def test_cancel(self, client, auth_headers, active_approval):
        res = client.post(f"{BASE}/{active_approval['id']}/cancel", json={"reason": "scope change"},
                          headers=auth_headers)
        assert res.get_json()["status"] == "cancelled"
        res = client.post(f"{BASE}/{active_approval['id']}/activate", json={}, headers=auth_headers)
        assert res.status_code == 409

    def test_unknown_approval_is_404(self, client):
        assert client.get(f"{BASE}/nope").status_code == 404

    def test_create_non_string_description_is_422(self, client, auth_headers):
        res = client.post(BASE, json={"title": "Lighting", "description": 5}, headers=auth_headers)
        assert res.status_code == 422
        assert res.get_json()["details"] == {"description": "not a string"}

    def test_update_title_and_description(self, client, auth_headers, active_approval):
        aid = active_approval["id"]
        res = client.patch(f"{BASE}/{aid}", json={
            "title": "Cabinet hardware (brass)", "description": "Finish swap",
            "version": active_approval["version"],
        }, headers=auth_headers)
        assert res.status_code == 200
        data = res.get_json()
        assert data["title"] == "Cabinet hardware (brass)"
        assert data["description"] == "Finish swap"
        assert data["version"] == active_approval["version"] + 1
        assert data["audit_timeline"][-1]["action"] == "updated"

        res = client.patch(f"{BASE}/{aid}", json={"title": "Again", "version": active_approval["version"]},
                           headers=auth_headers)
        assert res.status_code == 409

    def test_update_rejects_blank_title_and_unknown_fields(self, client, auth_headers, active_approval):
        aid = active_approval["id"]
        assert client.patch(f"{BASE}/{aid}", json={"title": "  "}, headers=auth_headers).status_code == 422
        assert client.patch(f"{BASE}/{aid}", json={"status": "signed"}, headers=auth_headers).status_code == 422
        assert client.patch(f"{BASE}/{aid}", json={}, headers=auth_headers).status_code == 400

    def test_update_cancelled_is_409(self, client, auth_headers, active_approval):
        aid = active_approval["id"]
        client.post(f"{BASE}/{aid}/cancel", json={}, headers=auth_headers)
        res = client.patch(f"{BASE}/{aid}", json={"title": "Late edit"}, headers=auth_headers)
        assert res.status_code == 409
