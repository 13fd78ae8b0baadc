"""
Bulk Operation Coordinator tests.

Covers:
  - bulk phase change with partial failure
  - bulk remind (pending only, approver email required)
  - bulk history export workbook, archived decisions included
  - request validation (empty list, over the item limit, bad phase)
  - thread-pool fan-out on a file-backed database
"""

import io

import pytest
from openpyxl import load_workbook

from app.core.exceptions import ExternalServiceError, ValidationError
from app.models.audit import AuditEntry
from app.services import bulk_service, decision_lifecycle, decision_store, export_service
from app.utils.errors import E


class TestBulkPhase:
    def test_partial_failure(self, make_decision, actor):
        d1 = make_decision(title="d1")
        d2 = make_decision(title="d2")
        result = bulk_service.bulk_change_phase([d1.id, d2.id, "missing-id"], "construction", actor)

        assert result["updated"] == 2
        assert len(result["errors"]) == 1
        assert result["errors"][0]["decision_id"] == "missing-id"
        assert result["errors"][0]["code"] == E.NOT_FOUND
        assert decision_store.get_decision(d1.id).phase == "construction"
        assert decision_store.get_decision(d2.id).phase == "construction"

    def test_invalid_phase_rejected_up_front(self, make_decision, actor):
        d1 = make_decision()
        with pytest.raises(ValidationError):
            bulk_service.bulk_change_phase([d1.id], "demolition", actor)

    def test_duplicate_ids_processed_once(self, make_decision, actor):
        d1 = make_decision()
        result = bulk_service.bulk_change_phase([d1.id, d1.id], "closeout", actor)
        assert result == {"updated": 1, "errors": []}
        assert decision_store.get_decision(d1.id).version == 2

    def test_empty_list_rejected(self, actor):
        with pytest.raises(ValidationError):
            bulk_service.bulk_change_phase([], "closeout", actor)

    def test_item_limit(self, app, actor, monkeypatch):
        monkeypatch.setitem(app.config, "BULK_MAX_ITEMS", 2)
        with pytest.raises(ValidationError):
            bulk_service.bulk_change_phase(["a", "b", "c"], "closeout", actor)


class TestBulkRemind:
    def test_only_pending_decisions_reminded(self, make_decision, actor):
        draft = make_decision(title="draft")
        pending = make_decision(title="pending")
        decision_lifecycle.publish_decision(pending.id, actor, version=pending.version)
        result = bulk_service.bulk_remind([draft.id, pending.id], actor)

        assert result["sent"] == 1
        assert [e["decision_id"] for e in result["errors"]] == [draft.id]
        assert result["errors"][0]["code"] == E.CONFLICT_STATE
        assert AuditEntry.query.filter_by(entity_id=pending.id, action="reminder_sent").count() == 1

    def test_missing_approver_email(self, make_decision, actor):
        d = make_decision(approver_email=None)
        decision_lifecycle.publish_decision(d.id, actor, version=d.version)
        result = bulk_service.bulk_remind([d.id], actor)
        assert result["sent"] == 0
        assert result["errors"][0]["code"] == E.VALIDATION_CONSTRAINT


class TestBulkExport:
    def test_workbook_contains_history(self, make_decision, actor):
        d1 = make_decision(title="Tiles")
        d2 = make_decision(title="Paint")
        decision_lifecycle.archive_decision(d2.id, actor, version=d2.version)

        result = bulk_service.bulk_export_history([d1.id, d2.id, "missing-id"], actor)
        assert result["exported"] == 2
        assert len(result["errors"]) == 1

        wb = load_workbook(io.BytesIO(result["content"]))
        assert wb.sheetnames == ["Decisions", "Audit Trail", "Versions", "Errors", "Export Info"]
        titles = {row[1] for row in wb["Decisions"].iter_rows(min_row=2, values_only=True)}
        assert titles == {"Tiles", "Paint"}
        audit_actions = [row[3] for row in wb["Audit Trail"].iter_rows(min_row=2, values_only=True)]
        assert "archived" in audit_actions
        failed = list(wb["Errors"].iter_rows(min_row=2, values_only=True))
        assert [(row[0], row[1]) for row in failed] == [("missing-id", E.NOT_FOUND)]

    def test_control_characters_in_ids_stay_per_item(self, make_decision, actor):
        d1 = make_decision(title="Tiles")
        result = bulk_service.bulk_export_history([d1.id, "bad\nid", "ctl\x01id"], actor)
        assert result["exported"] == 1
        assert len(result["errors"]) == 2

        wb = load_workbook(io.BytesIO(result["content"]))
        failed_ids = [row[0] for row in wb["Errors"].iter_rows(min_row=2, values_only=True)]
        assert failed_ids == ["bad\nid", "ctlid"]

    def test_renderer_failure_is_external(self):
        with pytest.raises(ExternalServiceError):
            export_service.render_history_workbook([{"title": "no id"}])


class TestFanOut:
    def test_thread_pool_aggregates_per_item(self, file_app, actor):
        file_app.config["BULK_MAX_WORKERS"] = 3
        with file_app.app_context():
            ids = [
                decision_lifecycle.create_decision(
                    actor, title=title, options=[{"title": "Standard"}, {"title": "Premium"}],
                ).id
                for title in ("Roof", "Gutters", "Siding")
            ]

            result = bulk_service.bulk_change_phase(ids + ["missing-id"], "construction", actor)

            assert result["updated"] == 3
            assert [(e["decision_id"], e["code"]) for e in result["errors"]] == [("missing-id", E.NOT_FOUND)]
            for decision_id in ids:
                decision = decision_store.get_decision(decision_id)
                assert decision.phase == "construction"
                assert decision.version == 2
