"""
Decision State Machine — service-level tests.

Tests cover:
  - create (draft, v1, options, recommended option)
  - publish / approve / request changes / reject transitions
  - decision-level signing (once, approved only, clock skew)
  - content edits vs. phase changes by status
  - optimistic concurrency (stale version → ConflictError)
  - soft archive, comments
  - change events fire after commit
"""

from datetime import timedelta

import pytest

from app.core.exceptions import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from app.models.audit import AuditEntityType, AuditEntry, audit_trail
from app.models.decision import Decision, DecisionComment
from app.services import decision_lifecycle, decision_store, events
from app.utils.helpers import utcnow


def _option_ids(decision):
    return [o.id for o, _ in decision_store.load_options(decision.id)]


def _actions(decision):
    return [e.action for e in audit_trail(AuditEntityType.DECISION, decision.id)]


def _pending(make_decision, actor, **kwargs):
    d = make_decision(**kwargs)
    return decision_lifecycle.publish_decision(d.id, actor, version=d.version)


# ═════════════════════════════════════════════════════════════════════════
# CREATE
# ═════════════════════════════════════════════════════════════════════════


class TestCreateDecision:
    def test_create_starts_as_draft_version_one(self, make_decision):
        d = make_decision()
        assert d.status == "draft"
        assert d.phase == "design"
        assert d.version == 1
        assert len(_option_ids(d)) == 2
        assert _actions(d) == ["created"]

    def test_create_records_first_version(self, make_decision):
        d = make_decision()
        from app.services import version_service
        versions = version_service.list_versions(d.id)
        assert [v["version_number"] for v in versions] == [1]
        assert versions[0]["snapshot"]["title"] == "Kitchen countertop"

    def test_create_requires_title(self, actor):
        with pytest.raises(ValidationError):
            decision_lifecycle.create_decision(actor, title="  ", options=[{"title": "A"}])

    def test_create_requires_an_option(self, actor):
        with pytest.raises(ValidationError):
            decision_lifecycle.create_decision(actor, title="Tiles", options=[])

    def test_option_title_required(self, actor):
        with pytest.raises(ValidationError) as exc:
            decision_lifecycle.create_decision(actor, title="Tiles", options=[{"title": ""}])
        assert "options[0].title" in exc.value.details

    def test_negative_cost_impact_rejected(self, actor):
        with pytest.raises(ValidationError):
            decision_lifecycle.create_decision(
                actor, title="Tiles",
                options=[{"title": "A", "cost_impacts": [{"label": "x", "amount_minor_units": -1}]}],
            )

    def test_recommended_option_index(self, make_decision):
        d = make_decision(recommended_option_index=1)
        assert d.recommended_option_id == _option_ids(d)[1]
        assert d.version == 1

    def test_recommended_option_index_out_of_range(self, make_decision):
        with pytest.raises(ValidationError):
            make_decision(recommended_option_index=5)

    def test_invalid_phase(self, make_decision):
        with pytest.raises(ValidationError):
            make_decision(phase="demolition")


# ═════════════════════════════════════════════════════════════════════════
# TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════


class TestTransitions:
    def test_round_trip_fixture_package(self, actor, approver):
        d = decision_lifecycle.create_decision(
            actor, title="Fixture package A",
            options=[{"title": "Option 1"}, {"title": "Option 2"}],
        )
        option_1 = _option_ids(d)[0]
        d = decision_lifecycle.publish_decision(d.id, actor, version=d.version)
        before = AuditEntry.query.filter_by(entity_id=d.id, action="approved").count()

        d = decision_lifecycle.approve_decision(d.id, option_1, approver, version=d.version)

        assert d.status == "approved"
        assert d.selected_option_id == option_1
        assert AuditEntry.query.filter_by(entity_id=d.id, action="approved").count() == before + 1

    def test_publish_moves_draft_to_pending(self, make_decision, actor):
        d = _pending(make_decision, actor)
        assert d.status == "pending"
        assert d.version == 2
        assert _actions(d)[-1] == "published"

    def test_publish_twice_is_invalid(self, make_decision, actor):
        d = _pending(make_decision, actor)
        with pytest.raises(InvalidTransitionError):
            decision_lifecycle.publish_decision(d.id, actor, version=d.version)

    def test_approve_requires_pending(self, make_decision, approver):
        d = make_decision()
        with pytest.raises(InvalidTransitionError):
            decision_lifecycle.approve_decision(d.id, _option_ids(d)[0], approver, version=d.version)

    def test_approve_with_foreign_option(self, make_decision, actor, approver):
        other = make_decision(title="Other")
        d = _pending(make_decision, actor)
        with pytest.raises(NotFoundError):
            decision_lifecycle.approve_decision(d.id, _option_ids(other)[0], approver, version=d.version)
        assert decision_store.get_decision(d.id).status == "pending"

    def test_approve_requires_selection(self, make_decision, actor, approver):
        d = _pending(make_decision, actor)
        with pytest.raises(ValidationError):
            decision_lifecycle.approve_decision(d.id, None, approver, version=d.version)

    def test_approved_always_has_selected_option(self, make_decision, actor, approver):
        d = _pending(make_decision, actor)
        chosen = _option_ids(d)[1]
        decision_lifecycle.approve_decision(d.id, chosen, approver, version=d.version)
        for decision in Decision.query.filter_by(status="approved").all():
            assert decision.selected_option_id in _option_ids(decision)

    def test_request_changes_needs_comment(self, make_decision, actor, approver):
        d = _pending(make_decision, actor)
        with pytest.raises(ValidationError):
            decision_lifecycle.request_changes(d.id, "   ", approver, version=d.version)

    def test_request_changes_then_republish(self, make_decision, actor, approver):
        d = _pending(make_decision, actor)
        d = decision_lifecycle.request_changes(d.id, "Need a cheaper option", approver, version=d.version)
        assert d.status == "changes_requested"
        comment = DecisionComment.query.filter_by(decision_id=d.id).one()
        assert comment.body == "Need a cheaper option"
        assert comment.user_id == "client-1"

        d = decision_lifecycle.publish_decision(d.id, actor, version=d.version)
        assert d.status == "pending"

    def test_reject(self, make_decision, actor, approver):
        d = _pending(make_decision, actor)
        d = decision_lifecycle.reject_decision(d.id, approver, comment="Over budget", version=d.version)
        assert d.status == "rejected"
        assert _actions(d)[-1] == "rejected"
        with pytest.raises(InvalidTransitionError):
            decision_lifecycle.publish_decision(d.id, actor, version=d.version)

    def test_validate_transition_reports_reason(self, make_decision):
        d = make_decision()
        result = decision_lifecycle.validate_transition(d, "approve")
        assert result["valid"] is False
        assert result["from"] == "draft"
        assert decision_lifecycle.validate_transition(d, "publish")["to"] == "pending"


# ═════════════════════════════════════════════════════════════════════════
# SIGN
# ═════════════════════════════════════════════════════════════════════════


class TestSignDecision:
    def _approved(self, make_decision, actor, approver):
        d = _pending(make_decision, actor)
        return decision_lifecycle.approve_decision(d.id, _option_ids(d)[0], approver, version=d.version)

    def test_sign_approved_decision(self, make_decision, actor, approver):
        d = self._approved(make_decision, actor, approver)
        d = decision_lifecycle.sign_decision(d.id, approver)
        assert d.signed_at is not None
        assert d.signer_name == "Casey Client"
        assert d.status == "approved"
        assert _actions(d)[-1] == "signed"

    def test_sign_only_once(self, make_decision, actor, approver):
        d = self._approved(make_decision, actor, approver)
        decision_lifecycle.sign_decision(d.id, approver)
        with pytest.raises(InvalidTransitionError):
            decision_lifecycle.sign_decision(d.id, approver)

    def test_sign_requires_approved(self, make_decision, actor, approver):
        d = _pending(make_decision, actor)
        with pytest.raises(InvalidTransitionError):
            decision_lifecycle.sign_decision(d.id, approver)

    def test_future_signed_at_rejected(self, make_decision, actor, approver):
        d = self._approved(make_decision, actor, approver)
        future = (utcnow() + timedelta(hours=2)).isoformat()
        with pytest.raises(ValidationError):
            decision_lifecycle.sign_decision(d.id, approver, signed_at=future)

    def test_client_signed_at_within_skew_kept(self, make_decision, actor, approver):
        d = self._approved(make_decision, actor, approver)
        earlier = utcnow() - timedelta(minutes=5)
        d = decision_lifecycle.sign_decision(d.id, approver, signer_name="C. Client", signed_at=earlier.isoformat())
        assert d.signer_name == "C. Client"


# ═════════════════════════════════════════════════════════════════════════
# EDITS, CONCURRENCY, ARCHIVE
# ═════════════════════════════════════════════════════════════════════════


class TestEditAndConcurrency:
    def test_edit_draft_content(self, make_decision, actor):
        d = make_decision()
        d = decision_lifecycle.update_decision(d.id, {"title": "Kitchen worktop"}, actor, version=1)
        assert d.title == "Kitchen worktop"
        assert d.version == 2
        assert _actions(d)[-1] == "updated"

    def test_noop_edit_writes_nothing(self, make_decision, actor):
        d = make_decision()
        d = decision_lifecycle.update_decision(d.id, {"title": "Kitchen countertop"}, actor, version=1)
        assert d.version == 1
        assert _actions(d) == ["created"]

    def test_content_locked_while_pending(self, make_decision, actor):
        d = _pending(make_decision, actor)
        with pytest.raises(InvalidTransitionError):
            decision_lifecycle.update_decision(d.id, {"summary": "late edit"}, actor, version=d.version)

    def test_phase_editable_while_pending(self, make_decision, actor):
        d = _pending(make_decision, actor)
        d = decision_lifecycle.change_phase(d.id, "construction", actor, version=d.version)
        assert d.phase == "construction"
        entry = audit_trail(AuditEntityType.DECISION, d.id)[-1]
        assert entry.action == "phase_changed"
        assert entry.payload == {"from": "design", "to": "construction"}

    def test_unknown_field_rejected(self, make_decision, actor):
        d = make_decision()
        with pytest.raises(ValidationError):
            decision_lifecycle.update_decision(d.id, {"status": "approved"}, actor, version=1)

    def test_stale_version_conflicts(self, make_decision, actor):
        d = make_decision()
        decision_lifecycle.update_decision(d.id, {"summary": "first"}, actor, version=1)
        with pytest.raises(ConflictError) as exc:
            decision_lifecycle.update_decision(d.id, {"summary": "second"}, actor, version=1)
        assert exc.value.expected_version == 1
        assert exc.value.actual_version == 2
        assert decision_store.get_decision(d.id).summary == "first"

    def test_stale_publish_conflicts(self, make_decision, actor):
        d = make_decision()
        with pytest.raises(ConflictError):
            decision_lifecycle.publish_decision(d.id, actor, version=7)

    def test_replacing_options_clears_missing_recommendation(self, make_decision, actor):
        d = make_decision(recommended_option_index=1)
        keep = _option_ids(d)[0]
        d = decision_lifecycle.update_decision(
            d.id, {"options": [{"id": keep, "title": "Quartz"}]}, actor, version=1,
        )
        assert _option_ids(d) == [keep]
        assert d.recommended_option_id is None

    def test_archive_hides_decision(self, make_decision, actor):
        d = make_decision()
        decision_lifecycle.archive_decision(d.id, actor, version=1)
        with pytest.raises(NotFoundError):
            decision_store.get_decision(d.id)
        assert decision_store.get_decision(d.id, include_archived=True).archived_at is not None
        assert d.id not in [x.id for x in decision_store.list_decisions()]

    def test_comment(self, make_decision, approver):
        d = make_decision()
        comment = decision_lifecycle.add_comment(d.id, "Can we see samples?", approver)
        assert comment.user_name == "Casey Client"
        assert _actions(d)[-1] == "commented"
        with pytest.raises(ValidationError):
            decision_lifecycle.add_comment(d.id, "", approver)


class TestChangeEvents:
    def test_event_published_after_commit(self, make_decision, actor):
        d = make_decision()
        received = []

        def on_change(sender, **payload):
            received.append((sender, payload))

        with events.decision_changed.connected_to(on_change):
            decision_lifecycle.publish_decision(d.id, actor, version=1)

        assert received == [(d.id, {
            "action": "published", "status": "pending", "version": 2, "actor_id": "pm-1",
        })]

    def test_failing_subscriber_does_not_fail_operation(self, make_decision, actor):
        d = make_decision()

        def broken(sender, **payload):
            raise RuntimeError("push channel down")

        with events.decision_changed.connected_to(broken):
            d = decision_lifecycle.publish_decision(d.id, actor, version=1)
        assert d.status == "pending"
