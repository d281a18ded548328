"""
Workflow service integration tests.

Tests cover:
  - Full lifecycle low-to-high and high-to-low, ending in disposal
  - Drafts: create / edit / cancel
  - Role ownership, record scope and signature guards through the service
  - Atomicity: a failed write leaves status, signatures and history untouched
  - A failed history write does not block the transition
  - Optimistic concurrency on the status column
  - System routing of submitted requests
"""

import pytest
from sqlalchemy.exc import SQLAlchemyError

from aft.core.exceptions import (
    AuthorizationError,
    ConflictError,
    MissingSignatureError,
    StorageError,
    ValidationError,
)
from aft.models import db
from aft.models.history import RequestHistory
from aft.models.request import TransferRequest
from aft.models.signature import Signature
from aft.services import audit_trail, request_store, signature_store, workflow_service


def _status(request_id):
    return request_store.current_status(request_id)


def _ok(pair):
    result, err = pair
    assert err is None, err
    return result


def _history_actions(request_id):
    return [e.action for e in audit_trail.entries_for(request_id)]


@pytest.fixture()
def high_draft(cast, draft_data):
    return _ok(workflow_service.create_request(cast.requestor, {**draft_data, "transfer_type": "high-to-low"}))


@pytest.fixture()
def pending_approver(draft, cast, manual_sig):
    _ok(workflow_service.submit_request(draft.id, cast.requestor, manual_sig()))
    return draft.id


@pytest.fixture()
def active_transfer(pending_approver, cast):
    rid = pending_approver
    _ok(workflow_service.approve(rid, cast.approver))
    _ok(workflow_service.approve(rid, cast.cpso))
    _ok(workflow_service.assign_dta(rid, cast.dta))
    return rid


# ═════════════════════════════════════════════════════════════════════════
# END-TO-END
# ═════════════════════════════════════════════════════════════════════════


class TestLifecycle:
    def test_low_to_high_end_to_end(self, draft, cast, manual_sig, cac_sig):
        rid = draft.id

        r = _ok(workflow_service.submit_request(rid, cast.requestor, manual_sig(), expected_status="draft"))
        assert (r.from_status, r.to_status) == ("draft", "pending_approver")
        assert r.signature_id is not None

        r = _ok(workflow_service.approve_with_signature(rid, cast.approver, cac_sig(), "Looks good"))
        assert r.to_status == "pending_cpso"
        _ok(workflow_service.approve(rid, cast.cpso, expected_status="pending_cpso"))
        _ok(workflow_service.assign_dta(rid, cast.dta))
        r = _ok(workflow_service.complete_transfer(rid, cast.dta, cac_sig(), cast.users.sme.id))
        assert r.request["assigned_sme_id"] == cast.users.sme.id
        _ok(workflow_service.sign_as_sme(rid, cast.sme, notes="Witnessed"))
        r = _ok(workflow_service.approve(rid, cast.custodian))
        assert r.to_status == "completed"
        r = _ok(workflow_service.dispose(rid, cast.custodian, "Degaussed and shredded"))
        assert r.to_status == "disposed"

        req = request_store.get(rid)
        assert req.approver_id == cast.users.approver.id
        assert req.cpso_id == cast.users.cpso.id
        assert req.dta_id == cast.users.dta.id
        assert req.media_custodian_id == cast.users.custodian.id
        assert req.disposition_notes == "Degaussed and shredded"
        assert req.signature_method == "manual"

        steps = {s.step_type: s.method for s in signature_store.list_for(rid)}
        assert steps == {
            "requestor_signature": "manual",
            "approver_approval": "cac",
            "dta_signature": "cac",
            "sme_signature": "manual",
        }
        assert _history_actions(rid) == [
            "CREATED",
            "SUBMITTED",
            "ISSM_APPROVED_CAC",
            "CPSO_APPROVED",
            "DTA_ASSIGNED",
            "DTA_SIGNED_CAC",
            "SME_SIGNED",
            "MEDIA_CUSTODIAN_COMPLETED",
            "MEDIA_DISPOSED",
        ]

    def test_high_to_low_requires_dao(self, high_draft, cast, manual_sig):
        r = _ok(workflow_service.submit_request(high_draft.id, cast.requestor, manual_sig()))
        assert r.to_status == "pending_dao"

        _, err = workflow_service.approve(high_draft.id, cast.approver)
        assert isinstance(err, AuthorizationError)
        assert err.required_role == "dao"

        r = _ok(workflow_service.approve(high_draft.id, cast.dao))
        assert r.to_status == "pending_approver"
        assert request_store.get(high_draft.id).dao_id == cast.users.dao.id

    def test_get_request_lists_allowed_actions(self, pending_approver, cast):
        data = _ok(workflow_service.get_request(pending_approver, cast.approver))
        assert sorted(data["allowed_actions"]) == ["approve", "reject"]
        data = _ok(workflow_service.get_request(pending_approver, cast.cpso))
        assert data["allowed_actions"] == []

    def test_get_request_hidden_from_unrelated_requestor(self, pending_approver, make_user, make_session):
        other = make_session(make_user("other@aft.test", "requestor"))
        _, err = workflow_service.get_request(pending_approver, other)
        assert isinstance(err, AuthorizationError)


# ═════════════════════════════════════════════════════════════════════════
# DRAFTS
# ═════════════════════════════════════════════════════════════════════════


class TestDrafts:
    def test_create_requires_requestor_role(self, cast, draft_data):
        _, err = workflow_service.create_request(cast.approver, draft_data)
        assert isinstance(err, AuthorizationError)

    def test_create_validates_fields(self, cast):
        _, err = workflow_service.create_request(cast.requestor, {"transfer_type": "sideways"})
        assert isinstance(err, ValidationError)
        assert TransferRequest.query.count() == 0

    def test_create_writes_history(self, draft):
        assert draft.status == "draft"
        assert draft.request_number.startswith("AFT-")
        assert _history_actions(draft.id) == ["CREATED"]

    def test_update_draft(self, draft, cast):
        req = _ok(workflow_service.update_draft(draft.id, cast.requestor, {"data_size": "2 GB", "foo": "ignored"}))
        assert req.data_size == "2 GB"
        assert _history_actions(draft.id)[-1] == "DRAFT_UPDATED"

    def test_update_after_submit_conflicts(self, pending_approver, cast):
        _, err = workflow_service.update_draft(pending_approver, cast.requestor, {"data_size": "1 GB"})
        assert isinstance(err, ConflictError)

    def test_cancel(self, draft, cast):
        r = _ok(workflow_service.cancel(draft.id, cast.requestor, "No longer needed"))
        assert r.to_status == "cancelled"
        _, err = workflow_service.submit_request(draft.id, cast.requestor, {"method": "manual", "signer_name": "R"})
        assert isinstance(err, ConflictError)
        assert err.message == "This request has been cancelled."


# ═════════════════════════════════════════════════════════════════════════
# GUARDS THROUGH THE SERVICE
# ═════════════════════════════════════════════════════════════════════════


class TestGuards:
    def test_submit_without_signature(self, draft, cast):
        _, err = workflow_service.submit_request(draft.id, cast.requestor, None)
        assert isinstance(err, MissingSignatureError)
        assert _status(draft.id) == "draft"

    def test_submit_with_blank_manual_name(self, draft, cast, manual_sig):
        _, err = workflow_service.submit_request(draft.id, cast.requestor, manual_sig("  "))
        assert isinstance(err, ValidationError)
        assert Signature.query.count() == 0

    def test_submit_with_expired_cac(self, draft, cast, cac_sig):
        _, err = workflow_service.submit_request(
            draft.id, cast.requestor, cac_sig(valid_to="2020-01-01T00:00:00+00:00"),
        )
        assert isinstance(err, ValidationError)
        assert "Certificate has expired" in err.message

    def test_malformed_signature_payload(self, draft, cast):
        _, err = workflow_service.submit_request(draft.id, cast.requestor, {"method": "retina"})
        assert isinstance(err, ValidationError)

    def test_approve_signed_without_signature(self, pending_approver, cast):
        _, err = workflow_service.approve_with_signature(pending_approver, cast.approver, None)
        assert isinstance(err, MissingSignatureError)
        assert err.step_type == "approver_approval"

    def test_wrong_role_without_signature_is_forbidden(self, pending_approver, cast):
        _, err = workflow_service.approve_with_signature(pending_approver, cast.dta, None)
        assert isinstance(err, AuthorizationError)
        assert "step_type" not in err.details
        assert _status(pending_approver) == "pending_approver"

    def test_wrong_role_submit_without_signature(self, high_draft, cast):
        _, err = workflow_service.submit_request(high_draft.id, cast.cpso, None)
        assert isinstance(err, AuthorizationError)
        assert err.required_role == "requestor"

    def test_other_dta_completing_without_signature(self, active_transfer, make_user, make_session, cast):
        other_dta = make_session(make_user("dta2@aft.test", "dta"))
        _, err = workflow_service.complete_transfer(active_transfer, other_dta, None, cast.users.sme.id)
        assert isinstance(err, AuthorizationError)
        _, err = workflow_service.complete_transfer(active_transfer, cast.sme, None, cast.users.sme.id)
        assert isinstance(err, AuthorizationError)
        assert _status(active_transfer) == "active_transfer"

    def test_anonymous_caller_without_signature(self, pending_approver, draft):
        for call in (
            lambda: workflow_service.submit_request(draft.id, None, None),
            lambda: workflow_service.approve_with_signature(pending_approver, None, None),
        ):
            _, err = call()
            assert isinstance(err, AuthorizationError)
            assert err.message == "Authentication required"

    def test_signed_approval_of_unknown_request(self, cast):
        _, err = workflow_service.approve_with_signature(999, cast.approver, None)
        assert err.code == "ERR_NOT_FOUND"

    def test_approval_signature_required_by_config(self, app, pending_approver, cast):
        app.config["REQUIRE_APPROVAL_SIGNATURE"] = True
        try:
            _, err = workflow_service.approve(pending_approver, cast.approver)
        finally:
            app.config["REQUIRE_APPROVAL_SIGNATURE"] = False
        assert isinstance(err, MissingSignatureError)

    def test_other_requestor_cannot_submit(self, draft, make_user, make_session, manual_sig):
        other = make_session(make_user("other@aft.test", "requestor"))
        _, err = workflow_service.submit_request(draft.id, other, manual_sig())
        assert isinstance(err, AuthorizationError)

    def test_reject_requires_reason(self, pending_approver, cast):
        _, err = workflow_service.reject(pending_approver, cast.approver, "")
        assert isinstance(err, ValidationError)
        assert _status(pending_approver) == "pending_approver"

    def test_reject_then_no_further_action(self, pending_approver, cast):
        r = _ok(workflow_service.reject(pending_approver, cast.approver, "Missing virus scan"))
        assert r.to_status == "rejected"
        req = request_store.get(pending_approver)
        assert req.rejection_reason == "Missing virus scan"
        assert req.rejected_by_id == cast.users.approver.id

        _, err = workflow_service.approve(pending_approver, cast.approver)
        assert isinstance(err, ConflictError)
        assert err.message == "This request has been rejected and cannot be approved."

    def test_complete_transfer_needs_sme_role(self, active_transfer, cast, cac_sig):
        _, err = workflow_service.complete_transfer(active_transfer, cast.dta, cac_sig(), cast.users.cpso.id)
        assert isinstance(err, ValidationError)
        assert "SME role" in err.message

    def test_complete_transfer_needs_sme(self, active_transfer, cast, cac_sig):
        _, err = workflow_service.complete_transfer(active_transfer, cast.dta, cac_sig(), None)
        assert isinstance(err, ValidationError)

    def test_only_assigned_dta_completes(self, active_transfer, make_user, make_session, cast, cac_sig):
        other_dta = make_session(make_user("dta2@aft.test", "dta"))
        _, err = workflow_service.complete_transfer(active_transfer, other_dta, cac_sig(), cast.users.sme.id)
        assert isinstance(err, AuthorizationError)

    def test_only_assigned_sme_signs(self, active_transfer, make_user, make_session, cast, cac_sig):
        _ok(workflow_service.complete_transfer(active_transfer, cast.dta, cac_sig(), cast.users.sme.id))
        other_sme = make_session(make_user("sme2@aft.test", "sme"))
        _, err = workflow_service.sign_as_sme(active_transfer, other_sme)
        assert isinstance(err, AuthorizationError)
        _ok(workflow_service.sign_as_sme(active_transfer, cast.sme))


# ═════════════════════════════════════════════════════════════════════════
# ATOMICITY & HISTORY FAILURE
# ═════════════════════════════════════════════════════════════════════════


class TestAtomicity:
    def test_failed_status_write_leaves_nothing(self, draft, cast, manual_sig, monkeypatch):
        def boom(*a, **kw):
            raise SQLAlchemyError("disk I/O error")

        monkeypatch.setattr(request_store, "apply_transition", boom)
        with pytest.raises(StorageError):
            workflow_service.submit_request(draft.id, cast.requestor, manual_sig())

        assert _status(draft.id) == "draft"
        assert Signature.query.count() == 0
        assert _history_actions(draft.id) == ["CREATED"]

    def test_failed_signature_write_rolls_back_status(self, draft, cast, manual_sig, monkeypatch):
        def boom(*a, **kw):
            raise SQLAlchemyError("constraint storm")

        monkeypatch.setattr(signature_store, "record", boom)
        with pytest.raises(StorageError):
            workflow_service.submit_request(draft.id, cast.requestor, manual_sig())

        db.session.expire_all()
        assert _status(draft.id) == "draft"
        assert request_store.get(draft.id).submitted_at is None
        assert _history_actions(draft.id) == ["CREATED"]

    def test_history_failure_does_not_block_transition(self, draft, cast, manual_sig, monkeypatch):
        def boom(*a, **kw):
            raise SQLAlchemyError("history table locked")

        monkeypatch.setattr(audit_trail, "_insert_entry", boom)
        r = _ok(workflow_service.submit_request(draft.id, cast.requestor, manual_sig()))
        monkeypatch.undo()

        assert r.history_id is None
        assert _status(draft.id) == "pending_approver"
        assert Signature.query.filter_by(request_id=draft.id).count() == 1
        assert RequestHistory.query.filter_by(request_id=draft.id, action="SUBMITTED").count() == 0


# ═════════════════════════════════════════════════════════════════════════
# CONCURRENCY
# ═════════════════════════════════════════════════════════════════════════


class TestConcurrency:
    def test_second_approval_on_same_view_conflicts(self, pending_approver, cast, make_user, make_session):
        second_issm = make_session(make_user("issm2@aft.test", "approver"))

        _ok(workflow_service.approve(pending_approver, cast.approver, expected_status="pending_approver"))
        _, err = workflow_service.approve(pending_approver, second_issm, expected_status="pending_approver")

        assert isinstance(err, ConflictError)
        assert err.actual_status == "pending_cpso"
        assert err.message == "This request has already been approved and is pending CPSO review."
        assert _history_actions(pending_approver).count("ISSM_APPROVED") == 1

    def test_conditional_write_loses_race(self, pending_approver):
        request_store.apply_transition(pending_approver, "pending_approver", "pending_cpso", action="approve")
        db.session.commit()

        with pytest.raises(ConflictError) as exc:
            request_store.apply_transition(pending_approver, "pending_approver", "pending_cpso", action="approve")
        db.session.rollback()
        assert exc.value.actual_status == "pending_cpso"
        assert exc.value.expected_status == "pending_approver"

    def test_duplicate_signature_step_conflicts(self, pending_approver, cast, cac_sig):
        # a second approver signature on the same step can only arrive through a replay
        _ok(workflow_service.approve_with_signature(pending_approver, cast.approver, cac_sig()))
        request_store.apply_transition(pending_approver, "pending_cpso", "pending_approver")
        db.session.commit()

        _, err = workflow_service.approve_with_signature(pending_approver, cast.approver, cac_sig())
        assert err is not None
        assert err.code == "ERR_CONFLICT_DUPLICATE"
        assert _status(pending_approver) == "pending_approver"


# ═════════════════════════════════════════════════════════════════════════
# SYSTEM ROUTING
# ═════════════════════════════════════════════════════════════════════════


class TestRouting:
    def test_route_submitted(self, high_draft):
        request_store.apply_transition(high_draft.id, "draft", "submitted")
        db.session.commit()

        results = workflow_service.route_all_submitted()
        assert len(results) == 1
        r = _ok(results[0])
        assert r.to_status == "pending_dao"
        entry = audit_trail.entries_for(high_draft.id)[-1]
        assert entry.actor_email == "system@aft.local"
        assert entry.actor_id is None

    def test_route_ignores_other_statuses(self, draft):
        _, err = workflow_service.route_submitted(draft.id)
        assert isinstance(err, ConflictError)
