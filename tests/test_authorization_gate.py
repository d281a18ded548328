"""
Authorization gate unit tests (no database).

Sessions and requests are plain namespaces: the gate only reads attributes.
"""

from types import SimpleNamespace

import pytest

from aft.core.exceptions import AccessDenied, AuthorizationError
from aft.services import authorization


def _session(role, user_id=10, **kw):
    return SimpleNamespace(user_id=user_id, email=f"u{user_id}@aft.test", active_role=role,
                           is_active=True, display_name="", **kw)


def _request(status, requestor_id=1, **kw):
    base = dict(
        id=5, status=status, requestor_id=requestor_id, transfer_type="low-to-high",
        dao_id=None, approver_id=None, cpso_id=None, dta_id=None,
        assigned_sme_id=None, media_custodian_id=None,
    )
    base.update(kw)
    return SimpleNamespace(**base)


class TestSessionRules:
    def test_missing_session(self):
        with pytest.raises(AuthorizationError, match="Authentication required"):
            authorization.check(None, _request("draft"), "submit")

    def test_role_not_selected(self):
        with pytest.raises(AuthorizationError, match="Select a role"):
            authorization.check(_session(None), _request("draft"), "submit")

    def test_alias(self):
        assert AccessDenied is AuthorizationError


class TestOwnership:
    def test_owner_passes(self):
        authorization.check(_session("cpso"), _request("pending_cpso"), "approve")

    def test_non_owner_refused(self):
        with pytest.raises(AuthorizationError) as exc:
            authorization.check(_session("approver"), _request("pending_cpso"), "approve")
        assert exc.value.required_role == "cpso"
        assert exc.value.current_role == "approver"

    def test_admin_cannot_act_for_other_roles(self):
        with pytest.raises(AuthorizationError):
            authorization.check(_session("admin"), _request("pending_approver"), "approve")

    def test_ownerless_status_left_to_state_machine(self):
        authorization.check(_session("approver"), _request("rejected"), "approve")

    def test_route_is_never_a_user_action(self):
        with pytest.raises(AuthorizationError):
            authorization.check(_session("requestor", user_id=1), _request("submitted"), "route")


class TestRecordScope:
    def test_requestor_must_own_request(self):
        with pytest.raises(AuthorizationError, match="Only the requestor"):
            authorization.check(_session("requestor", user_id=2), _request("draft", requestor_id=1), "submit")
        authorization.check(_session("requestor", user_id=1), _request("draft", requestor_id=1), "submit")

    def test_only_assigned_dta_completes(self):
        req = _request("active_transfer", dta_id=30)
        authorization.check(_session("dta", user_id=30), req, "complete_transfer")
        with pytest.raises(AuthorizationError, match="assigned DTA"):
            authorization.check(_session("dta", user_id=31), req, "complete_transfer")

    def test_assign_dta_blocked_when_taken(self):
        with pytest.raises(AuthorizationError):
            authorization.check(_session("dta", user_id=31), _request("pending_dta", dta_id=30), "assign_dta")

    def test_only_assigned_sme_signs(self):
        req = _request("pending_sme_signature", assigned_sme_id=40)
        authorization.check(_session("sme", user_id=40), req, "sign")
        with pytest.raises(AuthorizationError, match="assigned SME"):
            authorization.check(_session("sme", user_id=41), req, "sign")


class TestReadAccess:
    def test_requestor_sees_own(self):
        assert authorization.can_view(_session("requestor", user_id=1), _request("pending_cpso", requestor_id=1))
        assert not authorization.can_view(_session("requestor", user_id=2), _request("pending_cpso"))

    def test_approver_and_cpso_share_queues(self):
        assert authorization.can_view(_session("approver"), _request("pending_cpso"))
        assert authorization.can_view(_session("cpso"), _request("pending_approver"))
        assert not authorization.can_view(_session("cpso"), _request("pending_dta"))

    def test_participant_keeps_access(self):
        assert authorization.can_view(_session("dta", user_id=30), _request("completed", dta_id=30))

    def test_staff_never_sees_drafts(self):
        assert not authorization.can_view(_session("approver"), _request("draft"))

    def test_admin_sees_everything(self):
        assert authorization.can_view(_session("admin"), _request("draft"))

    def test_queue_statuses(self):
        assert authorization.queue_statuses("dta") == {"pending_dta", "active_transfer"}
        assert authorization.queue_statuses("requestor") == set()
