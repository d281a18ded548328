"""
Audit trail tests — history append-only rules and the timeline view.
"""

from datetime import datetime, timedelta, timezone

import pytest

from aft.core.exceptions import ImmutableRecordError, NotFoundError
from aft.models import db
from aft.services import audit_trail, workflow_service


def _ok(pair):
    result, err = pair
    assert err is None, err
    return result


@pytest.fixture()
def pending_approver(draft, cast, manual_sig):
    _ok(workflow_service.submit_request(draft.id, cast.requestor, manual_sig()))
    return draft.id


class TestHistory:
    def test_entries_oldest_first(self, pending_approver):
        entries = audit_trail.entries_for(pending_approver)
        assert [e.action for e in entries] == ["CREATED", "SUBMITTED"]
        submitted = entries[1]
        assert (submitted.from_status, submitted.to_status) == ("draft", "pending_approver")
        assert submitted.actor_role == "requestor"
        assert submitted.notes == "Routed to Pending ISSM/ISSO Approval"

    def test_entry_to_dict(self, pending_approver):
        d = audit_trail.entries_for(pending_approver)[-1].to_dict()
        assert d["action"] == "SUBMITTED"
        assert d["actor_email"] == "requestor@aft.test"
        assert d["timestamp"]

    def test_entries_cannot_be_edited(self, pending_approver):
        entry = audit_trail.entries_for(pending_approver)[0]
        entry.notes = "rewritten"
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()

    def test_entries_cannot_be_deleted(self, pending_approver):
        db.session.delete(audit_trail.entries_for(pending_approver)[0])
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()


class TestTimeline:
    def test_in_progress_low_to_high(self, pending_approver):
        tl = audit_trail.timeline_for(pending_approver)
        assert tl["status"] == "pending_approver"
        assert tl["total_steps"] == 9
        assert tl["current_step"] == 3
        assert tl["progress"] == 33
        assert tl["is_terminal"] is False
        assert tl["estimated_completion"] is not None

        states = [s["state"] for s in tl["steps"]]
        assert states[:3] == ["completed", "completed", "current"]
        assert set(states[3:]) == {"pending"}
        assert tl["steps"][0]["assignee"] == "requestor@aft.test"
        assert tl["steps"][2]["assignee"] == "ISSM/ISSO"
        assert [e["action"] for e in tl["entries"]] == ["CREATED", "SUBMITTED"]

    def test_high_to_low_has_dao_step(self, cast, draft_data, manual_sig):
        req = _ok(workflow_service.create_request(cast.requestor, {**draft_data, "transfer_type": "high-to-low"}))
        _ok(workflow_service.submit_request(req.id, cast.requestor, manual_sig()))
        tl = audit_trail.timeline_for(req.id)
        assert tl["total_steps"] == 10
        assert tl["steps"][2]["status"] == "pending_dao"
        assert tl["steps"][2]["state"] == "current"

    def test_rejected_marks_error_and_skips_rest(self, pending_approver, cast):
        _ok(workflow_service.reject(pending_approver, cast.approver, "Wrong classification"))
        tl = audit_trail.timeline_for(pending_approver)
        assert tl["is_terminal"] is True
        assert tl["estimated_completion"] is None
        states = [s["state"] for s in tl["steps"]]
        assert states[2] == "error"
        assert set(states[3:]) == {"skipped"}
        assert tl["entries"][-1]["notes"] == "Rejection reason: Wrong classification"

    def test_estimate_grows_with_remaining_steps(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        seq = ["pending_cpso", "pending_dta", "completed"]
        assert audit_trail.estimate_completion(seq, 0, now) == now + timedelta(hours=72)
        assert audit_trail.estimate_completion(seq, 1, now) == now + timedelta(hours=24)

    def test_unknown_request(self):
        with pytest.raises(NotFoundError):
            audit_trail.timeline_for(999)
