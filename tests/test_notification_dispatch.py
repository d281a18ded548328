"""
Notification tests — recipient resolution, EmailLog audit rows and
best-effort delivery after commit.
"""

import pytest

from aft.core.exceptions import NotificationError
from aft.core.workflow import NotificationInstruction
from aft.models.email_log import EmailLog
from aft.services import notification_dispatcher, request_store, workflow_service
from aft.services.email_service import EmailService
from aft.services.notification_dispatcher import NotificationDispatcher, resolve_recipients


def _ok(pair):
    result, err = pair
    assert err is None, err
    return result


class _RecordingNotifier:
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def notify(self, kind, email, data):
        if email in self.fail_for:
            raise NotificationError(kind, email, "mailbox unavailable")
        self.sent.append((kind, email))


class TestRecipients:
    def test_role_resolves_to_active_holders(self, cast, make_user):
        make_user("retired@aft.test", "approver", is_active=False)
        got = resolve_recipients(NotificationInstruction("next_approver", recipient_role="approver"))
        assert got == ["admin@aft.test", "issm@aft.test"]

    def test_user_and_email_targets(self, cast):
        uid = cast.users.requestor.id
        assert resolve_recipients(NotificationInstruction("x", recipient_user_id=uid)) == ["requestor@aft.test"]
        assert resolve_recipients(NotificationInstruction("x", recipient_email="a@b.test")) == ["a@b.test"]
        assert resolve_recipients(NotificationInstruction("x")) == []


class TestDispatcher:
    def test_failure_is_logged_not_raised(self, cast):
        notifier = _RecordingNotifier(fail_for={"issm@aft.test"})
        sent = NotificationDispatcher(notifier).deliver([
            NotificationInstruction("next_approver", recipient_role="approver", template_data={"request_id": 1}),
        ])
        assert sent == 1
        assert notifier.sent == [("next_approver", "admin@aft.test")]

    def test_no_recipients_skipped(self, cast):
        notifier = _RecordingNotifier()
        sent = NotificationDispatcher(notifier).deliver([
            NotificationInstruction("next_approver", recipient_role="nobody-has-this"),
        ])
        assert sent == 0

    def test_unknown_template_does_not_raise(self, cast):
        sent = NotificationDispatcher().deliver([
            NotificationInstruction("mystery", recipient_email="x@aft.test"),
        ])
        assert sent == 0

    def test_async_dispatch_returns_future(self, app, cast):
        app.config["NOTIFICATIONS_ASYNC"] = True
        try:
            fut = notification_dispatcher.dispatch([
                NotificationInstruction("request_progress", recipient_email="x@aft.test",
                                        template_data={"request_number": "AFT-1"}),
            ])
            assert fut.result(timeout=10) == 1
        finally:
            app.config["NOTIFICATIONS_ASYNC"] = False
            notification_dispatcher.shutdown(app)


class TestWorkflowNotifications:
    def test_submit_notifies_issm_queue(self, draft, cast, manual_sig):
        _ok(workflow_service.submit_request(draft.id, cast.requestor, manual_sig()))
        logs = EmailLog.query.filter_by(request_id=draft.id).all()
        assert sorted(log.recipient_email for log in logs) == ["admin@aft.test", "issm@aft.test"]
        assert {log.template_name for log in logs} == {"next_approver"}
        assert {log.status for log in logs} == {"logged"}
        assert "ISSM/ISSO" in logs[0].subject

    def test_rejection_notifies_requestor(self, draft, cast, manual_sig):
        _ok(workflow_service.submit_request(draft.id, cast.requestor, manual_sig()))
        _ok(workflow_service.reject(draft.id, cast.approver, "Needs virus scan"))
        log = EmailLog.query.filter_by(template_name="request_rejected").one()
        assert log.recipient_email == "requestor@aft.test"

    def test_notifier_failure_keeps_transition(self, draft, cast, manual_sig, monkeypatch):
        def boom(kind, email, data):
            raise NotificationError(kind, email, "SMTP down")

        monkeypatch.setattr(EmailService, "notify", staticmethod(boom))
        r = _ok(workflow_service.submit_request(draft.id, cast.requestor, manual_sig()))
        assert r.to_status == "pending_approver"
        assert request_store.current_status(draft.id) == "pending_approver"


class TestTemplates:
    def test_values_are_escaped(self, app):
        subject, body = EmailService.render("request_rejected", {
            "request_number": "AFT-1",
            "actor_name": "Ira",
            "reason": "<script>alert(1)</script>",
        })
        assert subject == "AFT Request AFT-1 - Rejected"
        assert "<script>" not in body
        assert "&lt;script&gt;" in body

    @pytest.mark.parametrize("status,role_name", [
        ("pending_cpso", "CPSO"),
        ("pending_dao", "DAO"),
    ])
    def test_next_approver_subject(self, status, role_name):
        subject, _ = EmailService.render("next_approver", {"request_number": "AFT-9", "status": status})
        assert role_name in subject
