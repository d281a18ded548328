"""
Session store tests — role selection, expiry and cleanup.

An injected clock drives expiry; nothing sleeps.
"""

from datetime import datetime, timedelta, timezone

import pytest

from aft.core.exceptions import AuthorizationError, ValidationError
from aft.models import db
from aft.models.auth import Session
from aft.services.session_store import SessionStore

T0 = datetime(2026, 4, 1, 8, 0, tzinfo=timezone.utc)


def _store(at):
    return SessionStore(idle_timeout=600, max_duration=28800, clock=lambda: at)


class TestCreate:
    def test_single_role_auto_selected(self, make_user):
        user = make_user("solo@aft.test", "cpso")
        token, ctx = _store(T0).create(user, ip_address="10.9.9.9")
        assert ctx.role_selected is True
        assert ctx.active_role == "cpso"
        assert len(token) > 30

    def test_token_stored_hashed(self, make_user):
        user = make_user("solo@aft.test", "cpso")
        token, ctx = _store(T0).create(user)
        row = db.session.get(Session, ctx.session_id)
        assert row.token_hash != token
        assert len(row.token_hash) == 64

    def test_multi_role_needs_selection(self, make_user):
        user = make_user("multi@aft.test", "approver", "cpso")
        token, ctx = _store(T0).create(user)
        assert ctx.role_selected is False
        assert ctx.active_role is None
        assert ctx.available_roles == ["approver", "cpso"]
        assert ctx.primary_role == "approver"

        ctx = _store(T0).select_role(token, "cpso")
        assert ctx.active_role == "cpso"
        assert ctx.role_selected is True

    def test_no_roles_refused(self, make_user):
        user = make_user("nobody@aft.test")
        with pytest.raises(AuthorizationError):
            _store(T0).create(user)


class TestRoles:
    def test_select_unavailable_role(self, make_user):
        token, _ = _store(T0).create(make_user("multi@aft.test", "approver", "cpso"))
        with pytest.raises(ValidationError):
            _store(T0).select_role(token, "admin")

    def test_switch_requires_initial_selection(self, make_user):
        token, _ = _store(T0).create(make_user("multi@aft.test", "approver", "cpso"))
        with pytest.raises(ValidationError):
            _store(T0).switch_role(token, "cpso")

    def test_switch_role(self, make_user):
        token, _ = _store(T0).create(make_user("multi@aft.test", "approver", "cpso"))
        _store(T0).select_role(token, "approver")
        ctx = _store(T0 + timedelta(minutes=1)).switch_role(token, "cpso")
        assert ctx.active_role == "cpso"


class TestExpiry:
    def test_activity_keeps_session_alive(self, make_user):
        token, _ = _store(T0).create(make_user("solo@aft.test", "dta"))
        assert _store(T0 + timedelta(minutes=9)).validate(token) is not None
        assert _store(T0 + timedelta(minutes=18)).validate(token) is not None

    def test_idle_timeout(self, make_user):
        token, _ = _store(T0).create(make_user("solo@aft.test", "dta"))
        assert _store(T0 + timedelta(minutes=11)).validate(token) is None
        # deactivated, not resurrected by a later in-window check
        assert _store(T0 + timedelta(minutes=1)).validate(token) is None

    def test_absolute_timeout(self, make_user):
        token, _ = _store(T0).create(make_user("solo@aft.test", "dta"))
        t = T0
        for _ in range(60):
            t += timedelta(minutes=9)
            if _store(t).validate(token) is None:
                break
        assert t - T0 > timedelta(hours=8)
        assert t - T0 <= timedelta(hours=8, minutes=9)

    def test_unknown_token(self):
        assert _store(T0).validate("nope") is None
        assert _store(T0).validate(None) is None

    def test_destroy(self, make_user):
        token, _ = _store(T0).create(make_user("solo@aft.test", "dta"))
        assert _store(T0).destroy(token) is True
        assert _store(T0).validate(token) is None
        assert _store(T0).destroy(token) is False

    def test_select_role_on_expired_session(self, make_user):
        token, _ = _store(T0).create(make_user("multi@aft.test", "approver", "cpso"))
        with pytest.raises(AuthorizationError):
            _store(T0 + timedelta(hours=1)).select_role(token, "cpso")

    def test_purge_expired(self, make_user):
        stale, _ = _store(T0).create(make_user("a@aft.test", "dta"))
        fresh, _ = _store(T0 + timedelta(minutes=30)).create(make_user("b@aft.test", "sme"))
        removed = _store(T0 + timedelta(minutes=35)).purge_expired()
        assert removed == 1
        assert _store(T0 + timedelta(minutes=35)).validate(fresh) is not None
        assert Session.query.count() == 1
