"""
Shared pytest fixtures for the AFT workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _db_reset: per-test rollback + table recreate (autouse)
    - client: Flask test client
    - make_user / make_session: factories for accounts and live sessions
    - cast: one user + session per workflow role
    - manual_sig / cac_sig: signature payload builders
    - draft: a committed low-to-high draft owned by cast.requestor
"""

import base64
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from aft import create_app
from aft.models import db as _db
from aft.models.auth import User, UserRole
from aft.services import workflow_service
from aft.services.session_store import SessionStore

TEST_PASSWORD = "Correct-Horse-42"

DRAFT_DATA = {
    "transfer_type": "low-to-high",
    "classification": "UNCLASSIFIED",
    "transfer_purpose": "Quarterly patch bundle",
    "data_description": "Vendor patches and checksums",
    "source_system": "NIPR build host",
    "dest_system": "SIPR staging",
    "files_list": [{"name": "patches.zip", "size": 1048576}],
}


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(autouse=True)
def _db_reset(app):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    """make_user("dta2@aft.test", "dta") → committed User holding the roles (first is primary)."""

    def _make(email, *roles, first_name="Test", last_name=None, password=TEST_PASSWORD, is_active=True):
        user = User(
            email=email,
            first_name=first_name,
            last_name=last_name or email.split("@")[0].title(),
            password_hash=generate_password_hash(password),
            is_active=is_active,
        )
        user.user_roles = [UserRole(role=r, is_primary=(i == 0)) for i, r in enumerate(roles)]
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def make_session():
    """make_session(user, role) → SessionContext with ``role`` active (and ``.token`` set)."""

    def _make(user, role=None):
        store = SessionStore.from_config()
        token, ctx = store.create(user, ip_address="10.0.0.5", user_agent="pytest")
        if role and ctx.active_role != role:
            ctx = store.select_role(token, role)
        ctx.token = token
        return ctx

    return _make


@pytest.fixture()
def cast(make_user, make_session):
    """One user and one live session for every workflow role."""
    users = {
        "requestor": make_user("requestor@aft.test", "requestor", first_name="Riley"),
        "dao": make_user("dao@aft.test", "dao", first_name="Dana"),
        "approver": make_user("issm@aft.test", "approver", first_name="Ira"),
        "cpso": make_user("cpso@aft.test", "cpso", first_name="Casey"),
        "dta": make_user("dta@aft.test", "dta", first_name="Drew"),
        "sme": make_user("sme@aft.test", "sme", first_name="Sam"),
        "custodian": make_user("custodian@aft.test", "media_custodian", first_name="Morgan"),
        "admin": make_user("admin@aft.test", "admin", "approver", first_name="Alex"),
    }
    role_of = {"custodian": "media_custodian"}
    sessions = {
        name: make_session(user, role_of.get(name, name)) for name, user in users.items()
    }
    ns = SimpleNamespace(**sessions)
    ns.users = SimpleNamespace(**users)
    return ns


@pytest.fixture()
def manual_sig():
    def _build(name="Riley Requestor", **extra):
        return {"method": "manual", "signer_name": name, **extra}

    return _build


@pytest.fixture()
def cac_sig():
    """CAC payload with a certificate valid around ``now``; override any certificate field."""

    def _build(now=None, **cert_overrides):
        now = now or datetime.now(timezone.utc)
        cert = {
            "thumbprint": "3F2A9C0B7E11D4A5",
            "subject": "CN=DOE.JOHN.A.1234567890,OU=DoD,OU=PKI,OU=USA,O=U.S. Government,C=US",
            "issuer": "CN=DOD ID CA-59,OU=PKI,OU=DoD,O=U.S. Government,C=US",
            "serial_number": "0x1A2B3C",
            "valid_from": (now - timedelta(days=365)).isoformat(),
            "valid_to": (now + timedelta(days=365)).isoformat(),
        }
        cert.update(cert_overrides)
        return {
            "method": "cac",
            "certificate": cert,
            "signature": base64.b64encode(b"pkcs1-signature-bytes").decode(),
            "algorithm": "RSA-SHA256",
            "timestamp": now.isoformat(),
        }

    return _build


@pytest.fixture()
def draft_data():
    return dict(DRAFT_DATA)


@pytest.fixture()
def draft(cast):
    """A committed low-to-high draft owned by ``cast.requestor``."""
    req, err = workflow_service.create_request(cast.requestor, dict(DRAFT_DATA))
    assert err is None
    return req
