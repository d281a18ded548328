"""
Server-side session store.

Sessions carry the user's available roles and the one role they are acting
as. A user with several roles must pick one (``select_role``) before the
workflow accepts any action from them; they may switch later.

Lifetimes (STIG defaults, configurable):
    SESSION_IDLE_TIMEOUT_SECONDS   600    — inactivity limit
    SESSION_MAX_DURATION_SECONDS   28800  — absolute limit from login

Only a SHA-256 hash of the bearer token is stored.

The clock is injectable so that expiry can be tested without sleeping:

    store = SessionStore(clock=lambda: fixed_now)
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from flask import current_app, has_app_context

from aft.core.exceptions import AuthorizationError, ValidationError
from aft.models import db
from aft.models.auth import Session, User

logger = logging.getLogger(__name__)


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime | None) -> datetime | None:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class SessionContext:
    """The view of a session the workflow consumes."""

    session_id: str
    user_id: int
    email: str
    primary_role: str | None
    active_role: str | None
    available_roles: list[str] = field(default_factory=list)
    role_selected: bool = False
    created_at: datetime | None = None
    last_activity: datetime | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    is_active: bool = True
    display_name: str = ""

    @classmethod
    def from_model(cls, s: Session) -> "SessionContext":
        return cls(
            session_id=s.id,
            user_id=s.user_id,
            email=s.email,
            primary_role=s.primary_role,
            active_role=s.active_role,
            available_roles=list(s.available_roles or []),
            role_selected=s.role_selected,
            created_at=_aware(s.created_at),
            last_activity=_aware(s.last_activity),
            ip_address=s.ip_address,
            user_agent=s.user_agent,
            is_active=s.is_active,
            display_name=s.user.full_name if s.user else s.email,
        )

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "email": self.email,
            "display_name": self.display_name,
            "primary_role": self.primary_role,
            "active_role": self.active_role,
            "available_roles": self.available_roles,
            "role_selected": self.role_selected,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
        }


class SessionStore:
    """Create, validate and end sessions. Commits its own writes."""

    def __init__(self, idle_timeout: int = 600, max_duration: int = 28800, clock=None):
        self.idle_timeout = timedelta(seconds=idle_timeout)
        self.max_duration = timedelta(seconds=max_duration)
        self.clock = clock or _utc_now

    @classmethod
    def from_config(cls, clock=None) -> "SessionStore":
        if not has_app_context():
            return cls(clock=clock)
        cfg = current_app.config
        return cls(
            idle_timeout=cfg.get("SESSION_IDLE_TIMEOUT_SECONDS", 600),
            max_duration=cfg.get("SESSION_MAX_DURATION_SECONDS", 28800),
            clock=clock,
        )

    # ── Lifecycle ────────────────────────────────────────────────────────

    def create(self, user: User, ip_address: str | None = None, user_agent: str | None = None) -> tuple[str, SessionContext]:
        """Open a session for ``user``. Returns ``(bearer_token, context)``.

        A user holding exactly one role has it activated immediately.
        """
        roles = user.role_names
        if not roles:
            raise AuthorizationError("No workflow roles are assigned to this account")
        now = self.clock()
        token = secrets.token_urlsafe(32)
        single = len(roles) == 1
        s = Session(
            user_id=user.id,
            token_hash=_hash_token(token),
            email=user.email,
            primary_role=roles[0],
            active_role=roles[0] if single else None,
            available_roles=roles,
            role_selected=single,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:500] or None,
            is_active=True,
            created_at=now,
            last_activity=now,
        )
        db.session.add(s)
        user.last_login_at = now
        db.session.commit()
        logger.info(
            "Session created",
            extra={"event_type": "session_created", "user_id": user.id, "session_id": s.id},
        )
        return token, SessionContext.from_model(s)

    def _load(self, token: str | None) -> Session | None:
        if not token:
            return None
        return Session.query.filter_by(token_hash=_hash_token(token)).first()

    def _expired_reason(self, s: Session, now: datetime) -> str | None:
        if not s.is_active:
            return "inactive"
        if now - _aware(s.created_at) > self.max_duration:
            return "max_duration"
        if now - _aware(s.last_activity) > self.idle_timeout:
            return "idle_timeout"
        return None

    def validate(self, token: str | None, *, touch: bool = True) -> SessionContext | None:
        """Return the live session for ``token`` or None if missing/expired.

        Expired sessions are deactivated. ``touch`` refreshes last_activity.
        """
        s = self._load(token)
        if s is None:
            return None
        now = self.clock()
        reason = self._expired_reason(s, now)
        if reason is not None:
            if s.is_active:
                s.is_active = False
                db.session.commit()
                logger.info(
                    "Session expired (%s)", reason,
                    extra={"event_type": "session_expired", "user_id": s.user_id, "session_id": s.id},
                )
            return None
        if touch:
            s.last_activity = now
            db.session.commit()
        return SessionContext.from_model(s)

    def select_role(self, token: str, role: str) -> SessionContext:
        """Activate ``role`` for the session. It must be one of the available roles."""
        s = self._require_live(token)
        if role not in (s.available_roles or []):
            raise ValidationError(
                f"Role '{role}' is not available to this account",
                {"role": role, "available_roles": list(s.available_roles or [])},
            )
        previous = s.active_role
        s.active_role = role
        s.role_selected = True
        s.last_activity = self.clock()
        db.session.commit()
        logger.info(
            "Active role changed",
            extra={
                "event_type": "role_selected",
                "user_id": s.user_id,
                "active_role": role,
                "previous_role": previous,
            },
        )
        return SessionContext.from_model(s)

    def switch_role(self, token: str, role: str) -> SessionContext:
        """Change the active role of a session that already selected one."""
        s = self._require_live(token)
        if not s.role_selected:
            raise ValidationError("Select an initial role before switching")
        return self.select_role(token, role)

    def destroy(self, token: str) -> bool:
        s = self._load(token)
        if s is None or not s.is_active:
            return False
        s.is_active = False
        db.session.commit()
        logger.info("Session ended", extra={"event_type": "session_destroyed", "user_id": s.user_id})
        return True

    def purge_expired(self) -> int:
        """Delete inactive and expired sessions. Returns the number removed."""
        now = self.clock()
        removed = 0
        for s in Session.query.all():
            if self._expired_reason(s, now) is not None:
                db.session.delete(s)
                removed += 1
        db.session.commit()
        return removed

    def _require_live(self, token: str) -> Session:
        ctx = self.validate(token, touch=False)
        if ctx is None:
            raise AuthorizationError("Session is missing or expired")
        return db.session.get(Session, ctx.session_id)
