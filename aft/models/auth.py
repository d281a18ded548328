"""
AFT Request Tracker — identity and session models.

Tables:
    1. users       — one row per person (CAC holder or local account)
    2. user_roles  — workflow roles held by a user (one flagged primary)
    3. sessions    — server-side sessions with an active role
"""

import uuid
from datetime import datetime, timezone

from aft.models import db


# ═══════════════════════════════════════════════════════════════
# 1. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True, index=True)
    password_hash = db.Column(db.String(256))  # NULL for CAC-only accounts
    first_name = db.Column(db.String(100))
    last_name = db.Column(db.String(100))
    organization = db.Column(db.String(200))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    last_login_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    user_roles = db.relationship(
        "UserRole", back_populates="user", lazy="selectin", cascade="all, delete-orphan",
    )
    sessions = db.relationship("Session", back_populates="user", lazy="dynamic", cascade="all, delete-orphan")

    @property
    def full_name(self) -> str:
        name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return name or self.email

    @property
    def role_names(self) -> list[str]:
        """Active role names, primary role first."""
        roles = sorted(
            (ur for ur in self.user_roles if ur.is_active),
            key=lambda ur: (not ur.is_primary, ur.role),
        )
        return [ur.role for ur in roles]

    @property
    def primary_role(self) -> str | None:
        names = self.role_names
        return names[0] if names else None

    def to_dict(self, include_roles=False):
        d = {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "organization": self.organization,
            "is_active": self.is_active,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_roles:
            d["roles"] = self.role_names
            d["primary_role"] = self.primary_role
        return d

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"


# ═══════════════════════════════════════════════════════════════
# 2. USER_ROLES
# ═══════════════════════════════════════════════════════════════
class UserRole(db.Model):
    __tablename__ = "user_roles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    role = db.Column(db.String(30), nullable=False, comment="aft.core.workflow.Role value")
    is_primary = db.Column(db.Boolean, default=False, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    assigned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("user_id", "role", name="uq_user_role"),
        db.Index("ix_user_roles_role", "role"),
    )

    user = db.relationship("User", back_populates="user_roles")

    def __repr__(self):
        return f"<UserRole user={self.user_id} role={self.role}>"


# ═══════════════════════════════════════════════════════════════
# 3. SESSIONS
# ═══════════════════════════════════════════════════════════════
class Session(db.Model):
    __tablename__ = "sessions"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    token_hash = db.Column(db.String(64), nullable=False, unique=True)  # SHA-256 of bearer token
    email = db.Column(db.String(200), nullable=False)
    primary_role = db.Column(db.String(30))
    active_role = db.Column(db.String(30))
    available_roles = db.Column(db.JSON, nullable=False, default=list)
    role_selected = db.Column(db.Boolean, default=False, nullable=False)
    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.String(500))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    last_activity = db.Column(db.DateTime(timezone=True), nullable=False)

    user = db.relationship("User", back_populates="sessions")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "email": self.email,
            "primary_role": self.primary_role,
            "active_role": self.active_role,
            "available_roles": list(self.available_roles or []),
            "role_selected": self.role_selected,
            "ip_address": self.ip_address,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
        }

    def __repr__(self):
        return f"<Session {self.id} user={self.user_id} role={self.active_role}>"
