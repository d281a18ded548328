"""
Auth Blueprint — login, role selection and logout.

Endpoints:
    POST /api/v1/auth/login        { email, password } → bearer token + session
    POST /api/v1/auth/select-role  { role }            → updated session
    POST /api/v1/auth/logout
    GET  /api/v1/auth/me

The token is returned in the body and also set as the ``aft_session``
cookie (HttpOnly, SameSite=Strict).
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash

from aft import limiter
from aft.core.exceptions import AuthorizationError, NotFoundError, StorageError, ValidationError
from aft.middleware.session_auth import client_ip, session_required
from aft.models import db
from aft.models.auth import User
from aft.services.session_store import SessionStore
from aft.utils.errors import E, api_error, error_response

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/api/v1/auth")


def _login_limit():
    return current_app.config.get("LOGIN_RATE_LIMIT", "5 per 15 minutes")


@auth_bp.errorhandler(StorageError)
def _handle_storage(error: StorageError):
    return error_response(error)


@auth_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in auth_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


@auth_bp.route("/login", methods=["POST"])
@limiter.limit(_login_limit)
def login():
    """
    Authenticate with email + password and open a session.

    Body: { "email": "...", "password": "..." }
    """
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        return api_error(E.VALIDATION_REQUIRED, "Email and password are required")

    user = User.query.filter_by(email=email).first()
    if not user or not user.password_hash or not check_password_hash(user.password_hash, password):
        logger.warning(
            "Failed login",
            extra={"event_type": "login_failed", "remote_addr": client_ip()},
        )
        return api_error(E.UNAUTHORIZED, "Invalid email or password")
    if not user.is_active:
        return api_error(E.FORBIDDEN, "Account is disabled")

    try:
        token, ctx = SessionStore.from_config().create(
            user, ip_address=client_ip(), user_agent=request.headers.get("User-Agent"),
        )
    except AuthorizationError as exc:
        return error_response(exc)

    resp = jsonify({
        "token": token,
        "session": ctx.to_dict(),
        "requires_role_selection": not ctx.role_selected,
    })
    resp.set_cookie(
        current_app.config.get("SESSION_COOKIE_NAME_AFT", "aft_session"),
        token,
        httponly=True,
        secure=not current_app.config.get("DEBUG") and not current_app.config.get("TESTING"),
        samesite="Strict",
        max_age=current_app.config.get("SESSION_MAX_DURATION_SECONDS", 28800),
    )
    return resp, 200


@auth_bp.route("/select-role", methods=["POST"])
@session_required
def select_role():
    """Pick (or switch) the active role. Body: { "role": "approver" }"""
    data = request.get_json(silent=True) or {}
    role = (data.get("role") or "").strip().lower()
    if not role:
        return api_error(E.VALIDATION_REQUIRED, "role is required")

    store = SessionStore.from_config()
    try:
        if g.aft_session.role_selected:
            ctx = store.switch_role(g.aft_token, role)
        else:
            ctx = store.select_role(g.aft_token, role)
    except (AuthorizationError, ValidationError) as exc:
        return error_response(exc)
    return jsonify({"session": ctx.to_dict()}), 200


@auth_bp.route("/logout", methods=["POST"])
@session_required
def logout():
    SessionStore.from_config().destroy(g.aft_token)
    resp = jsonify({"logged_out": True})
    resp.delete_cookie(current_app.config.get("SESSION_COOKIE_NAME_AFT", "aft_session"))
    return resp, 200


@auth_bp.route("/me", methods=["GET"])
@session_required
def me():
    user = db.session.get(User, g.aft_session.user_id)
    if user is None:
        return error_response(NotFoundError("User", g.aft_session.user_id))
    return jsonify({
        "user": user.to_dict(include_roles=True),
        "session": g.aft_session.to_dict(),
    }), 200
