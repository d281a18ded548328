"""
Session auth middleware — resolves the caller's AFT session, sets g.aft_session.

Token sources, in priority order:
  1. Authorization: Bearer <token>
  2. ``aft_session`` cookie

Expired or unknown tokens leave ``g.aft_session = None``; endpoints decorated
with ``@session_required`` then answer 401.
"""

from functools import wraps

from flask import current_app, g, request

from aft.services.session_store import SessionStore
from aft.utils.errors import E, api_error

# Paths that never need a session
SESSION_SKIP_PREFIXES = (
    "/api/v1/auth/login",
    "/api/v1/health",
)


def client_ip() -> str | None:
    """Client IP. Behind TRUSTED_PROXY_COUNT proxies ProxyFix has already
    rewritten ``remote_addr`` from X-Forwarded-For."""
    return (request.remote_addr or "")[:45] or None


def request_token() -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    cookie_name = current_app.config.get("SESSION_COOKIE_NAME_AFT", "aft_session")
    return request.cookies.get(cookie_name) or None


def init_session_auth(app):
    """Register the session resolver as a before_request hook."""

    @app.before_request
    def _resolve_session():
        g.aft_session = None
        g.aft_token = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in SESSION_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        token = request_token()
        if not token:
            return
        ctx = SessionStore.from_config().validate(token)
        if ctx is None:
            return
        # the acting client may differ from the one that logged in
        ctx.ip_address = client_ip()
        ctx.user_agent = request.headers.get("User-Agent")
        g.aft_session = ctx
        g.aft_token = token


def session_required(fn):
    """401 unless the request carries a live session."""

    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "aft_session", None) is None:
            return api_error(E.UNAUTHORIZED, "Authentication required")
        return fn(*args, **kwargs)

    return wrapper
