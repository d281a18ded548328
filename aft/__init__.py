"""
AFT Workflow Service
Flask Application Factory.

Usage:
    from aft import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from werkzeug.middleware.proxy_fix import ProxyFix

from aft.config import config
from aft.models import db
from aft.middleware.logging_config import configure_logging
from aft.middleware.timing import init_request_timing
from aft.middleware.security_headers import init_security_headers
from aft.middleware.session_auth import init_session_auth
from aft.middleware.rate_limiter import init_rate_limits

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)

DEMO_USERS = [
    # (email, first, last, roles)
    ("requestor@aft.local", "Riley", "Requestor", ["requestor"]),
    ("dao@aft.local", "Dana", "Owner", ["dao"]),
    ("issm@aft.local", "Ira", "Approver", ["approver"]),
    ("cpso@aft.local", "Casey", "Protection", ["cpso"]),
    ("dta@aft.local", "Drew", "Agent", ["dta"]),
    ("sme@aft.local", "Sam", "Expert", ["sme"]),
    ("custodian@aft.local", "Morgan", "Custodian", ["media_custodian"]),
    ("admin@aft.local", "Alex", "Admin", ["admin", "approver", "cpso"]),
]


def _enable_sqlite_savepoints(engine):
    """Let pysqlite honour BEGIN/SAVEPOINT so nested transactions roll back cleanly."""

    @_sa_event.listens_for(engine, "connect")
    def _no_implicit_begin(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None

    @_sa_event.listens_for(engine, "begin")
    def _explicit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    os.makedirs(app.instance_path, exist_ok=True)

    proxies = app.config.get("TRUSTED_PROXY_COUNT", 0)
    if proxies:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=proxies, x_proto=proxies)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()], supports_credentials=True)
    else:
        CORS(app)

    # ── Security headers, timing, session resolution ─────────────────────
    init_security_headers(app)
    init_request_timing(app)
    init_session_auth(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 1 * 1024 * 1024)  # 1 MB

    @app.before_request
    def _guard_request():
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                return {"error": "Content-Type must be application/json", "code": "ERR_VALIDATION_INVALID"}, 415
        return None

    # ── Import all models so Alembic can detect them ─────────────────────
    from aft.models import auth as _auth_models            # noqa: F401
    from aft.models import request as _request_models      # noqa: F401
    from aft.models import signature as _signature_models  # noqa: F401
    from aft.models import history as _history_models      # noqa: F401
    from aft.models import email_log as _email_log_models  # noqa: F401
    from aft.models import media as _media_models          # noqa: F401

    with app.app_context():
        if db.engine.dialect.name == "sqlite":
            _enable_sqlite_savepoints(db.engine)
        db.create_all()
        app.logger.info("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from aft.blueprints.auth_bp import auth_bp
    from aft.blueprints.media_bp import media_bp
    from aft.blueprints.request_bp import request_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(request_bp)
    app.register_blueprint(media_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-users")
    def seed_users_cmd():
        """Create one demo account per workflow role (password from AFT_SEED_PASSWORD)."""
        from werkzeug.security import generate_password_hash

        from aft.models.auth import User, UserRole

        password = os.getenv("AFT_SEED_PASSWORD", "ChangeMe-AFT-2024")
        created = 0
        for email, first, last, roles in DEMO_USERS:
            if User.query.filter_by(email=email).first():
                continue
            user = User(
                email=email, first_name=first, last_name=last,
                password_hash=generate_password_hash(password),
            )
            user.user_roles = [
                UserRole(role=role, is_primary=(i == 0)) for i, role in enumerate(roles)
            ]
            db.session.add(user)
            created += 1
        db.session.commit()
        logger.info("Seeded %s demo users.", created)

    @app.cli.command("purge-sessions")
    def purge_sessions_cmd():
        """Deactivate sessions past their idle or absolute timeout."""
        from aft.services.session_store import SessionStore

        count = SessionStore.from_config().purge_expired()
        logger.info("Purged %s expired sessions.", count)

    @app.cli.command("route-submitted")
    def route_submitted_cmd():
        """Move requests left in 'submitted' to their first review queue."""
        from aft.services import workflow_service

        results = workflow_service.route_all_submitted()
        routed = sum(1 for result, err in results if err is None)
        logger.info("Routed %s of %s submitted requests.", routed, len(results))

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "AFT Workflow Service"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return {"error": "Request body too large"}, 413

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Notification worker pool ─────────────────────────────────────────
    from aft.services import notification_dispatcher
    import atexit
    atexit.register(notification_dispatcher.shutdown, app)

    return app
