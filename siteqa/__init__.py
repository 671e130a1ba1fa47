"""
Site Quality Workflow Engine
Flask Application Factory.

Usage:
    from siteqa import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from siteqa.config import config
from siteqa.middleware.jwt_auth import init_jwt_middleware
from siteqa.middleware.logging_config import configure_logging
from siteqa.middleware.rate_limiter import init_rate_limits
from siteqa.models import db

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
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

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    app.config.setdefault("RATELIMIT_ENABLED", True)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Collaborators (replaceable via app.extensions) ──────────────────
    from siteqa.services.access import init_access_checker
    from siteqa.services.evidence_store import init_evidence_store

    init_access_checker(app)
    init_evidence_store(app)

    # ── JWT auth middleware ──────────────────────────────────────────────
    init_jwt_middleware(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    @app.before_request
    def _guard_request():
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from siteqa.models import audit as _audit_models                # noqa: F401
    from siteqa.models import checkpoint as _checkpoint_models      # noqa: F401
    from siteqa.models import inspection as _inspection_models      # noqa: F401
    from siteqa.models import issue as _issue_models                # noqa: F401
    from siteqa.models import notification as _notification_models  # noqa: F401
    from siteqa.models import project as _project_models            # noqa: F401
    from siteqa.models import work_unit as _work_unit_models        # noqa: F401

    # ── Local SQLite convenience: create tables on startup ───────────────
    if app.debug and app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///"):
        os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from siteqa.blueprints.checkpoint_bp import checkpoint_bp
    from siteqa.blueprints.external_release_bp import external_release_bp
    from siteqa.blueprints.inspection_bp import inspection_bp
    from siteqa.blueprints.issue_bp import issue_bp
    from siteqa.blueprints.work_unit_bp import work_unit_bp

    app.register_blueprint(inspection_bp)
    app.register_blueprint(checkpoint_bp)
    app.register_blueprint(external_release_bp)
    app.register_blueprint(issue_bp)
    app.register_blueprint(work_unit_bp)

    # ── CLI ──────────────────────────────────────────────────────────────
    @app.cli.command("escalation-scan")
    def escalation_scan_cmd():
        """Escalate stale checkpoints and send overdue reminders."""
        from siteqa.services.escalation_scan import run_escalation_scan

        summary = run_escalation_scan()
        click.echo(
            f"escalated={len(summary['escalated'])} "
            f"stale_reminders={summary['stale_reminders']} "
            f"overdue_reminders={summary['overdue_reminders']}"
        )

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Site Quality Workflow Engine"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        if request.path.startswith("/api/v1/external/"):
            return {"error": "Not found", "code": "ERR_NOT_FOUND"}, 404
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
