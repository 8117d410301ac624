"""
Studio Client Portal
Flask Application Factory.

Usage:
    from portal import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from portal.auth import init_auth
from portal.config import config
from portal.middleware.jwt_auth import init_jwt_middleware
from portal.middleware.logging_config import configure_logging
from portal.middleware.rate_limiter import init_rate_limits
from portal.middleware.security_headers import init_security_headers
from portal.middleware.timing import init_request_timing
from portal.models import db

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
    default_limits=[],                     # no global limit - apply per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def _autoseed_catalog(app):
    """Install the default phase catalog when the phases table is empty."""
    from portal.services.phase_catalog import catalog_is_empty, seed_phase_catalog

    if not app.config.get("PHASE_CATALOG_AUTOSEED"):
        return
    try:
        if catalog_is_empty():
            created = seed_phase_catalog()
            db.session.commit()
            app.logger.info("Phase catalog auto-seeded: %s", created)
    except SQLAlchemyError as exc:
        db.session.rollback()
        app.logger.warning("Phase catalog auto-seed failed: %s", exc)


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
    # Instantiated so ProductionConfig can refuse to start without its env vars
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Middleware ───────────────────────────────────────────────────────
    init_auth(app)
    init_security_headers(app)
    init_request_timing(app)
    init_jwt_middleware(app)

    app.config.setdefault("MAX_CONTENT_LENGTH", 1 * 1024 * 1024)  # 1 MB

    # ── Import all models so Alembic can detect them ─────────────────────
    from portal.models import audit as _audit_models            # noqa: F401
    from portal.models import auth as _auth_models              # noqa: F401
    from portal.models import message as _message_models        # noqa: F401
    from portal.models import notification as _notification_models  # noqa: F401
    from portal.models import phase as _phase_models            # noqa: F401
    from portal.models import project as _project_models        # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) + catalog seed ─────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except SQLAlchemyError as e:
            app.logger.warning("db.create_all() failed: %s", e)
        _autoseed_catalog(app)

    # ── Blueprints ───────────────────────────────────────────────────────
    from portal.blueprints.automation_rule_bp import automation_rule_bp
    from portal.blueprints.health_bp import health_bp
    from portal.blueprints.phase_bp import phase_bp
    from portal.blueprints.project_bp import project_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(phase_bp)
    app.register_blueprint(project_bp)
    app.register_blueprint(automation_rule_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-phase-catalog")
    def seed_phase_catalog_cmd():
        """Install the default 8-phase catalog, client actions and automation rules."""
        from portal.services.phase_catalog import seed_phase_catalog
        created = seed_phase_catalog()
        db.session.commit()
        click.echo(
            f"Seeded {created['phases']} phases, {created['actions']} actions, "
            f"{created['rules']} rules."
        )

    @app.cli.command("remind-stalled-projects")
    @click.option("--days", type=int, default=None,
                  help="Minimum days in the current phase (default STALLED_PHASE_DAYS).")
    def remind_stalled_projects_cmd(days):
        """Notify clients whose projects are waiting on their actions."""
        from portal.services.stalled_projects import send_stalled_reminders
        sent = send_stalled_reminders(days)
        click.echo(f"Sent {sent} stalled-project reminders.")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
