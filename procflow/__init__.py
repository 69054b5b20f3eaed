"""
FIEC Process Workflow Service
Flask Application Factory.

Usage:
    from procflow import create_app
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

from procflow.config import config
from procflow.models import db
from procflow.middleware.logging_config import configure_logging
from procflow.middleware.rate_limiter import init_rate_limits
from procflow.middleware.timing import init_request_timing

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
    default_limits=[],                     # no global limit; applied per endpoint
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
    cfg = config[config_name]
    app.config.from_object(cfg() if config_name == "production" else cfg)

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

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Workflow event bus (audit + notification sinks) ──────────────────
    from procflow.services.events import init_event_bus
    init_event_bus(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from procflow.models import archive as _archive_models          # noqa: F401
    from procflow.models import artifact as _artifact_models        # noqa: F401
    from procflow.models import audit as _audit_models              # noqa: F401
    from procflow.models import auth as _auth_models                # noqa: F401
    from procflow.models import catalog as _catalog_models          # noqa: F401
    from procflow.models import notification as _notification_models  # noqa: F401
    from procflow.models import process as _process_models          # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if config_name != "production":
        with app.app_context():
            os.makedirs(app.instance_path, exist_ok=True)
            db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from procflow.blueprints.archive_bp import archive_bp
    from procflow.blueprints.catalog_bp import catalog_bp
    from procflow.blueprints.instance_bp import instance_bp

    app.register_blueprint(catalog_bp)
    app.register_blueprint(instance_bp)
    app.register_blueprint(archive_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-demo-catalog")
    def seed_demo_catalog_cmd():
        """Seed FIEC roles, demo users, process types and published templates."""
        from procflow.services.seed_service import seed_demo_data
        created = seed_demo_data()
        logger.info("Seeded demo catalog: %s", created)

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "FIEC Process Workflow Service"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
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
