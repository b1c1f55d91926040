"""
Maintenance Permit Core
Flask Application Factory.

Usage:
    from cmms import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from cmms.config import config
from cmms.middleware.jwt_auth import init_jwt_middleware
from cmms.middleware.logging_config import configure_logging
from cmms.middleware.rate_limiter import init_rate_limits
from cmms.middleware.tenant_context import init_tenant_context
from cmms.middleware.timing import init_request_timing
from cmms.models import db
from cmms.utils.errors import register_error_handlers

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
    default_limits=[],                     # limits are applied per blueprint
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
    os.makedirs(app.instance_path, exist_ok=True)

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

    # ── Middleware: timing → JWT → tenant context ────────────────────────
    init_request_timing(app)
    init_jwt_middleware(app)
    init_tenant_context(app)

    @app.before_request
    def _guard_request():
        from flask import abort
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from cmms.models import audit as _audit_models               # noqa: F401
    from cmms.models import auth as _auth_models                 # noqa: F401
    from cmms.models import notification as _notification_models  # noqa: F401
    from cmms.models import permit as _permit_models             # noqa: F401
    from cmms.models import work_order as _work_order_models     # noqa: F401

    # ── Auto-create tables outside of tests (CREATE IF NOT EXISTS) ───────
    if not app.config.get("TESTING"):
        with app.app_context():
            try:
                db.create_all()
                app.logger.info("db.create_all() completed successfully")
            except Exception as e:
                app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from cmms.blueprints.health_bp import health_bp
    from cmms.blueprints.notification_bp import notification_bp
    from cmms.blueprints.permit_bp import permit_bp
    from cmms.blueprints.work_order_bp import work_order_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(permit_bp)
    app.register_blueprint(work_order_bp)
    app.register_blueprint(notification_bp)

    # ── Error handlers ───────────────────────────────────────────────────
    register_error_handlers(app)

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler (import jobs to register them) ─────────────────────────
    importlib.import_module("cmms.services.scheduled_jobs")
    from cmms.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    return app
