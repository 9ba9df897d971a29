"""
Tenant Forms Workflow Core
Flask Application Factory.

Usage:
    from formflow import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from formflow.config import config
from formflow.core.exceptions import (
    ConflictError,
    FormValidationError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StaleStateError,
    ValidationError,
)
from formflow.middleware.logging_config import configure_logging
from formflow.middleware.rate_limiter import init_rate_limits
from formflow.middleware.tenant_context import init_tenant_context
from formflow.models import db
from formflow.services.notification import notifier
from formflow.utils.errors import E, api_error

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
    default_limits=[],                     # no global limit — apply per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def _register_error_handlers(app):
    """Map service-layer exceptions to the standard JSON error envelope."""

    @app.errorhandler(NotFoundError)
    def _not_found(exc):
        logger.info("Not found: %s", exc, extra={"tenant_id": exc.tenant_id})
        return api_error(E.NOT_FOUND, f"{exc.resource} not found")

    @app.errorhandler(FormValidationError)
    def _form_invalid(exc):
        return api_error(E.FORM_INVALID, str(exc), details={"errors": exc.errors})

    @app.errorhandler(ValidationError)
    def _invalid(exc):
        return api_error(E.VALIDATION_INVALID, str(exc), status=422, details=exc.details)

    @app.errorhandler(StaleStateError)
    def _stale(exc):
        return api_error(E.STALE_STATE, str(exc), details={
            "expected_version": exc.expected_version,
            "actual_version": exc.actual_version,
        })

    @app.errorhandler(ConflictError)
    def _conflict(exc):
        return api_error(E.CONFLICT_DUPLICATE, str(exc))

    @app.errorhandler(InvalidTransitionError)
    def _bad_transition(exc):
        return api_error(E.CONFLICT_STATE, str(exc), details={
            "action": exc.action,
            "current_status": exc.current_status,
        })

    @app.errorhandler(PermissionDeniedError)
    def _forbidden(exc):
        return api_error(E.FORBIDDEN, "Permission denied", details={
            "action": exc.action,
            "reason": exc.reason,
        })

    @app.errorhandler(404)
    def _route_not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def _rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


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
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    notifier.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Tenant context middleware (sets g.tenant_id / g.user_id) ─────────
    init_tenant_context(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    @app.before_request
    def _guard_request():
        from flask import abort, request as _req
        if _req.method in ("POST", "PUT", "PATCH") and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            if _req.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from formflow.models import audit as _audit_models                # noqa: F401
    from formflow.models import auth as _auth_models                  # noqa: F401
    from formflow.models import forms as _forms_models                # noqa: F401
    from formflow.models import notification as _notification_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        if config_name == "development" and app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///"):
            os.makedirs(app.instance_path, exist_ok=True)
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from formflow.blueprints.forms_bp import forms_bp
    from formflow.blueprints.permissions_bp import permissions_bp

    app.register_blueprint(forms_bp)
    app.register_blueprint(permissions_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("validate-form-templates")
    def validate_form_templates_cmd():
        """Report workflow steps whose approver role is missing in the template's tenant."""
        from formflow.models.forms import FormTemplate
        from formflow.services.template_service import find_configuration_issues

        templates = FormTemplate.query_active().filter_by(is_active=True).all()
        issues = []
        for template in templates:
            issues.extend(find_configuration_issues(template))
        for issue in issues:
            logger.warning(
                "Template %s step %s: %s",
                issue["template_id"], issue["step_name"], issue["message"],
            )
        logger.info("Checked %d template(s): %d issue(s)", len(templates), len(issues))
        if issues:
            raise SystemExit(1)

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "formflow"}

    # ── Error handlers ───────────────────────────────────────────────────
    _register_error_handlers(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
