"""
Project Tracker
Flask Application Factory.

Usage:
    from tracker import create_app
    app = create_app()           # APP_ENV, defaulting to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, jsonify
from flask_cors import CORS
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from tracker.config import config
from tracker.middleware.jwt_auth import init_identity_middleware
from tracker.middleware.logging_config import configure_logging
from tracker.middleware.timing import init_request_timing
from tracker.models import db

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


def create_app(config_name=None):
    """Create and configure the Flask application."""
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__)
    # Instantiated so ProductionConfig can refuse to start without its env vars
    app.config.from_object(config[config_name]())

    configure_logging(app)

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///") and ":memory:" not in \
            app.config["SQLALCHEMY_DATABASE_URI"]:
        os.makedirs(app.instance_path, exist_ok=True)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request pipeline ─────────────────────────────────────────────────
    init_request_timing(app)
    init_identity_middleware(app)

    # ── Models (so create_all / migrations see every table) ─────────────
    from tracker.models import audit, auth, baseline, project, workflow  # noqa: F401

    # ── Blueprints ───────────────────────────────────────────────────────
    from tracker.blueprints.lifecycle_bp import lifecycle_bp
    from tracker.blueprints.membership_bp import membership_bp
    from tracker.blueprints.permission_bp import permission_bp
    from tracker.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(permission_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(lifecycle_bp)
    app.register_blueprint(membership_bp)

    # ── Health ───────────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return jsonify({"status": "ok", "env": config_name}), 200

    # ── JSON errors for unmatched routes ─────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found", "code": "ERR_NOT_FOUND"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_error(e):
        logger.exception("Unhandled server error")
        return jsonify({"error": "Internal server error", "code": "ERR_INTERNAL"}), 500

    # ── Schema bootstrap for local runs (production uses flask db upgrade) ─
    if config_name != "production":
        with app.app_context():
            db.create_all()

    logger.info("Application created", extra={"action": "create_app"})
    return app
