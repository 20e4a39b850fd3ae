"""Application factory, the entry point for the Flask application."""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify
from sqlalchemy import event
from werkzeug.exceptions import HTTPException

from config import enable_sqlite_fks, load_config
from extensions import db, limiter
from routes import register_blueprints
from services.auth import load_current_actor
from services.errors import RentalError
from services.rbac import DEFAULT_ROLE_POLICY
from services.tenant import register_tenant_guards
from services.tiers import DEFAULT_TIER_POLICY, TierPolicy

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _build_tier_policy(raw) -> TierPolicy:
    """Tier table from config, or the built-in one when absent or invalid."""
    if not raw:
        return DEFAULT_TIER_POLICY
    try:
        return TierPolicy.from_config(raw)
    except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
        logger.error("Invalid tier table in configuration (%s); using built-in tiers", exc)
        return DEFAULT_TIER_POLICY


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app():
    """Create and configure the Flask application."""
    app_cfg, auth_cfg, policy_cfg, tier_overrides, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.secret_key = app_cfg.secret_key
    app.config["APP_CONFIG"] = app_cfg
    app.config["AUTH_CONFIG"] = auth_cfg
    app.config["RENTAL_POLICY"] = policy_cfg
    app.config["TIER_POLICY"] = _build_tier_policy(tier_overrides)
    app.config["ROLE_POLICY"] = DEFAULT_ROLE_POLICY
    app.config["RATELIMIT_ENABLED"] = app_cfg.rate_limit_enabled

    # Initialize extensions
    limiter.init_app(app)
    db.init_app(app)

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        db.create_all()

    # Actor first, tenant binding second
    app.before_request(load_current_actor)
    register_tenant_guards(app)

    register_blueprints(app)

    # ------------------------------------------------------------------
    # Security headers
    # ------------------------------------------------------------------

    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        if os.environ.get("FLASK_ENV") == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.errorhandler(RentalError)
    def rental_error(error: RentalError):
        db.session.rollback()
        return jsonify(error.to_dict()), error.status_code

    def _http_error(error: HTTPException, code: str):
        return (
            jsonify({"success": False, "message": error.description, "code": code}),
            error.code,
        )

    @app.errorhandler(404)
    def not_found(error):
        return _http_error(error, "NOT_FOUND")

    @app.errorhandler(405)
    def method_not_allowed(error):
        return _http_error(error, "METHOD_NOT_ALLOWED")

    @app.errorhandler(429)
    def ratelimit_handler(error):
        return _http_error(error, "RATE_LIMITED")

    @app.errorhandler(500)
    def server_error(error):
        db.session.rollback()
        logger.error("Unhandled error: %r", getattr(error, "original_exception", error))
        return (
            jsonify({"success": False, "message": "Internal server error", "code": "INTERNAL_ERROR"}),
            500,
        )

    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s (debug=%s)", host, port, debug_mode)
    app.run(host=host, port=port, debug=debug_mode)
