import logging

import click
from flask import Flask, request, g, jsonify
from flask_migrate import Migrate
from pydantic import ValidationError
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from config import Config
from routes import health_bp, auth_bp, admin_bp, booking_bp, resources_bp, widget_bp, pets_bp
from routes.booking import build_lifecycle
from models import db
from models.user import User, Role
from services.errors import BookingError, DownstreamFailure
from utils.seed import seed_roles
from utils.auth_context import load_current_user
from security.csrf import require_csrf

logger = logging.getLogger(__name__)

CSRF_EXEMPT_PATHS = {
    "/auth/login",
    "/auth/register",
    "/health",
    "/widget/token",
}


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(
        level=getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(booking_bp)
    app.register_blueprint(resources_bp)
    app.register_blueprint(widget_bp)
    app.register_blueprint(pets_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Seed default roles once the schema exists (idempotent)
    with app.app_context():
        if inspect(db.engine).has_table("roles"):
            seed_roles()

    @app.before_request
    def _load_user():
        load_current_user()

    @app.before_request
    def _csrf_protect():
        # Only protect state-changing requests
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if request.path in CSRF_EXEMPT_PATHS:
                return None

            # Only enforce CSRF if user is already authenticated (cookie session)
            if getattr(g, "user", None) is not None:
                failure = require_csrf()
                if failure:
                    return failure

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_error_handlers(app)
    register_cli(app)

    return app


def register_error_handlers(app):
    @app.errorhandler(BookingError)
    def _booking_error(e):
        if e.status_code >= 500:
            logger.error("Booking operation failed: %s", e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(ValidationError)
    def _validation_error(e):
        details = e.errors(include_url=False, include_context=False, include_input=False)
        return jsonify(error="Invalid request", code="invalid_request", details=details), 400

    @app.errorhandler(SQLAlchemyError)
    def _database_error(e):
        db.session.rollback()
        logger.exception("Database error on %s %s", request.method, request.path)
        failure = DownstreamFailure("Storage is unavailable, try again")
        return jsonify(failure.to_dict()), failure.status_code


#-------------------------
def register_cli(app):
    @app.cli.command("make-admin")
    @click.argument("email")
    def make_admin(email):
        """Promote a user to ADMIN by email (bootstrap)."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            print("User not found")
            return

        admin_role = Role.query.filter_by(name="ADMIN").first()
        if not admin_role:
            admin_role = Role(name="ADMIN")
            db.session.add(admin_role)
            db.session.commit()

        if admin_role not in user.roles:
            user.roles.append(admin_role)
            db.session.commit()

        print(f"{user.email} promoted to ADMIN")

    @app.cli.command("send-reminders")
    @click.option("--hours", default=24, show_default=True, type=int, help="Look-ahead window.")
    def send_reminders(hours):
        """Email a reminder for confirmed bookings starting within the next HOURS."""
        results = build_lifecycle().send_due_reminders(within_hours=hours)
        delivered = sum(1 for r in results if r.delivered)
        print(f"Reminders: {delivered} sent, {len(results) - delivered} failed")


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
