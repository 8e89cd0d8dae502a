from flask import Flask, g, jsonify, request
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect
from werkzeug.exceptions import HTTPException

from app.lgu.config import load_config
from app.lgu.db import init_db, teardown_db_session
from app.lgu.tokens import validate_jwt_secrets
from app.lgu.routes import bp as routes_bp
from app.lgu.auth import bp as auth_bp, load_current_user
from app.lgu.admin import bp as admin_bp
from app.lgu.modules.transactions.admin import bp as admin_transactions_bp
from app.lgu.modules.transactions.user import bp as user_transactions_bp
from app.lgu.modules.settings.admin import bp as settings_bp
from app.lgu.modules.application_services.admin import bp as application_services_bp
from app.lgu.modules.payment_services.admin import bp as payment_services_bp
from app.lgu.modules.submissions.user import bp as user_submissions_bp
from app.lgu.modules.submissions.admin import bp as admin_submissions_bp
from app.lgu.modules.uploads.routes import bp as uploads_bp
from app.lgu.modules.payments.routes import bp as payments_bp

REQUIRED_TABLES = (
    "users",
    "transactions",
    "portal_settings",
    "custom_application_services",
    "custom_payment_services",
    "application_submissions",
)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.json.sort_keys = False

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
    validate_jwt_secrets(app)

    init_db(app)

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            try:
                from app.lgu.storage import S3Storage, storage_from_config

                storage = storage_from_config(app.config)
                if isinstance(storage, S3Storage):
                    storage._client().head_bucket(Bucket=storage.bucket)
                    app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
            except Exception as e:
                app.logger.error("STORAGE CONFIG ERROR: Cannot access S3 bucket: %s", e)

    if not app.config.get("MAILGUN_API_KEY") or not app.config.get("MAILGUN_DOMAIN"):
        app.logger.warning("MAILGUN_API_KEY / MAILGUN_DOMAIN not set; outgoing email is disabled.")

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(admin_transactions_bp, url_prefix="/admin")
    app.register_blueprint(admin_submissions_bp, url_prefix="/admin/applications")
    app.register_blueprint(user_transactions_bp, url_prefix="/user")
    app.register_blueprint(user_submissions_bp, url_prefix="/user/custom-application-form-submissions")
    app.register_blueprint(settings_bp, url_prefix="/settings")
    app.register_blueprint(application_services_bp, url_prefix="/custom-application-services")
    app.register_blueprint(payment_services_bp, url_prefix="/custom-payment-services")
    app.register_blueprint(uploads_bp, url_prefix="/uploads")
    app.register_blueprint(payments_bp, url_prefix="/payments")

    def _load_user_wrapper():
        if request.path.startswith(("/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Schema health (lean): log loudly when migrations have not been applied.
    try:
        insp = sa_inspect(app.extensions["sqlalchemy_engine"])
        missing = [t for t in REQUIRED_TABLES if not insp.has_table(t)]
        if missing:
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))
    except Exception as e:
        app.logger.exception("Schema health check failed: %s", e)

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return jsonify({"error": e.description, "statusCode": e.code}), e.code

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return jsonify({"error": "Internal server error", "statusCode": 500}), 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None) or getattr(g, "missing_role", None)
        if missing:
            app.logger.warning("Forbidden: missing=%s request_id=%s", missing, getattr(g, "request_id", None))
        return jsonify({"error": e.description, "statusCode": 403}), 403

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return jsonify({"error": "File too large. Maximum size is 10MB.", "statusCode": 413}), 413

    # Startup logging
    import logging
    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
