import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from app.bizops.config import load_config
from app.bizops.db import init_db, teardown_db_session
from app.bizops.errors import ApiError
from app.bizops.jsonutil import ApiJSONProvider
from app.bizops.routes import bp as routes_bp
from app.bizops.auth import bp as auth_bp, load_current_user
from app.bizops.admin import bp as admin_bp
from app.bizops.modules.settings.admin import bp as settings_bp
from app.bizops.modules.notifications.admin import bp as notifications_bp
from app.bizops.modules.crm.admin import bp as crm_bp
from app.bizops.modules.catalog.admin import bp as catalog_bp
from app.bizops.modules.quotations.admin import bp as quotations_bp
from app.bizops.modules.invoicing.admin import bp as invoicing_bp
from app.bizops.modules.orders.admin import bp as orders_bp
from app.bizops.modules.ecommerce.admin import bp as ecommerce_bp
from app.bizops.modules.ecommerce.storefront import bp as storefront_bp
from app.bizops.modules.returns.admin import bp as returns_bp
from app.bizops.modules.projects.admin import bp as projects_bp
from app.bizops.modules.reminders.cron import bp as cron_bp

logger = logging.getLogger(__name__)


def _check_production_guardrails(app: Flask) -> None:
    env = (app.config.get("ENV") or "").strip().lower()
    if env not in ("prod", "production"):
        return
    if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
        raise RuntimeError("DATABASE_URL is required in production.")
    if str(app.config["DATABASE_URL"]).startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
    if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
    if not app.config.get("CRON_SECRET"):
        raise RuntimeError("CRON_SECRET must be set in production.")


def create_app(config_overrides: dict | None = None) -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.json_provider_class = ApiJSONProvider
    app.json = ApiJSONProvider(app)
    app.config.from_mapping(load_config())
    if config_overrides:
        app.config.update(config_overrides)
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    _check_production_guardrails(app)

    from app.bizops.security import csrf_exempt, ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        if not app.config.get("CSRF_ENABLED", True):
            return None
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if csrf_exempt(request.endpoint):
                return None
            if not validate_csrf(request):
                return jsonify({"error": "CSRF token missing or invalid."}), 400
        else:
            ensure_csrf_token()
        return None

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/api/admin")
    app.register_blueprint(settings_bp, url_prefix="/api/settings")
    app.register_blueprint(notifications_bp, url_prefix="/api/notifications")
    app.register_blueprint(crm_bp, url_prefix="/api/crm")
    app.register_blueprint(catalog_bp, url_prefix="/api/catalog")
    app.register_blueprint(quotations_bp, url_prefix="/api/quotations")
    app.register_blueprint(invoicing_bp, url_prefix="/api")
    app.register_blueprint(orders_bp, url_prefix="/api/orders")
    app.register_blueprint(ecommerce_bp, url_prefix="/api/ecommerce")
    app.register_blueprint(storefront_bp, url_prefix="/api/public/<org_slug>/shop")
    app.register_blueprint(returns_bp, url_prefix="/api/returns")
    app.register_blueprint(projects_bp, url_prefix="/api")
    app.register_blueprint(cron_bp, url_prefix="/api/cron")

    # Runs before the CSRF guard so every request (even rejected ones) carries a request id.
    app.before_request_funcs.setdefault(None, []).insert(0, load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.after_request
    def _request_id_header(resp):
        rid = getattr(g, "request_id", None)
        if rid:
            resp.headers["X-Request-ID"] = rid
        return resp

    @app.errorhandler(ApiError)
    def _api_error(e: ApiError):
        if e.status_code == 403:
            app.logger.warning(
                "Forbidden: missing_permission=%s request_id=%s",
                getattr(g, "missing_permission", None),
                getattr(g, "request_id", None),
            )
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        return jsonify({"error": e.description or e.name}), e.code or 500

    @app.errorhandler(Exception)
    def _err_500(e: Exception):
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "Internal server error", "request_id": getattr(g, "request_id", None)}), 500

    logger.info("create_app() complete; app ready to serve")
    return app
