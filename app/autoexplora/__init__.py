import logging
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, render_template, request, session

from app.autoexplora.config import load_config
from app.autoexplora.db import init_db, teardown_db_session
from app.autoexplora.errors import register_error_handlers
from app.autoexplora.routes import bp as routes_bp
from app.autoexplora.auth import bp as auth_bp, load_current_user
from app.autoexplora.admin import api_bp as admin_api_bp, bp as admin_bp
from app.autoexplora.modules.catalog.api import bp as catalog_bp
from app.autoexplora.modules.dealers.api import bp as dealers_bp
from app.autoexplora.modules.vehicles.api import bp as vehicles_bp
from app.autoexplora.modules.crm.api import bp as crm_bp
from app.autoexplora.modules.notifications.api import bp as notifications_bp
from app.autoexplora.modules.microsite.api import bp as microsite_bp
from app.autoexplora.modules.microsite.public import bp as microsite_public_bp
from app.autoexplora.modules.messaging.api import bp as messaging_bp
from app.autoexplora.modules.reports.api import bp as reports_bp
from app.autoexplora.modules.cron.api import bp as cron_bp
from app.autoexplora.tenancy import TenantMiddleware

# Endpoints that authenticate by other means (password form, bearer secret).
CSRF_EXEMPT_PREFIXES = ("auth.", "cron.")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.autoexplora.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.autoexplora.rbac import user_has_permission

        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(g, "current_user", None), key)

        return {"has_perm": has_perm, "current_user": getattr(g, "current_user", None)}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%d-%m-%Y") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.template_filter("clp")
    def _clp_filter(value) -> str:
        if value is None:
            return "-"
        return "$" + f"{int(value):,}".replace(",", ".")

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz", "/media/")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if (request.endpoint or "").startswith(CSRF_EXEMPT_PREFIXES):
                return None
            if not validate_csrf(request):
                if request.path.startswith("/api/"):
                    return {"error": "Token CSRF inválido o ausente"}, 400
                return render_template("errors/400.html", message="Token CSRF inválido o ausente."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if not app.config.get("CRON_SECRET"):
            app.logger.warning("CRON_SECRET is empty; /api/cron/* endpoints are unauthenticated.")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os

        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            try:
                from app.autoexplora.storage import S3Storage, storage_from_config

                storage = storage_from_config(app.config)
                if isinstance(storage, S3Storage):
                    storage._client().head_bucket(Bucket=storage.bucket)
                    app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
            except Exception as e:
                app.logger.error("STORAGE CONFIG ERROR: Cannot access S3 bucket: %s", e)

    register_error_handlers(app)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(admin_api_bp, url_prefix="/api/admin")
    for module_bp in (
        catalog_bp,
        dealers_bp,
        vehicles_bp,
        crm_bp,
        notifications_bp,
        microsite_bp,
        messaging_bp,
        reports_bp,
        cron_bp,
    ):
        app.register_blueprint(module_bp, url_prefix="/api")
    app.register_blueprint(microsite_public_bp, url_prefix="/microsite/<key>")

    def _load_user_wrapper():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Dealer subdomains and custom domains are rewritten onto /microsite/<key>/...
    app.wsgi_app = TenantMiddleware(  # type: ignore[method-assign]
        app.wsgi_app,
        root_domain=app.config["ROOT_DOMAIN"],
        main_domains=app.config["MAIN_DOMAINS"],
    )

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
