import os
import subprocess
from pathlib import Path

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from rebooked.extensions import cors, db, migrate
from rebooked.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError, ProviderRequestError
from rebooked.integrations.payments.factory import payment_health
from rebooked.models import User
from rebooked.segments.segment_orders_api import orders_bp, refunds_bp
from rebooked.segments.segment_payment_webhooks import webhooks_bp
from rebooked.segments.segment_reconciliation_admin import recon_bp
from rebooked.services.errors import GENERIC_FAILURE_MESSAGE, OrderFlowError
from rebooked.services.refund_router import default_refund_eligibility
from rebooked.services.settings_service import load_setting
from rebooked.utils.cache_layer import SettingsCache
from rebooked.utils.jwt_utils import decode_token, get_bearer_token
from rebooked.utils.observability import init_otel, init_sentry, install_request_observers, report_exception


def _resolve_alembic_head() -> str:
    try:
        from alembic.config import Config
        from alembic.script import ScriptDirectory

        migrations_dir = Path(__file__).resolve().parents[1] / "migrations"
        cfg = Config(str(migrations_dir / "alembic.ini"))
        cfg.set_main_option("script_location", str(migrations_dir))
        script = ScriptDirectory.from_config(cfg)
        heads = script.get_heads()
        return heads[0] if heads else "unknown"
    except Exception:
        return "unknown"


def _resolve_git_sha() -> str:
    for env_key in ("GIT_SHA", "SOURCE_VERSION"):
        val = (os.getenv(env_key) or "").strip()
        if val:
            return val
    try:
        repo_root = Path(__file__).resolve().parents[1]
        out = subprocess.check_output(
            ["git", "rev-parse", "HEAD"],
            cwd=str(repo_root),
            stderr=subprocess.DEVNULL,
        )
        return out.decode().strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except ValueError:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "y", "on")


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _load_engine_config(app: Flask) -> None:
    """Copy provider and engine settings from the environment into app.config."""
    paystack_secret = _env_str("PAYSTACK_SECRET_KEY")
    app.config.update(
        BOBPAY_API_URL=_env_str("BOBPAY_API_URL"),
        BOBPAY_API_TOKEN=_env_str("BOBPAY_API_TOKEN"),
        BOBPAY_ACCOUNT_CODE=_env_str("BOBPAY_ACCOUNT_CODE"),
        BOBPAY_PASSPHRASE=_env_str("BOBPAY_PASSPHRASE"),
        BOBPAY_VALIDATE_WEBHOOKS=_env_bool("BOBPAY_VALIDATE_WEBHOOKS", False),
        PAYSTACK_SECRET_KEY=paystack_secret,
        PAYSTACK_WEBHOOK_SECRET=_env_str("PAYSTACK_WEBHOOK_SECRET") or paystack_secret,
        PAYSTACK_CALLBACK_URL=_env_str("PAYSTACK_CALLBACK_URL"),
        BOBGO_API_URL=_env_str("BOBGO_API_URL"),
        BOBGO_API_KEY=_env_str("BOBGO_API_KEY"),
        BOBGO_WEBHOOK_SECRET=_env_str("BOBGO_WEBHOOK_SECRET"),
        COURIER_TRUST_UNSIGNED_WEBHOOKS=_env_bool("COURIER_TRUST_UNSIGNED_WEBHOOKS", True),
        PAYMENTS_MODE=(_env_str("PAYMENTS_MODE", "live") or "live").lower(),
        DEFAULT_PAYMENT_PROVIDER=(_env_str("DEFAULT_PAYMENT_PROVIDER", "bobpay") or "bobpay").lower(),
        COMMIT_WINDOW_HOURS=_env_int("COMMIT_WINDOW_HOURS", 48, minimum=1, maximum=720),
        PLATFORM_COMMISSION_BPS=_env_int("PLATFORM_COMMISSION_BPS", 1000, minimum=0, maximum=10000),
        COMMIT_DEADLINE_SWEEP_INTERVAL_SECONDS=_env_int("COMMIT_DEADLINE_SWEEP_INTERVAL_SECONDS", 300, minimum=30),
        COMMIT_DEADLINE_SWEEP_LIMIT=_env_int("COMMIT_DEADLINE_SWEEP_LIMIT", 200, minimum=1, maximum=5000),
        IDEMPOTENCY_STALE_SECONDS=_env_int("IDEMPOTENCY_STALE_SECONDS", 600, minimum=5),
        PUBLIC_BASE_URL=_env_str("PUBLIC_BASE_URL", "http://localhost:5000"),
    )


def _error_payload(code: str, message: str, status: int) -> dict:
    payload = {"ok": False, "error": code, "message": message, "status": int(status)}
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("REBOOKED_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["REBOOKED_ENV"] = env

    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{os.path.join(instance_dir, 'rebooked.db').replace(os.sep, '/')}"
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {
        "pool_pre_ping": True,
        "pool_reset_on_return": "rollback",
        "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s pool_recycle=%s",
            int(engine_options.get("pool_size", 0) or 0),
            int(engine_options.get("max_overflow", 0) or 0),
            int(engine_options.get("pool_timeout", 0) or 0),
            int(engine_options.get("pool_recycle", 0) or 0),
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options
    _load_engine_config(app)

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db, directory=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "migrations")))
    install_request_observers(app)
    app.extensions["settings_cache"] = SettingsCache.from_env(load_setting)
    app.extensions["refund_eligibility"] = default_refund_eligibility
    with app.app_context():
        init_otel(app, enabled=(os.getenv("OTEL_ENABLED") or "").strip() == "1")

    @app.errorhandler(OrderFlowError)
    def _order_flow_error(error: OrderFlowError):
        body, status = error.to_response()
        app.logger.info("order_flow_rejected code=%s order_id=%s detail=%s", error.code, error.order_id, error)
        payload = _error_payload(body["error"], body["message"], status)
        return jsonify(payload), status

    @app.errorhandler(IntegrationDisabledError)
    def _integration_disabled(error: IntegrationDisabledError):
        app.logger.warning("integration_disabled path=%s err=%s", request.path, error)
        return jsonify(_error_payload("INTEGRATION_DISABLED", GENERIC_FAILURE_MESSAGE, 503)), 503

    @app.errorhandler(IntegrationMisconfiguredError)
    def _integration_misconfigured(error: IntegrationMisconfiguredError):
        app.logger.error("integration_misconfigured path=%s err=%s", request.path, error)
        return jsonify(_error_payload("INTEGRATION_MISCONFIGURED", GENERIC_FAILURE_MESSAGE, 503)), 503

    @app.errorhandler(ProviderRequestError)
    def _provider_request_failed(error: ProviderRequestError):
        app.logger.warning("provider_request_failed path=%s provider=%s err=%s", request.path, error.provider, error)
        return jsonify(_error_payload("PROVIDER_UNAVAILABLE", GENERIC_FAILURE_MESSAGE, 503)), 503

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        if not request.path.startswith("/api/"):
            return error
        status = int(error.code or 500)
        return jsonify(_error_payload(error.name, error.description or error.name, status)), status

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        report_exception(error, path=request.path)
        return jsonify(_error_payload("InternalServerError", "Internal server error", 500)), 500

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(refunds_bp)
    app.register_blueprint(recon_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": True,
            "service": "rebooked-orders",
            "env": env,
            "db": db_state,
            "payments": payment_health(app.config),
            "settings_cache": app.extensions["settings_cache"].backend,
            "git_sha": _resolve_git_sha(),
            "alembic_head": _resolve_alembic_head(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.before_request
    def _capture_auth_context():
        g.auth_user_id = None
        g.auth_role = None
        token = get_bearer_token(request.headers.get("Authorization", ""))
        if not token:
            return
        payload = decode_token(token)
        if not payload:
            return
        try:
            uid = int(payload.get("sub"))
        except (TypeError, ValueError):
            return
        g.auth_user_id = uid
        user = db.session.get(User, uid)
        if user:
            g.auth_role = (user.role or "buyer").strip().lower()

    @app.before_request
    def _reset_db_session():
        db.session.rollback()

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("sweep-commit-deadlines")
    @click.option("--limit", "limit", type=int, default=None, help="Max orders to expire in this run")
    def sweep_commit_deadlines(limit: int | None):
        from rebooked.jobs.commit_deadline_runner import run_commit_deadline_sweep

        result = run_commit_deadline_sweep(limit=int(limit or app.config["COMMIT_DEADLINE_SWEEP_LIMIT"]))
        click.echo(
            f"commit_deadline_sweep processed={result['processed']} expired={result.get('expired', 0)} "
            f"failed={result.get('failed', 0)} errors={result['errors']}"
        )

    return app
