import json
import os
from datetime import datetime
from pathlib import Path

import click
from flask import Flask, jsonify, request, g
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from orderflow.extensions import db, migrate, cors
from orderflow.models import Vendor
from orderflow.segments.segment_orders_api import orders_bp
from orderflow.segments.segment_dev_orders import dev_orders_bp
from orderflow.segments.segment_earnings import earnings_bp
from orderflow.services.errors import OrderError
from orderflow.utils.jwt_utils import create_vendor_token, vendor_id_from_header
from orderflow.utils.observability import init_sentry, install_request_observers


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


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except Exception:
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
    return raw in ("1", "true", "yes", "on")


def _with_trace_id(payload: dict) -> dict:
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("ORDERFLOW_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["ORDERFLOW_ENV"] = env
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    # Lifecycle settings
    app.config["OTP_TTL_SECONDS"] = _env_int("OTP_TTL_SECONDS", 300, minimum=1, maximum=3600)
    app.config["OTP_MAX_ATTEMPTS"] = _env_int("OTP_MAX_ATTEMPTS", 5, minimum=1, maximum=20)
    app.config["OTP_CODE_LENGTH"] = _env_int("OTP_CODE_LENGTH", 6, minimum=4, maximum=10)
    app.config["VENDOR_SEARCH_RADIUS_M"] = _env_int("VENDOR_SEARCH_RADIUS_M", 10000, minimum=100, maximum=200000)
    app.config["VENDOR_PRESENCE_FRESH_SECONDS"] = _env_int("VENDOR_PRESENCE_FRESH_SECONDS", 300, minimum=10, maximum=86400)
    app.config["NOTIFY_PROVIDER"] = (os.getenv("NOTIFY_PROVIDER") or "mock").strip().lower()
    app.config["NOTIFY_QUEUE"] = _env_bool("NOTIFY_QUEUE", False)
    app.config["ENABLE_MOCK_ORDERS"] = _env_bool("ENABLE_MOCK_ORDERS", env not in ("prod", "production"))
    app.config["MOCK_ORDERS_SECRET"] = (os.getenv("MOCK_ORDERS_SECRET") or "").strip()

    # Background jobs
    broker = (os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL") or "redis://localhost:6379/0").strip()
    app.config["CELERY_BROKER_URL"] = broker
    app.config["CELERY_RESULT_BACKEND"] = (os.getenv("CELERY_RESULT_BACKEND") or broker).strip()
    app.config["OTP_SWEEP_INTERVAL_SECONDS"] = _env_int("OTP_SWEEP_INTERVAL_SECONDS", 900, minimum=60, maximum=86400)
    app.config["OTP_SWEEP_GRACE_SECONDS"] = _env_int("OTP_SWEEP_GRACE_SECONDS", 3600, minimum=0, maximum=7 * 86400)

    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))

    # Database config
    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        if env in ("prod", "production"):
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
        os.makedirs(instance_dir, exist_ok=True)
        database_url = f"sqlite:///{os.path.join(instance_dir, 'orderflow.db').replace(os.sep, '/')}"
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

    # CORS configuration
    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    @app.errorhandler(OrderError)
    def _api_order_error(error: OrderError):
        payload = _with_trace_id(error.to_dict())
        log = app.logger.warning if int(error.status_code) >= 500 else app.logger.info
        log(
            json.dumps(
                {
                    "event": "order_request_rejected",
                    "path": request.path,
                    "error": error.code,
                    "status": int(error.status_code),
                    "vendor_id": getattr(g, "auth_vendor_id", None),
                    "trace_id": payload.get("trace_id"),
                }
            )
        )
        return jsonify(payload), int(error.status_code)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable client handling.
        if not request.path.startswith("/api/"):
            return error
        payload = {
            "ok": False,
            "error": error.name,
            "message": error.description or error.name,
            "status": int(error.code or 500),
        }
        return jsonify(_with_trace_id(payload)), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        try:
            db.session.rollback()
        except Exception:
            pass
        payload = {
            "ok": False,
            "error": "InternalServerError",
            "message": "Internal server error",
            "status": 500,
        }
        return jsonify(_with_trace_id(payload)), 500

    app.register_blueprint(orders_bp)
    app.register_blueprint(dev_orders_bp)
    app.register_blueprint(earnings_bp)

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
            "service": "orderflow-backend",
            "env": env,
            "db": db_state,
            "alembic_head": _resolve_alembic_head(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.before_request
    def _capture_auth_context():
        g.auth_vendor_id = None
        vendor_id = vendor_id_from_header(request.headers.get("Authorization", ""))
        if vendor_id is None:
            return
        g.auth_vendor_id = vendor_id
        try:
            import sentry_sdk

            sentry_sdk.set_user({"id": str(vendor_id)})
        except Exception:
            pass

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("create-vendor")
    @click.option("--name", "name", required=True, help="Vendor display name")
    @click.option("--phone", "phone", required=False, help="Unique phone number")
    @click.option("--token-ttl", "token_ttl", default=60 * 60 * 24 * 7, show_default=True, help="Access token lifetime in seconds")
    def create_vendor(name: str, phone: str | None, token_ttl: int):
        if env in ("prod", "production") and not _env_bool("ALLOW_VENDOR_BOOTSTRAP", False):
            raise click.ClickException("Vendor bootstrap disabled. Set ALLOW_VENDOR_BOOTSTRAP=1.")
        vendor = Vendor(name=name.strip(), phone=(phone or "").strip() or None, is_active=True)
        try:
            db.session.add(vendor)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            if "unique" in str(e).lower():
                raise click.ClickException("Phone already in use.")
            raise click.ClickException("Failed to create vendor.")
        click.echo(f"vendor_created id={vendor.id}")
        click.echo(create_vendor_token(int(vendor.id), ttl_seconds=int(token_ttl)))

    @app.cli.command("sweep-otp")
    @click.option("--grace-seconds", "grace_seconds", default=3600, show_default=True)
    def sweep_otp(grace_seconds: int):
        from orderflow.services.otp_service import sweep_expired_challenges

        cleared = sweep_expired_challenges(grace_seconds=int(grace_seconds))
        click.echo(f"otp_sweep_ok cleared={cleared}")

    @app.cli.command("set-presence")
    @click.argument("vendor_id", type=int)
    @click.option("--online/--offline", "online", default=True)
    @click.option("--lat", "lat", type=float, required=False)
    @click.option("--lng", "lng", type=float, required=False)
    def set_presence(vendor_id: int, online: bool, lat: float | None, lng: float | None):
        """Seed vendor presence for local runs of the presence locator."""
        if (lat is None) != (lng is None):
            raise click.ClickException("lat and lng must be provided together")
        vendor = db.session.get(Vendor, int(vendor_id))
        if vendor is None:
            raise click.ClickException("Vendor not found.")
        vendor.online = bool(online)
        if lat is not None:
            vendor.last_lat = float(lat)
            vendor.last_lng = float(lng)
        vendor.last_seen_at = datetime.utcnow()
        db.session.add(vendor)
        db.session.commit()
        click.echo(f"presence_updated id={vendor.id} online={int(bool(vendor.online))}")

    return app
