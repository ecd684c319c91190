import os
from datetime import timedelta
from flask import Flask, jsonify
from dotenv import load_dotenv
from extensions import db, migrate, limiter, csrf, jwt
from admin.api import admin_api_bp
from billing import billing_bp, billing_webhooks_bp, init_billing

load_dotenv()

def _engine_options(uri: str) -> dict:
    # sqlite's pool ignores sizing; everything else gets a small bounded pool
    if uri.startswith("sqlite"):
        return {}
    return {
        "pool_size": int(os.getenv("DB_POOL_SIZE", 1)),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", 0)),
        "pool_pre_ping": True,
    }

def init_jwt_callbacks(jwt):
    @jwt.unauthorized_loader
    def missing_token_callback(reason):
        return jsonify({"ok": False, "error": {"code": "unauthorized", "message": reason}}), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(reason):
        return jsonify({"ok": False, "error": {"code": "unauthorized", "message": "Invalid token"}}), 401

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return jsonify({"ok": False, "error": {"code": "unauthorized", "message": "Token has expired"}}), 401

def create_app(test_config=None, *, gateway=None, discord=None):
    app = Flask(__name__, instance_relative_config=True)

    app_base_url = os.getenv("APP_BASE_URL", "http://localhost:5000")
    app.config.from_mapping(
        SECRET_KEY=os.getenv('SECRET_KEY', 'dev'),
        JWT_SECRET_KEY=os.getenv('JWT_SECRET_KEY', os.getenv('SECRET_KEY', 'dev')),
        SQLALCHEMY_DATABASE_URI=os.getenv(
            'DATABASE_URL', f"sqlite:///{os.path.join(app.instance_path, 'app.db')}"
        ),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(days=1),

        STRIPE_SECRET_KEY=os.getenv("STRIPE_SECRET_KEY"),
        STRIPE_WEBHOOK_SECRET=os.getenv("STRIPE_WEBHOOK_SECRET"),
        STRIPE_REQUIRED_PRICE_ID=os.getenv("STRIPE_REQUIRED_PRICE_ID") or None,
        STRIPE_MAX_NETWORK_RETRIES=int(os.getenv("STRIPE_MAX_NETWORK_RETRIES", 2)),
        BILLING_RETRY_DELAY_SECONDS=float(os.getenv("BILLING_RETRY_DELAY_SECONDS", 1.0)),
        BILLING_PORTAL_RETURN_URL=os.getenv("BILLING_PORTAL_RETURN_URL", f"{app_base_url}/dashboard"),
        BILLING_PORTAL_LOCALE=os.getenv("BILLING_PORTAL_LOCALE", "auto"),

        DISCORD_BOT_TOKEN=os.getenv("DISCORD_BOT_TOKEN"),
        DISCORD_GUILD_ID=os.getenv("DISCORD_GUILD_ID"),
        DISCORD_MEMBER_ROLE_ID=os.getenv("DISCORD_MEMBER_ROLE_ID"),
        DISCORD_OPS_CHANNEL_ID=os.getenv("DISCORD_OPS_CHANNEL_ID"),

        METRICS_RATE_LIMIT=os.getenv("METRICS_RATE_LIMIT", "30 per minute"),
        RATELIMIT_HEADERS_ENABLED=True,
    )
    # ───────── JWT / CSRF ─────────
    app.config.update({
        "JWT_TOKEN_LOCATION": ["cookies", "headers"],  # browser cookies, bearer for API clients
        "JWT_COOKIE_SECURE": True,
        "JWT_COOKIE_SAMESITE": "Lax",
        "JWT_COOKIE_CSRF_PROTECT": True,
        "JWT_ACCESS_COOKIE_PATH": "/",
        "WTF_CSRF_TIME_LIMIT": 3600,
        "WTF_CSRF_METHODS": ['POST', 'PUT', 'PATCH', 'DELETE'],
        "WTF_CSRF_HEADERS": ["X-CSRFToken", "X-CSRF-Token"],
    })

    if test_config:
        app.config.update(test_config)
    app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", _engine_options(app.config["SQLALCHEMY_DATABASE_URI"]))

    os.makedirs(app.instance_path, exist_ok=True)

    csrf.init_app(app)
    limiter.init_app(app)
    jwt.init_app(app)
    db.init_app(app)
    migrate.init_app(app, db)

    init_jwt_callbacks(jwt)

    # signature-verified; provider retries in bursts
    csrf.exempt(billing_webhooks_bp)
    limiter.exempt(billing_webhooks_bp)

    app.register_blueprint(admin_api_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(billing_webhooks_bp)

    init_billing(app, gateway=gateway, discord=discord)

    from billing import models  # noqa: F401  register tables with migrate

    @app.after_request
    def set_security_headers(resp):
        resp.headers['X-Content-Type-Options'] = 'nosniff'
        resp.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        return resp

    return app


if __name__ == '__main__':
    app = create_app()
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', 5000)), debug=True)
