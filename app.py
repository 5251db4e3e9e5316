import os
import enum
from datetime import timedelta
from flask import Flask
from dotenv import load_dotenv
from flask_jwt_extended import JWTManager
from flask.json.provider import DefaultJSONProvider
import stripe
from extensions import db, migrate, limiter, csrf
from auth.utils import init_jwt_manager
from common import api_common_bp
# importing a blueprint from its views module binds the routes onto it
from calls.routes import calls_bp
from calls.webhooks import voice_webhooks_bp
from billing.routes import billing_bp
from billing.webhooks import billing_webhooks_bp
from usage.routes import usage_bp

load_dotenv()

class EnumJSONProvider(DefaultJSONProvider):
    def default(self, o):
        if isinstance(o, enum.Enum):
            return o.value
        return super().default(o)

def create_app(config_overrides=None):
    app = Flask(__name__, instance_relative_config=True)

    app.config.from_mapping(
        SECRET_KEY=os.getenv('SECRET_KEY', 'dev'),
        JWT_SECRET_KEY=os.getenv('JWT_SECRET_KEY', os.getenv('SECRET_KEY', 'dev')),
        SQLALCHEMY_DATABASE_URI=os.getenv(
            'DATABASE_URL', f"sqlite:///{os.path.join(app.instance_path, 'app.db')}"
        ),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,

        JWT_ACCESS_TOKEN_EXPIRES = timedelta(days=1),
        JWT_REFRESH_TOKEN_EXPIRES = timedelta(days=7),

        STRIPE_SECRET_KEY=os.getenv('STRIPE_SECRET_KEY'),
        STRIPE_WEBHOOK_SECRET=os.getenv('STRIPE_WEBHOOK_SECRET'),
        STRIPE_PRICE_ID=os.getenv('STRIPE_PRICE_ID'),
        APP_BASE_URL=os.getenv('APP_BASE_URL'),

        VAPI_PRIVATE_KEY=os.getenv('VAPI_PRIVATE_KEY'),
        VAPI_BASE_URL=os.getenv('VAPI_BASE_URL', 'https://api.vapi.ai'),
        VAPI_TIMEOUT_SECONDS=float(os.getenv('VAPI_TIMEOUT_SECONDS', 30)),
        VAPI_WEBHOOK_SECRET=os.getenv('VAPI_WEBHOOK_SECRET'),

        RATELIMIT_HEADERS_ENABLED=True,
    )
    # ───────── JWT SETTINGS ─────────
    app.config.update({
        "JWT_TOKEN_LOCATION": ["headers", "cookies"],  # API clients send Bearer; the dashboard uses cookies
        "JWT_COOKIE_SECURE": True,
        "JWT_COOKIE_SAMESITE": "Lax",
        "JWT_COOKIE_CSRF_PROTECT": True,
        "JWT_ACCESS_COOKIE_PATH": "/",
        "WTF_CSRF_TIME_LIMIT": 3600,
        "WTF_CSRF_METHODS": ['POST', 'PUT', 'PATCH', 'DELETE'],
        "WTF_CSRF_HEADERS": ["X-CSRFToken", "X-CSRF-Token"],
    })

    app.config.setdefault('CELERY_BROKER_URL', os.getenv('CELERY_BROKER_URL', 'redis://127.0.0.1:6379/0'))
    app.config.setdefault('CELERY_RESULT_BACKEND', os.getenv('CELERY_RESULT_BACKEND', 'redis://127.0.0.1:6379/1'))
    app.config.setdefault('CELERY_TIMEZONE', os.getenv('CELERY_TIMEZONE', 'UTC'))

    if config_overrides:
        app.config.update(config_overrides)

    if app.config.get("STRIPE_SECRET_KEY"):
        stripe.api_key = app.config["STRIPE_SECRET_KEY"]

    csrf.init_app(app)
    limiter.init_app(app)

    os.makedirs(app.instance_path, exist_ok=True)
    jwt = JWTManager(app)

    db.init_app(app)
    migrate.init_app(app, db)

    app.json_provider_class = EnumJSONProvider
    app.json = app.json_provider_class(app)

    app.register_blueprint(api_common_bp)
    app.register_blueprint(calls_bp)
    app.register_blueprint(voice_webhooks_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(billing_webhooks_bp)
    app.register_blueprint(usage_bp)

    init_jwt_manager(app, jwt)

    @app.after_request
    def set_security_headers(resp):
        resp.headers['X-Frame-Options'] = 'DENY'
        resp.headers['X-Content-Type-Options'] = 'nosniff'
        resp.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        return resp

    return app


if __name__ == '__main__':
    app = create_app()
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', 5000)), debug=True)
