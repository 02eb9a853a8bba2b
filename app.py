from dotenv import load_dotenv
load_dotenv()

from flask import Flask, request, jsonify
from flask_cors import CORS
from sqlalchemy import text
from datetime import datetime
import logging
import os
import time
from werkzeug.middleware.proxy_fix import ProxyFix

# Use Flask-SQLAlchemy's default declarative base.
from extensions import db, limiter
from errors import register_error_handlers

app = Flask(__name__)
app.logger.setLevel(getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))

IS_PRODUCTION = os.getenv("FLASK_ENV") == "production" or bool(os.getenv("RENDER"))

# -------------------------------
# Client IP resolution
# -------------------------------
# Render (and most PaaS) runs behind a reverse proxy. Without ProxyFix,
# request.remote_addr will often be the proxy IP, collapsing many users into one
# rate-limit bucket. We enable ProxyFix only in production/Render contexts.
if IS_PRODUCTION:
    # Trust a single proxy hop (Render's edge proxy)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

_db_url = os.getenv("DATABASE_URL")
if not _db_url:
    if os.getenv("RENDER") == "true":
        raise RuntimeError("DATABASE_URL missing on Render; refusing to use SQLite.")
    _db_url = "sqlite:///rewards.db"

if _db_url.startswith("postgres://"):
    _db_url = _db_url.replace("postgres://", "postgresql://", 1)

app.config["SQLALCHEMY_DATABASE_URI"] = _db_url
if not _db_url.startswith("sqlite"):
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
        "pool_recycle": 300,
        "pool_pre_ping": True,
    }

# Initialize extensions
db.init_app(app)

if IS_PRODUCTION and os.getenv("FRONTEND_URL"):
    CORS(app, origins=[os.getenv("FRONTEND_URL")])
else:
    CORS(app)

# Rate limiting (RATELIMIT_ENABLED=0 turns it off, e.g. for tests)
app.config["RATELIMIT_ENABLED"] = os.getenv("RATELIMIT_ENABLED", "1").lower() not in ("0", "false", "no")
limiter.init_app(app)

register_error_handlers(app)


@app.after_request
def add_api_headers(resp):
    path = request.path or ""
    if path.startswith("/api"):
        resp.headers["X-Robots-Tag"] = "noindex, nofollow"
        resp.headers["X-Content-Type-Options"] = "nosniff"
    return resp

# ==================== HEALTH CHECK ====================

@app.route('/api/health', methods=['GET'])
def health_check():
    try:
        # SQLAlchemy 2.x requires raw SQL to be wrapped in text().
        db.session.execute(text('SELECT 1'))
        return jsonify({
            'success': True,
            'status': 'healthy',
            'timestamp': datetime.utcnow().isoformat(),
            'database': 'connected',
            'version': '1.0.0'
        })
    except Exception as e:
        db.session.rollback()
        app.logger.warning("Health check failed: %s", e)
        return jsonify({
            'success': False,
            'status': 'unhealthy',
            'error': str(e),
            'timestamp': datetime.utcnow().isoformat()
        }), 500


# ==================== MODELS + BLUEPRINTS (SPLIT MODULES) ====================
from models_users import User, Transaction, Notification, ReferralRecord  # noqa: F401
from models_offers import Offer, UserOffer  # noqa: F401
from models_clicks import Click  # noqa: F401
from models_withdrawals import Withdrawal  # noqa: F401
from models_push import PushSubscription  # noqa: F401
from models_problems import Problem  # noqa: F401

from clicks import clicks_api
from offers import offers_api
from users import users_api
from problems import problems_api
from withdrawals import withdrawals_api
from referrals import referrals_api
from checkins import checkins_api
from admin_withdrawals import admin_withdrawals
from push_api import push_api
from fanout import configure_backplane, events_api

app.register_blueprint(clicks_api)
app.register_blueprint(offers_api)
app.register_blueprint(users_api)
app.register_blueprint(problems_api)
app.register_blueprint(withdrawals_api)
app.register_blueprint(referrals_api)
app.register_blueprint(checkins_api)
app.register_blueprint(admin_withdrawals)
app.register_blueprint(push_api)
app.register_blueprint(events_api)


def _wait_for_database():
    """Retry the first connection; a cold Postgres on Render can take a while."""
    attempts = max(1, int(os.getenv("DB_CONNECT_RETRIES", "5")))
    backoff = float(os.getenv("DB_CONNECT_BACKOFF_SECONDS", "5"))
    for attempt in range(1, attempts + 1):
        try:
            db.session.execute(text("SELECT 1"))
            db.session.rollback()
            return
        except Exception as e:
            db.session.rollback()
            app.logger.error("Database connection attempt %s/%s failed: %s", attempt, attempts, e)
            if attempt < attempts:
                time.sleep(backoff)
    app.logger.critical("Database unavailable after %s attempts; exiting", attempts)
    raise SystemExit(1)


# Create tables
with app.app_context():
    _wait_for_database()
    db.create_all()

if os.getenv("REDIS_URL"):
    configure_backplane(os.getenv("REDIS_URL"), app.logger)

if __name__ == '__main__':
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    app.logger.info("Rewards backend listening on http://localhost:%s", port)
    app.logger.info("Database: %s", app.config["SQLALCHEMY_DATABASE_URI"].split("@")[-1])
    app.logger.info("Coin exchange rate: %s", os.getenv("COIN_EXCHANGE_RATE", "0.1"))
    app.run(debug=debug, port=port, threaded=True)
