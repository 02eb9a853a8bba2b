"""Shared fixtures: in-memory SQLite, rate limiting off, fresh schema per test."""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATELIMIT_ENABLED"] = "0"
os.environ["DB_CONNECT_RETRIES"] = "1"
os.environ["FLASK_ENV"] = "development"
os.environ["COIN_EXCHANGE_RATE"] = "0.1"
for _key in ("REDIS_URL", "ADMIN_API_KEY", "VAPID_PUBLIC_KEY", "VAPID_PRIVATE_KEY", "RENDER",
             "CLOUDINARY_CLOUD_NAME", "CLOUDINARY_API_KEY", "CLOUDINARY_API_SECRET"):
    os.environ.pop(_key, None)

import pytest

from app import app as flask_app
from extensions import db
from ledger import post_entry
from models_offers import Offer
from models_users import TX_KIND_EARN, User


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True)
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make(uid=None, name="Test User", coins=0, payment_method=None, referral_code=None):
        counter["n"] += 1
        n = counter["n"]
        uid = uid or f"uid-{n}"
        user = User(
            uid=uid,
            email=f"{uid}@example.com",
            name=name,
            coins=0,
            payment_method=payment_method,
            referral_code=referral_code or f"REF{n:04d}",
            referral_count=0,
        )
        db.session.add(user)
        db.session.commit()
        if coins:
            # Fund through the ledger so balance == sum(transactions).
            post_entry(uid, coins, TX_KIND_EARN, "Seed balance")
            db.session.commit()
            db.session.expire_all()
        return user

    return _make


@pytest.fixture
def make_offer(app):
    def _make(coins=100, title="Install Demo App", type_="install", is_active=True,
              tracking_url="https://track.example.com/c?pcid={click_id}"):
        offer = Offer(
            title=title,
            description="Install and open the app",
            coins=coins,
            type=type_,
            requirements="Open the app once",
            tracking_url=tracking_url,
            is_active=is_active,
        )
        db.session.add(offer)
        db.session.commit()
        return offer

    return _make


@pytest.fixture
def upi():
    return {"type": "upi", "upiId": "tester@okbank"}
