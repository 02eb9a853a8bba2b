import os
import json
import secrets
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from pywebpush import webpush, WebPushException

from errors import InvalidInputError
from extensions import db
from ledger import get_user
from models_push import PushSubscription

push_api = Blueprint("push_api", __name__)

# Deliveries run off the request thread; a slow push service must never hold up settlement.
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="webpush")

# -------------------------------
# Helpers
# -------------------------------

def _admin_ok(req) -> bool:
    """Admin gate shared by admin endpoints.

    Prefer header auth; do NOT accept query params. Without ADMIN_API_KEY the
    gate is closed, except under an explicit FLASK_ENV=development off Render.
    """
    expected = os.getenv("ADMIN_API_KEY", "")
    if not expected:
        return os.getenv("FLASK_ENV") == "development" and not os.getenv("RENDER")
    key = req.headers.get("X-Admin-Key", "")
    return secrets.compare_digest(key, expected)

def _get_vapid_public_key() -> str:
    return os.getenv("VAPID_PUBLIC_KEY", "").strip()

def _get_vapid_private_key() -> str:
    return os.getenv("VAPID_PRIVATE_KEY", "").strip()

def _get_vapid_subject() -> str:
    # e.g. "mailto:you@example.com" or "https://yoursite.com"
    return os.getenv("VAPID_SUBJECT", "mailto:admin@example.com").strip()

def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""

def web_push_enabled() -> bool:
    return bool(_get_vapid_private_key() and _get_vapid_public_key())

def _send_web_push(endpoint: str, p256dh: str, auth: str, payload: dict):
    webpush(
        subscription_info={
            "endpoint": endpoint,
            "keys": {"p256dh": p256dh, "auth": auth},
        },
        data=json.dumps(payload),
        vapid_private_key=_get_vapid_private_key(),
        vapid_claims={"sub": _get_vapid_subject()},
        timeout=12,
    )

def _send_batch(app, targets, payload: dict):
    with app.app_context():
        for sub_id, endpoint, p256dh, auth in targets:
            sub = db.session.get(PushSubscription, sub_id)
            try:
                _send_web_push(endpoint, p256dh, auth, payload)
                if sub is not None:
                    sub.last_sent_at = datetime.utcnow()
            except WebPushException as e:
                # If subscription is gone/expired, deactivate it.
                status = getattr(getattr(e, "response", None), "status_code", None)
                if status in (404, 410) and sub is not None:
                    sub.is_active = False
                app.logger.warning("Web push to subscription %s failed: %s", sub_id, e)
            except Exception:
                app.logger.warning("Web push to subscription %s failed", sub_id, exc_info=True)
        db.session.commit()

def deliver_web_push(uid: str, payload: dict) -> int:
    """Queue a push to every active subscription of ``uid``. Returns the number queued."""
    if not web_push_enabled():
        return 0
    subs = PushSubscription.query.filter_by(user_uid=uid, is_active=True).all()
    targets = [(s.id, s.endpoint, s.p256dh, s.auth) for s in subs]
    if not targets:
        return 0
    _executor.submit(_send_batch, current_app._get_current_object(), targets, payload)
    return len(targets)

# -------------------------------
# Public endpoints (user opt-in)
# -------------------------------

@push_api.get("/api/push/public-key")
def push_public_key():
    pub = _get_vapid_public_key()
    if not pub:
        return jsonify({"ok": False, "error": "VAPID_PUBLIC_KEY not configured"}), 500
    return jsonify({"ok": True, "publicKey": pub})

@push_api.post("/api/push/subscribe")
def push_subscribe():
    data = request.get_json(silent=True) or {}
    uid = _text(data.get("uid"))
    endpoint = _text(data.get("endpoint"))
    keys = data.get("keys") if isinstance(data.get("keys"), dict) else {}
    p256dh = _text(keys.get("p256dh"))
    auth = _text(keys.get("auth"))

    if not endpoint or not p256dh or not auth:
        raise InvalidInputError("Invalid subscription payload")
    get_user(uid)

    sub = PushSubscription.query.filter_by(endpoint=endpoint).first()
    if sub:
        sub.user_uid = uid
        sub.p256dh = p256dh
        sub.auth = auth
        sub.is_active = True
    else:
        sub = PushSubscription(user_uid=uid, endpoint=endpoint, p256dh=p256dh, auth=auth, is_active=True)
        db.session.add(sub)

    db.session.commit()
    return jsonify({"ok": True})

@push_api.post("/api/push/unsubscribe")
def push_unsubscribe():
    data = request.get_json(silent=True) or {}
    endpoint = _text(data.get("endpoint"))
    if not endpoint:
        raise InvalidInputError("Missing endpoint")
    sub = PushSubscription.query.filter_by(endpoint=endpoint).first()
    if sub:
        sub.is_active = False
        db.session.commit()
    return jsonify({"ok": True})
