"""Click attribution APIs.

Routes:
- POST /api/clicks                 (alias /api/clicks/create)
- POST|GET /api/clicks/postback    (tracking platform callback)
- GET  /api/clicks/<tracking_id>
- GET  /api/clicks/user/<uid>?status=

Flow: a client asks for a click, gets a tracking URL carrying our tracking
id, the tracking platform later calls the postback with that id and a status,
and completion statuses settle the reward (settlement.settle_click).
"""

import hashlib
import os
import time

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from errors import (
    AlreadyProcessedError,
    ConflictError,
    InternalError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from extensions import db, get_client_ip, limiter
from ledger import get_user
from models_clicks import (
    CLICK_STATUS_INSTALLED,
    CLICK_STATUS_PENDING,
    CLICK_STATUS_REJECTED,
    CLICK_STATUSES,
    COMPLETION_STATUSES,
    OPEN_CLICK_STATUSES,
    Click,
)
from settlement import get_offer, settle_click


clicks_api = Blueprint("clicks_api", __name__)

MIN_TRACKING_ID_LENGTH = 12


def _tracking_id_length(raw) -> int:
    # Clamped to 12..64 hex chars (48 bits up to the full sha256 digest).
    return min(64, max(MIN_TRACKING_ID_LENGTH, int(raw)))


# 16 hex chars keeps 64 bits of the digest.
TRACKING_ID_LENGTH = _tracking_id_length(os.getenv("TRACKING_ID_LENGTH", "16"))
_MAX_ID_ATTEMPTS = 3


def generate_tracking_id(uid: str, offer_id: int, timestamp_ns: int | None = None) -> str:
    if timestamp_ns is None:
        timestamp_ns = time.time_ns()
    data = f"{uid}_{offer_id}_{timestamp_ns}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:TRACKING_ID_LENGTH]


def _find_open_click(uid: str, offer_id: int):
    return Click.query.filter(
        Click.user_uid == uid,
        Click.offer_id == offer_id,
        Click.status.in_(OPEN_CLICK_STATUSES),
    ).first()


def create_click(uid, offer_id, payout_destination, ip_address=None, device_info=None):
    """Return ``(click, created)``.

    A second request for the same (user, offer) while a click is still open
    returns the open click with ``created=False``.
    """
    for value in (uid, payout_destination):
        if value is not None and not isinstance(value, str):
            raise InvalidInputError("userId and payoutDestination must be strings")
    uid = (uid or "").strip()
    payout_destination = (payout_destination or "").strip()
    if not uid or offer_id in (None, "") or not payout_destination:
        raise InvalidInputError("Missing required fields")

    user = get_user(uid)
    offer = get_offer(offer_id)
    if not offer.is_active:
        raise InvalidStateError("Offer is not active")

    existing = _find_open_click(user.uid, offer.id)
    if existing:
        return existing, False

    for _ in range(_MAX_ID_ATTEMPTS):
        click = Click(
            tracking_id=generate_tracking_id(user.uid, offer.id),
            user_uid=user.uid,
            offer_id=offer.id,
            payout_destination=payout_destination,
            reward_coins=int(offer.coins or 0),
            status=CLICK_STATUS_PENDING,
            reward_paid=False,
            ip_address=ip_address,
            device_info=device_info,
        )
        db.session.add(click)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            # Either a concurrent request opened the click first, or the id collided.
            existing = _find_open_click(user.uid, offer.id)
            if existing:
                return existing, False
            continue
        current_app.logger.info("Click %s created for %s on offer %s", click.tracking_id, user.uid, offer.id)
        return click, True

    raise InternalError("Could not allocate a tracking id")


def _raise_for_settled(tracking_id: str):
    """Explain why a guarded status update matched no row."""
    current = Click.query.filter_by(tracking_id=tracking_id).first()
    if current is not None and current.status == CLICK_STATUS_REJECTED and not current.reward_paid:
        raise InvalidStateError("Click was rejected", trackingId=tracking_id)
    raise AlreadyProcessedError("Click already rewarded", trackingId=tracking_id)


def process_postback(tracking_id, reported_status=None, reported_offer_id=None) -> dict:
    tracking_id = str(tracking_id or "").strip()
    if not tracking_id:
        raise InvalidInputError("Click ID (trackingId, click_id or pcid) is required")

    click = Click.query.filter_by(tracking_id=tracking_id).first()
    if not click:
        raise NotFoundError("Click not found")

    if reported_offer_id not in (None, "") and str(reported_offer_id).strip() != str(click.offer_id):
        raise ConflictError("Offer ID mismatch", trackingId=tracking_id)

    if click.reward_paid:
        raise AlreadyProcessedError("Click already rewarded", trackingId=tracking_id)

    status = str(reported_status or CLICK_STATUS_INSTALLED).strip().lower()
    if status not in CLICK_STATUSES:
        raise InvalidInputError(f"Unknown status: {status}")

    # Rejected is terminal; late or reordered postbacks cannot revive it.
    if click.status == CLICK_STATUS_REJECTED:
        raise InvalidStateError("Click was rejected", trackingId=tracking_id)

    if status in COMPLETION_STATUSES:
        balance = settle_click(click, status)
        return {"status": status, "rewarded": True, "trackingId": tracking_id, "coins": balance}

    try:
        res = db.session.execute(
            update(Click)
            .where(
                Click.id == click.id,
                Click.reward_paid.is_(False),
                Click.status != CLICK_STATUS_REJECTED,
            )
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            db.session.rollback()
            _raise_for_settled(tracking_id)
        db.session.commit()
    except IntegrityError:
        # Reopening would collide with another open click for the same (user, offer).
        db.session.rollback()
        raise ConflictError("Another click for this offer is already open", trackingId=tracking_id)
    current_app.logger.info("Click %s moved to %s", tracking_id, status)
    return {"status": status, "rewarded": False, "trackingId": tracking_id}


def get_click(tracking_id: str) -> Click:
    click = Click.query.filter_by(tracking_id=(tracking_id or "").strip()).first()
    if not click:
        raise NotFoundError("Click not found")
    return click


def list_clicks_for_user(uid: str, status: str | None = None) -> list:
    user = get_user(uid)
    q = Click.query.filter(Click.user_uid == user.uid)
    if status:
        if status not in CLICK_STATUSES:
            raise InvalidInputError(f"Unknown status: {status}")
        q = q.filter(Click.status == status)
    return q.order_by(Click.created_at.desc(), Click.id.desc()).all()


def _first(data: dict, *keys):
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


@clicks_api.post("/api/clicks")
@clicks_api.post("/api/clicks/create")
@limiter.limit("30 per minute")
def api_create_click():
    data = request.get_json(silent=True) or {}
    click, created = create_click(
        _first(data, "userId", "user_id", "uid"),
        _first(data, "offerId", "offer_id"),
        _first(data, "payoutDestination", "payout_destination", "upi"),
        ip_address=get_client_ip(),
        device_info={
            "userAgent": request.headers.get("User-Agent"),
            "platform": request.headers.get("Sec-CH-UA-Platform"),
            "timestamp": int(time.time() * 1000),
        },
    )
    body = {
        "success": True,
        "trackingId": click.tracking_id,
        "clickId": click.tracking_id,
        "pcid": click.tracking_id,
        "trackingUrl": click.offer.tracking_url_for(click.tracking_id),
        "duplicate": not created,
        "message": "Click tracked successfully" if created else "You already have a pending click for this offer",
    }
    return jsonify(body), (201 if created else 200)


@clicks_api.route("/api/clicks/postback", methods=["GET", "POST"])
@limiter.limit("600 per minute")
def api_postback():
    data = {}
    data.update(request.args.to_dict())
    data.update(request.form.to_dict())
    data.update(request.get_json(silent=True) or {})

    outcome = process_postback(
        _first(data, "trackingId", "click_id", "pcid"),
        _first(data, "status"),
        _first(data, "offerId", "offer_id"),
    )
    return jsonify({
        "success": True,
        "message": "Postback processed successfully",
        "click_id": outcome["trackingId"],
        "pcid": outcome["trackingId"],
        **outcome,
    })


@clicks_api.get("/api/clicks/<tracking_id>")
def api_get_click(tracking_id: str):
    click = get_click(tracking_id)
    return jsonify({"success": True, "click": click.to_dict(include_offer=True)})


@clicks_api.get("/api/clicks/user/<uid>")
def api_user_clicks(uid: str):
    status = (request.args.get("status") or "").strip().lower() or None
    clicks = list_clicks_for_user(uid, status)
    return jsonify({
        "success": True,
        "clicks": [c.to_dict(include_offer=True) for c in clicks],
        "total": len(clicks),
    })
