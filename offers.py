"""Offer catalog + per-user offer state.

Public:
- GET  /api/offers                         (active only)
- GET  /api/offers/type/<type>
- GET  /api/offers/<id>
- POST /api/offers/<id>/pending/<uid>
- POST /api/offers/<id>/reject/<uid>       {reason?}
- POST /api/offers/<id>/complete/<uid>
- GET  /api/offers/completed|pending|rejected/<uid>

Admin (X-Admin-Key; see push_api._admin_ok):
- POST /api/offers
- PUT  /api/offers/<id>
"""

from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from errors import InvalidInputError, InvalidStateError
from extensions import db
from fanout import publish
from image_upload import upload_image
from ledger import append_notification, get_user
from models_offers import (
    CLICK_ID_PLACEHOLDER,
    OFFER_CATEGORIES,
    OFFER_STATE_COMPLETED,
    OFFER_STATE_PENDING,
    OFFER_STATE_REJECTED,
    OFFER_STATES,
    OFFER_TYPES,
    Offer,
    UserOffer,
)
from push_api import _admin_ok
from settlement import complete_offer, get_offer


offers_api = Blueprint("offers_api", __name__)

# request key -> column
_OFFER_FIELDS = {
    "title": "title",
    "description": "description",
    "coins": "coins",
    "type": "type",
    "requirements": "requirements",
    "image": "image",
    "developer": "developer",
    "rating": "rating",
    "downloads": "downloads",
    "category": "category",
    "appLink": "app_link",
    "trackingUrl": "tracking_url",
    "deadline": "deadline",
    "steps": "steps",
    "offerCategory": "offer_category",
    "isActive": "is_active",
    "expiryDate": "expiry_date",
}
_REQUIRED_FIELDS = ("title", "description", "coins", "type", "requirements")


def _parse_coins(raw) -> int:
    if isinstance(raw, bool):
        raise InvalidInputError("Coins must be a positive integer")
    try:
        coins = int(raw)
    except (TypeError, ValueError):
        raise InvalidInputError("Coins must be a positive integer")
    if coins <= 0 or (isinstance(raw, float) and raw != coins):
        raise InvalidInputError("Coins must be a positive integer")
    return coins


def _parse_expiry(raw):
    if raw in (None, ""):
        return None
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        raise InvalidInputError("Invalid expiryDate")


def _clean_offer_payload(data: dict, partial: bool) -> dict:
    if not partial:
        missing = [k for k in _REQUIRED_FIELDS if data.get(k) in (None, "")]
        if missing:
            raise InvalidInputError("Missing required fields", fields=missing)

    values = {}
    for key, column in _OFFER_FIELDS.items():
        if key in data:
            values[column] = data[key]
        elif column != key and column in data:
            values[column] = data[column]

    if "type" in values and values["type"] not in OFFER_TYPES:
        raise InvalidInputError(f"Invalid offer type. Must be one of: {', '.join(OFFER_TYPES)}")
    if "coins" in values:
        values["coins"] = _parse_coins(values["coins"])
    if "offer_category" in values and values["offer_category"] not in OFFER_CATEGORIES:
        raise InvalidInputError(f"Invalid offer category. Must be one of: {', '.join(OFFER_CATEGORIES)}")
    if "steps" in values and not isinstance(values["steps"], list):
        raise InvalidInputError("Steps must be a list")
    if "is_active" in values:
        values["is_active"] = bool(values["is_active"])
    if "expiry_date" in values:
        values["expiry_date"] = _parse_expiry(values["expiry_date"])
    if "rating" in values:
        try:
            values["rating"] = float(values["rating"])
        except (TypeError, ValueError):
            raise InvalidInputError("Invalid rating")
    for column in ("title", "description", "requirements"):
        if column in values and not str(values[column] or "").strip():
            raise InvalidInputError(f"{column.capitalize()} cannot be empty")
    return values


def _warn_tracking_url(values: dict) -> None:
    url = values.get("tracking_url")
    if url and CLICK_ID_PLACEHOLDER not in url:
        current_app.logger.warning("Offer tracking URL has no %s placeholder: %s", CLICK_ID_PLACEHOLDER, url)


def _admin_forbidden():
    return jsonify({"success": False, "code": "unauthorized", "message": "Admin access required"}), 403


def create_offer(data: dict) -> Offer:
    values = _clean_offer_payload(data, partial=False)
    _warn_tracking_url(values)
    if data.get("imageData"):
        values["image"] = upload_image(data["imageData"], "offer", folder="offer_images")

    offer = Offer(**values)
    db.session.add(offer)
    db.session.commit()
    current_app.logger.info("Offer %s created: %s (%s coins)", offer.id, offer.title, offer.coins)
    return offer


def update_offer(offer_id, data: dict) -> Offer:
    offer = get_offer(offer_id)
    values = _clean_offer_payload(data, partial=True)
    _warn_tracking_url(values)
    if data.get("imageData"):
        values["image"] = upload_image(data["imageData"], "offer", folder="offer_images")
    if not values:
        raise InvalidInputError("No valid fields to update")

    for column, value in values.items():
        setattr(offer, column, value)
    db.session.commit()
    current_app.logger.info("Offer %s updated: %s", offer.id, ", ".join(sorted(values)))
    return offer


def _move_offer_state(uid: str, offer_id: int, new_status: str, note=None) -> None:
    """Set the (user, offer) state unless it is already ``new_status`` or completed."""
    blocked = {OFFER_STATE_COMPLETED, new_status}
    now = datetime.utcnow()
    res = db.session.execute(
        update(UserOffer)
        .where(
            UserOffer.user_uid == uid,
            UserOffer.offer_id == offer_id,
            UserOffer.status.not_in(blocked),
        )
        .values(status=new_status, note=note, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount:
        return

    row = UserOffer.query.filter_by(user_uid=uid, offer_id=offer_id).first()
    if row is not None:
        raise InvalidStateError(f"Offer already {row.status}")

    db.session.add(UserOffer(user_uid=uid, offer_id=offer_id, status=new_status, note=note, updated_at=now))
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise InvalidStateError("Offer state changed concurrently")


def mark_offer_pending(uid: str, offer_id) -> dict:
    offer = get_offer(offer_id)
    if not offer.is_active:
        raise InvalidStateError("Offer is not active")
    user = get_user(uid)
    try:
        _move_offer_state(user.uid, offer.id, OFFER_STATE_PENDING)
        notification = append_notification(
            user.uid,
            "Offer Submitted for Review",
            f'Your offer "{offer.title}" is now pending verification. '
            f"You will receive {offer.coins} coins once it's approved.",
            "offer",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    payload = notification.to_dict()
    publish(user.uid, "notification", payload)
    return {"offerId": offer.id, "status": OFFER_STATE_PENDING, "notification": payload}


def reject_offer(uid: str, offer_id, reason: str | None = None) -> dict:
    offer = get_offer(offer_id)
    user = get_user(uid)
    reason = (reason or "").strip() or "Offer requirements not met"
    try:
        _move_offer_state(user.uid, offer.id, OFFER_STATE_REJECTED, note=reason)
        notification = append_notification(
            user.uid,
            "Offer Rejected",
            f'Your offer "{offer.title}" was not approved. Reason: {reason}',
            "offer",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info("Offer %s rejected for %s: %s", offer.id, user.uid, reason)
    payload = notification.to_dict()
    publish(user.uid, "notification", payload)
    return {"offerId": offer.id, "status": OFFER_STATE_REJECTED, "reason": reason, "notification": payload}


def offers_in_state(uid: str, status: str) -> list:
    user = get_user(uid)
    rows = (
        db.session.query(UserOffer, Offer)
        .join(Offer, Offer.id == UserOffer.offer_id)
        .filter(UserOffer.user_uid == user.uid, UserOffer.status == status)
        .order_by(UserOffer.updated_at.desc())
        .all()
    )
    out = []
    for state, offer in rows:
        item = offer.to_dict()
        item["state"] = state.status
        item["note"] = state.note
        item["updated_at"] = state.updated_at.isoformat() if state.updated_at else None
        out.append(item)
    return out


# -------------------------------
# Catalog
# -------------------------------

@offers_api.get("/api/offers")
def api_list_offers():
    offers = Offer.query.filter_by(is_active=True).order_by(Offer.created_at.desc(), Offer.id.desc()).all()
    return jsonify({"success": True, "offers": [o.to_dict() for o in offers]})


@offers_api.get("/api/offers/type/<offer_type>")
def api_offers_by_type(offer_type: str):
    if offer_type not in OFFER_TYPES:
        raise InvalidInputError(f"Invalid offer type. Must be one of: {', '.join(OFFER_TYPES)}")
    offers = (
        Offer.query.filter_by(is_active=True, type=offer_type)
        .order_by(Offer.created_at.desc(), Offer.id.desc())
        .all()
    )
    return jsonify({"success": True, "offers": [o.to_dict() for o in offers]})


@offers_api.get("/api/offers/<int:offer_id>")
def api_get_offer(offer_id: int):
    return jsonify({"success": True, "offer": get_offer(offer_id).to_dict()})


@offers_api.post("/api/offers")
def api_create_offer():
    if not _admin_ok(request):
        return _admin_forbidden()
    offer = create_offer(request.get_json(silent=True) or {})
    return jsonify({"success": True, "message": "Offer created successfully", "offer": offer.to_dict()}), 201


@offers_api.put("/api/offers/<int:offer_id>")
def api_update_offer(offer_id: int):
    if not _admin_ok(request):
        return _admin_forbidden()
    offer = update_offer(offer_id, request.get_json(silent=True) or {})
    return jsonify({"success": True, "message": "Offer updated successfully", "offer": offer.to_dict()})


# -------------------------------
# Per-user state
# -------------------------------

@offers_api.post("/api/offers/<int:offer_id>/complete/<uid>")
def api_complete_offer(offer_id: int, uid: str):
    result = complete_offer(uid, offer_id)
    return jsonify({"success": True, "message": "Offer completed successfully", **result})


@offers_api.post("/api/offers/<int:offer_id>/pending/<uid>")
def api_mark_pending(offer_id: int, uid: str):
    result = mark_offer_pending(uid, offer_id)
    return jsonify({"success": True, "message": "Offer marked as pending", **result})


@offers_api.post("/api/offers/<int:offer_id>/reject/<uid>")
def api_reject_offer(offer_id: int, uid: str):
    data = request.get_json(silent=True) or {}
    result = reject_offer(uid, offer_id, data.get("reason"))
    return jsonify({"success": True, "message": "Offer rejected", **result})


@offers_api.get("/api/offers/<state>/<uid>")
def api_offers_in_state(state: str, uid: str):
    if state not in OFFER_STATES:
        raise InvalidInputError(f"Unknown offer state: {state}")
    offers = offers_in_state(uid, state)
    return jsonify({"success": True, "offers": offers, "total": len(offers)})
