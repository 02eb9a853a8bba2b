"""User profile, payment method, ledger view and notifications.

Routes:
- POST   /api/users/sync
- GET    /api/users/<uid>
- PATCH  /api/users/<uid>
- POST   /api/users/<uid>/payment-method       {type: upi|bank, details}
- POST   /api/users/<uid>/profile-image        {imageData}
- GET    /api/users/<uid>/transactions?limit=
- GET    /api/users/<uid>/notifications
- POST   /api/users/<uid>/notifications        {title, message, type?}
- PATCH  /api/users/<uid>/notifications/<id>/read
- PATCH  /api/users/<uid>/notifications/read-all
- DELETE /api/users/<uid>/notifications/clear
"""

import re
from datetime import date

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from errors import ConflictError, InvalidInputError, NotFoundError
from extensions import db
from fanout import publish
from image_upload import upload_image
from ledger import append_notification, get_user
from models_users import GENDERS, Notification, Transaction, User
from referrals import unique_referral_code


users_api = Blueprint("users_api", __name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
IFSC_RE = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
UPI_RE = re.compile(r"^[\w.\-]{2,256}@[A-Za-z]{2,64}$")

# request key -> column
_PROFILE_FIELDS = {
    "name": "name",
    "email": "email",
    "phone": "phone",
    "dateOfBirth": "date_of_birth",
    "gender": "gender",
    "profileImageUrl": "profile_image_url",
    "advertisingId": "advertising_id",
}


def _clean_profile(data: dict) -> dict:
    values = {}
    for key, column in _PROFILE_FIELDS.items():
        if key in data:
            values[column] = data[key]
    for column in ("name", "email", "gender"):
        if values.get(column) is not None and not isinstance(values[column], str):
            raise InvalidInputError(f"{column.capitalize()} must be a string")

    if "name" in values:
        values["name"] = (values["name"] or "").strip()
        if not values["name"]:
            raise InvalidInputError("Name cannot be empty")
    if "email" in values:
        values["email"] = (values["email"] or "").strip().lower()
        if not EMAIL_RE.match(values["email"]):
            raise InvalidInputError("Invalid email address")
    if "gender" in values:
        values["gender"] = (values["gender"] or "").strip().lower()
        if values["gender"] not in GENDERS:
            raise InvalidInputError("Invalid gender")
    if "date_of_birth" in values:
        raw = values["date_of_birth"]
        if raw in (None, ""):
            values["date_of_birth"] = None
        else:
            try:
                values["date_of_birth"] = date.fromisoformat(str(raw)[:10])
            except ValueError:
                raise InvalidInputError("Invalid dateOfBirth")
    return values


# -------------------------------
# Profile
# -------------------------------

def sync_user(data: dict):
    """Find or create the user for an identity-provider login. Returns ``(user, created)``."""
    uid = data.get("uid")
    email = data.get("email")
    if not isinstance(uid, str) or not isinstance(email, str):
        raise InvalidInputError("uid and email are required")
    uid = uid.strip()
    email = email.strip().lower()
    if not uid or not email:
        raise InvalidInputError("uid and email are required")

    user = User.query.filter_by(uid=uid).first()
    if user:
        return user, False

    user = User.query.filter_by(email=email).first()
    if user:
        # Same account signed in through a new provider subject.
        old_uid = user.uid
        user.uid = uid
        db.session.commit()
        current_app.logger.info("Re-linked user %s to uid %s", old_uid, uid)
        return user, False

    profile = _clean_profile({k: v for k, v in data.items() if k != "email"})
    name = profile.pop("name", None) or email.split("@")[0]
    user = User(
        uid=uid,
        email=email,
        name=name,
        coins=0,
        referral_code=unique_referral_code(name),
        referral_count=0,
        **profile,
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = User.query.filter_by(uid=uid).first()
        if existing:
            return existing, False
        raise ConflictError("User could not be created")
    current_app.logger.info("Created user %s (%s)", uid, email)
    return user, True


def update_profile(uid: str, data: dict) -> User:
    user = get_user(uid)
    values = _clean_profile(data)
    if not values:
        raise InvalidInputError("No valid fields to update")
    if "email" in values and values["email"] != user.email:
        if User.query.filter(User.email == values["email"], User.uid != user.uid).first():
            raise ConflictError("Email is already in use")

    for column, value in values.items():
        setattr(user, column, value)
    db.session.commit()
    return user


def _clean_payment_method(method_type, details) -> dict:
    method_type = (method_type or "").strip().lower() if isinstance(method_type, str) else ""
    if not isinstance(details, dict):
        raise InvalidInputError("Payment details are required")

    if method_type == "upi":
        upi_id = (details.get("upiId") or "").strip()
        if not upi_id:
            raise InvalidInputError("UPI ID is required")
        if not UPI_RE.match(upi_id):
            raise InvalidInputError("Invalid UPI ID")
        return {"type": "upi", "upiId": upi_id}

    if method_type == "bank":
        account_number = str(details.get("accountNumber") or "").strip()
        ifsc = (details.get("ifscCode") or "").strip().upper()
        holder = (details.get("accountHolder") or "").strip()
        if not account_number or not ifsc or not holder:
            raise InvalidInputError("Account number, IFSC code and account holder are required")
        if not account_number.isdigit() or not 6 <= len(account_number) <= 20:
            raise InvalidInputError("Invalid account number")
        if not IFSC_RE.match(ifsc):
            raise InvalidInputError("Invalid IFSC code")
        out = {"type": "bank", "accountNumber": account_number, "ifscCode": ifsc, "accountHolder": holder}
        if details.get("bankName"):
            out["bankName"] = str(details["bankName"]).strip()
        return out

    raise InvalidInputError("Payment type must be 'upi' or 'bank'")


def set_payment_method(uid: str, method_type, details) -> dict:
    user = get_user(uid)
    user.payment_method = _clean_payment_method(method_type, details)
    db.session.commit()
    return user.payment_method


def set_profile_image(uid: str, image_data) -> str:
    user = get_user(uid)
    url = upload_image(image_data, user.uid, folder="profile_images")
    user.profile_image_url = url
    db.session.commit()
    return url


def _parse_limit(raw, default=50, maximum=500) -> int:
    if raw in (None, ""):
        return default
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        raise InvalidInputError("Invalid limit")
    return max(1, min(limit, maximum))


@users_api.post("/api/users/sync")
def api_sync_user():
    user, created = sync_user(request.get_json(silent=True) or {})
    return jsonify({"success": True, "created": created, "user": user.to_dict()}), (201 if created else 200)


@users_api.get("/api/users/<uid>")
def api_get_user(uid: str):
    return jsonify({"success": True, "user": get_user(uid).to_dict()})


@users_api.patch("/api/users/<uid>")
def api_update_user(uid: str):
    user = update_profile(uid, request.get_json(silent=True) or {})
    return jsonify({"success": True, "message": "Profile updated successfully", "user": user.to_dict()})


@users_api.post("/api/users/<uid>/payment-method")
def api_set_payment_method(uid: str):
    data = request.get_json(silent=True) or {}
    method = set_payment_method(uid, data.get("type"), data.get("details"))
    return jsonify({"success": True, "message": "Payment method saved", "paymentMethod": method})


@users_api.post("/api/users/<uid>/profile-image")
def api_profile_image(uid: str):
    data = request.get_json(silent=True) or {}
    url = set_profile_image(uid, data.get("imageData"))
    return jsonify({"success": True, "profileImageUrl": url})


@users_api.get("/api/users/<uid>/transactions")
def api_transactions(uid: str):
    user = get_user(uid)
    limit = _parse_limit(request.args.get("limit"))
    rows = (
        Transaction.query.filter_by(user_uid=user.uid)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(limit)
        .all()
    )
    return jsonify({
        "success": True,
        "coins": int(user.coins or 0),
        "transactions": [t.to_dict() for t in rows],
    })


# -------------------------------
# Notifications
# -------------------------------

@users_api.get("/api/users/<uid>/notifications")
def api_notifications(uid: str):
    user = get_user(uid)
    rows = (
        Notification.query.filter_by(user_uid=user.uid)
        .order_by(Notification.timestamp.desc())
        .limit(_parse_limit(request.args.get("limit"), default=100))
        .all()
    )
    unread = Notification.query.filter_by(user_uid=user.uid, read=False).count()
    return jsonify({"success": True, "notifications": [n.to_dict() for n in rows], "unreadCount": unread})


@users_api.post("/api/users/<uid>/notifications")
def api_add_notification(uid: str):
    user = get_user(uid)
    data = request.get_json(silent=True) or {}
    title, message, kind = data.get("title"), data.get("message"), data.get("type") or "system"
    if not all(isinstance(v, str) for v in (title, message, kind)) or not title.strip() or not message.strip():
        raise InvalidInputError("Title and message are required")

    notification = append_notification(user.uid, title.strip(), message.strip(), kind.strip())
    db.session.commit()
    payload = notification.to_dict()
    publish(user.uid, "notification", payload)
    return jsonify({"success": True, "notification": payload}), 201


@users_api.patch("/api/users/<uid>/notifications/<notification_id>/read")
def api_mark_read(uid: str, notification_id: str):
    user = get_user(uid)
    notification = Notification.query.filter_by(id=notification_id, user_uid=user.uid).first()
    if not notification:
        raise NotFoundError("Notification not found")
    notification.read = True
    db.session.commit()
    return jsonify({"success": True, "notification": notification.to_dict()})


@users_api.patch("/api/users/<uid>/notifications/read-all")
def api_mark_all_read(uid: str):
    user = get_user(uid)
    res = db.session.execute(
        update(Notification)
        .where(Notification.user_uid == user.uid, Notification.read.is_(False))
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return jsonify({"success": True, "updated": res.rowcount or 0})


@users_api.delete("/api/users/<uid>/notifications/clear")
def api_clear_notifications(uid: str):
    user = get_user(uid)
    deleted = Notification.query.filter_by(user_uid=user.uid).delete(synchronize_session=False)
    db.session.commit()
    return jsonify({"success": True, "deleted": deleted})
