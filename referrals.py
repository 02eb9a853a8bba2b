"""Referral bookkeeping.

Routes:
- POST /api/users/<uid>/apply-referral      {referralCode}
- GET  /api/users/<uid>/referral-history

Applying a code is a one-time operation per user. In one transaction the
referee is linked to the referrer, the referrer gets the bonus, the
referrer's count goes up by one and a history entry is written.
"""

import os
import re
import secrets
import string
import time

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from errors import InvalidInputError, InvalidStateError, NotFoundError
from extensions import db
from fanout import publish
from ledger import append_notification, append_transaction, current_balance, get_user, post_entry
from models_users import TX_KIND_REFERRAL_APPLIED, TX_KIND_REFERRAL_BONUS, ReferralRecord, User


referrals_api = Blueprint("referrals_api", __name__)

REFERRAL_BONUS_COINS = int(os.getenv("REFERRAL_BONUS_COINS", "500"))
_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_referral_code(name: str) -> str:
    prefix = re.sub(r"[^A-Za-z0-9]", "", name or "")[:3].upper().ljust(3, "X")
    rand = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(4))
    stamp = str(int(time.time() * 1000))[-3:]
    return f"{prefix}{rand}{stamp}"


def unique_referral_code(name: str, attempts: int = 5) -> str:
    for _ in range(attempts):
        code = generate_referral_code(name)
        if not User.query.filter_by(referral_code=code).first():
            return code
    # Fall back to a longer random suffix; collisions here are vanishingly rare.
    return generate_referral_code(name) + secrets.token_hex(2).upper()


def apply_referral(uid: str, code) -> dict:
    code = (code or "").strip().upper() if isinstance(code, str) else ""
    if not code:
        raise InvalidInputError("Referral code is required")

    user = get_user(uid)
    referrer = User.query.filter_by(referral_code=code).first()
    if not referrer:
        raise NotFoundError("Invalid referral code")
    if referrer.uid == user.uid:
        raise InvalidStateError("You cannot use your own referral code")
    if user.used_referral_code:
        raise InvalidStateError("You have already used a referral code")

    bonus = REFERRAL_BONUS_COINS
    try:
        res = db.session.execute(
            update(User)
            .where(User.uid == user.uid, User.used_referral_code.is_(None))
            .values(used_referral_code=code, referred_by=referrer.uid)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            raise InvalidStateError("You have already used a referral code")

        append_transaction(user.uid, 0, TX_KIND_REFERRAL_APPLIED, f"Applied referral code {code}")
        referee_notification = append_notification(
            user.uid,
            "Referral Code Applied",
            f"You joined using {referrer.name}'s referral code.",
            "referral",
        )

        post_entry(referrer.uid, bonus, TX_KIND_REFERRAL_BONUS, f"Referral bonus: {user.name} joined")
        db.session.execute(
            update(User)
            .where(User.uid == referrer.uid)
            .values(referral_count=User.referral_count + 1)
            .execution_options(synchronize_session=False)
        )
        db.session.add(ReferralRecord(
            referrer_uid=referrer.uid,
            referee_uid=user.uid,
            code_used=code,
            coins_earned=bonus,
        ))
        referrer_notification = append_notification(
            referrer.uid,
            "Referral Bonus Earned!",
            f"{user.name} joined using your referral code. You earned {bonus} coins!",
            "referral",
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise InvalidStateError("You have already used a referral code")
    except Exception:
        db.session.rollback()
        raise

    referrer_balance = current_balance(referrer.uid)
    current_app.logger.info(
        "Referral %s applied by %s; %s earned %s coins", code, user.uid, referrer.uid, bonus
    )
    publish(user.uid, "notification", referee_notification.to_dict())
    publish(referrer.uid, "notification", referrer_notification.to_dict())
    return {
        "referrer": {"uid": referrer.uid, "name": referrer.name},
        "bonusCoins": bonus,
        "referrerCoins": referrer_balance,
    }


def referral_history(uid: str) -> dict:
    user = get_user(uid)
    records = (
        ReferralRecord.query.filter_by(referrer_uid=user.uid)
        .order_by(ReferralRecord.created_at.desc(), ReferralRecord.id.desc())
        .all()
    )
    referees = {
        u.uid: u for u in User.query.filter(User.uid.in_([r.referee_uid for r in records])).all()
    } if records else {}

    referred_by = None
    if user.referred_by:
        referrer = User.query.filter_by(uid=user.referred_by).first()
        if referrer:
            referred_by = {"uid": referrer.uid, "name": referrer.name, "referralCode": referrer.referral_code}

    history = []
    for r in records:
        referee = referees.get(r.referee_uid)
        history.append({
            "uid": r.referee_uid,
            "name": referee.name if referee else None,
            "email": referee.email if referee else None,
            "codeUsed": r.code_used,
            "coinsEarned": r.coins_earned,
            "date": r.created_at.isoformat() if r.created_at else None,
        })

    return {
        "referralCode": user.referral_code,
        "referralCount": int(user.referral_count or 0),
        "usedReferralCode": user.used_referral_code,
        "referredBy": referred_by,
        "referredUsers": [h["uid"] for h in history],
        "history": history,
        "totalCoinsEarned": sum(int(r.coins_earned or 0) for r in records),
    }


@referrals_api.post("/api/users/<uid>/apply-referral")
def api_apply_referral(uid: str):
    data = request.get_json(silent=True) or {}
    result = apply_referral(uid, data.get("referralCode") or data.get("referral_code"))
    return jsonify({"success": True, "message": "Referral code applied successfully", **result})


@referrals_api.get("/api/users/<uid>/referral-history")
def api_referral_history(uid: str):
    return jsonify({"success": True, **referral_history(uid)})
