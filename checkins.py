"""Daily check-in reward.

A user may check in once per local calendar day (CHECKIN_TIMEZONE). The
once-per-day rule is a single conditional UPDATE on ``last_check_in`` so
two parallel requests cannot both earn the reward.
"""

import os
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from flask import Blueprint, current_app, jsonify
from sqlalchemy import or_, update

from errors import InvalidStateError
from extensions import db, limiter
from fanout import publish
from ledger import append_notification, current_balance, get_user, post_entry
from models_users import TX_KIND_EARN, User


checkins_api = Blueprint("checkins_api", __name__)

CHECKIN_REWARD_COINS = int(os.getenv("CHECKIN_REWARD_COINS", "50"))


def checkin_tz() -> ZoneInfo:
    return ZoneInfo(os.getenv("CHECKIN_TIMEZONE", "Asia/Kolkata"))


def local_day_start_utc(now_utc: datetime | None = None) -> datetime:
    """Start of the current local day, as a naive UTC datetime (how rows are stored)."""
    if now_utc is None:
        now_utc = datetime.now(timezone.utc)
    elif now_utc.tzinfo is None:
        now_utc = now_utc.replace(tzinfo=timezone.utc)
    local = now_utc.astimezone(checkin_tz())
    start_local = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return start_local.astimezone(timezone.utc).replace(tzinfo=None)


def check_in(uid: str) -> dict:
    user = get_user(uid)
    uid = user.uid
    now = datetime.utcnow()
    day_start = local_day_start_utc(now)
    reward = CHECKIN_REWARD_COINS

    try:
        res = db.session.execute(
            update(User)
            .where(
                User.uid == uid,
                or_(User.last_check_in.is_(None), User.last_check_in < day_start),
            )
            .values(last_check_in=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            raise InvalidStateError("Already checked in today")

        tx = post_entry(uid, reward, TX_KIND_EARN, "Daily check-in reward")
        notification = append_notification(
            uid,
            "Daily Check-in",
            f"You earned {reward} coins for checking in today!",
            "reward",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    balance = current_balance(uid)
    current_app.logger.info("Check-in for %s: +%s coins (balance %s)", uid, reward, balance)
    publish(uid, "notification", notification.to_dict())
    return {"coins": balance, "reward": reward, "transaction": tx.to_dict(), "lastCheckIn": now.isoformat()}


def reset_check_ins() -> int:
    """Clear every user's check-in marker. Returns the number of rows touched."""
    res = db.session.execute(
        update(User)
        .where(User.last_check_in.is_not(None))
        .values(last_check_in=None)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return res.rowcount or 0


@checkins_api.post("/api/users/<uid>/check-in")
@limiter.limit("10 per minute")
def api_check_in(uid: str):
    result = check_in(uid)
    return jsonify({"success": True, "message": "Check-in successful", **result})
