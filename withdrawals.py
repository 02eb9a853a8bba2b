"""Withdrawal requests.

Routes:
- POST  /api/users/<uid>/withdraw                     {amount}
- PATCH /api/users/<uid>/withdrawals/<id>/verify      {adminId}   (admin)
- GET   /api/users/<uid>/withdrawals

A withdrawal is one row whose status moves pending -> verified. The
"pending" and "verified" lists are filters on that row, never copies.
Coins are deducted in the same transaction that records the withdrawal.
"""

import math
import os
from datetime import datetime
from decimal import ROUND_CEILING, Decimal, InvalidOperation

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import update

from errors import (
    InsufficientFundsError,
    InvalidInputError,
    NotFoundError,
    PreconditionFailedError,
)
from extensions import db, limiter
from fanout import publish
from ledger import append_notification, current_balance, get_user, post_entry
from models_users import TX_KIND_WITHDRAW, TX_STATUS_COMPLETED, TX_STATUS_PENDING, Transaction
from models_withdrawals import WITHDRAWAL_STATUS_PENDING, WITHDRAWAL_STATUS_VERIFIED, Withdrawal
from push_api import _admin_ok


withdrawals_api = Blueprint("withdrawals_api", __name__)


def exchange_rate() -> Decimal:
    """Currency value of one coin."""
    return Decimal(os.getenv("COIN_EXCHANGE_RATE", "0.1"))


def parse_amount(raw) -> float:
    if isinstance(raw, bool) or raw in (None, ""):
        raise InvalidInputError("Valid amount is required")
    try:
        amount = float(raw)
    except (TypeError, ValueError):
        raise InvalidInputError("Valid amount is required")
    if not math.isfinite(amount) or amount <= 0:
        raise InvalidInputError("Valid amount is required")
    return amount


def coins_for_amount(amount, rate: Decimal | None = None) -> int:
    """ceil(amount / rate), computed in decimal so 1.1 / 0.1 is 11, not 12."""
    rate = exchange_rate() if rate is None else Decimal(str(rate))
    try:
        quotient = Decimal(str(amount)) / rate
    except (InvalidOperation, ZeroDivisionError):
        raise InvalidInputError("Valid amount is required")
    return int(quotient.to_integral_value(rounding=ROUND_CEILING))


def request_withdrawal(uid: str, raw_amount) -> dict:
    amount = parse_amount(raw_amount)
    rate = exchange_rate()
    coins_required = coins_for_amount(amount, rate)

    user = get_user(uid)
    uid = user.uid
    if int(user.coins or 0) < coins_required:
        raise InsufficientFundsError(
            "Insufficient coins for this withdrawal",
            available=int(user.coins or 0),
            required=coins_required,
        )
    if not user.payment_method:
        raise PreconditionFailedError("No payment method found. Please add a payment method first.")

    payment_method = dict(user.payment_method)
    try:
        withdrawal = Withdrawal(
            user_uid=uid,
            amount=amount,
            coins=coins_required,
            exchange_rate=str(rate),
            payment_method=payment_method,
            status=WITHDRAWAL_STATUS_PENDING,
            created_at=datetime.utcnow(),
        )
        db.session.add(withdrawal)
        db.session.flush()

        # Guarded decrement: raises InsufficientFundsError if a concurrent debit won the race.
        post_entry(
            uid,
            -coins_required,
            TX_KIND_WITHDRAW,
            f"Withdrawal request for ₹{amount:.2f}",
            status=TX_STATUS_PENDING,
            withdrawal_id=withdrawal.id,
        )
        notification = append_notification(
            uid,
            "Withdrawal Requested",
            f"Your withdrawal request for ₹{amount:.2f} has been received and is pending approval.",
            "withdrawal",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    balance = current_balance(uid)
    current_app.logger.info(
        "Withdrawal %s requested by %s: %.2f (%s coins at %s), balance %s",
        withdrawal.id, uid, amount, coins_required, rate, balance,
    )
    publish(uid, "notification", notification.to_dict())
    return {"withdrawal": withdrawal.to_dict(), "newBalance": balance, "deductedCoins": coins_required}


def verify_withdrawal(uid: str, withdrawal_id, admin_id) -> Withdrawal:
    admin_id = (admin_id or "").strip() if isinstance(admin_id, str) else admin_id
    if not admin_id:
        raise InvalidInputError("Admin UID is required for verification")
    user = get_user(uid)
    uid = user.uid
    try:
        withdrawal_id = int(withdrawal_id)
    except (TypeError, ValueError):
        raise NotFoundError("Pending withdrawal not found")

    now = datetime.utcnow()
    try:
        res = db.session.execute(
            update(Withdrawal)
            .where(
                Withdrawal.id == withdrawal_id,
                Withdrawal.user_uid == uid,
                Withdrawal.status == WITHDRAWAL_STATUS_PENDING,
            )
            .values(status=WITHDRAWAL_STATUS_VERIFIED, verified_at=now, verified_by=str(admin_id))
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            raise NotFoundError("Pending withdrawal not found")

        db.session.execute(
            update(Transaction)
            .where(Transaction.withdrawal_id == withdrawal_id)
            .values(status=TX_STATUS_COMPLETED)
            .execution_options(synchronize_session=False)
        )
        withdrawal = db.session.get(Withdrawal, withdrawal_id)
        db.session.refresh(withdrawal)
        notification = append_notification(
            uid,
            "Withdrawal Verified",
            f"Your withdrawal request for ₹{withdrawal.amount:.2f} has been verified and processed.",
            "withdrawal_verified",
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info("Withdrawal %s of %s verified by %s", withdrawal_id, uid, admin_id)
    publish(uid, "notification", notification.to_dict())
    return withdrawal


def list_withdrawals(uid: str) -> dict:
    user = get_user(uid)
    rows = (
        Withdrawal.query.filter_by(user_uid=user.uid)
        .order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc())
        .all()
    )
    items = [w.to_dict() for w in rows]
    return {
        "all": items,
        "pending": [w for w in items if w["status"] == WITHDRAWAL_STATUS_PENDING],
        "verified": [w for w in items if w["status"] == WITHDRAWAL_STATUS_VERIFIED],
    }


@withdrawals_api.post("/api/users/<uid>/withdraw")
@limiter.limit("10 per minute")
def api_request_withdrawal(uid: str):
    data = request.get_json(silent=True) or {}
    result = request_withdrawal(uid, data.get("amount"))
    return jsonify({"success": True, "message": "Withdrawal request submitted successfully", **result}), 201


@withdrawals_api.patch("/api/users/<uid>/withdrawals/<withdrawal_id>/verify")
def api_verify_withdrawal(uid: str, withdrawal_id: str):
    if not _admin_ok(request):
        return jsonify({"success": False, "code": "unauthorized", "message": "Admin access required"}), 403
    data = request.get_json(silent=True) or {}
    withdrawal = verify_withdrawal(uid, withdrawal_id, data.get("adminId") or data.get("adminUid"))
    return jsonify({
        "success": True,
        "message": "Withdrawal verified successfully",
        "withdrawal": withdrawal.to_dict(),
    })


@withdrawals_api.get("/api/users/<uid>/withdrawals")
def api_list_withdrawals(uid: str):
    return jsonify({"success": True, **list_withdrawals(uid)})
