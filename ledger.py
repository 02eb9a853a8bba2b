"""Ledger store primitives.

These helpers only stage changes on ``db.session``; the caller owns the
transaction and commits once, so a balance change, its ledger line and its
notification land together or not at all.

Balance changes are always issued as ``coins = coins + :delta`` in SQL so
two concurrent requests on the same user cannot lose an update.
"""

import secrets
from datetime import datetime

from sqlalchemy import func, select, update

from errors import InsufficientFundsError, InvalidInputError, NotFoundError
from extensions import db
from models_users import TX_STATUS_COMPLETED, Notification, Transaction, User


def generate_notification_id() -> str:
    return f"NOTIF_{secrets.token_hex(8)}"


def get_user(uid: str) -> User:
    if uid is not None and not isinstance(uid, str):
        raise InvalidInputError("User id must be a string")
    uid = (uid or "").strip()
    user = User.query.filter_by(uid=uid).first() if uid else None
    if not user:
        raise NotFoundError("User not found")
    return user


def current_balance(uid: str) -> int:
    balance = db.session.execute(select(User.coins).where(User.uid == uid)).scalar_one_or_none()
    if balance is None:
        raise NotFoundError("User not found")
    return int(balance)


def ledger_total(uid: str) -> int:
    """Sum of all ledger deltas for a user; equals the balance when the ledger is consistent."""
    total = db.session.execute(
        select(func.coalesce(func.sum(Transaction.delta), 0)).where(Transaction.user_uid == uid)
    ).scalar_one()
    return int(total or 0)


def apply_delta(uid: str, delta: int) -> None:
    """Atomically add ``delta`` coins.

    Debits carry a ``coins >= :cost`` guard in the same statement, so the
    balance can never go negative even when two debits race.
    """
    stmt = update(User).where(User.uid == uid)
    if delta < 0:
        stmt = stmt.where(User.coins >= -delta)
    res = db.session.execute(
        stmt.values(coins=User.coins + delta).execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        if delta < 0 and db.session.execute(select(User.id).where(User.uid == uid)).first():
            raise InsufficientFundsError("Insufficient coins", required=-delta)
        raise NotFoundError("User not found")


def append_transaction(
    uid: str,
    delta: int,
    kind: str,
    description: str,
    status: str = TX_STATUS_COMPLETED,
    offer_id=None,
    click_id=None,
    withdrawal_id=None,
) -> Transaction:
    tx = Transaction(
        user_uid=uid,
        delta=int(delta),
        kind=kind,
        description=description,
        status=status,
        offer_id=offer_id,
        click_id=click_id,
        withdrawal_id=withdrawal_id,
        created_at=datetime.utcnow(),
    )
    db.session.add(tx)
    return tx


def append_notification(uid: str, title: str, message: str, type_: str = "system") -> Notification:
    notification = Notification(
        id=generate_notification_id(),
        user_uid=uid,
        type=type_,
        title=title,
        message=message,
        read=False,
        timestamp=datetime.utcnow(),
    )
    db.session.add(notification)
    return notification


def post_entry(uid: str, delta: int, kind: str, description: str, **links) -> Transaction:
    """Move the balance and record the matching ledger line in one step."""
    if delta:
        apply_delta(uid, delta)
    return append_transaction(uid, delta, kind, description, **links)
