"""User aggregate: the user row plus the child tables it exclusively owns.

Balance rule: ``users.coins`` always equals the sum of ``transactions.delta``
for that user. Every code path that changes ``coins`` appends exactly one
transaction row in the same database transaction (see ledger.py).
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from extensions import db


TX_KIND_EARN = "earn"
TX_KIND_WITHDRAW = "withdraw"
TX_KIND_REFERRAL_BONUS = "referral_bonus"
TX_KIND_REFERRAL_APPLIED = "referral_applied"

TX_STATUS_COMPLETED = "completed"
TX_STATUS_PENDING = "pending"

GENDERS = {"male", "female", "other", ""}


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    # Opaque, stable subject id from the identity provider.
    uid = Column(String(128), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(200), nullable=False)
    phone = Column(String(40), nullable=True)
    date_of_birth = Column(Date, nullable=True)
    gender = Column(String(10), nullable=True)
    advertising_id = Column(String(128), nullable=True)
    profile_image_url = Column(String(500), nullable=True)

    coins = Column(Integer, nullable=False, default=0)
    # {"type": "upi", "upiId": ...} or {"type": "bank", "accountNumber": ..., ...}
    payment_method = Column(JSON, nullable=True)

    referral_code = Column(String(20), unique=True, nullable=False, index=True)
    used_referral_code = Column(String(20), nullable=True)
    referred_by = Column(String(128), ForeignKey("users.uid", onupdate="CASCADE"), nullable=True)
    referral_count = Column(Integer, nullable=False, default=0)

    last_check_in = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_users_referred_by", "referred_by"),
        Index("idx_users_created_at", "created_at"),
    )

    def to_dict(self):
        return {
            "uid": self.uid,
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "date_of_birth": _iso(self.date_of_birth),
            "gender": self.gender,
            "advertising_id": self.advertising_id,
            "profile_image_url": self.profile_image_url,
            "coins": int(self.coins or 0),
            "payment_method": self.payment_method,
            "referral_code": self.referral_code,
            "used_referral_code": self.used_referral_code,
            "referred_by": self.referred_by,
            "referral_count": int(self.referral_count or 0),
            "last_check_in": _iso(self.last_check_in),
            "created_at": _iso(self.created_at),
        }


class Transaction(db.Model):
    """Immutable ledger line. Only ``status`` of withdrawal lines ever changes."""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True)
    user_uid = Column(String(128), ForeignKey("users.uid", onupdate="CASCADE"), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    kind = Column(String(30), nullable=False)
    description = Column(Text, nullable=False, default="")
    status = Column(String(20), nullable=False, default=TX_STATUS_COMPLETED)
    offer_id = Column(Integer, ForeignKey("offers.id"), nullable=True)
    click_id = Column(Integer, ForeignKey("clicks.id"), nullable=True)
    withdrawal_id = Column(Integer, ForeignKey("withdrawals.id"), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_transactions_user_created", "user_uid", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.kind,
            "amount": self.delta,
            "description": self.description,
            "status": self.status,
            "offer_id": self.offer_id,
            "click_id": self.click_id,
            "withdrawal_id": self.withdrawal_id,
            "date": _iso(self.created_at),
        }


class Notification(db.Model):
    __tablename__ = "notifications"

    id = Column(String(50), primary_key=True)
    user_uid = Column(String(128), ForeignKey("users.uid", onupdate="CASCADE"), nullable=False, index=True)
    type = Column(String(30), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_notifications_user_read", "user_uid", "read"),
        Index("idx_notifications_timestamp", "timestamp"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "read": bool(self.read),
            "timestamp": _iso(self.timestamp),
        }


class ReferralRecord(db.Model):
    """One entry of a referrer's referral history."""

    __tablename__ = "referrals"

    id = Column(Integer, primary_key=True)
    referrer_uid = Column(String(128), ForeignKey("users.uid", onupdate="CASCADE"), nullable=False, index=True)
    # A user can be referred at most once.
    referee_uid = Column(String(128), ForeignKey("users.uid", onupdate="CASCADE"), nullable=False, unique=True)
    code_used = Column(String(20), nullable=False)
    coins_earned = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_referrals_referrer_created", "referrer_uid", "created_at"),
    )
