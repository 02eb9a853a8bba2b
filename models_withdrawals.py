from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Index, Integer, String

from extensions import db


WITHDRAWAL_STATUS_PENDING = "pending"
WITHDRAWAL_STATUS_VERIFIED = "verified"


class Withdrawal(db.Model):
    """A single withdrawal request; the pending/verified views are filters on ``status``."""

    __tablename__ = "withdrawals"

    id = Column(Integer, primary_key=True)
    user_uid = Column(String(128), ForeignKey("users.uid", onupdate="CASCADE"), nullable=False, index=True)
    amount = Column(Float, nullable=False)  # currency
    # Computed once at request time; never recomputed from the current rate.
    coins = Column(Integer, nullable=False)
    exchange_rate = Column(String(20), nullable=False)
    payment_method = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default=WITHDRAWAL_STATUS_PENDING)
    verified_at = Column(DateTime, nullable=True)
    verified_by = Column(String(128), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_withdrawals_user_status", "user_uid", "status"),
        Index("idx_withdrawals_created_at", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_uid": self.user_uid,
            "amount": self.amount,
            "coins": self.coins,
            "exchange_rate": self.exchange_rate,
            "payment_method": self.payment_method,
            "status": self.status,
            "date": self.created_at.isoformat() if self.created_at else None,
            "verified_date": self.verified_at.isoformat() if self.verified_at else None,
            "verified_by": self.verified_by,
        }
